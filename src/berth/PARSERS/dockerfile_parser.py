# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Parsers for Dockerfiles, extracting instructions, flags and arguments.
"""
import json
import re
import shlex
from typing import Dict, List, Tuple

from ..MODELS.dockerfile_ast import Instruction

_INSTRUCTION = re.compile(r"^\s*([A-Za-z]+)(?:\s+(.*))?$", re.DOTALL)
_FLAG = re.compile(r"^--([a-z][a-z0-9-]*)(?:=(.*))?$")

# Instructions whose shell form is kept as one string
_SHELL_FORM = {"RUN", "CMD", "ENTRYPOINT", "HEALTHCHECK", "SHELL"}
_KEY_VALUE = {"ENV", "LABEL", "ARG"}
_FLAGGED = {"FROM", "COPY", "ADD", "RUN", "HEALTHCHECK"}


class DockerfileParser:
    """
    Parser for Dockerfile instructions.
    """
    def parse(self, dockerfile_path: str) -> List[Instruction]:
        """
        Parses a Dockerfile from a file path.

        Args:
            dockerfile_path (str): Path to the Dockerfile.

        Returns:
            List[Instruction]: List of parsed instructions.
        """
        with open(dockerfile_path, "r") as f:
            content = f.read()
        return self.parse_from_string(content)

    def parse_from_string(self, content: str) -> List[Instruction]:
        """
        Parses a Dockerfile from a string content.

        Comment lines are dropped, including those inside a continued
        instruction, and backslash continuations are joined.

        Args:
            content (str): Content of the Dockerfile.

        Returns:
            List[Instruction]: List of parsed instructions.
        """
        instructions = []
        for line_no, logical in self._logical_lines(content):
            match = _INSTRUCTION.match(logical)
            if not match:
                continue
            inst = match.group(1).upper()
            args_str = (match.group(2) or "").strip()

            flags: Dict[str, str] = {}
            if inst in _FLAGGED:
                flags, args_str = self._split_flags(args_str)

            arguments, exec_form = self._parse_arguments(inst, args_str)
            instructions.append(Instruction(
                instruction=inst,
                arguments=arguments,
                flags=flags,
                exec_form=exec_form,
                line=line_no,
                raw=logical.strip(),
            ))
        return instructions

    def _logical_lines(self, content: str) -> List[Tuple[int, str]]:
        """Joins continued physical lines; returns (first line number, text) pairs."""
        result = []
        buffer: List[str] = []
        start = 0
        for number, line in enumerate(content.splitlines(), start=1):
            stripped = line.strip()
            if stripped.startswith("#") or not stripped:
                continue
            if not buffer:
                start = number
            if re.search(r"\\\s*$", line):
                buffer.append(re.sub(r"\\\s*$", "", line).strip())
                continue
            buffer.append(stripped)
            result.append((start, " ".join(part for part in buffer if part)))
            buffer = []
        if buffer:
            result.append((start, " ".join(part for part in buffer if part)))
        return result

    def _split_flags(self, args_str: str) -> Tuple[Dict[str, str], str]:
        flags: Dict[str, str] = {}
        rest = args_str
        while rest.startswith("--"):
            token, _, remainder = rest.partition(" ")
            match = _FLAG.match(token)
            if not match:
                break
            flags[match.group(1)] = match.group(2) if match.group(2) is not None else "true"
            rest = remainder.lstrip()
        return flags, rest

    def _parse_arguments(self, inst: str, args_str: str) -> Tuple[List[str], bool]:
        # Exec/JSON form
        if args_str.startswith("[") and args_str.endswith("]"):
            try:
                parsed = json.loads(args_str)
            except json.JSONDecodeError:
                parsed = None
            if isinstance(parsed, list) and all(isinstance(a, str) for a in parsed):
                return parsed, True

        if not args_str:
            return [], False
        if inst in _SHELL_FORM:
            return [args_str], False
        if inst in _KEY_VALUE:
            return self._parse_key_values(inst, args_str), False
        return self._split_words(args_str), False

    def _parse_key_values(self, inst: str, args_str: str) -> List[str]:
        first = args_str.split(None, 1)[0]
        if "=" not in first:
            # Legacy form: ENV KEY value with spaces
            parts = args_str.split(None, 1)
            if inst == "ARG" or len(parts) == 1:
                return [parts[0]]
            return [f"{parts[0]}={parts[1]}"]
        return self._split_words(args_str)

    @staticmethod
    def _split_words(args_str: str) -> List[str]:
        try:
            return shlex.split(args_str)
        except ValueError:
            return args_str.split()
