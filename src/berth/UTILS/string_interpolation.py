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
Utilities for string interpolation using environment variables.
"""
import logging
import re
from typing import Dict, List, Mapping

logger = logging.getLogger(__name__)

# $$ | ${VAR} | ${VAR:-default} | ${VAR-default} | ${VAR:+alt} | ${VAR:?message} | $VAR
_PATTERN = re.compile(
    r"\$(?:(?P<escaped>\$)"
    r"|\{(?P<braced>[A-Za-z_][A-Za-z0-9_]*)(?P<modifier>:?[-+?])?(?P<alt>[^}]*)\}"
    r"|(?P<named>[A-Za-z_][A-Za-z0-9_]*))"
)


class EnvironmentInterpolator:
    """
    Interpolates environment variables in manifest and recipe text.
    Supports $VAR, ${VAR}, ${VAR:-default}, ${VAR-default}, ${VAR:+value},
    ${VAR:?message} and the $$ escape.
    """

    @staticmethod
    def interpolate(template: str, context: Mapping[str, str], strict: bool = False) -> str:
        """
        Interpolates variables in the template string using the provided context.

        :param template: The string containing placeholders.
        :param context: The variables available for substitution.
        :param strict: Raise KeyError for unset variables instead of substituting "".
        :return: The interpolated string.
        :raises KeyError: For ${VAR:?message} on an unset variable, or any unset
            variable when strict is set.
        """
        missing: List[str] = []

        def replace(match: "re.Match[str]") -> str:
            if match.group("escaped"):
                return "$"
            name = match.group("braced") or match.group("named")
            modifier = match.group("modifier")
            alt_value = match.group("alt") or ""
            value = context.get(name)

            if modifier == ":-":
                return value if value else alt_value
            if modifier == "-":
                return value if value is not None else alt_value
            if modifier == ":+":
                return alt_value if value else ""
            if modifier == "+":
                return alt_value if value is not None else ""
            if modifier in (":?", "?"):
                if not value:
                    raise KeyError(alt_value or f"Variable {name} is required")
                return value

            if value is None:
                if strict:
                    raise KeyError(f"Variable {name} not found in context")
                missing.append(name)
                return ""
            return value

        result = _PATTERN.sub(replace, template)
        for name in sorted(set(missing)):
            logger.warning("Variable %s is not set, substituting an empty string", name)
        return result

    @staticmethod
    def interpolate_all(values: List[str], context: Dict[str, str]) -> List[str]:
        """Interpolates every string in a list."""
        return [EnvironmentInterpolator.interpolate(v, context) for v in values]
