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
Settings for berth itself, resolved once at startup and passed around.
"""
import os
from typing import Any, Dict, Mapping, Optional

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, field_validator

_ENV_FIELDS = {
    "project_dir": "BERTH_PROJECT_DIR",
    "state_dir": "BERTH_STATE_DIR",
    "log_level": "BERTH_LOG_LEVEL",
    "log_format": "BERTH_LOG_FORMAT",
    "supervise_interval": "BERTH_SUPERVISE_INTERVAL",
    "dependency_timeout": "BERTH_DEPENDENCY_TIMEOUT",
    "stop_grace_period": "BERTH_STOP_GRACE_PERIOD",
    "watch_poll_interval": "BERTH_WATCH_POLL_INTERVAL",
    "watch_debounce": "BERTH_WATCH_DEBOUNCE",
    "mode_variable": "BERTH_MODE_VARIABLE",
}


class BerthSettings(BaseModel):
    """
    Process-wide settings. Components receive this object and never read
    the process environment themselves.
    """
    model_config = ConfigDict(frozen=True)

    project_dir: str = "."
    state_dir: str = ""
    log_level: str = "INFO"
    log_format: str = "text"
    supervise_interval: float = 1.0
    dependency_timeout: float = 60.0
    stop_grace_period: float = 10.0
    watch_poll_interval: float = 0.5
    watch_debounce: float = 0.3
    mode_variable: str = "RUN_MODE"
    interpolation_env: Dict[str, str] = {}

    @field_validator("log_format")
    @classmethod
    def _check_format(cls, value: str) -> str:
        if value not in ("text", "json"):
            raise ValueError("log_format must be 'text' or 'json'")
        return value

    @field_validator("log_level")
    @classmethod
    def _check_level(cls, value: str) -> str:
        value = value.upper()
        if value not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Invalid log level: {value}")
        return value

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides: Any) -> "BerthSettings":
        """
        Builds settings from BERTH_* variables, with explicit overrides
        (typically CLI options) taking precedence.

        The project's .env file is layered under the given environment and
        captured as the manifest interpolation context.

        :param environ: Environment to read, os.environ by default.
        :param overrides: Field values that win over the environment; None values are ignored.
        """
        env = dict(os.environ if environ is None else environ)
        values: Dict[str, Any] = {}
        for field, var in _ENV_FIELDS.items():
            if env.get(var):
                values[field] = env[var]
        values.update({k: v for k, v in overrides.items() if v is not None})

        project_dir = os.path.abspath(values.get("project_dir", "."))
        values["project_dir"] = project_dir
        if not values.get("state_dir"):
            values["state_dir"] = os.path.join(project_dir, ".berth")
        values["state_dir"] = os.path.abspath(values["state_dir"])

        dotenv_path = os.path.join(project_dir, ".env")
        interpolation: Dict[str, str] = {}
        if os.path.isfile(dotenv_path):
            interpolation.update({k: v for k, v in dotenv_values(dotenv_path).items() if v is not None})
        interpolation.update(env)
        values["interpolation_env"] = interpolation
        return cls(**values)

    def path(self, *parts: str) -> str:
        """A path inside the state directory."""
        return os.path.join(self.state_dir, *parts)
