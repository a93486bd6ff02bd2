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
Parsers for Docker Compose style topology manifests.
"""
import logging
import os
import shlex
from typing import Any, Dict, List, Mapping, Optional

import yaml
from pydantic import ValidationError

from ..errors import TopologyError
from ..MODELS.orchestration_config import NetworkDefinition, OrchestrationConfig, VolumeDefinition
from ..MODELS.service_definition import (
    BuildSpec,
    DependencyCondition,
    HealthCheck,
    PortMapping,
    RestartPolicy,
    ServiceDefinition,
    VolumeMount,
    WatchAction,
    WatchRule,
)
from ..REGISTRY.image_reference import ImageReference
from ..RUNNERS.topology_validator import TopologyValidator
from ..UTILS.durations import parse_duration
from ..UTILS.string_interpolation import EnvironmentInterpolator

logger = logging.getLogger(__name__)

_WATCH_ACTIONS = {
    "rebuild": WatchAction.REBUILD,
    "restart": WatchAction.RESTART,
    "sync+restart": WatchAction.RESTART,
}


class ComposeParser:
    """
    Parser for docker-compose.yml files.

    A parsed topology is validated before it is returned, so an invalid
    manifest never reaches the orchestrator.
    """
    def __init__(self, context: Optional[Mapping[str, str]] = None):
        """
        Initializes the parser with the environment used for interpolation.

        :param context: Variables for ${VAR} interpolation, usually
            BerthSettings.interpolation_env.
        """
        self.context = dict(context or {})
        self.validator = TopologyValidator()

    def parse(self, compose_path: str) -> OrchestrationConfig:
        """
        Parses a compose file from a path.

        :param compose_path: Path to the compose file.
        :return: Parsed and validated configuration.
        :raises TopologyError: If the file cannot be read or is invalid.
        """
        try:
            with open(compose_path, "r") as f:
                content = f.read()
        except OSError as e:
            raise TopologyError(f"Cannot read topology {compose_path}: {e}") from e
        default_name = os.path.basename(os.path.dirname(os.path.abspath(compose_path)))
        config = self.parse_from_string(content, default_name=default_name)
        config.source_path = os.path.abspath(compose_path)
        return config

    def parse_from_string(self, content: str, default_name: str = "berth") -> OrchestrationConfig:
        """
        Parses a compose file from a string.

        :param content: YAML content of the compose file.
        :param default_name: Topology name when the file has no top-level name.
        :return: Parsed and validated configuration.
        """
        try:
            content = EnvironmentInterpolator.interpolate(content, self.context)
        except KeyError as e:
            raise TopologyError(f"Interpolation failed: {e.args[0]}") from e

        try:
            data = yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise TopologyError(f"Invalid YAML: {e}") from e
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise TopologyError("Topology must be a mapping")

        services_spec = data.get("services") or {}
        if not isinstance(services_spec, dict):
            raise TopologyError("'services' must be a mapping")

        services = {}
        for name, spec in services_spec.items():
            name = str(name)
            try:
                services[name] = self._parse_service(name, spec or {})
            except (ValidationError, ValueError, TypeError, AttributeError) as e:
                raise TopologyError(str(e), service=name) from e

        config = OrchestrationConfig(
            name=str(data.get("name") or default_name),
            services=services,
            networks={
                name: NetworkDefinition(name=name, **self._driver(spec, "bridge"))
                for name, spec in self._mapping(data.get("networks")).items()
            },
            volumes={
                name: VolumeDefinition(name=name, **self._driver(spec, "local"))
                for name, spec in self._mapping(data.get("volumes")).items()
            },
        )
        self.validator.validate(config)
        return config

    def _parse_service(self, name: str, spec: Dict[str, Any]) -> ServiceDefinition:
        """
        Parses a single service definition from a compose file.

        :param name: The name of the service.
        :param spec: The service specification dictionary.
        :return: A ServiceDefinition instance.
        """
        if not isinstance(spec, dict):
            raise TypeError("service definition must be a mapping")

        image = spec.get("image") or ""
        if image:
            ImageReference.parse(image)

        extension = spec.get("x-berth") or {}
        develop = spec.get("develop") or {}

        return ServiceDefinition(
            name=name,
            image_name=image,
            build=self._parse_build(spec.get("build")),
            cmd=self._command(spec.get("command")),
            entrypoint=self._command(spec.get("entrypoint")),
            working_dir=spec.get("working_dir"),
            environment=self._parse_environment(spec.get("environment")),
            environment_files=self._to_list(spec.get("env_file")),
            config_dir=extension.get("config_dir", "config"),
            ports=[self._parse_port(p) for p in spec.get("ports") or []],
            networks=list(self._mapping(spec.get("networks")).keys())
            if isinstance(spec.get("networks"), dict)
            else self._to_list(spec.get("networks")),
            volumes=[self._parse_volume(v) for v in spec.get("volumes") or []],
            restart_policy=self._parse_restart(spec.get("restart", "no")),
            health_check=self._parse_healthcheck(spec.get("healthcheck")),
            depends_on=self._parse_depends_on(spec.get("depends_on")),
            stop_grace_period=parse_duration(spec["stop_grace_period"]) if "stop_grace_period" in spec else None,
            watch=[self._parse_watch(w) for w in develop.get("watch") or []],
            labels=self._parse_labels(spec.get("labels")),
        )

    def _parse_build(self, build: Any) -> Optional[BuildSpec]:
        if build is None:
            return None
        if isinstance(build, str):
            return BuildSpec(context=build)
        args = build.get("args") or {}
        if isinstance(args, list):
            args = dict(a.split("=", 1) if "=" in a else (a, self.context.get(a, "")) for a in args)
        return BuildSpec(
            context=build.get("context", "."),
            dockerfile=build.get("dockerfile", "Dockerfile"),
            args={str(k): "" if v is None else str(v) for k, v in args.items()},
            target=build.get("target"),
        )

    def _parse_environment(self, env_spec: Any) -> Dict[str, str]:
        environment: Dict[str, str] = {}
        if isinstance(env_spec, list):
            for entry in env_spec:
                key, sep, value = str(entry).partition("=")
                if sep:
                    environment[key] = value
                elif key in self.context:
                    # bare KEY passes the value through from the caller's environment
                    environment[key] = self.context[key]
        elif isinstance(env_spec, dict):
            for key, value in env_spec.items():
                if value is None:
                    if key in self.context:
                        environment[str(key)] = self.context[key]
                elif isinstance(value, bool):
                    environment[str(key)] = "true" if value else "false"
                else:
                    environment[str(key)] = str(value)
        return environment

    def _parse_port(self, port: Any) -> PortMapping:
        if isinstance(port, dict):
            published = port.get("published")
            return PortMapping(
                container_port=int(port["target"]),
                host_port=int(published) if published is not None else None,
                protocol=port.get("protocol", "tcp"),
            )
        text = str(port)
        protocol = "tcp"
        if "/" in text:
            text, protocol = text.split("/", 1)
        parts = text.split(":")
        if len(parts) == 1:
            return PortMapping(container_port=int(parts[0]), protocol=protocol)
        # [ip:]host:container
        return PortMapping(container_port=int(parts[-1]), host_port=int(parts[-2]), protocol=protocol)

    def _parse_volume(self, volume: Any) -> VolumeMount:
        if isinstance(volume, dict):
            return VolumeMount(
                source=volume.get("source"),
                target=volume["target"],
                read_only=bool(volume.get("read_only", False)),
            )
        parts = str(volume).split(":")
        if len(parts) == 1:
            return VolumeMount(target=parts[0])
        if len(parts) == 2:
            return VolumeMount(source=parts[0], target=parts[1])
        return VolumeMount(source=parts[0], target=parts[1], read_only="ro" in parts[2].split(","))

    def _parse_restart(self, restart: Any) -> RestartPolicy:
        if restart is False or restart is None:
            restart = "no"
        condition, _, retries = str(restart).partition(":")
        return RestartPolicy(condition=condition, max_retries=int(retries) if retries else 0)

    def _parse_healthcheck(self, spec: Any) -> Optional[HealthCheck]:
        if not spec:
            return None
        test = spec.get("test", ["NONE"])
        if isinstance(test, str):
            test = ["CMD-SHELL", test]
        values: Dict[str, Any] = {"test": [str(t) for t in test], "disable": bool(spec.get("disable", False))}
        for key in ("interval", "timeout", "start_period"):
            if key in spec:
                values[key] = parse_duration(spec[key])
        if "retries" in spec:
            values["retries"] = int(spec["retries"])
        return HealthCheck(**values)

    def _parse_depends_on(self, spec: Any) -> Dict[str, DependencyCondition]:
        if isinstance(spec, dict):
            return {
                str(name): DependencyCondition((opts or {}).get("condition", "service_started"))
                for name, opts in spec.items()
            }
        return {str(name): DependencyCondition.SERVICE_STARTED for name in self._to_list(spec)}

    def _parse_watch(self, rule: Dict[str, Any]) -> WatchRule:
        action = rule.get("action", "rebuild")
        if action not in _WATCH_ACTIONS:
            raise ValueError(f"unsupported watch action '{action}'")
        return WatchRule(
            path=rule["path"],
            action=_WATCH_ACTIONS[action],
            ignore=self._to_list(rule.get("ignore")),
        )

    def _parse_labels(self, labels: Any) -> Dict[str, str]:
        if isinstance(labels, list):
            return dict(str(item).split("=", 1) if "=" in str(item) else (str(item), "") for item in labels)
        return {str(k): str(v) for k, v in (labels or {}).items()}

    @staticmethod
    def _mapping(value: Any) -> Dict[str, Any]:
        if isinstance(value, dict):
            return {str(k): v for k, v in value.items()}
        return {}

    @staticmethod
    def _driver(spec: Any, default: str) -> Dict[str, str]:
        if isinstance(spec, dict) and spec.get("driver"):
            return {"driver": str(spec["driver"])}
        return {"driver": default}

    def _command(self, val: Any) -> List[str]:
        if isinstance(val, str):
            return shlex.split(val)
        return [str(v) for v in self._to_list(val)]

    def _to_list(self, val: Any) -> List[str]:
        """
        Helper to ensure a value is a list of strings.

        :param val: The value to convert.
        :return: A list of strings.
        """
        if val is None:
            return []
        if isinstance(val, str):
            return [val]
        return [str(v) for v in val]
