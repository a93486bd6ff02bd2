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
Managers for the lifecycle of a single service process.
"""
import logging
import os
import shutil
import threading
import time
from typing import Callable, Dict, Optional, Tuple

from ..BUILDERS.artifact_store import ArtifactStore
from ..errors import OrchestrationError
from ..MODELS.artifact import ArtifactManifest
from ..MODELS.runtime_state import ServiceRecord, ServiceState
from ..MODELS.service_definition import ServiceDefinition
from ..MODELS.settings import BerthSettings
from ..RUNNERS.entrypoint_executor import EntrypointExecutor
from ..RUNNERS.process_runner import ProcessRunner, pid_alive, terminate_tree
from .configuration_loader import ConfigurationLoader, resolve_runtime_mode
from .environment_manager import EnvironmentManager
from .restart_supervisor import SupervisedService
from .state_store import StateStore
from .volume_manager import VolumeManager

logger = logging.getLogger(__name__)


class ProcessManager(SupervisedService):
    """
    Manages the lifecycle of a single service: its root filesystem,
    environment, configuration and process.

    The state store is the source of truth for the pid and lifecycle
    state, so a manager created by a later invocation can inspect and
    stop a process started by an earlier one.
    """
    def __init__(self,
                 service_def: ServiceDefinition,
                 settings: BerthSettings,
                 volume_manager: VolumeManager,
                 artifact_store: ArtifactStore,
                 state_store: StateStore):
        """
        Initializes the process manager for a service.

        :param service_def: Definition of the service.
        :param settings: Global settings.
        :param volume_manager: Shared volume manager.
        :param artifact_store: Where built artifacts are published.
        :param state_store: Shared runtime state.
        """
        self.service_def = service_def
        self.settings = settings
        self.volume_manager = volume_manager
        self.artifact_store = artifact_store
        self.state_store = state_store

        self.env_manager = EnvironmentManager(settings.project_dir, settings.interpolation_env)
        self.executor = EntrypointExecutor()
        self.runner = ProcessRunner(service_def.name, log_file=self.log_path)
        self.restart_hook: Optional[Callable[[], None]] = None
        self.env: Dict[str, str] = {}
        self.cwd: Optional[str] = None
        self.started_at: Optional[float] = None
        self._lock = threading.RLock()

    @property
    def name(self) -> str:
        return self.service_def.name

    @property
    def log_path(self) -> str:
        return self.settings.path("logs", f"{self.name}.log")

    @property
    def service_root(self) -> str:
        return self.settings.path("services", self.name, "root")

    def record(self) -> ServiceRecord:
        return self.state_store.get(self.name)

    def prepare_root(self) -> Tuple[str, Optional[ArtifactManifest]]:
        """
        Recreates the service root from the current artifact and mounts
        the service's volumes into it.

        :raises OrchestrationError: If a built service has no artifact yet.
        """
        manifest = None
        root = self.service_root
        if os.path.isdir(root):
            shutil.rmtree(root)
        if self.service_def.build is not None:
            manifest = self.artifact_store.load(self.name)
            if manifest is None:
                raise OrchestrationError(f"Service {self.name} has no artifact; build it first")
            shutil.copytree(self.artifact_store.rootfs(self.name), root, symlinks=True)
        else:
            os.makedirs(root)
        self.volume_manager.prepare_volumes(self.service_def.volumes, root, self.name)
        return root, manifest

    def resolve_configuration(self, working_dir: str, env: Dict[str, str]) -> Dict[str, str]:
        """
        Resolves the layered configuration staged in the working directory.

        :return: Variables pointing the process at the resolved document;
            empty when the service stages no configuration.
        :raises ConfigurationError: If the mode or its overlay is missing.
        """
        loader = ConfigurationLoader(os.path.join(working_dir, self.service_def.config_dir))
        if not loader.has_base():
            return {}
        mode = resolve_runtime_mode(env, self.settings.mode_variable)
        path = loader.write_resolved(loader.resolve(mode))
        logger.info("Resolved configuration for mode %s", mode, extra={"service": self.name})
        return {"BERTH_CONFIG_FILE": path, "BERTH_RUN_MODE": mode}

    def start(self, extra_env: Optional[Dict[str, str]] = None):
        """
        Prepares the root, environment and configuration, then starts the process.

        :param extra_env: Additional environment variables (e.g., service discovery).
        :raises ConfigurationError: If the configuration cannot be resolved.
        :raises OrchestrationError: If the process cannot be started.
        """
        with self._lock:
            if self.runner.is_running():
                raise OrchestrationError(f"Service {self.name} is already running")
            self.state_store.update(self.name, state=ServiceState.STARTING, operator_stopped=False,
                                    exit_code=None, pid=None)
            try:
                root, manifest = self.prepare_root()
                env = self.env_manager.get_merged_environment(
                    self.service_def.environment,
                    self.service_def.environment_files,
                    extra_env,
                    image_env=manifest.env if manifest else None,
                )
                working_dir = self.service_def.working_dir or (manifest.working_dir if manifest else "/")
                cwd = self.executor.host_working_dir(working_dir, root)
                os.makedirs(cwd, exist_ok=True)
                env.update(self.resolve_configuration(cwd, env))

                command = self.executor.map_into_root(self.executor.resolve(self.service_def, manifest), root)
                if not command:
                    raise OrchestrationError(f"Service {self.name} has no command to run")
                try:
                    self.runner.start(command, env=env, working_dir=cwd)
                except OSError as e:
                    raise OrchestrationError(f"Service {self.name} failed to start: {e}") from e
            except Exception:
                self.state_store.update(self.name, state=ServiceState.EXITED, exit_code=None, pid=None)
                raise

            self.env = env
            self.cwd = cwd
            self.started_at = time.monotonic()
            self.state_store.update(self.name, state=ServiceState.RUNNING, pid=self.runner.pid,
                                    artifact_digest=manifest.digest if manifest else None)

    def stop(self, timeout: Optional[float] = None):
        """
        Operator stop. The stop is recorded before the process is signalled,
        so its exit is never taken for a crash.
        """
        if timeout is None:
            timeout = self.service_def.stop_grace_period or self.settings.stop_grace_period
        with self._lock:
            record = self.state_store.update(self.name, operator_stopped=True)
            if self.runner.pid is not None and self.runner.pid == record.pid:
                self.runner.stop(timeout=timeout)
            elif pid_alive(record.pid):
                terminate_tree(record.pid, timeout=timeout)
            self.state_store.update(self.name, state=ServiceState.STOPPED, pid=None)

    def poll_exit(self) -> Optional[int]:
        """
        Returns the exit code of a process that ended on its own since the
        last call, and None otherwise. Exits that follow an operator stop
        only mark the service stopped.
        """
        with self._lock:
            record = self.record()
            if record.state != ServiceState.RUNNING:
                return None
            if self.runner.pid is not None and self.runner.pid == record.pid:
                code = self.runner.get_exit_code()
            else:
                code = None if pid_alive(record.pid) else -1
            if code is None:
                return None
            if record.operator_stopped:
                self.state_store.update(self.name, state=ServiceState.STOPPED, pid=None, exit_code=code)
                return None
            self.mark_exited(code)
            return code

    def mark_exited(self, exit_code: int) -> None:
        self.state_store.update(self.name, state=ServiceState.EXITED, pid=None, exit_code=exit_code)

    def mark_restarting(self) -> None:
        self.state_store.update(self.name, state=ServiceState.RESTARTING)

    def restart_after_exit(self) -> None:
        if self.record().operator_stopped:
            return
        self.state_store.update(self.name, restart_count=self.record().restart_count + 1)
        if self.restart_hook is not None:
            self.restart_hook()
        else:
            self.start()

    def uptime(self) -> float:
        if self.started_at is None:
            return 0.0
        return time.monotonic() - self.started_at

    def is_running(self) -> bool:
        record = self.record()
        if self.runner.pid is not None and self.runner.pid == record.pid:
            return self.runner.is_running()
        return pid_alive(record.pid)

    def status(self) -> ServiceState:
        """
        Gets the current lifecycle state, correcting records whose process
        is gone.
        """
        record = self.record()
        if record.state == ServiceState.RUNNING and not self.is_running():
            return ServiceState.EXITED
        return record.state
