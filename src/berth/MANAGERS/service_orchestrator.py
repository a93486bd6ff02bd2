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
Orchestration for multiple services, managing dependencies, ports,
volumes, health and restarts.
"""
import logging
import os
import threading
from typing import Any, Dict, List, Optional, Tuple

from tenacity import RetryError, retry, retry_if_result, stop_after_delay, wait_fixed

from ..BUILDERS.build_pipeline import BuildPipeline
from ..errors import OrchestrationError
from ..MODELS.artifact import ArtifactManifest
from ..MODELS.orchestration_config import OrchestrationConfig
from ..MODELS.runtime_state import HealthStatus, ServiceState
from ..MODELS.service_definition import DependencyCondition, WatchAction
from ..MODELS.settings import BerthSettings
from ..RUNNERS.dependency_resolver import DependencyResolver
from ..RUNNERS.health_probe import ProbeRunner
from ..RUNNERS.port_forwarder import PortForwarder
from ..UTILS.port_finder import wait_for_port_free
from .dev_watcher import DevLoopWatcher
from .health_monitor import HealthMonitor
from .network_manager import NetworkManager
from .process_manager import ProcessManager
from .restart_supervisor import RestartSupervisor
from .state_store import StateStore
from .volume_manager import VolumeManager

logger = logging.getLogger(__name__)

BUILD_MANIFESTS = ("Cargo.toml", "pyproject.toml", "setup.py", "requirements.txt", "package.json", "go.mod")


class ServiceOrchestrator:
    """
    Orchestrates multiple services based on their dependencies.
    """
    def __init__(self,
                 config: OrchestrationConfig,
                 settings: BerthSettings,
                 pipeline: Optional[BuildPipeline] = None,
                 probe_runner: Optional[ProbeRunner] = None):
        """
        Initializes the orchestrator.

        :param config: Validated topology.
        :param settings: Global settings.
        :param pipeline: Build pipeline; one is created from settings if omitted.
        :param probe_runner: Health probe runner, replaceable in tests.
        """
        self.config = config
        self.settings = settings
        self.resolver = DependencyResolver()
        self.network_manager = NetworkManager(config)
        self.volume_manager = VolumeManager(settings.path("volumes"), settings.project_dir)
        self.state = StateStore(settings.path("state.json"))
        self.pipeline = pipeline or BuildPipeline(settings)
        self.health_monitor = HealthMonitor(probe_runner, on_change=self._health_changed)
        self.supervisor = RestartSupervisor(interval=settings.supervise_interval)
        self.forwarders: Dict[str, List[PortForwarder]] = {}
        self.watchers: List[DevLoopWatcher] = []
        self._started = False

        self.managers: Dict[str, ProcessManager] = {}
        for name, svc_def in config.services.items():
            manager = ProcessManager(svc_def, settings, self.volume_manager, self.pipeline.store, self.state)
            manager.restart_hook = self._restart_hook(name)
            self.managers[name] = manager

    def _restart_hook(self, name: str):
        return lambda: self._start_service(name)

    def _manager(self, name: str) -> ProcessManager:
        if name not in self.managers:
            raise OrchestrationError(f"No such service: {name}")
        return self.managers[name]

    def build(self, services: Optional[List[str]] = None,
              environment: Optional[str] = None) -> List[ArtifactManifest]:
        """
        Builds the services that have a build section, in dependency order.

        :raises BuildError: On the first failed build; later services are not built.
        """
        manifests = []
        for name in self.resolver.resolve_order(self.config, services):
            svc = self.config.services[name]
            if svc.build is None:
                continue
            manifests.append(self.pipeline.build(svc, environment))
        return manifests

    def up(self, services: Optional[List[str]] = None, build: bool = False):
        """
        Starts services and their dependencies in dependency order.

        :param services: Services to start; all when omitted.
        :param build: Rebuild artifacts first. Services without an artifact
            are always built.
        :raises OrchestrationError: If a port is taken or a dependency never becomes ready.
        """
        order = self.resolver.resolve_order(self.config, services)
        logger.info("Starting services in order: %s", ", ".join(order))

        for name in order:
            svc = self.config.services[name]
            if svc.build is not None and (build or self.pipeline.store.load(name) is None):
                self.pipeline.build(svc)

        for network in self.network_manager.networks():
            logger.info("Network %s: %s", network, ", ".join(sorted(self.network_manager.members[network])))
        for volume in self.config.volumes:
            self.volume_manager.create(volume)

        for name in order:
            if self.managers[name].is_running():
                logger.info("Already running", extra={"service": name})
                continue
            self._wait_for_dependencies(name)
            self._start_service(name)

        if not self._started:
            self.supervisor.start()
            self._started = True

    def _wait_for_dependencies(self, name: str):
        """
        Waits until every dependency is started, or healthy for
        ``service_healthy`` dependencies.
        """
        for dep, condition in self.config.services[name].depends_on.items():
            logger.info("Waiting for %s (%s)", dep, condition.value, extra={"service": name})

            @retry(
                retry=retry_if_result(lambda ready: not ready),
                stop=stop_after_delay(self.settings.dependency_timeout),
                wait=wait_fixed(0.2),
            )
            def _ready() -> bool:
                if self.managers[dep].status() != ServiceState.RUNNING:
                    return False
                if condition == DependencyCondition.SERVICE_HEALTHY:
                    return self.health_of(dep) == HealthStatus.HEALTHY
                return True

            try:
                _ready()
            except RetryError as e:
                raise OrchestrationError(
                    f"Service {name} cannot start: dependency {dep} did not reach "
                    f"{condition.value} within {self.settings.dependency_timeout}s"
                ) from e

    def _start_service(self, name: str):
        manager = self._manager(name)
        svc = manager.service_def
        self._unpublish(name)
        ports = self.network_manager.allocate_ports(svc)
        try:
            manager.start(extra_env=self.network_manager.get_service_discovery_env(name))
            self._publish(name, ports)
        except Exception:
            self.network_manager.release_ports(name)
            raise
        health = HealthStatus.STARTING if svc.has_probe else HealthStatus.NONE
        self.state.update(name, ports=ports, health=health)
        if svc.has_probe:
            self.health_monitor.watch(name, svc.health_check, manager.is_running, env=manager.env, cwd=manager.cwd)
        self.supervisor.supervise(manager)

    def _publish(self, name: str, ports: Dict[int, int]):
        svc = self.config.services[name]
        forwarders = []
        try:
            for port in svc.ports:
                host_port = ports[port.container_port]
                if port.protocol != "tcp" or host_port == port.container_port:
                    continue
                forwarder = PortForwarder(name, host_port, port.container_port)
                forwarder.start()
                forwarders.append(forwarder)
        except OSError as e:
            for forwarder in forwarders:
                forwarder.stop()
            raise OrchestrationError(f"Cannot publish ports for {name}: {e}") from e
        self.forwarders[name] = forwarders

    def _unpublish(self, name: str):
        for forwarder in self.forwarders.pop(name, []):
            forwarder.stop()

    def health_of(self, name: str) -> HealthStatus:
        """Live status when probed by this process, else the recorded one."""
        if not self.config.services[name].has_probe:
            return HealthStatus.NONE
        if self.health_monitor.is_watching(name):
            return self.health_monitor.status(name)
        return self.state.get(name).health

    def _health_changed(self, name: str, status: HealthStatus):
        self.state.update(name, health=status)

    def stop(self, name: str):
        """
        Operator stop of one service. It stays stopped whatever its restart policy.
        """
        manager = self._manager(name)
        self.supervisor.detach(name)
        self.health_monitor.unwatch(name)
        logger.info("Stopping", extra={"service": name})
        manager.stop()
        self._unpublish(name)
        self.network_manager.release_ports(name)

    def start(self, name: str):
        """Starts one stopped service once its dependencies are ready."""
        manager = self._manager(name)
        if manager.is_running():
            raise OrchestrationError(f"Service {name} is already running")
        svc = manager.service_def
        if svc.build is not None and self.pipeline.store.load(name) is None:
            self.pipeline.build(svc)
        self._wait_for_dependencies(name)
        self._start_service(name)
        if not self._started:
            self.supervisor.start()
            self._started = True

    def restart(self, name: str):
        manager = self._manager(name)
        if manager.is_running() or manager.record().pid is not None:
            self.stop(name)
            for port in manager.service_def.ports:
                if port.host_port is not None and port.protocol == "tcp":
                    if not wait_for_port_free(port.host_port, timeout=self.settings.stop_grace_period):
                        logger.warning("Port %d is still busy", port.host_port, extra={"service": name})
        self.start(name)

    def down(self, remove_volumes: bool = False):
        """
        Stops all services in reverse dependency order.

        :param remove_volumes: Also delete named and anonymous volumes.
        """
        for watcher in self.watchers:
            watcher.stop()
        self.watchers = []
        self.health_monitor.stop()
        self.supervisor.stop()
        self._started = False

        order = self.resolver.resolve_order(self.config)
        for name in reversed(order):
            self.supervisor.detach(name)
            manager = self.managers[name]
            if manager.is_running() or manager.record().state != ServiceState.CREATED:
                logger.info("Stopping", extra={"service": name})
                manager.stop()
            self._unpublish(name)
            self.network_manager.release_ports(name)

        if remove_volumes:
            for volume in self.config.volumes:
                self.volume_manager.remove(volume)
            for name in order:
                self.volume_manager.remove_anonymous(name)
        self.state.clear()

    def ps(self) -> List[Dict[str, Any]]:
        """
        Returns the status of all services.

        :return: One row per service with lifecycle state, health, pid and ports.
        """
        rows = []
        for name in self.resolver.resolve_order(self.config):
            manager = self.managers[name]
            record = manager.record()
            state = manager.status()
            health = self.health_of(name)
            rows.append({
                "name": name,
                "state": state.value,
                "health": health.value,
                "pid": record.pid if state == ServiceState.RUNNING else None,
                "exit_code": record.exit_code,
                "restarts": record.restart_count,
                "ports": self._port_labels(name, record.ports),
            })
        return rows

    def _port_labels(self, name: str, allocated: Dict[int, int]) -> List[str]:
        labels = []
        for port in self.config.services[name].ports:
            host_port = allocated.get(port.container_port, port.host_port)
            if host_port is None:
                labels.append(f"{port.container_port}/{port.protocol}")
            else:
                labels.append(f"{host_port}->{port.container_port}/{port.protocol}")
        return labels

    def watch_roots(self, name: str) -> Tuple[List[str], List[str], bool]:
        """
        Roots, ignore patterns and whether a change needs a rebuild.

        Declared ``develop.watch`` rules decide the roots; otherwise the
        build context's ``src`` directory, the recipe file and any build
        manifest next to it are watched.
        """
        svc = self.config.services[name]
        if svc.watch:
            roots = [os.path.join(self.settings.project_dir, r.path) for r in svc.watch]
            ignore = [p for r in svc.watch for p in r.ignore]
            rebuild = any(r.action == WatchAction.REBUILD for r in svc.watch)
            return roots, ignore, rebuild

        context = self.pipeline.context_dir(svc)
        roots = [os.path.join(context, "src"), self.pipeline.recipe_path(svc)]
        for manifest in BUILD_MANIFESTS:
            path = os.path.join(context, manifest)
            if os.path.isfile(path):
                roots.append(path)
        return roots, [], True

    def watch(self, services: Optional[List[str]] = None) -> List[DevLoopWatcher]:
        """
        Starts one dev-loop watcher per selected service that has a build.

        :raises OrchestrationError: If a selected service has nothing to build.
        """
        names = services or [n for n, s in self.config.services.items() if s.build is not None]
        for name in names:
            if self._manager(name).service_def.build is None:
                raise OrchestrationError(f"Service {name} has no build section to watch")
            roots, ignore, rebuild = self.watch_roots(name)
            watcher = DevLoopWatcher(
                name,
                roots,
                rebuild=self._rebuild_hook(name) if rebuild else None,
                restart=self._replace_hook(name),
                stop=self._stop_hook(name),
                ignore=ignore,
                poll_interval=self.settings.watch_poll_interval,
                debounce=self.settings.watch_debounce,
            )
            watcher.start()
            self.watchers.append(watcher)
        return self.watchers

    def _rebuild_hook(self, name: str):
        return lambda: self.pipeline.build(self.config.services[name])

    def _replace_hook(self, name: str):
        def _replace():
            manager = self.managers[name]
            if manager.is_running() or manager.record().pid is not None:
                self.stop(name)
            self._start_service(name)
        return _replace

    def _stop_hook(self, name: str):
        return lambda: self.stop(name)

    def wait(self, stop_event: Optional[threading.Event] = None):
        """
        Blocks the calling thread until the event is set or the user interrupts.
        """
        stop_event = stop_event or threading.Event()
        try:
            while not stop_event.wait(0.5):
                pass
        except KeyboardInterrupt:
            logger.info("Interrupted")
