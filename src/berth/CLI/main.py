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
Command Line Interface for berth.
"""
import functools
import json
import os
import signal
import subprocess
import sys
import threading

import click
import psutil
import yaml
from pydantic import ValidationError

from ..BUILDERS.recipe_renderer import RecipeRenderer
from ..errors import BerthError, OrchestrationError
from ..MANAGERS.configuration_loader import ConfigurationLoader, resolve_runtime_mode
from ..MANAGERS.log_aggregator import LogAggregator
from ..MANAGERS.service_orchestrator import ServiceOrchestrator
from ..MODELS.settings import BerthSettings
from ..PARSERS.compose_parser import ComposeParser
from ..RUNNERS.process_runner import pid_alive
from ..UTILS.logging_setup import configure_logging


def handle_errors(f):
    """Turns berth errors into ``Error: ...`` on stderr and exit status 1."""
    @functools.wraps(f)
    def wrapper(*args, **kwargs):
        try:
            return f(*args, **kwargs)
        except BerthError as e:
            click.echo(f"Error: {e}", err=True)
            click.get_current_context().exit(1)
    return wrapper


def _config(ctx):
    if "config" not in ctx.obj:
        settings = ctx.obj["settings"]
        ctx.obj["config"] = ComposeParser(settings.interpolation_env).parse(ctx.obj["file"])
    return ctx.obj["config"]


def _orchestrator(ctx) -> ServiceOrchestrator:
    if "orchestrator" not in ctx.obj:
        ctx.obj["orchestrator"] = ServiceOrchestrator(_config(ctx), ctx.obj["settings"])
    return ctx.obj["orchestrator"]


def _supervisor_pid_file(ctx) -> str:
    return ctx.obj["settings"].path("supervisor.pid")


def _read_pid(path: str):
    try:
        with open(path, "r") as f:
            return int(f.read().strip())
    except (OSError, ValueError):
        return None


def _run_foreground(ctx, orchestrator: ServiceOrchestrator, on_ready=None):
    """Keeps supervising until Ctrl+C or SIGTERM, then takes everything down."""
    stop_event = threading.Event()
    pid_file = _supervisor_pid_file(ctx)
    os.makedirs(os.path.dirname(pid_file), exist_ok=True)
    with open(pid_file, "w") as f:
        f.write(str(os.getpid()))
    previous = signal.signal(signal.SIGTERM, lambda signum, frame: stop_event.set())
    try:
        if on_ready:
            on_ready()
        click.echo("Running... Press Ctrl+C to stop.")
        orchestrator.wait(stop_event)
    finally:
        signal.signal(signal.SIGTERM, previous)
        click.echo("Stopping services...")
        orchestrator.down()
        if _read_pid(pid_file) == os.getpid():
            os.remove(pid_file)


@click.group()
@click.option('--file', '-f', default='docker-compose.yml', help='Compose file path')
@click.option('--project-dir', default=None, help='Project directory (default: the compose file directory)')
@click.option('--log-level', default=None, help='Log level (default: BERTH_LOG_LEVEL or INFO)')
@click.option('--log-format', type=click.Choice(['text', 'json']), default=None, help='Log format')
@click.pass_context
def cli(ctx, file, project_dir, log_level, log_format):
    """
    berth - build and run a service topology as native processes.

    Reads a multi-stage build recipe, compose-style topology manifests and
    layered JSON configuration, builds artifacts and supervises the services.
    """
    ctx.ensure_object(dict)
    file = os.path.abspath(file)
    try:
        settings = BerthSettings.from_env(
            project_dir=project_dir or os.path.dirname(file),
            log_level=log_level,
            log_format=log_format,
        )
    except ValidationError as e:
        raise click.UsageError(str(e))
    configure_logging(settings.log_level, json_format=settings.log_format == "json")
    ctx.obj['file'] = file
    ctx.obj['settings'] = settings


@cli.command()
@click.option('--detach', '-d', is_flag=True, help='Run in background')
@click.option('--build', 'build_first', is_flag=True, help='Rebuild artifacts before starting')
@click.argument('services', nargs=-1)
@click.pass_context
@handle_errors
def up(ctx, detach, build_first, services):
    """Start services defined in the compose file."""
    orchestrator = _orchestrator(ctx)
    services = list(services) or None

    pid_file = _supervisor_pid_file(ctx)
    running = _read_pid(pid_file)
    if pid_alive(running):
        raise OrchestrationError(f"A supervisor is already running (pid {running}); use 'berth down' first")

    if not detach:
        orchestrator.up(services, build=build_first)
        click.echo("Services started.")
        _run_foreground(ctx, orchestrator)
        return

    # build in the foreground so failures reach the operator
    names = orchestrator.resolver.resolve_order(orchestrator.config, services)
    for name in names:
        svc = orchestrator.config.services[name]
        if svc.build is not None and (build_first or orchestrator.pipeline.store.load(name) is None):
            orchestrator.pipeline.build(svc)

    settings = ctx.obj['settings']
    log_path = settings.path("logs", "berth.log")
    os.makedirs(os.path.dirname(log_path), exist_ok=True)
    command = [sys.executable, "-m", "berth.CLI.main", "-f", ctx.obj['file'],
               "--project-dir", settings.project_dir, "up"] + list(services or [])
    with open(log_path, "a") as log:
        daemon = subprocess.Popen(command, stdin=subprocess.DEVNULL, stdout=log, stderr=subprocess.STDOUT,
                                  start_new_session=True, cwd=settings.project_dir)
    click.echo(f"Services starting in the background (supervisor pid {daemon.pid}).")
    click.echo(f"Supervisor log: {log_path}")


@cli.command()
@click.option('--volumes', '-v', is_flag=True, help='Also remove named and anonymous volumes')
@click.pass_context
@handle_errors
def down(ctx, volumes):
    """Stop all running services."""
    orchestrator = _orchestrator(ctx)
    pid_file = _supervisor_pid_file(ctx)
    supervisor = _read_pid(pid_file)
    if supervisor and supervisor != os.getpid() and pid_alive(supervisor):
        click.echo(f"Stopping supervisor (pid {supervisor})...")
        proc = psutil.Process(supervisor)
        proc.terminate()
        grace = ctx.obj['settings'].stop_grace_period * (len(orchestrator.config.services) + 1)
        _, alive = psutil.wait_procs([proc], timeout=grace)
        for p in alive:
            p.kill()
    orchestrator.down(remove_volumes=volumes)
    if os.path.exists(pid_file):
        os.remove(pid_file)
    click.echo("Services stopped.")


@cli.command()
@click.pass_context
@handle_errors
def ps(ctx):
    """List service status"""
    rows = _orchestrator(ctx).ps()
    click.echo(f"{'SERVICE':15} {'STATE':11} {'HEALTH':10} {'PID':>7}  PORTS")
    click.echo("-" * 64)
    for row in rows:
        state = row['state']
        if state == "exited" and row['exit_code'] is not None:
            state = f"exited({row['exit_code']})"
        pid = str(row['pid']) if row['pid'] else "-"
        click.echo(f"{row['name']:15} {state:11} {row['health']:10} {pid:>7}  {', '.join(row['ports'])}")


@cli.command()
@click.argument('service')
@click.pass_context
@handle_errors
def stop(ctx, service):
    """Stop one service; it stays stopped whatever its restart policy."""
    _orchestrator(ctx).stop(service)
    click.echo(f"Stopped {service}.")


@cli.command()
@click.argument('service')
@click.pass_context
@handle_errors
def start(ctx, service):
    """Start one stopped service."""
    _orchestrator(ctx).start(service)
    click.echo(f"Started {service}.")


@cli.command()
@click.argument('service')
@click.pass_context
@handle_errors
def restart(ctx, service):
    """Stop and start one service."""
    _orchestrator(ctx).restart(service)
    click.echo(f"Restarted {service}.")


@cli.command()
@click.option('--env', 'environment', default=None, help='Target runtime mode (default: the service RUN_MODE)')
@click.argument('services', nargs=-1)
@click.pass_context
@handle_errors
def build(ctx, environment, services):
    """Build service artifacts."""
    for manifest in _orchestrator(ctx).build(list(services) or None, environment):
        click.echo(f"{manifest.service:15} {manifest.tag:30} {manifest.digest[:19]}  {len(manifest.files)} files")


@cli.command()
@click.argument('services', nargs=-1)
@click.pass_context
@handle_errors
def watch(ctx, services):
    """Start services and rebuild them when their sources change."""
    orchestrator = _orchestrator(ctx)
    services = list(services) or None
    orchestrator.up(services)
    _run_foreground(ctx, orchestrator, on_ready=lambda: orchestrator.watch(services))


@cli.command()
@click.option('--tail', '-n', default=100, help='Number of lines to show (0 for all)')
@click.option('--follow', is_flag=True, help='Keep printing new lines')
@click.argument('services', nargs=-1)
@click.pass_context
@handle_errors
def logs(ctx, tail, follow, services):
    """Show service logs"""
    if not services:
        services = list(_config(ctx).services.keys())
    aggregator = LogAggregator(ctx.obj['settings'].path("logs"), emit=click.echo)
    aggregator.show(list(services), lines=tail)
    if follow:
        aggregator.follow(list(services))


@cli.command()
@click.pass_context
@handle_errors
def config(ctx):
    """Validate the compose file and print the resolved topology."""
    topology = _config(ctx).model_dump(mode="json", exclude={"source_path"})
    click.echo(yaml.safe_dump(topology, sort_keys=False, default_flow_style=False), nl=False)


@cli.command()
@click.argument('service')
@click.pass_context
@handle_errors
def recipe(ctx, service):
    """Print a service's build recipe in canonical form."""
    orchestrator = _orchestrator(ctx)
    if service not in orchestrator.config.services:
        raise OrchestrationError(f"No such service: {service}")
    parsed = orchestrator.pipeline.load_recipe(orchestrator.config.services[service])
    click.echo(RecipeRenderer().render(parsed), nl=False)


@cli.command('resolve-config')
@click.option('--dir', 'config_dir', required=True, help='Directory holding default.json and the overlays')
@click.option('--mode', default=None, help='Runtime mode (default: the RUN_MODE environment variable)')
@click.option('--write', is_flag=True, help='Also write resolved.json into the directory')
@click.pass_context
@handle_errors
def resolve_config(ctx, config_dir, mode, write):
    """Print the merged configuration for a runtime mode."""
    settings = ctx.obj['settings']
    if mode is None:
        mode = resolve_runtime_mode(settings.interpolation_env, settings.mode_variable)
    loader = ConfigurationLoader(config_dir)
    resolved = loader.resolve(mode)
    if write:
        loader.write_resolved(resolved)
    click.echo(json.dumps(resolved.document, indent=2, sort_keys=True))


@cli.command()
@click.pass_context
@handle_errors
def health(ctx):
    """Show health status of probed services."""
    orchestrator = _orchestrator(ctx)
    click.echo(f"{'SERVICE':15} {'HEALTH':10} PROBE")
    click.echo("-" * 60)
    for row in orchestrator.ps():
        check = orchestrator.config.services[row['name']].health_check
        probe = " ".join(check.test) if check is not None else "-"
        click.echo(f"{row['name']:15} {row['health']:10} {probe}")


def main():
    """
    Main entry point for the CLI.
    """
    cli(obj={})


if __name__ == '__main__':
    main()
