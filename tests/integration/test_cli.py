import json
import sys

import pytest
import yaml
from click.testing import CliRunner

from berth.CLI.main import cli


@pytest.fixture
def project(tmp_path):
    (tmp_path / "Dockerfile").write_text(
        "FROM python:3.12-slim\nWORKDIR /srv\nCOPY app.py .\nCMD [\"python\", \"app.py\"]\n"
    )
    (tmp_path / "app.py").write_text("print('hello')\n")
    compose = {
        "services": {
            "api": {
                "build": ".",
                "ports": ["9999:9999"],
                "depends_on": ["cache"],
            },
            "cache": {
                "image": "redis:7",
                "command": [sys.executable, "-c", "import time; time.sleep(60)"],
            },
        }
    }
    with open(tmp_path / "docker-compose.yml", "w") as f:
        yaml.dump(compose, f)
    return tmp_path


def invoke(project, *args):
    return CliRunner().invoke(cli, ["-f", str(project / "docker-compose.yml"), *args], obj={})


def test_cli_help():
    runner = CliRunner()
    result = runner.invoke(cli, ['--help'])
    assert result.exit_code == 0
    assert 'Start services' in result.output


def test_cli_up_no_file(tmp_path):
    runner = CliRunner()
    result = runner.invoke(cli, ['-f', str(tmp_path / 'non_existent.yml'), 'up'], obj={})
    assert result.exit_code == 1
    assert 'Error: Cannot read topology' in result.output


def test_cli_config_prints_topology(project):
    result = invoke(project, "config")
    assert result.exit_code == 0
    topology = yaml.safe_load(result.output)
    assert set(topology["services"]) == {"api", "cache"}
    assert topology["services"]["api"]["ports"][0]["host_port"] == 9999


def test_cli_config_rejects_invalid_topology(tmp_path):
    with open(tmp_path / "docker-compose.yml", "w") as f:
        yaml.dump({"services": {"api": {"image": "api", "depends_on": ["db"]}}}, f)
    result = CliRunner().invoke(cli, ["-f", str(tmp_path / "docker-compose.yml"), "config"], obj={})
    assert result.exit_code == 1
    assert "db" in result.output


def test_cli_ps_before_up(project):
    result = invoke(project, "ps")
    assert result.exit_code == 0
    lines = result.output.splitlines()
    assert lines[0].startswith("SERVICE")
    assert lines[2].split()[:3] == ["cache", "created", "none"]
    assert "9999->9999/tcp" in lines[3]


def test_cli_recipe(project):
    result = invoke(project, "recipe", "api")
    assert result.exit_code == 0
    assert "FROM python:3.12-slim" in result.output
    assert "WORKDIR /srv" in result.output

    result = invoke(project, "recipe", "missing")
    assert result.exit_code == 1
    assert "No such service: missing" in result.output


def test_cli_resolve_config(tmp_path):
    (tmp_path / "default.json").write_text(json.dumps({"server": {"port": 9999}, "debug": True}))
    (tmp_path / "development.json").write_text(json.dumps({"debug": False}))

    runner = CliRunner()
    result = runner.invoke(cli, ["resolve-config", "--dir", str(tmp_path), "--mode", "development"], obj={})
    assert result.exit_code == 0
    assert json.loads(result.output) == {"server": {"port": 9999}, "debug": False}
    assert not (tmp_path / "resolved.json").exists()

    result = runner.invoke(cli, ["resolve-config", "--dir", str(tmp_path), "--mode", "development", "--write"],
                           obj={})
    assert result.exit_code == 0
    assert (tmp_path / "resolved.json").exists()


def test_cli_resolve_config_missing_overlay(tmp_path):
    (tmp_path / "default.json").write_text("{}")
    result = CliRunner().invoke(cli, ["resolve-config", "--dir", str(tmp_path), "--mode", "staging"], obj={})
    assert result.exit_code == 1
    assert "staging" in result.output
