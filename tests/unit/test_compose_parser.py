import yaml
import pytest

from berth.errors import TopologyError
from berth.MODELS.service_definition import (
    DependencyCondition,
    RestartPolicyCondition,
    VolumeKind,
    WatchAction,
)
from berth.PARSERS.compose_parser import ComposeParser

def test_parse(tmp_path):
    compose_content = {
        'services': {
            'api': {
                'build': {'context': '.', 'dockerfile': 'Dockerfile.production'},
                'ports': ['9999:8080'],
                'environment': {
                    'RUN_MODE': 'production',
                    'DEBUG': True,
                },
                'networks': ['backend'],
                'depends_on': {'mongodb': {'condition': 'service_healthy'}},
                'restart': 'unless-stopped',
            },
            'mongodb': {
                'image': 'mongo:7',
                'volumes': ['mongo_data:/data/db'],
                'networks': ['backend'],
                'healthcheck': {
                    'test': ['CMD', 'mongosh', '--eval', 'db.adminCommand("ping")'],
                    'interval': '30s',
                    'timeout': '10s',
                    'retries': 3,
                    'start_period': '20s',
                },
                'restart': 'always',
            }
        },
        'networks': {'backend': {}},
        'volumes': {
            'mongo_data': {}
        }
    }

    compose_file = tmp_path / "docker-compose.yml"
    with open(compose_file, 'w') as f:
        yaml.dump(compose_content, f)

    parser = ComposeParser()
    config = parser.parse(str(compose_file))

    assert config.name == tmp_path.name
    assert 'api' in config.services
    assert 'mongodb' in config.services
    api = config.services['api']
    assert api.build.dockerfile == 'Dockerfile.production'
    assert api.ports[0].host_port == 9999
    assert api.ports[0].container_port == 8080
    assert api.environment == {'RUN_MODE': 'production', 'DEBUG': 'true'}
    assert api.restart_policy.condition == RestartPolicyCondition.UNLESS_STOPPED
    assert api.depends_on == {'mongodb': DependencyCondition.SERVICE_HEALTHY}

    db = config.services['mongodb']
    assert db.image_name == 'mongo:7'
    assert db.health_check.interval == 30.0
    assert db.health_check.timeout == 10.0
    assert db.health_check.start_period == 20.0
    assert db.health_check.retries == 3

    assert 'mongo_data' in config.volumes
    assert db.volumes[0].source == 'mongo_data'
    assert db.volumes[0].target == '/data/db'
    assert db.volumes[0].kind == VolumeKind.VOLUME


def test_interpolation_from_context():
    content = """
services:
  api:
    image: ${IMAGE:-api:dev}
    ports:
      - "${API_PORT}:8080"
    environment:
      - RUN_MODE
      - LITERAL=$$HOME
"""
    config = ComposeParser({'API_PORT': '9000', 'RUN_MODE': 'development'}).parse_from_string(content)
    api = config.services['api']
    assert api.image_name == 'api:dev'
    assert api.ports[0].host_port == 9000
    assert api.environment == {'RUN_MODE': 'development', 'LITERAL': '$HOME'}


def test_required_variable_missing():
    content = "services:\n  api:\n    image: ${IMAGE:?IMAGE must be set}\n"
    with pytest.raises(TopologyError, match="IMAGE must be set"):
        ComposeParser().parse_from_string(content)


def test_short_forms():
    content = """
services:
  web:
    image: nginx
    command: python -m http.server 8080
    ports:
      - "8080"
      - "127.0.0.1:8081:80/udp"
    volumes:
      - ./src:/app/src:ro
      - /app/target
    restart: on-failure:5
    healthcheck:
      test: curl -f http://localhost:8080/
    develop:
      watch:
        - path: ./src
          action: sync+restart
          ignore: ["*.tmp"]
"""
    web = ComposeParser().parse_from_string(content).services['web']
    assert web.cmd == ['python', '-m', 'http.server', '8080']
    assert web.ports[0].host_port is None
    assert (web.ports[1].host_port, web.ports[1].container_port, web.ports[1].protocol) == (8081, 80, 'udp')
    assert web.volumes[0].kind == VolumeKind.BIND
    assert web.volumes[0].read_only
    assert web.volumes[1].kind == VolumeKind.ANONYMOUS
    assert web.restart_policy.condition == RestartPolicyCondition.ON_FAILURE
    assert web.restart_policy.max_retries == 5
    assert web.health_check.test == ['CMD-SHELL', 'curl -f http://localhost:8080/']
    assert web.watch[0].action == WatchAction.RESTART
    assert web.watch[0].ignore == ['*.tmp']


def test_invalid_documents():
    parser = ComposeParser()
    with pytest.raises(TopologyError, match="Invalid YAML"):
        parser.parse_from_string("services: [unclosed")
    with pytest.raises(TopologyError, match="mapping"):
        parser.parse_from_string("- just\n- a list\n")
    with pytest.raises(TopologyError, match="service 'api'"):
        parser.parse_from_string("services:\n  api:\n    image: api\n    restart: sometimes\n")
    with pytest.raises(TopologyError, match="Cannot read topology"):
        parser.parse("/nonexistent/docker-compose.yml")
