import random
import string
import pytest
from berth.errors import RecipeError, TopologyError
from berth.PARSERS.dockerfile_parser import DockerfileParser
from berth.PARSERS.compose_parser import ComposeParser
from berth.PARSERS.recipe_parser import RecipeParser

rng = random.Random(1234)


def random_string(length):
    return ''.join(rng.choice(string.printable) for _ in range(length))


def test_fuzz_dockerfile_parser():
    parser = DockerfileParser()
    for _ in range(100):
        content = random_string(rng.randint(0, 1000))
        instructions = parser.parse_from_string(content)
        assert all(inst.instruction.isupper() for inst in instructions)


def test_fuzz_recipe_parser():
    parser = RecipeParser()
    for _ in range(100):
        content = random_string(rng.randint(0, 1000))
        try:
            parser.parse_from_string(content)
        except RecipeError:
            pass


def test_fuzz_compose_parser():
    parser = ComposeParser()
    for _ in range(100):
        content = random_string(rng.randint(0, 1000))
        try:
            # Random junk is rarely valid YAML; it must fail as a topology error
            parser.parse_from_string(content)
        except TopologyError:
            pass


@pytest.mark.parametrize("content", [
    "services: [1, 2]",
    "services:\n  api: 3",
    "services:\n  api:\n    ports: {a: b}",
    "services:\n  api:\n    image: api\n    healthcheck: yes",
    "services:\n  api:\n    image: api\n    restart: sometimes",
    "services:\n  api:\n    image: api\n    depends_on: 7",
    "- just\n- a\n- list",
])
def test_malformed_compose_shapes(content):
    with pytest.raises(TopologyError):
        ComposeParser().parse_from_string(content)


def test_edge_cases_parsers():
    dockerfile_parser = DockerfileParser()

    # Empty string
    assert dockerfile_parser.parse_from_string("") == []

    # Only whitespace
    assert dockerfile_parser.parse_from_string("   \n\t  ") == []

    # Very long line
    assert len(dockerfile_parser.parse_from_string("RUN " + "a" * 10000)) == 1

    # Many line continuations
    instructions = dockerfile_parser.parse_from_string("RUN echo \\\n" * 100 + "hello")
    assert len(instructions) == 1

    # Dangling continuation at end of file
    assert len(dockerfile_parser.parse_from_string("FROM alpine\nRUN echo \\")) == 2

    with pytest.raises(RecipeError):
        RecipeParser().parse_from_string("")
