from berth.BUILDERS.recipe_renderer import RecipeRenderer
from berth.PARSERS.recipe_parser import RecipeParser


def render(content):
    return RecipeRenderer().render(RecipeParser().parse_from_string(content))


def test_equivalent_recipes_render_identically():
    first = """
    FROM rust:1.75 AS builder
    WORKDIR /app
    ENV A=1 B=2
    COPY src ./src
    RUN cargo build --release
    """
    second = """
    # same build, spelled differently
    FROM rust:1.75 as builder
    ENV B=2
    ENV A=1
    WORKDIR /app
    COPY src /app/src
    RUN cargo build --release
    """
    assert render(first) == render(second)


def test_canonical_form():
    text = render("""
    FROM rust:1.75 AS builder
    WORKDIR /app
    RUN cargo build --release
    FROM debian:bookworm-slim
    COPY --from=builder /app/target/release/api /srv/api
    CMD /srv/api
    """)
    assert "FROM rust:1.75 AS builder\n" in text
    assert "WORKDIR /app\nRUN cargo build --release\n" in text
    assert 'COPY --from=builder ["/app/target/release/api", "/srv/api"]\n' in text
    assert 'CMD ["/bin/sh", "-c", "/srv/api"]\n' in text
    assert text.endswith("\n")


def test_digest_tracks_changes():
    renderer = RecipeRenderer()
    parser = RecipeParser()
    base = parser.parse_from_string("FROM alpine:3.19\nRUN echo one\n")
    same = parser.parse_from_string("FROM alpine:3.19\n\nRUN echo one\n")
    changed = parser.parse_from_string("FROM alpine:3.19\nRUN echo two\n")
    assert renderer.digest(base) == renderer.digest(same)
    assert renderer.digest(base) != renderer.digest(changed)
    assert renderer.digest(base).startswith("sha256:")
