from berth.PARSERS.dockerfile_parser import DockerfileParser

def test_parse_from_string():
    content = """
    FROM python:3.9-slim AS base
    WORKDIR /app
    COPY --from=builder /src/out ./bin/
    RUN pip install -r requirements.txt \\
        && echo "done"
    ENV PORT=8080 MODE="dev mode"
    CMD ["python", "app.py"]
    """
    parser = DockerfileParser()
    instructions = parser.parse_from_string(content)

    inst_names = [i.instruction for i in instructions]
    assert inst_names == ["FROM", "WORKDIR", "COPY", "RUN", "ENV", "CMD"]

    # Check CMD parsing (exec form)
    cmd_inst = next(i for i in instructions if i.instruction == "CMD")
    assert cmd_inst.arguments == ["python", "app.py"]
    assert cmd_inst.exec_form

    # Check RUN with line continuation
    run_inst = next(i for i in instructions if i.instruction == "RUN")
    assert "&& echo \"done\"" in run_inst.arguments[0]
    assert not run_inst.exec_form

    copy_inst = next(i for i in instructions if i.instruction == "COPY")
    assert copy_inst.flags == {"from": "builder"}
    assert copy_inst.arguments == ["/src/out", "./bin/"]

    env_inst = next(i for i in instructions if i.instruction == "ENV")
    assert env_inst.arguments == ["PORT=8080", "MODE=dev mode"]


def test_comments_inside_continuation_are_dropped():
    content = "RUN apt-get update \\\n# a comment\n\n    && apt-get install -y curl\n"
    instructions = DockerfileParser().parse_from_string(content)
    assert len(instructions) == 1
    assert instructions[0].arguments == ["apt-get update && apt-get install -y curl"]
    assert instructions[0].line == 1


def test_legacy_env_form():
    instructions = DockerfileParser().parse_from_string("ENV GREETING hello world\nARG VERSION\n")
    assert instructions[0].arguments == ["GREETING=hello world"]
    assert instructions[1].arguments == ["VERSION"]


def test_line_numbers_follow_source():
    instructions = DockerfileParser().parse_from_string("# header\nFROM scratch\n\nCOPY a /a\n")
    assert [i.line for i in instructions] == [2, 4]
