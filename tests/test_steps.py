import pytest

from havend.steps import Command, CommandEngine, CommandFlow, FlowState, StepResult


def _ask_name(owner, flow, line):
    return StepResult.advance("name?")


def _take_name(owner, flow, line):
    if not line:
        return StepResult.hold("name?")
    flow.data["name"] = line
    return StepResult.advance("colour?")


def _take_colour(owner, flow, line):
    if line == "back":
        return StepResult.rewind("name?")
    owner.append((flow.data["name"], line))
    return StepResult.advance(f"saved {flow.data['name']}")


def test_flow_holds_advances_and_completes() -> None:
    saved: list[tuple[str, str]] = []
    flow = CommandFlow("demo", [_ask_name, _take_name, _take_colour], owner=saved, fallback=1)

    assert flow.feed("").lines == ["name?"]
    assert flow.feed("").lines == ["name?"]
    assert flow.cursor == 1
    flow.feed("ada")
    assert flow.data == {"name": "ada"}

    assert flow.feed("blue").lines == ["saved ada"]
    assert flow.state is FlowState.COMPLETED
    assert flow.data == {}
    assert saved == [("ada", "blue")]
    with pytest.raises(RuntimeError):
        flow.feed("again")


def test_rewind_returns_to_fallback() -> None:
    flow = CommandFlow("demo", [_ask_name, _take_name, _take_colour], owner=[], fallback=1)
    flow.feed("")
    flow.feed("ada")
    flow.feed("back")
    assert flow.cursor == 1
    assert flow.active


def test_step_error_cancels_flow() -> None:
    def boom(owner, flow, line):
        raise KeyError("gone")

    flow = CommandFlow("demo", [_ask_name, boom])
    flow.feed("")
    flow.data["partial"] = True
    with pytest.raises(KeyError):
        flow.feed("x")
    assert flow.state is FlowState.CANCELLED
    assert flow.data == {}


def test_flow_arguments_are_checked() -> None:
    with pytest.raises(ValueError):
        CommandFlow("empty", [])
    with pytest.raises(ValueError):
        CommandFlow("demo", [_ask_name], fallback=3)


def _engine(owner=None, authorize=None) -> CommandEngine:
    table = {
        "echo": Command("echo", func=lambda o, args: [" ".join(args)]),
        "ask": Command("ask", steps=(_ask_name, _take_name, _take_colour), fallback=1),
    }
    return CommandEngine(owner if owner is not None else [], table, authorize=authorize)


def test_engine_one_shot_and_unknown() -> None:
    engine = _engine()
    out = engine.feed("echo hello there")
    assert out.lines == ["hello there"]
    assert out.command == "echo"
    assert out.active is False

    assert engine.feed("frob").lines == ["frob: command not found"]
    assert engine.feed("   ").lines == []


def test_engine_routes_input_to_active_flow() -> None:
    saved: list = []
    engine = _engine(saved)
    out = engine.feed("ask")
    assert (out.lines, out.command, out.active) == (["name?"], "ask", True)

    # while a flow is active, command names are plain input
    engine.feed("echo")
    out = engine.feed("red")
    assert out.active is False
    assert saved == [("echo", "red")]
    assert engine.flow is None
    assert engine.feed("echo back").lines == ["back"]


def test_cancel_tokens() -> None:
    engine = _engine()
    engine.feed("ask")
    out = engine.feed("  EXIT ")
    assert out.lines == ["Cancelled"]
    assert out.active is False
    assert engine.flow is None
    assert engine.cancel() is False


def test_external_cancel() -> None:
    engine = _engine()
    engine.feed("ask")
    flow = engine.flow
    assert engine.cancel() is True
    assert flow.state is FlowState.CANCELLED


def test_authorize_runs_before_command() -> None:
    calls = []

    def deny(owner, name):
        calls.append(name)
        raise PermissionError(name)

    engine = _engine(authorize=deny)
    with pytest.raises(PermissionError):
        engine.feed("ask")
    assert calls == ["ask"]
    assert engine.flow is None


def test_command_without_handler_is_an_error() -> None:
    engine = CommandEngine([], {"broken": Command("broken")})
    with pytest.raises(ValueError):
        engine.feed("broken")
    assert engine.flow is None
    # the engine stays usable after the failure
    with pytest.raises(ValueError):
        engine.feed("broken")
    assert engine.cancel() is False
