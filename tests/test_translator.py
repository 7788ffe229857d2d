import pytest

from clawrelay.frames import Chunk, Lifecycle, Thinking, ToolResult, ToolStart
from clawrelay.translator import (
    add_agent_prefix, agent_prefix, strip_agent_prefix, translate_agent_event,
)


def _payload(stream, data, key="agent:main:webui:s1", run_id="r1"):
    return {"stream": stream, "data": data, "sessionKey": key, "runId": run_id}


def test_prefix_helpers():
    assert agent_prefix() == "agent:main:"
    assert agent_prefix("ops") == "agent:ops:"
    assert add_agent_prefix("webui:s1") == "agent:main:webui:s1"
    assert strip_agent_prefix(add_agent_prefix("webui:s1", "ops"), "ops") == "webui:s1"
    assert strip_agent_prefix("webui:s1") == "webui:s1"
    assert strip_agent_prefix("agent:other:webui:s1") == "agent:other:webui:s1"


def test_lifecycle_passes_phase_and_run():
    frame = translate_agent_event(2, _payload("lifecycle", {"phase": "start"}))
    assert frame == Lifecycle(gateway=2, session_key="webui:s1", phase="start", run_id="r1")


@pytest.mark.parametrize("data", [{"delta": "Hel"}, {"text": "Hel"}])
def test_assistant_text(data):
    assert translate_agent_event(0, _payload("assistant", data)) == \
        Chunk(gateway=0, session_key="webui:s1", text="Hel")


def test_thinking_text():
    assert translate_agent_event(0, _payload("thinking", {"delta": "hmm"})) == \
        Thinking(gateway=0, session_key="webui:s1", text="hmm")


def test_empty_text_is_dropped():
    assert translate_agent_event(0, _payload("assistant", {})) is None
    assert translate_agent_event(0, _payload("thinking", {"delta": ""})) is None


def test_tool_phases():
    start = translate_agent_event(0, _payload("tool", {"phase": "start", "name": "exec",
                                                       "arguments": {"cmd": "ls"}}))
    assert start == ToolStart(gateway=0, session_key="webui:s1", name="exec", args={"cmd": "ls"})
    result = translate_agent_event(0, _payload("tool", {"phase": "result", "name": "exec",
                                                        "result": "ok"}))
    assert result == ToolResult(gateway=0, session_key="webui:s1", name="exec", result="ok")
    assert translate_agent_event(0, _payload("tool", {"phase": "update"})) is None


@pytest.mark.parametrize("payload", [
    {"data": {"text": "x"}, "sessionKey": "agent:main:webui:s1"},
    {"stream": "assistant", "data": {"text": "x"}},
    {"stream": "metrics", "data": {}, "sessionKey": "agent:main:webui:s1"},
    "not a dict",
])
def test_unusable_payloads(payload):
    assert translate_agent_event(0, payload) is None


def test_custom_agent_id():
    frame = translate_agent_event(0, _payload("assistant", {"text": "x"}, key="agent:ops:s"), "ops")
    assert frame.session_key == "s"
