"""
Gateway `agent` events -> frontend frames.

The gateway multiplexes one agent run over four streams:

  lifecycle   {"phase": "start"|"end"|"cancelled"|"error", "message"?}
  assistant   {"delta"?, "text"?}      incremental reply text
  thinking    {"delta"?, "text"?}      incremental reasoning text
  tool        {"phase": "start", "name", "arguments"}
              {"phase": "result", "name", "result"}

Session keys arrive qualified with the owning agent ("agent:main:webui:s1");
frontends only ever see the bare key they sent ("webui:s1").
"""
from clawrelay.frames import Chunk, Lifecycle, SessionFrame, Thinking, ToolResult, ToolStart

DEFAULT_AGENT_ID = "main"

TERMINAL_PHASES = ("end", "cancelled")


def agent_prefix(agent_id: str = DEFAULT_AGENT_ID) -> str:
    return f"agent:{agent_id or DEFAULT_AGENT_ID}:"


def add_agent_prefix(session_key: str, agent_id: str = DEFAULT_AGENT_ID) -> str:
    """Qualify a session key the way the gateway does."""
    return agent_prefix(agent_id) + session_key


def strip_agent_prefix(session_key: str, agent_id: str = DEFAULT_AGENT_ID) -> str:
    prefix = agent_prefix(agent_id)
    if session_key.startswith(prefix):
        return session_key[len(prefix):]
    return session_key


def _text(data: dict) -> str:
    text = data.get("delta") or data.get("text") or ""
    return text if isinstance(text, str) else ""


def translate_agent_event(gateway: int, payload: dict,
                          agent_id: str = DEFAULT_AGENT_ID) -> SessionFrame | None:
    """
    Map one `agent` event payload to a frontend frame.

    Returns None for payloads that carry nothing a frontend should see:
    missing stream or session key, empty text, unknown streams and tool
    phases other than start/result.
    """
    if not isinstance(payload, dict):
        return None
    stream = payload.get("stream")
    raw_key = payload.get("sessionKey")
    if not stream or not isinstance(raw_key, str):
        return None
    session_key = strip_agent_prefix(raw_key, agent_id)
    if not session_key:
        return None
    data = payload.get("data")
    if not isinstance(data, dict):
        data = {}

    if stream == "lifecycle":
        return Lifecycle(
            gateway=gateway,
            session_key=session_key,
            phase=data.get("phase"),
            run_id=payload.get("runId"),
            message=data.get("message"),
        )

    if stream == "assistant":
        text = _text(data)
        return Chunk(gateway=gateway, session_key=session_key, text=text) if text else None

    if stream == "thinking":
        text = _text(data)
        return Thinking(gateway=gateway, session_key=session_key, text=text) if text else None

    if stream == "tool":
        phase = data.get("phase")
        if phase == "start":
            return ToolStart(gateway=gateway, session_key=session_key,
                             name=data.get("name"), args=data.get("arguments"))
        if phase == "result":
            return ToolResult(gateway=gateway, session_key=session_key,
                              name=data.get("name"), result=data.get("result"))
        return None

    return None
