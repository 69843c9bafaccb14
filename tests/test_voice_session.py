import asyncio
import base64
import json

import pytest

from codraw.core.exceptions import VoiceSessionError
from codraw.engine.tools import ANALYZE_WORKSPACE, DRAW_ON_CANVAS
from codraw.engine.voice import VoicePhase, VoiceSession
from codraw.services.realtime import QueueAudioSource


class FakeTransport:
    def __init__(self, fail_connect=False):
        self.fail_connect = fail_connect
        self.sent: list[dict] = []
        self.audio: list[bytes] = []
        self.closed = False
        self.inbox: asyncio.Queue = asyncio.Queue()

    async def connect(self):
        if self.fail_connect:
            raise VoiceSessionError("Could not connect to the voice service")

    async def send(self, event):
        self.sent.append(event)

    async def send_audio(self, chunk):
        self.audio.append(chunk)

    async def events(self):
        while True:
            event = await self.inbox.get()
            if event is None:
                return
            yield event

    async def close(self):
        self.closed = True

    def emit(self, event):
        self.inbox.put_nowait(event)

    def sent_types(self):
        return [event["type"] for event in self.sent]


async def _until(predicate, timeout=1.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.005)


def _session(handlers=None, fail_connect=False):
    transport = FakeTransport(fail_connect=fail_connect)
    source = QueueAudioSource()
    states: list[dict] = []
    played: list[bytes] = []

    async def on_audio(chunk):
        played.append(chunk)

    session = VoiceSession(
        source,
        lambda: transport,
        handlers or {},
        instructions="be helpful",
        on_state_change=states.append,
        on_audio=on_audio,
    )
    return session, transport, source, states, played


def _call(call_id, name, arguments=""):
    return {
        "type": "response.function_call_arguments.done",
        "call_id": call_id,
        "name": name,
        "arguments": arguments,
    }


@pytest.mark.anyio
async def test_start_sends_session_update_with_both_tools():
    session, transport, _, states, _ = _session()

    await session.start_session()

    assert session.active
    assert session.phase == VoicePhase.LISTENING
    assert [state["phase"] for state in states] == ["connecting", "listening"]
    update = transport.sent[0]
    assert update["type"] == "session.update"
    assert update["session"]["instructions"] == "be helpful"
    assert update["session"]["turn_detection"] == {"type": "server_vad"}
    assert {tool["name"] for tool in update["session"]["tools"]} == {ANALYZE_WORKSPACE, DRAW_ON_CANVAS}

    await session.stop_session()


@pytest.mark.anyio
async def test_connect_failure_ends_in_error_and_releases_resources():
    session, transport, source, _, _ = _session(fail_connect=True)

    await session.start_session()

    assert session.phase == VoicePhase.ERROR
    assert session.detail_text == "Could not connect to the voice service"
    assert not session.active
    assert transport.closed
    assert source.track.stopped


@pytest.mark.anyio
async def test_stop_session_is_idempotent():
    session, transport, source, _, _ = _session()
    await session.start_session()

    await session.stop_session()
    await session.stop_session()

    assert session.phase == VoicePhase.IDLE
    assert not session.active
    assert transport.closed
    assert source.track.stopped
    assert not session.is_muted


@pytest.mark.anyio
async def test_microphone_frames_are_streamed_and_mute_drops_them():
    session, transport, source, _, _ = _session()
    await session.start_session()

    source.push(b"\x01\x02")
    await _until(lambda: transport.audio == [b"\x01\x02"])

    assert session.toggle_mute() is True
    source.push(b"\x03")
    await asyncio.sleep(0.02)
    assert transport.audio == [b"\x01\x02"]

    assert session.toggle_mute() is False
    source.push(b"\x04")
    await _until(lambda: transport.audio == [b"\x01\x02", b"\x04"])

    await session.stop_session()


@pytest.mark.anyio
async def test_phase_follows_turn_events_and_audio_is_played():
    session, transport, _, _, played = _session()
    await session.start_session()

    transport.emit({"type": "input_audio_buffer.speech_started"})
    transport.emit({"type": "input_audio_buffer.speech_stopped"})
    await _until(lambda: session.phase == VoicePhase.THINKING)

    transport.emit({"type": "response.audio.delta", "delta": base64.b64encode(b"pcm").decode()})
    await _until(lambda: played == [b"pcm"])

    transport.emit({"type": "response.done"})
    await _until(lambda: session.phase == VoicePhase.LISTENING)

    await session.stop_session()


@pytest.mark.anyio
async def test_tool_call_output_then_response_create():
    seen = []

    async def analyze(arguments):
        seen.append(arguments)
        return "A sketch of a cat."

    session, transport, _, states, _ = _session({ANALYZE_WORKSPACE: analyze})
    await session.start_session()

    transport.emit(_call("call-1", ANALYZE_WORKSPACE, json.dumps({"focus": "ears"})))
    await _until(lambda: "response.create" in transport.sent_types())

    assert seen == [{"focus": "ears"}]
    output = transport.sent[-2]
    assert output == {
        "type": "conversation.item.create",
        "item": {"type": "function_call_output", "call_id": "call-1", "output": "A sketch of a cat."},
    }
    assert "calling_tool" in [state["phase"] for state in states]
    assert session.phase == VoicePhase.THINKING

    await session.stop_session()


@pytest.mark.anyio
async def test_tool_calls_run_in_order_with_single_follow_up_turn():
    order = []

    async def slow(arguments):
        await asyncio.sleep(0.05)
        order.append("slow")
        return {"success": True}

    async def fast(arguments):
        order.append("fast")
        return "done"

    session, transport, _, _, _ = _session({DRAW_ON_CANVAS: slow, ANALYZE_WORKSPACE: fast})
    await session.start_session()

    transport.emit(_call("call-1", DRAW_ON_CANVAS))
    transport.emit(_call("call-2", ANALYZE_WORKSPACE))
    transport.emit(_call("call-1", DRAW_ON_CANVAS))
    await _until(lambda: "response.create" in transport.sent_types())

    outputs = [event["item"]["call_id"] for event in transport.sent if event["type"] == "conversation.item.create"]
    assert order == ["slow", "fast"]
    assert outputs == ["call-1", "call-2"]
    assert transport.sent_types().count("response.create") == 1
    assert transport.sent[1]["item"]["output"] == json.dumps({"success": True})

    await session.stop_session()


@pytest.mark.anyio
async def test_tool_failure_reports_error_output_and_stays_connected():
    async def broken(arguments):
        raise RuntimeError("boom")

    session, transport, _, _, _ = _session({DRAW_ON_CANVAS: broken})
    await session.start_session()

    transport.emit(_call("call-1", DRAW_ON_CANVAS))
    await _until(lambda: "response.create" in transport.sent_types())

    output = json.loads(transport.sent[1]["item"]["output"])
    assert output == {"error": "Tool draw_on_canvas failed: boom"}
    assert session.phase == VoicePhase.ERROR
    assert session.detail_text == "Tool draw_on_canvas failed: boom"
    assert session.active

    await session.stop_session()


@pytest.mark.anyio
async def test_unknown_tool_gets_error_output():
    session, transport, _, _, _ = _session({})
    await session.start_session()

    transport.emit(_call("call-9", "paint_wall"))
    await _until(lambda: "conversation.item.create" in transport.sent_types())

    output = json.loads(transport.sent[1]["item"]["output"])
    assert output == {"error": "Unknown tool: paint_wall"}

    await session.stop_session()


@pytest.mark.anyio
async def test_remote_error_event_keeps_session_open():
    session, transport, _, _, _ = _session()
    await session.start_session()

    transport.emit({"type": "error", "error": {"message": "rate limited"}})
    await _until(lambda: session.phase == VoicePhase.ERROR)

    assert session.detail_text == "rate limited"
    assert session.active

    await session.stop_session()


@pytest.mark.anyio
async def test_start_after_remote_error_reconnects():
    transports = [FakeTransport(), FakeTransport()]
    source = QueueAudioSource()
    session = VoiceSession(source, lambda: transports.pop(0), {}, instructions="be helpful")
    await session.start_session()
    first = session._transport
    first_track = source.track

    first.emit({"type": "error", "error": {"message": "rate limited"}})
    await _until(lambda: session.phase == VoicePhase.ERROR)
    await session.start_session()

    assert session.phase == VoicePhase.LISTENING
    assert session.active
    assert first.closed
    assert first_track.stopped
    second = session._transport
    assert second is not first
    assert second.sent_types() == ["session.update"]

    await session.stop_session()
    assert second.closed


@pytest.mark.anyio
async def test_transport_disconnect_ends_session_with_error():
    session, transport, source, _, _ = _session()
    await session.start_session()

    transport.emit(None)
    await _until(lambda: not session.active)

    assert session.phase == VoicePhase.ERROR
    assert session.detail_text == "Voice connection closed"
    assert transport.closed
    assert source.track.stopped


@pytest.mark.anyio
async def test_toggle_session_starts_and_stops():
    session, _, _, _, _ = _session()

    await session.toggle_session()
    assert session.active

    await session.toggle_session()
    assert not session.active
    assert session.phase == VoicePhase.IDLE
