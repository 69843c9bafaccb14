"""
Duplex voice session.

Phases: idle -> connecting -> listening <-> thinking <-> calling_tool ->
listening; error is reachable from anywhere and a restart returns to
connecting. The session owns its audio track and transport exclusively
and releases both on every exit path.
"""

from __future__ import annotations

import asyncio
import base64
import enum
import logging
from typing import Any, Awaitable, Callable

from codraw.core.exceptions import VoiceSessionError
from codraw.engine.tools import VOICE_TOOLS, ToolCall, ToolDispatcher, ToolHandler, ToolOutput
from codraw.services.realtime import AudioSource, AudioTrack, RealtimeTransport

logger = logging.getLogger(__name__)


class VoicePhase(str, enum.Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    LISTENING = "listening"
    THINKING = "thinking"
    CALLING_TOOL = "calling_tool"
    ERROR = "error"


class VoiceSession:
    def __init__(
        self,
        audio_source: AudioSource,
        transport_factory: Callable[[], RealtimeTransport],
        tool_handlers: dict[str, ToolHandler],
        *,
        instructions: str = "",
        voice: str = "alloy",
        on_state_change: Callable[[dict[str, Any]], None] | None = None,
        on_audio: Callable[[bytes], Awaitable[None]] | None = None,
    ):
        self.audio_source = audio_source
        self.transport_factory = transport_factory
        self.tool_handlers = tool_handlers
        self.instructions = instructions
        self.voice = voice
        self.on_state_change = on_state_change
        self.on_audio = on_audio

        self.phase = VoicePhase.IDLE
        self.detail_text = ""
        self.is_muted = False
        self._track: AudioTrack | None = None
        self._transport: RealtimeTransport | None = None
        self._dispatcher: ToolDispatcher | None = None
        self._tasks: list[asyncio.Task] = []

    @property
    def active(self) -> bool:
        """True while media resources are held."""
        return self._transport is not None

    def state(self) -> dict[str, Any]:
        return {
            "phase": self.phase.value,
            "detail_text": self.detail_text,
            "is_muted": self.is_muted,
            "active": self.active,
        }

    def _set_phase(self, phase: VoicePhase, detail: str = "") -> None:
        self.phase = phase
        self.detail_text = detail
        if self.on_state_change is not None:
            self.on_state_change(self.state())

    # -- lifecycle ---------------------------------------------------------

    async def start_session(self) -> None:
        if self.phase == VoicePhase.ERROR and self.active:
            logger.info("voice.restarting_after_error")
            await self._teardown()
        if self.active or self.phase == VoicePhase.CONNECTING:
            return
        self._set_phase(VoicePhase.CONNECTING, "Connecting...")
        try:
            self._track = await self.audio_source.acquire()
            self._transport = self.transport_factory()
            await self._transport.connect()
            await self._transport.send(self._session_update())
        except (VoiceSessionError, OSError) as exc:
            logger.warning("voice.start_failed", extra={"error": str(exc)})
            await self._fail(getattr(exc, "detail", None) or str(exc) or "Voice session failed to start")
            return

        self._dispatcher = ToolDispatcher(
            self.tool_handlers,
            send_output=self._send_tool_output,
            on_drained=self._request_response,
            on_error=self._on_tool_error,
        )
        loop = asyncio.get_running_loop()
        self._tasks = [
            loop.create_task(self._receive_loop()),
            loop.create_task(self._pump_audio()),
        ]
        logger.info("voice.session_started")
        self._set_phase(VoicePhase.LISTENING, "Listening...")

    async def stop_session(self) -> None:
        """Release everything; safe to call repeatedly."""
        await self._teardown()
        self._set_phase(VoicePhase.IDLE)

    async def toggle_session(self) -> None:
        if self.active:
            await self.stop_session()
        else:
            await self.start_session()

    def toggle_mute(self) -> bool:
        if self._track is None:
            return self.is_muted
        self._track.enabled = not self._track.enabled
        self.is_muted = not self._track.enabled
        if self.on_state_change is not None:
            self.on_state_change(self.state())
        return self.is_muted

    def _session_update(self) -> dict[str, Any]:
        return {
            "type": "session.update",
            "session": {
                "modalities": ["audio", "text"],
                "instructions": self.instructions,
                "voice": self.voice,
                "input_audio_format": "pcm16",
                "output_audio_format": "pcm16",
                "turn_detection": {"type": "server_vad"},
                "tools": VOICE_TOOLS,
                "tool_choice": "auto",
            },
        }

    async def _teardown(self) -> None:
        current = asyncio.current_task()
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            if task is not current:
                task.cancel()
        for task in tasks:
            if task is current:
                continue
            try:
                await task
            except asyncio.CancelledError:
                pass

        dispatcher, self._dispatcher = self._dispatcher, None
        if dispatcher is not None:
            await dispatcher.stop()

        track, self._track = self._track, None
        if track is not None:
            track.stop()

        transport, self._transport = self._transport, None
        if transport is not None:
            try:
                await transport.close()
            except (VoiceSessionError, OSError):
                logger.warning("voice.transport_close_failed", exc_info=True)
        self.is_muted = False

    async def _fail(self, description: str) -> None:
        await self._teardown()
        logger.error("voice.session_failed", extra={"description": description})
        self._set_phase(VoicePhase.ERROR, description)

    # -- background tasks --------------------------------------------------

    async def _pump_audio(self) -> None:
        track, transport = self._track, self._transport
        if track is None or transport is None:
            return
        try:
            async for chunk in track.frames():
                await transport.send_audio(chunk)
        except (VoiceSessionError, OSError) as exc:
            await self._fail(f"Audio stream failed: {exc}")

    async def _receive_loop(self) -> None:
        transport = self._transport
        if transport is None:
            return
        try:
            async for event in transport.events():
                await self._handle_event(event)
        except (VoiceSessionError, OSError) as exc:
            await self._fail(f"Voice connection lost: {exc}")
            return
        if self._transport is transport:
            await self._fail("Voice connection closed")

    async def _handle_event(self, event: dict[str, Any]) -> None:
        kind = event.get("type", "")
        if kind in ("session.created", "session.updated"):
            logger.debug("voice.session_event", extra={"event_type": kind})
        elif kind == "input_audio_buffer.speech_started":
            self._set_phase(VoicePhase.LISTENING, "Listening...")
        elif kind in ("input_audio_buffer.speech_stopped", "response.created"):
            if self.phase != VoicePhase.CALLING_TOOL:
                self._set_phase(VoicePhase.THINKING, "Thinking...")
        elif kind == "response.function_call_arguments.done":
            call = ToolCall(
                call_id=str(event.get("call_id") or ""),
                name=str(event.get("name") or ""),
                arguments=event.get("arguments") or "",
            )
            if self._dispatcher is not None and call.call_id:
                self._set_phase(VoicePhase.CALLING_TOOL, f"Running {call.name}...")
                self._dispatcher.submit(call)
        elif kind in ("response.audio.delta", "response.output_audio.delta"):
            delta = event.get("delta")
            if delta and self.on_audio is not None:
                await self.on_audio(base64.b64decode(delta))
        elif kind == "response.done":
            if self.phase == VoicePhase.THINKING and (self._dispatcher is None or self._dispatcher.idle):
                self._set_phase(VoicePhase.LISTENING, "Listening...")
        elif kind == "error":
            error = event.get("error") or {}
            message = error.get("message") if isinstance(error, dict) else str(error)
            logger.warning("voice.remote_error", extra={"error": message})
            self._set_phase(VoicePhase.ERROR, message or "Voice service error")

    # -- tool plumbing -----------------------------------------------------

    async def _send_tool_output(self, output: ToolOutput) -> None:
        if self._transport is None:
            raise VoiceSessionError("Voice connection is not open")
        await self._transport.send(
            {
                "type": "conversation.item.create",
                "item": {
                    "type": "function_call_output",
                    "call_id": output.call_id,
                    "output": output.output,
                },
            }
        )

    async def _request_response(self) -> None:
        if self._transport is None:
            return
        await self._transport.send({"type": "response.create"})
        if self.phase == VoicePhase.CALLING_TOOL:
            self._set_phase(VoicePhase.THINKING, "Thinking...")

    def _on_tool_error(self, description: str) -> None:
        self._set_phase(VoicePhase.ERROR, description)
