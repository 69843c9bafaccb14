"""
Realtime voice transport and audio plumbing.

``WebSocketRealtimeTransport`` speaks the OpenAI Realtime JSON event
protocol over a websocket. ``QueueAudioSource`` hands out tracks fed by
the client websocket; frames pushed while a track is disabled (muted) are
dropped.
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
from typing import Any, AsyncIterator, Protocol

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake, WebSocketException

from codraw.core.exceptions import VoiceSessionError

logger = logging.getLogger(__name__)


class AudioTrack(Protocol):
    enabled: bool

    def stop(self) -> None: ...

    def frames(self) -> AsyncIterator[bytes]: ...


class AudioSource(Protocol):
    async def acquire(self) -> AudioTrack: ...


class RealtimeTransport(Protocol):
    async def connect(self) -> None: ...

    async def send(self, event: dict[str, Any]) -> None: ...

    async def send_audio(self, chunk: bytes) -> None: ...

    def events(self) -> AsyncIterator[dict[str, Any]]: ...

    async def close(self) -> None: ...


class QueueAudioTrack:
    def __init__(self) -> None:
        self.enabled = True
        self.stopped = False
        self._frames: asyncio.Queue[bytes | None] = asyncio.Queue()

    def push(self, chunk: bytes) -> None:
        if not self.stopped:
            self._frames.put_nowait(chunk)

    def stop(self) -> None:
        if not self.stopped:
            self.stopped = True
            self._frames.put_nowait(None)

    async def frames(self) -> AsyncIterator[bytes]:
        while True:
            chunk = await self._frames.get()
            if chunk is None:
                return
            if self.enabled:
                yield chunk


class QueueAudioSource:
    """Audio source fed frame by frame from a client connection."""

    def __init__(self) -> None:
        self.track: QueueAudioTrack | None = None
        self.closed = False

    async def acquire(self) -> QueueAudioTrack:
        if self.closed:
            raise VoiceSessionError("Microphone unavailable", detail="audio source closed")
        if self.track is not None:
            self.track.stop()
        self.track = QueueAudioTrack()
        return self.track

    def push(self, chunk: bytes) -> None:
        if self.track is not None:
            self.track.push(chunk)

    def close(self) -> None:
        self.closed = True
        if self.track is not None:
            self.track.stop()


class WebSocketRealtimeTransport:
    def __init__(self, url: str, model: str, api_key: str | None, open_timeout: float = 10.0):
        self.url = url
        self.model = model
        self.api_key = api_key
        self.open_timeout = open_timeout
        self._ws: ClientConnection | None = None

    async def connect(self) -> None:
        if not self.api_key:
            raise VoiceSessionError("Voice is not configured", detail="OPENAI_API_KEY is not set")
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "OpenAI-Beta": "realtime=v1",
        }
        try:
            self._ws = await connect(
                f"{self.url}?model={self.model}",
                additional_headers=headers,
                open_timeout=self.open_timeout,
                max_size=None,
            )
        except (InvalidHandshake, OSError, asyncio.TimeoutError) as exc:
            raise VoiceSessionError("Could not connect to the voice service", detail=str(exc)) from exc
        logger.info("realtime.connected", extra={"model": self.model})

    async def send(self, event: dict[str, Any]) -> None:
        if self._ws is None:
            raise VoiceSessionError("Voice connection is not open")
        try:
            await self._ws.send(json.dumps(event))
        except ConnectionClosed as exc:
            raise VoiceSessionError("Voice connection closed", detail=str(exc)) from exc

    async def send_audio(self, chunk: bytes) -> None:
        await self.send(
            {"type": "input_audio_buffer.append", "audio": base64.b64encode(chunk).decode("ascii")}
        )

    async def events(self) -> AsyncIterator[dict[str, Any]]:
        if self._ws is None:
            raise VoiceSessionError("Voice connection is not open")
        try:
            async for message in self._ws:
                try:
                    event = json.loads(message)
                except json.JSONDecodeError:
                    logger.warning("realtime.invalid_event")
                    continue
                if isinstance(event, dict):
                    yield event
        except WebSocketException as exc:
            raise VoiceSessionError("Voice connection lost", detail=str(exc)) from exc

    async def close(self) -> None:
        ws, self._ws = self._ws, None
        if ws is not None:
            await ws.close()
