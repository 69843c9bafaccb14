import asyncio
import json
import logging
import uuid

from fastapi import APIRouter, File, UploadFile, WebSocket, WebSocketDisconnect

from codraw.api.deps import BoardManagerDep, TranscriberDep, WorkspaceAnalyzerDep
from codraw.api.v1.schemas import AnalyzeWorkspaceRequest, AnalyzeWorkspaceResponse, TranscriptionResponse
from codraw.core.exceptions import EntityNotFoundError
from codraw.core.request_context import log_context


logger = logging.getLogger(__name__)

router = APIRouter(tags=["voice"])

BOARD_NOT_OPEN_CLOSE_CODE = 4404


@router.post("/voice/transcribe", response_model=TranscriptionResponse)
def transcribe(audio: UploadFile = File(...), transcriber=TranscriberDep):
    data = audio.file.read()
    text = transcriber.transcribe(
        data,
        filename=audio.filename or "audio.wav",
        content_type=audio.content_type or "audio/wav",
    )
    return TranscriptionResponse(text=text)


@router.post("/voice/analyze-workspace", response_model=AnalyzeWorkspaceResponse)
def analyze_workspace(payload: AnalyzeWorkspaceRequest, analyzer=WorkspaceAnalyzerDep):
    analysis = analyzer.analyze(payload.image, payload.focus)
    return AnalyzeWorkspaceResponse(analysis=analysis)


@router.websocket("/boards/{board_id}/voice")
async def voice_socket(websocket: WebSocket, board_id: uuid.UUID, manager=BoardManagerDep):
    """Bridge one client to the board's voice session.

    Binary frames carry microphone audio. Text frames carry control
    messages ``{"type": "start" | "stop" | "mute"}``. The server sends
    state updates as JSON and assistant audio as binary frames.
    """
    await websocket.accept()
    try:
        session = manager.get(str(board_id))
    except EntityNotFoundError:
        await websocket.close(code=BOARD_NOT_OPEN_CLOSE_CODE, reason="Board is not open")
        return

    voice = session.voice
    outgoing: asyncio.Queue[dict] = asyncio.Queue()

    async def send_states() -> None:
        while True:
            state = await outgoing.get()
            await websocket.send_json({"type": "state", **state})

    async def send_audio(chunk: bytes) -> None:
        await websocket.send_bytes(chunk)

    voice.on_state_change = outgoing.put_nowait
    voice.on_audio = send_audio
    sender = asyncio.get_running_loop().create_task(send_states())

    with log_context(board_id=str(board_id)):
        logger.info("voice.client_connected")
        try:
            await voice.start_session()
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                if message.get("bytes") is not None:
                    session.audio_source.push(message["bytes"])
                    continue
                try:
                    control = json.loads(message.get("text") or "{}")
                except json.JSONDecodeError:
                    logger.warning("voice.bad_control_message")
                    continue
                kind = control.get("type")
                if kind == "mute":
                    voice.toggle_mute()
                elif kind == "stop":
                    await voice.stop_session()
                elif kind == "start":
                    await voice.start_session()
        except WebSocketDisconnect:
            pass
        finally:
            await voice.stop_session()
            voice.on_state_change = None
            voice.on_audio = None
            sender.cancel()
            await asyncio.gather(sender, return_exceptions=True)
            logger.info("voice.client_disconnected")
