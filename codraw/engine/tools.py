"""
In-order dispatch of realtime function calls.

The realtime model may emit several function calls per turn. They are
serviced one at a time by a single worker in arrival order; each produces
exactly one output, and the next model turn is requested only once the
queue has drained.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from codraw.core.metrics import record_tool_call
from codraw.core.request_context import log_context

logger = logging.getLogger(__name__)

ANALYZE_WORKSPACE = "analyze_workspace"
DRAW_ON_CANVAS = "draw_on_canvas"

VOICE_TOOLS: list[dict[str, Any]] = [
    {
        "type": "function",
        "name": ANALYZE_WORKSPACE,
        "description": "Look at the whole canvas and describe what the user is working on.",
        "parameters": {
            "type": "object",
            "properties": {
                "focus": {
                    "type": "string",
                    "description": "Optional aspect of the canvas to concentrate on.",
                },
            },
            "required": [],
        },
    },
    {
        "type": "function",
        "name": DRAW_ON_CANVAS,
        "description": "Ask the artist to add a drawing to the canvas as a proposal the user can accept or reject.",
        "parameters": {
            "type": "object",
            "properties": {
                "instructions": {
                    "type": "string",
                    "description": "Self-contained description of what to draw.",
                },
            },
            "required": [],
        },
    },
]

ToolHandler = Callable[[dict[str, Any]], Awaitable[Any]]


@dataclass(frozen=True)
class ToolCall:
    call_id: str
    name: str
    arguments: str = ""

    def parsed_arguments(self) -> dict[str, Any]:
        if not self.arguments:
            return {}
        try:
            data = json.loads(self.arguments)
        except json.JSONDecodeError:
            logger.warning("tools.invalid_arguments", extra={"tool": self.name})
            return {}
        return data if isinstance(data, dict) else {}


@dataclass(frozen=True)
class ToolOutput:
    call_id: str
    output: str
    is_error: bool = False


class ToolDispatcher:
    def __init__(
        self,
        handlers: dict[str, ToolHandler],
        send_output: Callable[[ToolOutput], Awaitable[None]],
        on_drained: Callable[[], Awaitable[None]],
        on_error: Callable[[str], None] | None = None,
    ):
        self.handlers = handlers
        self.send_output = send_output
        self.on_drained = on_drained
        self.on_error = on_error
        self._queue: asyncio.Queue[ToolCall] = asyncio.Queue()
        self._calls: dict[str, ToolCall] = {}
        self._outputs: dict[str, ToolOutput] = {}
        self._worker: asyncio.Task | None = None

    @property
    def idle(self) -> bool:
        return self._queue.empty() and len(self._outputs) == len(self._calls)

    def output_for(self, call_id: str) -> ToolOutput | None:
        return self._outputs.get(call_id)

    def submit(self, call: ToolCall) -> bool:
        """Queue ``call``; returns False for a call id that was already seen."""
        if call.call_id in self._calls:
            logger.info("tools.duplicate_ignored", extra={"call_id": call.call_id})
            return False
        self._calls[call.call_id] = call
        self._queue.put_nowait(call)
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(self._run())
        return True

    async def stop(self) -> None:
        worker, self._worker = self._worker, None
        if worker is None or worker is asyncio.current_task():
            return
        worker.cancel()
        try:
            await worker
        except asyncio.CancelledError:
            pass

    async def _run(self) -> None:
        while True:
            call = await self._queue.get()
            try:
                output = await self._execute(call)
                self._outputs[call.call_id] = output
                await self.send_output(output)
                if self._queue.empty():
                    await self.on_drained()
            except Exception:
                logger.exception("tools.output_undeliverable", extra={"call_id": call.call_id})
                return
            finally:
                self._queue.task_done()

    async def _execute(self, call: ToolCall) -> ToolOutput:
        handler = self.handlers.get(call.name)
        if handler is None:
            record_tool_call(call.name, "unknown")
            logger.warning("tools.unknown_tool", extra={"tool": call.name, "call_id": call.call_id})
            return ToolOutput(call.call_id, json.dumps({"error": f"Unknown tool: {call.name}"}), is_error=True)

        with log_context(tool_call_id=call.call_id):
            logger.info("tools.call_started", extra={"tool": call.name})
            try:
                result = await handler(call.parsed_arguments())
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                record_tool_call(call.name, "error")
                logger.exception("tools.call_failed", extra={"tool": call.name})
                description = f"Tool {call.name} failed: {exc}"
                if self.on_error is not None:
                    self.on_error(description)
                return ToolOutput(call.call_id, json.dumps({"error": description}), is_error=True)

        record_tool_call(call.name, "success")
        output = result if isinstance(result, str) else json.dumps(result, default=str)
        return ToolOutput(call.call_id, output)
