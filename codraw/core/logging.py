import json
import logging

from codraw.core.request_context import (
    get_board_id,
    get_generation_source,
    get_request_id,
    get_tool_call_id,
)


class RequestIdFilter(logging.Filter):
    """Populate structured log records with request, board and tool IDs."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = get_request_id() or "unknown"
        record.board_id = get_board_id() or ""
        record.generation_source = get_generation_source() or ""
        record.tool_call_id = get_tool_call_id() or ""
        return True


class StructuredJsonFormatter(logging.Formatter):
    """Emit log records as JSON with consistent fields."""

    _SKIP_FIELDS = {
        "args",
        "created",
        "exc_info",
        "exc_text",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "message",
        "msg",
        "name",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "taskName",
        "thread",
        "threadName",
        "request_id",
        "board_id",
        "generation_source",
        "tool_call_id",
    }

    def format(self, record: logging.LogRecord) -> str:
        log_payload: dict[str, object | None] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": getattr(record, "request_id", "unknown"),
            "board_id": getattr(record, "board_id", ""),
        }
        generation_source = getattr(record, "generation_source", None)
        if generation_source:
            log_payload["generation_source"] = generation_source
        tool_call_id = getattr(record, "tool_call_id", None)
        if tool_call_id:
            log_payload["tool_call_id"] = tool_call_id
        log_payload.update(self._extract_extra(record))
        if record.exc_info:
            log_payload["exc_info"] = self.formatException(record.exc_info)
        if record.stack_info:
            log_payload["stack_info"] = record.stack_info
        try:
            return json.dumps(log_payload, default=str)
        except (TypeError, ValueError):
            return super().format(record)

    def _extract_extra(self, record: logging.LogRecord) -> dict[str, object]:
        extras: dict[str, object] = {}
        for key, value in record.__dict__.items():
            if key in self._SKIP_FIELDS or key.startswith("_"):
                continue
            if value is None:
                continue
            extras[key] = value
        return extras
