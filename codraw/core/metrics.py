from __future__ import annotations

from contextlib import contextmanager

from prometheus_client import CollectorRegistry, Counter, Histogram, generate_latest

registry = CollectorRegistry(auto_describe=True)

GEMINI_CALL_DURATION = Histogram(
    "codraw_gemini_call_duration_seconds",
    "Latency for Gemini API calls per operation.",
    ["operation"],
    registry=registry,
)

GEMINI_CALLS_TOTAL = Counter(
    "codraw_gemini_calls_total",
    "Total Gemini API calls partitioned by operation and status.",
    ["operation", "status"],
    registry=registry,
)

GENERATION_REQUESTS_TOTAL = Counter(
    "codraw_generation_requests_total",
    "Generation pipeline requests by source and outcome.",
    ["source", "outcome"],
    registry=registry,
)

PENDING_RESOLUTIONS_TOTAL = Counter(
    "codraw_pending_resolutions_total",
    "Staged overlays resolved by the user.",
    ["resolution"],
    registry=registry,
)

ACTIVITY_TRIGGERS_TOTAL = Counter(
    "codraw_activity_triggers_total",
    "Number of times the activity debouncer settled and fired.",
    registry=registry,
)

VOICE_TOOL_CALLS_TOTAL = Counter(
    "codraw_voice_tool_calls_total",
    "Voice tool invocations by tool and status.",
    ["tool", "status"],
    registry=registry,
)

AUTOSAVES_TOTAL = Counter(
    "codraw_autosaves_total",
    "Board autosave attempts by status.",
    ["status"],
    registry=registry,
)


@contextmanager
def track_gemini_call(operation: str):
    timer = GEMINI_CALL_DURATION.labels(operation=operation).time()
    timer.__enter__()
    try:
        yield
        GEMINI_CALLS_TOTAL.labels(operation=operation, status="success").inc()
    except Exception:
        GEMINI_CALLS_TOTAL.labels(operation=operation, status="error").inc()
        raise
    finally:
        timer.__exit__(None, None, None)


def record_generation(source: str, outcome: str) -> None:
    GENERATION_REQUESTS_TOTAL.labels(source=source, outcome=outcome).inc()


def record_pending_resolution(resolution: str) -> None:
    PENDING_RESOLUTIONS_TOTAL.labels(resolution=resolution).inc()


def record_activity_trigger() -> None:
    ACTIVITY_TRIGGERS_TOTAL.inc()


def record_tool_call(tool: str, status: str) -> None:
    VOICE_TOOL_CALLS_TOTAL.labels(tool=tool, status=status).inc()


def record_autosave(status: str) -> None:
    AUTOSAVES_TOTAL.labels(status=status).inc()


def get_metrics_payload() -> bytes:
    return generate_latest(registry)
