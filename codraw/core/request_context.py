import contextvars
from contextlib import contextmanager

request_id_var: contextvars.ContextVar[str | None] = contextvars.ContextVar("request_id", default=None)
board_id_var: contextvars.ContextVar[str | None] = contextvars.ContextVar("board_id", default=None)
generation_source_var: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "generation_source", default=None
)
tool_call_id_var: contextvars.ContextVar[str | None] = contextvars.ContextVar("tool_call_id", default=None)


def set_request_id(request_id: str) -> contextvars.Token:
    """Store the current request ID in a context variable."""
    return request_id_var.set(request_id)


def reset_request_id(token: contextvars.Token) -> None:
    """Reset the request ID context variable to a previous state."""
    request_id_var.reset(token)


def get_request_id() -> str | None:
    """Retrieve the current request ID from the context."""
    return request_id_var.get()


def get_board_id() -> str | None:
    """Retrieve the board currently being worked on, for logging."""
    return board_id_var.get()


def get_generation_source() -> str | None:
    return generation_source_var.get()


def get_tool_call_id() -> str | None:
    return tool_call_id_var.get()


@contextmanager
def log_context(
    board_id: str | None = None,
    generation_source: str | None = None,
    tool_call_id: str | None = None,
):
    """Temporarily scope board/generation/tool context for structured logs."""
    tokens: list[tuple[contextvars.ContextVar[str | None], contextvars.Token]] = []
    if board_id is not None:
        tokens.append((board_id_var, board_id_var.set(str(board_id))))
    if generation_source is not None:
        tokens.append((generation_source_var, generation_source_var.set(generation_source)))
    if tool_call_id is not None:
        tokens.append((tool_call_id_var, tool_call_id_var.set(tool_call_id)))
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)
