from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar

correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)
workspace_id_var: ContextVar[str | None] = ContextVar("workspace_id", default=None)


@contextmanager
def bound_request_context(
    *,
    correlation_id: str | None,
    workspace_id: str | None = None,
) -> Iterator[None]:
    """Bind the ids that logs, spans and audit rows pick up for the enclosed block.

    Passing ``None`` keeps whatever is already bound for that id.
    """
    correlation_token = correlation_id_var.set(correlation_id) if correlation_id is not None else None
    workspace_token = workspace_id_var.set(workspace_id) if workspace_id is not None else None
    try:
        yield
    finally:
        if workspace_token is not None:
            workspace_id_var.reset(workspace_token)
        if correlation_token is not None:
            correlation_id_var.reset(correlation_token)


def get_correlation_id() -> str | None:
    return correlation_id_var.get()


def get_workspace_id() -> str | None:
    return workspace_id_var.get()
