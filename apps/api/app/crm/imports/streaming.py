from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any

from app.context import bound_request_context
from app.core.config import get_settings


logger = logging.getLogger("app.crm.imports")

INTERNAL_ERROR_MESSAGE = "Internal server error during import parsing"
FILLER = b" "


async def keepalive_stream(
    run: Callable[[], Awaitable[dict[str, Any]]],
    *,
    interval: float | None = None,
    correlation_id: str | None = None,
    workspace_id: str | None = None,
    internal_error_message: str = INTERNAL_ERROR_MESSAGE,
) -> AsyncIterator[bytes]:
    """Yield filler bytes every ``interval`` seconds until ``run`` settles, then its JSON payload.

    The filler task is cancelled and awaited before the final payload is queued, so nothing can
    follow the payload and exactly one payload is written. If ``run`` raises, the exception is
    logged and a generic error payload takes its place.
    """
    period = interval if interval is not None else get_settings().import_keepalive_interval_seconds
    queue: asyncio.Queue[bytes | None] = asyncio.Queue()

    async def fill() -> None:
        while True:
            await asyncio.sleep(period)
            queue.put_nowait(FILLER)

    async def settle() -> None:
        with bound_request_context(correlation_id=correlation_id, workspace_id=workspace_id):
            filler = asyncio.create_task(fill())
            try:
                payload = await run()
            except Exception as exc:
                logger.exception("import.stream.failed", extra={"error": str(exc)[:500]})
                payload = {"error": internal_error_message}
            finally:
                filler.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await filler

        queue.put_nowait(json.dumps(payload, default=str).encode("utf-8"))
        queue.put_nowait(None)

    runner = asyncio.create_task(settle())
    try:
        while True:
            chunk = await queue.get()
            if chunk is None:
                break
            yield chunk
    finally:
        # Client went away before the payload.
        if not runner.done():
            runner.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await runner
