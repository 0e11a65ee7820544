from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, TypeVar

from .logging import log_event

T = TypeVar("T")


async def guarded_call(
    action: Callable[[], Awaitable[T] | T],
    *,
    logger: logging.Logger,
    event: str,
    message: str,
    level: str = "warning",
    default: T | None = None,
    reraise: bool = False,
    **fields: Any,
) -> T | None:
    try:
        result = action()
        if inspect.isawaitable(result):
            return await result
        return result
    except asyncio.CancelledError:
        raise
    except Exception as error:
        log_event(
            logger,
            level=level,
            event=event,
            message=message,
            error=str(error),
            **fields,
        )
        if reraise:
            raise
        return default


async def retry_call(
    action: Callable[[], Awaitable[T]],
    *,
    logger: logging.Logger,
    event: str,
    message: str,
    attempts: int = 3,
    backoff_seconds: float = 0.25,
    **fields: Any,
) -> T:
    """Run ``action`` up to ``attempts`` times, sleeping ``backoff * attempt`` between tries.

    The last error is re-raised once every attempt has failed.
    """
    max_attempts = max(1, attempts)
    for attempt in range(1, max_attempts + 1):
        try:
            return await action()
        except asyncio.CancelledError:
            raise
        except Exception as error:
            if attempt >= max_attempts:
                raise
            log_event(
                logger,
                level="warning",
                event=event,
                message=message,
                attempt=attempt,
                max_attempts=max_attempts,
                error=str(error),
                **fields,
            )
            await asyncio.sleep(backoff_seconds * attempt)

    raise RuntimeError("retry_call exhausted without result")
