"""Retry and timeout wrapper for calls to external collaborators."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

import openai
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from visibility_scanner.errors import CollaboratorError

logger = logging.getLogger(__name__)

T = TypeVar("T")

OPENAI_TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    openai.APIConnectionError,
    openai.APITimeoutError,
    openai.RateLimitError,
    openai.InternalServerError,
)


async def call_external(
    func: Callable[[], Awaitable[T]],
    *,
    what: str,
    timeout: float,
    max_attempts: int = 3,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    min_wait: float = 0.5,
    max_wait: float = 10.0,
) -> T:
    """Await ``func()`` under a timeout, retrying transient failures with backoff.

    Any failure left after the last attempt is raised as ``CollaboratorError``.
    """
    retrying = AsyncRetrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=min_wait, min=min_wait, max=max_wait),
        retry=retry_if_exception_type((asyncio.TimeoutError, *retry_on)),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    try:
        async for attempt in retrying:
            with attempt:
                return await asyncio.wait_for(func(), timeout=timeout)
    except asyncio.TimeoutError as exc:
        raise CollaboratorError(f"{what} timed out after {timeout}s", {"timeout": timeout}) from exc
    except CollaboratorError:
        raise
    except Exception as exc:
        raise CollaboratorError(f"{what} failed: {exc}", {"type": type(exc).__name__}) from exc
    raise CollaboratorError(f"{what} made no attempt")
