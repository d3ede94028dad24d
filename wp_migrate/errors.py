"""Exception taxonomy and retry helpers shared by the pipeline stages."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional, TypeVar

import requests

logger = logging.getLogger("wp_migrate")

T = TypeVar("T")

STAGE_MESSAGE_LIMIT = 5


class MigrationError(Exception):
    """Base class for every error raised by the migration core."""

    retryable = False


class FetchError(MigrationError):
    """A page could not be rendered or yielded no usable content."""

    def __init__(
        self,
        message: str,
        url: Optional[str] = None,
        status: Optional[int] = None,
        retryable: bool = True,
    ) -> None:
        super().__init__(message)
        self.url = url
        self.status = status
        self.retryable = retryable


class NotFoundError(FetchError):
    """The server answered 404; retrying will not help."""

    def __init__(self, url: str) -> None:
        super().__init__(f"Page not found (404): {url}", url=url, status=404, retryable=False)


class ImageError(MigrationError):
    """Download, transcode or format rejection of a single image."""

    def __init__(self, message: str, url: Optional[str] = None, retryable: bool = False) -> None:
        super().__init__(message)
        self.url = url
        self.retryable = retryable


class SanitizeError(MigrationError):
    """A fragment produced empty output or could not be parsed."""

    def __init__(self, message: str, url: Optional[str] = None) -> None:
        super().__init__(message)
        self.url = url


class GenerateError(MigrationError):
    """No valid records were available to write an import file."""


class ProfileError(MigrationError):
    """A site profile failed validation when loaded."""


class RunCancelledError(MigrationError):
    """The run was interrupted by the operator."""


class StageFailedError(MigrationError):
    """A stage produced zero usable outputs from a non-empty input."""

    def __init__(self, stage: str, item_count: int, messages: List[str]) -> None:
        self.stage = stage
        self.item_count = item_count
        self.messages = list(messages[:STAGE_MESSAGE_LIMIT])
        detail = "; ".join(self.messages) or "no details"
        super().__init__(f"Stage '{stage}' failed for all {item_count} item(s): {detail}")

    def to_dict(self) -> dict:
        return {"stage": self.stage, "itemCount": self.item_count, "messages": self.messages}


def is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, MigrationError):
        return exc.retryable
    if isinstance(exc, requests.HTTPError):
        response = exc.response
        return response is None or response.status_code >= 500 or response.status_code == 429
    return isinstance(exc, (requests.RequestException, TimeoutError, ConnectionError))


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    attempts: int,
    base_delay: float = 1.0,
    label: str = "operation",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Await ``operation`` up to ``attempts`` times with exponential backoff.

    The delay before retry ``n`` is ``base_delay * 2 ** (n - 1)``. Errors that
    are not retryable are raised immediately; otherwise the last error is
    raised once the attempts are exhausted.
    """
    attempts = max(1, attempts)
    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except Exception as exc:  # pylint: disable=broad-except
            if attempt >= attempts or not is_retryable(exc):
                raise
            delay = base_delay * (2 ** (attempt - 1))
            logger.warning(
                "Attempt %d/%d for %s failed (%s); retrying in %.1fs",
                attempt,
                attempts,
                label,
                exc,
                delay,
            )
            await sleep(delay)
    raise AssertionError("unreachable")
