from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import Final, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_RETRYABLE_ERRORS: Final[tuple[str, ...]] = (
    "ConnectError",
    "ConnectTimeout",
    "ReadError",
    "ReadTimeout",
    "RemoteProtocolError",
    "APIConnectionError",
    "APITimeoutError",
    "RateLimitError",
    "TimeoutError",
    "ECONNRESET",
    "429",
    "502",
    "503",
    "504",
)


@dataclass(frozen=True)
class RetryContext:
    label: str
    attempt: int
    max_retries: int

    @property
    def is_retry(self) -> bool:
        return self.attempt > 0


def _error_tokens(error: BaseException) -> list[str]:
    tokens = [cls.__name__ for cls in type(error).__mro__]
    for attr in ("status_code", "status", "code"):
        value = getattr(error, attr, None)
        if value is not None:
            tokens.append(str(value))
    response = getattr(error, "response", None)
    status = getattr(response, "status_code", None)
    if status is not None:
        tokens.append(str(status))
    return tokens


def is_retryable_error(error: BaseException, retryable_errors: Iterable[str]) -> bool:
    """Match an error by class name, status/code attributes or message text."""

    patterns = [pattern for pattern in retryable_errors if pattern]
    if not patterns:
        return False
    tokens = _error_tokens(error)
    message = str(error)
    for pattern in patterns:
        if pattern in tokens or pattern in message:
            return True
    return False


def backoff_delay(attempt: int, *, initial_delay_s: float, max_delay_s: float) -> float:
    return min(initial_delay_s * (2**attempt), max_delay_s)


async def with_retry(
    label: str,
    operation: Callable[[RetryContext], Awaitable[T]],
    *,
    max_retries: int = 2,
    timeout_s: float | None = 30.0,
    retryable_errors: Iterable[str] = DEFAULT_RETRYABLE_ERRORS,
    initial_delay_s: float = 0.5,
    max_delay_s: float = 4.0,
) -> T:
    """Run ``operation`` with a per-attempt timeout and exponential backoff.

    Cancellation of the calling task propagates into the running attempt and
    is never retried. Timeouts surface as ``TimeoutError`` and are retried when
    listed in ``retryable_errors``. When retries are exhausted the last error
    is re-raised with ``retry_attempts`` set on it.
    """

    patterns = tuple(retryable_errors)
    attempts = max(0, max_retries) + 1
    for attempt in range(attempts):
        context = RetryContext(label=label, attempt=attempt, max_retries=max_retries)
        try:
            async with asyncio.timeout(timeout_s):
                result = await operation(context)
        except Exception as exc:
            final_attempt = attempt + 1 >= attempts
            if final_attempt or not is_retryable_error(exc, patterns):
                _tag_attempts(exc, attempt + 1, label)
                raise
            delay = backoff_delay(
                attempt, initial_delay_s=initial_delay_s, max_delay_s=max_delay_s
            )
            logger.warning(
                "%s attempt %d/%d failed (%s: %s); retrying in %.2fs",
                label,
                attempt + 1,
                attempts,
                type(exc).__name__,
                exc,
                delay,
            )
            await asyncio.sleep(delay)
            continue

        if attempt > 0:
            logger.info("%s succeeded after %d attempts", label, attempt + 1)
        return result

    raise AssertionError("unreachable")  # pragma: no cover


async def with_stream_retry(
    label: str,
    open_stream: Callable[[RetryContext], AsyncIterator[T]],
    *,
    max_retries: int = 2,
    timeout_s: float | None = 30.0,
    retryable_errors: Iterable[str] = DEFAULT_RETRYABLE_ERRORS,
    initial_delay_s: float = 0.5,
    max_delay_s: float = 4.0,
) -> AsyncIterator[T]:
    """Yield items from ``open_stream``, reopening it after transient failures.

    An attempt is only retried while it has not yielded anything; once an item
    reached the caller, a failure is re-raised as is. ``timeout_s`` bounds the
    wait for each item rather than the whole stream.
    """

    patterns = tuple(retryable_errors)
    attempts = max(0, max_retries) + 1
    for attempt in range(attempts):
        context = RetryContext(label=label, attempt=attempt, max_retries=max_retries)
        stream = open_stream(context)
        yielded = False
        try:
            iterator = aiter(stream)
            while True:
                try:
                    async with asyncio.timeout(timeout_s):
                        item = await anext(iterator)
                except StopAsyncIteration:
                    break
                yielded = True
                yield item
        except Exception as exc:
            final_attempt = yielded or attempt + 1 >= attempts
            if final_attempt or not is_retryable_error(exc, patterns):
                _tag_attempts(exc, attempt + 1, label)
                raise
            delay = backoff_delay(
                attempt, initial_delay_s=initial_delay_s, max_delay_s=max_delay_s
            )
            logger.warning(
                "%s stream attempt %d/%d failed (%s: %s); reopening in %.2fs",
                label,
                attempt + 1,
                attempts,
                type(exc).__name__,
                exc,
                delay,
            )
            await asyncio.sleep(delay)
            continue
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

        if attempt > 0:
            logger.info("%s stream succeeded after %d attempts", label, attempt + 1)
        return


@dataclass(frozen=True)
class RetryPolicy:
    """Bundled ``with_retry`` options shared by one class of outbound calls."""

    max_retries: int = 2
    timeout_s: float | None = 30.0
    initial_delay_s: float = 0.5
    max_delay_s: float = 4.0
    retryable_errors: tuple[str, ...] = DEFAULT_RETRYABLE_ERRORS

    async def run(self, label: str, operation: Callable[[RetryContext], Awaitable[T]]) -> T:
        return await with_retry(
            label,
            operation,
            max_retries=self.max_retries,
            timeout_s=self.timeout_s,
            retryable_errors=self.retryable_errors,
            initial_delay_s=self.initial_delay_s,
            max_delay_s=self.max_delay_s,
        )

    def stream(
        self, label: str, open_stream: Callable[[RetryContext], AsyncIterator[T]]
    ) -> AsyncIterator[T]:
        return with_stream_retry(
            label,
            open_stream,
            max_retries=self.max_retries,
            timeout_s=self.timeout_s,
            retryable_errors=self.retryable_errors,
            initial_delay_s=self.initial_delay_s,
            max_delay_s=self.max_delay_s,
        )


def _tag_attempts(error: Exception, attempts: int, label: str) -> None:
    try:
        setattr(error, "retry_attempts", attempts)
    except AttributeError:  # pragma: no cover
        pass
    if attempts > 1:
        error.add_note(f"{label} failed after {attempts} attempts")
