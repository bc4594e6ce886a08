import asyncio
from typing import Awaitable, Callable, TypeVar

T = TypeVar("T")


async def retry_with_backoff(
    async_func: Callable[[], Awaitable[T]],
    *,
    max_retries: int = 3,
    base_delay_seconds: float = 0.5,
    retryable_errors: tuple[type[Exception], ...] = (TimeoutError, ConnectionError, asyncio.TimeoutError),
    on_retry: Callable[[int, Exception], None] | None = None,
) -> T:
    """Await ``async_func`` until it succeeds, sleeping 2**attempt * base delay between tries.

    The last retryable error is re-raised once ``max_retries`` attempts are spent; any
    other exception propagates immediately.
    """
    attempts = max(1, max_retries)
    for attempt in range(attempts):
        try:
            return await async_func()
        except retryable_errors as exc:  # type: ignore[misc]
            if attempt == attempts - 1:
                raise
            if on_retry is not None:
                on_retry(attempt + 1, exc)
            await asyncio.sleep(base_delay_seconds * (2**attempt))
    raise RuntimeError("unreachable")
