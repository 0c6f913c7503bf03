import asyncio
from typing import Awaitable, Callable, Optional, Type, TypeVar, Tuple

T = TypeVar("T")


async def with_retry_async(
    fn: Callable[[], Awaitable[T]],
    *,
    retries: int = 2,
    backoff_seconds: float = 0.5,
    retry_on: Optional[Tuple[Type[BaseException], ...]] = (Exception,),
) -> T:
    """Await fn() with retries and exponential backoff. If retry_on is None, defaults to (Exception,).
    Why available: Used by the analysis adapter so a transient LLM failure does not lose a whole sub-task."""
    exc_types: Tuple[Type[BaseException], ...] = retry_on or (Exception,)

    last_err: Optional[BaseException] = None

    for attempt in range(retries + 1):
        try:
            return await fn()
        except exc_types as e:
            last_err = e
            if attempt >= retries:
                raise
            sleep_s = backoff_seconds * (2 ** attempt)
            await asyncio.sleep(sleep_s)

    # Should be unreachable, but keeps type-checkers happy.
    assert last_err is not None
    raise last_err
