import asyncio
import logging
from typing import Any, Awaitable, Callable

from openai import RateLimitError

_log = logging.getLogger(__name__)


async def llm_call_with_retry(
    fn: Callable[..., Awaitable[Any]], *args: Any, max_retries: int = 4, **kwargs: Any
) -> Any:
    """Await an OpenAI API coroutine with exponential backoff on RateLimitError.

    Waits 5, 10, 20, 40 seconds between retries.
    """
    for attempt in range(max_retries):
        try:
            return await fn(*args, **kwargs)
        except RateLimitError:
            if attempt == max_retries - 1:
                raise
            wait = 5 * (2 ** attempt)
            _log.warning("rate limited; retrying in %ss (attempt %d/%d)", wait, attempt + 1, max_retries)
            await asyncio.sleep(wait)
