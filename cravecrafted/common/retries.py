import asyncio
import functools
import random
from typing import Callable, Optional, Tuple, Type
import httpx
from sqlalchemy.exc import DBAPIError, OperationalError
from cravecrafted.common.circuit_breaker import CircuitBreaker, CircuitOpenError
from cravecrafted.common.logging_setup import get_logger

logger = get_logger("cravecrafted.common")

TRANSIENT_HTTP_EXCEPTIONS: Tuple[Type[BaseException], ...] = (
    httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError,
)


def is_recoverable_exception(exc: BaseException) -> bool:
    if isinstance(exc, asyncio.CancelledError):
        return False
    if getattr(exc, "retryable", False):
        return True
    if isinstance(exc, TRANSIENT_HTTP_EXCEPTIONS):
        return True
    if isinstance(exc, (TimeoutError, ConnectionError, OperationalError)):
        return True
    if isinstance(exc, DBAPIError):
        # connection_invalidated is set when the pool saw the connection drop
        if getattr(exc, "connection_invalidated", False):
            return True
        orig = getattr(exc, "orig", None)
        if orig is not None:
            name = type(orig).__name__.lower()
            if any(k in name for k in ("timeout", "connection", "brokenpipe", "connectionrefused", "connectionreset")):
                return True
    return False

async def _sleep_with_jitter(delay: float, jitter: float) -> None:
    jitter_val = random.uniform(-jitter * delay, jitter * delay)
    await asyncio.sleep(max(0.0, delay + jitter_val))


def retry_with_circuit(
    *,
    circuit: CircuitBreaker,
    attempts: int = 3,
    base_delay: float = 0.5,
    factor: float = 2.0,
    max_delay: float = 8.0,
    jitter: float = 0.15,
    if_retryable: Optional[Callable[[BaseException], bool]] = None,
    on_circuit_open: Optional[Callable[[CircuitOpenError], BaseException]] = None,
):
    """Retry an async callable on recoverable errors, reporting every verdict to `circuit`.

    Non recoverable errors (for example a declined card) are re-raised on the first attempt
    and do not count as circuit failures.
    """
    if if_retryable is None:
        if_retryable = is_recoverable_exception

    def deco(fn: Callable):
        @functools.wraps(fn)
        async def wrapper(*args, **kwargs):
            last_exc: Optional[BaseException] = None
            for attempt in range(1, attempts + 1):
                try:
                    await circuit.before_call()
                except CircuitOpenError as open_err:
                    if on_circuit_open is not None:
                        raise on_circuit_open(open_err) from open_err
                    raise

                try:
                    result = await fn(*args, **kwargs)
                except asyncio.CancelledError:
                    await circuit.release_probe()
                    raise
                except Exception as exc:
                    last_exc = exc
                    try:
                        retryable = if_retryable(exc)
                    except Exception:
                        retryable = False
                    if not retryable:
                        await circuit.release_probe()
                        raise
                    await circuit.record_failure()
                    if attempt == attempts:
                        raise

                    delay = min(max_delay, base_delay * (factor ** (attempt - 1)))
                    logger.debug("retry attempt %d of %s failed; retrying in %.2fs: %s", attempt, fn.__name__, delay, exc)
                    await _sleep_with_jitter(delay, jitter)
                    continue

                await circuit.record_success()
                return result

            raise last_exc
        return wrapper
    return deco
