"""
Retry and readiness-wait primitives

Provides:
- retry_with_backoff: decorator retrying a call with exponential backoff
  and jitter, for transient failures such as image pulls
- wait_until: fixed-interval polling of a readiness probe with a bounded
  number of attempts, shared by container health and database connectivity
  waits

Usage:
    from src.utils.retry import retry_with_backoff, wait_until

    @retry_with_backoff(max_retries=3, base_delay=1.0)
    def pull_image():
        ...

    result = wait_until(probe, interval=2.0, max_attempts=30)
    if not result.succeeded:
        raise TimeoutError(result.last_error)
"""

import time
import random
import logging
from dataclasses import dataclass
from typing import Callable, Any, Optional, Type, Tuple
from functools import wraps

logger = logging.getLogger(__name__)


def retry_with_backoff(
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    jitter: bool = True,
    retryable_exceptions: Optional[Tuple[Type[Exception], ...]] = None,
    on_retry: Optional[Callable[[int, Exception, float], None]] = None
):
    """
    Decorator that retries a function with exponential backoff

    Args:
        max_retries: Maximum number of retry attempts (default: 3)
        base_delay: Initial delay in seconds (default: 1.0)
        max_delay: Maximum delay in seconds (default: 60.0)
        exponential_base: Base for exponential backoff (default: 2.0)
        jitter: Add random jitter to prevent thundering herd (default: True)
        retryable_exceptions: Tuple of exception types to retry (default: all exceptions)
        on_retry: Callback function(attempt, exception, delay) called on each retry

    Returns:
        Decorated function with retry logic

    Example:
        @retry_with_backoff(
            max_retries=5,
            retryable_exceptions=(subprocess.CalledProcessError,),
        )
        def pull(image):
            subprocess.run(["docker", "pull", image], check=True)
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs) -> Any:
            last_exception = None

            for attempt in range(max_retries + 1):
                try:
                    return func(*args, **kwargs)

                except Exception as e:
                    last_exception = e

                    func_name = getattr(func, '__name__', 'function')

                    if retryable_exceptions and not isinstance(e, retryable_exceptions):
                        logger.error(
                            f"Non-retryable exception in {func_name}: {type(e).__name__}: {e}"
                        )
                        raise

                    if attempt == max_retries:
                        logger.error(
                            f"Max retries ({max_retries}) exceeded for {func_name}: "
                            f"{type(e).__name__}: {e}"
                        )
                        raise

                    delay = min(base_delay * (exponential_base ** attempt), max_delay)

                    # Jitter is +/-25% of the delay
                    if jitter:
                        jitter_amount = delay * 0.25
                        delay = delay + random.uniform(-jitter_amount, jitter_amount)
                        delay = max(0.1, delay)

                    logger.warning(
                        f"Attempt {attempt + 1}/{max_retries} failed for {func_name}: "
                        f"{type(e).__name__}: {e}. Retrying in {delay:.2f}s..."
                    )

                    if on_retry:
                        try:
                            on_retry(attempt + 1, e, delay)
                        except Exception as callback_error:
                            logger.error(f"Error in retry callback: {callback_error}")

                    time.sleep(delay)

            if last_exception:
                raise last_exception
            else:
                raise RuntimeError(f"Unexpected error in retry logic for {func.__name__}")

        return wrapper
    return decorator


@dataclass(frozen=True)
class WaitResult:
    """Outcome of a readiness wait."""

    succeeded: bool
    attempts: int
    last_error: Optional[BaseException] = None


def wait_until(
    probe: Callable[[], bool],
    interval: float,
    max_attempts: int,
    fatal_exceptions: Tuple[Type[BaseException], ...] = (),
    description: str = "condition",
    sleep: Callable[[float], None] = time.sleep,
    on_attempt: Optional[Callable[[int, Optional[BaseException]], None]] = None,
) -> WaitResult:
    """
    Poll a probe at a fixed interval until it reports ready

    The probe is called at most ``max_attempts`` times with ``interval``
    seconds between consecutive calls. No sleep happens after the last
    attempt. A probe returning False, or raising an exception that is not
    in ``fatal_exceptions``, counts as "not ready yet". Fatal exceptions
    propagate immediately and stop the wait.

    Args:
        probe: Callable returning True once the resource is ready
        interval: Seconds to wait between attempts
        max_attempts: Maximum number of probe calls (must be >= 1)
        fatal_exceptions: Exception types that abort the wait
        description: Human readable name of what is being waited for
        sleep: Sleep function (injectable for tests)
        on_attempt: Callback(attempt, error) after every failed attempt

    Returns:
        WaitResult with the number of probe calls performed

    Raises:
        ValueError: If max_attempts < 1 or interval < 0
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")
    if interval < 0:
        raise ValueError("interval must not be negative")

    last_error: Optional[BaseException] = None

    for attempt in range(1, max_attempts + 1):
        try:
            if probe():
                logger.debug(f"{description} ready after {attempt} attempt(s)")
                return WaitResult(succeeded=True, attempts=attempt, last_error=None)
            last_error = None
        except fatal_exceptions:
            raise
        except Exception as e:
            last_error = e

        logger.debug(
            f"Waiting for {description}: attempt {attempt}/{max_attempts} not ready"
            + (f" ({type(last_error).__name__}: {last_error})" if last_error else "")
        )

        if on_attempt:
            try:
                on_attempt(attempt, last_error)
            except Exception as callback_error:
                logger.error(f"Error in wait callback: {callback_error}")

        if attempt < max_attempts:
            sleep(interval)

    return WaitResult(succeeded=False, attempts=max_attempts, last_error=last_error)
