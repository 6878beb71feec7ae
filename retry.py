"""
smartseek/retry.py

Timeout and retry helpers for calls to external services.

Used for transient upstream failures only (OAuth token exchange, report
generation). User-facing errors are never retried.

Usage:
    from retry import with_retry, with_timeout

    data = with_retry(lambda: post_token_request(...), label='Token exchange')
    report = with_timeout(lambda: generator(form), 120, label='Report generation')

Version History:
    2026-01-12: Initial implementation
"""

import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeout
from typing import Callable, Optional, Tuple, Type, TypeVar

T = TypeVar('T')

DEFAULT_MAX_ATTEMPTS = 2
DEFAULT_DELAY_SECONDS = 2.0


def with_retry(
    fn: Callable[[], T],
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    delay: float = DEFAULT_DELAY_SECONDS,
    label: str = 'Operation',
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    should_retry: Optional[Callable[[BaseException], bool]] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Call fn up to max_attempts times, sleeping `delay` seconds between tries.

    Args:
        fn: Zero-argument callable to run
        max_attempts: Total attempts including the first one
        delay: Seconds to wait between attempts
        label: Name used in log lines
        retry_on: Exception types that trigger another attempt
        should_retry: Optional predicate; returning False re-raises immediately
        sleep: Injected for tests

    Returns:
        Whatever fn returns on the first successful attempt

    Raises:
        The last exception once attempts are exhausted.
    """
    if max_attempts < 1:
        raise ValueError('max_attempts must be >= 1')

    for attempt in range(1, max_attempts + 1):
        try:
            return fn()
        except retry_on as e:
            if should_retry is not None and not should_retry(e):
                raise
            if attempt >= max_attempts:
                print(f"[Retry] {label} failed after {max_attempts} attempts: {e}")
                raise
            print(f"[Retry] {label} attempt {attempt} failed, retrying in {delay}s: {e}")
            sleep(delay)

    # Unreachable: the loop either returns or raises
    raise RuntimeError(f'{label} failed after {max_attempts} attempts')


def with_timeout(fn: Callable[[], T], seconds: float, label: str = 'Operation') -> T:
    """
    Run fn on a worker thread and give up after `seconds`.

    The worker is not killed on timeout; its result is discarded.

    Raises:
        TimeoutError if fn does not finish in time.
    """
    executor = ThreadPoolExecutor(max_workers=1)
    future = executor.submit(fn)
    try:
        return future.result(timeout=seconds)
    except FuturesTimeout:
        raise TimeoutError(f'{label} timed out after {seconds}s')
    finally:
        executor.shutdown(wait=False)
