from typing import Callable, TypeVar

T = TypeVar("T")


def retry_bounded(fn: Callable[[int], T], attempts: int, is_retryable: Callable[[Exception], bool]) -> T:
    """
    Call fn(attempt) for attempt = 0..attempts-1 until it returns. Errors the
    classifier rejects propagate at once; the last retryable error propagates
    when attempts run out.
    """
    if attempts < 1:
        raise ValueError("attempts must be >= 1")
    for attempt in range(attempts):
        try:
            return fn(attempt)
        except Exception as e:
            if not is_retryable(e) or attempt == attempts - 1:
                raise
    raise AssertionError("unreachable")
