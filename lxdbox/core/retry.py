"""Deadline-bounded retry and polling helpers for remote calls."""
import math
import time
from typing import Callable, Optional, Tuple, Type, TypeVar

from lxdbox.core.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class DeadlineExceeded(Exception):
    """Raised when a poll or retry loop runs past its deadline."""

    def __init__(self, timeout: float, description: str = "operation"):
        self.timeout = timeout
        self.description = description
        super().__init__(f"{description} did not complete within {timeout} seconds")


class Deadline:
    """A point in time after which a blocking remote interaction must give up."""

    def __init__(self, timeout: float):
        self.timeout = timeout
        self.expires_at = time.monotonic() + timeout

    def remaining(self) -> float:
        return max(0.0, self.expires_at - time.monotonic())

    def remaining_seconds(self) -> int:
        """Remaining time rounded up to whole seconds, never below one."""
        return max(1, math.ceil(self.remaining()))

    def expired(self) -> bool:
        return time.monotonic() >= self.expires_at


def poll_until(
    func: Callable[[], Optional[T]],
    timeout: float,
    interval: float = 1.0,
    description: str = "condition",
) -> T:
    """Call func until it returns a truthy value or the timeout elapses.

    Args:
        func: Zero-argument callable; a falsy result means "not yet"
        timeout: Seconds before giving up
        interval: Seconds to sleep between attempts
        description: Used in log and error messages

    Returns:
        The first truthy value returned by func

    Raises:
        DeadlineExceeded: If func never returned a truthy value in time

    Example:
        address = poll_until(lambda: lookup_address(name), timeout=10)
    """
    deadline = Deadline(timeout)

    while True:
        result = func()
        if result:
            return result

        if deadline.expired():
            raise DeadlineExceeded(timeout, description)

        logger.debug(f"No {description} yet, sleeping {interval:.1f}s before trying again...")
        time.sleep(min(interval, deadline.remaining()))


def retry_until(
    func: Callable[[], T],
    deadline: Deadline,
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
    description: str = "call",
) -> T:
    """Re-issue func after the given exceptions for as long as the deadline holds.

    Args:
        func: Zero-argument callable
        deadline: Deadline bounding the whole loop
        exceptions: Exception types that are retried
        description: Used in log messages

    Returns:
        Whatever func returns on its first successful call

    Raises:
        The last caught exception once the deadline has expired
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return func()
        except exceptions as e:
            if deadline.expired():
                logger.debug(f"{description} failed after {attempt} attempts: {e}")
                raise
            logger.debug(f"{description} failed (attempt {attempt}), retrying: {e}")
