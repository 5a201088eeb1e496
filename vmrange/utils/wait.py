"""
Waiting for a condition, with a deadline.

Used wherever vmrange polls a backend for a state it cannot be notified
about, e.g. readiness of a guest. Waiting gives up when its deadline
passes, or when vmrange gets interrupted.
"""

import datetime
import time
from typing import Callable, TypeVar

import vmrange.log
from vmrange.container import container
from vmrange.utils import GeneralError
from vmrange.utils.signals import INTERRUPT_PENDING, Interrupted

T = TypeVar('T')

#: Default number of seconds between two checks of a condition.
DEFAULT_WAIT_TICK: float = 5.0

# A type for callbacks given to wait()
WaitCheckType = Callable[[], T]


class WaitingIncompleteError(GeneralError):
    """
    Raised by a condition check to request another attempt.
    """

    def __init__(self) -> None:
        super().__init__('Waiting incomplete')


class WaitingTimedOutError(GeneralError):
    """
    The condition was not met before the deadline.
    """

    def __init__(self, check: 'WaitCheckType[T]', timeout: datetime.timedelta) -> None:
        super().__init__(
            f"Waiting for condition '{check.__name__}' timed out after waiting {timeout}."
        )

        self.check = check
        self.timeout = timeout


class Deadline:
    """
    A point in time when waiting should end.
    """

    #: The timeout the deadline was created from.
    original_timeout: datetime.timedelta

    def __init__(self, timeout: datetime.timedelta) -> None:
        self.original_timeout = timeout

        self._deadline = time.monotonic() + timeout.total_seconds()

    def __repr__(self) -> str:
        return f'<Deadline: {self.time_left.total_seconds():.2f} seconds left>'

    @classmethod
    def from_seconds(cls, timeout: float) -> 'Deadline':
        return Deadline(datetime.timedelta(seconds=timeout))

    @property
    def time_left(self) -> datetime.timedelta:
        """
        Remaining time, negative once the deadline has passed.
        """

        return datetime.timedelta(seconds=self._deadline - time.monotonic())

    @property
    def is_due(self) -> bool:
        return self.time_left <= datetime.timedelta(0)


@container
class Waiting:
    """
    How to wait for a condition: until when, and how often to check.
    """

    deadline: Deadline

    #: Seconds between two consecutive checks.
    tick: float = DEFAULT_WAIT_TICK

    def wait(self, check: WaitCheckType[T], logger: vmrange.log.Logger) -> T:
        """
        Call ``check`` every :py:attr:`tick` seconds until it succeeds.

        ``check`` signals the condition is not met yet by raising
        :py:class:`WaitingIncompleteError`. Any other exception ends the
        waiting and propagates to the caller.

        :returns: whatever ``check`` returned on success.
        :raises WaitingTimedOutError: when the deadline passed.
        :raises Interrupted: when vmrange has been interrupted.
        """

        name = check.__name__

        logger.debug(
            'wait',
            f"'{name}' with timeout {self.deadline.original_timeout}, tick {self.tick:.2f}s",
        )

        while True:
            if INTERRUPT_PENDING.is_set():
                logger.debug('wait', f"'{name}' interrupted")

                raise Interrupted

            if self.deadline.is_due:
                logger.debug('wait', f"'{name}' ran out of time")

                raise WaitingTimedOutError(check, self.deadline.original_timeout)

            try:
                result = check()

            except WaitingIncompleteError:
                logger.debug(
                    'wait',
                    f"'{name}' pending, {self.deadline.time_left.total_seconds():.2f}s left",
                    level=2,
                )

                # Sleeps for a tick, unless interrupted sooner.
                INTERRUPT_PENDING.wait(self.tick)

                continue

            logger.debug('wait', f"'{name}' succeeded")

            return result
