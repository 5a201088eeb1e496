from collections.abc import Iterator

import pytest

from tests import CliRunner, RunVmrange
from vmrange.utils.signals import INTERRUPT_PENDING


@pytest.fixture(name='run_vmrange')
def fixture_run_vmrange() -> RunVmrange:
    """
    Invoke a ``vmrange`` command with given options.
    """

    return CliRunner().invoke


@pytest.fixture(autouse=True)
def _reset_interrupt() -> Iterator[None]:
    """
    Make sure no test leaks a pending interrupt into the next one.
    """

    INTERRUPT_PENDING.clear()

    yield

    INTERRUPT_PENDING.clear()
