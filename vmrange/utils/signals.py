"""
Signal handling in vmrange.

Provides custom signal handler for ``SIGINT`` (aka ``Ctrl+C``) and
``SIGTERM``.

Provisioning workers run in dedicated threads, but signals in Python are
always delivered to the main thread. The handler therefore does not try
to interrupt the workers directly, it records the delivery by setting
:py:data:`INTERRUPT_PENDING`. Long-running waits, e.g. staging waiting
for another worker's transfer or polling for guest readiness, check this
event regularly and give up once it is set.
"""

import signal
import textwrap
import threading
from types import FrameType
from typing import Any, NoReturn, Optional

import vmrange.log
import vmrange.utils

#: All changes to :py:data:`INTERRUPT_PENDING` must be performed while
#: holding this lock.
_INTERRUPT_LOCK = threading.Lock()

#: When set, interrupt was delivered to vmrange, and vmrange should react
#: to it.
INTERRUPT_PENDING = threading.Event()


class Interrupted(vmrange.utils.GeneralError):
    """
    Raised by code that interrupted its work because of vmrange shutdown.
    """

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__('vmrange was interrupted', *args, **kwargs)


def _quit_vmrange(logger: vmrange.log.Logger, repeated: bool = False) -> NoReturn:
    """
    Send vmrange on the path of quitting by raising an exception.
    """

    if repeated:
        logger.warning('Repeated interruption requested, quitting immediately.')

    else:
        logger.warning(
            textwrap.dedent(
                """
                Interrupting vmrange operation as requested.

                vmrange will now cancel its work in progress and quit as soon
                as possible. Virtual machines already powered on are left
                running.
                """
            ).strip()
        )

    raise KeyboardInterrupt


def _interrupt_handler(signum: int, frame: Optional[FrameType]) -> None:
    """
    A signal handler for signals that interrupt vmrange, ``SIGINT`` and ``SIGTERM``.

    :param signum: delivered signal.
    :param frame: stack frame active when the signal was received.
    """

    logger = vmrange.log.Logger.get_bootstrap_logger()

    logger.warning(f'Interrupt requested via {signal.Signals(signum).name} signal.')

    with _INTERRUPT_LOCK:
        repeated = INTERRUPT_PENDING.is_set()

        INTERRUPT_PENDING.set()

    _quit_vmrange(logger, repeated=repeated)


def install_handlers() -> None:
    """
    Install vmrange's signal handlers
    """

    signal.signal(signal.SIGINT, _interrupt_handler)
    signal.signal(signal.SIGTERM, _interrupt_handler)
