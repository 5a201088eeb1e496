"""
Deduplication of artifact transfers into a guest staging area.

Several workers may ask one agent to stage the same artifact at the same
time. The first of them performs the transfer, the others block until it
resolves. A successful transfer is remembered and never repeated, a
failed one is forgotten: the next requester, possibly one of those
waiting, becomes the transferer of a new attempt.
"""

import enum
import threading
from typing import Callable, Optional

import vmrange.log
from vmrange.container import container, simple_field
from vmrange.utils import Path, VMOperation, VMOperationError
from vmrange.utils.signals import INTERRUPT_PENDING

#: How often, in seconds, blocked requesters check for a pending interrupt.
DEFAULT_STAGING_TICK = 0.5


class StagingOutcome(enum.Enum):
    PENDING = 'pending'
    SUCCEEDED = 'succeeded'
    FAILED = 'failed'


@container
class StagingRecord:
    """
    State of staging of a single artifact.
    """

    outcome: StagingOutcome

    #: Requesters of the artifact block on this condition. It is bound to
    #: the coordinator lock, waiters are therefore woken per artifact.
    resolved: threading.Condition

    #: Number of transfer attempts started so far.
    attempts: int = simple_field(default=0)


class StagingCoordinator:
    """
    Makes sure an artifact is transferred to a guest at most once at a time.
    """

    def __init__(
        self,
        *,
        logger: vmrange.log.Logger,
        backend_name: str,
        vm_name: str,
        tick: float = DEFAULT_STAGING_TICK,
    ) -> None:
        self._logger = logger
        self._backend_name = backend_name
        self._vm_name = vm_name
        self._tick = tick

        self._lock = threading.Lock()
        self._records: dict[Path, StagingRecord] = {}

    def outcome(self, path: Path) -> Optional[StagingOutcome]:
        """
        Report the outcome of staging of the given artifact.

        :returns: the recorded outcome, or ``None`` when the artifact has
            never been requested.
        """

        with self._lock:
            record = self._records.get(path)

            return record.outcome if record is not None else None

    def attempts(self, path: Path) -> int:
        with self._lock:
            record = self._records.get(path)

            return record.attempts if record is not None else 0

    def _claim(self, path: Path) -> Optional[StagingRecord]:
        """
        Decide whether the caller shall transfer the artifact.

        :returns: the record the caller is now responsible for resolving,
            or ``None`` when the artifact has already been staged.
        :raises VMOperationError: when interrupted while waiting for
            another transfer of the artifact.
        """

        with self._lock:
            record = self._records.get(path)

            if record is None:
                record = self._records[path] = StagingRecord(
                    outcome=StagingOutcome.PENDING, resolved=threading.Condition(self._lock)
                )

                record.attempts += 1
                return record

            while record.outcome is StagingOutcome.PENDING:
                self._logger.debug(
                    f"Waiting for '{path}' being staged by another worker.",
                    level=3,
                    topic=vmrange.log.Topic.STAGING,
                )

                record.resolved.wait(timeout=self._tick)

                if record.outcome is StagingOutcome.PENDING and INTERRUPT_PENDING.is_set():
                    raise VMOperationError(
                        self._backend_name,
                        self._vm_name,
                        VMOperation.TRANSFER_TO,
                        'Transfer interrupted',
                        details={'source': path},
                    )

            if record.outcome is StagingOutcome.SUCCEEDED:
                return None

            # The previous attempt failed, its error belongs to its
            # transferer only.
            record.outcome = StagingOutcome.PENDING
            record.attempts += 1

            return record

    def _resolve(self, record: StagingRecord, outcome: StagingOutcome) -> None:
        with self._lock:
            record.outcome = outcome
            record.resolved.notify_all()

    def stage(self, path: Path, transfer: Callable[[], None]) -> None:
        """
        Stage an artifact, unless it has been staged already.

        :param path: source path of the artifact, the deduplication key.
        :param transfer: performs the actual transfer. Called at most by
            one requester at a time, and never again once it succeeds.
        :raises VMOperationError: when interrupted while waiting.
        :raises Exception: whatever ``transfer`` raised, to the requester
            that called it.
        """

        record = self._claim(path)

        if record is None:
            self._logger.debug(
                f"Artifact '{path}' already staged.", level=2, topic=vmrange.log.Topic.STAGING
            )
            return

        self._logger.debug(
            f"Staging '{path}', attempt {record.attempts}.",
            level=2,
            topic=vmrange.log.Topic.STAGING,
        )

        try:
            transfer()

        except BaseException:
            self._resolve(record, StagingOutcome.FAILED)
            raise

        self._resolve(record, StagingOutcome.SUCCEEDED)
