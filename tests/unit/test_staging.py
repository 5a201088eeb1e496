import threading
import time
from typing import Callable, Optional

import pytest

from vmrange.agent.staging import StagingCoordinator, StagingOutcome
from vmrange.log import Logger
from vmrange.utils import Path, VMOperation, VMOperationError
from vmrange.utils.signals import INTERRUPT_PENDING

ARTIFACT = Path('/srv/range/assets/tool.tar.gz')


@pytest.fixture(name='coordinator')
def fixture_coordinator(root_logger: Logger) -> StagingCoordinator:
    return StagingCoordinator(logger=root_logger, backend_name='mock', vm_name='web', tick=0.05)


class BlockingTransfer:
    """
    A transfer that blocks until released, counting its invocations.
    """

    def __init__(self, fail_first: bool = False) -> None:
        self.calls = 0
        self.started = threading.Event()
        self.release = threading.Event()
        self.fail_first = fail_first
        self._lock = threading.Lock()

    def __call__(self) -> None:
        with self._lock:
            self.calls += 1
            call = self.calls

        self.started.set()

        # Only the very first call blocks, retries go through immediately.
        if call == 1:
            assert self.release.wait(timeout=10)

            if self.fail_first:
                raise RuntimeError('transfer failed')


def _in_thread(
    target: Callable[[], None], errors: list[BaseException]
) -> threading.Thread:
    def _run() -> None:
        try:
            target()

        except BaseException as exc:
            errors.append(exc)

    thread = threading.Thread(target=_run)
    thread.start()

    return thread


def test_single_request(coordinator: StagingCoordinator) -> None:
    transfer = BlockingTransfer()
    transfer.release.set()

    assert coordinator.outcome(ARTIFACT) is None

    coordinator.stage(ARTIFACT, transfer)

    assert transfer.calls == 1
    assert coordinator.outcome(ARTIFACT) is StagingOutcome.SUCCEEDED
    assert coordinator.attempts(ARTIFACT) == 1


def test_success_short_circuits(coordinator: StagingCoordinator) -> None:
    transfer = BlockingTransfer()
    transfer.release.set()

    coordinator.stage(ARTIFACT, transfer)
    coordinator.stage(ARTIFACT, transfer)
    coordinator.stage(ARTIFACT, transfer)

    assert transfer.calls == 1


@pytest.mark.parametrize('requesters', [2, 5, 16])
def test_concurrent_requests_transfer_once(
    coordinator: StagingCoordinator, requesters: int
) -> None:
    transfer = BlockingTransfer()
    errors: list[BaseException] = []

    first = _in_thread(lambda: coordinator.stage(ARTIFACT, transfer), errors)
    assert transfer.started.wait(timeout=10)

    others = [
        _in_thread(lambda: coordinator.stage(ARTIFACT, transfer), errors)
        for _ in range(requesters - 1)
    ]

    # Let the others reach their wait-point.
    time.sleep(0.2)

    assert coordinator.outcome(ARTIFACT) is StagingOutcome.PENDING

    transfer.release.set()

    for thread in [first, *others]:
        thread.join(timeout=10)

    assert errors == []
    assert transfer.calls == 1
    assert coordinator.outcome(ARTIFACT) is StagingOutcome.SUCCEEDED


def test_failure_propagates_to_transferer(coordinator: StagingCoordinator) -> None:
    transfer = BlockingTransfer(fail_first=True)
    transfer.release.set()

    with pytest.raises(RuntimeError, match='transfer failed'):
        coordinator.stage(ARTIFACT, transfer)

    assert coordinator.outcome(ARTIFACT) is StagingOutcome.FAILED


def test_failure_lets_next_requester_retry(coordinator: StagingCoordinator) -> None:
    transfer = BlockingTransfer(fail_first=True)
    transfer.release.set()

    with pytest.raises(RuntimeError):
        coordinator.stage(ARTIFACT, transfer)

    coordinator.stage(ARTIFACT, transfer)

    assert transfer.calls == 2
    assert coordinator.attempts(ARTIFACT) == 2
    assert coordinator.outcome(ARTIFACT) is StagingOutcome.SUCCEEDED


def test_waiter_retries_after_failure(coordinator: StagingCoordinator) -> None:
    transfer = BlockingTransfer(fail_first=True)
    first_errors: list[BaseException] = []
    waiter_errors: list[BaseException] = []

    first = _in_thread(lambda: coordinator.stage(ARTIFACT, transfer), first_errors)
    assert transfer.started.wait(timeout=10)

    waiter = _in_thread(lambda: coordinator.stage(ARTIFACT, transfer), waiter_errors)
    time.sleep(0.2)

    transfer.release.set()

    first.join(timeout=10)
    waiter.join(timeout=10)

    # The failure belongs to the first requester only, the waiter tried
    # again, and succeeded.
    assert len(first_errors) == 1
    assert isinstance(first_errors[0], RuntimeError)
    assert waiter_errors == []
    assert transfer.calls == 2
    assert coordinator.outcome(ARTIFACT) is StagingOutcome.SUCCEEDED


def test_interrupted_wait(coordinator: StagingCoordinator) -> None:
    transfer = BlockingTransfer()
    first_errors: list[BaseException] = []
    waiter_errors: list[BaseException] = []

    first = _in_thread(lambda: coordinator.stage(ARTIFACT, transfer), first_errors)
    assert transfer.started.wait(timeout=10)

    waiter = _in_thread(lambda: coordinator.stage(ARTIFACT, transfer), waiter_errors)

    INTERRUPT_PENDING.set()
    waiter.join(timeout=10)

    transfer.release.set()
    first.join(timeout=10)

    assert first_errors == []
    assert len(waiter_errors) == 1

    error: Optional[BaseException] = waiter_errors[0]

    assert isinstance(error, VMOperationError)
    assert error.code is VMOperation.TRANSFER_TO
    assert error.backend == 'mock'
    assert error.vm_name == 'web'
    assert 'Transfer interrupted' in str(error)
    assert transfer.calls == 1


def test_unrelated_artifacts_do_not_block(coordinator: StagingCoordinator) -> None:
    blocked = BlockingTransfer()
    errors: list[BaseException] = []

    first = _in_thread(lambda: coordinator.stage(ARTIFACT, blocked), errors)
    assert blocked.started.wait(timeout=10)

    other = BlockingTransfer()
    other.release.set()

    coordinator.stage(Path('/srv/range/assets/other.tar.gz'), other)

    assert other.calls == 1
    assert coordinator.outcome(ARTIFACT) is StagingOutcome.PENDING

    blocked.release.set()
    first.join(timeout=10)

    assert errors == []
