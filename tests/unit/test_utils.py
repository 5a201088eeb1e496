import datetime
import time

import _pytest.logging
import pytest

from vmrange.log import Logger
from vmrange.utils import (
    Command,
    GeneralError,
    Path,
    RunError,
    VMOperation,
    VMOperationError,
    dict_to_yaml,
    remove_color,
    render_exception,
    yaml_to_dict,
    yaml_to_list,
)
from vmrange.utils.signals import INTERRUPT_PENDING, Interrupted
from vmrange.utils.wait import (
    Deadline,
    Waiting,
    WaitingIncompleteError,
    WaitingTimedOutError,
)

from . import assert_log


def _render(exception: BaseException) -> list[str]:
    return [remove_color(line) for line in render_exception(exception)]


def test_render_exception_causes(monkeypatch: pytest.MonkeyPatch) -> None:
    """
    Verify :py:func:`render_exception` includes both kinds of exception causes.
    """

    monkeypatch.delenv('VMRANGE_SHOW_TRACEBACK', raising=False)

    causes: list[Exception] = [ValueError('first cause'), ValueError('second cause')]

    try:
        try:
            raise ValueError('third cause')

        except ValueError as exc:
            raise GeneralError('Failed to stage artifacts', causes=causes) from exc

    except GeneralError as exc:
        actual = _render(exc)

    assert actual == [
        'Failed to stage artifacts',
        '',
        'The exception was caused by 3 earlier exceptions',
        '',
        'Cause number 1:',
        '',
        '    first cause',
        '',
        'Cause number 2:',
        '',
        '    second cause',
        '',
        'Cause number 3:',
        '',
        '    third cause',
    ]


def test_render_vm_operation_error() -> None:
    error = VMOperationError(
        'vbox',
        'web',
        VMOperation.TRANSFER_TO,
        'Source file not found',
        details={'source': Path('/srv/range/setup.sh')},
    )

    assert _render(error) == [
        'Backend: vbox; VM: web; Code: TRANSFER_TO; '
        'Failed to transfer the file to the VM: Source file not found',
        '',
        'source: /srv/range/setup.sh',
    ]


def test_command_run(root_logger: Logger, tmppath: Path) -> None:
    output = Command('pwd').run(cwd=tmppath, logger=root_logger)

    assert output.stdout is not None
    assert output.stdout.strip() == str(tmppath)


def test_command_run_failure(
    root_logger: Logger, caplog: _pytest.logging.LogCaptureFixture
) -> None:
    with pytest.raises(RunError) as excinfo:
        Command('sh', '-c', 'echo broken; exit 3').run(logger=root_logger, stream_output=False)

    assert excinfo.value.returncode == 3
    assert excinfo.value.stdout == 'broken\n'
    assert str(excinfo.value) == "Command 'sh -c 'echo broken; exit 3'' returned 3."

    # Output of a command that was not streamed is logged once it failed.
    assert_log(caplog, message='out: broken')


def test_command_not_found(root_logger: Logger) -> None:
    with pytest.raises(RunError, match="File 'vmrange-no-such-command' not found."):
        Command('vmrange-no-such-command').run(logger=root_logger)


def test_command_missing_cwd(root_logger: Logger, tmppath: Path) -> None:
    with pytest.raises(GeneralError, match='does not exist'):
        Command('true').run(cwd=tmppath / 'missing', logger=root_logger)


def test_command_timeout(root_logger: Logger) -> None:
    started = time.monotonic()

    with pytest.raises(RunError) as excinfo:
        Command('sleep', '30').run(timeout=1, logger=root_logger)

    assert time.monotonic() - started < 20
    assert excinfo.value.returncode == 124


def test_yaml_roundtrip() -> None:
    data = {'all': {'hosts': {'web': {'ansible_host': '10.0.0.1', 'path': Path('/srv')}}}}

    assert yaml_to_dict(dict_to_yaml(data), yaml_type='safe') == {
        'all': {'hosts': {'web': {'ansible_host': '10.0.0.1', 'path': '/srv'}}}
    }


def test_yaml_type_checks() -> None:
    assert yaml_to_dict('') == {}
    assert yaml_to_list('') == []

    with pytest.raises(GeneralError, match="Expected dictionary in yaml data, got 'list'."):
        yaml_to_dict('- foo', yaml_type='safe')

    with pytest.raises(GeneralError, match="Expected list in yaml data, got 'dict'."):
        yaml_to_list('foo: bar')


def test_deadline() -> None:
    deadline = Deadline.from_seconds(3600)

    assert deadline.original_timeout == datetime.timedelta(hours=1)
    assert deadline.is_due is False
    assert deadline.time_left > datetime.timedelta(0)

    assert Deadline.from_seconds(0).is_due is True


def test_waiting(root_logger: Logger) -> None:
    attempts: list[int] = []

    def ready() -> str:
        attempts.append(1)

        if len(attempts) < 3:
            raise WaitingIncompleteError

        return 'ready'

    waiting = Waiting(deadline=Deadline.from_seconds(10), tick=0.01)

    assert waiting.wait(ready, root_logger) == 'ready'
    assert len(attempts) == 3


def test_waiting_timeout(root_logger: Logger) -> None:
    def never() -> None:
        raise WaitingIncompleteError

    waiting = Waiting(deadline=Deadline.from_seconds(0.1), tick=0.01)

    with pytest.raises(WaitingTimedOutError, match="Waiting for condition 'never' timed out"):
        waiting.wait(never, root_logger)


def test_waiting_interrupted(root_logger: Logger) -> None:
    def never() -> None:
        raise WaitingIncompleteError

    INTERRUPT_PENDING.set()

    with pytest.raises(Interrupted):
        Waiting(deadline=Deadline.from_seconds(10), tick=0.01).wait(never, root_logger)


def test_waiting_propagates_errors(root_logger: Logger) -> None:
    def broken() -> None:
        raise GeneralError('broken check')

    with pytest.raises(GeneralError, match='broken check'):
        Waiting(deadline=Deadline.from_seconds(10), tick=0.01).wait(broken, root_logger)
