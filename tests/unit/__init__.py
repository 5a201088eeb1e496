import logging
import re
from collections.abc import Iterable
from typing import Any, Callable, Optional

import _pytest.logging

from vmrange.utils import remove_color

RecordTest = Callable[[Any], bool]


def _get_record_field(record: logging.LogRecord, field_name: str) -> Any:
    if field_name == 'message':
        return remove_color(record.getMessage())

    if field_name.startswith('details_'):
        details = getattr(record, 'details', None)

        if details is None:
            return None

        return getattr(details, field_name[len('details_') :], None)

    return getattr(record, field_name, None)


def _field_matches(value: Any, expected: Any) -> bool:
    if isinstance(expected, re.Pattern):
        return value is not None and expected.search(str(value)) is not None

    if callable(expected):
        return bool(expected(value))

    return bool(value == expected)


def _find_record(
    records: Iterable[logging.LogRecord], **tests: Any
) -> Optional[logging.LogRecord]:
    for record in records:
        if all(
            _field_matches(_get_record_field(record, name), expected)
            for name, expected in tests.items()
        ):
            return record

    return None


def _render_records(caplog: _pytest.logging.LogCaptureFixture) -> str:
    return '\n'.join(
        f'  {record.levelname}: {remove_color(record.getMessage())!r}' for record in caplog.records
    )


def assert_log(caplog: _pytest.logging.LogCaptureFixture, **tests: Any) -> None:
    """
    Assert a log record matching all given tests has been captured.

    Each keyword names a record attribute, ``message`` for the rendered
    message without colors, or ``details_<field>`` for a field of
    :py:class:`vmrange.log.LogRecordDetails`. Expected values may be
    plain values, compiled regular expressions or predicates.
    """

    if _find_record(caplog.records, **tests) is None:
        raise AssertionError(
            f'No log record matching {tests!r} found. Captured records:\n'
            f'{_render_records(caplog)}'
        )


def assert_not_log(caplog: _pytest.logging.LogCaptureFixture, **tests: Any) -> None:
    """
    Assert no log record matching all given tests has been captured.
    """

    record = _find_record(caplog.records, **tests)

    if record is not None:
        raise AssertionError(
            f'Unexpected log record matching {tests!r} found: '
            f'{remove_color(record.getMessage())!r}'
        )
