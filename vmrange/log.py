"""
vmrange's logging subsystem.

Adds a layer on top of Python's own :py:mod:`logging` subsystem. This
layer implements the desired verbosity and debug levels, colorization,
formatting, labels and indentation used by vmrange commands and code.

The main workhorses are :py:class:`Logger` instances. Each instance wraps
a particular :py:class:`logging.Logger` instance - usually there's a chain
of such instances, with the root one having console and logfile handlers
attached. Verbosity, debug and quiet features are handled on our side,
with the use of :py:class:`logging.Filter` classes.

``Logger`` instances can be cloned and modified: the command line spawns
a "root logger", agents and configuration managers descend from it, and
the phase queue clones per-host loggers with labels attached. This way,
every host's output is prefixed by its label and properly indented.

While vmrange recognizes several levels of verbosity (``-v``) and
debugging (``-d``), all messages emitted by :py:meth:`Logger.verbose` and
:py:meth:`Logger.debug` use a single logging level, ``INFO`` or
``DEBUG``, respectively. The level of verbosity and debugging is then
handled by special :py:class:`logging.Filter` classes.
"""

import dataclasses
import enum
import itertools
import logging
import os
import sys
from typing import (
    TYPE_CHECKING,
    Any,
    Callable,
    ClassVar,
    Optional,
    Protocol,
    TextIO,
    Union,
)

import click

if TYPE_CHECKING:
    import vmrange.utils

# Hierarchy indent
INDENT = 4

DEFAULT_VERBOSITY_LEVEL = 0
DEFAULT_DEBUG_LEVEL = 0


class Topic(enum.Enum):
    COMMAND_EVENTS = 'command-events'
    STAGING = 'staging'


DEFAULT_TOPICS: set[Topic] = set()


LABEL_FORMAT = '[{label}]'


LoggableValue = Union[
    str,
    int,
    bool,
    float,
    'vmrange.utils.Path',
    'vmrange.utils.Command',
]


def _dont_decolorize(s: str) -> str:
    return s


def create_decolorizer(apply_colors: bool) -> Callable[[str], str]:
    if apply_colors:
        return _dont_decolorize

    import vmrange.utils

    return vmrange.utils.remove_color


def _debug_level_from_global_envvar() -> int:
    import vmrange.utils

    raw_value = os.getenv('VMRANGE_DEBUG', None)

    if raw_value is None:
        return 0

    try:
        return int(raw_value)

    except ValueError:
        raise vmrange.utils.GeneralError(f"Invalid debug level '{raw_value}', use an integer.")


def decide_colorization(no_color: bool, force_color: bool) -> tuple[bool, bool]:
    """
    Decide whether the output and logging should be colorized.

    The following inputs are evaluated, in this order:

    * if either of the ``--force-color`` CLI option or
      ``VMRANGE_FORCE_COLOR`` environment variable are set, colorization
      would be forcefully enabled.
    * if either of the ``--no-color`` CLI option, ``NO_COLOR`` or
      ``VMRANGE_NO_COLOR`` environment variables are set, colorization
      would be disabled.

    If none of the situations above happened, colorization would be
    enabled for output and logging based on their respective stream TTY
    status.

    :param no_color: value of the ``--no-color`` CLI option.
    :param force_color: value of the ``--force-color`` CLI option.
    :returns: a tuple of two booleans, one for output colorization, the
        other for logging colorization.
    """

    if force_color or 'VMRANGE_FORCE_COLOR' in os.environ:
        return True, True

    if no_color or 'NO_COLOR' in os.environ or 'VMRANGE_NO_COLOR' in os.environ:
        return False, False

    return sys.stdout.isatty(), sys.stderr.isatty()


def render_labels(labels: list[str]) -> str:
    if not labels:
        return ''

    return ''.join(click.style(LABEL_FORMAT.format(label=label), fg='cyan') for label in labels)


def indent(
    key: str,
    value: Optional[LoggableValue] = None,
    color: Optional[str] = None,
    level: int = 0,
    labels: Optional[list[str]] = None,
    labels_padding: int = 0,
) -> str:
    """
    Indent a key/value message.

    If both ``key`` and ``value`` are specified, ``{key}: {value}``
    message is rendered. Otherwise, just ``key`` is used alone. If
    ``value`` contains multiple lines, each but the very first line is
    indented by one extra level.

    :param value: optional value to print at right side of ``key``.
    :param color: optional color to apply on ``key``.
    :param level: number of indentation levels. Each level is indented
        by :py:data:`INDENT` spaces.
    :param labels: optional list of strings to prepend to each message.
        Each item would be wrapped within square brackets
        (``[foo] message...``).
    :param labels_padding: if set, rendered labels would be padded to
        this length.
    """

    indent = ' ' * INDENT * level

    if color is not None:
        key = click.style(key, fg=color)

    prefix = render_labels(labels).ljust(labels_padding) + ' ' if labels else ''

    if value is None:
        return f'{prefix}{indent}{key}'

    if not isinstance(value, str):
        value = str(value)

    lines = value.splitlines()
    if len(lines) <= 1:
        return f'{prefix}{indent}{key}: {value}'

    # Multiple lines: key goes on its own line, value lines below it,
    # indented one level deeper.
    deeper = ' ' * INDENT

    return f'{prefix}{indent}{key}:\n' + '\n'.join(
        f'{prefix}{indent}{deeper}{line}' for line in lines
    )


@dataclasses.dataclass
class LogRecordDetails:
    """
    vmrange's log message components attached to log records
    """

    key: str
    value: Optional[LoggableValue] = None

    color: Optional[str] = None
    shift: int = 0

    logger_labels: list[str] = dataclasses.field(default_factory=list)
    logger_labels_padding: int = 0

    logger_verbosity_level: int = 0
    message_verbosity_level: Optional[int] = None

    logger_debug_level: int = 0
    message_debug_level: Optional[int] = None

    logger_quiet: bool = False
    ignore_quietness: bool = False

    logger_topics: set[Topic] = dataclasses.field(default_factory=set)
    message_topic: Optional[Topic] = None


class LogfileHandler(logging.FileHandler):
    def __init__(self, filepath: 'vmrange.utils.Path') -> None:
        super().__init__(filepath, mode='a')


class ConsoleHandler(logging.StreamHandler):  # type: ignore[type-arg]
    pass


class _Formatter(logging.Formatter):
    def __init__(self, fmt: str, apply_colors: bool = False) -> None:
        super().__init__(fmt, datefmt='%H:%M:%S')

        self.apply_colors = apply_colors

        self._decolorize = create_decolorizer(apply_colors)

    def format(self, record: logging.LogRecord) -> str:
        if self.usesTime():
            record.asctime = self.formatTime(record, self.datefmt)

        # Messages of other logging subsystems are rendered here, ours
        # arrive already rendered.
        if not hasattr(record, 'message'):
            record.message = record.getMessage()

        lines = [self._decolorize(self.formatMessage(record))]

        if record.exc_info and not record.exc_text:
            record.exc_text = self.formatException(record.exc_info)

        if record.exc_text:
            lines.append(record.exc_text)

        if record.stack_info:
            lines.append(self.formatStack(record.stack_info))

        return '\n'.join(line.rstrip('\n') for line in lines)


class LogfileFormatter(_Formatter):
    def __init__(self) -> None:
        super().__init__('%(asctime)s %(message)s', apply_colors=False)


class ConsoleFormatter(_Formatter):
    def __init__(self, apply_colors: bool = True, show_timestamps: bool = False) -> None:
        super().__init__(
            '%(asctime)s %(message)s' if show_timestamps else '%(message)s',
            apply_colors=apply_colors,
        )


class _DetailsFilter(logging.Filter):
    """
    Base of filters deciding by details attached to records by :py:class:`Logger`.

    Records of other levels than :py:attr:`levels` always pass. Records
    without details, i.e. those emitted by other logging subsystems, pass
    only when :py:attr:`accept_foreign` is set.
    """

    levels: ClassVar[tuple[int, ...]] = (logging.DEBUG, logging.INFO)
    accept_foreign: ClassVar[bool] = False

    def accepts(self, details: LogRecordDetails) -> bool:
        raise NotImplementedError

    def filter(self, record: logging.LogRecord) -> bool:
        if record.levelno not in self.levels:
            return True

        details: Optional[LogRecordDetails] = getattr(record, 'details', None)

        if details is None:
            return self.accept_foreign

        return bool(self.accepts(details))


class VerbosityLevelFilter(_DetailsFilter):
    levels = (logging.INFO,)
    accept_foreign = True

    def accepts(self, details: LogRecordDetails) -> bool:
        wanted = details.message_verbosity_level

        return wanted is None or details.logger_verbosity_level >= wanted


class DebugLevelFilter(_DetailsFilter):
    levels = (logging.DEBUG,)
    accept_foreign = True

    def accepts(self, details: LogRecordDetails) -> bool:
        wanted = details.message_debug_level

        return wanted is None or details.logger_debug_level >= wanted


class QuietnessFilter(_DetailsFilter):
    def accepts(self, details: LogRecordDetails) -> bool:
        return not details.logger_quiet or details.ignore_quietness


class TopicFilter(_DetailsFilter):
    def accepts(self, details: LogRecordDetails) -> bool:
        return details.message_topic is None or details.message_topic in details.logger_topics


class LoggingFunction(Protocol):
    def __call__(
        self,
        key: str,
        value: Optional[LoggableValue] = None,
        color: Optional[str] = None,
        shift: int = 0,
        level: int = 1,
        topic: Optional[Topic] = None,
    ) -> None:
        pass


class Logger:
    """
    A logging entry point, representing a certain level of verbosity and handlers.

    Provides actual logging methods plus methods for managing verbosity
    levels and handlers.
    """

    def __init__(
        self,
        actual_logger: logging.Logger,
        base_shift: int = 0,
        labels: Optional[list[str]] = None,
        labels_padding: int = 0,
        verbosity_level: int = DEFAULT_VERBOSITY_LEVEL,
        debug_level: int = DEFAULT_DEBUG_LEVEL,
        quiet: bool = False,
        topics: Optional[set[Topic]] = None,
        apply_colors_output: bool = True,
        apply_colors_logging: bool = True,
    ) -> None:
        """
        Create a ``Logger`` instance with given verbosity levels.

        :param actual_logger: a :py:class:`logging.Logger` instance, the
            raw logger to use for logging.
        :param base_shift: shift applied to all messages processed by this
            logger.
        :param labels_padding: if set, rendered labels would be padded to
            this length.
        :param verbosity_level: desired verbosity level, usually derived
            from ``-v`` command-line option.
        :param debug_level: desired debugging level, usually derived from
            ``-d`` command-line option.
        :param quiet: if set, all messages would be suppressed, with the
            exception of warnings (:py:meth:`warning`), errors
            (:py:meth:`fail`) and messages emitted with :py:meth:`print`.
        """

        self._logger = actual_logger

        self._base_shift = base_shift

        self._child_id_counter = itertools.count()

        self.labels = labels or []
        self.labels_padding = labels_padding

        self.verbosity_level = verbosity_level
        self.debug_level = debug_level
        self.quiet = quiet
        self.topics = topics or set(DEFAULT_TOPICS)

        self.apply_colors_output = apply_colors_output
        self.apply_colors_logging = apply_colors_logging

        self._decolorize_output = create_decolorizer(apply_colors_output)

    def __repr__(self) -> str:
        return (
            '<Logger:'
            f' name={self._logger.name}'
            f' verbosity={self.verbosity_level}'
            f' debug={self.debug_level}'
            f' quiet={self.quiet}'
            f' topics={self.topics}'
            '>'
        )

    @property
    def labels_span(self) -> int:
        """
        Length of rendered labels
        """

        return len(render_labels(self.labels))

    @staticmethod
    def _normalize_logger(logger: logging.Logger) -> logging.Logger:
        """
        Reset properties of a given :py:class:`logging.Logger` instance
        """

        logger.propagate = True
        logger.level = logging.DEBUG

        logger.handlers = []

        return logger

    def clone(self) -> 'Logger':
        """
        Create a copy of this logger instance.

        All its settings are propagated to new instance. Settings are
        **not** shared, and may be freely modified after cloning without
        affecting the other logger.
        """

        return Logger(
            self._logger,
            base_shift=self._base_shift,
            labels=self.labels[:],
            labels_padding=self.labels_padding,
            verbosity_level=self.verbosity_level,
            debug_level=self.debug_level,
            quiet=self.quiet,
            topics=set(self.topics),
            apply_colors_output=self.apply_colors_output,
            apply_colors_logging=self.apply_colors_logging,
        )

    def descend(self, logger_name: Optional[str] = None, extra_shift: int = 1) -> 'Logger':
        """
        Create a copy of this logger instance, but with a new raw logger.

        New :py:class:`logging.Logger` instance is created from our raw
        logger, forming a parent/child relationship between them, and it's
        then wrapped with ``Logger`` instance. Settings of this logger are
        copied to new one, with the exception of ``base_shift`` which is
        increased by ``extra_shift``.

        :param logger_name: optional name for the underlying
            :py:class:`logging.Logger` instance. If not set, a generic one
            is created.
        :param extra_shift: by how many extra levels should messages be
            indented by new logger.
        """

        logger_name = logger_name or f'logger{next(self._child_id_counter)}'
        actual_logger = self._normalize_logger(self._logger.getChild(logger_name))

        return Logger(
            actual_logger,
            base_shift=self._base_shift + extra_shift,
            labels=self.labels[:],
            labels_padding=self.labels_padding,
            verbosity_level=self.verbosity_level,
            debug_level=self.debug_level,
            quiet=self.quiet,
            topics=set(self.topics),
            apply_colors_output=self.apply_colors_output,
            apply_colors_logging=self.apply_colors_logging,
        )

    def add_logfile_handler(self, filepath: 'vmrange.utils.Path') -> None:
        """
        Attach a log file handler to this logger
        """

        handler = LogfileHandler(filepath)

        handler.setFormatter(LogfileFormatter())

        handler.addFilter(TopicFilter())

        self._logger.addHandler(handler)

    def add_console_handler(self, show_timestamps: bool = False) -> None:
        """
        Attach console handler to this logger.

        :param show_timestamps: when set, emitted messages would include
            the time.
        """

        handler = ConsoleHandler(stream=sys.stderr)

        handler.setFormatter(
            ConsoleFormatter(
                apply_colors=self.apply_colors_logging, show_timestamps=show_timestamps
            )
        )

        handler.addFilter(VerbosityLevelFilter())
        handler.addFilter(DebugLevelFilter())
        handler.addFilter(QuietnessFilter())
        handler.addFilter(TopicFilter())

        self._logger.addHandler(handler)

    def apply_verbosity_options(self, **kwargs: Any) -> 'Logger':
        """
        Update logger's settings to match given CLI options.

        Recognized options are ``verbose``, ``debug``, ``quiet`` and
        ``log_topic``. ``VMRANGE_DEBUG`` environment variable, when set,
        takes precedence over ``debug``.
        """

        verbosity_level: Optional[int] = kwargs.get('verbose', None)
        if verbosity_level:
            self.verbosity_level = verbosity_level

        debug_level_from_global_envvar = _debug_level_from_global_envvar()

        if debug_level_from_global_envvar:
            self.debug_level = debug_level_from_global_envvar

        else:
            debug_level_from_option: Optional[int] = kwargs.get('debug', None)

            if debug_level_from_option:
                self.debug_level = debug_level_from_option

        if kwargs.get('quiet', False) is True:
            self.quiet = True

        for topic_spec in kwargs.get('log_topic', None) or []:
            try:
                self.topics.add(Topic(topic_spec))

            except ValueError:
                import vmrange.utils

                raise vmrange.utils.GeneralError(
                    f'Logging topic "{topic_spec}" is invalid.'
                    f" Possible choices are {', '.join(topic.value for topic in Topic)}"
                )

        return self

    @classmethod
    def create(
        cls,
        actual_logger: Optional[logging.Logger] = None,
        apply_colors_output: bool = True,
        apply_colors_logging: bool = True,
        **verbosity_options: Any,
    ) -> 'Logger':
        """
        Create a (root) vmrange logger.

        This method has a very limited set of use cases:

        * CLI bootstrapping right after vmrange started.
        * Unit tests of code that requires logger as one of its inputs.
        * 3rd party apps treating vmrange as a library, i.e. when they
          wish vmrange to use their logger instead of the default one.

        :param actual_logger: a :py:class:`logging.Logger` instance to
            wrap. If not set, a default logger named ``vmrange`` is
            created.
        """

        actual_logger = actual_logger or cls._normalize_logger(logging.getLogger('vmrange'))

        return Logger(
            actual_logger,
            apply_colors_output=apply_colors_output,
            apply_colors_logging=apply_colors_logging,
        ).apply_verbosity_options(**verbosity_options)

    def _log(self, level: int, details: LogRecordDetails, message: str = '') -> None:
        """
        Emit a log record describing the message and related properties.

        Converts vmrange's specific logging approach, with keys, values,
        colors and shifts, to :py:class:`logging.LogRecord` instances
        carrying extra information for our custom filters and handlers.
        """

        details.logger_labels = self.labels
        details.logger_labels_padding = self.labels_padding

        details.logger_verbosity_level = self.verbosity_level
        details.logger_debug_level = self.debug_level
        details.logger_quiet = self.quiet
        details.logger_topics = self.topics

        details.shift = details.shift + self._base_shift

        if not message:
            message = indent(
                details.key,
                value=details.value,
                # Always apply colors - message can be decolorized later.
                color=details.color,
                level=details.shift,
                labels=self.labels,
                labels_padding=self.labels_padding,
            )

        self._logger._log(level, message, (), extra={'details': details})

    def print(
        self,
        text: str,
        color: Optional[str] = None,
        shift: int = 0,
        file: Optional[TextIO] = None,
    ) -> None:
        message = indent(
            text,
            color=color,
            level=shift + self._base_shift,
            labels=self.labels,
            labels_padding=self.labels_padding,
        )

        print(self._decolorize_output(message), file=file or sys.stdout)

    def info(
        self,
        key: str,
        value: Optional[LoggableValue] = None,
        color: Optional[str] = None,
        shift: int = 0,
    ) -> None:
        self._log(logging.INFO, LogRecordDetails(key=key, value=value, color=color, shift=shift))

    def verbose(
        self,
        key: str,
        value: Optional[LoggableValue] = None,
        color: Optional[str] = None,
        shift: int = 0,
        level: int = 1,
        topic: Optional[Topic] = None,
    ) -> None:
        self._log(
            logging.INFO,
            LogRecordDetails(
                key=key,
                value=value,
                color=color,
                shift=shift,
                message_verbosity_level=level,
                message_topic=topic,
            ),
        )

    def debug(
        self,
        key: str,
        value: Optional[LoggableValue] = None,
        color: Optional[str] = None,
        shift: int = 0,
        level: int = 1,
        topic: Optional[Topic] = None,
    ) -> None:
        self._log(
            logging.DEBUG,
            LogRecordDetails(
                key=key,
                value=value,
                color=color,
                shift=shift,
                message_debug_level=level,
                message_topic=topic,
            ),
        )

    def warning(self, message: str, shift: int = 0) -> None:
        self._log(
            logging.WARNING,
            LogRecordDetails(key='warn', value=message, color='yellow', shift=shift),
        )

    def fail(self, message: str, shift: int = 0) -> None:
        self._log(
            logging.ERROR,
            LogRecordDetails(key='fail', value=message, color='red', shift=shift),
        )

    _bootstrap_logger: Optional['Logger'] = None

    @classmethod
    def get_bootstrap_logger(cls) -> 'Logger':
        """
        Create a logger designed for vmrange startup time.

        .. warning::

            This logger has a **very** limited use case span, i.e. before
            vmrange can digest its command-line options and create a
            proper logger, and in signal handlers which have no access to
            any other logger.
        """

        if cls._bootstrap_logger is None:
            # Stay away of our future main logger
            actual_logger = Logger._normalize_logger(logging.getLogger('_vmrange_bootstrap'))

            cls._bootstrap_logger = Logger.create(actual_logger=actual_logger)
            cls._bootstrap_logger.add_console_handler()

        return cls._bootstrap_logger
