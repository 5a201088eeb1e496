""" Virtual Machine Range Utilities """

import enum
import functools
import io
import os
import re
import shlex
import signal
import subprocess
import sys
import time
import traceback
from collections.abc import Iterable, Iterator
from pathlib import Path
from threading import Thread
from typing import (
    IO,
    Any,
    Literal,
    Optional,
    Union,
    cast,
)

import click
from ruamel.yaml import YAML, scalarstring
from ruamel.yaml.error import YAMLError
from ruamel.yaml.representer import Representer

import vmrange.log
from vmrange.log import Logger

__all__ = [
    'Command',
    'CommandOutput',
    'ConfigManagerError',
    'ConfigManagerPermanentError',
    'ConfigManagerTemporaryError',
    'FileError',
    'GeneralError',
    'HostNotFoundError',
    'HypervisorError',
    'Path',
    'RunError',
    'SpecificationError',
    'VMNotFoundError',
    'VMOperation',
    'VMOperationError',
]


# Maximum number of lines of stdout/stderr to show upon errors
OUTPUT_LINES = 100

#: How wide should the output be at maximum.
DEFAULT_OUTPUT_WIDTH: int = 79

# Hierarchy indent
INDENT = 4


class ProcessExitCodes(enum.IntEnum):
    #: Successful run.
    SUCCESS = 0
    #: Unsuccessful run.
    FAILURE = 1

    #: Command was terminated because of a timeout.
    TIMEOUT = 124

    #: Permission denied (or) unable to execute.
    PERMISSION_DENIED = 126
    #: Command not found, or PATH error.
    NOT_FOUND = 127

    # (128 + N) where N is a signal send to the process
    #: Terminated by either ``Ctrl+C`` combo or ``SIGINT`` signal.
    SIGINT = 130
    #: Terminated by a ``SIGTERM`` signal.
    SIGTERM = 143

    @classmethod
    def format(cls, exit_code: int) -> Optional[str]:
        """
        Format a given exit code for nicer logging
        """

        member = cls._value2member_map_.get(exit_code)

        if member is None:
            return 'unrecognized'

        if member.name.startswith('SIG'):
            return member.name

        return member.name.lower().replace('_', ' ')


# ~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
#  Exceptions
# ~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~


class GeneralError(Exception):
    """
    General error
    """

    def __init__(
        self,
        message: str,
        causes: Optional[list[Exception]] = None,
        *args: Any,
        **kwargs: Any,
    ) -> None:
        """
        General error.

        :param message: error message.
        :param causes: optional list of exceptions that caused this one.
            Since ``raise ... from ...`` allows only for a single cause,
            and some of our workflows may raise exceptions triggered by
            more than one exception, we need a mechanism for storing
            them. Our reporting will honor this field, and report causes
            the same way as ``__cause__``.
        """

        super().__init__(message, *args, **kwargs)

        self.message = message
        self.causes = causes or []


class FileError(GeneralError):
    """
    File operation error
    """


class SpecificationError(GeneralError):
    """
    Invalid configuration or host specification
    """


class RunError(GeneralError):
    """
    Command execution error
    """

    def __init__(
        self,
        message: str,
        command: 'Command',
        returncode: int,
        stdout: Optional[str] = None,
        stderr: Optional[str] = None,
        logger: Optional[Logger] = None,
        *args: Any,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, *args, **kwargs)

        self.command = command
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        # Verbosity of the logger decides how much output gets rendered.
        self.logger = logger


class VMOperation(enum.Enum):
    """
    Kinds of virtual machine operations a hypervisor backend may fail.
    """

    ASSIGN_NETWORK = 'Failed to assign the network(s) to the VM'
    BOOT_ORDER = 'Failed to set the boot order on the VM'
    GUEST = 'Failed to acquire a guest session on the VM'
    POWER_OFF = 'Failed to power off the VM'
    POWER_ON = 'Failed to power on the VM'
    RUN_COMMAND = 'Failed to run a command on the VM'
    SHARED_FOLDER = 'Failed to create the shared folder on the VM'
    TRANSFER_FROM = 'Failed to retrieve the file from the VM'
    TRANSFER_TO = 'Failed to transfer the file to the VM'


class VMOperationError(GeneralError):
    """
    A hypervisor backend failed to perform an operation on a VM
    """

    def __init__(
        self,
        backend: str,
        vm_name: str,
        code: VMOperation,
        message: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
        *args: Any,
        **kwargs: Any,
    ) -> None:
        """
        Describe a failed VM operation.

        :param backend: name of the backend that failed.
        :param vm_name: name of the VM the operation targeted.
        :param code: which operation failed.
        :param message: optional additional information, appended to
            the generic message of ``code``.
        :param details: optional free-form key/value pairs, rendered
            together with the exception.
        """

        reason = f'{code.value}: {message}' if message else code.value

        super().__init__(
            f'Backend: {backend}; VM: {vm_name}; Code: {code.name}; {reason}',
            *args,
            **kwargs,
        )

        self.backend = backend
        self.vm_name = vm_name
        self.code = code
        self.details = details or {}


class HypervisorError(GeneralError):
    """
    A hypervisor backend failed, without relation to any particular VM
    """

    def __init__(self, backend: str, message: str, *args: Any, **kwargs: Any) -> None:
        super().__init__(f'Backend: {backend}; {message}', *args, **kwargs)

        self.backend = backend


class VMNotFoundError(GeneralError):
    """
    The VM is not known to the hypervisor backend
    """

    def __init__(self, vm_name: str, *args: Any, **kwargs: Any) -> None:
        super().__init__(f"VM '{vm_name}' not found.", *args, **kwargs)

        self.vm_name = vm_name


class ConfigManagerError(GeneralError):
    """
    Configuration manager failed to set up, apply a phase or clean up
    """


class ConfigManagerPermanentError(ConfigManagerError):
    """
    Configuration manager failure that will not go away by trying again
    """


class ConfigManagerTemporaryError(ConfigManagerError):
    """
    Configuration manager failure that may go away by trying again
    """


class HostNotFoundError(ConfigManagerPermanentError):
    """
    No host of the given label exists
    """

    def __init__(self, label: str, phase: str, *args: Any, **kwargs: Any) -> None:
        super().__init__(f"Host '{label}' not found, cannot apply phase '{phase}'.", *args, **kwargs)

        self.label = label
        self.phase = phase


# ~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
#  Commands
# ~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

#: A single element of raw command line in its ``list`` form.
RawCommandElement = Union[str, Path]


class StreamLogger(Thread):
    """
    Reading pipes of running process in threads.
    """

    def __init__(
        self,
        log_header: str,
        *,
        stream: Optional[IO[bytes]] = None,
        logger: Optional[vmrange.log.LoggingFunction] = None,
        stream_output: bool = True,
    ) -> None:
        super().__init__(daemon=True)

        self.stream = stream
        self.output: list[str] = []
        self.log_header = log_header
        self.logger = logger
        self.stream_output = stream_output

    def run(self) -> None:
        if self.stream is None:
            return

        for _line in self.stream:
            line = _line.decode('utf-8', errors='replace')

            if self.logger is not None and self.stream_output and line != '':
                self.logger(self.log_header, line.rstrip('\n'), 'yellow', level=3)

            self.output.append(line)

    def get_output(self) -> Optional[str]:
        return ''.join(self.output)


class CommandOutput:
    def __init__(self, stdout: Optional[str], stderr: Optional[str]) -> None:
        self.stdout = stdout
        self.stderr = stderr

    def __repr__(self) -> str:
        return f'<CommandOutput: stdout={self.stdout!r} stderr={self.stderr!r}>'


class Command:
    """
    A command with its arguments.
    """

    def __init__(self, *elements: RawCommandElement) -> None:
        self._command = [str(element) for element in elements]

    def __str__(self) -> str:
        return self.to_element()

    def __repr__(self) -> str:
        return f'<Command: {self._command}>'

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Command):
            return NotImplemented

        return self._command == other._command

    def to_element(self) -> str:
        """
        Convert a command to a shell command line element.
        """

        return ' '.join(shlex.quote(s) for s in self._command)

    def to_popen(self) -> list[str]:
        """
        Convert a command to form accepted by :py:mod:`subprocess.Popen`
        """

        return list(self._command)

    def run(
        self,
        *,
        cwd: Optional[Path] = None,
        env: Optional[dict[str, str]] = None,
        join: bool = False,
        timeout: Optional[int] = None,
        message: Optional[str] = None,
        friendly_command: Optional[str] = None,
        log: Optional[vmrange.log.LoggingFunction] = None,
        silent: bool = False,
        stream_output: bool = True,
        logger: Logger,
    ) -> CommandOutput:
        """
        Run command, give message, handle errors.

        :param cwd: if set, command would be executed in the given
            directory, otherwise the current working directory is used.
        :param env: environment variables to combine with the current
            environment before running the command.
        :param join: if set, stdout and stderr of the command would be
            merged into a single output text.
        :param timeout: if set, command would be interrupted, if still
            running, after this many seconds.
        :param message: if set, it would be logged for more friendly
            logging.
        :param friendly_command: if set, it would be logged instead of
            the command itself.
        :param log: a logging function to use for logging of command
            output. By default, ``logger.debug`` is used.
        :param silent: if set, logging of steps taken by this function
            would be reduced.
        :param stream_output: if set, command output would be streamed
            live into the log. When unset, the output would be logged only
            when the command fails.
        :param logger: logger to use for logging.
        :returns: command output, bundled in a :py:class:`CommandOutput`.
        """

        if message:
            logger.verbose(message, level=2)

        logger.debug(f'Run command: {self!s}', level=2)

        if not silent and friendly_command:
            (log or logger.verbose)('cmd', friendly_command, color='yellow', level=2)

        if cwd and not cwd.exists():
            raise GeneralError(f"The working directory '{cwd}' does not exist.")

        output_logger = (log or logger.debug) if not silent else logger.debug

        actual_env: Optional[dict[str, str]] = None

        # Do not modify current process environment
        if env is not None:
            actual_env = {**os.environ, **env}

        try:
            process = subprocess.Popen(
                self.to_popen(),
                cwd=cwd,
                env=actual_env,
                start_new_session=True,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT if join else subprocess.PIPE,
            )

        except FileNotFoundError as exc:
            raise RunError(
                f"File '{exc.filename}' not found.", self, ProcessExitCodes.NOT_FOUND, logger=logger
            ) from exc

        stdout_logger = StreamLogger(
            'out', stream=process.stdout, logger=output_logger, stream_output=stream_output
        )
        stderr_logger = StreamLogger(
            'err', stream=process.stderr, logger=output_logger, stream_output=stream_output
        )

        stdout_logger.start()
        stderr_logger.start()

        start_timestamp = time.monotonic()

        def log_event(msg: str) -> None:
            logger.debug(
                'Command event',
                f'{time.monotonic() - start_timestamp:.4} {msg}',
                level=4,
                topic=vmrange.log.Topic.COMMAND_EVENTS,
            )

        log_event('waiting for process to finish')

        try:
            process.wait(timeout=timeout)

        except subprocess.TimeoutExpired:
            log_event(f'duration "{timeout}" exceeded')

            os.killpg(os.getpgid(process.pid), signal.SIGKILL)
            log_event('sent SIGKILL signal')

            process.wait()
            log_event('kill confirmed')

            process.returncode = ProcessExitCodes.TIMEOUT

        stdout_logger.join()
        stderr_logger.join()
        log_event('stream readers done')

        stdout = stdout_logger.get_output()
        stderr = None if join else stderr_logger.get_output()

        logger.debug(
            f"Command returned '{process.returncode}' "
            f'({ProcessExitCodes.format(process.returncode)}).',
            level=3,
        )

        if process.returncode != ProcessExitCodes.SUCCESS:
            if not stream_output:
                for name, output in (('out', stdout), ('err', stderr)):
                    for line in (output or '').splitlines():
                        output_logger(name, value=line, color='yellow', level=3)

            raise RunError(
                f"Command '{friendly_command or str(self)}' returned {process.returncode}.",
                self,
                process.returncode,
                stdout=stdout,
                stderr=stderr,
                logger=logger,
            )

        return CommandOutput(stdout, stderr)


# ~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
#  Exception rendering
# ~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~


def render_run_exception_streams(
    stdout: Optional[str], stderr: Optional[str], verbose: int = 0
) -> Iterator[str]:
    """
    Render run exception output streams for printing
    """

    for name, output in (('stdout', stdout), ('stderr', stderr)):
        if not output:
            continue

        output_lines = output.strip().split('\n')

        # Show all lines in verbose mode, limit to maximum otherwise
        if verbose > 0:
            line_summary = f'{len(output_lines)}'
        else:
            line_summary = f'{min(len(output_lines), OUTPUT_LINES)}/{len(output_lines)}'
            output_lines = output_lines[-OUTPUT_LINES:]

        yield f'{name} ({line_summary} lines)'
        yield DEFAULT_OUTPUT_WIDTH * '~'
        yield from output_lines
        yield DEFAULT_OUTPUT_WIDTH * '~'
        yield ''


def render_run_exception(exception: RunError) -> Iterator[str]:
    """
    Render detailed output upon command execution errors for printing
    """

    verbose = exception.logger.verbosity_level if exception.logger else 0

    yield from render_run_exception_streams(exception.stdout, exception.stderr, verbose=verbose)


def render_exception_stack(exception: BaseException) -> Iterator[str]:
    """
    Render traceback of the given exception
    """

    exception_traceback = traceback.TracebackException(
        type(exception), exception, exception.__traceback__, capture_locals=True
    )

    # N806: allow upper-case names to make them look like formatting
    # tags in strings below.
    R = functools.partial(click.style, fg='red')  # noqa: N806
    Y = functools.partial(click.style, fg='yellow')  # noqa: N806
    B = functools.partial(click.style, fg='blue')  # noqa: N806

    yield R('Traceback (most recent call last):')
    yield ''

    for frame in exception_traceback.stack:
        yield f'File {Y(frame.filename)}, line {Y(str(frame.lineno))}, in {Y(frame.name)}'
        yield f'  {B(frame.line or "")}'


def render_exception(exception: BaseException) -> Iterator[str]:
    """
    Render the exception and its causes for printing
    """

    def _indent(iterable: Iterable[str]) -> Iterator[str]:
        for item in iterable:
            if not item:
                yield item

            else:
                for line in item.splitlines():
                    yield f'{INDENT * " "}{line}'

    yield click.style(str(exception), fg='red')

    if isinstance(exception, RunError):
        yield ''
        yield from render_run_exception(exception)

    if isinstance(exception, VMOperationError) and exception.details:
        yield ''
        yield from (f'{key}: {value}' for key, value in exception.details.items())

    if os.getenv('VMRANGE_SHOW_TRACEBACK', '0') != '0':
        yield ''
        yield from _indent(render_exception_stack(exception))

    # Follow the chain and render all causes
    def _render_cause(number: int, cause: BaseException) -> Iterator[str]:
        yield ''
        yield f'Cause number {number}:'
        yield ''
        yield from _indent(render_exception(cause))

    def _render_causes(causes: list[BaseException]) -> Iterator[str]:
        yield ''
        yield f'The exception was caused by {len(causes)} earlier exceptions'

        for number, cause in enumerate(causes, start=1):
            yield from _render_cause(number, cause)

    causes: list[BaseException] = []

    if isinstance(exception, GeneralError) and exception.causes:
        causes += exception.causes

    if exception.__cause__:
        causes += [exception.__cause__]

    if causes:
        yield from _render_causes(causes)


def show_exception(exception: BaseException) -> None:
    """
    Display the exception and its causes
    """

    from vmrange.cli import EXCEPTION_LOGGER

    EXCEPTION_LOGGER.print('', file=sys.stderr)
    EXCEPTION_LOGGER.print('\n'.join(render_exception(exception)), file=sys.stderr)


# ~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
#  Utilities
# ~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~


def remove_color(text: str) -> str:
    """
    Remove ansi color sequences from the string
    """

    return re.sub(r'\x1B(?:[@-Z\\-_]|\[[0-?]*[ -/]*[@-~])', '', text)


def dict_to_yaml(
    data: Union[dict[str, Any], list[Any]],
    width: Optional[int] = None,
    start: bool = False,
) -> str:
    """
    Convert dictionary into yaml
    """

    output = io.StringIO()
    yaml = YAML()
    yaml.indent(mapping=4, sequence=4, offset=2)
    yaml.default_flow_style = False
    yaml.allow_unicode = True
    yaml.encoding = 'utf-8'
    yaml.width = cast(None, width)
    yaml.explicit_start = cast(None, start)

    def _represent_path(representer: Representer, data: Path) -> Any:
        return representer.represent_scalar('tag:yaml.org,2002:str', str(data))

    yaml.representer.add_representer(Path, _represent_path)
    yaml.representer.add_representer(type(Path()), _represent_path)

    # Convert multiline strings
    scalarstring.walk_tree(data)

    yaml.dump(data, output)

    return output.getvalue()


YamlTypType = Literal['rt', 'safe', 'unsafe', 'base']


def yaml_to_dict(data: Any, yaml_type: Optional[YamlTypType] = None) -> dict[Any, Any]:
    """
    Convert yaml into dictionary
    """

    yaml = YAML(typ=yaml_type)

    try:
        loaded_data = yaml.load(data)
    except YAMLError as error:
        raise GeneralError(f'Invalid yaml syntax: {error}') from error

    if loaded_data is None:
        return {}

    if not isinstance(loaded_data, dict):
        raise GeneralError(f"Expected dictionary in yaml data, got '{type(loaded_data).__name__}'.")

    return loaded_data


def yaml_to_list(data: Any, yaml_type: Optional[YamlTypType] = 'safe') -> list[Any]:
    """
    Convert yaml into list
    """

    yaml = YAML(typ=yaml_type)

    try:
        loaded_data = yaml.load(data)
    except YAMLError as error:
        raise GeneralError(f'Invalid yaml syntax: {error}') from error

    if loaded_data is None:
        return []

    if not isinstance(loaded_data, list):
        raise GeneralError(f"Expected list in yaml data, got '{type(loaded_data).__name__}'.")

    return loaded_data

