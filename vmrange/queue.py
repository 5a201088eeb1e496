"""
Running tasks across many hosts or artifacts in parallel.

A :py:class:`Queue` runs its tasks one by one, in the order they were
enqueued. A single task may fan out, e.g. to apply a phase to all hosts
at once; the queue stops after the first task that failed for any of
its units.
"""

import copy
from collections.abc import Iterator
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from typing import TYPE_CHECKING, Callable, Generic, Optional, TypeVar

from typing_extensions import ParamSpec

from vmrange.log import Logger
from vmrange.utils import Path

if TYPE_CHECKING:
    from typing_extensions import Self

    from vmrange.agent import RemoteAgent
    from vmrange.configmanager import ConfigManager
    from vmrange.hosts import Host


T = TypeVar('T')
P = ParamSpec('P')
TaskResultT = TypeVar('TaskResultT')
TaskT = TypeVar('TaskT', bound='Task')  # type: ignore[type-arg]


class Task(Generic[TaskResultT]):
    """
    A base class for queueable actions.

    .. note::

        The class provides both the implementation of the action, but
        also serves as a container for outcome of the action: every time
        the task is invoked by :py:class:`<Queue>`, the queue yields an
        instance of the same class, but filled with information related
        to the result of its action.
    """

    #: A logger to use for logging events related to the outcome.
    logger: Logger

    #: Result returned by the task when executed.
    result: Optional[TaskResultT] = None

    #: If set, an exception was raised by the running task, and said
    #: exception is saved in this field.
    exc: Optional[Exception] = None

    #: If set, the task raised :py:class:`SystemExit` exception, and
    #: wants to terminate the run completely.
    requested_exit: Optional[SystemExit] = None

    def __init__(self, logger: Logger) -> None:
        self.logger = logger

    @property
    def name(self) -> str:
        raise NotImplementedError

    def _extract_task_outcome(
        self, logger: Logger, extract: Callable[P, TaskResultT], *args: P.args, **kwargs: P.kwargs
    ) -> 'Self':
        """
        Run ``extract`` and record its outcome in a copy of this task.

        :returns: new instance of this class, with :py:attr:`logger`,
            :py:attr:`result`, :py:attr:`exc` and
            :py:attr:`requested_exit` attributes filled according to the
            result of ``extract``.
        """

        task = copy.copy(self)

        task.logger = logger
        task.result = None
        task.exc = None
        task.requested_exit = None

        try:
            task.result = extract(*args, **kwargs)

        except SystemExit as exc:
            task.requested_exit = exc

        except Exception as exc:
            task.exc = exc

        return task

    def _invoke_in_pool(
        self,
        *,
        units: list[T],
        get_label: Callable[[T], str],
        submit: Callable[[T, Logger, ThreadPoolExecutor], Future[TaskResultT]],
        on_complete: Optional[Callable[['Self', T], 'Self']] = None,
    ) -> Iterator['Self']:
        """
        Execute the task across a list of "units" of work.

        Each unit gets its own worker thread and its own logger, labeled
        by ``get_label``. Outcomes are yielded as the units finish.
        """

        if not units:
            return

        multiple_units = len(units) > 1

        loggers = prepare_loggers(self.logger, [get_label(unit) for unit in units])

        with ThreadPoolExecutor(max_workers=len(units)) as executor:
            futures: dict[Future[TaskResultT], T] = {}

            for unit in units:
                logger = loggers[get_label(unit)]

                if multiple_units:
                    logger.info('started', color='cyan')

                futures[submit(unit, logger, executor)] = unit

            for future in as_completed(futures):
                unit = futures[future]
                logger = loggers[get_label(unit)]

                if multiple_units:
                    logger.info('finished', color='cyan')

                task = self._extract_task_outcome(logger, future.result)

                if on_complete:
                    task = on_complete(task, unit)

                yield task

    def go(self) -> Iterator['Self']:
        """
        Perform the task.

        :yields: instances of the same class, describing invocations of
            the task and their outcome.
        """

        raise NotImplementedError


def prepare_loggers(logger: Logger, labels: list[str]) -> dict[str, Logger]:
    """
    Create loggers for a set of labels.

    Labels are set only when there is more than one of them, and all
    loggers pad their labels to the same width.
    """

    loggers: dict[str, Logger] = {}

    for label in labels:
        new_logger = logger.clone()

        if len(labels) > 1:
            new_logger.labels.append(label)

        loggers[label] = new_logger

    max_label_span = max(new_logger.labels_span for new_logger in loggers.values())

    for new_logger in loggers.values():
        new_logger.labels_padding = max_label_span

    return loggers


class MultiHostTask(Task[TaskResultT]):
    """
    A task running on a set of hosts at once.
    """

    #: Hosts to run the task on.
    hosts: list['Host']

    #: Host the task outcome belongs to.
    host: Optional['Host'] = None

    def __init__(self, hosts: list['Host'], logger: Logger) -> None:
        super().__init__(logger)

        self.hosts = hosts

    @property
    def host_labels(self) -> list[str]:
        return sorted(host.label for host in self.hosts)

    def run_on_host(self, host: 'Host', logger: Logger) -> TaskResultT:
        raise NotImplementedError

    def go(self) -> Iterator['Self']:
        def _on_complete(task: 'Self', host: 'Host') -> 'Self':
            task.host = host

            return task

        yield from self._invoke_in_pool(
            units=self.hosts,
            get_label=lambda host: host.label,
            submit=lambda host, logger, executor: executor.submit(self.run_on_host, host, logger),
            on_complete=_on_complete,
        )


class PhaseTask(MultiHostTask[None]):
    """
    Apply a configuration phase to hosts.
    """

    def __init__(
        self,
        *,
        manager: 'ConfigManager',
        phase: str,
        hosts: list['Host'],
        power_off: bool = False,
        logger: Logger,
    ) -> None:
        super().__init__(hosts, logger)

        self.manager = manager
        self.phase = phase
        self.power_off = power_off

    @property
    def name(self) -> str:
        return f'{self.phase} on {", ".join(self.host_labels)}'

    def run_on_host(self, host: 'Host', logger: Logger) -> None:
        logger.verbose('phase', self.phase, color='green')

        self.manager.apply_phase(host.label, self.phase, power_off=self.power_off)


class StageTask(Task[None]):
    """
    Stage artifacts into a guest, each in its own worker.
    """

    #: Artifact the task outcome belongs to.
    source: Optional[Path] = None

    def __init__(self, *, agent: 'RemoteAgent', sources: list[Path], logger: Logger) -> None:
        super().__init__(logger)

        self.agent = agent
        self.sources = sources

    @property
    def name(self) -> str:
        return f'stage {len(self.sources)} artifacts into {self.agent.vm.name}'

    def go(self) -> Iterator['Self']:
        def _on_complete(task: 'Self', unit: tuple[int, Path]) -> 'Self':
            task.source = unit[1]

            return task

        # Workers are keyed by position, the same artifact may be requested
        # more than once.
        units = list(enumerate(self.sources))

        yield from self._invoke_in_pool(
            units=units,
            get_label=lambda unit: f'{unit[0] + 1}:{unit[1].name}',
            submit=lambda unit, logger, executor: executor.submit(self.agent.stage, unit[1]),
            on_complete=_on_complete,
        )


class Queue(list[TaskT]):
    """
    Queue class for running tasks.
    """

    def __init__(self, name: str, logger: Logger) -> None:
        super().__init__()

        self.name = name
        self._logger = logger

    def enqueue_task(self, task: TaskT) -> None:
        """
        Put new task into a queue
        """

        self.append(task)

        self._logger.info(f'queued {self.name} task #{len(self)}', task.name, color='cyan')

    def run(self) -> Iterator[TaskT]:
        """
        Start crunching the queued tasks.

        Tasks are executed in the order, for each invoked task new
        instance of this class is yielded. Tasks following a failed task
        are not executed.
        """

        for i, task in enumerate(self):
            self._logger.info(f'{self.name} task #{i + 1}', task.name, color='cyan')

            failed_tasks: list[TaskT] = []

            for outcome in task.go():
                if outcome.exc or outcome.requested_exit:
                    failed_tasks.append(outcome)

                yield outcome

            if failed_tasks:
                return
