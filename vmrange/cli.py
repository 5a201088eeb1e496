"""
vmrange command line interface
"""

from collections.abc import Iterable
from typing import Any, Callable, Optional, TypeVar

import click
import fmf.utils

import vmrange.config
import vmrange.hypervisor
import vmrange.log
import vmrange.plugins
import vmrange.utils
import vmrange.utils.signals
from vmrange.agent import RemoteAgent
from vmrange.configmanager import create_config_manager
from vmrange.container import container
from vmrange.hosts import load_hosts
from vmrange.queue import PhaseTask, Queue, StageTask, Task
from vmrange.utils import GeneralError, Path

#: A logger to use for exception logging. Starts as the bootstrap logger,
#: replaced by the fully configured one once options have been parsed.
EXCEPTION_LOGGER: vmrange.log.Logger = vmrange.log.Logger.get_bootstrap_logger()

FC = TypeVar('FC', bound=Callable[..., Any])


def create_options_decorator(options: list[Callable[[FC], FC]]) -> Callable[[FC], FC]:
    def common_decorator(fn: FC) -> FC:
        for option in reversed(options):
            fn = option(fn)

        return fn

    return common_decorator


VERBOSITY_OPTIONS: list[Callable[[Any], Any]] = [
    click.option(
        '-v',
        '--verbose',
        count=True,
        default=0,
        help='Show more details. Use multiple times to raise verbosity.',
    ),
    click.option(
        '-d',
        '--debug',
        count=True,
        default=0,
        help='Provide debugging information. Repeat to see more details.',
    ),
    click.option('-q', '--quiet', is_flag=True, help='Be quiet. Exit code is just enough for me.'),
    click.option(
        '--log-topic',
        type=click.Choice([topic.value for topic in vmrange.log.Topic]),
        multiple=True,
        help='If specified, --debug and --verbose would emit logs also for these topics.',
    ),
]

VM_OPTIONS: list[Callable[[Any], Any]] = [
    click.option(
        '-b',
        '--backend',
        'backend_id',
        metavar='ID',
        default='vbox',
        show_default=True,
        help='Hypervisor backend managing the virtual machine.',
    ),
    click.option('--vm', 'vm_id', metavar='NAME', required=True, help='Virtual machine to manage.'),
    click.option(
        '--address',
        metavar='ADDRESS',
        required=True,
        help='Address of the virtual machine on the setup network.',
    ),
]

verbosity_options = create_options_decorator(VERBOSITY_OPTIONS)
vm_options = create_options_decorator(VM_OPTIONS)


@container
class ContextObject:
    """
    Click Context Object container.

    Structures shared by all vmrange commands, attached to the
    :py:class:`click.Context` managed by Click.
    """

    logger: vmrange.log.Logger
    config: vmrange.config.Config


pass_context_object = click.make_pass_decorator(ContextObject)


def _create_agent(
    context_object: ContextObject, backend_id: str, vm_id: str, address: str
) -> RemoteAgent:
    logger = context_object.logger

    backend = vmrange.hypervisor.create_backend(
        backend_id, config=context_object.config, logger=logger.descend(logger_name=backend_id)
    )
    backend.check_available()

    vm = backend.get_vm(vm_id, address=address)

    return RemoteAgent.from_config(
        vm, config=context_object.config, logger=logger.descend(logger_name=vm.name)
    )


def _collect_failures(logger: vmrange.log.Logger, outcomes: Iterable[Task[Any]]) -> None:
    """
    Report outcomes of queued tasks.

    :raises GeneralError: when any of the tasks failed.
    """

    failures: list[Exception] = []

    for outcome in outcomes:
        if outcome.requested_exit is not None:
            raise outcome.requested_exit

        if outcome.exc is not None:
            outcome.logger.fail(str(outcome.exc))
            failures.append(outcome.exc)

    if failures:
        raise GeneralError(f'{fmf.utils.listed(len(failures), "task")} failed.', causes=failures)

    logger.info('summary', 'all tasks passed', color='green')


@click.group()
@click.pass_context
@verbosity_options
@click.option(
    '--show-time',
    is_flag=True,
    help='If set, logging messages on the terminal would contain timestamps.',
)
@click.option(
    '--log-file',
    metavar='PATH',
    default=None,
    help='If set, logging messages would be appended to this file as well.',
)
@click.option(
    '--no-color',
    is_flag=True,
    default=False,
    help='Forces vmrange to not use any colors in the output or logging.',
)
@click.option(
    '--force-color',
    is_flag=True,
    default=False,
    help='Forces vmrange to use colors in the output and logging.',
)
def main(
    click_context: click.Context,
    no_color: bool,
    force_color: bool,
    show_time: bool,
    log_file: Optional[str],
    **kwargs: Any,
) -> None:
    """
    Provision virtual machines of exercise ranges
    """

    click_context.max_content_width = vmrange.utils.DEFAULT_OUTPUT_WIDTH

    apply_colors_output, apply_colors_logging = vmrange.log.decide_colorization(
        no_color, force_color
    )

    logger = vmrange.log.Logger.create(
        apply_colors_output=apply_colors_output,
        apply_colors_logging=apply_colors_logging,
        **kwargs,
    )
    logger.add_console_handler(show_timestamps=show_time)

    if log_file is not None:
        logger.add_logfile_handler(Path(log_file))

    click_context.color = apply_colors_output

    global EXCEPTION_LOGGER
    EXCEPTION_LOGGER = logger

    vmrange.utils.signals.install_handlers()
    vmrange.plugins.explore(logger)

    click_context.obj = ContextObject(logger=logger, config=vmrange.config.Config(logger))


@main.command(name='backends')
@pass_context_object
def backends(context_object: ContextObject) -> None:
    """
    List available hypervisor backends
    """

    for backend_id in vmrange.hypervisor.iter_backend_ids():
        backend_class = vmrange.hypervisor.find_backend(backend_id)
        transfer = 'host-mediated' if backend_class.HOST_MEDIATED_TRANSFER else 'direct'

        context_object.logger.print(f'{backend_id} ({transfer} transfer)')


@main.command(name='tunnel')
@pass_context_object
@vm_options
@click.option(
    '--network',
    'networks',
    metavar='NAME',
    multiple=True,
    help="""
         Network to attach a VM adapter to, in order of adapters. Use '-' to keep
         the adapter attachment. By default, the first adapter is kept and the
         second one is attached to the setup network.
         """,
)
@click.option(
    '--shared-folder',
    is_flag=True,
    default=False,
    help="""
         Share the import directory of the backend with the VM. The guest mounts
         it as its staging root.
         """,
)
def tunnel(
    context_object: ContextObject,
    backend_id: str,
    vm_id: str,
    address: str,
    networks: tuple[str, ...],
    shared_folder: bool,
) -> None:
    """
    Power a VM on and bring up its tunnel to the setup network
    """

    agent = _create_agent(context_object, backend_id, vm_id, address)

    requested_networks: list[Optional[str]] = (
        [None if network == '-' else network for network in networks]
        if networks
        else [None, agent.setup_network]
    )

    agent.verify(requested_networks, agent.staging_root if shared_folder else None)
    agent.power_on_and_wait()
    agent.bring_up_tunnel()

    context_object.logger.info('connected', f'{vm_id} ({address})', color='green')


@main.command(name='stage')
@pass_context_object
@vm_options
@click.argument('sources', nargs=-1, required=True, metavar='FILE...')
def stage(
    context_object: ContextObject,
    backend_id: str,
    vm_id: str,
    address: str,
    sources: tuple[str, ...],
) -> None:
    """
    Stage files into the staging directory of a VM
    """

    agent = _create_agent(context_object, backend_id, vm_id, address)
    logger = context_object.logger

    if not agent.backend.requires_host_mediated_transfer:
        logger.warning(f"Backend '{backend_id}' does not need staging, nothing to do.")
        return

    queue: Queue[StageTask] = Queue('stage', logger)
    queue.enqueue_task(
        StageTask(agent=agent, sources=[Path(source) for source in sources], logger=logger)
    )

    _collect_failures(logger, queue.run())


@main.command(name='phase')
@pass_context_object
@click.option(
    '--hosts',
    'hosts_path',
    metavar='FILE',
    required=True,
    type=click.Path(exists=True, dir_okay=False),
    help='YAML file with the list of scenario hosts.',
)
@click.option(
    '--scenario',
    'scenario_directory',
    metavar='DIR',
    required=True,
    type=click.Path(exists=True, file_okay=False),
    help='Scenario directory, holding phase playbooks.',
)
@click.option(
    '--manager',
    'manager_id',
    metavar='ID',
    default='ansible',
    show_default=True,
    help='Configuration manager to apply phases with.',
)
@click.option(
    '--power-off',
    is_flag=True,
    default=False,
    help='Power hosts off once the last phase has been applied.',
)
@click.argument('phases', nargs=-1, required=True, metavar='PHASE...')
def phase(
    context_object: ContextObject,
    hosts_path: str,
    scenario_directory: str,
    manager_id: str,
    power_off: bool,
    phases: tuple[str, ...],
) -> None:
    """
    Apply configuration phases to all scenario hosts
    """

    logger = context_object.logger
    hosts = load_hosts(Path(hosts_path), logger=logger)

    manager = create_config_manager(
        manager_id,
        hosts=hosts,
        config=context_object.config,
        logger=logger.descend(logger_name=manager_id),
    )

    with manager.session(Path(scenario_directory)):
        queue: Queue[PhaseTask] = Queue('phase', logger)

        for index, phase_name in enumerate(phases):
            queue.enqueue_task(
                PhaseTask(
                    manager=manager,
                    phase=phase_name,
                    hosts=list(hosts),
                    power_off=power_off and index == len(phases) - 1,
                    logger=logger,
                )
            )

        _collect_failures(logger, queue.run())
