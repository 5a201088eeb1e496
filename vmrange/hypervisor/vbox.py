"""
VirtualBox backend, driven through the ``VBoxManage`` command line.

Guests of this backend are reached through VirtualBox Guest Additions:
commands run via ``guestcontrol``, and artifacts are staged in a folder
shared between the host and the guest, ``importdir``.
"""

from collections.abc import Sequence
from typing import TYPE_CHECKING, Any, Optional

from typing_extensions import Self

import vmrange.log
from vmrange.hypervisor import Backend, NetworkName, VirtualMachine, provides_backend
from vmrange.utils import (
    Command,
    CommandOutput,
    HypervisorError,
    Path,
    RunError,
    VMNotFoundError,
    VMOperation,
    VMOperationError,
)
from vmrange.utils.signals import Interrupted
from vmrange.utils.wait import (
    Deadline,
    Waiting,
    WaitingIncompleteError,
    WaitingTimedOutError,
)

if TYPE_CHECKING:
    from vmrange.config import Config

#: Name of the folder shared between the host and guests.
SHARED_FOLDER_NAME = 'importdir'

#: Guest Additions run level reported once userland services are up.
GUEST_RUN_LEVEL_USERLAND = 2

DEFAULT_MAX_ADAPTERS = 8
DEFAULT_GUEST_READY_TIMEOUT = 600.0
DEFAULT_GUEST_READY_TICK = 5.0


def parse_machine_readable(output: Optional[str]) -> dict[str, str]:
    """
    Parse ``VBoxManage showvminfo --machinereadable`` output.

    Each line carries a single ``key=value`` pair, both sides may be
    wrapped in double quotes.
    """

    info: dict[str, str] = {}

    for line in (output or '').splitlines():
        key, separator, value = line.partition('=')

        if not separator:
            continue

        info[key.strip().strip('"')] = value.strip().strip('"')

    return info


@provides_backend('vbox')
class VirtualBoxBackend(Backend):
    """
    VirtualBox hypervisor backend.

    Files reach guests through a shared folder, therefore this backend
    requires host-mediated staging of artifacts.
    """

    HOST_MEDIATED_TRANSFER = True

    def __init__(
        self,
        *,
        name: str,
        logger: vmrange.log.Logger,
        manage_command: str = 'VBoxManage',
        username: str = 'root',
        password: Optional[str] = None,
        import_dir: Optional[Path] = None,
        max_adapters: int = DEFAULT_MAX_ADAPTERS,
        guest_ready_timeout: float = DEFAULT_GUEST_READY_TIMEOUT,
        guest_ready_tick: float = DEFAULT_GUEST_READY_TICK,
        requires_host_mediated_transfer: Optional[bool] = None,
    ) -> None:
        super().__init__(
            name=name,
            logger=logger,
            requires_host_mediated_transfer=requires_host_mediated_transfer,
        )

        self.manage_command = manage_command
        self.username = username
        self.password = password
        self.import_dir = import_dir
        self.max_adapters = max_adapters
        self.guest_ready_timeout = guest_ready_timeout
        self.guest_ready_tick = guest_ready_tick

    @classmethod
    def from_config(cls, *, name: str, config: 'Config', logger: vmrange.log.Logger) -> Self:
        vbox = config.vbox

        return cls(
            name=name,
            logger=logger,
            manage_command=vbox.manage_command,
            username=vbox.username,
            password=vbox.password,
            import_dir=Path(vbox.import_dir) if vbox.import_dir else None,
            max_adapters=vbox.max_adapters,
            guest_ready_timeout=config.agent.guest_ready_timeout,
            guest_ready_tick=config.agent.guest_ready_tick,
        )

    def _manage(self, *args: str) -> CommandOutput:
        return Command(self.manage_command, *args).run(logger=self._logger, stream_output=False)

    def _vm_operation(
        self,
        vm: VirtualMachine,
        code: VMOperation,
        *args: str,
        message: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> CommandOutput:
        """
        Run a ``VBoxManage`` command, converting its failure to a VM operation error.
        """

        self._logger.debug('vbox', f"{code.name.lower()} '{vm.name}'", level=2)

        try:
            return self._manage(*args)

        except RunError as exc:
            raise VMOperationError(self.name, vm.name, code, message, details=details) from exc

    def _guest_credentials(self) -> list[str]:
        credentials = ['--username', self.username]

        if self.password is not None:
            credentials += ['--password', self.password]

        return credentials

    def check_available(self) -> None:
        try:
            output = self._manage('--version')

        except RunError as exc:
            raise HypervisorError(self.name, f"'{self.manage_command}' is not usable.") from exc

        self._logger.debug('vbox version', (output.stdout or '').strip())

    def _showvminfo(self, vm_id: str) -> dict[str, str]:
        return parse_machine_readable(self._manage('showvminfo', vm_id, '--machinereadable').stdout)

    def get_vm(self, vm_id: str, address: Optional[str] = None) -> VirtualMachine:
        try:
            self._showvminfo(vm_id)

        except RunError as exc:
            raise VMNotFoundError(vm_id) from exc

        return super().get_vm(vm_id, address=address)

    def assign_networks(self, vm: VirtualMachine, networks: Sequence[NetworkName]) -> None:
        if len(networks) > self.max_adapters:
            raise VMOperationError(
                self.name,
                vm.name,
                VMOperation.ASSIGN_NETWORK,
                f'Too many networks, at most {self.max_adapters} adapters are available',
            )

        options: list[str] = []

        for index in range(self.max_adapters):
            nic = index + 1

            if index >= len(networks):
                options += [f'--nic{nic}', 'none']
                continue

            network = networks[index]

            # Adapters without a network keep their attachment, they are
            # just enabled.
            if network is not None:
                options += [
                    f'--nic{nic}',
                    'intnet',
                    f'--intnet{nic}',
                    network,
                    f'--nicpromisc{nic}',
                    'allow-all',
                ]

            options += [f'--nictype{nic}', 'virtio', f'--cableconnected{nic}', 'on']

        self._vm_operation(
            vm,
            VMOperation.ASSIGN_NETWORK,
            'modifyvm',
            vm.name,
            *options,
            details={'networks': ', '.join(str(network) for network in networks)},
        )

    def create_shared_folder(self, vm: VirtualMachine) -> None:
        if self.import_dir is None:
            raise VMOperationError(
                self.name, vm.name, VMOperation.SHARED_FOLDER, 'Import directory is not configured'
            )

        # Replace any existing folder so it points to the current directory.
        try:
            self._manage('sharedfolder', 'remove', vm.name, '--name', SHARED_FOLDER_NAME)

        except RunError:
            self._logger.debug(f"No shared folder '{SHARED_FOLDER_NAME}' to remove.", level=2)

        self._vm_operation(
            vm,
            VMOperation.SHARED_FOLDER,
            'sharedfolder',
            'add',
            vm.name,
            '--name',
            SHARED_FOLDER_NAME,
            '--hostpath',
            str(self.import_dir),
            '--automount',
            details={'shared folder': self.import_dir},
        )

    def set_boot_media(self, vm: VirtualMachine) -> None:
        self._vm_operation(vm, VMOperation.BOOT_ORDER, 'modifyvm', vm.name, '--boot1', 'dvd')

    def power_on(self, vm: VirtualMachine) -> None:
        self._vm_operation(vm, VMOperation.POWER_ON, 'startvm', vm.name, '--type', 'headless')

    def power_off(self, vm: VirtualMachine) -> None:
        self._vm_operation(vm, VMOperation.POWER_OFF, 'controlvm', vm.name, 'poweroff')

    def wait_for_guest_ready(self, vm: VirtualMachine) -> None:
        def guest_additions_running() -> None:
            try:
                info = self._showvminfo(vm.name)

            except RunError as exc:
                raise VMOperationError(
                    self.name, vm.name, VMOperation.GUEST, 'Failed to query guest status'
                ) from exc

            try:
                run_level = int(info.get('GuestAdditionsRunLevel', '0') or '0')

            except ValueError:
                run_level = 0

            self._logger.debug('guest additions run level', run_level, level=3)

            if run_level < GUEST_RUN_LEVEL_USERLAND:
                raise WaitingIncompleteError

        waiting = Waiting(
            deadline=Deadline.from_seconds(self.guest_ready_timeout), tick=self.guest_ready_tick
        )

        try:
            waiting.wait(guest_additions_running, self._logger)

        except (WaitingTimedOutError, Interrupted) as exc:
            raise VMOperationError(self.name, vm.name, VMOperation.GUEST) from exc

    def _guest_command(self, vm: VirtualMachine, argv: Sequence[str], wait: bool) -> list[str]:
        return [
            'guestcontrol',
            vm.name,
            'run' if wait else 'start',
            '--exe',
            argv[0],
            *self._guest_credentials(),
            '--',
            *argv,
        ]

    def run_command(self, vm: VirtualMachine, argv: Sequence[str], wait: bool = True) -> None:
        if not argv:
            raise VMOperationError(self.name, vm.name, VMOperation.RUN_COMMAND, 'Empty command')

        self._logger.verbose('guest command', ' '.join(argv), color='yellow', level=2)

        self._vm_operation(
            vm,
            VMOperation.RUN_COMMAND,
            *self._guest_command(vm, argv, wait),
            details={'command': ' '.join(argv)},
        )

    def transfer_file_in(
        self,
        vm: VirtualMachine,
        source: Path,
        destination: str,
        executable: bool = False,
    ) -> None:
        details = {'source': source, 'destination': destination}

        if not source.is_file():
            raise VMOperationError(
                self.name, vm.name, VMOperation.TRANSFER_TO, 'Source file not found', details=details
            )

        self._vm_operation(
            vm,
            VMOperation.TRANSFER_TO,
            'guestcontrol',
            vm.name,
            'copyto',
            *self._guest_credentials(),
            str(source),
            destination,
            details=details,
        )

        if executable:
            self._vm_operation(
                vm,
                VMOperation.TRANSFER_TO,
                *self._guest_command(vm, ['/bin/chmod', '0755', destination], True),
                message='Failed to make the file executable',
                details=details,
            )

    def transfer_file_out(self, vm: VirtualMachine, source: str, destination: Path) -> None:
        self._vm_operation(
            vm,
            VMOperation.TRANSFER_FROM,
            'guestcontrol',
            vm.name,
            'copyfrom',
            *self._guest_credentials(),
            source,
            str(destination),
            details={'source': source, 'destination': destination},
        )
