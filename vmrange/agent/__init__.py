"""
Remote agent, the provisioning contract of a single virtual machine.

The agent composes a :py:class:`vmrange.hypervisor.VirtualMachine` handle
with a :py:class:`vmrange.agent.staging.StagingCoordinator`, and drives
the VM through its backend: network topology verification, power-on,
bring-up of the tunnel to the setup network, and file transfers.

Every operation blocks the calling worker on the backend call, and the
first failing backend call aborts the operation. Nothing is retried and
nothing is rolled back.
"""

import enum
from collections.abc import Sequence
from pathlib import PurePosixPath
from typing import TYPE_CHECKING, Optional

import vmrange.log
from vmrange.agent.staging import StagingCoordinator
from vmrange.hypervisor import Backend, NetworkName, VirtualMachine
from vmrange.utils import Path
from vmrange.utils.signals import INTERRUPT_PENDING

if TYPE_CHECKING:
    from vmrange.config import Config

DEFAULT_SCENARIO_NAME = 'scenario'
DEFAULT_SETUP_NETWORK = 'setup'
DEFAULT_STAGING_ROOT = '/mnt'

#: How long, in seconds, the bridge is given to settle after the tunnel
#: daemon has been started.
DEFAULT_SETTLE_DELAY = 5.0

#: Name of the host-side folder shared with guests, as seen by the guest.
SHARED_FOLDER_NAME = 'importdir'


class TunnelState(enum.Enum):
    """
    Progress of the tunnel bring-up.

    States are reached in their order of definition, the agent stays in
    the last completed state when a command fails.
    """

    IDLE = 'idle'
    NETWORK_BRIDGED = 'network-bridged'
    BRIDGE_UP = 'bridge-up'
    MOUNTED = 'mounted'
    DAEMONIZED = 'daemonized'


class RemoteAgent:
    """
    Drives a single virtual machine through its backend.
    """

    def __init__(
        self,
        vm: VirtualMachine,
        *,
        logger: vmrange.log.Logger,
        scenario_name: str = DEFAULT_SCENARIO_NAME,
        setup_network: str = DEFAULT_SETUP_NETWORK,
        staging_root: str = DEFAULT_STAGING_ROOT,
        settle_delay: float = DEFAULT_SETTLE_DELAY,
    ) -> None:
        self.vm = vm
        self.scenario_name = scenario_name
        self.setup_network = setup_network
        self.staging_root = staging_root
        self.settle_delay = settle_delay

        self._logger = logger
        self._connected = False
        self._tunnel_state = TunnelState.IDLE

        self._staging = StagingCoordinator(
            logger=logger, backend_name=vm.backend.name, vm_name=vm.name
        )

    @classmethod
    def from_config(
        cls, vm: VirtualMachine, *, config: 'Config', logger: vmrange.log.Logger
    ) -> 'RemoteAgent':
        agent = config.agent

        return cls(
            vm,
            logger=logger,
            scenario_name=agent.scenario_name,
            setup_network=agent.setup_network,
            staging_root=agent.staging_root,
            settle_delay=agent.settle_delay,
        )

    def __repr__(self) -> str:
        return f'<RemoteAgent: {self.vm.name}@{self.vm.backend.name}>'

    @property
    def backend(self) -> Backend:
        return self.vm.backend

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def tunnel_state(self) -> TunnelState:
        return self._tunnel_state

    @property
    def staging(self) -> StagingCoordinator:
        return self._staging

    def verify(self, networks: Sequence[NetworkName], shared_folder: Optional[str] = None) -> bool:
        """
        Make sure the VM is attached to given networks.

        :param networks: networks to attach VM adapters to, in order.
        :param shared_folder: when set, the staging folder would be
            shared with the VM as well.
        """

        self._logger.verbose('networks', ', '.join(str(net) for net in networks), level=2)
        self.backend.assign_networks(self.vm, networks)

        if shared_folder is not None:
            self._logger.verbose('shared folder', shared_folder, level=2)
            self.backend.create_shared_folder(self.vm)

        return True

    def power_on_and_wait(self) -> bool:
        """
        Power the VM on and block until its guest is ready.
        """

        self._logger.verbose('power', 'on', color='green', level=2)

        self.backend.set_boot_media(self.vm)
        self.backend.power_on(self.vm)

        self._logger.debug(f"Waiting for guest '{self.vm.name}' to become ready.")
        self.backend.wait_for_guest_ready(self.vm)

        return True

    def _tunnel_plan(self) -> list[tuple[TunnelState, list[list[str]]]]:
        staging_dir = str(PurePosixPath(self.staging_root, self.scenario_name))

        return [
            (
                TunnelState.NETWORK_BRIDGED,
                [
                    ['/usr/sbin/brctl', 'addbr', 'br0'],
                    ['/usr/sbin/brctl', 'addif', 'br0', 'eth1'],
                    ['/usr/sbin/brctl', 'setfd', 'br0', '4'],
                ],
            ),
            (
                TunnelState.BRIDGE_UP,
                [
                    ['/sbin/ifconfig', 'br0', str(self.vm.address), 'up'],
                    ['/sbin/ifconfig', 'eth1', 'up', 'promisc'],
                ],
            ),
            (
                TunnelState.MOUNTED,
                [
                    ['/bin/chmod', 'a+x', '/etc/openvpn/up.sh'],
                    ['/usr/sbin/mount.vboxsf', SHARED_FOLDER_NAME, self.staging_root],
                    ['/bin/mkdir', staging_dir],
                ],
            ),
            (
                TunnelState.DAEMONIZED,
                [
                    [
                        '/usr/sbin/openvpn',
                        '--config',
                        f'/etc/openvpn/{self.setup_network}.conf',
                        '--daemon',
                    ],
                ],
            ),
        ]

    def bring_up_tunnel(self) -> bool:
        """
        Bridge the tunnel interface with the setup network and start the tunnel.

        Commands run strictly in order, each one waits for the previous one
        to complete. The final command, start of the tunnel daemon, does not
        wait, the daemon detaches on its own.
        """

        plan = self._tunnel_plan()
        final_command = plan[-1][1][-1]

        self._logger.verbose('tunnel', f'{self.vm.address} via {self.setup_network}', level=2)

        for state, commands in plan:
            for command in commands:
                self.backend.run_command(self.vm, command, wait=command is not final_command)

            self._tunnel_state = state
            self._logger.debug('tunnel state', state.value, level=2)

        self._connected = True

        # Give the bridge a moment to settle.
        if INTERRUPT_PENDING.wait(self.settle_delay):
            self._logger.debug('Settle delay after tunnel bring-up was interrupted.')

        return True

    def transfer(self, source: Path, destination: str, executable: bool = False) -> None:
        """
        Copy a file into the guest, unconditionally.
        """

        self._logger.verbose('transfer', f'{source} -> {destination}', level=2)
        self.backend.transfer_file_in(self.vm, source, destination, executable)

    def staging_path(self, source: Path) -> str:
        """
        Compute the guest path the given artifact is staged to.
        """

        return str(PurePosixPath(self.staging_root, self.scenario_name, Path(source).name))

    def stage(self, source: Path) -> None:
        """
        Stage an artifact in the guest staging directory.

        The artifact is transferred at most once, no matter how many
        workers ask for it. Backends not relying on the host-mediated
        transfer need no staging, and the call does nothing.
        """

        if not self.backend.requires_host_mediated_transfer:
            return

        destination = self.staging_path(source)

        def _transfer() -> None:
            self._logger.verbose('stage', f'{source} -> {destination}', level=2)
            self.backend.transfer_file_in(self.vm, source, destination, False)

        self._staging.stage(Path(source), _transfer)

    def fetch(self, source: str, destination: Path) -> None:
        """
        Copy a file from the guest.

        Backends not relying on the host-mediated transfer need no
        fetching, and the call does nothing.
        """

        if not self.backend.requires_host_mediated_transfer:
            return

        self._logger.verbose('fetch', f'{source} -> {destination}', level=2)
        self.backend.transfer_file_out(self.vm, source, destination)

    def power_off(self) -> None:
        self._logger.verbose('power', 'off', color='yellow', level=2)
        self.backend.power_off(self.vm)
