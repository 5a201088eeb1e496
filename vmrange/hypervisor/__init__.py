"""
Hypervisor backends.

A backend drives the actual state of virtual machines: their network
attachment, power state, guest commands and file transfers. Backends are
plugins, registered with :py:func:`provides_backend` and created by their
id with :py:func:`create_backend`. Orchestration code, namely
:py:class:`vmrange.agent.RemoteAgent`, never cares which backend it
talks to, it consults capability flags instead.
"""

import abc
from collections.abc import Sequence
from typing import TYPE_CHECKING, Callable, ClassVar, Optional

from typing_extensions import Self

import vmrange.log
import vmrange.plugins
from vmrange.container import container
from vmrange.utils import GeneralError, Path

if TYPE_CHECKING:
    from vmrange.config import Config


@container(frozen=True)
class VirtualMachine:
    """
    A handle of a virtual machine managed by a backend.

    Carries no behavior beyond identity, every operation is requested from
    :py:attr:`backend` with the handle as its target.
    """

    #: Backend managing the VM.
    backend: 'Backend'

    #: Opaque identifier of the VM, as understood by the backend.
    vm_id: str

    #: Address assigned to the VM on the setup network.
    address: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.vm_id:
            raise GeneralError('Virtual machine identifier must be set.')

    @property
    def name(self) -> str:
        return self.vm_id

    def __str__(self) -> str:
        return self.vm_id


#: A network attachment request: network name, or ``None`` to leave the
#: adapter attachment untouched and merely enable it.
NetworkName = Optional[str]


class Backend(abc.ABC):
    """
    A hypervisor backend, the capability set every driver must implement.

    Every operation is synchronous from the caller's point of view, and
    raises :py:class:`vmrange.utils.VMOperationError` on failure. No
    operation is assumed to be idempotent.
    """

    #: Default of :py:attr:`requires_host_mediated_transfer` for instances
    #: of this backend class.
    HOST_MEDIATED_TRANSFER: ClassVar[bool] = False

    def __init__(
        self,
        *,
        name: str,
        logger: vmrange.log.Logger,
        requires_host_mediated_transfer: Optional[bool] = None,
    ) -> None:
        """
        :param name: name of the backend, used in errors and logging.
        :param logger: used for logging.
        :param requires_host_mediated_transfer: whether files must be
            staged through a host-side staging area before the guest can
            access them. If not set, :py:attr:`HOST_MEDIATED_TRANSFER` is
            used.
        """

        self._name = name
        self._logger = logger

        #: When set, artifacts reach the guest through a staging area
        #: shared between host and guest, and only once per artifact.
        self.requires_host_mediated_transfer = (
            self.HOST_MEDIATED_TRANSFER
            if requires_host_mediated_transfer is None
            else requires_host_mediated_transfer
        )

    @classmethod
    def from_config(cls, *, name: str, config: 'Config', logger: vmrange.log.Logger) -> Self:
        """
        Create a backend instance from user configuration.
        """

        return cls(name=name, logger=logger)

    @property
    def name(self) -> str:
        return self._name

    def __repr__(self) -> str:
        return f'<{type(self).__name__}: {self._name}>'

    def check_available(self) -> None:
        """
        Make sure the backend can be used at all.

        :raises HypervisorError: when the backend is not usable.
        """

    def get_vm(self, vm_id: str, address: Optional[str] = None) -> VirtualMachine:
        """
        Create a handle of a VM known to this backend.

        :raises VMNotFoundError: when backend does not know the VM.
        """

        return VirtualMachine(backend=self, vm_id=vm_id, address=address)

    @abc.abstractmethod
    def assign_networks(self, vm: VirtualMachine, networks: Sequence[NetworkName]) -> None:
        """
        Attach VM network adapters to the given networks, in order.
        """

        raise NotImplementedError

    @abc.abstractmethod
    def create_shared_folder(self, vm: VirtualMachine) -> None:
        """
        Share the host-side staging area with the VM.
        """

        raise NotImplementedError

    @abc.abstractmethod
    def set_boot_media(self, vm: VirtualMachine) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def power_on(self, vm: VirtualMachine) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def power_off(self, vm: VirtualMachine) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def wait_for_guest_ready(self, vm: VirtualMachine) -> None:
        """
        Block until the guest is able to accept commands.
        """

        raise NotImplementedError

    @abc.abstractmethod
    def run_command(self, vm: VirtualMachine, argv: Sequence[str], wait: bool = True) -> None:
        """
        Run a command in the guest.

        :param argv: the command and its arguments.
        :param wait: if set, block until the command finishes. Otherwise
            return right after the command has been started.
        """

        raise NotImplementedError

    @abc.abstractmethod
    def transfer_file_in(
        self,
        vm: VirtualMachine,
        source: Path,
        destination: str,
        executable: bool = False,
    ) -> None:
        """
        Copy a local file into the guest.

        :param source: local path of the file.
        :param destination: path in the guest.
        :param executable: if set, the file would be made executable.
        """

        raise NotImplementedError

    @abc.abstractmethod
    def transfer_file_out(self, vm: VirtualMachine, source: str, destination: Path) -> None:
        """
        Copy a file from the guest to the local filesystem.
        """

        raise NotImplementedError


BackendClass = type[Backend]

_BACKEND_PLUGIN_REGISTRY: vmrange.plugins.PluginRegistry[BackendClass] = (
    vmrange.plugins.PluginRegistry('hypervisor.backends')
)

provides_backend: Callable[[str], Callable[[BackendClass], BackendClass]] = (
    _BACKEND_PLUGIN_REGISTRY.create_decorator()
)


def iter_backend_ids() -> list[str]:
    return sorted(_BACKEND_PLUGIN_REGISTRY.iter_plugin_ids())


def find_backend(backend_id: str) -> BackendClass:
    """
    Find a backend by its id.

    :raises GeneralError: when the plugin does not exist.
    """

    plugin = _BACKEND_PLUGIN_REGISTRY.get_plugin(backend_id)

    if plugin is None:
        raise GeneralError(f"Hypervisor backend '{backend_id}' was not found in backend registry.")

    return plugin


def create_backend(backend_id: str, *, config: 'Config', logger: vmrange.log.Logger) -> Backend:
    """
    Create an instance of a backend of the given id.
    """

    return find_backend(backend_id).from_config(name=backend_id, config=config, logger=logger)
