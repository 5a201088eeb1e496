from collections.abc import Sequence

import pytest

import vmrange.config
from vmrange.hypervisor import (
    Backend,
    NetworkName,
    VirtualMachine,
    create_backend,
    find_backend,
    iter_backend_ids,
)
from vmrange.hypervisor.vbox import VirtualBoxBackend
from vmrange.log import Logger
from vmrange.utils import GeneralError, Path


class NullBackend(Backend):
    """
    A backend whose guests share the host filesystem, nothing to do.
    """

    def assign_networks(self, vm: VirtualMachine, networks: Sequence[NetworkName]) -> None:
        pass

    def create_shared_folder(self, vm: VirtualMachine) -> None:
        pass

    def set_boot_media(self, vm: VirtualMachine) -> None:
        pass

    def power_on(self, vm: VirtualMachine) -> None:
        pass

    def power_off(self, vm: VirtualMachine) -> None:
        pass

    def wait_for_guest_ready(self, vm: VirtualMachine) -> None:
        pass

    def run_command(self, vm: VirtualMachine, argv: Sequence[str], wait: bool = True) -> None:
        pass

    def transfer_file_in(
        self, vm: VirtualMachine, source: Path, destination: str, executable: bool = False
    ) -> None:
        pass

    def transfer_file_out(self, vm: VirtualMachine, source: str, destination: Path) -> None:
        pass


@pytest.fixture(name='backend')
def fixture_backend(root_logger: Logger) -> NullBackend:
    return NullBackend(name='null', logger=root_logger)


def test_vm_handle(backend: NullBackend) -> None:
    vm = backend.get_vm('web', address='10.0.0.1')

    assert vm.backend is backend
    assert vm.name == vm.vm_id == 'web'
    assert str(vm) == 'web'
    assert vm == VirtualMachine(backend=backend, vm_id='web', address='10.0.0.1')


def test_vm_handle_requires_id(backend: NullBackend) -> None:
    with pytest.raises(GeneralError, match='Virtual machine identifier must be set.'):
        VirtualMachine(backend=backend, vm_id='')


def test_host_mediated_transfer_flag(root_logger: Logger) -> None:
    assert NullBackend(name='null', logger=root_logger).requires_host_mediated_transfer is False
    assert (
        NullBackend(
            name='null', logger=root_logger, requires_host_mediated_transfer=True
        ).requires_host_mediated_transfer
        is True
    )

    assert VirtualBoxBackend(name='vbox', logger=root_logger).requires_host_mediated_transfer
    assert (
        VirtualBoxBackend(
            name='vbox', logger=root_logger, requires_host_mediated_transfer=False
        ).requires_host_mediated_transfer
        is False
    )


def test_repr(backend: NullBackend) -> None:
    assert repr(backend) == '<NullBackend: null>'


def test_registry() -> None:
    assert 'vbox' in iter_backend_ids()
    assert find_backend('vbox') is VirtualBoxBackend


def test_registry_unknown() -> None:
    with pytest.raises(GeneralError, match="Hypervisor backend 'xen' was not found"):
        find_backend('xen')


def test_create_backend(
    root_logger: Logger, tmppath: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    (tmppath / '.fmf').mkdir()
    (tmppath / '.fmf' / 'version').write_text('1\n')
    (tmppath / 'vbox.fmf').write_text('username: trainer\nimport-dir: /srv/range/import\n')
    (tmppath / 'agent.fmf').write_text('guest-ready-timeout: 30\n')

    monkeypatch.setenv('VMRANGE_CONFIG_DIR', str(tmppath))

    backend = create_backend(
        'vbox', config=vmrange.config.Config(root_logger), logger=root_logger
    )

    assert isinstance(backend, VirtualBoxBackend)
    assert backend.name == 'vbox'
    assert backend.username == 'trainer'
    assert backend.import_dir == Path('/srv/range/import')
    assert backend.guest_ready_timeout == 30
