from typing import Any, Optional

import _pytest.logging
import pytest

from vmrange.configmanager.ansible import AnsibleConfigManager, generate_inventory
from vmrange.hosts import Host, HostCollection
from vmrange.log import Logger
from vmrange.utils import (
    Command,
    CommandOutput,
    ConfigManagerPermanentError,
    ConfigManagerTemporaryError,
    HostNotFoundError,
    Path,
    RunError,
    yaml_to_dict,
)

from . import assert_log

PLAY_RECAP = """
PLAY RECAP *********************************************************************
web                        : ok=3    changed=2    unreachable=0    failed=0    skipped=1
"""


class FakeCommands:
    """
    Stands in for :py:meth:`Command.run`, recording commands.
    """

    def __init__(self) -> None:
        self.commands: list[list[str]] = []
        self.returncode = 0
        self.stdout: Optional[str] = PLAY_RECAP

    def run(self, command: Command, **kwargs: Any) -> CommandOutput:
        self.commands.append(command.to_popen())

        if self.returncode != 0:
            raise RunError(
                f"Command '{command}' returned {self.returncode}.", command, self.returncode
            )

        return CommandOutput(self.stdout, None)


@pytest.fixture(name='commands')
def fixture_commands(monkeypatch: pytest.MonkeyPatch) -> FakeCommands:
    commands = FakeCommands()

    monkeypatch.setattr(Command, 'run', lambda self, **kwargs: commands.run(self, **kwargs))

    return commands


@pytest.fixture(name='hosts')
def fixture_hosts() -> HostCollection:
    return HostCollection(
        [
            Host(
                label='web',
                address='10.0.0.1',
                hostname='www',
                domain='example.com',
                group='frontend',
                vars={'http_port': 8080},
            ),
            Host(label='db', address='10.0.0.2'),
        ]
    )


@pytest.fixture(name='scenario')
def fixture_scenario(tmppath: Path) -> Path:
    scenario = tmppath / 'scenario'
    (scenario / 'phases').mkdir(parents=True)
    (scenario / 'phases' / 'provision.yml').write_text('- hosts: all\n  tasks: []\n')

    return scenario


@pytest.fixture(name='manager')
def fixture_manager(hosts: HostCollection, root_logger: Logger) -> AnsibleConfigManager:
    return AnsibleConfigManager(hosts=hosts, logger=root_logger, extra_args='--diff -e foo=bar')


def test_generate_inventory(hosts: HostCollection) -> None:
    assert generate_inventory(hosts) == {
        'all': {
            'hosts': {
                'web': {
                    'ansible_host': '10.0.0.1',
                    'hostname': 'www',
                    'domain': 'example.com',
                    'fqdn': 'www.example.com',
                    'http_port': 8080,
                },
                'db': {'ansible_host': '10.0.0.2'},
            },
            'children': {'frontend': {'hosts': {'web': {}}}},
        }
    }


def test_setup_writes_inventory(
    manager: AnsibleConfigManager, scenario: Path, hosts: HostCollection
) -> None:
    manager.setup(scenario)

    inventory_path = scenario / '.vmrange' / 'inventory.yaml'

    assert manager.inventory_path == inventory_path
    assert yaml_to_dict(inventory_path.read_text(), yaml_type='safe') == generate_inventory(hosts)


def test_setup_missing_scenario(manager: AnsibleConfigManager, tmppath: Path) -> None:
    with pytest.raises(ConfigManagerPermanentError, match='does not exist'):
        manager.setup(tmppath / 'missing')


def test_setup_missing_phases(manager: AnsibleConfigManager, tmppath: Path) -> None:
    with pytest.raises(ConfigManagerPermanentError, match="has no 'phases' directory"):
        manager.setup(tmppath)


def test_apply_phase_requires_setup(
    manager: AnsibleConfigManager, commands: FakeCommands
) -> None:
    with pytest.raises(ConfigManagerPermanentError, match='has not been set up'):
        manager.apply_phase('web', 'provision')

    assert commands.commands == []


def test_apply_phase(
    manager: AnsibleConfigManager,
    scenario: Path,
    commands: FakeCommands,
    caplog: _pytest.logging.LogCaptureFixture,
) -> None:
    manager.setup(scenario)
    manager.apply_phase('WEB', 'provision')

    assert commands.commands == [
        [
            'ansible-playbook',
            '-i',
            str(scenario / '.vmrange' / 'inventory.yaml'),
            '--limit',
            'web',
            '--diff',
            '-e',
            'foo=bar',
            str(scenario / 'phases' / 'provision.yml'),
        ]
    ]

    assert_log(caplog, message='changed: 2 tasks')
    assert_log(caplog, message='skipped: 1 task')


def test_apply_phase_power_off(
    manager: AnsibleConfigManager, scenario: Path, commands: FakeCommands
) -> None:
    manager.setup(scenario)
    manager.apply_phase('db', 'provision', power_off=True)

    assert len(commands.commands) == 2
    assert commands.commands[1] == [
        'ansible',
        'db',
        '-i',
        str(scenario / '.vmrange' / 'inventory.yaml'),
        '-b',
        '-m',
        'community.general.shutdown',
    ]


def test_apply_phase_unknown_host(
    manager: AnsibleConfigManager, scenario: Path, commands: FakeCommands
) -> None:
    manager.setup(scenario)

    with pytest.raises(HostNotFoundError):
        manager.apply_phase('mail', 'provision')

    assert commands.commands == []


def test_apply_phase_unknown_phase(
    manager: AnsibleConfigManager, scenario: Path, commands: FakeCommands
) -> None:
    manager.setup(scenario)

    with pytest.raises(ConfigManagerPermanentError, match="Phase 'harden' has no playbook"):
        manager.apply_phase('web', 'harden')

    assert commands.commands == []


@pytest.mark.parametrize(
    ('returncode', 'expected'),
    [(4, ConfigManagerTemporaryError), (2, ConfigManagerPermanentError)],
    ids=['unreachable', 'failed'],
)
def test_apply_phase_failure(
    manager: AnsibleConfigManager,
    scenario: Path,
    commands: FakeCommands,
    returncode: int,
    expected: type[Exception],
) -> None:
    manager.setup(scenario)
    commands.returncode = returncode

    with pytest.raises(expected) as excinfo:
        manager.apply_phase('web', 'provision')

    assert isinstance(excinfo.value.__cause__, RunError)


def test_clean_up(manager: AnsibleConfigManager, scenario: Path) -> None:
    manager.setup(scenario)
    manager.clean_up()

    assert not (scenario / '.vmrange').exists()
    assert manager.inventory_path is None

    # Cleaning up again does nothing.
    manager.clean_up()


def test_clean_up_keeps_foreign_files(manager: AnsibleConfigManager, scenario: Path) -> None:
    manager.setup(scenario)
    (scenario / '.vmrange' / 'notes.txt').write_text('keep me')

    manager.clean_up()

    assert not (scenario / '.vmrange' / 'inventory.yaml').exists()
    assert (scenario / '.vmrange' / 'notes.txt').exists()
