"""
Configuration manager driving Ansible.

Phases are playbooks, ``phases/<phase>.yml`` under the scenario
directory. Hosts are described to Ansible by an inventory generated from
the host collection by :py:meth:`AnsibleConfigManager.setup`.
"""

import re
import shlex
from typing import TYPE_CHECKING, Any, Optional

import fmf.utils

import vmrange.log
from vmrange.configmanager import ConfigManager, provides_config_manager
from vmrange.hosts import Host, HostCollection
from vmrange.utils import (
    Command,
    ConfigManagerPermanentError,
    ConfigManagerTemporaryError,
    Path,
    RunError,
    dict_to_yaml,
)

if TYPE_CHECKING:
    from vmrange.config import Config

#: Directory, under the scenario directory, holding files of vmrange.
WORKDIR_NAME = '.vmrange'

INVENTORY_FILENAME = 'inventory.yaml'

PHASES_DIRNAME = 'phases'

#: ``ansible-playbook`` exit code reporting unreachable hosts.
ANSIBLE_UNREACHABLE_EXIT_CODE = 4

ANSIBLE_SUMMARY_KEYS = ['ok', 'changed', 'unreachable', 'failed', 'skipped', 'rescued', 'ignored']


def generate_inventory(hosts: HostCollection) -> dict[str, Any]:
    """
    Describe hosts as an Ansible inventory.

    Every host is listed under the ``all`` group, hosts with a group are
    listed under that group too.
    """

    inventory_hosts: dict[str, dict[str, Any]] = {}
    groups: dict[str, dict[str, Any]] = {}

    for host in hosts:
        host_vars: dict[str, Any] = {'ansible_host': host.address}

        for key in ('hostname', 'domain', 'fqdn'):
            value = getattr(host, key)

            if value is not None:
                host_vars[key] = value

        host_vars.update(host.vars)

        inventory_hosts[host.label] = host_vars

        if host.group:
            groups.setdefault(host.group, {'hosts': {}})['hosts'][host.label] = {}

    inventory: dict[str, Any] = {'all': {'hosts': inventory_hosts}}

    if groups:
        inventory['all']['children'] = groups

    return inventory


@provides_config_manager('ansible')
class AnsibleConfigManager(ConfigManager):
    """
    Apply phases as Ansible playbooks.

    .. code-block:: text

        scenario/
            phases/
                provision.yml
                harden.yml
            .vmrange/
                inventory.yaml    # created by setup(), removed by clean_up()
    """

    def __init__(
        self,
        *,
        hosts: HostCollection,
        logger: vmrange.log.Logger,
        playbook_command: str = 'ansible-playbook',
        adhoc_command: str = 'ansible',
        extra_args: Optional[str] = None,
    ) -> None:
        super().__init__(hosts=hosts, logger=logger)

        self.playbook_command = playbook_command
        self.adhoc_command = adhoc_command
        self.extra_args = extra_args

        self.scenario_directory: Optional[Path] = None
        self.inventory_path: Optional[Path] = None

    @classmethod
    def from_config(
        cls, *, hosts: HostCollection, config: 'Config', logger: vmrange.log.Logger
    ) -> 'AnsibleConfigManager':
        return cls(
            hosts=hosts,
            logger=logger,
            playbook_command=config.ansible.playbook_command,
            adhoc_command=config.ansible.adhoc_command,
            extra_args=config.ansible.extra_args,
        )

    @property
    def phases_directory(self) -> Path:
        if self.scenario_directory is None:
            raise ConfigManagerPermanentError('Ansible configuration manager has not been set up.')

        return self.scenario_directory / PHASES_DIRNAME

    def setup(self, scenario_directory: Path) -> None:
        if not scenario_directory.is_dir():
            raise ConfigManagerPermanentError(
                f"Scenario directory '{scenario_directory}' does not exist."
            )

        if not (scenario_directory / PHASES_DIRNAME).is_dir():
            raise ConfigManagerPermanentError(
                f"Scenario directory '{scenario_directory}' has no '{PHASES_DIRNAME}' directory."
            )

        inventory_path = scenario_directory / WORKDIR_NAME / INVENTORY_FILENAME

        try:
            inventory_path.parent.mkdir(parents=True, exist_ok=True)
            inventory_path.write_text(dict_to_yaml(generate_inventory(self.hosts)))

        except OSError as exc:
            raise ConfigManagerPermanentError(
                f"Failed to write Ansible inventory '{inventory_path}'."
            ) from exc

        self.scenario_directory = scenario_directory
        self.inventory_path = inventory_path

        self._logger.verbose('inventory', inventory_path, 'green')
        self._logger.debug('hosts', fmf.utils.listed([host.label for host in self.hosts], 'host'))

    def _require_inventory(self) -> Path:
        if self.inventory_path is None:
            raise ConfigManagerPermanentError('Ansible configuration manager has not been set up.')

        return self.inventory_path

    def _extra_args(self) -> list[str]:
        if self.extra_args is None:
            return []

        return shlex.split(self.extra_args)

    def _ansible_summary(self, output: Optional[str]) -> None:
        """
        Check the output for ansible result summary numbers
        """

        if not output:
            return

        for key in ANSIBLE_SUMMARY_KEYS:
            matched = re.search(rf'^.*\s:\s.*{key}=(\d+).*$', output, re.MULTILINE)

            if matched is None:
                continue

            count = int(matched.group(1))

            if count > 0:
                self._logger.verbose(key, fmf.utils.listed(count, 'task'), 'green')

    def _run_playbook(self, host: Host, phase: str) -> None:
        inventory = self._require_inventory()
        playbook = self.phases_directory / f'{phase}.yml'

        if not playbook.is_file():
            raise ConfigManagerPermanentError(f"Phase '{phase}' has no playbook '{playbook}'.")

        command = Command(
            self.playbook_command,
            '-i',
            inventory,
            '--limit',
            host.label,
            *self._extra_args(),
            playbook,
        )

        try:
            output = command.run(
                cwd=self.scenario_directory,
                friendly_command=f'{self.playbook_command} {playbook.name}',
                logger=self._logger,
            )

        except RunError as exc:
            if exc.returncode == ANSIBLE_UNREACHABLE_EXIT_CODE:
                raise ConfigManagerTemporaryError(
                    f"Host '{host.label}' is unreachable, phase '{phase}' not applied.",
                    causes=[exc],
                ) from exc

            raise ConfigManagerPermanentError(
                f"Failed to apply phase '{phase}' to host '{host.label}'.", causes=[exc]
            ) from exc

        self._ansible_summary(output.stdout)

    def _power_off(self, host: Host) -> None:
        command = Command(
            self.adhoc_command,
            host.label,
            '-i',
            self._require_inventory(),
            '-b',
            '-m',
            'community.general.shutdown',
        )

        try:
            command.run(cwd=self.scenario_directory, logger=self._logger)

        except RunError as exc:
            raise ConfigManagerPermanentError(
                f"Failed to power off host '{host.label}'.", causes=[exc]
            ) from exc

    def apply_phase(self, label: str, phase: str, power_off: bool = False) -> None:
        host = self.require_host(label, phase)

        self._logger.info('phase', f'{phase} on {host.label}', 'green')

        self._run_playbook(host, phase)

        if power_off:
            self._logger.verbose('power', 'off', 'yellow', level=2)
            self._power_off(host)

    def clean_up(self) -> None:
        if self.inventory_path is None:
            return

        inventory_path, self.inventory_path = self.inventory_path, None

        try:
            inventory_path.unlink(missing_ok=True)

            workdir = inventory_path.parent

            if workdir.is_dir() and not any(workdir.iterdir()):
                workdir.rmdir()

        except OSError as exc:
            raise ConfigManagerPermanentError(
                f"Failed to remove Ansible inventory '{inventory_path}'."
            ) from exc

        self._logger.debug(f"Removed Ansible inventory '{inventory_path}'.")
