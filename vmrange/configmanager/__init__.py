"""
Configuration managers.

A configuration manager applies named phases of configuration to hosts
of a scenario. Its lifecycle is fixed: :py:meth:`ConfigManager.setup`
first, then any number of :py:meth:`ConfigManager.apply_phase` calls, and
finally :py:meth:`ConfigManager.clean_up`, which runs even when a phase
fails. Use :py:meth:`ConfigManager.session` to get the sequence right.
"""

import abc
import contextlib
from collections.abc import Iterator
from typing import TYPE_CHECKING, Callable, Optional

import vmrange.log
import vmrange.plugins
from vmrange.hosts import Host, HostCollection
from vmrange.utils import GeneralError, HostNotFoundError, Path

if TYPE_CHECKING:
    from vmrange.config import Config


class ConfigManager(abc.ABC):
    """
    Applies configuration phases to hosts of a scenario.
    """

    def __init__(self, *, hosts: HostCollection, logger: vmrange.log.Logger) -> None:
        self.hosts = hosts
        self._logger = logger

    @classmethod
    def from_config(
        cls, *, hosts: HostCollection, config: 'Config', logger: vmrange.log.Logger
    ) -> 'ConfigManager':
        return cls(hosts=hosts, logger=logger)

    def find_host(self, label: str) -> Optional[Host]:
        """
        Find a host by its label, ignoring case.
        """

        return self.hosts.find(label)

    def require_host(self, label: str, phase: str) -> Host:
        """
        Find a host by its label, ignoring case.

        :raises HostNotFoundError: when there is no such host.
        """

        host = self.find_host(label)

        if host is None:
            raise HostNotFoundError(label, phase)

        return host

    @abc.abstractmethod
    def setup(self, scenario_directory: Path) -> None:
        """
        Prepare the configuration management for the scenario.

        :raises ConfigManagerPermanentError: when the preparation fails.
        """

        raise NotImplementedError

    @abc.abstractmethod
    def apply_phase(self, label: str, phase: str, power_off: bool = False) -> None:
        """
        Apply a phase to a host.

        :param label: label of the host, case-insensitive.
        :param phase: name of the phase to apply.
        :param power_off: if set, the host would be powered off once the
            phase has been applied.
        :raises HostNotFoundError: when there is no such host.
        :raises ConfigManagerError: when the phase could not be applied.
        """

        raise NotImplementedError

    @abc.abstractmethod
    def clean_up(self) -> None:
        raise NotImplementedError

    @contextlib.contextmanager
    def session(self, scenario_directory: Path) -> Iterator['ConfigManager']:
        """
        Set up the configuration manager, and clean up after it no matter what.

        When both the body and the cleanup fail, the error of the body is
        propagated, the cleanup error is only logged.
        """

        self.setup(scenario_directory)

        try:
            yield self

        except BaseException:
            try:
                self.clean_up()

            except Exception as exc:
                self._logger.fail(f'Failed to clean up after a failure: {exc}')

            raise

        self.clean_up()


ConfigManagerClass = type[ConfigManager]

_CONFIG_MANAGER_PLUGIN_REGISTRY: vmrange.plugins.PluginRegistry[ConfigManagerClass] = (
    vmrange.plugins.PluginRegistry('configmanager')
)

provides_config_manager: Callable[[str], Callable[[ConfigManagerClass], ConfigManagerClass]] = (
    _CONFIG_MANAGER_PLUGIN_REGISTRY.create_decorator()
)


def iter_config_manager_ids() -> list[str]:
    return sorted(_CONFIG_MANAGER_PLUGIN_REGISTRY.iter_plugin_ids())


def find_config_manager(manager_id: str) -> ConfigManagerClass:
    """
    Find a configuration manager by its id.

    :raises GeneralError: when the plugin does not exist.
    """

    plugin = _CONFIG_MANAGER_PLUGIN_REGISTRY.get_plugin(manager_id)

    if plugin is None:
        raise GeneralError(
            f"Configuration manager '{manager_id}' was not found in configuration manager registry."
        )

    return plugin


def create_config_manager(
    manager_id: str,
    *,
    hosts: HostCollection,
    config: 'Config',
    logger: vmrange.log.Logger,
) -> ConfigManager:
    """
    Create an instance of a configuration manager of the given id.
    """

    return find_config_manager(manager_id).from_config(hosts=hosts, config=config, logger=logger)
