""" Handle Plugins """

import importlib
import pkgutil
import sys
from collections.abc import Iterator
from importlib.metadata import entry_points
from typing import Callable, Generic, Optional, TypeVar

import vmrange.utils
from vmrange.log import Logger
from vmrange.utils import Path

# Third party plugins hook into this entry point
ENTRY_POINT_NAME = 'vmrange.plugin'

# Make a note when plugins have been already explored
ALREADY_EXPLORED = False

_VMRANGE_ROOT = Path(vmrange.utils.__file__).resolve().parent.parent

# Packages bundled with vmrange that may contain plugins, with their path
# relative to vmrange sources.
_PACKAGES: list[tuple[str, Path]] = [
    ('vmrange.hypervisor', Path('hypervisor')),
    ('vmrange.configmanager', Path('configmanager')),
]


def discover(path: Path) -> Iterator[str]:
    """
    Discover available plugins for given paths
    """

    for _, name, package in pkgutil.iter_modules([str(path)]):
        if not package:
            yield name


def _import(*, module: str, logger: Logger) -> None:
    """
    Import a module.

    :param module: name of a module to import. It may represent a
        submodule as well, using common dot notation (``foo.bar.baz``).
    :raises GeneralError: when import fails.
    """

    if module in sys.modules:
        logger.debug(f"Module '{module}' already imported.")

        return

    try:
        importlib.import_module(module)

    except ImportError as exc:
        raise vmrange.utils.GeneralError(f"Failed to import the '{module}' module.") from exc

    logger.debug(f"Successfully imported the '{module}' module.")


def _explore_package(package: str, path: Path, logger: Logger) -> None:
    """
    Import plugins from a given Python package
    """

    logger.debug(f"Import plugins from the '{package}' package.")
    logger = logger.descend()

    for module in discover(path):
        _import(module=f'{package}.{module}', logger=logger)


def _explore_entry_point(entry_point: str, logger: Logger) -> None:
    """
    Import all plugins hooked to an entry point
    """

    logger.debug(f"Import plugins from the '{entry_point}' entry point.")
    logger = logger.descend()

    for found in entry_points().select(group=entry_point):
        logger.debug(f"Loading plugin '{found.name}' ({found.value}).")
        found.load()


def explore(logger: Logger, again: bool = False) -> None:
    """
    Explore all available plugin locations

    By default plugins are explored only once to save time. Repeated
    call does not have any effect. Use ``again=True`` to force plugin
    exploration even if it has been already completed before.
    """

    global ALREADY_EXPLORED
    if ALREADY_EXPLORED and not again:
        return

    logger.debug('Import plugins from vmrange packages.')

    for name, path in _PACKAGES:
        _explore_package(name, _VMRANGE_ROOT / path, logger.descend())

    _explore_entry_point(ENTRY_POINT_NAME, logger.descend())

    ALREADY_EXPLORED = True


RegisterableT = TypeVar('RegisterableT')


class PluginRegistry(Generic[RegisterableT]):
    """
    A container for plugins of shared purpose.

    A fancy wrapper for a dictionary at its core, but allows for nicer
    annotations and more visible semantics.
    """

    _plugins: dict[str, RegisterableT]

    def __init__(self, name: str) -> None:
        self.name = name
        self._plugins = {}

    def register_plugin(
        self,
        *,
        plugin_id: str,
        plugin: RegisterableT,
        raise_on_conflict: bool = True,
        logger: Logger,
    ) -> None:
        """
        Register a plugin with this registry.

        :param plugin_id: id of the plugin. Works as a label or name, and
            may not be used in this registry yet.
        :param plugin: a plugin to register.
        :param raise_on_conflict: if set, an exception would be raised
            when id was already used.
        :param logger: used for logging.
        """

        if plugin_id in self._plugins and raise_on_conflict:
            raise vmrange.utils.GeneralError(
                f"Registering plugin '{plugin}' collides"
                f" with an already registered id '{plugin_id}'"
                f" of plugin '{self._plugins[plugin_id]}' in registry '{self.name}'."
            )

        self._plugins[plugin_id] = plugin

        logger.debug(f"Registered plugin '{plugin}' with id '{plugin_id}' in '{self.name}'.")

    def get_plugin(self, plugin_id: str) -> Optional[RegisterableT]:
        """
        Find a plugin by its id.

        :returns: plugin or ``None`` if no such id has been registered.
        """

        return self._plugins.get(plugin_id, None)

    def iter_plugin_ids(self) -> Iterator[str]:
        yield from self._plugins.keys()

    def create_decorator(self) -> Callable[[str], Callable[[RegisterableT], RegisterableT]]:
        """
        Create a decorator registering the decorated plugin under the given id.
        """

        def _provides(plugin_id: str) -> Callable[[RegisterableT], RegisterableT]:
            def _register(plugin: RegisterableT) -> RegisterableT:
                self.register_plugin(
                    plugin_id=plugin_id,
                    plugin=plugin,
                    logger=Logger.get_bootstrap_logger(),
                )

                return plugin

            return _register

        return _provides
