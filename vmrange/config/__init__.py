import functools
import os
from typing import Optional, TypeVar, cast

import fmf
import fmf.utils

import vmrange.log
from vmrange.config.models.agent import AgentConfig
from vmrange.config.models.ansible import AnsibleConfig
from vmrange.config.models.vbox import VirtualBoxConfig
from vmrange.container import MetadataContainer
from vmrange.utils import Path

MetadataContainerT = TypeVar('MetadataContainerT', bound='MetadataContainer')

# Config directory
DEFAULT_CONFIG_DIR = Path('~/.config/vmrange')


def effective_config_dir() -> Path:
    """
    Find out what the actual config directory is.

    If ``VMRANGE_CONFIG_DIR`` variable is set, it is used. Otherwise,
    :py:const:`DEFAULT_CONFIG_DIR` is picked.
    """

    if 'VMRANGE_CONFIG_DIR' in os.environ:
        return Path(os.environ['VMRANGE_CONFIG_DIR']).expanduser()

    return DEFAULT_CONFIG_DIR.expanduser()


class Config:
    """
    User configuration
    """

    def __init__(self, logger: vmrange.log.Logger) -> None:
        self.path = effective_config_dir()
        self.logger = logger

    @functools.cached_property
    def fmf_tree(self) -> Optional[fmf.Tree]:
        """
        Return the configuration tree
        """

        if not self.path.is_dir():
            self.logger.debug(f"Config directory '{self.path}' does not exist.")

            return None

        try:
            return fmf.Tree(self.path)
        except fmf.utils.RootError:
            self.logger.debug(f"Config tree not found in '{self.path}'.")

            return None

    def _parse_config_subtree(
        self, path: str, model: type[MetadataContainerT]
    ) -> Optional[MetadataContainerT]:
        if self.fmf_tree is None:
            return None

        subtree = cast(Optional[fmf.Tree], self.fmf_tree.find(path))

        if not subtree:
            self.logger.debug(f"Config path '{path}' not found in '{self.path}'.")

            return None

        return model.from_fmf(subtree)

    @functools.cached_property
    def agent(self) -> AgentConfig:
        """
        Return the remote agent configuration, or its defaults.
        """

        return self._parse_config_subtree('/agent', AgentConfig) or AgentConfig()

    @functools.cached_property
    def vbox(self) -> VirtualBoxConfig:
        """
        Return the VirtualBox backend configuration, or its defaults.
        """

        return self._parse_config_subtree('/vbox', VirtualBoxConfig) or VirtualBoxConfig()

    @functools.cached_property
    def ansible(self) -> AnsibleConfig:
        """
        Return the Ansible configuration manager configuration, or its defaults.
        """

        return self._parse_config_subtree('/ansible', AnsibleConfig) or AnsibleConfig()
