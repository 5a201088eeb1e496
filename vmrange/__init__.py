""" Virtual Machine Range Orchestration """

import importlib.metadata

__version__ = importlib.metadata.version(__name__)

__all__ = [
    'AnsibleConfigManager',
    'ConfigManager',
    'DnsEntry',
    'Host',
    'HostCollection',
    'Logger',
    'RemoteAgent',
    'StagingCoordinator',
    'VirtualMachine',
]

from vmrange.agent import RemoteAgent
from vmrange.agent.staging import StagingCoordinator
from vmrange.configmanager import ConfigManager
from vmrange.configmanager.ansible import AnsibleConfigManager
from vmrange.dns import DnsEntry
from vmrange.hosts import Host, HostCollection
from vmrange.hypervisor import VirtualMachine
from vmrange.log import Logger
