"""
Hosts of a scenario and their collection.
"""

from collections.abc import Iterator, Sequence
from typing import Any, Optional, Union, overload

from pydantic import Field

import vmrange.log
from vmrange.container import MetadataContainer, container, simple_field
from vmrange.utils import FileError, GeneralError, Path, SpecificationError, yaml_to_list


@container(frozen=True)
class Host:
    """
    A host of the scenario.
    """

    #: Label of the host, unique within the scenario, case-insensitive.
    label: str

    #: Address of the host on the setup network.
    address: str

    hostname: Optional[str] = None
    domain: Optional[str] = None

    #: Inventory group of the host.
    group: Optional[str] = None

    #: Additional variables handed over to the configuration manager.
    vars: dict[str, Any] = simple_field(default_factory=dict, hash=False)

    @property
    def fqdn(self) -> Optional[str]:
        if self.hostname is None:
            return None

        if self.domain is None:
            return self.hostname

        return f'{self.hostname}.{self.domain}'

    def __str__(self) -> str:
        return self.label


class HostCollection(Sequence[Host]):
    """
    Ordered, immutable collection of hosts.

    Labels are expected to be unique when compared case-insensitively.
    The collection does not enforce it, a duplicate is reported and the
    first host of the given label wins every lookup.
    """

    def __init__(self, hosts: Sequence[Host], logger: Optional[vmrange.log.Logger] = None) -> None:
        self._hosts = tuple(hosts)

        seen: set[str] = set()

        for host in self._hosts:
            key = host.label.casefold()

            if key in seen and logger is not None:
                logger.warning(f"Duplicate host label '{host.label}', first such host wins.")

            seen.add(key)

    @overload
    def __getitem__(self, index: int) -> Host:
        pass

    @overload
    def __getitem__(self, index: slice) -> 'HostCollection':
        pass

    def __getitem__(self, index: Union[int, slice]) -> Union[Host, 'HostCollection']:
        if isinstance(index, slice):
            return HostCollection(self._hosts[index])

        return self._hosts[index]

    def __len__(self) -> int:
        return len(self._hosts)

    def __iter__(self) -> Iterator[Host]:
        return iter(self._hosts)

    def __repr__(self) -> str:
        return f'<HostCollection: {", ".join(host.label for host in self._hosts)}>'

    def find(self, label: str) -> Optional[Host]:
        """
        Find a host by its label, ignoring case.

        :returns: the first matching host, or ``None``.
        """

        key = label.casefold()

        for host in self._hosts:
            if host.label.casefold() == key:
                return host

        return None


class HostSpec(MetadataContainer):
    """
    Host as described in a host file.

    .. code-block:: yaml

        - label: web
          address: 10.0.0.1
          hostname: www
          domain: example.com
          group: frontend
          vars:
              http_port: 8080
    """

    label: str = Field(min_length=1)
    address: str = Field(min_length=1)
    hostname: Optional[str] = None
    domain: Optional[str] = None
    group: Optional[str] = None
    vars: dict[str, Any] = Field(default_factory=dict)

    def to_host(self) -> Host:
        return Host(
            label=self.label,
            address=self.address,
            hostname=self.hostname,
            domain=self.domain,
            group=self.group,
            vars=dict(self.vars),
        )


def load_hosts(path: Path, logger: Optional[vmrange.log.Logger] = None) -> HostCollection:
    """
    Load hosts from a YAML file holding a list of host mappings.

    :raises FileError: when the file cannot be read.
    :raises SpecificationError: when the file content is not valid.
    """

    try:
        content = path.read_text()

    except OSError as exc:
        raise FileError(f"Failed to read hosts from '{path}'.") from exc

    try:
        items = yaml_to_list(content)

    except GeneralError as exc:
        raise SpecificationError(f"Invalid hosts file '{path}'.", causes=[exc]) from exc

    hosts: list[Host] = []

    for index, item in enumerate(items):
        if not isinstance(item, dict):
            raise SpecificationError(f"Host #{index + 1} in '{path}' is not a mapping.")

        hosts.append(HostSpec.from_spec(item, origin=f"host #{index + 1} in '{path}'").to_host())

    if logger is not None:
        logger.debug(f"Loaded {len(hosts)} hosts from '{path}'.")

    return HostCollection(hosts, logger=logger)
