"""
DNS entries of scenario hosts.

Entries are plain records handed over to an external zone file writer,
which is responsible for their correctness.
"""

from typing import Optional

from vmrange.container import container


@container(frozen=True)
class DnsEntry:
    """
    A single DNS resource record.
    """

    name: str
    ttl: Optional[int]

    #: Record class, ``IN`` for most records.
    entry_class: str

    #: Record type, e.g. ``A`` or ``MX``.
    entry_type: str

    value: str
