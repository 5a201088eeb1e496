import dataclasses
import textwrap

import _pytest.logging
import pytest

from vmrange.dns import DnsEntry
from vmrange.hosts import Host, HostCollection, load_hosts
from vmrange.log import Logger
from vmrange.utils import FileError, Path, SpecificationError

from . import assert_log, assert_not_log

HOSTS = textwrap.dedent(
    """
    - label: web
      address: 10.0.0.1
      hostname: www
      domain: example.com
      group: frontend
      vars:
          http_port: 8080

    - label: db
      address: 10.0.0.2
    """
)


@pytest.mark.parametrize(
    ('hostname', 'domain', 'expected'),
    [
        ('www', 'example.com', 'www.example.com'),
        ('www', None, 'www'),
        (None, 'example.com', None),
    ],
)
def test_fqdn(hostname: str, domain: str, expected: str) -> None:
    assert Host(label='web', address='10.0.0.1', hostname=hostname, domain=domain).fqdn == expected


def test_host_is_hashable() -> None:
    host = Host(label='web', address='10.0.0.1', vars={'http_port': 8080})

    assert {host: 'web'}[host] == 'web'
    assert str(host) == 'web'


def test_collection() -> None:
    web = Host(label='web', address='10.0.0.1')
    db = Host(label='db', address='10.0.0.2')

    hosts = HostCollection([web, db])

    assert len(hosts) == 2
    assert list(hosts) == [web, db]
    assert hosts[1] is db
    assert list(hosts[1:]) == [db]
    assert hosts.find('DB') is db
    assert hosts.find('mail') is None
    assert repr(hosts) == '<HostCollection: web, db>'


def test_collection_duplicate_label(
    root_logger: Logger, caplog: _pytest.logging.LogCaptureFixture
) -> None:
    HostCollection(
        [Host(label='web', address='10.0.0.1'), Host(label='Web', address='10.0.0.2')],
        logger=root_logger,
    )

    assert_log(caplog, message="warn: Duplicate host label 'Web', first such host wins.")


def test_collection_unique_labels(
    root_logger: Logger, caplog: _pytest.logging.LogCaptureFixture
) -> None:
    HostCollection(
        [Host(label='web', address='10.0.0.1'), Host(label='db', address='10.0.0.2')],
        logger=root_logger,
    )

    assert_not_log(caplog, details_key='warn')


def test_load_hosts(tmppath: Path, root_logger: Logger) -> None:
    path = tmppath / 'hosts.yaml'
    path.write_text(HOSTS)

    hosts = load_hosts(path, logger=root_logger)

    assert list(hosts) == [
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


def test_load_hosts_missing_file(tmppath: Path) -> None:
    with pytest.raises(FileError, match='Failed to read hosts'):
        load_hosts(tmppath / 'missing.yaml')


@pytest.mark.parametrize(
    ('content', 'match'),
    [
        ('- web\n', "Host #1 in '.*' is not a mapping."),
        ('- label: web\n', 'Invalid metadata in host #1'),
        ('- label: ""\n  address: 10.0.0.1\n', 'Invalid metadata in host #1'),
        ('- label: web\n  address: 10.0.0.1\n  port: 22\n', 'Invalid metadata in host #1'),
    ],
    ids=['not-a-mapping', 'no-address', 'empty-label', 'unknown-key'],
)
def test_load_hosts_invalid(tmppath: Path, content: str, match: str) -> None:
    path = tmppath / 'hosts.yaml'
    path.write_text(content)

    with pytest.raises(SpecificationError, match=match):
        load_hosts(path)


@pytest.mark.parametrize(
    'content',
    [
        '- label: web\n  address: `10.0.0.1`\n',
        '- label: web\n  address: [10.0.0.1\n',
        'label: web\n',
    ],
    ids=['scanner-error', 'parser-error', 'not-a-list'],
)
def test_load_hosts_invalid_yaml(tmppath: Path, content: str) -> None:
    path = tmppath / 'hosts.yaml'
    path.write_text(content)

    with pytest.raises(SpecificationError, match="Invalid hosts file '.*hosts.yaml'.") as excinfo:
        load_hosts(path)

    assert len(excinfo.value.causes) == 1


def test_dns_entry() -> None:
    entry = DnsEntry('www', 3600, 'IN', 'A', '10.0.0.1')

    assert [field.name for field in dataclasses.fields(DnsEntry)] == [
        'name',
        'ttl',
        'entry_class',
        'entry_type',
        'value',
    ]
    assert dataclasses.astuple(entry) == ('www', 3600, 'IN', 'A', '10.0.0.1')

    with pytest.raises(dataclasses.FrozenInstanceError):
        entry.ttl = 60  # type: ignore[misc]


def test_dns_entry_is_not_validated() -> None:
    entry = DnsEntry(name='', ttl=-1, entry_class='', entry_type='BOGUS', value='')

    assert entry.ttl == -1
    assert entry.entry_type == 'BOGUS'
