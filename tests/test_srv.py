from types import SimpleNamespace
from unittest import mock

import dns.name
import dns.resolver
import pytest

from rlservice.srv import (
    DnsSrvResolver,
    SrvParseError,
    SrvRecord,
    lookup_server_strings_from_srv,
    parse_srv,
)


def mock_addrs_lookup(service, proto, name):
    return [SrvRecord("z", 1), SrvRecord("z", 0), SrvRecord("a", 9001)]


def test_lookup_server_strings_returns_servers_sorted():
    targets = lookup_server_strings_from_srv("_something._tcp.example.org.", mock_addrs_lookup)
    assert targets == ["a:9001", "z:0", "z:1"]


def test_lookup_passes_parsed_parts():
    seen = []

    def lookup(service, proto, name):
        seen.append((service, proto, name))
        return []

    assert lookup_server_strings_from_srv("_something._tcp.example.org.", lookup) == []
    assert seen == [("something", "tcp", "example.org.")]


def test_parse_srv():
    assert parse_srv("_something._tcp.example.org.") == ("something", "tcp", "example.org.")
    assert parse_srv("_something-else._udp.example.org") == (
        "something-else",
        "udp",
        "example.org",
    )


def test_parse_srv_rejects_plain_name():
    with pytest.raises(SrvParseError) as info:
        parse_srv("example.org")
    assert str(info.value) == "could not parse example.org to SRV parts"


def test_resolver_rejects_badly_formed_srv():
    with pytest.raises(SrvParseError) as info:
        DnsSrvResolver().server_strings_from_srv("example.org")
    assert str(info.value) == "could not parse example.org to SRV parts"


def test_lookup_errors_propagate():
    def failing(service, proto, name):
        raise LookupError("no such host")

    with pytest.raises(LookupError, match="no such host"):
        lookup_server_strings_from_srv("_something._tcp.example.invalid", failing)


def _answer(target, port):
    return SimpleNamespace(target=dns.name.from_text(target), port=port, priority=0, weight=0)


@mock.patch("dns.resolver.resolve")
def test_dns_resolver_formats_and_sorts(resolve):
    resolve.return_value = [
        _answer("imap2.example.org.", 993),
        _answer("imap.example.org.", 993),
    ]
    servers = DnsSrvResolver().server_strings_from_srv("_imaps._tcp.example.org.")
    assert servers == ["imap.example.org.:993", "imap2.example.org.:993"]
    resolve.assert_called_once_with("_imaps._tcp.example.org.", "SRV")


@mock.patch("dns.resolver.resolve")
def test_dns_resolver_not_found_propagates(resolve):
    resolve.side_effect = dns.resolver.NXDOMAIN()
    with pytest.raises(dns.resolver.NXDOMAIN):
        DnsSrvResolver().server_strings_from_srv("_something._tcp.example.invalid")