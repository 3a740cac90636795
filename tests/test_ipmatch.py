# tests/test_ipmatch.py
import pytest

from ipmatch import in_cidr, matches, normalize_ip


@pytest.mark.parametrize(
    "cidr, inside, outside",
    [
        ("10.0.0.0/8", ["10.0.0.1", "10.255.255.254"], ["11.0.0.1"]),
        ("172.16.0.0/16", ["172.16.0.1", "172.16.255.254"], ["172.17.0.1"]),
        ("192.168.100.0/24", ["192.168.100.1", "192.168.100.254"], ["192.168.101.1"]),
    ],
)
def test_cidr_membership(cidr, inside, outside):
    for ip in inside:
        assert matches(ip, [cidr]), f"{ip} should be inside {cidr}"
    for ip in outside:
        assert not matches(ip, [cidr]), f"{ip} should be outside {cidr}"


def test_prefix_edges():
    assert matches("8.8.8.8", ["0.0.0.0/0"])
    assert matches("203.0.113.5", ["203.0.113.5/32"])
    assert not matches("203.0.113.6", ["203.0.113.5/32"])
    # host bits in the network part are ignored, like the mask says
    assert matches("10.1.2.3", ["10.9.9.9/8"])


def test_exact_match_and_ipv6_literals():
    assert matches("127.0.0.1", ["127.0.0.1"])
    assert matches("::1", ["127.0.0.1", "::1"])
    # normalized before comparing
    assert matches("0:0:0:0:0:0:0:1", ["::1"])
    assert matches(" 127.0.0.1 ", ["127.0.0.1"])
    assert not matches("127.0.0.2", ["127.0.0.1"])


def test_ipv6_cidr_is_not_supported():
    assert not matches("2001:db8::1", ["2001:db8::/32"])
    assert not in_cidr("2001:db8::1", "2001:db8::/32")


@pytest.mark.parametrize(
    "pattern",
    ["10.0.0.0/", "10.0.0.0/abc", "10.0.0.0/33", "10.0.0.0/-1", "not-an-ip/8", "/8", "10.0.0/8"],
)
def test_malformed_cidr_never_matches(pattern):
    assert matches("10.0.0.1", [pattern]) is False


def test_non_ipv4_client_against_cidr():
    assert not matches("::1", ["0.0.0.0/0"])
    assert not matches("garbage", ["10.0.0.0/8"])
    assert not matches("", ["0.0.0.0/0"])


def test_any_pattern_matches_and_empty_list():
    assert matches("10.1.1.1", ["192.168.0.0/16", "bogus/99", "10.0.0.0/8"])
    assert not matches("10.1.1.1", [])


def test_normalize_ip_leaves_garbage_alone():
    assert normalize_ip("::0001") == "::1"
    assert normalize_ip(" not-an-ip ") == "not-an-ip"
