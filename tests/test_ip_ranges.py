import pytest

from ip_ranges import is_loopback_ip, is_private_ip, parse_ip_literal


@pytest.mark.parametrize("ip", [
    "127.0.0.1",
    "127.255.255.254",
    "10.1.2.3",
    "172.16.0.1",
    "172.31.255.255",
    "192.168.1.1",
    "169.254.169.254",
    "0.0.0.0",
    "::1",
    "fc00::1",
    "fd12:3456::1",
    "fe80::1",
    "::ffff:10.0.0.1",
])
def test_private_addresses(ip):
    assert is_private_ip(ip) is True


@pytest.mark.parametrize("ip", [
    "8.8.8.8",
    "172.32.0.1",
    "172.15.255.255",
    "192.169.0.1",
    "2606:4700::1111",
    "::ffff:8.8.8.8",
])
def test_public_addresses(ip):
    assert is_private_ip(ip) is False


def test_unrecognized_input_is_not_private():
    assert is_private_ip("not-an-ip") is False
    assert is_private_ip("") is False
    assert is_private_ip("999.1.1.1") is False


def test_loopback_detection():
    assert is_loopback_ip("127.0.0.2")
    assert is_loopback_ip("::1")
    assert is_loopback_ip("::ffff:127.0.0.1")
    assert not is_loopback_ip("10.0.0.1")
    assert not is_loopback_ip("garbage")


def test_parse_ip_literal_forms():
    assert parse_ip_literal("10.0.0.1") == "10.0.0.1"
    assert parse_ip_literal("[::1]") == "::1"
    assert parse_ip_literal("2130706433") == "127.0.0.1"
    assert parse_ip_literal("0x7f.1") == "127.0.0.1"
    assert parse_ip_literal("127.1") == "127.0.0.1"
    assert parse_ip_literal("example.com") is None
    assert parse_ip_literal("") is None
