import pytest

from vless64.errors import HeaderTooShort, InvalidCredential, UnsupportedAddressType, UnsupportedCommand
from vless64.header import MIN_HEADER_LEN, AddressType, Command, format_uuid, parse_header

from .conftest import USER_ID, build_header


@pytest.mark.parametrize('atyp,address', [
    (AddressType.IPV4, '192.0.2.1'),
    (AddressType.DOMAIN, 'example.com'),
    (AddressType.IPV6, '2001:db8:0:0:0:0:0:1'),
])
def test_parse_recovers_destination(atyp, address):
    buf = build_header(Command.TCP, atyp, address, 8443, payload=b'GET / HTTP/1.1\r\n')
    h = parse_header(buf, USER_ID)
    assert h.address_type is atyp
    assert h.address == address
    assert h.port == 8443
    assert h.command is Command.TCP
    assert buf[h.payload_offset:] == b'GET / HTTP/1.1\r\n'


def test_ipv6_groups_lose_leading_zeros_only():
    buf = build_header(atyp=AddressType.IPV6, address='2001:0db8:0000:0000:0000:ff00:0042:8329')
    assert parse_header(buf, USER_ID).address == '2001:db8:0:0:0:ff00:42:8329'


def test_options_are_skipped():
    buf = build_header(Command.UDP, AddressType.DOMAIN, 'dns.google', 53, payload=b'xy', options=b'\x01\x02\x03')
    h = parse_header(buf, USER_ID)
    assert h.is_udp
    assert h.address == 'dns.google'
    assert buf[h.payload_offset:] == b'xy'


def test_response_header_echoes_version():
    h = parse_header(build_header(version=7), USER_ID)
    assert h.version == 7
    assert h.response_header == b'\x07\x00'


@pytest.mark.parametrize('length', range(MIN_HEADER_LEN))
def test_short_buffers_rejected(length):
    buf = build_header(payload=b'x' * 32)[:length]
    with pytest.raises(HeaderTooShort):
        parse_header(buf, USER_ID)


def test_minimal_header_accepted():
    buf = build_header(Command.TCP, AddressType.DOMAIN, 'a', 80)
    assert len(buf) == MIN_HEADER_LEN
    h = parse_header(buf, USER_ID)
    assert h.address == 'a'
    assert h.payload_offset == MIN_HEADER_LEN


def test_truncated_domain_rejected():
    buf = build_header(atyp=AddressType.DOMAIN, address='a-rather-long-domain.example.com')
    with pytest.raises(HeaderTooShort):
        parse_header(buf[:30], USER_ID)


@pytest.mark.parametrize('index', range(1, 17))
def test_any_credential_byte_flip_rejected(index):
    buf = bytearray(build_header())
    buf[index] ^= 0x01
    with pytest.raises(InvalidCredential):
        parse_header(bytes(buf), USER_ID)


def test_unknown_command_rejected():
    buf = bytearray(build_header())
    buf[18] = 3
    with pytest.raises(UnsupportedCommand):
        parse_header(bytes(buf), USER_ID)


def test_unknown_address_type_rejected():
    buf = bytearray(build_header())
    buf[21] = 4
    with pytest.raises(UnsupportedAddressType):
        parse_header(bytes(buf), USER_ID)


def test_format_uuid_is_canonical():
    raw = bytes.fromhex('d342d11ed4244583b36e524ab1f0afa4')
    assert format_uuid(raw) == USER_ID
