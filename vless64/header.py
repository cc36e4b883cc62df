import enum
import struct
from dataclasses import dataclass

from .errors import (
    HeaderTooShort,
    InvalidCredential,
    UnsupportedAddressType,
    UnsupportedCommand,
)

MIN_HEADER_LEN = 24
STATUS_OK = 0


class Command(enum.IntEnum):
    TCP = 1
    UDP = 2


class AddressType(enum.IntEnum):
    IPV4 = 1
    DOMAIN = 2
    IPV6 = 3


@dataclass(frozen=True)
class HeaderDescriptor:
    version: int
    command: Command
    address_type: AddressType
    address: str
    port: int
    payload_offset: int

    @property
    def is_udp(self) -> bool:
        return self.command is Command.UDP

    @property
    def response_header(self) -> bytes:
        return bytes((self.version, STATUS_OK))


def format_uuid(raw: bytes) -> str:
    h = raw.hex()
    return f"{h[0:8]}-{h[8:12]}-{h[12:16]}-{h[16:20]}-{h[20:32]}"


def _need(buf, end):
    if len(buf) < end:
        raise HeaderTooShort(f"header truncated at byte {len(buf)}, need {end}")


def parse_header(buf: bytes, credential: str) -> HeaderDescriptor:
    """Decode the session header at the start of the first inbound chunk.

    `credential` is the configured user id in canonical lowercase form.
    Raises a GatewayError subclass on any malformed or unauthorized header.
    """
    if len(buf) < MIN_HEADER_LEN:
        raise HeaderTooShort()
    version = buf[0]
    if format_uuid(bytes(buf[1:17])) != credential:
        raise InvalidCredential()

    opt_len = buf[17]
    offset = 18 + opt_len
    _need(buf, offset + 4)
    try:
        command = Command(buf[offset])
    except ValueError:
        raise UnsupportedCommand(f"unsupported command {buf[offset]}, only TCP(01) and UDP(02) are allowed") from None
    port, atyp = struct.unpack_from('!HB', buf, offset + 1)
    offset += 4

    if atyp == AddressType.IPV4:
        _need(buf, offset + 4)
        address = '.'.join(str(b) for b in buf[offset:offset + 4])
        offset += 4
    elif atyp == AddressType.DOMAIN:
        _need(buf, offset + 1)
        dlen = buf[offset]
        offset += 1
        _need(buf, offset + dlen)
        address = bytes(buf[offset:offset + dlen]).decode('utf-8', errors='replace')
        offset += dlen
    elif atyp == AddressType.IPV6:
        _need(buf, offset + 16)
        groups = struct.unpack_from('!8H', buf, offset)
        # leading zeros stripped per group, no "::" run compression
        address = ':'.join(format(g, 'x') for g in groups)
        offset += 16
    else:
        raise UnsupportedAddressType(f"unsupported address type {atyp}")

    return HeaderDescriptor(
        version=version,
        command=command,
        address_type=AddressType(atyp),
        address=address,
        port=port,
        payload_offset=offset,
    )
