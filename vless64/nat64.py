import ipaddress
import re

from .errors import InvalidIPv4, UnsupportedAddressType

DEFAULT_NAT64_PREFIX = '2001:67c:2960:6464::/96'

_IPV4_SHAPE = re.compile(r'^\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3}$', re.ASCII)
_OCTET = re.compile(r'[0-9]{1,3}')


def parse_prefix(prefix) -> ipaddress.IPv6Network:
    net = prefix if isinstance(prefix, ipaddress.IPv6Network) else ipaddress.IPv6Network(prefix)
    if net.prefixlen != 96:
        raise ValueError(f"NAT64 prefix must be a /96 network, got /{net.prefixlen}")
    return net


def ipv4_to_nat64(ipv4: str, prefix=DEFAULT_NAT64_PREFIX) -> str:
    """Embed an IPv4 address in the low 32 bits of a /96 NAT64 prefix."""
    parts = ipv4.split('.')
    if len(parts) != 4 or not all(_OCTET.fullmatch(p) for p in parts):
        raise InvalidIPv4(f"invalid IPv4 address {ipv4!r}")
    octets = [int(p) for p in parts]
    if any(o > 255 for o in octets):
        raise InvalidIPv4(f"invalid IPv4 address {ipv4!r}")
    value = int.from_bytes(bytes(octets), 'big')
    net = parse_prefix(prefix)
    return str(ipaddress.IPv6Address(int(net.network_address) | value))


async def nat64_address(address: str, resolver, prefix=DEFAULT_NAT64_PREFIX) -> str:
    if _IPV4_SHAPE.match(address):
        return ipv4_to_nat64(address, prefix)
    if ':' in address:
        raise UnsupportedAddressType(f"no NAT64 route for {address}")
    ipv4 = await resolver.resolve_ipv4(address)
    return ipv4_to_nat64(ipv4, prefix)
