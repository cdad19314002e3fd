"""IPv4 and CIDR arithmetic.

Addresses are handled as 32-bit unsigned integers in network (big-endian)
byte order. Parsing failures are reported as ``AddressError`` from the
``parse_*`` functions, or as an error string from the ``try_parse_*``
wrappers, which never raise.
"""
import ipaddress
from typing import NamedTuple, Optional, Tuple

ALL_ONES = 0xFFFFFFFF


class AddressError(ValueError):
    pass


class CidrInfo(NamedTuple):
    cidr: str
    prefix_length: int
    network: str
    broadcast: str
    network_int: int
    broadcast_int: int
    mask: int
    first_usable: Optional[str]
    last_usable: Optional[str]
    total_addresses: int
    usable_addresses: int

    def contains(self, ip_int: int) -> bool:
        return self.network_int <= ip_int <= self.broadcast_int


def prefix_to_mask(prefix_length: int) -> int:
    if prefix_length <= 0:
        return 0
    if prefix_length >= 32:
        return ALL_ONES
    return (ALL_ONES << (32 - prefix_length)) & ALL_ONES


def int_to_ipv4(value: int) -> str:
    value &= ALL_ONES
    return ".".join(str((value >> shift) & 0xFF) for shift in (24, 16, 8, 0))


def parse_ipv4(text: Optional[str]) -> int:
    if text is None or not text.strip():
        raise AddressError("IP address is empty.")
    try:
        addr = ipaddress.ip_address(text.strip())
    except ValueError:
        raise AddressError("Invalid IP address format.")
    if addr.version != 4:
        raise AddressError("Only IPv4 addresses are supported.")
    return int.from_bytes(addr.packed, "big")


def parse_cidr(text: Optional[str]) -> CidrInfo:
    if text is None or not text.strip():
        raise AddressError("CIDR is empty.")

    parts = [p.strip() for p in text.strip().split("/")]
    if len(parts) != 2 or not all(parts):
        raise AddressError("CIDR must be in the format x.x.x.x/NN")
    ip_part, prefix_part = parts

    try:
        ip_int = parse_ipv4(ip_part)
    except AddressError:
        raise AddressError("CIDR base address must be a valid IPv4 address.")

    # isdigit() alone accepts superscripts and other non-ASCII digits.
    if not (prefix_part.isascii() and prefix_part.isdigit()) or not 0 <= int(prefix_part) <= 32:
        raise AddressError("CIDR prefix length must be an integer from 0 to 32.")
    prefix = int(prefix_part)

    mask = prefix_to_mask(prefix)
    network_int = ip_int & mask
    broadcast_int = network_int | (~mask & ALL_ONES)
    network = int_to_ipv4(network_int)
    broadcast = int_to_ipv4(broadcast_int)

    total = 1 if prefix == 32 else 1 << (32 - prefix)

    # /32 is a single host, /31 is a point-to-point link with both ends usable.
    if prefix == 32:
        usable, first, last = 1, network, network
    elif prefix == 31:
        usable, first, last = 2, network, broadcast
    else:
        usable = max(0, total - 2)
        if usable > 0:
            first = int_to_ipv4(network_int + 1)
            last = int_to_ipv4(broadcast_int - 1)
        else:
            first = last = None

    return CidrInfo(
        cidr=f"{network}/{prefix}",
        prefix_length=prefix,
        network=network,
        broadcast=broadcast,
        network_int=network_int,
        broadcast_int=broadcast_int,
        mask=mask,
        first_usable=first,
        last_usable=last,
        total_addresses=total,
        usable_addresses=usable,
    )


def try_parse_ipv4(text: Optional[str]) -> Tuple[Optional[int], Optional[str]]:
    try:
        return parse_ipv4(text), None
    except AddressError as e:
        return None, str(e)


def try_parse_cidr(text: Optional[str]) -> Tuple[Optional[CidrInfo], Optional[str]]:
    try:
        return parse_cidr(text), None
    except AddressError as e:
        return None, str(e)
