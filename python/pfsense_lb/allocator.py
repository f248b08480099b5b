"""
Address allocation for load balancer IPs.

The allocator keeps no state of its own. Callers derive the set of used
addresses from the firewall rule table on every call, so the same inputs always
produce the same address.
"""
import ipaddress
from dataclasses import dataclass
from typing import Iterable, Iterator

from .errors import AllocationFailed, ConfigError, NoFreeAddress


@dataclass(frozen=True)
class ExclusionRange:
    start: ipaddress.IPv4Address | ipaddress.IPv6Address
    end: ipaddress.IPv4Address | ipaddress.IPv6Address

    def __contains__(self, address) -> bool:
        if address.version != self.start.version:
            return False
        return self.start <= address <= self.end

    def __str__(self) -> str:
        return str(self.start)+"-"+str(self.end)


def parse_exclusions(text: str) -> list[ExclusionRange]:
    """
    Parse a comma separated list of inclusive ranges like
    "10.0.0.1-10.0.0.9,10.0.0.20". A lone address excludes only itself.
    """
    exclusions = list()
    for item in text.split(","):
        item = item.strip()
        if not item:
            continue
        start, _, end = item.partition("-")
        try:
            first = ipaddress.ip_address(start.strip())
            last = ipaddress.ip_address(end.strip()) if end else first
        except ValueError as e:
            raise ConfigError("invalid exclusion range "+repr(item)+": "+str(e)) from e
        if first.version != last.version or first > last:
            raise ConfigError("invalid exclusion range "+repr(item)+": start must not be after end")
        exclusions.append(ExclusionRange(first, last))
    return exclusions


def _usable_hosts(subnet) -> Iterator:
    # Skip the network address, and the broadcast address on IPv4
    last = int(subnet.broadcast_address)
    if subnet.version == 4:
        last -= 1
    for value in range(int(subnet.network_address)+1, last+1):
        yield ipaddress.ip_address(value)


def allocate(subnet, exclusions: Iterable[ExclusionRange], already_used: Iterable[str]) -> str:
    """
    Return the lowest usable address of ``subnet`` that is neither inside an
    exclusion range (bounds inclusive) nor in ``already_used``.

    Raises AllocationFailed when an entry of ``already_used`` is not an IP
    address and NoFreeAddress when the subnet is exhausted.
    """
    if isinstance(subnet, str):
        try:
            subnet = ipaddress.ip_network(subnet)
        except ValueError as e:
            raise AllocationFailed("invalid subnet "+repr(subnet)+": "+str(e)) from e

    allocated = set()
    for address in already_used:
        try:
            allocated.add(ipaddress.ip_address(address))
        except ValueError as e:
            raise AllocationFailed("failed to convert allocated IPs from strings: "+str(e)) from e

    exclusions = list(exclusions)
    for ip in _usable_hosts(subnet):
        if any(ip in exclusion for exclusion in exclusions):
            continue
        if ip in allocated:
            continue
        return str(ip)

    raise NoFreeAddress(subnet)
