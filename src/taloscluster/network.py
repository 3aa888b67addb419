# Copyright 2025 Multikernel Technologies, Inc.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Address planning for local clusters.

Every well-known address is derived from the network address of a CIDR plus
a fixed offset: the gateway sits at offset 1, nodes start at offset 2 and are
assigned sequentially (control planes first, then workers), and the optional
virtual IP sits at offset 50 of the IPv4 CIDR. When IPv6 is enabled, a ULA
/64 is synthesized from the four bytes of the IPv4 network address and the
same offsets are used in it.
"""

import ipaddress
from dataclasses import dataclass, field
from fractions import Fraction
from typing import List, Tuple

from .exceptions import (
    InvalidCIDRError,
    NameserverParseError,
    NoFamilyEnabledError,
    NotRationalError,
    TooPreciseError,
    UsageError,
)
from .models import IPAddress, IPNetwork

GATEWAY_OFFSET = 1
NODES_OFFSET = 2
VIP_OFFSET = 50

NANO_CPUS = 1_000_000_000


@dataclass
class NetworkPlan:
    """Result of address planning."""
    cidr4: ipaddress.IPv4Network
    cidrs: List[IPNetwork]
    gateways: List[IPAddress]
    # ips[family][slot]
    ips: List[List[IPAddress]] = field(default_factory=list)

    def node_ips(self, index: int) -> List[IPAddress]:
        """IPs of the node at slot index, one per enabled family."""
        return [family[index] for family in self.ips]


def nth_ip_in_network(network: IPNetwork, n: int) -> IPAddress:
    """
    Return the network address of a CIDR plus n.

    Args:
        network: CIDR to allocate from
        n: Offset from the network address

    Returns:
        The address at the offset

    Raises:
        InvalidCIDRError: If the address falls outside the CIDR
    """
    try:
        addr = network.network_address + n
    except (ValueError, ipaddress.AddressValueError) as e:
        raise InvalidCIDRError(f"{n}th IP is out of network {network}") from e

    if addr not in network:
        raise InvalidCIDRError(f"{n}th IP is out of network {network}")

    return addr


def parse_cidr4(cidr: str) -> ipaddress.IPv4Network:
    """
    Parse the primary cluster CIDR.

    Raises:
        InvalidCIDRError: If the CIDR is malformed or not IPv4
    """
    try:
        network = ipaddress.ip_network(cidr, strict=False)
    except ValueError as e:
        raise InvalidCIDRError(f"error validating cidr block: {e}") from e

    if network.version != 4:
        raise InvalidCIDRError("--cidr is expected to be IPV4 CIDR")

    return network


def ula_for_cidr4(cidr4: ipaddress.IPv4Network) -> ipaddress.IPv6Network:
    """Synthesize the IPv6 ULA /64 matching an IPv4 CIDR."""
    b = cidr4.network_address.packed
    return ipaddress.IPv6Network(f"fd74:616c:{b[0]:02x}{b[1]:02x}:{b[2]:02x}{b[3]:02x}::/64")


def plan_network(cidr: str, ipv4: bool, ipv6: bool, controlplanes: int, workers: int) -> NetworkPlan:
    """
    Derive cluster CIDRs, gateways and per-node addresses.

    Args:
        cidr: Primary IPv4 CIDR
        ipv4: Whether the IPv4 family is enabled
        ipv6: Whether the IPv6 family is enabled
        controlplanes: Number of control plane nodes
        workers: Number of worker nodes

    Returns:
        The network plan

    Raises:
        InvalidCIDRError: If the CIDR is invalid or too small
        NoFamilyEnabledError: If neither family is enabled
    """
    cidr4 = parse_cidr4(cidr)

    cidrs: List[IPNetwork] = []
    if ipv4:
        cidrs.append(cidr4)
    if ipv6:
        cidrs.append(ula_for_cidr4(cidr4))

    if not cidrs:
        raise NoFamilyEnabledError("neither IPv4 nor IPv6 network was enabled")

    gateways = [nth_ip_in_network(c, GATEWAY_OFFSET) for c in cidrs]

    ips = [
        [nth_ip_in_network(c, NODES_OFFSET + i) for i in range(controlplanes + workers)]
        for c in cidrs
    ]

    return NetworkPlan(cidr4=cidr4, cidrs=cidrs, gateways=gateways, ips=ips)


def vip_address(cidr4: ipaddress.IPv4Network) -> ipaddress.IPv4Address:
    """Virtual IP shared by the control plane."""
    return nth_ip_in_network(cidr4, VIP_OFFSET)


def validate_controlplanes(count: int) -> None:
    if count < 1:
        raise UsageError("number of controlplanes can't be less than 1")


def parse_nameservers(nameservers: List[str]) -> List[IPAddress]:
    """
    Parse nameserver literals.

    Raises:
        NameserverParseError: If any entry is not an IP address
    """
    result = []
    for ns in nameservers:
        try:
            result.append(ipaddress.ip_address(ns))
        except ValueError as e:
            raise NameserverParseError(f"failed parsing nameserver IP {ns!r}: {e}") from e
    return result


def parse_no_masquerade_cidrs(cidrs: List[str]) -> List[IPNetwork]:
    result = []
    for cidr in cidrs:
        try:
            result.append(ipaddress.ip_network(cidr, strict=False))
        except ValueError as e:
            raise InvalidCIDRError(f"error parsing non-masquerade CIDR {cidr!r}: {e}") from e
    return result


def parse_cpu_share(cpus: str) -> int:
    """
    Convert a CPU share such as ``2.0`` or ``1/2`` to nano-CPUs.

    Args:
        cpus: Decimal or fractional CPU count

    Returns:
        Number of nano-CPUs

    Raises:
        NotRationalError: If the value is not a rational number
        TooPreciseError: If the value has more than nine fractional digits
    """
    try:
        cpu = Fraction(cpus.strip())
    except (ValueError, ZeroDivisionError) as e:
        raise NotRationalError(f"failed to parsing as a rational number: {cpus}") from e

    nano = cpu * NANO_CPUS
    if nano.denominator != 1:
        raise TooPreciseError("value is too precise")

    return nano.numerator


def join_host_port(host: str, port) -> str:
    """Join host and port, bracketing IPv6 literals."""
    host = str(host)
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


def split_host_port(hostport: str) -> Tuple[str, str]:
    """
    Split ``host:port`` or ``[v6]:port``.

    Raises:
        ValueError: If the port is missing or the address is ambiguous
    """
    if hostport.startswith("["):
        end = hostport.find("]")
        if end < 0 or not hostport[end + 1:].startswith(":"):
            raise ValueError(f"address {hostport}: missing port in address")
        return hostport[1:end], hostport[end + 2:]

    host, sep, port = hostport.rpartition(":")
    if not sep:
        raise ValueError(f"address {hostport}: missing port in address")
    if ":" in host:
        raise ValueError(f"address {hostport}: too many colons in address")
    return host, port
