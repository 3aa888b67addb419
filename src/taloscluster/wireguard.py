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
WireGuard full-mesh overlay between cluster nodes.

Each node gets its own key pair and an address at offset ``i + 2`` of the
WireGuard CIDR. Peers are every other node; control plane peers carry an
endpoint so that workers can dial them.
"""

import base64
import copy
import ipaddress
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import x25519

from .config.container import Container
from .exceptions import ConfigError, InvalidCIDRError
from .models import IPAddress
from .network import join_host_port, nth_ip_in_network

WIREGUARD_LISTEN_PORT = 51111
WIREGUARD_INTERFACE = "wg0"
WIREGUARD_MTU = 1500
PERSISTENT_KEEPALIVE = "5s"


def generate_key_pair():
    """Return (private, public) keys in WireGuard's base64 form."""
    key = x25519.X25519PrivateKey.generate()
    private = key.private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption(),
    )
    public = key.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )
    return base64.b64encode(private).decode(), base64.b64encode(public).decode()


@dataclass
class WireguardPeer:
    """A peer entry of a node's WireGuard device."""
    public_key: str
    allowed_ips: List[str]
    endpoint: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        peer: Dict[str, Any] = {"publicKey": self.public_key}
        if self.endpoint:
            peer["endpoint"] = self.endpoint
        peer["persistentKeepaliveInterval"] = PERSISTENT_KEEPALIVE
        peer["allowedIPs"] = list(self.allowed_ips)
        return peer


@dataclass
class WireguardDevice:
    """The ``wg0`` device of one node."""
    address: str
    private_key: str
    public_key: str
    listen_port: Optional[int] = None
    peers: List[WireguardPeer] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        wireguard: Dict[str, Any] = {"privateKey": self.private_key}
        if self.listen_port:
            wireguard["listenPort"] = self.listen_port
        wireguard["peers"] = [p.to_dict() for p in self.peers]
        return {
            "interface": WIREGUARD_INTERFACE,
            "addresses": [self.address],
            "mtu": WIREGUARD_MTU,
            "wireguard": wireguard,
        }


class WireguardConfigBundle:
    """Per-node WireGuard devices keyed by node IP."""

    def __init__(self, configs: Dict[str, WireguardDevice]):
        self.configs = configs

    @classmethod
    def build(cls, ips: List[IPAddress], wireguard_cidr: str, listen_port: int,
              controlplanes: int) -> "WireguardConfigBundle":
        """
        Generate keys and peer lists for every node.

        Args:
            ips: Primary IP of each node, control planes first
            wireguard_cidr: Overlay network
            listen_port: WireGuard listen port of control plane nodes
            controlplanes: Number of control plane nodes

        Raises:
            InvalidCIDRError: If the overlay CIDR is invalid or too small
        """
        try:
            prefix = ipaddress.ip_network(wireguard_cidr, strict=False)
        except ValueError as e:
            raise InvalidCIDRError(f"failed to parse wireguard cidr {wireguard_cidr!r}: {e}") from e

        keys = [generate_key_pair() for _ in ips]
        wg_ips = [nth_ip_in_network(prefix, i + 2) for i in range(len(ips))]

        peers = []
        for i, ip in enumerate(ips):
            peers.append(WireguardPeer(
                public_key=keys[i][1],
                allowed_ips=[f"{wg_ips[i]}/{wg_ips[i].max_prefixlen}"],
                endpoint=join_host_port(ip, listen_port) if i < controlplanes else None,
            ))

        configs = {}
        for i, ip in enumerate(ips):
            configs[str(ip)] = WireguardDevice(
                address=f"{wg_ips[i]}/{prefix.prefixlen}",
                private_key=keys[i][0],
                public_key=keys[i][1],
                listen_port=listen_port if i < controlplanes else None,
                peers=[p for j, p in enumerate(peers) if j != i],
            )

        return cls(configs)

    def patch_config(self, node_ip: IPAddress, cfg: Container) -> Container:
        """
        Add the node's WireGuard device to its machine config.

        Raises:
            ConfigError: If the node is unknown or the config has no machine document
        """
        device = self.configs.get(str(node_ip))
        if device is None:
            raise ConfigError(f"failed to get wireguard config for node {node_ip}")

        patched = cfg.clone()
        doc = patched.v1alpha1()
        if doc is None:
            raise ConfigError("cannot add wireguard device: config has no v1alpha1 document")

        machine = doc.setdefault("machine", {})
        network = machine.get("network") or {}
        machine["network"] = network
        network.setdefault("interfaces", []).append(copy.deepcopy(device.to_dict()))

        return patched
