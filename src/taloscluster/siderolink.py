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
SideroLink agent configuration.

SideroLink is an out-of-band management channel: nodes join a WireGuard
tunnel to the host, then talk to a gRPC API, an event sink and a kernel log
receiver over the tunnel's IPv6 addresses. The builder allocates the host
ports, assigns each node an address from a ULA /64, and produces both the
config documents and the kernel argument that embeds them.

:class:`NoopSiderolinkBuilder` stands in when the agent is disabled, so
callers never branch on whether SideroLink is on.
"""

import base64
import datetime
import hashlib
import ipaddress
import logging
import secrets
import socket
import uuid
from enum import Enum
from typing import Dict, List, Optional

import zstandard
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from .config.container import Container
from .config.documents import (
    event_sink_config,
    kmsg_log_config,
    siderolink_config,
    trusted_roots_config,
)
from .config.patcher import Patch, StrategicMergePatch
from .exceptions import ConfigError, PortAllocExhaustedError, UsageError
from .models import Cmdline, SiderolinkBind, SiderolinkRequest
from .network import join_host_port

logger = logging.getLogger(__name__)

KERNEL_PARAM_CONFIG_EARLY = "talos.config.inline"

CONFLICTING_KERNEL_PARAMS = ("siderolink.api", "talos.events.sink", "talos.logging.kernel")

PORT_ALLOC_ATTEMPTS = 10

PREFIX_SEED = "siderolink"

CA_VALIDITY = datetime.timedelta(days=365)


class AgentMode(Enum):
    """SideroLink agent mode selected on the command line."""
    NONE = 0
    WIREGUARD = 1
    GRPC_TUNNEL = 2
    WIREGUARD_TLS = 3
    GRPC_TUNNEL_TLS = 4

    @classmethod
    def parse(cls, value: str) -> "AgentMode":
        """
        Parse the agent flag value.

        Raises:
            UsageError: If the value is not a known mode
        """
        modes = {
            "": cls.NONE,
            "false": cls.NONE,
            "true": cls.WIREGUARD,
            "wireguard": cls.WIREGUARD,
            "tunnel": cls.GRPC_TUNNEL,
            "wireguard+tls": cls.WIREGUARD_TLS,
            "grpc-tunnel+tls": cls.GRPC_TUNNEL_TLS,
        }
        try:
            return modes[value.strip().lower()]
        except KeyError:
            raise UsageError(
                f"unknown type: {value}, possible values are: "
                "'true', 'wireguard' for the usual WG; 'tunnel' for WG over GRPC, "
                "add '+tls' to enable TLS for API"
            ) from None

    def is_enabled(self) -> bool:
        return self != AgentMode.NONE

    def is_tunnel(self) -> bool:
        return self in (AgentMode.GRPC_TUNNEL, AgentMode.GRPC_TUNNEL_TLS)

    def is_tls(self) -> bool:
        return self in (AgentMode.WIREGUARD_TLS, AgentMode.GRPC_TUNNEL_TLS)


def network_prefix(seed: str = PREFIX_SEED) -> ipaddress.IPv6Network:
    """Deterministic ULA /64 derived from a seed string."""
    digest = hashlib.sha256(seed.encode()).digest()
    data = bytearray(digest[-16:])
    data[0] = 0xFD
    return ipaddress.IPv6Network((bytes(data), 64), strict=False)


def get_dynamic_port(kind: str) -> int:
    """Let the OS pick a free port on 127.0.0.1 for tcp or udp."""
    if kind == "tcp":
        sock_type = socket.SOCK_STREAM
    elif kind == "udp":
        sock_type = socket.SOCK_DGRAM
    else:
        raise ValueError(f"unsupported network: {kind}")

    with socket.socket(socket.AF_INET, sock_type) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def _self_signed_ca(host: str):
    key = ec.generate_private_key(ec.SECP256R1())
    now = datetime.datetime.now(datetime.timezone.utc)
    subject = x509.Name([x509.NameAttribute(NameOID.ORGANIZATION_NAME, "siderolink")])
    cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now)
        .not_valid_after(now + CA_VALIDITY)
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .add_extension(x509.SubjectAlternativeName([x509.IPAddress(ipaddress.ip_address(host))]),
                       critical=False)
        .sign(key, hashes.SHA256())
    )
    crt = cert.public_bytes(serialization.Encoding.PEM)
    key_pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )
    return crt, key_pem


class SiderolinkBuilder:
    """Builds SideroLink endpoints, node addresses and config documents."""

    def __init__(self, wg_host: str, prefix: ipaddress.IPv6Network, ports: List[int],
                 api_cert: bytes = b"", api_key: bytes = b""):
        self.wg_host = wg_host
        self.prefix = prefix
        self.node_ipv6_addr = prefix.network_address + 1
        self.wg_port, self.api_port, self.sink_port, self.log_port = ports
        self.api_cert = api_cert
        self.api_key = api_key
        self.binds: Dict[uuid.UUID, ipaddress.IPv6Address] = {}

    @classmethod
    def new(cls, wg_host: str, use_tls: bool = False) -> "SiderolinkBuilder":
        """
        Create a builder, allocating four distinct host ports.

        Args:
            wg_host: Host address nodes reach the services on
            use_tls: Serve the API over TLS with a self-signed CA

        Raises:
            PortAllocExhaustedError: If no distinct quadruple was found
        """
        api_cert, api_key = b"", b""
        if use_tls:
            api_cert, api_key = _self_signed_ca(wg_host)

        ports: List[int] = []
        for attempt in range(PORT_ALLOC_ATTEMPTS):
            ports = [get_dynamic_port(kind) for kind in ("udp", "tcp", "tcp", "tcp")]
            if len(set(ports)) == len(ports):
                break
            logger.debug("dynamic ports overlap on attempt %d: %s", attempt + 1, ports)
        else:
            raise PortAllocExhaustedError(
                f"failed to get non-overlapping dynamic ports in {PORT_ALLOC_ATTEMPTS} attempts: "
                "generated ports overlap"
            )

        return cls(wg_host, network_prefix(), ports, api_cert, api_key)

    def ports(self) -> List[int]:
        return [self.wg_port, self.api_port, self.sink_port, self.log_port]

    def define_ipv6(self, node_uuid: uuid.UUID) -> None:
        """Assign a fresh random address from the prefix to a node."""
        taken = set(self.binds.values()) | {self.prefix.network_address, self.node_ipv6_addr}
        while True:
            addr = self.prefix.network_address + secrets.randbits(64)
            if addr not in taken:
                break
        self.binds[node_uuid] = addr

    def siderolink_request(self) -> Optional[SiderolinkRequest]:
        return SiderolinkRequest(
            wireguard_endpoint=join_host_port(self.wg_host, self.wg_port),
            api_endpoint=f":{self.api_port}",
            sink_endpoint=f":{self.sink_port}",
            log_endpoint=f":{self.log_port}",
            api_cert_pem=self.api_cert,
            api_key_pem=self.api_key,
            binds=[SiderolinkBind(uuid=k, addr=v) for k, v in self.binds.items()],
        )

    def api_url(self, tunnel: bool) -> str:
        scheme = "https" if self.api_cert else "grpc"
        url = f"{scheme}://{join_host_port(self.wg_host, self.api_port)}?jointoken=foo"
        if tunnel:
            url += "&grpc_tunnel=true"
        return url

    def config_document(self, tunnel: bool) -> Optional[Container]:
        """Config container pointing a node at the SideroLink services."""
        node_addr = str(self.node_ipv6_addr)
        documents = [
            siderolink_config(self.api_url(tunnel)),
            event_sink_config(join_host_port(node_addr, self.sink_port)),
            kmsg_log_config("siderolink", f"tcp://{join_host_port(node_addr, self.log_port)}"),
        ]
        if self.api_cert:
            documents.append(trusted_roots_config("siderolink-ca", self.api_cert.decode()))
        return Container(documents)

    def config_patches(self, tunnel: bool) -> List[Patch]:
        return [StrategicMergePatch(self.config_document(tunnel))]

    def set_kernel_args(self, cmdline: Optional[Cmdline], tunnel: bool) -> None:
        """
        Embed the config documents in the kernel command line.

        The comment-free YAML is zstd-compressed, base64-encoded and appended
        as ``talos.config.inline``.

        Raises:
            ConfigError: If SideroLink parameters are already present
        """
        if cmdline is None:
            raise ConfigError("kernel command line is required to enable siderolink")

        if any(cmdline.get(param) is not None for param in CONFLICTING_KERNEL_PARAMS):
            raise ConfigError("siderolink kernel arguments are already set, cannot run with --with-siderolink")

        marshaled = self.config_document(tunnel).bytes()
        compressed = zstandard.ZstdCompressor().compress(marshaled)

        cmdline.append(KERNEL_PARAM_CONFIG_EARLY, base64.b64encode(compressed).decode())


class NoopSiderolinkBuilder:
    """Null builder used when the agent is disabled."""

    def define_ipv6(self, node_uuid: uuid.UUID) -> None:
        return None

    def siderolink_request(self) -> Optional[SiderolinkRequest]:
        return None

    def config_document(self, tunnel: bool) -> Optional[Container]:
        return None

    def config_patches(self, tunnel: bool) -> List[Patch]:
        return []

    def set_kernel_args(self, cmdline: Optional[Cmdline], tunnel: bool) -> None:
        return None
