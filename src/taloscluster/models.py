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
Data models for cluster options, cluster requests and reflected cluster state.
"""

import ipaddress
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union
from uuid import UUID

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]

DEFAULT_TALOS_VERSION = "v1.11.0"
DEFAULT_KUBERNETES_VERSION = "1.34.0"
DEFAULT_IMAGE_REPOSITORY = "ghcr.io/siderolabs"
DEFAULT_INSTALLER_IMAGE = f"{DEFAULT_IMAGE_REPOSITORY}/installer:{DEFAULT_TALOS_VERSION}"
DEFAULT_NODE_IMAGE = f"{DEFAULT_IMAGE_REPOSITORY}/talos:{DEFAULT_TALOS_VERSION}"
DEFAULT_CLUSTER_NAME = "talos-default"
DEFAULT_CONTROL_PLANE_PORT = 6443
DEFAULT_KUBEPRISM_PORT = 7445
DEFAULT_NAMESERVERS = ["8.8.8.8", "1.1.1.1", "2001:4860:4860::8888", "2606:4700:4700::1111"]
DEFAULT_CNI_BUNDLE_URL = (
    "https://github.com/siderolabs/talos/releases/download/"
    f"{DEFAULT_TALOS_VERSION}/talosctl-cni-bundle-${{ARCH}}.tar.gz"
)


class MachineType(Enum):
    """Machine role within the cluster."""
    INIT = "init"
    CONTROLPLANE = "controlplane"
    WORKER = "worker"

    @property
    def is_control_plane(self) -> bool:
        return self in (MachineType.INIT, MachineType.CONTROLPLANE)


class ConfigInjectionMethod(Enum):
    """How a node receives its machine configuration."""
    HTTP = "http"
    METAL_ISO = "metal-iso"


@dataclass
class CommonOptions:
    """Options shared by every provider."""
    cluster_name: str = DEFAULT_CLUSTER_NAME
    state_dir: str = ""
    talosconfig: str = ""
    apply_config_enabled: bool = False
    registry_mirrors: List[str] = field(default_factory=list)
    registry_insecure: List[str] = field(default_factory=list)
    config_debug: bool = False
    network_mtu: int = 1500
    network_ipv4: bool = True
    network_ipv6: bool = False
    network_cidr: str = "10.5.0.0/24"
    cluster_wait: bool = True
    cluster_wait_timeout: float = 20 * 60
    force_init_node_as_endpoint: bool = False
    force_endpoint: str = ""
    input_dir: str = ""
    with_init_node: bool = False
    custom_cni_url: str = ""
    dns_domain: str = "cluster.local"
    skip_kubeconfig: bool = False
    skip_injecting_config: bool = False
    enable_cluster_discovery: bool = True
    enable_kubespan: bool = False
    config_patch: List[str] = field(default_factory=list)
    config_patch_control_plane: List[str] = field(default_factory=list)
    config_patch_worker: List[str] = field(default_factory=list)
    kubeprism_port: int = DEFAULT_KUBEPRISM_PORT
    skip_k8s_node_readiness_check: bool = False
    with_json_logs: bool = False
    wireguard_cidr: str = ""
    workers: int = 1
    controlplanes: int = 1
    controlplane_cpus: str = "2.0"
    workers_cpus: str = "2.0"
    controlplane_memory: int = 2048
    workers_memory: int = 2048
    kubernetes_version: str = DEFAULT_KUBERNETES_VERSION
    talos_version: str = ""
    control_plane_port: int = DEFAULT_CONTROL_PLANE_PORT
    with_uuid_hostnames: bool = False
    crashdump_on_failure: bool = False


@dataclass
class DockerOptions:
    """Options specific to the container provider."""
    host_ip: str = "0.0.0.0"
    disable_ipv6: bool = False
    node_image: str = DEFAULT_NODE_IMAGE
    ports: str = ""
    mounts: List[str] = field(default_factory=list)


@dataclass
class QemuOptions:
    """Options specific to the emulator provider."""
    node_install_image: str = DEFAULT_INSTALLER_IMAGE
    node_vmlinuz_path: str = ""
    node_initramfs_path: str = ""
    node_iso_path: str = ""
    node_usb_path: str = ""
    node_uki_path: str = ""
    node_disk_image_path: str = ""
    node_ipxe_boot_script: str = ""
    bootloader_enabled: bool = True
    uefi_enabled: bool = True
    tpm1_2_enabled: bool = False
    tpm2_enabled: bool = False
    debug_shell_enabled: bool = False
    with_iommu: bool = False
    extra_uefi_search_paths: List[str] = field(default_factory=list)
    network_no_masquerade_cidrs: List[str] = field(default_factory=list)
    nameservers: List[str] = field(default_factory=lambda: list(DEFAULT_NAMESERVERS))
    cluster_disk_size: int = 6144
    disk_block_size: int = 512
    cluster_disk_preallocate: bool = True
    cluster_user_volumes: List[str] = field(default_factory=list)
    extra_disks: int = 0
    extra_disk_size: int = 5 * 1024
    extra_disks_drivers: List[str] = field(default_factory=list)
    target_arch: str = "amd64"
    cni_bin_path: List[str] = field(default_factory=list)
    cni_conf_dir: str = ""
    cni_cache_dir: str = ""
    cni_bundle_url: str = DEFAULT_CNI_BUNDLE_URL
    encrypt_state_partition: bool = False
    encrypt_ephemeral_partition: bool = False
    encrypt_user_volumes: bool = False
    disk_encryption_key_types: List[str] = field(default_factory=lambda: ["uuid"])
    use_vip: bool = False
    bad_rtc: bool = False
    extra_boot_kernel_args: str = ""
    dhcp_skip_hostname: bool = False
    network_chaos: bool = False
    jitter: float = 0.0
    latency: float = 0.0
    packet_loss: float = 0.0
    packet_reorder: float = 0.0
    packet_corrupt: float = 0.0
    bandwidth: int = 0
    with_firewall: str = ""
    siderolink_agent: str = ""
    config_injection_method: str = ""


@dataclass
class Disk:
    """A disk attached to an emulated node."""
    size: int
    skip_preallocate: bool = False
    driver: str = "virtio"
    block_size: int = 0


@dataclass
class CNIConfig:
    """CNI plugin locations used by the emulator's bridge network."""
    bin_path: List[str] = field(default_factory=list)
    conf_dir: str = ""
    cache_dir: str = ""
    bundle_url: str = ""


@dataclass
class NetworkRequest:
    """Network layout for a cluster."""
    name: str
    cidrs: List[IPNetwork]
    gateway_addrs: List[IPAddress]
    mtu: int
    nameservers: List[IPAddress] = field(default_factory=list)
    no_masquerade_cidrs: List[IPNetwork] = field(default_factory=list)
    cni: CNIConfig = field(default_factory=CNIConfig)
    load_balancer_ports: List[int] = field(default_factory=list)
    dhcp_skip_hostname: bool = False
    docker_disable_ipv6: bool = False
    network_chaos: bool = False
    jitter: float = 0.0
    latency: float = 0.0
    packet_loss: float = 0.0
    packet_reorder: float = 0.0
    packet_corrupt: float = 0.0
    bandwidth: int = 0


class Cmdline:
    """
    Kernel command line as an ordered list of key/value parameters.

    Keys may repeat; a parameter without ``=`` has a value of None.
    """

    def __init__(self, line: str = ""):
        self._params: List[List[Any]] = []
        for token in line.split():
            key, sep, value = token.partition("=")
            self.append(key, value if sep else None)

    def get(self, key: str) -> Optional[List[Optional[str]]]:
        """Return every value recorded for key, or None if the key is absent."""
        for param in self._params:
            if param[0] == key:
                return param[1]
        return None

    def append(self, key: str, value: Optional[str]) -> None:
        for param in self._params:
            if param[0] == key:
                param[1].append(value)
                return
        self._params.append([key, [value]])

    def __str__(self) -> str:
        tokens = []
        for key, values in self._params:
            for value in values:
                tokens.append(key if value is None else f"{key}={value}")
        return " ".join(tokens)

    def __repr__(self) -> str:
        return f"Cmdline({str(self)!r})"


@dataclass
class NodeRequest:
    """A single node to be created by the provider."""
    name: str
    type: MachineType
    ips: List[IPAddress]
    memory: int
    nano_cpus: int
    disks: List[Disk] = field(default_factory=list)
    config: Optional[Any] = None
    config_injection_method: ConfigInjectionMethod = ConfigInjectionMethod.HTTP
    bad_rtc: bool = False
    extra_kernel_args: Optional[Cmdline] = None
    uuid: Optional[UUID] = None
    quirks: Optional[Any] = None
    mounts: List[str] = field(default_factory=list)
    skip_injecting_config: bool = False


@dataclass
class SiderolinkBind:
    """Binds a node UUID to its SideroLink IPv6 address."""
    uuid: UUID
    addr: ipaddress.IPv6Address


@dataclass
class SiderolinkRequest:
    """Endpoints the provider must expose for the SideroLink agent."""
    wireguard_endpoint: str
    api_endpoint: str
    sink_endpoint: str
    log_endpoint: str
    api_cert_pem: bytes = b""
    api_key_pem: bytes = b""
    binds: List[SiderolinkBind] = field(default_factory=list)

    def get_addr(self, node_uuid: UUID) -> Optional[ipaddress.IPv6Address]:
        for bind in self.binds:
            if bind.uuid == node_uuid:
                return bind.addr
        return None


@dataclass
class BootAssets:
    """Boot asset locations; each may be a local path or an http(s) URL."""
    kernel_path: str = ""
    initramfs_path: str = ""
    iso_path: str = ""
    usb_path: str = ""
    uki_path: str = ""
    disk_image_path: str = ""
    ipxe_boot_script: str = ""


@dataclass
class ClusterRequest:
    """Everything a provider needs to materialize a cluster."""
    name: str
    network: NetworkRequest
    nodes: List[NodeRequest] = field(default_factory=list)
    state_directory: str = ""
    self_executable: str = ""
    siderolink_request: Optional[SiderolinkRequest] = None
    boot_assets: BootAssets = field(default_factory=BootAssets)

    def control_plane_nodes(self) -> List[NodeRequest]:
        return [n for n in self.nodes if n.type.is_control_plane]

    def worker_nodes(self) -> List[NodeRequest]:
        return [n for n in self.nodes if n.type == MachineType.WORKER]


@dataclass
class NodeInfo:
    """A provisioned node as reported by the provider."""
    name: str
    type: MachineType
    ips: List[IPAddress]
    nano_cpus: int = 0
    memory: int = 0
    disk_size: int = 0
    uuid: Optional[UUID] = None
    id: str = ""


@dataclass
class NetworkInfo:
    """A provisioned network as reported by the provider."""
    name: str
    cidrs: List[IPNetwork]
    gateway_addrs: List[IPAddress]
    mtu: int
    nameservers: List[IPAddress] = field(default_factory=list)


@dataclass
class ClusterInfo:
    """A provisioned cluster as reported by the provider."""
    cluster_name: str
    network: NetworkInfo
    nodes: List[NodeInfo] = field(default_factory=list)
    kubernetes_endpoint: str = ""
    extra: Dict[str, Any] = field(default_factory=dict)

    def control_plane_nodes(self) -> List[NodeInfo]:
        return [n for n in self.nodes if n.type.is_control_plane]

    def worker_nodes(self) -> List[NodeInfo]:
        return [n for n in self.nodes if n.type == MachineType.WORKER]
