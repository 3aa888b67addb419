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
Provider-specific cluster creation.

Each ``create_*_cluster`` function extends the request built by
:class:`~taloscluster.maker.ClusterMaker` with what its back-end needs, then
creates the cluster and runs the post-create steps.
"""

import logging
from typing import Any, Dict, List, Optional

import click

from .assets import download_boot_assets
from .config.bundle import with_patch, with_patch_control_plane, with_patch_worker
from .config.contract import VersionContract, contract_or_current
from .config.documents import EPHEMERAL_PARTITION_LABEL, LUKS2, STATE_PARTITION_LABEL, encryption_spec, volume_config
from .config.generate import (
    with_install_image,
    with_network_interface_virtual_ip,
    with_network_options,
    with_sysctls,
)
from .config.patcher import Patch, new_strategic_merge_patch
from .disks import extra_worker_disks, primary_disk, user_volume_disks
from .exceptions import ChaosFlagsWithoutMasterError, ConfigError, VersionParseError
from .firewall import control_plane_patch, parse_default_action, worker_patch
from .maker import ClusterMaker
from .models import (
    DEFAULT_TALOS_VERSION,
    BootAssets,
    CNIConfig,
    Cmdline,
    CommonOptions,
    ConfigInjectionMethod,
    DockerOptions,
    MachineType,
    QemuOptions,
)
from .network import join_host_port, nth_ip_in_network, parse_nameservers, parse_no_masquerade_cidrs, vip_address
from .providers.base import (
    Cluster,
    Provider,
    with_bootloader,
    with_debug_shell,
    with_docker_image,
    with_docker_ports,
    with_docker_ports_host_ip,
    with_extra_uefi_search_paths,
    with_iommu,
    with_kms,
    with_kubernetes_endpoint,
    with_siderolink_agent,
    with_target_arch,
    with_tpm1_2,
    with_tpm2,
    with_uefi,
)
from .providers.state import cluster_dir
from .quirks import Quirks
from .siderolink import AgentMode, NoopSiderolinkBuilder, SiderolinkBuilder

logger = logging.getLogger(__name__)

KMS_PORT = 4050

INJECTION_METHODS = {
    "": ConfigInjectionMethod.HTTP,
    "default": ConfigInjectionMethod.HTTP,
    "http": ConfigInjectionMethod.HTTP,
    "metal-iso": ConfigInjectionMethod.METAL_ISO,
}


def talos_version_from_image(image: str, default: str = DEFAULT_TALOS_VERSION) -> str:
    """
    Talos version of an image, taken from its tag.

    The tag is whatever follows the last ``:``. When it is not a version,
    default is returned.
    """
    tag = image.rsplit(":", 1)[-1] if ":" in image else ""
    try:
        VersionContract.parse(tag)
    except VersionParseError:
        logger.debug("image %r has no version tag, assuming %s", image, default)
        return default
    return tag


def create_docker_cluster(common: CommonOptions, docker: DockerOptions, provider: Provider) -> Cluster:
    """
    Create a cluster of containers.

    Args:
        common: Common create options
        docker: Container provider options
        provider: The container provider

    Returns:
        The created cluster
    """
    maker = ClusterMaker(common, provider, common.talos_version or talos_version_from_image(docker.node_image))

    request = maker.partial_request()
    request.network.docker_disable_ipv6 = docker.disable_ipv6

    for node in request.nodes:
        node.mounts = list(docker.mounts)

    ports = [p.strip() for p in docker.ports.split(",") if p.strip()] if docker.ports else []

    maker.add_provision_options(
        with_docker_ports_host_ip(docker.host_ip),
        with_docker_ports(ports),
        with_docker_image(docker.node_image),
    )

    cluster = maker.create_cluster(request)
    maker.post_create()
    return cluster


def validate_network_chaos(qemu: QemuOptions) -> None:
    if qemu.network_chaos:
        return

    if any((qemu.jitter, qemu.latency, qemu.packet_loss, qemu.packet_reorder,
            qemu.packet_corrupt, qemu.bandwidth)):
        raise ChaosFlagsWithoutMasterError("network chaos flags can only be used with --with-network-chaos")


def parse_injection_method(value: str) -> ConfigInjectionMethod:
    try:
        return INJECTION_METHODS[value]
    except KeyError:
        raise ConfigError(f"unknown config injection method {value!r}") from None


class _QemuAddendum:
    """Qemu-specific extension of a cluster maker."""

    def __init__(self, maker: ClusterMaker, common: CommonOptions, qemu: QemuOptions, provider: Provider):
        self.maker = maker
        self.common = common
        self.qemu = qemu
        self.provider = provider
        self.request = maker.partial_request()
        self.vip = None
        self.agent = AgentMode.parse(qemu.siderolink_agent)
        self.siderolink = NoopSiderolinkBuilder()

    def _contract(self) -> VersionContract:
        return contract_or_current(self.maker.version_contract())

    def encryption_keys(self, key_types: List[str]) -> List[Dict[str, Any]]:
        """
        Encryption keys in slot order.

        Raises:
            ConfigError: If a key type is unknown or none is given
        """
        keys = []
        for slot, key_type in enumerate(key_types):
            if key_type == "uuid":
                keys.append({"nodeID": {}, "slot": slot})
            elif key_type == "kms":
                bridge_ip = nth_ip_in_network(self.maker.cidr4(), 1)
                keys.append({
                    "kms": {"endpoint": "grpc://" + join_host_port(bridge_ip, KMS_PORT)},
                    "slot": slot,
                })
                self.maker.add_provision_options(with_kms(join_host_port("0.0.0.0", KMS_PORT)))
            elif key_type == "tpm":
                tpm: Dict[str, Any] = {}
                if self._contract().secure_boot_enroll_enforcement_supported():
                    tpm["checkSecurebootStatusOnEnroll"] = True
                keys.append({"tpm": tpm, "slot": slot})
            else:
                raise ConfigError(f"unknown key type {key_type!r}")

        if not keys:
            raise ConfigError("no disk encryption key types enabled")

        return keys

    def init_extra(self) -> None:
        if self.qemu.use_vip:
            self.vip = vip_address(self.maker.cidr4())
            self.maker.set_in_cluster_endpoint(
                "https://" + join_host_port(self.vip, self.common.control_plane_port))

        self.init_disks()

        if self.agent.is_enabled():
            self.siderolink = SiderolinkBuilder.new(str(self.request.network.gateway_addrs[0]),
                                                    self.agent.is_tls())

    def init_disks(self) -> None:
        qemu = self.qemu

        primary = primary_disk(qemu.cluster_disk_size, qemu.cluster_disk_preallocate, qemu.disk_block_size)
        extras = extra_worker_disks(qemu.extra_disks, qemu.extra_disk_size, qemu.extra_disks_drivers,
                                    qemu.target_arch, qemu.cluster_disk_preallocate, qemu.disk_block_size)

        keys = self.encryption_keys(qemu.disk_encryption_key_types) if qemu.encrypt_user_volumes else None
        user_disks, documents = user_volume_disks(
            qemu.cluster_user_volumes, self.provider.user_disk_name, qemu.cluster_disk_preallocate,
            qemu.disk_block_size, keys)

        if documents:
            self.maker.add_bundle_options(with_patch([new_strategic_merge_patch(*documents)]))

        for node in self.request.nodes:
            node.disks = [primary]
            if node.type == MachineType.WORKER:
                node.disks += extras
            node.disks += user_disks

    def add_gen_options(self) -> None:
        qemu = self.qemu

        self.maker.add_gen_options(with_install_image(qemu.node_install_image))

        if self.vip is not None:
            self.maker.add_gen_options(with_network_options(
                with_network_interface_virtual_ip(self.provider.get_first_interface(), str(self.vip))))

        if not qemu.bootloader_enabled:
            # kexec would bypass the disabled bootloader
            self.maker.add_gen_options(with_sysctls({"kernel.kexec_load_disabled": "1"}))

    def add_provision_options(self) -> None:
        qemu = self.qemu

        self.maker.add_provision_options(
            with_bootloader(qemu.bootloader_enabled),
            with_uefi(qemu.uefi_enabled),
            with_tpm1_2(qemu.tpm1_2_enabled),
            with_tpm2(qemu.tpm2_enabled),
            with_debug_shell(qemu.debug_shell_enabled),
            with_iommu(qemu.with_iommu),
            with_extra_uefi_search_paths(qemu.extra_uefi_search_paths),
            with_target_arch(qemu.target_arch),
            with_siderolink_agent(self.agent.is_enabled()),
        )

        if self.vip is not None:
            self.maker.add_provision_options(with_kubernetes_endpoint(
                "https://" + join_host_port(self.vip, self.common.control_plane_port)))

    def add_bundle_options(self) -> None:
        qemu = self.qemu

        if qemu.with_firewall:
            action = parse_default_action(qemu.with_firewall)
            plan_ips = self.maker.ips()
            controlplane_ips = [ip for family in plan_ips for ip in family[:self.common.controlplanes]]
            network = self.request.network

            self.maker.add_bundle_options(
                with_patch_control_plane([control_plane_patch(action, network.cidrs, network.gateway_addrs,
                                                              controlplane_ips)]),
                with_patch_worker([worker_patch(action, network.cidrs, network.gateway_addrs)]),
            )

        self.maker.add_bundle_options(with_patch(self.disk_encryption_patches()))
        self.maker.add_bundle_options(with_patch(self.siderolink.config_patches(self.agent.is_tunnel())))

    def disk_encryption_patches(self) -> List[Patch]:
        """
        Patches encrypting the STATE and EPHEMERAL partitions.

        Contracts without VolumeConfig encryption get the legacy
        ``machine.systemDiskEncryption`` section instead.
        """
        qemu = self.qemu
        if not (qemu.encrypt_state_partition or qemu.encrypt_ephemeral_partition):
            return []

        keys = self.encryption_keys(qemu.disk_encryption_key_types)

        if not self._contract().volume_config_encryption_supported():
            legacy: Dict[str, Any] = {}
            if qemu.encrypt_state_partition:
                legacy["state"] = {"provider": LUKS2, "keys": keys}
            if qemu.encrypt_ephemeral_partition:
                legacy["ephemeral"] = {"provider": LUKS2, "keys": keys}
            return [new_strategic_merge_patch({"machine": {"systemDiskEncryption": legacy}})]

        patches: List[Patch] = []
        for label, enabled in ((STATE_PARTITION_LABEL, qemu.encrypt_state_partition),
                               (EPHEMERAL_PARTITION_LABEL, qemu.encrypt_ephemeral_partition)):
            if not enabled:
                continue
            spec = encryption_spec(keys, lock_to_state=label != STATE_PARTITION_LABEL)
            patches.append(new_strategic_merge_patch(volume_config(label, spec)))
        return patches

    def modify_cluster_request(self) -> None:
        qemu = self.qemu
        network = self.request.network

        nameservers = parse_nameservers(qemu.nameservers)
        no_masquerade = parse_no_masquerade_cidrs(qemu.network_no_masquerade_cidrs)

        validate_network_chaos(qemu)

        network.cni = CNIConfig(
            bin_path=list(qemu.cni_bin_path),
            conf_dir=qemu.cni_conf_dir,
            cache_dir=qemu.cni_cache_dir,
            bundle_url=qemu.cni_bundle_url,
        )
        network.nameservers = nameservers
        network.no_masquerade_cidrs = no_masquerade
        network.dhcp_skip_hostname = qemu.dhcp_skip_hostname
        network.network_chaos = qemu.network_chaos
        network.jitter = qemu.jitter
        network.latency = qemu.latency
        network.packet_loss = qemu.packet_loss
        network.packet_reorder = qemu.packet_reorder
        network.packet_corrupt = qemu.packet_corrupt
        network.bandwidth = qemu.bandwidth

        self.request.boot_assets = BootAssets(
            kernel_path=qemu.node_vmlinuz_path,
            initramfs_path=qemu.node_initramfs_path,
            iso_path=qemu.node_iso_path,
            usb_path=qemu.node_usb_path,
            uki_path=qemu.node_uki_path,
            disk_image_path=qemu.node_disk_image_path,
            ipxe_boot_script=qemu.node_ipxe_boot_script,
        )

    def modify_nodes(self) -> None:
        qemu = self.qemu
        method = parse_injection_method(qemu.config_injection_method)

        extra_kernel_args: Optional[Cmdline] = None
        if qemu.extra_boot_kernel_args or self.agent.is_enabled():
            extra_kernel_args = Cmdline(qemu.extra_boot_kernel_args)

        self.siderolink.set_kernel_args(extra_kernel_args, self.agent.is_tunnel())

        for node in self.request.nodes:
            self.siderolink.define_ipv6(node.uuid)
            node.config_injection_method = method
            node.quirks = Quirks(self.maker.talos_version)
            node.skip_injecting_config = self.common.skip_injecting_config
            node.bad_rtc = qemu.bad_rtc
            node.extra_kernel_args = extra_kernel_args

        self.request.siderolink_request = self.siderolink.siderolink_request()

    def apply(self) -> None:
        self.init_extra()
        self.add_gen_options()
        self.add_provision_options()
        self.add_bundle_options()
        self.modify_cluster_request()
        self.modify_nodes()


def debug_shell_hints(cluster: Cluster, state_dir: str) -> List[str]:
    directory = cluster_dir(state_dir, cluster.name)
    return [
        f"socat - UNIX-CONNECT:{directory / (node.name + '.serial')}"
        for node in cluster.info.nodes
    ]


def create_qemu_cluster(common: CommonOptions, qemu: QemuOptions, provider: Provider) -> Cluster:
    """
    Create a cluster of virtual machines.

    Args:
        common: Common create options
        qemu: Emulator provider options
        provider: The emulator provider

    Returns:
        The created cluster

    Raises:
        ChaosFlagsWithoutMasterError: If chaos parameters are set without --with-network-chaos
        ConfigError: If an option value is invalid
    """
    maker = ClusterMaker(common, provider, common.talos_version or talos_version_from_image(qemu.node_install_image))

    _QemuAddendum(maker, common, qemu, provider).apply()

    request = maker.partial_request()

    click.echo("validating CIDR and reserving IPs", err=True)
    request.boot_assets = download_boot_assets(request.boot_assets)

    cluster = maker.create_cluster(request)

    if qemu.debug_shell_enabled:
        click.echo("You can now connect to debug shell on any node using these commands:")
        for line in debug_shell_hints(cluster, common.state_dir):
            click.echo(line)
        return cluster

    maker.post_create()
    return cluster
