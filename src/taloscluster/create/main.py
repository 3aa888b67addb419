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
Create local cluster command.

``cluster create docker`` runs every node as a privileged container,
``cluster create qemu`` runs every node as a virtual machine. Both accept the
common options; each adds the options of its provider. Once the provider has
created the nodes, the cluster is bootstrapped, waited for and its kubeconfig
merged unless told otherwise.
"""

import sys
from typing import Callable, Dict, Iterable, List

import click

from ..exceptions import TalosClusterError, UsageError
from ..makers import create_docker_cluster, create_qemu_cluster
from ..models import (
    DEFAULT_CNI_BUNDLE_URL,
    DEFAULT_CONTROL_PLANE_PORT,
    DEFAULT_INSTALLER_IMAGE,
    DEFAULT_KUBEPRISM_PORT,
    DEFAULT_KUBERNETES_VERSION,
    DEFAULT_NAMESERVERS,
    DEFAULT_NODE_IMAGE,
    CommonOptions,
    DockerOptions,
    QemuOptions,
)
from ..providers import factory
from ..providers.base import host_arch
from ..utils import parse_duration, talos_directory


class DurationType(click.ParamType):
    """Duration such as ``20m`` or ``150ms``, converted to seconds."""
    name = "duration"

    def convert(self, value, param, ctx):
        if isinstance(value, (int, float)):
            return float(value)
        try:
            return parse_duration(value)
        except ValueError as e:
            self.fail(str(e), param, ctx)


DURATION = DurationType()


def split_values(values: Iterable[str]) -> List[str]:
    """Flatten repeated and comma-separated option values."""
    result = []
    for value in values or ():
        result.extend(v.strip() for v in value.split(",") if v.strip())
    return result


def _cni_dir(name: str) -> str:
    return str(talos_directory() / "cni" / name)


COMMON_OPTIONS = [
    click.option('--talosconfig', default='', help='Path to the talosconfig file to merge the cluster config into'),
    click.option('--workers', type=int, default=1, show_default=True, help='The number of workers to create'),
    click.option('--controlplanes', type=int, default=1, show_default=True,
                 help='The number of controlplanes to create'),
    click.option('--cpus', 'controlplane_cpus', default='2.0', show_default=True,
                 help='The share of CPUs as fraction (each control plane/VM)'),
    click.option('--cpus-workers', 'workers_cpus', default='2.0', show_default=True,
                 help='The share of CPUs as fraction (each worker/VM)'),
    click.option('--memory', 'controlplane_memory', type=int, default=2048, show_default=True,
                 help='The limit on memory usage in MB (each control plane/VM)'),
    click.option('--memory-workers', 'workers_memory', type=int, default=2048, show_default=True,
                 help='The limit on memory usage in MB (each worker/VM)'),
    click.option('--cidr', 'network_cidr', default='10.5.0.0/24', show_default=True,
                 help='CIDR of the cluster network (IPv4, ULA network for IPv6 is derived in automated way)'),
    click.option('--mtu', 'network_mtu', type=int, default=1500, show_default=True,
                 help='MTU of the cluster network'),
    click.option('--ipv4/--no-ipv4', 'network_ipv4', default=True, show_default=True,
                 help='Enable IPv4 network in the cluster'),
    click.option('--ipv6/--no-ipv6', 'network_ipv6', default=False, show_default=True,
                 help='Enable IPv6 network in the cluster'),
    click.option('--dns-domain', default='cluster.local', show_default=True,
                 help='The dns domain to use for cluster'),
    click.option('--kubernetes-version', default=DEFAULT_KUBERNETES_VERSION, show_default=True,
                 help='Desired kubernetes version to run'),
    click.option('--talos-version', default='', help='The desired Talos version to generate config for'),
    click.option('--control-plane-port', type=int, default=DEFAULT_CONTROL_PLANE_PORT, show_default=True,
                 help='Control plane port (load balancer and local API port)'),
    click.option('--kubeprism-port', type=int, default=DEFAULT_KUBEPRISM_PORT, show_default=True,
                 help='KubePrism port (set to 0 to disable)'),
    click.option('--wait/--no-wait', 'cluster_wait', default=True, show_default=True,
                 help='Wait for the cluster to be ready before returning'),
    click.option('--wait-timeout', 'cluster_wait_timeout', type=DURATION, default='20m', show_default=True,
                 help='Timeout to wait for the cluster to be ready'),
    click.option('--endpoint', 'force_endpoint', default='', help='Use endpoint instead of provider defaults'),
    click.option('--init-node-as-endpoint', 'force_init_node_as_endpoint', is_flag=True,
                 help='Use init node as endpoint instead of any load balancer endpoint'),
    click.option('--registry-mirror', 'registry_mirrors', multiple=True,
                 help='List of registry mirrors to use in format: <registry host>=<mirror URL>'),
    click.option('--registry-insecure-skip-verify', 'registry_insecure', multiple=True,
                 help='List of registry hostnames to skip TLS verification for'),
    click.option('--with-apply-config', 'apply_config_enabled', is_flag=True,
                 help='Enable apply config when the VM is starting in maintenance mode'),
    click.option('--with-debug', 'config_debug', is_flag=True,
                 help='Enable debug in Talos config to send service logs to the console'),
    click.option('--with-init-node', is_flag=True, help='Create the cluster with an init node'),
    click.option('--input-dir', default='', help='Location of pre-generated config files'),
    click.option('--custom-cni-url', default='', help='Install custom CNI from the URL'),
    click.option('--skip-kubeconfig', is_flag=True, help='Skip merging kubeconfig from the created cluster'),
    click.option('--skip-injecting-config', is_flag=True,
                 help='Skip injecting config from embedded metadata server, write config files to current directory'),
    click.option('--with-cluster-discovery/--without-cluster-discovery', 'enable_cluster_discovery',
                 default=True, show_default=True, help='Enable cluster discovery'),
    click.option('--with-kubespan', 'enable_kubespan', is_flag=True, help='Enable KubeSpan system'),
    click.option('--config-patch', multiple=True, help='Patch generated machineconfigs (applied to all node types)'),
    click.option('--config-patch-control-plane', multiple=True,
                 help='Patch generated machineconfigs (applied to init and controlplane types)'),
    click.option('--config-patch-worker', multiple=True,
                 help='Patch generated machineconfigs (applied to worker type)'),
    click.option('--skip-k8s-node-readiness-check', is_flag=True,
                 help='Skip k8s node readiness checks'),
    click.option('--with-json-logs', is_flag=True, help='Enable JSON logs receiver and configure Talos to send logs there'),
    click.option('--wireguard-cidr', default='', help='CIDR of the wireguard network'),
    click.option('--with-uuid-hostnames', is_flag=True, help='Use machine UUIDs as default hostnames'),
    click.option('--crashdump', 'crashdump_on_failure', is_flag=True,
                 help='Print debug crashdump to stderr when cluster startup fails'),
]


def common_options(f: Callable) -> Callable:
    for option in reversed(COMMON_OPTIONS):
        f = option(f)
    return f


def common_from_kwargs(ctx, kwargs: Dict) -> CommonOptions:
    """Pop the common options out of kwargs into a CommonOptions."""
    fields = {}
    for name in CommonOptions.__dataclass_fields__:
        if name in kwargs:
            value = kwargs.pop(name)
            fields[name] = list(value) if isinstance(value, tuple) else value

    return CommonOptions(cluster_name=ctx.obj['name'], state_dir=ctx.obj['state'], **fields)


def _execute(ctx, provisioner: str, fn: Callable) -> None:
    debug = ctx.obj.get('debug', False)

    try:
        provider = factory(provisioner)
        with provider:
            fn(provider)

    except UsageError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(2)
    except TalosClusterError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    except KeyboardInterrupt:
        click.echo("\nOperation cancelled", err=True)
        sys.exit(130)
    except Exception as e:
        click.echo(f"Unexpected error: {e}", err=True)
        if debug:
            import traceback
            traceback.print_exc()
        sys.exit(1)


@click.group(name='create')
def create():
    """Create a local Talos cluster."""


@create.command(name='docker')
@common_options
@click.option('--docker-host-ip', 'host_ip', default='0.0.0.0', show_default=True,
              help='Host IP to forward exposed ports to')
@click.option('--docker-disable-ipv6', 'disable_ipv6', is_flag=True, help='Skip enabling IPv6 in containers')
@click.option('--image', 'node_image', default=DEFAULT_NODE_IMAGE, show_default=True,
              help='The image to use')
@click.option('--exposed-ports', '-p', 'ports', default='',
              help='Comma-separated list of ports/protocols to expose on init node, e.g. 8080:80/tcp')
@click.option('--mount', 'mounts', multiple=True,
              help='Attach a mount to the container (docker --mount syntax)')
@click.pass_context
def docker(ctx, **kwargs):
    """
    Create a local cluster of Talos containers.

    Examples:

        taloscluster cluster create docker
        taloscluster cluster create docker --workers 2 --exposed-ports 8080:80/tcp
        taloscluster cluster --name demo create docker --with-kubespan
    """
    common = common_from_kwargs(ctx, kwargs)
    options = DockerOptions(
        host_ip=kwargs['host_ip'],
        disable_ipv6=kwargs['disable_ipv6'],
        node_image=kwargs['node_image'],
        ports=kwargs['ports'],
        mounts=list(kwargs['mounts']),
    )

    _execute(ctx, 'docker', lambda provider: create_docker_cluster(common, options, provider))


@create.command(name='qemu')
@common_options
@click.option('--install-image', 'node_install_image', default=DEFAULT_INSTALLER_IMAGE, show_default=True,
              help='The installer image to use')
@click.option('--vmlinuz-path', 'node_vmlinuz_path', default='', help='The compressed kernel image to use')
@click.option('--initrd-path', 'node_initramfs_path', default='', help='Initramfs image to use')
@click.option('--iso-path', 'node_iso_path', default='', help='The ISO to boot from')
@click.option('--usb-path', 'node_usb_path', default='', help='The USB stick image to boot from')
@click.option('--uki-path', 'node_uki_path', default='', help='The UKI image to boot from')
@click.option('--disk-image-path', 'node_disk_image_path', default='',
              help='Disk image to use as the system disk')
@click.option('--ipxe-boot-script', 'node_ipxe_boot_script', default='',
              help='iPXE boot script (URL) to use')
@click.option('--with-bootloader/--without-bootloader', 'bootloader_enabled', default=True, show_default=True,
              help='Enable bootloader to load kernel and initramfs from disk image after install')
@click.option('--with-uefi/--without-uefi', 'uefi_enabled', default=True, show_default=True,
              help='Enable UEFI on x86_64 architecture')
@click.option('--with-tpm1_2', 'tpm1_2_enabled', is_flag=True, help='Enable TPM 1.2 emulation support using swtpm')
@click.option('--with-tpm2', 'tpm2_enabled', is_flag=True, help='Enable TPM 2.0 emulation support using swtpm')
@click.option('--with-debug-shell', 'debug_shell_enabled', is_flag=True,
              help='Drop talos into a maintenance shell on boot')
@click.option('--with-iommu', is_flag=True, help='Enable IOMMU support')
@click.option('--extra-uefi-search-paths', multiple=True, help='Additional search paths for UEFI firmware')
@click.option('--no-masquerade-cidrs', 'network_no_masquerade_cidrs', multiple=True,
              help='List of CIDRs to exclude from NAT')
@click.option('--nameservers', multiple=True, help='List of nameservers to use')
@click.option('--disk', 'cluster_disk_size', type=int, default=6144, show_default=True,
              help='Default limit on disk size in MB (each VM)')
@click.option('--disk-block-size', type=int, default=512, show_default=True,
              help='Disk block size')
@click.option('--disk-preallocate/--no-disk-preallocate', 'cluster_disk_preallocate', default=True,
              show_default=True, help='Whether disk space should be preallocated')
@click.option('--user-volumes', 'cluster_user_volumes', multiple=True,
              help='List of disks to create for each VM in format: <name1>:<size1>[:<name2>:<size2>...]')
@click.option('--extra-disks', type=int, default=0, show_default=True,
              help='Number of extra disks to create for each worker VM')
@click.option('--extra-disks-size', 'extra_disk_size', type=int, default=5 * 1024, show_default=True,
              help='Default limit on disk size in MB (each VM)')
@click.option('--extra-disks-drivers', multiple=True,
              help='Driver for each extra disk (virtio, ide, ahci, scsi, nvme, megaraid)')
@click.option('--arch', 'target_arch', default=host_arch, show_default='host architecture',
              help='Cluster architecture')
@click.option('--cni-bin-path', multiple=True, help='Search path for CNI binaries')
@click.option('--cni-conf-dir', default=lambda: _cni_dir('conf.d'), show_default='~/.talos/cni/conf.d',
              help='CNI config directory path')
@click.option('--cni-cache-dir', default=lambda: _cni_dir('cache'), show_default='~/.talos/cni/cache',
              help='CNI cache directory path')
@click.option('--cni-bundle-url', default=DEFAULT_CNI_BUNDLE_URL, show_default=True,
              help='URL to download CNI bundle from')
@click.option('--encrypt-state', 'encrypt_state_partition', is_flag=True,
              help='Enable state partition encryption')
@click.option('--encrypt-ephemeral', 'encrypt_ephemeral_partition', is_flag=True,
              help='Enable ephemeral partition encryption')
@click.option('--encrypt-user-volumes', is_flag=True, help='Enable user volumes encryption')
@click.option('--disk-encryption-key-types', multiple=True,
              help='Encryption key types to use for disk encryption (uuid, kms, tpm)')
@click.option('--use-vip', is_flag=True, help='Use a virtual IP for the controlplane endpoint instead of the loadbalancer')
@click.option('--bad-rtc', is_flag=True, help='Launch VM with bad RTC state')
@click.option('--extra-boot-kernel-args', default='', help='Add extra kernel args to the initial boot from vmlinuz and initramfs')
@click.option('--disable-dhcp-hostname', 'dhcp_skip_hostname', is_flag=True,
              help='Skip announcing hostname via DHCP')
@click.option('--with-network-chaos', 'network_chaos', is_flag=True,
              help='Enable to use network chaos parameters')
@click.option('--with-network-jitter', 'jitter', type=DURATION, default='0', help='Specify jitter on the bridge interface')
@click.option('--with-network-latency', 'latency', type=DURATION, default='0',
              help='Specify latency on the bridge interface')
@click.option('--with-network-packet-loss', 'packet_loss', type=float, default=0.0,
              help='Specify percent of packet loss on the bridge interface. e.g. 0.50 = 50%')
@click.option('--with-network-packet-reorder', 'packet_reorder', type=float, default=0.0,
              help='Specify percent of reordered packets on the bridge interface')
@click.option('--with-network-packet-corrupt', 'packet_corrupt', type=float, default=0.0,
              help='Specify percent of corrupt packets on the bridge interface')
@click.option('--with-network-bandwidth', 'bandwidth', type=int, default=0,
              help='Specify bandwidth restriction (in kbps) on the bridge interface')
@click.option('--with-firewall', default='', help='Inject firewall rules into the cluster, value is default policy - accept/block')
@click.option('--with-siderolink', 'siderolink_agent', default='',
              help="Enables the use of siderolink agent as configuration apply mechanism; "
                   "'true', 'wireguard', 'tunnel', add '+tls' to enable TLS")
@click.option('--config-injection-method', default='',
              help='A method to inject machine config: default is HTTP server, \'metal-iso\' to mount an ISO')
@click.pass_context
def qemu(ctx, **kwargs):
    """
    Create a local cluster of Talos virtual machines.

    Examples:

        taloscluster cluster --provisioner qemu create qemu
        taloscluster cluster create qemu --controlplanes 3 --use-vip
        taloscluster cluster create qemu --encrypt-state --disk-encryption-key-types uuid,tpm --with-tpm2
    """
    common = common_from_kwargs(ctx, kwargs)

    options = QemuOptions()
    for name in QemuOptions.__dataclass_fields__:
        if name in kwargs:
            value = kwargs[name]
            setattr(options, name, list(value) if isinstance(value, tuple) else value)

    options.extra_uefi_search_paths = split_values(kwargs['extra_uefi_search_paths'])
    options.network_no_masquerade_cidrs = split_values(kwargs['network_no_masquerade_cidrs'])
    options.nameservers = split_values(kwargs['nameservers']) or list(DEFAULT_NAMESERVERS)
    options.extra_disks_drivers = split_values(kwargs['extra_disks_drivers'])
    options.cni_bin_path = split_values(kwargs['cni_bin_path']) or [_cni_dir('bin')]
    options.disk_encryption_key_types = split_values(kwargs['disk_encryption_key_types']) or ['uuid']

    _execute(ctx, 'qemu', lambda provider: create_qemu_cluster(common, options, provider))
