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
Emulator provider driven through qemu and a few host networking tools.

Layout of a cluster directory::

    <state>/<cluster>/
        state.yaml
        http/<node>.yaml          configs served to nodes over HTTP
        <node>-<i>.disk           raw disk images
        <node>.serial             serial console socket
        <node>.log                serial console log
        <node>.pid                qemu pid

Nodes sit on a host bridge with the gateway address. dnsmasq hands out the
planned addresses by MAC, a python HTTP server serves the machine configs
and socat forwards the load balancer ports to the first control plane.
Creating the bridge and taps requires root.
"""

import hashlib
import logging
import math
import os
import shutil
import signal
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, IO, List, Optional, Tuple

from ..config.contract import VersionContract
from ..config.generate import (
    GenOption,
    InterfaceSelector,
    with_install_disk,
    with_network_interface_dhcp,
    with_network_interface_dhcpv4,
    with_network_interface_dhcpv6,
    with_network_options,
)
from ..exceptions import ProviderCreateError, ProviderError
from ..models import (
    BootAssets,
    ClusterInfo,
    ClusterRequest,
    ConfigInjectionMethod,
    Disk,
    NetworkInfo,
    NetworkRequest,
    NodeInfo,
    NodeRequest,
)
from ..network import GATEWAY_OFFSET, join_host_port, nth_ip_in_network, split_host_port
from ..siderolink import get_dynamic_port
from .base import (
    Cluster,
    Provider,
    ProvisionOption,
    ProvisionOptions,
    check_tool_available,
    host_arch,
    resolve,
    run_tool,
)
from .state import cluster_dir, load_state, save_state

logger = logging.getLogger(__name__)

QEMU = "qemu"

MIB = 1024 * 1024

INSTALL_DISK = "/dev/vda"

USER_DISK_NAME = "/dev/disk/by-id/ata-QEMU_HARDDISK_QM%05d"

FIRST_INTERFACE = {"busPath": "0*"}

AHCI_PORTS = 6

BAD_RTC_BASE = "2011-11-11T11:11:11"

UEFI_SEARCH_PATHS = [
    "/usr/share/ovmf",
    "/usr/share/OVMF",
    "/usr/share/qemu",
    "/usr/share/ovmf/x64",
    "/usr/share/edk2/ovmf",
    "/usr/share/edk2/aarch64",
    "/usr/share/AAVMF",
    "/usr/share/qemu-efi-aarch64",
]


@dataclass(frozen=True)
class Arch:
    """Per-architecture qemu settings."""
    binary: str
    machine: str
    console: str
    firmware_code: Tuple[str, ...]
    firmware_vars: Tuple[str, ...]
    requires_uefi: bool = False


ARCHES = {
    "amd64": Arch(
        binary="qemu-system-x86_64",
        machine="q35",
        console="ttyS0",
        firmware_code=("OVMF_CODE_4M.fd", "OVMF_CODE.fd"),
        firmware_vars=("OVMF_VARS_4M.fd", "OVMF_VARS.fd"),
    ),
    "arm64": Arch(
        binary="qemu-system-aarch64",
        machine="virt",
        console="ttyAMA0",
        firmware_code=("AAVMF_CODE.fd", "QEMU_EFI.fd"),
        firmware_vars=("AAVMF_VARS.fd", "QEMU_VARS.fd"),
        requires_uefi=True,
    ),
}


def get_arch(name: str) -> Arch:
    try:
        return ARCHES[name]
    except KeyError:
        raise ProviderCreateError(f"unsupported architecture: {name}") from None


def find_firmware(names: Tuple[str, ...], extra_paths: List[str]) -> Optional[Path]:
    """Return the first firmware file found in the search paths."""
    for directory in list(extra_paths) + UEFI_SEARCH_PATHS:
        for name in names:
            candidate = Path(directory) / name
            if candidate.is_file():
                return candidate
    return None


def _short_hash(value: str, length: int = 6) -> str:
    return hashlib.sha256(value.encode()).hexdigest()[:length]


def bridge_name(cluster_name: str) -> str:
    return f"talos{_short_hash(cluster_name, 8)}"


def tap_name(cluster_name: str, index: int) -> str:
    return f"tap{_short_hash(cluster_name)}{index}"


def mac_address(cluster_name: str, node_name: str) -> str:
    digest = hashlib.sha256(f"{cluster_name}/{node_name}".encode()).digest()
    return "52:54:00:{:02x}:{:02x}:{:02x}".format(digest[0], digest[1], digest[2])


def _ip(*args: str, error=ProviderError) -> str:
    return run_tool(["ip", *args], error=error)


def _read_pid(pidfile: Path) -> Optional[int]:
    try:
        return int(pidfile.read_text().strip())
    except (OSError, ValueError):
        return None


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def _kill(pidfile: Path) -> None:
    pid = _read_pid(pidfile)
    if pid is None:
        return
    try:
        os.kill(pid, signal.SIGTERM)
    except ProcessLookupError:
        pass
    logger.debug("stopped pid %d (%s)", pid, pidfile.name)


@dataclass
class Helper:
    """
    A background process the cluster depends on.

    Detached helpers are spawned here and their pid recorded by us; the
    others daemonize themselves and write their own pid file.
    """
    name: str
    argv: List[str]
    pidfile: str
    detached: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "argv": list(self.argv), "pidfile": self.pidfile,
                "detached": self.detached}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Helper":
        return cls(data["name"], list(data["argv"]), data["pidfile"], data.get("detached", False))

    def running(self) -> bool:
        pid = _read_pid(Path(self.pidfile))
        return pid is not None and _pid_alive(pid)

    def launch(self, log_dir: Path, error=ProviderError) -> None:
        logger.info("starting %s", self.name)
        if not self.detached:
            run_tool(self.argv, error=error)
            return

        log_path = log_dir / f"{self.name}.log"
        try:
            with open(log_path, "a") as log:
                proc = subprocess.Popen(
                    self.argv,
                    stdin=subprocess.DEVNULL,
                    stdout=log,
                    stderr=subprocess.STDOUT,
                    start_new_session=True,
                )
        except OSError as e:
            raise error(f"failed to start {self.name}: {e}") from e
        Path(self.pidfile).write_text(f"{proc.pid}\n")


class QemuProvider(Provider):
    """Talos nodes as qemu virtual machines on a host bridge."""

    name = QEMU

    def create(self, request: ClusterRequest, *opts: ProvisionOption) -> Cluster:
        """
        Set up the bridge and helpers, then boot one VM per node.

        Args:
            request: Fully populated cluster request
            *opts: Provisioning options

        Returns:
            The provisioned cluster

        Raises:
            ProviderCreateError: If a host tool is missing or fails
        """
        options = resolve(*opts)
        arch = get_arch(options.target_arch)

        for tool in (arch.binary, "qemu-img", "ip", "dnsmasq"):
            if not check_tool_available(tool):
                raise ProviderCreateError(f"{tool} not installed")

        directory = cluster_dir(request.state_directory, request.name)
        http_dir = directory / "http"
        http_dir.mkdir(parents=True, exist_ok=True)

        bridge = bridge_name(request.name)
        extra: Dict[str, Any] = {
            "bridge": bridge,
            "arch": options.target_arch,
            "taps": {},
            "masquerade": [],
            "helpers": [],
            "nodes": {},
        }

        info = ClusterInfo(
            cluster_name=request.name,
            network=NetworkInfo(
                name=request.network.name,
                cidrs=list(request.network.cidrs),
                gateway_addrs=list(request.network.gateway_addrs),
                mtu=request.network.mtu,
                nameservers=list(request.network.nameservers),
            ),
            nodes=[self._node_info(node) for node in request.nodes],
            kubernetes_endpoint=options.kubernetes_endpoint,
            extra=extra,
        )
        # persisted early so that destroy can clean up a partial create
        save_state(directory, QEMU, info)

        extra["masquerade"] = self._create_bridge(bridge, request.network)
        save_state(directory, QEMU, info)

        config_port = get_dynamic_port("tcp")
        gateway = str(request.network.gateway_addrs[0])
        config_url = f"http://{join_host_port(gateway, config_port)}"

        helpers = self._helpers(request, options, directory, bridge, config_url, config_port)
        for helper in helpers:
            extra["helpers"].append(helper.to_dict())
            save_state(directory, QEMU, info)
            helper.launch(directory, error=ProviderCreateError)

        if request.siderolink_request is not None:
            logger.warning("SideroLink endpoints are not served by the qemu provider; "
                           "nodes must reach %s themselves", request.siderolink_request.wireguard_endpoint)
        if options.kms_endpoint:
            logger.warning("no KMS server is started on %s; KMS-sealed volumes will not unlock",
                           options.kms_endpoint)

        for index, node in enumerate(request.nodes):
            tap = tap_name(request.name, index)
            extra["taps"][node.name] = tap
            save_state(directory, QEMU, info)

            self._create_tap(tap, bridge, request.network)
            node_helpers = self._launch_node(request, node, options, arch, directory, http_dir,
                                             tap, config_url)
            extra["nodes"][node.name] = [h.to_dict() for h in node_helpers]
            save_state(directory, QEMU, info)

        return Cluster(provisioner=QEMU, info=info, state_dir=directory)

    def _node_info(self, node: NodeRequest) -> NodeInfo:
        return NodeInfo(
            name=node.name,
            type=node.type,
            ips=list(node.ips),
            nano_cpus=node.nano_cpus,
            memory=node.memory,
            disk_size=node.disks[0].size if node.disks else 0,
            uuid=node.uuid,
        )

    def _create_bridge(self, bridge: str, network: NetworkRequest) -> List[List[str]]:
        """Create the bridge with the gateway addresses and NAT rules."""
        logger.info("creating bridge %s", bridge)
        _ip("link", "add", "name", bridge, "type", "bridge", error=ProviderCreateError)
        _ip("link", "set", bridge, "mtu", str(network.mtu), error=ProviderCreateError)
        for cidr, gateway in zip(network.cidrs, network.gateway_addrs):
            _ip("addr", "add", f"{gateway}/{cidr.prefixlen}", "dev", bridge, error=ProviderCreateError)
        _ip("link", "set", bridge, "up", error=ProviderCreateError)

        rules: List[List[str]] = []
        for cidr in network.cidrs:
            if cidr.version != 4:
                continue
            if not check_tool_available("iptables"):
                logger.warning("iptables not installed, nodes will have no outbound NAT")
                break
            for excluded in network.no_masquerade_cidrs:
                rules.append(["POSTROUTING", "-s", str(cidr), "-d", str(excluded), "-j", "RETURN"])
            rules.append(["POSTROUTING", "-s", str(cidr), "!", "-d", str(cidr), "-j", "MASQUERADE"])

        for rule in rules:
            run_tool(["iptables", "-t", "nat", "-A", *rule], error=ProviderCreateError)

        return rules

    def _create_tap(self, tap: str, bridge: str, network: NetworkRequest) -> None:
        _ip("tuntap", "add", "dev", tap, "mode", "tap", error=ProviderCreateError)
        _ip("link", "set", tap, "master", bridge, error=ProviderCreateError)
        _ip("link", "set", tap, "mtu", str(network.mtu), error=ProviderCreateError)
        _ip("link", "set", tap, "up", error=ProviderCreateError)

        if network.network_chaos:
            run_tool(["tc", "qdisc", "add", "dev", tap, "root", *netem_args(network)],
                     error=ProviderCreateError)

    def _helpers(self, request: ClusterRequest, options: ProvisionOptions, directory: Path,
                 bridge: str, config_url: str, config_port: int) -> List[Helper]:
        network = request.network
        gateway = str(network.gateway_addrs[0])
        helpers = [
            Helper(
                name="dnsmasq",
                argv=dnsmasq_args(request, bridge, directory, config_url),
                pidfile=str(directory / "dnsmasq.pid"),
            ),
            Helper(
                name="config-server",
                argv=[sys.executable, "-m", "http.server", str(config_port),
                      "--bind", gateway, "--directory", str(directory / "http")],
                pidfile=str(directory / "config-server.pid"),
                detached=True,
            ),
        ]

        forwards = []
        controlplanes = request.control_plane_nodes()
        if network.load_balancer_ports and controlplanes:
            upstream = str(controlplanes[0].ips[0])
            for port in network.load_balancer_ports:
                forwards.append(Helper(
                    name=f"lb-{port}",
                    argv=["socat", f"TCP-LISTEN:{port},bind={gateway},fork,reuseaddr",
                          f"TCP:{join_host_port(upstream, port)}"],
                    pidfile=str(directory / f"lb-{port}.pid"),
                    detached=True,
                ))

        if options.json_logs_endpoint:
            host, port = split_host_port(options.json_logs_endpoint)
            forwards.append(Helper(
                name="json-logs",
                argv=["socat", "-u", f"TCP-LISTEN:{port},bind={host},fork,reuseaddr",
                      f"OPEN:{directory / 'json-logs.log'},creat,append"],
                pidfile=str(directory / "json-logs.pid"),
                detached=True,
            ))

        if forwards and not check_tool_available("socat"):
            raise ProviderCreateError("socat not installed")

        return helpers + forwards

    def _launch_node(self, request: ClusterRequest, node: NodeRequest, options: ProvisionOptions,
                     arch: Arch, directory: Path, http_dir: Path, tap: str,
                     config_url: str) -> List[Helper]:
        assets = request.boot_assets
        helpers: List[Helper] = []

        config_iso = None
        if node.config is not None and not node.skip_injecting_config:
            if node.config_injection_method == ConfigInjectionMethod.METAL_ISO:
                config_iso = make_config_iso(node, directory)
            else:
                (http_dir / f"{node.name}.yaml").write_bytes(node.config.bytes())

        disk_paths = create_disks(node, directory, assets.disk_image_path)

        firmware = None
        if options.uefi_enabled or arch.requires_uefi:
            firmware = prepare_firmware(arch, node, directory, options.extra_uefi_search_paths)

        tpm_socket = None
        if options.tpm2_enabled or options.tpm1_2_enabled:
            if not check_tool_available("swtpm"):
                raise ProviderCreateError("swtpm not installed")
            tpm_helper, tpm_socket = swtpm_helper(node, directory, options.tpm2_enabled)
            helpers.append(tpm_helper)
            tpm_helper.launch(directory, error=ProviderCreateError)

        argv = qemu_args(
            request=request,
            node=node,
            options=options,
            arch=arch,
            directory=directory,
            tap=tap,
            disk_paths=disk_paths,
            firmware=firmware,
            tpm_socket=tpm_socket,
            config_iso=config_iso,
            config_url=config_url,
        )

        vm = Helper(name=node.name, argv=argv, pidfile=str(directory / f"{node.name}.pid"))
        helpers.append(vm)
        vm.launch(directory, error=ProviderCreateError)

        return helpers

    def reflect(self, cluster_name: str, state_dir: str) -> Cluster:
        directory = cluster_dir(state_dir, cluster_name)
        provisioner, info = load_state(directory)
        if provisioner != QEMU:
            raise ProviderError(f"cluster {cluster_name!r} was created by {provisioner!r}, not {QEMU!r}")
        return Cluster(provisioner=QEMU, info=info, state_dir=directory)

    def destroy(self, cluster: Cluster) -> None:
        """Stop VMs and helpers, remove taps, NAT rules and the bridge."""
        extra = cluster.info.extra

        for node in cluster.info.nodes:
            for data in reversed(extra.get("nodes", {}).get(node.name, [])):
                _kill(Path(Helper.from_dict(data).pidfile))

        for data in extra.get("helpers", []):
            _kill(Path(Helper.from_dict(data).pidfile))

        for tap in extra.get("taps", {}).values():
            self._delete_link(tap)

        for rule in extra.get("masquerade", []):
            try:
                run_tool(["iptables", "-t", "nat", "-D", *rule])
            except ProviderError as e:
                logger.warning("failed to remove NAT rule %s: %s", " ".join(rule), e)

        if extra.get("bridge"):
            self._delete_link(extra["bridge"])

        shutil.rmtree(cluster.state_dir, ignore_errors=True)

    def _delete_link(self, name: str) -> None:
        try:
            _ip("link", "del", name)
        except ProviderError as e:
            if "Cannot find device" not in str(e):
                raise

    def start(self, cluster: Cluster) -> None:
        """Relaunch helpers and VMs that are not running."""
        extra = cluster.info.extra
        bridge = extra.get("bridge", "")
        network = NetworkRequest(
            name=cluster.info.network.name,
            cidrs=cluster.info.network.cidrs,
            gateway_addrs=cluster.info.network.gateway_addrs,
            mtu=cluster.info.network.mtu,
        )

        if bridge and not self._link_exists(bridge):
            self._create_bridge(bridge, network)
        for tap in extra.get("taps", {}).values():
            if not self._link_exists(tap):
                self._create_tap(tap, bridge, network)

        for data in extra.get("helpers", []):
            helper = Helper.from_dict(data)
            if not helper.running():
                helper.launch(cluster.state_dir)

        for node in cluster.info.nodes:
            for data in extra.get("nodes", {}).get(node.name, []):
                helper = Helper.from_dict(data)
                if not helper.running():
                    helper.launch(cluster.state_dir)

    def _link_exists(self, name: str) -> bool:
        try:
            _ip("link", "show", name)
        except ProviderError:
            return False
        return True

    def crash_dump(self, cluster: Cluster, out: IO[str]) -> None:
        for node in cluster.info.nodes:
            out.write(f"--- {node.name} ---\n")
            log_path = cluster.state_dir / f"{node.name}.log"
            try:
                lines = log_path.read_text(errors="replace").splitlines()
            except OSError as e:
                out.write(f"error reading console log: {e}\n")
                continue
            out.write("\n".join(lines[-1000:]))
            out.write("\n")

    def gen_options(self, network: NetworkRequest,
                    contract: Optional[VersionContract] = None) -> List[GenOption]:
        has_ipv4 = any(c.version == 4 for c in network.cidrs)
        has_ipv6 = any(c.version == 6 for c in network.cidrs)
        iface = self.get_first_interface()

        return [
            with_install_disk(INSTALL_DISK),
            with_network_options(
                with_network_interface_dhcp(iface, True),
                with_network_interface_dhcpv4(iface, has_ipv4),
                with_network_interface_dhcpv6(iface, has_ipv6),
            ),
        ]

    def _gateway(self, network: NetworkRequest) -> str:
        cidr4 = next((c for c in network.cidrs if c.version == 4), network.cidrs[0])
        return str(nth_ip_in_network(cidr4, GATEWAY_OFFSET))

    def get_in_cluster_kubernetes_control_plane_endpoint(self, network: NetworkRequest, port: int) -> str:
        return f"https://{join_host_port(self._gateway(network), port)}"

    def get_external_kubernetes_control_plane_endpoint(self, network: NetworkRequest, port: int) -> str:
        return f"https://{join_host_port(self._gateway(network), port)}"

    def get_talos_api_endpoints(self, network: NetworkRequest) -> Optional[List[str]]:
        return None

    def get_first_interface(self) -> InterfaceSelector:
        return dict(FIRST_INTERFACE)

    def user_disk_name(self, index: int) -> str:
        return USER_DISK_NAME % index


def netem_args(network: NetworkRequest) -> List[str]:
    """tc netem arguments for the chaos parameters of a network."""
    args = ["netem"]
    if network.latency or network.jitter:
        args += ["delay", f"{network.latency * 1000:g}ms"]
        if network.jitter:
            args.append(f"{network.jitter * 1000:g}ms")
    if network.packet_loss:
        args += ["loss", f"{network.packet_loss * 100:g}%"]
    if network.packet_reorder:
        args += ["reorder", f"{network.packet_reorder * 100:g}%"]
    if network.packet_corrupt:
        args += ["corrupt", f"{network.packet_corrupt * 100:g}%"]
    if network.bandwidth:
        args += ["rate", f"{network.bandwidth}kbit"]
    return args


def dnsmasq_args(request: ClusterRequest, bridge: str, directory: Path, config_url: str) -> List[str]:
    """dnsmasq serving static DHCP leases for every node."""
    network = request.network
    args = [
        "dnsmasq",
        f"--interface={bridge}",
        "--bind-interfaces",
        "--except-interface=lo",
        "--port=0",
        f"--pid-file={directory / 'dnsmasq.pid'}",
        f"--dhcp-leasefile={directory / 'dnsmasq.leases'}",
        f"--dhcp-option=option:mtu,{network.mtu}",
    ]

    for cidr, gateway in zip(network.cidrs, network.gateway_addrs):
        if cidr.version == 4:
            args.append(f"--dhcp-range={cidr.network_address},static,{cidr.netmask}")
            args.append(f"--dhcp-option=option:router,{gateway}")
        else:
            args.append(f"--dhcp-range={cidr.network_address},static,{cidr.prefixlen}")

    ns4 = [str(ns) for ns in network.nameservers if ns.version == 4]
    ns6 = [f"[{ns}]" for ns in network.nameservers if ns.version == 6]
    if ns4:
        args.append(f"--dhcp-option=option:dns-server,{','.join(ns4)}")
    if ns6:
        args.append(f"--dhcp-option=option6:dns-server,{','.join(ns6)}")

    for node in request.nodes:
        fields = [mac_address(request.name, node.name)]
        for ip in node.ips:
            fields.append(str(ip) if ip.version == 4 else f"[{ip}]")
        if not network.dhcp_skip_hostname:
            fields.append(node.name)
        args.append(f"--dhcp-host={','.join(fields)}")

    script = request.boot_assets.ipxe_boot_script
    if script:
        if "://" not in script:
            shutil.copyfile(script, directory / "http" / "boot.ipxe")
            script = f"{config_url}/boot.ipxe"
        args += ["--dhcp-match=set:ipxe,175", f"--dhcp-boot=tag:ipxe,{script}"]

    return args


def make_config_iso(node: NodeRequest, directory: Path) -> Path:
    """Build the ``metal-iso`` volume carrying the node config."""
    if not check_tool_available("xorriso"):
        raise ProviderCreateError("xorriso not installed, required for metal-iso config injection")

    content = directory / f"{node.name}-config"
    content.mkdir(exist_ok=True)
    (content / "config.yaml").write_bytes(node.config.bytes())

    iso = directory / f"{node.name}-config.iso"
    run_tool(["xorriso", "-as", "mkisofs", "-V", "metal-iso", "-o", str(iso), str(content)],
             error=ProviderCreateError)
    return iso


def create_disks(node: NodeRequest, directory: Path, disk_image: str = "") -> List[Path]:
    """Create the raw disk images of a node; the first one may start from an image."""
    paths = []
    for i, disk in enumerate(node.disks):
        path = directory / f"{node.name}-{i}.disk"
        if i == 0 and disk_image:
            run_tool(["qemu-img", "convert", "-O", "raw", disk_image, str(path)],
                     error=ProviderCreateError)
            run_tool(["qemu-img", "resize", "-f", "raw", str(path), str(disk.size)],
                     error=ProviderCreateError)
        else:
            args = ["qemu-img", "create", "-f", "raw"]
            if not disk.skip_preallocate:
                args += ["-o", "preallocation=falloc"]
            run_tool(args + [str(path), str(disk.size)], error=ProviderCreateError)
        paths.append(path)
    return paths


def prepare_firmware(arch: Arch, node: NodeRequest, directory: Path,
                     extra_paths: List[str]) -> Tuple[Path, Path]:
    """Locate the UEFI code image and give the node its own vars copy."""
    code = find_firmware(arch.firmware_code, extra_paths)
    template = find_firmware(arch.firmware_vars, extra_paths)
    if code is None or template is None:
        raise ProviderCreateError(
            f"UEFI firmware not found, searched {', '.join(list(extra_paths) + UEFI_SEARCH_PATHS)}"
        )

    vars_path = directory / f"{node.name}-vars.fd"
    if not vars_path.exists():
        shutil.copyfile(template, vars_path)
    return code, vars_path


def swtpm_helper(node: NodeRequest, directory: Path, tpm2: bool) -> Tuple[Helper, Path]:
    state = directory / f"{node.name}-tpm"
    state.mkdir(exist_ok=True)
    socket_path = directory / f"{node.name}-swtpm.sock"
    pidfile = directory / f"{node.name}-swtpm.pid"

    argv = [
        "swtpm", "socket",
        "--tpmstate", f"dir={state}",
        "--ctrl", f"type=unixio,path={socket_path}",
        "--pid", f"file={pidfile}",
        "--daemon",
    ]
    if tpm2:
        argv.append("--tpm2")

    return Helper(name=f"{node.name}-swtpm", argv=argv, pidfile=str(pidfile)), socket_path


def kernel_cmdline(node: NodeRequest, options: ProvisionOptions, arch: Arch, config_url: str) -> str:
    """Kernel command line for direct kernel or UKI boot."""
    params = [
        f"console={arch.console}",
        "reboot=k",
        "panic=1",
        "talos.shutdown=halt",
        "talos.platform=metal",
        "init_on_alloc=1",
        "slab_nomerge",
        "pti=on",
        "printk.devkmsg=on",
    ]
    if options.debug_shell_enabled:
        params.append("talos.debugshell")
    if options.bootloader_enabled and node.quirks is not None and node.quirks.supports_halt_if_installed():
        params.append("talos.halt_if_installed=1")
    if (node.config is not None and not node.skip_injecting_config
            and node.config_injection_method == ConfigInjectionMethod.HTTP):
        params.append(f"talos.config={config_url}/{node.name}.yaml")
    if node.extra_kernel_args is not None and str(node.extra_kernel_args):
        params.append(str(node.extra_kernel_args))
    return " ".join(params)


def _disk_device(index: int, disk: Disk, drive_id: str, ahci_port: Optional[int]) -> List[str]:
    block = ""
    if disk.block_size:
        block = f",logical_block_size={disk.block_size},physical_block_size={disk.block_size}"

    if disk.driver == "virtio":
        return ["-device", f"virtio-blk-pci,drive={drive_id}{block}"]
    if disk.driver in ("ide", "ahci"):
        return ["-device", f"ide-hd,drive={drive_id},bus=ahci.{ahci_port},serial=QM{index:05d}{block}"]
    if disk.driver == "nvme":
        return ["-device", f"nvme,drive={drive_id},serial=QM{index:05d}{block}"]
    if disk.driver == "scsi":
        return ["-device", f"scsi-hd,drive={drive_id},bus=scsi.0{block}"]
    raise ProviderCreateError(f"unsupported disk driver {disk.driver!r}")


def qemu_args(request: ClusterRequest, node: NodeRequest, options: ProvisionOptions, arch: Arch,
              directory: Path, tap: str, disk_paths: List[Path],
              firmware: Optional[Tuple[Path, Path]], tpm_socket: Optional[Path],
              config_iso: Optional[Path], config_url: str) -> List[str]:
    """
    Build the qemu command line of a node.

    Boot source preference: iPXE script, ISO, USB image, UKI, kernel with
    initramfs, and finally the first disk.
    """
    assets: BootAssets = request.boot_assets
    kvm = os.path.exists("/dev/kvm") and options.target_arch == host_arch()

    machine = arch.machine
    if options.iommu_enabled:
        machine += ",kernel-irqchip=split" if arch.machine == "q35" else ",iommu=smmuv3"

    argv = [
        arch.binary,
        "-name", node.name,
        "-machine", machine,
        "-accel", "kvm" if kvm else "tcg",
        "-cpu", "host" if kvm else "max",
        "-m", f"{node.memory // MIB}M",
        "-smp", f"cpus={max(1, math.ceil(node.nano_cpus / 1e9))}",
        "-display", "none",
        "-monitor", "none",
        "-chardev",
        f"socket,id=console,path={directory / (node.name + '.serial')},server=on,wait=off,"
        f"logfile={directory / (node.name + '.log')}",
        "-serial", "chardev:console",
        "-netdev", f"tap,id=net0,ifname={tap},script=no,downscript=no",
        "-device", f"virtio-net-pci,netdev=net0,mac={mac_address(request.name, node.name)}",
        "-pidfile", str(directory / f"{node.name}.pid"),
        "-daemonize",
    ]

    if node.uuid is not None:
        argv += ["-uuid", str(node.uuid)]

    if node.bad_rtc:
        argv += ["-rtc", f"base={BAD_RTC_BASE}"]

    if options.iommu_enabled and arch.machine == "q35":
        argv += ["-device", "intel-iommu,intremap=on"]

    if firmware is not None:
        code, vars_path = firmware
        argv += [
            "-drive", f"if=pflash,format=raw,readonly=on,file={code}",
            "-drive", f"if=pflash,format=raw,file={vars_path}",
        ]

    if tpm_socket is not None:
        argv += [
            "-chardev", f"socket,id=chrtpm,path={tpm_socket}",
            "-tpmdev", "emulator,id=tpm0,chardev=chrtpm",
            "-device", f"{'tpm-tis' if arch.machine == 'q35' else 'tpm-tis-device'},tpmdev=tpm0",
        ]

    needs_ahci = (any(d.driver in ("ide", "ahci") for d in node.disks)
                  or config_iso is not None or bool(assets.iso_path))
    if needs_ahci:
        argv += ["-device", "ich9-ahci,id=ahci"]
    if any(d.driver == "scsi" for d in node.disks):
        argv += ["-device", "virtio-scsi-pci,id=scsi"]

    ahci_port = 0

    def next_port() -> int:
        nonlocal ahci_port
        if ahci_port >= AHCI_PORTS:
            raise ProviderCreateError(f"too many AHCI devices for node {node.name}")
        ahci_port += 1
        return ahci_port - 1

    for i, (disk, path) in enumerate(zip(node.disks, disk_paths)):
        drive_id = f"disk{i}"
        argv += ["-drive", f"format=raw,if=none,id={drive_id},file={path},cache=unsafe"]
        port = next_port() if disk.driver in ("ide", "ahci") else None
        argv += _disk_device(i, disk, drive_id, port)

    if config_iso is not None:
        argv += [
            "-drive", f"if=none,id=configiso,media=cdrom,readonly=on,file={config_iso}",
            "-device", f"ide-cd,drive=configiso,bus=ahci.{next_port()}",
        ]

    if assets.ipxe_boot_script:
        argv += ["-boot", "order=n"]
    elif assets.iso_path:
        argv += [
            "-drive", f"if=none,id=bootiso,media=cdrom,readonly=on,file={assets.iso_path}",
            "-device", f"ide-cd,drive=bootiso,bus=ahci.{next_port()},bootindex=0",
        ]
    elif assets.usb_path:
        argv += [
            "-drive", f"if=none,id=usb,format=raw,file={assets.usb_path}",
            "-device", "qemu-xhci",
            "-device", "usb-storage,drive=usb,bootindex=0",
        ]
    elif assets.uki_path:
        argv += ["-kernel", assets.uki_path,
                 "-append", kernel_cmdline(node, options, arch, config_url)]
    elif assets.kernel_path and assets.initramfs_path:
        argv += ["-kernel", assets.kernel_path, "-initrd", assets.initramfs_path,
                 "-append", kernel_cmdline(node, options, arch, config_url)]
    elif not assets.disk_image_path:
        raise ProviderCreateError(f"no boot assets provided for node {node.name}")

    return argv