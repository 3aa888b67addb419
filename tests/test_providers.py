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
Tests for cluster providers and persisted state.
"""

import io
import ipaddress
import subprocess
from unittest.mock import patch

import pytest

from taloscluster.config.generate import GenerateOptions, NetworkConfigOptions
from taloscluster.exceptions import ProviderCreateError, ProviderError
from taloscluster.models import (
    ClusterRequest, Cmdline, ConfigInjectionMethod, Disk, MachineType, NetworkRequest, NodeRequest
)
from taloscluster.providers import DockerProvider, QemuProvider, factory
from taloscluster.providers import qemu
from taloscluster.providers.base import (
    ProvisionOptions, resolve, run_tool, with_bootloader, with_debug_shell, with_docker_image
)
from taloscluster.providers.docker import _port_args
from taloscluster.providers.state import cluster_dir, load_state, save_state
from taloscluster.quirks import Quirks


def _network(**kwargs):
    return NetworkRequest(
        name="test-cluster",
        cidrs=[ipaddress.ip_network("10.5.0.0/24")],
        gateway_addrs=[ipaddress.ip_address("10.5.0.1")],
        mtu=1500,
        **kwargs,
    )


def _node(name="test-cluster-controlplane-1", **kwargs):
    return NodeRequest(
        name=name,
        type=kwargs.pop("type", MachineType.CONTROLPLANE),
        ips=[ipaddress.ip_address("10.5.0.2")],
        memory=2048 * 1024 * 1024,
        nano_cpus=2_000_000_000,
        **kwargs,
    )


def _apply(opts):
    gen = GenerateOptions()
    for opt in opts:
        opt(gen)
    net = NetworkConfigOptions()
    for opt in gen.network_config_options:
        opt(net)
    return gen, net


class TestFactory:
    """Test provider lookup."""

    def test_known(self):
        """Test that known provisioners are instantiated."""
        assert isinstance(factory("docker"), DockerProvider)
        assert isinstance(factory("qemu"), QemuProvider)

    def test_unknown(self):
        """Test that unknown provisioners are rejected."""
        with pytest.raises(ProviderError, match="unsupported provisioner 'firecracker'"):
            factory("firecracker")


class TestProvisionOptions:
    """Test provisioning option resolution."""

    def test_defaults(self):
        """Test the defaults without options."""
        options = resolve()

        assert options.bootloader_enabled
        assert options.docker_image == ""

    def test_options_apply_in_order(self):
        """Test that later options win."""
        options = resolve(with_bootloader(False), with_debug_shell(True),
                          with_docker_image("a"), with_docker_image("b"))

        assert not options.bootloader_enabled
        assert options.debug_shell_enabled
        assert options.docker_image == "b"


class TestRunTool:
    """Test running back-end tools."""

    @patch("subprocess.run")
    def test_stdout(self, mock_run):
        """Test that stdout is returned."""
        mock_run.return_value = subprocess.CompletedProcess(["docker"], 0, stdout="abc\n", stderr="")

        assert run_tool(["docker", "ps"]) == "abc\n"

    @patch("subprocess.run")
    def test_missing_tool(self, mock_run):
        """Test that a missing binary is reported."""
        mock_run.side_effect = FileNotFoundError()

        with pytest.raises(ProviderError, match="docker not installed"):
            run_tool(["docker", "ps"])

    @patch("subprocess.run")
    def test_failure(self, mock_run):
        """Test that a failing tool reports its stderr."""
        mock_run.side_effect = subprocess.CalledProcessError(1, ["docker"], stderr="no permission\n")

        with pytest.raises(ProviderCreateError, match="docker ps failed: no permission"):
            run_tool(["docker", "ps"], error=ProviderCreateError)


class TestState:
    """Test cluster state persistence."""

    def test_round_trip(self, tmp_path, sample_cluster):
        """Test that saved state reads back."""
        directory = cluster_dir(tmp_path, "test-cluster")

        save_state(directory, "docker", sample_cluster.info)
        provisioner, info = load_state(directory)

        assert provisioner == "docker"
        assert info == sample_cluster.info

    def test_missing(self, tmp_path):
        """Test that missing state is reported."""
        with pytest.raises(ProviderError, match="cluster state not found"):
            load_state(tmp_path / "nothing")

    def test_invalid(self, tmp_path):
        """Test that malformed state is reported."""
        (tmp_path / "state.yaml").write_text("provisioner: docker\n")

        with pytest.raises(ProviderError, match="invalid cluster state"):
            load_state(tmp_path)


class TestDockerProvider:
    """Test the docker provider."""

    def test_port_args(self):
        """Test port publishing flags."""
        assert _port_args("0.0.0.0", ["8080:80/tcp", "53/udp"]) == [
            "-p", "0.0.0.0:8080:80/tcp",
            "-p", "0.0.0.0:53:53/udp",
        ]
        assert _port_args("::1", ["443"]) == ["-p", "[::1]:443:443/tcp"]

    @patch("taloscluster.providers.docker.check_tool_available", return_value=False)
    def test_create_without_docker(self, mock_check, tmp_path):
        """Test that a missing docker binary fails creation."""
        request = ClusterRequest(name="test-cluster", network=_network(), state_directory=str(tmp_path))

        with pytest.raises(ProviderCreateError, match="docker not installed"):
            DockerProvider().create(request)

    @patch("taloscluster.providers.docker.run_tool")
    @patch("taloscluster.providers.docker.check_tool_available", return_value=True)
    def test_create(self, mock_check, mock_run, tmp_path):
        """Test network and container creation."""
        mock_run.return_value = "c0ffee\n"
        request = ClusterRequest(
            name="test-cluster",
            network=_network(load_balancer_ports=[6443]),
            nodes=[_node(), _node("test-cluster-worker-1", type=MachineType.WORKER)],
            state_directory=str(tmp_path),
        )

        cluster = DockerProvider().create(request, with_docker_image("ghcr.io/siderolabs/talos:v1.11.0"))

        calls = [c[0][0] for c in mock_run.call_args_list]
        assert calls[0][:3] == ["docker", "network", "create"]
        assert calls[0][-1] == "test-cluster"
        cp, worker = calls[1], calls[2]
        assert cp[-1] == "ghcr.io/siderolabs/talos:v1.11.0"
        assert "0.0.0.0:50000:50000/tcp" in cp
        assert "0.0.0.0:6443:6443/tcp" in cp
        assert "0.0.0.0:50000:50000/tcp" not in worker
        assert "10.5.0.2" in cp

        assert [n.id for n in cluster.info.nodes] == ["c0ffee", "c0ffee"]
        provisioner, info = load_state(cluster_dir(tmp_path, "test-cluster"))
        assert provisioner == "docker"
        assert info.extra == {"image": "ghcr.io/siderolabs/talos:v1.11.0"}

    @patch("taloscluster.providers.docker.run_tool")
    def test_destroy_ignores_missing(self, mock_run, sample_cluster):
        """Test that already removed containers do not fail destroy."""
        mock_run.side_effect = [
            ProviderError("docker rm failed: Error: No such container: test-cluster-controlplane-1"),
            "",
            ProviderError("docker network failed: network test-cluster not found"),
        ]

        DockerProvider().destroy(sample_cluster)

        assert mock_run.call_count == 3

    @patch("taloscluster.providers.docker.run_tool")
    def test_destroy_propagates(self, mock_run, sample_cluster):
        """Test that other failures surface."""
        mock_run.side_effect = ProviderError("docker rm failed: permission denied")

        with pytest.raises(ProviderError, match="permission denied"):
            DockerProvider().destroy(sample_cluster)

    @patch("taloscluster.providers.docker.run_tool")
    def test_crash_dump(self, mock_run, sample_cluster):
        """Test that logs of every node are dumped."""
        mock_run.side_effect = ["booting\n", ProviderError("docker logs failed")]
        out = io.StringIO()

        DockerProvider().crash_dump(sample_cluster, out)

        assert "--- test-cluster-controlplane-1 ---\nbooting\n" in out.getvalue()
        assert "error collecting logs" in out.getvalue()

    def test_reflect_wrong_provisioner(self, tmp_path, sample_cluster):
        """Test that clusters of another provisioner are refused."""
        save_state(cluster_dir(tmp_path, "test-cluster"), "qemu", sample_cluster.info)

        with pytest.raises(ProviderError, match="not 'docker'"):
            DockerProvider().reflect("test-cluster", str(tmp_path))

    def test_endpoints(self):
        """Test endpoints and config generator options."""
        provider = DockerProvider()
        network = _network(nameservers=[ipaddress.ip_address("1.1.1.1")])

        assert provider.get_external_kubernetes_control_plane_endpoint(network, 6443) == "https://10.5.0.2:6443"
        assert provider.get_talos_api_endpoints(network) is None
        assert provider.get_first_interface() == "eth0"

        gen, net = _apply(provider.gen_options(network))
        assert gen.persist is False
        assert net.nameservers == ["1.1.1.1"]


class TestQemuHelpers:
    """Test qemu provider helpers."""

    def test_arch(self):
        """Test architecture lookup."""
        assert qemu.get_arch("amd64").binary == "qemu-system-x86_64"
        assert qemu.get_arch("arm64").requires_uefi

        with pytest.raises(ProviderCreateError, match="unsupported architecture"):
            qemu.get_arch("riscv64")

    def test_names(self):
        """Test that link names are stable and short enough for the kernel."""
        bridge = qemu.bridge_name("test-cluster")

        assert bridge == qemu.bridge_name("test-cluster")
        assert bridge.startswith("talos") and len(bridge) <= 15
        assert len(qemu.tap_name("test-cluster", 12)) <= 15
        assert qemu.mac_address("test-cluster", "node").startswith("52:54:00:")
        assert qemu.mac_address("test-cluster", "a") != qemu.mac_address("test-cluster", "b")

    def test_netem_args(self):
        """Test traffic shaping arguments."""
        network = _network(network_chaos=True, latency=0.2, jitter=0.05, packet_loss=0.1, bandwidth=1000)

        assert qemu.netem_args(network) == [
            "netem", "delay", "200ms", "50ms", "loss", "10%", "rate", "1000kbit",
        ]

    def test_dnsmasq_args(self, tmp_path):
        """Test static leases for every node."""
        request = ClusterRequest(
            name="test-cluster",
            network=_network(nameservers=[ipaddress.ip_address("1.1.1.1")]),
            nodes=[_node()],
        )

        args = qemu.dnsmasq_args(request, "talos0", tmp_path, "http://10.5.0.1:8080")

        assert "--dhcp-range=10.5.0.0,static,255.255.255.0" in args
        assert "--dhcp-option=option:router,10.5.0.1" in args
        assert "--dhcp-option=option:dns-server,1.1.1.1" in args
        mac = qemu.mac_address("test-cluster", "test-cluster-controlplane-1")
        assert f"--dhcp-host={mac},10.5.0.2,test-cluster-controlplane-1" in args

    def test_kernel_cmdline(self):
        """Test kernel parameters for an HTTP-injected node."""
        node = _node(config=object(), quirks=Quirks("v1.11.0"),
                     config_injection_method=ConfigInjectionMethod.HTTP,
                     extra_kernel_args=Cmdline("talos.dashboard.disabled=1"))
        options = ProvisionOptions(debug_shell_enabled=True)

        cmdline = qemu.kernel_cmdline(node, options, qemu.get_arch("amd64"), "http://10.5.0.1:8080")

        assert cmdline.startswith("console=ttyS0 ")
        assert "talos.debugshell" in cmdline
        assert "talos.halt_if_installed=1" in cmdline
        assert "talos.config=http://10.5.0.1:8080/test-cluster-controlplane-1.yaml" in cmdline
        assert cmdline.endswith("talos.dashboard.disabled=1")

    def test_kernel_cmdline_old_release(self):
        """Test that old releases do not get halt_if_installed."""
        node = _node(quirks=Quirks("v1.10.0"), config_injection_method=ConfigInjectionMethod.METAL_ISO)

        cmdline = qemu.kernel_cmdline(node, ProvisionOptions(), qemu.get_arch("arm64"), "")

        assert "talos.halt_if_installed" not in cmdline
        assert "talos.config" not in cmdline
        assert cmdline.startswith("console=ttyAMA0 ")

    def test_disk_devices(self):
        """Test disk device arguments per driver."""
        assert qemu._disk_device(0, Disk(size=1), "disk0", None) == ["-device", "virtio-blk-pci,drive=disk0"]
        assert qemu._disk_device(1, Disk(size=1, driver="ahci"), "disk1", 0) == [
            "-device", "ide-hd,drive=disk1,bus=ahci.0,serial=QM00001",
        ]
        assert qemu._disk_device(2, Disk(size=1, driver="nvme", block_size=4096), "disk2", None) == [
            "-device",
            "nvme,drive=disk2,serial=QM00002,logical_block_size=4096,physical_block_size=4096",
        ]

        with pytest.raises(ProviderCreateError, match="unsupported disk driver"):
            qemu._disk_device(0, Disk(size=1, driver="floppy"), "disk0", None)

    def test_provider_endpoints(self):
        """Test gateway endpoints and config generator options."""
        provider = QemuProvider()
        network = _network()

        assert provider.get_in_cluster_kubernetes_control_plane_endpoint(network, 6443) == "https://10.5.0.1:6443"
        assert provider.user_disk_name(1) == "/dev/disk/by-id/ata-QEMU_HARDDISK_QM00001"

        gen, net = _apply(provider.gen_options(network))
        assert gen.install_disk == "/dev/vda"
        assert net.interfaces == [{
            "deviceSelector": {"busPath": "0*"},
            "dhcp": True,
            "dhcpOptions": {"ipv4": True, "ipv6": False},
        }]
