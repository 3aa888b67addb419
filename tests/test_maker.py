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
Tests for the cluster request builder.
"""

import os

import pytest

from taloscluster.config.encoder import CommentsPolicy
from taloscluster.exceptions import (
    ConfigError, NotRationalError, ProviderError, TooPreciseError, UsageError, VersionParseError
)
from taloscluster.maker import ClusterMaker
from taloscluster.models import MachineType
from taloscluster.providers.base import resolve

from conftest import FakeProvider


def _create(options, provider):
    maker = ClusterMaker(options, provider, options.talos_version)
    maker.create_cluster(maker.partial_request())
    return maker


class TestNodeRequests:
    """Test node planning."""

    def test_nodes(self, common_options, fake_provider):
        """Test node names, resources and addresses."""
        maker = ClusterMaker(common_options, fake_provider, "v1.11.0")
        nodes = maker.partial_request().nodes

        assert [n.name for n in nodes] == [
            "test-cluster-controlplane-1", "test-cluster-controlplane-2",
            "test-cluster-worker-1", "test-cluster-worker-2",
        ]
        assert [n.type for n in nodes] == [MachineType.CONTROLPLANE] * 2 + [MachineType.WORKER] * 2
        assert [n.nano_cpus for n in nodes] == [4_000_000_000] * 2 + [2_000_000_000] * 2
        assert [n.memory for n in nodes] == [4294967296] * 2 + [2147483648] * 2
        assert [str(n.ips[0]) for n in nodes] == ["10.5.0.2", "10.5.0.3", "10.5.0.4", "10.5.0.5"]
        assert len({n.uuid for n in nodes}) == 4

        network = maker.partial_request().network
        assert [str(g) for g in network.gateway_addrs] == ["10.5.0.1"]
        assert network.load_balancer_ports == [6443]

    def test_init_node(self, common_options, fake_provider):
        """Test that the first control plane becomes the init node."""
        common_options.with_init_node = True

        nodes = ClusterMaker(common_options, fake_provider, "v1.11.0").partial_request().nodes

        assert nodes[0].type == MachineType.INIT
        assert nodes[1].type == MachineType.CONTROLPLANE

    def test_uuid_hostnames(self, common_options, fake_provider):
        """Test machine-<uuid> node names."""
        common_options.with_uuid_hostnames = True

        nodes = ClusterMaker(common_options, fake_provider, "v1.11.0").partial_request().nodes

        assert all(n.name == f"machine-{n.uuid}" for n in nodes)

    def test_ipv6(self, common_options, fake_provider):
        """Test dual-stack addresses."""
        common_options.network_ipv6 = True

        nodes = ClusterMaker(common_options, fake_provider, "v1.11.0").partial_request().nodes

        assert [str(ip) for ip in nodes[0].ips] == ["10.5.0.2", "fd74:616c:a05::2"]

    def test_no_controlplanes(self, common_options, fake_provider):
        """Test that a control plane is required."""
        common_options.controlplanes = 0

        with pytest.raises(UsageError):
            ClusterMaker(common_options, fake_provider, "v1.11.0")

    def test_bad_cpus(self, common_options, fake_provider):
        """Test that the offending flag is named."""
        common_options.workers_cpus = "1.0000000001"

        with pytest.raises((TooPreciseError, NotRationalError), match="error parsing --cpus-workers"):
            ClusterMaker(common_options, fake_provider, "v1.11.0")


class TestOptions:
    """Test option preparation."""

    def test_bad_version(self, common_options, fake_provider):
        """Test that an unparsable Talos version is rejected."""
        with pytest.raises(VersionParseError, match="error parsing Talos version"):
            ClusterMaker(common_options, fake_provider, "banana")

    def test_bad_kubernetes_version(self, common_options, fake_provider):
        """Test that an unparsable Kubernetes version is rejected up front."""
        common_options.kubernetes_version = "banana"

        with pytest.raises(VersionParseError, match="error parsing Kubernetes version"):
            ClusterMaker(common_options, fake_provider, "v1.11.0")

        assert fake_provider.created == []

    def test_self_executable_is_absolute(self, common_options, fake_provider, tmp_path, monkeypatch):
        """Test that the program path is absolute for bare and relative names."""
        monkeypatch.chdir(tmp_path)

        monkeypatch.setattr("sys.argv", ["bin/taloscluster"])
        request = ClusterMaker(common_options, fake_provider, "v1.11.0").partial_request()
        assert request.self_executable == os.path.join(os.getcwd(), "bin", "taloscluster")

        monkeypatch.setattr("sys.argv", ["taloscluster"])
        monkeypatch.setattr("taloscluster.maker.shutil.which", lambda name: "/usr/local/bin/taloscluster")
        request = ClusterMaker(common_options, fake_provider, "v1.11.0").partial_request()
        assert request.self_executable == "/usr/local/bin/taloscluster"

    def test_latest(self, common_options, fake_provider):
        """Test that latest skips the version contract."""
        common_options.talos_version = "latest"

        assert ClusterMaker(common_options, fake_provider, "latest").version_contract() is None

    def test_bad_mirror(self, common_options, fake_provider):
        """Test that registry mirrors need host=url."""
        common_options.registry_mirrors = ["docker.io"]

        with pytest.raises(UsageError, match="invalid registry mirror spec"):
            ClusterMaker(common_options, fake_provider, "v1.11.0")

    def test_provision_options(self, common_options, fake_provider):
        """Test the JSON logs and Kubernetes endpoint options."""
        common_options.with_json_logs = True

        options = resolve(*ClusterMaker(common_options, fake_provider, "v1.11.0").provision_opts)

        assert options.json_logs_endpoint == "10.5.0.1:4003"
        assert options.kubernetes_endpoint == "https://10.5.0.2:6443"


class TestCreateCluster:
    """Test config generation and cluster creation."""

    def test_create(self, common_options, fake_provider):
        """Test that every node gets its role config."""
        common_options.kubernetes_version = "v1.1.1-test"

        maker = _create(common_options, fake_provider)

        request = fake_provider.created[0]
        assert [n.config.get("machine.type") for n in request.nodes] == [
            "controlplane", "controlplane", "worker", "worker",
        ]
        cfg = request.nodes[0].config
        assert cfg.get("machine.kubelet.image") == "ghcr.io/siderolabs/kubelet:v1.1.1-test"
        assert cfg.get("cluster.controlPlane.endpoint") == "https://10.5.0.2:6443"
        assert maker.talos_config.contexts["test-cluster"].endpoints == ["10.5.0.2", "10.5.0.3"]
        assert fake_provider.provision_options.talos_config is maker.talos_config
        assert maker.cluster.name == "test-cluster"

    def test_role_patches(self, common_options, fake_provider):
        """Test that general and per-role patches reach the right nodes."""
        common_options.config_patch = [
            '[{"op": "add", "path": "/machine/network/hostname", "value": "test-hostname"}]']
        common_options.config_patch_control_plane = [
            '[{"op": "add", "path": "/machine/kubelet/image", "value": "test-control"}]']
        common_options.config_patch_worker = [
            '[{"op": "add", "path": "/machine/kubelet/image", "value": "test-worker"}]']

        _create(common_options, fake_provider)

        nodes = fake_provider.created[0].nodes
        controlplane = nodes[0].config
        worker = nodes[2].config
        assert worker.get("machine.network.hostname") == "test-hostname"
        assert controlplane.get("machine.network.hostname") == "test-hostname"
        assert controlplane.get("machine.kubelet.image") == "test-control"
        assert worker.get("machine.kubelet.image") == "test-worker"

    def test_force_endpoint(self, common_options, fake_provider):
        """Test that a forced endpoint is the only endpoint and a SAN."""
        common_options.force_endpoint = "127.0.0.1"

        maker = _create(common_options, fake_provider)

        assert maker.talos_config.contexts["test-cluster"].endpoints == ["127.0.0.1"]
        assert "127.0.0.1" in fake_provider.created[0].nodes[0].config.get("machine.certSANs")

    def test_init_node_as_endpoint(self, common_options, fake_provider):
        """Test that the first node can be the only endpoint."""
        common_options.force_init_node_as_endpoint = True

        maker = _create(common_options, fake_provider)

        assert maker.talos_config.contexts["test-cluster"].endpoints == ["10.5.0.2"]

    def test_provider_endpoints(self, common_options):
        """Test that provider endpoints are used and added as SANs."""
        provider = FakeProvider(talos_api_endpoints=["10.5.0.1:50000"])

        maker = _create(common_options, provider)

        assert maker.talos_config.contexts["test-cluster"].endpoints == ["10.5.0.1:50000"]
        assert "10.5.0.1" in provider.created[0].nodes[0].config.get("machine.certSANs")

    def test_json_logs(self, common_options, fake_provider):
        """Test that nodes ship JSON logs to the gateway."""
        common_options.with_json_logs = True

        _create(common_options, fake_provider)

        destinations = fake_provider.created[0].nodes[2].config.get("machine.logging.destinations")
        assert destinations == [{"endpoint": "tcp://10.5.0.1:4003", "format": "json_lines"}]

    def test_wireguard(self, common_options, fake_provider):
        """Test that every node gets a wg0 device."""
        common_options.wireguard_cidr = "192.168.1.0/24"

        _create(common_options, fake_provider)

        for node in fake_provider.created[0].nodes:
            interfaces = node.config.get("machine.network.interfaces")
            assert [i["interface"] for i in interfaces if i.get("interface") == "wg0"] == ["wg0"]

    def test_skip_injecting_config(self, common_options, fake_provider, tmp_path, monkeypatch):
        """Test that configs are written out when they are not injected."""
        monkeypatch.chdir(tmp_path)
        common_options.skip_injecting_config = True

        _create(common_options, fake_provider)

        assert (tmp_path / "controlplane.yaml").exists()
        assert (tmp_path / "worker.yaml").exists()
        assert all(n.skip_injecting_config for n in fake_provider.created[0].nodes)

    def test_input_dir_without_talosconfig(self, common_options, fake_provider, tmp_path):
        """Test that waiting needs a client config."""
        maker = _create(common_options, FakeProvider())
        input_dir = tmp_path / "input"
        input_dir.mkdir()
        maker.bundle.write(input_dir, CommentsPolicy.DISABLED, MachineType.CONTROLPLANE, MachineType.WORKER,
                           verbose=False)

        common_options.input_dir = str(input_dir)
        common_options.cluster_wait = True

        with pytest.raises(ConfigError, match="cannot wait for cluster"):
            _create(common_options, fake_provider)

    def test_crashdump_on_failure(self, common_options, capsys):
        """Test that a failed create dumps the cluster and re-raises."""
        provider = FakeProvider(fail_create=True)
        common_options.crashdump_on_failure = True

        with pytest.raises(ProviderError, match="boom"):
            _create(common_options, provider)

        assert provider.crash_dumps == 1
        assert "crash dump of test-cluster" in capsys.readouterr().err

    def test_no_crashdump_by_default(self, common_options):
        """Test that crash dumps are opt-in."""
        provider = FakeProvider(fail_create=True)

        with pytest.raises(ProviderError):
            _create(common_options, provider)

        assert provider.crash_dumps == 0

    def test_post_create_before_create(self, common_options, fake_provider):
        """Test that post-create needs a cluster."""
        maker = ClusterMaker(common_options, fake_provider, "v1.11.0")

        with pytest.raises(ProviderError, match="cluster has not been created"):
            maker.post_create()
