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
Pytest configuration and fixtures for taloscluster tests.
"""

import ipaddress
import pytest
import sys
from pathlib import Path

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

from taloscluster.exceptions import ProviderError
from taloscluster.models import (
    ClusterInfo, CommonOptions, MachineType, NetworkInfo, NodeInfo
)
from taloscluster.network import join_host_port
from taloscluster.providers.base import Cluster, Provider, resolve


class FakeProvider(Provider):
    """In-memory provider recording what it is asked to do."""

    name = "fake"

    def __init__(self, talos_api_endpoints=None, fail_create=False):
        self.talos_api_endpoints = talos_api_endpoints
        self.fail_create = fail_create
        self.created = []
        self.provision_options = None
        self.destroyed = []
        self.started = []
        self.crash_dumps = 0
        self.closed = False

    def create(self, request, *opts):
        self.provision_options = resolve(*opts)
        self.created.append(request)
        if self.fail_create:
            raise ProviderError("boom")

        info = ClusterInfo(
            cluster_name=request.name,
            network=NetworkInfo(
                name=request.network.name,
                cidrs=list(request.network.cidrs),
                gateway_addrs=list(request.network.gateway_addrs),
                mtu=request.network.mtu,
            ),
            nodes=[
                NodeInfo(name=n.name, type=n.type, ips=list(n.ips), nano_cpus=n.nano_cpus,
                         memory=n.memory, uuid=n.uuid)
                for n in request.nodes
            ],
            kubernetes_endpoint=self.provision_options.kubernetes_endpoint,
        )
        return Cluster(provisioner=self.name, info=info, state_dir=Path(request.state_directory))

    def reflect(self, cluster_name, state_dir):
        if not self.created:
            raise ProviderError(f"cluster {cluster_name!r} not found")
        request = self.created[-1]
        info = ClusterInfo(
            cluster_name=cluster_name,
            network=NetworkInfo(name=cluster_name, cidrs=list(request.network.cidrs),
                                gateway_addrs=list(request.network.gateway_addrs),
                                mtu=request.network.mtu),
        )
        return Cluster(provisioner=self.name, info=info, state_dir=Path(state_dir))

    def destroy(self, cluster):
        self.destroyed.append(cluster.name)

    def start(self, cluster):
        self.started.append(cluster.name)

    def crash_dump(self, cluster, out):
        self.crash_dumps += 1
        out.write(f"crash dump of {cluster.name}\n")

    def close(self):
        self.closed = True

    def gen_options(self, network, contract=None):
        return []

    def _first_node(self, network):
        return network.cidrs[0].network_address + 2

    def get_in_cluster_kubernetes_control_plane_endpoint(self, network, port):
        return f"https://{join_host_port(self._first_node(network), port)}"

    def get_external_kubernetes_control_plane_endpoint(self, network, port):
        return f"https://{join_host_port(self._first_node(network), port)}"

    def get_talos_api_endpoints(self, network):
        return self.talos_api_endpoints

    def get_first_interface(self):
        return "eth0"

    def user_disk_name(self, index):
        return f"/dev/disk/by-id/ata-QEMU_HARDDISK_QM{index:05d}"


@pytest.fixture
def fake_provider():
    """Create a provider that records requests instead of creating nodes."""
    return FakeProvider()


@pytest.fixture
def common_options(tmp_path):
    """Create common options for a small cluster without waiting."""
    return CommonOptions(
        cluster_name="test-cluster",
        state_dir=str(tmp_path / "state"),
        talosconfig=str(tmp_path / "talosconfig"),
        cluster_wait=False,
        skip_kubeconfig=True,
        workers=2,
        controlplanes=2,
        controlplane_cpus="4.0",
        workers_cpus="2.0",
        controlplane_memory=4096,
        workers_memory=2048,
        talos_version="v1.11.0",
    )


@pytest.fixture
def sample_cluster(tmp_path):
    """Create a provisioned cluster with one control plane and one worker."""
    info = ClusterInfo(
        cluster_name="test-cluster",
        network=NetworkInfo(
            name="test-cluster",
            cidrs=[ipaddress.ip_network("10.5.0.0/24")],
            gateway_addrs=[ipaddress.ip_address("10.5.0.1")],
            mtu=1500,
        ),
        nodes=[
            NodeInfo(name="test-cluster-controlplane-1", type=MachineType.CONTROLPLANE,
                     ips=[ipaddress.ip_address("10.5.0.2")], nano_cpus=2_000_000_000,
                     memory=2 * 1024 ** 3),
            NodeInfo(name="test-cluster-worker-1", type=MachineType.WORKER,
                     ips=[ipaddress.ip_address("10.5.0.3")], nano_cpus=2_000_000_000,
                     memory=2 * 1024 ** 3),
        ],
        kubernetes_endpoint="https://10.5.0.2:6443",
    )
    return Cluster(provisioner="docker", info=info, state_dir=tmp_path / "state" / "test-cluster")
