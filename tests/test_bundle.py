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
Tests for config generation, config bundles and encoding.
"""

import pytest
import yaml

from taloscluster.config.bundle import (
    Bundle, InputOptions, with_existing_configs, with_input_options, with_patch,
    with_patch_control_plane, with_patch_worker
)
from taloscluster.config.contract import VersionContract
from taloscluster.config.encoder import CommentsPolicy
from taloscluster.config.generate import (
    Input, parse_kubernetes_version, with_additional_subject_alt_names, with_cluster_cni_config, with_endpoint_list,
    with_kubeprism_port, with_kubespan, with_local_api_server_port, with_network_interface_virtual_ip,
    with_network_nameservers, with_network_options, with_registry_mirror, with_sysctls,
    with_version_contract
)
from taloscluster.config.patcher import load_patches
from taloscluster.exceptions import ConfigError, VersionParseError
from taloscluster.models import MachineType


@pytest.fixture(scope="module")
def generated():
    """Generate a bundle once; secrets generation is slow."""
    return Bundle.new(with_input_options(InputOptions(
        "demo", "https://10.5.0.2:6443", "1.34.0",
        [with_endpoint_list(["10.5.0.2"])],
    )))


class TestInput:
    """Test machine config rendering."""

    def test_invalid_endpoint(self):
        """Test that the endpoint must be a URL."""
        with pytest.raises(ConfigError, match="invalid control plane endpoint"):
            Input.new("demo", "10.5.0.2:6443", "1.34.0")

    def test_invalid_kubernetes_version(self):
        """Test that the Kubernetes version must be a semantic version."""
        with pytest.raises(VersionParseError, match="error parsing Kubernetes version"):
            Input.new("demo", "https://10.5.0.2:6443", "banana")

        with pytest.raises(VersionParseError):
            parse_kubernetes_version("1.34")

    def test_kubernetes_version_prefix(self):
        """Test that the leading v is dropped."""
        assert parse_kubernetes_version("v1.34.0") == "1.34.0"
        assert parse_kubernetes_version("1.1.1-test") == "1.1.1-test"

    def test_options_render(self):
        """Test that generator options land in the machine config."""
        inp = Input.new(
            "demo", "https://10.5.0.2:6443", "v1.34.0",
            with_additional_subject_alt_names(["10.5.0.2", "example.com"]),
            with_additional_subject_alt_names(["example.com"]),
            with_sysctls({"kernel.kexec_load_disabled": "1"}),
            with_cluster_cni_config({"name": "custom", "urls": ["https://example.com/cni.yaml"]}),
            with_kubeprism_port(7446),
            with_local_api_server_port(7443),
            with_registry_mirror("docker.io", "http://10.5.0.1:5000"),
            with_network_options(with_network_nameservers("1.1.1.1"), with_kubespan()),
        )
        cfg = inp.config(MachineType.CONTROLPLANE)

        assert cfg.get("machine.type") == "controlplane"
        assert cfg.get("machine.certSANs") == ["10.5.0.2", "example.com"]
        assert cfg.get("machine.sysctls") == {"kernel.kexec_load_disabled": "1"}
        assert cfg.get("machine.features.kubePrism.port") == 7446
        assert cfg.get("machine.network.nameservers") == ["1.1.1.1"]
        assert cfg.get("machine.network.kubespan") == {"enabled": True}
        assert cfg.get("machine.registries.mirrors") == {"docker.io": {"endpoints": ["http://10.5.0.1:5000"]}}
        assert cfg.get("machine.kubelet.image") == "ghcr.io/siderolabs/kubelet:v1.34.0"
        assert cfg.get("cluster.network.cni") == {"name": "custom", "urls": ["https://example.com/cni.yaml"]}
        assert cfg.get("cluster.controlPlane") == {"endpoint": "https://10.5.0.2:6443", "localAPIServerPort": 7443}

    def test_virtual_ip(self):
        """Test that the VIP is set on the selected interface."""
        inp = Input.new(
            "demo", "https://10.5.0.50:6443", "1.34.0",
            with_network_options(with_network_interface_virtual_ip({"busPath": "0*"}, "10.5.0.50")),
        )

        interfaces = inp.config(MachineType.CONTROLPLANE).get("machine.network.interfaces")

        assert interfaces == [{"deviceSelector": {"busPath": "0*"}, "vip": {"ip": "10.5.0.50"}}]

    def test_worker_has_no_control_plane_secrets(self):
        """Test that workers only get certificates."""
        inp = Input.new("demo", "https://10.5.0.2:6443", "1.34.0")
        worker = inp.config(MachineType.WORKER)

        assert worker.get("machine.ca.key") == ""
        assert worker.get("machine.ca.crt")
        assert worker.get("cluster.apiServer") is None
        assert worker.get("cluster.etcd") is None

    def test_old_contract(self):
        """Test that old contracts omit newer features."""
        inp = Input.new("demo", "https://10.5.0.2:6443", "1.26.0",
                        with_version_contract(VersionContract(1, 5)))
        cfg = inp.config(MachineType.CONTROLPLANE)

        assert cfg.get("machine.features.kubePrism") is None
        assert cfg.get("machine.features.hostDNS") is None

    def test_talosconfig(self):
        """Test the client config context."""
        inp = Input.new("demo", "https://10.5.0.2:6443", "1.34.0", with_endpoint_list(["10.5.0.2", "10.5.0.3"]))

        cfg = inp.talosconfig()

        assert cfg.context == "demo"
        assert cfg.contexts["demo"].endpoints == ["10.5.0.2", "10.5.0.3"]
        assert cfg.contexts["demo"].crt and cfg.contexts["demo"].key


class TestBundle:
    """Test config bundles."""

    def test_generated_roles(self, generated):
        """Test that every role is generated with shared secrets."""
        assert generated.init().get("machine.type") == "init"
        assert generated.control_plane().get("machine.type") == "controlplane"
        assert generated.worker().get("machine.type") == "worker"
        assert generated.control_plane().get("cluster.id") == generated.worker().get("cluster.id")
        assert generated.talos_config().contexts["demo"].endpoints == ["10.5.0.2"]

    def test_conflicting_sources(self, tmp_path):
        """Test that existing configs and input options are exclusive."""
        with pytest.raises(ConfigError, match="both existing config path and input options"):
            Bundle.new(with_existing_configs(str(tmp_path)),
                       with_input_options(InputOptions("demo", "https://10.5.0.2:6443", "1.34.0")))

    def test_no_source(self):
        """Test that a bundle needs a source."""
        with pytest.raises(ConfigError, match="no input options or existing configs"):
            Bundle.new()

    def test_role_patches(self, generated, tmp_path):
        """Test that patches apply to every role and role patches only to theirs."""
        generated.write(tmp_path, CommentsPolicy.DISABLED, MachineType.CONTROLPLANE, MachineType.WORKER,
                        verbose=False)

        bundle = Bundle.new(
            with_existing_configs(str(tmp_path)),
            with_patch(load_patches(["machine:\n  env:\n    ALL: '1'\n"])),
            with_patch_control_plane(load_patches(["machine:\n  env:\n    CP: '1'\n"])),
            with_patch_worker(load_patches(["machine:\n  env:\n    WORKER: '1'\n"])),
        )

        assert bundle.init() is None
        assert bundle.control_plane().get("machine.env") == {"ALL": "1", "CP": "1"}
        assert bundle.worker().get("machine.env") == {"ALL": "1", "WORKER": "1"}
        assert bundle.talos_config() is None

    def test_missing_existing_config(self, tmp_path):
        """Test that a missing role file is reported."""
        with pytest.raises(ConfigError, match="missing config file"):
            Bundle.new(with_existing_configs(str(tmp_path)))

    def test_write(self, generated, tmp_path, capsys):
        """Test writing configs with comments."""
        paths = generated.write(tmp_path, CommentsPolicy.ALL, MachineType.CONTROLPLANE)

        assert paths == [tmp_path / "controlplane.yaml"]
        assert f"created {tmp_path / 'controlplane.yaml'}" in capsys.readouterr().out

        text = paths[0].read_text()
        assert "# Provides machine specific configuration options." in text
        assert "# # example:" in text
        assert yaml.safe_load(text)["machine"]["type"] == "controlplane"
        assert oct(paths[0].stat().st_mode & 0o777) == oct(0o600)
