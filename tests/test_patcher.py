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
Tests for machine config patching.
"""

import pytest
import yaml

from taloscluster.config import patcher
from taloscluster.config.container import Container
from taloscluster.exceptions import ConfigError, JSON6902MultiDocError, PatchLoadError

BASE = b"""version: v1alpha1
machine:
  type: controlplane
  network:
    interfaces:
      - interface: eth0
        dhcp: true
  certSANs:
    - 10.5.0.2
cluster:
  network:
    podSubnets:
      - 10.244.0.0/16
"""


class TestLoadPatches:
    """Test loading patches."""

    def test_json6902(self):
        """Test that a list is a JSON patch."""
        loaded = patcher.load_patch('[{"op": "add", "path": "/machine/env", "value": {"A": "b"}}]')

        assert isinstance(loaded, patcher.JSON6902Patch)

    def test_strategic_merge(self):
        """Test that a mapping is a strategic merge patch."""
        loaded = patcher.load_patch("machine:\n  sysctls:\n    a: '1'\n")

        assert isinstance(loaded, patcher.StrategicMergePatch)

    def test_from_file(self, tmp_path):
        """Test loading a patch from @file."""
        path = tmp_path / "patch.yaml"
        path.write_text("machine:\n  env:\n    A: b\n")

        loaded = patcher.load_patches([f"@{path}", '[{"op": "remove", "path": "/debug"}]'])

        assert len(loaded) == 2
        assert isinstance(loaded[0], patcher.StrategicMergePatch)
        assert isinstance(loaded[1], patcher.JSON6902Patch)

    def test_missing_file(self, tmp_path):
        """Test that a missing patch file is reported."""
        with pytest.raises(PatchLoadError, match="failed to read patch file"):
            patcher.load_patches([f"@{tmp_path / 'missing.yaml'}"])

    def test_invalid_yaml(self):
        """Test that unparsable patches are reported."""
        with pytest.raises(PatchLoadError):
            patcher.load_patch("machine: [unterminated")

    def test_empty(self):
        """Test that an empty patch is rejected."""
        with pytest.raises(PatchLoadError, match="empty patch"):
            patcher.load_patch("")

    def test_invalid_operations(self):
        """Test that malformed JSON patch operations are rejected."""
        with pytest.raises(PatchLoadError, match="invalid JSON patch"):
            patcher.load_patch('[{"op": "frobnicate", "path": "/machine"}]')


class TestApply:
    """Test applying patches."""

    def test_json6902_apply(self):
        """Test a JSON patch on a single-document config."""
        patches = patcher.load_patches(['[{"op": "add", "path": "/machine/env", "value": {"A": "b"}}]'])

        result = yaml.safe_load(patcher.apply(BASE, patches).as_bytes())

        assert result["machine"]["env"] == {"A": "b"}
        assert result["machine"]["type"] == "controlplane"

    def test_json6902_failure(self):
        """Test that an inapplicable JSON patch is reported."""
        patches = patcher.load_patches(['[{"op": "remove", "path": "/machine/nothing"}]'])

        with pytest.raises(ConfigError, match="failed to apply JSON patch"):
            patcher.apply(BASE, patches)

    def test_strategic_merge_maps(self):
        """Test that mappings merge recursively."""
        patches = patcher.load_patches(["machine:\n  sysctls:\n    net.ipv4.ip_forward: '1'\n"])

        result = patcher.apply(BASE, patches).as_container()

        assert result.get("machine.sysctls") == {"net.ipv4.ip_forward": "1"}
        assert result.get("machine.type") == "controlplane"

    def test_strategic_merge_lists_append(self):
        """Test that plain lists are appended."""
        patches = patcher.load_patches(["machine:\n  certSANs:\n    - example.com\n"])

        result = patcher.apply(BASE, patches).as_container()

        assert result.get("machine.certSANs") == ["10.5.0.2", "example.com"]

    def test_strategic_merge_interfaces_by_name(self):
        """Test that interfaces merge by interface name."""
        patches = patcher.load_patches([
            "machine:\n  network:\n    interfaces:\n      - interface: eth0\n        mtu: 9000\n"
            "      - interface: eth1\n        dhcp: false\n"
        ])

        interfaces = patcher.apply(BASE, patches).as_container().get("machine.network.interfaces")

        assert interfaces == [
            {"interface": "eth0", "dhcp": True, "mtu": 9000},
            {"interface": "eth1", "dhcp": False},
        ]

    def test_strategic_merge_replaces_subnets(self):
        """Test that pod subnets are replaced, not appended."""
        patches = patcher.load_patches(["cluster:\n  network:\n    podSubnets:\n      - 10.100.0.0/16\n"])

        result = patcher.apply(BASE, patches).as_container()

        assert result.get("cluster.network.podSubnets") == ["10.100.0.0/16"]

    def test_strategic_merge_delete(self):
        """Test the delete directive."""
        patches = patcher.load_patches(["machine:\n  certSANs:\n    $patch: delete\n"])

        result = patcher.apply(BASE, patches).as_container()

        assert result.get("machine.certSANs") is None

    def test_strategic_merge_adds_document(self):
        """Test that new documents are appended to the container."""
        patches = [patcher.new_strategic_merge_patch(
            {"apiVersion": "v1alpha1", "kind": "NetworkDefaultActionConfig", "ingress": "block"})]

        result = patcher.apply(BASE, patches).as_container()

        assert len(result) == 2
        assert result.find("NetworkDefaultActionConfig")["ingress"] == "block"

    def test_json6902_on_multidoc(self):
        """Test that JSON patches refuse multi-document configs."""
        container = Container([
            {"version": "v1alpha1", "machine": {}},
            {"apiVersion": "v1alpha1", "kind": "NetworkDefaultActionConfig", "ingress": "block"},
        ])
        patches = patcher.load_patches(['[{"op": "add", "path": "/debug", "value": true}]'])

        with pytest.raises(JSON6902MultiDocError):
            patcher.apply(container, patches)

    def test_patches_apply_in_order(self):
        """Test that later patches see earlier results."""
        patches = patcher.load_patches([
            "machine:\n  env:\n    A: first\n",
            '[{"op": "replace", "path": "/machine/env/A", "value": "second"}]',
        ])

        result = yaml.safe_load(patcher.apply(BASE, patches).as_bytes())

        assert result["machine"]["env"]["A"] == "second"
