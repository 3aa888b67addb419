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
Tests for the post-create steps.
"""

from unittest.mock import MagicMock, patch

import pytest
import yaml

from taloscluster import kubeconfig, postcreate
from taloscluster.config.clientconfig import ClientConfig, Context
from taloscluster.exceptions import BootstrapError, KubeconfigMergeError, MachineAPIError


@pytest.fixture
def talos_config():
    return ClientConfig(context="test-cluster", contexts={"test-cluster": Context(endpoints=["10.5.0.2"])})


KUBECONFIG = yaml.safe_dump({
    "apiVersion": "v1",
    "kind": "Config",
    "clusters": [{"name": "test-cluster", "cluster": {"server": "https://10.5.0.2:6443"}}],
    "users": [{"name": "admin@test-cluster", "user": {"token": "t"}}],
    "contexts": [{"name": "admin@test-cluster",
                  "context": {"cluster": "test-cluster", "user": "admin@test-cluster"}}],
    "current-context": "admin@test-cluster",
}).encode()


class TestSaveConfig:
    """Test saving the client config."""

    def test_save_renames(self, tmp_path, talos_config, capsys):
        """Test that an existing context of the same name is kept."""
        path = tmp_path / "talosconfig"
        talos_config.save(path)

        postcreate.save_config(talos_config, str(path))

        saved = ClientConfig.open(path)
        assert set(saved.contexts) == {"test-cluster", "test-cluster-1"}
        assert saved.context == "test-cluster-1"
        assert "renamed talosconfig context" in capsys.readouterr().err


class TestMergeKubeconfig:
    """Test merging the cluster kubeconfig."""

    def test_merge(self, tmp_path):
        """Test that the cluster context becomes current."""
        access = MagicMock(force_endpoint="127.0.0.1")
        access.kubeconfig.return_value = KUBECONFIG
        path = tmp_path / "kubeconfig"

        postcreate.merge_kubeconfig(access, path)

        merged = kubeconfig.load(path)
        assert merged["current-context"] == "admin@test-cluster"
        assert merged["clusters"][0]["cluster"]["server"] == "https://127.0.0.1:6443"

    def test_fetch_failure(self, tmp_path):
        """Test that fetch failures are merge errors."""
        access = MagicMock(force_endpoint="")
        access.kubeconfig.side_effect = MachineAPIError("connection refused")

        with pytest.raises(KubeconfigMergeError, match="error fetching kubeconfig"):
            postcreate.merge_kubeconfig(access, tmp_path / "kubeconfig")


@patch("taloscluster.postcreate.merge_kubeconfig")
@patch("taloscluster.postcreate.checks.wait")
@patch("taloscluster.postcreate.ClusterAccess")
class TestPostCreate:
    """Test the post-create sequence."""

    def test_no_wait(self, mock_access, mock_wait, mock_merge, common_options, sample_cluster,
                     fake_provider, talos_config, capsys):
        """Test that without wait the cluster is bootstrapped and shown."""
        postcreate.post_create(common_options, sample_cluster, fake_provider, talos_config, [])

        mock_access.return_value.bootstrap.assert_called_once()
        mock_access.return_value.apply_config.assert_not_called()
        mock_wait.assert_not_called()
        mock_merge.assert_not_called()
        assert ClientConfig.open(common_options.talosconfig).context == "test-cluster"
        assert "NAME                  test-cluster" in capsys.readouterr().out

    def test_init_node_skips_bootstrap(self, mock_access, mock_wait, mock_merge, common_options,
                                       sample_cluster, fake_provider, talos_config):
        """Test that init nodes bootstrap themselves."""
        common_options.with_init_node = True
        common_options.apply_config_enabled = True

        postcreate.post_create(common_options, sample_cluster, fake_provider, talos_config, [])

        mock_access.return_value.bootstrap.assert_not_called()
        mock_access.return_value.apply_config.assert_called_once()

    def test_bootstrap_error(self, mock_access, mock_wait, mock_merge, common_options,
                             sample_cluster, fake_provider, talos_config):
        """Test that bootstrap failures are wrapped."""
        mock_access.return_value.bootstrap.side_effect = MachineAPIError("refused")

        with pytest.raises(BootstrapError, match="bootstrap error: refused"):
            postcreate.post_create(common_options, sample_cluster, fake_provider, talos_config, [])

    def test_wait_and_merge(self, mock_access, mock_wait, mock_merge, common_options,
                            sample_cluster, fake_provider, talos_config):
        """Test the readiness battery and the kubeconfig merge."""
        common_options.cluster_wait = True
        common_options.skip_kubeconfig = False
        common_options.skip_k8s_node_readiness_check = True

        postcreate.post_create(common_options, sample_cluster, fake_provider, talos_config, [])

        battery = mock_wait.call_args[0][1]
        names = [c.name for c in battery]
        assert "all k8s nodes to report" in names
        assert "all k8s nodes to report ready" not in names
        assert mock_wait.call_args[1]["timeout"] == common_options.cluster_wait_timeout
        mock_merge.assert_called_once_with(mock_access.return_value)

    def test_skip_kubeconfig(self, mock_access, mock_wait, mock_merge, common_options,
                             sample_cluster, fake_provider, talos_config):
        """Test that the kubeconfig merge can be skipped."""
        common_options.cluster_wait = True

        postcreate.post_create(common_options, sample_cluster, fake_provider, talos_config, [])

        mock_wait.assert_called_once()
        mock_merge.assert_not_called()

    def test_no_talosconfig(self, mock_access, mock_wait, mock_merge, common_options,
                            sample_cluster, fake_provider, capsys):
        """Test that without a client config only the summary is printed."""
        postcreate.post_create(common_options, sample_cluster, fake_provider, None, [])

        mock_access.assert_not_called()
        assert "PROVISIONER           docker" in capsys.readouterr().out
