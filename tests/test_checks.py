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
Tests for cluster readiness checks.
"""

from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

from taloscluster import checks
from taloscluster.exceptions import ReadinessError


def _flaky(failures):
    calls = []

    def fn(access):
        calls.append(access)
        if len(calls) <= failures:
            raise checks.CheckFailed(f"attempt {len(calls)}")
    return fn, calls


class TestWait:
    """Test polling checks."""

    def test_passes_after_retries(self):
        """Test that failing checks are polled until they pass."""
        fn, calls = _flaky(2)
        reporter = MagicMock()
        check = checks.ClusterCheck("etcd to be healthy", fn)

        checks.wait("access", [check], reporter, timeout=10, interval=0)

        assert len(calls) == 3
        assert reporter.update.call_count == 2
        reporter.done.assert_called_once_with(check)

    def test_timeout(self):
        """Test that the deadline is reported with the last error."""
        fn, _ = _flaky(1000)

        with pytest.raises(ReadinessError, match="timeout waiting for kubelet to be healthy: attempt"):
            checks.wait("access", [checks.ClusterCheck("kubelet to be healthy", fn)], timeout=0, interval=0.01)

    def test_order(self):
        """Test that checks run in order."""
        order = []
        battery = [
            checks.ClusterCheck("first", lambda a: order.append("first")),
            checks.ClusterCheck("second", lambda a: order.append("second")),
        ]

        checks.wait("access", battery, timeout=1, interval=0)

        assert order == ["first", "second"]

    def test_unexpected_errors_propagate(self):
        """Test that programming errors are not retried."""
        def broken(access):
            raise KeyError("oops")

        with pytest.raises(KeyError):
            checks.wait("access", [checks.ClusterCheck("broken", broken)], timeout=1, interval=0)

    @patch("taloscluster.checks.stop_after_delay", wraps=checks.stop_after_delay)
    def test_deadline_shared_across_checks(self, mock_stop):
        """Test that later checks only get the time that is left."""
        battery = [
            checks.ClusterCheck("first", lambda a: None),
            checks.ClusterCheck("second", lambda a: None),
        ]

        checks.wait("access", battery, timeout=30, interval=0)

        budgets = [c.args[0] for c in mock_stop.call_args_list]
        assert len(budgets) == 2
        assert 0 <= budgets[1] <= budgets[0] <= 30


class TestStderrReporter:
    """Test progress output."""

    def test_deduplicates(self, capsys):
        """Test that repeated lines are printed once."""
        reporter = checks.StderrReporter()
        check = checks.ClusterCheck("apid to be ready", lambda a: None)

        reporter.update(check, None)
        reporter.update(check, None)
        reporter.update(check, checks.CheckFailed("refused"))
        reporter.done(check)

        assert capsys.readouterr().err.splitlines() == [
            "waiting for apid to be ready",
            "waiting for apid to be ready (refused)",
            "waiting for apid to be ready: OK",
        ]


class TestChecks:
    """Test individual checks."""

    def _access(self, sample_cluster, services):
        access = MagicMock()
        access.nodes_by_type.side_effect = lambda *types: [
            n for n in sample_cluster.info.nodes if n.type in types
        ]
        access.machine_client.return_value.services.side_effect = lambda address: services[address]
        return access

    def test_etcd_healthy(self, sample_cluster):
        """Test that etcd must be healthy on control planes only."""
        access = self._access(sample_cluster, {"10.5.0.2": {"etcd": {"running": True, "healthy": True}}})

        checks.etcd_healthy(access)

    def test_kubelet_unhealthy(self, sample_cluster):
        """Test that unhealthy nodes are named."""
        access = self._access(sample_cluster, {
            "10.5.0.2": {"kubelet": {"running": True, "healthy": True}},
            "10.5.0.3": {"kubelet": {"running": True, "healthy": False}},
        })

        with pytest.raises(checks.CheckFailed, match="kubelet is not healthy on: test-cluster-worker-1"):
            checks.kubelet_healthy(access)

    @patch("taloscluster.checks.k8s_client.CoreV1Api")
    def test_all_nodes_reported(self, mock_api, sample_cluster):
        """Test that every provisioned node must appear in Kubernetes."""
        address = SimpleNamespace(type="InternalIP", address="10.5.0.2")
        mock_api.return_value.list_node.return_value.items = [
            SimpleNamespace(status=SimpleNamespace(addresses=[address]))
        ]
        access = MagicMock()
        access.nodes.return_value = sample_cluster.info.nodes

        with pytest.raises(checks.CheckFailed, match="nodes not reported: test-cluster-worker-1"):
            checks.all_nodes_reported(access)

    @patch("taloscluster.checks.k8s_client.CoreV1Api")
    def test_node_without_ready_condition(self, mock_api):
        """Test that nodes which never reported Ready are not ready."""
        ready = SimpleNamespace(type="Ready", status="True")
        mock_api.return_value.list_node.return_value.items = [
            SimpleNamespace(metadata=SimpleNamespace(name="cp-1"), status=SimpleNamespace(conditions=[ready])),
            SimpleNamespace(metadata=SimpleNamespace(name="worker-1"), status=SimpleNamespace(conditions=None)),
            SimpleNamespace(metadata=SimpleNamespace(name="worker-2"),
                            status=SimpleNamespace(conditions=[SimpleNamespace(type="MemoryPressure",
                                                                               status="False")])),
        ]

        with pytest.raises(checks.CheckFailed, match=r"\['worker-1', 'worker-2'\]"):
            checks.all_nodes_ready(MagicMock())

    def test_default_battery(self):
        """Test the default battery order."""
        names = [c.name for c in checks.default_cluster_checks()]

        assert names[0] == "etcd to be healthy"
        assert names[-1] == "coredns to report ready"
