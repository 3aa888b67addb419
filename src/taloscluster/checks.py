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
Cluster readiness checks.

A check is a named callable taking a :class:`~taloscluster.access.ClusterAccess`
and raising when the condition does not hold yet. :func:`wait` runs a list of
checks in order, polling each until it passes or the overall deadline expires.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, List, Optional

import click
from kubernetes import client as k8s_client
from kubernetes.client.rest import ApiException
from tenacity import Retrying, retry_if_exception_type, stop_after_delay, wait_fixed
from urllib3.exceptions import HTTPError

from .access import ClusterAccess
from .exceptions import ReadinessError, TalosClusterError
from .models import MachineType

logger = logging.getLogger(__name__)

POLL_INTERVAL = 5

# Failures a check may recover from; anything else propagates.
_RETRYABLE = (TalosClusterError, ApiException, HTTPError, OSError)

CONTROL_PLANE_STATIC_PODS = [
    "kube-system/kube-apiserver",
    "kube-system/kube-controller-manager",
    "kube-system/kube-scheduler",
]


class CheckFailed(TalosClusterError):
    """A readiness condition does not hold yet."""


@dataclass
class ClusterCheck:
    """A named readiness condition."""
    name: str
    fn: Callable[[ClusterAccess], None]

    def __call__(self, access: ClusterAccess) -> None:
        self.fn(access)


class Reporter:
    """Receives check progress."""

    def update(self, check: ClusterCheck, error: Optional[Exception]) -> None:
        pass

    def done(self, check: ClusterCheck) -> None:
        pass


class StderrReporter(Reporter):
    """Prints check progress to stderr, repeating a line only when it changes."""

    def __init__(self):
        self._last = ""

    def _emit(self, line: str) -> None:
        if line != self._last:
            click.echo(line, err=True)
            self._last = line

    def update(self, check: ClusterCheck, error: Optional[Exception]) -> None:
        line = f"waiting for {check.name}"
        if error is not None:
            line += f" ({error})"
        self._emit(line)

    def done(self, check: ClusterCheck) -> None:
        self._emit(f"waiting for {check.name}: OK")


def _service_healthy(access: ClusterAccess, service: str, *types: MachineType) -> None:
    client = access.machine_client()
    not_ready = []
    for node in access.nodes_by_type(*types):
        status = client.services(str(node.ips[0])).get(service)
        if not status or not status.get("running") or not status.get("healthy"):
            not_ready.append(node.name)
    if not_ready:
        raise CheckFailed(f"{service} is not healthy on: {', '.join(not_ready)}")


def etcd_healthy(access: ClusterAccess) -> None:
    _service_healthy(access, "etcd", MachineType.INIT, MachineType.CONTROLPLANE)


def apid_ready(access: ClusterAccess) -> None:
    client = access.machine_client()
    for node in access.nodes():
        client.version(str(node.ips[0]))


def kubelet_healthy(access: ClusterAccess) -> None:
    _service_healthy(access, "kubelet", *MachineType)


def _node_addresses(node) -> List[str]:
    return [
        addr.address
        for addr in (node.status.addresses or [])
        if addr.type in ("InternalIP", "ExternalIP")
    ]


def all_nodes_reported(access: ClusterAccess) -> None:
    api = k8s_client.CoreV1Api(access.kubernetes_client())
    reported = set()
    for node in api.list_node().items:
        reported.update(_node_addresses(node))

    missing = [n.name for n in access.nodes() if not any(str(ip) in reported for ip in n.ips)]
    if missing:
        raise CheckFailed(f"nodes not reported: {', '.join(missing)}")


def control_plane_static_pods(access: ClusterAccess) -> None:
    client = access.machine_client()
    for node in access.control_plane_nodes():
        address = str(node.ips[0])
        ids = [
            (doc.get("metadata") or {}).get("id", "")
            for doc in client.resources(address, "staticpodstatus")
        ]
        missing = [pod for pod in CONTROL_PLANE_STATIC_PODS if not any(i.startswith(pod) for i in ids)]
        if missing:
            raise CheckFailed(f"missing static pods on node {address}: {missing}")


def all_nodes_ready(access: ClusterAccess) -> None:
    api = k8s_client.CoreV1Api(access.kubernetes_client())
    not_ready = []
    for node in api.list_node().items:
        conditions = node.status.conditions or []
        if not any(c.type == "Ready" and c.status == "True" for c in conditions):
            not_ready.append(node.metadata.name)
    if not_ready:
        raise CheckFailed(f"some nodes are not ready: {not_ready}")


def _pods_ready(namespace: str, label_selector: str) -> Callable[[ClusterAccess], None]:
    def check(access: ClusterAccess) -> None:
        api = k8s_client.CoreV1Api(access.kubernetes_client())
        pods = api.list_namespaced_pod(namespace, label_selector=label_selector).items
        pods = [p for p in pods if p.metadata.deletion_timestamp is None]
        if not pods:
            raise CheckFailed(f"no pods found for namespace {namespace!r} and label selector {label_selector!r}")

        not_ready = []
        for pod in pods:
            conditions = pod.status.conditions or []
            if not any(c.type == "Ready" and c.status == "True" for c in conditions):
                not_ready.append(pod.metadata.name)
        if not_ready:
            raise CheckFailed(f"some pods are not ready for {label_selector}: {not_ready}")
    return check


def pre_boot_sequence_checks() -> List[ClusterCheck]:
    return [
        ClusterCheck("etcd to be healthy", etcd_healthy),
        ClusterCheck("apid to be ready", apid_ready),
        ClusterCheck("kubelet to be healthy", kubelet_healthy),
    ]


def k8s_components_readiness_checks() -> List[ClusterCheck]:
    return [
        ClusterCheck("all k8s nodes to report", all_nodes_reported),
        ClusterCheck("all control plane static pods to be running", control_plane_static_pods),
    ]


def default_cluster_checks() -> List[ClusterCheck]:
    """Full readiness battery run after bootstrap."""
    return pre_boot_sequence_checks() + k8s_components_readiness_checks() + [
        ClusterCheck("all k8s nodes to report ready", all_nodes_ready),
        ClusterCheck("kube-proxy to report ready", _pods_ready("kube-system", "k8s-app=kube-proxy")),
        ClusterCheck("coredns to report ready", _pods_ready("kube-system", "k8s-app=kube-dns")),
    ]


def extra_cluster_checks() -> List[ClusterCheck]:
    """Additional checks appended to every battery."""
    return []


def wait(access: ClusterAccess, checks: List[ClusterCheck], reporter: Optional[Reporter] = None,
         timeout: float = 20 * 60, interval: float = POLL_INTERVAL) -> None:
    """
    Run checks in order, polling each until it passes.

    Args:
        access: Cluster handle the checks run against
        checks: Checks to run
        reporter: Progress receiver
        timeout: Overall deadline in seconds
        interval: Delay between attempts of a failing check

    Raises:
        ReadinessError: If the deadline expires before every check passes
    """
    reporter = reporter or Reporter()
    deadline = time.monotonic() + timeout

    for check in checks:
        def _report(retry_state, check=check):
            error = retry_state.outcome.exception()
            logger.debug("check %r failed: %s", check.name, error)
            reporter.update(check, error)

        retrying = Retrying(
            retry=retry_if_exception_type(_RETRYABLE),
            wait=wait_fixed(interval),
            stop=stop_after_delay(max(deadline - time.monotonic(), 0)),
            before_sleep=_report,
            reraise=True,
        )
        try:
            retrying(check, access)
        except _RETRYABLE as e:
            raise ReadinessError(f"timeout waiting for {check.name}: {e}") from e

        reporter.done(check)
