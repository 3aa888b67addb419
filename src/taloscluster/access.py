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
Access to a provisioned cluster.

The machine API is reached through the ``talosctl`` binary, bound to a
temporary copy of the cluster's client config for every call. The
Kubernetes API is reached through the official python client, configured
from the kubeconfig the control plane hands out.
"""

import logging
import subprocess
import tempfile
from pathlib import Path
from typing import Any, Dict, IO, List, Optional, Sequence

import yaml
from kubernetes import config as k8s_config
from kubernetes.client import ApiClient
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_delay,
    wait_fixed,
)

from . import kubeconfig
from .config.clientconfig import ClientConfig
from .exceptions import BootstrapError, MachineAPIError
from .models import ClusterInfo, MachineType, NodeInfo, NodeRequest, SiderolinkRequest
from .providers.base import Cluster, Provider

logger = logging.getLogger(__name__)

TALOSCTL = "talosctl"

APID_WAIT_TIMEOUT = 10 * 60
APID_POLL_INTERVAL = 5


class MachineClient:
    """Machine API client driven through ``talosctl``."""

    def __init__(self, talos_config: ClientConfig, endpoints: Optional[List[str]] = None,
                 binary: str = TALOSCTL):
        self.talos_config = talos_config
        self.endpoints = list(endpoints or [])
        self.binary = binary

    def _run(self, args: Sequence[str], nodes: Optional[List[str]] = None,
             endpoints: Optional[List[str]] = None, insecure: bool = False,
             error=MachineAPIError) -> str:
        with tempfile.TemporaryDirectory(prefix="taloscluster-") as tmp:
            cmd = [self.binary]

            if not insecure:
                path = Path(tmp) / "talosconfig"
                path.write_bytes(self.talos_config.bytes())
                path.chmod(0o600)
                cmd += ["--talosconfig", str(path)]

            endpoints = endpoints if endpoints is not None else self.endpoints
            if endpoints:
                cmd += ["--endpoints", ",".join(endpoints)]
            if nodes:
                cmd += ["--nodes", ",".join(nodes)]

            cmd += list(args)

            logger.debug("running %s", " ".join(cmd))
            try:
                result = subprocess.run(
                    cmd,
                    check=True,
                    capture_output=True,
                    text=True
                )
            except FileNotFoundError as e:
                raise error(f"{self.binary} not installed") from e
            except subprocess.CalledProcessError as e:
                raise error(f"{args[0]} failed: {e.stderr.strip()}") from e

        return result.stdout

    def version(self, node: str) -> str:
        return self._run(["version", "--short"], nodes=[node])

    def bootstrap(self, node: str) -> None:
        self._run(["bootstrap"], nodes=[node], error=BootstrapError)

    def apply_config(self, node: str, data: bytes, insecure: bool = False) -> None:
        """
        Push a machine config to a node.

        Args:
            node: Node address
            data: Encoded machine config
            insecure: Use the maintenance-mode API (no client certificate)
        """
        with tempfile.NamedTemporaryFile(prefix="machineconfig-", suffix=".yaml") as f:
            f.write(data)
            f.flush()
            args = ["apply-config", "--file", f.name]
            if insecure:
                args.insert(1, "--insecure")
            self._run(args, nodes=[node], endpoints=[node] if insecure else None,
                      insecure=insecure)

    def kubeconfig(self, node: str) -> bytes:
        return self._run(["kubeconfig", "-"], nodes=[node]).encode()

    def resources(self, node: str, resource: str) -> List[Dict[str, Any]]:
        """List COSI resources of a type on a node as YAML documents."""
        out = self._run(["get", resource, "-o", "yaml"], nodes=[node])
        try:
            return [doc for doc in yaml.safe_load_all(out) if doc]
        except yaml.YAMLError as e:
            raise MachineAPIError(f"error parsing {resource} of node {node}: {e}") from e

    def services(self, node: str) -> Dict[str, Dict[str, Any]]:
        """Service status of a node keyed by service id."""
        services = {}
        for doc in self.resources(node, "services"):
            service_id = (doc.get("metadata") or {}).get("id")
            if service_id:
                services[service_id] = doc.get("spec") or {}
        return services


def _address(node: NodeInfo) -> str:
    return str(node.ips[0])


class ClusterAccess:
    """Post-provisioning handle on a cluster."""

    def __init__(self, cluster: Cluster, talos_config: ClientConfig,
                 provider: Optional[Provider] = None, force_endpoint: str = ""):
        self.cluster = cluster
        self.talos_config = talos_config
        self.provider = provider
        self.force_endpoint = force_endpoint

    @property
    def info(self) -> ClusterInfo:
        return self.cluster.info

    def nodes(self) -> List[NodeInfo]:
        return list(self.info.nodes)

    def nodes_by_type(self, *types: MachineType) -> List[NodeInfo]:
        return [n for n in self.info.nodes if n.type in types]

    def control_plane_nodes(self) -> List[NodeInfo]:
        return self.nodes_by_type(MachineType.INIT, MachineType.CONTROLPLANE)

    def machine_client(self, endpoints: Optional[List[str]] = None) -> MachineClient:
        """
        Machine API client bound to the cluster's client config.

        Endpoints default to ``force_endpoint`` when set, else to the
        endpoints of the client config's current context.
        """
        if endpoints is None and self.force_endpoint:
            endpoints = [self.force_endpoint]
        return MachineClient(self.talos_config, endpoints)

    def kubeconfig(self) -> bytes:
        """
        Fetch the admin kubeconfig from the first control plane node.

        Raises:
            MachineAPIError: If there is no control plane or the call fails
        """
        controlplanes = self.control_plane_nodes()
        if not controlplanes:
            raise MachineAPIError("cluster has no control plane nodes")
        return self.machine_client().kubeconfig(_address(controlplanes[0]))

    def kubernetes_client(self) -> ApiClient:
        """Kubernetes API client built from the cluster kubeconfig."""
        cfg = kubeconfig.parse(self.kubeconfig())
        if self.force_endpoint:
            cfg = kubeconfig.rewrite_servers(cfg, self.force_endpoint)
        return k8s_config.new_client_from_config_dict(cfg)

    def bootstrap(self, out: Optional[IO[str]] = None) -> None:
        """
        Wait for apid on the first control plane node, then bootstrap etcd.

        Raises:
            BootstrapError: If the node never answers or refuses to bootstrap
        """
        controlplanes = self.control_plane_nodes()
        if not controlplanes:
            raise BootstrapError("cluster has no control plane nodes")

        node = _address(controlplanes[0])
        client = self.machine_client()

        @retry(
            retry=retry_if_exception_type(MachineAPIError),
            wait=wait_fixed(APID_POLL_INTERVAL),
            stop=stop_after_delay(APID_WAIT_TIMEOUT),
            before_sleep=before_sleep_log(logger, logging.DEBUG),
            reraise=True,
        )
        def _wait_apid():
            client.version(node)

        if out is not None:
            out.write("waiting for API\n")
        try:
            _wait_apid()
        except MachineAPIError as e:
            raise BootstrapError(f"apid on {node} is not reachable: {e}") from e

        if out is not None:
            out.write("bootstrapping cluster\n")
        client.bootstrap(node)

    def apply_config(self, nodes: List[NodeRequest], siderolink_request: Optional[SiderolinkRequest],
                     out: IO[str]) -> None:
        """
        Apply each node's attached config over the maintenance API.

        With SideroLink, nodes are reached on their tunnel address.
        """
        client = self.machine_client()
        for node in nodes:
            if node.config is None:
                continue

            address = str(node.ips[0])
            if siderolink_request is not None and node.uuid is not None:
                addr = siderolink_request.get_addr(node.uuid)
                if addr is not None:
                    address = str(addr)

            out.write(f"applying config to node {node.name} ({address})\n")
            client.apply_config(address, node.config.bytes(), insecure=True)

    def crash_dump(self, out: IO[str]) -> None:
        if self.provider is None:
            raise MachineAPIError("no provider to collect a crash dump from")
        self.provider.crash_dump(self.cluster, out)
