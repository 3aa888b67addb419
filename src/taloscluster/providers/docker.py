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
Container provider driven through the docker CLI.

Every node is a privileged Talos container on a dedicated bridge network.
The machine config travels in the ``USERDATA`` environment variable.
"""

import base64
import logging
import shutil
from typing import IO, List, Optional

from ..config.contract import VersionContract
from ..config.generate import (
    GenOption,
    InterfaceSelector,
    with_network_nameservers,
    with_network_options,
    with_persist,
)
from ..exceptions import ProviderCreateError, ProviderError
from ..models import (
    DEFAULT_NODE_IMAGE,
    ClusterInfo,
    ClusterRequest,
    NetworkInfo,
    NetworkRequest,
    NodeInfo,
    NodeRequest,
)
from ..network import NODES_OFFSET, join_host_port, nth_ip_in_network
from .base import (
    Cluster,
    Provider,
    ProvisionOption,
    ProvisionOptions,
    check_tool_available,
    resolve,
    run_tool,
)
from .state import cluster_dir, load_state, save_state

logger = logging.getLogger(__name__)

DOCKER = "docker"

LABEL_OWNED = "talos.owned"
LABEL_CLUSTER_NAME = "talos.cluster.name"
LABEL_TYPE = "talos.type"

TALOS_API_PORT = 50000

# Anonymous volumes backing the writable paths of a read-only Talos rootfs.
NODE_VOLUMES = [
    "/var",
    "/system/state",
    "/etc/cni",
    "/etc/kubernetes",
    "/usr/libexec/kubernetes",
    "/opt",
]

NODE_TMPFS = ["/run", "/system", "/tmp"]


def _docker(*args: str, error=ProviderError) -> str:
    return run_tool([DOCKER, *args], error=error)


def _port_args(host_ip: str, ports: List[str]) -> List[str]:
    """Translate ``host:container/proto`` specs into ``-p`` flags."""
    args = []
    for spec in ports:
        mapping, _, proto = spec.partition("/")
        host_port, _, container_port = mapping.partition(":")
        if not container_port:
            container_port = host_port
        args += ["-p", f"{join_host_port(host_ip, host_port)}:{container_port}/{proto or 'tcp'}"]
    return args


class DockerProvider(Provider):
    """Talos nodes as docker containers."""

    name = DOCKER

    def create(self, request: ClusterRequest, *opts: ProvisionOption) -> Cluster:
        """
        Create the bridge network and one container per node.

        Args:
            request: Fully populated cluster request
            *opts: Provisioning options

        Returns:
            The provisioned cluster

        Raises:
            ProviderCreateError: If docker is missing or refuses a request
        """
        if not check_tool_available(DOCKER):
            raise ProviderCreateError(
                "docker not installed. Install with: yum install docker"
            )

        options = resolve(*opts)
        directory = cluster_dir(request.state_directory, request.name)
        directory.mkdir(parents=True, exist_ok=True)

        self._create_network(request)

        nodes = []
        controlplanes_seen = 0
        for node in request.nodes:
            publish_api = node.type.is_control_plane and controlplanes_seen == 0
            if node.type.is_control_plane:
                controlplanes_seen += 1
            nodes.append(self._create_node(request, node, options, publish_api))

        info = ClusterInfo(
            cluster_name=request.name,
            network=NetworkInfo(
                name=request.network.name,
                cidrs=list(request.network.cidrs),
                gateway_addrs=list(request.network.gateway_addrs),
                mtu=request.network.mtu,
                nameservers=list(request.network.nameservers),
            ),
            nodes=nodes,
            kubernetes_endpoint=options.kubernetes_endpoint,
            extra={"image": options.docker_image or DEFAULT_NODE_IMAGE},
        )
        save_state(directory, DOCKER, info)

        return Cluster(provisioner=DOCKER, info=info, state_dir=directory)

    def _create_network(self, request: ClusterRequest) -> None:
        network = request.network
        args = [
            "network", "create",
            "--driver", "bridge",
            "--label", f"{LABEL_OWNED}=true",
            "--label", f"{LABEL_CLUSTER_NAME}={request.name}",
            "-o", f"com.docker.network.driver.mtu={network.mtu}",
        ]
        for cidr, gateway in zip(network.cidrs, network.gateway_addrs):
            if cidr.version == 6 and network.docker_disable_ipv6:
                continue
            args += ["--subnet", str(cidr), "--gateway", str(gateway)]
        if any(c.version == 6 for c in network.cidrs) and not network.docker_disable_ipv6:
            args.append("--ipv6")
        args.append(network.name)

        logger.info("creating network %s", network.name)
        _docker(*args, error=ProviderCreateError)

    def _create_node(self, request: ClusterRequest, node: NodeRequest,
                     options: ProvisionOptions, publish_api: bool) -> NodeInfo:
        image = options.docker_image or DEFAULT_NODE_IMAGE

        args = [
            "run", "-d",
            "--name", node.name,
            "--hostname", node.name,
            "--privileged",
            "--read-only",
            "--security-opt", "seccomp=unconfined",
            "--network", request.network.name,
            "--cpus", f"{node.nano_cpus / 1e9:g}",
            "--memory", str(node.memory),
            "--label", f"{LABEL_OWNED}=true",
            "--label", f"{LABEL_CLUSTER_NAME}={request.name}",
            "--label", f"{LABEL_TYPE}={node.type.value}",
            "-e", "PLATFORM=container",
        ]

        if node.config is not None and not node.skip_injecting_config:
            userdata = base64.b64encode(node.config.bytes()).decode()
            args += ["-e", f"USERDATA={userdata}"]

        for ip in node.ips:
            if ip.version == 4:
                args += ["--ip", str(ip)]
            elif not request.network.docker_disable_ipv6:
                args += ["--ip6", str(ip)]

        for path in NODE_TMPFS:
            args += ["--mount", f"type=tmpfs,destination={path}"]
        for path in NODE_VOLUMES:
            args += ["--mount", f"type=volume,destination={path}"]
        for mount in node.mounts:
            args += ["--mount", mount]

        args += _port_args(options.docker_ports_host_ip, options.docker_ports)
        if publish_api:
            for port in [TALOS_API_PORT] + list(request.network.load_balancer_ports):
                args += ["-p", f"{join_host_port(options.docker_ports_host_ip, port)}:{port}/tcp"]

        args.append(image)

        logger.info("creating container %s", node.name)
        container_id = _docker(*args, error=ProviderCreateError).strip()

        return NodeInfo(
            name=node.name,
            type=node.type,
            ips=list(node.ips),
            nano_cpus=node.nano_cpus,
            memory=node.memory,
            uuid=node.uuid,
            id=container_id,
        )

    def reflect(self, cluster_name: str, state_dir: str) -> Cluster:
        directory = cluster_dir(state_dir, cluster_name)
        provisioner, info = load_state(directory)
        if provisioner != DOCKER:
            raise ProviderError(f"cluster {cluster_name!r} was created by {provisioner!r}, not {DOCKER!r}")
        return Cluster(provisioner=DOCKER, info=info, state_dir=directory)

    def destroy(self, cluster: Cluster) -> None:
        """Remove the node containers, their volumes, the network and the state dir."""
        for node in cluster.info.nodes:
            logger.info("destroying container %s", node.name)
            try:
                _docker("rm", "--force", "--volumes", node.name)
            except ProviderError as e:
                if "No such container" not in str(e):
                    raise

        try:
            _docker("network", "rm", cluster.info.network.name)
        except ProviderError as e:
            if "not found" not in str(e):
                raise

        shutil.rmtree(cluster.state_dir, ignore_errors=True)

    def start(self, cluster: Cluster) -> None:
        names = [node.name for node in cluster.info.nodes]
        if names:
            _docker("start", *names)

    def crash_dump(self, cluster: Cluster, out: IO[str]) -> None:
        for node in cluster.info.nodes:
            out.write(f"--- {node.name} ---\n")
            try:
                out.write(_docker("logs", "--tail", "1000", node.name))
            except ProviderError as e:
                out.write(f"error collecting logs: {e}\n")

    def gen_options(self, network: NetworkRequest,
                    contract: Optional[VersionContract] = None) -> List[GenOption]:
        opts = [with_persist(False)]
        if network.nameservers:
            opts.append(with_network_options(
                with_network_nameservers(*[str(ns) for ns in network.nameservers])
            ))
        return opts

    def _first_node_address(self, network: NetworkRequest) -> str:
        return str(nth_ip_in_network(network.cidrs[0], NODES_OFFSET))

    def get_in_cluster_kubernetes_control_plane_endpoint(self, network: NetworkRequest, port: int) -> str:
        return f"https://{join_host_port(self._first_node_address(network), port)}"

    def get_external_kubernetes_control_plane_endpoint(self, network: NetworkRequest, port: int) -> str:
        return f"https://{join_host_port(self._first_node_address(network), port)}"

    def get_talos_api_endpoints(self, network: NetworkRequest) -> Optional[List[str]]:
        return None

    def get_first_interface(self) -> InterfaceSelector:
        return "eth0"

    def user_disk_name(self, index: int) -> str:
        return ""
