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
Cluster request builder.

:class:`ClusterMaker` turns the common create options into a partial cluster
request plus the generator, bundle and provisioning options every provider
shares. Provider-specific code then extends the request and the option lists
before calling :meth:`ClusterMaker.create_cluster`, which generates the config
bundle, attaches configs to nodes and hands the request to the provider.
"""

import logging
import os
import shutil
import sys
import uuid
from typing import List, Optional

from . import postcreate
from .config.bundle import (
    Bundle,
    BundleOption,
    InputOptions,
    with_existing_configs,
    with_input_options,
    with_patch,
    with_patch_control_plane,
    with_patch_worker,
)
from .config.clientconfig import ClientConfig
from .config.contract import VersionContract
from .config.encoder import CommentsPolicy
from .config.generate import (
    GenOption,
    parse_kubernetes_version,
    with_additional_subject_alt_names,
    with_cluster_cni_config,
    with_cluster_discovery,
    with_debug,
    with_dns_domain,
    with_endpoint_list,
    with_kubeprism_port,
    with_kubespan,
    with_local_api_server_port,
    with_network_options,
    with_registry_insecure_skip_verify,
    with_registry_mirror,
    with_version_contract,
)
from .config.patcher import load_patches, new_strategic_merge_patch
from .exceptions import (
    ConfigError,
    NotRationalError,
    PatchLoadError,
    ProviderError,
    TooPreciseError,
    UsageError,
    VersionParseError,
)
from .models import (
    DEFAULT_CONTROL_PLANE_PORT,
    DEFAULT_KUBEPRISM_PORT,
    ClusterRequest,
    CommonOptions,
    MachineType,
    NetworkRequest,
    NodeRequest,
)
from .network import (
    join_host_port,
    parse_cpu_share,
    plan_network,
    split_host_port,
    validate_controlplanes,
)
from .providers.base import (
    Cluster,
    Provider,
    ProvisionOption,
    with_json_logs,
    with_kubernetes_endpoint,
    with_talos_config,
)
from .wireguard import WIREGUARD_LISTEN_PORT, WireguardConfigBundle

logger = logging.getLogger(__name__)

JSON_LOGS_PORT = 4003

MIB = 1024 * 1024


def self_executable() -> str:
    """Absolute path of the running program, resolved through PATH for bare names."""
    argv0 = sys.argv[0]
    if not os.path.dirname(argv0):
        argv0 = shutil.which(argv0) or argv0
    return os.path.abspath(argv0)


def _parse_cpus(value: str, flag: str) -> int:
    try:
        return parse_cpu_share(value)
    except (TooPreciseError, NotRationalError) as e:
        raise type(e)(f"error parsing --{flag}: {e}") from e


class ClusterMaker:
    """
    Builds a cluster request from the common create options.

    The constructor performs address planning, version contract parsing and
    node request construction, and prepares the shared option lists.
    Providers then add to them through the ``add_*`` methods.
    """

    def __init__(self, options: CommonOptions, provider: Provider, talos_version: str):
        """
        Args:
            options: Common create options
            provider: Provider that will create the cluster
            talos_version: Talos version the nodes boot, used for the version contract

        Raises:
            VersionParseError: If talos_version is not a version or the
                Kubernetes version does not parse
            InvalidCIDRError: If the network CIDR is invalid or too small
            UsageError: If the node counts or patches are invalid
        """
        self.options = options
        self.provider = provider
        self.talos_version = talos_version

        self.gen_opts: List[GenOption] = []
        self.bundle_opts: List[BundleOption] = []
        self.provision_opts: List[ProvisionOption] = []
        self.in_cluster_endpoint = ""

        self.bundle: Optional[Bundle] = None
        self.talos_config: Optional[ClientConfig] = None
        self.cluster: Optional[Cluster] = None

        self._version_contract: Optional[VersionContract] = None
        self._init()

    def _init(self) -> None:
        options = self.options

        if options.talos_version != "latest":
            try:
                self._version_contract = VersionContract.parse(self.talos_version)
            except VersionParseError as e:
                raise VersionParseError(f"error parsing Talos version {self.talos_version!r}: {e}") from e

        self.kubernetes_version = parse_kubernetes_version(options.kubernetes_version)

        self._plan = plan_network(options.network_cidr, options.network_ipv4, options.network_ipv6,
                                  options.controlplanes, options.workers)

        self.request = ClusterRequest(
            name=options.cluster_name,
            network=NetworkRequest(
                name=options.cluster_name,
                cidrs=list(self._plan.cidrs),
                gateway_addrs=list(self._plan.gateways),
                mtu=options.network_mtu,
                load_balancer_ports=[options.control_plane_port],
            ),
            state_directory=options.state_dir,
            self_executable=self_executable(),
        )

        self.request.nodes = self._node_requests()

        self._init_provision_options()
        self._init_bundle_options()
        self._init_gen_options()

    def _node_requests(self) -> List[NodeRequest]:
        options = self.options

        validate_controlplanes(options.controlplanes)

        cp_cpus = _parse_cpus(options.controlplane_cpus, "cpus")
        worker_cpus = _parse_cpus(options.workers_cpus, "cpus-workers")

        nodes = []
        for i in range(options.controlplanes + options.workers):
            node_uuid = uuid.uuid4()

            if i < options.controlplanes:
                node_type = MachineType.CONTROLPLANE
                if i == 0 and options.with_init_node:
                    node_type = MachineType.INIT
                name = f"{options.cluster_name}-controlplane-{i + 1}"
                memory = options.controlplane_memory * MIB
                nano_cpus = cp_cpus
            else:
                node_type = MachineType.WORKER
                name = f"{options.cluster_name}-worker-{i - options.controlplanes + 1}"
                memory = options.workers_memory * MIB
                nano_cpus = worker_cpus

            if options.with_uuid_hostnames:
                name = f"machine-{node_uuid}"

            nodes.append(NodeRequest(
                name=name,
                type=node_type,
                ips=self._plan.node_ips(i),
                memory=memory,
                nano_cpus=nano_cpus,
                uuid=node_uuid,
                skip_injecting_config=options.skip_injecting_config,
            ))

        return nodes

    def _init_provision_options(self) -> None:
        options = self.options
        network = self.request.network

        if options.with_json_logs:
            self.provision_opts.append(
                with_json_logs(join_host_port(network.gateway_addrs[0], JSON_LOGS_PORT)))

        endpoint = self.provider.get_external_kubernetes_control_plane_endpoint(
            network, options.control_plane_port)
        self.provision_opts.append(with_kubernetes_endpoint(endpoint))

    def _init_bundle_options(self) -> None:
        options = self.options

        for patches, add in ((options.config_patch, with_patch),
                             (options.config_patch_control_plane, with_patch_control_plane),
                             (options.config_patch_worker, with_patch_worker)):
            try:
                loaded = load_patches(patches)
            except PatchLoadError as e:
                raise PatchLoadError(f"error parsing config JSON patch: {e}") from e
            self.bundle_opts.append(add(loaded))

        if options.with_json_logs:
            endpoint = join_host_port(self.request.network.gateway_addrs[0], JSON_LOGS_PORT)
            self.bundle_opts.append(with_patch([new_strategic_merge_patch({
                "machine": {
                    "logging": {
                        "destinations": [
                            {"endpoint": f"tcp://{endpoint}", "format": "json_lines"},
                        ],
                    },
                },
            })]))

    def _init_gen_options(self) -> None:
        options = self.options
        network = self.request.network

        self.gen_opts += [
            with_debug(options.config_debug),
            with_dns_domain(options.dns_domain),
            with_cluster_discovery(options.enable_cluster_discovery),
        ]
        self.gen_opts += self.provider.gen_options(network, self._version_contract)

        for mirror in options.registry_mirrors:
            host, sep, url = mirror.partition("=")
            if not sep or not host or not url:
                raise UsageError(f"invalid registry mirror spec: {mirror!r}")
            self.gen_opts.append(with_registry_mirror(host, url))

        for host in options.registry_insecure:
            self.gen_opts.append(with_registry_insecure_skip_verify(host))

        if self._version_contract is not None:
            self.gen_opts.append(with_version_contract(self._version_contract))

        if options.custom_cni_url:
            self.gen_opts.append(with_cluster_cni_config({
                "name": "custom",
                "urls": [options.custom_cni_url],
            }))

        if options.kubeprism_port != DEFAULT_KUBEPRISM_PORT:
            self.gen_opts.append(with_kubeprism_port(options.kubeprism_port))

        if options.control_plane_port != DEFAULT_CONTROL_PLANE_PORT:
            self.gen_opts.append(with_local_api_server_port(options.control_plane_port))

        if options.enable_kubespan:
            self.gen_opts.append(with_network_options(with_kubespan()))

        self.gen_opts.append(with_endpoint_list(self._endpoint_list()))

    def _endpoint_list(self) -> List[str]:
        options = self.options
        endpoints = self.provider.get_talos_api_endpoints(self.request.network)

        if options.force_endpoint:
            self.gen_opts.append(with_additional_subject_alt_names([options.force_endpoint]))
            return [options.force_endpoint]

        if options.force_init_node_as_endpoint:
            return [str(self._plan.ips[0][0])]

        if endpoints:
            sans = []
            for endpoint in endpoints:
                try:
                    host, _ = split_host_port(endpoint)
                except ValueError:
                    host = endpoint
                sans.append(host)
            self.gen_opts.append(with_additional_subject_alt_names(sans))
            return list(endpoints)

        # default to the control plane addresses of the first family
        return [str(self._plan.ips[0][i]) for i in range(options.controlplanes)]

    def partial_request(self) -> ClusterRequest:
        """Cluster request to be extended by the provider-specific code."""
        return self.request

    def add_gen_options(self, *opts: GenOption) -> None:
        self.gen_opts.extend(opts)

    def add_provision_options(self, *opts: ProvisionOption) -> None:
        self.provision_opts.extend(opts)

    def add_bundle_options(self, *opts: BundleOption) -> None:
        self.bundle_opts.extend(opts)

    def set_in_cluster_endpoint(self, endpoint: str) -> None:
        self.in_cluster_endpoint = endpoint

    def cidr4(self):
        return self._plan.cidr4

    def ips(self):
        return self._plan.ips

    def version_contract(self) -> Optional[VersionContract]:
        return self._version_contract

    def _finalize(self) -> None:
        options = self.options

        if options.input_dir:
            self.bundle_opts.append(with_existing_configs(options.input_dir))
        else:
            if not self.in_cluster_endpoint:
                self.in_cluster_endpoint = self.provider.get_in_cluster_kubernetes_control_plane_endpoint(
                    self.request.network, options.control_plane_port)

            self.bundle_opts.append(with_input_options(InputOptions(
                cluster_name=options.cluster_name,
                endpoint=self.in_cluster_endpoint,
                kubernetes_version=self.kubernetes_version,
                gen_options=list(self.gen_opts),
            )))

        self.bundle = Bundle.new(*self.bundle_opts)
        self.talos_config = self.bundle.talos_config()

        if self.talos_config is None:
            if options.cluster_wait:
                raise ConfigError("no talosconfig in the config bundle: cannot wait for cluster")
            if options.apply_config_enabled:
                raise ConfigError("no talosconfig in the config bundle: cannot apply config")

        if options.skip_injecting_config:
            types = [MachineType.CONTROLPLANE, MachineType.WORKER]
            if options.with_init_node:
                types.insert(0, MachineType.INIT)
            self.bundle.write(".", CommentsPolicy.ALL, *types)

        if self.talos_config is not None:
            self.provision_opts.append(with_talos_config(self.talos_config))

        self._apply_node_configs()

    def _apply_node_configs(self) -> None:
        options = self.options
        nodes = self.request.nodes

        wireguard = None
        if options.wireguard_cidr:
            wireguard = WireguardConfigBundle.build(
                self._plan.ips[0][:len(nodes)], options.wireguard_cidr, WIREGUARD_LISTEN_PORT,
                options.controlplanes)

        for node in nodes:
            if node.type == MachineType.INIT:
                cfg = self.bundle.init()
            elif node.type == MachineType.WORKER:
                cfg = self.bundle.worker()
            else:
                cfg = self.bundle.control_plane()

            if cfg is None:
                raise ConfigError(f"no {node.type.value} config in the config bundle")

            if wireguard is not None:
                cfg = wireguard.patch_config(node.ips[0], cfg)

            node.config = cfg

    def create_cluster(self, request: ClusterRequest) -> Cluster:
        """
        Generate configs, attach them to the nodes and create the cluster.

        Args:
            request: The extended request returned by :meth:`partial_request`

        Returns:
            The created cluster

        Raises:
            ConfigError: If the config bundle cannot be built
            ProviderError: If the provider fails to create the cluster
        """
        self.request = request
        self._finalize()

        logger.debug("creating cluster %s with %d nodes", request.name, len(request.nodes))

        try:
            self.cluster = self.provider.create(self.request, *self.provision_opts)
        except ProviderError:
            if self.options.crashdump_on_failure:
                self._crash_dump()
            raise

        return self.cluster

    def _crash_dump(self) -> None:
        try:
            cluster = self.provider.reflect(self.options.cluster_name, self.options.state_dir)
            self.provider.crash_dump(cluster, sys.stderr)
        except ProviderError as e:
            logger.warning("failed to collect crash dump: %s", e)

    def post_create(self) -> None:
        """Run the post-create steps against the created cluster."""
        if self.cluster is None:
            raise ProviderError("cluster has not been created")

        postcreate.post_create(self.options, self.cluster, self.provider, self.talos_config,
                               self.request.nodes, self.request.siderolink_request)
