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
Steps run once the provider has created a cluster.

The client config is saved, configs are optionally applied, etcd is
bootstrapped, the readiness battery runs, the kubeconfig is merged into the
user's kubeconfig and finally the cluster summary is printed.
"""

import logging
import sys
from pathlib import Path
from typing import List, Optional

import click

from . import checks, kubeconfig
from .access import ClusterAccess
from .config.clientconfig import ClientConfig, resolve_path
from .exceptions import BootstrapError, KubeconfigMergeError, MachineAPIError
from .models import CommonOptions, NodeRequest, SiderolinkRequest
from .providers.base import Cluster, Provider
from .show.main import show_cluster

logger = logging.getLogger(__name__)


def save_config(talos_config: ClientConfig, path_flag: str = "") -> Path:
    """
    Merge the bundle's client config into the user's client config.

    Args:
        talos_config: Client config produced for the new cluster
        path_flag: Value of ``--talosconfig``, if any

    Returns:
        Path of the saved client config
    """
    path = resolve_path(path_flag)
    cfg = ClientConfig.open(path)

    for rename in cfg.merge(talos_config):
        click.echo(f"renamed talosconfig context {rename}", err=True)

    cfg.save(path)
    logger.debug("saved client config to %s", path)
    return path


def merge_kubeconfig(access: ClusterAccess, path: Optional[Path] = None) -> Path:
    """
    Fetch the cluster's kubeconfig and merge it into the user's kubeconfig.

    The merged context becomes the current one. With ``force_endpoint`` set
    on the access handle, cluster servers point at it.

    Raises:
        KubeconfigMergeError: If the kubeconfig cannot be fetched, read or written
    """
    path = path or kubeconfig.default_path()

    click.echo(f"\nmerging kubeconfig into {str(path)!r}", err=True)

    try:
        data = access.kubeconfig()
    except MachineAPIError as e:
        raise KubeconfigMergeError(f"error fetching kubeconfig: {e}") from e

    new = kubeconfig.parse(data)
    if access.force_endpoint:
        new = kubeconfig.rewrite_servers(new, access.force_endpoint)

    existing = kubeconfig.load(path)
    merged, messages = kubeconfig.merge(existing, new, activate=True)
    for message in messages:
        click.echo(message)

    kubeconfig.write(path, merged)
    return path


def post_create(options: CommonOptions, cluster: Cluster, provider: Provider,
                talos_config: Optional[ClientConfig], nodes: List[NodeRequest],
                siderolink_request: Optional[SiderolinkRequest] = None) -> None:
    """
    Run the post-create steps.

    Args:
        options: Common options of the create invocation
        cluster: The created cluster
        provider: Provider that created it
        talos_config: Client config from the config bundle, if any
        nodes: Node requests, used to apply configs
        siderolink_request: SideroLink request of the cluster, if any

    Raises:
        BootstrapError: If bootstrapping fails
        ReadinessError: If the cluster does not become ready in time
        KubeconfigMergeError: If the kubeconfig cannot be merged
    """
    if talos_config is not None:
        access = ClusterAccess(cluster, talos_config, provider, options.force_endpoint)

        save_config(talos_config, options.talosconfig)

        if options.apply_config_enabled:
            access.apply_config(nodes, siderolink_request, sys.stdout)

        if not options.with_init_node:
            try:
                access.bootstrap(sys.stdout)
            except MachineAPIError as e:
                raise BootstrapError(f"bootstrap error: {e}") from e

        if not options.cluster_wait:
            show_cluster(cluster)
            return

        battery = checks.default_cluster_checks()
        if options.skip_k8s_node_readiness_check:
            battery = checks.pre_boot_sequence_checks() + checks.k8s_components_readiness_checks()
        battery += checks.extra_cluster_checks()

        checks.wait(access, battery, checks.StderrReporter(), timeout=options.cluster_wait_timeout)

        if not options.skip_kubeconfig:
            merge_kubeconfig(access)

    show_cluster(cluster)
