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
Ingress firewall patches for control plane and worker nodes.

"Within cluster" means every cluster CIDR except the gateway address, so the
host side of the bridge cannot reach node services that are not meant to be
public.
"""

from typing import Dict, List

from .config.container import Document
from .config.documents import network_default_action_config, network_rule_config
from .config.patcher import StrategicMergePatch, new_strategic_merge_patch
from .exceptions import UsageError
from .models import IPAddress, IPNetwork

KUBELET_PORT = 10250
APID_PORT = 50000
TRUSTD_PORT = 50001
KUBERNETES_API_PORT = 6443
ETCD_PORT_RANGE = "2379-2380"
VXLAN_PORTS = [4789, 8472]

DEFAULT_ACTIONS = ("accept", "block")

_WIDE_OPEN = [{"subnet": "0.0.0.0/0"}, {"subnet": "::/0"}]


def parse_default_action(value: str) -> str:
    """
    Validate a firewall default action.

    Raises:
        UsageError: If the action is not ``accept`` or ``block``
    """
    action = value.strip().lower()
    if action not in DEFAULT_ACTIONS:
        raise UsageError(f"{value} does not belong to DefaultAction values")
    return action


def _within_cluster(cidrs: List[IPNetwork], gateways: List[IPAddress]) -> List[Dict[str, str]]:
    return [
        {"subnet": str(cidr), "except": f"{gateway}/{gateway.max_prefixlen}"}
        for cidr, gateway in zip(cidrs, gateways)
    ]


def _only(addrs: List[IPAddress]) -> List[Dict[str, str]]:
    return [{"subnet": f"{addr}/{addr.max_prefixlen}"} for addr in addrs]


def _tcp_rule(name: str, port, ingress: List[Dict[str, str]]) -> Document:
    return network_rule_config(name, [port], "tcp", ingress)


def _vxlan_rule(ingress: List[Dict[str, str]]) -> Document:
    return network_rule_config("cni-vxlan", list(VXLAN_PORTS), "udp", ingress)


def control_plane_patch(default_action: str, cidrs: List[IPNetwork], gateways: List[IPAddress],
                        controlplane_ips: List[IPAddress]) -> StrategicMergePatch:
    """
    Firewall patch for control plane nodes.

    Args:
        default_action: ``accept`` or ``block``
        cidrs: Cluster CIDRs
        gateways: Gateway address of each CIDR
        controlplane_ips: Every address of every control plane node

    Returns:
        Strategic merge patch with the default action and ingress rules
    """
    cluster = _within_cluster(cidrs, gateways)

    return new_strategic_merge_patch(
        network_default_action_config(default_action),
        _tcp_rule("kubelet-ingress", KUBELET_PORT, cluster),
        _tcp_rule("apid-ingress", APID_PORT, list(_WIDE_OPEN)),
        _tcp_rule("trustd-ingress", TRUSTD_PORT, cluster),
        _tcp_rule("kubernetes-api-ingress", KUBERNETES_API_PORT, list(_WIDE_OPEN)),
        _tcp_rule("etcd-ingress", ETCD_PORT_RANGE, _only(controlplane_ips)),
        _vxlan_rule(cluster),
    )


def worker_patch(default_action: str, cidrs: List[IPNetwork],
                 gateways: List[IPAddress]) -> StrategicMergePatch:
    """Firewall patch for worker nodes."""
    cluster = _within_cluster(cidrs, gateways)

    return new_strategic_merge_patch(
        network_default_action_config(default_action),
        _tcp_rule("kubelet-ingress", KUBELET_PORT, cluster),
        _tcp_rule("apid-ingress", APID_PORT, cluster),
        _vxlan_rule(cluster),
    )
