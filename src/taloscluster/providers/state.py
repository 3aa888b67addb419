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
Persisted cluster state (``<state>/<cluster>/state.yaml``).
"""

import ipaddress
import uuid
from pathlib import Path
from typing import Any, Dict, Tuple, Union

import yaml

from ..exceptions import ProviderError
from ..models import ClusterInfo, MachineType, NetworkInfo, NodeInfo

STATE_FILE = "state.yaml"


def cluster_dir(state_dir: Union[str, Path], cluster_name: str) -> Path:
    return Path(state_dir).expanduser() / cluster_name


def _node_to_dict(node: NodeInfo) -> Dict[str, Any]:
    return {
        "name": node.name,
        "type": node.type.value,
        "ips": [str(ip) for ip in node.ips],
        "nano_cpus": node.nano_cpus,
        "memory": node.memory,
        "disk_size": node.disk_size,
        "uuid": str(node.uuid) if node.uuid else "",
        "id": node.id,
    }


def _node_from_dict(data: Dict[str, Any]) -> NodeInfo:
    return NodeInfo(
        name=data["name"],
        type=MachineType(data["type"]),
        ips=[ipaddress.ip_address(ip) for ip in data.get("ips") or []],
        nano_cpus=data.get("nano_cpus", 0),
        memory=data.get("memory", 0),
        disk_size=data.get("disk_size", 0),
        uuid=uuid.UUID(data["uuid"]) if data.get("uuid") else None,
        id=data.get("id", ""),
    )


def info_to_dict(info: ClusterInfo) -> Dict[str, Any]:
    return {
        "cluster_name": info.cluster_name,
        "network": {
            "name": info.network.name,
            "cidrs": [str(c) for c in info.network.cidrs],
            "gateway_addrs": [str(g) for g in info.network.gateway_addrs],
            "mtu": info.network.mtu,
            "nameservers": [str(n) for n in info.network.nameservers],
        },
        "nodes": [_node_to_dict(n) for n in info.nodes],
        "kubernetes_endpoint": info.kubernetes_endpoint,
        "extra": info.extra,
    }


def info_from_dict(data: Dict[str, Any]) -> ClusterInfo:
    net = data.get("network") or {}
    return ClusterInfo(
        cluster_name=data["cluster_name"],
        network=NetworkInfo(
            name=net.get("name", ""),
            cidrs=[ipaddress.ip_network(c) for c in net.get("cidrs") or []],
            gateway_addrs=[ipaddress.ip_address(g) for g in net.get("gateway_addrs") or []],
            mtu=net.get("mtu", 0),
            nameservers=[ipaddress.ip_address(n) for n in net.get("nameservers") or []],
        ),
        nodes=[_node_from_dict(n) for n in data.get("nodes") or []],
        kubernetes_endpoint=data.get("kubernetes_endpoint", ""),
        extra=data.get("extra") or {},
    )


def save_state(directory: Path, provisioner: str, info: ClusterInfo) -> Path:
    """Write the cluster state file, creating the directory."""
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / STATE_FILE
    data = {"provisioner": provisioner, "cluster": info_to_dict(info)}
    with open(path, "w") as f:
        yaml.safe_dump(data, f, sort_keys=False, default_flow_style=False)
    return path


def load_state(directory: Path) -> Tuple[str, ClusterInfo]:
    """
    Read the cluster state file.

    Returns:
        (provisioner name, cluster info)

    Raises:
        ProviderError: If the state is missing or unreadable
    """
    path = directory / STATE_FILE
    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError as e:
        raise ProviderError(f"cluster state not found at {str(path)!r}") from e
    except (OSError, yaml.YAMLError) as e:
        raise ProviderError(f"failed to read cluster state {str(path)!r}: {e}") from e

    try:
        return data["provisioner"], info_from_dict(data["cluster"])
    except (KeyError, TypeError, ValueError) as e:
        raise ProviderError(f"invalid cluster state {str(path)!r}: {e}") from e
