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
Provider interface and provisioning options.

A provider realizes a :class:`~taloscluster.models.ClusterRequest` on some
back-end and answers a handful of pure queries the request builder needs
before anything is created (endpoints, interface naming, disk naming).
"""

import logging
import platform
import shutil
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, IO, List, Optional, Sequence

from ..config.clientconfig import ClientConfig
from ..config.contract import VersionContract
from ..config.generate import GenOption, InterfaceSelector
from ..exceptions import ProviderError
from ..models import ClusterInfo, ClusterRequest, NetworkRequest

logger = logging.getLogger(__name__)


def check_tool_available(tool: str) -> bool:
    """Check if a command-line tool is available."""
    return shutil.which(tool) is not None


def run_tool(args: Sequence[str], error=ProviderError) -> str:
    """
    Run a back-end command line tool and return its stdout.

    Raises:
        error: If the tool is missing or exits non-zero
    """
    logger.debug("running %s", " ".join(args))
    try:
        result = subprocess.run(
            list(args),
            check=True,
            capture_output=True,
            text=True
        )
    except FileNotFoundError as e:
        raise error(f"{args[0]} not installed") from e
    except subprocess.CalledProcessError as e:
        raise error(f"{args[0]} {args[1] if len(args) > 1 else ''} failed: {e.stderr.strip()}") from e
    return result.stdout


def host_arch() -> str:
    machine = platform.machine().lower()
    return {"x86_64": "amd64", "aarch64": "arm64"}.get(machine, machine)


@dataclass
class ProvisionOptions:
    """Resolved provisioning options."""
    talos_config: Optional[ClientConfig] = None
    docker_ports: List[str] = field(default_factory=list)
    docker_ports_host_ip: str = "0.0.0.0"
    docker_image: str = ""
    bootloader_enabled: bool = True
    uefi_enabled: bool = False
    tpm1_2_enabled: bool = False
    tpm2_enabled: bool = False
    debug_shell_enabled: bool = False
    iommu_enabled: bool = False
    extra_uefi_search_paths: List[str] = field(default_factory=list)
    target_arch: str = field(default_factory=host_arch)
    json_logs_endpoint: str = ""
    kubernetes_endpoint: str = ""
    kms_endpoint: str = ""
    siderolink_enabled: bool = False


ProvisionOption = Callable[[ProvisionOptions], None]


def with_talos_config(cfg: ClientConfig) -> ProvisionOption:
    def opt(o: ProvisionOptions) -> None:
        o.talos_config = cfg
    return opt


def with_docker_ports(ports: List[str]) -> ProvisionOption:
    def opt(o: ProvisionOptions) -> None:
        o.docker_ports = list(ports)
    return opt


def with_docker_ports_host_ip(host_ip: str) -> ProvisionOption:
    def opt(o: ProvisionOptions) -> None:
        o.docker_ports_host_ip = host_ip
    return opt


def with_docker_image(image: str) -> ProvisionOption:
    def opt(o: ProvisionOptions) -> None:
        o.docker_image = image
    return opt


def with_bootloader(enabled: bool) -> ProvisionOption:
    def opt(o: ProvisionOptions) -> None:
        o.bootloader_enabled = enabled
    return opt


def with_uefi(enabled: bool) -> ProvisionOption:
    def opt(o: ProvisionOptions) -> None:
        o.uefi_enabled = enabled
    return opt


def with_tpm1_2(enabled: bool) -> ProvisionOption:
    def opt(o: ProvisionOptions) -> None:
        o.tpm1_2_enabled = enabled
    return opt


def with_tpm2(enabled: bool) -> ProvisionOption:
    def opt(o: ProvisionOptions) -> None:
        o.tpm2_enabled = enabled
    return opt


def with_debug_shell(enabled: bool) -> ProvisionOption:
    def opt(o: ProvisionOptions) -> None:
        o.debug_shell_enabled = enabled
    return opt


def with_iommu(enabled: bool) -> ProvisionOption:
    def opt(o: ProvisionOptions) -> None:
        o.iommu_enabled = enabled
    return opt


def with_extra_uefi_search_paths(paths: List[str]) -> ProvisionOption:
    def opt(o: ProvisionOptions) -> None:
        o.extra_uefi_search_paths = list(paths)
    return opt


def with_target_arch(arch: str) -> ProvisionOption:
    def opt(o: ProvisionOptions) -> None:
        o.target_arch = arch
    return opt


def with_json_logs(endpoint: str) -> ProvisionOption:
    def opt(o: ProvisionOptions) -> None:
        o.json_logs_endpoint = endpoint
    return opt


def with_kubernetes_endpoint(endpoint: str) -> ProvisionOption:
    def opt(o: ProvisionOptions) -> None:
        o.kubernetes_endpoint = endpoint
    return opt


def with_kms(endpoint: str) -> ProvisionOption:
    def opt(o: ProvisionOptions) -> None:
        o.kms_endpoint = endpoint
    return opt


def with_siderolink_agent(enabled: bool) -> ProvisionOption:
    def opt(o: ProvisionOptions) -> None:
        o.siderolink_enabled = enabled
    return opt


def resolve(*opts: ProvisionOption) -> ProvisionOptions:
    options = ProvisionOptions()
    for opt in opts:
        opt(options)
    return options


@dataclass
class Cluster:
    """A provisioned cluster."""
    provisioner: str
    info: ClusterInfo
    state_dir: Path

    @property
    def name(self) -> str:
        return self.info.cluster_name


class Provider(ABC):
    """Back-end that creates, inspects and destroys clusters."""

    name = ""

    @abstractmethod
    def create(self, request: ClusterRequest, *opts: ProvisionOption) -> Cluster:
        """Materialize a cluster."""

    @abstractmethod
    def reflect(self, cluster_name: str, state_dir: str) -> Cluster:
        """Load a previously created cluster from its persisted state."""

    @abstractmethod
    def destroy(self, cluster: Cluster) -> None:
        """Tear down every resource of a cluster."""

    @abstractmethod
    def crash_dump(self, cluster: Cluster, out: IO[str]) -> None:
        """Write node logs of a cluster to out."""

    def start(self, cluster: Cluster) -> None:
        """Start the stopped nodes of an existing cluster."""
        raise ProviderError(f"provider {self.name!r} does not support starting clusters")

    def close(self) -> None:
        """Release provider resources."""

    @abstractmethod
    def gen_options(self, network: NetworkRequest,
                    contract: Optional[VersionContract] = None) -> List[GenOption]:
        """Generator options the back-end needs in every machine config."""

    @abstractmethod
    def get_in_cluster_kubernetes_control_plane_endpoint(self, network: NetworkRequest, port: int) -> str:
        pass

    @abstractmethod
    def get_external_kubernetes_control_plane_endpoint(self, network: NetworkRequest, port: int) -> str:
        pass

    @abstractmethod
    def get_talos_api_endpoints(self, network: NetworkRequest) -> Optional[List[str]]:
        pass

    @abstractmethod
    def get_first_interface(self) -> InterfaceSelector:
        pass

    @abstractmethod
    def user_disk_name(self, index: int) -> str:
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False
