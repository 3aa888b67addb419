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
taloscluster: Local Talos Kubernetes clusters

Provisions disposable Talos Linux clusters on the local host, either as
containers or as virtual machines, and drives them to a ready Kubernetes
control plane.
"""

__version__ = "0.1.0"
__author__ = "Cong Wang"

# Export main runtime components for easy access
from .maker import ClusterMaker
from .makers import create_docker_cluster, create_qemu_cluster
from .access import ClusterAccess, MachineClient
from .models import (
    ClusterRequest,
    CommonOptions,
    DockerOptions,
    MachineType,
    NodeRequest,
    QemuOptions,
)
from .providers import factory
from .exceptions import (
    TalosClusterError,
    UsageError,
    ConfigError,
    ProviderError,
    MachineAPIError,
    BootstrapError,
    ReadinessError,
)

__all__ = [
    # Core classes
    'ClusterMaker',
    'ClusterAccess',
    'MachineClient',
    'create_docker_cluster',
    'create_qemu_cluster',
    'factory',
    # Models
    'ClusterRequest',
    'CommonOptions',
    'DockerOptions',
    'MachineType',
    'NodeRequest',
    'QemuOptions',
    # Exceptions
    'TalosClusterError',
    'UsageError',
    'ConfigError',
    'ProviderError',
    'MachineAPIError',
    'BootstrapError',
    'ReadinessError',
]
