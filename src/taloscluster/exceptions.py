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
Exception classes for cluster planning, provisioning and post-create errors.
"""


class TalosClusterError(Exception):
    """Base exception for all taloscluster errors."""


class UsageError(TalosClusterError):
    """Raised when a flag combination is invalid."""


class ChaosFlagsWithoutMasterError(UsageError):
    """Raised when network chaos parameters are set without --with-network-chaos."""


class InvalidCIDRError(TalosClusterError):
    """Raised when a network CIDR is malformed or too small."""


class NoFamilyEnabledError(TalosClusterError):
    """Raised when neither IPv4 nor IPv6 is enabled."""


class NameserverParseError(TalosClusterError):
    """Raised when a nameserver is not a literal IP address."""


class VersionParseError(TalosClusterError):
    """Raised when a Talos or Kubernetes version cannot be parsed."""


class MalformedUserVolumeError(TalosClusterError):
    """Raised when a user volume specification has an odd number of tokens."""


class TooPreciseError(TalosClusterError):
    """Raised when a CPU share does not resolve to whole nano-CPUs."""


class NotRationalError(TalosClusterError):
    """Raised when a CPU share is not a rational number."""


class ConfigError(TalosClusterError):
    """Raised when machine configuration cannot be generated."""


class PatchLoadError(ConfigError):
    """Raised when a config patch cannot be parsed."""


class JSON6902MultiDocError(ConfigError):
    """Raised when a JSON-6902 patch is applied to a multi-document config."""


class ClientConfigError(TalosClusterError):
    """Raised when the client configuration cannot be read or written."""


class AssetDownloadError(TalosClusterError):
    """Raised when a boot asset cannot be downloaded."""


class ProviderError(TalosClusterError):
    """Raised when a provider operation fails."""


class ProviderCreateError(ProviderError):
    """Raised when the provider refuses to create the cluster."""


class MachineAPIError(TalosClusterError):
    """Raised when a machine API call fails."""


class BootstrapError(MachineAPIError):
    """Raised when bootstrapping the control plane fails."""


class ReadinessError(TalosClusterError):
    """Raised when the cluster does not become ready in time."""


class KubeconfigMergeError(TalosClusterError):
    """Raised when the user's kubeconfig cannot be read or written."""


class PortAllocExhaustedError(TalosClusterError):
    """Raised when no distinct set of dynamic ports could be allocated."""
