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
Cluster providers.
"""

from ..exceptions import ProviderError
from .base import Cluster, Provider, ProvisionOptions, resolve
from .docker import DockerProvider
from .qemu import QemuProvider

PROVIDERS = {
    DockerProvider.name: DockerProvider,
    QemuProvider.name: QemuProvider,
}


def factory(name: str) -> Provider:
    """
    Instantiate a provider by name.

    Raises:
        ProviderError: If the provider is unknown
    """
    try:
        return PROVIDERS[name]()
    except KeyError:
        raise ProviderError(f"unsupported provisioner {name!r}") from None


__all__ = [
    "Cluster",
    "DockerProvider",
    "Provider",
    "ProvisionOptions",
    "QemuProvider",
    "factory",
    "resolve",
]
