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
Version contracts.

A contract pins the machine configuration defaults to a Talos release so that
configs generated by a newer tool still boot older nodes. The current
contract enables every feature.
"""

import re
from dataclasses import dataclass
from functools import total_ordering

from ..exceptions import VersionParseError

_VERSION_RE = re.compile(r"^v?(\d+)\.(\d+)($|\.)")


@total_ordering
@dataclass(frozen=True)
class VersionContract:
    """Talos major.minor version the generated config must be compatible with."""
    major: int
    minor: int

    @classmethod
    def parse(cls, version: str) -> "VersionContract":
        """
        Parse ``v1.5``, ``1.6``, ``v1.5.3-alpha.4`` and similar.

        Raises:
            VersionParseError: If the string is not a Talos version
        """
        match = _VERSION_RE.match(version.strip())
        if not match:
            raise VersionParseError(f"error parsing version {version!r}")
        return cls(int(match.group(1)), int(match.group(2)))

    def __lt__(self, other: "VersionContract") -> bool:
        return (self.major, self.minor) < (other.major, other.minor)

    def __str__(self) -> str:
        return f"v{self.major}.{self.minor}"

    def greater(self, other: "VersionContract") -> bool:
        return self > other

    def _at_least(self, major: int, minor: int) -> bool:
        return self >= VersionContract(major, minor)

    def pod_security_admission_enabled(self) -> bool:
        return self._at_least(1, 1)

    def stable_hostname_enabled(self) -> bool:
        return self._at_least(1, 2)

    def kubelet_default_runtime_seccomp_profile_enabled(self) -> bool:
        return self._at_least(1, 2)

    def kubernetes_allow_scheduling_on_control_planes(self) -> bool:
        return self._at_least(1, 2)

    def kubernetes_discovery_backend_disabled(self) -> bool:
        return self._at_least(1, 2)

    def apid_ext_key_usage_check_enabled(self) -> bool:
        return self._at_least(1, 3)

    def api_server_audit_policy_supported(self) -> bool:
        return self._at_least(1, 3)

    def kubelet_manifests_directory_disabled(self) -> bool:
        return self._at_least(1, 3)

    def secretbox_encryption_supported(self) -> bool:
        return self._at_least(1, 3)

    def disk_quota_support_enabled(self) -> bool:
        return self._at_least(1, 5)

    def kubeprism_enabled(self) -> bool:
        return self._at_least(1, 6)

    def host_dns_enabled(self) -> bool:
        return self._at_least(1, 7)

    def use_rsa_service_account_key(self) -> bool:
        return self._at_least(1, 7)

    def cluster_name_for_workers(self) -> bool:
        return self._at_least(1, 8)

    def host_dns_forward_kube_dns_to_host(self) -> bool:
        return self._at_least(1, 8)

    def add_exclude_from_external_load_balancer(self) -> bool:
        return self._at_least(1, 8)

    def secure_boot_enroll_enforcement_supported(self) -> bool:
        return self._at_least(1, 8)

    def volume_config_encryption_supported(self) -> bool:
        return self._at_least(1, 11)

    def multidoc_supported(self) -> bool:
        return self._at_least(1, 5)


TALOS_VERSION_1_0 = VersionContract(1, 0)
TALOS_VERSION_1_5 = VersionContract(1, 5)
TALOS_VERSION_1_6 = VersionContract(1, 6)
TALOS_VERSION_1_7 = VersionContract(1, 7)
TALOS_VERSION_1_8 = VersionContract(1, 8)
TALOS_VERSION_1_11 = VersionContract(1, 11)

# Current contract: newer than any released version.
CURRENT = VersionContract(1, 1 << 16)


def contract_or_current(contract) -> VersionContract:
    return contract if contract is not None else CURRENT
