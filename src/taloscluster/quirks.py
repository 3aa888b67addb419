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
Boot-time behaviour differences between Talos releases.

A version that cannot be parsed is treated as the latest release.
"""

import re
from typing import Optional, Tuple

_SEMVER_RE = re.compile(r"^v?(\d+)\.(\d+)(?:\.(\d+))?")


class Quirks:
    """Quirks of the Talos release a node boots."""

    def __init__(self, talos_version: str = ""):
        self.talos_version = talos_version
        self._version: Optional[Tuple[int, int, int]] = None

        match = _SEMVER_RE.match(talos_version.strip()) if talos_version else None
        if match:
            self._version = (int(match.group(1)), int(match.group(2)), int(match.group(3) or 0))

    def _at_least(self, major: int, minor: int) -> bool:
        if self._version is None:
            return True
        return self._version >= (major, minor, 0)

    def supports_halt_if_installed(self) -> bool:
        return self._at_least(1, 11)

    def __eq__(self, other) -> bool:
        return isinstance(other, Quirks) and self._version == other._version

    def __repr__(self) -> str:
        return f"Quirks({self.talos_version!r})"
