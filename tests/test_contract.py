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
Tests for version contracts and release quirks.
"""

import pytest

from taloscluster.config.contract import CURRENT, VersionContract, contract_or_current
from taloscluster.exceptions import VersionParseError
from taloscluster.quirks import Quirks


class TestVersionContract:
    """Test version contract parsing and feature gates."""

    def test_parse(self):
        """Test accepted version formats."""
        assert VersionContract.parse("v1.5") == VersionContract(1, 5)
        assert VersionContract.parse("1.6") == VersionContract(1, 6)
        assert VersionContract.parse("v1.5.3-alpha.4") == VersionContract(1, 5)
        assert str(VersionContract.parse("v1.11.0")) == "v1.11"

    def test_parse_invalid(self):
        """Test rejected versions."""
        for value in ("latest", "1", "v1.x", "1.55a"):
            with pytest.raises(VersionParseError):
                VersionContract.parse(value)

    def test_ordering(self):
        """Test contract comparison."""
        assert VersionContract(1, 5) < VersionContract(1, 11)
        assert VersionContract(2, 0).greater(VersionContract(1, 99))

    def test_feature_gates(self):
        """Test version-gated features."""
        assert not VersionContract(1, 5).kubeprism_enabled()
        assert VersionContract(1, 6).kubeprism_enabled()
        assert not VersionContract(1, 10).volume_config_encryption_supported()
        assert VersionContract(1, 11).volume_config_encryption_supported()
        assert VersionContract(1, 8).secure_boot_enroll_enforcement_supported()

    def test_current(self):
        """Test that a missing contract means the newest behaviour."""
        assert contract_or_current(None) is CURRENT
        assert CURRENT.volume_config_encryption_supported()
        assert contract_or_current(VersionContract(1, 5)) == VersionContract(1, 5)


class TestQuirks:
    """Test release quirks."""

    def test_halt_if_installed(self):
        """Test the halt-if-installed gate."""
        assert not Quirks("v1.10.3").supports_halt_if_installed()
        assert Quirks("v1.11.0").supports_halt_if_installed()

    def test_unparsable_is_latest(self):
        """Test that an unknown version behaves as the latest release."""
        assert Quirks("").supports_halt_if_installed()
        assert Quirks("main").supports_halt_if_installed()

    def test_equality(self):
        """Test that quirks compare by version."""
        assert Quirks("v1.11.0") == Quirks("1.11.0")
        assert Quirks("v1.10.0") != Quirks("v1.11.0")
