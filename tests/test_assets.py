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
Tests for the boot asset cache.
"""

import gzip
from unittest.mock import MagicMock

import pytest
import requests

from taloscluster import assets
from taloscluster.exceptions import AssetDownloadError
from taloscluster.models import BootAssets


def _session(body=b"payload", status=200, error=None):
    response = MagicMock()
    response.status_code = status
    response.iter_content.return_value = [body]
    if error:
        response.raise_for_status.side_effect = error

    session = MagicMock()
    session.get.return_value.__enter__.return_value = response
    return session


class TestHelpers:
    """Test URL helpers."""

    def test_is_url(self):
        """Test URL detection."""
        assert assets.is_url("https://example.com/vmlinuz")
        assert assets.is_url("http://example.com/vmlinuz")
        assert not assets.is_url("/var/lib/vmlinuz")
        assert not assets.is_url("_out/vmlinuz-amd64")

    def test_cache_key(self):
        """Test cache file naming."""
        assert assets.cache_key("https://example.com/a/vmlinuz") == "https---example.com-a-vmlinuz"


class TestFetch:
    """Test downloading assets."""

    def test_plain(self, tmp_path):
        """Test a plain download."""
        dest = tmp_path / "vmlinuz"

        assets.fetch("https://example.com/vmlinuz", dest, session=_session(b"kernel"))

        assert dest.read_bytes() == b"kernel"
        assert not (tmp_path / "vmlinuz.part").exists()

    def test_decompresses(self, tmp_path):
        """Test that compressed payloads are extracted."""
        dest = tmp_path / "vmlinuz"

        assets.fetch("https://example.com/vmlinuz.gz", dest, session=_session(gzip.compress(b"kernel")))

        assert dest.read_bytes() == b"kernel"

    def test_archive_false(self, tmp_path):
        """Test that archive=false keeps the payload and is not sent upstream."""
        dest = tmp_path / "initramfs"
        body = gzip.compress(b"initramfs")
        session = _session(body)

        assets.fetch("https://example.com/initramfs.gz?archive=false", dest, session=session)

        assert dest.read_bytes() == body
        assert session.get.call_args[0][0] == "https://example.com/initramfs.gz"

    def test_permanent_failure(self, tmp_path):
        """Test that client errors are not retried and leave no files behind."""
        dest = tmp_path / "vmlinuz"
        session = _session(error=requests.HTTPError("404 Client Error"))

        with pytest.raises(AssetDownloadError, match="error downloading"):
            assets.fetch("https://example.com/vmlinuz", dest, session=session)

        assert session.get.call_count == 1
        assert not dest.exists()


class TestResolve:
    """Test resolving boot assets."""

    def test_local_path_untouched(self, tmp_path):
        """Test that local paths are returned as is."""
        assert assets.resolve_asset("/boot/vmlinuz", cache=tmp_path) == "/boot/vmlinuz"
        assert assets.resolve_asset("", cache=tmp_path) == ""

    def test_cache_hit(self, tmp_path):
        """Test that cached assets are not downloaded again."""
        url = "https://example.com/vmlinuz"
        (tmp_path / assets.cache_key(url)).write_bytes(b"cached")
        session = _session()

        path = assets.resolve_asset(url, cache=tmp_path, session=session)

        assert path == str(tmp_path / assets.cache_key(url))
        session.get.assert_not_called()

    def test_download_boot_assets(self, tmp_path, capsys):
        """Test that URLs are replaced and the initramfs stays compressed."""
        body = gzip.compress(b"initramfs")
        session = _session(body)
        boot = BootAssets(kernel_path="/boot/vmlinuz", initramfs_path="https://example.com/initramfs.gz")

        resolved = assets.download_boot_assets(boot, cache=tmp_path, session=session)

        assert resolved.kernel_path == "/boot/vmlinuz"
        assert resolved.initramfs_path == str(tmp_path / assets.cache_key(boot.initramfs_path))
        assert (tmp_path / assets.cache_key(boot.initramfs_path)).read_bytes() == body
        assert boot.initramfs_path == "https://example.com/initramfs.gz"
        assert "downloading asset" in capsys.readouterr().err
