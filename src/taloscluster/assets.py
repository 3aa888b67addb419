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
Boot asset cache.

Boot assets given as http(s) URLs are downloaded once into the user cache
directory and replaced by their local path. The cache key is the URL with
``/`` and ``:`` replaced by ``-``; an existing file is a cache hit.

Compressed single-file payloads (``.gz``, ``.xz``, ``.bz2``, ``.zst``) are
decompressed on the fly unless the URL carries ``archive=false``, which is
always set for the initramfs since it is consumed compressed.
"""

import bz2
import dataclasses
import gzip
import logging
import lzma
import os
import shutil
from pathlib import Path
from typing import Optional
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

import click
import requests
import zstandard
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_delay,
    wait_exponential_jitter,
)

from .exceptions import AssetDownloadError
from .models import BootAssets
from .utils import cache_dir as default_cache_dir

logger = logging.getLogger(__name__)

TOTAL_BUDGET = 30 * 60
ATTEMPT_CAP = 60
READ_TIMEOUT = 30 * 60
CONNECT_TIMEOUT = 30
CHUNK_SIZE = 1024 * 1024

# (field name, disable archive extraction)
DOWNLOADABLE_ASSETS = [
    ("kernel_path", False),
    ("initramfs_path", True),
    ("iso_path", False),
    ("uki_path", False),
    ("usb_path", False),
    ("disk_image_path", False),
    ("ipxe_boot_script", False),
]

_DECOMPRESSORS = {
    ".gz": gzip.open,
    ".xz": lzma.open,
    ".bz2": bz2.open,
}


class TransientHTTPError(Exception):
    """Server-side failure worth retrying."""


def is_url(path: str) -> bool:
    parsed = urlparse(path)
    return parsed.scheme in ("http", "https")


def cache_key(url: str) -> str:
    """File name of a cached URL."""
    return url.replace("/", "-").replace(":", "-")


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, (requests.ConnectionError, requests.Timeout, TransientHTTPError))


def _split_archive_param(url: str):
    parsed = urlparse(url)
    query = parse_qsl(parsed.query, keep_blank_values=True)
    archive = None
    kept = []
    for key, value in query:
        if key == "archive":
            archive = value
        else:
            kept.append((key, value))
    return urlunparse(parsed._replace(query=urlencode(kept))), archive


def _decompress(src: Path, dest: Path, suffix: str) -> None:
    if suffix == ".zst":
        with open(src, "rb") as fin, open(dest, "wb") as fout:
            zstandard.ZstdDecompressor().copy_stream(fin, fout)
        return

    with _DECOMPRESSORS[suffix](src, "rb") as fin, open(dest, "wb") as fout:
        shutil.copyfileobj(fin, fout)


def fetch(url: str, dest: Path, session: Optional[requests.Session] = None) -> None:
    """
    Download url into dest, retrying transient failures.

    Args:
        url: Source URL, optionally with ``archive=false``
        dest: Destination file
        session: Optional requests session

    Raises:
        AssetDownloadError: If the download fails permanently
    """
    request_url, archive = _split_archive_param(url)
    suffix = Path(urlparse(request_url).path).suffix
    extract = archive != "false" and (suffix in _DECOMPRESSORS or suffix == ".zst")
    http = session or requests.Session()
    tmp = dest.with_name(dest.name + ".part")

    def _attempt():
        with http.get(request_url, stream=True, timeout=(CONNECT_TIMEOUT, READ_TIMEOUT)) as resp:
            if resp.status_code >= 500 or resp.status_code == 429:
                raise TransientHTTPError(f"server returned {resp.status_code} for {request_url}")
            resp.raise_for_status()
            with open(tmp, "wb") as f:
                for chunk in resp.iter_content(chunk_size=CHUNK_SIZE):
                    if chunk:
                        f.write(chunk)

    retrying = Retrying(
        stop=stop_after_delay(TOTAL_BUDGET),
        wait=wait_exponential_jitter(initial=1, max=ATTEMPT_CAP),
        retry=retry_if_exception(_is_transient),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )

    try:
        retrying(_attempt)
        if extract:
            _decompress(tmp, dest, suffix)
            tmp.unlink()
        else:
            os.replace(tmp, dest)
    except (requests.RequestException, TransientHTTPError, OSError, EOFError,
            lzma.LZMAError, zstandard.ZstdError) as e:
        for path in (tmp, dest):
            if path.exists():
                path.unlink()
        raise AssetDownloadError(f"error downloading {url}: {e}") from e


def resolve_asset(path: str, disable_archive: bool = False, cache: Optional[Path] = None,
                  session: Optional[requests.Session] = None) -> str:
    """
    Resolve a local path or URL to a local path.

    Non-URL paths are returned untouched.
    """
    if not path or not is_url(path):
        return path

    cache = cache or default_cache_dir()
    cache.mkdir(parents=True, exist_ok=True)

    dest = cache / cache_key(path)
    if dest.exists():
        logger.debug("asset %s already cached at %s", path, dest)
        return str(dest)

    click.echo(f"downloading asset from {path!r} to {str(dest)!r}", err=True)

    url = path
    if disable_archive:
        parsed = urlparse(url)
        query = [(k, v) for k, v in parse_qsl(parsed.query, keep_blank_values=True) if k != "archive"]
        query.append(("archive", "false"))
        url = urlunparse(parsed._replace(query=urlencode(query)))

    fetch(url, dest, session=session)

    return str(dest)


def download_boot_assets(assets: BootAssets, cache: Optional[Path] = None,
                         session: Optional[requests.Session] = None) -> BootAssets:
    """
    Download and cache every boot asset given as a URL.

    Args:
        assets: Boot asset locations
        cache: Cache directory (defaults to ``~/.talos/cache``)
        session: Optional requests session

    Returns:
        A copy of assets with URLs replaced by cached file paths
    """
    resolved = {}
    for name, disable_archive in DOWNLOADABLE_ASSETS:
        resolved[name] = resolve_asset(getattr(assets, name), disable_archive, cache, session)

    return dataclasses.replace(assets, **resolved)
