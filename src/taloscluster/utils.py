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
Utility functions shared by the planners, providers and commands.

This module provides the user-level directory layout (``~/.talos``) and the
parsers for the human-friendly duration and size strings accepted on the
command line.
"""

import re
from pathlib import Path

TALOS_DIR_NAME = ".talos"

_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}

_DURATION_RE = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")

_SIZE_UNITS = {
    "": 1,
    "b": 1,
    "k": 1000,
    "kb": 1000,
    "m": 1000 ** 2,
    "mb": 1000 ** 2,
    "g": 1000 ** 3,
    "gb": 1000 ** 3,
    "t": 1000 ** 4,
    "tb": 1000 ** 4,
    "ki": 1024,
    "kib": 1024,
    "mi": 1024 ** 2,
    "mib": 1024 ** 2,
    "gi": 1024 ** 3,
    "gib": 1024 ** 3,
    "ti": 1024 ** 4,
    "tib": 1024 ** 4,
}

_SIZE_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([a-zA-Z]*)\s*$")


def talos_directory() -> Path:
    """
    Get the per-user Talos directory.

    Returns:
        Path to ``~/.talos``
    """
    return Path.home() / TALOS_DIR_NAME


def default_state_dir() -> Path:
    """Directory holding the provider state of every local cluster."""
    return talos_directory() / "clusters"


def cache_dir() -> Path:
    """Directory holding downloaded boot assets."""
    return talos_directory() / "cache"


def parse_duration(value: str) -> float:
    """
    Parse a duration string such as ``20m``, ``1h30m`` or ``150ms``.

    A bare ``0`` is accepted, as is a plain number of seconds.

    Args:
        value: Duration string

    Returns:
        Duration in seconds

    Raises:
        ValueError: If the string is not a valid duration
    """
    text = value.strip()
    if not text:
        raise ValueError("empty duration")

    sign = 1.0
    if text[0] in "+-":
        sign = -1.0 if text[0] == "-" else 1.0
        text = text[1:]

    if text == "0":
        return 0.0

    try:
        return sign * float(text)
    except ValueError:
        pass

    total = 0.0
    pos = 0
    for match in _DURATION_RE.finditer(text):
        if match.start() != pos:
            raise ValueError(f"invalid duration {value!r}")
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()

    if pos != len(text) or pos == 0:
        raise ValueError(f"invalid duration {value!r}")

    return sign * total


def parse_byte_size(value: str) -> int:
    """
    Parse a size such as ``10GiB``, ``500MB`` or ``1048576``.

    Args:
        value: Size string

    Returns:
        Size in bytes

    Raises:
        ValueError: If the string is not a valid size
    """
    match = _SIZE_RE.match(value)
    if not match:
        raise ValueError(f"invalid size {value!r}")

    number, unit = match.groups()
    multiplier = _SIZE_UNITS.get(unit.lower())
    if multiplier is None:
        raise ValueError(f"unknown size unit {unit!r} in {value!r}")

    return int(float(number) * multiplier)


def format_bytes(size: int) -> str:
    """Format bytes using binary units, e.g. ``2.0 GiB``."""
    value = float(size)
    for unit in ("B", "KiB", "MiB", "GiB", "TiB"):
        if value < 1024 or unit == "TiB":
            if unit == "B":
                return f"{int(value)} B"
            return f"{value:.1f} {unit}"
        value /= 1024
    return f"{size} B"
