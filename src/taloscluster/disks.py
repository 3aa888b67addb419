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
Disk planning for emulated nodes.

Every node gets the system disk plus one disk per user-volume spec. A spec
``name1:size1[:name2:size2...]`` produces one UserVolumeConfig document per
volume, all located on the same disk through a CEL match on the disk's
stable symlink. Workers additionally get the extra disks.
"""

from typing import Any, Callable, Dict, List, Optional, Tuple

from .config.container import Document
from .config.documents import encryption_spec, user_volume_config
from .exceptions import MalformedUserVolumeError
from .models import Disk
from .utils import parse_byte_size

MIB = 1024 * 1024

# room for the GPT and partition alignment
GPT_ALIGNMENT = 2 * MIB


def primary_disk(size_mb: int, preallocate: bool, block_size: int = 0) -> Disk:
    """The system disk."""
    return Disk(size=size_mb * MIB, skip_preallocate=not preallocate, driver="virtio",
                block_size=block_size)


def user_volume_disks(specs: List[str], user_disk_name: Callable[[int], str], preallocate: bool,
                      block_size: int = 0,
                      encryption_keys: Optional[List[Dict[str, Any]]] = None
                      ) -> Tuple[List[Disk], List[Document]]:
    """
    Plan user-volume disks.

    Args:
        specs: Volume specs, one per disk
        user_disk_name: Provider naming of user disk i (1-based)
        preallocate: Preallocate disk images
        block_size: Logical block size, 0 for the provider default
        encryption_keys: Encrypt each volume with these keys when set

    Returns:
        (disks, user volume documents)

    Raises:
        MalformedUserVolumeError: If a spec has an odd number of tokens
    """
    disks: List[Disk] = []
    documents: List[Document] = []

    encryption = encryption_spec(encryption_keys) if encryption_keys else None

    for disk_id, spec in enumerate(specs):
        tokens = spec.split(":")
        if len(tokens) % 2 != 0:
            raise MalformedUserVolumeError("failed to parse malformed volume definitions")

        disk_size = 0
        match = f"'{user_disk_name(disk_id + 1)}' in disk.symlinks"

        for name, size in zip(tokens[0::2], tokens[1::2]):
            try:
                size_bytes = parse_byte_size(size)
            except ValueError as e:
                raise MalformedUserVolumeError(f"invalid size {size!r} for volume {name!r}: {e}") from e

            documents.append(user_volume_config(name, match, size, size, encryption))
            disk_size += size_bytes

        disks.append(Disk(
            size=disk_size + GPT_ALIGNMENT * (len(tokens) // 2 + 1),
            skip_preallocate=not preallocate,
            driver="ide",
            block_size=block_size,
        ))

    return disks, documents


def extra_worker_disks(count: int, size_mb: int, drivers: List[str], target_arch: str,
                       preallocate: bool, block_size: int = 0) -> List[Disk]:
    """
    Plan extra worker disks.

    The driver defaults to ``ide`` (``virtio`` on arm64) unless overridden
    positionally by drivers.
    """
    default_driver = "virtio" if target_arch == "arm64" else "ide"

    disks = []
    for i in range(count):
        driver = drivers[i] if i < len(drivers) and drivers[i] else default_driver
        disks.append(Disk(size=size_mb * MIB, skip_preallocate=not preallocate, driver=driver,
                          block_size=block_size))
    return disks
