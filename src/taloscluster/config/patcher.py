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
Machine configuration patching.

Two patch flavours are supported:

* JSON-6902 patches (a JSON/YAML array of operations) act on the serialized
  form of a single-document config.
* Strategic merge patches (one or more YAML documents) act on the parsed
  container: mappings merge recursively, most lists append, network
  interfaces and VLANs merge by identity, ``$patch: delete`` removes a key
  or a whole document.

``apply`` walks the patches in order and only converts between the byte and
container representations when the next patch needs the other one.
"""

import copy
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import jsonpatch
import jsonpointer
import yaml

from ..exceptions import ConfigError, JSON6902MultiDocError, PatchLoadError
from .container import Container, Document, document_key, is_v1alpha1
from .encoder import dump

logger = logging.getLogger(__name__)

PATCH_DIRECTIVE = "$patch"
DELETE = "delete"

# list fields merged by identity instead of appended
_MERGE_BY_KEY = {
    "interfaces": ("interface", "deviceSelector"),
    "vlans": ("vlanId",),
}

# list fields replaced wholesale
_REPLACE_FIELDS = {"podSubnets", "serviceSubnets", "admissionControl"}


class JSON6902Patch:
    """RFC 6902 patch."""

    def __init__(self, operations: List[Dict[str, Any]]):
        try:
            self.patch = jsonpatch.JsonPatch(operations)
        except (jsonpatch.InvalidJsonPatch, TypeError) as e:
            raise PatchLoadError(f"invalid JSON patch: {e}") from e

    def __repr__(self) -> str:
        return f"JSON6902Patch({self.patch.to_string()})"


class StrategicMergePatch:
    """Strategic merge patch made of config documents."""

    def __init__(self, container: Container):
        self.container = container

    def __repr__(self) -> str:
        return f"StrategicMergePatch({self.container!r})"


Patch = Union[JSON6902Patch, StrategicMergePatch]


def new_strategic_merge_patch(*documents: Document) -> StrategicMergePatch:
    return StrategicMergePatch(Container(documents))


def load_patch(data: Union[bytes, str]) -> Patch:
    """
    Load a patch from JSON or YAML.

    Arrays are JSON-6902 patches, mappings are strategic merge patches.

    Raises:
        PatchLoadError: If the data is not a valid patch
    """
    try:
        docs = [d for d in yaml.safe_load_all(data) if d is not None]
    except yaml.YAMLError as e:
        raise PatchLoadError(f"failed to parse patch: {e}") from e

    if len(docs) == 1 and isinstance(docs[0], list):
        return JSON6902Patch(docs[0])

    if not docs:
        raise PatchLoadError("empty patch")

    try:
        return StrategicMergePatch(Container(docs))
    except ConfigError as e:
        raise PatchLoadError(f"failed to load strategic merge patch: {e}") from e


def load_patches(patches: List[str]) -> List[Patch]:
    """
    Load patches given inline or as ``@filename``.

    Args:
        patches: Patch strings

    Returns:
        Parsed patches, in order

    Raises:
        PatchLoadError: If a file cannot be read or a patch cannot be parsed
    """
    result = []
    for patch in patches:
        if patch.startswith("@"):
            path = Path(patch[1:])
            try:
                data = path.read_bytes()
            except OSError as e:
                raise PatchLoadError(f"failed to read patch file {str(path)!r}: {e}") from e
        else:
            data = patch.encode()

        result.append(load_patch(data))
    return result


def _identity(item: Any, keys) -> Any:
    if not isinstance(item, dict):
        return None
    for key in keys:
        if key in item:
            return (key, json.dumps(item[key], sort_keys=True, default=str))
    return None


def _merge_list(name: str, left: List[Any], right: List[Any]) -> List[Any]:
    if name in _REPLACE_FIELDS:
        return copy.deepcopy(right)

    keys = _MERGE_BY_KEY.get(name)
    if not keys:
        return left + copy.deepcopy(right)

    result = list(left)
    for item in right:
        ident = _identity(item, keys)
        for i, existing in enumerate(result):
            if ident is not None and _identity(existing, keys) == ident:
                result[i] = merge_values(existing, item)
                break
        else:
            result.append(copy.deepcopy(item))
    return result


def merge_values(left: Any, right: Any, name: str = "") -> Any:
    """Merge right into left and return the result; left is not modified."""
    if isinstance(left, dict) and isinstance(right, dict):
        result = dict(left)
        for key, value in right.items():
            if isinstance(value, dict) and value.get(PATCH_DIRECTIVE) == DELETE:
                result.pop(key, None)
                continue
            if key in result:
                result[key] = merge_values(result[key], value, key)
            else:
                result[key] = copy.deepcopy(value)
        return result

    if isinstance(left, list) and isinstance(right, list):
        return _merge_list(name, left, right)

    return copy.deepcopy(right)


def strategic_merge(base: Container, patch: Container) -> Container:
    """Apply a strategic merge patch to a container."""
    result = base.clone()

    for doc in patch.documents():
        kind, name = document_key(doc)
        existing = result.find(kind, name)

        if doc.get(PATCH_DIRECTIVE) == DELETE:
            if existing is not None:
                result = Container(d for d in result.documents() if document_key(d) != (kind, name))
            continue

        if existing is None:
            result.add(copy.deepcopy(doc))
            continue

        if not is_v1alpha1(doc) and doc.get("apiVersion") != existing.get("apiVersion"):
            raise ConfigError(f"cannot merge {kind}: apiVersion mismatch")

        result.replace(merge_values(existing, doc))

    return result


def _apply_json6902(data: bytes, patch: JSON6902Patch) -> bytes:
    docs = [d for d in yaml.safe_load_all(data) if d is not None]
    if len(docs) > 1:
        raise JSON6902MultiDocError(
            "JSON6902 patches are not supported for multi-document machine configuration"
        )

    target = docs[0] if docs else {}
    try:
        patched = patch.patch.apply(target)
    except (jsonpatch.JsonPatchException, jsonpointer.JsonPointerException) as e:
        raise ConfigError(f"failed to apply JSON patch: {e}") from e

    return dump(patched).encode()


class PatchInput:
    """A config held either as bytes or as a parsed container."""

    def __init__(self, config: Union[bytes, str, Container]):
        self._bytes: Optional[bytes] = None
        self._container: Optional[Container] = None
        if isinstance(config, Container):
            self._container = config
        else:
            self._bytes = config.encode() if isinstance(config, str) else config

    def as_bytes(self) -> bytes:
        if self._bytes is None:
            if self._container.is_multidoc():
                raise JSON6902MultiDocError(
                    "JSON6902 patches are not supported for multi-document machine configuration"
                )
            self._bytes = self._container.bytes()
            self._container = None
        return self._bytes

    def as_container(self) -> Container:
        if self._container is None:
            self._container = Container.from_bytes(self._bytes)
            self._bytes = None
        return self._container

    def set_bytes(self, data: bytes) -> None:
        self._bytes, self._container = data, None

    def set_container(self, container: Container) -> None:
        self._bytes, self._container = None, container


def apply(config: Union[bytes, str, Container], patches: List[Patch]) -> PatchInput:
    """
    Apply patches in order.

    Args:
        config: Config bytes or container
        patches: Patches to apply

    Returns:
        The patched config in whatever representation the last patch produced
    """
    state = PatchInput(config)

    for patch in patches:
        if isinstance(patch, JSON6902Patch):
            state.set_bytes(_apply_json6902(state.as_bytes(), patch))
        elif isinstance(patch, StrategicMergePatch):
            state.set_container(strategic_merge(state.as_container(), patch.container))
        else:
            raise ConfigError(f"unknown patch type {type(patch).__name__}")

    logger.debug("applied %d patches", len(patches))

    return state
