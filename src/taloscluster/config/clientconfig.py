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
Persistent client configuration (``talosconfig``).

The file holds the current context name and a map of named contexts, each
with endpoints, nodes and base64 PEM credentials. Merging another config
never overwrites an existing context: a colliding name gets the lowest free
``-N`` suffix.
"""

import copy
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from ..exceptions import ClientConfigError
from ..utils import talos_directory

ENV_TALOSCONFIG = "TALOSCONFIG"
CONFIG_FILE_NAME = "config"


@dataclass
class Context:
    """Credentials and targets of one cluster."""
    endpoints: List[str] = field(default_factory=list)
    nodes: List[str] = field(default_factory=list)
    ca: str = ""
    crt: str = ""
    key: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Context":
        endpoints = list(data.get("endpoints") or [])
        # pre-endpoints configs carried a single target
        target = data.get("target")
        if target and not endpoints:
            endpoints = [target]
        return cls(
            endpoints=endpoints,
            nodes=list(data.get("nodes") or []),
            ca=data.get("ca", ""),
            crt=data.get("crt", ""),
            key=data.get("key", ""),
        )

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {}
        if self.endpoints:
            result["endpoints"] = list(self.endpoints)
        if self.nodes:
            result["nodes"] = list(self.nodes)
        for name in ("ca", "crt", "key"):
            value = getattr(self, name)
            if value:
                result[name] = value
        return result


@dataclass
class Rename:
    """A context renamed during merge."""
    old: str
    new: str

    def __str__(self) -> str:
        return f"{self.old!r} -> {self.new!r}"


class ClientConfig:
    """In-memory client configuration."""

    def __init__(self, context: str = "", contexts: Optional[Dict[str, Context]] = None):
        self.context = context
        self.contexts: Dict[str, Context] = dict(contexts or {})

    @classmethod
    def from_bytes(cls, data: Union[bytes, str]) -> "ClientConfig":
        """
        Parse a client config.

        Raises:
            ClientConfigError: If the document is not valid YAML
        """
        try:
            raw = yaml.safe_load(data) or {}
        except yaml.YAMLError as e:
            raise ClientConfigError(f"failed to parse client config: {e}") from e

        if not isinstance(raw, dict):
            raise ClientConfigError("client config must be a mapping")

        contexts = {
            name: Context.from_dict(ctx or {})
            for name, ctx in (raw.get("contexts") or {}).items()
        }
        return cls(context=raw.get("context") or "", contexts=contexts)

    @classmethod
    def open(cls, path: Union[str, Path]) -> "ClientConfig":
        """
        Load a client config, returning an empty one if the file is absent.

        Raises:
            ClientConfigError: If the file exists but cannot be read or parsed
        """
        path = Path(path)
        if not path.exists():
            return cls()
        try:
            return cls.from_bytes(path.read_bytes())
        except OSError as e:
            raise ClientConfigError(f"failed to read client config {str(path)!r}: {e}") from e

    def to_dict(self) -> Dict[str, Any]:
        return {
            "context": self.context,
            "contexts": {name: ctx.to_dict() for name, ctx in self.contexts.items()},
        }

    def bytes(self) -> bytes:
        return yaml.safe_dump(self.to_dict(), sort_keys=False, default_flow_style=False).encode()

    def merge(self, other: "ClientConfig") -> List[Rename]:
        """
        Merge other into this config.

        Colliding context names are suffixed with the lowest free ``-N``.
        The current context switches to other's current context under its
        merged name.

        Returns:
            The contexts that had to be renamed
        """
        renames = []
        mapped: Dict[str, str] = {}

        for name, ctx in other.contexts.items():
            merged_name = name
            if merged_name in self.contexts:
                i = 1
                while f"{name}-{i}" in self.contexts:
                    i += 1
                merged_name = f"{name}-{i}"
                renames.append(Rename(name, merged_name))

            mapped[name] = merged_name
            self.contexts[merged_name] = copy.deepcopy(ctx)

        if other.context:
            self.context = mapped.get(other.context, other.context)

        return renames

    def save(self, path: Union[str, Path]) -> None:
        """
        Atomically write the config with mode 0600 (parent directory 0700).

        Raises:
            ClientConfigError: If the file cannot be written
        """
        path = Path(path)
        try:
            path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(self.bytes())
                os.chmod(tmp, 0o600)
                os.replace(tmp, path)
            except BaseException:
                if os.path.exists(tmp):
                    os.unlink(tmp)
                raise
        except OSError as e:
            raise ClientConfigError(f"failed to save client config {str(path)!r}: {e}") from e


def default_path() -> Path:
    """``$TALOSCONFIG`` if set, otherwise ``~/.talos/config``."""
    env = os.environ.get(ENV_TALOSCONFIG)
    if env:
        return Path(env)
    return talos_directory() / CONFIG_FILE_NAME


def resolve_path(flag: Optional[str] = None) -> Path:
    """Path given on the command line, falling back to :func:`default_path`."""
    if flag:
        return Path(flag).expanduser()
    return default_path()
