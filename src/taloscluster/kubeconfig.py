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
Merging a cluster's kubeconfig into the user's kubeconfig.
"""

import copy
import os
import tempfile
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Union
from urllib.parse import urlparse

import yaml

from .exceptions import KubeconfigMergeError
from .network import join_host_port

KubeConfig = Dict[str, Any]

# (section, name) -> new name; None keeps the default rename
ConflictHandler = Callable[[str, str], Optional[str]]

SECTIONS = (("clusters", "cluster"), ("users", "user"), ("contexts", "context"))


def default_path() -> Path:
    """First entry of ``$KUBECONFIG``, else ``~/.kube/config``."""
    env = os.environ.get("KUBECONFIG", "")
    for entry in env.split(os.pathsep):
        if entry:
            return Path(entry).expanduser()
    return Path.home() / ".kube" / "config"


def empty() -> KubeConfig:
    return {
        "apiVersion": "v1",
        "kind": "Config",
        "preferences": {},
        "clusters": [],
        "users": [],
        "contexts": [],
        "current-context": "",
    }


def parse(data: Union[bytes, str]) -> KubeConfig:
    """
    Parse kubeconfig YAML.

    Raises:
        KubeconfigMergeError: If the data is not a kubeconfig mapping
    """
    try:
        config = yaml.safe_load(data)
    except yaml.YAMLError as e:
        raise KubeconfigMergeError(f"error parsing kubeconfig: {e}") from e

    if config is None:
        return empty()
    if not isinstance(config, dict):
        raise KubeconfigMergeError("kubeconfig is not a mapping")

    result = empty()
    result.update(config)
    for section, _ in SECTIONS:
        result[section] = list(result.get(section) or [])
    return result


def load(path: Union[str, Path]) -> KubeConfig:
    """Load a kubeconfig, returning an empty one if the file does not exist."""
    try:
        with open(path, "rb") as f:
            return parse(f.read())
    except FileNotFoundError:
        return empty()
    except OSError as e:
        raise KubeconfigMergeError(f"error reading kubeconfig {str(path)!r}: {e}") from e


def write(path: Union[str, Path], config: KubeConfig) -> None:
    """
    Write a kubeconfig atomically with mode 0600.

    Raises:
        KubeconfigMergeError: If the file cannot be written
    """
    path = Path(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
        try:
            with os.fdopen(fd, "w") as f:
                yaml.safe_dump(config, f, sort_keys=False, default_flow_style=False)
            os.chmod(tmp, 0o600)
            os.replace(tmp, path)
        except BaseException:
            os.unlink(tmp)
            raise
    except OSError as e:
        raise KubeconfigMergeError(f"error writing kubeconfig {str(path)!r}: {e}") from e


def rewrite_servers(config: KubeConfig, endpoint: str) -> KubeConfig:
    """Point every cluster's server at endpoint, keeping the original port."""
    result = copy.deepcopy(config)
    for entry in result.get("clusters") or []:
        cluster = entry.get("cluster") or {}
        server = cluster.get("server")
        if not server:
            continue
        port = urlparse(server).port or 443
        cluster["server"] = f"https://{join_host_port(endpoint, port)}"
    return result


def _names(config: KubeConfig, section: str) -> Dict[str, Dict[str, Any]]:
    return {entry.get("name"): entry for entry in config.get(section) or []}


def _free_name(name: str, taken) -> str:
    n = 1
    while f"{name}-{n}" in taken:
        n += 1
    return f"{name}-{n}"


def merge(existing: KubeConfig, new: KubeConfig, activate: bool = True,
          conflict_handler: Optional[ConflictHandler] = None) -> Tuple[KubeConfig, List[str]]:
    """
    Merge new into existing.

    Entries identical to an existing one of the same name are reused;
    conflicting ones are renamed to ``<name>-N`` with the lowest free N,
    unless conflict_handler supplies a name. Context references follow
    the renames.

    Args:
        existing: Target kubeconfig
        new: Kubeconfig of the cluster
        activate: Make the merged current context the current one
        conflict_handler: Optional callback choosing a name on conflict

    Returns:
        (merged kubeconfig, rename messages)
    """
    merged = copy.deepcopy(existing)
    incoming = copy.deepcopy(new)
    messages: List[str] = []
    renames: Dict[str, Dict[str, str]] = {}

    for section, key in SECTIONS:
        current = _names(merged, section)
        renames[section] = {}

        for entry in incoming.get(section) or []:
            name = entry.get("name")

            if section == "contexts":
                ctx = entry.setdefault("context", {})
                if ctx.get("cluster") in renames["clusters"]:
                    ctx["cluster"] = renames["clusters"][ctx["cluster"]]
                if ctx.get("user") in renames["users"]:
                    ctx["user"] = renames["users"][ctx["user"]]

            if name in current:
                if current[name].get(key) == entry.get(key):
                    continue
                new_name = conflict_handler(section, name) if conflict_handler else None
                if not new_name:
                    new_name = _free_name(name, current)
                renames[section][name] = new_name
                messages.append(f"renamed {key} {name!r} -> {new_name!r}")
                entry["name"] = new_name

            merged.setdefault(section, []).append(entry)
            current[entry["name"]] = entry

    if activate:
        ctx = incoming.get("current-context", "")
        merged["current-context"] = renames["contexts"].get(ctx, ctx)

    return merged, messages
