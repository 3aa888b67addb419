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
Multi-document machine configuration container.

A container holds at most one ``v1alpha1`` machine config document (any
document without ``apiVersion``/``kind``) and any number of sidecar documents keyed by
``apiVersion``/``kind`` and optionally ``name``. Document order is kept for
serialization only.
"""

import copy
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

import yaml

from ..exceptions import ConfigError
from ..models import MachineType
from .encoder import CommentsPolicy, encode

Document = Dict[str, Any]

V1ALPHA1 = "v1alpha1"


def is_v1alpha1(doc: Document) -> bool:
    # partial v1alpha1 patches may omit the version key
    return "kind" not in doc and "apiVersion" not in doc


def document_key(doc: Document) -> Tuple[str, Optional[str]]:
    """Identity of a document for merging: (kind, name)."""
    if is_v1alpha1(doc):
        return (V1ALPHA1, None)
    return (doc.get("kind", ""), doc.get("name"))


def _validate(doc: Any) -> Document:
    if not isinstance(doc, dict):
        raise ConfigError(f"expected a mapping document, got {type(doc).__name__}")
    if is_v1alpha1(doc):
        return doc
    if "apiVersion" not in doc or "kind" not in doc:
        raise ConfigError("document is missing apiVersion/kind (or version: v1alpha1)")
    return doc


class Container:
    """Ordered set of machine configuration documents."""

    def __init__(self, documents: Optional[Iterable[Document]] = None):
        self._documents: List[Document] = []
        seen = set()
        for doc in documents or []:
            doc = _validate(doc)
            key = document_key(doc)
            if key in seen:
                raise ConfigError(f"duplicate document: {key[0]} {key[1] or ''}".rstrip())
            seen.add(key)
            self._documents.append(doc)

    @classmethod
    def from_bytes(cls, data: Union[bytes, str]) -> "Container":
        """
        Parse a YAML stream into a container.

        Raises:
            ConfigError: If the stream is not valid YAML or a document is unknown
        """
        try:
            docs = [d for d in yaml.safe_load_all(data) if d is not None]
        except yaml.YAMLError as e:
            raise ConfigError(f"failed to decode config: {e}") from e
        return cls(docs)

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "Container":
        with open(path, "rb") as f:
            return cls.from_bytes(f.read())

    def documents(self) -> List[Document]:
        return list(self._documents)

    def v1alpha1(self) -> Optional[Document]:
        """The machine config document, if present."""
        for doc in self._documents:
            if is_v1alpha1(doc):
                return doc
        return None

    def sidecars(self) -> List[Document]:
        return [d for d in self._documents if not is_v1alpha1(d)]

    def find(self, kind: str, name: Optional[str] = None) -> Optional[Document]:
        for doc in self._documents:
            if document_key(doc) == (kind, name):
                return doc
        return None

    def find_all(self, kind: str) -> List[Document]:
        return [d for d in self._documents if d.get("kind") == kind]

    def is_multidoc(self) -> bool:
        return len(self._documents) > 1

    def clone(self) -> "Container":
        return Container(copy.deepcopy(self._documents))

    def add(self, doc: Document) -> None:
        doc = _validate(doc)
        if document_key(doc) in {document_key(d) for d in self._documents}:
            raise ConfigError(f"duplicate document: {document_key(doc)}")
        self._documents.append(doc)

    def replace(self, doc: Document) -> None:
        key = document_key(doc)
        for i, existing in enumerate(self._documents):
            if document_key(existing) == key:
                self._documents[i] = doc
                return
        self._documents.append(doc)

    def machine_type(self) -> Optional[MachineType]:
        cfg = self.v1alpha1()
        if not cfg:
            return None
        value = (cfg.get("machine") or {}).get("type")
        return MachineType(value) if value else None

    def cluster_name(self) -> Optional[str]:
        cfg = self.v1alpha1()
        if not cfg:
            return None
        return (cfg.get("cluster") or {}).get("clusterName")

    def get(self, path: str, default: Any = None) -> Any:
        """Look up a dotted path (``machine.kubelet.image``) in the v1alpha1 document."""
        node: Any = self.v1alpha1()
        for part in path.split("."):
            if not isinstance(node, dict) or part not in node:
                return default
            node = node[part]
        return node

    def encode(self, comments: CommentsPolicy = CommentsPolicy.DISABLED) -> bytes:
        return encode(self._documents, comments)

    def bytes(self) -> bytes:
        return self.encode(CommentsPolicy.DISABLED)

    def __len__(self) -> int:
        return len(self._documents)

    def __repr__(self) -> str:
        kinds = ", ".join(k for k, _ in (document_key(d) for d in self._documents))
        return f"Container([{kinds}])"
