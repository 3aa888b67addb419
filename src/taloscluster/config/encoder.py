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
YAML serialization of machine configuration documents.
"""

from enum import IntFlag
from typing import Any, Dict, List

import yaml


class CommentsPolicy(IntFlag):
    """Which comments to emit when encoding."""
    DISABLED = 0
    DOCS = 1
    EXAMPLES = 2
    ALL = DOCS | EXAMPLES


class _Dumper(yaml.SafeDumper):
    """Safe dumper that renders multi-line strings as literal blocks."""


def _str_representer(dumper, data):
    if "\n" in data:
        return dumper.represent_scalar("tag:yaml.org,2002:str", data, style="|")
    return dumper.represent_scalar("tag:yaml.org,2002:str", data)


_Dumper.add_representer(str, _str_representer)

V1ALPHA1_DOCS = {
    "version": "Indicates the schema used to decode the contents.",
    "debug": "Enable verbose logging to the console.",
    "persist": "Persist the configuration across reboots.",
    "machine": "Provides machine specific configuration options.",
    "cluster": "Provides cluster specific configuration options.",
}

SIDECAR_DOCS = {
    "SideroLinkConfig": "SideroLinkConfig is a SideroLink connection machine configuration document.",
    "EventSinkConfig": "EventSinkConfig is an event sink config document.",
    "KmsgLogConfig": "KmsgLogConfig is a document to configure Talos kernel log streaming.",
    "TrustedRootsConfig": "TrustedRootsConfig allows to configure additional trusted CA roots.",
    "NetworkDefaultActionConfig": "NetworkDefaultActionConfig is an ingress firewall default action configuration document.",
    "NetworkRuleConfig": "NetworkRuleConfig is a network firewall rule config document.",
    "UserVolumeConfig": "UserVolumeConfig is a user volume configuration document.",
    "VolumeConfig": "VolumeConfig is a system volume configuration document.",
}

V1ALPHA1_EXAMPLES = {
    "machine": {"network": {"hostname": "worker-1"}},
    "cluster": {"network": {"podSubnets": ["10.244.0.0/16"]}},
}


def dump(value: Any) -> str:
    """Dump a value as block-style YAML preserving key order."""
    return yaml.dump(value, Dumper=_Dumper, sort_keys=False, default_flow_style=False, allow_unicode=True)


def _commented(text: str) -> List[str]:
    return ["# " + line if line else "#" for line in text.rstrip("\n").split("\n")]


def encode_document(doc: Dict[str, Any], policy: CommentsPolicy = CommentsPolicy.DISABLED) -> str:
    """
    Encode a single document.

    Args:
        doc: Document mapping
        policy: Comments to include

    Returns:
        YAML text ending with a newline
    """
    if policy == CommentsPolicy.DISABLED:
        return dump(doc)

    lines: List[str] = []
    kind = doc.get("kind")

    if kind and policy & CommentsPolicy.DOCS and kind in SIDECAR_DOCS:
        lines.extend(_commented(SIDECAR_DOCS[kind]))

    for key, value in doc.items():
        if kind is None and policy & CommentsPolicy.DOCS and key in V1ALPHA1_DOCS:
            lines.extend(_commented(V1ALPHA1_DOCS[key]))
        lines.extend(dump({key: value}).rstrip("\n").split("\n"))
        if kind is None and policy & CommentsPolicy.EXAMPLES and key in V1ALPHA1_EXAMPLES:
            lines.append("    # # example:")
            for line in dump(V1ALPHA1_EXAMPLES[key]).rstrip("\n").split("\n"):
                lines.append("    # " + line)

    return "\n".join(lines) + "\n"


def encode(documents: List[Dict[str, Any]], policy: CommentsPolicy = CommentsPolicy.DISABLED) -> bytes:
    """Encode documents as a ``---``-separated YAML stream."""
    return "---\n".join(encode_document(doc, policy) for doc in documents).encode()
