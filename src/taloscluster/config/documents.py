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
Builders for the sidecar configuration documents produced by this tool.
"""

from typing import Any, Dict, List, Optional

from .container import Document

API_VERSION = "v1alpha1"

LUKS2 = "luks2"

STATE_PARTITION_LABEL = "STATE"
EPHEMERAL_PARTITION_LABEL = "EPHEMERAL"


def _doc(kind: str, **fields: Any) -> Document:
    doc: Document = {"apiVersion": API_VERSION, "kind": kind}
    doc.update({k: v for k, v in fields.items() if v is not None})
    return doc


def siderolink_config(api_url: str) -> Document:
    return _doc("SideroLinkConfig", apiUrl=api_url)


def event_sink_config(endpoint: str) -> Document:
    return _doc("EventSinkConfig", endpoint=endpoint)


def kmsg_log_config(name: str, url: str) -> Document:
    return _doc("KmsgLogConfig", name=name, url=url)


def trusted_roots_config(name: str, certificates: str) -> Document:
    return _doc("TrustedRootsConfig", name=name, certificates=certificates)


def network_default_action_config(ingress: str) -> Document:
    return _doc("NetworkDefaultActionConfig", ingress=ingress)


def network_rule_config(name: str, ports: List[Any], protocol: str,
                        ingress: List[Dict[str, str]]) -> Document:
    return _doc(
        "NetworkRuleConfig",
        name=name,
        portSelector={"ports": ports, "protocol": protocol},
        ingress=ingress,
    )


def user_volume_config(name: str, match: str, min_size: str, max_size: str,
                       encryption: Optional[Dict[str, Any]] = None) -> Document:
    return _doc(
        "UserVolumeConfig",
        name=name,
        provisioning={
            "diskSelector": {"match": match},
            "minSize": min_size,
            "maxSize": max_size,
        },
        encryption=encryption,
    )


def volume_config(name: str, encryption: Dict[str, Any]) -> Document:
    return _doc("VolumeConfig", name=name, encryption=encryption)


def encryption_spec(keys: List[Dict[str, Any]], lock_to_state: bool = False) -> Dict[str, Any]:
    """
    Build a LUKS2 encryption spec for block documents.

    Args:
        keys: Encryption keys in v1alpha1 form (``slot``, ``nodeID``/``kms``/``tpm``)
        lock_to_state: Lock every key to the STATE partition
    """
    converted = []
    for key in keys:
        entry = dict(key)
        if lock_to_state:
            entry["lockToSTATE"] = True
        converted.append(entry)

    return {"provider": LUKS2, "keys": converted}
