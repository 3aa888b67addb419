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
Machine configuration stack: generation, patching, bundling and client config.
"""

from .bundle import Bundle, BundleOptions, InputOptions
from .clientconfig import ClientConfig, Context
from .container import Container
from .contract import CURRENT, VersionContract
from .encoder import CommentsPolicy
from .generate import GenerateOptions, Input
from .patcher import JSON6902Patch, StrategicMergePatch, load_patch, load_patches
from .secrets import SecretsBundle

__all__ = [
    "Bundle",
    "BundleOptions",
    "InputOptions",
    "ClientConfig",
    "Context",
    "Container",
    "CURRENT",
    "VersionContract",
    "CommentsPolicy",
    "GenerateOptions",
    "Input",
    "JSON6902Patch",
    "StrategicMergePatch",
    "load_patch",
    "load_patches",
    "SecretsBundle",
]
