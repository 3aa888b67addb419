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
Config bundle: init, controlplane and worker configs plus the client config.

A bundle is built either from input options (fresh secrets and generated
configs) or from a directory of previously generated files. Patches are
applied in three layers: general patches to every role, then control plane
patches to init/controlplane and worker patches to workers.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Union

import click

from ..exceptions import ConfigError
from ..models import MachineType
from . import patcher
from .clientconfig import ClientConfig
from .container import Container
from .encoder import CommentsPolicy
from .generate import GenOption, Input
from .patcher import Patch

logger = logging.getLogger(__name__)

TALOSCONFIG_FILE = "talosconfig"


@dataclass
class InputOptions:
    """Inputs for generating a fresh bundle."""
    cluster_name: str
    endpoint: str
    kubernetes_version: str
    gen_options: List[GenOption] = field(default_factory=list)


@dataclass
class BundleOptions:
    """Resolved bundle options."""
    existing_configs: str = ""
    input_options: Optional[InputOptions] = None
    patches: List[Patch] = field(default_factory=list)
    patches_control_plane: List[Patch] = field(default_factory=list)
    patches_worker: List[Patch] = field(default_factory=list)
    verbose: bool = True


BundleOption = Callable[[BundleOptions], None]


def with_existing_configs(path: str) -> BundleOption:
    def opt(o: BundleOptions) -> None:
        o.existing_configs = path
    return opt


def with_input_options(options: InputOptions) -> BundleOption:
    def opt(o: BundleOptions) -> None:
        o.input_options = options
    return opt


def with_patch(patches: List[Patch]) -> BundleOption:
    def opt(o: BundleOptions) -> None:
        o.patches.extend(patches)
    return opt


def with_patch_control_plane(patches: List[Patch]) -> BundleOption:
    def opt(o: BundleOptions) -> None:
        o.patches_control_plane.extend(patches)
    return opt


def with_patch_worker(patches: List[Patch]) -> BundleOption:
    def opt(o: BundleOptions) -> None:
        o.patches_worker.extend(patches)
    return opt


def with_verbose(verbose: bool) -> BundleOption:
    def opt(o: BundleOptions) -> None:
        o.verbose = verbose
    return opt


def _file_name(machine_type: MachineType) -> str:
    return f"{machine_type.value}.yaml"


class Bundle:
    """Machine configs of every role plus the client config."""

    def __init__(self, init: Optional[Container] = None, control_plane: Optional[Container] = None,
                 worker: Optional[Container] = None, talos_config: Optional[ClientConfig] = None):
        self._configs: Dict[MachineType, Optional[Container]] = {
            MachineType.INIT: init,
            MachineType.CONTROLPLANE: control_plane,
            MachineType.WORKER: worker,
        }
        self._talos_config = talos_config

    @classmethod
    def new(cls, *opts: BundleOption) -> "Bundle":
        """
        Build a bundle from options.

        Raises:
            ConfigError: If the options conflict or existing configs cannot be loaded
        """
        options = BundleOptions()
        for opt in opts:
            opt(options)

        if options.existing_configs:
            if options.input_options is not None:
                raise ConfigError("both existing config path and input options specified")
            bundle = cls._load(Path(options.existing_configs))
        else:
            if options.input_options is None:
                raise ConfigError("no input options or existing configs were provided")
            bundle = cls._generate(options.input_options)

        bundle.apply_patches(options)

        return bundle

    @classmethod
    def _load(cls, directory: Path) -> "Bundle":
        configs: Dict[MachineType, Optional[Container]] = {}
        for machine_type in MachineType:
            path = directory / _file_name(machine_type)
            if not path.exists():
                # init.yaml is optional
                if machine_type == MachineType.INIT:
                    configs[machine_type] = None
                    continue
                raise ConfigError(f"missing config file {str(path)!r}")
            configs[machine_type] = Container.from_file(path)

        talos_config = None
        talosconfig_path = directory / TALOSCONFIG_FILE
        if talosconfig_path.exists():
            talos_config = ClientConfig.open(talosconfig_path)

        logger.debug("loaded existing configs from %s", directory)

        return cls(configs[MachineType.INIT], configs[MachineType.CONTROLPLANE],
                   configs[MachineType.WORKER], talos_config)

    @classmethod
    def _generate(cls, options: InputOptions) -> "Bundle":
        inp = Input.new(options.cluster_name, options.endpoint, options.kubernetes_version,
                        *options.gen_options)
        return cls(
            inp.config(MachineType.INIT),
            inp.config(MachineType.CONTROLPLANE),
            inp.config(MachineType.WORKER),
            inp.talosconfig(),
        )

    def apply_patches(self, options: BundleOptions) -> None:
        """Apply general patches to every config, then the role-specific ones."""
        role_patches = {
            MachineType.INIT: options.patches_control_plane,
            MachineType.CONTROLPLANE: options.patches_control_plane,
            MachineType.WORKER: options.patches_worker,
        }

        for machine_type, cfg in self._configs.items():
            patches = options.patches + role_patches[machine_type]
            if cfg is None or not patches:
                continue
            self._configs[machine_type] = patcher.apply(cfg, patches).as_container()

    def config(self, machine_type: MachineType) -> Optional[Container]:
        return self._configs[machine_type]

    def init(self) -> Optional[Container]:
        return self._configs[MachineType.INIT]

    def control_plane(self) -> Optional[Container]:
        return self._configs[MachineType.CONTROLPLANE]

    def worker(self) -> Optional[Container]:
        return self._configs[MachineType.WORKER]

    def talos_config(self) -> Optional[ClientConfig]:
        return self._talos_config

    def write(self, output_dir: Union[str, Path], comments: CommentsPolicy,
              *types: MachineType, verbose: bool = True) -> List[Path]:
        """
        Write role configs to ``<output_dir>/<role>.yaml``.

        Args:
            output_dir: Destination directory
            comments: Comment policy for the encoded files
            *types: Roles to write
            verbose: Print a line per created file

        Returns:
            Paths of the written files
        """
        output_dir = Path(output_dir)
        written = []
        for machine_type in types:
            cfg = self._configs[machine_type]
            if cfg is None:
                continue

            path = output_dir / _file_name(machine_type)
            path.write_bytes(cfg.encode(comments))
            os.chmod(path, 0o600)
            written.append(path)

            if verbose:
                click.echo(f"created {path}")

        return written
