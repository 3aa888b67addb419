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
Machine config commands.

``machineconfig gen`` renders the control plane and worker configs plus a
client config for a cluster without creating any nodes. ``machineconfig
patch`` applies patches to an existing machine config file.
"""

import sys
from pathlib import Path

import click

from ..config.bundle import (
    TALOSCONFIG_FILE,
    Bundle,
    InputOptions,
    with_input_options,
    with_patch,
    with_patch_control_plane,
    with_patch_worker,
)
from ..config import patcher
from ..config.contract import VersionContract
from ..config.encoder import CommentsPolicy
from ..config.generate import (
    with_additional_subject_alt_names,
    with_cluster_discovery,
    with_dns_domain,
    with_install_image,
    with_kubespan,
    with_network_options,
    with_registry_mirror,
    with_version_contract,
)
from ..exceptions import TalosClusterError, UsageError
from ..models import DEFAULT_INSTALLER_IMAGE, DEFAULT_KUBERNETES_VERSION, MachineType


def _fail(e: Exception, debug: bool) -> None:
    if isinstance(e, UsageError):
        click.echo(f"Error: {e}", err=True)
        sys.exit(2)
    if isinstance(e, TalosClusterError):
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    click.echo(f"Unexpected error: {e}", err=True)
    if debug:
        import traceback
        traceback.print_exc()
    sys.exit(1)


@click.group(name='machineconfig')
def machineconfig():
    """Generate and patch machine configs."""


@machineconfig.command(name='gen')
@click.argument('cluster_name')
@click.argument('endpoint')
@click.option('--output-dir', '-o', default='.', show_default=True, help='Destination to output generated files')
@click.option('--kubernetes-version', default=DEFAULT_KUBERNETES_VERSION, show_default=True,
              help='Desired kubernetes version to run')
@click.option('--talos-version', default='', help='The desired Talos version to generate config for')
@click.option('--with-docs/--without-docs', default=True, show_default=True,
              help='Render all machine configs with the documentation')
@click.option('--with-examples/--without-examples', default=True, show_default=True,
              help='Render all machine configs with the commented examples')
@click.option('--install-image', default=DEFAULT_INSTALLER_IMAGE, show_default=True,
              help='The image used to perform an installation')
@click.option('--config-patch', multiple=True, help='Patch generated machineconfigs (applied to all node types)')
@click.option('--config-patch-control-plane', multiple=True,
              help='Patch generated machineconfigs (applied to init and controlplane types)')
@click.option('--config-patch-worker', multiple=True,
              help='Patch generated machineconfigs (applied to worker type)')
@click.option('--dns-domain', default='cluster.local', show_default=True, help='The dns domain to use for cluster')
@click.option('--with-cluster-discovery/--without-cluster-discovery', 'cluster_discovery',
              default=True, show_default=True,
              help='Enable cluster discovery feature')
@click.option('--with-kubespan', 'kubespan', is_flag=True, help='Enable KubeSpan feature')
@click.option('--additional-sans', multiple=True, help='Additional Subject-Alt-Names for the APIServer certificate')
@click.option('--registry-mirror', multiple=True,
              help='List of registry mirrors to use in format: <registry host>=<mirror URL>')
@click.option('--force', is_flag=True, help='Overwrite existing files')
@click.pass_context
def gen(ctx, cluster_name, endpoint, output_dir, kubernetes_version, talos_version, with_docs,
        with_examples, install_image, config_patch, config_patch_control_plane, config_patch_worker,
        dns_domain, cluster_discovery, kubespan, additional_sans, registry_mirror, force):
    """
    Generate machine configs for a cluster.

    Examples:

        taloscluster machineconfig gen demo https://10.5.0.2:6443
        taloscluster machineconfig gen demo https://10.5.0.2:6443 -o out --config-patch @patch.yaml
    """
    debug = ctx.obj.get('debug', False)

    try:
        output = Path(output_dir)
        targets = [output / f"{t.value}.yaml" for t in (MachineType.CONTROLPLANE, MachineType.WORKER)]
        targets.append(output / TALOSCONFIG_FILE)
        if not force:
            for target in targets:
                if target.exists():
                    raise UsageError(f"{target} already exists, use --force to overwrite")

        gen_opts = [
            with_install_image(install_image),
            with_dns_domain(dns_domain),
            with_cluster_discovery(cluster_discovery),
        ]
        if talos_version:
            gen_opts.append(with_version_contract(VersionContract.parse(talos_version)))
        if kubespan:
            gen_opts.append(with_network_options(with_kubespan()))
        if additional_sans:
            gen_opts.append(with_additional_subject_alt_names(list(additional_sans)))
        for mirror in registry_mirror:
            host, sep, url = mirror.partition("=")
            if not sep or not host or not url:
                raise UsageError(f"invalid registry mirror spec: {mirror!r}")
            gen_opts.append(with_registry_mirror(host, url))

        bundle = Bundle.new(
            with_input_options(InputOptions(cluster_name, endpoint, kubernetes_version, gen_opts)),
            with_patch(patcher.load_patches(list(config_patch))),
            with_patch_control_plane(patcher.load_patches(list(config_patch_control_plane))),
            with_patch_worker(patcher.load_patches(list(config_patch_worker))),
        )

        comments = CommentsPolicy.DISABLED
        if with_docs:
            comments |= CommentsPolicy.DOCS
        if with_examples:
            comments |= CommentsPolicy.EXAMPLES

        output.mkdir(parents=True, exist_ok=True)
        bundle.write(output, comments, MachineType.CONTROLPLANE, MachineType.WORKER)

        talos_config = bundle.talos_config()
        talos_config.save(output / TALOSCONFIG_FILE)
        click.echo(f"created {output / TALOSCONFIG_FILE}")

    except KeyboardInterrupt:
        click.echo("\nOperation cancelled", err=True)
        sys.exit(130)
    except Exception as e:
        _fail(e, debug)


@machineconfig.command(name='patch')
@click.argument('machineconfig_file', type=click.Path(exists=True, dir_okay=False))
@click.option('--patch', '-p', 'patches', multiple=True, required=True,
              help='Patch to apply, inline or @filename (repeatable)')
@click.option('--output', '-o', default='', help='Output destination, stdout if not set')
@click.pass_context
def patch(ctx, machineconfig_file, patches, output):
    """
    Patch a machine config.

    Examples:

        taloscluster machineconfig patch controlplane.yaml -p @patch.yaml
        taloscluster machineconfig patch worker.yaml -p '[{"op":"add","path":"/machine/env","value":{}}]' -o out.yaml
    """
    debug = ctx.obj.get('debug', False)

    try:
        data = Path(machineconfig_file).read_bytes()
        result = patcher.apply(data, patcher.load_patches(list(patches))).as_bytes()

        if output:
            Path(output).write_bytes(result)
        else:
            click.echo(result.decode(), nl=False)

    except KeyboardInterrupt:
        click.echo("\nOperation cancelled", err=True)
        sys.exit(130)
    except Exception as e:
        _fail(e, debug)
