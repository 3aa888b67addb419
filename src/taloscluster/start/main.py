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
Start local cluster command.

Stopped nodes of an existing cluster are launched again. The provisioner is
read from the persisted state, so ``--provisioner`` is not needed.
"""

import sys

import click

from ..exceptions import TalosClusterError
from ..providers import factory
from ..providers.state import cluster_dir, load_state


@click.command(name='start')
@click.pass_context
def start(ctx):
    """
    Start the nodes of an existing local Talos cluster.

    Examples:

        taloscluster cluster start
        taloscluster cluster --name demo start
    """
    debug = ctx.obj.get('debug', False)

    try:
        provisioner, _ = load_state(cluster_dir(ctx.obj['state'], ctx.obj['name']))

        provider = factory(provisioner)
        with provider:
            cluster = provider.reflect(ctx.obj['name'], ctx.obj['state'])
            provider.start(cluster)

        click.echo(f"started cluster {cluster.name!r}")

    except TalosClusterError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    except KeyboardInterrupt:
        click.echo("\nOperation cancelled", err=True)
        sys.exit(130)
    except Exception as e:
        click.echo(f"Unexpected error: {e}", err=True)
        if debug:
            import traceback
            traceback.print_exc()
        sys.exit(1)
