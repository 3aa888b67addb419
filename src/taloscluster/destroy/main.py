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
Destroy local cluster command.

The cluster is reflected from its persisted state and every resource the
provider created for it is torn down.
"""

import sys

import click

from ..exceptions import TalosClusterError
from ..providers import factory


@click.command(name='destroy')
@click.option('--crashdump', is_flag=True, help='Print debug crashdump to stderr before destroying the cluster')
@click.pass_context
def destroy(ctx, crashdump):
    """
    Destroy a local Talos cluster.

    Examples:

        taloscluster cluster destroy
        taloscluster cluster --name demo --provisioner qemu destroy --crashdump
    """
    debug = ctx.obj.get('debug', False)

    try:
        provider = factory(ctx.obj['provisioner'])
        with provider:
            cluster = provider.reflect(ctx.obj['name'], ctx.obj['state'])

            if crashdump:
                provider.crash_dump(cluster, sys.stderr)

            provider.destroy(cluster)

        click.echo(f"destroyed cluster {cluster.name!r}")

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
