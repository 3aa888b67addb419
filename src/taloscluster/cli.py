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
Command-line interface for taloscluster.
"""

import click
from .create.main import create
from .destroy.main import destroy
from .show.main import show
from .start.main import start
from .machineconfig.main import machineconfig
from .logs import setup_logging
from .models import DEFAULT_CLUSTER_NAME
from .utils import default_state_dir


@click.group()
@click.version_option(version="0.1.0", prog_name="taloscluster")
@click.option("--debug", is_flag=True, help="Enable debug mode")
@click.pass_context
def main(ctx, debug):
    """taloscluster: Local Talos Kubernetes clusters on containers or VMs."""
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug
    setup_logging(debug)


@click.group()
@click.option("--name", default=DEFAULT_CLUSTER_NAME, show_default=True, help="The name of the cluster")
@click.option("--state", default=lambda: str(default_state_dir()), show_default="~/.talos/clusters",
              help="Directory path to store cluster state")
@click.option("--provisioner", default="docker", show_default=True,
              help="Talos cluster provisioner to use")
@click.pass_context
def cluster(ctx, name, state, provisioner):
    """Manage local Talos clusters."""
    ctx.ensure_object(dict)
    ctx.obj["name"] = name
    ctx.obj["state"] = state
    ctx.obj["provisioner"] = provisioner


# Add subcommands
cluster.add_command(create)
cluster.add_command(destroy)
cluster.add_command(show)
cluster.add_command(start)

main.add_command(cluster)
main.add_command(machineconfig)


if __name__ == "__main__":
    main()
