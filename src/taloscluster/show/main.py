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
Show local cluster command.

This command prints the provisioner, the network layout and a table of the
nodes of a cluster, as recorded in its persisted state.
"""

import sys
from typing import List

import click

from ..exceptions import TalosClusterError
from ..providers import factory
from ..providers.base import Cluster
from ..utils import format_bytes


def _cpus(nano_cpus: int) -> str:
    if not nano_cpus:
        return "-"
    return f"{nano_cpus / 1e9:.2f}"


def _size(size: int) -> str:
    return format_bytes(size) if size else "-"


def _table(rows: List[List[str]]) -> List[str]:
    widths = [max(len(row[i]) for row in rows) for i in range(len(rows[0]))]
    return ["   ".join(cell.ljust(width) for cell, width in zip(row, widths)).rstrip() for row in rows]


def show_cluster(cluster: Cluster) -> None:
    """
    Print a cluster summary.

    Args:
        cluster: Cluster to describe
    """
    info = cluster.info
    network = info.network

    click.echo()
    click.echo(f"PROVISIONER           {cluster.provisioner}")
    click.echo(f"NAME                  {info.cluster_name}")
    click.echo(f"NETWORK NAME          {network.name}")
    click.echo(f"NETWORK CIDR          {','.join(str(c) for c in network.cidrs)}")
    click.echo(f"NETWORK GATEWAY       {','.join(str(g) for g in network.gateway_addrs)}")
    click.echo(f"NETWORK MTU           {network.mtu}")
    if info.kubernetes_endpoint:
        click.echo(f"KUBERNETES ENDPOINT   {info.kubernetes_endpoint}")

    click.echo()
    click.echo("NODES:")
    click.echo()

    rows = [["NAME", "TYPE", "IP", "CPU", "RAM", "DISK"]]
    for node in info.nodes:
        rows.append([
            node.name,
            node.type.value,
            ",".join(str(ip) for ip in node.ips),
            _cpus(node.nano_cpus),
            _size(node.memory),
            _size(node.disk_size),
        ])

    for line in _table(rows):
        click.echo(line)


@click.command(name='show')
@click.pass_context
def show(ctx):
    """
    Show a local Talos cluster.

    Examples:

        taloscluster cluster show
        taloscluster cluster --name demo --provisioner qemu show
    """
    debug = ctx.obj.get('debug', False)

    try:
        provider = factory(ctx.obj['provisioner'])
        with provider:
            cluster = provider.reflect(ctx.obj['name'], ctx.obj['state'])
        show_cluster(cluster)

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
