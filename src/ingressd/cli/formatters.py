"""Rich formatters for resolved registries."""

from rich.table import Table

from ingressd.models.topology import LoadBalancerRegistry


def format_registry_table(registry: LoadBalancerRegistry, subnet: str) -> Table:
    """Table of every configured load balancer and its resolved id."""
    table = Table(
        title=f"Load balancers on {subnet} ({registry.id_mode.value} ids)",
        show_header=True,
        header_style="bold",
    )
    table.add_column("#", justify="right", style="dim")
    table.add_column("Address")
    table.add_column("Id / Table", justify="right")
    table.add_column("Mark")
    table.add_column("Note")

    for node in registry.nodes:
        if node.retired:
            table.add_row(str(node.position), "[dim]null[/dim]", "-", "-", "[dim]retired[/dim]")
            continue

        note = "[cyan]this node[/cyan]" if node == registry.local else ""
        table.add_row(
            str(node.position),
            str(node.address),
            str(node.node_id),
            f"{node.node_id:#04x}",
            note,
        )

    return table
