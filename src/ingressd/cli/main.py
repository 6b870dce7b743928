"""
ingressd CLI entry point.

Usage:
    ingressd run --install --ingress-gateway-ips "10.0.0.2 10.0.0.3" [OPTIONS]
    ingressd run --uninstall
    ingressd ids --ingress-gateway-ips "10.0.0.2 null 10.0.0.4" --subnet 10.0.0.0/24
    ingressd version
"""

import ipaddress
import re
import signal
from contextlib import suppress
from typing import Annotated

import typer

from ingressd.cli.formatters import format_registry_table
from ingressd.cli.output import console, print_error, print_success, print_warning
from ingressd.config import config
from ingressd.exceptions import IngressdError
from ingressd.models.enums import LogLevel
from ingressd.utils.logger import configure_logging, get_logger

logger = get_logger(__name__)

app = typer.Typer(
    name="ingressd",
    help="Return-path routing for the Docker Swarm ingress mesh",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


def _split(value: str | None) -> list[str]:
    """Split a comma/space separated option value."""
    if not value:
        return []
    return [tok for tok in re.split(r"[\s,]+", value) if tok]


def _ports(value: str | None, option: str) -> list[int]:
    ports = []
    for tok in _split(value):
        try:
            port = int(tok)
        except ValueError:
            raise typer.BadParameter(f"'{tok}' is not a port number", param_hint=option)
        if port < 1 or port > 65535:
            raise typer.BadParameter(f"{port} is out of range", param_hint=option)
        ports.append(port)
    return ports


@app.command("run")
def run(
    install: Annotated[
        bool, typer.Option("--install", help="Configure this node and watch containers")
    ] = False,
    uninstall: Annotated[
        bool, typer.Option("--uninstall", help="Remove marking rules and exit")
    ] = False,
    services: Annotated[
        str | None,
        typer.Option(
            "--services", help="Only configure these services (comma separated)",
            envvar="INGRESSD_SERVICES",
        ),
    ] = None,
    tcp_ports: Annotated[
        str | None,
        typer.Option("--tcp-ports", help="Only mark these TCP ports", envvar="INGRESSD_TCP_PORTS"),
    ] = None,
    udp_ports: Annotated[
        str | None,
        typer.Option("--udp-ports", help="Only mark these UDP ports", envvar="INGRESSD_UDP_PORTS"),
    ] = None,
    gateway_ips: Annotated[
        str | None,
        typer.Option(
            "--ingress-gateway-ips",
            help="Ordered load balancer ingress addresses; 'null' marks a retired node",
            envvar="INGRESSD_GATEWAY_IPS",
        ),
    ] = None,
    no_performance: Annotated[
        bool,
        typer.Option("--no-performance", help="Skip IPVS sysctl tuning and conntrack bypass"),
    ] = False,
    indexed_ids: Annotated[
        bool, typer.Option("--indexed-ids", help="Use list positions as node ids")
    ] = False,
    preexisting: Annotated[
        bool, typer.Option("--preexisting", help="Also configure already-running containers")
    ] = False,
    retries: Annotated[
        int, typer.Option("--retries", min=0, help="Retries per failing container")
    ] = 2,
    log_level: Annotated[
        LogLevel, typer.Option("--log-level", "-l", envvar="INGRESSD_LOG_LEVEL")
    ] = LogLevel.INFO,
):
    """Install or uninstall ingress return-path routing."""
    if install == uninstall:
        print_error("Specify exactly one of --install or --uninstall.")
        raise typer.Exit(2)

    config.INSTALL = install
    config.UNINSTALL = uninstall
    config.SERVICES = _split(services)
    config.TCP_PORTS = _ports(tcp_ports, "--tcp-ports")
    config.UDP_PORTS = _ports(udp_ports, "--udp-ports")
    config.GATEWAY_IPS = _split(gateway_ips)
    config.PERFORMANCE = not no_performance
    config.INDEXED_IDS = indexed_ids
    config.PREEXISTING = preexisting
    config.INSTALL_RETRIES = retries
    config.LOG_LEVEL = log_level

    configure_logging(config.LOG_LEVEL)

    from ingressd.services.daemon import preflight, run_install, run_uninstall

    try:
        preflight()

        if config.UNINSTALL:
            removed = run_uninstall(config)
            print_success(f"Removed {removed} marking rule(s).")
            return

        # SIGTERM ends the watch loop the same way Ctrl-C does.
        signal.signal(signal.SIGTERM, signal.default_int_handler)
        with suppress(KeyboardInterrupt):
            run_install(config)
        logger.info("Stopped")

    except IngressdError as e:
        print_error(str(e))
        raise typer.Exit(1)


@app.command("ids")
def show_ids(
    gateway_ips: Annotated[
        str,
        typer.Option(
            "--ingress-gateway-ips",
            help="Ordered load balancer ingress addresses; 'null' marks a retired node",
            envvar="INGRESSD_GATEWAY_IPS",
        ),
    ],
    subnet: Annotated[
        str | None,
        typer.Option("--subnet", help="Ingress subnet (looked up in Docker if omitted)"),
    ] = None,
    node_address: Annotated[
        str | None, typer.Option("--node-address", help="Highlight this node's entry")
    ] = None,
    indexed_ids: Annotated[
        bool, typer.Option("--indexed-ids", help="Use list positions as node ids")
    ] = False,
):
    """Show the node ids a gateway list resolves to. Changes nothing."""
    from ingressd.services.registry import parse_gateway_list, resolve_registry

    configure_logging(LogLevel.WARNING)

    try:
        if subnet:
            try:
                network = ipaddress.IPv4Network(subnet, strict=False)
            except ValueError as e:
                raise typer.BadParameter(str(e), param_hint="--subnet")
        else:
            from ingressd.docker.client import DockerGateway

            network = DockerGateway().network_subnet(config.INGRESS_NETWORK_NAME)
            if network is None:
                print_error(f"Network '{config.INGRESS_NETWORK_NAME}' has no IPv4 subnet.")
                raise typer.Exit(1)

        local = ipaddress.IPv4Address(node_address) if node_address else None
        registry = resolve_registry(
            parse_gateway_list(gateway_ips),
            network,
            node_address=local,
            force_indexed=indexed_ids,
        )
    except (IngressdError, ipaddress.AddressValueError) as e:
        print_error(str(e))
        raise typer.Exit(1)

    console.print(format_registry_table(registry, str(network)))
    if local is not None and registry.local is None:
        print_warning(f"{local} is not in the list; this node would not be a load balancer.")


@app.command("version")
def version():
    """Show version information."""
    from ingressd import __version__

    console.print(f"ingressd v{__version__}")


if __name__ == "__main__":
    app()
