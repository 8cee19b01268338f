"""
CLI for netcat operations.
"""

import sys

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from relaycat.config import NetcatConfig, Protocol
from relaycat.errors import ConfigurationError, DialError, ListenSetupError
from relaycat.logging_config import configure_logging, get_error_stats
from relaycat.netcat.session import SessionController, install_shutdown_handler
from relaycat.netcat.web import WebServer

console = Console(stderr=True)


@click.group()
@click.version_option(package_name="relaycat")
def nc():
    """relaycat - dial or listen on TCP/UDP, relay stdin/stdout or a shell.

    \b
    Examples:
        # Connect to a server
        relaycat connect example.com 80

        # Listen and bridge each connection to a shell, over TLS
        relaycat listen 4000 -e --tls

        # Run commands over UDP
        relaycat listen 4000 -u -e

        # Serve ./public over HTTP
        relaycat web 8080 --root public
    """
    pass


def build_config(**options) -> NetcatConfig:
    """Build the process configuration or exit with status 2."""
    try:
        return NetcatConfig.from_env(**options)
    except ConfigurationError as e:
        console.print(f"[red]Configuration error: {escape(str(e))}[/red]")
        sys.exit(2)


def run_controller(controller: SessionController) -> None:
    """Run the controller; fatal setup errors exit with status 1."""
    install_shutdown_handler(controller.shutdown)
    try:
        controller.run()
    except DialError as e:
        console.print(f"[red]Dial failed: {escape(str(e))}[/red]")
        sys.exit(1)
    except ListenSetupError as e:
        console.print(f"[red]Listen failed: {escape(str(e))}[/red]")
        sys.exit(1)


def print_error_stats() -> None:
    stats = get_error_stats()
    if not stats:
        return

    table = Table(title="Connection Errors")
    table.add_column("Kind", style="cyan")
    table.add_column("Count", justify="right")
    for kind, count in sorted(stats.items()):
        table.add_row(kind, str(count))
    console.print(table)


@nc.command()
@click.argument("host")
@click.argument("port", type=int)
@click.option("--udp", "-u", is_flag=True, help="Use UDP instead of TCP")
@click.option("--exec", "-e", "shell", is_flag=True, help="Bridge the connection to a local shell")
@click.option("--tls", is_flag=True, help="Wrap the connection in TLS")
@click.option("--verify", is_flag=True, help="Verify the server certificate (off by default)")
@click.option("--keepalive", "-k", is_flag=True, help="Enable TCP keepalive and zero-linger close")
@click.option("--buffer-size", "-b", type=int, help="Read buffer size in bytes")
@click.option("--timeout", "-w", type=float, help="Per-attempt connect timeout (seconds)")
@click.option("--retries", "-r", type=int, help="Extra connection attempts")
@click.option("--session-timeout", "-t", type=float, help="Kill the bridged shell after N seconds")
@click.option("--hex", "-x", "hex_dump", is_flag=True, help="Show hex dump of data")
@click.option("--zero", "-z", is_flag=True, help="Zero-I/O mode (just test connection)")
@click.option("--verbose", "-v", is_flag=True, help="Verbose output")
@click.option("--debug", is_flag=True, help="Debug output")
@click.option("--log-file", type=click.Path(dir_okay=False), help="Also log to this file")
def connect(
    host: str,
    port: int,
    udp: bool,
    shell: bool,
    tls: bool,
    verify: bool,
    keepalive: bool,
    buffer_size: int | None,
    timeout: float | None,
    retries: int | None,
    session_timeout: float | None,
    hex_dump: bool,
    zero: bool,
    verbose: bool,
    debug: bool,
    log_file: str | None,
):
    """Connect to a remote host.

    \b
    Examples:
        # Simple connection
        relaycat connect example.com 80

        # TLS, trusting any certificate, retrying 3 times
        relaycat connect example.com 4000 --tls -r 3

        # Offer a shell to the listener
        relaycat connect example.com 4000 -e

        # Test connection only
        relaycat connect example.com 22 -z
    """
    configure_logging(verbose=verbose, debug=debug, log_file=log_file)
    config = build_config(
        host=host,
        port=port,
        protocol=Protocol.UDP if udp else Protocol.TCP,
        listen=False,
        shell=shell,
        tls=tls,
        tls_verify=verify,
        keepalive=keepalive,
        buffer_size=buffer_size,
        connect_timeout=timeout,
        retries=retries,
        session_timeout=session_timeout,
        hex_dump=hex_dump,
        zero_io=zero,
        verbose=verbose,
    )

    run_controller(SessionController(config))

    if zero:
        console.print(f"[green]Connection to {config.address} succeeded[/green]")


@nc.command()
@click.argument("port", type=int)
@click.option("--bind", "-s", "host", default="0.0.0.0", help="Address to bind to")
@click.option("--udp", "-u", is_flag=True, help="Use UDP instead of TCP")
@click.option("--exec", "-e", "shell", is_flag=True, help="Bridge each connection to a local shell")
@click.option("--tls", is_flag=True, help="TLS with an ephemeral self-signed certificate")
@click.option("--keepalive", "-k", is_flag=True, help="Enable TCP keepalive and zero-linger close")
@click.option("--buffer-size", "-b", type=int, help="Read buffer size in bytes")
@click.option("--timeout", "-w", type=float, help="TLS handshake timeout (seconds)")
@click.option("--session-timeout", "-t", type=float, help="Kill each bridged shell after N seconds")
@click.option("--max-connections", "-m", type=int, help="Concurrent connection limit")
@click.option("--hex", "-x", "hex_dump", is_flag=True, help="Show hex dump of data")
@click.option("--verbose", "-v", is_flag=True, help="Verbose output")
@click.option("--debug", is_flag=True, help="Debug output")
@click.option("--log-file", type=click.Path(dir_okay=False), help="Also log to this file")
def listen(
    port: int,
    host: str,
    udp: bool,
    shell: bool,
    tls: bool,
    keepalive: bool,
    buffer_size: int | None,
    timeout: float | None,
    session_timeout: float | None,
    max_connections: int | None,
    hex_dump: bool,
    verbose: bool,
    debug: bool,
    log_file: str | None,
):
    """Listen for incoming connections or datagrams.

    \b
    Examples:
        # Listen on port 4000
        relaycat listen 4000

        # Shell over TLS, at most 4 sessions
        relaycat listen 4000 -e --tls -m 4

        # One command per datagram
        relaycat listen 4000 -u -e
    """
    configure_logging(verbose=verbose, debug=debug, log_file=log_file)
    config = build_config(
        host=host,
        port=port,
        protocol=Protocol.UDP if udp else Protocol.TCP,
        listen=True,
        shell=shell,
        tls=tls,
        keepalive=keepalive,
        buffer_size=buffer_size,
        connect_timeout=timeout,
        session_timeout=session_timeout,
        max_connections=max_connections,
        hex_dump=hex_dump,
        verbose=verbose,
    )

    if verbose:
        console.print(f"[dim]Listening on {config.address} ({config.protocol.value}). "
                      f"Ctrl+C to exit.[/dim]")

    try:
        run_controller(SessionController(config))
    finally:
        if verbose:
            print_error_stats()


@nc.command()
@click.argument("port", type=int)
@click.option("--bind", "-s", "host", default="0.0.0.0", help="Address to bind to")
@click.option("--root", "web_root", default="public", type=click.Path(file_okay=False),
              help="Directory to serve")
@click.option("--verbose", "-v", is_flag=True, help="Verbose output")
@click.option("--debug", is_flag=True, help="Debug output")
def web(port: int, host: str, web_root: str, verbose: bool, debug: bool):
    """Serve a directory over HTTP.

    \b
    Examples:
        relaycat web 8080 --root public
    """
    configure_logging(verbose=verbose, debug=debug)
    config = build_config(host=host, port=port, web_root=web_root, verbose=verbose)

    server = WebServer(config)
    try:
        server.bind()
    except ListenSetupError as e:
        console.print(f"[red]Listen failed: {escape(str(e))}[/red]")
        sys.exit(1)

    # serve() unwinds on the SystemExit raised by the handler
    install_shutdown_handler(lambda: None)
    server.serve()


if __name__ == "__main__":
    nc()
