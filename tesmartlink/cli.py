"""Command-line interface for TESmart KVM control."""

import argparse
import logging
import sys
import threading
import time
from pathlib import Path
from typing import Optional

from . import __version__
from .client import TESmartKVM
from .config import Connection, load_config
from .exceptions import TESmartError
from .poller import PollingCoordinator


def create_parser() -> argparse.ArgumentParser:
    """Create and configure the argument parser.

    Returns:
        Configured ArgumentParser instance
    """
    parser = argparse.ArgumentParser(
        prog="teslink",
        description="Control a TESmart 16-port HDMI KVM switch over TCP/IP",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  teslink get port                Get current active input
  teslink list                    List configured port names
  teslink set port 3              Switch to input 3
  teslink set port workstation    Switch to input by name (from config)
  teslink set buzzer off          Mute the buzzer
  teslink set led 10              Turn the LED display off after 10 seconds
  teslink ping                    Check that the switch answers
  teslink raw "AA BB 03 10 00 EE" Send raw bytes, print the reply as hex
  teslink net get                 Show the switch's network settings
  teslink net set --ip 192.168.1.20 --net-port 5000 \\
      --mask 255.255.255.0 --gw 192.168.1.1
  teslink watch                   Follow the active input until Ctrl-C

Configuration:
  Settings can be stored in ~/.config/tesmartlink/config.toml
  Use --host, --port, etc. to override config file values.
        """,
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    parser.add_argument(
        "--host",
        type=str,
        help="KVM IP address (overrides config file)",
    )

    parser.add_argument(
        "--port",
        type=int,
        help="KVM TCP port (overrides config file)",
    )

    parser.add_argument(
        "--get-timeout",
        type=float,
        help="Deadline for queries in seconds (overrides config file)",
    )

    parser.add_argument(
        "--set-timeout",
        type=float,
        help="Deadline for set commands in seconds (overrides config file)",
    )

    parser.add_argument(
        "--config",
        type=Path,
        help="Path to config file (default: ~/.config/tesmartlink/config.toml)",
    )

    parser.add_argument(
        "--connection",
        "-c",
        type=str,
        help="Connection name to use (from config file)",
    )

    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Log protocol traffic to stderr",
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to execute")

    subparsers.add_parser(
        "list",
        help="List configured port names",
    )

    subparsers.add_parser(
        "ping",
        help="Check that the KVM answers",
    )

    subparsers.add_parser(
        "watch",
        help="Poll the active input and print changes until interrupted",
    )

    raw_parser = subparsers.add_parser(
        "raw",
        help="Send raw hex bytes and print the reply",
    )
    raw_parser.add_argument(
        "hex",
        nargs="+",
        help="Bytes as hex, spaces allowed (e.g. AABB031000EE)",
    )
    raw_parser.add_argument(
        "--deadline",
        type=float,
        default=1.2,
        help="Seconds to collect the reply (default: 1.2)",
    )

    get_parser = subparsers.add_parser(
        "get",
        help="Get current settings",
    )
    get_parser.add_argument(
        "property",
        choices=["port"],
        help="Property to get (only 'port' is supported by the KVM protocol)",
    )

    set_parser = subparsers.add_parser(
        "set",
        help="Set KVM settings",
    )
    set_subparsers = set_parser.add_subparsers(dest="property", help="Property to set")

    set_port_parser = set_subparsers.add_parser("port", help="Set active input")
    set_port_parser.add_argument(
        "value",
        type=str,
        help="Input number (1-16) or name from config",
    )

    set_buzzer_parser = set_subparsers.add_parser("buzzer", help="Set buzzer state")
    set_buzzer_parser.add_argument(
        "value",
        choices=["on", "off", "1", "0"],
        help="Buzzer state (on/off or 1/0)",
    )

    set_led_parser = set_subparsers.add_parser("led", help="Set LED display timeout")
    set_led_parser.add_argument(
        "value",
        choices=["off", "0", "10", "30"],
        help="Timeout in seconds (off/0, 10, or 30)",
    )

    net_parser = subparsers.add_parser(
        "net",
        help="Read or change the KVM's network settings",
    )
    net_subparsers = net_parser.add_subparsers(dest="action", help="Action")
    net_subparsers.add_parser("get", help="Show IP, port, netmask and gateway")
    net_set_parser = net_subparsers.add_parser("set", help="Send new network settings")
    net_set_parser.add_argument("--ip", required=True, help="New IPv4 address")
    net_set_parser.add_argument("--net-port", type=int, required=True, help="New TCP port")
    net_set_parser.add_argument("--mask", required=True, help="New netmask")
    net_set_parser.add_argument("--gw", required=True, help="New gateway")

    return parser


def _port_display(conn: Connection, port: int) -> str:
    name = conn.get_port_name(port)
    return f"{port} ({name})" if name else str(port)


def handle_list(conn: Connection) -> int:
    """Handle the 'list' command to show port metadata.

    Args:
        conn: Active connection from the config

    Returns:
        Exit code (0 for success)
    """
    print(f"Ports for '{conn.name}' ({conn.ip}:{conn.port}):")
    for number, meta in sorted(conn.ports.items()):
        icon = conn.icon_path(number)
        suffix = f"  [{icon}]" if icon else ""
        print(f"  {number:>2} = {meta.name}{suffix}")
    return 0


def handle_get_port(kvm: TESmartKVM, conn: Connection) -> int:
    """Handle the 'get port' command.

    Args:
        kvm: TESmartKVM instance
        conn: Active connection, for port names

    Returns:
        Exit code (0 for success)
    """
    try:
        port = kvm.get_active_input()
        print(_port_display(conn, port))
        return 0
    except TESmartError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def handle_set_port(kvm: TESmartKVM, port_identifier: str, conn: Connection) -> int:
    """Handle the 'set port' command.

    Goes through the coordinator so verification follows the config.

    Args:
        kvm: TESmartKVM instance
        port_identifier: Input number or configured name
        conn: Active connection, for port names and timing

    Returns:
        Exit code (0 for success)
    """
    port = conn.resolve_port(port_identifier)
    if port is None:
        print(f"Error: Invalid port '{port_identifier}'", file=sys.stderr)
        print("Must be a number (1-16) or a configured port name", file=sys.stderr)
        return 1

    errors = []
    coordinator = PollingCoordinator.from_config(
        kvm,
        conn,
        on_status=print,
        on_error=errors.append,
    )
    if coordinator.switch_to(port):
        return 0
    print(f"Error: {errors[-1]}", file=sys.stderr)
    return 1


def handle_set_buzzer(kvm: TESmartKVM, state: str) -> int:
    """Handle the 'set buzzer' command.

    Args:
        kvm: TESmartKVM instance
        state: Buzzer state (on/off/1/0)

    Returns:
        Exit code (0 for success)
    """
    try:
        enabled = state in ["on", "1"]
        kvm.set_buzzer(enabled)
        print(f"Buzzer {'unmuted' if enabled else 'muted'}")
        return 0
    except TESmartError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def handle_set_led(kvm: TESmartKVM, timeout: str) -> int:
    """Handle the 'set led' command.

    Args:
        kvm: TESmartKVM instance
        timeout: Timeout value (off/0/10/30)

    Returns:
        Exit code (0 for success)
    """
    try:
        timeout_value = 0 if timeout in ["off", "0"] else int(timeout)
        kvm.set_led_timeout(timeout_value)
        if timeout_value == 0:
            print("LED timeout: off")
        else:
            print(f"LED timeout: {timeout_value}s")
        return 0
    except (TESmartError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def handle_ping(kvm: TESmartKVM) -> int:
    """Handle the 'ping' command."""
    start = time.monotonic()
    try:
        kvm.ping()
    except TESmartError as e:
        print(f"Ping failed: {e}", file=sys.stderr)
        return 1
    print(f"Ping OK ({(time.monotonic() - start) * 1000:.0f} ms)")
    return 0


def handle_raw(kvm: TESmartKVM, hex_parts: list, deadline: float) -> int:
    """Handle the 'raw' command."""
    try:
        reply = kvm.raw_hex_send(" ".join(hex_parts), deadline)
    except TESmartError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    print(reply if reply else "(no reply)")
    return 0


def handle_net_get(kvm: TESmartKVM) -> int:
    """Handle the 'net get' command."""
    try:
        net = kvm.get_network_config()
    except TESmartError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    print(f"IP:      {net.ip}")
    print(f"Port:    {net.port}")
    print(f"Netmask: {net.mask}")
    print(f"Gateway: {net.gateway}")
    return 0


def handle_net_set(kvm: TESmartKVM, ip: str, port: int, mask: str, gateway: str) -> int:
    """Handle the 'net set' command."""
    try:
        kvm.set_network_config(ip, port, mask, gateway)
    except TESmartError as e:
        print(f"Error: set failed: {e}", file=sys.stderr)
        return 1
    print("Network configuration sent")
    print(f"  IP: {ip}\n  Netmask: {mask}\n  Gateway: {gateway}\n  Port: {port}")
    print("Note: power-cycle the switch for the new IP/port to take effect,")
    print("then update your config file to point at the new address.")
    return 0


def handle_watch(kvm: TESmartKVM, conn: Connection, stop: Optional[threading.Event] = None) -> int:
    """Handle the 'watch' command: run the poller until interrupted.

    Args:
        kvm: TESmartKVM instance
        conn: Active connection, for timing and port names
        stop: Event that ends the watch (Ctrl-C when not given)

    Returns:
        Exit code (0 for success)
    """
    stop = stop or threading.Event()
    coordinator = PollingCoordinator.from_config(
        kvm,
        conn,
        on_active_changed=lambda port: print(f"Active input: {_port_display(conn, port)}"),
        on_status=lambda message: print(message, file=sys.stderr),
        on_error=lambda error: print(f"Error: {error}", file=sys.stderr),
    )
    coordinator.start()
    try:
        while not stop.wait(0.2):
            pass
    except KeyboardInterrupt:
        pass
    finally:
        coordinator.stop(timeout=conn.get_timeout * 2 + 1.0)
    return 0


def main(argv: Optional[list] = None) -> int:
    """Main entry point for the CLI.

    Args:
        argv: Command-line arguments (default: sys.argv[1:])

    Returns:
        Exit code
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if not args.command:
        parser.print_help()
        return 1

    try:
        config = load_config(args.config, args.connection)
        # Eagerly validate connection exists by accessing active_connection
        conn = config.active_connection
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if args.command == "list":
        return handle_list(conn)

    try:
        kvm = TESmartKVM(
            host=args.host if args.host is not None else conn.ip,
            port=args.port if args.port is not None else conn.port,
            get_timeout=args.get_timeout if args.get_timeout is not None else conn.get_timeout,
            set_timeout=args.set_timeout if args.set_timeout is not None else conn.set_timeout,
        )
    except TESmartError as e:
        print(f"Error initializing KVM connection: {e}", file=sys.stderr)
        return 1

    if args.command == "get":
        return handle_get_port(kvm, conn)
    elif args.command == "set":
        if not args.property:
            parser.print_help()
            return 1
        if args.property == "port":
            return handle_set_port(kvm, args.value, conn)
        elif args.property == "buzzer":
            return handle_set_buzzer(kvm, args.value)
        elif args.property == "led":
            return handle_set_led(kvm, args.value)
        else:
            parser.print_help()
            return 1
    elif args.command == "ping":
        return handle_ping(kvm)
    elif args.command == "raw":
        return handle_raw(kvm, args.hex, args.deadline)
    elif args.command == "net":
        if args.action == "get":
            return handle_net_get(kvm)
        elif args.action == "set":
            return handle_net_set(kvm, args.ip, args.net_port, args.mask, args.gw)
        parser.print_help()
        return 1
    elif args.command == "watch":
        return handle_watch(kvm, conn)
    else:
        parser.print_help()
        return 1


if __name__ == "__main__":
    sys.exit(main())
