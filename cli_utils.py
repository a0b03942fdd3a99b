#!/usr/bin/env python3
"""
CLI Utilities for the Hawa UDP Proxy
Command line argument parsing and validation functions
"""

import argparse
import logging
from typing import Optional, Tuple

from config_manager import Config, ConfigManager, ConfigurationError
from service_control import CONTROL_ACTIONS

logger = logging.getLogger(__name__)

__version__ = '1.0.0'


def parse_target(value: str) -> Tuple[str, int]:
    """Parse a host:port (or [v6host]:port) backend override"""
    if value.startswith('['):
        host, sep, port = value[1:].partition(']:')
    else:
        host, sep, port = value.rpartition(':')
        if ':' in host:
            sep = ''
    if not sep or not host:
        raise argparse.ArgumentTypeError(f"expected host:port, got {value!r}")
    try:
        port_number = int(port)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid port in {value!r}")
    if not (1 <= port_number <= 65535):
        raise argparse.ArgumentTypeError(f"port out of range in {value!r}")
    return host, port_number


def create_argument_parser():
    """Create command line argument parser"""
    parser = argparse.ArgumentParser(
        description='Hawa UDP Proxy - relay datagrams from many clients to one server',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s -p 8800 -H 10.0.0.5 -P 8000          # Relay :8800 -> 10.0.0.5:8000
  %(prog)s 10.0.0.5:8000                        # Same, positional target
  %(prog)s -c config.yaml -e production         # With config file and environment
  %(prog)s -v 3 10.0.0.5:8000                   # Trace every datagram
  %(prog)s --service install 10.0.0.5:8000      # Install as a systemd service
        """
    )

    parser.add_argument(
        'target',
        nargs='?',
        type=parse_target,
        help='Server address as host:port (overrides -H/-P)'
    )

    parser.add_argument(
        '-p', '--port',
        type=int,
        help='Proxy port (default: 8800)'
    )

    parser.add_argument(
        '-P', '--server-port',
        type=int,
        help='Server port (default: 8000)'
    )

    parser.add_argument(
        '-H', '--server-host',
        help='Server address (default: 192.168.32.195)'
    )

    parser.add_argument(
        '-v', '--verbosity',
        type=int,
        choices=range(0, 7),
        metavar='{0-6}',
        help='Verbosity (0-6, default: 1)'
    )

    parser.add_argument(
        '--listen-host',
        help='Address to bind the proxy port on (default: 0.0.0.0)'
    )

    parser.add_argument(
        '--idle-timeout',
        type=float,
        metavar='SECONDS',
        help='Close client connections idle for this long (default: never)'
    )

    parser.add_argument(
        '-c', '--config',
        help='Configuration file path'
    )

    parser.add_argument(
        '-e', '--environment',
        help='Environment name (dev/prod/test)'
    )

    parser.add_argument(
        '--service',
        choices=CONTROL_ACTIONS,
        help='Control the system service'
    )

    parser.add_argument(
        '--validate-config',
        action='store_true',
        help='Validate configuration and exit'
    )

    parser.add_argument(
        '--version',
        action='version',
        version=f'Hawa UDP Proxy {__version__}'
    )

    return parser


def build_config(args: argparse.Namespace,
                 config_manager: Optional[ConfigManager] = None) -> Config:
    """Load the configuration file (if any) and apply command line overrides"""
    config_manager = config_manager or ConfigManager()
    config = config_manager.load_config(args.config, args.environment)

    if args.port is not None:
        config.listen.port = args.port
    if args.listen_host is not None:
        config.listen.host = args.listen_host
    if args.server_host is not None:
        config.backend.host = args.server_host
    if args.server_port is not None:
        config.backend.port = args.server_port
    if args.target is not None:
        config.backend.host, config.backend.port = args.target
    if args.verbosity is not None:
        config.logging.verbosity = args.verbosity
    if args.idle_timeout is not None:
        config.relay.idle_timeout = args.idle_timeout

    config_manager.validate(config)
    return config


def service_arguments(args: argparse.Namespace) -> list:
    """Relay flags to bake into an installed service's command line"""
    argv = []
    if args.config:
        argv += ['-c', args.config]
    if args.environment:
        argv += ['-e', args.environment]
    if args.port is not None:
        argv += ['-p', str(args.port)]
    if args.listen_host is not None:
        argv += ['--listen-host', args.listen_host]
    if args.server_host is not None:
        argv += ['-H', args.server_host]
    if args.server_port is not None:
        argv += ['-P', str(args.server_port)]
    if args.verbosity is not None:
        argv += ['-v', str(args.verbosity)]
    if args.idle_timeout is not None:
        argv += ['--idle-timeout', str(args.idle_timeout)]
    if args.target is not None:
        host, port = args.target
        argv.append(f"[{host}]:{port}" if ':' in host else f"{host}:{port}")
    return argv


def validate_configuration(args: argparse.Namespace) -> bool:
    """Validate configuration and print a summary"""
    try:
        config = build_config(args)

        print("✓ Configuration is valid")
        print(f"  Proxy: {config.listen.host}:{config.listen.port}")
        print(f"  Server: {config.backend.host}:{config.backend.port}")
        print(f"  Verbosity: {config.logging.verbosity}")
        idle = config.relay.idle_timeout
        print(f"  Idle timeout: {f'{idle}s' if idle else 'disabled'}")
        print(f"  Service: {config.service.name}")

        return True

    except ConfigurationError as e:
        print(f"✗ Configuration validation failed: {e}")
        return False
