#!/usr/bin/env python3
"""
Hawa UDP Proxy Main Entry Point
"""

import asyncio
import sys

from app import RelayApplication
from cli_utils import create_argument_parser, build_config, service_arguments, validate_configuration
from config_manager import ConfigurationError
from relay_errors import RelaySetupError
from safe_logger import get_safe_logger, setup_safe_logging
from service_control import SystemdServiceManager, ServiceControlError

logger = get_safe_logger(__name__)


async def main(argv=None) -> int:
    """Main entry point; returns the process exit status"""
    parser = create_argument_parser()
    args = parser.parse_args(argv)

    # Console logging until the configuration is known
    setup_safe_logging(enabled=True)

    if args.validate_config:
        return 0 if validate_configuration(args) else 1

    try:
        config = build_config(args)
    except ConfigurationError as e:
        logger.error(str(e))
        return 1

    if args.service:
        manager = SystemdServiceManager(config.service, service_arguments(args))
        try:
            result = manager.control(args.service)
        except ServiceControlError as e:
            logger.error(str(e))
            return 1
        if result is not None:
            print(result)
        return 0

    app = RelayApplication(config)
    try:
        await app.start()
    except RelaySetupError as e:
        logger.error(f"Relay failed to start: {e}")
        return 1

    return 0


def run():
    """Console script entry point"""
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")


if __name__ == '__main__':
    run()
