#!/usr/bin/env python3
"""
Hawa UDP Proxy Application Class
Owns the relay's lifecycle: logging, setup, signal handling and shutdown
"""

import asyncio
import logging
import platform
import signal

from config_manager import Config
from relay_errors import RelaySetupError
from safe_logger import setup_safe_logging, get_safe_logger, V_TRACE
from udp_relay import UDPRelay

logger = get_safe_logger(__name__)


class RelayApplication:
    """Runs a UDPRelay until SIGINT/SIGTERM or shutdown()"""

    def __init__(self, config: Config, configure_logging: bool = True):
        self.config = config
        self.configure_logging = configure_logging
        self.relay = None
        self.running = False
        self.shutdown_event = asyncio.Event()

    def _setup_logging(self):
        """Setup logging based on configuration"""
        log_config = self.config.logging
        setup_safe_logging(
            enabled=True,
            level=getattr(logging, log_config.level),
            verbosity=log_config.verbosity,
            log_format=log_config.format,
            console=log_config.console.enabled,
            log_file=log_config.file.path if log_config.file.enabled else None,
            max_size=log_config.file.max_size,
            rotate_count=log_config.file.rotate_count
        )

    def _create_relay(self) -> UDPRelay:
        return UDPRelay(
            self.config.backend.host,
            self.config.backend.port,
            self.config.listen.port,
            listen_host=self.config.listen.host,
            idle_timeout=self.config.relay.idle_timeout,
            sweep_interval=self.config.relay.sweep_interval
        )

    async def initialize(self):
        """Configure logging and set up the relay; raises RelaySetupError"""
        if self.configure_logging:
            self._setup_logging()

        logger.info(f"Starting {self.config.service.display_name}")
        logger.vlog(V_TRACE, f"Proxy port = {self.config.listen.port}, "
                             f"Server address = {self.config.backend.host}:{self.config.backend.port}")

        self.relay = self._create_relay()
        outcome = await self.relay.setup()
        if not outcome.ok:
            logger.error(f"Relay setup failed: {outcome.describe()}")
            raise RelaySetupError(outcome)

    async def start(self):
        """Start the application and block until shutdown"""
        try:
            await self.initialize()

            self._setup_signal_handlers()
            self.running = True

            relay_task = asyncio.create_task(self.relay.run())
            shutdown_task = asyncio.create_task(self.shutdown_event.wait())
            # Stats logging never decides when the relay stops
            stats_task = None
            if self.config.relay.stats_interval:
                stats_task = asyncio.create_task(self._log_stats())

            # Wait for either the relay to complete or shutdown signal
            done, pending = await asyncio.wait([relay_task, shutdown_task],
                                               return_when=asyncio.FIRST_COMPLETED)

            await self.relay.stop()
            if stats_task is not None:
                pending.add(stats_task)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

            # Surface a crashed relay
            if relay_task in done and relay_task.exception() is not None:
                raise relay_task.exception()
            if relay_task in done:
                logger.warning("Relay stopped without a shutdown request")

        finally:
            await self.shutdown()

    async def shutdown(self):
        """Shutdown the application cleanly"""
        if not self.running:
            return

        logger.info(f"Stopping {self.config.service.display_name}")
        self.running = False
        self._remove_signal_handlers()
        if self.relay is not None:
            await self.relay.stop()

    def request_shutdown(self):
        """Ask start() to return; safe to call from signal handlers"""
        self.shutdown_event.set()

    def _setup_signal_handlers(self):
        """Setup signal handlers for graceful shutdown"""
        if platform.system() == 'Windows':
            # No add_signal_handler on the Proactor loop
            signal.signal(signal.SIGINT, lambda signum, frame: self.request_shutdown())
            return

        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(signum, self._on_signal, signum)

    def _remove_signal_handlers(self):
        if platform.system() == 'Windows':
            return
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(signum)

    def _on_signal(self, signum: int):
        logger.info(f"Received signal {signal.Signals(signum).name}, initiating shutdown...")
        self.request_shutdown()

    async def _log_stats(self):
        """Periodically log relay counters until cancelled"""
        try:
            while True:
                await asyncio.sleep(self.config.relay.stats_interval)
                try:
                    self._write_stats()
                except Exception:
                    logger.exception("Failed to log relay stats")
        except Exception:
            logger.exception("Stats logging stopped")

    def _write_stats(self):
        stats = self.relay.stats
        logger.info(
            f"Relay stats: {len(self.relay.table)} connections, "
            f"{stats.datagrams_from_clients} in / {stats.datagrams_to_clients} out, "
            f"{stats.transient_errors} errors, {stats.dropped} dropped, "
            f"{stats.truncated} truncated"
        )
