#!/usr/bin/env python3
"""
UDP Relay Engine for the Hawa UDP Proxy

Accepts datagrams on one public port and forwards each one to a single fixed
backend. Every client address gets its own backend socket (a Connection), so
backend replies arriving on that socket can be routed back to the client that
caused them.

    client -> public socket -> inbound pump -> ConnectionTable -> backend socket
    backend -> backend socket -> outbound pump -> public socket -> client
"""

import asyncio
import socket
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Tuple

from relay_errors import IOOutcome, RelaySetupError
from safe_logger import get_safe_logger, V_ERROR, V_LIFECYCLE, V_TRACE, V_LOOKUP

logger = get_safe_logger(__name__)

# Largest payload relayed per datagram (Ethernet-safe MTU); longer datagrams
# are cut to this size
MAX_DATAGRAM_SIZE = 1500

# One extra byte lets a read tell a full-size datagram from a truncated one
_READ_SIZE = MAX_DATAGRAM_SIZE + 1

Address = Tuple[Any, ...]


def format_address(address: Address) -> str:
    """Canonical host:port key for a socket address ([host]:port for IPv6)"""
    host, port = address[0], address[1]
    if ':' in str(host):
        return f"[{host}]:{port}"
    return f"{host}:{port}"


def truncate_datagram(data: bytes) -> Tuple[bytes, bool]:
    """Clip a payload to MAX_DATAGRAM_SIZE, reporting whether it was cut"""
    if len(data) > MAX_DATAGRAM_SIZE:
        return data[:MAX_DATAGRAM_SIZE], True
    return data, False


class DatagramEndpoint:
    """Non-blocking UDP socket driven through the event loop's sock_* API"""

    def __init__(self, sock: socket.socket):
        sock.setblocking(False)
        self.sock = sock

    @classmethod
    def bind(cls, host: str, port: int, family: int = socket.AF_INET) -> 'DatagramEndpoint':
        sock = socket.socket(family, socket.SOCK_DGRAM)
        try:
            sock.bind((host, port))
        except OSError:
            sock.close()
            raise
        return cls(sock)

    @classmethod
    def connect(cls, address: Address, family: int = socket.AF_INET) -> 'DatagramEndpoint':
        sock = socket.socket(family, socket.SOCK_DGRAM)
        try:
            sock.connect(address)
        except OSError:
            sock.close()
            raise
        return cls(sock)

    @property
    def local_address(self) -> Address:
        return self.sock.getsockname()

    async def recv(self, size: int) -> bytes:
        return await asyncio.get_running_loop().sock_recv(self.sock, size)

    async def recvfrom(self, size: int) -> Tuple[bytes, Address]:
        return await asyncio.get_running_loop().sock_recvfrom(self.sock, size)

    async def send(self, data: bytes) -> int:
        await asyncio.get_running_loop().sock_sendall(self.sock, data)
        return len(data)

    async def sendto(self, data: bytes, address: Address) -> int:
        return await asyncio.get_running_loop().sock_sendto(self.sock, data, address)

    def close(self):
        self.sock.close()


class SocketFactory:
    """Creates the relay's public and backend endpoints"""

    def bind(self, host: str, port: int, family: int) -> DatagramEndpoint:
        return DatagramEndpoint.bind(host, port, family)

    def connect(self, address: Address, family: int) -> DatagramEndpoint:
        return DatagramEndpoint.connect(address, family)


@dataclass
class RelayStats:
    """Relay counters"""
    datagrams_from_clients: int = 0
    datagrams_to_clients: int = 0
    bytes_from_clients: int = 0
    bytes_to_clients: int = 0
    truncated: int = 0
    transient_errors: int = 0
    dropped: int = 0
    connections_created: int = 0
    connections_evicted: int = 0

    def to_dict(self) -> Dict[str, int]:
        return dict(self.__dict__)


@dataclass(eq=False)
class Connection:
    """One client's dedicated path to the backend"""
    client_address: Address
    backend: Any
    created_at: float = field(default_factory=time.monotonic)
    last_activity: float = field(default_factory=time.monotonic)
    datagrams_in: int = 0
    datagrams_out: int = 0
    pump_task: Optional[asyncio.Task] = None

    @property
    def key(self) -> str:
        return format_address(self.client_address)

    @property
    def idle_time(self) -> float:
        return time.monotonic() - self.last_activity

    def touch(self):
        self.last_activity = time.monotonic()

    async def close(self):
        """Stop the outbound pump, then release the backend socket"""
        try:
            if self.pump_task is not None and not self.pump_task.done():
                self.pump_task.cancel()
                await asyncio.gather(self.pump_task, return_exceptions=True)
        finally:
            # Runs even when the caller is cancelled mid-close
            try:
                self.backend.close()
            except OSError as e:
                logger.vlog(V_ERROR, f"Error closing backend socket for {self.key}: {e}")


class Resolution(NamedTuple):
    """Result of ConnectionTable.resolve()"""
    connection: Optional[Connection]
    created: bool
    outcome: IOOutcome


class ConnectionTable:
    """
    Client address -> Connection mapping guarded by a single lock.

    The lock covers the lookup-or-insert decision only. Opening a backend
    socket for a new client happens inside it, which is a non-blocking
    socket()/connect() pair for UDP; datagram reads and writes never do.
    """

    def __init__(self, connection_factory: Callable[[Address], Connection]):
        self._connection_factory = connection_factory
        self._connections: Dict[str, Connection] = {}
        self._lock = asyncio.Lock()

    async def resolve(self, client_address: Address) -> Resolution:
        """Return the client's Connection, creating it on first sight"""
        key = format_address(client_address)
        async with self._lock:
            conn = self._connections.get(key)
            if conn is not None:
                return Resolution(conn, False, IOOutcome.success('resolve', peer=client_address))

            try:
                conn = self._connection_factory(client_address)
            except OSError as e:
                return Resolution(None, False,
                                  IOOutcome.transient('open backend socket', e, client_address))

            self._connections[key] = conn
            return Resolution(conn, True, IOOutcome.success('resolve', peer=client_address))

    async def evict_idle(self, max_idle: float, now: Optional[float] = None) -> List[Connection]:
        """Remove and return Connections idle for longer than max_idle seconds"""
        now = time.monotonic() if now is None else now
        async with self._lock:
            stale = [key for key, conn in self._connections.items()
                     if now - conn.last_activity > max_idle]
            return [self._connections.pop(key) for key in stale]

    async def clear(self) -> List[Connection]:
        """Remove and return every Connection"""
        async with self._lock:
            removed = list(self._connections.values())
            self._connections.clear()
            return removed

    def get(self, client_address: Address) -> Optional[Connection]:
        return self._connections.get(format_address(client_address))

    def connections(self) -> List[Connection]:
        return list(self._connections.values())

    def __contains__(self, client_address: Address) -> bool:
        return format_address(client_address) in self._connections

    def __len__(self) -> int:
        return len(self._connections)


class UDPRelay:
    """
    Relays datagrams between clients on a public port and a fixed backend.

    Usage:
        relay = UDPRelay('10.0.0.5', 8000, 8800)
        outcome = await relay.setup()
        if outcome.ok:
            await relay.run()      # returns after relay.stop()
    """

    def __init__(self, backend_host: str, backend_port: int, listen_port: int,
                 listen_host: str = '0.0.0.0',
                 idle_timeout: Optional[float] = None,
                 sweep_interval: float = 30.0,
                 socket_factory: Optional[SocketFactory] = None):
        self.backend_host = backend_host
        self.backend_port = backend_port
        self.listen_host = listen_host
        self.listen_port = listen_port
        self.idle_timeout = idle_timeout
        self.sweep_interval = sweep_interval
        self.socket_factory = socket_factory or SocketFactory()

        self.backend_address: Optional[Address] = None
        self._backend_family = socket.AF_INET
        self.public: Optional[Any] = None
        self.table = ConnectionTable(self._open_connection)
        self.stats = RelayStats()

        self._tasks: List[asyncio.Task] = []
        self._stopped: Optional[asyncio.Event] = None
        self.running = False

    @property
    def public_address(self) -> Optional[Address]:
        return self.public.local_address if self.public is not None else None

    async def setup(self) -> IOOutcome:
        """Resolve the backend and bind the public socket"""
        if self.public is not None:
            raise RuntimeError("relay is already set up")

        loop = asyncio.get_running_loop()

        try:
            infos = await loop.getaddrinfo(self.backend_host, self.backend_port,
                                           type=socket.SOCK_DGRAM)
        except (socket.gaierror, UnicodeError) as e:
            outcome = IOOutcome.fatal('resolve backend address', e)
            logger.vlog(V_ERROR, f"Cannot resolve backend {self.backend_host}:{self.backend_port}: {e}")
            return outcome
        self._backend_family, _, _, _, self.backend_address = infos[0]

        listen_family = socket.AF_INET6 if ':' in self.listen_host else socket.AF_INET
        try:
            self.public = self.socket_factory.bind(self.listen_host, self.listen_port, listen_family)
        except OSError as e:
            logger.vlog(V_ERROR, f"Cannot bind {self.listen_host}:{self.listen_port}: {e}")
            return IOOutcome.fatal('bind public socket', e)

        logger.vlog(V_LIFECYCLE, f"Proxy serving on port {self.public_address[1]}")
        logger.vlog(V_LIFECYCLE, f"Relaying to server at {format_address(self.backend_address)}")
        return IOOutcome.success('setup')

    async def run(self):
        """Run the pumps until stop() is called"""
        if self.public is None:
            raise RuntimeError("setup() must succeed before run()")

        self._stopped = asyncio.Event()
        self.running = True
        self._tasks.append(asyncio.create_task(self._inbound_pump(), name='inbound-pump'))
        if self.idle_timeout:
            self._tasks.append(asyncio.create_task(self._sweep_idle(), name='idle-sweeper'))

        await self._stopped.wait()

    async def serve(self):
        """setup() then run(), raising RelaySetupError on a fatal setup"""
        outcome = await self.setup()
        if not outcome.ok:
            raise RelaySetupError(outcome)
        await self.run()

    async def stop(self):
        """Cancel every pump and close all sockets"""
        if self.running:
            self.running = False

            for task in self._tasks:
                task.cancel()
            await asyncio.gather(*self._tasks, return_exceptions=True)
            self._tasks.clear()

            connections = await self.table.clear()
            for conn in connections:
                await conn.close()

            logger.vlog(V_LIFECYCLE, f"Relay stopped ({len(connections)} connections closed)")
            self._stopped.set()

        # Also covers a relay that was set up but never run
        if self.public is not None:
            self.public.close()
            self.public = None

    def _open_connection(self, client_address: Address) -> Connection:
        backend = self.socket_factory.connect(self.backend_address, self._backend_family)
        return Connection(client_address=client_address, backend=backend)

    def _report(self, outcome: IOOutcome, dropped: bool = True):
        """Account for a failed I/O outcome

        A failed read has no datagram in hand, so only sends and
        connection failures count towards ``dropped``.
        """
        if outcome.ok:
            return
        self.stats.transient_errors += 1
        if dropped:
            self.stats.dropped += 1
        logger.vlog(V_ERROR, f"Error: {outcome.describe()}")

    async def _read(self, operation: str, read: Callable) -> Tuple[IOOutcome, bytes, Optional[Address]]:
        """Run one read, turning socket errors into a transient outcome"""
        try:
            result = await read(_READ_SIZE)
        except OSError as e:
            return IOOutcome.transient(operation, e), b'', None

        data, address = result if isinstance(result, tuple) else (result, None)
        data, truncated = truncate_datagram(data)
        if truncated:
            self.stats.truncated += 1
            logger.vlog(V_TRACE, f"Truncated datagram to {MAX_DATAGRAM_SIZE} bytes ({operation})")
        return IOOutcome.success(operation, len(data), address), data, address

    async def _forward_to_backend(self, conn: Connection, data: bytes) -> IOOutcome:
        try:
            sent = await conn.backend.send(data)
        except OSError as e:
            return IOOutcome.transient('send to server', e, self.backend_address)
        conn.datagrams_in += 1
        self.stats.datagrams_from_clients += 1
        self.stats.bytes_from_clients += len(data)
        return IOOutcome.success('send to server', sent, self.backend_address)

    async def _forward_to_client(self, conn: Connection, data: bytes) -> IOOutcome:
        try:
            sent = await self.public.sendto(data, conn.client_address)
        except OSError as e:
            return IOOutcome.transient('send to client', e, conn.client_address)
        conn.datagrams_out += 1
        self.stats.datagrams_to_clients += 1
        self.stats.bytes_to_clients += len(data)
        return IOOutcome.success('send to client', sent, conn.client_address)

    def _spawn_outbound(self, conn: Connection):
        conn.pump_task = asyncio.create_task(self._outbound_pump(conn),
                                             name=f'outbound-pump-{conn.key}')
        self.stats.connections_created += 1
        logger.vlog(V_LIFECYCLE, f"Created new connection for client {conn.key}")

    async def _inbound_pump(self):
        """Public socket -> per-client backend sockets"""
        while True:
            outcome, data, client_address = await self._read('read from client', self.public.recvfrom)
            if not outcome.ok:
                self._report(outcome, dropped=False)
                await asyncio.sleep(0)
                continue
            logger.vlog(V_TRACE, f"Read {data[:64]!r} from client {format_address(client_address)}")

            resolution = await self.table.resolve(client_address)
            if resolution.connection is None:
                self._report(resolution.outcome)
                continue

            conn = resolution.connection
            if resolution.created:
                self._spawn_outbound(conn)
            else:
                logger.vlog(V_LOOKUP, f"Found connection for client {conn.key}")

            conn.touch()
            self._report(await self._forward_to_backend(conn, data))

    async def _outbound_pump(self, conn: Connection):
        """One client's backend socket -> public socket"""
        while True:
            outcome, data, _ = await self._read('read from server', conn.backend.recv)
            if not outcome.ok:
                self._report(outcome, dropped=False)
                await asyncio.sleep(0)
                continue

            conn.touch()
            sent = await self._forward_to_client(conn, data)
            if sent.ok:
                logger.vlog(V_TRACE, f"Relayed {data[:64]!r} from server to {conn.key}")
            self._report(sent)

    async def _sweep_idle(self):
        """Evict Connections idle for longer than idle_timeout"""
        while True:
            await asyncio.sleep(self.sweep_interval)
            evicted = await self.table.evict_idle(self.idle_timeout)
            for conn in evicted:
                await conn.close()
                self.stats.connections_evicted += 1
                logger.vlog(V_LIFECYCLE,
                            f"Evicted idle connection for client {conn.key} "
                            f"after {conn.idle_time:.0f}s")
