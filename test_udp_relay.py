#!/usr/bin/env python3
"""
Relay engine tests: connection creation, routing, truncation and fault tolerance
"""

import asyncio
import socket
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, patch

import pytest

from relay_errors import IOStatus, RelaySetupError
from test_framework import (CLIENT_A, CLIENT_B, EchoServer, MockSocketFactory,
                            udp_client, wait_until)
from udp_relay import MAX_DATAGRAM_SIZE, UDPRelay, format_address, truncate_datagram


@asynccontextmanager
async def running_relay(factory=None, **kwargs):
    """UDPRelay over mock sockets, running for the duration of the block"""
    factory = factory or MockSocketFactory()
    relay = UDPRelay('127.0.0.1', 9000, 8800, listen_host='127.0.0.1',
                     socket_factory=factory, **kwargs)
    outcome = await relay.setup()
    assert outcome.ok
    task = asyncio.create_task(relay.run())
    try:
        yield relay, factory
    finally:
        await relay.stop()
        await asyncio.wait_for(task, 1.0)


def test_truncate_datagram():
    data, truncated = truncate_datagram(b'x' * (MAX_DATAGRAM_SIZE + 500))
    assert len(data) == MAX_DATAGRAM_SIZE
    assert truncated

    data, truncated = truncate_datagram(b'x' * MAX_DATAGRAM_SIZE)
    assert len(data) == MAX_DATAGRAM_SIZE
    assert not truncated


def test_format_address():
    assert format_address(('10.0.0.1', 5000)) == '10.0.0.1:5000'
    assert format_address(('::1', 5000, 0, 0)) == '[::1]:5000'


def test_first_datagram_creates_connection_and_pump():
    async def scenario():
        async with running_relay() as (relay, factory):
            factory.public.inject((b'ping', CLIENT_A))
            await wait_until(lambda: factory.backends and factory.backends[0].sent)

            assert factory.backends[0].sent == [b'ping']
            assert len(relay.table) == 1
            conn = relay.table.get(CLIENT_A)
            assert conn.client_address == CLIENT_A
            assert conn.pump_task is not None and not conn.pump_task.done()
            assert relay.stats.connections_created == 1

    asyncio.run(scenario())


def test_known_client_reuses_connection():
    async def scenario():
        async with running_relay() as (relay, factory):
            for payload in (b'one', b'two', b'three'):
                factory.public.inject((payload, CLIENT_A))
            await wait_until(lambda: factory.backends and len(factory.backends[0].sent) == 3)

            assert len(factory.backends) == 1
            assert factory.backends[0].sent == [b'one', b'two', b'three']
            assert relay.stats.connections_created == 1
            assert relay.table.get(CLIENT_A).datagrams_in == 3

    asyncio.run(scenario())


def test_distinct_clients_get_distinct_backends():
    async def scenario():
        async with running_relay() as (relay, factory):
            factory.public.inject((b'from-a', CLIENT_A))
            factory.public.inject((b'from-b', CLIENT_B))
            await wait_until(lambda: len(factory.backends) == 2
                             and all(b.sent for b in factory.backends))

            assert factory.backends[0].sent == [b'from-a']
            assert factory.backends[1].sent == [b'from-b']
            assert relay.table.get(CLIENT_A).backend is not relay.table.get(CLIENT_B).backend

    asyncio.run(scenario())


def test_burst_of_new_clients_creates_one_connection_each():
    async def scenario():
        clients = [('10.2.0.%d' % (i + 1), 50000 + i) for i in range(50)]
        async with running_relay() as (relay, factory):
            for client in clients:
                factory.public.inject((b'hello', client))
            await wait_until(lambda: len(relay.table) == 50
                             and all(b.sent for b in factory.backends))

            assert len(factory.backends) == 50
            assert len({id(c.backend) for c in relay.table.connections()}) == 50
            assert all(client in relay.table for client in clients)
            assert relay.stats.connections_created == 50

    asyncio.run(scenario())


def test_backend_reply_is_routed_to_its_client():
    async def scenario():
        async with running_relay() as (relay, factory):
            factory.public.inject((b'ping', CLIENT_A))
            factory.public.inject((b'ping', CLIENT_B))
            await wait_until(lambda: len(factory.backends) == 2)

            factory.backends[1].inject(b'pong-b')
            factory.backends[0].inject(b'pong-a')
            await wait_until(lambda: len(factory.public.sent) == 2)

            assert (b'pong-a', CLIENT_A) in factory.public.sent
            assert (b'pong-b', CLIENT_B) in factory.public.sent
            assert relay.stats.datagrams_to_clients == 2

    asyncio.run(scenario())


def test_oversized_datagrams_are_truncated_both_ways():
    async def scenario():
        async with running_relay() as (relay, factory):
            factory.public.inject((b'a' * 2000, CLIENT_A))
            await wait_until(lambda: factory.backends and factory.backends[0].sent)
            assert factory.backends[0].sent == [b'a' * MAX_DATAGRAM_SIZE]

            factory.backends[0].inject(b'b' * 4000)
            await wait_until(lambda: factory.public.sent)
            assert factory.public.sent == [(b'b' * MAX_DATAGRAM_SIZE, CLIENT_A)]

            assert relay.stats.truncated == 2

    asyncio.run(scenario())


def test_public_read_error_does_not_stop_inbound_pump():
    async def scenario():
        async with running_relay() as (relay, factory):
            factory.public.inject(ConnectionResetError(104, "Connection reset by peer"))
            factory.public.inject((b'after-error', CLIENT_A))
            await wait_until(lambda: factory.backends and factory.backends[0].sent)

            assert factory.backends[0].sent == [b'after-error']
            assert relay.stats.transient_errors == 1
            assert relay.stats.dropped == 0

    asyncio.run(scenario())


def test_backend_send_error_drops_only_that_datagram():
    async def scenario():
        async with running_relay() as (relay, factory):
            factory.public.inject((b'first', CLIENT_A))
            await wait_until(lambda: factory.backends and factory.backends[0].sent)

            factory.backends[0].send_failures = 1
            factory.public.inject((b'lost', CLIENT_A))
            factory.public.inject((b'third', CLIENT_A))
            factory.public.inject((b'other-client', CLIENT_B))
            await wait_until(lambda: len(factory.backends) == 2 and factory.backends[1].sent)
            await wait_until(lambda: len(factory.backends[0].sent) == 2)

            assert factory.backends[0].sent == [b'first', b'third']
            assert factory.backends[1].sent == [b'other-client']
            assert relay.stats.dropped == 1

    asyncio.run(scenario())


def test_outbound_errors_do_not_stop_outbound_pump():
    async def scenario():
        async with running_relay() as (relay, factory):
            factory.public.inject((b'ping', CLIENT_A))
            await wait_until(lambda: factory.backends)
            backend = factory.backends[0]

            backend.inject(ConnectionRefusedError(111, "Connection refused"))
            backend.inject(b'pong-1')
            await wait_until(lambda: factory.public.sent)

            factory.public.send_failures = 1
            backend.inject(b'lost')
            backend.inject(b'pong-2')
            await wait_until(lambda: len(factory.public.sent) == 2)

            assert factory.public.sent == [(b'pong-1', CLIENT_A), (b'pong-2', CLIENT_A)]
            assert relay.stats.transient_errors == 2
            assert relay.stats.dropped == 1

    asyncio.run(scenario())


def test_backend_socket_failure_drops_datagram_and_leaves_table_unchanged():
    async def scenario():
        factory = MockSocketFactory()
        factory.connect_failures = 1
        async with running_relay(factory) as (relay, _):
            factory.public.inject((b'dropped', CLIENT_A))
            await wait_until(lambda: relay.stats.dropped == 1)
            assert len(relay.table) == 0

            factory.public.inject((b'kept', CLIENT_A))
            await wait_until(lambda: factory.backends and factory.backends[0].sent)
            assert factory.backends[0].sent == [b'kept']
            assert relay.stats.connections_created == 1

    asyncio.run(scenario())


def test_setup_fails_when_port_cannot_be_bound():
    async def scenario():
        factory = MockSocketFactory()
        factory.bind_error = OSError(98, "Address already in use")
        relay = UDPRelay('127.0.0.1', 9000, 8800, socket_factory=factory)

        outcome = await relay.setup()
        assert outcome.status is IOStatus.FATAL
        assert outcome.operation == 'bind public socket'

        with pytest.raises(RelaySetupError):
            await relay.serve()

    asyncio.run(scenario())


def test_setup_fails_when_backend_cannot_be_resolved():
    async def scenario():
        relay = UDPRelay('backend.invalid', 9000, 8800, socket_factory=MockSocketFactory())
        loop = asyncio.get_running_loop()
        with patch.object(loop, 'getaddrinfo',
                          AsyncMock(side_effect=socket.gaierror(-2, "Name or service not known"))):
            outcome = await relay.setup()

        assert outcome.is_fatal
        assert outcome.operation == 'resolve backend address'
        assert relay.public is None

    asyncio.run(scenario())


def test_setup_twice_keeps_the_bound_socket():
    async def scenario():
        factory = MockSocketFactory()
        relay = UDPRelay('127.0.0.1', 9000, 8800, socket_factory=factory)
        assert (await relay.setup()).ok
        public = relay.public

        with pytest.raises(RuntimeError, match='already set up'):
            await relay.setup()

        assert relay.public is public
        assert factory.public is public
        assert not public.closed
        await relay.stop()
        assert public.closed

    asyncio.run(scenario())


def test_run_requires_setup():
    async def scenario():
        relay = UDPRelay('127.0.0.1', 9000, 8800, socket_factory=MockSocketFactory())
        with pytest.raises(RuntimeError):
            await relay.run()

    asyncio.run(scenario())


def test_stop_cancels_pumps_and_closes_sockets():
    async def scenario():
        factory = MockSocketFactory()
        async with running_relay(factory) as (relay, _):
            factory.public.inject((b'ping', CLIENT_A))
            await wait_until(lambda: factory.backends)
            pump = relay.table.get(CLIENT_A).pump_task

        assert pump.done()
        assert factory.backends[0].closed
        assert factory.public.closed
        assert len(relay.table) == 0
        assert not relay.running

    asyncio.run(scenario())


def test_idle_connections_are_evicted_and_recreated():
    async def scenario():
        async with running_relay(idle_timeout=0.2, sweep_interval=0.05) as (relay, factory):
            factory.public.inject((b'hello', CLIENT_A))
            await wait_until(lambda: factory.backends)
            first = relay.table.get(CLIENT_A)

            await wait_until(lambda: relay.stats.connections_evicted == 1)
            assert CLIENT_A not in relay.table
            assert factory.backends[0].closed
            assert first.pump_task.done()

            factory.public.inject((b'again', CLIENT_A))
            await wait_until(lambda: len(factory.backends) == 2 and factory.backends[1].sent)
            assert factory.backends[1].sent == [b'again']

    asyncio.run(scenario())


def test_connections_are_kept_without_idle_timeout():
    async def scenario():
        async with running_relay() as (relay, factory):
            factory.public.inject((b'hello', CLIENT_A))
            await wait_until(lambda: factory.backends)
            await asyncio.sleep(0.1)
            assert CLIENT_A in relay.table
            assert not factory.backends[0].closed

    asyncio.run(scenario())


async def _exchange(client, relay_address, payload: bytes):
    await client.sendto(payload, relay_address)
    return await asyncio.wait_for(client.recvfrom(65535), 2.0)


def test_ping_pong_over_loopback_without_cross_talk():
    async def scenario():
        async with EchoServer() as server:
            relay = UDPRelay('127.0.0.1', server.port, 0, listen_host='127.0.0.1')
            assert (await relay.setup()).ok
            task = asyncio.create_task(relay.run())
            client_a, client_b = udp_client(), udp_client()
            try:
                relay_address = relay.public_address

                data, source = await _exchange(client_a, relay_address, b'ping')
                assert data == b'pong'
                assert source == relay_address

                data, source = await _exchange(client_b, relay_address, b'ping')
                assert data == b'pong'
                assert source == relay_address

                data, _ = await _exchange(client_a, relay_address, b'only-for-a')
                assert data == b'only-for-a'

                # Each client reached the server from its own backend socket
                sources = {address for _, address in server.received}
                assert len(sources) == 2
                assert len(relay.table) == 2
            finally:
                client_a.close()
                client_b.close()
                await relay.stop()
                await task

    asyncio.run(scenario())


def test_oversized_datagram_over_loopback_is_truncated():
    async def scenario():
        async with EchoServer() as server:
            relay = UDPRelay('127.0.0.1', server.port, 0, listen_host='127.0.0.1')
            assert (await relay.setup()).ok
            task = asyncio.create_task(relay.run())
            client = udp_client()
            try:
                payload = bytes(range(256)) * 10
                data, _ = await _exchange(client, relay.public_address, payload)
                assert data == payload[:MAX_DATAGRAM_SIZE]
                assert server.received[0][0] == payload[:MAX_DATAGRAM_SIZE]
                assert relay.stats.truncated == 1
            finally:
                client.close()
                await relay.stop()
                await task

    asyncio.run(scenario())
