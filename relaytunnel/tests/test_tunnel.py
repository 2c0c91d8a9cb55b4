from relaytunnel.common.listener import InboundConnection
from relaytunnel.common.tunnel import ConnectionRelay, ConnectionDispatcher

import asyncio
import pytest


@pytest.fixture
async def inbound_factory(unused_tcp_port_factory):
    """
    Return a coroutine which creates a pair of (InboundConnection, (originator_reader, originator_writer)).
    The InboundConnection plays the stream forwarded by the relay, the originator side plays the remote client.
    """
    port = unused_tcp_port_factory()
    accepted = asyncio.Queue()

    async def handler(reader, writer):
        await accepted.put((reader, writer))

    server = await asyncio.start_server(handler, host='127.0.0.1', port=port)
    originator_writers = []

    async def create_inbound():
        originator = await asyncio.open_connection(host='127.0.0.1', port=port)
        originator_writers.append(originator[1])
        reader, writer = await asyncio.wait_for(accepted.get(), timeout=5)
        orig_host, orig_port = originator[1].get_extra_info('sockname')[:2]
        return InboundConnection(reader, writer, orig_host, orig_port), originator

    yield create_inbound
    for writer in originator_writers:
        writer.close()
    server.close()
    await server.wait_closed()


async def test_relay_to_target(inbound_factory, echo_server_socket, bytes_data):
    inbound, (reader, writer) = await inbound_factory()
    relay = ConnectionRelay(inbound, *echo_server_socket)
    relay_task = asyncio.ensure_future(relay.run_until_eof())
    writer.write(bytes_data)
    await writer.drain()
    assert await asyncio.wait_for(reader.readexactly(len(bytes_data)), timeout=5) == bytes_data
    writer.close()
    await asyncio.wait_for(relay_task, timeout=5)


async def test_target_closes_first(inbound_factory, unused_tcp_port_factory):
    async def one_shot_target(target_reader, target_writer):
        target_writer.write(b'bye')
        await target_writer.drain()
        target_writer.close()

    port = unused_tcp_port_factory()
    target = await asyncio.start_server(one_shot_target, host='127.0.0.1', port=port)
    try:
        inbound, (reader, _) = await inbound_factory()
        relay_task = asyncio.ensure_future(ConnectionRelay(inbound, '127.0.0.1', port).run_until_eof())
        # The inbound connection is closed once the target is done
        assert await asyncio.wait_for(reader.read(), timeout=5) == b'bye'
        await asyncio.wait_for(relay_task, timeout=5)
    finally:
        target.close()
        await target.wait_closed()


async def test_target_unreachable(inbound_factory, unused_tcp_port_factory):
    inbound, (reader, _) = await inbound_factory()
    relay = ConnectionRelay(inbound, '127.0.0.1', unused_tcp_port_factory(), target_connect_timeout=2)
    await asyncio.wait_for(relay.run_until_eof(), timeout=5)
    assert await asyncio.wait_for(reader.read(), timeout=5) == b''


async def test_dispatcher_relays_concurrently(inbound_factory, echo_server_socket, bytes_data):
    dispatcher = ConnectionDispatcher(*echo_server_socket)
    originators = []
    for _ in range(3):
        inbound, originator = await inbound_factory()
        dispatcher.dispatch(inbound)
        originators.append(originator)
    assert dispatcher.active_relays == 3
    for i, (reader, writer) in enumerate(originators):
        writer.write(bytes_data[:i + 1])
    for i, (reader, writer) in enumerate(originators):
        assert await asyncio.wait_for(reader.readexactly(i + 1), timeout=5) == bytes_data[:i + 1]
    await dispatcher.stop()
    assert dispatcher.active_relays == 0
    for reader, _ in originators:
        assert await asyncio.wait_for(reader.read(), timeout=5) == b''


async def test_dispatcher_hook(inbound_factory, echo_server_socket):
    hooked = asyncio.Queue()

    def hook(inbound):
        hooked.put_nowait(inbound)

    dispatcher = ConnectionDispatcher(*echo_server_socket, inbound_connection_hook=hook)
    inbound, _ = await inbound_factory()
    dispatcher.dispatch(inbound)
    assert await asyncio.wait_for(hooked.get(), timeout=5) is inbound
    assert dispatcher.active_relays == 0
    await dispatcher.stop()
    # The hook owns the connection, stopping the dispatcher leaves it open
    assert not inbound.writer.is_closing()
    inbound.close()


async def test_dispatcher_hook_failure_is_contained(inbound_factory, echo_server_socket, bytes_data):
    async def failing_hook(inbound):
        raise RuntimeError('hook failed')

    dispatcher = ConnectionDispatcher(*echo_server_socket, inbound_connection_hook=failing_hook)
    inbound, _ = await inbound_factory()
    dispatcher.dispatch(inbound)
    await asyncio.sleep(0.1)
    await dispatcher.stop()
    inbound.close()
