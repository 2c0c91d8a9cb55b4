"""
Listener on the relay's network, negotiated with SSH remote port forwarding.

asyncssh hands every forwarded connection to a callback. RemoteListener turns those callbacks into
a queue, so the session can run a plain accept loop:

listener = await RemoteListener.create(conn, '0.0.0.0', 9000)
while True:
    connection = await listener.accept()  # raises TunnelListenerClosedError once closed
"""
import asyncio
import logging
import functools
import contextlib
import asyncssh

from .exceptions import TunnelListenError, TunnelListenerClosedError
from .utils import format_address


class InboundConnection:
    def __init__(self, reader: asyncssh.SSHReader, writer: asyncssh.SSHWriter, orig_host: str, orig_port: int):
        """
        A connection that arrived on the relay's listening socket and was forwarded to us.
        Whoever receives this object owns it and is responsible for closing it.
        :param reader: stream to read the bytes sent by the originator
        :param writer: stream to send bytes back to the originator
        :param orig_host: address of the originator as reported by the relay
        :param orig_port: port of the originator as reported by the relay
        """
        self.reader = reader
        self.writer = writer
        self.orig_host = orig_host
        self.orig_port = orig_port

    @property
    def display_name(self):
        return format_address(self.orig_host, self.orig_port)

    async def read(self, n=-1) -> bytes:
        return await self.reader.read(n)

    def write(self, data: bytes):
        self.writer.write(data)

    async def drain(self):
        await self.writer.drain()

    def close(self):
        self.writer.close()


class RemoteListener:
    def __init__(self, conn: asyncssh.SSHClientConnection, remote_host, remote_port, logger: logging.Logger = None):
        """
        USE ONLY `await RemoteListener.create(...)` TO INITIALIZE AN OBJECT
        :param conn: established SSH connection to the relay. RemoteListener never closes it
        :param remote_host: address to bind on the relay
        :param remote_port: port to bind on the relay. 0 lets the relay choose
        """
        self._conn = conn
        self._remote_host = remote_host
        self._remote_port = remote_port
        self._logger = logger or logging.getLogger(__name__)
        self._listener: asyncssh.SSHListener = None
        # Accepted connections. None is pushed once the listener closes to wake up accept()
        self._connections = asyncio.Queue()
        self._closed = False
        self._connection_watcher_task: asyncio.Task = None

    @classmethod
    async def create(cls, conn: asyncssh.SSHClientConnection, remote_host, remote_port, logger: logging.Logger = None) -> 'RemoteListener':
        """
        Ask the relay to listen on remote_host:remote_port.
        Raises TunnelListenError if the relay refused.
        """
        self = RemoteListener(conn, remote_host, remote_port, logger=logger)
        await self._start()
        return self

    @property
    def remote_host(self):
        return self._remote_host

    @property
    def remote_port(self):
        return self._remote_port

    @property
    def closed(self):
        return self._closed

    async def _start(self):
        try:
            self._listener = await self._conn.start_server(self._handler_factory, self._remote_host, self._remote_port)
        except asyncssh.ChannelListenError as err:
            raise TunnelListenError(f'Relay refused to listen on {format_address(self._remote_host, self._remote_port)}: {err}') from err
        if not self._remote_port:
            self._remote_port = self._listener.get_port()
        self._logger.debug('Relay is listening on `%s`', format_address(self._remote_host, self._remote_port))
        self._connection_watcher_task = asyncio.ensure_future(self._close_on_connection_lost())

    def _handler_factory(self, orig_host, orig_port):
        return functools.partial(self._queue_connection, orig_host, orig_port)

    async def _queue_connection(self, orig_host, orig_port, reader: asyncssh.SSHReader, writer: asyncssh.SSHWriter):
        if self._closed:
            writer.close()
            return
        await self._connections.put(InboundConnection(reader, writer, orig_host, orig_port))

    async def _close_on_connection_lost(self):
        """
        The relay drops its listener along with the connection, but asyncssh won't tell us about it.
        """
        await self._conn.wait_closed()
        if not self._closed:
            self._logger.debug('Connection to the relay closed. Stop accepting on `%s`', format_address(self._remote_host, self._remote_port))
            self._mark_closed()

    def _mark_closed(self):
        if self._closed:
            return
        self._closed = True
        self._connections.put_nowait(None)

    async def accept(self) -> InboundConnection:
        """
        Blocks until a new connection arrives.
        Raises TunnelListenerClosedError once the listener is closed
        """
        connection = await self._connections.get()
        if connection is None:
            # Leave the marker for any other pending accept()
            self._connections.put_nowait(None)
            raise TunnelListenerClosedError('Listener is closed')
        return connection

    async def close(self):
        """
        Stop listening on the relay and close connections that were never accepted
        """
        self._mark_closed()
        if self._connection_watcher_task is not None:
            self._connection_watcher_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._connection_watcher_task
        if self._listener is not None:
            self._logger.debug('Stop listening on `%s`', format_address(self._remote_host, self._remote_port))
            try:
                self._listener.close()
                await self._listener.wait_closed()
            except (asyncssh.Error, OSError) as err:
                self._logger.debug('Failed to close the listener on the relay: %s', err)
        while not self._connections.empty():
            connection = self._connections.get_nowait()
            if connection is not None:
                connection.close()
        self._connections.put_nowait(None)
