"""
Relay inbound connections from the relay host to the target service.

Diagram for how traffic looks like:

Connection1 ->                              -> ConnectionRelay1 ->
Connection2 ->  Relay host  ->  SSH  ->  -> ConnectionRelay2 -> Target
Connection3 ->                              -> ConnectionRelay3 ->

Every inbound connection gets its own ConnectionRelay and its own connection to the target.
traffic goes bi-directional to allow the target to respond.
"""
import asyncio
import logging
import contextlib
import inspect
import asyncssh

from typing import List
from .const import InboundConnectionHook, DEFAULT_TARGET_CONNECT_TIMEOUT
from .listener import InboundConnection
from .utils import EventItem, task_in_list_until_done, format_address

CONNECTION_READ_CHUNK_SIZE = 65535


class ConnectionRelay:
    def __init__(self, inbound: InboundConnection, target_host, target_port, logger: logging.Logger = None,
                 target_connect_timeout=DEFAULT_TARGET_CONNECT_TIMEOUT):
        """
        Manage a single inbound connection: connect to the target and create read and write pipes between them
        inbound <-> target
        The relay owns the inbound connection and closes it when it's done, whatever happened.
        :param inbound: InboundConnection accepted on the relay host
        :param target_host: address of the service to relay to
        :param target_port: port of the service to relay to
        :param target_connect_timeout: seconds to wait for the target to accept the connection
        """
        self._inbound = inbound
        self._target_host = target_host
        self._target_port = target_port
        self._logger = logger or logging.getLogger(__name__)
        self._target_connect_timeout = target_connect_timeout
        self._target_reader: asyncio.StreamReader = None
        self._target_writer: asyncio.StreamWriter = None
        self._inbound_to_target_task: asyncio.Task = None
        self._target_to_inbound_task: asyncio.Task = None
        # Set by the first pipe that stops, with the exception that stopped it (None on eof)
        self._first_pipe_done = EventItem()

    @property
    def target_display_name(self):
        return format_address(self._target_host, self._target_port)

    async def _pipe(self, reader, writer):
        """
        Stream data from reader to writer until eof or an error.
        The outcome is reported to self._first_pipe_done, only the first pipe to stop is recorded.
        """
        error = None
        try:
            while True:
                data = await reader.read(CONNECTION_READ_CHUNK_SIZE)
                if not data:
                    break
                writer.write(data)
                await writer.drain()
        except (ConnectionError, asyncssh.Error, OSError) as err:
            error = err
        finally:
            self._first_pipe_done.set_once(error)

    async def _connect_target(self) -> bool:
        try:
            self._target_reader, self._target_writer = await asyncio.wait_for(
                asyncio.open_connection(host=self._target_host, port=self._target_port),
                timeout=self._target_connect_timeout)
        except (OSError, asyncio.TimeoutError) as err:
            self._logger.warning('Failed to connect to target `%s` for connection from `%s`: %s',
                                 self.target_display_name, self._inbound.display_name, err or type(err).__name__)
            return False
        return True

    async def run_until_eof(self):
        """
        Connect to the target and stream data until either side reaches eof or fails.
        Both connections are closed when this returns.
        """
        try:
            if not await self._connect_target():
                return
            self._logger.debug('Relaying `%s` to `%s`', self._inbound.display_name, self.target_display_name)
            self._inbound_to_target_task = asyncio.ensure_future(self._pipe(self._inbound.reader, self._target_writer))
            self._target_to_inbound_task = asyncio.ensure_future(self._pipe(self._target_reader, self._inbound.writer))
            error = await self._first_pipe_done.wait()
            if error is not None:
                self._logger.warning('Failed to relay `%s` to `%s`: %s', self._inbound.display_name, self.target_display_name, error)
        finally:
            await self.stop()

    async def stop(self):
        """
        Stop read and write pipes and close both connections
        """
        for task in (self._inbound_to_target_task, self._target_to_inbound_task):
            if task:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
                except Exception:
                    self._logger.exception('An error occurred while awaiting connection pipe to be closed:')
        self._inbound.close()
        if self._target_writer is not None:
            self._target_writer.close()
        self._logger.debug('Closed connection from `%s`', self._inbound.display_name)


class ConnectionDispatcher:
    def __init__(self, target_host, target_port, inbound_connection_hook: InboundConnectionHook = None,
                 logger: logging.Logger = None, target_connect_timeout=DEFAULT_TARGET_CONNECT_TIMEOUT):
        """
        Start a task for every inbound connection. The task either runs the hook, which takes ownership
        of the connection, or a ConnectionRelay to the target.
        """
        self._target_host = target_host
        self._target_port = target_port
        self._inbound_connection_hook = inbound_connection_hook
        self._logger = logger or logging.getLogger(__name__)
        self._target_connect_timeout = target_connect_timeout
        # Tasks relaying to the target. Used for cleanups
        self._relay_tasks: List[asyncio.Task] = []
        # Tasks running the hook. Those are owned by the hook, we only keep them referenced
        self._hook_tasks: List[asyncio.Task] = []

    @property
    def active_relays(self) -> int:
        return len(self._relay_tasks)

    def dispatch(self, inbound: InboundConnection):
        """
        Hand over the connection without blocking the accept loop
        """
        if self._inbound_connection_hook is not None:
            self._logger.debug('Passing connection from `%s` to the inbound connection hook', inbound.display_name)
            task = asyncio.ensure_future(self._run_hook(inbound))
            task_in_list_until_done(task, self._hook_tasks)
            return
        relay = ConnectionRelay(inbound, self._target_host, self._target_port, logger=self._logger,
                                target_connect_timeout=self._target_connect_timeout)
        task = asyncio.ensure_future(self._run_relay(relay))
        task_in_list_until_done(task, self._relay_tasks)

    async def _run_hook(self, inbound: InboundConnection):
        try:
            result = self._inbound_connection_hook(inbound)
            if inspect.isawaitable(result):
                await result
        except Exception:
            self._logger.exception('Inbound connection hook failed on connection from `%s`:', inbound.display_name)

    async def _run_relay(self, relay: ConnectionRelay):
        try:
            await relay.run_until_eof()
        except asyncio.CancelledError:
            self._logger.debug('Abort relaying to `%s`', relay.target_display_name)
        except Exception:
            self._logger.exception('Failed to relay connection to `%s`:', relay.target_display_name)

    async def stop(self):
        """
        Stop all active relays. Hook tasks are left to the hook
        """
        tasks = list(self._relay_tasks)
        for task in tasks:
            task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await asyncio.gather(*tasks, return_exceptions=True)
