import sys
import json
import asyncio
import logging
import argparse
import functools
import asyncssh

from colorama import Fore, Style
from . import __version__
from .config import SessionConfig, TunnelConfiguration, create_session_config, parse_host_key
from .common.const import LifecycleSignal, SessionOutcome
from .common.exceptions import (TunnelFatalError, TunnelRecoverableError, TunnelConnectError, TunnelHostKeyError,
                                TunnelListenerClosedError)
from .common.listener import RemoteListener
from .common.proxy import dial, get_proxy_url_from_env
from .common.tunnel import ConnectionDispatcher
from .common.utils import get_logger, format_address

# Seconds to wait for the remaining session tasks to notice that the connection was closed
SESSION_UNWIND_TIMEOUT = 5


class _RelayClient(asyncssh.SSHClient):
    def __init__(self, hide_banner=False):
        self._hide_banner = hide_banner

    def auth_banner_received(self, msg, lang):
        if not self._hide_banner:
            print(msg, end='')


class TunnelSession:
    def __init__(self, config: SessionConfig, logger: logging.Logger = None):
        """
        A single attempt to expose config.target_host:config.target_port on the relay's network.
        The attempt is not retried here. Whoever runs it decides whether to run a new one according
        to the outcome of self.run().
        :param config: SessionConfig of the tunnel
        :param logger: optional logger
        """
        self._config = config
        self._logger = logger or logging.getLogger(__name__)
        self._listener: RemoteListener = None
        # Set once the session is shutting down on purpose, so a closing listener is not treated as a failure
        self._closing = False
        self._signaled = False
        self._stop_requested = asyncio.Event()

    @property
    def relay_display_name(self):
        return format_address(self._config.relay_host, self._config.relay_port)

    @property
    def listener(self) -> RemoteListener:
        return self._listener

    @property
    def listening(self):
        return self._listener is not None and not self._listener.closed

    def _get_proxy_url(self):
        if self._config.proxy_url:
            return self._config.proxy_url
        if self._config.use_env_proxy:
            return get_proxy_url_from_env()
        return None

    async def run(self) -> SessionOutcome:
        """
        Run the session until it ends and return how it ended.
        On RECOVERABLE_FAILURE, LifecycleSignal.RECONNECT is also put in config.events if given.
        """
        try:
            outcome = await self._run()
        except TunnelFatalError as err:
            self._logger.error('Tunnel to `%s` failed: %s', self.relay_display_name, err)
            outcome = SessionOutcome.FATAL_FAILURE
        except TunnelRecoverableError as err:
            self._logger.error('Failed to connect to `%s`: %s', self.relay_display_name, err)
            outcome = SessionOutcome.RECOVERABLE_FAILURE
        except Exception:
            self._logger.exception('Tunnel to `%s` failed unexpectedly:', self.relay_display_name)
            raise
        if outcome is SessionOutcome.RECOVERABLE_FAILURE:
            self._signal_reconnect()
        return outcome

    async def stop(self):
        """
        End the session gracefully. self.run() will return SessionOutcome.COMPLETED
        """
        self._closing = True
        self._stop_requested.set()
        if self._listener is not None:
            await self._listener.close()

    def _signal_reconnect(self):
        if self._signaled:
            return
        self._signaled = True
        if self._config.events is not None:
            self._config.events.put_nowait(LifecycleSignal.RECONNECT)

    async def _run(self) -> SessionOutcome:
        conn = await self._establish()
        async with conn:
            self._logger.info('Connected to relay `%s`', self.relay_display_name)
            control_output = await self._open_control_channel(conn)
            self._listener = await RemoteListener.create(conn, self._config.remote_host, self._config.remote_port, logger=self._logger)
            self._logger.info('Relay `%s` is listening on `%s`. Forwarding connections to `%s`', self.relay_display_name,
                              format_address(self._listener.remote_host, self._listener.remote_port),
                              format_address(self._config.target_host, self._config.target_port))
            dispatcher = ConnectionDispatcher(self._config.target_host, self._config.target_port,
                                              inbound_connection_hook=self._config.inbound_connection_hook,
                                              logger=self._logger, target_connect_timeout=self._config.target_connect_timeout)
            control_task = asyncio.ensure_future(self._read_control_output(control_output))
            accept_task = asyncio.ensure_future(self._accept_loop(dispatcher))
            if self._stop_requested.is_set():
                await self._listener.close()
            try:
                done, _ = await asyncio.wait({control_task, accept_task}, return_when=asyncio.FIRST_COMPLETED)
                # Whichever noticed first decides how the session ends
                first_task = control_task if control_task in done else accept_task
                return first_task.result()
            finally:
                self._closing = True
                await self._listener.close()
                await dispatcher.stop()
                conn.close()
                await self._wait_unwind(control_task, accept_task)

    async def _wait_unwind(self, *tasks: asyncio.Task):
        """
        Closing the connection and the listener makes the remaining tasks return on their own
        """
        pending = [task for task in tasks if not task.done()]
        if pending:
            _, pending = await asyncio.wait(pending, timeout=SESSION_UNWIND_TIMEOUT)
        for task in pending:
            self._logger.warning('Session task did not finish after the connection closed. Cancelling it')
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception:
                self._logger.exception('An error occurred while awaiting session task to be closed:')

    async def _establish(self) -> asyncssh.SSHClientConnection:
        """
        Dial the relay (through a proxy if needed) and perform the SSH handshake over that connection.
        The relay's host key must match config.host_key.
        """
        host_key = parse_host_key(self._config.host_key)
        sock = None

        async def dial_and_handshake():
            nonlocal sock
            sock = await dial(self._config.relay_host, self._config.relay_port,
                              proxy_url=self._get_proxy_url(), logger=self._logger)
            self._logger.debug('Starting SSH handshake with `%s` as `%s`', self.relay_display_name, self._config.username)
            return await asyncssh.connect(sock=sock,
                                          username=self._config.username,
                                          known_hosts=([host_key], [], []),
                                          client_factory=functools.partial(_RelayClient, hide_banner=self._config.hide_banner),
                                          config=None,
                                          **self._config.auth.get_connect_options())

        try:
            # One deadline for the dial and the handshake together
            return await asyncio.wait_for(dial_and_handshake(), timeout=self._config.connect_timeout)
        except asyncssh.HostKeyNotVerifiable as err:
            self._close_socket(sock)
            raise TunnelHostKeyError(f'Host key of `{self.relay_display_name}` does not match the pinned key: {err}') from err
        except (asyncssh.PermissionDenied, asyncssh.ConnectionLost) as err:
            self._close_socket(sock)
            raise TunnelConnectError(str(err)) from err
        except asyncssh.DisconnectError as err:
            self._close_socket(sock)
            raise TunnelFatalError(f'SSH handshake with `{self.relay_display_name}` failed: {err}') from err
        except asyncio.TimeoutError as err:
            self._close_socket(sock)
            raise TunnelConnectError(f'Timed out after {self._config.connect_timeout} seconds') from err
        except OSError as err:
            self._close_socket(sock)
            raise TunnelConnectError(str(err)) from err
        except BaseException:
            self._close_socket(sock)
            raise

    @staticmethod
    def _close_socket(sock):
        if sock is not None:
            sock.close()

    async def _open_control_channel(self, conn: asyncssh.SSHClientConnection) -> asyncssh.SSHReader:
        try:
            _, stdout, _ = await conn.open_session(command=self._config.control_command, encoding='utf-8', errors='replace')
        except (asyncssh.ChannelOpenError, asyncssh.ProtocolError) as err:
            raise TunnelFatalError(f'Failed to open control channel on `{self.relay_display_name}`: {err}') from err
        return stdout

    async def _read_control_output(self, control_output: asyncssh.SSHReader) -> SessionOutcome:
        """
        Print the relay's diagnostic output line by line.
        The relay closing this channel means the tunnel is gone and a new session is needed.
        """
        try:
            while True:
                line = await control_output.readline()
                if not line:
                    break
                print(line.rstrip('\r\n'))
        except asyncssh.DisconnectError as err:
            self._logger.debug('Relay `%s` disconnected while reading control channel: %s', self.relay_display_name, err)
        except (asyncssh.Error, OSError):
            if self._closing:
                return SessionOutcome.COMPLETED
            self._logger.exception('Failed to read from control channel of `%s`:', self.relay_display_name)
            return SessionOutcome.FATAL_FAILURE
        if self._closing:
            return SessionOutcome.COMPLETED
        self._logger.warning('Relay `%s` closed the control channel', self.relay_display_name)
        return SessionOutcome.RECOVERABLE_FAILURE

    async def _accept_loop(self, dispatcher: ConnectionDispatcher) -> SessionOutcome:
        while True:
            try:
                inbound = await self._listener.accept()
            except TunnelListenerClosedError:
                if self._closing:
                    return SessionOutcome.COMPLETED
                self._logger.warning('Listener on `%s` closed unexpectedly', self.relay_display_name)
                return SessionOutcome.RECOVERABLE_FAILURE
            self._logger.debug('New connection from `%s`', inbound.display_name)
            dispatcher.dispatch(inbound)


async def run_session(config: SessionConfig, logger: logging.Logger = None) -> SessionOutcome:
    """
    Run exactly one tunnel session. See TunnelSession
    """
    return await TunnelSession(config, logger=logger).run()


def get_args(argv=None):
    parser = argparse.ArgumentParser(description='Expose a local service on the network of a relay host through an SSH reverse tunnel')
    parser.add_argument('-d', '--debug', help="Increase log verbosity to debug mode", dest='loglevel', action="store_const",
                        const=logging.DEBUG, default=logging.INFO)
    parser.add_argument('-v', '--version', action='version', version=__version__)
    parser.add_argument('-c', '--config-path', help="Path to a json configuration file. Command line options override its values")
    parser.add_argument('-s', '--relay-host', help="Address of the relay host")
    parser.add_argument('-p', '--relay-port', help="SSH port of the relay host", type=int)
    parser.add_argument('-u', '--username', help="Username to authenticate with the relay")
    parser.add_argument('--password', help="Password to authenticate with the relay")
    parser.add_argument('--client-key', dest='client_keys', action='append', help="Private key to authenticate with the relay. Can be repeated")
    parser.add_argument('--auth-plugin', help="Plugin to use for authentication. (e.g. <module_path>.<auth_class_name>)")
    parser.add_argument('--auth-data', help="A json dump string of the data required by the authentication plugin")
    parser.add_argument('--host-key', help="The relay's public key, in authorized_keys format")
    parser.add_argument('--host-key-path', help="Path to a file containing the relay's public key")
    parser.add_argument('--remote-host', help="Address to listen on the relay host")
    parser.add_argument('--remote-port', help="Port to listen on the relay host. 0 lets the relay choose", type=int)
    parser.add_argument('--target-host', help="Address of the service to expose")
    parser.add_argument('--target-port', help="Port of the service to expose", type=int)
    parser.add_argument('--proxy-url', help="URL to an http proxy between the client and the relay. Defaults to $http_proxy")
    parser.add_argument('--control-command', help="Command to run on the relay to stream its output. Defaults to a shell")
    parser.add_argument('--hide-banner', action="store_true", default=None, help="Do not print the relay's banner")
    parser.add_argument('--reconnect-delay', type=float, help="Seconds to wait before establishing a new session")
    parser.add_argument('--secret-key', help="Key to decrypt encrypted secrets in the configuration file")
    return parser.parse_args(argv)


async def supervise(config: SessionConfig, reconnect_delay, logger: logging.Logger) -> int:
    """
    Run sessions one after the other as long as they end on a recoverable condition.
    Return the process exit code
    """
    while True:
        outcome = await run_session(config, logger=logger)
        if outcome is SessionOutcome.COMPLETED:
            return 0
        if outcome is SessionOutcome.FATAL_FAILURE:
            print(f'{Fore.RED}Tunnel failed. Please check the configuration{Style.RESET_ALL}')
            return 1
        print(f'{Fore.YELLOW}Tunnel disconnected. Reconnecting in {reconnect_delay} seconds...{Style.RESET_ALL}')
        await asyncio.sleep(reconnect_delay)


async def async_main(argv=None) -> int:
    args = get_args(argv)
    logger = get_logger('relaytunnel', args.loglevel)
    try:
        configuration = await TunnelConfiguration.create(config_path=args.config_path)
        overrides = {key: getattr(args, key) for key in ('relay_host', 'relay_port', 'username', 'password', 'client_keys',
                                                         'auth_plugin', 'host_key', 'host_key_path', 'remote_host',
                                                         'remote_port', 'target_host', 'target_port', 'proxy_url',
                                                         'control_command', 'hide_banner', 'reconnect_delay')}
        if args.auth_data is not None:
            overrides['auth_data'] = json.loads(args.auth_data)
        configuration.update(overrides)
        config = await create_session_config(configuration.to_dict(), secret_key=args.secret_key)
    except (TunnelFatalError, ValueError) as err:
        print(f'{Fore.RED}{err}{Style.RESET_ALL}')
        return 1
    return await supervise(config, configuration['reconnect_delay'], logger)


def main():
    try:
        exit_code = asyncio.run(async_main())
    except KeyboardInterrupt:
        exit_code = 0
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
