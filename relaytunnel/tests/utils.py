import contextlib
import os
import time
import pytest
import asyncio
import asyncssh

from typing import List
from aiohttp import BasicAuth


RELAY_USERNAME = 'tunnel'
RELAY_PASSWORD = 'password'
RELAY_BANNER = 'Welcome to the test relay\n'


class _RelaySSHServer(asyncssh.SSHServer):
	def __init__(self, relay: 'RelayServerForTests'):
		self._relay = relay
		self._conn: asyncssh.SSHServerConnection = None

	def connection_made(self, conn):
		self._conn = conn
		self._relay.connections.append(conn)

	def begin_auth(self, username):
		self._conn.send_auth_banner(RELAY_BANNER)
		return True

	def password_auth_supported(self):
		return True

	def validate_password(self, username, password):
		return username == RELAY_USERNAME and password == RELAY_PASSWORD

	def server_requested(self, listen_host, listen_port):
		self._relay.listen_requests.append((listen_host, listen_port))
		return self._relay.allow_listen


class RelayServerForTests:
	def __init__(self, port, host_key: asyncssh.SSHKey, control_lines=None, allow_listen=True):
		"""
		An SSH server on 127.0.0.1:port which plays the relay host.
		It accepts RELAY_USERNAME/RELAY_PASSWORD, allows remote port forwarding if allow_listen is True,
		and writes control_lines on every session channel until close_control_channels() is called.
		"""
		self.port = port
		self._host_key = host_key
		self.control_lines = control_lines or ['hello from relay']
		self.allow_listen = allow_listen
		self.connections: List[asyncssh.SSHServerConnection] = []
		self.listen_requests = []
		self._close_control_event = asyncio.Event()
		self._server: asyncssh.SSHAcceptor = None

	async def start(self):
		self._server = await asyncssh.listen('127.0.0.1', self.port, server_host_keys=[self._host_key],
											 server_factory=lambda: _RelaySSHServer(self),
											 process_factory=self._handle_process)

	async def _handle_process(self, process: asyncssh.SSHServerProcess):
		for line in self.control_lines:
			process.stdout.write(line + '\n')
		await self._close_control_event.wait()
		process.exit(0)

	def close_control_channels(self):
		self._close_control_event.set()

	def close_connections(self):
		for conn in self.connections:
			conn.close()

	async def stop(self):
		self.close_control_channels()
		self.close_connections()
		self._server.close()
		await self._server.wait_closed()


class ConnectProxyForTests:
	def __init__(self, port, username=None, password=None, status=200, answer_delay=0):
		"""
		A minimal http proxy which supports only CONNECT.
		:param status: status to answer with. Anything but 200 refuses the request
		:param answer_delay: seconds to wait before answering CONNECT. None never answers
		"""
		self.port = port
		self._proxy_auth = None
		if None not in (username, password):
			self._proxy_auth = BasicAuth(username, password)
		self._status = status
		self._answer_delay = answer_delay
		self.requested_hosts = []
		self._server: asyncio.AbstractServer = None

	@property
	def url(self):
		return f'http://127.0.0.1:{self.port}'

	async def start(self):
		self._server = await asyncio.start_server(self._handle, host='127.0.0.1', port=self.port)

	async def stop(self):
		self._server.close()
		await self._server.wait_closed()

	def assert_host_forwarded(self, hostname):
		assert hostname in self.requested_hosts, f'`{hostname}` not found in proxy requests: {self.requested_hosts}'

	@staticmethod
	async def _pipe(reader, writer):
		try:
			while True:
				data = await reader.read(4096)
				if not data:
					break
				writer.write(data)
				await writer.drain()
		except ConnectionError:
			pass
		finally:
			writer.close()

	async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
		head = (await reader.readuntil(b'\r\n\r\n')).decode('latin-1')
		request_line, *header_lines = head.split('\r\n')
		method, target, _ = request_line.split(' ')
		headers = dict(line.split(': ', 1) for line in header_lines if line)
		self.requested_hosts.append(target)
		if self._answer_delay is None:
			await reader.read()
			writer.close()
			return
		await asyncio.sleep(self._answer_delay)
		if self._proxy_auth is not None and headers.get('Proxy-Authorization') != self._proxy_auth.encode():
			writer.write(b'HTTP/1.1 407 Proxy Authentication Required\r\n\r\n')
			writer.close()
			return
		if method != 'CONNECT' or self._status != 200:
			writer.write(f'HTTP/1.1 {self._status} Refused\r\n\r\n'.encode())
			writer.close()
			return
		host, port = target.rsplit(':', 1)
		upstream_reader, upstream_writer = await asyncio.open_connection(host=host, port=int(port))
		writer.write(b'HTTP/1.1 200 Connection established\r\n\r\n')
		await writer.drain()
		await asyncio.gather(self._pipe(reader, upstream_writer), self._pipe(upstream_reader, writer))


async def echo_handler(reader, writer):
	try:
		while True:
			data = await reader.read(1024)
			if not data:
				break
			writer.write(data)
			await writer.drain()
	except ConnectionError:
		pass
	finally:
		writer.close()


async def assert_tunnel_echo(host, port, bytes_data, timeout=5):
	"""
	Connect to host:port, which is expected to lead to an echo server, and check the data comes back unmodified
	"""
	reader, writer = await asyncio.wait_for(asyncio.open_connection(host=host, port=port), timeout=timeout)
	writer.write(bytes_data)
	await writer.drain()
	try:
		assert await asyncio.wait_for(reader.readexactly(len(bytes_data)), timeout=timeout) == bytes_data, "Invalid response from tunnel"
	except asyncio.TimeoutError:
		pytest.fail(f"Tunnel response failed to come back after {timeout} seconds")
	finally:
		writer.close()


async def wait_until(predicate, timeout=5):
	"""
	Poll predicate until it's true. Fails the test after timeout seconds
	"""
	deadline = time.monotonic() + timeout
	while not predicate():
		if time.monotonic() > deadline:
			pytest.fail(f'Condition was not met after {timeout} seconds')
		await asyncio.sleep(0.05)


@contextlib.contextmanager
def environment_variables(env_vars: dict):
	original_env = dict(os.environ)
	os.environ.update(env_vars)
	try:
		yield
	finally:
		os.environ.clear()
		os.environ.update(original_env)


async def silent_handler(reader, writer):
	"""
	Accept the connection and never answer, until the peer goes away
	"""
	await reader.read()
	writer.close()
