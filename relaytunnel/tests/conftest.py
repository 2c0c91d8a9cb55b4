from relaytunnel.common.auth import PasswordAuth
from relaytunnel.config import SessionConfig
from .utils import RelayServerForTests, RELAY_USERNAME, RELAY_PASSWORD, echo_handler

import pytest
import asyncio
import asyncssh
import tempfile
import time
import os


@pytest.fixture
def config_path():
    config_file_name = f'test_relaytunnel_config_{time.time()}.json'
    with tempfile.TemporaryDirectory() as config_dir_path:
        yield os.path.join(config_dir_path, config_file_name)


@pytest.fixture(scope="session")
def bytes_data():
    """
    Return a bytes object
    """
    return bytes(range(256))


@pytest.fixture(scope="session")
def relay_host_key():
    return asyncssh.generate_private_key('ssh-ed25519')


@pytest.fixture(scope="session")
def relay_public_key(relay_host_key):
    return relay_host_key.export_public_key().decode()


@pytest.fixture
async def relay_server(relay_host_key, unused_tcp_port_factory):
    """
    Creates a RelayServerForTests instance, start and return it.
    """
    server = RelayServerForTests(port=unused_tcp_port_factory(), host_key=relay_host_key)
    await server.start()
    yield server
    await server.stop()


@pytest.fixture
async def echo_server_socket(unused_tcp_port_factory):
    """
    Creates a server which echo back whatever it receive.
    The value is the port of the server, while the address is 127.0.0.1
    """
    port = unused_tcp_port_factory()
    server = await asyncio.start_server(echo_handler, host='127.0.0.1', port=port)
    yield '127.0.0.1', port
    server.close()
    await server.wait_closed()


@pytest.fixture
def session_config(relay_server, relay_public_key, unused_tcp_port_factory) -> SessionConfig:
    """
    SessionConfig to the relay_server with an events queue. Use session_config._replace(...) to change it
    """
    return SessionConfig(relay_host='127.0.0.1',
                         relay_port=relay_server.port,
                         username=RELAY_USERNAME,
                         auth=PasswordAuth(RELAY_PASSWORD),
                         host_key=relay_public_key,
                         remote_host='127.0.0.1',
                         remote_port=unused_tcp_port_factory(),
                         target_host='127.0.0.1',
                         target_port=unused_tcp_port_factory(),
                         events=asyncio.Queue(),
                         use_env_proxy=False,
                         connect_timeout=5,
                         target_connect_timeout=2)
