import os
import copy
import json
import time
import asyncio
import importlib
import aiofiles
import contextlib
import click
import asyncssh

from typing import NamedTuple, Optional
from marshmallow import ValidationError

from .common.auth import TunnelClientAuth, PasswordAuth, KeyAuth
from .common.const import (InboundConnectionHook, DEFAULT_RELAY_PORT, DEFAULT_CONNECT_TIMEOUT,
                           DEFAULT_TARGET_CONNECT_TIMEOUT, DEFAULT_RECONNECT_DELAY)
from .common.exceptions import TunnelConfigError
from .common.security import Encryptor
from .common.utils import run_blocking_func_in_executor
from .schemas import TunnelConfigSchema

# The default config is the basic configuration of relaytunnel.
# In case the configuration file already exists, it's performing an update over the default config.
# This way, in case the default configuration has a new key in some version, it will be added automatically.
_DEFAULT_CONFIG = {
    'relay_host': None,
    'relay_port': DEFAULT_RELAY_PORT,
    'username': None,
    'host_key': None,
    'host_key_path': None,
    'remote_host': '0.0.0.0',
    'remote_port': 0,
    'target_host': '127.0.0.1',
    'target_port': None,
    'hide_banner': False,
    'proxy_url': None,
    'control_command': None,
    'connect_timeout': DEFAULT_CONNECT_TIMEOUT,
    'target_connect_timeout': DEFAULT_TARGET_CONNECT_TIMEOUT,
    'reconnect_delay': DEFAULT_RECONNECT_DELAY,
    # Credentials are not provided here so they won't be dynamically stored in the configuration file by mistake
}
ENV_VARIABLES_PREFIX = 'RELAYTUNNEL_'
SECRET_KEY_ENV_VARIABLE = ENV_VARIABLES_PREFIX + 'SECRET_KEY'


class SessionConfig(NamedTuple):
    """
    Everything a single tunnel session needs. The session only reads it.
    host_key is the relay's public key in authorized_keys format (e.g. `ssh-ed25519 AAAA... comment`).
    events, when given, receives LifecycleSignal.RECONNECT whenever a session ends on a recoverable condition.
    proxy_url overrides the proxy from the environment. Set use_env_proxy to False to ignore the environment.
    control_command is executed on the relay to stream its diagnostic output. None requests a shell.
    """
    relay_host: str
    username: str
    auth: TunnelClientAuth
    host_key: str
    target_port: int
    relay_port: int = DEFAULT_RELAY_PORT
    remote_host: str = '0.0.0.0'
    remote_port: int = 0
    target_host: str = '127.0.0.1'
    inbound_connection_hook: Optional[InboundConnectionHook] = None
    hide_banner: bool = False
    events: Optional[asyncio.Queue] = None
    proxy_url: Optional[str] = None
    use_env_proxy: bool = True
    control_command: Optional[str] = None
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT
    target_connect_timeout: float = DEFAULT_TARGET_CONNECT_TIMEOUT


def get_default_config(use_env_vars=True) -> dict:
    """
    If use_env_vars is True, config values will be override by environment variables if defined.
    For example, to override the value of "relay_host", export "RELAYTUNNEL_RELAY_HOST".
    Environment variables are expected to be in json format, and are usually defined in the systemd service.
    """
    default_config = copy.deepcopy(_DEFAULT_CONFIG)
    if use_env_vars:
        for key in default_config:
            env_var_name = ENV_VARIABLES_PREFIX + key.upper()
            if env_var_name in os.environ:
                try:
                    default_config[key] = json.loads(os.environ[env_var_name])
                except ValueError as err:
                    raise TunnelConfigError(f'{env_var_name} is not a valid json value: {err}') from err
    return default_config


class TunnelConfiguration:
    def __init__(self, config_path=None):
        """
        USE ONLY `await TunnelConfiguration.create(path)` TO INITIALIZE AN OBJECT

        Manage relaytunnel configurations in JSON format.
        Store configurations in memory unless config_path was given.
        :param config_path: Optional path to a configuration file in which to store changes.
        """
        self._config_path = config_path
        # This lock is used to prevent multiple disk writes when saving the configuration using safe writes.
        self._saving_config_lock = asyncio.Lock()
        self._config = get_default_config()

    @classmethod
    async def create(cls, config_path=None, save=False):
        """
        :param save: write the merged configuration back to config_path
        """
        self = TunnelConfiguration(config_path=config_path)
        await self._initialize()
        if save:
            await self.save()
        return self

    async def _initialize(self):
        """
        Initialize config by loading config_path
        """
        if self._config_path:
            with contextlib.suppress(FileNotFoundError):
                async with aiofiles.open(self._config_path) as config_file:
                    data = await config_file.read()
                try:
                    self._config.update(json.loads(data))
                except ValueError as err:
                    raise TunnelConfigError(f'Configuration file `{self._config_path}` is not a valid json: {err}') from err

    async def save(self):
        """
        Save configurations using safe writes to the config path if exists
        """
        if self._config_path is None:
            return
        async with self._saving_config_lock:
            temp_config_path = f"{self._config_path}.{time.time()}"
            # First we write all the config to a temporary file
            async with aiofiles.open(temp_config_path, 'w') as temp_config_file:
                await temp_config_file.write(json.dumps(self._config, indent=4))
                await temp_config_file.flush()
                await run_blocking_func_in_executor(os.fsync, temp_config_file.fileno())
            # Now we overwrite the config file with an atomic operation
            await run_blocking_func_in_executor(os.replace, temp_config_path, self._config_path)

    def update(self, values: dict):
        """
        Override keys with values. Keys with None values are ignored so unset command line options won't
        hide values from the configuration file
        """
        self._config.update({key: value for key, value in values.items() if value is not None})

    def to_dict(self) -> dict:
        return copy.deepcopy(self._config)

    def __getitem__(self, key):
        return self._config[key]

    def __setitem__(self, key, value):
        self._config[key] = value

    def __contains__(self, key):
        return key in self._config

    def get(self, key, default=None):
        return self._config.get(key, default)


def load_auth_plugin(auth_plugin: str, auth_data: dict) -> TunnelClientAuth:
    """
    Initialize an auth plugin from a path like `<module_path>.<auth_class_name>`
    """
    try:
        module, class_name = auth_plugin.rsplit('.', maxsplit=1)
        auth_class = getattr(importlib.import_module(module), class_name)
    except (ValueError, ImportError, AttributeError) as err:
        raise TunnelConfigError(f'Failed to load auth plugin `{auth_plugin}`: {err}') from err
    if not (isinstance(auth_class, type) and issubclass(auth_class, TunnelClientAuth)):
        raise TunnelConfigError(f'`{auth_plugin}` is not a subclass of TunnelClientAuth')
    return auth_class(**auth_data)


def parse_host_key(host_key: str) -> asyncssh.SSHKey:
    """
    Parse a public key in authorized_keys or OpenSSH format.
    Raises TunnelConfigError if the key is malformed
    """
    try:
        return asyncssh.import_public_key(host_key.strip())
    except (asyncssh.KeyImportError, ValueError) as err:
        raise TunnelConfigError(f'Failed to parse host key: {err}') from err


async def create_session_config(config: dict, secret_key=None, inbound_connection_hook: InboundConnectionHook = None,
                                events: asyncio.Queue = None) -> SessionConfig:
    """
    Validate a configuration dictionary and build a SessionConfig from it.
    :param config: configuration values, see TunnelConfigSchema
    :param secret_key: key to decrypt `encrypted_password` and `encrypted_proxy_url`. Defaults to RELAYTUNNEL_SECRET_KEY
    :param inbound_connection_hook: Optional hook to take over inbound connections
    :param events: Optional queue to receive lifecycle signals
    """
    try:
        data = TunnelConfigSchema().load(config)
    except ValidationError as err:
        raise TunnelConfigError(f'Invalid configuration: {err.messages}') from err
    secret_key = secret_key or os.environ.get(SECRET_KEY_ENV_VARIABLE)

    def get_encryptor():
        if not secret_key:
            raise TunnelConfigError(f'A secret key is required to decrypt secrets. Set {SECRET_KEY_ENV_VARIABLE}')
        return Encryptor(secret_key)

    if data['auth_plugin']:
        auth = load_auth_plugin(data['auth_plugin'], data['auth_data'])
    elif data['client_keys']:
        auth = KeyAuth(data['client_keys'])
    elif data['encrypted_password']:
        auth = PasswordAuth(get_encryptor().decrypt_string(data['encrypted_password']))
    else:
        auth = PasswordAuth(data['password'])

    host_key = data['host_key']
    if data['host_key_path']:
        try:
            async with aiofiles.open(data['host_key_path']) as host_key_file:
                host_key = await host_key_file.read()
        except OSError as err:
            raise TunnelConfigError(f'Failed to read host key file `{data["host_key_path"]}`: {err}') from err
    # Fail early on a malformed key, before anything touches the network
    parse_host_key(host_key)

    proxy_url = data['proxy_url']
    if data['encrypted_proxy_url']:
        proxy_url = get_encryptor().decrypt_string(data['encrypted_proxy_url'])

    return SessionConfig(relay_host=data['relay_host'],
                         relay_port=data['relay_port'],
                         username=data['username'],
                         auth=auth,
                         host_key=host_key,
                         remote_host=data['remote_host'],
                         remote_port=data['remote_port'],
                         target_host=data['target_host'],
                         target_port=data['target_port'],
                         inbound_connection_hook=inbound_connection_hook,
                         hide_banner=data['hide_banner'],
                         events=events,
                         proxy_url=proxy_url,
                         control_command=data['control_command'],
                         connect_timeout=data['connect_timeout'],
                         target_connect_timeout=data['target_connect_timeout'])


@click.group()
def main():
    pass


@main.command()
@click.argument('path')
@click.option('--custom-changes', default='{}', help='A json dump string of the changes you want to make in the default configuration')
def create(path, custom_changes):
    custom_changes = json.loads(custom_changes)

    config_dir = os.path.dirname(path)
    if config_dir:
        os.makedirs(config_dir, exist_ok=True)
    with open(path, 'w') as f:
        json.dump(custom_changes, f)

    async def create_config():
        await TunnelConfiguration.create(path, save=True)

    asyncio.run(create_config())


if __name__ == '__main__':
    main()
