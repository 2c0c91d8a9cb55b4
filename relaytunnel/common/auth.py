from typing import Iterable

import abc


class TunnelClientAuth(abc.ABC):
    def __init__(self, *args, **kwargs):
        pass

    @abc.abstractmethod
    def get_connect_options(self) -> dict:
        """
        Return keyword arguments for asyncssh.connect which authenticate us with the relay.
        For example:

        def get_connect_options(self):
            return {'password': self._password}

        Any option not returned here is disabled, so the relay cannot negotiate
        a method the plugin didn't ask for.
        """
        raise NotImplementedError

    @abc.abstractmethod
    def dump_object(self) -> dict:
        """
        Return a dump of this TunnelClientAuth instance's data so it can be stored in the configuration
        and reloaded during startup. The return value should be a dictionary that can be given
        to the constructor of the class and will generate a valid TunnelClientAuth object.
        """
        raise NotImplementedError


class PasswordAuth(TunnelClientAuth):
    def __init__(self, password, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._password = password

    def get_connect_options(self):
        return {'password': self._password, 'client_keys': None, 'agent_path': None}

    def dump_object(self):
        return {'password': self._password}


class KeyAuth(TunnelClientAuth):
    def __init__(self, client_keys: Iterable[str], passphrase=None, *args, **kwargs):
        """
        Authenticate with private keys
        :param client_keys: paths to private key files
        :param passphrase: Optional passphrase to decrypt the keys
        """
        super().__init__(*args, **kwargs)
        self._client_keys = list(client_keys)
        self._passphrase = passphrase

    def get_connect_options(self):
        return {'client_keys': self._client_keys, 'passphrase': self._passphrase, 'password': None}

    def dump_object(self):
        return {'client_keys': self._client_keys, 'passphrase': self._passphrase}
