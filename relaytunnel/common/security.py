"""
Security utilities for relaytunnel.
Secrets in the configuration file (relay password, proxy url with credentials) can be stored encrypted
with a key that is kept elsewhere, see relaytunnel.config
"""
from cryptography.fernet import Fernet, InvalidToken

from .exceptions import TunnelConfigError

import click


@click.group(help="Toolkit for security utilities on relaytunnel")
def main():
    pass


@main.command(name='generate-key')
def _generate_key():
    """Generates a key that can be used to encrypt secrets in the configuration file
    """
    print(Encryptor.generate_key().decode())


@main.command(name='encrypt')
@click.argument('secret-key')
@click.argument('data')
def _encrypt(secret_key, data):
    """Encrypt data using the secret_key"""
    print(Encryptor(secret_key).encrypt_string(data))


@main.command(name='decrypt')
@click.argument('secret-key')
@click.argument('data')
def _decrypt(secret_key, data):
    """Decrypt data using the secret_key"""
    print(Encryptor(secret_key).decrypt_string(data))


class Encryptor:
    def __init__(self, key):
        try:
            self._fernet = Fernet(key)
        except (ValueError, TypeError) as err:
            raise TunnelConfigError(f'Invalid secret key: {err}') from err

    @staticmethod
    def generate_key():
        return Fernet.generate_key()

    def encrypt(self, data: bytes):
        return self._fernet.encrypt(data)

    def decrypt(self, data: bytes):
        try:
            return self._fernet.decrypt(data)
        except InvalidToken:
            raise TunnelConfigError('Failed to decrypt secret. Make sure the right secret key is used')

    def encrypt_string(self, data: str):
        return self.encrypt(data.encode()).decode()

    def decrypt_string(self, data: str):
        return self.decrypt(data.encode()).decode()


if __name__ == '__main__':
    main()
