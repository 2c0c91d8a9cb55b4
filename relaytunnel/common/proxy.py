"""
Dial the relay host, either directly or through an HTTP forward proxy.

In proxy mode we send a CONNECT request to the proxy and, once it answers with a 2xx status,
the very same socket carries the SSH traffic to the relay. The response head is read one byte
at a time so the first bytes sent by the relay (its SSH identification string) stay in the socket.
"""
from typing import Optional, Tuple
from urllib.parse import urlparse, unquote
from aiohttp import BasicAuth

from .const import DEFAULT_PROXY_PORT, PROXY_ENV_VARIABLES, PROXY_RESPONSE_HEAD_MAX_SIZE
from .exceptions import TunnelProxyError, TunnelConnectError
from .utils import format_address

import os
import http
import socket
import asyncio
import logging


def get_proxy_url_from_env(environ=None) -> Optional[str]:
    """
    Return the forward proxy url defined in the environment, or None if there is none
    """
    environ = os.environ if environ is None else environ
    for env_var_name in PROXY_ENV_VARIABLES:
        proxy_url = environ.get(env_var_name)
        if proxy_url:
            return proxy_url
    return None


def parse_proxy_url(proxy_url: str) -> Tuple[str, int, Optional[BasicAuth]]:
    """
    Return (host, port, proxy_auth) of a proxy url.
    A url without a scheme, like `proxy.local:3128`, is treated as http.
    """
    if '://' not in proxy_url:
        proxy_url = f'http://{proxy_url}'
    try:
        parsed_url = urlparse(proxy_url)
        port = parsed_url.port or DEFAULT_PROXY_PORT
    except ValueError as err:
        raise TunnelProxyError(f'Invalid proxy url `{proxy_url}`: {err}') from err
    if parsed_url.scheme != 'http':
        raise TunnelProxyError(f'Unsupported proxy scheme `{parsed_url.scheme}`. Only http proxies are supported')
    if not parsed_url.hostname:
        raise TunnelProxyError(f'Invalid proxy url `{proxy_url}`: missing hostname')
    proxy_auth = None
    if parsed_url.username is not None and parsed_url.password is not None:
        proxy_auth = BasicAuth(unquote(parsed_url.username), unquote(parsed_url.password))
    return parsed_url.hostname, port, proxy_auth


def build_connect_request(host, port, proxy_auth: BasicAuth = None) -> bytes:
    target = format_address(host, port)
    lines = [f'CONNECT {target} HTTP/1.1', f'Host: {target}']
    if proxy_auth is not None:
        lines.append(f'Proxy-Authorization: {proxy_auth.encode()}')
    return ('\r\n'.join(lines) + '\r\n\r\n').encode('latin-1')


def parse_connect_response_head(head: bytes) -> Tuple[int, str]:
    """
    Return (status_code, reason) of a CONNECT response head.
    Raises TunnelProxyError if the status line is malformed
    """
    status_line = head.split(b'\r\n', 1)[0].decode('latin-1')
    parts = status_line.split(' ', 2)
    if len(parts) < 2 or not parts[0].startswith('HTTP/'):
        raise TunnelProxyError(f'Malformed response from proxy: `{status_line}`')
    try:
        status_code = int(parts[1])
    except ValueError:
        raise TunnelProxyError(f'Malformed status code in proxy response: `{status_line}`')
    reason = parts[2] if len(parts) > 2 else ''
    return status_code, reason


async def _open_socket(host, port) -> socket.socket:
    """
    Open a non-blocking TCP socket to host:port.
    Network errors are raised as TunnelConnectError so the session can be retried
    """
    loop = asyncio.get_running_loop()
    try:
        addresses = await loop.getaddrinfo(host, port, type=socket.SOCK_STREAM)
    except OSError as err:
        raise TunnelConnectError(f'Failed to resolve `{host}`: {err}') from err
    last_error = None
    for family, sock_type, proto, _, address in addresses:
        sock = socket.socket(family, sock_type, proto)
        sock.setblocking(False)
        try:
            await loop.sock_connect(sock, address)
            return sock
        except OSError as err:
            sock.close()
            last_error = err
        except BaseException:
            sock.close()
            raise
    raise TunnelConnectError(f'Failed to connect to {format_address(host, port)}: {last_error}') from last_error


async def _read_response_head(sock: socket.socket) -> bytes:
    loop = asyncio.get_running_loop()
    head = bytearray()
    while not head.endswith(b'\r\n\r\n'):
        if len(head) > PROXY_RESPONSE_HEAD_MAX_SIZE:
            raise TunnelProxyError('Response head from proxy is too large')
        try:
            data = await loop.sock_recv(sock, 1)
        except OSError as err:
            raise TunnelConnectError(f'Failed to read response from proxy: {err}') from err
        if not data:
            raise TunnelConnectError('Proxy closed the connection before answering CONNECT')
        head += data
    return bytes(head)


async def dial_through_proxy(proxy_url, host, port, logger: logging.Logger = None) -> socket.socket:
    """
    Open a socket to host:port tunneled through the http proxy at proxy_url.
    The returned socket is positioned right after the proxy's response head.
    """
    logger = logger or logging.getLogger(__name__)
    proxy_host, proxy_port, proxy_auth = parse_proxy_url(proxy_url)
    logger.debug('Connecting to `%s` through proxy `%s`', format_address(host, port), format_address(proxy_host, proxy_port))
    sock = await _open_socket(proxy_host, proxy_port)
    try:
        try:
            await asyncio.get_running_loop().sock_sendall(sock, build_connect_request(host, port, proxy_auth))
        except OSError as err:
            raise TunnelConnectError(f'Failed to send CONNECT request to proxy: {err}') from err
        head = await _read_response_head(sock)
        status_code, reason = parse_connect_response_head(head)
        if not http.HTTPStatus.OK.value <= status_code < http.HTTPStatus.MULTIPLE_CHOICES.value:
            raise TunnelProxyError(f'Proxy refused to CONNECT to `{format_address(host, port)}`: {status_code} {reason}')
    except BaseException:
        sock.close()
        raise
    logger.debug('Proxy established a tunnel to `%s`', format_address(host, port))
    return sock


async def dial(host, port, proxy_url=None, logger: logging.Logger = None) -> socket.socket:
    """
    Return a connected socket to host:port. Use the proxy if proxy_url is given
    """
    if proxy_url:
        return await dial_through_proxy(proxy_url, host, port, logger=logger)
    return await _open_socket(host, port)
