class TunnelError(Exception):
    pass


class TunnelFatalError(TunnelError):
    """
    Misconfiguration or a protocol violation. Retrying the session won't help
    """
    pass


class TunnelRecoverableError(TunnelError):
    """
    Transient failure. The session should be established again by whoever runs it
    """
    pass


class TunnelConfigError(TunnelFatalError):
    pass


class TunnelProxyError(TunnelFatalError):
    pass


class TunnelHostKeyError(TunnelFatalError):
    pass


class TunnelListenError(TunnelFatalError):
    pass


class TunnelConnectError(TunnelRecoverableError):
    pass


class TunnelListenerClosedError(TunnelError):
    pass
