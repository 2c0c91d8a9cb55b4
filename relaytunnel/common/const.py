from enum import Enum
from typing import Union, Callable, Awaitable, Any, TYPE_CHECKING
if TYPE_CHECKING:
    from .listener import InboundConnection


# Types
InboundConnectionHook = Callable[['InboundConnection'], Union[Awaitable[Any], None]]


class LifecycleSignal(Enum):
    RECONNECT = 1  # The session ended on a recoverable condition. A new session should be established


class SessionOutcome(Enum):
    COMPLETED = 0
    RECOVERABLE_FAILURE = 1
    FATAL_FAILURE = 2


# Constants
DEFAULT_RELAY_PORT = 22
DEFAULT_PROXY_PORT = 80
DEFAULT_CONNECT_TIMEOUT = 30
DEFAULT_TARGET_CONNECT_TIMEOUT = 10
DEFAULT_RECONNECT_DELAY = 5
PROXY_ENV_VARIABLES = ('http_proxy', 'HTTP_PROXY')
PROXY_RESPONSE_HEAD_MAX_SIZE = 65536
