"""connhub: one registry and query surface over heterogeneous data backends."""

from .cache import MISS, CacheLayer
from .config import DataSourceConfig, ManagerSettings, load_config
from .errors import ConnectionManagerError, ErrorKind
from .factory import HandlerFactory
from .handlers import ConnectionHandler
from .manager import ConnectionManager
from .models import HandlerState
from .registry import ConnectionRegistry
from .supervisor import Supervisor

__version__ = "0.1.0"

__all__ = [
    "CacheLayer",
    "ConnectionHandler",
    "ConnectionManager",
    "ConnectionManagerError",
    "ConnectionRegistry",
    "DataSourceConfig",
    "ErrorKind",
    "HandlerFactory",
    "HandlerState",
    "MISS",
    "ManagerSettings",
    "Supervisor",
    "__version__",
    "load_config",
]
