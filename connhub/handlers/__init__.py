"""Backend handler variants."""

from .base import ConnectionHandler, HandlerConstructor
from .file import FileHandler
from .forge import ForgeHandler, ForgeResult
from .records import ReadResult
from .relational import RelationalHandler, RelationalResult
from .rest import RestHandler, RestResult
from .soap import SoapHandler, SoapResult

__all__ = [
    "ConnectionHandler",
    "FileHandler",
    "ForgeHandler",
    "ForgeResult",
    "HandlerConstructor",
    "ReadResult",
    "RelationalHandler",
    "RelationalResult",
    "RestHandler",
    "RestResult",
    "SoapHandler",
    "SoapResult",
]
