"""Per-agent knowledge graph memory: triple store, entity resolution, graph search and meta-path discovery."""

__version__ = "0.1.0"

from .errors import GraphMemoryError, GraphWriteError, InvalidAgentError, StoreBusyError
from .service import GraphMemory

__all__ = [
    "GraphMemory",
    "GraphMemoryError",
    "GraphWriteError",
    "InvalidAgentError",
    "StoreBusyError",
    "__version__",
]
