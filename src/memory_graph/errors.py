from __future__ import annotations


class GraphMemoryError(Exception):
    """Base class for errors raised by the graph memory core."""


class GraphWriteError(GraphMemoryError):
    """A write transaction failed and was rolled back.

    Prior state is untouched; the caller may retry the whole exchange.
    """

    def __init__(self, message: str, *, agent_id: str | None = None):
        super().__init__(message)
        self.agent_id = agent_id


class StoreBusyError(GraphWriteError):
    """The database was locked by another writer."""


class InvalidAgentError(GraphMemoryError, ValueError):
    """Agent identifiers name on-disk directories and must be path-safe."""
