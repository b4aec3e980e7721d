"""
Error taxonomy shared by the engine runtime, the pool and the export pipeline.
"""

from __future__ import annotations

from typing import Optional, Sequence


class EngineError(RuntimeError):
    """Base class for every failure surfaced by ggbhost."""

    kind = "engine"

    def to_dict(self) -> dict:
        return {"success": False, "error": str(self), "type": self.kind}


class ConnectionError(EngineError):  # noqa: A001 - mirrors the engine vocabulary
    """
    The instance is not ready, the startup handshake timed out, or the
    instance was closed underneath the caller.

    Not retryable without a fresh ``initialize``.
    """

    kind = "connection"


class PoolExhaustedError(ConnectionError):
    """Raised when no pooled instance became available in time."""

    kind = "pool_exhausted"


class CommandError(EngineError):
    """A textual command was rejected by the engine or threw."""

    kind = "command"

    def __init__(self, message: str, command: str) -> None:
        super().__init__(message)
        self.command = command

    def to_dict(self) -> dict:
        payload = super().to_dict()
        payload["command"] = self.command
        return payload


class ExportError(EngineError):
    """Raster, vector or animation export failed."""

    kind = "export"


class EncodingError(ExportError):
    """The external encoder exited non-zero or produced no output."""

    kind = "encoding"

    def __init__(
        self,
        message: str,
        *,
        stderr: str = "",
        returncode: Optional[int] = None,
        command: Optional[Sequence[str]] = None,
    ) -> None:
        detail = message
        if stderr:
            detail = f"{message}\n{stderr.strip()}"
        super().__init__(detail)
        self.stderr = stderr
        self.returncode = returncode
        self.command = list(command) if command is not None else []

    def to_dict(self) -> dict:
        payload = super().to_dict()
        payload["returncode"] = self.returncode
        payload["stderr"] = self.stderr
        return payload


__all__ = [
    "CommandError",
    "ConnectionError",
    "EncodingError",
    "EngineError",
    "ExportError",
    "PoolExhaustedError",
]
