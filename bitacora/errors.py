"""Error taxonomy shared by the engine, the store and the HTTP layer."""
from __future__ import annotations


class BitacoraError(Exception):
    """Base class for every error raised by the package."""


class ClassificationFailure(BitacoraError):
    """Network, timeout or malformed output from the classification service."""


class PersistenceFailure(BitacoraError):
    """A persistent store call was rejected."""


class CacheFailure(BitacoraError):
    """Local cache storage failed (quota, corruption). Never fatal."""


class CaptureRejected(BitacoraError):
    """Capture input is unusable (e.g. empty text and no attachment)."""


class NotFoundError(BitacoraError):
    """Referenced capture, staged topic, entry, task or book does not exist."""
