from __future__ import annotations


class EngineError(Exception):
    """Base class for errors raised by the map engine."""


class FetchError(EngineError):
    """
    A network/timeout/server failure while fetching records.

    Raised by fetchers for a single failed attempt, and by the loader once
    retries are exhausted.
    """


class CacheCorruptionError(EngineError):
    """A persisted snapshot could not be decoded."""


class ClusterInputError(EngineError, ValueError):
    """A record cannot be clustered (non-finite coordinates)."""


class LoadCancelledError(EngineError):
    """A load was superseded and stopped between batches."""
