"""Error types shared by the core and adapters."""

from __future__ import annotations


class MinerError(Exception):
    """Base class for catalog-miner errors."""


class SetupError(MinerError):
    """Fatal configuration problem detected before any message is touched."""


class MalformedMessageError(MinerError):
    """A single inbound message cannot be normalized and must be skipped."""


class EnrichmentError(MinerError):
    """The enrichment service failed or returned an unusable response.

    ``retryable`` marks transient failures (timeouts, rate limits, 5xx) that
    the retry helper may try again.
    """

    def __init__(self, message: str, retryable: bool = False) -> None:
        super().__init__(message)
        self.retryable = retryable


class MediaError(MinerError):
    """A media download or object storage write failed."""

    def __init__(self, message: str, retryable: bool = False) -> None:
        super().__init__(message)
        self.retryable = retryable
