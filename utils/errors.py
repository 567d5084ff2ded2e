"""
Ingestion error taxonomy.

Only ConfigurationError is fatal. The others are raised and handled inside
the pipeline and never abort a run that has data to save.
"""


class IngestError(Exception):
    """Base class for all ingestion errors."""


class ConfigurationError(IngestError):
    """Required configuration is missing or invalid."""


class ForumError(IngestError):
    """The forum API returned an unusable response."""


class ModelCallError(IngestError):
    """A language model call failed.

    Backends normalize provider-specific failures into this shape so the
    extraction client can apply one retry policy.

    Attributes:
        status: HTTP status code when known
        quota_exceeded: True if the provider signalled its daily quota is spent
        retry_after: Server-suggested delay in seconds, if any
    """

    def __init__(
        self,
        message: str,
        status: int | None = None,
        quota_exceeded: bool = False,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status = status
        self.quota_exceeded = quota_exceeded
        self.retry_after = retry_after

    @property
    def rate_limited(self) -> bool:
        return self.status == 429


class QuotaExhaustedError(IngestError):
    """The model provider's daily quota is spent; stop for today."""


class GistAccessError(IngestError):
    """The configured token may not write to the backup Gist."""
