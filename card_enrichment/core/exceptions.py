"""Custom exceptions for the card enrichment pipeline.

This module defines the exception hierarchy used by every stage action.
All enrichment-related exceptions inherit from EnrichmentError, which allows
stage actions to turn any failure below them into a structured result and
a retry-or-give-up decision.
"""


class EnrichmentError(Exception):
    """Base class for enrichment errors.

    Attributes:
        retryable: Whether scheduling another attempt may succeed.
        code: Short machine-readable code stored on failed results.
    """

    retryable: bool = False
    code: str = "enrichment_failed"

    def __init__(
        self,
        message: str,
        *,
        retryable: bool | None = None,
        code: str | None = None,
    ):
        super().__init__(message)
        if retryable is not None:
            self.retryable = retryable
        if code is not None:
            self.code = code


class CardNotFoundError(EnrichmentError):
    """The card id does not resolve to a stored card."""

    code = "card_not_found"


class SourceUnavailableError(EnrichmentError):
    """The card's source blob has no fetchable URL."""

    code = "missing_storage_url"


class FetchError(EnrichmentError):
    """Downloading source bytes failed.

    Usually a transient network or storage problem.
    """

    retryable = True
    code = "fetch_failed"


class InvalidSourceError(EnrichmentError):
    """The source content is malformed (e.g. not an SVG document)."""

    code = "invalid_source"


class ExtractionError(EnrichmentError):
    """An AI inference call failed or returned unusable output."""

    retryable = True
    code = "extraction_failed"


class NoMetadataGeneratedError(EnrichmentError):
    """The AI call succeeded but produced no tags, summary or transcript."""

    code = "no_metadata_generated"


class TranscriptionError(EnrichmentError):
    """Audio transcription failed on every available path."""

    retryable = True
    code = "transcription_failed"


class SandboxError(EnrichmentError):
    """The headless-browser sandbox could not run the supplied script."""

    retryable = True
    code = "kernel_execution_failed"


class RenderError(EnrichmentError):
    """A renderer returned a failed result."""

    retryable = True
    code = "render_failed"


class UnfurlTimeoutError(EnrichmentError):
    """The unfurl API did not answer within the request timeout."""

    retryable = True
    code = "unfurl_timeout"


class UnfurlNetworkError(EnrichmentError):
    """The unfurl API could not be reached."""

    retryable = True
    code = "unfurl_network_error"


class UnfurlRejectedError(EnrichmentError):
    """The unfurl API answered with an error verdict.

    The remote service has already decided; retrying will not help.
    """

    code = "unfurl_rejected"

    def __init__(self, message: str, *, status: str = "error"):
        super().__init__(message)
        self.status = status


class ConfigurationError(Exception):
    """Invalid configuration.

    This is NOT an EnrichmentError - configuration issues should be fixed
    before the service runs, not retried automatically.
    """

    pass
