"""Error taxonomy for the ingestion pipeline.

Every failure the pipeline can observe is one of four kinds:

* ``TransientError`` - worth retrying later (timeouts, rate limits, 5xx,
  memory store unavailable).
* ``PermanentError`` - retrying cannot help (item deleted, access revoked,
  malformed item, store rejected the document).
* Gateway errors - raised synchronously to the webhook caller, nothing is
  enqueued.
* Correction errors - surfaced synchronously to the human who issued the
  correction, never retried.
"""

from typing import Optional


class IngestionError(Exception):
    """Base class for all pipeline errors."""


class TransientError(IngestionError):
    """Failure that may succeed on a later attempt."""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class TransientSourceError(TransientError):
    """Network failure, timeout or 5xx from a source platform."""


class RateLimitedError(TransientError):
    """Source platform asked us to slow down."""


class StoreUnavailableError(TransientError):
    """Memory store could not be reached or answered with a 5xx."""


class PermanentError(IngestionError):
    """Failure that will not resolve by retrying."""


class ItemGoneError(PermanentError):
    """The source item no longer exists."""


class AuthorizationRevokedError(PermanentError):
    """Access to the source item has been revoked."""


class EnvelopeValidationError(PermanentError):
    """Raw item cannot be normalized into a document envelope."""


class StoreRejectedError(PermanentError):
    """Memory store refused the document (schema or validation)."""


class CursorInvalidatedError(PermanentError):
    """Delta cursor is too old or otherwise unusable.

    The reconciler treats this as a state transition (re-backfill), not a
    failure, unless it recurs within the same run.
    """


class WebhookAuthenticationError(IngestionError):
    """Notification failed the shared-secret check."""


class WebhookValidationError(IngestionError):
    """Notification body is malformed."""


class GatewayUnavailableError(IngestionError):
    """Gateway could not enqueue within its latency budget."""


class SubscriptionStateError(IngestionError):
    """Requested subscription transition is not allowed."""


class CorrectionError(IngestionError):
    """Base class for belief correction failures."""


class BeliefNotFoundError(CorrectionError):
    """Memory store has no belief with the given id."""


class BeliefConflictError(CorrectionError):
    """Belief was already superseded, or the store answered inconsistently."""

    def __init__(self, message: str, superseded_by: Optional[str] = None):
        super().__init__(message)
        self.superseded_by = superseded_by


class BeliefNotActiveError(CorrectionError):
    """Belief is deprecated and cannot be driven further."""


class CorrectionAlreadyAppliedError(CorrectionError):
    """The same correction has already been applied to this belief."""
