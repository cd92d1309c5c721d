"""
error taxonomy for the referral ledger.

business rule rejections subclass ValueError so callers that only care about
"bad request vs server error" can keep catching ValueError.
"""


class ReferralError(ValueError):
    """base class for every business rule rejection."""


class InvalidInput(ReferralError):
    pass


class NotFound(ReferralError):
    pass


class AlreadyReferred(ReferralError):
    pass


class SelfReferral(ReferralError):
    pass


class CircularReference(ReferralError):
    pass


class MaxDepthExceeded(ReferralError):
    pass


class AlreadyProcessed(ReferralError):
    pass


class NotOwner(ReferralError):
    pass


class TransactionFailed(RuntimeError):
    """
    fatal store failure: retries exhausted or a non-retryable database error.
    safe to resubmit at a higher level.
    """


class SerializationConflict(RuntimeError):
    """transient store conflict. retried by the transaction wrapper, never a business rule."""
