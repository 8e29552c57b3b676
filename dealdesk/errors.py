"""Error taxonomy for deal and document operations.

Every class derives from ``ValueError`` so callers that only care about
"the request was rejected" can keep catching ``ValueError``.
"""

from __future__ import annotations


class DealdeskError(ValueError):
    pass


class ValidationError(DealdeskError):
    """A field required for the requested transition or document is missing or invalid."""


class StateTransitionError(DealdeskError):
    """The requested status change is not legal from the current status."""


class ConflictError(DealdeskError):
    """The write collides with existing state: a taken document number or a vehicle already in a deal."""


class ComputationError(DealdeskError):
    """A monetary input cannot be computed (negative, missing or malformed)."""


class NotFoundError(DealdeskError):
    pass


class ShareLinkGoneError(DealdeskError):
    """The share link existed but has expired or points at a voided document."""
