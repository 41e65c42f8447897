"""
Error taxonomy shared by the Mutation Gateway and the Query Layer.

The gateway converts every CRMError into a failed ActionResult; queries let
StoreError / NotFoundError propagate to the caller.
"""


class CRMError(Exception):
    """Base class for all crmkit errors."""


class Unauthorized(CRMError):
    """No owner identity is bound to the current session."""

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message)


class ValidationError(CRMError):
    """Input rejected before any Record Store call."""


class StoreError(CRMError):
    """The Record Store rejected or failed a statement. Message is passed through verbatim."""


class NotFoundError(StoreError):
    """A single-row query matched nothing owned by the caller."""
