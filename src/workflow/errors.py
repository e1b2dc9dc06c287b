"""Exceptions raised while processing admin decisions.

The message of each exception is shown to the admin verbatim in the callback
alert, so keep them short and human readable.
"""


class WorkflowError(Exception):
    """Base exception for approval workflow operations."""

    pass


class RecordNotFoundError(WorkflowError):
    """The payment, media request or root folder does not exist."""

    pass


class InvalidStateError(WorkflowError):
    """The record cannot take this transition (already decided, bad data)."""

    pass


class ServiceNotConfiguredError(WorkflowError):
    """A required external service has no URL or API key."""

    pass


class UpstreamError(WorkflowError):
    """An external service rejected the call."""

    pass
