"""Exception types raised across the review pipeline and scheduler."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from inbox_vetter.models import VetterState


class VetterError(Exception):
    """Base class for Inbox Vetter errors."""


class UnknownUser(VetterError):
    def __init__(self, email: str) -> None:
        super().__init__(f"User not found: {email}")
        self.email = email


class CredentialsMissing(VetterError):
    """No usable Gmail credentials are stored for a user."""

    def __init__(self, email: str, detail: str = "") -> None:
        message = f"No Gmail credentials stored for {email}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)
        self.email = email


class AlreadyActive(VetterError):
    """A run was requested while another one is in flight for the same user.

    This is a conflict rather than a failure: ``state`` holds the current
    vetter state so callers can poll until the active run finishes.
    """

    def __init__(self, email: str, state: VetterState) -> None:
        super().__init__(f"A review is already running for {email}")
        self.email = email
        self.state = state


class ListingFailed(VetterError):
    """Listing candidate message ids failed; the whole run is aborted."""


class MessageProcessingFailed(VetterError):
    """A single message could not be processed. Never aborts a run."""

    def __init__(self, message_id: str, cause: BaseException) -> None:
        super().__init__(f"Processing failed for message {message_id}: {cause}")
        self.message_id = message_id
        self.cause = cause


class ClassificationDegraded(VetterError):
    """The classifier call or its response was unusable."""


class AttachmentFetchFailed(VetterError):
    def __init__(self, filename: str, cause: BaseException) -> None:
        super().__init__(f"Fetch failed: {cause}")
        self.filename = filename
        self.cause = cause


class IntervalTooShort(VetterError, ValueError):
    def __init__(self, seconds: float, minimum: float) -> None:
        super().__init__(f"Interval of {seconds:g}s is below the {minimum:g}s minimum")
        self.seconds = seconds
        self.minimum = minimum
