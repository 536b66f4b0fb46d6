"""
CareSync — Error Taxonomy

Every failure the session core can surface, rooted at CareSyncError.

  PermissionDenied / DeviceUnavailable  recoverable via retest
  NetworkDegraded                       soft, always overridable
  EngineInitializationFailure           fatal for the current attempt
  FeedbackSubmissionFailure             non-fatal, never blocks Closed

Probe failures are converted into Failed capability tests before they
reach the controller; these classes mostly travel as classifications.
"""

from __future__ import annotations

from typing import List, Optional


class CareSyncError(Exception):
    """Base class for all session-core errors."""


# ---------------------------------------------------------------------------
# Capability errors (raised by media backends, classified by probes)
# ---------------------------------------------------------------------------

class CapabilityError(CareSyncError):
    hint: str = ""

    def __init__(self, message: str = "", hint: Optional[str] = None) -> None:
        super().__init__(message)
        if hint is not None:
            self.hint = hint


class PermissionDenied(CapabilityError):
    hint = (
        "Allow access in your browser or system privacy settings, "
        "then run the test again."
    )


class DeviceUnavailable(CapabilityError):
    hint = (
        "Make sure the device is connected and not in use by another "
        "application, then run the test again."
    )


class NetworkDegraded(CapabilityError):
    hint = (
        "Move closer to your router or switch networks. "
        "You can still join, but video quality may suffer."
    )


# ---------------------------------------------------------------------------
# Appointment context
# ---------------------------------------------------------------------------

class AppointmentLoadError(CareSyncError):
    """The appointment could not be fetched or parsed."""


class AppointmentIneligible(CareSyncError):
    """The appointment exists but cannot host a video call."""

    def __init__(self, appointment_id: str, reason: str) -> None:
        super().__init__(f"Appointment {appointment_id} is not eligible: {reason}")
        self.appointment_id = appointment_id
        self.reason = reason


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

class IllegalTransition(CareSyncError, ValueError):
    """Raised by the state machine on a transition not in its table."""


class JoinBlocked(CareSyncError):
    """
    join() was refused because readiness is not met and no override was given.

    hard_blocks need strongly-framed confirmation, soft_blocks only a
    light one; `confirmation` carries the copy the host should show.
    """

    def __init__(
        self,
        hard_blocks: List[str],
        soft_blocks: List[str],
        pending: List[str],
        confirmation: str,
    ) -> None:
        super().__init__(confirmation)
        self.hard_blocks = hard_blocks
        self.soft_blocks = soft_blocks
        self.pending = pending
        self.confirmation = confirmation

    @property
    def requires_strong_confirmation(self) -> bool:
        return bool(self.hard_blocks or self.pending)


class EngineInitializationFailure(CareSyncError):
    """The conferencing engine could not be created or never connected."""


# ---------------------------------------------------------------------------
# Feedback
# ---------------------------------------------------------------------------

class InvalidFeedback(CareSyncError, ValueError):
    pass


class FeedbackSubmissionFailure(CareSyncError):
    retryable = True
