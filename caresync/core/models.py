"""
CareSync — Data Models

Dataclasses for every piece of data flowing through the session core.
Everything exposes to_dict() so the observer bridge can ship it as JSON.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Set


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class CapabilityKind(str, Enum):
    CAMERA = "camera"
    MICROPHONE = "microphone"
    SPEAKER = "speaker"
    NETWORK = "network"


# Capabilities that gate readiness; network is only ever a soft block
HARD_CAPABILITIES = (
    CapabilityKind.CAMERA,
    CapabilityKind.MICROPHONE,
    CapabilityKind.SPEAKER,
)


class TestState(str, Enum):
    __test__ = False  # not a pytest class

    PENDING = "pending"
    TESTING = "testing"
    PASSED = "passed"
    FAILED = "failed"


TERMINAL_TEST_STATES = frozenset({TestState.PASSED, TestState.FAILED})

# Legal capability test transitions (retest goes back through PENDING)
_TEST_TRANSITIONS: Dict[TestState, Set[TestState]] = {
    TestState.PENDING: {TestState.TESTING},
    TestState.TESTING: {TestState.PASSED, TestState.FAILED},
    TestState.PASSED:  {TestState.PENDING},
    TestState.FAILED:  {TestState.PENDING},
}


class FailureCause(str, Enum):
    PERMISSION_DENIED = "permission_denied"
    DEVICE_UNAVAILABLE = "device_unavailable"
    NETWORK_DEGRADED = "network_degraded"


class NetworkQuality(str, Enum):
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"


class EndReason(str, Enum):
    USER_ENDED = "user_ended"
    ENGINE_LEFT = "engine_left"
    READY_TO_CLOSE = "ready_to_close"
    ENGINE_ERROR = "engine_error"
    CANCELLED = "cancelled"
    TEARDOWN = "teardown"


class EngineEventType(str, Enum):
    """Normalised conferencing engine events re-exposed to observers."""
    JOINED = "joined"
    LEFT = "left"
    PARTICIPANT_JOINED = "participant_joined"
    PARTICIPANT_LEFT = "participant_left"
    AUDIO_MUTE_CHANGED = "audio_mute_changed"
    VIDEO_MUTE_CHANGED = "video_mute_changed"
    SCREEN_SHARE_CHANGED = "screen_share_changed"
    ERROR = "error"
    READY_TO_CLOSE = "ready_to_close"


# ---------------------------------------------------------------------------
# Session context (immutable, loaded once)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SessionContext:
    appointment_id: str
    participant_role: str               # "patient" | "doctor"
    scheduled_start: Optional[datetime]
    session_type: str                   # "online" for video consultations
    status: str
    display_name: str = ""
    counterpart_name: str = ""
    counterpart_role: str = ""

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["scheduled_start"] = (
            self.scheduled_start.isoformat() if self.scheduled_start else None
        )
        return d


# ---------------------------------------------------------------------------
# Devices
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class DeviceInfo:
    """One enumerated media device."""
    device_id: str
    kind: str        # "videoinput" | "audioinput" | "audiooutput"
    label: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ConnectionInfo:
    """Link-quality heuristic exposed by the runtime, if any."""
    effective_type: Optional[str] = None   # "4g" | "3g" | "wifi" | ...
    downlink_mbps: Optional[float] = None


@dataclass
class DeviceSelections:
    """What the conferencing engine is handed at join time."""
    camera_id: Optional[str] = None
    microphone_id: Optional[str] = None
    speaker_id: Optional[str] = None
    start_muted: bool = False
    start_video_off: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ---------------------------------------------------------------------------
# Capability test
# ---------------------------------------------------------------------------

@dataclass
class CapabilityTest:
    """
    One capability check per kind per session.

    Mutated only by its own probe run (begin → succeed/fail) or by an
    explicit retest (reset). Illegal transitions raise ValueError, so a
    Failed test can never flip straight to Passed.
    """
    kind: CapabilityKind
    state: TestState = TestState.PENDING
    message: str = ""
    device_options: List[DeviceInfo] = field(default_factory=list)
    selected_device_id: Optional[str] = None
    failure: Optional[FailureCause] = None
    quality: Optional[NetworkQuality] = None
    updated_at: float = field(default_factory=time.time)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_TEST_STATES

    def _move(self, target: TestState) -> None:
        if target not in _TEST_TRANSITIONS[self.state]:
            raise ValueError(
                f"Illegal {self.kind.value} test transition: "
                f"{self.state.value} → {target.value}"
            )
        self.state = target
        self.updated_at = time.time()

    def begin(self, message: str = "") -> None:
        self._move(TestState.TESTING)
        self.message = message
        self.failure = None
        self.quality = None

    def succeed(
        self,
        message: str,
        device_options: Optional[List[DeviceInfo]] = None,
        selected_device_id: Optional[str] = None,
        quality: Optional[NetworkQuality] = None,
    ) -> None:
        self._move(TestState.PASSED)
        self.message = message
        self.device_options = list(device_options or [])
        self.selected_device_id = selected_device_id
        self.quality = quality

    def fail(
        self,
        message: str,
        cause: FailureCause,
        quality: Optional[NetworkQuality] = None,
    ) -> None:
        self._move(TestState.FAILED)
        self.message = message
        self.failure = cause
        self.quality = quality

    def reset(self) -> None:
        self._move(TestState.PENDING)
        self.message = ""
        self.failure = None
        self.quality = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "state": self.state.value,
            "message": self.message,
            "device_options": [d.to_dict() for d in self.device_options],
            "selected_device_id": self.selected_device_id,
            "failure": self.failure.value if self.failure else None,
            "quality": self.quality.value if self.quality else None,
            "updated_at": self.updated_at,
        }


# ---------------------------------------------------------------------------
# Readiness
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ReadinessSnapshot:
    ready: bool
    blocking_reasons: List[CapabilityKind] = field(default_factory=list)
    soft_blocks: List[CapabilityKind] = field(default_factory=list)
    pending: List[CapabilityKind] = field(default_factory=list)
    hints: Dict[CapabilityKind, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ready": self.ready,
            "blocking_reasons": [k.value for k in self.blocking_reasons],
            "soft_blocks": [k.value for k in self.soft_blocks],
            "pending": [k.value for k in self.pending],
            "hints": {k.value: v for k, v in self.hints.items()},
        }


# ---------------------------------------------------------------------------
# Call session + outcome
# ---------------------------------------------------------------------------

@dataclass
class FeedbackRecord:
    rating: Optional[int] = None
    comment: str = ""
    notes: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class FeedbackAck:
    accepted: bool = False
    skipped: bool = False
    retryable: bool = False
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class SessionOutcome:
    reason: EndReason
    error: Optional[str] = None
    retryable: bool = False
    feedback: Optional[FeedbackAck] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reason": self.reason.value,
            "error": self.error,
            "retryable": self.retryable,
            "feedback": self.feedback.to_dict() if self.feedback else None,
        }


@dataclass
class EngineEvent:
    type: EngineEventType
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "payload": self.payload,
            "timestamp": self.timestamp,
        }


@dataclass
class SessionEvent:
    """Anything an observer (UI bridge) can be told about a session."""
    type: str          # "capability" | "readiness" | "state" | "audio_level" | "engine"
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
