"""
CareSync — Boundary Interfaces

Protocol definitions for everything the session core consumes but does
not implement:
  1. Media      — device access, enumeration, link quality, tone output
  2. Conference — the external conferencing engine (Jitsi Meet)
  3. Records    — appointment query + feedback persistence

Each collaborator is injected through these protocols, so the controller
is unit-testable against fakes with no real network or media stack.
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Protocol, Union, runtime_checkable

import numpy as np

from .models import CapabilityKind, ConnectionInfo, DeviceInfo


# ═══════════════════════════════════════════════════════════════════════════
# Media: device access
# ═══════════════════════════════════════════════════════════════════════════

@runtime_checkable
class MediaStream(Protocol):
    """A live, exclusively-acquired capture stream."""

    @property
    def id(self) -> str:
        ...

    @property
    def active(self) -> bool:
        """False once stop() has been called or the device went away."""
        ...

    def read_samples(self, count: int) -> np.ndarray:
        """
        Most recent `count` mono PCM samples as float32 in [-1, 1].
        Audio streams only; may return fewer samples than requested.
        """
        ...

    def stop(self) -> None:
        """Release the underlying device. Must be idempotent."""
        ...


@runtime_checkable
class MediaBackend(Protocol):
    """Owns the platform media APIs (getUserMedia / enumerateDevices)."""

    async def acquire(
        self, kind: CapabilityKind, device_id: Optional[str] = None
    ) -> MediaStream:
        """
        Request exclusive access to a camera or microphone.
        Raises PermissionDenied / DeviceUnavailable (or any other error).
        """
        ...

    async def enumerate_devices(self) -> List[DeviceInfo]:
        ...

    def connection_info(self) -> Optional[ConnectionInfo]:
        """Link-quality heuristic, or None when the runtime exposes none."""
        ...

    async def play(
        self, samples: np.ndarray, sample_rate: int, device_id: Optional[str] = None
    ) -> None:
        """Play a short mono buffer on an output device."""
        ...


# ═══════════════════════════════════════════════════════════════════════════
# Conference: external engine
# ═══════════════════════════════════════════════════════════════════════════

EngineListener = Callable[[Any], Any]


@runtime_checkable
class ConferenceEngine(Protocol):
    """The black-box engine, shaped after JitsiMeetExternalAPI."""

    def add_event_listener(self, event: str, listener: EngineListener) -> None:
        ...

    def remove_event_listener(self, event: str, listener: EngineListener) -> None:
        ...

    def execute_command(self, command: str, *args: Any) -> None:
        ...

    def dispose(self) -> None:
        ...


# (domain, options) -> engine; may be sync or async (engines load lazily)
EngineFactory = Callable[
    [str, Dict[str, Any]],
    Union[ConferenceEngine, Awaitable[ConferenceEngine]],
]


# ═══════════════════════════════════════════════════════════════════════════
# Records: appointments + feedback
# ═══════════════════════════════════════════════════════════════════════════

@runtime_checkable
class AppointmentSource(Protocol):

    async def fetch(self, appointment_id: str) -> Mapping[str, Any]:
        """
        Returns {id, type, status, scheduledTime, counterpartName,
        counterpartRole} for the appointment.
        """
        ...


@runtime_checkable
class FeedbackSink(Protocol):

    async def persist(self, payload: Dict[str, Any]) -> Any:
        """Accepts {appointmentId, rating, comment, notes}."""
        ...
