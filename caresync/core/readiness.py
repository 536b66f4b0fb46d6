"""
CareSync — Readiness Gate (Policy Layer)

All gating decisions live here — the controller never decides whether a
session may join; it asks this module.

recompute() is pure: the current capability tests go in, an explainable
ReadinessSnapshot comes out. It is safe against partial completion —
tests still Pending/Testing are listed in `pending`, never in
`blocking_reasons`, and keep `ready` false.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional

from .errors import DeviceUnavailable, NetworkDegraded, PermissionDenied
from .models import (
    HARD_CAPABILITIES,
    CapabilityKind,
    CapabilityTest,
    FailureCause,
    ReadinessSnapshot,
    TestState,
)

# ---------------------------------------------------------------------------
# Remediation copy
# ---------------------------------------------------------------------------

_DEVICE_NAMES = {
    CapabilityKind.CAMERA: "camera",
    CapabilityKind.MICROPHONE: "microphone",
    CapabilityKind.SPEAKER: "speakers or headphones",
    CapabilityKind.NETWORK: "network connection",
}

_CAUSE_HINTS = {
    FailureCause.PERMISSION_DENIED: PermissionDenied.hint,
    FailureCause.DEVICE_UNAVAILABLE: DeviceUnavailable.hint,
    FailureCause.NETWORK_DEGRADED: NetworkDegraded.hint,
}

HARD_BLOCK_CONFIRMATION = (
    "Your {devices} did not pass the pre-call check. The other participant "
    "may not be able to see or hear you. Are you sure you want to join anyway?"
)
PENDING_CONFIRMATION = (
    "Some device checks have not finished yet. Are you sure you want to continue?"
)
SOFT_BLOCK_CONFIRMATION = (
    "Your internet connection is poor. The call quality may be affected. "
    "Continue anyway?"
)


def remediation_hint(test: CapabilityTest) -> Optional[str]:
    """Specific fix-it text for a failed test (permission vs. hardware)."""
    if test.state != TestState.FAILED or test.failure is None:
        return None
    name = _DEVICE_NAMES[test.kind]
    if test.failure == FailureCause.PERMISSION_DENIED:
        return f"Access to your {name} was blocked. {_CAUSE_HINTS[test.failure]}"
    if test.failure == FailureCause.DEVICE_UNAVAILABLE:
        return f"Your {name} could not be used. {_CAUSE_HINTS[test.failure]}"
    return _CAUSE_HINTS[test.failure]


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------

def recompute(tests: Mapping[CapabilityKind, CapabilityTest]) -> ReadinessSnapshot:
    """
    Turn the current capability tests into a readiness verdict.

    A missing entry counts as Pending.
    """
    blocking: List[CapabilityKind] = []
    pending: List[CapabilityKind] = []
    soft: List[CapabilityKind] = []
    hints: Dict[CapabilityKind, str] = {}

    for kind in HARD_CAPABILITIES:
        test = tests.get(kind)
        state = test.state if test else TestState.PENDING
        if state == TestState.FAILED:
            blocking.append(kind)
        elif state != TestState.PASSED:
            pending.append(kind)

    network = tests.get(CapabilityKind.NETWORK)
    if network and network.state == TestState.FAILED:
        soft.append(CapabilityKind.NETWORK)

    for kind, test in tests.items():
        hint = remediation_hint(test)
        if hint:
            hints[kind] = hint

    return ReadinessSnapshot(
        ready=not blocking and not pending and not soft,
        blocking_reasons=blocking,
        soft_blocks=soft,
        pending=pending,
        hints=hints,
    )


# ---------------------------------------------------------------------------
# Join gating
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class JoinDecision:
    allowed: bool
    hard_blocks: List[CapabilityKind] = field(default_factory=list)
    soft_blocks: List[CapabilityKind] = field(default_factory=list)
    pending: List[CapabilityKind] = field(default_factory=list)
    confirmation: str = ""

    @property
    def overridden(self) -> bool:
        return self.allowed and bool(self.hard_blocks or self.soft_blocks or self.pending)


def confirmation_copy(snapshot: ReadinessSnapshot) -> str:
    """Hard blocks get the strongly-framed copy, network alone the light one."""
    if snapshot.blocking_reasons:
        devices = " and ".join(_DEVICE_NAMES[k] for k in snapshot.blocking_reasons)
        return HARD_BLOCK_CONFIRMATION.format(devices=devices)
    if snapshot.pending:
        return PENDING_CONFIRMATION
    if snapshot.soft_blocks:
        return SOFT_BLOCK_CONFIRMATION
    return ""


def evaluate_join(snapshot: ReadinessSnapshot, override: bool = False) -> JoinDecision:
    return JoinDecision(
        allowed=snapshot.ready or override,
        hard_blocks=list(snapshot.blocking_reasons),
        soft_blocks=list(snapshot.soft_blocks),
        pending=list(snapshot.pending),
        confirmation=confirmation_copy(snapshot),
    )
