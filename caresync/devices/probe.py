"""
CareSync — Device Probe

================================================================================
ONE CAPABILITY CHECK PER RUN — ALWAYS RESOLVES, NEVER RAISES
================================================================================

  camera / microphone  acquire an exclusive stream → enumerate devices of
                       that kind → select requested or first → PASSED.
                       The stream is handed to the StreamPool for reuse
                       (preview, audio level monitor).
  speaker              enumerate output devices only → PASSED if any.
  network              classify the runtime's link-quality heuristic;
                       poor → FAILED (soft). No heuristic → PASSED.

Any exception becomes a FAILED test with its cause classified as
permission-denied or device-unavailable. There is no automatic retry —
a new run only happens on an explicit retest.
================================================================================
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, List, Optional

import numpy as np

from ..core.config import ProbeConfig, probe_cfg
from ..core.errors import PermissionDenied
from ..core.interfaces import MediaBackend
from ..core.models import (
    CapabilityKind,
    CapabilityTest,
    ConnectionInfo,
    DeviceInfo,
    FailureCause,
    NetworkQuality,
    TestState,
)
from .streams import StreamPool

logger = logging.getLogger("caresync.probe")

# enumerateDevices() kinds per capability
DEVICE_KINDS = {
    CapabilityKind.CAMERA: "videoinput",
    CapabilityKind.MICROPHONE: "audioinput",
    CapabilityKind.SPEAKER: "audiooutput",
}

# Error names some runtimes use for a refused permission prompt
_PERMISSION_ERROR_NAMES = frozenset({"NotAllowedError", "PermissionDeniedError", "SecurityError"})

_GOOD_TYPES = frozenset({"4g", "wifi", "ethernet"})
_FAIR_TYPES = frozenset({"3g"})

_NETWORK_MESSAGES = {
    NetworkQuality.GOOD: "Excellent connection for video calls",
    NetworkQuality.FAIR: "Good connection, but may have occasional lag",
    NetworkQuality.POOR: "Slow connection. Video quality may be affected",
}


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------

def classify_failure(exc: BaseException) -> FailureCause:
    """Permission refusals vs. everything else (busy, missing, hardware)."""
    if isinstance(exc, (PermissionDenied, PermissionError)):
        return FailureCause.PERMISSION_DENIED
    name = getattr(exc, "name", None) or type(exc).__name__
    if name in _PERMISSION_ERROR_NAMES:
        return FailureCause.PERMISSION_DENIED
    return FailureCause.DEVICE_UNAVAILABLE


def classify_network(
    info: Optional[ConnectionInfo], cfg: ProbeConfig = probe_cfg
) -> NetworkQuality:
    """
    ≥4 Mbps or 4g/wifi → good; ≥1.5 Mbps or 3g → fair; else poor.
    Best-effort and fail-open: no usable heuristic means good.
    """
    if info is None:
        return NetworkQuality.GOOD

    effective = (info.effective_type or "").lower()
    downlink = info.downlink_mbps

    if not effective and downlink is None:
        return NetworkQuality.GOOD
    if effective in _GOOD_TYPES or (downlink is not None and downlink >= cfg.good_downlink_mbps):
        return NetworkQuality.GOOD
    if effective in _FAIR_TYPES or (downlink is not None and downlink >= cfg.fair_downlink_mbps):
        return NetworkQuality.FAIR
    return NetworkQuality.POOR


def synthesize_tone(
    frequency_hz: float, duration_s: float, gain: float, sample_rate: int
) -> np.ndarray:
    """Short sine burst with 5 ms fades so the speaker test does not click."""
    n = max(1, int(duration_s * sample_rate))
    t = np.arange(n, dtype=np.float32) / sample_rate
    tone = (gain * np.sin(2 * np.pi * frequency_hz * t)).astype(np.float32)
    fade = min(n // 2, int(0.005 * sample_rate))
    if fade > 0:
        ramp = np.linspace(0.0, 1.0, fade, dtype=np.float32)
        tone[:fade] *= ramp
        tone[-fade:] *= ramp[::-1]
    return tone


def _device_label(kind: CapabilityKind) -> str:
    return kind.value.capitalize()


# ---------------------------------------------------------------------------
# Probe
# ---------------------------------------------------------------------------

class DeviceProbe:
    """
    Runs capability checks against a MediaBackend.

    Lifecycle:
        probe = DeviceProbe(media, pool, on_update=callback)
        test = await probe.run(CapabilityKind.CAMERA)
        await probe.play_test_tone(speaker_id)
    """

    def __init__(
        self,
        media: MediaBackend,
        streams: StreamPool,
        on_update: Optional[Callable[[CapabilityTest], Any]] = None,
        cfg: ProbeConfig = probe_cfg,
        session_id: str = "",
    ) -> None:
        self._media = media
        self._streams = streams
        self._on_update = on_update
        self._cfg = cfg
        self._session_id = session_id

    # ── Public API ──────────────────────────────────────────────────────

    async def run(
        self,
        kind: CapabilityKind,
        *,
        test: Optional[CapabilityTest] = None,
        device_id: Optional[str] = None,
    ) -> CapabilityTest:
        """
        Run one check. Resolves exactly once with a terminal test.

        `test` must be Pending (a fresh one is created if omitted);
        `device_id` asks for a specific device on camera/mic/speaker runs.
        """
        test = test or CapabilityTest(kind=kind)
        test.begin(f"Testing {kind.value}...")
        self._notify(test)

        try:
            if kind in (CapabilityKind.CAMERA, CapabilityKind.MICROPHONE):
                await self._probe_capture(test, device_id)
            elif kind == CapabilityKind.SPEAKER:
                await self._probe_speaker(test, device_id)
            else:
                self._probe_network(test)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # Last line of defence; the branches above classify their own errors
            logger.error(f"[{self._session_id}] {kind.value} probe crashed: {e}", exc_info=True)
            if test.state == TestState.TESTING:
                test.fail(f"{_device_label(kind)} check failed.", classify_failure(e))

        self._notify(test)
        return test

    async def play_test_tone(self, device_id: Optional[str] = None) -> bool:
        """
        Audible burst on the chosen output. Never touches test state;
        returns whether the backend accepted the buffer.
        """
        cfg = self._cfg
        samples = synthesize_tone(
            cfg.tone_frequency_hz, cfg.tone_duration_s, cfg.tone_gain, cfg.tone_sample_rate
        )
        try:
            await self._media.play(samples, cfg.tone_sample_rate, device_id)
            return True
        except Exception as e:
            logger.warning(f"[{self._session_id}] Test tone failed: {e}")
            return False

    # ── Capture devices ─────────────────────────────────────────────────

    async def _probe_capture(self, test: CapabilityTest, device_id: Optional[str]) -> None:
        kind = test.kind
        label = _device_label(kind)

        try:
            stream = await self._media.acquire(kind, device_id)
        except Exception as e:
            cause = classify_failure(e)
            logger.warning(f"[{self._session_id}] {kind.value} access failed ({cause.value}): {e}")
            if cause == FailureCause.PERMISSION_DENIED:
                test.fail(f"{label} permission denied. Please allow access.", cause)
            elif kind == CapabilityKind.CAMERA:
                test.fail("Camera not accessible. Check if it's being used by another app.", cause)
            else:
                test.fail("Microphone not accessible. Check if it's being used by another app.", cause)
            return

        try:
            devices = await self._devices_of(kind)
        except asyncio.CancelledError:
            stream.stop()
            raise
        except Exception as e:
            stream.stop()
            logger.warning(f"[{self._session_id}] {kind.value} enumeration failed: {e}")
            test.fail(f"{label} not accessible. Unable to list devices.", FailureCause.DEVICE_UNAVAILABLE)
            return

        self._streams.adopt(kind, stream)

        message = f"{label} working! {len(devices)} device(s) found."
        if kind == CapabilityKind.MICROPHONE:
            message += " Speak to see audio levels."
        test.succeed(message, devices, self._pick(devices, device_id))

    # ── Speaker ─────────────────────────────────────────────────────────

    async def _probe_speaker(self, test: CapabilityTest, device_id: Optional[str]) -> None:
        try:
            devices = await self._devices_of(CapabilityKind.SPEAKER)
        except Exception as e:
            logger.warning(f"[{self._session_id}] speaker enumeration failed: {e}")
            test.fail("Unable to detect speakers.", FailureCause.DEVICE_UNAVAILABLE)
            return

        if not devices:
            test.fail("Unable to detect speakers.", FailureCause.DEVICE_UNAVAILABLE)
            return

        test.succeed(
            f"Speaker detected! {len(devices)} device(s) found. "
            f'Click "Play Test Sound" to verify.',
            devices,
            self._pick(devices, device_id),
        )

    # ── Network ─────────────────────────────────────────────────────────

    def _probe_network(self, test: CapabilityTest) -> None:
        try:
            info = self._media.connection_info()
        except Exception as e:
            logger.debug(f"[{self._session_id}] connection info unavailable: {e}")
            test.succeed("Unable to determine connection quality", quality=NetworkQuality.GOOD)
            return

        if info is None:
            test.succeed("Connection appears stable", quality=NetworkQuality.GOOD)
            return

        quality = classify_network(info, self._cfg)
        message = _NETWORK_MESSAGES[quality]
        if quality == NetworkQuality.POOR:
            logger.warning(
                f"[{self._session_id}] Poor network: type={info.effective_type} "
                f"downlink={info.downlink_mbps}"
            )
            test.fail(message, FailureCause.NETWORK_DEGRADED, quality=quality)
        else:
            test.succeed(message, quality=quality)

    # ── Helpers ─────────────────────────────────────────────────────────

    async def _devices_of(self, kind: CapabilityKind) -> List[DeviceInfo]:
        wanted = DEVICE_KINDS[kind]
        return [d for d in await self._media.enumerate_devices() if d.kind == wanted]

    @staticmethod
    def _pick(devices: List[DeviceInfo], device_id: Optional[str]) -> Optional[str]:
        if device_id and any(d.device_id == device_id for d in devices):
            return device_id
        return devices[0].device_id if devices else None

    def _notify(self, test: CapabilityTest) -> None:
        if self._on_update:
            try:
                self._on_update(test)
            except Exception as e:
                logger.error(f"[{self._session_id}] Probe update callback error: {e}")
