"""In-memory stand-ins for the media stack, the conferencing engine and the REST API."""
from __future__ import annotations

import asyncio
from collections import defaultdict
from typing import Any, Dict, List, Optional

import numpy as np

from caresync.core.models import CapabilityKind, ConnectionInfo, DeviceInfo


DEFAULT_DEVICES = [
    DeviceInfo("cam-1", "videoinput", "Built-in Camera"),
    DeviceInfo("cam-2", "videoinput", "USB Camera"),
    DeviceInfo("mic-1", "audioinput", "Built-in Microphone"),
    DeviceInfo("spk-1", "audiooutput", "Built-in Speakers"),
    DeviceInfo("spk-2", "audiooutput", "Headphones"),
]


class FakeStream:
    """Capture stream producing white noise (loud) or zeros (silent)."""

    def __init__(self, stream_id: str, kind: CapabilityKind, signal: str = "noise", amplitude: float = 0.5):
        self.id = stream_id
        self.kind = kind
        self.signal = signal
        self.amplitude = amplitude
        self.active = True
        self.stop_calls = 0
        self.read_error: Optional[Exception] = None
        self._rng = np.random.default_rng(7)

    def read_samples(self, count: int) -> np.ndarray:
        if self.read_error is not None:
            err, self.read_error = self.read_error, None
            raise err
        if self.signal == "silence":
            return np.zeros(count, dtype=np.float32)
        return (self._rng.uniform(-1.0, 1.0, count) * self.amplitude).astype(np.float32)

    def stop(self) -> None:
        self.stop_calls += 1
        self.active = False


class FakeMediaBackend:

    def __init__(self, devices: Optional[List[DeviceInfo]] = None, connection: Optional[ConnectionInfo] = None):
        self.devices = list(DEFAULT_DEVICES if devices is None else devices)
        self.connection = connection
        self.acquire_errors: Dict[CapabilityKind, BaseException] = {}
        self.enumerate_error: Optional[BaseException] = None
        self.connection_error: Optional[BaseException] = None
        self.play_error: Optional[BaseException] = None
        self.acquire_gate: Optional[asyncio.Event] = None
        self.signal = "noise"
        self.acquired: List[FakeStream] = []
        self.played: List[Any] = []

    async def acquire(self, kind: CapabilityKind, device_id: Optional[str] = None) -> FakeStream:
        if self.acquire_gate is not None:
            await self.acquire_gate.wait()
        err = self.acquire_errors.get(kind)
        if err is not None:
            raise err
        stream = FakeStream(f"{kind.value}-{len(self.acquired) + 1}", kind, signal=self.signal)
        self.acquired.append(stream)
        return stream

    async def enumerate_devices(self) -> List[DeviceInfo]:
        if self.enumerate_error is not None:
            raise self.enumerate_error
        return list(self.devices)

    def connection_info(self) -> Optional[ConnectionInfo]:
        if self.connection_error is not None:
            raise self.connection_error
        return self.connection

    async def play(self, samples: np.ndarray, sample_rate: int, device_id: Optional[str] = None) -> None:
        if self.play_error is not None:
            raise self.play_error
        self.played.append((samples, sample_rate, device_id))

    def streams_of(self, kind: CapabilityKind) -> List[FakeStream]:
        return [s for s in self.acquired if s.kind == kind]

    @property
    def live_streams(self) -> List[FakeStream]:
        return [s for s in self.acquired if s.active]


class FakeEngine:
    """Records listeners and commands; emit() plays the part of the Jitsi iframe."""

    def __init__(self, domain: str, options: Dict[str, Any]):
        self.domain = domain
        self.options = options
        self.listeners: Dict[str, List[Any]] = defaultdict(list)
        self.commands: List[Any] = []
        self.disposed = 0
        self.dispose_error: Optional[Exception] = None

    def add_event_listener(self, event: str, listener: Any) -> None:
        self.listeners[event].append(listener)

    def remove_event_listener(self, event: str, listener: Any) -> None:
        if listener in self.listeners[event]:
            self.listeners[event].remove(listener)

    def execute_command(self, command: str, *args: Any) -> None:
        self.commands.append(command)

    def dispose(self) -> None:
        self.disposed += 1
        if self.dispose_error is not None:
            raise self.dispose_error

    def emit(self, event: str, payload: Any = None) -> None:
        for listener in list(self.listeners[event]):
            listener(payload)


class FakeEngineFactory:

    def __init__(self, error: Optional[Exception] = None, asynchronous: bool = False):
        self.error = error
        self.asynchronous = asynchronous
        self.engines: List[FakeEngine] = []

    def _build(self, domain: str, options: Dict[str, Any]) -> FakeEngine:
        if self.error is not None:
            raise self.error
        engine = FakeEngine(domain, options)
        self.engines.append(engine)
        return engine

    def __call__(self, domain: str, options: Dict[str, Any]) -> Any:
        if self.asynchronous:
            async def build() -> FakeEngine:
                await asyncio.sleep(0)
                return self._build(domain, options)
            return build()
        return self._build(domain, options)

    @property
    def last(self) -> FakeEngine:
        return self.engines[-1]


class FakeAppointmentSource:

    def __init__(self, records: Optional[Dict[str, Dict[str, Any]]] = None, error: Optional[Exception] = None):
        self.records = records or {}
        self.error = error
        self.calls: List[str] = []

    async def fetch(self, appointment_id: str) -> Dict[str, Any]:
        self.calls.append(appointment_id)
        if self.error is not None:
            raise self.error
        return self.records.get(appointment_id, {})


class FakeFeedbackSink:

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.payloads: List[Dict[str, Any]] = []

    async def persist(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        if self.fail:
            raise ConnectionError("feedback service unreachable")
        self.payloads.append(payload)
        return {"success": True}
