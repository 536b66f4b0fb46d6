"""
CareSync — Session Controller

================================================================================
ONE CONTROLLER PER APPOINTMENT ATTEMPT — OWNS EVERYTHING THE SESSION TOUCHES
================================================================================

  Preview     run_checks() → four DeviceProbes concurrently
              every test mutation → ReadinessGate.recompute → observers
              microphone passed → AudioLevelMonitor on the pooled stream
              retest(kind) / play_test_tone() / toggle_audio|video (prefs)
  Connecting  join(): gate → stop monitor → release streams → adapter.initialize
              engine joined → InCall      engine error → Ending (retryable)
  InCall      end_call() / engine left / ready_to_close → Ending
  Ending      submit_feedback() / skip_feedback() → Closed
  Closed      terminal; every lifecycle call is a no-op

teardown() is the abnormal exit path from any state.

Observers subscribe() to SessionEvents:
  capability | readiness | state | audio_level | engine
================================================================================
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Set

from ..core.config import ProbeConfig, probe_cfg
from ..core.errors import EngineInitializationFailure, JoinBlocked
from ..core.interfaces import MediaBackend
from ..core.models import (
    CapabilityKind,
    CapabilityTest,
    DeviceSelections,
    EndReason,
    EngineEvent,
    EngineEventType,
    FeedbackAck,
    FeedbackRecord,
    ReadinessSnapshot,
    SessionContext,
    SessionEvent,
    SessionOutcome,
    TestState,
)
from ..core.readiness import evaluate_join, recompute
from ..core.state_machine import CallState, CallStateMachine
from ..devices.audio_monitor import AudioLevelMonitor
from ..devices.probe import DeviceProbe
from ..devices.streams import StreamPool
from .appointments import AppointmentContextLoader
from .conference import ConferenceEngineAdapter, EngineHandle
from .feedback import FeedbackCollector

logger = logging.getLogger("caresync.controller")

SessionListener = Callable[[SessionEvent], Any]

# Engine events that end a live call, with the reason recorded on the outcome
_ENDING_EVENTS = {
    EngineEventType.LEFT: EndReason.ENGINE_LEFT,
    EngineEventType.READY_TO_CLOSE: EndReason.READY_TO_CLOSE,
}


class SessionController:
    """
    Drives one appointment from device checks to feedback.

    Lifecycle:
        ctrl = await SessionController.open(appointment_id, "patient", loader, media, adapter, feedback)
        await ctrl.run_checks()
        await ctrl.join()                 # or join(override=True) after confirmation
        ctrl.end_call()
        await ctrl.submit_feedback(FeedbackRecord(rating=5))
    """

    def __init__(
        self,
        context: SessionContext,
        media: MediaBackend,
        adapter: ConferenceEngineAdapter,
        feedback: FeedbackCollector,
        cfg: ProbeConfig = probe_cfg,
        on_event: Optional[SessionListener] = None,
    ) -> None:
        self.context = context
        self.session_id = context.appointment_id

        self._listeners: List[SessionListener] = []
        if on_event:
            self._listeners.append(on_event)

        self.tests: Dict[CapabilityKind, CapabilityTest] = {
            kind: CapabilityTest(kind=kind) for kind in CapabilityKind
        }
        self._readiness = recompute(self.tests)

        self._streams = StreamPool(self.session_id)
        self._probe = DeviceProbe(
            media,
            self._streams,
            on_update=self._on_test_update,
            cfg=cfg,
            session_id=self.session_id,
        )
        self._monitor = AudioLevelMonitor(
            on_level=self._on_audio_level, cfg=cfg, session_id=self.session_id
        )
        self._inflight: Dict[CapabilityKind, asyncio.Task] = {}
        self._listener_tasks: Set[asyncio.Task] = set()

        self._adapter = adapter
        self._unsubscribe_engine = adapter.subscribe(self._on_engine_event)
        self._handle: Optional[EngineHandle] = None
        self._feedback = feedback

        self._state_machine = CallStateMachine(
            session_id=self.session_id, on_transition=self._on_state_transition
        )

        self.selections: Optional[DeviceSelections] = None
        self.outcome: Optional[SessionOutcome] = None
        self.audio_enabled = True
        self.video_enabled = True
        self._torn_down = False

    @classmethod
    async def open(
        cls,
        appointment_id: str,
        participant_role: str,
        loader: AppointmentContextLoader,
        media: MediaBackend,
        adapter: ConferenceEngineAdapter,
        feedback: FeedbackCollector,
        display_name: Optional[str] = None,
        cfg: ProbeConfig = probe_cfg,
        on_event: Optional[SessionListener] = None,
    ) -> "SessionController":
        """Load the appointment context (exactly once) and build a controller."""
        context = await loader.load(appointment_id, participant_role, display_name)
        return cls(context, media, adapter, feedback, cfg=cfg, on_event=on_event)

    # ── Read-only views ─────────────────────────────────────────────────

    @property
    def state(self) -> CallState:
        return self._state_machine.state

    @property
    def call_session(self) -> CallStateMachine:
        return self._state_machine

    @property
    def readiness(self) -> ReadinessSnapshot:
        return self._readiness

    @property
    def audio_level(self) -> float:
        return self._monitor.level

    @property
    def streams(self) -> StreamPool:
        return self._streams

    @property
    def monitor(self) -> AudioLevelMonitor:
        return self._monitor

    @property
    def is_torn_down(self) -> bool:
        return self._torn_down

    def snapshot(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "context": self.context.to_dict(),
            "state": self.state.value,
            "tests": {kind.value: test.to_dict() for kind, test in self.tests.items()},
            "readiness": self._readiness.to_dict(),
            "audio_level": self._monitor.level,
            "audio_enabled": self.audio_enabled,
            "video_enabled": self.video_enabled,
            "selections": self.selections.to_dict() if self.selections else None,
            "outcome": self.outcome.to_dict() if self.outcome else None,
            "call": self._state_machine.to_dict(),
            "torn_down": self._torn_down,
        }

    def subscribe(self, listener: SessionListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # ── Preview: capability checks ──────────────────────────────────────

    async def run_checks(self) -> ReadinessSnapshot:
        """Probe all four capabilities concurrently. Resolves when all are terminal."""
        if not self._accepts_preview_call("run_checks"):
            return self._readiness
        tasks = [self._start_probe(kind) for kind in CapabilityKind]
        await asyncio.gather(*(self._settle(task) for task in tasks))
        return self._readiness

    async def retest(
        self, kind: CapabilityKind, device_id: Optional[str] = None
    ) -> CapabilityTest:
        """
        Re-run one probe. Its stream is released first (monitor stopped
        before the microphone goes). A retest already running for `kind`
        is shared rather than restarted.
        """
        kind = CapabilityKind(kind)
        if not self._accepts_preview_call(f"retest({kind.value})"):
            return self.tests[kind]
        await self._settle(self._start_probe(kind, device_id))
        return self.tests[kind]

    async def play_test_tone(self) -> bool:
        if not self._accepts_preview_call("play_test_tone"):
            return False
        speaker = self.tests[CapabilityKind.SPEAKER]
        return await self._probe.play_test_tone(speaker.selected_device_id)

    def _start_probe(
        self, kind: CapabilityKind, device_id: Optional[str] = None
    ) -> asyncio.Task:
        task = self._inflight.get(kind)
        if task is not None and not task.done():
            logger.debug(f"[{self.session_id}] Joining in-flight {kind.value} probe")
            return task

        if kind == CapabilityKind.MICROPHONE:
            self._monitor.stop()
        self._streams.release(kind)

        test = self.tests[kind]
        if test.is_terminal:
            test.reset()
            self._on_test_update(test)

        task = asyncio.get_running_loop().create_task(
            self._probe.run(kind, test=test, device_id=device_id),
            name=f"probe-{kind.value}-{self.session_id}",
        )
        self._inflight[kind] = task

        def _done(t: asyncio.Task, k: CapabilityKind = kind) -> None:
            if self._inflight.get(k) is t:
                del self._inflight[k]

        task.add_done_callback(_done)
        return task

    async def _settle(self, task: asyncio.Task) -> None:
        # wait() neither raises on nor propagates cancellation into the shared task
        await asyncio.wait({task})
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"[{self.session_id}] Probe task failed: {task.exception()}")

    async def _cancel_probes(self) -> None:
        tasks = [t for t in self._inflight.values() if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info(f"[{self.session_id}] Cancelled {len(tasks)} in-flight probe(s)")
        self._inflight.clear()

    def _on_test_update(self, test: CapabilityTest) -> None:
        if self._torn_down or self.state != CallState.PREVIEW:
            return
        self._emit("capability", test.to_dict())

        snapshot = recompute(self.tests)
        if snapshot != self._readiness:
            self._readiness = snapshot
            self._emit("readiness", snapshot.to_dict())

        if test.kind == CapabilityKind.MICROPHONE and test.state == TestState.PASSED:
            stream = self._streams.get(CapabilityKind.MICROPHONE)
            if stream is not None:
                self._monitor.start(stream)

    def _on_audio_level(self, level: float) -> None:
        self._emit("audio_level", {"level": level})

    # ── Preview → Connecting ────────────────────────────────────────────

    async def join(self, override: bool = False) -> CallState:
        """
        Enter the call. Raises JoinBlocked when readiness is not met and
        override is False; the exception carries the confirmation copy.
        """
        if not self._accepts_preview_call("join"):
            return self.state

        decision = evaluate_join(self._readiness, override)
        if not decision.allowed:
            logger.info(
                f"[{self.session_id}] Join blocked: hard={[k.value for k in decision.hard_blocks]} "
                f"soft={[k.value for k in decision.soft_blocks]} pending={[k.value for k in decision.pending]}"
            )
            raise JoinBlocked(
                hard_blocks=[k.value for k in decision.hard_blocks],
                soft_blocks=[k.value for k in decision.soft_blocks],
                pending=[k.value for k in decision.pending],
                confirmation=decision.confirmation,
            )
        if decision.overridden:
            logger.warning(f"[{self.session_id}] Joining with override: {decision.confirmation}")

        self.selections = self._build_selections()
        self._state_machine.transition(
            CallState.CONNECTING, "join (override)" if decision.overridden else "join"
        )

        # The engine needs exclusive access to the devices
        await self._cancel_probes()
        self._monitor.stop()
        self._streams.release_all()

        try:
            self._handle = await self._adapter.initialize(self.context, self.selections)
        except EngineInitializationFailure as e:
            logger.error(f"[{self.session_id}] {e}")
            self._end(EndReason.ENGINE_ERROR, error=str(e), retryable=True)
        return self.state

    def _build_selections(self) -> DeviceSelections:
        def selected(kind: CapabilityKind) -> Optional[str]:
            test = self.tests[kind]
            return test.selected_device_id if test.state == TestState.PASSED else None

        mic_ok = self.tests[CapabilityKind.MICROPHONE].state == TestState.PASSED
        cam_ok = self.tests[CapabilityKind.CAMERA].state == TestState.PASSED
        return DeviceSelections(
            camera_id=selected(CapabilityKind.CAMERA),
            microphone_id=selected(CapabilityKind.MICROPHONE),
            speaker_id=selected(CapabilityKind.SPEAKER),
            start_muted=not (mic_ok and self.audio_enabled),
            start_video_off=not (cam_ok and self.video_enabled),
        )

    # ── Engine events ───────────────────────────────────────────────────

    def _on_engine_event(self, event: EngineEvent) -> None:
        state = self.state
        if state in (CallState.ENDING, CallState.CLOSED):
            logger.debug(f"[{self.session_id}] Ignoring stale engine event {event.type.value}")
            return

        self._emit("engine", event.to_dict())

        if event.type == EngineEventType.JOINED:
            if state == CallState.CONNECTING:
                self._state_machine.transition(CallState.IN_CALL, "engine joined")
        elif event.type == EngineEventType.ERROR:
            message = str(event.payload.get("message", "Conference engine error"))
            if state == CallState.CONNECTING:
                self._end(EndReason.ENGINE_ERROR, error=message, retryable=True)
            else:
                logger.warning(f"[{self.session_id}] Engine error during call: {message}")
        elif event.type in _ENDING_EVENTS:
            if state == CallState.IN_CALL:
                self._end(_ENDING_EVENTS[event.type])
        elif event.type == EngineEventType.AUDIO_MUTE_CHANGED:
            if "muted" in event.payload:
                self.audio_enabled = not bool(event.payload["muted"])
        elif event.type == EngineEventType.VIDEO_MUTE_CHANGED:
            if "muted" in event.payload:
                self.video_enabled = not bool(event.payload["muted"])

    # ── In call ─────────────────────────────────────────────────────────

    def toggle_audio(self) -> bool:
        """Flip the microphone. In Preview this only sets the start-muted preference."""
        return self._toggle("audio")

    def toggle_video(self) -> bool:
        return self._toggle("video")

    def _toggle(self, what: str) -> bool:
        if self._torn_down or self.state in (CallState.ENDING, CallState.CLOSED):
            return False
        if self.state != CallState.PREVIEW:
            if self._handle is None:
                return False
            if what == "audio":
                self._handle.toggle_audio()
            else:
                self._handle.toggle_video()
        attr = f"{what}_enabled"
        setattr(self, attr, not getattr(self, attr))
        logger.info(f"[{self.session_id}] {what} {'enabled' if getattr(self, attr) else 'disabled'}")
        return True

    def end_call(self) -> CallState:
        """User hang-up. During Connecting this cancels the join attempt."""
        if self.state == CallState.IN_CALL:
            self._end(EndReason.USER_ENDED)
        elif self.state == CallState.CONNECTING:
            self._end(EndReason.CANCELLED)
        else:
            logger.debug(f"[{self.session_id}] end_call ignored in {self.state.value}")
        return self.state

    def _end(
        self, reason: EndReason, error: Optional[str] = None, retryable: bool = False
    ) -> bool:
        if self.state not in (CallState.CONNECTING, CallState.IN_CALL):
            return False
        self.outcome = SessionOutcome(reason=reason, error=error, retryable=retryable)
        if reason in (EndReason.USER_ENDED, EndReason.CANCELLED) and self._handle is not None:
            self._handle.hangup()
        self._adapter.dispose()
        self._handle = None
        self._state_machine.transition(CallState.ENDING, reason.value)
        return True

    # ── Ending → Closed ─────────────────────────────────────────────────

    async def submit_feedback(self, record: FeedbackRecord) -> FeedbackAck:
        """
        Raises InvalidFeedback (session stays in Ending). A sink failure
        still closes the session; the ack is marked retryable.
        """
        if self.state != CallState.ENDING:
            logger.warning(f"[{self.session_id}] submit_feedback ignored in {self.state.value}")
            return FeedbackAck(accepted=False, error="Session is not collecting feedback")
        ack = await self._feedback.submit(record, appointment_id=self.session_id)
        self._close(ack, "feedback submitted" if ack.accepted else "feedback failed")
        return ack

    def skip_feedback(self) -> FeedbackAck:
        if self.state != CallState.ENDING:
            logger.debug(f"[{self.session_id}] skip_feedback ignored in {self.state.value}")
            return FeedbackAck(accepted=False, error="Session is not collecting feedback")
        ack = self._feedback.skip()
        self._close(ack, "feedback skipped")
        return ack

    async def retry_feedback(self) -> FeedbackAck:
        """Resend a feedback record whose persistence failed. Works after Closed."""
        ack = await self._feedback.retry()
        if self.outcome is not None and (ack.accepted or ack.retryable):
            self.outcome.feedback = ack
        return ack

    def _close(self, ack: FeedbackAck, reason: str) -> None:
        if self.state != CallState.ENDING:
            return
        if self.outcome is not None:
            self.outcome.feedback = ack
        self._state_machine.transition(CallState.CLOSED, reason)
        self._unsubscribe_engine()

    # ── Teardown ────────────────────────────────────────────────────────

    async def teardown(self) -> None:
        """Release every resource from any state. Idempotent."""
        if self._torn_down:
            return
        self._torn_down = True
        state = self.state

        await self._cancel_probes()
        self._monitor.stop()
        released = self._streams.release_all()

        if state in (CallState.CONNECTING, CallState.IN_CALL):
            self._end(EndReason.TEARDOWN)
        if self.state == CallState.ENDING:
            self._close(self._feedback.skip(), "teardown")

        self._adapter.dispose()
        self._unsubscribe_engine()
        logger.info(
            f"[{self.session_id}] Torn down from {state.value} "
            f"(released {len(released)} stream(s))"
        )

    # ── Internals ───────────────────────────────────────────────────────

    def _accepts_preview_call(self, op: str) -> bool:
        if self._torn_down or self.state != CallState.PREVIEW:
            logger.warning(
                f"[{self.session_id}] {op} ignored in {self.state.value}"
                + (" (torn down)" if self._torn_down else "")
            )
            return False
        return True

    def _on_state_transition(self, prev: CallState, new: CallState, reason: str) -> None:
        data: Dict[str, Any] = {"from": prev.value, "to": new.value, "reason": reason}
        if self.outcome is not None and new in (CallState.ENDING, CallState.CLOSED):
            data["outcome"] = self.outcome.to_dict()
        self._emit("state", data)

    def _emit(self, event_type: str, data: Dict[str, Any]) -> None:
        event = SessionEvent(type=event_type, data=data)
        for listener in list(self._listeners):
            try:
                cb = listener(event)
                if asyncio.iscoroutine(cb):
                    try:
                        task = asyncio.get_running_loop().create_task(cb)
                        self._listener_tasks.add(task)
                        task.add_done_callback(self._listener_done)
                    except RuntimeError:
                        cb.close()  # no running loop
            except Exception as e:
                logger.error(f"[{self.session_id}] Session listener error ({event_type}): {e}")

    def _listener_done(self, task: asyncio.Task) -> None:
        self._listener_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"[{self.session_id}] Session listener error: {task.exception()}")
