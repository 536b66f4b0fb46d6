"""Session controller scenarios: checks, gating, call lifecycle, feedback, teardown."""
import asyncio

import pytest

from caresync.core.config import ConferenceConfig
from caresync.core.errors import InvalidFeedback, JoinBlocked, PermissionDenied
from caresync.core.models import (
    CapabilityKind,
    ConnectionInfo,
    EndReason,
    FeedbackRecord,
    TestState,
)
from caresync.core.readiness import PENDING_CONFIRMATION, SOFT_BLOCK_CONFIRMATION
from caresync.core.state_machine import CallState
from caresync.services.appointments import AppointmentContextLoader
from caresync.services.conference import ConferenceEngineAdapter
from caresync.services.controller import SessionController
from caresync.services.feedback import FeedbackCollector

from fakes import FakeAppointmentSource, FakeEngineFactory


def of_type(events, event_type):
    return [e.data for e in events if e.type == event_type]


async def into_call(controller, engine_factory):
    await controller.run_checks()
    await controller.join()
    engine_factory.last.emit("videoConferenceJoined", {"roomName": "CareSync_appt-1"})
    assert controller.state == CallState.IN_CALL
    return engine_factory.last


class TestChecks:
    """Preview: probes, readiness, audio level."""

    @pytest.mark.asyncio
    async def test_all_pass_is_ready(self, controller, events):
        snapshot = await controller.run_checks()

        assert snapshot.ready is True
        assert all(t.state == TestState.PASSED for t in controller.tests.values())
        assert of_type(events, "readiness")[-1]["ready"] is True
        kinds = {e["kind"] for e in of_type(events, "capability")}
        assert kinds == {"camera", "microphone", "speaker", "network"}
        await controller.teardown()

    @pytest.mark.asyncio
    async def test_async_listeners_are_tracked(self, controller, caplog):
        received = []

        async def record(event):
            await asyncio.sleep(0)
            received.append(event.type)

        async def crash(event):
            raise RuntimeError("async listener crashed")

        controller.subscribe(record)
        controller.subscribe(crash)
        await controller.retest(CapabilityKind.SPEAKER)

        await asyncio.gather(*controller._listener_tasks, return_exceptions=True)
        await asyncio.sleep(0)

        assert "capability" in received
        assert controller._listener_tasks == set()
        assert "async listener crashed" in caplog.text
        await controller.teardown()

    @pytest.mark.asyncio
    async def test_audio_level_published_for_microphone(self, controller, events, media):
        await controller.run_checks()
        await asyncio.sleep(0.05)

        assert controller.monitor.is_running
        assert controller.monitor.stream is media.streams_of(CapabilityKind.MICROPHONE)[0]
        levels = [e["level"] for e in of_type(events, "audio_level")]
        assert levels
        assert max(levels) > 0
        await controller.teardown()

    @pytest.mark.asyncio
    async def test_camera_permission_denied_blocks_join(self, controller, media):
        media.acquire_errors[CapabilityKind.CAMERA] = PermissionDenied("NotAllowedError")
        snapshot = await controller.run_checks()

        assert snapshot.ready is False
        assert snapshot.blocking_reasons == [CapabilityKind.CAMERA]
        assert CapabilityKind.CAMERA in snapshot.hints

        with pytest.raises(JoinBlocked) as exc:
            await controller.join()
        assert exc.value.hard_blocks == ["camera"]
        assert exc.value.requires_strong_confirmation is True
        assert controller.state == CallState.PREVIEW
        await controller.teardown()

    @pytest.mark.asyncio
    async def test_retest_failed_camera(self, controller, media, events):
        media.acquire_errors[CapabilityKind.CAMERA] = PermissionDenied("NotAllowedError")
        await controller.run_checks()
        assert controller.tests[CapabilityKind.CAMERA].state == TestState.FAILED

        del media.acquire_errors[CapabilityKind.CAMERA]
        events.clear()
        test = await controller.retest(CapabilityKind.CAMERA)

        assert test.state == TestState.PASSED
        states = [e["state"] for e in of_type(events, "capability") if e["kind"] == "camera"]
        assert states == ["pending", "testing", "passed"]
        assert controller.readiness.ready is True
        await controller.teardown()

    @pytest.mark.asyncio
    async def test_retest_releases_previous_stream(self, controller, media):
        await controller.run_checks()
        old = media.streams_of(CapabilityKind.CAMERA)[0]

        test = await controller.retest(CapabilityKind.CAMERA, device_id="cam-2")

        new = media.streams_of(CapabilityKind.CAMERA)[-1]
        assert old.active is False
        assert new.active is True
        assert controller.streams.get(CapabilityKind.CAMERA) is new
        assert test.selected_device_id == "cam-2"
        await controller.teardown()

    @pytest.mark.asyncio
    async def test_microphone_retest_moves_monitor(self, controller, media):
        await controller.run_checks()
        old = media.streams_of(CapabilityKind.MICROPHONE)[0]

        await controller.retest(CapabilityKind.MICROPHONE)

        new = media.streams_of(CapabilityKind.MICROPHONE)[-1]
        assert old.active is False
        assert controller.monitor.stream is new
        await controller.teardown()

    @pytest.mark.asyncio
    async def test_concurrent_retests_share_one_run(self, controller, media):
        media.acquire_gate = asyncio.Event()
        first = asyncio.create_task(controller.retest(CapabilityKind.CAMERA))
        second = asyncio.create_task(controller.retest(CapabilityKind.CAMERA))
        await asyncio.sleep(0.01)
        media.acquire_gate.set()
        a, b = await asyncio.gather(first, second)

        assert a is b
        assert len(media.streams_of(CapabilityKind.CAMERA)) == 1
        await controller.teardown()

    @pytest.mark.asyncio
    async def test_play_test_tone_uses_selected_speaker(self, controller, media):
        await controller.run_checks()
        assert await controller.play_test_tone() is True
        assert media.played[0][2] == "spk-1"
        assert controller.tests[CapabilityKind.SPEAKER].state == TestState.PASSED
        await controller.teardown()


class TestJoin:
    """Preview → Connecting → InCall."""

    @pytest.mark.asyncio
    async def test_all_pass_join_in_call(self, controller, engine_factory, media, events):
        await controller.run_checks()
        state = await controller.join()

        assert state == CallState.CONNECTING
        assert media.live_streams == []
        assert controller.monitor.is_running is False
        engine = engine_factory.last
        assert engine.options["room_name"] == "CareSync_appt-1"
        assert engine.options["start_muted"] is False
        assert engine.options["devices"] == {"camera": "cam-1", "microphone": "mic-1", "speaker": "spk-1"}

        engine.emit("videoConferenceJoined", {"roomName": "CareSync_appt-1"})

        assert controller.state == CallState.IN_CALL
        assert controller.call_session.started_at is not None
        assert [s["to"] for s in of_type(events, "state")] == ["connecting", "in_call"]

    @pytest.mark.asyncio
    async def test_poor_network_requires_light_confirmation(self, controller, media):
        media.connection = ConnectionInfo("2g", 0.3)
        snapshot = await controller.run_checks()

        assert snapshot.ready is False
        assert snapshot.soft_blocks == [CapabilityKind.NETWORK]
        assert snapshot.blocking_reasons == []

        with pytest.raises(JoinBlocked) as exc:
            await controller.join()
        assert exc.value.soft_blocks == ["network"]
        assert exc.value.requires_strong_confirmation is False
        assert exc.value.confirmation == SOFT_BLOCK_CONFIRMATION

        assert await controller.join(override=True) == CallState.CONNECTING

    @pytest.mark.asyncio
    async def test_override_with_failed_camera_starts_video_off(self, controller, media, engine_factory):
        media.acquire_errors[CapabilityKind.CAMERA] = OSError("in use")
        await controller.run_checks()
        await controller.join(override=True)

        assert controller.selections.camera_id is None
        assert controller.selections.start_video_off is True
        assert engine_factory.last.options["start_video_off"] is True

    @pytest.mark.asyncio
    async def test_join_before_checks_requires_override(self, controller, engine_factory):
        with pytest.raises(JoinBlocked) as exc:
            await controller.join()
        assert exc.value.pending == ["camera", "microphone", "speaker"]
        assert exc.value.confirmation == PENDING_CONFIRMATION

        await controller.join(override=True)
        assert controller.selections.start_muted is True
        assert controller.state == CallState.CONNECTING

    @pytest.mark.asyncio
    async def test_join_cancels_running_probes(self, controller, media):
        media.acquire_gate = asyncio.Event()
        checks = asyncio.create_task(controller.run_checks())
        await asyncio.sleep(0.01)

        await controller.join(override=True)
        media.acquire_gate.set()
        await checks

        assert controller.state == CallState.CONNECTING
        assert media.live_streams == []

    @pytest.mark.asyncio
    async def test_preview_toggle_sets_start_muted(self, controller, engine_factory):
        await controller.run_checks()
        controller.toggle_audio()
        assert controller.audio_enabled is False

        await controller.join()
        assert engine_factory.last.options["start_muted"] is True
        assert engine_factory.last.commands == []

    @pytest.mark.asyncio
    async def test_engine_initialization_failure(self, context, media, sink, probe_cfg, conference_cfg):
        adapter = ConferenceEngineAdapter(FakeEngineFactory(error=RuntimeError("script blocked")), cfg=conference_cfg)
        controller = SessionController(context, media, adapter, FeedbackCollector(sink), cfg=probe_cfg)
        await controller.run_checks()

        assert await controller.join() == CallState.ENDING
        assert controller.outcome.reason == EndReason.ENGINE_ERROR
        assert controller.outcome.retryable is True
        assert "script blocked" in controller.outcome.error
        assert media.live_streams == []

    @pytest.mark.asyncio
    async def test_engine_error_while_connecting(self, controller, engine_factory):
        await controller.run_checks()
        await controller.join()
        engine = engine_factory.last

        engine.emit("errorOccurred", {"message": "conference.connectionError"})

        assert controller.state == CallState.ENDING
        assert controller.outcome.reason == EndReason.ENGINE_ERROR
        assert controller.outcome.error == "conference.connectionError"
        assert controller.outcome.retryable is True
        assert engine.disposed == 1

        engine.emit("videoConferenceJoined")
        assert controller.state == CallState.ENDING
        assert controller.call_session.started_at is None
        assert "in_call" not in [h["to"] for h in controller.call_session.history]

    @pytest.mark.asyncio
    async def test_connection_timeout_ends_session(self, context, media, sink, probe_cfg):
        factory = FakeEngineFactory()
        adapter = ConferenceEngineAdapter(
            factory, cfg=ConferenceConfig(domain="meet.test", app_id="", api_key="", connect_timeout_s=0.02)
        )
        controller = SessionController(context, media, adapter, FeedbackCollector(sink), cfg=probe_cfg)
        await controller.run_checks()
        await controller.join()
        await asyncio.sleep(0.06)

        assert controller.state == CallState.ENDING
        assert "Timed out" in controller.outcome.error

    @pytest.mark.asyncio
    async def test_end_call_while_connecting_cancels(self, controller, engine_factory):
        await controller.run_checks()
        await controller.join()

        assert controller.end_call() == CallState.ENDING
        assert controller.outcome.reason == EndReason.CANCELLED
        assert engine_factory.last.commands == ["hangup"]


class TestInCall:
    """InCall → Ending."""

    @pytest.mark.asyncio
    async def test_end_call_then_skip_feedback_closes(self, controller, engine_factory):
        engine = await into_call(controller, engine_factory)

        assert controller.end_call() == CallState.ENDING
        assert controller.outcome.reason == EndReason.USER_ENDED
        assert engine.commands == ["hangup"]
        assert engine.disposed == 1
        assert controller.call_session.ended_at is not None

        ack = controller.skip_feedback()
        assert ack.skipped is True
        assert controller.state == CallState.CLOSED
        assert controller.outcome.feedback.skipped is True

    @pytest.mark.parametrize("event,reason", [
        ("videoConferenceLeft", EndReason.ENGINE_LEFT),
        ("readyToClose", EndReason.READY_TO_CLOSE),
    ])
    @pytest.mark.asyncio
    async def test_engine_ends_call(self, controller, engine_factory, event, reason):
        engine = await into_call(controller, engine_factory)
        engine.emit(event)

        assert controller.state == CallState.ENDING
        assert controller.outcome.reason == reason
        assert engine.commands == []
        assert engine.disposed == 1

    @pytest.mark.asyncio
    async def test_error_during_call_is_forwarded_only(self, controller, engine_factory, events):
        engine = await into_call(controller, engine_factory)
        engine.emit("errorOccurred", {"message": "participant connection lost"})

        assert controller.state == CallState.IN_CALL
        engine_events = of_type(events, "engine")
        assert engine_events[-1]["type"] == "error"
        assert engine_events[-1]["payload"]["message"] == "participant connection lost"

    @pytest.mark.asyncio
    async def test_toggles_send_engine_commands(self, controller, engine_factory):
        engine = await into_call(controller, engine_factory)
        assert controller.toggle_audio() is True
        assert controller.toggle_video() is True
        assert engine.commands == ["toggleAudio", "toggleVideo"]
        assert controller.audio_enabled is False

        engine.emit("audioMuteStatusChanged", {"muted": False})
        assert controller.audio_enabled is True


class TestFeedback:
    """Ending → Closed."""

    @pytest.mark.asyncio
    async def test_submit_feedback_closes(self, controller, engine_factory, sink):
        await into_call(controller, engine_factory)
        controller.end_call()

        ack = await controller.submit_feedback(FeedbackRecord(rating=5, comment="Very helpful"))

        assert ack.accepted is True
        assert controller.state == CallState.CLOSED
        assert sink.payloads[0]["appointmentId"] == "appt-1"
        assert sink.payloads[0]["rating"] == 5

    @pytest.mark.asyncio
    async def test_unrated_feedback_closes(self, controller, engine_factory, sink):
        await into_call(controller, engine_factory)
        controller.end_call()

        ack = await controller.submit_feedback(FeedbackRecord(comment="Audio was fine", notes="No rating"))

        assert ack.accepted is True
        assert controller.state == CallState.CLOSED
        assert controller.outcome.feedback.accepted is True
        assert sink.payloads[0]["rating"] is None
        assert sink.payloads[0]["comment"] == "Audio was fine"

    @pytest.mark.asyncio
    async def test_invalid_rating_stays_in_ending(self, controller, engine_factory):
        await into_call(controller, engine_factory)
        controller.end_call()

        with pytest.raises(InvalidFeedback):
            await controller.submit_feedback(FeedbackRecord(rating=7))
        assert controller.state == CallState.ENDING

    @pytest.mark.asyncio
    async def test_sink_failure_still_closes(self, controller, engine_factory, sink):
        await into_call(controller, engine_factory)
        controller.end_call()
        sink.fail = True

        ack = await controller.submit_feedback(FeedbackRecord(rating=3))

        assert ack.accepted is False
        assert ack.retryable is True
        assert controller.state == CallState.CLOSED

        sink.fail = False
        retried = await controller.retry_feedback()
        assert retried.accepted is True
        assert controller.outcome.feedback.accepted is True
        assert sink.payloads[0]["rating"] == 3

    @pytest.mark.asyncio
    async def test_everything_is_noop_after_closed(self, controller, engine_factory, media):
        await into_call(controller, engine_factory)
        controller.end_call()
        controller.skip_feedback()
        acquired = len(media.acquired)

        assert controller.end_call() == CallState.CLOSED
        assert await controller.join(override=True) == CallState.CLOSED
        assert controller.skip_feedback().error is not None
        assert (await controller.submit_feedback(FeedbackRecord(rating=5))).accepted is False
        assert controller.toggle_audio() is False
        await controller.run_checks()

        assert controller.state == CallState.CLOSED
        assert len(media.acquired) == acquired


class TestTeardown:
    """Abnormal exit from any state."""

    @pytest.mark.asyncio
    async def test_teardown_from_preview(self, controller, media):
        await controller.run_checks()
        await controller.teardown()

        assert media.live_streams == []
        assert controller.monitor.is_running is False
        assert controller.state == CallState.PREVIEW
        assert controller.is_torn_down

        await controller.run_checks()
        assert len(media.acquired) == 2

    @pytest.mark.asyncio
    async def test_teardown_during_call(self, controller, engine_factory):
        engine = await into_call(controller, engine_factory)
        await controller.teardown()

        assert controller.state == CallState.CLOSED
        assert controller.outcome.reason == EndReason.TEARDOWN
        assert controller.outcome.feedback.skipped is True
        assert engine.disposed == 1

    @pytest.mark.asyncio
    async def test_teardown_from_ending(self, controller, engine_factory):
        await into_call(controller, engine_factory)
        controller.end_call()
        await controller.teardown()

        assert controller.state == CallState.CLOSED
        assert controller.outcome.reason == EndReason.USER_ENDED

    @pytest.mark.asyncio
    async def test_teardown_is_idempotent(self, controller):
        await controller.teardown()
        await controller.teardown()
        assert controller.is_torn_down


class TestOpen:

    @pytest.mark.asyncio
    async def test_open_loads_context_once(self, media, adapter, sink, probe_cfg):
        source = FakeAppointmentSource({
            "appt-7": {"_id": "appt-7", "type": "online", "status": "scheduled",
                       "scheduledTime": "2026-10-20T09:00:00Z", "doctor": {"name": "Dr. Smith"}},
        })
        controller = await SessionController.open(
            "appt-7", "patient", AppointmentContextLoader(source), media, adapter,
            FeedbackCollector(sink), display_name="Jane", cfg=probe_cfg,
        )

        assert controller.session_id == "appt-7"
        assert controller.context.counterpart_name == "Dr. Smith"
        assert controller.state == CallState.PREVIEW
        assert source.calls == ["appt-7"]

    def test_snapshot_shape(self, controller):
        snap = controller.snapshot()
        assert snap["state"] == "preview"
        assert snap["readiness"]["pending"] == ["camera", "microphone", "speaker"]
        assert set(snap["tests"]) == {"camera", "microphone", "speaker", "network"}
        assert snap["outcome"] is None
