"""Shared test fixtures and configuration."""
from datetime import datetime, timezone

import pytest

from caresync.core.config import ConferenceConfig, ProbeConfig
from caresync.core.models import SessionContext
from caresync.services.conference import ConferenceEngineAdapter
from caresync.services.controller import SessionController
from caresync.services.feedback import FeedbackCollector

from fakes import FakeEngineFactory, FakeFeedbackSink, FakeMediaBackend


@pytest.fixture
def probe_cfg():
    """Fast sampling so monitor tests finish quickly."""
    return ProbeConfig(sample_interval=0.01)


@pytest.fixture
def conference_cfg():
    """No JWT, no connection timeout."""
    return ConferenceConfig(domain="meet.test", app_id="", api_key="", connect_timeout_s=0)


@pytest.fixture
def context():
    return SessionContext(
        appointment_id="appt-1",
        participant_role="patient",
        scheduled_start=datetime(2026, 10, 20, 9, 0, tzinfo=timezone.utc),
        session_type="online",
        status="scheduled",
        display_name="Jane Patient",
        counterpart_name="Dr. Smith",
        counterpart_role="doctor",
    )


@pytest.fixture
def media():
    return FakeMediaBackend()


@pytest.fixture
def engine_factory():
    return FakeEngineFactory()


@pytest.fixture
def sink():
    return FakeFeedbackSink()


@pytest.fixture
def adapter(engine_factory, conference_cfg):
    return ConferenceEngineAdapter(engine_factory, cfg=conference_cfg)


@pytest.fixture
def events():
    return []


@pytest.fixture
def controller(context, media, adapter, sink, probe_cfg, events):
    ctrl = SessionController(
        context,
        media,
        adapter,
        FeedbackCollector(sink),
        cfg=probe_cfg,
    )
    ctrl.subscribe(events.append)
    return ctrl
