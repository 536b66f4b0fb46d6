"""
CareSync — Configuration

Centralised settings from environment variables.
All tuneable constants live here — zero magic numbers in other files.
"""

from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv
import certifi

os.environ.setdefault("SSL_CERT_FILE", certifi.where())
os.environ.setdefault("REQUESTS_CA_BUNDLE", certifi.where())

load_dotenv()


# ---------------------------------------------------------------------------
# Server (observer bridge)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ServerConfig:
    host: str = os.getenv("HOST", "0.0.0.0")
    port: int = int(os.getenv("PORT", "8080"))
    cors_origins: tuple[str, ...] = (
        "http://localhost:3000",
        "http://127.0.0.1:3000",
        "http://localhost:5173",
    )


# ---------------------------------------------------------------------------
# CareSync REST API (appointments + feedback)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ApiConfig:
    base_url: str = os.getenv("CARESYNC_API_URL", "http://localhost:5000/api")
    auth_token: str = os.getenv("CARESYNC_API_TOKEN", "")
    timeout: float = float(os.getenv("CARESYNC_API_TIMEOUT", "10"))

    @property
    def headers(self) -> dict[str, str]:
        if not self.auth_token:
            return {}
        return {"Authorization": f"Bearer {self.auth_token}"}


# ---------------------------------------------------------------------------
# Conferencing engine (Jitsi Meet)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ConferenceConfig:
    domain: str = os.getenv("JITSI_DOMAIN", "meet.jit.si")
    app_id: str = os.getenv("JITSI_APP_ID", "")
    api_key: str = os.getenv("JITSI_API_KEY", "")
    # Both participants derive the same room from the appointment id
    room_prefix: str = "CareSync_"
    token_ttl_s: int = 2 * 60 * 60
    # Adapter-owned connection timeout; the controller enforces none
    connect_timeout_s: float = float(os.getenv("JITSI_CONNECT_TIMEOUT", "30"))

    @property
    def has_auth(self) -> bool:
        return bool(self.app_id and self.api_key)


# ---------------------------------------------------------------------------
# Device probing + audio level tunables
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ProbeConfig:
    # Audio level sampling cadence (seconds)
    sample_interval: float = 0.1
    # Analyser window, frequency bins = fft_size / 2
    fft_size: int = 256
    # Byte scaling range for frequency magnitudes
    min_decibels: float = -100.0
    max_decibels: float = -30.0
    # Per-stream exponential smoothing between ticks
    smoothing: float = 0.8
    # Network classification thresholds (Mbps)
    good_downlink_mbps: float = 4.0
    fair_downlink_mbps: float = 1.5
    # Speaker test tone
    tone_frequency_hz: float = 440.0
    tone_duration_s: float = 0.5
    tone_gain: float = 0.3
    tone_sample_rate: int = 48000


# ---------------------------------------------------------------------------
# Singletons
# ---------------------------------------------------------------------------

server_cfg = ServerConfig()
api_cfg = ApiConfig()
conference_cfg = ConferenceConfig()
probe_cfg = ProbeConfig()
