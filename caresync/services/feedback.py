"""
CareSync — Feedback Collector

Post-call rating + comment. Persistence failures are reported back as a
retryable FeedbackAck; they never hold the session open.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from ..core.config import ApiConfig, api_cfg
from ..core.errors import FeedbackSubmissionFailure, InvalidFeedback
from ..core.interfaces import FeedbackSink
from ..core.models import FeedbackAck, FeedbackRecord

logger = logging.getLogger("caresync.feedback")

MIN_RATING = 1
MAX_RATING = 5


class HttpFeedbackSink:
    """POST {base_url}/consultations/{id}/feedback on the CareSync REST API."""

    def __init__(
        self,
        cfg: ApiConfig = api_cfg,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._cfg = cfg
        self._transport = transport

    async def persist(self, payload: Dict[str, Any]) -> Any:
        appointment_id = payload.get("appointmentId", "")
        url = f"{self._cfg.base_url.rstrip('/')}/consultations/{appointment_id}/feedback"
        body: Dict[str, Any] = {"comment": payload.get("comment") or ""}
        if payload.get("rating") is not None:
            body["rating"] = payload["rating"]
        if payload.get("notes"):
            body["notes"] = payload["notes"]
        try:
            async with httpx.AsyncClient(
                timeout=self._cfg.timeout,
                headers=self._cfg.headers,
                transport=self._transport,
            ) as client:
                resp = await client.post(url, json=body)
                resp.raise_for_status()
                return resp.json() if resp.content else None
        except httpx.HTTPError as e:
            raise FeedbackSubmissionFailure(f"Failed to submit feedback: {e}") from e


def validate(record: FeedbackRecord) -> FeedbackRecord:
    """Rating is optional; when given it must be an integer 1–5. Raises InvalidFeedback otherwise."""
    rating = record.rating
    if rating is not None:
        if isinstance(rating, bool) or not isinstance(rating, int):
            raise InvalidFeedback("Rating must be a whole number")
        if not MIN_RATING <= rating <= MAX_RATING:
            raise InvalidFeedback(f"Rating must be between {MIN_RATING} and {MAX_RATING}")
    return FeedbackRecord(
        rating=rating,
        comment=(record.comment or "").strip(),
        notes=(record.notes or "").strip(),
    )


class FeedbackCollector:
    """
    One collector per session. Keeps the last failed record so the host
    can retry after the session has already closed.
    """

    def __init__(self, sink: FeedbackSink) -> None:
        self._sink = sink
        self._pending: Optional[FeedbackRecord] = None
        self._appointment_id: Optional[str] = None
        self.submitted = False

    @property
    def pending(self) -> Optional[FeedbackRecord]:
        return self._pending

    async def submit(self, record: FeedbackRecord, *, appointment_id: str) -> FeedbackAck:
        """
        Validate then persist. InvalidFeedback propagates so the caller can
        ask again; sink failures come back as a retryable ack.
        """
        clean = validate(record)
        payload = {
            "appointmentId": appointment_id,
            "rating": clean.rating,
            "comment": clean.comment,
            "notes": clean.notes,
        }
        try:
            await self._sink.persist(payload)
        except Exception as e:
            self._pending = clean
            self._appointment_id = appointment_id
            logger.warning(f"[{appointment_id}] Feedback submission failed: {e}")
            return FeedbackAck(accepted=False, retryable=True, error=str(e))

        self._pending = None
        self._appointment_id = None
        self.submitted = True
        logger.info(f"[{appointment_id}] Feedback submitted (rating={clean.rating})")
        return FeedbackAck(accepted=True)

    async def retry(self) -> FeedbackAck:
        if self._pending is None or self._appointment_id is None:
            return FeedbackAck(accepted=False, retryable=False, error="No feedback awaiting retry")
        return await self.submit(self._pending, appointment_id=self._appointment_id)

    def skip(self) -> FeedbackAck:
        self._pending = None
        self._appointment_id = None
        return FeedbackAck(accepted=False, skipped=True)
