from __future__ import annotations

from dataclasses import dataclass

from helpdesk.worker.errors import PermanentJobError


@dataclass(frozen=True)
class EventJobPayload:
    """Payload shared by both notification stages: exactly `{"eventId": <int>}`."""

    event_id: int

    @classmethod
    def from_payload(cls, payload: dict) -> EventJobPayload:
        raw = payload.get("eventId") if isinstance(payload, dict) else None
        if isinstance(raw, bool) or not isinstance(raw, int):
            raise PermanentJobError(f"notification job payload has no integer eventId: {payload!r}")
        return cls(event_id=raw)

    def to_payload(self) -> dict:
        return {"eventId": self.event_id}
