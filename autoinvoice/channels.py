"""WhatsApp Business webhook payloads."""

from __future__ import annotations

from typing import Any, Optional

from .pipeline import InboundEvent

WHATSAPP_OBJECT = "whatsapp_business_account"


def verify_subscription(
    mode: Optional[str],
    token: Optional[str],
    challenge: Optional[str],
    expected_token: str,
) -> Optional[str]:
    """Return the challenge to echo back, or None when the handshake is refused."""
    if mode == "subscribe" and token == expected_token:
        return challenge or ""
    return None


def _objects(items: Any) -> list[dict[str, Any]]:
    # Malformed deliveries are skipped item by item.
    if not isinstance(items, list):
        return []
    return [item for item in items if isinstance(item, dict)]


def _object(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def extract_inbound_events(payload: dict[str, Any]) -> list[InboundEvent]:
    """Text messages only; media, reactions and status callbacks are skipped."""
    if not isinstance(payload, dict) or payload.get("object") != WHATSAPP_OBJECT:
        return []

    events: list[InboundEvent] = []
    for entry in _objects(payload.get("entry")):
        for change in _objects(entry.get("changes")):
            if change.get("field") != "messages":
                continue
            value = _object(change.get("value"))
            channel_id = _object(value.get("metadata")).get("phone_number_id")
            for message in _objects(value.get("messages")):
                if message.get("type") != "text":
                    continue
                events.append(
                    InboundEvent(
                        from_identifier=message.get("from") or "",
                        body=_object(message.get("text")).get("body") or "",
                        channel_id=channel_id,
                        external_id=message.get("id"),
                    )
                )
    return events
