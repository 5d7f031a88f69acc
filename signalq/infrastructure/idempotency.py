"""
Deterministic idempotency keys for outbound notifications.

The key is derived from what is being delivered (conversation, notification
type and message body) so a retried delivery of the same content carries
the same key.
"""

from __future__ import annotations

from hashlib import sha256

from signalq.observability.telemetry import counter, log_event


def notification_key(conversation_id: str, notification_type: str, body: str) -> str:
    """
    Compute the idempotency key for a notification.

    Raises:
        ValueError: If conversation_id or notification_type is missing
    """
    missing = [
        name
        for name, val in (("conversation_id", conversation_id), ("notification_type", notification_type))
        if not val
    ]
    if missing:
        counter("idempotency.invalid")
        log_event("idempotency.invalid", missing_fields=missing)
        raise ValueError(f"idempotency key requires: {', '.join(missing)}")

    digest = sha256((body or "").encode("utf-8")).hexdigest()
    return f"{conversation_id}:{notification_type}:{digest}"
