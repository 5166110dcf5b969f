"""Audit trail functionality for the SAML federation core.

Validation rejections, accepted messages, outbound send failures and downstream
delivery failures are written as structured AUDIT lines so they can be told apart.
"""

import time
import uuid
from typing import Any, Dict, Optional

from ..utils.exceptions import ValidationFailure
from .logger import get_logger

logger = get_logger(__name__)

MESSAGE_ACCEPTED = "MESSAGE_ACCEPTED"
MESSAGE_REJECTED = "MESSAGE_REJECTED"
MESSAGE_SENT = "MESSAGE_SENT"
DELIVERY_FAILED = "DELIVERY_FAILED"
SEND_FAILED = "SEND_FAILED"
METADATA_INGESTED = "METADATA_INGESTED"
METADATA_FAILED = "METADATA_FAILED"

_FIELD_ORDER = [
    "status",
    "issuer",
    "message_id",
    "binding",
    "rule",
    "reason",
    "duration",
    "correlation_id",
]


def log_audit_event(event_type: str, details: Dict[str, Any]) -> None:
    """Log an audit trail event.

    Audit events are logged at INFO for successful operations and ERROR
    for failures.

    Args:
        event_type: Type of event (e.g. MESSAGE_REJECTED, DELIVERY_FAILED)
        details: Event details. Common fields include:
                - status: "success" or "failure"
                - issuer: Issuer of the message
                - message_id: Protocol message ID
                - binding: Binding the message arrived on
                - rule: Failing validation rule
                - reason: Failure reason
                - correlation_id: Optional correlation ID for related events

    Example:
        >>> log_audit_event(MESSAGE_REJECTED, {
        ...     "status": "failure",
        ...     "issuer": "https://idp.example.com",
        ...     "message_id": "_abc",
        ...     "rule": "Timestamp",
        ...     "reason": "message is stale",
        ... })
    """
    details = dict(details)
    details.setdefault("timestamp", time.time())
    details.setdefault("correlation_id", str(uuid.uuid4()))

    message_parts = [f"AUDIT [{event_type}]"]

    for field in _FIELD_ORDER:
        if field in details:
            value = details[field]
            if field == "duration" and isinstance(value, (int, float)):
                message_parts.append(f"{field}={value:.2f}s")
            else:
                message_parts.append(f"{field}={value}")

    for key, value in details.items():
        if key not in _FIELD_ORDER and key != "timestamp":
            message_parts.append(f"{key}={value}")

    audit_message = " | ".join(message_parts)

    if details.get("status", "unknown") == "failure":
        logger.error(audit_message)
    else:
        logger.info(audit_message)


def log_validation_rejection(
    failure: ValidationFailure,
    issuer: Optional[str] = None,
    message_id: Optional[str] = None,
    binding: Optional[str] = None,
) -> None:
    """Audit a rejected inbound message with its failing rule."""
    log_audit_event(
        MESSAGE_REJECTED,
        {
            "status": "failure",
            "issuer": issuer or "",
            "message_id": message_id or "",
            "binding": binding or "",
            "rule": failure.rule.value,
            "reason": failure.reason,
        },
    )
