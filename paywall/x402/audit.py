# paywall/x402/audit.py
"""
Audit trail for x402 payments.

Every step of the payment handshake is appended to a JSON-lines file so that
disputed or unresolved settlements can be reconciled afterwards.

Log location: X402_AUDIT_LOG_PATH (disabled with X402_AUDIT_ENABLED=false)

Each line looks like:
    {"timestamp": "...", "event_type": "payment_settled", "request_id": "1a2b3c4d",
     "client_ip": "203.0.113.7", "payer": "0x...", "data": {...}}

Writing never raises: a broken audit file must not fail a paid request.
"""
import json
import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from paywall.core.config import settings

logger = logging.getLogger(__name__)


class AuditEventType(Enum):
    """Types of audit events."""
    REQUEST_RECEIVED = "request_received"
    PAYMENT_REQUIRED_SENT = "payment_required_sent"
    PAYMENT_RECEIVED = "payment_received"
    PAYMENT_REJECTED = "payment_rejected"
    PAYMENT_VERIFIED = "payment_verified"
    PAYMENT_SETTLED = "payment_settled"
    SETTLEMENT_FAILED = "settlement_failed"
    SETTLEMENT_UNRESOLVED = "settlement_unresolved"
    TRANSACTION_ATTACHED = "transaction_attached"
    ERROR = "error"


def generate_request_id() -> str:
    """Short id correlating the events of one request."""
    return uuid.uuid4().hex[:8]


def get_audit_log_path() -> Path:
    return Path(settings.X402_AUDIT_LOG_PATH)


def log_audit_event(
    event_type: AuditEventType,
    data: Dict[str, Any],
    client_ip: Optional[str] = None,
    payer: Optional[str] = None,
    request_id: Optional[str] = None,
) -> Optional[str]:
    """
    Append one event to the audit log.

    Args:
        event_type: Type of event
        data: Event-specific fields (must be JSON serialisable)
        client_ip: Client IP address, if known
        payer: Payer wallet address, if known
        request_id: Correlation id; generated when omitted

    Returns:
        The request_id written, or None when auditing is disabled or the write failed
    """
    if not settings.X402_AUDIT_ENABLED:
        return None

    event = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "event_type": event_type.value,
        "request_id": request_id or generate_request_id(),
        "client_ip": client_ip,
        "payer": payer,
        "data": data,
    }

    try:
        log_path = get_audit_log_path()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with open(log_path, "a") as f:
            f.write(json.dumps(event) + "\n")
    except (OSError, TypeError, ValueError) as e:
        logger.error(f"Failed to write audit event {event_type.value}: {e}")
        return None

    logger.debug(f"Audit event logged: {event_type.value} [{event['request_id']}]")
    return event["request_id"]


# Convenience wrappers, one per step of the handshake

def log_request_received(client_ip: str, method: str, path: str, request_id: Optional[str] = None) -> Optional[str]:
    return log_audit_event(
        AuditEventType.REQUEST_RECEIVED,
        {"method": method, "path": path},
        client_ip=client_ip,
        request_id=request_id,
    )


def log_payment_required_sent(
    client_ip: str,
    resource: str,
    amount: str,
    network: str,
    pay_to: str,
    request_id: Optional[str] = None,
) -> Optional[str]:
    """Log a 402 challenge."""
    return log_audit_event(
        AuditEventType.PAYMENT_REQUIRED_SENT,
        {"resource": resource, "amount": amount, "network": network, "pay_to": pay_to},
        client_ip=client_ip,
        request_id=request_id,
    )


def log_payment_received(
    client_ip: str,
    payer: str,
    resource: str,
    amount: str,
    network: str,
    request_id: Optional[str] = None,
) -> Optional[str]:
    return log_audit_event(
        AuditEventType.PAYMENT_RECEIVED,
        {"resource": resource, "amount": amount, "network": network},
        client_ip=client_ip,
        payer=payer,
        request_id=request_id,
    )


def log_payment_rejected(
    client_ip: str,
    reason: str,
    stage: str,
    payer: Optional[str] = None,
    request_id: Optional[str] = None,
) -> Optional[str]:
    """Log a payload refused before settlement (malformed, mismatched, or invalid)."""
    return log_audit_event(
        AuditEventType.PAYMENT_REJECTED,
        {"reason": reason, "stage": stage},
        client_ip=client_ip,
        payer=payer,
        request_id=request_id,
    )


def log_payment_verified(client_ip: str, payer: str, request_id: Optional[str] = None) -> Optional[str]:
    return log_audit_event(
        AuditEventType.PAYMENT_VERIFIED,
        {"is_valid": True},
        client_ip=client_ip,
        payer=payer,
        request_id=request_id,
    )


def log_payment_settled(
    client_ip: str,
    payer: str,
    transaction_hash: str,
    network: str,
    resource: str,
    amount: str,
    request_id: Optional[str] = None,
) -> Optional[str]:
    return log_audit_event(
        AuditEventType.PAYMENT_SETTLED,
        {"transaction_hash": transaction_hash, "network": network, "resource": resource, "amount": amount},
        client_ip=client_ip,
        payer=payer,
        request_id=request_id,
    )


def log_settlement_failed(
    client_ip: str,
    payer: Optional[str],
    error_reason: str,
    network: str,
    request_id: Optional[str] = None,
) -> Optional[str]:
    return log_audit_event(
        AuditEventType.SETTLEMENT_FAILED,
        {"error_reason": error_reason, "network": network},
        client_ip=client_ip,
        payer=payer,
        request_id=request_id,
    )


def log_settlement_unresolved(
    client_ip: str,
    payer: Optional[str],
    pending_id: str,
    resource: str,
    reason: str,
    request_id: Optional[str] = None,
) -> Optional[str]:
    """Log a settlement whose on-chain outcome is unknown and must be reconciled."""
    return log_audit_event(
        AuditEventType.SETTLEMENT_UNRESOLVED,
        {"pending_id": pending_id, "resource": resource, "reason": reason},
        client_ip=client_ip,
        payer=payer,
        request_id=request_id,
    )


def log_transaction_attached(resource: str, payer: str, transaction_hash: str) -> Optional[str]:
    return log_audit_event(
        AuditEventType.TRANSACTION_ATTACHED,
        {"resource": resource, "transaction_hash": transaction_hash},
        payer=payer,
    )


def log_error(
    client_ip: Optional[str],
    error_type: str,
    error_message: str,
    context: Optional[Dict[str, Any]] = None,
    payer: Optional[str] = None,
    request_id: Optional[str] = None,
) -> Optional[str]:
    return log_audit_event(
        AuditEventType.ERROR,
        {"error_type": error_type, "error_message": error_message, "context": context or {}},
        client_ip=client_ip,
        payer=payer,
        request_id=request_id,
    )


def _iter_events(log_path: Path):
    with open(log_path, "r") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                yield json.loads(line)
            except json.JSONDecodeError:
                continue


def read_audit_log(
    max_entries: int = 100,
    event_type: Optional[AuditEventType] = None,
    payer: Optional[str] = None,
) -> List[Dict[str, Any]]:
    """
    Read audit events, most recent first.

    Args:
        max_entries: Maximum number of events to return
        event_type: Only return events of this type
        payer: Only return events for this payer (case-insensitive)
    """
    log_path = get_audit_log_path()
    if not log_path.exists():
        return []

    wanted_payer = payer.lower() if payer else None
    events = []
    for event in _iter_events(log_path):
        if event_type and event.get("event_type") != event_type.value:
            continue
        if wanted_payer and (event.get("payer") or "").lower() != wanted_payer:
            continue
        events.append(event)

    return list(reversed(events))[:max_entries]


def get_audit_stats() -> Dict[str, Any]:
    """Event counts by type plus the time range covered by the log."""
    log_path = get_audit_log_path()
    if not log_path.exists():
        return {
            "total_events": 0,
            "events_by_type": {},
            "log_path": str(log_path),
            "log_exists": False,
        }

    events_by_type: Dict[str, int] = {}
    total = 0
    first_timestamp = None
    last_timestamp = None
    for event in _iter_events(log_path):
        total += 1
        kind = event.get("event_type", "unknown")
        events_by_type[kind] = events_by_type.get(kind, 0) + 1
        timestamp = event.get("timestamp")
        if timestamp:
            first_timestamp = first_timestamp or timestamp
            last_timestamp = timestamp

    return {
        "total_events": total,
        "events_by_type": events_by_type,
        "first_event": first_timestamp,
        "last_event": last_timestamp,
        "log_path": str(log_path),
        "log_exists": True,
    }
