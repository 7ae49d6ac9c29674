"""
provisioning/audit_log.py

Audit trail for subscription provisioning.

Every decision that touches a member's money or membership state is
appended as one JSON object per line:

    {"at": "...", "event": "session.reused", "user": "3f2a9c1e...77b0",
     "ref": "a1b2c3d4", "details": {"session_id": 12}, "ip": "...", "agent": "..."}

Rules:
    - Lines are only ever appended; nothing rewrites the file
    - Amounts and payment method data never reach the file: detail keys
      outside ALLOWED_DETAIL_KEYS are replaced by their type name
    - User ids are shortened to a correlation prefix/suffix
    - If the log directory cannot be created the logger degrades to stdout

Usage:
    from provisioning.audit_log import get_audit_logger, AuditEvent

    get_audit_logger().log_event(
        AuditEvent.COUPON_APPLIED,
        user_id=user_id,
        details={'coupon_id': pricing.coupon_id},
    )

Version History:
    2026-10-18: Initial implementation
"""

import fcntl
import json
import os
import threading
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional


DEFAULT_AUDIT_DIR = '/data/audit'
AUDIT_FILE_NAME = 'provisioning.log'

# Longest string detail kept verbatim
MAX_DETAIL_LENGTH = 500


class AuditEvent(Enum):
    """Auditable provisioning decisions, grouped by the component raising them."""

    # SessionManager
    SESSION_CREATED = "session.created"
    SESSION_REUSED = "session.reused"
    SESSION_RECREATED = "session.recreated"
    SESSION_INVALIDATED = "session.invalidated"
    SESSION_CONFLICT = "session.conflict"

    # PricingEngine / coupon application
    COUPON_APPLIED = "coupon.applied"
    COUPON_REJECTED = "coupon.rejected"
    PRICING_FAILED = "pricing.failed"

    # RegistrationFinalizer
    FINALIZE_STARTED = "finalize.started"
    FINALIZE_RESUMED = "finalize.resumed"
    FINALIZE_SUCCEEDED = "finalize.succeeded"
    FINALIZE_DECLINED = "finalize.declined"
    FINALIZE_FAILED = "finalize.failed"

    # Repair jobs
    RECONCILE_REPAIRED = "reconcile.repaired"
    RECONCILE_SKIPPED = "reconcile.skipped"
    RECONCILE_PURGED = "reconcile.purged"


ALLOWED_DETAIL_KEYS = frozenset({
    'operation', 'session_id', 'invitation_id', 'reason', 'error_type',
    'error_message', 'gateway_code', 'decline_code', 'coupon_id',
    'discount_percentage', 'monthly_intent_status', 'annual_intent_status',
    'confirmed_intents', 'skipped_intents', 'duplicate_subscriptions',
    'repaired', 'skipped', 'purged', 'attempt', 'status_code',
})


# =============================================================================
# ENTRY
# =============================================================================

def shorten_id(value: Optional[str]) -> Optional[str]:
    """Keep 8 leading and 4 trailing characters of long identifiers."""
    if not value or len(value) <= 12:
        return value or None
    return f"{value[:8]}...{value[-4:]}"


def filter_details(details: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Whitelisted details; other keys survive only as '_skipped_<key>': <type>."""
    kept: Dict[str, Any] = {}
    for key, value in (details or {}).items():
        if key not in ALLOWED_DETAIL_KEYS:
            kept[f'_skipped_{key}'] = type(value).__name__
        elif isinstance(value, str) and len(value) > MAX_DETAIL_LENGTH:
            kept[key] = value[:MAX_DETAIL_LENGTH] + '...'
        else:
            kept[key] = value
    return kept


def request_metadata() -> Dict[str, str]:
    """Client address and agent of the Flask request being served, if any."""
    from flask import has_request_context, request

    if not has_request_context():
        return {}

    forwarded = request.headers.get('X-Forwarded-For', '')
    ip = forwarded.split(',')[0].strip() if forwarded else request.remote_addr
    return {
        'ip_address': ip or 'unknown',
        'user_agent': request.headers.get('User-Agent', 'unknown')[:200],
    }


@dataclass(frozen=True)
class AuditEntry:
    event: AuditEvent
    user_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    request_id: Optional[str] = None
    context: Dict[str, str] = field(default_factory=dict)

    def to_json(self) -> str:
        record = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'event': self.event.value,
            'user_id': shorten_id(self.user_id),
            'request_id': self.request_id or uuid.uuid4().hex[:8],
            'details': filter_details(self.details),
        }
        record.update(self.context)
        return json.dumps(record, default=str)


# =============================================================================
# LOGGER
# =============================================================================

class AuditLogger:
    """JSON-lines audit file guarded by a thread lock and an flock."""

    def __init__(self, log_path: Optional[Path] = None):
        if log_path is None:
            log_path = Path(os.environ.get('AUDIT_LOG_DIR', DEFAULT_AUDIT_DIR)) / AUDIT_FILE_NAME
        self._path = Path(log_path)
        self._lock = threading.Lock()
        self._writable = self._prepare()

    @property
    def enabled(self) -> bool:
        return self._writable

    def _prepare(self) -> bool:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._path.touch(exist_ok=True)
        except OSError as e:
            print(f"[AuditLog] WARNING: audit file {self._path} unavailable ({e}), using stdout only")
            return False
        print(f"[AuditLog] Writing audit trail to {self._path}")
        return True

    def log_event(
        self,
        event_type: AuditEvent,
        user_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        request_id: Optional[str] = None,
    ) -> None:
        """Append one event. Request metadata is attached automatically."""
        entry = AuditEntry(
            event=event_type,
            user_id=user_id,
            details=details or {},
            request_id=request_id,
            context=request_metadata(),
        )
        print(f"[AUDIT] {event_type.value} user={shorten_id(user_id) or 'none'}")
        if self._writable:
            self._append(entry.to_json())

    def _append(self, line: str) -> None:
        with self._lock:
            try:
                with open(self._path, 'a', encoding='utf-8') as handle:
                    fcntl.flock(handle, fcntl.LOCK_EX)
                    try:
                        handle.write(line + '\n')
                        handle.flush()
                        os.fsync(handle.fileno())
                    finally:
                        fcntl.flock(handle, fcntl.LOCK_UN)
            except OSError as e:
                print(f"[AuditLog] ERROR appending audit entry: {e}")

    def _entries(self) -> Iterator[Dict[str, Any]]:
        with open(self._path, encoding='utf-8') as handle:
            for raw in handle:
                raw = raw.strip()
                if not raw:
                    continue
                try:
                    yield json.loads(raw)
                except json.JSONDecodeError:
                    continue

    def get_recent_events(
        self,
        count: int = 100,
        event_type: Optional[AuditEvent] = None,
    ) -> List[Dict[str, Any]]:
        """Up to `count` entries, newest first, optionally of one event type."""
        if not self._writable or not self._path.exists():
            return []

        recent: deque = deque(maxlen=count)
        for entry in self._entries():
            if event_type is None or entry.get('event') == event_type.value:
                recent.append(entry)
        return list(reversed(recent))


_default_logger: Optional[AuditLogger] = None


def get_audit_logger() -> AuditLogger:
    """Process-wide logger writing under AUDIT_LOG_DIR."""
    global _default_logger
    if _default_logger is None:
        _default_logger = AuditLogger()
    return _default_logger
