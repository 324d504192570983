"""Audit logging utilities for directory-backed authentication events."""

from __future__ import annotations
import datetime
import hashlib
import hmac
import json
import logging
import os
from pathlib import Path
from typing import Any, Literal

logger = logging.getLogger(__name__)

AUDIT_LOG_DIR = Path(os.environ.get("AUDIT_LOG_DIR", ".runtime/audit"))
AUDIT_LOG_FILE = AUDIT_LOG_DIR / "auth-events.jsonl"
_default_secret_paths: list[Path] = [
    Path("/run/secrets/audit_log_signing_key"),
    Path(".runtime/secrets/audit_log_signing_key"),
]


def configure(log_dir: str | Path) -> None:
    """Point the audit trail at ``log_dir`` (normally from settings)."""
    global AUDIT_LOG_DIR, AUDIT_LOG_FILE
    AUDIT_LOG_DIR = Path(log_dir)
    AUDIT_LOG_FILE = AUDIT_LOG_DIR / "auth-events.jsonl"


def _get_signing_key() -> bytes:
    """Get the audit signing key, environment first, then secret files."""
    key = os.environ.get("AUDIT_LOG_SIGNING_KEY", "").strip()
    if key:
        return key.encode("utf-8")
    for path in _default_secret_paths:
        if path.exists():
            try:
                return path.read_text(encoding="utf-8").strip().encode("utf-8")
            except OSError:
                continue
    return b""


EventType = Literal[
    "login", "login_failed",
    "session_resume", "session_resume_failed",
    "logout", "sync",
]


def _ensure_audit_dir() -> None:
    """Create audit directory with restricted permissions."""
    AUDIT_LOG_DIR.mkdir(parents=True, exist_ok=True)
    AUDIT_LOG_DIR.chmod(0o700)


def _sign_event(event: dict[str, Any]) -> str:
    """Generate HMAC-SHA256 signature for audit event."""
    signing_key = _get_signing_key()
    if not signing_key:
        return ""
    # Canonical JSON representation for signing
    canonical = json.dumps(event, sort_keys=True, separators=(",", ":"))
    return hmac.new(signing_key, canonical.encode("utf-8"), hashlib.sha256).hexdigest()


def log_auth_event(
    event_type: EventType,
    username: str,
    *,
    source_ip: str | None = None,
    details: dict[str, Any] | None = None,
    success: bool = True,
) -> None:
    """Append an authentication event to the audit trail with timestamp and signature.

    Args:
        event_type: Type of event (login, logout, sync, ...)
        username: Directory username the event concerns
        source_ip: Remote address of the end user, when known
        details: Additional context (reject reason, group changes, ...)
        success: Whether the operation succeeded
    """
    _ensure_audit_dir()

    event = {
        "timestamp": datetime.datetime.now(datetime.timezone.utc).isoformat(),
        "event_type": event_type,
        "username": username,
        "source_ip": source_ip,
        "success": success,
        "details": details or {},
    }

    signature = _sign_event(event)
    if signature:
        event["signature"] = signature

    # Append to JSONL file (one JSON object per line)
    with AUDIT_LOG_FILE.open("a", encoding="utf-8") as f:
        f.write(json.dumps(event, ensure_ascii=False) + "\n")

    AUDIT_LOG_FILE.chmod(0o600)


def safe_log_auth_event(
    event_type: EventType,
    username: str,
    *,
    source_ip: str | None = None,
    details: dict[str, Any] | None = None,
    success: bool = True,
) -> bool:
    """Log an authentication event, never raising.

    Audit failures must not turn a successful login into a failed one.

    Returns:
        True if event was logged successfully, False if logging failed
    """
    try:
        log_auth_event(
            event_type,
            username,
            source_ip=source_ip,
            details=details,
            success=success,
        )
        return True
    except Exception as e:
        logger.warning(f"Failed to log {event_type} audit event for {username}: {e}")
        return False


def verify_audit_log() -> tuple[int, int]:
    """Verify all signatures in the audit log.

    Returns:
        Tuple of (total_events, valid_signatures)
    """
    if not AUDIT_LOG_FILE.exists():
        return 0, 0

    total = 0
    valid = 0

    with AUDIT_LOG_FILE.open("r", encoding="utf-8") as f:
        for line in f:
            if not line.strip():
                continue
            total += 1
            try:
                event = json.loads(line)
                stored_sig = event.pop("signature", "")
                if not stored_sig:
                    continue
                computed_sig = _sign_event(event)
                if hmac.compare_digest(stored_sig, computed_sig):
                    valid += 1
            except (json.JSONDecodeError, KeyError):
                continue

    return total, valid
