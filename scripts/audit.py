"""Signed audit trail of provisioning, propagation and reconciliation events.

Records are appended as JSON lines to ``AUDIT_LOG_FILE``; each carries an
HMAC-SHA256 signature over its canonical form when a signing key is set.

Signing key lookup:
    1. AUDIT_LOG_SIGNING_KEY (set but empty disables signing)
    2. AUDIT_LOG_SIGNING_KEY_FILE
    3. /run/secrets/audit_log_signing_key
"""

from __future__ import annotations
import datetime
import hashlib
import hmac
import json
import os
import sys
import threading
from pathlib import Path
from typing import Any, Iterator, Literal

AUDIT_LOG_DIR = Path(os.environ.get("AUDIT_LOG_DIR", ".runtime/audit"))
AUDIT_LOG_FILE = AUDIT_LOG_DIR / "idm-events.jsonl"

SIGNING_KEY_SECRET = Path("/run/secrets/audit_log_signing_key")

Category = Literal["LOGIC", "PROPAGATION", "PULL", "PUSH", "REMEDIATION", "TASK"]
Result = Literal["SUCCESS", "FAILURE"]

# Propagation workers append concurrently
_write_lock = threading.Lock()


def _signing_key() -> bytes:
    if "AUDIT_LOG_SIGNING_KEY" in os.environ:
        return os.environ["AUDIT_LOG_SIGNING_KEY"].strip().encode("utf-8")

    candidates = [SIGNING_KEY_SECRET]
    if os.environ.get("AUDIT_LOG_SIGNING_KEY_FILE"):
        candidates.insert(0, Path(os.environ["AUDIT_LOG_SIGNING_KEY_FILE"]))
    for path in candidates:
        try:
            if path.exists():
                return path.read_text(encoding="utf-8").strip().encode("utf-8")
        except OSError:
            continue
    return b""


def _sign(record: dict[str, Any]) -> str:
    key = _signing_key()
    if not key:
        return ""
    canonical = json.dumps(record, sort_keys=True, separators=(",", ":"), default=str)
    return hmac.new(key, canonical.encode("utf-8"), hashlib.sha256).hexdigest()


def log_audit_event(
    category: Category,
    subcategory: str,
    event: str,
    *,
    result: Result = "SUCCESS",
    who: str = "system",
    key: str | None = None,
    before: Any = None,
    after: Any = None,
    output: Any = None,
) -> None:
    """Append a signed audit record.

    Args:
        category: Area emitting the record (LOGIC, PROPAGATION, PULL...)
        subcategory: Entity kind or resource the record is about
        event: Operation name (create, update, delete, link...)
        result: SUCCESS or FAILURE
        who: Who performed the operation (username, "cli", "system")
        key: Key of the entity affected
        before: Pre-image of the entity or remote object
        after: Post-image of the entity or remote object
        output: Operation output or failure reason
    """
    record = {
        "timestamp": datetime.datetime.now(datetime.timezone.utc).isoformat(),
        "category": category,
        "subcategory": subcategory,
        "event": event,
        "result": result,
        "who": who,
        "key": key,
        "before": before,
        "after": after,
        "output": output,
    }
    # Signed in the form it is read back (dates, sets... become strings)
    record = json.loads(json.dumps(record, default=str))
    signature = _sign(record)
    if signature:
        record["signature"] = signature
    line = json.dumps(record, ensure_ascii=False) + "\n"

    with _write_lock:
        AUDIT_LOG_DIR.mkdir(parents=True, exist_ok=True)
        AUDIT_LOG_DIR.chmod(0o700)
        with AUDIT_LOG_FILE.open("a", encoding="utf-8") as f:
            f.write(line)
        AUDIT_LOG_FILE.chmod(0o600)


def safe_log_audit_event(category: Category, subcategory: str, event: str, **kwargs: Any) -> bool:
    """Log an audit record, reporting failures on stderr instead of raising.

    Provisioning code uses this so that a full disk never fails the
    operation being audited.
    """
    try:
        log_audit_event(category, subcategory, event, **kwargs)
        return True
    except Exception as e:
        print(f"[audit] Warning: Failed to log {category}/{subcategory}/{event}: {e}", file=sys.stderr)
        return False


def iter_audit_events(category: str | None = None, subcategory: str | None = None) -> Iterator[dict]:
    """Yield parsed records, optionally restricted to one category/subcategory.

    Unparseable lines are skipped.
    """
    if not AUDIT_LOG_FILE.exists():
        return
    with AUDIT_LOG_FILE.open("r", encoding="utf-8") as f:
        for line in f:
            if not line.strip():
                continue
            try:
                record = json.loads(line)
            except json.JSONDecodeError:
                continue
            if category and record.get("category") != category:
                continue
            if subcategory and record.get("subcategory") != subcategory:
                continue
            yield record


def verify_audit_log() -> tuple[int, int]:
    """Check every signature of the trail.

    Returns:
        Tuple of (total_events, valid_signatures); unparseable lines count
        as events without a valid signature
    """
    if not AUDIT_LOG_FILE.exists():
        return 0, 0

    with AUDIT_LOG_FILE.open("r", encoding="utf-8") as f:
        lines = [line for line in f if line.strip()]

    valid = 0
    for line in lines:
        try:
            record = json.loads(line)
        except json.JSONDecodeError:
            continue
        stored = record.pop("signature", "")
        if stored and hmac.compare_digest(stored, _sign(record)):
            valid += 1
    return len(lines), valid


if __name__ == "__main__":
    total, valid = verify_audit_log()
    print(f"Audit log: {valid}/{total} events with valid signatures")
    sys.exit(0 if total == valid else 1)
