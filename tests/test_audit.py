"""Unit tests for the signed audit trail."""

import json

from scripts import audit


def _read(audit_file):
    with audit_file.open("r") as f:
        return [json.loads(line) for line in f if line.strip()]


def test_log_audit_event_creates_file(temp_audit_dir):
    """Test that logging creates the audit file."""
    _, audit_file = temp_audit_dir

    assert not audit_file.exists()

    audit.log_audit_event("LOGIC", "USER", "create", who="admin", key="u1", after={"username": "jdoe"})

    assert audit_file.exists()
    assert audit_file.stat().st_mode & 0o777 == 0o600


def test_logged_event_shape(temp_audit_dir):
    """Test that logged events carry every field plus a signature."""
    _, audit_file = temp_audit_dir

    audit.log_audit_event(
        "PROPAGATION",
        "ldap",
        "update",
        result="FAILURE",
        who="system",
        key="u1",
        before={"fiql": "uid==jdoe"},
        output="Connection refused",
    )

    event = _read(audit_file)[0]
    assert event["category"] == "PROPAGATION"
    assert event["subcategory"] == "ldap"
    assert event["event"] == "update"
    assert event["result"] == "FAILURE"
    assert event["before"] == {"fiql": "uid==jdoe"}
    assert event["after"] is None
    assert event["output"] == "Connection refused"
    assert "timestamp" in event
    assert "signature" in event


def test_log_multiple_events(temp_audit_dir):
    """Test logging multiple events in sequence."""
    _, audit_file = temp_audit_dir

    for category, event in [("PULL", "create"), ("PULL", "update"), ("PUSH", "delete"), ("TASK", "hr-pull")]:
        audit.log_audit_event(category, "hr", event)

    events = _read(audit_file)
    assert [e["event"] for e in events] == ["create", "update", "delete", "hr-pull"]
    assert events[2]["category"] == "PUSH"


def test_verify_audit_log_with_valid_signatures(temp_audit_dir):
    """Test signature verification for valid events."""
    for i in range(5):
        audit.log_audit_event("LOGIC", "USER", "create", key=f"user{i}")

    total, valid = audit.verify_audit_log()
    assert total == 5
    assert valid == 5


def test_non_json_values_are_signed_as_read_back(temp_audit_dir):
    """Dates and sets are stringified before signing, so verification still holds."""
    import datetime

    audit.log_audit_event("TASK", "pull", "hr-pull", output={"when": datetime.datetime(2024, 1, 1)})

    assert audit.verify_audit_log() == (1, 1)


def test_verify_audit_log_detects_tampering(temp_audit_dir):
    """Test that signature verification detects tampered events."""
    _, audit_file = temp_audit_dir

    audit.log_audit_event("LOGIC", "USER", "delete", who="alice", key="u1")

    event = _read(audit_file)[0]
    event["who"] = "mallory"
    with audit_file.open("w") as f:
        f.write(json.dumps(event) + "\n")

    total, valid = audit.verify_audit_log()
    assert total == 1
    assert valid == 0


def test_log_event_without_signing_key(temp_audit_dir, monkeypatch):
    """Test logging when no signing key is configured."""
    monkeypatch.setenv("AUDIT_LOG_SIGNING_KEY", "")
    _, audit_file = temp_audit_dir

    audit.log_audit_event("LOGIC", "GROUP", "create")

    event = _read(audit_file)[0]
    assert "signature" not in event or event["signature"] == ""


def test_safe_log_never_raises(temp_audit_dir, monkeypatch):
    """Audit failures are reported, not raised."""
    def boom(*args, **kwargs):
        raise OSError("disk full")

    monkeypatch.setattr(audit, "log_audit_event", boom)

    assert audit.safe_log_audit_event("PULL", "hr", "create") is False


def test_audit_directory_permissions(temp_audit_dir):
    """Test that audit directory has restricted permissions."""
    audit_dir, _ = temp_audit_dir

    audit.log_audit_event("REMEDIATION", "USER", "delete")

    assert audit_dir.stat().st_mode & 0o777 == 0o700


def test_verify_empty_audit_log(temp_audit_dir):
    """Test verification when no events exist."""
    total, valid = audit.verify_audit_log()
    assert total == 0
    assert valid == 0


def test_iter_audit_events_filters(temp_audit_dir):
    """Test reading the trail back by category and subcategory."""
    _, audit_file = temp_audit_dir
    audit.log_audit_event("PROPAGATION", "ldap", "create", key="u1")
    audit.log_audit_event("PROPAGATION", "crm", "create", key="u1")
    audit.log_audit_event("PULL", "hr", "update", key="u2")
    with audit_file.open("a") as f:
        f.write("not json\n")

    assert [e["subcategory"] for e in audit.iter_audit_events("PROPAGATION")] == ["ldap", "crm"]
    assert [e["key"] for e in audit.iter_audit_events(subcategory="hr")] == ["u2"]
    assert len(list(audit.iter_audit_events())) == 3
    assert audit.verify_audit_log() == (4, 3)


def test_signing_key_from_file(temp_audit_dir, monkeypatch, tmp_path):
    """Test that the key file is used when the variable is not set."""
    key_file = tmp_path / "audit_key"
    key_file.write_text("file-key\n")
    monkeypatch.delenv("AUDIT_LOG_SIGNING_KEY")
    monkeypatch.setenv("AUDIT_LOG_SIGNING_KEY_FILE", str(key_file))
    monkeypatch.setattr(audit, "SIGNING_KEY_SECRET", tmp_path / "missing")

    audit.log_audit_event("TASK", "push", "ldap-push")

    assert audit.verify_audit_log() == (1, 1)
    key_file.write_text("rotated-key\n")
    assert audit.verify_audit_log() == (1, 0)
