from crowd_auth import audit
from crowd_auth.bootstrap import create_client, create_validator
from crowd_auth.config.settings import CrowdConfig
from crowd_auth.core.crowd import CrowdDirectory
from crowd_auth.core.session_validator import SessionValidator


def make_config(tmp_path, **overrides):
    base = dict(
        demo_mode=True,
        crowd_url="https://crowd.example.com/crowd",
        crowd_app_name="portal",
        crowd_app_password="secret",
        request_timeout=2.0,
        max_retries=1,
        refresh_interval=120,
        database_url=f"sqlite:///{tmp_path / 'state' / 'crowd.db'}",
        audit_log_dir=str(tmp_path / "audit"),
    )
    base.update(overrides)
    return CrowdConfig(**base)


def test_create_client_applies_transport_settings(tmp_path):
    client = create_client(make_config(tmp_path))
    assert client.timeout == 2.0
    assert client.session.get_adapter("https://crowd.example.com").max_retries.total == 1
    assert client.url_for("/1/user") == "https://crowd.example.com/crowd/rest/usermanagement/1/user"


def test_create_validator_wires_store_and_audit(tmp_path, monkeypatch):
    monkeypatch.setattr(audit, "AUDIT_LOG_DIR", audit.AUDIT_LOG_DIR)
    monkeypatch.setattr(audit, "AUDIT_LOG_FILE", audit.AUDIT_LOG_FILE)

    validator = create_validator(make_config(tmp_path))

    assert isinstance(validator, SessionValidator)
    assert isinstance(validator.directory, CrowdDirectory)
    assert validator.refresh_interval.total_seconds() == 120
    assert (tmp_path / "state" / "crowd.db").exists()
    assert audit.AUDIT_LOG_FILE == tmp_path / "audit" / "auth-events.jsonl"
    assert validator.store.group_names() == []
