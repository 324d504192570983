"""Wiring: build the directory client, store and validator from settings."""
from __future__ import annotations
from pathlib import Path
from typing import Optional

from crowd_auth import audit
from crowd_auth.config.settings import CrowdConfig, load_settings
from crowd_auth.core.crowd import CrowdClient, CrowdDirectory
from crowd_auth.core.session_validator import SessionValidator
from crowd_auth.core.sync_service import IdentitySyncEngine
from crowd_auth.store.repository import IdentityStore


def create_client(config: CrowdConfig) -> CrowdClient:
    return CrowdClient(
        config.crowd_url,
        config.crowd_app_name,
        config.crowd_app_password,
        timeout=config.request_timeout,
        max_retries=config.max_retries,
        max_redirects=config.max_redirects,
        user_agent=config.user_agent,
    )


def create_store(config: CrowdConfig, create_schema: bool = True) -> IdentityStore:
    """Open the identity store, creating the SQLite parent directory when needed."""
    prefix = "sqlite:///"
    if config.database_url.startswith(prefix) and config.database_url != "sqlite:///:memory:":
        Path(config.database_url[len(prefix):]).parent.mkdir(parents=True, exist_ok=True)
    store = IdentityStore.from_url(config.database_url)
    if create_schema:
        store.create_schema()
    return store


def create_validator(config: Optional[CrowdConfig] = None) -> SessionValidator:
    """Build a ready-to-use SessionValidator.

    Args:
        config: Settings; loaded from the environment when omitted

    Returns:
        SessionValidator wired to a CrowdDirectory and a local IdentityStore
    """
    config = config or load_settings()
    audit.configure(config.audit_log_dir)
    store = create_store(config)
    directory = CrowdDirectory(create_client(config))
    return SessionValidator(
        directory,
        IdentitySyncEngine(store),
        store,
        refresh_interval=config.refresh_interval,
    )
