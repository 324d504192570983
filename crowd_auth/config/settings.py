"""Settings loader with environment variable and Docker secrets integration."""
from __future__ import annotations
import logging
import os
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "crowd-auth/1.0 (python-requests)"


def _load_secret_from_file(secret_name: str, env_var: str | None = None) -> str | None:
    """
    Load secret from /run/secrets (Docker secrets pattern).

    Priority:
    1. /run/secrets/{secret_name} (Docker secrets mount)
    2. Environment variable (fallback)

    Args:
        secret_name: Name of the secret file in /run/secrets
        env_var: Optional environment variable name to check as fallback

    Returns:
        Secret value or None if not found
    """
    secret_file = Path("/run/secrets") / secret_name

    # Priority 1: Read from /run/secrets
    if secret_file.exists() and secret_file.is_file():
        try:
            secret_value = secret_file.read_text().strip()
            if secret_value:
                logger.info(f"Loaded {secret_name} from /run/secrets")
                return secret_value
        except OSError as e:
            logger.warning(f"Failed to read /run/secrets/{secret_name}: {e}")

    # Priority 2: Fallback to environment variable
    if env_var:
        secret_value = os.getenv(env_var)
        if secret_value:
            logger.info(f"Loaded {env_var} from environment (fallback)")
            return secret_value

    return None


@dataclass
class CrowdConfig:
    """Application configuration container."""
    # Mode
    demo_mode: bool

    # Crowd application
    crowd_url: str
    crowd_app_name: str
    crowd_app_password: str

    # Transport
    request_timeout: float = 5.0
    max_retries: int = 2
    max_redirects: int = 5
    user_agent: str = DEFAULT_USER_AGENT

    # Cache
    refresh_interval: int = 60 * 5

    # Local store
    database_url: str = "sqlite:///.runtime/crowd_auth.db"

    # Audit
    audit_log_dir: str = ".runtime/audit"


def _get_or_generate(var_name: str, demo_default: str | None = None, required: bool = True, demo_mode: bool = False) -> str:
    """Get environment variable or use demo default."""
    value = os.environ.get(var_name)
    if value:
        return value

    if demo_mode and demo_default is not None:
        logger.info(f"[demo-mode] Using default for {var_name}")
        return demo_default

    if not required:
        return ""

    raise RuntimeError(f"Environment variable {var_name} is required in production mode.")


def _get_number(var_name: str, default: float, cast=int, minimum: float = 0):
    """Parse a numeric environment variable, rejecting garbage and values below minimum."""
    raw = os.environ.get(var_name)
    if raw is None or raw.strip() == "":
        return cast(default)
    try:
        value = cast(raw.strip())
    except ValueError:
        raise RuntimeError(f"Environment variable {var_name} must be a number, got '{raw}'") from None
    if value < minimum:
        raise RuntimeError(f"Environment variable {var_name} must be >= {minimum}, got {value}")
    return value


def load_settings() -> CrowdConfig:
    """Load application settings from environment and /run/secrets."""
    demo_mode = os.environ.get("DEMO_MODE", "false").lower() == "true"

    crowd_url = _get_or_generate(
        "CROWD_AUTH_APP_URL",
        demo_default="http://crowd.example.com:8080/crowd",
        demo_mode=demo_mode,
    ).rstrip("/")
    crowd_app_name = _get_or_generate(
        "CROWD_AUTH_APP_NAME",
        demo_default="crowd-app-name",
        demo_mode=demo_mode,
    )

    # Application password: /run/secrets first, then environment
    crowd_app_password = _load_secret_from_file("crowd_auth_app_password", "CROWD_AUTH_APP_PASSWORD")
    if not crowd_app_password:
        if demo_mode:
            crowd_app_password = "crowd-app-password"
            logger.info("[demo-mode] Using default CROWD_AUTH_APP_PASSWORD")
        else:
            raise RuntimeError("CROWD_AUTH_APP_PASSWORD not found in /run/secrets or environment")

    # Audit signing key is read lazily by crowd_auth.audit; surface it via env
    audit_log_signing_key = _load_secret_from_file("audit_log_signing_key", "AUDIT_LOG_SIGNING_KEY")
    if audit_log_signing_key:
        os.environ["AUDIT_LOG_SIGNING_KEY"] = audit_log_signing_key
    elif demo_mode:
        os.environ["AUDIT_LOG_SIGNING_KEY"] = "demo-audit-signing-key-change-in-production"
        logger.info("[demo-mode] Using demo AUDIT_LOG_SIGNING_KEY")

    config = CrowdConfig(
        demo_mode=demo_mode,
        crowd_url=crowd_url,
        crowd_app_name=crowd_app_name,
        crowd_app_password=crowd_app_password,
        request_timeout=_get_number("CROWD_AUTH_REQUEST_TIMEOUT", 5.0, cast=float, minimum=0.1),
        max_retries=_get_number("CROWD_AUTH_MAX_RETRIES", 2),
        max_redirects=_get_number("CROWD_AUTH_MAX_REDIRECTS", 5),
        user_agent=os.environ.get("CROWD_AUTH_USER_AGENT", DEFAULT_USER_AGENT),
        refresh_interval=_get_number("CROWD_AUTH_REFRESH_INTERVAL", 60 * 5),
        database_url=os.environ.get("CROWD_AUTH_DATABASE_URL", "sqlite:///.runtime/crowd_auth.db"),
        audit_log_dir=os.environ.get("AUDIT_LOG_DIR", ".runtime/audit"),
    )

    mode_label = "DEMO" if demo_mode else "PRODUCTION"
    logger.info(f"Mode={mode_label}; crowd={config.crowd_url}; app={config.crowd_app_name}; refresh={config.refresh_interval}s")
    if demo_mode:
        logger.warning("Demo Crowd credentials in use. Do not deploy with these defaults.")

    return config
