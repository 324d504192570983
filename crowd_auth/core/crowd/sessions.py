"""Crowd SSO session operations."""
from __future__ import annotations
import logging
from typing import Tuple, Union

from ..models import AuthFailure, Credentials, NotFound, SessionToken
from .client import CrowdClient, json_body, quote_segment, redact_path
from .transformer import CrowdTransformer

logger = logging.getLogger(__name__)


class SessionService:
    """Service for issuing, checking and invalidating Crowd SSO sessions."""

    def __init__(self, client: CrowdClient):
        """Initialize session service.

        Args:
            client: Crowd client authenticated as the application
        """
        self.client = client

    def authenticate(self, credentials: Credentials, source_ip: str) -> Union[SessionToken, AuthFailure]:
        """Authenticate end-user credentials and obtain an SSO token.

        The request is sent once. Success requires HTTP 201 *and* the echoed
        ``user.name`` to equal the submitted username exactly.

        Args:
            credentials: Username and password to check
            source_ip: Remote address the session is bound to

        Returns:
            SessionToken on success, AuthFailure otherwise
        """
        path = "/1/session"
        resp = self.client.post(path, json=CrowdTransformer.authentication_request(credentials, source_ip))
        if resp.status_code != 201:
            return AuthFailure(resp.status_code)

        data = json_body(resp)
        echoed = CrowdTransformer.session_username(data, path)
        if echoed != credentials.username:
            logger.warning(
                f"Crowd session issued for '{echoed}' when '{credentials.username}' authenticated; rejecting"
            )
            return AuthFailure(resp.status_code, "username mismatch in session response")
        return SessionToken(CrowdTransformer.session_token(data, path), source_ip)

    def fetch_session(self, token: str) -> Union[Tuple[str, SessionToken], NotFound]:
        """Look up a session by token.

        Returns:
            (username, SessionToken) when Crowd knows the token and echoes it back
            unchanged, NotFound otherwise
        """
        path = f"/1/session/{quote_segment(token)}"
        resp = self.client.get(path)
        if resp.status_code != 200:
            return NotFound("session", resp.status_code)

        data = json_body(resp)
        if data.get("token") != token:
            logger.warning("Crowd echoed a different token for a session lookup")
            return NotFound("session", resp.status_code)
        return CrowdTransformer.session_username(data, redact_path(path)), SessionToken(token)

    def refresh_session(self, token: str, source_ip: str) -> Union[SessionToken, NotFound]:
        """Re-validate a session against a (possibly new) remote address.

        Returns:
            The SessionToken Crowd hands back, or NotFound
        """
        path = f"/1/session/{quote_segment(token)}"
        resp = self.client.post(path, json=CrowdTransformer.validation_factors(source_ip))
        if resp.status_code != 200:
            return NotFound("session", resp.status_code)
        return SessionToken(CrowdTransformer.session_token(json_body(resp), redact_path(path)), source_ip)

    def invalidate_session(self, token: str) -> bool:
        """Invalidate a session (logout). True only on HTTP 204."""
        resp = self.client.delete(f"/1/session/{quote_segment(token)}")
        if resp.status_code != 204:
            logger.info(f"Crowd session invalidation returned {resp.status_code}")
            return False
        return True
