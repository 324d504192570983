"""Low-level HTTP client for the Crowd REST API.

Handles application authentication, default headers, bounded retries,
redirects and response decoding.

Every session is assembled by applying ``REQUEST_PIPELINE`` in order:

1. ``_apply_auth``            HTTP Basic credentials of the calling application
2. ``_apply_header_defaults`` Accept / Content-Type JSON and the User-Agent
3. ``_apply_retry``           urllib3 ``Retry`` mounted on the transport adapter
4. ``_apply_redirects``       redirect following with an upper bound
5. ``_apply_decoding``        gzip/deflate negotiation, decoded by requests

Auth and headers are attached to the session before the retrying adapter is
mounted, so a retried request is re-sent with the same credentials. Bodies
are decoded only once the final (post-redirect) response is in hand.
"""
from __future__ import annotations
import logging
import re
from typing import Any, Callable, Dict, Optional, Tuple
from urllib.parse import quote

import requests
from requests.adapters import HTTPAdapter
from requests.auth import HTTPBasicAuth
from urllib3.util.retry import Retry

from .exceptions import DirectoryUnavailableError, MalformedResponseError

logger = logging.getLogger(__name__)

REST_BASE_PATH = "/rest/usermanagement"
REQUEST_TIMEOUT = 5
DEFAULT_MAX_RETRIES = 2
DEFAULT_MAX_REDIRECTS = 5
DEFAULT_USER_AGENT = "crowd-auth/1.0 (python-requests)"

# Only idempotent reads and deletes are ever re-sent.
RETRYABLE_METHODS = frozenset({"GET", "DELETE"})
RETRYABLE_STATUSES = frozenset({500, 502, 503, 504})

_SESSION_PATH = re.compile(r"(/1/session/)[^/?]+")


class CrowdClient:
    """HTTP client for the Crowd REST API authenticated as an application.

    Features:
    - Ordered request pipeline (auth, headers, retry, redirect, decode)
    - Bounded retries on connection errors and 5xx for GET/DELETE only
    - POST requests are sent exactly once (credentials are never re-submitted)
    - Centralized transport error handling

    Usage:
        client = CrowdClient("https://crowd.example.com/crowd", "my-app", "app-secret")
        response = client.get("/1/user", params={"username": "alice"})
    """

    def __init__(
        self,
        base_url: str,
        app_name: str,
        app_password: str,
        *,
        timeout: float = REQUEST_TIMEOUT,
        max_retries: int = DEFAULT_MAX_RETRIES,
        max_redirects: int = DEFAULT_MAX_REDIRECTS,
        user_agent: str = DEFAULT_USER_AGENT,
    ):
        """Initialize Crowd client.

        Args:
            base_url: Crowd server URL, e.g. https://crowd.example.com/crowd
            app_name: Application name registered in Crowd
            app_password: Application password registered in Crowd
            timeout: Per-request timeout in seconds
            max_retries: Retry budget for transient faults on GET/DELETE
            max_redirects: Maximum redirects followed per request
            user_agent: User-Agent header value
        """
        self.base_url = base_url.rstrip("/")
        self.app_name = app_name
        self.timeout = timeout
        self.max_retries = max_retries
        self.max_redirects = max_redirects
        self.user_agent = user_agent
        self._app_password = app_password
        self.session = build_session(self, retries=max_retries)
        self.single_shot_session = build_session(self, retries=0)

    def url_for(self, path: str) -> str:
        """Return the absolute URL for a path below /rest/usermanagement."""
        return f"{self.base_url}{REST_BASE_PATH}{path}"

    def get(self, path: str, params: Optional[Dict[str, Any]] = None) -> requests.Response:
        """Execute GET request (retried on transient faults).

        Args:
            path: API endpoint path (e.g., "/1/user")
            params: Query parameters

        Returns:
            Response object (4xx responses are returned, not raised)

        Raises:
            DirectoryUnavailableError: On transport failure or 5xx
        """
        return self._send(self.session, "GET", path, params=params)

    def post(self, path: str, json: Optional[Dict[str, Any]] = None) -> requests.Response:
        """Execute POST request exactly once.

        Args:
            path: API endpoint path
            json: JSON payload

        Returns:
            Response object (4xx responses are returned, not raised)

        Raises:
            DirectoryUnavailableError: On transport failure or 5xx
        """
        return self._send(self.single_shot_session, "POST", path, json=json)

    def delete(self, path: str) -> requests.Response:
        """Execute DELETE request (retried on transient faults).

        Raises:
            DirectoryUnavailableError: On transport failure or 5xx
        """
        return self._send(self.session, "DELETE", path)

    def _send(self, session: requests.Session, method: str, path: str, **kwargs) -> requests.Response:
        url = self.url_for(path)
        endpoint = redact_path(path)
        try:
            resp = session.request(method, url, timeout=self.timeout, allow_redirects=True, **kwargs)
        except requests.exceptions.RetryError as e:
            # Retry budget exhausted on a 5xx status
            logger.warning(f"Crowd {method} {endpoint} exhausted retries")
            raise DirectoryUnavailableError(503, "retries exhausted", endpoint) from e
        except requests.RequestException as e:
            logger.warning(f"Crowd {method} {endpoint} transport failure: {e.__class__.__name__}")
            raise DirectoryUnavailableError(0, e.__class__.__name__, endpoint) from e
        self._handle_error(resp, endpoint)
        return resp

    def _handle_error(self, resp: requests.Response, endpoint: str) -> None:
        """Centralized error handling for HTTP responses.

        Only server-side faults raise; client errors (4xx) carry meaning
        (bad credentials, unknown user) and are mapped by the caller.
        The response body is not kept: it may echo request data.

        Args:
            resp: Response object to check
            endpoint: Redacted request path used in logs and errors

        Raises:
            DirectoryUnavailableError: If response status indicates a server fault
        """
        if resp.status_code >= 500:
            logger.error(f"Crowd returned {resp.status_code} for {endpoint}")
            raise DirectoryUnavailableError(resp.status_code, resp.reason or "server error", endpoint)
        if resp.status_code in (401, 403):
            # Crowd rejects the *application* credentials with 401/403
            logger.warning(f"Crowd refused application '{self.app_name}' ({resp.status_code}) for {endpoint}")


def redact_path(path: str) -> str:
    """Mask the SSO token segment of a session path or URL."""
    return _SESSION_PATH.sub(r"\1<token>", path)


def quote_segment(value: str) -> str:
    """Percent-encode a value used as a single URL path segment."""
    return quote(value, safe="")


def json_body(resp: requests.Response) -> Dict[str, Any]:
    """Decode a JSON object body or raise MalformedResponseError."""
    try:
        data = resp.json()
    except ValueError as e:
        raise MalformedResponseError(redact_path(resp.url or ""), f"invalid JSON body: {e.__class__.__name__}") from e
    if not isinstance(data, dict):
        raise MalformedResponseError(redact_path(resp.url or ""), f"expected JSON object, got {type(data).__name__}")
    return data


# ─────────────────────────────────────────────────────────────────────────────
# Request pipeline
# ─────────────────────────────────────────────────────────────────────────────
def _apply_auth(session: requests.Session, client: CrowdClient, retries: int) -> None:
    session.auth = HTTPBasicAuth(client.app_name, client._app_password)


def _apply_header_defaults(session: requests.Session, client: CrowdClient, retries: int) -> None:
    session.headers.update({
        "Accept": "application/json",
        "Content-Type": "application/json",
        "User-Agent": client.user_agent,
    })


def _apply_retry(session: requests.Session, client: CrowdClient, retries: int) -> None:
    retry = Retry(
        total=retries,
        connect=retries,
        read=retries,
        status=retries,
        redirect=None,
        backoff_factor=0.2,
        status_forcelist=RETRYABLE_STATUSES,
        allowed_methods=RETRYABLE_METHODS,
        raise_on_status=True,
        raise_on_redirect=False,
        respect_retry_after_header=False,
    )
    adapter = HTTPAdapter(max_retries=retry)
    session.mount("http://", adapter)
    session.mount("https://", adapter)


def _apply_redirects(session: requests.Session, client: CrowdClient, retries: int) -> None:
    session.max_redirects = client.max_redirects


def _apply_decoding(session: requests.Session, client: CrowdClient, retries: int) -> None:
    session.headers["Accept-Encoding"] = "gzip, deflate"


PipelineStep = Callable[[requests.Session, CrowdClient, int], None]

REQUEST_PIPELINE: Tuple[PipelineStep, ...] = (
    _apply_auth,
    _apply_header_defaults,
    _apply_retry,
    _apply_redirects,
    _apply_decoding,
)


def build_session(client: CrowdClient, retries: int) -> requests.Session:
    """Create a session configured by every step of REQUEST_PIPELINE, in order."""
    session = requests.Session()
    for step in REQUEST_PIPELINE:
        step(session, client, retries)
    return session
