"""Crowd-specific exceptions for error handling."""


class CrowdError(Exception):
    """Base exception for all Crowd directory operations."""
    pass


class CrowdAPIError(CrowdError):
    """HTTP error from the Crowd REST API.
    
    Attributes:
        status_code: HTTP status code (0 when no response was received)
        message: Error message from response or transport
        endpoint: API endpoint that failed
    """
    
    def __init__(self, status_code: int, message: str, endpoint: str):
        self.status_code = status_code
        self.message = message
        self.endpoint = endpoint
        super().__init__(f"[{status_code}] {endpoint}: {message}")


class DirectoryUnavailableError(CrowdAPIError):
    """Transient fault: connection failure or 5xx after retries were exhausted."""
    pass


class MalformedResponseError(CrowdError):
    """Directory answered with a body that does not match the expected shape."""
    
    def __init__(self, endpoint: str, detail: str):
        self.endpoint = endpoint
        self.detail = detail
        super().__init__(f"{endpoint}: {detail}")
