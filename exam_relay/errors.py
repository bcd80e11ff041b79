"""
Error taxonomy for the relay.

Every error carries the HTTP status it maps to; the app turns them into
``{"error": message}`` responses.
"""


class RelayError(Exception):
    """Base class for errors that are reported to the caller."""

    status_code = 500

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ValidationError(RelayError):
    """Malformed, missing or oversized input."""

    status_code = 400

    def __init__(self, message: str, field: str = None):
        super().__init__(message)
        self.field = field


class AuthError(RelayError):
    status_code = 401


class RateLimitError(RelayError):
    status_code = 429

    def __init__(self, message: str, identity: str = None, retry_after: int = None):
        super().__init__(message)
        self.identity = identity
        self.retry_after = retry_after


class ConfigError(RelayError):
    """A required secret or setting is missing on the server."""

    status_code = 500


class UpstreamError(RelayError):
    """The model API failed or answered with something unusable."""

    status_code = 500


class ExtractionError(UpstreamError):
    """No JSON object could be recovered from the model output."""

    def __init__(self, message: str = "Model did not return valid JSON.", preview: str = ""):
        super().__init__(message)
        self.preview = preview
