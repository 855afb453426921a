"""Error taxonomy shared by ingestion, dashboard and authentication"""
from typing import Optional


class LetterboxError(Exception):
    """Base error carrying the client message and the operator detail.

    `message` is what the client sees (translated later by the renderer),
    `detail` only goes to the server log.
    """

    status_code = 500

    def __init__(
        self,
        message: str,
        detail: str = "",
        status_code: Optional[int] = None,
        redirect: Optional[int] = None,
        clear_cookie: bool = False,
    ):
        super().__init__(detail or message)
        self.message = message
        self.detail = detail or message
        if status_code is not None:
            self.status_code = status_code
        self.redirect = redirect
        self.clear_cookie = clear_cookie


class ValidationError(LetterboxError):
    """Malformed JSON, missing field or rejected identifier."""

    status_code = 500


class AuthError(LetterboxError):
    """Unknown device, bad credential, invalid session or token, failed CAPTCHA."""

    status_code = 401


class ConfigurationError(LetterboxError):
    """Missing data directory, unwritable storage or missing config key."""

    status_code = 500

    def __init__(self, detail: str):
        super().__init__("Major configuration problem (investigate error log)", detail)


class TransientExternalError(LetterboxError):
    """External service unreachable; callers skip the check instead of failing."""

    status_code = 503


class NotFound(LetterboxError):
    status_code = 404
