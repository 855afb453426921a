"""Request-scoped context threaded through dispatcher, extensions and renderers"""
from dataclasses import dataclass, field
from html import escape
from typing import Optional

from fastapi import Request

from auth import COOKIE_NAME
from models import AuthenticatedUser
from translations import language_from_header

OUTPUT_HTML = "html"
OUTPUT_PLAIN = "plain"
OUTPUT_JSON = "json"


def output_from_header(accept: str) -> str:
    accept = (accept or "").lower()
    if "text/html" in accept:
        return OUTPUT_HTML
    if "application/json" in accept:
        return OUTPUT_JSON
    if "text/plain" in accept:
        return OUTPUT_PLAIN
    return OUTPUT_HTML


@dataclass
class CookieSpec:
    """Set-Cookie instruction for the auth cookie; empty value clears it."""

    value: str = ""
    max_age: Optional[int] = None
    secure: bool = True

    @property
    def clear(self) -> bool:
        return self.value == ""


@dataclass
class PageResult:
    """HTML fragment produced by an extension instead of the dashboard."""

    status_code: int
    body: str
    cookie: Optional[CookieSpec] = None
    redirect: Optional[int] = None


@dataclass
class RequestContext:
    language: str = "en"
    mobile: bool = False
    query: dict[str, str] = field(default_factory=dict)
    remote_addr: str = ""
    https: bool = False
    cookie: Optional[str] = None
    output: str = OUTPUT_HTML
    user: Optional[AuthenticatedUser] = None

    @classmethod
    def from_request(cls, request: Request) -> "RequestContext":
        forwarded_proto = request.headers.get("x-forwarded-proto", "")
        return cls(
            language=language_from_header(request.headers.get("accept-language", "")),
            mobile="Mobile" in request.headers.get("user-agent", ""),
            query=dict(request.query_params),
            remote_addr=request.client.host if request.client else "",
            https=request.url.scheme == "https" or forwarded_proto.lower() == "https",
            cookie=request.cookies.get(COOKIE_NAME),
            output=output_from_header(request.headers.get("accept", "")),
        )

    def param(self, key: str, default: str = "") -> str:
        return self.query.get(key, default)

    def is_on(self, key: str) -> bool:
        return self.query.get(key, "") == "on"

    def hidden_fields(self, *exclude: str) -> str:
        """Hidden inputs that round-trip the other query parameters in GET forms."""
        return "".join(
            f'<input type="hidden" name="{escape(key)}" value="{escape(value)}">'
            for key, value in sorted(self.query.items())
            if key not in exclude
        )
