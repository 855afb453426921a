"""CAPTCHA protection for the login form

External services are verified over HTTPS; the `internal` service renders a
distorted-text image and keeps only a hash of the answer in the session cookie.
"""
import base64
import io
import logging
import random
import secrets
from typing import Optional
from urllib.parse import unquote

import httpx
from PIL import Image, ImageDraw, ImageFilter, ImageFont

from auth import sha512_base64, session_failure
from errors import TransientExternalError

logger = logging.getLogger(__name__)

INTERNAL = "internal"

# Service definitions selected by 'userauth.captcha.service'
CAPTCHA_SERVICES = {
    "reCAPTCHA-v3": {
        # https://developers.google.com/recaptcha/docs/v3
        "ScriptURL": "https://www.google.com/recaptcha/api.js?hl=<LANG>",
        "WidgetCode": 'class="g-recaptcha" data-sitekey="<SITEKEY>" data-badge="inline" data-callback="onSubmit" data-action="submit"',
        "VerifyURL": "https://www.google.com/recaptcha/api/siteverify",
        "VerifyPOST": {"secret": "<SECRET>", "response": "<RESPONSE>", "remoteip": "<REMOTEIP>"},
        "ResponseField": "g-recaptcha-response",
        "Invisible": "1",
        "ScriptCode": 'function onSubmit(token) { document.getElementById("submitForm").submit(); };',
    },
    "reCAPTCHA-v2-Invisible": {
        # https://developers.google.com/recaptcha/docs/invisible
        "ScriptURL": "https://www.google.com/recaptcha/api.js?hl=<LANG>",
        "WidgetCode": 'class="g-recaptcha" data-sitekey="<SITEKEY>" data-size="invisible" data-badge="inline" data-callback="onSubmit"',
        "VerifyURL": "https://www.google.com/recaptcha/api/siteverify",
        "VerifyPOST": {"secret": "<SECRET>", "response": "<RESPONSE>", "remoteip": "<REMOTEIP>"},
        "ResponseField": "g-recaptcha-response",
        "Invisible": "1",
        "ScriptCode": 'function onSubmit(token) { document.getElementById("submitForm").submit(); };',
    },
    "reCAPTCHA-v2": {
        # https://developers.google.com/recaptcha/docs/display
        "ScriptURL": "https://www.google.com/recaptcha/api.js?hl=<LANG>",
        "WidgetCode": 'class="g-recaptcha" data-sitekey="<SITEKEY>" data-callback="enableSubmitBtn"',
        "VerifyURL": "https://www.google.com/recaptcha/api/siteverify",
        "VerifyPOST": {"secret": "<SECRET>", "response": "<RESPONSE>", "remoteip": "<REMOTEIP>"},
        "ResponseField": "g-recaptcha-response",
        "Invisible": "0",
        "ScriptCode": 'function enableSubmitBtn() { document.getElementById("submitBtn").disabled = false; };',
    },
    "hCaptcha-Invisible": {
        # https://docs.hcaptcha.com/invisible
        "ScriptURL": "https://js.hcaptcha.com/1/api.js?hl=<LANG>",
        "WidgetCode": 'class="h-captcha" data-sitekey="<SITEKEY>" data-size="invisible" data-callback="onSubmit"',
        "VerifyURL": "https://hcaptcha.com/siteverify",
        "VerifyPOST": {"secret": "<SECRET>", "response": "<RESPONSE>", "sitekey": "<SITEKEY>", "remoteip": "<REMOTEIP>"},
        "ResponseField": "h-captcha-response",
        "Invisible": 'This site is protected by hCaptcha and its<br /> <a target="_blank" href="https://hcaptcha.com/privacy">Privacy Policy</a> and <a target="_blank" href="https://hcaptcha.com/terms">Terms of Service</a> apply.',
        "ScriptCode": 'function onSubmit(token) { document.getElementById("submitForm").submit(); };',
    },
    "hCaptcha": {
        # https://docs.hcaptcha.com/
        "ScriptURL": "https://js.hcaptcha.com/1/api.js?hl=<LANG>",
        "WidgetCode": 'class="h-captcha" data-sitekey="<SITEKEY>" data-callback="enableSubmitBtn"',
        "VerifyURL": "https://hcaptcha.com/siteverify",
        "VerifyPOST": {"secret": "<SECRET>", "response": "<RESPONSE>", "sitekey": "<SITEKEY>", "remoteip": "<REMOTEIP>"},
        "ResponseField": "h-captcha-response",
        "Invisible": "0",
        "ScriptCode": 'function enableSubmitBtn() { document.getElementById("submitBtn").disabled = false; };',
    },
    "FriendlyCaptcha": {
        # https://docs.friendlycaptcha.com/
        "ScriptURL": "https://cdn.jsdelivr.net/npm/friendly-challenge@0.9.1/widget.min.js",
        "WidgetCode": 'class="frc-captcha" data-sitekey="<SITEKEY>" data-lang="<LANG>" data-start="none" data-callback="enableSubmitBtn"',
        "VerifyURL": "https://api.friendlycaptcha.com/api/v1/siteverify",
        "VerifyPOST": {"secret": "<SECRET>", "solution": "<RESPONSE>", "sitekey": "<SITEKEY>"},
        "ResponseField": "frc-captcha-solution",
        "Invisible": "0",
        "ScriptCode": 'function enableSubmitBtn() { document.getElementById("submitBtn").disabled = false; };',
    },
}

# no 0/O, 1/I/L
INTERNAL_ALPHABET = "ABCDEFGHJKMNPQRSTUVWXYZ23456789"
INTERNAL_LENGTH = 5
INTERNAL_RESPONSE_FIELD = "captcha_answer"


def internal_answer_hash(server_uuid: str, issued: int, rand: str, answer: str) -> str:
    """Bind the answer to the login session it was served with."""
    return sha512_base64(f"uuid={server_uuid}:time={issued}:random={rand}:captcha={answer.strip().upper()}")


def render_internal_image(answer: str, rng: Optional[random.Random] = None) -> bytes:
    """Distorted-text PNG for the given answer."""
    rng = rng or random.SystemRandom()
    width, height = 40 * len(answer) + 20, 70
    image = Image.new("RGB", (width, height), (245, 245, 240))
    font = ImageFont.load_default()

    for index, char in enumerate(answer):
        glyph = Image.new("L", (12, 14), 0)
        ImageDraw.Draw(glyph).text((2, 1), char, fill=255, font=font)
        glyph = glyph.resize((36, 42), Image.NEAREST).rotate(rng.uniform(-30, 30), expand=True)
        color = tuple(rng.randint(0, 110) for _ in range(3))
        x = 10 + index * 40 + rng.randint(-4, 4)
        y = (height - glyph.height) // 2 + rng.randint(-6, 6)
        image.paste(Image.new("RGB", glyph.size, color), (x, y), glyph)

    draw = ImageDraw.Draw(image)
    for _ in range(6):
        draw.line(
            [(rng.randint(0, width), rng.randint(0, height)) for _ in range(2)],
            fill=tuple(rng.randint(80, 200) for _ in range(3)),
            width=2,
        )
    for _ in range(width * 2):
        draw.point((rng.randint(0, width - 1), rng.randint(0, height - 1)), fill=(90, 90, 90))
    image = image.filter(ImageFilter.SMOOTH)

    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


class Captcha:
    """Configured CAPTCHA service."""

    def __init__(self, service: str, sitekey: str = "", secret: str = "", timeout: float = 5.0, debug: bool = False):
        self.service = service
        self.sitekey = sitekey
        self.secret = secret
        self.timeout = timeout
        self.debug = debug
        self.definition = CAPTCHA_SERVICES.get(service, {})

    @classmethod
    def from_config(cls, config, timeout: float = 5.0) -> Optional["Captcha"]:
        """Return the service if enabled and completely configured, otherwise None."""
        if not config.flag("userauth.captcha.enable"):
            return None
        service = config.get("userauth.captcha.service", "")
        if not service:
            logger.warning("userauth/init: captcha enabled, but 'service' missing/empty in config: userauth.captcha.service")
            return None
        debug = config.debug_for("userauth")
        if service == INTERNAL:
            return cls(service, timeout=timeout, debug=debug)
        if service not in CAPTCHA_SERVICES:
            logger.warning(f"userauth/init: captcha service enabled, but not supported: {service}")
            return None
        sitekey = config.get("userauth.captcha.sitekey", "")
        if not sitekey:
            logger.warning("userauth/init: captcha service enabled but 'sitekey' missing/empty in config: userauth.captcha.sitekey")
            return None
        secret = config.get("userauth.captcha.secret", "")
        if not secret:
            logger.warning("userauth/init: captcha service enabled but 'secret' missing/empty in config: userauth.captcha.secret")
            return None
        if debug:
            logger.info(f"userauth/init: captcha service enabled: {service}")
        return cls(service, sitekey, secret, timeout, debug)

    @property
    def internal(self) -> bool:
        return self.service == INTERNAL

    @property
    def response_field(self) -> str:
        if self.internal:
            return INTERNAL_RESPONSE_FIELD
        return self.definition["ResponseField"]

    @property
    def visible(self) -> bool:
        return self.internal or self.definition["Invisible"] == "0"

    def replace_tokens(self, text: str, language: str = "en", response: Optional[str] = None, remote_ip: str = "") -> str:
        text = text.replace("<SITEKEY>", self.sitekey)
        text = text.replace("<SECRET>", self.secret)
        text = text.replace("<LANG>", language)
        text = text.replace("<REMOTEIP>", remote_ip)
        if response is not None:
            text = text.replace("<RESPONSE>", response)
        return text

    def new_internal(self, server_uuid: str, issued: int, rand: str) -> tuple[str, str]:
        """Return (answer hash for the cookie, PNG as data URI)."""
        answer = "".join(secrets.choice(INTERNAL_ALPHABET) for _ in range(INTERNAL_LENGTH))
        png = render_internal_image(answer)
        data_uri = "data:image/png;base64," + base64.b64encode(png).decode()
        return internal_answer_hash(server_uuid, issued, rand, answer), data_uri

    async def check(
        self,
        form: dict,
        cookie: dict,
        server_uuid: str,
        issued: int,
        username: str,
        remote_ip: str = "",
        language: str = "en",
    ) -> str:
        """Verify the visitor's response; raises AuthError, returns the check result."""
        response = form.get(self.response_field)
        if response is None:
            raise session_failure(
                "Login failed",
                f"user '{username}' captcha response missing in POST data: {self.response_field}",
                language,
            )
        response = unquote(response)
        if response == "":
            raise session_failure(
                "Login failed",
                f"user '{username}' captcha response empty in POST data field: {self.response_field}",
                language,
            )

        if self.internal:
            expected = cookie.get("captcha", "")
            actual = internal_answer_hash(server_uuid, issued, form.get("rand", ""), response)
            if not expected or not secrets.compare_digest(expected, actual):
                raise captcha_failure(f"user '{username}' captcha answer not matching: {self.service}", language)
            return "OK"

        try:
            content = await self.verify_external(response, remote_ip)
        except TransientExternalError as e:
            # availability wins over this check
            logger.warning(f"user '{username}' captcha: verification request skipped for: {self.service} ({e.detail})")
            return "SERVER-ERROR"
        except ValueError as e:
            raise captcha_failure(f"user '{username}' captcha verification failed: {self.service} ({e})", language)

        if content.get("success") not in (True, 1, "1", "true"):
            if self.debug:
                for key, value in content.items():
                    logger.info(f"user CAPTCHA verification JSON response: {key}={value}")
            raise captcha_failure(
                f"user '{username}' captcha verification not successful: {self.service} (content='{content}')",
                language,
            )

        if self.debug:
            logger.info(f"user '{username}' captcha: verification successful: {self.service}")
        return "OK"

    async def verify_external(self, response: str, remote_ip: str = "") -> dict:
        """POST to the service's verify endpoint and return its JSON answer."""
        url = self.definition["VerifyURL"]
        data = {
            field: self.replace_tokens(value, response=response, remote_ip=remote_ip)
            for field, value in self.definition["VerifyPOST"].items()
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                result = await client.post(url, data=data)
        except httpx.TransportError as e:
            raise TransientExternalError("captcha service unreachable", str(e))

        if result.status_code >= 500:
            raise TransientExternalError("captcha service error", f"status={result.status_code}")
        if result.status_code != 200:
            raise ValueError(f"status={result.status_code}")
        try:
            content = result.json()
        except ValueError:
            raise ValueError("response is not JSON: " + result.text.replace("\n", ""))
        if not isinstance(content, dict):
            raise ValueError("response is not a JSON object")
        return content


def captcha_failure(detail: str, language: str = "en"):
    error = session_failure("Login failed", detail, language)
    error.message += " (CAPTCHA)"
    return error
