"""Authentication utilities for the letterbox dashboard

Login is a challenge/response: the served form carries one half of a session
token, a short-lived cookie the other half. A successful login replaces that
cookie with an encrypted long-lived authentication token which pins the
user's password hash, so a password change invalidates outstanding tokens.
"""
import base64
import hashlib
import logging
import os
import re
import secrets
import string
import time
from dataclasses import dataclass
from typing import Optional
from urllib.parse import parse_qsl, quote, unquote, urlencode

from cryptography.fernet import Fernet, InvalidToken
from passlib.context import CryptContext

from errors import AuthError, ConfigurationError
from models import WILDCARD, AuthenticatedUser, UserRecord
from translations import translate

logger = logging.getLogger(__name__)

# bcrypt first, legacy htpasswd digests still verify
pwd_context = CryptContext(
    schemes=["bcrypt", "apr_md5_crypt", "ldap_sha1", "des_crypt"],
    deprecated=["apr_md5_crypt", "ldap_sha1", "des_crypt"],
)

COOKIE_NAME = "TTN-AUTH-TOKEN"
USER_FILE = "ttn.users.list"

SESSION_TOKEN_SPLIT = 40
SESSION_TOKEN_LIFETIME = 300  # seconds
AUTH_TOKEN_LIFETIME = 86400 * 365  # seconds (1y)
AUTH_TOKEN_LIMIT_CHANGEPW = 300  # seconds

SESSION_HALF_PATTERN = re.compile(r"^[0-9A-Za-z=%/+]+$")
TIME_PATTERN = re.compile(r"^[0-9]{10}$")
RAND_PATTERN = re.compile(r"^0\.[0-9]+$")
USERNAME_PATTERN = re.compile(r"^[0-9A-Za-z]+$")
ENC_PATTERN = re.compile(r"^[0-9A-Za-z_\-=]+$")


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    try:
        return pwd_context.verify(plain_password, hashed_password)
    except ValueError:
        # unknown or malformed hash format
        logger.warning("password hash format not supported")
        return False


def sha512_base64(text: str) -> str:
    """SHA-512 digest as unpadded base64."""
    return base64.b64encode(hashlib.sha512(text.encode()).digest()).decode().rstrip("=")


def session_token(server_uuid: str, issued: int, rand: str) -> str:
    return sha512_base64(f"uuid={server_uuid}:time={issued}:random={rand}")


def random_nonce(digits: int = 16) -> str:
    return "0." + "".join(secrets.choice(string.digits) for _ in range(digits))


@dataclass(frozen=True)
class SessionChallenge:
    form_half: str
    cookie_half: str
    issued: int
    rand: str


def issue_challenge(server_uuid: str, now: Optional[float] = None) -> SessionChallenge:
    issued = int(now if now is not None else time.time())
    rand = random_nonce()
    token = session_token(server_uuid, issued, rand)
    return SessionChallenge(
        form_half=token[:SESSION_TOKEN_SPLIT],
        cookie_half=token[SESSION_TOKEN_SPLIT:],
        issued=issued,
        rand=rand,
    )


def session_failure(reason: str, detail: str, language: str = "en") -> AuthError:
    return AuthError(
        f"{translate('Authentication problem', language)} ({translate(reason, language)})",
        detail,
        redirect=10,
        clear_cookie=True,
    )


def verify_session(
    server_uuid: str,
    cookie: dict,
    form: dict,
    now: Optional[float] = None,
    language: str = "en",
) -> int:
    """Check that the login form round-tripped untampered and in time.

    Returns the issue time of the session; raises AuthError otherwise.
    """
    now = now if now is not None else time.time()

    cookie_half = cookie.get("session_token_cookie")
    if cookie_half is None:
        raise session_failure("investigate error log", "cookie data missing: session_token_cookie", language)
    if not SESSION_HALF_PATTERN.match(cookie_half):
        raise session_failure(
            "investigate error log", "cookie data length/format mismatch: session_token_cookie", language
        )

    issued = cookie.get("time")
    if issued is None:
        raise session_failure("investigate error log", "cookie data missing: time", language)
    if not TIME_PATTERN.match(issued):
        raise session_failure("investigate error log", "cookie data length/format mismatch: time", language)

    form_half = form.get("session_token_form")
    if form_half is None:
        raise session_failure("investigate error log", "form data missing: session_token_form", language)
    if not SESSION_HALF_PATTERN.match(form_half):
        raise session_failure(
            "investigate error log", "form data length/format mismatch: session_token_form", language
        )

    rand = form.get("rand")
    if rand is None:
        raise session_failure("investigate error log", "form data missing: rand", language)
    if not RAND_PATTERN.match(rand):
        raise session_failure("investigate error log", "form data length/format mismatch: rand", language)

    reference = session_token(server_uuid, int(issued), rand)
    if not secrets.compare_digest(unquote(form_half) + cookie_half, reference):
        raise session_failure("login session invalid, will be redirected soon", "session invalid", language)

    if int(issued) + SESSION_TOKEN_LIFETIME <= now:
        raise session_failure("login session expired, will be redirected soon", "session expired", language)

    return int(issued)


def encode_cookie(values: dict) -> str:
    """Query-string encode and quote so the cookie value needs no further escaping."""
    return quote(urlencode(values), safe="")


def decode_cookie(value: Optional[str]) -> dict:
    if not value:
        return {}
    return dict(parse_qsl(unquote(value), keep_blank_values=True))


class UserFile:
    """htpasswd-compatible user file, extended by a third field with the device ACL.

    `<username>:<hashed password>:<dev_id>,<dev_id>|*`
    """

    def __init__(self, datadir: str):
        self.path = os.path.join(datadir, USER_FILE)

    def exists(self) -> bool:
        return os.path.isfile(self.path)

    def fetch(self, username: str) -> Optional[UserRecord]:
        if not self.exists():
            raise ConfigurationError(f"no htpasswd user file found: {self.path}")
        with open(self.path, encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line or line.startswith("#"):
                    continue
                fields = line.split(":", 2)
                if len(fields) < 2 or fields[0] != username:
                    continue
                acl = frozenset()
                if len(fields) == 3 and fields[2].strip():
                    acl = frozenset(d.strip() for d in fields[2].split(",") if d.strip())
                return UserRecord(username=username, password_hash=fields[1], acl=acl)
        return None


class AuthTokenCipher:
    """Symmetric encryption of the authentication token, keyed by the server UUID."""

    def __init__(self, server_uuid: str):
        key = hashlib.sha512(server_uuid.encode()).digest()[:32]
        self._fernet = Fernet(base64.urlsafe_b64encode(key))

    def encrypt(self, username: str, password_hash: str, now: Optional[float] = None) -> str:
        issued = int(now if now is not None else time.time())
        plaintext = urlencode(
            {
                "time": issued,
                "expiry": issued + AUTH_TOKEN_LIFETIME,
                "username": username,
                "password_hash": password_hash,
            }
        )
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, token: str) -> dict:
        try:
            plaintext = self._fernet.decrypt(token.encode())
        except InvalidToken:
            raise session_failure("investigate error log", "authentication token cannot be decrypted")
        return dict(parse_qsl(plaintext.decode(), keep_blank_values=True))


def check_acl(user: Optional[AuthenticatedUser], dev_id: str) -> bool:
    """True if the user may view the device; no user or empty ACL denies."""
    if not dev_id:
        raise ValueError("dev_id missing")
    if user is None or not user.acl:
        return False
    return WILDCARD in user.acl or dev_id in user.acl


class AuthService:
    """Login generation/verification, token verification and ACL checks."""

    def __init__(self, server_uuid: str, datadir: str, captcha=None):
        if not server_uuid:
            raise ConfigurationError("no UUID stored in configuration file")
        self.server_uuid = server_uuid
        self.users = UserFile(datadir)
        self.cipher = AuthTokenCipher(server_uuid)
        self.captcha = captcha

    def new_session(self, now: Optional[float] = None) -> tuple[SessionChallenge, dict]:
        """Fresh challenge plus the cookie fields that go with it."""
        challenge = issue_challenge(self.server_uuid, now)
        cookie = {"session_token_cookie": challenge.cookie_half, "time": challenge.issued}
        return challenge, cookie

    async def verify_login(
        self,
        form: dict,
        cookie: dict,
        language: str = "en",
        remote_ip: str = "",
        now: Optional[float] = None,
    ) -> tuple[str, UserRecord]:
        """Run the whole login verification, returning the new auth cookie value."""
        if not cookie:
            raise session_failure(
                "login session expired or cookies disabled, will be redirected soon",
                "session expired (no cookie)",
                language,
            )

        username = form.get("username")
        password = form.get("password")

        issued = verify_session(self.server_uuid, cookie, form, now, language)

        if username is None or username == "":
            raise session_failure("username empty", "form data missing: username", language)
        if not USERNAME_PATTERN.match(username):
            raise session_failure("investigate error log", "form data length/format mismatch: username", language)
        if password is None or password == "":
            raise session_failure("password empty", "form data missing: password", language)

        if not self.users.exists():
            raise session_failure("investigate error log", f"no htpasswd user file found: {self.users.path}", language)

        captcha_result = "NOT-ENABLED"
        if self.captcha is not None:
            captcha_result = await self.captcha.check(
                form, cookie, self.server_uuid, issued, username, remote_ip, language
            )

        user = self.users.fetch(username)
        if user is None:
            raise session_failure(
                "username/password not accepted",
                f"user not found in file: {self.users.path} ({username})",
                language,
            )
        if not verify_password(password, user.password_hash):
            raise session_failure(
                "username/password not accepted",
                f"password for user not matching: {self.users.path} (username={username})",
                language,
            )

        token = self.cipher.encrypt(user.username, user.password_hash, now)
        if self.captcha is not None:
            logger.info(f"user successfully authenticated ({self.captcha.service}={captcha_result}): {username}")
        else:
            logger.info(f"user successfully authenticated: {username}")
        return encode_cookie({"ver": "1", "enc": token}), user

    def verify_token(self, cookie: dict, language: str = "en") -> AuthenticatedUser:
        """Decrypt the auth cookie and pin it against the current password hash."""
        if cookie.get("ver") is None:
            raise session_failure("investigate error log", "cookie is missing: ver", language)
        if cookie["ver"] != "1":
            raise session_failure("investigate error log", "cookie data has unsupported value: ver", language)
        enc = cookie.get("enc")
        if enc is None:
            raise session_failure("investigate error log", "cookie is missing: enc", language)
        if not ENC_PATTERN.match(enc):
            raise session_failure("investigate error log", "cookie data has unsupported value: enc", language)

        data = self.cipher.decrypt(enc)
        for field in ("username", "password_hash", "time", "expiry"):
            if field not in data:
                raise session_failure("investigate error log", f"decrypted cookie is missing: {field}", language)

        if int(data["expiry"]) < time.time():
            raise session_failure("investigate error log", "authentication token expired", language)

        user = self.users.fetch(data["username"])
        if user is None:
            raise session_failure(
                "username/password not accepted from cookie",
                f"user not found in file: {self.users.path} ({data['username']})",
                language,
            )
        if not secrets.compare_digest(user.password_hash, data["password_hash"]):
            raise session_failure(
                "username/password not accepted from cookie", "authentication token invalid", language
            )

        return AuthenticatedUser(
            username=user.username,
            acl=user.acl,
            issued=int(data["time"]),
            expiry=int(data["expiry"]),
        )

    @staticmethod
    def is_permitted(user: Optional[AuthenticatedUser], dev_id: str) -> bool:
        return check_acl(user, dev_id)
