"""User authentication extension: login form, login/logout, token check, ACL"""
import logging
import time
from html import escape
from typing import Optional

from auth import (
    AUTH_TOKEN_LIFETIME,
    AUTH_TOKEN_LIMIT_CHANGEPW,
    SESSION_TOKEN_LIFETIME,
    AuthService,
    decode_cookie,
    encode_cookie,
)
from captcha import Captcha
from context import OUTPUT_HTML, CookieSpec, PageResult, RequestContext
from errors import AuthError, ValidationError
from extensions.base import Extension
from translations import translate

logger = logging.getLogger(__name__)

ACTIONS = ("login", "logout", "changepw")


class UserAuth(Extension):
    name = "userauth"

    def init(self):
        self.captcha = Captcha.from_config(self.config, self.settings.EXTERNAL_TIMEOUT)
        self.service = AuthService(self.config.uuid, self.config.datadir, self.captcha)
        self.require_https = self.config.get("userauth.require_https", "1") != "0"
        self.changepw_enabled = self.config.flag("userauth.feature.changepw")
        self.log_debug("init called")

    def auth_check(self, ctx: RequestContext) -> Optional[PageResult]:
        """Restore the user from the auth cookie or answer with the login form."""
        self.log_debug("auth_check")
        cookie = decode_cookie(ctx.cookie)
        if "enc" in cookie:
            ctx.user = self.service.verify_token(cookie, ctx.language)
            self.log_debug(f"authenticated by cookie: {ctx.user.username}")
            return None

        if ctx.output != OUTPUT_HTML:
            raise AuthError(
                translate("Authentication required", ctx.language),
                f"no authentication token for non-HTML request ({ctx.output})",
            )
        return self.login_form(ctx)

    def cookie_secure(self, ctx: RequestContext) -> bool:
        return self.require_https or ctx.https

    def login_form(self, ctx: RequestContext, now: Optional[float] = None) -> PageResult:
        if self.require_https and not ctx.https:
            raise AuthError(
                translate("Authentication required but not called via HTTPS", ctx.language),
                "HTTPS not enabled",
            )

        challenge, cookie = self.service.new_session(now)
        self.log_debug(f"session generated time={challenge.issued} rand={challenge.rand}")

        captcha_image = None
        if self.captcha is not None and self.captcha.internal:
            cookie["captcha"], captcha_image = self.captcha.new_internal(
                self.service.server_uuid, challenge.issued, challenge.rand
            )

        lang = ctx.language
        rows = [
            f"   <b>{translate('Authentication required', lang)}</b>",
            '   <form id="submitForm" method="post" accept-charset="utf-8">',
            '    <table border="0" cellspacing="0" cellpadding="2">',
            f'     <tr><td>{translate("Username", lang)}:</td><td><input id="username" type="text" name="username" style="width:200px;height:40px;"></td></tr>',
            f'     <tr><td>{translate("Password", lang)}:</td><td><input id="password" type="password" name="password" style="width:200px;height:40px;"></td></tr>',
        ]
        rows.extend(self.captcha_rows(lang, captcha_image))
        rows.extend(
            [
                "    </table>",
                f'    <input type="text" name="session_token_form" value="{challenge.form_half}" hidden>',
                f'    <input type="text" name="rand" value="{challenge.rand}" hidden>',
                '    <input type="text" name="action" value="login" hidden>',
            ]
        )
        if self.captcha is not None and not self.captcha.internal:
            rows.append(f"    <script>\n      {self.captcha.definition['ScriptCode']}\n    </script>")
        rows.append("   </form>")

        return PageResult(
            status_code=200,
            body="\n".join(rows) + "\n",
            cookie=CookieSpec(encode_cookie(cookie), SESSION_TOKEN_LIFETIME, self.cookie_secure(ctx)),
        )

    def captcha_rows(self, lang: str, captcha_image: Optional[str]) -> list[str]:
        submit = f'     <tr><td></td><td><input id="submitBtn" type="submit" value="{translate("Login", lang)}" style="width:100px;height:50px;"></td></tr>'
        if self.captcha is None:
            return [submit]

        if self.captcha.internal:
            return [
                f'     <tr><td></td><td><img alt="CAPTCHA" src="{captcha_image}"></td></tr>',
                f'     <tr><td>{translate("Enter the characters shown", lang)}:</td>'
                f'<td><input id="captcha_answer" type="text" name="{self.captcha.response_field}" autocomplete="off" style="width:200px;height:40px;"></td></tr>',
                submit,
            ]

        definition = self.captcha.definition
        widget = self.captcha.replace_tokens(definition["WidgetCode"], lang)
        rows = [
            '     <tr><td colspan="2">',
            "       <noscript>You need Javascript for CAPTCHA verification to submit this form.</noscript>",
            f'       <script src="{self.captcha.replace_tokens(definition["ScriptURL"], lang)}" async defer></script>',
        ]
        if self.captcha.visible:
            rows.append(f"       <div {widget}></div>")
        rows.append("     </td></tr>")
        rows.append("     <tr><td></td><td>")
        if definition["Invisible"] not in ("0", "1"):
            rows.append(f'       <div><font size="-2">{definition["Invisible"]}</font></div>')
        if self.captcha.visible:
            button_attributes = "disabled"
        else:
            button_attributes = widget
        rows.append(
            f'       <button {button_attributes} id="submitBtn" type="submit" style="width:100px;height:50px;">{translate("Login", lang)}</button>'
        )
        rows.append("     </td></tr>")
        return rows

    async def auth_verify(self, ctx: RequestContext, form: dict, now: Optional[float] = None) -> PageResult:
        """Handle a form POST with action login, logout or changepw."""
        self.log_debug("auth_verify")
        action = form.get("action")
        if action is None:
            raise ValidationError("unsupported POST data", "missing from form: action", status_code=400)
        if action not in ACTIONS:
            raise ValidationError("unsupported POST data", "unsupported content from form: action", status_code=400)

        cookie = decode_cookie(ctx.cookie)
        lang = ctx.language

        if action == "logout":
            if "enc" in cookie:
                message = translate("Logout successful", lang)
            else:
                message = translate("Logout already done", lang)
            return PageResult(
                200,
                f'<font color="orange">{message} ({translate("will be redirected back", lang)})</font>',
                cookie=CookieSpec("", secure=self.cookie_secure(ctx)),
                redirect=1,
            )

        if action == "changepw":
            return self.changepw(ctx, cookie)

        cookie_value, user = await self.service.verify_login(form, cookie, lang, ctx.remote_addr, now)
        return PageResult(
            200,
            f'<font color="green">{translate("Login successful", lang)} ({translate("will be redirected back", lang)})</font>',
            cookie=CookieSpec(cookie_value, AUTH_TOKEN_LIFETIME, self.cookie_secure(ctx)),
            redirect=1,
        )

    def changepw(self, ctx: RequestContext, cookie: dict) -> PageResult:
        """Acknowledge only; the credential file is maintained with htpasswd."""
        lang = ctx.language
        if "enc" not in cookie:
            raise AuthError(
                f"{translate('Not authenticated', lang)} ({translate('will be redirected back', lang)})",
                "changepw without authentication token",
                redirect=1,
                clear_cookie=True,
            )
        user = self.service.verify_token(cookie, lang)
        if time.time() - user.issued >= AUTH_TOKEN_LIMIT_CHANGEPW:
            message = translate("last login longer ago, please use logout/login to activate password change option", lang)
            return PageResult(200, f'<font color="orange">{message}</font>', redirect=3)

        logger.info(f"user requested password change: {user.username}")
        message = translate("Password change is managed by the administrator of the user file", lang)
        return PageResult(200, f'<font color="green">{message}</font>', redirect=3)

    def auth_show(self, ctx: RequestContext) -> str:
        user = ctx.user
        if user is None:
            return ""
        lang = ctx.language

        if user.wildcard:
            devices = translate("ALL", lang)
        elif user.acl:
            devices = escape(",".join(sorted(user.acl)))
        else:
            devices = translate("NONE", lang)

        rows = [
            '<table border="0" cellspacing="1" cellpadding="1">',
            " <tr>",
            f"  <td>{translate('authenticated as user', lang)}: {escape(user.username)}</td>",
            "  <td rowspan=3>",
            '   <form method="post">',
            f'    <input id="logout" type="submit" value="{translate("Logout", lang)}" style="background-color:#FFA0E0;">',
            '    <input type="text" name="action" value="logout" hidden>',
            "   </form>",
            "  </td>",
        ]
        if self.changepw_enabled:
            rows.append("  <td rowspan=3>")
            if time.time() - user.issued < AUTH_TOKEN_LIMIT_CHANGEPW:
                rows.extend(
                    [
                        '   <form method="post">',
                        f'    <input id="changepw" type="submit" value="{translate("Change Password", lang)}" style="background-color:#40A0B0;">',
                        '    <input type="text" name="action" value="changepw" hidden>',
                        "   </form>",
                    ]
                )
            else:
                rows.append(
                    "   " + translate("last login longer ago, please use logout/login to activate password change option", lang)
                )
            rows.append("  </td>")
        rows.extend(
            [
                " </tr>",
                f" <tr><td>{translate('permitted for devices', lang)}: {devices}</td></tr>",
                f" <tr><td>{translate('authentication cookie expires in days', lang)}: {int((user.expiry - time.time()) / 86400)}</td></tr>",
                "</table>",
            ]
        )
        return "\n".join(rows) + "\n"

    def is_permitted(self, ctx: RequestContext, dev_id: str) -> bool:
        permitted = self.service.is_permitted(ctx.user, dev_id)
        self.log_debug(f"acl check dev_id={dev_id} permitted={permitted}")
        return permitted
