"""
TTN Letterbox Sensor Endpoint
FastAPI application receiving TTN uplinks and serving the status dashboard.
"""
import asyncio
import logging
import random
import time
from contextlib import asynccontextmanager
from html import escape

from fastapi import FastAPI, Request, Response
from fastapi.responses import HTMLResponse, JSONResponse, PlainTextResponse
from starlette.concurrency import run_in_threadpool

from auth import COOKIE_NAME
from config import ensure_uuid, load_config, settings
from context import OUTPUT_HTML, OUTPUT_JSON, OUTPUT_PLAIN, PageResult, RequestContext
from dashboard import render_dashboard, render_json, render_page, render_plain
from errors import AuthError, LetterboxError, ValidationError
from extensions.base import build_registry
from ingestion import Ingestor
from registry import DeviceRegistry
from status_store import StatusStore
from translations import translate

# Configure logging
logging.basicConfig(level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))
logger = logging.getLogger(__name__)

CREDENTIAL_HEADER = "x-ttn-auth"
FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Load the installation config and build the extension registry."""
    config = load_config(settings.CONFIG_FILE)
    if "userauth" in config.extensions:
        config = ensure_uuid(config)

    app.state.config = config
    app.state.registry = DeviceRegistry(config.datadir)
    app.state.store = StatusStore(config.datadir)
    app.state.extensions = build_registry(config, settings)
    app.state.ingestor = Ingestor(config, app.state.registry, app.state.store, app.state.extensions)
    logger.info(f"Letterbox endpoint ready (datadir={config.datadir}, autoregister={config.autoregister})")

    yield

    logger.info("Letterbox endpoint shutting down")


app = FastAPI(
    title="TTN Letterbox Sensor",
    description="Letterbox sensor uplink receiver and status dashboard",
    version="1.0.0",
    lifespan=lifespan,
)


def failure_delay() -> float:
    return settings.FAILURE_DELAY + random.uniform(0, settings.FAILURE_JITTER)


def success_delay() -> float:
    return random.uniform(0, settings.SUCCESS_JITTER)


def apply_cookie(response: Response, page: PageResult) -> None:
    if page.cookie is None:
        return
    if page.cookie.clear:
        response.delete_cookie(COOKIE_NAME, secure=page.cookie.secure, httponly=True, samesite="lax")
    else:
        response.set_cookie(
            COOKIE_NAME,
            page.cookie.value,
            max_age=page.cookie.max_age,
            secure=page.cookie.secure,
            httponly=True,
            samesite="lax",
        )


def page_response(page: PageResult, ctx: RequestContext, request: Request) -> HTMLResponse:
    refresh_url = request.url.path + (f"?{request.url.query}" if request.url.query else "")
    response = HTMLResponse(
        render_page(page.body, ctx.language, page.redirect, refresh_url if page.redirect is not None else None),
        status_code=page.status_code,
    )
    apply_cookie(response, page)
    return response


@app.exception_handler(LetterboxError)
async def letterbox_error_handler(request: Request, exc: LetterboxError):
    """Log the operator detail, answer with the client message after a delay."""
    ctx = RequestContext.from_request(request)
    logger.warning(
        f"{type(exc).__name__} ({exc.status_code}) from {ctx.remote_addr or 'unknown'}: {exc.detail}"
    )
    await asyncio.sleep(failure_delay())

    message = translate(exc.message, ctx.language)
    output = getattr(request.state, "output", None) or ctx.output
    if output == OUTPUT_PLAIN:
        response = PlainTextResponse(message + "\n", status_code=exc.status_code)
    elif output == OUTPUT_JSON:
        response = JSONResponse({"error": message}, status_code=exc.status_code)
    else:
        refresh_url = request.url.path + (f"?{request.url.query}" if request.url.query else "")
        response = HTMLResponse(
            render_page(
                f'<font color="red">{escape(message)}</font>',
                ctx.language,
                exc.redirect,
                refresh_url if exc.redirect is not None else None,
            ),
            status_code=exc.status_code,
        )
    if exc.clear_cookie:
        response.delete_cookie(COOKIE_NAME, secure=ctx.https, httponly=True, samesite="lax")
    return response


@app.api_route("/", methods=["GET", "HEAD"])
def dashboard(request: Request):
    """Status dashboard, login form when not authenticated."""
    if request.method == "HEAD":
        return Response(status_code=200)

    ctx = RequestContext.from_request(request)
    extensions = request.app.state.extensions
    store = request.app.state.store

    authenticator = extensions.authenticator
    if authenticator is not None:
        page = authenticator.auth_check(ctx)
        if page is not None:
            time.sleep(success_delay())
            return page_response(page, ctx, request)

    devices = store.list_devices()
    dev_filter = ctx.param("dev_id")
    if dev_filter:
        devices = [d for d in devices if d == dev_filter]
        if authenticator is not None and devices and not authenticator.is_permitted(ctx, dev_filter):
            raise AuthError("Access denied", f"user not permitted for device: {dev_filter}", status_code=403)
    if authenticator is not None:
        devices = [d for d in devices if authenticator.is_permitted(ctx, d)]

    snapshots = []
    graphics = {}
    for dev_id in devices:
        with store.device_lock(dev_id):
            extensions.call("init_device", dev_id)
            snapshots.append(store.load_status(dev_id))
            if ctx.output == OUTPUT_HTML:
                images = {}
                for result in extensions.call("get_graphics", dev_id, ctx):
                    images.update(result)
                graphics[dev_id] = images

    time.sleep(success_delay())
    if ctx.output == OUTPUT_PLAIN:
        return PlainTextResponse(render_plain(snapshots))
    if ctx.output == OUTPUT_JSON:
        return JSONResponse(render_json(snapshots))

    actions = extensions.call("html_actions", ctx)
    auth_box = authenticator.auth_show(ctx) if authenticator is not None else ""
    return HTMLResponse(render_dashboard(ctx, snapshots, graphics, actions, auth_box))


@app.post("/")
async def receive(request: Request):
    """TTN uplink (JSON) or login/logout form."""
    body = await request.body()
    ctx = RequestContext.from_request(request)
    content_type = request.headers.get("content-type", "")

    if content_type.startswith(FORM_CONTENT_TYPE) and not body.lstrip().startswith(b"{"):
        authenticator = request.app.state.extensions.authenticator
        if authenticator is None:
            raise ValidationError("unsupported POST data", "form data received but no authenticator active", status_code=400)
        form = dict(await request.form())
        page = await authenticator.auth_verify(ctx, form)
        await asyncio.sleep(success_delay())
        return page_response(page, ctx, request)

    request.state.output = OUTPUT_PLAIN
    await run_in_threadpool(request.app.state.ingestor.ingest, body, request.headers.get(CREDENTIAL_HEADER))
    await asyncio.sleep(success_delay())
    return PlainTextResponse("OK\n")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
