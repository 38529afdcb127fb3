"""
Admin web shell. Wires the session controller, access guard and API client into routes:
login form, logout, protected dashboard, interaction beacon, session status, and an
authenticated pass-through to the remote API.
Single stored session per running shell (one browsing context).
"""
import html
import logging
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Form, Request
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse, Response
from pydantic import BaseModel

from admin_web.api import ApiClient, Credentials, error_detail
from admin_web.config import DEFAULT_REDIRECT, LOGIN_PATH, SESSION_STORE
from admin_web.errors import AuthError, NotAuthenticatedError, describe_auth_error
from admin_web.guard import AccessGuard
from admin_web.interactions import InteractionSource
from admin_web.navigation import RedirectNavigator
from admin_web.scheduler import AsyncioScheduler
from admin_web.session import SessionController
from admin_web.token_store import TokenStore, storage_from_setting

logger = logging.getLogger(__name__)

scheduler = AsyncioScheduler()
store = TokenStore(storage_from_setting(SESSION_STORE), clock=scheduler.now)
navigator = RedirectNavigator()
interactions = InteractionSource()
api_client = ApiClient()
controller = SessionController(
    store,
    api_client.login,
    navigator,
    scheduler,
    interactions,
    renew_call=api_client.refresh if api_client.supports_refresh else None,
)
api_client.bind(controller)
guard = AccessGuard(controller, navigator, scheduler)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Restore a stored session and start listening for interaction signals."""
    controller.start()
    yield
    controller.dispose()


app = FastAPI(title="Admin Web", version="0.1.0", lifespan=lifespan)


class ActivitySignal(BaseModel):
    type: str


def _safe_next(target: str | None) -> str | None:
    """Only same-site absolute paths are accepted as post-login targets."""
    if target and target.startswith("/") and not target.startswith("//"):
        return target
    return None


def _redirect(default: str = LOGIN_PATH, status_code: int = 302) -> RedirectResponse:
    return RedirectResponse(url=navigator.take(default), status_code=status_code)


def _login_page(error: str | None = None, notice: str | None = None, next_path: str = "", status_code: int = 200) -> HTMLResponse:
    error_html = f'<p class="error">{html.escape(error)}</p>' if error else ""
    notice_html = f'<p class="notice">{html.escape(notice)}</p>' if notice else ""
    return HTMLResponse(
        f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>Sign in</title></head>
<body>
  <h1>Sign in</h1>
  {notice_html}
  {error_html}
  <form method="post" action="{LOGIN_PATH}">
    <label>Email <input type="email" name="email" required></label>
    <label>Password <input type="password" name="password" required></label>
    <input type="hidden" name="next" value="{html.escape(next_path)}">
    <button type="submit">Sign in</button>
  </form>
</body>
</html>""",
        status_code=status_code,
    )


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "ok", "service": "admin_web"}


@app.get(LOGIN_PATH, response_class=HTMLResponse)
async def login_form(next: str = ""):
    """Login view. Shows the expired-session notice once after an automatic sign-out."""
    if controller.is_authenticated():
        return RedirectResponse(url=_safe_next(next) or DEFAULT_REDIRECT, status_code=302)
    notice = "Your session has expired. Please sign in again." if controller.consume_expired_notice() else None
    return _login_page(notice=notice, next_path=next)


@app.post(LOGIN_PATH, response_class=HTMLResponse)
async def login_submit(email: str = Form(...), password: str = Form(...), next: str = Form("")):
    """Call the API login; success arms the session and redirects to next (or the dashboard)."""
    try:
        await controller.login(Credentials(email=email, password=password))
    except AuthError as e:
        message, kind = describe_auth_error(e)
        logger.info("login failed (%s)", kind.value)
        return _login_page(error=message, next_path=next, status_code=401)
    navigator(_safe_next(next) or DEFAULT_REDIRECT)
    return _redirect(DEFAULT_REDIRECT, status_code=303)


@app.get("/logout")
async def logout():
    controller.logout()
    return _redirect(LOGIN_PATH)


@app.get("/dashboard", response_class=HTMLResponse)
async def dashboard():
    """Protected view: session owner and timing."""
    if not guard.require_auth():
        return _redirect(LOGIN_PATH)
    user = controller.user()
    who = html.escape(user.email or user.id) if user else "unknown user"
    role = html.escape(user.role or "-") if user else "-"
    remaining = controller.time_until_expiration() or 0
    return HTMLResponse(
        f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>Dashboard</title></head>
<body>
  <h1>Dashboard</h1>
  <p>Signed in as {who} ({role}).</p>
  <p>Session expires in {int(remaining // 60)} min.</p>
  <p><a href="/logout">Sign out</a></p>
</body>
</html>"""
    )


@app.get("/session")
async def session_status():
    """Session state for the UI (no token in the response)."""
    expires_at = store.read_expiration()
    return {
        "authenticated": controller.is_authenticated(),
        "state": controller.state().value,
        "expires_at": expires_at,
        "seconds_until_expiration": controller.time_until_expiration(),
        "inactive_seconds": controller.inactivity_time(),
        "expiring_soon": controller.is_expiring_soon() if expires_at is not None else False,
    }


@app.post("/activity", status_code=204)
async def activity(signal: ActivitySignal):
    """Interaction beacon from the page (mousedown, keydown, scroll, touchstart)."""
    interactions.emit(signal.type)
    return Response(status_code=204)


@app.get("/api/{path:path}")
async def api_passthrough(path: str, request: Request):
    """GET pass-through to the remote API with the session's bearer token."""
    try:
        r = await api_client.get(f"/{path}", params=dict(request.query_params))
    except NotAuthenticatedError:
        return _redirect(LOGIN_PATH)
    except httpx.HTTPStatusError as e:
        return JSONResponse({"detail": error_detail(e.response)}, status_code=e.response.status_code)
    except httpx.TransportError as e:
        logger.warning("API unreachable for /%s: %s", path, e)
        return JSONResponse({"detail": "API unreachable"}, status_code=502)
    return Response(content=r.content, status_code=r.status_code, media_type=r.headers.get("content-type"))


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "admin_web.main:app",
        host="127.0.0.1",
        port=8000,
        reload=True,
    )
