"""
Admin web configuration. Session timings and remote API endpoints.
No secrets in this file; credentials are entered by the user at login.
"""
import os

# Remote API (patients, trials, sponsors, login); every call goes through here
API_BASE_URL = os.environ.get("ADMIN_API_BASE_URL", "https://api.yoparticipo.cl/api").rstrip("/")

# Login endpoint: POST {email, password} -> {access_token, expires_in, expires_at}
API_LOGIN_PATH = os.environ.get("ADMIN_API_LOGIN_PATH", "/auth/login")

# Token renewal endpoint. Empty = the API offers no renewal; sessions end at expires_at.
API_REFRESH_PATH = os.environ.get("ADMIN_API_REFRESH_PATH", "").strip()

# Timeout for remote calls (seconds)
API_TIMEOUT = float(os.environ.get("ADMIN_API_TIMEOUT", "10"))

# Where the Session Record lives. ":memory:" keeps it in process (tests).
SESSION_STORE = os.environ.get("ADMIN_SESSION_STORE", ".admin_session.json")

# Login view; target of logout and of every "session is gone" redirect
LOGIN_PATH = os.environ.get("ADMIN_LOGIN_PATH", "/auth")

# Landing view after a successful login, and for users lacking a required role
DEFAULT_REDIRECT = os.environ.get("ADMIN_DEFAULT_REDIRECT", "/dashboard")

# Renew this many seconds before expires_at (5 minutes)
REFRESH_THRESHOLD = float(os.environ.get("ADMIN_REFRESH_THRESHOLD_SECONDS", "300"))

# End the session after this many seconds without interaction (15 minutes)
INACTIVITY_TIMEOUT = float(os.environ.get("ADMIN_INACTIVITY_TIMEOUT_SECONDS", "900"))

# Protected views re-check the session at this interval (seconds)
GUARD_INTERVAL = float(os.environ.get("ADMIN_GUARD_INTERVAL_SECONDS", "60"))

# Interaction signals that count as user activity
ACTIVITY_EVENTS = ("mousedown", "keydown", "scroll", "touchstart")
