"""OAuth authorization-code issuer for the auth gateway.

The protocol endpoints (/authorize, /token, /register and the
/.well-known metadata) come from the MCP SDK's auth routes. This module only
supplies what the SDK calls into:

1. GatewayAuthProvider: storage for clients, pending sign-ins and auth codes
2. /login and /login/code: a minimal email one-time-code sign-in page
3. the success callback, invoked once the emailed code checks out

Flow:
1. Browser hits /authorize (the gateway's / builds that URL)
2. Provider stores the params, redirects to /login?auth_session=<id>
3. User enters email, a 6-digit code is delivered via send_code
4. User enters the code, success(email) upserts the user and opens a session
5. An auth code bound to that subject is issued, browser goes to redirect_uri
6. The code is exchanged (gateway /callback in-process, or SDK /token)
   for the session token
"""

import secrets
import time
from html import escape
from typing import Awaitable, Callable

import bcrypt
from mcp.server.auth.provider import (
    AccessToken,
    AuthorizationCode,
    AuthorizationParams,
    RefreshToken,
    TokenError,
    construct_redirect_uri,
)
from mcp.server.auth.routes import create_auth_routes
from mcp.server.auth.settings import ClientRegistrationOptions, RevocationOptions
from mcp.shared.auth import OAuthClientInformationFull, OAuthToken
from pydantic import AnyHttpUrl, BaseModel
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import HTMLResponse, RedirectResponse
from starlette.routing import Route
from termcolor import cprint

from auth_store import Database, SessionStore, store_errors
from gateway_config import GatewayConfig
from gateway_errors import GatewayError

# Security headers for all HTML responses
SECURITY_HEADERS = {
    "X-Frame-Options": "DENY",
    "X-Content-Type-Options": "nosniff",
    "Content-Security-Policy": "default-src 'none'; style-src 'unsafe-inline'; form-action 'self'",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Cache-Control": "no-store",
}

SCOPE = "user"
MAX_CODE_ATTEMPTS = 5
LOGIN_CODE_DIGITS = 6


# =============================================================================
# Models
# =============================================================================


class Subject(BaseModel):
    """What the success callback hands back to the issuer."""

    user_id: str
    email: str
    session_token: str


class GatewayAuthCode(AuthorizationCode):
    """Authorization code bound to the subject that signed in."""

    user_id: str
    email: str
    session_token: str


SuccessCallback = Callable[[str], Awaitable[Subject]]
SendCode = Callable[[str, str], Awaitable[None]]


async def log_login_code(email: str, code: str) -> None:
    """Default code delivery: write it to the server log."""
    cprint(f"[AUTH] Sign-in code for {email}: {code}", "yellow")


# =============================================================================
# Issuer storage
# =============================================================================


class IssuerStore:
    """Clients, pending sign-ins and authorization codes."""

    def __init__(self, db: Database, clock: Callable[[], float] = time.time):
        self.db = db
        self.clock = clock

    # ---- OAuth Clients (Dynamic Client Registration) ----

    async def save_client(self, client_info: OAuthClientInformationFull) -> None:
        conn = self.db.connection
        async with store_errors("register client"):
            await conn.execute(
                "INSERT OR REPLACE INTO oauth_clients (client_id, client_info_json, created_at) VALUES (?, ?, ?)",
                (client_info.client_id, client_info.model_dump_json(), self.clock()),
            )
            await conn.commit()
        cprint(f"[AUTH] Registered OAuth client: {client_info.client_id}", "cyan")

    async def get_client(self, client_id: str) -> OAuthClientInformationFull | None:
        async with store_errors("load client"):
            cursor = await self.db.connection.execute(
                "SELECT client_info_json FROM oauth_clients WHERE client_id = ?",
                (client_id,),
            )
            row = await cursor.fetchone()
        if not row:
            return None
        return OAuthClientInformationFull.model_validate_json(row["client_info_json"])

    # ---- Pending Sign-ins ----

    async def create_pending_login(self, client_id: str, params: AuthorizationParams, ttl: int) -> str:
        """Store authorize params while the user signs in. Returns session ID."""
        session_id = secrets.token_urlsafe(32)
        now = self.clock()
        conn = self.db.connection
        async with store_errors("start sign-in"):
            await conn.execute(
                "INSERT INTO pending_logins (session_id, client_id, params_json, created_at, expires_at) VALUES (?, ?, ?, ?, ?)",
                (session_id, client_id, params.model_dump_json(), now, now + ttl),
            )
            await conn.commit()
        return session_id

    async def get_pending_login(self, session_id: str) -> dict | None:
        if not session_id:
            return None
        async with store_errors("load sign-in"):
            cursor = await self.db.connection.execute(
                "SELECT * FROM pending_logins WHERE session_id = ? AND expires_at > ?",
                (session_id, self.clock()),
            )
            row = await cursor.fetchone()
        return dict(row) if row else None

    async def set_login_code(self, session_id: str, email: str, code: str) -> None:
        """Attach the email and a hash of its one-time code. Resets the attempt counter."""
        code_hash = bcrypt.hashpw(code.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")
        conn = self.db.connection
        async with store_errors("save sign-in code"):
            await conn.execute(
                "UPDATE pending_logins SET email = ?, code_hash = ?, attempts = 0 WHERE session_id = ?",
                (email, code_hash, session_id),
            )
            await conn.commit()

    async def record_failed_attempt(self, session_id: str) -> int:
        conn = self.db.connection
        async with store_errors("record sign-in attempt"):
            cursor = await conn.execute(
                "UPDATE pending_logins SET attempts = attempts + 1 WHERE session_id = ? RETURNING attempts",
                (session_id,),
            )
            row = await cursor.fetchone()
            await cursor.close()
            await conn.commit()
        return row["attempts"] if row else MAX_CODE_ATTEMPTS

    async def delete_pending_login(self, session_id: str) -> None:
        conn = self.db.connection
        async with store_errors("finish sign-in"):
            await conn.execute("DELETE FROM pending_logins WHERE session_id = ?", (session_id,))
            await conn.commit()

    # ---- Auth Codes ----

    async def save_auth_code(self, auth_code: GatewayAuthCode) -> None:
        conn = self.db.connection
        async with store_errors("save authorization code"):
            await conn.execute(
                """INSERT INTO auth_codes
                (code, client_id, user_id, email, session_token, scopes, code_challenge,
                 redirect_uri, redirect_uri_provided_explicitly, resource, expires_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    auth_code.code,
                    auth_code.client_id,
                    auth_code.user_id,
                    auth_code.email,
                    auth_code.session_token,
                    " ".join(auth_code.scopes),
                    auth_code.code_challenge,
                    str(auth_code.redirect_uri),
                    int(auth_code.redirect_uri_provided_explicitly),
                    auth_code.resource,
                    auth_code.expires_at,
                ),
            )
            await conn.commit()

    async def get_auth_code(self, code: str) -> GatewayAuthCode | None:
        async with store_errors("load authorization code"):
            cursor = await self.db.connection.execute(
                "SELECT * FROM auth_codes WHERE code = ? AND expires_at > ?",
                (code, self.clock()),
            )
            row = await cursor.fetchone()
        if not row:
            return None
        return GatewayAuthCode(
            code=row["code"],
            client_id=row["client_id"],
            user_id=row["user_id"],
            email=row["email"],
            session_token=row["session_token"],
            scopes=row["scopes"].split(),
            code_challenge=row["code_challenge"],
            redirect_uri=row["redirect_uri"],
            redirect_uri_provided_explicitly=bool(row["redirect_uri_provided_explicitly"]),
            resource=row["resource"],
            expires_at=row["expires_at"],
        )

    async def consume_auth_code(self, code: str) -> bool:
        """Delete the code. False if it was already gone (second redemption)."""
        conn = self.db.connection
        async with store_errors("consume authorization code"):
            cursor = await conn.execute("DELETE FROM auth_codes WHERE code = ?", (code,))
            await conn.commit()
        return cursor.rowcount == 1

    # ---- Cleanup ----

    async def cleanup_expired(self) -> None:
        """Remove expired sign-ins and codes."""
        now = self.clock()
        conn = self.db.connection
        async with store_errors("clean up issuer records"):
            await conn.execute("DELETE FROM pending_logins WHERE expires_at < ?", (now,))
            await conn.execute("DELETE FROM auth_codes WHERE expires_at < ?", (now,))
            await conn.commit()


# =============================================================================
# OAuth Authorization Server Provider
# =============================================================================


class GatewayAuthProvider:
    """Implements OAuthAuthorizationServerProvider on top of IssuerStore and SessionStore.

    The SDK calls these methods from its OAuth route handlers; the gateway's
    /callback calls load_authorization_code and exchange_authorization_code
    directly.
    """

    def __init__(
        self,
        store: IssuerStore,
        sessions: SessionStore,
        config: GatewayConfig,
        success: SuccessCallback,
        send_code: SendCode = log_login_code,
    ):
        self.store = store
        self.sessions = sessions
        self.config = config
        self.success = success
        self.send_code = send_code

    def first_party_client(self) -> OAuthClientInformationFull:
        """The gateway's own public client; its only redirect target is /callback."""
        return OAuthClientInformationFull(
            client_id=self.config.client_id,
            client_name="Auth Gateway",
            redirect_uris=[self.config.callback_url],
            token_endpoint_auth_method="none",
            grant_types=["authorization_code"],
            response_types=["code"],
            scope=SCOPE,
        )

    async def get_client(self, client_id: str) -> OAuthClientInformationFull | None:
        cprint(f"[AUTH] get_client: {client_id}", "cyan")
        if client_id == self.config.client_id:
            return self.first_party_client()
        return await self.store.get_client(client_id)

    async def register_client(self, client_info: OAuthClientInformationFull) -> None:
        """Register a new OAuth client via Dynamic Client Registration."""
        await self.store.save_client(client_info)

    async def authorize(self, client: OAuthClientInformationFull, params: AuthorizationParams) -> str:
        """Handle /authorize: store params, send the browser to the sign-in page."""
        cprint(f"[AUTH] authorize: client={client.client_id}, scopes={params.scopes}", "cyan")
        session_id = await self.store.create_pending_login(
            client.client_id, params, self.config.login_code_ttl_seconds
        )
        return f"{self.config.server_url}/login?auth_session={session_id}"

    async def issue_code(self, client_id: str, params: AuthorizationParams, subject: Subject) -> GatewayAuthCode:
        auth_code = GatewayAuthCode(
            code=secrets.token_urlsafe(32),
            client_id=client_id,
            user_id=subject.user_id,
            email=subject.email,
            session_token=subject.session_token,
            scopes=params.scopes or [SCOPE],
            code_challenge=params.code_challenge,
            redirect_uri=params.redirect_uri,
            redirect_uri_provided_explicitly=params.redirect_uri_provided_explicitly,
            resource=params.resource,
            expires_at=self.store.clock() + self.config.auth_code_ttl_seconds,
        )
        await self.store.save_auth_code(auth_code)
        return auth_code

    async def load_authorization_code(
        self, client: OAuthClientInformationFull, authorization_code: str
    ) -> GatewayAuthCode | None:
        cprint(f"[AUTH] load_authorization_code: {authorization_code[:8]}...", "cyan")
        code = await self.store.get_auth_code(authorization_code)
        if code and code.client_id != client.client_id:
            cprint("[AUTH] Auth code client_id mismatch", "red")
            return None
        return code

    async def exchange_authorization_code(
        self, client: OAuthClientInformationFull, authorization_code: GatewayAuthCode
    ) -> OAuthToken:
        """Redeem a code for the session opened when the user signed in. Single use."""
        if not await self.store.consume_auth_code(authorization_code.code):
            raise TokenError(error="invalid_grant", error_description="Authorization code already used")
        session = await self.sessions.lookup(authorization_code.session_token)
        if session is None:
            raise TokenError(error="invalid_grant", error_description="Session expired")
        cprint(f"[AUTH] Issued session for user {session.user_id}", "green")
        return OAuthToken(
            access_token=session.token,
            token_type="Bearer",
            expires_in=max(1, int(session.expires_at - self.sessions.clock())),
            scope=" ".join(authorization_code.scopes),
        )

    async def load_access_token(self, token: str) -> AccessToken | None:
        session = await self.sessions.lookup(token)
        if session is None:
            return None
        return AccessToken(
            token=session.token,
            client_id=self.config.client_id,
            scopes=[SCOPE],
            expires_at=int(session.expires_at),
        )

    async def load_refresh_token(self, client: OAuthClientInformationFull, refresh_token: str) -> RefreshToken | None:
        # No refresh tokens are issued; sessions simply expire.
        return None

    async def exchange_refresh_token(
        self, client: OAuthClientInformationFull, refresh_token: RefreshToken, scopes: list[str]
    ) -> OAuthToken:
        raise TokenError(error="unsupported_grant_type", error_description="Refresh tokens are not issued")

    async def revoke_token(self, token: AccessToken | RefreshToken) -> None:
        # Revocation endpoint is disabled; sessions end at their expiry.
        return None


# =============================================================================
# HTML Templates
# =============================================================================


def _page(title: str, body: str, error: str = "") -> str:
    message = f'<div class="error">{escape(error)}</div>' if error else ""
    return f"""<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="utf-8">
    <meta name="viewport" content="width=device-width, initial-scale=1">
    <title>{escape(title)}</title>
    <style>
        * {{ box-sizing: border-box; margin: 0; padding: 0; }}
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', sans-serif;
               background: #f5f5f5; display: flex; justify-content: center; align-items: center;
               min-height: 100vh; padding: 20px; }}
        .card {{ background: white; border-radius: 12px; padding: 40px; max-width: 420px;
                width: 100%; box-shadow: 0 2px 8px rgba(0,0,0,0.08); }}
        h1 {{ font-size: 24px; margin-bottom: 24px; color: #1a1a1a; }}
        label {{ display: block; font-size: 14px; font-weight: 500; margin-bottom: 4px; color: #333; }}
        input {{ width: 100%; padding: 10px 12px; border: 1px solid #ddd; border-radius: 8px;
                font-size: 14px; margin-bottom: 16px; }}
        button {{ width: 100%; padding: 12px; background: #1a73e8; color: white; border: none;
                 border-radius: 8px; font-size: 16px; font-weight: 500; cursor: pointer; }}
        .error {{ background: #fef2f2; color: #dc2626; padding: 10px; border-radius: 8px;
                 margin-bottom: 16px; font-size: 14px; }}
    </style>
</head>
<body>
    <div class="card">
        <h1>{escape(title)}</h1>
        {message}
        {body}
    </div>
</body>
</html>"""


def _email_form(auth_session: str, error: str = "") -> str:
    safe_session = escape(auth_session, quote=True)
    return _page(
        "Sign in",
        f"""<form method="POST" action="/login">
            <input type="hidden" name="auth_session" value="{safe_session}">
            <label for="email">Email</label>
            <input type="email" id="email" name="email" required>
            <button type="submit">Send code</button>
        </form>""",
        error,
    )


def _code_form(auth_session: str, email: str, error: str = "") -> str:
    safe_session = escape(auth_session, quote=True)
    return _page(
        "Enter your code",
        f"""<form method="POST" action="/login/code">
            <input type="hidden" name="auth_session" value="{safe_session}">
            <label for="code">Code sent to {escape(email)}</label>
            <input type="text" id="code" name="code" required inputmode="numeric" autocomplete="one-time-code">
            <button type="submit">Continue</button>
        </form>""",
        error,
    )


def _html(content: str, status_code: int = 200) -> HTMLResponse:
    return HTMLResponse(content, status_code=status_code, headers=SECURITY_HEADERS)


def _expired_response() -> HTMLResponse:
    return _html(_page("Sign in", "", "Sign-in session expired or invalid. Please start again."), 400)


# =============================================================================
# Sign-in Route Handlers
# =============================================================================


async def _login(request: Request, provider: GatewayAuthProvider) -> HTMLResponse:
    if request.method == "GET":
        auth_session = request.query_params.get("auth_session", "")
        if not await provider.store.get_pending_login(auth_session):
            return _expired_response()
        return _html(_email_form(auth_session))

    form = await request.form()
    auth_session = str(form.get("auth_session", ""))
    email = str(form.get("email", "")).strip()

    if not await provider.store.get_pending_login(auth_session):
        return _expired_response()
    if not email or "@" not in email:
        return _html(_email_form(auth_session, error="Enter a valid email address."), 400)

    code = f"{secrets.randbelow(10 ** LOGIN_CODE_DIGITS):0{LOGIN_CODE_DIGITS}d}"
    try:
        await provider.store.set_login_code(auth_session, email, code)
        await provider.send_code(email, code)
    except Exception as e:
        cprint(f"[AUTH] Sending sign-in code failed: {e}", "red")
        return _html(_email_form(auth_session, error="Something went wrong. Please try again."), 500)
    return _html(_code_form(auth_session, email))


async def _login_code(request: Request, provider: GatewayAuthProvider) -> HTMLResponse | RedirectResponse:
    form = await request.form()
    auth_session = str(form.get("auth_session", ""))
    code = str(form.get("code", "")).strip()

    pending = await provider.store.get_pending_login(auth_session)
    if not pending or not pending["code_hash"]:
        return _expired_response()
    email = pending["email"]

    if pending["attempts"] >= MAX_CODE_ATTEMPTS:
        await provider.store.delete_pending_login(auth_session)
        return _html(_page("Sign in", "", "Too many attempts. Please start again."), 400)

    if not code or not bcrypt.checkpw(code.encode("utf-8"), pending["code_hash"].encode("utf-8")):
        attempts = await provider.store.record_failed_attempt(auth_session)
        if attempts >= MAX_CODE_ATTEMPTS:
            await provider.store.delete_pending_login(auth_session)
            cprint(f"[AUTH] Sign-in locked after {attempts} attempts for {email}", "red")
            return _html(_page("Sign in", "", "Too many attempts. Please start again."), 400)
        return _html(_code_form(auth_session, email, error="Invalid code."), 401)

    await provider.store.delete_pending_login(auth_session)
    params = AuthorizationParams.model_validate_json(pending["params_json"])

    client = await provider.get_client(pending["client_id"])
    if not client:
        return _html(_page("Sign in", "", "OAuth client not found. Please start again."), 400)
    if client.redirect_uris and str(params.redirect_uri) not in [str(u) for u in client.redirect_uris]:
        cprint(f"[AUTH] Redirect URI mismatch: {params.redirect_uri}", "red")
        return _html(_page("Sign in", "", "Invalid redirect URI. Please start again."), 400)

    subject = await provider.success(email)
    auth_code = await provider.issue_code(client.client_id, params, subject)

    redirect_url = construct_redirect_uri(str(params.redirect_uri), code=auth_code.code, state=params.state)
    cprint(f"[AUTH] Sign-in success for {email}, redirecting to OAuth client", "green")
    return RedirectResponse(url=redirect_url, status_code=302)


def _failed_response() -> HTMLResponse:
    return _html(_page("Sign in", "", "Something went wrong. Please try again."), 500)


async def handle_login(request: Request, provider: GatewayAuthProvider) -> HTMLResponse:
    """GET /login shows the email form; POST /login sends a one-time code."""
    try:
        return await _login(request, provider)
    except GatewayError as e:
        cprint(f"[AUTH] Sign-in page failed: {e}", "red")
        return _failed_response()


async def handle_login_code(request: Request, provider: GatewayAuthProvider) -> HTMLResponse | RedirectResponse:
    """POST /login/code: check the code, run the success callback, redirect with an auth code.

    Store or session failures, including in the success callback, render a
    500 page and issue no code.
    """
    try:
        return await _login_code(request, provider)
    except GatewayError as e:
        cprint(f"[AUTH] Sign-in failed: {e}", "red")
        return _failed_response()


# =============================================================================
# Issuer ASGI App
# =============================================================================


def build_issuer_app(provider: GatewayAuthProvider, config: GatewayConfig) -> Starlette:
    """SDK OAuth routes plus the sign-in pages, as one Starlette app."""

    async def login(request: Request):
        return await handle_login(request, provider)

    async def login_code(request: Request):
        return await handle_login_code(request, provider)

    routes = create_auth_routes(
        provider=provider,
        issuer_url=AnyHttpUrl(config.server_url),
        client_registration_options=ClientRegistrationOptions(
            enabled=True,
            valid_scopes=[SCOPE],
            default_scopes=[SCOPE],
        ),
        revocation_options=RevocationOptions(enabled=False),
    )
    routes += [
        Route("/login", endpoint=login, methods=["GET", "POST"]),
        Route("/login/code", endpoint=login_code, methods=["POST"]),
    ]
    return Starlette(routes=routes)
