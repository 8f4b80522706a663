#!/usr/bin/env python3
"""Auth Gateway: an edge router in front of the OAuth issuer.

Routes:
    OPTIONS        CORS preflight for the routes below
    GET /health    health check
    GET /          redirect to the issuer's /authorize (PKCE + state)
    GET /callback  redeem the auth code, hand the session token to the front end
    POST /verify   {"token": ...} -> {"valid": bool, "user"?: {...}}
    GET /me        bearer token or auth_token cookie -> {"id", "email"}
    everything else -> issuer app (SDK /authorize, /token, /register,
                       /.well-known/*, plus the /login pages)

The router holds no per-request state of its own. Users live in the
UserDirectory, sessions in the SessionStore; this module only composes them.
"""

import base64
import hashlib
import secrets
import time
from typing import Awaitable, Callable
from urllib.parse import urlencode

from mcp.server.auth.provider import TokenError
from starlette.requests import Request
from starlette.responses import JSONResponse, RedirectResponse, Response
from termcolor import cprint

from auth_provider import (
    SCOPE,
    GatewayAuthProvider,
    IssuerStore,
    SendCode,
    Subject,
    build_issuer_app,
    log_login_code,
)
from auth_store import Database, SessionStore, UserDirectory
from gateway_config import GatewayConfig
from gateway_errors import AuthError, GatewayError, NotFoundError, ValidationError

SESSION_COOKIE = "auth_token"
STATE_COOKIE = "auth_state"
VERIFIER_COOKIE = "auth_verifier"


def pkce_challenge(verifier: str) -> str:
    """S256 code challenge for a PKCE verifier."""
    digest = hashlib.sha256(verifier.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def _same(a: str, b: str) -> bool:
    return secrets.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


class AuthGateway:
    """ASGI app: gateway routes first, the issuer app for everything else."""

    def __init__(
        self,
        config: GatewayConfig,
        *,
        clock: Callable[[], float] = time.time,
        send_code: SendCode = log_login_code,
    ):
        self.config = config
        self.db = Database(config.db_path)
        if config.session_db_path == config.db_path:
            self.session_db = self.db
        else:
            self.session_db = Database(config.session_db_path)

        self.directory = UserDirectory(self.db)
        self.sessions = SessionStore(self.session_db, clock)
        self.issuer_store = IssuerStore(self.db, clock)
        self.provider = GatewayAuthProvider(
            self.issuer_store, self.sessions, config, success=self.success, send_code=send_code
        )
        self.issuer_app = build_issuer_app(self.provider, config)

        self.routes: dict[str, tuple[set[str], Callable[[Request], Awaitable[Response]]]] = {
            "/": ({"GET", "HEAD"}, self.handle_root),
            "/health": ({"GET", "HEAD"}, self.handle_health),
            # GET only: HEAD from a prefetcher would redeem the single-use code.
            "/callback": ({"GET"}, self.handle_callback),
            "/verify": ({"POST"}, self.handle_verify),
            "/me": ({"GET"}, self.handle_me),
        }

    # =========================================================================
    # Issuer success callback
    # =========================================================================

    async def success(self, email: str) -> Subject:
        """Record the signed-in user, then open their session.

        Both writes must land, in this order, before the issuer gets a subject.
        A failure in either propagates and no authorization code is issued.
        """
        user_id = await self.directory.upsert_by_email(email)
        token = await self.sessions.create(user_id, email, self.config.session_ttl_seconds)
        return Subject(user_id=user_id, email=email, session_token=token)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def startup(self) -> None:
        cprint("[GATEWAY] Lifespan startup: initializing stores", "yellow")
        await self.db.initialize()
        await self.session_db.initialize()
        purged = await self.sessions.purge_expired()
        await self.issuer_store.cleanup_expired()
        if purged:
            cprint(f"[GATEWAY] Purged {purged} expired sessions", "yellow")

    async def shutdown(self) -> None:
        cprint("[GATEWAY] Lifespan shutdown: closing stores", "yellow")
        await self.db.close()
        await self.session_db.close()

    # =========================================================================
    # Responses
    # =========================================================================

    def cors_headers(self) -> dict[str, str]:
        return {
            "Access-Control-Allow-Origin": self.config.frontend_origin,
            "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
            "Access-Control-Allow-Headers": "Authorization, Content-Type",
            "Access-Control-Allow-Credentials": "true",
            "Vary": "Origin",
        }

    def json(self, content: dict, status_code: int = 200, headers: dict | None = None) -> JSONResponse:
        return JSONResponse(content, status_code=status_code, headers={**self.cors_headers(), **(headers or {})})

    def error(self, e: GatewayError) -> JSONResponse:
        return self.json({"error": e.message}, status_code=e.status_code)

    def frontend_redirect(self, token: str | None = None) -> RedirectResponse:
        url = self.config.frontend_url
        if token:
            url = f"{url}?{urlencode({'token': token})}"
        response = RedirectResponse(url, status_code=302)
        response.delete_cookie(STATE_COOKIE, path="/callback", secure=True, httponly=True)
        response.delete_cookie(VERIFIER_COOKIE, path="/callback", secure=True, httponly=True)
        return response

    # =========================================================================
    # Handlers
    # =========================================================================

    async def handle_health(self, request: Request) -> Response:
        return JSONResponse({"status": "ok", "service": "auth-gateway"})

    async def handle_root(self, request: Request) -> Response:
        """Start the authorization-code flow for the first-party client."""
        state = secrets.token_urlsafe(16)
        verifier = secrets.token_urlsafe(48)
        query = urlencode(
            {
                "client_id": self.config.client_id,
                "redirect_uri": self.config.callback_url,
                "response_type": "code",
                "scope": SCOPE,
                "state": state,
                "code_challenge": pkce_challenge(verifier),
                "code_challenge_method": "S256",
            }
        )
        response = RedirectResponse(f"{self.config.server_url}/authorize?{query}", status_code=302)
        max_age = self.config.login_code_ttl_seconds + self.config.auth_code_ttl_seconds
        for key, value in ((STATE_COOKIE, state), (VERIFIER_COOKIE, verifier)):
            response.set_cookie(
                key, value, max_age=max_age, path="/callback", secure=True, httponly=True, samesite="lax"
            )
        return response

    async def handle_callback(self, request: Request) -> Response:
        """Redeem the auth code and pass the session token to the front end.

        Anything off (no code, state mismatch, unknown or reused code, failed
        PKCE check) sends the browser to the front end without a token.
        """
        code = request.query_params.get("code")
        if not code:
            return self.frontend_redirect()

        state = request.query_params.get("state", "")
        expected_state = request.cookies.get(STATE_COOKIE)
        verifier = request.cookies.get(VERIFIER_COOKIE)
        if not expected_state or not verifier or not _same(state, expected_state):
            cprint("[GATEWAY] Callback state mismatch", "red")
            return self.frontend_redirect()

        client = self.provider.first_party_client()
        auth_code = await self.provider.load_authorization_code(client, code)
        if auth_code is None or not _same(pkce_challenge(verifier), auth_code.code_challenge):
            cprint("[GATEWAY] Callback code rejected", "red")
            return self.frontend_redirect()

        try:
            token = await self.provider.exchange_authorization_code(client, auth_code)
        except TokenError as e:
            cprint(f"[GATEWAY] Code exchange failed: {e.error_description}", "red")
            return self.frontend_redirect()

        response = self.frontend_redirect(token.access_token)
        response.set_cookie(
            SESSION_COOKIE,
            token.access_token,
            max_age=token.expires_in,
            path="/",
            secure=True,
            httponly=True,
            samesite="none",
        )
        return response

    async def handle_verify(self, request: Request) -> Response:
        try:
            body = await request.json()
        except ValueError:
            raise ValidationError("Malformed JSON body") from None
        if not isinstance(body, dict) or not isinstance(body.get("token"), str) or not body["token"]:
            raise ValidationError("Body must be {\"token\": \"<string>\"}")

        session = await self.sessions.lookup(body["token"])
        if session is None:
            return self.json({"valid": False}, status_code=401)
        return self.json({"valid": True, "user": {"id": session.user_id, "email": session.email}})

    async def handle_me(self, request: Request) -> Response:
        token = self.credential(request)
        if not token:
            raise AuthError("Missing credentials")
        session = await self.sessions.lookup(token)
        if session is None:
            raise AuthError("Invalid or expired token")
        user = await self.directory.get_by_id(session.user_id)
        if user is None:
            raise NotFoundError("User not found")
        return self.json(user.to_dict())

    @staticmethod
    def credential(request: Request) -> str | None:
        """Bearer token from the Authorization header, else the auth_token cookie."""
        header = request.headers.get("authorization", "")
        scheme, _, value = header.partition(" ")
        if scheme.lower() == "bearer" and value.strip():
            return value.strip()
        return request.cookies.get(SESSION_COOKIE) or None

    # =========================================================================
    # Dispatch
    # =========================================================================

    async def dispatch(self, request: Request) -> Response | None:
        """Return the gateway's response, or None to hand the request to the issuer."""
        path = request.url.path
        method = request.method

        route = self.routes.get(path)
        if route is None:
            # Issuer paths keep the SDK's own CORS handling.
            return None

        if method == "OPTIONS":
            return Response(status_code=204, headers={**self.cors_headers(), "Access-Control-Max-Age": "86400"})

        methods, handler = route
        if method not in methods:
            return self.json(
                {"error": "Method not allowed"}, status_code=405, headers={"Allow": ", ".join(sorted(methods))}
            )

        try:
            return await handler(request)
        except GatewayError as e:
            cprint(f"[GATEWAY] {method} {path} -> {e.status_code}: {e.message}", "red")
            return self.error(e)
        except Exception as e:
            cprint(f"[GATEWAY] {method} {path} failed: {e!r}", "red")
            return self.json({"error": "Internal server error"}, status_code=500)

    async def __call__(self, scope, receive, send):
        if scope["type"] == "lifespan":
            # Hook store init/teardown into the issuer app's own lifespan.
            async def wrapped_receive():
                message = await receive()
                if message["type"] == "lifespan.startup":
                    await self.startup()
                elif message["type"] == "lifespan.shutdown":
                    await self.shutdown()
                return message

            await self.issuer_app(scope, wrapped_receive, send)
            return

        if scope["type"] != "http":
            await self.issuer_app(scope, receive, send)
            return

        response = await self.dispatch(Request(scope, receive))
        if response is None:
            await self.issuer_app(scope, receive, send)
            return
        await response(scope, receive, send)


def create_app(
    config: GatewayConfig | None = None,
    *,
    clock: Callable[[], float] = time.time,
    send_code: SendCode = log_login_code,
) -> AuthGateway:
    return AuthGateway(config or GatewayConfig.from_env(), clock=clock, send_code=send_code)


# =============================================================================
# CLI Entry Point
# =============================================================================


def main() -> None:
    import argparse

    import uvicorn

    parser = argparse.ArgumentParser(description="Auth Gateway")
    parser.add_argument("--host", default="0.0.0.0", help="Host to bind to")
    parser.add_argument("--port", type=int, default=8080, help="Port to listen on")
    args = parser.parse_args()

    config = GatewayConfig.from_env()
    cprint(f"Starting Auth Gateway on {args.host}:{args.port}", "green")
    cprint(f"Server URL: {config.server_url}", "yellow")
    cprint(f"Front end: {config.frontend_origin}", "yellow")
    cprint(f"Session TTL: {config.session_ttl_seconds}s", "yellow")
    cprint("OAuth metadata: /.well-known/oauth-authorization-server", "yellow")
    uvicorn.run(create_app(config), host=args.host, port=args.port)


if __name__ == "__main__":
    main()
