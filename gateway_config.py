"""Startup configuration for the auth gateway.

Everything that used to be hard-coded per deployment (front-end origin,
OAuth client id, session lifetime) is read once from the environment and
passed around as a frozen GatewayConfig.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import urlparse

DEFAULT_SESSION_TTL = 86400 * 7  # 7 days
DEFAULT_AUTH_CODE_TTL = 600  # 10 minutes
DEFAULT_LOGIN_CODE_TTL = 600  # 10 minutes


def _origin(value: str, name: str) -> str:
    parsed = urlparse(value)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValueError(f"{name} must be an absolute http(s) URL, got {value!r}")
    return f"{parsed.scheme}://{parsed.netloc}"


def _positive_int(value: str, name: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {value!r}") from None
    if number <= 0:
        raise ValueError(f"{name} must be positive, got {number}")
    return number


@dataclass(frozen=True)
class GatewayConfig:
    frontend_origin: str = "http://localhost:3000"
    client_id: str = "auth-gateway-web"
    session_ttl_seconds: int = DEFAULT_SESSION_TTL
    server_url: str = "http://localhost:8080"
    db_path: Path = Path("./data/auth.db")
    session_db_path: Path | None = None
    auth_code_ttl_seconds: int = DEFAULT_AUTH_CODE_TTL
    login_code_ttl_seconds: int = DEFAULT_LOGIN_CODE_TTL

    def __post_init__(self):
        object.__setattr__(self, "frontend_origin", _origin(self.frontend_origin, "FRONTEND_ORIGIN"))
        object.__setattr__(self, "server_url", self.server_url.rstrip("/"))
        object.__setattr__(self, "db_path", Path(self.db_path))
        if self.session_db_path is None:
            object.__setattr__(self, "session_db_path", self.db_path)
        else:
            object.__setattr__(self, "session_db_path", Path(self.session_db_path))
        for name in ("session_ttl_seconds", "auth_code_ttl_seconds", "login_code_ttl_seconds"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")

    @property
    def callback_url(self) -> str:
        return f"{self.server_url}/callback"

    @property
    def frontend_url(self) -> str:
        return f"{self.frontend_origin}/"

    @classmethod
    def from_env(cls) -> "GatewayConfig":
        """Build the config from environment variables, falling back to defaults."""
        db_path = Path(os.getenv("DATABASE_PATH", "./data/auth.db"))
        session_db = os.getenv("SESSION_DATABASE_PATH")
        return cls(
            frontend_origin=os.getenv("FRONTEND_ORIGIN", "http://localhost:3000"),
            client_id=os.getenv("OAUTH_CLIENT_ID", "auth-gateway-web"),
            session_ttl_seconds=_positive_int(
                os.getenv("SESSION_TTL_SECONDS", str(DEFAULT_SESSION_TTL)), "SESSION_TTL_SECONDS"
            ),
            server_url=os.getenv("SERVER_URL", "http://localhost:8080"),
            db_path=db_path,
            session_db_path=Path(session_db) if session_db else None,
            auth_code_ttl_seconds=_positive_int(
                os.getenv("AUTH_CODE_TTL_SECONDS", str(DEFAULT_AUTH_CODE_TTL)), "AUTH_CODE_TTL_SECONDS"
            ),
            login_code_ttl_seconds=_positive_int(
                os.getenv("LOGIN_CODE_TTL_SECONDS", str(DEFAULT_LOGIN_CODE_TTL)), "LOGIN_CODE_TTL_SECONDS"
            ),
        )
