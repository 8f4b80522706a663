import time
from urllib.parse import parse_qs, urlsplit

import pytest
from starlette.testclient import TestClient

from auth_gateway import create_app
from auth_store import Database, SessionStore, UserDirectory
from gateway_config import GatewayConfig


class FakeClock:
    """Manually advanced clock. Starts at real time so SDK expiry checks agree."""

    def __init__(self, now: float | None = None):
        self.now = time.time() if now is None else now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def query_params(url: str) -> dict[str, str]:
    return {k: v[0] for k, v in parse_qs(urlsplit(url).query).items()}


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
async def db(tmp_path):
    database = Database(tmp_path / "auth.db")
    await database.initialize()
    yield database
    await database.close()


@pytest.fixture
def directory(db):
    return UserDirectory(db)


@pytest.fixture
def sessions(db, clock):
    return SessionStore(db, clock)


@pytest.fixture
def config(tmp_path):
    return GatewayConfig(
        frontend_origin="https://app.example.com",
        client_id="test-client",
        session_ttl_seconds=300,
        server_url="https://testserver",
        db_path=tmp_path / "auth.db",
    )


@pytest.fixture
def sent_codes():
    return []


@pytest.fixture
def gateway(config, clock, sent_codes):
    async def send_code(email, code):
        sent_codes.append((email, code))

    return create_app(config, clock=clock, send_code=send_code)


@pytest.fixture
def client(gateway):
    with TestClient(gateway, base_url="https://testserver") as test_client:
        yield test_client


@pytest.fixture
def start_login(client):
    """Walk / -> /authorize -> /login. Returns the auth_session id."""

    def _start():
        start = client.get("/", follow_redirects=False)
        assert start.status_code == 302, start.text
        authorize = client.get(start.headers["location"], follow_redirects=False)
        assert authorize.status_code == 302, authorize.text
        return query_params(authorize.headers["location"])["auth_session"]

    return _start


@pytest.fixture
def sign_in(client, sent_codes, start_login):
    """Full browser sign-in; returns the /callback response."""

    def _sign_in(email):
        auth_session = start_login()
        res = client.post("/login", data={"auth_session": auth_session, "email": email})
        assert res.status_code == 200, res.text
        _, code = sent_codes[-1]
        done = client.post(
            "/login/code",
            data={"auth_session": auth_session, "code": code},
            follow_redirects=False,
        )
        assert done.status_code == 302, done.text
        return client.get(done.headers["location"], follow_redirects=False)

    return _sign_in
