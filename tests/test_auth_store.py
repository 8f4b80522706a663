import pytest

from auth_store import Database, SessionStore, UserDirectory
from gateway_errors import PersistenceError


class TestUserDirectory:
    async def test_upsert_same_email_returns_same_id(self, directory):
        first = await directory.upsert_by_email("alice@example.com")
        second = await directory.upsert_by_email("alice@example.com")
        assert first == second

    async def test_upsert_new_email_gets_new_id(self, directory):
        alice = await directory.upsert_by_email("alice@example.com")
        bob = await directory.upsert_by_email("bob@example.com")
        assert alice != bob

    async def test_email_is_case_sensitive(self, directory):
        lower = await directory.upsert_by_email("alice@example.com")
        upper = await directory.upsert_by_email("Alice@example.com")
        assert lower != upper

    async def test_get_by_id(self, directory):
        user_id = await directory.upsert_by_email("alice@example.com")
        user = await directory.get_by_id(user_id)
        assert user.to_dict() == {"id": user_id, "email": "alice@example.com"}

    async def test_get_by_id_missing(self, directory):
        assert await directory.get_by_id("nope") is None

    async def test_unopened_database_raises_persistence_error(self, tmp_path):
        directory = UserDirectory(Database(tmp_path / "closed.db"))
        with pytest.raises(PersistenceError):
            await directory.upsert_by_email("alice@example.com")

    async def test_sqlite_failure_becomes_persistence_error(self, db, directory):
        await db.connection.execute("DROP TABLE users")
        with pytest.raises(PersistenceError):
            await directory.upsert_by_email("alice@example.com")


class TestSessionStore:
    async def test_create_then_lookup(self, sessions):
        token = await sessions.create("user-1", "alice@example.com", 300)
        record = await sessions.lookup(token)
        assert record.user_id == "user-1"
        assert record.email == "alice@example.com"

    async def test_tokens_are_random(self, sessions):
        tokens = {await sessions.create("user-1", "alice@example.com", 300) for _ in range(20)}
        assert len(tokens) == 20
        assert all(len(t) >= 32 for t in tokens)

    async def test_unknown_token_is_missing(self, sessions):
        assert await sessions.lookup("abc") is None
        assert await sessions.lookup("") is None

    async def test_expiry(self, sessions, clock):
        token = await sessions.create("user-1", "alice@example.com", 300)
        clock.advance(299)
        assert await sessions.lookup(token) is not None
        clock.advance(2)
        assert await sessions.lookup(token) is None

    async def test_purge_expired(self, db, clock):
        store = SessionStore(db, clock)
        old = await store.create("user-1", "alice@example.com", 10)
        fresh = await store.create("user-2", "bob@example.com", 1000)
        clock.advance(60)
        assert await store.purge_expired() == 1
        assert await store.lookup(old) is None
        assert await store.lookup(fresh) is not None

    async def test_closed_database_raises_persistence_error(self, tmp_path, clock):
        db = Database(tmp_path / "sessions.db")
        await db.initialize()
        store = SessionStore(db, clock)
        await db.close()
        with pytest.raises(PersistenceError):
            await store.create("user-1", "alice@example.com", 300)
