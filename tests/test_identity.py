"""Tests for single-table detection and identity resolution."""

import pytest

from termbench.engine.identity import IdentityResolver, parse_single_table_select
from termbench.engine.models import ColumnDescriptor, IdentityState
from termbench.errors import SessionConnectionError


def columns(*names):
    return [ColumnDescriptor(name, "", i) for i, name in enumerate(names)]


class TestParseSingleTableSelect:
    @pytest.mark.parametrize("sql,expected", [
        ("SELECT * FROM users", (None, "users")),
        ("select id, email from users where id = 7;", (None, "users")),
        ("SELECT * FROM app.users u ORDER BY id", ("app", "users")),
        ('SELECT * FROM "Mixed" LIMIT 10', (None, '"Mixed"')),
        ("SELECT *\nFROM users\nWHERE age > 3", (None, "users")),
    ])
    def test_single_table(self, sql, expected) -> None:
        assert parse_single_table_select(sql) == expected

    @pytest.mark.parametrize("sql", [
        "SELECT * FROM users u JOIN orders o ON o.user_id = u.id",
        "SELECT * FROM users, orders",
        "SELECT * FROM users UNION SELECT * FROM users",
        "SELECT * FROM (SELECT * FROM users) s",
        "SELECT count(*) FROM users",
        "SELECT age, max(id) FROM users GROUP BY age",
        "SELECT DISTINCT email FROM users",
        "SELECT * FROM users WHERE id IN (SELECT user_id FROM orders)",
        "WITH x AS (SELECT 1) SELECT * FROM x",
        "UPDATE users SET age = 1",
        "SELECT 1",
    ])
    def test_not_single_table(self, sql) -> None:
        assert parse_single_table_select(sql) == (None, None)


class TestIdentityResolver:
    """Resolution order: primary key, single unique constraint, override."""

    @pytest.mark.asyncio
    async def test_primary_key(self, sqlite_session) -> None:
        resolver = IdentityResolver(sqlite_session)
        identity, cols = await resolver.resolve(
            "SELECT id, email FROM users", columns("id", "email"))
        assert identity.is_resolved
        assert identity.key.columns == ("id",)
        assert identity.key.ordinals == (0,)
        assert identity.key.source == "primary_key"
        assert repr(identity) == "Resolved({'id'})"
        assert [c.is_identity for c in cols] == [True, False]
        assert cols[1].declared_type == "text"
        assert cols[1].nullable is False

    @pytest.mark.asyncio
    async def test_join_is_unavailable(self, sqlite_session) -> None:
        resolver = IdentityResolver(sqlite_session, {"users": ["id"]})
        identity, _ = await resolver.resolve(
            "SELECT u.id, o.id FROM users u JOIN orders o ON o.user_id = u.id",
            columns("id", "id"))
        assert identity.status == IdentityState.UNAVAILABLE
        assert not identity.is_resolved

    @pytest.mark.asyncio
    async def test_single_unique_constraint(self, sqlite_session) -> None:
        resolver = IdentityResolver(sqlite_session)
        identity, _ = await resolver.resolve(
            "SELECT code, label FROM accounts", columns("code", "label"))
        assert identity.is_resolved
        assert identity.key.columns == ("code",)
        assert identity.key.source == "unique"

    @pytest.mark.asyncio
    async def test_override(self, sqlite_session) -> None:
        resolver = IdentityResolver(sqlite_session, {"Events": ["source", "happened"]})
        identity, cols = await resolver.resolve(
            "SELECT note, source, happened FROM events",
            columns("note", "source", "happened"))
        assert identity.is_resolved
        assert identity.key.columns == ("source", "happened")
        assert identity.key.ordinals == (1, 2)
        assert identity.key.source == "override"
        assert [c.is_identity for c in cols] == [False, True, True]

    @pytest.mark.asyncio
    async def test_no_key_is_unavailable(self, sqlite_session) -> None:
        resolver = IdentityResolver(sqlite_session)
        identity, _ = await resolver.resolve(
            "SELECT source, note FROM events", columns("source", "note"))
        assert identity.status == IdentityState.UNAVAILABLE

    @pytest.mark.asyncio
    async def test_key_missing_from_result(self, sqlite_session) -> None:
        resolver = IdentityResolver(sqlite_session)
        identity, _ = await resolver.resolve(
            "SELECT email FROM users", columns("email"))
        assert identity.status == IdentityState.UNAVAILABLE

    @pytest.mark.asyncio
    async def test_computed_column(self, sqlite_session) -> None:
        resolver = IdentityResolver(sqlite_session)
        identity, _ = await resolver.resolve(
            "SELECT id, upper(email) FROM users", columns("id", "upper(email)"))
        assert identity.status == IdentityState.UNAVAILABLE

    @pytest.mark.asyncio
    async def test_unknown_table(self, sqlite_session) -> None:
        resolver = IdentityResolver(sqlite_session)
        identity, _ = await resolver.resolve("SELECT id FROM ghosts", columns("id"))
        assert identity.status == IdentityState.UNAVAILABLE


class FailingMetadataSession:
    def __init__(self, error):
        self.error = error

    async def metadata(self, relation):
        raise self.error


class TestMetadataFailures:
    @pytest.mark.asyncio
    async def test_driver_error_is_unavailable(self) -> None:
        resolver = IdentityResolver(FailingMetadataSession(RuntimeError("permission denied")))
        identity, _ = await resolver.resolve("SELECT id FROM users", columns("id"))
        assert identity.status == IdentityState.UNAVAILABLE

    @pytest.mark.asyncio
    async def test_connection_error_propagates(self) -> None:
        resolver = IdentityResolver(FailingMetadataSession(SessionConnectionError("gone")))
        with pytest.raises(SessionConnectionError):
            await resolver.resolve("SELECT id FROM users", columns("id"))
