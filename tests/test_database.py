from contextlib import asynccontextmanager

import pytest

from conftest import place_order
from database import Database, PostgresAuditLog, PostgresOrderRepository
from pipeline.repositories import AuditEventType, AuditLogEntry
from schemas.order_definitions import OrderStatus


class RecordingConnection:
    """Stands in for an asyncpg connection; keeps every statement sent."""

    def __init__(self):
        self.statements = []
        self.result = "UPDATE 1"

    async def execute(self, query, *args):
        self.statements.append((" ".join(query.split()), args))
        return self.result


@pytest.fixture
def connection(monkeypatch):
    conn = RecordingConnection()

    @asynccontextmanager
    async def acquire():
        yield conn

    monkeypatch.setattr(Database, "acquire", acquire)
    return conn


class TestMigrations:
    @pytest.mark.asyncio
    async def test_actor_column_fits_admin_ids(self, connection):
        await Database._run_migrations()

        sql = [statement for statement, _ in connection.statements]
        events_table = next(s for s in sql if s.startswith("CREATE TABLE IF NOT EXISTS system_events"))
        assert "actor VARCHAR(100)" in events_table
        assert "ALTER TABLE system_events ALTER COLUMN actor TYPE VARCHAR(100)" in sql


class TestPostgresAuditLog:
    @pytest.mark.asyncio
    async def test_admin_actor_is_written_whole(self, connection):
        actor = "admin:6650f1c2a9b3e4d5f6a7b8c9"
        entry = AuditLogEntry(
            correlation_id="corr-1",
            event_type=AuditEventType.ORDER_STATUS_CHANGED,
            entity_type="order",
            entity_id="order-1",
            actor=actor,
        )

        await PostgresAuditLog().append(entry)

        statement, args = connection.statements[0]
        assert statement.startswith("INSERT INTO system_events")
        assert args[5] == actor
        assert len(actor) <= 100


class TestPostgresOrderRepository:
    @pytest.mark.asyncio
    async def test_compare_and_set_checks_status_and_version(self, connection, engine, store):
        order = (await place_order(engine, store)).order

        assert await PostgresOrderRepository().compare_and_set(order.evolve(), OrderStatus.CREATED, order.version)

        statement, args = connection.statements[-1]
        assert "WHERE id = $1 AND status = $10" in statement
        assert "version = $11" in statement
        assert args[-2:] == ("created", order.version)

    @pytest.mark.asyncio
    async def test_lost_compare_and_set(self, connection, engine, store):
        order = (await place_order(engine, store)).order
        connection.result = "UPDATE 0"

        assert not await PostgresOrderRepository().compare_and_set(order.evolve(), OrderStatus.CREATED, order.version)
