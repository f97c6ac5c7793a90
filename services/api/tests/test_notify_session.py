"""Notify against a real session, so savepoint rollbacks behave as in production.

Runs on in-memory SQLite; the savepoint listeners follow the SQLAlchemy recipe
for pysqlite/aiosqlite transactions.
"""

from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import event, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from conftest import EXPO_IOS
from pushlink.models.base import Base
from pushlink.models.delivery_log import DeliveryLog
from pushlink.models.device_token import DeviceToken, InvalidReason, TokenPlatform, TokenStatus
from pushlink.services.dispatch_client import DeliveryOutcome, DeliveryReceipt, DispatchClient
from pushlink.services.notification_service import AttemptState, NotificationService
from pushlink.services.token_store import TokenStore


async def _sqlite_sessions():
    engine = create_async_engine("sqlite+aiosqlite://", poolclass=StaticPool)

    @event.listens_for(engine.sync_engine, "connect")
    def _no_implicit_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _explicit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    return engine, async_sessionmaker(engine, expire_on_commit=False)


async def _seed_token(sessions, user_id: str) -> None:
    async with sessions() as db:
        db.add(DeviceToken(user_id=user_id, platform=TokenPlatform.IOS, address=EXPO_IOS))
        await db.commit()


async def _stored_token(sessions) -> DeviceToken:
    async with sessions() as db:
        result = await db.execute(select(DeviceToken).where(DeviceToken.address == EXPO_IOS))
        return result.scalar_one()


def _service(settings, outcome: DeliveryOutcome) -> NotificationService:
    dispatch = AsyncMock(spec=DispatchClient)
    dispatch.send.return_value = [DeliveryReceipt(EXPO_IOS, outcome)]
    return NotificationService(dispatch_client=dispatch, settings=settings)


@pytest.mark.asyncio
async def test_last_used_failure_does_not_lose_invalidation(settings, user_id):
    engine, sessions = await _sqlite_sessions()
    try:
        await _seed_token(sessions, user_id)
        service = _service(settings, DeliveryOutcome.INVALID_ADDRESS)

        locked = OperationalError("UPDATE device_tokens", {}, Exception("database is locked"))
        async with sessions() as db:
            with patch.object(TokenStore, "touch", side_effect=locked):
                result = await service.notify(db, user_id=user_id, title="Hi", body="there")
            await db.commit()

        assert result.error is None
        assert result.invalid_recipients == 1
        assert result.attempts[0].platform == TokenPlatform.IOS
        assert result.attempts[0].state == AttemptState.INVALID_RECIPIENT

        token = await _stored_token(sessions)
        assert token.status == TokenStatus.INVALID
        assert token.invalid_reason == InvalidReason.PROVIDER_REJECTED

        async with sessions() as db:
            logged = (await db.execute(select(DeliveryLog))).scalars().all()
        assert [entry.outcome for entry in logged] == [DeliveryOutcome.INVALID_ADDRESS.value]
        assert logged[0].token_id == token.id
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_reconcile_failure_keeps_attempts_readable(settings, user_id):
    engine, sessions = await _sqlite_sessions()
    try:
        await _seed_token(sessions, user_id)
        service = _service(settings, DeliveryOutcome.INVALID_ADDRESS)

        broken = OperationalError("UPDATE device_tokens", {}, Exception("disk I/O error"))
        async with sessions() as db:
            with patch.object(TokenStore, "mark_invalid", side_effect=broken):
                result = await service.notify(db, user_id=user_id, title="Hi", body="there")
            await db.commit()

        assert result.error == "receipt reconciliation failed"
        assert result.attempts[0].platform == TokenPlatform.IOS
        assert result.attempts[0].token_id is not None

        # The touch savepoint survived; only the reconcile savepoint was rolled back
        token = await _stored_token(sessions)
        assert token.status == TokenStatus.ACTIVE
        assert token.last_used_at is not None
    finally:
        await engine.dispose()
