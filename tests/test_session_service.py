import asyncio
from decimal import Decimal

import pytest
import pytest_asyncio
from pydantic import ValidationError

from catatkas.schemas.session import SessionState, TransactionFields
from catatkas.services.session_service import SessionStore, UsageError
from catatkas.services.state_machine import EditableField, MenuStage, TransactionType
from catatkas.services.store import CLEANUP_LOCK_KEY, StoreUnavailableError


@pytest.fixture
def sessions(store, clock):
    return SessionStore(store, session_timeout_seconds=600, partial_data_ttl_seconds=3600, clock=clock)


def _confirmation_state() -> SessionState:
    return SessionState(
        menu=MenuStage.CONFIRMATION,
        step=5,
        transaction_type=TransactionType.EXPENSE,
        category="Sewa",
        amount=Decimal("2500000"),
        description="Sewa toko",
    )


class TestSessionState:
    def test_editing_requires_snapshot(self):
        with pytest.raises(ValidationError):
            SessionState(editing_field=EditableField.AMOUNT)

    def test_snapshot_requires_editing(self):
        with pytest.raises(ValidationError):
            SessionState(pre_edit_snapshot=TransactionFields())

    def test_is_editing_is_derived(self):
        state = SessionState(editing_field=EditableField.AMOUNT, pre_edit_snapshot=TransactionFields())
        assert state.is_editing is True
        assert SessionState().is_editing is False


class TestGetSet:
    @pytest.mark.asyncio
    async def test_set_stamps_activity_and_ttl(self, sessions, fake_redis, clock):
        saved = await sessions.set("u1", _confirmation_state())

        assert saved.last_activity_at == int(clock() * 1000)
        assert fake_redis.ttl_seconds("session:u1") == pytest.approx(600)

        loaded = await sessions.get("u1")
        assert loaded.amount == Decimal("2500000")
        assert loaded.transaction_type == TransactionType.EXPENSE

    @pytest.mark.asyncio
    async def test_write_refreshes_ttl(self, sessions, clock):
        await sessions.set("u1", SessionState())
        clock.advance(500)
        await sessions.update("u1", category="Makanan")
        clock.advance(500)

        session = await sessions.get("u1")
        assert session is not None
        assert session.category == "Makanan"

    @pytest.mark.asyncio
    async def test_session_expires_without_activity(self, sessions, clock):
        await sessions.set("u1", SessionState())
        clock.advance(601)

        assert await sessions.get("u1") is None
        assert await sessions.is_expired("u1") is True

    @pytest.mark.asyncio
    async def test_update_creates_main_session_when_missing(self, sessions):
        session = await sessions.update("u1", category="Makanan")

        assert session.menu == MenuStage.MAIN
        assert session.category == "Makanan"

    @pytest.mark.asyncio
    async def test_update_merges_fields(self, sessions):
        await sessions.set("u1", _confirmation_state())

        session = await sessions.update("u1", description="Sewa bulan Mei")

        assert session.category == "Sewa"
        assert session.description == "Sewa bulan Mei"

    @pytest.mark.asyncio
    async def test_extend_refreshes_ttl_only(self, sessions, fake_redis, clock):
        await sessions.set("u1", SessionState())
        clock.advance(300)

        await sessions.extend("u1")

        assert fake_redis.ttl_seconds("session:u1") == pytest.approx(600)

    @pytest.mark.asyncio
    async def test_clear_is_idempotent(self, sessions):
        await sessions.set("u1", SessionState())
        await sessions.clear("u1")
        await sessions.clear("u1")
        assert await sessions.get("u1") is None

    @pytest.mark.asyncio
    async def test_context_data(self, sessions):
        assert await sessions.get_context_data("u1") == {}

        await sessions.set("u1", _confirmation_state())
        context = await sessions.get_context_data("u1")

        assert context["category"] == "Sewa"
        assert set(context) == {"transaction_type", "category", "amount", "description"}


class TestStoreFailures:
    @pytest.mark.asyncio
    async def test_reads_degrade_to_empty(self, sessions, fake_redis):
        fake_redis.fail = True

        assert await sessions.get("u1") is None
        assert await sessions.get_partial_data("u1") is None
        assert await sessions.has_recoverable_context("u1") is False
        assert await sessions.get_context_data("u1") == {}
        assert await sessions.is_expired("u1") is True

    @pytest.mark.asyncio
    async def test_housekeeping_swallows_errors(self, sessions, fake_redis):
        fake_redis.fail = True

        await sessions.clear("u1")
        await sessions.extend("u1")
        await sessions.clear_partial_data("u1")
        assert await sessions.increment_retry_count("u1") == 0
        assert await sessions.cleanup_expired_sessions() == 0

    @pytest.mark.asyncio
    async def test_writes_propagate(self, sessions, fake_redis):
        fake_redis.fail = True

        with pytest.raises(StoreUnavailableError):
            await sessions.set("u1", SessionState())
        with pytest.raises(StoreUnavailableError):
            await sessions.update("u1", category="Makanan")
        with pytest.raises(StoreUnavailableError):
            await sessions.save_partial_data("u1", category="Makanan")
        with pytest.raises(StoreUnavailableError):
            await sessions.start_editing("u1", EditableField.AMOUNT)


class TestEditing:
    @pytest.mark.asyncio
    async def test_cancel_restores_snapshot_verbatim(self, sessions):
        original = await sessions.set("u1", _confirmation_state())

        await sessions.start_editing("u1", EditableField.AMOUNT)
        await sessions.update("u1", amount=Decimal("10"), description="salah ketik")
        restored = await sessions.cancel_editing("u1")

        assert restored.transaction_fields() == original.transaction_fields()
        assert restored.editing_field is None
        assert restored.pre_edit_snapshot is None

    @pytest.mark.asyncio
    async def test_switching_field_mid_edit_keeps_first_snapshot(self, sessions):
        original = await sessions.set("u1", _confirmation_state())

        await sessions.start_editing("u1", EditableField.AMOUNT)
        await sessions.update("u1", amount=Decimal("10"))
        switched = await sessions.start_editing("u1", EditableField.DESCRIPTION)
        restored = await sessions.cancel_editing("u1")

        assert switched.editing_field == EditableField.DESCRIPTION
        assert switched.pre_edit_snapshot.amount == original.amount
        assert restored.transaction_fields() == original.transaction_fields()

    @pytest.mark.asyncio
    async def test_start_editing_snapshots_fields(self, sessions):
        await sessions.set("u1", _confirmation_state())

        session = await sessions.start_editing("u1", "category")

        assert session.editing_field == EditableField.CATEGORY
        assert session.pre_edit_snapshot.category == "Sewa"
        assert session.is_editing is True

    @pytest.mark.asyncio
    async def test_finish_keeps_new_values(self, sessions):
        await sessions.set("u1", _confirmation_state())
        await sessions.start_editing("u1", EditableField.AMOUNT)
        await sessions.update("u1", amount=Decimal("3000000"))

        session = await sessions.finish_editing("u1")

        assert session.amount == Decimal("3000000")
        assert session.is_editing is False
        assert session.pre_edit_snapshot is None

    @pytest.mark.asyncio
    async def test_start_editing_without_session(self, sessions):
        with pytest.raises(UsageError):
            await sessions.start_editing("u1", EditableField.AMOUNT)

    @pytest.mark.asyncio
    async def test_finish_editing_without_session(self, sessions):
        with pytest.raises(UsageError):
            await sessions.finish_editing("u1")

    @pytest.mark.asyncio
    async def test_cancel_without_edit_in_progress(self, sessions):
        await sessions.set("u1", _confirmation_state())
        with pytest.raises(UsageError):
            await sessions.cancel_editing("u1")


class TestPartialData:
    @pytest.mark.asyncio
    async def test_save_and_get(self, sessions, fake_redis, clock):
        await sessions.save_partial_data("u1", transaction_type="income", category="Makanan", amount=Decimal("5000"))

        partial = await sessions.get_partial_data("u1")
        assert partial.user_id == "u1"
        assert partial.amount == Decimal("5000")
        assert partial.retry_count == 0
        assert partial.timestamp == int(clock() * 1000)
        assert fake_redis.ttl_seconds("partial:u1") == pytest.approx(3600)
        assert await sessions.has_recoverable_context("u1") is True

    @pytest.mark.asyncio
    async def test_increment_retry_count(self, sessions):
        assert await sessions.increment_retry_count("u1") == 0

        await sessions.save_partial_data("u1", category="Makanan")
        assert await sessions.increment_retry_count("u1") == 1
        assert await sessions.increment_retry_count("u1") == 2
        assert (await sessions.get_partial_data("u1")).retry_count == 2

    @pytest.mark.asyncio
    async def test_clear_partial_data(self, sessions):
        await sessions.save_partial_data("u1", category="Makanan")
        await sessions.clear_partial_data("u1")
        assert await sessions.has_recoverable_context("u1") is False

    @pytest.mark.asyncio
    async def test_recovery_after_session_expiry(self, sessions, clock):
        await sessions.set("u1", _confirmation_state())
        await sessions.save_partial_data("u1", **_confirmation_state().transaction_fields())
        clock.advance(700)
        assert await sessions.get("u1") is None

        restored = await sessions.restore_from_partial_data("u1")

        assert restored.menu == MenuStage.MAIN
        assert restored.category == "Sewa"
        assert restored.amount == Decimal("2500000")
        assert (await sessions.get("u1")).category == "Sewa"
        assert await sessions.has_recoverable_context("u1") is True

    @pytest.mark.asyncio
    async def test_restore_without_partial_data(self, sessions):
        with pytest.raises(UsageError):
            await sessions.restore_from_partial_data("u1")


class TestCleanupExpiredSessions:
    @pytest_asyncio.fixture
    async def stale_sessions(self, store, clock):
        # Written with a long TTL so the sweep, not expiry, is what removes them.
        writer = SessionStore(store, session_timeout_seconds=7200, clock=clock)
        await writer.set("old-1", SessionState())
        await writer.set("old-2", SessionState())
        clock.advance(601)
        await writer.set("fresh", SessionState())
        return writer

    @pytest.mark.asyncio
    async def test_removes_only_idle_sessions(self, sessions, stale_sessions, store):
        assert await sessions.cleanup_expired_sessions() == 2

        assert await store.keys_by_prefix("session:") == ["session:fresh"]
        assert await store.exists(CLEANUP_LOCK_KEY) is False

    @pytest.mark.asyncio
    async def test_skips_when_lock_held(self, sessions, stale_sessions, store):
        await store.set_if_absent(CLEANUP_LOCK_KEY, "1", ttl_seconds=10)

        assert await sessions.cleanup_expired_sessions() == 0
        assert len(await store.keys_by_prefix("session:")) == 3

    @pytest.mark.asyncio
    async def test_concurrent_sweeps_do_not_double_clean(self, sessions, stale_sessions, store, clock):
        other = SessionStore(store, session_timeout_seconds=600, clock=clock)

        results = await asyncio.gather(
            sessions.cleanup_expired_sessions(),
            other.cleanup_expired_sessions(),
        )

        assert sorted(results) == [0, 2]
        assert await store.exists(CLEANUP_LOCK_KEY) is False
