"""
Tests for the Session Store.

Covers:
  - create / get / has / update / delete
  - lazy expiry on read, eager expiry on sweep
  - flow switching resets stage and data
  - per-key serialization of concurrent updates
  - durable mirror (memory and SQL backends) and recovery
"""
import asyncio
import pytest

from context.session_store import SessionStore
from database.store import SqlSessionBackend
from database.store_memory import InMemorySessionBackend
from models.schemas import FlowName

from conftest import FakeClock


class TestSessionLifecycle:
    @pytest.mark.asyncio
    async def test_create_uses_initial_stage(self, sessions):
        session = await sessions.create("u1", FlowName.QUOTE)
        assert session.current_flow == FlowName.QUOTE
        assert session.stage == "service_selection"
        assert session.data == {}

    @pytest.mark.asyncio
    async def test_create_overwrites_existing(self, sessions):
        await sessions.create("u1", FlowName.QUOTE, data={"service_id": 1})
        await sessions.create("u1", FlowName.FAQ)
        session = await sessions.get("u1")
        assert session.current_flow == FlowName.FAQ
        assert session.data == {}
        assert len(sessions) == 1

    @pytest.mark.asyncio
    async def test_get_refreshes_activity(self, sessions, clock):
        await sessions.create("u1", FlowName.WELCOME)
        clock.advance(seconds=7000)
        assert await sessions.get("u1") is not None
        clock.advance(seconds=7000)
        # 14000s since creation but only 7000s since the last read
        assert await sessions.get("u1") is not None

    @pytest.mark.asyncio
    async def test_returned_copy_is_detached(self, sessions):
        await sessions.create("u1", FlowName.QUOTE, data={"answers": ["a"]})
        session = await sessions.get("u1")
        session.data["answers"].append("b")
        fresh = await sessions.get("u1")
        assert fresh.data["answers"] == ["a"]

    @pytest.mark.asyncio
    async def test_delete(self, sessions):
        await sessions.create("u1", FlowName.WELCOME)
        assert await sessions.delete("u1") is True
        assert await sessions.delete("u1") is False
        assert await sessions.has("u1") is False


class TestExpiry:
    @pytest.mark.asyncio
    async def test_get_after_max_idle_returns_none_without_sweep(self, sessions, clock):
        await sessions.create("u1", FlowName.SCHEDULING)
        clock.advance(seconds=7201)
        assert await sessions.get("u1") is None
        assert len(sessions) == 0

    @pytest.mark.asyncio
    async def test_exactly_max_idle_is_still_live(self, sessions, clock):
        await sessions.create("u1", FlowName.SCHEDULING)
        clock.advance(seconds=7200)
        assert await sessions.has("u1") is True

    @pytest.mark.asyncio
    async def test_update_on_expired_returns_none_and_creates_nothing(self, sessions, clock):
        await sessions.create("u1", FlowName.QUOTE)
        clock.advance(hours=3)
        assert await sessions.update("u1", stage="urgency_selection") is None
        assert await sessions.get("u1") is None

    @pytest.mark.asyncio
    async def test_update_on_missing_returns_none(self, sessions):
        assert await sessions.update("nobody", data={"x": 1}) is None
        assert len(sessions) == 0

    @pytest.mark.asyncio
    async def test_sweep_removes_only_expired(self, sessions, clock):
        await sessions.create("old", FlowName.FAQ)
        clock.advance(seconds=5000)
        await sessions.create("new", FlowName.FAQ)
        clock.advance(seconds=3000)

        removed = await sessions.sweep()
        assert removed == 1
        assert await sessions.has("old") is False
        assert await sessions.has("new") is True

    @pytest.mark.asyncio
    async def test_sweep_runs_hooks_and_leaves_no_locks(self, sessions, clock):
        calls = []
        sessions.add_sweep_hook(lambda: calls.append("pruned"))
        for user in ("u1", "u2", "u3"):
            await sessions.create(user, FlowName.FAQ)
        await sessions.delete("u3")
        clock.advance(seconds=7201)

        assert await sessions.sweep() == 2
        assert calls == ["pruned"]
        assert len(sessions._locks) == 0


class TestUpdate:
    @pytest.mark.asyncio
    async def test_data_merged_key_by_key(self, sessions):
        await sessions.create("u1", FlowName.QUOTE, data={"service_id": 2})
        await sessions.update("u1", data={"urgency": "urgent"})
        session = await sessions.get("u1")
        assert session.data == {"service_id": 2, "urgency": "urgent"}

    @pytest.mark.asyncio
    async def test_stage_update(self, sessions):
        await sessions.create("u1", FlowName.QUOTE)
        session = await sessions.update("u1", stage="urgency_selection")
        assert session.stage == "urgency_selection"

    @pytest.mark.asyncio
    async def test_flow_switch_resets_stage_and_data(self, sessions):
        await sessions.create("u1", FlowName.QUOTE, stage="confirmation", data={"quote_id": 4})
        session = await sessions.update("u1", current_flow=FlowName.EMERGENCY)
        assert session.current_flow == FlowName.EMERGENCY
        assert session.stage == "type_selection"
        assert session.data == {}

    @pytest.mark.asyncio
    async def test_unknown_field_rejected(self, sessions):
        await sessions.create("u1", FlowName.QUOTE)
        with pytest.raises(ValueError):
            await sessions.update("u1", user_id="someone-else")

    @pytest.mark.asyncio
    async def test_concurrent_updates_are_all_applied(self, sessions):
        await sessions.create("u1", FlowName.FAQ)
        await asyncio.gather(*(sessions.update("u1", data={f"k{i}": i}) for i in range(50)))
        session = await sessions.get("u1")
        assert len(session.data) == 50


class TestIntrospection:
    @pytest.mark.asyncio
    async def test_stats_and_list_active(self, sessions, clock):
        await sessions.create("u1", FlowName.QUOTE)
        await sessions.create("u2", FlowName.QUOTE, stage="feedback")
        await sessions.create("u3", FlowName.FAQ)
        clock.advance(minutes=10)

        stats = sessions.stats()
        assert stats["active"] == 3
        assert stats["by_flow"] == {"quote": 2, "faq": 1}
        assert stats["by_stage"]["quote:feedback"] == 1

        active = sessions.list_active()
        assert {row["user_id"] for row in active} == {"u1", "u2", "u3"}
        assert all(row["idle_minutes"] == 10 for row in active)


class TestSweeperTask:
    @pytest.mark.asyncio
    async def test_start_and_stop(self, clock):
        store = SessionStore(max_idle_seconds=1, sweep_interval_seconds=0.01, clock=clock)
        await store.create("u1", FlowName.WELCOME)
        clock.advance(seconds=5)
        await store.start()
        await asyncio.sleep(0.05)
        await store.stop()
        assert len(store) == 0


class TestDurableSessions:
    @pytest.mark.asyncio
    async def test_memory_mirror_recovers_live_sessions(self):
        clock = FakeClock()
        backend = InMemorySessionBackend()
        first = SessionStore(max_idle_seconds=600, backend=backend, clock=clock)
        await first.create("live", FlowName.QUOTE, stage="contact_info", data={"name": "Ana Lima"})
        await first.create("stale", FlowName.FAQ)
        clock.advance(seconds=300)
        await first.get("live")
        clock.advance(seconds=400)

        second = SessionStore(max_idle_seconds=600, backend=backend, clock=clock)
        assert await second.recover() == 1
        session = await second.get("live")
        assert session.stage == "contact_info"
        assert session.data["name"] == "Ana Lima"
        assert {s.user_id for s in await backend.load_all()} == {"live"}

    @pytest.mark.asyncio
    async def test_sql_backend_round_trip(self, database):
        clock = FakeClock()
        backend = SqlSessionBackend(database)
        first = SessionStore(max_idle_seconds=7200, backend=backend, clock=clock)
        await first.create("5581999990000", FlowName.SCHEDULING)
        await first.update("5581999990000", stage="date_selection", data={"service_id": 1})

        second = SessionStore(max_idle_seconds=7200, backend=SqlSessionBackend(database),
                              clock=clock)
        assert await second.recover() == 1
        session = await second.get("5581999990000")
        assert session.current_flow == FlowName.SCHEDULING
        assert session.stage == "date_selection"
        assert session.data == {"service_id": 1}

        await second.delete("5581999990000")
        assert await backend.load_all() == []
