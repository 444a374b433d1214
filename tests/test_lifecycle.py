"""
Tests for triggering, cancelling and following emergency alerts
"""
import asyncio

import pytest

from conftest import settle
from shesurvived.lifecycle import (
    FALSE_ALARM_REASON,
    RESOLVED_REASON,
    Active,
    AlertMirror,
    Cancelled,
    Idle,
    Mode,
    Outcome,
    alert_state,
    history_status,
    match_history_entry,
)
from shesurvived.models import AlertRecord, EmergencyType

AGADIR = (30.4278, -9.5981)


class TestTrigger:

    async def test_trigger_without_user_is_a_no_op(self, controller, store):
        assert await controller.trigger(None, AGADIR) is None
        assert await store.get_item("emergencies") is None
        assert await store.get_item("emergencyHistory") is None

    async def test_trigger_writes_current_record_and_history(self, controller, repo_a, asha):
        record = await controller.trigger(asha, AGADIR)

        current = await repo_a.get_current_alert(asha.id)
        history = await repo_a.get_history(asha.id)
        assert current.active is True
        assert current.user_name == "Asha"
        assert current.bracelet_code == "AB12CD34"
        assert current.location == AGADIR
        assert current.play_alarm_on_contact is True
        assert current.audio_chunks == []
        assert [h.id for h in history] == [record.id]

    async def test_doubt_mode_never_sounds_on_contacts(self, controller, asha):
        record = await controller.trigger(asha, AGADIR, doubt_mode=True)

        assert record.doubt_mode is True
        assert record.play_alarm_on_contact is False
        assert alert_state(await controller.current(asha.id)).mode == Mode.DOUBT

    async def test_trigger_while_active_returns_existing(self, controller, repo_a, asha):
        first = await controller.trigger(asha, AGADIR)
        second = await controller.trigger(asha, (0.0, 0.0))

        assert second.id == first.id
        assert len(await repo_a.get_history(asha.id)) == 1

    async def test_trigger_starts_clock_and_streamer(self, controller, asha):
        await controller.trigger(asha, AGADIR)

        assert controller.recording(asha.id) is True
        assert controller.elapsed(asha.id) >= 0
        assert controller.streamers[asha.id].running is True

    async def test_trigger_does_not_echo_to_own_context(self, controller, store, asha):
        seen = []
        store.bus.subscribe("emergencies", seen.append, context=controller.context_id)

        await controller.trigger(asha, AGADIR)
        await settle(store.bus)

        assert seen == []


class TestCancel:

    async def test_false_alarm(self, controller, repo_a, asha):
        await controller.trigger(asha, AGADIR)
        await controller.cancel(asha, was_real_emergency=False, emergency_type=EmergencyType.ASSAULT)

        current = await repo_a.get_current_alert(asha.id)
        assert current.active is False
        assert current.cancelled_at
        assert current.cancellation_reason == FALSE_ALARM_REASON
        assert current.emergency_type is None
        assert current.play_alarm_on_contact is False
        assert controller.recording(asha.id) is False
        assert asha.id not in controller.streamers

    async def test_resolved_keeps_emergency_type(self, controller, repo_a, asha):
        record = await controller.trigger(asha, AGADIR)
        await controller.cancel(asha, was_real_emergency=True, emergency_type=EmergencyType.STALKING)

        current = await repo_a.get_current_alert(asha.id)
        [entry] = await repo_a.get_history(asha.id)
        assert current.cancellation_reason == RESOLVED_REASON
        assert current.emergency_type == EmergencyType.STALKING
        assert entry.id == record.id
        assert entry.active is False
        assert entry.was_real_emergency is True

    async def test_cancel_is_terminal(self, controller, repo_a, asha):
        await controller.trigger(asha, AGADIR)
        await controller.cancel(asha, was_real_emergency=False)
        first = await repo_a.get_current_alert(asha.id)

        await controller.cancel(asha, was_real_emergency=True, emergency_type=EmergencyType.OTHER)

        assert await repo_a.get_current_alert(asha.id) == first

    async def test_cancel_without_alert(self, controller, store, asha):
        await controller.cancel(asha, was_real_emergency=False)
        assert await store.get_item("emergencies") is None

    async def test_each_trigger_adds_one_history_entry(self, controller, repo_a, asha):
        ids = []
        for _ in range(3):
            ids.append((await controller.trigger(asha, AGADIR)).id)
            await controller.cancel(asha, was_real_emergency=False)

        history = await repo_a.get_history(asha.id)
        assert [h.id for h in history] == ids
        assert all(h.active is False for h in history)

    async def test_cancel_updates_legacy_entry_without_id(self, controller, repo_a, store, asha):
        legacy = {"userId": asha.id, "userName": "Asha", "timestamp": "2024-01-01T10:00:00.000Z", "active": True}
        await store.write("emergencies", {asha.id: legacy})
        await store.write("emergencyHistory", {asha.id: legacy})

        await controller.cancel(asha, was_real_emergency=False)

        [entry] = await repo_a.get_history(asha.id)
        assert entry.active is False
        assert entry.cancellation_reason == FALSE_ALARM_REASON


class TestAlertUpdates:

    async def test_append_chunk_updates_record_and_history(self, controller, repo_a, asha):
        await controller.trigger(asha, AGADIR)

        await controller.append_chunk(asha.id, "chunk_1")
        await controller.append_chunk(asha.id, "chunk_2")

        current = await repo_a.get_current_alert(asha.id)
        [entry] = await repo_a.get_history(asha.id)
        assert current.audio_chunks == ["chunk_1", "chunk_2"]
        assert current.latest_chunk.id == "chunk_2"
        assert entry.audio_chunks == ["chunk_1", "chunk_2"]

    async def test_append_chunk_ignored_after_cancel(self, controller, repo_a, asha):
        await controller.trigger(asha, AGADIR)
        await controller.cancel(asha, was_real_emergency=False)

        assert await controller.append_chunk(asha.id, "late") is None
        assert (await repo_a.get_current_alert(asha.id)).audio_chunks == []

    async def test_update_location_only_while_active(self, controller, asha):
        await controller.trigger(asha, AGADIR)
        moved = await controller.update_location(asha.id, (30.43, -9.6))
        await controller.cancel(asha, was_real_emergency=False)

        assert moved.location == (30.43, -9.6)
        assert await controller.update_location(asha.id, (0.0, 0.0)) is None

    async def test_live_stream_toggle(self, controller, asha):
        await controller.trigger(asha, AGADIR)

        record = await controller.set_live_stream(asha.id, False)

        assert record.live_stream_active is False


class TestCrossContext:

    async def test_other_context_sees_trigger_and_cancel(self, controller, other_controller, asha):
        changes = other_controller.observe_changes(asha.id)
        pending = asyncio.create_task(changes.__anext__())
        await asyncio.sleep(0)

        record = await controller.trigger(asha, AGADIR)
        seen = await asyncio.wait_for(pending, timeout=1)
        assert seen.id == record.id and seen.active is True

        await controller.cancel(asha, was_real_emergency=False)
        seen = await asyncio.wait_for(changes.__anext__(), timeout=1)
        assert seen.active is False

        await changes.aclose()

    async def test_attached_context_mirrors_clock_without_streaming(self, controller, other_controller, store, asha):
        await other_controller.attach(asha.id)

        await controller.trigger(asha, AGADIR)
        await settle(store.bus)

        assert other_controller.recording(asha.id) is True
        assert other_controller.mirrors[asha.id].active is True
        assert asha.id not in other_controller.streamers

        await controller.cancel(asha, was_real_emergency=False)
        await settle(store.bus)

        assert other_controller.recording(asha.id) is False
        assert other_controller.mirrors[asha.id].active is False

    async def test_attach_after_reload_resumes_alert(self, controller, repo_a, asha):
        record = await controller.trigger(asha, AGADIR)
        await controller.close()

        reloaded = type(controller)(repo_a, controller.scheduler, controller.audio_source,
                                    audio_interval=controller.audio_interval)
        try:
            resumed = await reloaded.attach(asha.id)
            assert resumed.id == record.id
            assert reloaded.recording(asha.id) is True
            assert reloaded.streamers[asha.id].alert_id == record.id
        finally:
            await reloaded.close()


class TestAlertState:

    def test_no_record_is_idle(self):
        assert alert_state(None) == Idle()

    def test_active_record(self):
        record = AlertRecord(user_id="1", timestamp="2024-01-01T10:00:00.000Z", active=True,
                             location=AGADIR, audio_chunks=["a"])
        state = alert_state(record)

        assert isinstance(state, Active)
        assert state.mode == Mode.NORMAL
        assert state.audio == ("a",)
        assert history_status(record) == "active"

    @pytest.mark.parametrize("real, outcome, status", [
        (True, Outcome.RESOLVED, "resolved"),
        (False, Outcome.FALSE_ALARM, "cancelled"),
    ])
    def test_cancelled_record(self, real, outcome, status):
        record = AlertRecord(user_id="1", timestamp="2024-01-01T10:00:00.000Z", active=False,
                             was_real_emergency=real, cancelled_at="2024-01-01T10:05:00.000Z")
        state = alert_state(record)

        assert isinstance(state, Cancelled)
        assert state.outcome == outcome
        assert history_status(record) == status

    def test_match_prefers_id_over_position(self):
        entries = [{"id": "a"}, {"id": "b"}, {"id": "c"}]
        record = AlertRecord(id="b", user_id="1", timestamp="2024-01-01T10:00:00.000Z")

        assert match_history_entry(record)(entries) == 1
        assert match_history_entry(record.model_copy(update={"id": "zzz"}))(entries) is None
        assert match_history_entry(record.model_copy(update={"id": None}))(entries) == 2

    def test_mirror_transitions(self):
        mirror = AlertMirror("1")
        first = AlertRecord(id="a", user_id="1", timestamp="t", active=True)

        assert mirror.apply(first) == "triggered"
        assert mirror.apply(first.model_copy(update={"audio_chunks": ["x"]})) is None
        assert mirror.apply(first.model_copy(update={"active": False})) == "cancelled"
        assert mirror.apply(first.model_copy(update={"id": "b"})) == "triggered"
