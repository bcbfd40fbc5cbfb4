"""Test command dispatcher: validation, timers, maintenance and delivery failures."""

import asyncio
import time

import pytest

from lockergw.core.errors import BrokerDisconnected, UnitInMaintenance, UnknownTarget
from lockergw.events import CommandPublished, DeliveryFailed, UnitStatusChanged, UnlockCancelled
from lockergw.gateway.bus import Bus
from lockergw.gateway.dispatcher import CommandDispatcher
from lockergw.gateway.registry import DeviceRegistry
from lockergw.models import Command, PendingUnlock
from tests.mocks import FakeBroker, RecordingTarget


class DispatcherSetup:
    def __init__(self, clock=time.time):
        self.clock = clock
        self.bus = Bus()
        self.recorder = RecordingTarget()
        self.bus.register(self.recorder)
        self.broker = FakeBroker()
        self.registry = DeviceRegistry(self.bus, clock=clock)
        self.registry.upsert_from_heartbeat("F1-2", "10.0.0.11", "esp32", 2, 60.0, clock())
        self.dispatcher = CommandDispatcher(self.registry, self.broker, self.bus, topic="lockers/cmd", clock=clock)

    def pending(self, unit_id="F1A", delay=0.05, uid="AB12"):
        now = self.clock()
        return PendingUnlock(unit_id=unit_id, uid=uid, scheduled_at=now, fire_at=now + delay)

    async def schedule(self, unit_id="F1A", delay=0.05, uid="AB12"):
        async with self.registry.unit_lock(unit_id):
            return self.dispatcher.schedule(self.pending(unit_id, delay, uid))


class TestDispatch:
    """Test immediate command dispatch."""

    @pytest.mark.asyncio
    async def test_open_lock_publishes(self):
        # Arrange
        s = DispatcherSetup()

        # Act
        command = await s.dispatcher.open_lock("F1B", uid="AB12")

        # Assert
        assert command == Command(type="openlock", target_unit="F1B", doorip="10.0.0.11", lock=2, uid="AB12")
        assert s.broker.commands("lockers/cmd") == [
            {"cmd": "openlock", "lock": 2, "doorip": "10.0.0.11", "uid": "AB12"}
        ]
        assert s.registry.lookup_unit("F1B").last_command_at is not None
        published = s.recorder.of(CommandPublished)
        assert len(published) == 1
        assert published[0].unit_id == "F1B"

    @pytest.mark.asyncio
    async def test_unknown_target_not_published(self):
        s = DispatcherSetup()
        with pytest.raises(UnknownTarget) as exc_info:
            await s.dispatcher.dispatch(Command(type="openlock", target_unit="ZZA", doorip="1.2.3.4", lock=1))
        assert exc_info.value.code == "unknown_unit"
        assert s.broker.published == []

    def test_build_command_unknown(self):
        s = DispatcherSetup()
        with pytest.raises(UnknownTarget):
            s.dispatcher.build_command("sync", "ZZA")

    @pytest.mark.asyncio
    async def test_openlock_on_maintenance_unit_rejected(self):
        # Arrange
        s = DispatcherSetup()
        s.registry.set_unit_status("F1A", "maintenance")

        # Act & Assert
        with pytest.raises(UnitInMaintenance):
            await s.dispatcher.open_lock("F1A")
        assert s.broker.published == []

    @pytest.mark.asyncio
    async def test_sync_allowed_in_maintenance(self):
        # Arrange
        s = DispatcherSetup()
        s.registry.set_unit_status("F1A", "maintenance")

        # Act
        await s.dispatcher.sync("F1A")

        # Assert
        assert s.broker.commands() == [{"cmd": "sync", "doorip": "10.0.0.11", "lock": 1, "uid": ""}]
        assert s.registry.lookup_unit("F1A").status == "maintenance"

    @pytest.mark.asyncio
    async def test_queue_full_surfaces_delivery_failed(self):
        # Arrange
        s = DispatcherSetup()
        s.broker.refuse = True

        # Act & Assert
        with pytest.raises(BrokerDisconnected):
            await s.dispatcher.open_lock("F1A")
        failed = s.recorder.of(DeliveryFailed)
        assert len(failed) == 1
        assert failed[0].topic == "lockers/cmd"
        assert '"openlock"' in failed[0].payload
        assert s.recorder.of(CommandPublished) == []

    def test_late_failure_listener(self):
        # Arrange
        s = DispatcherSetup()

        # Act
        s.dispatcher.on_delivery_failure("lockers/cmd", b'{"cmd": "openlock"}', ConnectionError("lost"))

        # Assert
        failed = s.recorder.of(DeliveryFailed)
        assert failed[0].reason == "lost"


class TestMaintenance:
    """Test maintenance toggling."""

    @pytest.mark.asyncio
    async def test_enable_sets_status_and_publishes(self):
        # Arrange
        s = DispatcherSetup()

        # Act
        await s.dispatcher.toggle_maintenance("F1A", True, uid="admin")

        # Assert
        assert s.registry.lookup_unit("F1A").status == "maintenance"
        assert s.broker.commands() == [{"cmd": "maintenance", "lock": 1, "doorip": "10.0.0.11", "uid": "admin"}]
        assert s.recorder.of(UnitStatusChanged)[0].status == "maintenance"

    @pytest.mark.asyncio
    async def test_disable_returns_to_available(self):
        s = DispatcherSetup()
        await s.dispatcher.toggle_maintenance("F1A", True)
        await s.dispatcher.toggle_maintenance("F1A", False)
        assert s.registry.lookup_unit("F1A").status == "available"
        assert [c["cmd"] for c in s.broker.commands()] == ["maintenance", "normal"]

    @pytest.mark.asyncio
    async def test_enable_cancels_pending_unlock(self):
        # Arrange
        s = DispatcherSetup()
        pending = await s.schedule(delay=0.05)

        # Act
        await s.dispatcher.toggle_maintenance("F1A", True)
        await asyncio.sleep(0.1)

        # Assert
        assert pending.cancelled is True
        assert s.broker.commands("lockers/cmd") == [
            {"cmd": "maintenance", "lock": 1, "doorip": "10.0.0.11", "uid": ""}
        ]
        cancelled = s.recorder.of(UnlockCancelled)
        assert [c.reason for c in cancelled] == ["maintenance"]

    @pytest.mark.asyncio
    async def test_failed_publish_leaves_status(self):
        s = DispatcherSetup()
        s.broker.refuse = True
        with pytest.raises(BrokerDisconnected):
            await s.dispatcher.toggle_maintenance("F1A", True)
        assert s.registry.lookup_unit("F1A").status == "available"


class TestPendingUnlock:
    """Test delayed unlock timers."""

    @pytest.mark.asyncio
    async def test_fires_after_delay_not_before(self):
        # Arrange
        s = DispatcherSetup()
        started = time.monotonic()
        pending = await s.schedule(delay=0.1)

        # Act
        await asyncio.sleep(0.05)
        early = list(s.broker.commands())
        await asyncio.sleep(0.15)

        # Assert
        assert early == []
        assert s.broker.commands() == [{"cmd": "openlock", "lock": 1, "doorip": "10.0.0.11", "uid": "AB12"}]
        assert pending.fired is True
        assert s.dispatcher.pending("F1A") is None
        assert time.monotonic() - started >= 0.1

    @pytest.mark.asyncio
    async def test_explicit_cancel(self):
        # Arrange
        s = DispatcherSetup()
        await s.schedule(delay=0.05)

        # Act
        cancelled = await s.dispatcher.cancel("F1A", "operator")
        await asyncio.sleep(0.1)

        # Assert
        assert cancelled is True
        assert s.broker.published == []
        assert s.recorder.of(UnlockCancelled)[0].reason == "operator"

    @pytest.mark.asyncio
    async def test_cancel_without_pending(self):
        s = DispatcherSetup()
        assert await s.dispatcher.cancel("F1A") is False
        assert s.recorder.of(UnlockCancelled) == []

    @pytest.mark.asyncio
    async def test_cancel_device(self):
        # Arrange
        s = DispatcherSetup()
        await s.schedule("F1A", delay=0.05)
        await s.schedule("F1B", delay=0.05)

        # Act
        count = await s.dispatcher.cancel_device("F1")
        await asyncio.sleep(0.1)

        # Assert
        assert count == 2
        assert s.broker.published == []
        assert {c.reason for c in s.recorder.of(UnlockCancelled)} == {"device_offline"}

    @pytest.mark.asyncio
    async def test_at_most_one_active_per_unit(self):
        # Arrange
        s = DispatcherSetup()
        first = await s.schedule(delay=0.05, uid="AB12")

        # Act
        second = await s.schedule(delay=0.05, uid="CD34")
        await asyncio.sleep(0.1)

        # Assert
        assert second is first
        assert len(s.broker.commands("lockers/cmd")) == 1

    @pytest.mark.asyncio
    async def test_rescheduled_after_fire(self):
        s = DispatcherSetup()
        await s.schedule(delay=0.01)
        await asyncio.sleep(0.05)
        await s.schedule(delay=0.01)
        await asyncio.sleep(0.05)
        assert len(s.broker.commands()) == 2

    @pytest.mark.asyncio
    async def test_unit_removed_before_fire(self):
        # Arrange
        s = DispatcherSetup()
        await s.schedule(delay=0.02)

        # Act
        s.registry.remove_device("F1")
        await asyncio.sleep(0.06)

        # Assert
        assert s.broker.published == []
        assert s.recorder.of(UnlockCancelled)[0].reason == "unknown_unit"

    @pytest.mark.asyncio
    async def test_maintenance_set_directly_before_fire(self):
        s = DispatcherSetup()
        await s.schedule(delay=0.02)
        s.registry.set_unit_status("F1A", "maintenance")
        await asyncio.sleep(0.06)
        assert s.broker.published == []
        assert s.recorder.of(UnlockCancelled)[0].reason == "unit_in_maintenance"

    @pytest.mark.asyncio
    async def test_close_cancels_everything(self):
        s = DispatcherSetup()
        await s.schedule("F1A", delay=0.05)
        await s.dispatcher.close()
        await asyncio.sleep(0.1)
        assert s.broker.published == []
        assert s.dispatcher.pending_unlocks() == []
