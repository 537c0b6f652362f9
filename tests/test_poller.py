from __future__ import annotations

import threading
import time

import pytest

from tesmartlink import poller
from tesmartlink.exceptions import BadArgumentError, NoReplyError, UnreachableError
from tesmartlink.poller import PendingSwitch, PollingCoordinator


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


class FakeClient:
    """Scripted stand-in for TESmartKVM."""

    def __init__(self, active: int = 1) -> None:
        self.active = active
        self.poll_error: Exception | None = None
        self.set_error: Exception | None = None
        self.follow_set = False
        self.polls = 0
        self.sets: list[int] = []

    def get_active_input(self) -> int:
        self.polls += 1
        if self.poll_error is not None:
            raise self.poll_error
        return self.active

    def set_input(self, port: int) -> None:
        if self.set_error is not None:
            raise self.set_error
        self.sets.append(port)
        if self.follow_set:
            self.active = port


class Recorder:
    def __init__(self) -> None:
        self.changes: list[int] = []
        self.statuses: list[str] = []
        self.errors: list[Exception] = []

    def coordinator(self, client, clock=None, **kwargs) -> PollingCoordinator:
        if clock is not None:
            kwargs["clock"] = clock
        return PollingCoordinator(
            client,
            on_active_changed=self.changes.append,
            on_status=self.statuses.append,
            on_error=self.errors.append,
            **kwargs,
        )


@pytest.fixture(autouse=True)
def no_verify_delay(monkeypatch) -> None:
    monkeypatch.setattr(poller, "VERIFY_SPACING", 0.0)


def test_pending_switch_predicate() -> None:
    clock = FakeClock()
    pending = PendingSwitch(clock)
    assert not pending.active
    assert not pending.should_ignore(3)

    pending.begin(7, 0.8)
    assert pending.active
    assert pending.port == 7
    assert pending.should_ignore(3)
    assert not pending.should_ignore(7)

    clock.now += 0.8
    assert not pending.active
    assert not pending.should_ignore(3)
    assert pending.port == 0


def test_pending_switch_clears_on_match() -> None:
    clock = FakeClock()
    pending = PendingSwitch(clock)
    pending.begin(5, 10.0)
    assert not pending.clear_if_match(4)
    assert pending.active
    assert pending.clear_if_match(5)
    assert not pending.active
    assert not pending.should_ignore(4)


def test_poll_publishes_and_coalesces_changes() -> None:
    rec = Recorder()
    client = FakeClient(active=2)
    coordinator = rec.coordinator(client)

    assert coordinator.poll_once() == 2
    assert coordinator.poll_once() == 2
    client.active = 9
    assert coordinator.poll_once() == 9

    assert rec.changes == [2, 9]
    assert rec.statuses == ["Active: 2", "Active: 2", "Active: 9"]
    assert coordinator.active_port == 9


def test_poll_error_keeps_last_port() -> None:
    rec = Recorder()
    client = FakeClient(active=4)
    coordinator = rec.coordinator(client)
    coordinator.poll_once()

    client.poll_error = NoReplyError("no active-input reply in 0102")
    assert coordinator.poll_once() is None
    assert coordinator.active_port == 4
    assert rec.statuses[-1] == "Polling error: no active-input reply in 0102"
    assert rec.changes == [4]

    client.poll_error = None
    assert coordinator.poll_once() == 4
    assert rec.statuses[-1] == "Active: 4"


def test_unexpected_poll_failure_goes_to_on_error() -> None:
    rec = Recorder()
    client = FakeClient()
    client.poll_error = RuntimeError("boom")
    coordinator = rec.coordinator(client)
    assert coordinator.poll_once() is None
    assert [str(e) for e in rec.errors] == ["boom"]


def test_stale_polls_are_suppressed_during_pending_window() -> None:
    clock = FakeClock()
    rec = Recorder()
    client = FakeClient(active=3)
    coordinator = rec.coordinator(client, clock=clock, fast_mode=True, suppress=0.8)
    coordinator.poll_once()

    assert coordinator.switch_to(7)
    assert client.sets == [7]
    assert coordinator.active_port == 7

    clock.now += 0.3
    assert coordinator.poll_once() is None
    assert coordinator.active_port == 7

    client.active = 7
    clock.now += 0.2
    assert coordinator.poll_once() == 7
    assert not coordinator.pending.active
    assert rec.changes == [3, 7]


def test_window_expiry_lets_the_device_win() -> None:
    clock = FakeClock()
    rec = Recorder()
    client = FakeClient(active=3)
    coordinator = rec.coordinator(client, clock=clock, fast_mode=True, suppress=0.8)
    coordinator.poll_once()
    coordinator.switch_to(7)

    clock.now += 0.9
    assert coordinator.poll_once() == 3
    assert rec.changes == [3, 7, 3]


def test_front_panel_change_is_reported() -> None:
    rec = Recorder()
    client = FakeClient(active=1)
    coordinator = rec.coordinator(client)
    coordinator.poll_once()
    client.active = 12
    coordinator.poll_once()
    assert rec.changes == [1, 12]


def test_switch_failure_resets_window_and_reports() -> None:
    clock = FakeClock()
    rec = Recorder()
    client = FakeClient(active=3)
    coordinator = rec.coordinator(client, clock=clock)
    coordinator.poll_once()

    client.set_error = UnreachableError("connect refused")
    assert coordinator.switch_to(7) is False
    assert not coordinator.pending.active
    assert rec.statuses[-1] == "Switch failed"
    assert [str(e) for e in rec.errors] == ["connect refused"]

    assert coordinator.poll_once() == 3
    assert coordinator.active_port == 3


def test_switch_fast_mode_skips_verification() -> None:
    rec = Recorder()
    client = FakeClient(active=3)
    coordinator = rec.coordinator(client, fast_mode=True)
    coordinator.switch_to(5)
    assert client.polls == 0
    assert rec.statuses == ["Switched (fast) → 5"]


def test_switch_verified() -> None:
    rec = Recorder()
    client = FakeClient(active=3)
    client.follow_set = True
    coordinator = rec.coordinator(client)
    coordinator.switch_to(5)
    assert client.polls == 1
    assert rec.statuses == ["Switched to input 5"]
    assert not coordinator.pending.active


def test_switch_unverified_after_two_polls() -> None:
    rec = Recorder()
    client = FakeClient(active=3)
    coordinator = rec.coordinator(client)
    coordinator.switch_to(5)
    assert client.polls == 2
    assert rec.statuses == ["Switched (unverified) — will sync on next poll"]
    assert coordinator.pending.active


def test_switch_without_verification() -> None:
    rec = Recorder()
    client = FakeClient(active=3)
    coordinator = rec.coordinator(client, verify_after_set=False)
    coordinator.switch_to(5)
    assert client.polls == 0
    assert rec.statuses == ["Switched to input 5"]


def test_switch_rejects_bad_port() -> None:
    rec = Recorder()
    client = FakeClient()
    coordinator = rec.coordinator(client)
    with pytest.raises(BadArgumentError):
        coordinator.switch_to(17)
    assert client.sets == []
    assert rec.changes == []


def test_overlapping_tick_is_dropped() -> None:
    rec = Recorder()
    client = FakeClient()
    coordinator = rec.coordinator(client)
    coordinator._tick_lock.acquire()
    try:
        assert coordinator.poll_once() is None
    finally:
        coordinator._tick_lock.release()
    assert client.polls == 0


def test_callback_failure_does_not_stop_polling() -> None:
    client = FakeClient(active=6)

    def broken(_port: int) -> None:
        raise RuntimeError("ui gone")

    coordinator = PollingCoordinator(client, on_active_changed=broken)
    assert coordinator.poll_once() == 6
    assert coordinator.active_port == 6


def test_start_polls_immediately_and_repeats() -> None:
    rec = Recorder()
    client = FakeClient(active=8)
    coordinator = rec.coordinator(client, interval=0.05)
    coordinator.start()
    try:
        deadline = time.monotonic() + 2.0
        while client.polls < 3 and time.monotonic() < deadline:
            time.sleep(0.01)
    finally:
        coordinator.stop(timeout=1.0)
    assert client.polls >= 3
    assert rec.changes == [8]
    assert not coordinator.running

    polls = client.polls
    time.sleep(0.15)
    assert client.polls == polls


class SlowClient(FakeClient):
    def __init__(self, active: int = 1, delay: float = 0.3) -> None:
        super().__init__(active)
        self.delay = delay

    def get_active_input(self) -> int:
        time.sleep(self.delay)
        return super().get_active_input()


def poller_threads() -> list[threading.Thread]:
    return [t for t in threading.enumerate() if t.name == "tesmart-poller" and t.is_alive()]


def test_restart_after_timed_out_stop_keeps_one_worker() -> None:
    client = SlowClient(delay=0.3)
    coordinator = PollingCoordinator(client, interval=0.05)
    coordinator.start()
    time.sleep(0.05)
    coordinator.stop(timeout=0.01)
    assert coordinator.running

    coordinator.start()
    try:
        time.sleep(0.1)
        assert len(poller_threads()) == 1
        assert coordinator.running
    finally:
        coordinator.stop(timeout=2.0)
    assert not coordinator.running
    assert poller_threads() == []


def test_start_while_running_is_a_no_op() -> None:
    coordinator = PollingCoordinator(FakeClient(), interval=0.05)
    coordinator.start()
    try:
        first = coordinator._thread
        coordinator.start()
        assert coordinator._thread is first
    finally:
        coordinator.stop(timeout=1.0)


def test_stop_from_callback_on_worker_thread() -> None:
    client = FakeClient(active=3)
    errors: list[Exception] = []
    coordinator = PollingCoordinator(client, interval=0.05, on_error=errors.append)
    stopped = threading.Event()

    def stop_on_change(_port: int) -> None:
        try:
            coordinator.stop()
        except RuntimeError as e:
            errors.append(e)
        stopped.set()

    coordinator.on_active_changed = stop_on_change
    coordinator.start()
    assert stopped.wait(2.0)

    deadline = time.monotonic() + 2.0
    while coordinator.running and time.monotonic() < deadline:
        time.sleep(0.01)
    assert not coordinator.running
    assert errors == []
    assert client.polls == 1


def test_from_config_uses_connection_timing() -> None:
    from tesmartlink.config import Connection

    conn = Connection("lab", {"poll_interval_ms": 250, "switch_suppress_ms": 400, "fast_mode": True})
    coordinator = PollingCoordinator.from_config(FakeClient(), conn)
    assert coordinator.interval == 0.25
    assert coordinator.suppress == 0.4
    assert coordinator.fast_mode is True
    assert coordinator.verify_after_set is True


def test_pending_window_against_live_device(stub_kvm, make_client) -> None:
    switched_at: list[float] = []

    def respond(data: bytes) -> bytes | None:
        if data[3] != 0x10:
            switched_at.append(time.monotonic())
            return None
        port = 3
        if switched_at and time.monotonic() - switched_at[0] >= 0.5:
            port = 7
        return bytes([0xAA, 0xBB, 0x03, 0x11, port - 1, 0xEE])

    stub = stub_kvm(respond)
    rec = Recorder()
    coordinator = rec.coordinator(make_client(stub), interval=0.1, suppress=0.8, verify_after_set=False)
    coordinator.start()
    try:
        deadline = time.monotonic() + 2.0
        while coordinator.active_port != 3 and time.monotonic() < deadline:
            time.sleep(0.01)
        assert coordinator.active_port == 3

        switcher = threading.Thread(target=coordinator.switch_to, args=(7,))
        switcher.start()
        switcher.join(2.0)
        assert switched_at

        # The device keeps saying 3 for 500 ms; the highlight must stay on 7
        while time.monotonic() - switched_at[0] < 0.45:
            assert coordinator.active_port == 7
            time.sleep(0.02)

        deadline = time.monotonic() + 1.5
        while "Active: 7" not in rec.statuses and time.monotonic() < deadline:
            time.sleep(0.02)
    finally:
        coordinator.stop(timeout=2.0)

    assert "Active: 7" in rec.statuses
    assert rec.changes == [3, 7]
    assert not coordinator.pending.active
