from __future__ import annotations

from pathlib import Path

import pytest

from trainerlink.api import TrainerLink
from trainerlink.core.config import load_settings
from trainerlink.core.errors import TransportError
from trainerlink.core.model import Device, LifecycleState


class RecordingSink:
    def __init__(self) -> None:
        self.logs: list[str] = []
        self.statuses: list[str] = []
        self.stats: list[tuple[str, str]] = []
        self.buttons: list[bool] = []

    def log(self, message: str) -> None:
        self.logs.append(message)

    def set_status(self, message: str) -> None:
        self.statuses.append(message)

    def set_stats(self, power_text: str, cadence_text: str) -> None:
        self.stats.append((power_text, cadence_text))

    def set_button_connected(self, connected: bool) -> None:
        self.buttons.append(connected)


class FakeSimulator:
    def __init__(self) -> None:
        self.started = 0
        self.stopped = 0

    def start(self, on_sample) -> None:
        self.started += 1

    def stop(self) -> None:
        self.stopped += 1


class FakeHandle:
    def cancel(self) -> None:
        pass


class FakeTransport:
    def __init__(self) -> None:
        self.calls: list[str] = []
        self.on_event = None

    def check_enabled(self, on_result, on_failure):
        self.calls.append("check_enabled")
        on_result(True)
        return FakeHandle()

    def start_scan(self, on_devices, on_failure):
        self.calls.append("start_scan")
        return FakeHandle()

    def stop_scan(self, handle):
        self.calls.append("stop_scan")

    def connect(self, address, on_event, on_failure):
        self.calls.append("connect")
        self.on_event = on_event
        return FakeHandle()


@pytest.fixture
def settings(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "cfg"))
    return load_settings().settings


def test_construction_resets_sink_view(settings) -> None:
    sink = RecordingSink()
    TrainerLink(sink, settings=settings, simulator=FakeSimulator())
    assert sink.buttons == [False]
    assert sink.statuses == ["Press Connect"]
    assert sink.stats == [("--", "--")]


def test_without_transport_the_simulator_is_selected(settings) -> None:
    sink = RecordingSink()
    simulator = FakeSimulator()
    link = TrainerLink(sink, settings=settings, simulator=simulator)
    assert link.simulated

    link.connect()

    assert link.is_connected
    assert link.state is LifecycleState.CONNECTED
    assert sink.buttons[-1] is True
    assert sink.statuses[-1] == "Connecting..."
    assert simulator.started == 1

    link.disconnect()

    assert not link.is_connected
    assert sink.buttons[-1] is False
    assert sink.statuses[-1] == "Disconnecting..."
    assert simulator.stopped == 1


def test_toggle_dispatches_on_connection_state(settings) -> None:
    simulator = FakeSimulator()
    link = TrainerLink(RecordingSink(), settings=settings, simulator=simulator)

    link.toggle()
    assert link.is_connected
    link.toggle()
    assert not link.is_connected
    assert (simulator.started, simulator.stopped) == (1, 1)


def test_with_transport_the_state_machine_is_selected(settings) -> None:
    transport = FakeTransport()
    link = TrainerLink(RecordingSink(), transport=transport, settings=settings)
    assert not link.simulated

    link.connect()
    assert link.state is LifecycleState.SCANNING
    assert transport.calls == ["check_enabled", "start_scan"]

    link.toggle()
    assert link.state is LifecycleState.IDLE
    assert transport.calls[-1] == "stop_scan"


def test_inbound_raw_events_reach_the_state_machine(settings) -> None:
    class ScanningTransport(FakeTransport):
        def start_scan(self, on_devices, on_failure):
            handle = super().start_scan(on_devices, on_failure)
            on_devices([Device(name="KICKR CORE", address="AA:BB:CC:DD")])
            return handle

    transport = ScanningTransport()
    link = TrainerLink(RecordingSink(), transport=transport, settings=settings)
    link.connect()
    assert link.state is LifecycleState.CONNECTING

    link.handle_inbound_event({"event": "onConnectionStateChange", "values": {"connected": True}})
    assert link.state is LifecycleState.CONNECTED
    assert link.target_address == "AA:BB:CC:DD"

    link.handle_inbound_event({"event": "onConnectionStateChange", "values": {"connected": False}})
    assert link.state is LifecycleState.IDLE
    assert not link.is_connected


def test_simulated_connect_outside_a_loop_leaves_session_idle(settings) -> None:
    sink = RecordingSink()
    link = TrainerLink(sink, settings=settings)

    with pytest.raises(TransportError):
        link.connect()

    assert not link.is_connected
    assert sink.buttons == [False]
    assert sink.statuses == ["Press Connect"]

    with pytest.raises(TransportError):
        link.connect()
    assert "Already connecting or connected; ignoring connect request" not in sink.logs
