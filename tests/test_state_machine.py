from __future__ import annotations

import logging

import pytest

from trainerlink.core.errors import TransportError
from trainerlink.core.model import Device, GattEvent, GattEventKind, LifecycleState, TransportFailure
from trainerlink.core.state_machine import (
    CancelConnect,
    CheckEnabled,
    Connect,
    ConnectionChanged,
    ConnectionStateMachine,
    ConnectRequested,
    DisconnectRequested,
    EnabledChecked,
    Log,
    MachineState,
    OperationFailed,
    ReleaseEnabledCheck,
    ScanResults,
    SetButton,
    SetStatus,
    StartScan,
    StopScan,
    replay,
    step,
)


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


class FakeHandle:
    def __init__(self, name: str) -> None:
        self.name = name
        self.cancel_count = 0

    def cancel(self) -> None:
        self.cancel_count += 1


class FakeTransport:
    """Records calls and hands callbacks back to the test to fire later."""

    def __init__(self) -> None:
        self.calls: list[str] = []
        self.handles: dict[str, FakeHandle] = {}
        self.callbacks: dict[str, tuple] = {}

    def _handle(self, name: str) -> FakeHandle:
        handle = FakeHandle(name)
        self.handles[name] = handle
        return handle

    def check_enabled(self, on_result, on_failure):
        self.calls.append("check_enabled")
        self.callbacks["check_enabled"] = (on_result, on_failure)
        return self._handle("check_enabled")

    def start_scan(self, on_devices, on_failure):
        self.calls.append("start_scan")
        self.callbacks["start_scan"] = (on_devices, on_failure)
        return self._handle("start_scan")

    def stop_scan(self, handle):
        self.calls.append("stop_scan")

    def connect(self, address, on_event, on_failure):
        self.calls.append(f"connect:{address}")
        self.callbacks["connect"] = (on_event, on_failure)
        return self._handle("connect")


def _connected_machine() -> tuple[ConnectionStateMachine, FakeTransport, RecordingSink]:
    transport = FakeTransport()
    sink = RecordingSink()
    machine = ConnectionStateMachine(transport, sink)
    machine.connect()
    transport.callbacks["check_enabled"][0](True)
    transport.callbacks["start_scan"][0]([Device(name="KICKR CORE", address="AA:BB:CC:DD")])
    transport.callbacks["connect"][0](GattEvent(GattEventKind.CONNECTION_STATE_CHANGE, {"connected": True}))
    return machine, transport, sink


def test_step_connect_from_idle_checks_enabled() -> None:
    state, effects = step(MachineState(), ConnectRequested())
    assert state.lifecycle is LifecycleState.CHECKING_ENABLED
    assert effects[-1] == CheckEnabled()
    assert SetButton(True) in effects
    assert SetStatus("Connecting...") in effects


def test_step_enabled_true_releases_check_then_scans() -> None:
    state, effects = step(MachineState(LifecycleState.CHECKING_ENABLED), EnabledChecked(True))
    assert state.lifecycle is LifecycleState.SCANNING
    assert effects[0] == ReleaseEnabledCheck()
    assert effects[-1] == StartScan()


def test_step_enabled_false_aborts_without_retry() -> None:
    state, effects = step(MachineState(LifecycleState.CHECKING_ENABLED), EnabledChecked(False))
    assert state == MachineState()
    assert StartScan() not in effects
    assert CheckEnabled() not in effects
    assert SetButton(False) in effects


def test_step_scan_without_match_stays_scanning() -> None:
    scanning = MachineState(LifecycleState.SCANNING)
    for devices in ((), (Device(name="Polar H10", address="1"),)):
        state, effects = step(scanning, ScanResults(devices))
        assert state == scanning
        assert effects == []


def test_replay_reaches_connected_with_target_address() -> None:
    state, effects = replay(
        [
            ConnectRequested(),
            EnabledChecked(True),
            ScanResults((Device(name="Polar", address="1"), Device(name="kickr core", address="AA:BB"))),
            ConnectionChanged(True),
        ]
    )
    assert state.lifecycle is LifecycleState.CONNECTED
    assert state.target_address == "AA:BB"
    assert state.session.active
    assert StopScan() in effects
    assert Connect("AA:BB") in effects
    assert effects.index(StopScan()) < effects.index(Connect("AA:BB"))


def test_replay_failure_logs_code_and_text() -> None:
    state, effects = replay(
        [ConnectRequested(), EnabledChecked(True), OperationFailed("startScan", TransportFailure(0, "This is unknown error"))]
    )
    assert state == MachineState()
    assert Log("startScan error: [0] This is unknown error", logging.WARNING) in effects
    assert CancelConnect() in effects


def test_connect_while_active_is_ignored_without_transport_calls() -> None:
    transport = FakeTransport()
    machine = ConnectionStateMachine(transport, RecordingSink())
    machine.connect()
    assert transport.calls == ["check_enabled"]

    machine.connect()
    assert machine.state is LifecycleState.CHECKING_ENABLED
    assert transport.calls == ["check_enabled"]


def test_connect_while_connected_is_ignored() -> None:
    machine, transport, sink = _connected_machine()
    calls = list(transport.calls)

    machine.connect()

    assert machine.state is LifecycleState.CONNECTED
    assert transport.calls == calls
    assert sink.logs[-1] == "Already connecting or connected; ignoring connect request"


def test_disconnect_while_idle_is_a_logged_noop() -> None:
    transport = FakeTransport()
    sink = RecordingSink()
    machine = ConnectionStateMachine(transport, sink)

    machine.disconnect()

    assert machine.state is LifecycleState.IDLE
    assert transport.calls == []
    assert sink.logs == ["Not currently connected"]
    assert sink.statuses == []


def test_scan_match_stops_scan_then_connects() -> None:
    machine, transport, _ = _connected_machine()
    assert transport.calls == ["check_enabled", "start_scan", "stop_scan", "connect:AA:BB:CC:DD"]
    assert transport.handles["check_enabled"].cancel_count == 1
    assert transport.handles["start_scan"].cancel_count == 1
    assert machine.state is LifecycleState.CONNECTED
    assert machine.target_address == "AA:BB:CC:DD"


def test_local_disconnect_cancels_everything_and_resets() -> None:
    machine, transport, sink = _connected_machine()

    machine.disconnect()

    assert machine.state is LifecycleState.IDLE
    assert machine.target_address is None
    assert not machine.session.active
    assert transport.handles["connect"].cancel_count == 1
    assert sink.statuses[-1] == "Disconnected"
    assert sink.buttons[-1] is False


def test_disconnect_twice_has_no_duplicate_side_effects() -> None:
    machine, transport, sink = _connected_machine()
    machine.disconnect()
    statuses = list(sink.statuses)

    machine.disconnect()

    assert transport.handles["connect"].cancel_count == 1
    assert sink.statuses == statuses
    assert sink.logs[-1] == "Not currently connected"


def test_remote_disconnect_returns_to_idle() -> None:
    machine, transport, sink = _connected_machine()
    on_event = transport.callbacks["connect"][0]

    on_event(GattEvent(GattEventKind.CONNECTION_STATE_CHANGE, {"connected": False}))

    assert machine.state is LifecycleState.IDLE
    assert not machine.is_connected
    assert transport.handles["connect"].cancel_count == 1
    assert sink.statuses[-1] == "Disconnected"


def test_disconnect_while_scanning_cancels_scan() -> None:
    transport = FakeTransport()
    machine = ConnectionStateMachine(transport, RecordingSink())
    machine.connect()
    transport.callbacks["check_enabled"][0](True)

    machine.disconnect()

    assert transport.calls[-1] == "stop_scan"
    assert transport.handles["start_scan"].cancel_count == 1
    assert machine.state is LifecycleState.IDLE


def test_connect_failure_aborts_to_idle() -> None:
    transport = FakeTransport()
    sink = RecordingSink()
    machine = ConnectionStateMachine(transport, sink)
    machine.connect()
    transport.callbacks["check_enabled"][0](True)
    transport.callbacks["start_scan"][0]([Device(name="KICKR", address="AA")])

    transport.callbacks["connect"][1](TransportFailure(-1, "timeout"))

    assert machine.state is LifecycleState.IDLE
    assert "connect error: [-1] timeout" in sink.logs
    assert sink.statuses[-1] == "Connection failed"
    assert transport.handles["connect"].cancel_count == 1


def test_callbacks_from_previous_attempt_are_dropped() -> None:
    transport = FakeTransport()
    machine = ConnectionStateMachine(transport, RecordingSink())
    machine.connect()
    stale_on_result = transport.callbacks["check_enabled"][0]
    machine.disconnect()
    machine.connect()

    stale_on_result(True)

    assert machine.state is LifecycleState.CHECKING_ENABLED
    assert "start_scan" not in transport.calls


def test_cancel_errors_do_not_block_teardown() -> None:
    class ExplodingHandle(FakeHandle):
        def cancel(self) -> None:
            super().cancel()
            raise RuntimeError("boom")

    class ExplodingTransport(FakeTransport):
        def stop_scan(self, handle):
            super().stop_scan(handle)
            raise RuntimeError("service gone")

        def start_scan(self, on_devices, on_failure):
            super().start_scan(on_devices, on_failure)
            handle = ExplodingHandle("start_scan")
            self.handles["start_scan"] = handle
            return handle

    transport = ExplodingTransport()
    machine = ConnectionStateMachine(transport, RecordingSink())
    machine.connect()
    transport.callbacks["check_enabled"][0](True)

    machine.disconnect()

    assert transport.handles["start_scan"].cancel_count == 1
    assert machine.state is LifecycleState.IDLE


def test_unknown_inbound_event_is_ignored() -> None:
    machine, _, sink = _connected_machine()
    logs = list(sink.logs)

    machine.handle_inbound_event(GattEvent("onMtuChanged", {"mtu": 247}))

    assert machine.state is LifecycleState.CONNECTED
    assert sink.logs == logs


def test_session_failure_after_connect_aborts_to_idle() -> None:
    machine, transport, sink = _connected_machine()

    transport.callbacks["connect"][1](TransportFailure(-1, "OSError: GATT database unavailable"))

    assert machine.state is LifecycleState.IDLE
    assert sink.statuses[-1] == "Connection failed"
    assert sink.buttons[-1] is False
    assert transport.handles["connect"].cancel_count == 1


def test_transport_unusable_at_start_rolls_back_to_idle() -> None:
    class LooplessTransport(FakeTransport):
        def check_enabled(self, on_result, on_failure):
            self.calls.append("check_enabled")
            raise TransportError("BLE transport must be used from inside a running asyncio event loop.")

    transport = LooplessTransport()
    sink = RecordingSink()
    machine = ConnectionStateMachine(transport, sink)

    with pytest.raises(TransportError):
        machine.connect()

    assert machine.state is LifecycleState.IDLE
    assert not machine.is_connected
    assert sink.statuses[-1] == "Connection failed"
    assert sink.buttons == [True, False]

    with pytest.raises(TransportError):
        machine.connect()
    assert transport.calls == ["check_enabled", "check_enabled"]
