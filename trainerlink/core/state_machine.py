"""Connection lifecycle for a single BLE trainer.

The lifecycle is split in two:

* `step()` is a pure reducer over `(MachineState, event)` that returns the next
  state plus a list of effects to perform.
* `ConnectionStateMachine` owns the transport handles, performs the effects,
  and turns transport callbacks back into reducer events.

Transport callbacks may arrive synchronously from inside the call that
registered them, so every "start" effect is the last effect of its step and
handles are only kept when the machine still wants the operation they belong
to.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, replace
from typing import Any, Union

from trainerlink.core.device_match import DEFAULT_TARGET_SUBSTRING, select_target
from trainerlink.core.dispatcher import GattEventDispatcher, TelemetryDecoder
from trainerlink.core.errors import TransportError
from trainerlink.core.model import (
    ConnectionSession,
    Device,
    GattEvent,
    LifecycleState,
    TransportFailure,
)
from trainerlink.core.sink import TelemetrySink
from trainerlink.transports.base import OperationHandle, Transport

LOGGER = logging.getLogger(__name__)

STATUS_CONNECTING = "Connecting..."
STATUS_CONNECTED = "Connected"
STATUS_DISCONNECTED = "Disconnected"
STATUS_FAILED = "Connection failed"
STATUS_BLE_DISABLED = "Bluetooth disabled"


@dataclass(frozen=True)
class MachineState:
    lifecycle: LifecycleState = LifecycleState.IDLE
    target_address: str | None = None

    @property
    def session(self) -> ConnectionSession:
        return ConnectionSession(
            target_address=self.target_address,
            active=self.lifecycle is not LifecycleState.IDLE,
        )


# Reducer inputs.


@dataclass(frozen=True)
class ConnectRequested:
    pass


@dataclass(frozen=True)
class DisconnectRequested:
    pass


@dataclass(frozen=True)
class EnabledChecked:
    is_enabled: bool


@dataclass(frozen=True)
class ScanResults:
    devices: tuple[Device, ...] = ()


@dataclass(frozen=True)
class ConnectIssued:
    address: str


@dataclass(frozen=True)
class ConnectionChanged:
    connected: bool


@dataclass(frozen=True)
class OperationFailed:
    operation: str
    failure: TransportFailure


@dataclass(frozen=True)
class TeardownComplete:
    pass


Event = Union[
    ConnectRequested,
    DisconnectRequested,
    EnabledChecked,
    ScanResults,
    ConnectIssued,
    ConnectionChanged,
    OperationFailed,
    TeardownComplete,
]


# Reducer outputs.


@dataclass(frozen=True)
class Log:
    message: str
    level: int = logging.INFO


@dataclass(frozen=True)
class SetStatus:
    message: str


@dataclass(frozen=True)
class SetButton:
    connected: bool


@dataclass(frozen=True)
class CheckEnabled:
    pass


@dataclass(frozen=True)
class ReleaseEnabledCheck:
    pass


@dataclass(frozen=True)
class StartScan:
    pass


@dataclass(frozen=True)
class StopScan:
    pass


@dataclass(frozen=True)
class Connect:
    address: str


@dataclass(frozen=True)
class CancelConnect:
    pass


@dataclass(frozen=True)
class FollowUp:
    event: Any


Effect = Union[
    Log,
    SetStatus,
    SetButton,
    CheckEnabled,
    ReleaseEnabledCheck,
    StartScan,
    StopScan,
    Connect,
    CancelConnect,
    FollowUp,
]

_IDLE = MachineState()


def _teardown() -> list[Effect]:
    return [CancelConnect(), StopScan(), ReleaseEnabledCheck()]


def _abort(message: str, status: str) -> tuple[MachineState, list[Effect]]:
    return _IDLE, [
        Log(message, logging.WARNING),
        *_teardown(),
        SetStatus(status),
        SetButton(False),
    ]


def step(
    state: MachineState,
    event: Event,
    *,
    target: str = DEFAULT_TARGET_SUBSTRING,
) -> tuple[MachineState, list[Effect]]:
    lifecycle = state.lifecycle

    if isinstance(event, ConnectRequested):
        if lifecycle is not LifecycleState.IDLE:
            return state, [Log("Already connecting or connected; ignoring connect request")]
        return MachineState(lifecycle=LifecycleState.CHECKING_ENABLED), [
            SetButton(True),
            SetStatus(STATUS_CONNECTING),
            Log("Checking BLE state..."),
            CheckEnabled(),
        ]

    if isinstance(event, DisconnectRequested):
        if lifecycle in (LifecycleState.IDLE, LifecycleState.DISCONNECTING):
            return state, [Log("Not currently connected")]
        return replace(state, lifecycle=LifecycleState.DISCONNECTING), [
            Log("Disconnecting..."),
            *_teardown(),
            FollowUp(TeardownComplete()),
        ]

    if isinstance(event, TeardownComplete):
        if lifecycle is not LifecycleState.DISCONNECTING:
            return state, []
        return _IDLE, [SetStatus(STATUS_DISCONNECTED), SetButton(False)]

    # Everything below is a transport callback; none of it matters once idle.
    if lifecycle in (LifecycleState.IDLE, LifecycleState.DISCONNECTING):
        return state, []

    if isinstance(event, OperationFailed):
        return _abort(event.failure.describe(event.operation), STATUS_FAILED)

    if isinstance(event, EnabledChecked):
        if lifecycle is not LifecycleState.CHECKING_ENABLED:
            return state, []
        if not event.is_enabled:
            return _abort("BLE is disabled or unavailable", STATUS_BLE_DISABLED)
        return replace(state, lifecycle=LifecycleState.SCANNING), [
            ReleaseEnabledCheck(),
            Log("Starting BLE scan..."),
            StartScan(),
        ]

    if isinstance(event, ScanResults):
        if lifecycle is not LifecycleState.SCANNING:
            return state, []
        device = select_target(event.devices, target)
        if device is None:
            return state, []
        return MachineState(lifecycle=LifecycleState.TARGET_FOUND, target_address=device.address), [
            Log(f"Found target device: {device.name} ({device.address})"),
            StopScan(),
            FollowUp(ConnectIssued(device.address)),
        ]

    if isinstance(event, ConnectIssued):
        if lifecycle is not LifecycleState.TARGET_FOUND:
            return state, []
        return replace(state, lifecycle=LifecycleState.CONNECTING), [
            Log(f"Connecting to {event.address}..."),
            Connect(event.address),
        ]

    if isinstance(event, ConnectionChanged):
        if event.connected:
            if lifecycle is not LifecycleState.CONNECTING:
                return state, []
            return replace(state, lifecycle=LifecycleState.CONNECTED), [
                Log("Trainer connected!"),
                SetStatus(STATUS_CONNECTED),
            ]
        if lifecycle is LifecycleState.CONNECTED:
            return _IDLE, [
                Log("Trainer disconnected."),
                CancelConnect(),
                SetStatus(STATUS_DISCONNECTED),
                SetButton(False),
            ]
        if lifecycle in (LifecycleState.TARGET_FOUND, LifecycleState.CONNECTING):
            return _abort(f"Connection to {state.target_address} was not established", STATUS_FAILED)
        return state, []

    return state, []


class ConnectionStateMachine:
    """Drives `step()` against a transport and a telemetry sink."""

    def __init__(
        self,
        transport: Transport,
        sink: TelemetrySink,
        *,
        target: str = DEFAULT_TARGET_SUBSTRING,
        decoder: TelemetryDecoder | None = None,
    ) -> None:
        self._transport = transport
        self._sink = sink
        self._target = target
        self._state = _IDLE
        self._attempt = 0
        self._enabled_handle: OperationHandle | None = None
        self._scan_handle: OperationHandle | None = None
        self._connect_handle: OperationHandle | None = None
        self.dispatcher = GattEventDispatcher(
            sink,
            lambda connected: self._apply(ConnectionChanged(connected)),
            decoder=decoder,
        )

    @property
    def state(self) -> LifecycleState:
        return self._state.lifecycle

    @property
    def session(self) -> ConnectionSession:
        return self._state.session

    @property
    def target_address(self) -> str | None:
        return self._state.target_address

    @property
    def is_connected(self) -> bool:
        """True from an accepted connect request until teardown."""
        return self._state.lifecycle is not LifecycleState.IDLE

    def connect(self) -> None:
        self._apply(ConnectRequested())

    def disconnect(self) -> None:
        self._apply(DisconnectRequested())

    def handle_inbound_event(self, event: GattEvent) -> None:
        self.dispatcher.dispatch(event)

    def _apply(self, event: Event) -> None:
        previous = self._state
        self._state, effects = step(previous, event, target=self._target)
        if self._state.lifecycle is not previous.lifecycle:
            LOGGER.debug(
                "%s -> %s on %s",
                previous.lifecycle.name,
                self._state.lifecycle.name,
                type(event).__name__,
            )
            if self._state.lifecycle is LifecycleState.IDLE:
                self._attempt += 1
        for effect in effects:
            self._execute(effect)

    def _guard(self, callback: Callable[..., None]) -> Callable[..., None]:
        attempt = self._attempt

        def _guarded(*args: Any) -> None:
            if attempt != self._attempt:
                LOGGER.debug("Dropping callback from a finished connection attempt")
                return
            callback(*args)

        return _guarded

    def _on_failure(self, operation: str) -> Callable[[TransportFailure], None]:
        return self._guard(lambda failure: self._apply(OperationFailed(operation, failure)))

    def _keep(self, handle: OperationHandle, attempt: int, *wanted: LifecycleState) -> OperationHandle | None:
        if attempt == self._attempt and self._state.lifecycle in wanted:
            return handle
        self._cancel(handle)
        return None

    def _start(self, operation: str, request: Callable[[], OperationHandle]) -> OperationHandle:
        # A transport that cannot run here must not leave the attempt half started.
        try:
            return request()
        except TransportError as exc:
            self._apply(OperationFailed(operation, TransportFailure(code=-1, text=str(exc))))
            raise

    def _cancel(self, handle: OperationHandle | None) -> None:
        if handle is None:
            return
        try:
            handle.cancel()
        except Exception:
            LOGGER.exception("Failed to cancel transport handle %r", handle)

    def _execute(self, effect: Effect) -> None:
        if isinstance(effect, Log):
            LOGGER.log(effect.level, effect.message)
            self._sink.log(effect.message)
        elif isinstance(effect, SetStatus):
            self._sink.set_status(effect.message)
        elif isinstance(effect, SetButton):
            self._sink.set_button_connected(effect.connected)
        elif isinstance(effect, FollowUp):
            self._apply(effect.event)
        elif isinstance(effect, CheckEnabled):
            attempt = self._attempt
            handle = self._start(
                "isEnabled",
                lambda: self._transport.check_enabled(
                    self._guard(lambda enabled: self._apply(EnabledChecked(enabled))),
                    self._on_failure("isEnabled"),
                ),
            )
            self._enabled_handle = self._keep(handle, attempt, LifecycleState.CHECKING_ENABLED)
        elif isinstance(effect, ReleaseEnabledCheck):
            handle, self._enabled_handle = self._enabled_handle, None
            self._cancel(handle)
        elif isinstance(effect, StartScan):
            attempt = self._attempt
            handle = self._start(
                "startScan",
                lambda: self._transport.start_scan(
                    self._guard(lambda devices: self._apply(ScanResults(tuple(devices or ())))),
                    self._on_failure("startScan"),
                ),
            )
            self._scan_handle = self._keep(handle, attempt, LifecycleState.SCANNING)
        elif isinstance(effect, StopScan):
            self._stop_scan()
        elif isinstance(effect, Connect):
            attempt = self._attempt
            address = effect.address
            handle = self._start(
                "connect",
                lambda: self._transport.connect(
                    address,
                    self._guard(self.dispatcher.dispatch),
                    self._on_failure("connect"),
                ),
            )
            self._connect_handle = self._keep(
                handle,
                attempt,
                LifecycleState.TARGET_FOUND,
                LifecycleState.CONNECTING,
                LifecycleState.CONNECTED,
            )
        elif isinstance(effect, CancelConnect):
            handle, self._connect_handle = self._connect_handle, None
            self._cancel(handle)
        else:  # pragma: no cover - exhaustive over Effect
            raise TypeError(f"Unsupported effect {effect!r}")

    def _stop_scan(self) -> None:
        handle, self._scan_handle = self._scan_handle, None
        if handle is None:
            return
        # stop_scan notifies the backend, cancel releases the local subscription.
        try:
            self._transport.stop_scan(handle)
        except Exception:
            LOGGER.exception("stopScan request failed")
        self._cancel(handle)


def replay(events: Sequence[Event], *, target: str = DEFAULT_TARGET_SUBSTRING) -> tuple[MachineState, list[Effect]]:
    """Fold `events` through `step()` from idle, collecting every effect."""
    state = _IDLE
    collected: list[Effect] = []
    pending = list(events)
    while pending:
        state, effects = step(state, pending.pop(0), target=target)
        collected.extend(effects)
        pending[0:0] = [e.event for e in effects if isinstance(e, FollowUp)]
    return state, collected
