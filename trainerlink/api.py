"""Stable public API for building trainer front-ends on top of trainerlink.

This module is the supported integration surface for third-party callers.
Avoid importing from private/internal modules unless intentionally depending on
non-stable internals.
"""

from __future__ import annotations

import random
from collections.abc import Mapping
from typing import Any, Protocol

from trainerlink.core.config import Settings, load_settings
from trainerlink.core.device_match import select_target
from trainerlink.core.dispatcher import TelemetryDecoder
from trainerlink.core.errors import (
    ConfigLoadError,
    ConfigValidationError,
    TrainerLinkError,
    TransportError,
)
from trainerlink.core.model import (
    PLACEHOLDER,
    ConnectionSession,
    Device,
    GattEvent,
    GattEventKind,
    LifecycleState,
    TelemetrySample,
    TransportFailure,
)
from trainerlink.core.simulator import SimulatedSession, Simulator
from trainerlink.core.sink import TelemetrySink
from trainerlink.core.state_machine import ConnectionStateMachine
from trainerlink.transports.base import OperationHandle, Transport
from trainerlink.transports.ble_gatt import BLEGATTTransport
from trainerlink.transports.service_bus import ServiceRequest, ServiceTransport

__all__ = [
    "TrainerLinkError",
    "ConfigLoadError",
    "ConfigValidationError",
    "TransportError",
    "ConnectionSession",
    "Device",
    "GattEvent",
    "GattEventKind",
    "LifecycleState",
    "TelemetrySample",
    "TransportFailure",
    "OperationHandle",
    "Transport",
    "TelemetrySink",
    "BLEGATTTransport",
    "ServiceTransport",
    "Simulator",
    "Settings",
    "select_target",
    "service_transport",
    "ble_transport",
    "TrainerLink",
]


class _Session(Protocol):
    @property
    def is_connected(self) -> bool: ...

    @property
    def state(self) -> LifecycleState: ...

    @property
    def target_address(self) -> str | None: ...

    def connect(self) -> None: ...

    def disconnect(self) -> None: ...

    def handle_inbound_event(self, event: GattEvent) -> None: ...


def service_transport(request: ServiceRequest, settings: Settings | None = None) -> ServiceTransport:
    settings = settings or load_settings().settings
    return ServiceTransport(request, uri=settings.transport.service_uri)


def ble_transport(settings: Settings | None = None) -> BLEGATTTransport:
    settings = settings or load_settings().settings
    return BLEGATTTransport(
        scan_interval_s=settings.transport.scan_interval_s,
        notify_characteristics=settings.transport.notify_characteristics,
    )


class TrainerLink:
    """Public entry point for connecting a telemetry sink to a trainer.

    The backend is chosen once: with a `transport` the full BLE lifecycle runs
    through a `ConnectionStateMachine`; without one a `Simulator` stands in.
    """

    def __init__(
        self,
        sink: TelemetrySink,
        *,
        transport: Transport | None = None,
        settings: Settings | None = None,
        simulator: Simulator | None = None,
        decoder: TelemetryDecoder | None = None,
    ) -> None:
        self.settings = settings or load_settings().settings
        self._sink = sink
        self._session: _Session
        if transport is None:
            self.simulator = simulator or self._build_simulator()
            self._session = SimulatedSession(sink, self.simulator)
        else:
            self.simulator = None
            self._session = ConnectionStateMachine(
                transport,
                sink,
                target=self.settings.target_name_substring,
                decoder=decoder,
            )

        sink.set_button_connected(False)
        sink.set_status("Press Connect")
        sink.set_stats(PLACEHOLDER, PLACEHOLDER)

    def _build_simulator(self) -> Simulator:
        sim = self.settings.simulator
        return Simulator(
            self._sink,
            period_s=sim.period_s,
            power_range=sim.power_range,
            cadence_range=sim.cadence_range,
            rng=random.Random(sim.seed) if sim.seed is not None else None,
        )

    @property
    def simulated(self) -> bool:
        return self.simulator is not None

    @property
    def is_connected(self) -> bool:
        return self._session.is_connected

    @property
    def state(self) -> LifecycleState:
        return self._session.state

    @property
    def target_address(self) -> str | None:
        return self._session.target_address

    def connect(self) -> None:
        self._session.connect()

    def disconnect(self) -> None:
        self._session.disconnect()

    def toggle(self) -> None:
        if self.is_connected:
            self.disconnect()
        else:
            self.connect()

    def handle_inbound_event(self, event: GattEvent | Mapping[str, Any]) -> None:
        if not isinstance(event, GattEvent):
            event = GattEvent.from_payload(event)
        self._session.handle_inbound_event(event)
