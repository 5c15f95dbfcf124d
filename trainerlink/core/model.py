"""Core data models shared by transports, the state machine, and the CLI."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any

PLACEHOLDER = "--"


class LifecycleState(Enum):
    IDLE = "idle"
    CHECKING_ENABLED = "checking_enabled"
    SCANNING = "scanning"
    TARGET_FOUND = "target_found"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTING = "disconnecting"


class GattEventKind(str, Enum):
    CONNECTION_STATE_CHANGE = "connectionStateChange"
    SERVICES_DISCOVERED = "servicesDiscovered"
    CHARACTERISTIC_CHANGED = "characteristicChanged"


def _event_kind(name: str) -> GattEventKind | str:
    # The platform service prefixes event names with "on" (onConnectionStateChange).
    normalized = name
    if len(name) > 2 and name.startswith("on") and name[2].isupper():
        normalized = name[2].lower() + name[3:]
    try:
        return GattEventKind(normalized)
    except ValueError:
        return name


@dataclass(frozen=True)
class Device:
    name: str
    address: str

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> Device:
        return cls(name=str(payload.get("name") or ""), address=str(payload.get("address") or ""))


@dataclass(frozen=True)
class GattEvent:
    kind: GattEventKind | str
    values: Mapping[str, Any] | None = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> GattEvent:
        values = payload.get("values")
        return cls(
            kind=_event_kind(str(payload.get("event") or "")),
            values=values if isinstance(values, Mapping) else None,
        )


@dataclass(frozen=True)
class TransportFailure:
    code: int
    text: str

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any] | None) -> TransportFailure:
        payload = payload or {}
        try:
            code = int(payload.get("errorCode", -1))
        except (TypeError, ValueError):
            code = -1
        return cls(code=code, text=str(payload.get("errorText") or "unknown error"))

    def describe(self, operation: str) -> str:
        return f"{operation} error: [{self.code}] {self.text}"


@dataclass(frozen=True)
class TelemetrySample:
    power_watts: float
    cadence_rpm: float

    @property
    def power_text(self) -> str:
        return f"{self.power_watts:.0f} W"

    @property
    def cadence_text(self) -> str:
        return f"{self.cadence_rpm:.0f} rpm"


@dataclass(frozen=True)
class ConnectionSession:
    target_address: str | None = None
    active: bool = False
