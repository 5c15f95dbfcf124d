"""Transport interfaces."""

from __future__ import annotations

from collections.abc import Callable
from typing import Protocol

from trainerlink.core.model import Device, GattEvent, TransportFailure

FailureCallback = Callable[[TransportFailure], None]


class OperationHandle(Protocol):
    def cancel(self) -> None:
        """Release the subscription. Safe to call repeatedly or after completion."""


class Transport(Protocol):
    def check_enabled(
        self,
        on_result: Callable[[bool], None],
        on_failure: FailureCallback,
    ) -> OperationHandle:
        """Subscribe to the adapter's enabled state."""

    def start_scan(
        self,
        on_devices: Callable[[list[Device]], None],
        on_failure: FailureCallback,
    ) -> OperationHandle:
        """Start a repeating scan; each callback carries one discovery batch."""

    def stop_scan(self, handle: OperationHandle | None) -> None:
        """Ask the backend to stop scanning. A `None` handle is a no-op."""

    def connect(
        self,
        address: str,
        on_event: Callable[[GattEvent], None],
        on_failure: FailureCallback,
    ) -> OperationHandle:
        """Open a GATT client subscription that stays open until canceled."""


class CallbackHandle:
    """Idempotent handle wrapping a cancel callable."""

    def __init__(self, cancel: Callable[[], None] | None = None) -> None:
        self._cancel = cancel
        self.canceled = False

    def cancel(self) -> None:
        if self.canceled:
            return
        self.canceled = True
        if self._cancel is not None:
            self._cancel()
