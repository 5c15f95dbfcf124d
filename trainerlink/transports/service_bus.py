"""Transport implementation over a platform BLE GATT service bus.

The bus exposes request/response/event triplets: each request names a method
and parameters and resolves through `on_success(result)` or
`on_failure({"errorCode": ..., "errorText": ...})`. Subscribed requests keep
calling `on_success` until their handle is canceled.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Mapping
from typing import Any, Protocol

from trainerlink.core.model import Device, GattEvent, TransportFailure
from trainerlink.transports.base import CallbackHandle, FailureCallback, OperationHandle

DEFAULT_SERVICE_URI = "luna://com.webos.service.blegatt"
LOGGER = logging.getLogger(__name__)

Payload = Mapping[str, Any]


class ServiceRequest(Protocol):
    def __call__(
        self,
        uri: str,
        *,
        method: str,
        parameters: dict[str, Any],
        on_success: Callable[[Payload], None],
        on_failure: Callable[[Payload], None],
    ) -> Any:
        """Issue one service request and return its cancelable subscription."""


def _wrap_handle(raw: Any) -> CallbackHandle:
    return CallbackHandle(getattr(raw, "cancel", None))


def _dump(payload: Payload) -> str:
    try:
        return json.dumps(payload, sort_keys=True, default=str)
    except (TypeError, ValueError):
        return repr(payload)


class ServiceTransport:
    def __init__(self, request: ServiceRequest, *, uri: str = DEFAULT_SERVICE_URI) -> None:
        self._request = request
        self._uri = uri

    def _issue(
        self,
        method: str,
        parameters: dict[str, Any],
        on_success: Callable[[Payload], None],
        on_failure: FailureCallback,
    ) -> CallbackHandle:
        def _success(result: Payload) -> None:
            LOGGER.debug("%s result: %s", method, _dump(result))
            on_success(result or {})

        def _failure(error: Payload) -> None:
            on_failure(TransportFailure.from_payload(error))

        raw = self._request(
            self._uri,
            method=method,
            parameters=parameters,
            on_success=_success,
            on_failure=_failure,
        )
        return _wrap_handle(raw)

    def check_enabled(
        self,
        on_result: Callable[[bool], None],
        on_failure: FailureCallback,
    ) -> OperationHandle:
        return self._issue(
            "isEnabled",
            {"subscribe": True},
            lambda result: on_result(result.get("isEnabled") is True),
            on_failure,
        )

    def start_scan(
        self,
        on_devices: Callable[[list[Device]], None],
        on_failure: FailureCallback,
    ) -> OperationHandle:
        def _devices(result: Payload) -> None:
            raw_devices = result.get("devices") or []
            on_devices([Device.from_payload(d) for d in raw_devices if isinstance(d, Mapping)])

        return self._issue("startScan", {"subscribe": True}, _devices, on_failure)

    def stop_scan(self, handle: OperationHandle | None) -> None:
        if handle is None:
            return

        def _acknowledged(result: Payload) -> None:
            LOGGER.info("Stopped scan: %s", _dump(result))

        def _failed(failure: TransportFailure) -> None:
            LOGGER.warning(failure.describe("stopScan"))

        self._issue("stopScan", {}, _acknowledged, _failed)

    def connect(
        self,
        address: str,
        on_event: Callable[[GattEvent], None],
        on_failure: FailureCallback,
    ) -> OperationHandle:
        return self._issue(
            "client/connect",
            {"subscribe": True, "address": address},
            lambda result: on_event(GattEvent.from_payload(result)),
            on_failure,
        )
