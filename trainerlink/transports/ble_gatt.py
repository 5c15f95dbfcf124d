"""BLE GATT transport implementation on top of bleak.

Every operation runs as a task on the caller's running asyncio loop, so all
callbacks are delivered on that loop and never from inside the registering
call.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from typing import Any

from bleak import BleakClient, BleakScanner
from bleak.exc import BleakError
from bleak.uuids import normalize_uuid_str

from trainerlink.core.errors import TransportError
from trainerlink.core.model import Device, GattEvent, GattEventKind, TransportFailure
from trainerlink.transports.base import CallbackHandle, FailureCallback, OperationHandle

# Cycling Power Measurement and FTMS Indoor Bike Data.
DEFAULT_NOTIFY_CHARACTERISTICS = ("2a63", "2ad2")
DEFAULT_SCAN_INTERVAL_S = 1.0
LOGGER = logging.getLogger(__name__)


def _running_loop() -> asyncio.AbstractEventLoop:
    try:
        return asyncio.get_running_loop()
    except RuntimeError as exc:
        raise TransportError(
            "BLE transport must be used from inside a running asyncio event loop."
        ) from exc


def _failure(exc: BaseException) -> TransportFailure:
    return TransportFailure(code=-1, text=f"{type(exc).__name__}: {exc}")


def _to_device(ble_device: Any) -> Device:
    return Device(name=ble_device.name or "", address=ble_device.address)


async def _stop_scanner(scanner: BleakScanner) -> None:
    try:
        await scanner.stop()
    except BleakError as exc:
        LOGGER.debug("Scanner stop ignored: %s", exc)


class BLEGATTTransport:
    def __init__(
        self,
        *,
        scan_interval_s: float = DEFAULT_SCAN_INTERVAL_S,
        notify_characteristics: Sequence[str] = DEFAULT_NOTIFY_CHARACTERISTICS,
    ) -> None:
        self._scan_interval_s = scan_interval_s
        self._notify_characteristics = tuple(normalize_uuid_str(u) for u in notify_characteristics)

    def _spawn(self, coro: Any) -> OperationHandle:
        try:
            loop = _running_loop()
        except TransportError:
            coro.close()
            raise
        task = loop.create_task(coro)
        return CallbackHandle(task.cancel)

    def check_enabled(
        self,
        on_result: Callable[[bool], None],
        on_failure: FailureCallback,
    ) -> OperationHandle:
        async def _probe() -> None:
            try:
                scanner = BleakScanner()
                await scanner.start()
                await scanner.stop()
            except BleakError as exc:
                LOGGER.info("BLE adapter unavailable: %s", exc)
                on_result(False)
            except Exception as exc:
                on_failure(_failure(exc))
            else:
                on_result(True)

        return self._spawn(_probe())

    def start_scan(
        self,
        on_devices: Callable[[list[Device]], None],
        on_failure: FailureCallback,
    ) -> OperationHandle:
        async def _scan() -> None:
            try:
                scanner = BleakScanner()
                await scanner.start()
            except Exception as exc:
                on_failure(_failure(exc))
                return
            try:
                while True:
                    await asyncio.sleep(self._scan_interval_s)
                    on_devices([_to_device(d) for d in scanner.discovered_devices])
            except Exception as exc:
                on_failure(_failure(exc))
            finally:
                await _stop_scanner(scanner)

        return self._spawn(_scan())

    def stop_scan(self, handle: OperationHandle | None) -> None:
        # The scanner is owned by the scan task; ending the task stops it.
        if handle is None:
            return
        handle.cancel()

    def connect(
        self,
        address: str,
        on_event: Callable[[GattEvent], None],
        on_failure: FailureCallback,
    ) -> OperationHandle:
        async def _session() -> None:
            disconnected = asyncio.Event()
            try:
                client = BleakClient(address, disconnected_callback=lambda _client: disconnected.set())
                await client.connect()
            except Exception as exc:
                on_failure(_failure(exc))
                return
            # CancelledError is not an Exception, so cancel still unwinds through finally.
            try:
                on_event(GattEvent(GattEventKind.CONNECTION_STATE_CHANGE, {"connected": True}))
                services = [service.uuid for service in client.services]
                on_event(GattEvent(GattEventKind.SERVICES_DISCOVERED, {"services": services}))
                await self._enable_notifications(client, on_event)
                await disconnected.wait()
                on_event(GattEvent(GattEventKind.CONNECTION_STATE_CHANGE, {"connected": False}))
            except Exception as exc:
                LOGGER.warning("GATT session with %s failed: %s", address, exc)
                on_failure(_failure(exc))
            finally:
                if client.is_connected:
                    try:
                        await client.disconnect()
                    except Exception as exc:
                        LOGGER.warning("Disconnect from %s failed: %s", address, exc)

        return self._spawn(_session())

    async def _enable_notifications(
        self,
        client: BleakClient,
        on_event: Callable[[GattEvent], None],
    ) -> None:
        for char_uuid in self._notify_characteristics:
            characteristic = client.services.get_characteristic(char_uuid)
            if characteristic is None or "notify" not in characteristic.properties:
                continue

            def _changed(_sender: Any, data: bytearray, uuid: str = char_uuid) -> None:
                on_event(
                    GattEvent(
                        GattEventKind.CHARACTERISTIC_CHANGED,
                        {"uuid": uuid, "value": bytes(data).hex()},
                    )
                )

            try:
                await client.start_notify(characteristic, _changed)
            except Exception as exc:
                LOGGER.warning("Could not subscribe to %s: %s", char_uuid, exc)

    async def discover(self, timeout_s: float = 5.0) -> list[Device]:
        """One-shot scan used by the CLI `scan` command."""
        try:
            devices = await BleakScanner.discover(timeout=timeout_s)
        except BleakError as exc:
            raise TransportError(f"BLE scan failed: {exc}") from exc
        return [_to_device(d) for d in devices]
