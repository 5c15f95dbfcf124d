"""Synthetic telemetry for running without radio hardware."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import random
from collections.abc import Callable

from trainerlink.core.errors import TransportError
from trainerlink.core.model import PLACEHOLDER, GattEvent, LifecycleState, TelemetrySample
from trainerlink.core.sink import TelemetrySink

LOGGER = logging.getLogger(__name__)

DEFAULT_PERIOD_S = 0.5
DEFAULT_POWER_RANGE = (140.0, 240.0)
DEFAULT_CADENCE_RANGE = (78.0, 178.0)

SampleCallback = Callable[[TelemetrySample], None]


class Simulator:
    """Emits one uniformly drawn `TelemetrySample` every `period_s` seconds."""

    def __init__(
        self,
        sink: TelemetrySink,
        *,
        period_s: float = DEFAULT_PERIOD_S,
        power_range: tuple[float, float] = DEFAULT_POWER_RANGE,
        cadence_range: tuple[float, float] = DEFAULT_CADENCE_RANGE,
        rng: random.Random | None = None,
    ) -> None:
        self._sink = sink
        self._period_s = period_s
        self._power_range = power_range
        self._cadence_range = cadence_range
        self._rng = rng or random.Random()
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def sample(self) -> TelemetrySample:
        power_low, power_high = self._power_range
        cadence_low, cadence_high = self._cadence_range
        # random() is in [0, 1), keeping both readings half-open.
        return TelemetrySample(
            power_watts=power_low + self._rng.random() * (power_high - power_low),
            cadence_rpm=cadence_low + self._rng.random() * (cadence_high - cadence_low),
        )

    def start(self, on_sample: SampleCallback) -> None:
        if self.running:
            LOGGER.debug("Simulator already running")
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError as exc:
            raise TransportError(
                "Simulator must be started from inside a running asyncio event loop."
            ) from exc
        self._task = loop.create_task(self._run(on_sample))

    def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        self._sink.set_stats(PLACEHOLDER, PLACEHOLDER)

    async def _run(self, on_sample: SampleCallback) -> None:
        while True:
            await asyncio.sleep(self._period_s)
            on_sample(self.sample())

    async def aclose(self) -> None:
        """Stop emission and wait for the emitter task to finish."""
        task = self._task
        self.stop()
        if task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await task


class SimulatedSession:
    """Session variant that bypasses the BLE lifecycle and drives a `Simulator`."""

    def __init__(self, sink: TelemetrySink, simulator: Simulator) -> None:
        self._sink = sink
        self.simulator = simulator
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def state(self) -> LifecycleState:
        return LifecycleState.CONNECTED if self._connected else LifecycleState.IDLE

    @property
    def target_address(self) -> str | None:
        return None

    def connect(self) -> None:
        if self._connected:
            self._sink.log("Already connecting or connected; ignoring connect request")
            return
        self.simulator.start(self._show_sample)
        self._connected = True
        self._sink.set_button_connected(True)
        self._sink.set_status("Connecting...")
        self._sink.log("Simulator detected; skipping BLE initialization.")

    def disconnect(self) -> None:
        if not self._connected:
            self._sink.log("Not currently connected")
            return
        self._connected = False
        self.simulator.stop()
        self._sink.set_button_connected(False)
        self._sink.set_status("Disconnecting...")

    def handle_inbound_event(self, event: GattEvent) -> None:
        LOGGER.debug("Simulator ignores inbound GATT event %r", event.kind)

    def _show_sample(self, sample: TelemetrySample) -> None:
        self._sink.set_stats(sample.power_text, sample.cadence_text)
