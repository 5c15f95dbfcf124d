"""Routing of inbound GATT events to state transitions and the sink."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Mapping
from typing import Any

from trainerlink.core.model import GattEvent, GattEventKind, TelemetrySample
from trainerlink.core.sink import TelemetrySink

LOGGER = logging.getLogger(__name__)

# Converts raw characteristic values into a sample, or None when the payload
# carries nothing displayable.
TelemetryDecoder = Callable[[Mapping[str, Any]], "TelemetrySample | None"]


class GattEventDispatcher:
    def __init__(
        self,
        sink: TelemetrySink,
        on_connection_change: Callable[[bool], None],
        *,
        decoder: TelemetryDecoder | None = None,
    ) -> None:
        self._sink = sink
        self._on_connection_change = on_connection_change
        self.decoder = decoder

    def dispatch(self, event: GattEvent) -> None:
        if event.kind == GattEventKind.CONNECTION_STATE_CHANGE:
            values = event.values or {}
            self._on_connection_change(bool(values.get("connected")))
        elif event.kind == GattEventKind.SERVICES_DISCOVERED:
            self._sink.log("Services discovered.")
        elif event.kind == GattEventKind.CHARACTERISTIC_CHANGED:
            self._characteristic_changed(event.values)
        else:
            LOGGER.debug("Dropping unknown GATT event kind %r", event.kind)

    def _characteristic_changed(self, values: Mapping[str, Any] | None) -> None:
        if values is None:
            return
        self._sink.log("Characteristic changed: " + json.dumps(dict(values), sort_keys=True, default=str))
        if self.decoder is None:
            return
        sample = self.decoder(values)
        if sample is not None:
            self._sink.set_stats(sample.power_text, sample.cadence_text)
