"""Telemetry sink interface the core reports to."""

from __future__ import annotations

from typing import Protocol


class TelemetrySink(Protocol):
    def log(self, message: str) -> None:
        """Append a line to the user-visible log."""

    def set_status(self, message: str) -> None:
        """Replace the status line."""

    def set_stats(self, power_text: str, cadence_text: str) -> None:
        """Show the latest power and cadence readings."""

    def set_button_connected(self, connected: bool) -> None:
        """Reflect whether the connect control should offer disconnect."""
