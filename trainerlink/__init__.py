"""Connect to a BLE smart trainer and stream power and cadence."""

__version__ = "0.1.0"
