"""Scan-result filtering used to pick the trainer."""

from __future__ import annotations

import string
from collections.abc import Sequence

from trainerlink.core.model import Device

DEFAULT_TARGET_SUBSTRING = "KICKR"

_ASCII_UPPER = str.maketrans(string.ascii_lowercase, string.ascii_uppercase)


def _fold(value: str) -> str:
    return value.translate(_ASCII_UPPER)


def name_matches(name: str, target: str = DEFAULT_TARGET_SUBSTRING) -> bool:
    return _fold(target) in _fold(name)


def select_target(
    devices: Sequence[Device] | None,
    target: str = DEFAULT_TARGET_SUBSTRING,
) -> Device | None:
    """Return the first device whose name contains `target`, ignoring ASCII case."""
    for device in devices or ():
        if name_matches(device.name, target):
            return device
    return None
