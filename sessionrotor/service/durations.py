from __future__ import annotations

import re

DEFAULT_REFRESH_TTL_SECONDS = 7 * 24 * 60 * 60
DEFAULT_ACCESS_TTL_SECONDS = 15 * 60

# ASCII digits only
_EXPIRES_IN_PATTERN = re.compile(r"([0-9]+)([smhd])")

_UNIT_SECONDS = {
    "s": 1,
    "m": 60,
    "h": 60 * 60,
    "d": 24 * 60 * 60,
}


def _match_seconds(value: str | None) -> int | None:
    if not value:
        return None
    match = _EXPIRES_IN_PATTERN.fullmatch(value)
    if not match:
        return None
    amount, unit = match.groups()
    seconds = int(amount) * _UNIT_SECONDS[unit]
    # A zero lifetime cannot hold a session on any backend
    if seconds < 1:
        return None
    return seconds


def is_valid_expires_in(value: str | None) -> bool:
    return _match_seconds(value) is not None


def parse_expires_in_to_seconds(
    value: str | None, *, default: int = DEFAULT_REFRESH_TTL_SECONDS
) -> int:
    """Convert an expiry policy such as ``"15m"`` or ``"7d"`` to whole seconds.

    Only ``<digits><unit>`` with ASCII digits and unit one of ``s``, ``m``,
    ``h``, ``d`` is understood. Anything else (empty, whitespace, ``"1w"``,
    ``"10"``, ``"0s"``) returns ``default``, which is one week unless the
    caller overrides it.
    """
    seconds = _match_seconds(value)
    if seconds is None:
        return default
    return seconds


__all__ = [
    "DEFAULT_ACCESS_TTL_SECONDS",
    "DEFAULT_REFRESH_TTL_SECONDS",
    "is_valid_expires_in",
    "parse_expires_in_to_seconds",
]
