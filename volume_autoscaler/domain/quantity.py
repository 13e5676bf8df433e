import re
from datetime import timedelta
from typing import Union

from kubernetes.utils import parse_quantity

from volume_autoscaler.domain.errors import InvalidIntent

_BINARY_SUFFIXES = [("Ei", 2 ** 60), ("Pi", 2 ** 50), ("Ti", 2 ** 40), ("Gi", 2 ** 30), ("Mi", 2 ** 20), ("Ki", 2 ** 10)]

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ns|us|µs|ms|s|m|h)")
_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1,
    "m": 60,
    "h": 3600,
}


def to_bytes(quantity: Union[str, int, float]) -> int:
    """
    Converts a Kubernetes quantity ("10Gi", "500M", "1073741824") to whole bytes.
    Fractional bytes are rounded up, the same way the API server does.
    """
    try:
        value = parse_quantity(quantity)
    except ValueError as exc:
        raise InvalidIntent(f"invalid quantity: {quantity!r}") from exc

    whole = int(value)
    return whole + 1 if value > whole else whole


def format_bytes(size: int) -> str:
    for suffix, factor in _BINARY_SUFFIXES:
        if size >= factor and size % factor == 0:
            return f"{size // factor}{suffix}"
    return str(size)


def parse_duration(raw: Union[str, int, float]) -> timedelta:
    """
    Parses Go-style durations ("90s", "5m", "1h30m"). Bare numbers are seconds.
    """
    if isinstance(raw, (int, float)):
        return timedelta(seconds=raw)

    text = raw.strip()
    if not text:
        raise InvalidIntent("empty duration")
    try:
        return timedelta(seconds=float(text))
    except ValueError:
        pass

    pos = 0
    seconds = 0.0
    for match in _DURATION_PART.finditer(text):
        if match.start() != pos:
            break
        seconds += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()

    if pos != len(text):
        raise InvalidIntent(f"invalid duration: {raw!r}")
    return timedelta(seconds=seconds)


def format_duration(value: timedelta) -> str:
    total = int(value.total_seconds())
    hours, rest = divmod(total, 3600)
    minutes, seconds = divmod(rest, 60)
    out = ""
    if hours:
        out += f"{hours}h"
    if minutes:
        out += f"{minutes}m"
    if seconds or not out:
        out += f"{seconds}s"
    return out
