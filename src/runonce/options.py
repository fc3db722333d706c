from __future__ import annotations

import re
from dataclasses import dataclass, replace
from typing import Mapping

from runonce.errors import ConfigError


DEFAULT_TIMEOUT = "10s"
DEFAULT_STOP_TIMEOUT = 1
DEFAULT_BIND_CWD = "/host"
DEFAULT_MEMORY_LIMIT = "128Mi"
DEFAULT_OPTION_LABEL_PREFIX = "DRO_"
DEFAULT_IMAGE_TAG = "latest"

LABEL_MEMORY_LIMIT = "MEMORY_LIMIT"
LABEL_BIND_CWD = "BIND_CWD"
LABEL_TIMEOUT = "TIMEOUT"
LABEL_CONCURRENT = "CONCURRENT"

_BYTE_UNITS: dict[str, int] = {"": 1, "b": 1}
for _exponent, _letter in enumerate("kmgtpe", start=1):
    _BYTE_UNITS[_letter] = 1000**_exponent
    _BYTE_UNITS[f"{_letter}b"] = 1000**_exponent
    _BYTE_UNITS[f"{_letter}i"] = 1024**_exponent
    _BYTE_UNITS[f"{_letter}ib"] = 1024**_exponent
_MAX_BYTES = 2**64

_IEC_SUFFIXES = ("B", "KiB", "MiB", "GiB", "TiB", "PiB", "EiB")

_DURATION_UNITS: dict[str, float] = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "μs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_DURATION_TERM = r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|μs|ms|s|m|h)"
_DURATION_RE = re.compile(rf"(?:{_DURATION_TERM})+")
_DURATION_TERM_RE = re.compile(_DURATION_TERM)
_MAX_DURATION_SECONDS = (2**63 - 1) / 1e9


@dataclass(frozen=True)
class RunOptions:
    """Command-line values before any image label is applied."""

    image: str
    timeout: str = DEFAULT_TIMEOUT
    stop_timeout: int = DEFAULT_STOP_TIMEOUT
    bind_cwd: str = DEFAULT_BIND_CWD
    memory_limit: str = DEFAULT_MEMORY_LIMIT
    option_label_prefix: str = DEFAULT_OPTION_LABEL_PREFIX
    concurrent: bool = True
    args: tuple[str, ...] = ()


@dataclass(frozen=True)
class RunConfig:
    image_reference: str
    timeout: float
    memory_limit_bytes: int
    bind_cwd_target: str
    concurrent_execution_allowed: bool
    stop_timeout_seconds: int
    extra_args: tuple[str, ...] = ()


def parse_bytes(value: str) -> int:
    """Parse a human byte size such as ``128Mi``, ``1.5 GB`` or ``4096``.

    ``k``/``kb`` are decimal multiples, ``ki``/``kib`` binary ones, units are
    case-insensitive and may be separated from the number by spaces.
    """
    text = str(value)
    match = re.match(r"[0-9.,]*", text)
    number = match.group(0) if match else ""
    unit = text[len(number) :].strip().lower()
    try:
        amount = float(number.replace(",", ""))
    except ValueError:
        raise ValueError(f"invalid byte size: {value!r}") from None
    multiplier = _BYTE_UNITS.get(unit)
    if multiplier is None:
        raise ValueError(f"unhandled size name: {unit!r}")
    total = amount * multiplier
    if total >= _MAX_BYTES:
        raise ValueError(f"too large: {value!r}")
    return int(total)


def parse_duration(value: str) -> float:
    """Parse a duration such as ``10s``, ``50ms`` or ``1h2m3.5s`` into seconds."""
    text = str(value).strip()
    if text.startswith("-"):
        raise ValueError(f"negative duration: {value!r}")
    if text.startswith("+"):
        text = text[1:]
    if text == "0":
        return 0.0
    if not text or not _DURATION_RE.fullmatch(text):
        raise ValueError(f"invalid duration: {value!r}")
    total = sum(float(amount) * _DURATION_UNITS[unit] for amount, unit in _DURATION_TERM_RE.findall(text))
    # int64 nanoseconds
    if total > _MAX_DURATION_SECONDS:
        raise ValueError(f"invalid duration: {value!r}")
    return total


def format_iec_bytes(count: int) -> str:
    if count < 10:
        return f"{count} B"
    scaled = float(count)
    exponent = 0
    while scaled >= 1024 and exponent < len(_IEC_SUFFIXES) - 1:
        scaled /= 1024
        exponent += 1
    rounded = int(scaled * 10 + 0.5) / 10
    if rounded < 10:
        return f"{rounded:.1f} {_IEC_SUFFIXES[exponent]}"
    return f"{rounded:.0f} {_IEC_SUFFIXES[exponent]}"


def normalize_image_reference(image: str) -> str:
    reference = str(image or "").strip()
    if not reference:
        raise ConfigError("image-name not specified")
    if ":" not in reference:
        reference = f"{reference}:{DEFAULT_IMAGE_TAG}"
    return reference


def is_remote_reference(reference: str) -> bool:
    return "/" in reference


def option_label_pattern(prefix: str) -> re.Pattern[str]:
    return re.compile("^" + re.escape(prefix) + "(.+)$")


def apply_image_labels(options: RunOptions, labels: Mapping[str, str] | None) -> RunOptions:
    pattern = option_label_pattern(options.option_label_prefix)
    overrides: dict[str, object] = {}
    for key, value in (labels or {}).items():
        match = pattern.match(str(key))
        if not match:
            continue
        name = match.group(1)
        if name == LABEL_MEMORY_LIMIT:
            overrides["memory_limit"] = str(value)
        elif name == LABEL_BIND_CWD:
            overrides["bind_cwd"] = str(value)
        elif name == LABEL_TIMEOUT:
            overrides["timeout"] = str(value)
        elif name == LABEL_CONCURRENT:
            overrides["concurrent"] = value == "true"
    if not overrides:
        return options
    return replace(options, **overrides)


def _parsed_memory_limit(options: RunOptions) -> int:
    try:
        return parse_bytes(options.memory_limit)
    except ValueError as exc:
        raise ConfigError(f"invalid memory limit '{options.memory_limit}': {exc}") from exc


def _parsed_timeout(options: RunOptions) -> float:
    try:
        return parse_duration(options.timeout)
    except ValueError as exc:
        raise ConfigError(f"invalid run timeout '{options.timeout}': {exc}") from exc


def validate_run_options(options: RunOptions) -> str:
    """Check the command-line values before talking to the engine.

    Returns the normalized image reference.
    """
    reference = normalize_image_reference(options.image)
    _parsed_memory_limit(options)
    _parsed_timeout(options)
    return reference


def resolve_run_config(options: RunOptions, labels: Mapping[str, str] | None = None) -> RunConfig:
    effective = apply_image_labels(options, labels)
    return RunConfig(
        image_reference=normalize_image_reference(effective.image),
        timeout=_parsed_timeout(effective),
        memory_limit_bytes=_parsed_memory_limit(effective),
        bind_cwd_target=effective.bind_cwd,
        concurrent_execution_allowed=effective.concurrent,
        stop_timeout_seconds=int(effective.stop_timeout),
        extra_args=tuple(str(arg) for arg in effective.args),
    )
