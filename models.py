#!/usr/bin/env python3
"""
Data structures shared by the routing engine.
"""

from dataclasses import dataclass, field
from enum import Enum


# ---------------------------------------------------------------------------
# Naming conventions
# ---------------------------------------------------------------------------

PREFIX = 'lichen_'
OUTPUT_PREFIX = 'lichen_output_'
INPUT_PREFIX = 'lichen_input_'
CAPTURE_PREFIX = 'lichen_capture_hw_'
NULL_SUFFIX = '_null'
MIC_SUFFIX = '_mic'
MONITOR_SUFFIX = '.monitor'

# Module types the engine builds pipelines from
COMBINE_SINK = 'module-combine-sink'
NULL_SINK = 'module-null-sink'
LOOPBACK = 'module-loopback'
REMAP_SOURCE = 'module-remap-source'
ALSA_SOURCE = 'module-alsa-source'

# pactl's PA_VOLUME_NORM: 100% on the linear scale
VOLUME_NORM = 65536


def null_sink_name(base: str) -> str:
    return f'{base}{NULL_SUFFIX}'


def mic_source_name(base: str) -> str:
    return f'{base}{MIC_SUFFIX}'


def percent_to_linear(percent: float) -> int:
    """Convert a 0..100 percentage to pactl's linear volume integer."""
    return round(percent / 100 * VOLUME_NORM)


def clamp_percent(percent: float) -> int:
    return int(max(0, min(100, round(percent))))


def description_property(key: str, description: str) -> str:
    """A `<key>='device.description="..."'` module argument.

    The value is quoted as a whole so descriptions with spaces survive the
    server's argument parser; quotes and backslashes are escaped at both levels.
    """
    inner = description.replace('\\', '\\\\').replace('"', '\\"')
    value = f'device.description="{inner}"'
    value = value.replace('\\', '\\\\').replace("'", "\\'")
    return f"{key}='{value}'"


# ---------------------------------------------------------------------------
# Devices
# ---------------------------------------------------------------------------

class DeviceKind(Enum):
    SINK = 'sink'
    SOURCE = 'source'


class DeviceState(Enum):
    RUNNING = 'RUNNING'
    IDLE = 'IDLE'
    SUSPENDED = 'SUSPENDED'
    UNKNOWN = 'UNKNOWN'

    @classmethod
    def parse(cls, text: str | None) -> 'DeviceState':
        try:
            return cls((text or '').strip().upper())
        except ValueError:
            return cls.UNKNOWN


@dataclass(frozen=True)
class Device:
    """A sink or source as reported by the server. Replaced on every refresh."""
    id: int
    name: str
    description: str
    state: DeviceState
    kind: DeviceKind


@dataclass(frozen=True)
class MemberInfo:
    """One physical device inside a route, with its stored volume."""
    name: str
    description: str
    volume: int


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

class RouteKind(Enum):
    OUTPUT = 'output'
    INPUT = 'input'


@dataclass
class Route:
    """A user-intended audio path backed by one or more server modules.

    module_ids holds every module that has to be unloaded to tear the route
    down, in load order (roots first).
    """
    id: str
    kind: RouteKind
    anchor_name: str
    description: str
    module_ids: list[int] = field(default_factory=list)
    exposed_source_name: str | None = None
    member_descriptions: list[str] = field(default_factory=list)
    member_names: list[str] = field(default_factory=list)
    failed_members: list[str] = field(default_factory=list)
    is_orphan: bool = False

    @property
    def null_sink_name(self) -> str | None:
        if self.kind is not RouteKind.INPUT:
            return None
        return null_sink_name(self.anchor_name)

    @property
    def is_degraded(self) -> bool:
        """True when an input route came up without its virtual microphone."""
        return self.kind is RouteKind.INPUT and not self.exposed_source_name


@dataclass
class HearbackState:
    loopback_module_id: int | None = None
    sink_input_index: int | None = None
    volume_percent: int = 0
    source_name: str | None = None
    sink_name: str | None = None

    @property
    def enabled(self) -> bool:
        return self.loopback_module_id is not None


# ---------------------------------------------------------------------------
# ALSA recovery
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CaptureDevice:
    """A capture device as enumerated by the ALSA driver (arecord -l)."""
    card: int
    device: int
    card_id: str
    name: str

    @property
    def hw(self) -> str:
        return f'hw:{self.card},{self.device}'

    @property
    def source_name(self) -> str:
        return f'{CAPTURE_PREFIX}{self.card}_{self.device}'


@dataclass(frozen=True)
class ForcedSourceRecord:
    module_id: int
    card: int
    device: int
    exposed_source_name: str


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class RouteError(Exception):
    """Base class for route creation failures."""


class InsufficientMembersError(RouteError):
    """Fewer than two devices were supplied to a combine/mix request."""


class LoadFailedError(RouteError):
    """A critical pipeline stage could not be loaded; nothing was registered."""
