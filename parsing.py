#!/usr/bin/env python3
"""
Parsers for the text dumps printed by pactl and arecord.

Every parser here is best-effort: malformed or truncated blocks are skipped,
never raised on, because the dumps come from an external process whose
output changes between server versions.

Module role keys (see parse_modules):
    <sink_name>                 combine-sink or null-sink producing that sink
    sink=<sink_name>            loopback feeding into that sink
    remap-source=<source_name>  remap-source producing that source
"""

import re
from dataclasses import dataclass
from typing import Iterable

from models import (
    ALSA_SOURCE, COMBINE_SINK, LOOPBACK, MONITOR_SUFFIX, NULL_SINK, REMAP_SOURCE,
    CaptureDevice, Device, DeviceKind, DeviceState,
)


# ---------------------------------------------------------------------------
# Block splitting
# ---------------------------------------------------------------------------

_DEVICE_BOUNDARY = re.compile(r'\n(?=(?:Sink|Source) #\d+)')
_DEVICE_HEADER = re.compile(r'^\s*(?:Sink|Source) #(\d+)')


def _split_blocks(output: str, header: str) -> list[str]:
    """Split a pactl list dump into blocks, each starting with `header`."""
    blocks = []
    current: list[str] = []
    for line in output.splitlines():
        if line.startswith(header):
            if current:
                blocks.append('\n'.join(current))
            current = [line]
        elif current:
            current.append(line)
    if current:
        blocks.append('\n'.join(current))
    return blocks


def _field(block: str, name: str) -> str | None:
    """Value of a one-level `Name: value` field inside a block."""
    match = re.search(rf'^[ \t]+{re.escape(name)}:[ \t]*(.*)$', block, re.MULTILINE)
    if not match:
        return None
    return match.group(1).strip()


def _property(block: str, key: str) -> str | None:
    """Value of a `key = "value"` property line inside a block."""
    match = re.search(rf'^[ \t]+{re.escape(key)} = "([^"]*)"', block, re.MULTILINE)
    return match.group(1) if match else None


# ---------------------------------------------------------------------------
# Sinks and sources
# ---------------------------------------------------------------------------

def parse_devices(output: str, kind: DeviceKind) -> list[Device]:
    """Parse `pactl list sinks` / `pactl list sources` into Devices.

    Blocks without both an index and a Name are dropped. Missing
    descriptions fall back to the name, missing states to UNKNOWN.
    """
    devices: list[Device] = []
    for block in _DEVICE_BOUNDARY.split(output or ''):
        if not block.strip():
            continue
        id_match = _DEVICE_HEADER.match(block)
        name = _field(block, 'Name')
        if not id_match or not name:
            continue
        devices.append(Device(
            id=int(id_match.group(1)),
            name=name,
            description=_field(block, 'Description') or name,
            state=DeviceState.parse(_field(block, 'State')),
            kind=kind,
        ))
    return devices


def parse_sources(output: str) -> list[Device]:
    """Parse sources, dropping monitors: they mirror sinks and are never mics."""
    return [d for d in parse_devices(output, DeviceKind.SOURCE)
            if MONITOR_SUFFIX not in d.name]


def parse_short_names(output: str) -> set[str]:
    """Object names from a `pactl list ... short` listing (second column)."""
    names: set[str] = set()
    for line in (output or '').splitlines():
        parts = line.split('\t')
        if len(parts) >= 2 and parts[1].strip():
            names.add(parts[1].strip())
    return names


def parse_source_cards(output: str) -> set[int]:
    """ALSA card numbers already exposed by server sources (alsa.card property)."""
    cards: set[int] = set()
    for block in _DEVICE_BOUNDARY.split(output or ''):
        # A sink monitor carries its sink's card but captures nothing
        name = _field(block, 'Name') or ''
        if MONITOR_SUFFIX in name or _property(block, 'device.class') == 'monitor':
            continue
        card = _property(block, 'alsa.card')
        if card and card.isdigit():
            cards.add(int(card))
    return cards


# ---------------------------------------------------------------------------
# Modules
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ModuleInfo:
    id: int
    name: str
    argument: str

    def arg(self, key: str) -> str | None:
        return module_arg(self.argument, key)


def module_arg(argument: str, key: str) -> str | None:
    """Value of `key=value` in a module argument string.

    Anchored on whitespace so that `sink=` never matches `sink_name=` or
    `master_sink=`.
    """
    match = re.search(rf'(?:^|\s){re.escape(key)}=(\S+)', argument or '')
    return match.group(1) if match else None


def parse_module_blocks(output: str) -> list[ModuleInfo]:
    """Parse `pactl list modules` into (id, name, argument) records."""
    modules: list[ModuleInfo] = []
    for block in _split_blocks(output or '', 'Module #'):
        id_match = re.match(r'Module #(\d+)', block)
        name = _field(block, 'Name')
        if not id_match or not name:
            continue
        modules.append(ModuleInfo(
            id=int(id_match.group(1)),
            name=name,
            argument=_field(block, 'Argument') or '',
        ))
    return modules


def loopback_key(sink_name: str) -> str:
    return f'sink={sink_name}'


def remap_key(source_name: str) -> str:
    return f'remap-source={source_name}'


def role_key(module: ModuleInfo) -> str | None:
    """Role key for a module, or None for module types the engine ignores."""
    if module.name in (COMBINE_SINK, NULL_SINK):
        sink_name = module.arg('sink_name')
        return sink_name if sink_name else None
    if module.name == LOOPBACK:
        sink = module.arg('sink')
        return loopback_key(sink) if sink else None
    if module.name == REMAP_SOURCE:
        source_name = module.arg('source_name')
        return remap_key(source_name) if source_name else None
    return None


def role_map(modules: Iterable[ModuleInfo]) -> dict[str, list[int]]:
    roles: dict[str, list[int]] = {}
    for module in modules:
        key = role_key(module)
        if key is not None:
            roles.setdefault(key, []).append(module.id)
    return roles


def parse_modules(output: str) -> dict[str, list[int]]:
    """Map role key -> module ids for the modules currently loaded."""
    return role_map(parse_module_blocks(output))


def forced_capture_modules(modules: Iterable[ModuleInfo], prefix: str) -> list[tuple[int, str, str]]:
    """(module id, source_name, device) for alsa-source modules we loaded."""
    found = []
    for module in modules:
        if module.name != ALSA_SOURCE:
            continue
        source_name = module.arg('source_name')
        device = module.arg('device')
        if source_name and device and source_name.startswith(prefix):
            found.append((module.id, source_name, device))
    return found


# ---------------------------------------------------------------------------
# Sink inputs
# ---------------------------------------------------------------------------

def parse_sink_input_owners(output: str) -> dict[int, int]:
    """Map sink-input index -> owning module id.

    PulseAudio reports `Owner Module: N`; pipewire-pulse often prints
    `Owner Module: n/a` and carries the id in the pulse.module.id property.
    """
    owners: dict[int, int] = {}
    for block in _split_blocks(output or '', 'Sink Input #'):
        index_match = re.match(r'Sink Input #(\d+)', block)
        if not index_match:
            continue
        owner = _field(block, 'Owner Module')
        if not owner or not owner.isdigit():
            owner = _property(block, 'pulse.module.id')
        if owner and owner.isdigit():
            owners[int(index_match.group(1))] = int(owner)
    return owners


def find_sink_input(output: str, module_id: int) -> int | None:
    for index, owner in parse_sink_input_owners(output).items():
        if owner == module_id:
            return index
    return None


# ---------------------------------------------------------------------------
# ALSA
# ---------------------------------------------------------------------------

_ARECORD_LINE = re.compile(
    r'^card (\d+): (\S+) \[([^\]]*)\], device (\d+):'
)


def parse_arecord(output: str) -> list[CaptureDevice]:
    """Parse `arecord -l` lines: `card <n>: <id> [<name>], device <m>: ...`."""
    devices: list[CaptureDevice] = []
    for line in (output or '').splitlines():
        match = _ARECORD_LINE.match(line.strip())
        if not match:
            continue
        devices.append(CaptureDevice(
            card=int(match.group(1)),
            device=int(match.group(4)),
            card_id=match.group(2),
            name=match.group(3).strip() or match.group(2),
        ))
    return devices
