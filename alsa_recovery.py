#!/usr/bin/env python3
"""
ALSA capture recovery.

Some USB capture devices (typically ones relying on jack detection) are
enumerated by the ALSA driver but never turned into a server source. This
module finds them by comparing `arecord -l` against the alsa.card property
of the server's sources, and force-loads module-alsa-source for them.
"""

import logging
from typing import Iterable

from models import (
    ALSA_SOURCE, CAPTURE_PREFIX, CaptureDevice, ForcedSourceRecord, description_property,
)
from pactl import CommandRunner, load_module, pactl
from parsing import ModuleInfo, forced_capture_modules, parse_arecord, parse_source_cards

logger = logging.getLogger(__name__)


class AlsaRecovery:
    """Tracks capture sources the engine force-loaded."""

    def __init__(self, runner: CommandRunner):
        self._run = runner
        self._forced: dict[str, ForcedSourceRecord] = {}

    @property
    def forced_sources(self) -> list[ForcedSourceRecord]:
        return list(self._forced.values())

    def capture_devices(self) -> list[CaptureDevice]:
        result = self._run('arecord', '-l')
        if not result.succeeded:
            return []
        return parse_arecord(result.stdout)

    def find_missing_capture_devices(self) -> list[CaptureDevice]:
        """Driver-level capture devices whose card has no server source."""
        present = parse_source_cards(pactl(self._run, 'list', 'sources'))
        present.update(r.card for r in self._forced.values())
        missing: list[CaptureDevice] = []
        seen_cards = set()
        for device in self.capture_devices():
            if device.card in present or device.card in seen_cards:
                continue
            seen_cards.add(device.card)
            missing.append(device)
        return missing

    def force_load_device(self, device: CaptureDevice) -> ForcedSourceRecord | None:
        """Load module-alsa-source for a device, with timer scheduling off."""
        module_id = load_module(
            self._run, ALSA_SOURCE,
            f'device={device.hw}',
            f'source_name={device.source_name}',
            'tsched=0',
            description_property('source_properties', device.name)
        )
        if module_id is None:
            logger.warning("Could not force-load %s (%s)", device.hw, device.name)
            return None
        record = ForcedSourceRecord(
            module_id=module_id,
            card=device.card,
            device=device.device,
            exposed_source_name=device.source_name,
        )
        self._forced[record.exposed_source_name] = record
        logger.info("Force-loaded %s as %s (module %s)", device.hw, device.source_name, module_id)
        return record

    def recover_missing(self) -> int:
        """Force-load every missing device; returns how many came up."""
        recovered = 0
        for device in self.find_missing_capture_devices():
            if self.force_load_device(device):
                recovered += 1
        return recovered

    def sync(self, modules: Iterable[ModuleInfo]):
        """Rebuild records from the live module list.

        Records whose module is gone are dropped; modules loaded by a
        previous session are picked up again.
        """
        live: dict[str, ForcedSourceRecord] = {}
        for module_id, source_name, device in forced_capture_modules(modules, CAPTURE_PREFIX):
            card, _, dev = device.partition(':')[2].partition(',')
            if not card.isdigit() or not dev.isdigit():
                continue
            live[source_name] = ForcedSourceRecord(
                module_id=module_id,
                card=int(card),
                device=int(dev),
                exposed_source_name=source_name,
            )
        for name in set(self._forced) - set(live):
            logger.info("Forced source %s is no longer loaded", name)
        self._forced = live
