#!/usr/bin/env python3
"""
Hearback - route the mixed microphone back into the combined output so the
user can hear their own voice.

Disabled means volume 0 and no loopback module; enabled means volume 1..100
and a loopback from the input route's mixer monitor into the output sink.
Gain is applied to the loopback's sink-input, not to the module itself.
"""

import logging
from typing import Iterable

from models import LOOPBACK, MONITOR_SUFFIX, HearbackState, Route, clamp_percent, percent_to_linear
from pactl import CommandRunner, load_module, pactl, unload_module
from parsing import ModuleInfo, find_sink_input
from reconcile import is_hearback_loopback

logger = logging.getLogger(__name__)


class HearbackController:
    """Owns the single process-wide hearback loopback."""

    LOOPBACK_ARGS = (
        'latency_msec=1',
        'source_dont_move=true',
        'sink_dont_move=true',
    )

    def __init__(self, runner: CommandRunner, level: int = 0):
        self._run = runner
        # Last level the user asked for; survives the loopback going away
        self.level = clamp_percent(level)
        self.state = HearbackState()

    @property
    def enabled(self) -> bool:
        return self.state.enabled

    @property
    def volume(self) -> int:
        """Effective gain: 0 whenever no loopback exists."""
        return self.state.volume_percent

    @property
    def module_id(self) -> int | None:
        return self.state.loopback_module_id

    def depends_on(self, route: Route) -> bool:
        """True if the active loopback is attached to an endpoint of `route`."""
        if not self.enabled:
            return False
        if route.null_sink_name and self.state.source_name == route.null_sink_name + MONITOR_SUFFIX:
            return True
        return self.state.sink_name == route.anchor_name

    def set_volume(self, percent: float, input_route: Route | None,
                   output_route: Route | None) -> bool:
        """Set hearback gain; 0 disables. Returns False if the gain was not applied."""
        percent = clamp_percent(percent)
        self.level = percent

        if percent == 0:
            self.disable()
            return True

        if not self.enabled:
            if input_route is None or output_route is None:
                logger.info("Hearback needs a mixed input and a combined output")
                return False
            if not self._enable(input_route, output_route):
                return False

        self.state.volume_percent = percent
        return self._apply_gain()

    def disable(self):
        """Unload the loopback if present and forget its sink-input.

        The requested level is kept so hearback can come back at it later.
        """
        if self.state.loopback_module_id is not None:
            unload_module(self._run, self.state.loopback_module_id)
            logger.info("Hearback disabled (module %s)", self.state.loopback_module_id)
        self._forget()

    def adopt(self, modules: Iterable[ModuleInfo], input_route: Route | None,
              output_route: Route | None) -> bool:
        """Sync with the live module list.

        A tracked loopback that is no longer loaded is forgotten. A loopback
        left by a previous session between exactly the current input and
        output route is taken over; anything else is left to the orphan
        sweeper.
        """
        modules = list(modules)
        if self.enabled and all(m.id != self.state.loopback_module_id for m in modules):
            logger.warning("Hearback loopback (module %s) disappeared",
                           self.state.loopback_module_id)
            self._forget()

        if self.enabled or input_route is None or output_route is None:
            return False
        source = input_route.null_sink_name + MONITOR_SUFFIX
        for module in modules:
            if (is_hearback_loopback(module) and module.arg('source') == source
                    and module.arg('sink') == output_route.anchor_name):
                if self.level == 0:
                    # Turned off since that session
                    unload_module(self._run, module.id)
                    return False
                self.state.loopback_module_id = module.id
                self.state.sink_input_index = None
                self.state.volume_percent = self.level
                self.state.source_name = source
                self.state.sink_name = output_route.anchor_name
                logger.info("Adopted existing hearback loopback (module %s)", module.id)
                return True
        return False

    # --- Internal ---

    def _forget(self):
        self.state.loopback_module_id = None
        self.state.sink_input_index = None
        self.state.volume_percent = 0
        self.state.source_name = None
        self.state.sink_name = None

    def _enable(self, input_route: Route, output_route: Route) -> bool:
        source = input_route.null_sink_name + MONITOR_SUFFIX
        sink = output_route.anchor_name
        module_id = load_module(
            self._run, LOOPBACK,
            f'source={source}',
            f'sink={sink}',
            *self.LOOPBACK_ARGS
        )
        if module_id is None:
            return False
        self.state.loopback_module_id = module_id
        self.state.sink_input_index = None
        self.state.source_name = source
        self.state.sink_name = sink
        logger.info("Hearback enabled: %s -> %s (module %s)", source, sink, module_id)
        return True

    def _resolve_sink_input(self) -> int | None:
        if self.state.sink_input_index is not None:
            return self.state.sink_input_index
        output = pactl(self._run, 'list', 'sink-inputs')
        index = find_sink_input(output, self.state.loopback_module_id)
        self.state.sink_input_index = index
        return index

    def _apply_gain(self) -> bool:
        index = self._resolve_sink_input()
        if index is None:
            logger.warning("No sink-input found for hearback module %s",
                           self.state.loopback_module_id)
            return False
        result = self._run(
            'pactl', 'set-sink-input-volume', str(index),
            str(percent_to_linear(self.state.volume_percent))
        )
        if not result.succeeded:
            # The cached stream is probably gone; look it up again next time
            self.state.sink_input_index = None
        return result.succeeded
