#!/usr/bin/env python3
"""
Audio Backend - virtual audio routing engine for Lichen.

Builds compound devices on a PulseAudio/PipeWire server through pactl:

Combined output (one module):
    [App Audio] -> [lichen_output_N (module-combine-sink)]
                       |-> Headphones 1
                       |-> Headphones 2 ...

Mixed input (three stages, not atomic):
    Mic 1 -> loopback -+
    Mic 2 -> loopback -+-> [lichen_input_N_null (module-null-sink)]
                                 |
                       .monitor -> [lichen_input_N_mic (module-remap-source)] -> apps

The server has no notion of "routes", so the registry here is rebuilt
from the live module graph on every refresh (see reconcile.py).
"""

import itertools
import logging
import time
from typing import Callable, Sequence

from alsa_recovery import AlsaRecovery
from config import Config
from hearback import HearbackController
from models import (
    COMBINE_SINK, INPUT_PREFIX, LOOPBACK, MIC_SUFFIX, MONITOR_SUFFIX, NULL_SINK, NULL_SUFFIX,
    OUTPUT_PREFIX, PREFIX, REMAP_SOURCE, CaptureDevice, Device, DeviceKind,
    ForcedSourceRecord, InsufficientMembersError, LoadFailedError, MemberInfo, Route,
    RouteKind, clamp_percent, description_property, mic_source_name, null_sink_name,
    percent_to_linear,
)
from pactl import CommandRunner, load_module, pactl, run_cmd, unload_module
from parsing import (
    ModuleInfo, loopback_key, parse_devices, parse_module_blocks, parse_short_names,
    parse_sources, remap_key, role_map,
)
from reconcile import is_hearback_loopback, reconcile, stale_hearback_loopbacks

logger = logging.getLogger(__name__)

DEFAULT_OUTPUT_DESCRIPTION = "LichenMixedOutput"
DEFAULT_INPUT_DESCRIPTION = "LichenMixedInput"
INTERNAL_SINK_PROPERTIES = (
    "sink_properties='device.description=\"LichenInternal\" device.class=\"filter\"'"
)

_route_counter = itertools.count(1)


def _stamp() -> int:
    return int(time.time() * 1000)


class AudioBackend:
    """
    Route orchestration engine.

    Owns the device inventory, the route registry, the hearback loopback and
    the forced ALSA sources. Every mutating call ends with refresh(), which
    re-reads the server, reconciles, sweeps orphans and notifies listeners.
    """

    # Member loopbacks feed a mixer that nobody listens to directly
    MEMBER_LOOPBACK_ARGS = ('latency_msec=1',)

    def __init__(self, runner: CommandRunner = run_cmd, settings: Config | None = None,
                 auto_recover: bool = True):
        self._run = runner
        self._settings = settings if settings is not None else Config()
        self._sinks: list[Device] = []
        self._sources: list[Device] = []
        self._routes: list[Route] = []
        self._listeners: list[Callable[[], None]] = []
        self._hearback = HearbackController(runner, self._settings.hearback_volume)
        self._alsa = AlsaRecovery(runner)

        self.refresh()
        if auto_recover and self._alsa.recover_missing():
            self.refresh()

    # --- Listeners ---

    def add_listener(self, callback: Callable[[], None]):
        self._listeners.append(callback)

    def remove_listener(self, callback: Callable[[], None]):
        self._listeners = [cb for cb in self._listeners if cb is not callback]

    def _notify_listeners(self):
        for callback in list(self._listeners):
            callback()

    # --- Refresh cycle ---

    def refresh_sinks(self) -> list[Device]:
        self._sinks = parse_devices(pactl(self._run, 'list', 'sinks'), DeviceKind.SINK)
        return self._sinks

    def refresh_sources(self) -> list[Device]:
        self._sources = parse_sources(pactl(self._run, 'list', 'sources'))
        return self._sources

    def refresh(self):
        """Re-read devices and modules, reconcile, sweep, then notify listeners."""
        self.refresh_sinks()
        self.refresh_sources()
        modules = self._list_modules()

        reconcile(self._routes, self._sinks, self._sources, modules,
                  lambda kind: self._new_route_id(kind, restored=True))
        self._alsa.sync(modules)
        self._hearback.adopt(modules, *self._hearback_endpoints())
        self._sweep_orphans(modules)

        self._notify_listeners()

    def _list_modules(self) -> list[ModuleInfo]:
        return parse_module_blocks(pactl(self._run, 'list', 'modules'))

    def _sweep_orphans(self, modules: list[ModuleInfo]):
        """Unload hearback loopbacks from a previous session whose endpoints vanished."""
        keep = self._hearback.module_id
        if not any(is_hearback_loopback(m) and m.id != keep for m in modules):
            return
        sink_names = parse_short_names(pactl(self._run, 'list', 'sinks', 'short'))
        source_names = parse_short_names(pactl(self._run, 'list', 'sources', 'short'))
        for module_id in stale_hearback_loopbacks(modules, sink_names, source_names, keep=keep):
            logger.warning("Removing stale hearback loopback (module %s)", module_id)
            unload_module(self._run, module_id)

    # --- Device views ---

    @property
    def all_sinks(self) -> list[Device]:
        return list(self._sinks)

    @property
    def all_sources(self) -> list[Device]:
        return list(self._sources)

    @property
    def sinks(self) -> list[Device]:
        """Output devices a user may combine: nothing lichen owns."""
        anchors = {r.anchor_name for r in self._routes if r.kind is RouteKind.OUTPUT}
        return [s for s in self._sinks
                if s.name not in anchors and not s.name.startswith(PREFIX)]

    @property
    def sources(self) -> list[Device]:
        """Microphones a user may mix: no lichen monitors or virtual mics."""
        exposed = set(self.mixed_input_sources)
        visible = []
        for source in self._sources:
            name = source.name
            if name.startswith(OUTPUT_PREFIX) and name.endswith(MONITOR_SUFFIX):
                continue
            if name.startswith(INPUT_PREFIX) and name.endswith(NULL_SUFFIX + MONITOR_SUFFIX):
                continue
            if name in exposed or (name.startswith(INPUT_PREFIX) and name.endswith(MIC_SUFFIX)):
                continue
            visible.append(source)
        return visible

    @property
    def mixed_input_sources(self) -> list[str]:
        """Names of the virtual microphones exposed by input routes."""
        return [r.exposed_source_name for r in self._routes
                if r.kind is RouteKind.INPUT and r.exposed_source_name]

    def describe_sinks(self, names: Sequence[str]) -> list[str]:
        by_name = {s.name: s.description for s in self._sinks}
        return [by_name.get(n, n) for n in names]

    def describe_sources(self, names: Sequence[str]) -> list[str]:
        by_name = {s.name: s.description for s in self._sources}
        return [by_name.get(n, n) for n in names]

    # --- Route registry ---

    @property
    def routes(self) -> list[Route]:
        return list(self._routes)

    @property
    def has_active_routes(self) -> bool:
        return bool(self._routes)

    def get_route(self, route_id: str) -> Route | None:
        for route in self._routes:
            if route.id == route_id:
                return route
        return None

    def route_exists(self, kind: RouteKind, member_descriptions: Sequence[str]) -> bool:
        """True if a live route of `kind` has exactly these members, in any order."""
        wanted = sorted(member_descriptions)
        for route in self._routes:
            if route.kind is not kind or route.is_orphan or not route.member_descriptions:
                continue
            if sorted(route.member_descriptions) == wanted:
                return True
        return False

    def _new_route_id(self, kind: RouteKind, restored: bool = False) -> str:
        middle = '_restored' if restored else ''
        return f'{kind.value}{middle}_{_stamp()}_{next(_route_counter)}'

    def new_route_name(self, kind: RouteKind) -> str:
        """A fresh anchor name that no route or live sink uses yet."""
        prefix = OUTPUT_PREFIX if kind is RouteKind.OUTPUT else INPUT_PREFIX
        taken = {r.anchor_name for r in self._routes} | {s.name for s in self._sinks}
        stamp = _stamp()
        while True:
            name = f'{prefix}{stamp}'
            if name not in taken and null_sink_name(name) not in taken:
                return name
            stamp += 1

    # --- Route creation ---

    def create_combined_output(self, target_name: str, member_sinks: Sequence[str],
                               description: str | None = None) -> Route:
        """Combine two or more sinks into one virtual output.

        Raises InsufficientMembersError or LoadFailedError; nothing is
        registered in either case.
        """
        member_sinks = list(member_sinks)
        if len(member_sinks) < 2:
            raise InsufficientMembersError("Need at least 2 outputs to combine")

        module_id = load_module(
            self._run, COMBINE_SINK,
            f'sink_name={target_name}',
            f'slaves={",".join(member_sinks)}',
            description_property('sink_properties', description or DEFAULT_OUTPUT_DESCRIPTION)
        )
        if module_id is None:
            raise LoadFailedError(f"Failed to create combined output {target_name}")

        route = Route(
            id=self._new_route_id(RouteKind.OUTPUT),
            kind=RouteKind.OUTPUT,
            anchor_name=target_name,
            description=description or f"Combined: {len(member_sinks)} outputs",
            module_ids=[module_id],
            member_descriptions=self.describe_sinks(member_sinks),
            member_names=member_sinks,
        )
        self._routes.append(route)
        logger.info("Created combined output %s (module %s)", target_name, module_id)

        self._apply_stored_volumes(member_sinks, 'set-sink-volume')
        self.refresh()
        return route

    def create_mixed_input(self, target_name: str, member_sources: Sequence[str],
                           description: str | None = None) -> Route:
        """Mix two or more microphones into one virtual microphone.

        A failed null-mixer aborts with LoadFailedError. Failed member
        loopbacks are skipped and listed in Route.failed_members; a failed
        remap leaves the route without exposed_source_name.
        """
        member_sources = list(member_sources)
        if len(member_sources) < 2:
            raise InsufficientMembersError("Need at least 2 inputs to mix")

        mixer = null_sink_name(target_name)
        mic = mic_source_name(target_name)

        null_id = load_module(self._run, NULL_SINK, f'sink_name={mixer}', INTERNAL_SINK_PROPERTIES)
        if null_id is None:
            raise LoadFailedError(f"Failed to create mixer {mixer}")
        module_ids = [null_id]

        attached: list[str] = []
        failed: list[str] = []
        for source in member_sources:
            loopback_id = load_module(
                self._run, LOOPBACK,
                f'source={source}',
                f'sink={mixer}',
                *self.MEMBER_LOOPBACK_ARGS
            )
            if loopback_id is None:
                failed.append(source)
                continue
            module_ids.append(loopback_id)
            attached.append(source)
        if failed:
            logger.warning("Mixed input %s created without: %s", target_name, ", ".join(failed))

        remap_id = load_module(
            self._run, REMAP_SOURCE,
            f'source_name={mic}',
            f'master={mixer}{MONITOR_SUFFIX}',
            description_property('source_properties', description or DEFAULT_INPUT_DESCRIPTION)
        )
        if remap_id is not None:
            module_ids.append(remap_id)
        else:
            logger.warning("Mixed input %s has no virtual microphone", target_name)

        route = Route(
            id=self._new_route_id(RouteKind.INPUT),
            kind=RouteKind.INPUT,
            anchor_name=target_name,
            description=description or f"Mixed: {len(member_sources)} inputs",
            module_ids=module_ids,
            exposed_source_name=mic if remap_id is not None else None,
            member_descriptions=self.describe_sources(member_sources),
            member_names=attached,
            failed_members=failed,
        )
        self._routes.append(route)
        logger.info("Created mixed input %s (modules %s)", target_name, module_ids)

        self._apply_stored_volumes(attached, 'set-source-volume')
        self.refresh()
        return route

    # --- Route removal ---

    def remove_route(self, route_id: str) -> bool:
        """Tear a route down. Unknown ids are a no-op returning False."""
        route = self.get_route(route_id)
        if route is None:
            return False

        if self._hearback.depends_on(route):
            self._hearback.disable()

        self._teardown(route)
        self._routes = [r for r in self._routes if r.id != route_id]
        logger.info("Removed %s route %s", route.kind.value, route.anchor_name)
        self.refresh()
        return True

    def _teardown(self, route: Route):
        if route.module_ids:
            # Dependents were loaded last, so unload in reverse
            module_ids = list(reversed(route.module_ids))
        else:
            module_ids = self._derive_module_ids(route)
        for module_id in module_ids:
            unload_module(self._run, module_id)

    def _derive_module_ids(self, route: Route) -> list[int]:
        """Module ids for a route from a fresh module listing, leaves first."""
        roles = role_map(self._list_modules())
        if route.kind is RouteKind.OUTPUT:
            return list(roles.get(route.anchor_name, []))
        mixer = null_sink_name(route.anchor_name)
        return (roles.get(loopback_key(mixer), [])
                + roles.get(remap_key(mic_source_name(route.anchor_name)), [])
                + roles.get(mixer, []))

    def reset_to_defaults(self):
        """Disable hearback, unload every route's modules and clear the registry."""
        self._hearback.disable()
        for route in self._routes:
            self._teardown(route)
        self._routes = []
        logger.info("Reset: all routes removed")
        self.refresh()

    # --- Hearback ---

    def _hearback_endpoints(self) -> tuple[Route | None, Route | None]:
        """First mixed input and first combined output, in registry order."""
        input_route = next((r for r in self._routes
                            if r.kind is RouteKind.INPUT and not r.is_orphan), None)
        output_route = next((r for r in self._routes if r.kind is RouteKind.OUTPUT), None)
        return input_route, output_route

    @property
    def can_enable_hearback(self) -> bool:
        input_route, output_route = self._hearback_endpoints()
        return input_route is not None and output_route is not None

    @property
    def hearback_enabled(self) -> bool:
        return self._hearback.enabled

    @property
    def hearback_volume(self) -> int:
        """Current hearback gain; 0 while disabled."""
        return self._hearback.volume

    @property
    def hearback_level(self) -> int:
        """Level hearback comes back at; kept across route removal and reset."""
        return self._hearback.level

    @property
    def hearback_module_id(self) -> int | None:
        return self._hearback.module_id

    def set_hearback_volume(self, percent: float) -> bool:
        """Set hearback volume (0 disables). Persists the level."""
        ok = self._hearback.set_volume(percent, *self._hearback_endpoints())
        self._settings.hearback_volume = self._hearback.level
        return ok

    # --- Volumes ---

    def device_volume(self, name: str) -> int:
        return self._settings.get_device_volume(name)

    def set_device_volume(self, sink_name: str, percent: float) -> bool:
        percent = clamp_percent(percent)
        self._settings.set_device_volume(sink_name, percent)
        return self._run('pactl', 'set-sink-volume', sink_name,
                         str(percent_to_linear(percent))).succeeded

    def set_source_volume(self, source_name: str, percent: float) -> bool:
        percent = clamp_percent(percent)
        self._settings.set_device_volume(source_name, percent)
        return self._run('pactl', 'set-source-volume', source_name,
                         str(percent_to_linear(percent))).succeeded

    def _apply_stored_volumes(self, names: Sequence[str], command: str):
        stored = self._settings.device_volumes
        for name in names:
            if name in stored:
                self._run('pactl', command, name, str(percent_to_linear(self.device_volume(name))))

    def route_member_info(self, route_id: str) -> list[MemberInfo]:
        """Member devices of a route with their stored volumes."""
        route = self.get_route(route_id)
        if route is None:
            return []
        devices = self._sinks if route.kind is RouteKind.OUTPUT else self._sources
        by_name = {d.name: d.description for d in devices}
        return [MemberInfo(name=name, description=by_name.get(name, name),
                           volume=self.device_volume(name))
                for name in route.member_names]

    # --- Defaults and streams ---

    def set_default_sink(self, sink_name: str) -> bool:
        return self._run('pactl', 'set-default-sink', sink_name).succeeded

    def set_default_source(self, source_name: str) -> bool:
        return self._run('pactl', 'set-default-source', source_name).succeeded

    def move_sink_input(self, index: int, sink_name: str) -> bool:
        return self._run('pactl', 'move-sink-input', str(index), sink_name).succeeded

    # --- ALSA recovery ---

    @property
    def forced_sources(self) -> list[ForcedSourceRecord]:
        return self._alsa.forced_sources

    def missing_capture_devices(self) -> list[CaptureDevice]:
        return self._alsa.find_missing_capture_devices()

    def force_load_device(self, device: CaptureDevice) -> ForcedSourceRecord | None:
        record = self._alsa.force_load_device(device)
        self.refresh()
        return record

    def recover_missing_sources(self) -> int:
        recovered = self._alsa.recover_missing()
        self.refresh()
        return recovered
