#!/usr/bin/env python3
"""
Startup/refresh reconciliation and the orphan sweeper.

Nothing the engine creates is written down anywhere except in the server's
own module graph, so after a restart the route registry is rebuilt from the
live sinks and modules using the lichen_* naming conventions.
"""

import logging
from typing import Callable, Iterable

from models import (
    COMBINE_SINK, INPUT_PREFIX, LOOPBACK, MIC_SUFFIX, MONITOR_SUFFIX, NULL_SUFFIX,
    OUTPUT_PREFIX, REMAP_SOURCE, Device, Route, RouteKind, mic_source_name,
)
from parsing import ModuleInfo, loopback_key, remap_key, role_map

logger = logging.getLogger(__name__)

DEFAULT_INPUT_DESCRIPTION = "Mixed Input"
ORPHAN_INPUT_DESCRIPTION = "Orphaned Mixed Input"


def _is_tracked(routes: Iterable[Route], anchor_name: str) -> bool:
    return any(r.anchor_name == anchor_name for r in routes)


def _unique(ids: Iterable[int]) -> list[int]:
    seen: list[int] = []
    for module_id in ids:
        if module_id not in seen:
            seen.append(module_id)
    return seen


def _combine_slaves(modules: Iterable[ModuleInfo], sink_name: str) -> list[str]:
    for module in modules:
        if module.name == COMBINE_SINK and module.arg('sink_name') == sink_name:
            slaves = module.arg('slaves')
            return slaves.split(',') if slaves else []
    return []


def _loopback_sources(modules: Iterable[ModuleInfo], sink_name: str) -> list[str]:
    return [m.arg('source') for m in modules
            if m.name == LOOPBACK and m.arg('sink') == sink_name and m.arg('source')]


def reconcile(routes: list[Route],
              sinks: list[Device],
              sources: list[Device],
              modules: list[ModuleInfo],
              new_id: Callable[[RouteKind], str]) -> list[Route]:
    """Adopt lichen pipelines that exist on the server but not in `routes`.

    `routes` is extended in place; the synthesized routes are also returned.
    A sink or module is claimed by at most one route and anchors that are
    already tracked are skipped, so repeated calls add nothing new.
    """
    roles: dict[str, list[int]] = role_map(modules)
    sources_by_name = {s.name: s for s in sources}
    adopted: list[Route] = []

    # Combined outputs
    for sink in sinks:
        if not sink.name.startswith(OUTPUT_PREFIX) or _is_tracked(routes, sink.name):
            continue
        route = Route(
            id=new_id(RouteKind.OUTPUT),
            kind=RouteKind.OUTPUT,
            anchor_name=sink.name,
            description=sink.description,
            module_ids=_unique(roles.get(sink.name, [])),
            member_names=_combine_slaves(modules, sink.name),
        )
        routes.append(route)
        adopted.append(route)

    # Mixed inputs, found through their null-mixer sink
    for sink in sinks:
        if not (sink.name.startswith(INPUT_PREFIX) and sink.name.endswith(NULL_SUFFIX)):
            continue
        base = sink.name[:-len(NULL_SUFFIX)]
        if _is_tracked(routes, base):
            continue
        mic = mic_source_name(base)
        remap_ids = roles.get(remap_key(mic), [])
        live_mic = sources_by_name.get(mic)
        route = Route(
            id=new_id(RouteKind.INPUT),
            kind=RouteKind.INPUT,
            anchor_name=base,
            description=live_mic.description if live_mic else DEFAULT_INPUT_DESCRIPTION,
            module_ids=_unique(roles.get(sink.name, [])
                               + roles.get(loopback_key(sink.name), [])
                               + remap_ids),
            exposed_source_name=mic if (remap_ids or live_mic) else None,
            member_names=_loopback_sources(modules, sink.name),
        )
        routes.append(route)
        adopted.append(route)

    # Remap sources whose null-mixer is gone
    for module in modules:
        if module.name != REMAP_SOURCE:
            continue
        source_name = module.arg('source_name') or ''
        if not (source_name.startswith(INPUT_PREFIX) and source_name.endswith(MIC_SUFFIX)):
            continue
        base = source_name[:-len(MIC_SUFFIX)]
        if _is_tracked(routes, base):
            continue
        logger.warning("Remap source %s has no mixer; keeping it as an orphan route", source_name)
        route = Route(
            id=new_id(RouteKind.INPUT),
            kind=RouteKind.INPUT,
            anchor_name=base,
            description=ORPHAN_INPUT_DESCRIPTION,
            module_ids=_unique(roles.get(remap_key(source_name), [])),
            exposed_source_name=source_name,
            is_orphan=True,
        )
        routes.append(route)
        adopted.append(route)

    for route in adopted:
        logger.info("Recovered %s route %s (modules %s)",
                    route.kind.value, route.anchor_name, route.module_ids)
    return adopted


# ---------------------------------------------------------------------------
# Orphan sweeper
# ---------------------------------------------------------------------------

def is_hearback_loopback(module: ModuleInfo) -> bool:
    """Loopback from an internal input mixer monitor into an internal output sink."""
    if module.name != LOOPBACK:
        return False
    source = module.arg('source') or ''
    sink = module.arg('sink') or ''
    return (source.startswith(INPUT_PREFIX)
            and source.endswith(NULL_SUFFIX + MONITOR_SUFFIX)
            and sink.startswith(OUTPUT_PREFIX))


def stale_hearback_loopbacks(modules: Iterable[ModuleInfo],
                             sink_names: set[str],
                             source_names: set[str],
                             keep: int | None = None) -> list[int]:
    """Ids of hearback-style loopbacks with a missing source or sink endpoint.

    `sink_names`/`source_names` must be raw listings (monitors included).
    The loopback currently owned by the hearback controller is never returned.
    """
    stale: list[int] = []
    for module in modules:
        if not is_hearback_loopback(module) or module.id == keep:
            continue
        if module.arg('source') not in source_names or module.arg('sink') not in sink_names:
            stale.append(module.id)
    return stale
