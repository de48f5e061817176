#!/usr/bin/env python3
"""
Routes Panel - pick devices, build routes, tune member volumes and hearback.
"""

import gi
gi.require_version('Gtk', '4.0')
from gi.repository import Gtk, GLib, Pango

import logging
from typing import Callable

from audio_backend import AudioBackend
from models import Device, Route, RouteError, RouteKind

logger = logging.getLogger(__name__)


def _section_title(text: str) -> Gtk.Label:
    label = Gtk.Label(label=text)
    label.set_halign(Gtk.Align.START)
    label.add_css_class('title-4')
    return label


def _clear(box: Gtk.Box):
    child = box.get_first_child()
    while child is not None:
        box.remove(child)
        child = box.get_first_child()


class RoutesPanel(Gtk.Box):
    """Device selection, the route list, hearback and capture recovery."""

    def __init__(self, audio: AudioBackend, set_status: Callable[..., None]):
        super().__init__(orientation=Gtk.Orientation.VERTICAL, spacing=16)

        self.audio = audio
        self._set_status = set_status
        self._updating = False
        self._rebuild_pending = False
        self._hearback_offered = False
        self._output_checks: list[tuple] = []
        self._input_checks: list[tuple] = []

        self._setup_ui()
        self.audio.add_listener(self._on_audio_changed)
        self._rebuild()

    def detach(self):
        self.audio.remove_listener(self._on_audio_changed)

    def _setup_ui(self):
        # Device selection
        self.append(_section_title("Outputs"))
        self.outputs_box = Gtk.Box(orientation=Gtk.Orientation.VERTICAL, spacing=4)
        self.append(self.outputs_box)

        self.append(_section_title("Microphones"))
        self.inputs_box = Gtk.Box(orientation=Gtk.Orientation.VERTICAL, spacing=4)
        self.append(self.inputs_box)

        btn_box = Gtk.Box(orientation=Gtk.Orientation.HORIZONTAL, spacing=12)
        btn_box.set_halign(Gtk.Align.CENTER)

        self.apply_btn = Gtk.Button(label="Create Routes")
        self.apply_btn.add_css_class('suggested-action')
        self.apply_btn.set_tooltip_text("Combine the checked outputs and mix the checked microphones")
        self.apply_btn.connect('clicked', self._on_apply)
        btn_box.append(self.apply_btn)

        self.reset_btn = Gtk.Button(label="Remove All")
        self.reset_btn.add_css_class('destructive-action')
        self.reset_btn.set_tooltip_text("Unload every route and turn hearback off")
        self.reset_btn.connect('clicked', self._on_reset)
        btn_box.append(self.reset_btn)

        self.append(btn_box)
        self.append(Gtk.Separator())

        # Active routes
        self.append(_section_title("Active Routes"))
        self.routes_box = Gtk.Box(orientation=Gtk.Orientation.VERTICAL, spacing=12)
        self.append(self.routes_box)

        # Hearback
        self.hearback_box = Gtk.Box(orientation=Gtk.Orientation.VERTICAL, spacing=8)
        self.hearback_box.append(_section_title("Hearback"))

        hint = Gtk.Label(label="Hear the mixed microphone on the combined output")
        hint.add_css_class('dim-label')
        hint.set_halign(Gtk.Align.START)
        self.hearback_box.append(hint)

        row = Gtk.Box(orientation=Gtk.Orientation.HORIZONTAL, spacing=8)
        self.hearback_slider = Gtk.Scale.new_with_range(Gtk.Orientation.HORIZONTAL, 0, 100, 1)
        self.hearback_slider.set_draw_value(False)
        self.hearback_slider.set_hexpand(True)
        self.hearback_slider.add_mark(0, Gtk.PositionType.BOTTOM, "Off")
        self.hearback_slider.add_mark(100, Gtk.PositionType.BOTTOM, "100")
        self.hearback_slider.connect('value-changed', self._on_hearback_changed)
        row.append(self.hearback_slider)

        self.hearback_label = Gtk.Label(label="")
        self.hearback_label.set_width_chars(5)
        row.append(self.hearback_label)
        self.hearback_box.append(row)
        self.append(self.hearback_box)

        # Capture recovery
        self.recovery_box = Gtk.Box(orientation=Gtk.Orientation.VERTICAL, spacing=8)
        self.recovery_box.append(_section_title("Missing Microphones"))
        self.recovery_label = Gtk.Label(label="")
        self.recovery_label.set_halign(Gtk.Align.START)
        self.recovery_label.set_wrap(True)
        self.recovery_box.append(self.recovery_label)

        recover_btn = Gtk.Button(label="Load Missing Devices")
        recover_btn.set_halign(Gtk.Align.START)
        recover_btn.connect('clicked', self._on_recover)
        self.recovery_box.append(recover_btn)
        self.append(self.recovery_box)

    # --- Rebuilding from engine state ---

    def _on_audio_changed(self):
        """Engine listener. Rebuild once the current signal handler has returned."""
        if not self._rebuild_pending:
            self._rebuild_pending = True
            GLib.idle_add(self._rebuild)

    def _rebuild(self) -> bool:
        self._rebuild_pending = False
        self._output_checks = self._fill_devices(self.outputs_box, self.audio.sinks)
        self._input_checks = self._fill_devices(self.inputs_box, self.audio.sources)
        self._fill_routes()
        self._update_hearback()
        self._update_recovery()
        return GLib.SOURCE_REMOVE

    def _fill_devices(self, box: Gtk.Box, devices: list[Device]) -> list[tuple]:
        _clear(box)
        checks = []
        for device in devices:
            check = Gtk.CheckButton(label=device.description)
            check.set_tooltip_text(device.name)
            box.append(check)
            checks.append((check, device))
        if not devices:
            empty = Gtk.Label(label="None found")
            empty.add_css_class('dim-label')
            empty.set_halign(Gtk.Align.START)
            box.append(empty)
        return checks

    def _fill_routes(self):
        _clear(self.routes_box)
        routes = self.audio.routes
        if not routes:
            empty = Gtk.Label(label="No routes yet")
            empty.add_css_class('dim-label')
            empty.set_halign(Gtk.Align.START)
            self.routes_box.append(empty)
            return
        for route in routes:
            self.routes_box.append(self._route_card(route))

    def _route_card(self, route: Route) -> Gtk.Box:
        card = Gtk.Box(orientation=Gtk.Orientation.VERTICAL, spacing=6)
        card.add_css_class('card')

        header = Gtk.Box(orientation=Gtk.Orientation.HORIZONTAL, spacing=8)
        header.set_margin_start(12)
        header.set_margin_end(12)
        header.set_margin_top(8)

        icon = "audio-speakers-symbolic" if route.kind is RouteKind.OUTPUT else "audio-input-microphone-symbolic"
        header.append(Gtk.Image.new_from_icon_name(icon))

        title = Gtk.Label(label=route.description)
        title.set_halign(Gtk.Align.START)
        title.set_hexpand(True)
        title.add_css_class('heading')
        header.append(title)

        delete_btn = Gtk.Button(icon_name="user-trash-symbolic")
        delete_btn.add_css_class('flat')
        delete_btn.set_tooltip_text("Remove this route")
        delete_btn.connect('clicked', self._on_delete, route.id)
        header.append(delete_btn)
        card.append(header)

        notes = []
        if route.is_orphan:
            notes.append("Left over from an earlier session; remove it to clean up")
        if route.failed_members:
            notes.append("Could not attach: " + ", ".join(route.failed_members))
        if route.kind is RouteKind.INPUT and not route.is_orphan and route.exposed_source_name is None:
            notes.append("No virtual microphone exposed")
        for note in notes:
            label = Gtk.Label(label=f"⚠ {note}")
            label.add_css_class('warning')
            label.set_halign(Gtk.Align.START)
            label.set_margin_start(12)
            card.append(label)

        for member in self.audio.route_member_info(route.id):
            card.append(self._member_row(route.kind, member))

        spacer = Gtk.Box()
        spacer.set_size_request(1, 4)
        card.append(spacer)
        return card

    def _member_row(self, kind: RouteKind, member) -> Gtk.Box:
        row = Gtk.Box(orientation=Gtk.Orientation.HORIZONTAL, spacing=8)
        row.set_margin_start(12)
        row.set_margin_end(12)

        name = Gtk.Label(label=member.description)
        name.set_halign(Gtk.Align.START)
        name.set_width_chars(22)
        name.set_ellipsize(Pango.EllipsizeMode.END)
        row.append(name)

        slider = Gtk.Scale.new_with_range(Gtk.Orientation.HORIZONTAL, 0, 100, 1)
        slider.set_value(member.volume)
        slider.set_draw_value(True)
        slider.set_hexpand(True)
        slider.connect('value-changed', self._on_member_volume, kind, member.name)
        row.append(slider)
        return row

    def _update_hearback(self):
        available = self.audio.can_enable_hearback
        self.hearback_box.set_visible(available)

        # Only the first time both ends exist in this session. After a route
        # removal or reset the user turns it back on from the slider.
        if available and not self._hearback_offered:
            self._hearback_offered = True
            if not self.audio.hearback_enabled and self.audio.hearback_level > 0:
                if not self.audio.set_hearback_volume(self.audio.hearback_level):
                    self._set_status("Hearback could not be enabled", ok=False)

        self._updating = True
        self.hearback_slider.set_value(self.audio.hearback_volume)
        self._updating = False
        self._update_hearback_label()

    def _update_hearback_label(self):
        if self.audio.hearback_enabled:
            self.hearback_label.set_text(f"{self.audio.hearback_volume}%")
        else:
            self.hearback_label.set_text("Off")

    def _update_recovery(self):
        missing = self.audio.missing_capture_devices()
        self.recovery_box.set_visible(bool(missing))
        if missing:
            names = ", ".join(f"{d.name} ({d.hw})" for d in missing)
            self.recovery_label.set_text(f"Detected by ALSA but not by the audio server: {names}")

    # --- Handlers ---

    def _on_apply(self, button):
        outputs = [d for check, d in self._output_checks if check.get_active()]
        inputs = [d for check, d in self._input_checks if check.get_active()]
        if not outputs and not inputs:
            self._set_status("Select at least two outputs or two microphones", ok=False)
            return

        messages = []
        ok = True
        try:
            if outputs:
                messages.append(self._apply_outputs(outputs))
            if inputs:
                messages.append(self._apply_inputs(inputs))
        except RouteError as e:
            logger.warning("Route creation failed: %s", e)
            messages.append(str(e))
            ok = False
        self._set_status("; ".join(m for m in messages if m), ok=ok)

    def _apply_outputs(self, devices: list[Device]) -> str:
        descriptions = [d.description for d in devices]
        if self.audio.route_exists(RouteKind.OUTPUT, descriptions):
            return "That combined output already exists"
        route = self.audio.create_combined_output(
            self.audio.new_route_name(RouteKind.OUTPUT), [d.name for d in devices])
        self.audio.set_default_sink(route.anchor_name)
        return f"Combined {len(devices)} outputs"

    def _apply_inputs(self, devices: list[Device]) -> str:
        descriptions = [d.description for d in devices]
        if self.audio.route_exists(RouteKind.INPUT, descriptions):
            return "That mixed microphone already exists"
        route = self.audio.create_mixed_input(
            self.audio.new_route_name(RouteKind.INPUT), [d.name for d in devices])
        if route.exposed_source_name:
            self.audio.set_default_source(route.exposed_source_name)
        if route.is_degraded:
            return "Mixed input created without a virtual microphone"
        if route.failed_members:
            return f"Mixed input created without: {', '.join(route.failed_members)}"
        return f"Mixed {len(route.member_names)} microphones"

    def _on_delete(self, button, route_id: str):
        if self.audio.remove_route(route_id):
            self._set_status("Route removed")

    def _on_reset(self, button):
        self.audio.reset_to_defaults()
        self._set_status("All routes removed")

    def _on_member_volume(self, slider, kind: RouteKind, name: str):
        value = int(slider.get_value())
        if kind is RouteKind.OUTPUT:
            self.audio.set_device_volume(name, value)
        else:
            self.audio.set_source_volume(name, value)

    def _on_hearback_changed(self, slider):
        if self._updating:
            return
        if not self.audio.set_hearback_volume(int(slider.get_value())):
            self._set_status("Hearback volume could not be applied", ok=False)
        self._update_hearback_label()

    def _on_recover(self, button):
        recovered = self.audio.recover_missing_sources()
        if recovered:
            self._set_status(f"Loaded {recovered} capture device(s)")
        else:
            self._set_status("No capture devices could be loaded", ok=False)
