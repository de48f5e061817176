#!/usr/bin/env python3
"""
Main Window - header bar, routes panel and status line.
"""

import gi
gi.require_version('Gtk', '4.0')
gi.require_version('Adw', '1')
from gi.repository import Gtk, Adw

from audio_backend import AudioBackend
from ui.routes_panel import RoutesPanel


class MainWindow(Adw.ApplicationWindow):
    """Main application window."""

    def __init__(self, application, audio: AudioBackend):
        super().__init__(application=application)

        self.audio = audio

        self.set_title("Lichen")
        self.set_default_size(720, 680)
        self.set_size_request(520, 480)

        self._setup_ui()

    def _setup_ui(self):
        main_box = Gtk.Box(orientation=Gtk.Orientation.VERTICAL, spacing=0)

        header = Adw.HeaderBar()
        header.set_show_end_title_buttons(True)
        header.set_title_widget(Gtk.Label(label="Lichen", css_classes=['title']))

        about_btn = Gtk.Button(icon_name="help-about-symbolic")
        about_btn.set_tooltip_text("About")
        about_btn.set_action_name("app.about")
        header.pack_end(about_btn)

        refresh_btn = Gtk.Button(icon_name="view-refresh-symbolic")
        refresh_btn.set_tooltip_text("Re-read devices and routes (Ctrl+R)")
        refresh_btn.set_action_name("app.refresh")
        header.pack_end(refresh_btn)

        main_box.append(header)

        scroll = Gtk.ScrolledWindow()
        scroll.set_policy(Gtk.PolicyType.NEVER, Gtk.PolicyType.AUTOMATIC)
        scroll.set_vexpand(True)

        self.routes_panel = RoutesPanel(self.audio, self.set_status)
        self.routes_panel.set_margin_start(16)
        self.routes_panel.set_margin_end(16)
        self.routes_panel.set_margin_top(12)
        self.routes_panel.set_margin_bottom(16)
        scroll.set_child(self.routes_panel)
        main_box.append(scroll)

        # Status bar
        status_bar = Gtk.Box(orientation=Gtk.Orientation.HORIZONTAL, spacing=8)
        status_bar.set_margin_start(16)
        status_bar.set_margin_end(16)
        status_bar.set_margin_top(8)
        status_bar.set_margin_bottom(12)

        self.status_label = Gtk.Label(label="Ready")
        self.status_label.add_css_class('dim-label')
        self.status_label.set_halign(Gtk.Align.START)
        self.status_label.set_hexpand(True)
        self.status_label.set_wrap(True)
        status_bar.append(self.status_label)

        main_box.append(status_bar)

        self.set_content(main_box)
        self.connect('close-request', self._on_close)

    def set_status(self, message: str, ok: bool = True):
        self.status_label.set_text(f"✓ {message}" if ok else f"⚠ {message}")

    def _on_close(self, window):
        self.routes_panel.detach()
        return False
