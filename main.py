#!/usr/bin/env python3
"""
Lichen - Combined outputs and mixed microphones for Linux

A GTK4 application that builds virtual audio devices on top of
PulseAudio or PipeWire's pulse layer:

- Combine several speakers/headphones into one output
- Mix several microphones into one virtual microphone
- Hearback: listen to the mixed microphone on the combined output
- Re-adopts pipelines left behind by a previous session
- Force-loads capture cards the server failed to expose

Requirements:
- Python 3.10+
- GTK4 and libadwaita
- PulseAudio or PipeWire (with pactl), alsa-utils for arecord

Install dependencies:
    sudo apt install python3-gi gir1.2-gtk-4.0 gir1.2-adw-1 pulseaudio-utils alsa-utils

Run:
    python3 main.py

Set LICHEN_LOG_LEVEL=DEBUG to trace every pactl call.
"""

import gi
gi.require_version('Gtk', '4.0')
gi.require_version('Adw', '1')
from gi.repository import Gtk, Adw, GLib, Gio

import logging
import os
import signal
import sys
from pathlib import Path

# Ensure we can import our modules
sys.path.insert(0, str(Path(__file__).parent))

from audio_backend import AudioBackend
from config import Config
from pactl import run_cmd
from ui.main_window import MainWindow

logger = logging.getLogger(__name__)


class LichenApp(Adw.Application):
    """Main application class."""

    def __init__(self, settings: Config):
        super().__init__(
            application_id="io.github.lichen",
            flags=Gio.ApplicationFlags.FLAGS_NONE
        )

        self.settings = settings
        self.audio = None
        self.window = None

        # Handle SIGINT gracefully
        GLib.unix_signal_add(GLib.PRIORITY_DEFAULT, signal.SIGINT, self._on_sigint)

    def do_activate(self):
        if not self.window:
            self.window = MainWindow(self, self.audio)
        self.window.present()

    def do_startup(self):
        """Create the engine and the app actions."""
        Adw.Application.do_startup(self)

        # Adopts leftovers from an earlier run and recovers missing capture cards
        self.audio = AudioBackend(settings=self.settings)

        action = Gio.SimpleAction.new("quit", None)
        action.connect("activate", self._on_quit)
        self.add_action(action)

        action = Gio.SimpleAction.new("refresh", None)
        action.connect("activate", self._on_refresh)
        self.add_action(action)

        action = Gio.SimpleAction.new("about", None)
        action.connect("activate", self._on_about)
        self.add_action(action)

        self.set_accels_for_action("app.quit", ["<Control>q"])
        self.set_accels_for_action("app.refresh", ["<Control>r"])

    def _on_quit(self, action, param):
        self.quit()

    def _on_refresh(self, action, param):
        self.audio.refresh()

    def _on_sigint(self):
        """Handle Ctrl+C."""
        self.quit()
        return GLib.SOURCE_REMOVE

    def _on_about(self, action, param):
        about = Adw.AboutWindow(
            transient_for=self.window,
            application_name="Lichen",
            application_icon="audio-card",
            version="1.0.0",
            comments=(
                "Combine outputs and mix microphones into virtual devices.\n"
                "Routes live on the audio server and survive restarts."
            ),
            license_type=Gtk.License.MIT_X11
        )
        about.present()


def _configure_logging():
    level = os.environ.get("LICHEN_LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _check_audio_server() -> bool:
    """Check for PulseAudio or PipeWire with pactl support."""
    result = run_cmd('pactl', 'info')
    if not result.succeeded:
        return False
    if 'PipeWire' in result.stdout:
        logger.info("Audio server: PipeWire")
    else:
        logger.info("Audio server: PulseAudio")
    return True


def main():
    """Application entry point."""
    _configure_logging()

    if not _check_audio_server():
        logger.error(
            "No compatible audio server found. Install pulseaudio-utils, "
            "or pipewire and pipewire-pulse."
        )
        return 1

    Adw.init()
    app = LichenApp(Config())
    return app.run(sys.argv)


if __name__ == "__main__":
    sys.exit(main())
