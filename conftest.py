"""
Shared pytest fixtures: a fake pactl/arecord runner backed by an in-memory
server model, so engine tests see realistic transcripts without a live
audio server.
"""

import re

import pytest

from config import Config
from pactl import CommandResult
from parsing import module_arg


class FakePactl:
    """Stateful stand-in for the pactl control channel.

    Loading a module creates the objects a real server would (sinks for
    combine/null sinks, a source for remap/alsa sources, a sink-input for
    loopbacks); unloading removes them again. Every call is recorded.
    """

    def __init__(self):
        self.calls: list[tuple] = []
        self.sinks: dict[str, dict] = {}
        self.sources: dict[str, dict] = {}
        self.modules: dict[int, dict] = {}
        self.sink_inputs: dict[int, int] = {}
        self.arecord: str | None = ""
        self.fail_loads: list[str] = []
        self._next_object = 40
        self._next_module = 500
        self._next_sink_input = 90

    # --- Test setup helpers ---

    def add_sink(self, name, description=None, state="SUSPENDED", module=None):
        self._next_object += 1
        self.sinks[name] = {"id": self._next_object, "description": description or name,
                            "state": state, "module": module}
        self.add_source(f"{name}.monitor", f"Monitor of {description or name}", module=module)

    def add_source(self, name, description=None, state="SUSPENDED", card=None, module=None):
        self._next_object += 1
        self.sources[name] = {"id": self._next_object, "description": description or name,
                              "state": state, "card": card, "module": module}

    def add_module(self, name, argument):
        """Register a module as if loaded by an earlier session, with its products."""
        return self._load(name, argument.split())

    def load_calls(self, module=None):
        return [c for c in self.calls
                if c[:2] == ('pactl', 'load-module') and (module is None or c[2] == module)]

    def unloaded(self):
        return [int(c[2]) for c in self.calls if c[:2] == ('pactl', 'unload-module')]

    # --- Runner ---

    def __call__(self, *argv) -> CommandResult:
        self.calls.append(argv)
        if argv[:1] == ('arecord',):
            if self.arecord is None:
                return CommandResult(False)
            return CommandResult(True, self.arecord)
        if argv[:1] != ('pactl',):
            return CommandResult(False)
        args = argv[1:]

        if args == ('list', 'sinks'):
            return CommandResult(True, self._render_devices("Sink", self.sinks))
        if args == ('list', 'sources'):
            return CommandResult(True, self._render_devices("Source", self.sources))
        if args == ('list', 'sinks', 'short'):
            return CommandResult(True, self._render_short(self.sinks))
        if args == ('list', 'sources', 'short'):
            return CommandResult(True, self._render_short(self.sources))
        if args == ('list', 'modules'):
            return CommandResult(True, self._render_modules())
        if args == ('list', 'sink-inputs'):
            return CommandResult(True, self._render_sink_inputs())
        if args[:1] == ('load-module',):
            joined = " ".join(args)
            if any(pattern in joined for pattern in self.fail_loads):
                return CommandResult(False, "", "Failure: Module initialization failed")
            return CommandResult(True, f"{self._load(args[1], list(args[2:]))}\n")
        if args[:1] == ('unload-module',):
            module_id = int(args[1])
            if module_id not in self.modules:
                return CommandResult(False, "", "Failure: No such entity")
            self._unload(module_id)
            return CommandResult(True)
        if args[0] in ('set-sink-volume', 'set-source-volume', 'set-sink-input-volume',
                       'set-default-sink', 'set-default-source', 'move-sink-input'):
            return CommandResult(True)
        return CommandResult(False, "", "unknown command")

    # --- Server model ---

    def _load(self, name, args) -> int:
        self._next_module += 1
        module_id = self._next_module
        argument = " ".join(args)
        self.modules[module_id] = {"name": name, "argument": argument}
        desc = re.search(r'device\.description="([^"]*)"', argument)
        desc = desc.group(1) if desc else None

        if name in ('module-combine-sink', 'module-null-sink'):
            self.add_sink(module_arg(argument, 'sink_name'), desc, module=module_id)
        elif name in ('module-remap-source', 'module-alsa-source'):
            card = None
            device = module_arg(argument, 'device')
            if device:
                card = int(device.split(':')[1].split(',')[0])
            self.add_source(module_arg(argument, 'source_name'), desc, card=card, module=module_id)
        elif name == 'module-loopback':
            self._next_sink_input += 1
            self.sink_inputs[self._next_sink_input] = module_id
        return module_id

    def _unload(self, module_id):
        del self.modules[module_id]
        self.sinks = {k: v for k, v in self.sinks.items() if v["module"] != module_id}
        self.sources = {k: v for k, v in self.sources.items() if v["module"] != module_id}
        self.sink_inputs = {k: v for k, v in self.sink_inputs.items() if v != module_id}

    def _render_devices(self, header, devices):
        blocks = []
        for name, dev in devices.items():
            lines = [
                f"{header} #{dev['id']}",
                f"\tState: {dev['state']}",
                f"\tName: {name}",
                f"\tDescription: {dev['description']}",
                "\tDriver: PipeWire",
                "\tProperties:",
                f"\t\tdevice.description = \"{dev['description']}\"",
            ]
            if dev.get("card") is not None:
                lines.append(f"\t\talsa.card = \"{dev['card']}\"")
            blocks.append("\n".join(lines))
        return "\n\n".join(blocks) + "\n"

    def _render_short(self, devices):
        return "".join(f"{dev['id']}\t{name}\tPipeWire\ts32le 2ch 48000Hz\t{dev['state']}\n"
                       for name, dev in devices.items())

    def _render_modules(self):
        blocks = []
        for module_id, module in self.modules.items():
            blocks.append("\n".join([
                f"Module #{module_id}",
                f"\tName: {module['name']}",
                f"\tArgument: {module['argument']}",
                "\tUsage counter: n/a",
                "\tProperties:",
                "\t\tmodule.author = \"Wim Taymans <wim.taymans@gmail.com>\"",
            ]))
        return "\n\n".join(blocks) + "\n"

    def _render_sink_inputs(self):
        blocks = []
        for index, owner in self.sink_inputs.items():
            blocks.append("\n".join([
                f"Sink Input #{index}",
                "\tDriver: PipeWire",
                f"\tOwner Module: {owner}",
                "\tSink: 41",
                "\tProperties:",
                "\t\tmedia.name = \"loopback-output\"",
            ]))
        return "\n\n".join(blocks) + "\n"


@pytest.fixture
def fake():
    server = FakePactl()
    server.add_sink("alpha", "Alpha Headphones")
    server.add_sink("beta", "Beta Speakers")
    server.add_source("mic1", "USB Mic", card=1)
    server.add_source("mic2", "Webcam Mic", card=3)
    return server


@pytest.fixture
def settings(tmp_path):
    return Config(tmp_path / "settings.json")
