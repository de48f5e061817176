import pytest

from audio_backend import AudioBackend
from models import InsufficientMembersError, LoadFailedError, RouteKind, description_property


@pytest.fixture
def audio(fake, settings):
    return AudioBackend(runner=fake, settings=settings, auto_recover=False)


def test_inventory_on_construction(audio):
    assert [s.name for s in audio.sinks] == ["alpha", "beta"]
    # Monitors never show up as microphones
    assert [s.name for s in audio.sources] == ["mic1", "mic2"]
    assert audio.routes == []
    assert not audio.has_active_routes


def test_create_combined_output(audio, fake):
    route = audio.create_combined_output("lichen_output_1", ["alpha", "beta"], "mix")

    assert route.kind is RouteKind.OUTPUT
    assert route.anchor_name == "lichen_output_1"
    assert len(route.module_ids) == 1
    assert route.member_descriptions == ["Alpha Headphones", "Beta Speakers"]

    loads = fake.load_calls("module-combine-sink")
    assert len(loads) == 1
    assert "slaves=alpha,beta" in loads[0]
    assert "sink_name=lichen_output_1" in loads[0]

    sink_names = [s.name for s in audio.sinks]
    assert "lichen_output_1" not in sink_names
    assert "alpha" in sink_names and "beta" in sink_names
    assert [r.id for r in audio.routes] == [route.id]


def test_descriptions_with_spaces_stay_one_argument(audio, fake):
    audio.create_combined_output("lichen_output_1", ["alpha", "beta"], "Living Room Speakers")
    audio.create_mixed_input("lichen_input_1", ["mic1", "mic2"], "Desk Mics")

    assert fake.load_calls("module-combine-sink")[0][-1] == (
        "sink_properties='device.description=\"Living Room Speakers\"'")
    assert fake.load_calls("module-remap-source")[0][-1] == (
        "source_properties='device.description=\"Desk Mics\"'")
    assert fake.sinks["lichen_output_1"]["description"] == "Living Room Speakers"


def test_description_property_escapes_quotes():
    assert description_property("source_properties", 'Bob\'s "Mic"') == (
        'source_properties=\'device.description="Bob\\\'s \\\\"Mic\\\\""\'')


def test_combined_output_keeps_member_order(audio, fake):
    audio.create_combined_output("lichen_output_1", ["beta", "alpha"])
    assert "slaves=beta,alpha" in fake.load_calls("module-combine-sink")[0]


def test_combined_output_needs_two_members(audio, fake):
    with pytest.raises(InsufficientMembersError):
        audio.create_combined_output("lichen_output_1", ["alpha"])
    assert fake.load_calls() == []
    assert audio.routes == []


def test_combined_output_load_failure(audio, fake):
    fake.fail_loads.append("module-combine-sink")

    with pytest.raises(LoadFailedError):
        audio.create_combined_output("lichen_output_1", ["alpha", "beta"])
    assert audio.routes == []


def test_create_mixed_input(audio, fake):
    route = audio.create_mixed_input("lichen_input_1", ["mic1", "mic2"], "mix")

    assert route.kind is RouteKind.INPUT
    assert len(route.module_ids) == 4
    assert route.exposed_source_name == "lichen_input_1_mic"
    assert route.failed_members == []
    assert not route.is_degraded
    assert "lichen_input_1_mic" in audio.mixed_input_sources

    assert len(fake.load_calls("module-null-sink")) == 1
    assert len(fake.load_calls("module-loopback")) == 2
    assert len(fake.load_calls("module-remap-source")) == 1
    null_load = fake.load_calls("module-null-sink")[0]
    assert any('device.class="filter"' in arg for arg in null_load)
    remap_load = fake.load_calls("module-remap-source")[0]
    assert "master=lichen_input_1_null.monitor" in remap_load

    # Internal plumbing stays out of the user-facing lists
    assert [s.name for s in audio.sources] == ["mic1", "mic2"]
    assert "lichen_input_1_null" not in [s.name for s in audio.sinks]


def test_mixed_input_partial_loopback_failure(audio, fake):
    fake.fail_loads.append("source=mic2 ")

    route = audio.create_mixed_input("lichen_input_1", ["mic1", "mic2"])

    assert len(fake.load_calls("module-loopback")) == 2
    assert len(route.module_ids) == 3
    assert route.member_names == ["mic1"]
    assert route.failed_members == ["mic2"]
    assert route in audio.routes


def test_mixed_input_without_remap_is_degraded(audio, fake):
    fake.fail_loads.append("module-remap-source")

    route = audio.create_mixed_input("lichen_input_1", ["mic1", "mic2"])

    assert len(route.module_ids) == 3
    assert route.exposed_source_name is None
    assert route.is_degraded
    assert audio.mixed_input_sources == []


def test_mixed_input_aborts_when_mixer_fails(audio, fake):
    fake.fail_loads.append("module-null-sink")

    with pytest.raises(LoadFailedError):
        audio.create_mixed_input("lichen_input_1", ["mic1", "mic2"])
    assert fake.load_calls("module-loopback") == []
    assert audio.routes == []


def test_mixed_input_needs_two_members(audio, fake):
    with pytest.raises(InsufficientMembersError):
        audio.create_mixed_input("lichen_input_1", [])
    assert fake.load_calls() == []


def test_route_exists_is_order_independent(audio):
    audio.create_combined_output("lichen_output_1", ["alpha", "beta"])

    assert audio.route_exists(RouteKind.OUTPUT, ["Beta Speakers", "Alpha Headphones"])
    assert not audio.route_exists(RouteKind.OUTPUT, ["Alpha Headphones"])
    assert not audio.route_exists(RouteKind.INPUT, ["Alpha Headphones", "Beta Speakers"])


def test_remove_route_unloads_all_modules(audio, fake):
    keep = audio.create_combined_output("lichen_output_1", ["alpha", "beta"])
    route = audio.create_mixed_input("lichen_input_1", ["mic1", "mic2"])

    assert audio.remove_route(route.id)

    assert sorted(fake.unloaded()) == sorted(route.module_ids)
    # Remap and loopbacks go before the mixer they depend on
    assert fake.unloaded()[-1] == route.module_ids[0]
    assert [r.id for r in audio.routes] == [keep.id]


def test_remove_unknown_route(audio, fake):
    audio.create_combined_output("lichen_output_1", ["alpha", "beta"])
    before = audio.routes

    assert not audio.remove_route("output_nope")
    assert audio.routes == before
    assert fake.unloaded() == []


def test_remove_route_without_module_ids_uses_live_modules(audio, fake):
    route = audio.create_mixed_input("lichen_input_1", ["mic1", "mic2"])
    ids = list(route.module_ids)
    route.module_ids.clear()

    assert audio.remove_route(route.id)

    assert sorted(fake.unloaded()) == sorted(ids)
    assert fake.unloaded()[-1] == ids[0]
    assert audio.routes == []


def test_reset_to_defaults(audio, fake):
    audio.create_combined_output("lichen_output_1", ["alpha", "beta"])
    audio.create_mixed_input("lichen_input_1", ["mic1", "mic2"])
    audio.set_hearback_volume(50)

    audio.reset_to_defaults()

    assert audio.routes == []
    assert not audio.hearback_enabled
    assert fake.modules == {}


def test_listeners_notified_after_refresh(audio):
    calls = []

    def listener():
        calls.append(len(audio.routes))

    audio.add_listener(listener)
    audio.create_combined_output("lichen_output_1", ["alpha", "beta"])
    assert calls == [1]

    audio.remove_listener(listener)
    audio.refresh()
    assert calls == [1]


def test_new_route_name_is_fresh(audio):
    name = audio.new_route_name(RouteKind.OUTPUT)
    assert name.startswith("lichen_output_")
    audio.create_combined_output(name, ["alpha", "beta"])
    assert audio.new_route_name(RouteKind.OUTPUT) != name


def test_route_ids_never_reused(audio):
    first = audio.create_combined_output("lichen_output_1", ["alpha", "beta"])
    audio.remove_route(first.id)
    second = audio.create_combined_output("lichen_output_1", ["alpha", "beta"])
    assert first.id != second.id


def test_device_volume_persisted(audio, fake, settings):
    assert audio.device_volume("alpha") == 100

    assert audio.set_device_volume("alpha", 50)
    assert ('pactl', 'set-sink-volume', 'alpha', '32768') in fake.calls
    assert settings.get_device_volume("alpha") == 50

    assert audio.set_source_volume("mic1", 150)
    assert ('pactl', 'set-source-volume', 'mic1', '65536') in fake.calls
    assert settings.get_device_volume("mic1") == 100


def test_stored_volumes_applied_to_new_route(audio, fake):
    audio.set_device_volume("beta", 25)
    fake.calls.clear()

    audio.create_combined_output("lichen_output_1", ["alpha", "beta"])

    volume_calls = [c for c in fake.calls if c[1] == 'set-sink-volume']
    assert volume_calls == [('pactl', 'set-sink-volume', 'beta', '16384')]


def test_route_member_info(audio):
    audio.set_device_volume("beta", 40)
    route = audio.create_combined_output("lichen_output_1", ["alpha", "beta"])

    info = audio.route_member_info(route.id)

    assert [(m.name, m.description, m.volume) for m in info] == [
        ("alpha", "Alpha Headphones", 100),
        ("beta", "Beta Speakers", 40),
    ]
    assert audio.route_member_info("missing") == []


def test_defaults_and_stream_moves(audio, fake):
    assert audio.set_default_sink("alpha")
    assert audio.set_default_source("mic1")
    assert audio.move_sink_input(7, "alpha")
    assert ('pactl', 'set-default-sink', 'alpha') in fake.calls
    assert ('pactl', 'set-default-source', 'mic1') in fake.calls
    assert ('pactl', 'move-sink-input', '7', 'alpha') in fake.calls
