import numpy as np
import pytest

from qemuconsole.core.display import (
    GraphicalConsole, VIEWPORTS, fit_frame, key_sequence, keysym_for, viewport_for,
)
from qemuconsole.core.errors import NoActiveSession
from qemuconsole.core.models import ConnectionState, ConsoleEndpoint, ProtocolVariant, ScaleMode

from .conftest import FakeLoader

VNC_ENDPOINT = ConsoleEndpoint("127.0.0.1", 6080, "secret", ProtocolVariant.VNC)
SPICE_ENDPOINT = ConsoleEndpoint("127.0.0.1", 6081, None, ProtocolVariant.SPICE)


@pytest.fixture
def console(loader, scheduler):
    console = GraphicalConsole(loader=loader, scheduler=scheduler)
    console.events = []
    for name in ('connected', 'disconnected', 'error', 'reconnecting'):
        console.on(name, lambda *args, name=name: console.events.append((name,) + args))
    return console


class TestKeys:
    def test_ctrl_alt_del_order(self):
        assert key_sequence("ctrl-alt-del") == [
            (0xffe3, "ControlLeft", True),
            (0xffe9, "AltLeft", True),
            (0xffff, "Delete", True),
            (0xffff, "Delete", False),
            (0xffe9, "AltLeft", False),
            (0xffe3, "ControlLeft", False),
        ]

    def test_function_key_combo(self):
        events = key_sequence("Ctrl-Alt-F2")
        assert events[2] == (0xffbf, "F2", True)
        assert len(events) == 6

    def test_unknown_combo(self):
        with pytest.raises(ValueError):
            key_sequence("ctrl-alt-q")

    def test_keysym_for_printable_and_named(self):
        assert keysym_for("a") == ord("a")
        assert keysym_for("Enter") == 0xff0d
        assert keysym_for("Unidentified") is None


class TestViewports:
    def test_scale_mode_is_idempotent(self):
        first = viewport_for(ScaleMode.STRETCH, ProtocolVariant.VNC)
        second = viewport_for(ScaleMode.STRETCH, ProtocolVariant.VNC)
        assert first == second == VIEWPORTS[ScaleMode.STRETCH]

    def test_spice_never_resizes_session(self):
        viewport = viewport_for(ScaleMode.STRETCH, ProtocolVariant.SPICE)
        assert viewport.scale_viewport
        assert not viewport.resize_session
        assert viewport.object_fit == "fill"

    def test_fit_frame_keeps_aspect_when_scaling(self):
        frame = np.zeros((48, 64, 3), dtype=np.uint8)
        scaled = fit_frame(frame, VIEWPORTS[ScaleMode.SCALE], (32, 100))
        assert scaled.shape == (24, 32, 3)

    def test_fit_frame_stretches_to_container(self):
        frame = np.zeros((48, 64, 3), dtype=np.uint8)
        assert fit_frame(frame, VIEWPORTS[ScaleMode.STRETCH], (100, 30)).shape == (30, 100, 3)

    def test_one_to_one_mapping_is_untouched(self):
        frame = np.zeros((48, 64, 3), dtype=np.uint8)
        assert fit_frame(frame, VIEWPORTS[ScaleMode.FIT], (10, 10)) is frame


class TestGraphicalConsole:
    def test_connect_configures_client(self, console, loader):
        console.connect(VNC_ENDPOINT)
        client = loader.client

        assert client.url == "ws://127.0.0.1:6080"
        assert client.password == "secret"
        assert client.quality_level == 6
        assert client.compression_level == 2
        assert client.view_only is False
        assert client.scale_viewport is True
        assert console.state == ConnectionState.CONNECTING

    def test_protocol_connect_event(self, console, loader):
        console.connect(VNC_ENDPOINT)
        loader.client.fire('connect')

        assert console.state == ConnectionState.CONNECTED
        assert console.is_live
        assert console.events == [('connected',)]

    def test_surface_probe_detects_connection(self, console, loader, scheduler):
        console.connect(SPICE_ENDPOINT)
        loader.client.show_frame()
        scheduler.advance(0.5)

        assert console.state == ConnectionState.CONNECTED
        assert console.events == [('connected',)]

    def test_probes_stop_after_three_seconds(self, console, loader, scheduler):
        console.connect(SPICE_ENDPOINT)
        scheduler.advance(3.0)
        loader.client.show_frame()
        scheduler.advance(10.0)

        assert console.state == ConnectionState.CONNECTING
        assert scheduler.pending == []

    def test_load_failure_is_terminal(self, scheduler):
        console = GraphicalConsole(loader=FakeLoader(fail="spice client load timeout"), scheduler=scheduler)
        errors = []
        console.on('error', errors.append)
        console.connect(SPICE_ENDPOINT)

        assert console.state == ConnectionState.ERROR
        assert errors == ["spice client load timeout"]
        assert scheduler.pending == []

    def test_security_failure_is_not_retried(self, console, loader, scheduler):
        console.connect(VNC_ENDPOINT)
        loader.client.fire('securityfailure', "Authentication failed")

        assert console.state == ConnectionState.ERROR
        assert console.events == [('error', "Security failure: Authentication failed")]
        scheduler.advance(60)
        assert len(loader.clients) == 1

    def test_credentials_required_is_not_retried(self, console, loader):
        console.connect(VNC_ENDPOINT)
        loader.client.fire('credentialsrequired')
        assert console.state == ConnectionState.ERROR
        assert not console.connection.retry_pending

    def test_spice_error_is_retried(self, console, loader, scheduler):
        console.connect(SPICE_ENDPOINT)
        loader.client.fire('error', "Channel not available")

        assert console.state == ConnectionState.ERROR
        assert console.connection.error_message == "Channel not available"
        assert console.events == [('reconnecting', 1, 5, 1000)]
        scheduler.advance(1.0)
        assert len(loader.clients) == 2

    def test_spice_error_without_message(self, console, loader):
        console.connect(SPICE_ENDPOINT)
        loader.client.fire('error')
        assert console.connection.error_message == "SPICE connection error"

    def test_unclean_disconnect_reconnects_with_fresh_client(self, console, loader, scheduler):
        console.connect(VNC_ENDPOINT)
        first = loader.client
        first.fire('connect')
        first.fire('disconnect', False, "socket dropped")

        assert console.events[-1] == ('reconnecting', 1, 5, 1000)
        scheduler.advance(1.0)

        assert len(loader.clients) == 2
        assert first.disconnected
        assert loader.client.connect_calls == 1

    def test_special_keys_need_live_session(self, console):
        with pytest.raises(NoActiveSession, match="Console not connected"):
            console.send_special_keys("ctrl-alt-del")

    def test_special_keys_sent_in_order(self, console, loader):
        console.connect(VNC_ENDPOINT)
        loader.client.fire('connect')
        console.send_special_keys("ctrl-alt-del")

        assert loader.client.keys == key_sequence("ctrl-alt-del")

    def test_scale_mode_applies_without_reconnecting(self, console, loader):
        console.connect(VNC_ENDPOINT)
        loader.client.fire('connect')

        console.set_scale_mode(ScaleMode.FIT)
        first = console.set_scale_mode(ScaleMode.FIT)

        client = loader.client
        assert len(loader.clients) == 1
        assert client.connect_calls == 1
        assert first == VIEWPORTS[ScaleMode.FIT]
        assert client.scale_viewport is False
        assert client.resize_session is False

    def test_stretch_requests_desktop_size(self, console, loader):
        console.connect(VNC_ENDPOINT)
        loader.client.fire('connect')
        console.set_container_size(1280, 720)
        console.set_scale_mode(ScaleMode.STRETCH)

        assert loader.client.resize_session is True
        assert loader.client.desktop_sizes == [(1280, 720)]

    def test_render_surface(self, console, loader):
        console.connect(VNC_ENDPOINT)
        assert console.get_render_surface() is None

        loader.client.fire('connect')
        loader.client.show_frame(64, 48)
        surface = console.get_render_surface()

        assert surface.size == (64, 48)
        assert surface.encode_png().startswith(b'\x89PNG')
        assert surface.encode_jpeg((32, 24)) is not None

    def test_reconnect_without_session(self, console):
        with pytest.raises(NoActiveSession):
            console.reconnect()

    def test_dispose_is_idempotent(self, console, loader, scheduler):
        console.connect(VNC_ENDPOINT)
        console.dispose()
        console.dispose()

        assert loader.client.disconnected
        assert scheduler.pending == []
        assert not console.is_live
