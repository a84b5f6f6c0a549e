"""Test ios_backend: devicectl/simctl discovery, routing and log parsing."""
from __future__ import annotations

import json
import signal
from datetime import datetime
from pathlib import Path

import pytest

from devicedeck.errors import ParseError, ProcessExitError
from devicedeck.ios_backend import (
    IOSBackend,
    parse_compact_line,
    parse_devicectl_devices,
    parse_simctl_booted,
)
from devicedeck.models import DeviceKind, LogLevel

from conftest import FakeHandle, out

FLAT_PAYLOAD = {
    "devices": [
        {
            "identifier": "00008110-000A1B2C3D4E",
            "name": "Test iPhone",
            "deviceType": "iPhone 15 Pro",
            "deviceClass": "iPhone",
            "connectionType": "wired",
            "platform": "iOS",
            "status": "connected",
        },
        {
            "identifier": "WATCH-1",
            "name": "Test Watch",
            "deviceType": "Apple Watch",
            "deviceClass": "Watch",
            "connectionType": "wireless",
            "platform": "watchOS",
            "status": "connected",
        },
    ]
}

NESTED_PAYLOAD = {
    "info": {"outcome": "success"},
    "result": {
        "devices": [
            {
                "identifier": "6F1E0C2A-AAAA-BBBB-CCCC-0123456789AB",
                "deviceProperties": {"name": "Test iPad"},
                "hardwareProperties": {
                    "deviceType": "iPad",
                    "marketingName": "iPad Air",
                    "platform": "iOS",
                    "udid": "00008103-0011223344",
                },
                "connectionProperties": {"transportType": "localNetwork", "tunnelState": "disconnected"},
            },
            {
                "identifier": "TV-1",
                "deviceProperties": {"name": "Living Room"},
                "hardwareProperties": {"deviceType": "appleTV", "platform": "tvOS"},
                "connectionProperties": {},
            },
        ]
    },
}

SIMCTL_PAYLOAD = {
    "devices": {
        "com.apple.CoreSimulator.SimRuntime.iOS-17-0": [
            {
                "udid": "5A1B2C3D-SIM",
                "name": "iPhone 15",
                "state": "Booted",
                "deviceTypeIdentifier": "com.apple.CoreSimulator.SimDeviceType.iPhone-15",
            },
        ],
        "com.apple.CoreSimulator.SimRuntime.watchOS-10-0": [
            {
                "udid": "WATCH-SIM",
                "name": "Apple Watch Series 9",
                "state": "Booted",
                "deviceTypeIdentifier": "com.apple.CoreSimulator.SimDeviceType.Apple-Watch-Series-9-45mm",
            },
        ],
    }
}


@pytest.fixture
def backend(runner, settings) -> IOSBackend:
    return IOSBackend(runner, settings)


def _write_json_output(payload):
    """Response that writes ``payload`` to the --json-output path."""

    def respond(argv):
        path = Path(argv[argv.index("--json-output") + 1])
        path.write_text(json.dumps(payload))
        return out()

    return respond


# ===================================================================
# Parsing
# ===================================================================


class TestParseDevicectl:
    def test_flat_shape_keeps_handhelds(self):
        devices = parse_devicectl_devices(FLAT_PAYLOAD)
        assert len(devices) == 1
        d = devices[0]
        assert d.id == "ios:00008110-000A1B2C3D4E"
        assert d.display_name == "Test iPhone"
        assert d.connection_status == "connected"
        assert dict(d.attributes) == {
            "Type": "iPhone 15 Pro", "Class": "iPhone", "Connection": "wired", "Platform": "iOS",
        }

    def test_nested_shape(self):
        devices = parse_devicectl_devices(NESTED_PAYLOAD)
        assert len(devices) == 1
        d = devices[0]
        assert d.backend_identifier == "6F1E0C2A-AAAA-BBBB-CCCC-0123456789AB"
        assert d.attributes["Class"] == "iPad"
        assert d.attributes["Type"] == "iPad Air"
        assert d.attributes["Connection"] == "localNetwork"
        assert d.attributes["UDID"] == "00008103-0011223344"
        assert d.connection_status == "disconnected"

    def test_records_without_identifier_are_skipped(self):
        payload = {"devices": [{"name": "Ghost", "deviceClass": "iPhone"}]}
        assert parse_devicectl_devices(payload) == []

    def test_non_object_is_parse_error(self):
        with pytest.raises(ParseError):
            parse_devicectl_devices(["not", "an", "object"])


class TestParseSimctl:
    def test_booted_handheld_simulators(self):
        devices = parse_simctl_booted(SIMCTL_PAYLOAD)
        assert len(devices) == 1
        sim = devices[0]
        assert sim.is_simulator
        assert sim.attributes["Platform"] == "iOS 17.0"
        assert sim.attributes["Class"] == "iPhone"
        assert sim.connection_status == "Booted"

    def test_unexpected_shape(self):
        with pytest.raises(ParseError):
            parse_simctl_booted({"devices": []})


class TestParseCompactLine:
    def test_bare_level_and_process_tag(self):
        entry = parse_compact_line(
            "2024-05-01 10:11:12.345678-0700 Df SpringBoard[123:4567] Application launched",
            "ios:x",
        )
        assert entry.timestamp == datetime(2024, 5, 1, 10, 11, 12, 345678)
        assert entry.level is LogLevel.INFO
        assert entry.tag == "SpringBoard"
        assert entry.message == "Application launched"

    def test_bracketed_level(self):
        entry = parse_compact_line("2024-05-01 10:11:12.345 [Error] backboardd: lost touch", "ios:x")
        assert entry.level is LogLevel.ERROR
        assert entry.tag == "backboardd"
        assert entry.message == "lost touch"
        assert entry.timestamp.microsecond == 345000

    def test_bracketed_level_with_tag(self):
        entry = parse_compact_line("2024-05-01 10:11:12.345 [Fault:locationd] denied access", "ios:x")
        assert entry.level is LogLevel.FATAL
        assert entry.tag == "locationd"
        assert entry.message == "denied access"

    def test_single_word_message_gets_default_tag(self):
        entry = parse_compact_line("2024-05-01 10:11:12.345 E crashed", "ios:x")
        assert entry.tag == "System"
        assert entry.message == "crashed"

    @pytest.mark.parametrize("line", [
        "Filtering the log data using \"process == foo\"",
        "Timestamp               Ty Process[PID:TID]",
        "2024-05-01 10:11:12.345 E",
        "",
    ])
    def test_malformed(self, line):
        with pytest.raises(ParseError):
            parse_compact_line(line, "ios:x")


# ===================================================================
# Discovery
# ===================================================================


class TestDiscover:
    @pytest.mark.asyncio
    async def test_physical_and_simulators(self, backend, runner, settings):
        runner.on("devicectl list devices", _write_json_output(FLAT_PAYLOAD))
        runner.on("simctl list devices booted", out(json.dumps(SIMCTL_PAYLOAD)))

        devices = await backend.discover()

        assert [d.id for d in devices] == ["ios:00008110-000A1B2C3D4E", "ios:5A1B2C3D-SIM"]
        assert all(d.kind is DeviceKind.IOS for d in devices)
        assert not list(settings.temp_dir.glob("devicedeck-devicectl-*.json"))

    @pytest.mark.asyncio
    async def test_simulator_failure_is_not_fatal(self, backend, runner):
        runner.on("devicectl list devices", _write_json_output(FLAT_PAYLOAD))
        runner.on("simctl list devices booted", out(stderr="CoreSimulator is out of date", code=1))
        devices = await backend.discover()
        assert [d.display_name for d in devices] == ["Test iPhone"]

    @pytest.mark.asyncio
    async def test_simulators_can_be_disabled(self, backend, runner, settings):
        settings.include_simulators = False
        runner.on("devicectl list devices", _write_json_output(FLAT_PAYLOAD))
        await backend.discover()
        assert not runner.commands("simctl")

    @pytest.mark.asyncio
    async def test_devicectl_failure_propagates(self, backend, runner):
        runner.on("devicectl list devices", out(stderr="xcrun: error: unable to find utility", code=72))
        with pytest.raises(ProcessExitError):
            await backend.discover()

    @pytest.mark.asyncio
    async def test_devicectl_failure_still_lists_simulators(self, backend, runner):
        runner.on("devicectl list devices", out(stderr="error: unknown subcommand 'devicectl'", code=72))
        runner.on("simctl list devices booted", out(json.dumps(SIMCTL_PAYLOAD)))
        devices = await backend.discover()
        assert [d.id for d in devices] == ["ios:5A1B2C3D-SIM"]

    @pytest.mark.asyncio
    async def test_devicectl_failure_with_simulators_disabled(self, backend, runner, settings):
        settings.include_simulators = False
        runner.on("devicectl list devices", out(stderr="unable to find utility", code=72))
        with pytest.raises(ProcessExitError):
            await backend.discover()
        assert not runner.commands("simctl")

    @pytest.mark.asyncio
    async def test_invalid_json_is_parse_error(self, backend, runner):
        def garbage(argv):
            Path(argv[argv.index("--json-output") + 1]).write_text("{not json")
            return out()

        runner.on("devicectl list devices", garbage)
        with pytest.raises(ParseError):
            await backend.discover()


# ===================================================================
# Commands
# ===================================================================


class TestCommands:
    @pytest.mark.asyncio
    async def test_install_routes_by_connection(self, backend, runner, ios_device, simulator, tmp_path):
        app = tmp_path / "App.app"
        await backend.install(ios_device, app)
        assert runner.calls[-1] == [
            "xcrun", "devicectl", "device", "install", "app",
            "--device", ios_device.backend_identifier, str(app),
        ]
        await backend.install(simulator, app)
        assert runner.calls[-1] == ["xcrun", "simctl", "install", "5A1B2C3D-SIM", str(app)]

    @pytest.mark.asyncio
    async def test_clear_data(self, backend, runner, simulator):
        await backend.clear_data(simulator, "com.example.app")
        assert runner.calls[-1] == ["xcrun", "simctl", "uninstall", "5A1B2C3D-SIM", "com.example.app"]

    @pytest.mark.asyncio
    async def test_restart_is_shutdown_then_boot(self, backend, runner, simulator):
        await backend.restart(simulator)
        assert runner.commands("simctl") == [
            "xcrun simctl shutdown 5A1B2C3D-SIM",
            "xcrun simctl boot 5A1B2C3D-SIM",
        ]

    @pytest.mark.asyncio
    async def test_restart_aborts_when_shutdown_fails(self, backend, runner, ios_device):
        runner.on("device shutdown", out(stderr="device is locked", code=1))
        with pytest.raises(ProcessExitError) as info:
            await backend.restart(ios_device)
        assert "device is locked" in info.value.stderr_text
        assert not runner.commands(" boot ")

    @pytest.mark.asyncio
    async def test_run_command_on_simulator_uses_shell(self, backend, runner, simulator):
        runner.on("simctl spawn", out("hello\n"))
        result = await backend.run_command(simulator, "echo hello")
        assert result.text == "hello\n"
        assert runner.calls[-1][-3:] == ["/bin/sh", "-c", "echo hello"]

    @pytest.mark.asyncio
    async def test_run_command_on_device_splits_argv(self, backend, runner, ios_device):
        await backend.run_command(ios_device, "com.example.app --flag 'two words'")
        assert runner.calls[-1][-3:] == ["com.example.app", "--flag", "two words"]

    @pytest.mark.asyncio
    async def test_run_command_with_unbalanced_quotes_is_parse_error(self, backend, runner, ios_device):
        with pytest.raises(ParseError) as info:
            await backend.run_command(ios_device, "echo 'unterminated")
        assert "closing quotation" in info.value.reason
        assert not runner.commands("process launch")

    @pytest.mark.asyncio
    async def test_screenshot_device_uses_idevicescreenshot(self, backend, runner, ios_device, tmp_path):
        target = tmp_path / "shot.png"

        def write(argv):
            Path(argv[-1]).write_bytes(b"png")
            return out()

        runner.on("idevicescreenshot", write)
        assert await backend.screenshot(ios_device, target) == target
        assert runner.calls[-1][:3] == ["idevicescreenshot", "-u", ios_device.backend_identifier]

    @pytest.mark.asyncio
    async def test_screenshot_without_file_is_error(self, backend, runner, simulator, tmp_path):
        with pytest.raises(ParseError):
            await backend.screenshot(simulator, tmp_path / "missing.png")


# ===================================================================
# Recording & logs
# ===================================================================


class TestRecording:
    @pytest.mark.asyncio
    async def test_record_and_stop(self, backend, runner, simulator, tmp_path):
        target = tmp_path / "rec.mp4"
        runner.on_spawn("recordVideo", lambda argv: FakeHandle(argv, on_stop=lambda: target.write_bytes(b"mp4")))

        session = await backend.start_recording(simulator, target)
        assert session.remote_path is None
        assert runner.spawned[0].argv == [
            "xcrun", "simctl", "io", "5A1B2C3D-SIM", "recordVideo",
            "--codec", "h264", "--mask", "ignored", "--force", str(target),
        ]

        assert await backend.stop_recording(session) == target
        assert session.process.signals == [signal.SIGINT]

    @pytest.mark.asyncio
    async def test_stop_without_output_file_raises(self, backend, simulator, tmp_path):
        session = await backend.start_recording(simulator, tmp_path / "never.mp4")
        with pytest.raises(ProcessExitError):
            await backend.stop_recording(session)

    def test_log_command(self, backend, simulator):
        assert list(backend.log_command(simulator)) == [
            "xcrun", "simctl", "spawn", "5A1B2C3D-SIM",
            "log", "stream", "--level", "debug", "--style", "compact",
        ]
