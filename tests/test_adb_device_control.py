"""
Tests for the adb device control backend, with the subprocess layer faked.
"""

import asyncio

import pytest

from droidpilot.device.adb import AdbDeviceControl, AdbError, parse_device_list, permission_name
from droidpilot.device.models import WatcherHandle

DEVICES_OUTPUT = """List of devices attached
emulator-5554          device product:sdk_gphone64 model:sdk_gphone64_x86_64 device:emu64x transport_id:1
R58M123ABC             unauthorized usb:1-1 transport_id:2
* daemon started successfully
"""


class FakeProcess:
    def __init__(self, stdout=b"", stderr=b"", returncode=0, pid=4242, hang=False):
        self._stdout = stdout
        self._stderr = stderr
        self.returncode = returncode
        self.pid = pid
        self.hang = hang
        self.killed = False

    async def communicate(self):
        if self.hang:
            await asyncio.sleep(10)
        return self._stdout, self._stderr

    async def wait(self):
        if self.hang and not self.killed:
            await asyncio.sleep(10)
        return self.returncode

    def kill(self):
        self.killed = True


class CallLog(list):
    """Recorded commands plus the processes the next calls will return."""

    def __init__(self):
        super().__init__()
        self.processes = []


@pytest.fixture
def subprocess_calls(monkeypatch):
    """Replace subprocess creation; tests queue processes in ``calls.processes``."""
    calls = CallLog()

    async def fake_exec(*cmd, **kwargs):
        calls.append(list(cmd))
        return calls.processes.pop(0) if calls.processes else FakeProcess()

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_exec)
    return calls


@pytest.fixture
def adb():
    return AdbDeviceControl(adb_path="adb", timeout=1.0, watcher_startup_delay=0.0, watcher_stop_timeout=0.05)


class TestParsing:
    def test_parse_device_list(self):
        devices = parse_device_list(DEVICES_OUTPUT)

        assert [d.device_id for d in devices] == ["emulator-5554", "R58M123ABC"]
        assert devices[0].name == "sdk gphone64 x86 64"
        assert devices[0].is_available
        assert not devices[1].is_available
        assert devices[1].name == "R58M123ABC"

    def test_permission_name(self):
        assert permission_name("camera") == "android.permission.CAMERA"
        assert permission_name("android.permission.RECORD_AUDIO") == "android.permission.RECORD_AUDIO"


class TestCommands:
    """Command construction and error mapping."""

    @pytest.mark.asyncio
    async def test_run_targets_device(self, adb, subprocess_calls):
        subprocess_calls.processes.append(FakeProcess(stdout=b"1\n"))

        output = await adb.shell("emulator-5554", "echo 1")

        assert output == "1\n"
        assert subprocess_calls[0] == ["adb", "-s", "emulator-5554", "shell", "echo 1"]

    @pytest.mark.asyncio
    async def test_non_zero_exit_raises(self, adb, subprocess_calls):
        subprocess_calls.processes.append(FakeProcess(stderr=b"error: device offline", returncode=1))

        with pytest.raises(AdbError, match="device offline"):
            await adb.run("devices")

    @pytest.mark.asyncio
    async def test_timeout_kills_process(self, adb, subprocess_calls):
        process = FakeProcess(hang=True)
        subprocess_calls.processes.append(process)

        with pytest.raises(AdbError, match="timed out"):
            await adb.run("logcat", timeout=0.05)

        assert process.killed

    @pytest.mark.asyncio
    async def test_missing_executable(self, adb, monkeypatch):
        async def missing(*cmd, **kwargs):
            raise FileNotFoundError(cmd[0])

        monkeypatch.setattr(asyncio, "create_subprocess_exec", missing)

        with pytest.raises(AdbError, match="not found"):
            await adb.run("devices")

    @pytest.mark.asyncio
    async def test_list_devices(self, adb, subprocess_calls):
        subprocess_calls.processes.append(FakeProcess(stdout=DEVICES_OUTPUT.encode()))

        devices = await adb.list_devices()

        assert subprocess_calls[0] == ["adb", "devices", "-l"]
        assert len(devices) == 2

    @pytest.mark.asyncio
    async def test_grant_capability(self, adb, subprocess_calls):
        subprocess_calls.processes.extend([
            FakeProcess(),
            FakeProcess(stderr=b"java.lang.SecurityException: not a changeable permission", returncode=255),
        ])

        assert await adb.grant_capability("emulator-5554", "com.example.app", "CAMERA")
        assert not await adb.grant_capability("emulator-5554", "com.example.app", "INTERNET")
        assert subprocess_calls[0][-1] == "pm grant com.example.app android.permission.CAMERA"

    @pytest.mark.asyncio
    async def test_grant_capabilities_defaults(self, adb, subprocess_calls):
        results = await adb.grant_capabilities("emulator-5554", "com.example.app")

        assert len(results) == 16
        assert all(results.values())

    @pytest.mark.asyncio
    async def test_disable_animations(self, adb, subprocess_calls):
        await adb.disable_animations("emulator-5554")

        assert [call[-1] for call in subprocess_calls] == [
            "settings put global window_animation_scale 0",
            "settings put global transition_animation_scale 0",
            "settings put global animator_duration_scale 0",
        ]


class TestWatcher:
    """Watcher instrumentation lifecycle."""

    @pytest.mark.asyncio
    async def test_start_watcher(self, adb, subprocess_calls):
        handle = await adb.start_watcher_process("emulator-5554")

        assert handle.device_id == "emulator-5554"
        assert handle.pid == 4242
        cmd = subprocess_calls[0]
        assert cmd[:6] == ["adb", "-s", "emulator-5554", "shell", "am", "instrument"]
        assert cmd[-1].endswith("/androidx.test.runner.AndroidJUnitRunner")

    @pytest.mark.asyncio
    async def test_stop_kills_lingering_process(self, adb):
        process = FakeProcess(returncode=None, hang=True)

        await adb.stop_watcher_process(WatcherHandle("emulator-5554", pid=None, process=process))

        assert process.killed

    @pytest.mark.asyncio
    async def test_stop_exited_process(self, adb):
        process = FakeProcess(returncode=0)

        await adb.stop_watcher_process(WatcherHandle("emulator-5554", pid=None, process=process))

        assert not process.killed
