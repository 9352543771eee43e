"""Device control over the ``adb`` executable.

Implements :class:`droidpilot.device.protocols.DeviceControl` for Android
devices and emulators, plus the setup helpers a run needs before the first
test (animation scales, app data, bulk permission grants).
"""

from __future__ import annotations

import asyncio
import re
from typing import Dict, Iterable, List, Optional

import psutil

from ..core.config import config
from ..core.errors import DeviceUnavailable
from ..core.logger import log
from .models import DeviceInfo, WatcherHandle


class AdbError(RuntimeError):
    """Custom exception raised when an ADB-related error occurs."""


COMMON_PERMISSIONS = [
    "android.permission.ACCESS_FINE_LOCATION",
    "android.permission.ACCESS_COARSE_LOCATION",
    "android.permission.CAMERA",
    "android.permission.READ_EXTERNAL_STORAGE",
    "android.permission.WRITE_EXTERNAL_STORAGE",
    "android.permission.RECORD_AUDIO",
    "android.permission.READ_CONTACTS",
    "android.permission.WRITE_CONTACTS",
    "android.permission.READ_CALENDAR",
    "android.permission.WRITE_CALENDAR",
    "android.permission.READ_PHONE_STATE",
    "android.permission.CALL_PHONE",
    "android.permission.READ_SMS",
    "android.permission.SEND_SMS",
    "android.permission.RECEIVE_SMS",
    "android.permission.POST_NOTIFICATIONS",
]

ANIMATION_SETTINGS = [
    "window_animation_scale",
    "transition_animation_scale",
    "animator_duration_scale",
]

_MODEL_RE = re.compile(r"model:(\S+)")


def parse_device_list(output: str) -> List[DeviceInfo]:
    """Parse ``adb devices -l`` output into :class:`DeviceInfo` records."""
    devices: List[DeviceInfo] = []
    for line in output.strip().splitlines():
        line = line.strip()
        if not line or line.startswith("List of devices") or line.startswith("*"):
            continue
        parts = line.split()
        if len(parts) < 2:
            continue
        match = _MODEL_RE.search(line)
        devices.append(
            DeviceInfo(
                device_id=parts[0],
                name=match.group(1).replace("_", " ") if match else parts[0],
                platform="android",
                status=parts[1],
            )
        )
    return devices


def permission_name(capability_id: str) -> str:
    """Qualify a bare permission (``CAMERA``) with the android namespace."""
    if "." in capability_id:
        return capability_id
    return f"android.permission.{capability_id.upper()}"


class AdbDeviceControl:
    """Async ``adb`` wrapper used as the run's device control backend."""

    def __init__(
        self,
        adb_path: Optional[str] = None,
        timeout: Optional[float] = None,
        watcher_startup_delay: Optional[float] = None,
        watcher_stop_timeout: Optional[float] = None,
    ) -> None:
        self.adb_path = adb_path or config.adb_path
        self.timeout = timeout if timeout is not None else config.adb_timeout
        self.watcher_startup_delay = (
            watcher_startup_delay if watcher_startup_delay is not None else config.watcher_startup_delay
        )
        self.watcher_stop_timeout = (
            watcher_stop_timeout if watcher_stop_timeout is not None else config.watcher_stop_timeout
        )

    async def run(self, *args: str, device: Optional[str] = None, timeout: Optional[float] = None) -> str:
        """Run one adb command and return its stdout.

        Raises:
            AdbError: If adb is missing, exits non-zero, or exceeds the timeout.
        """
        cmd = [self.adb_path]
        if device:
            cmd += ["-s", device]
        cmd += list(args)

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise AdbError(f"adb executable not found: {self.adb_path}") from e

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=timeout or self.timeout
            )
        except asyncio.TimeoutError as e:
            process.kill()
            await process.wait()
            raise AdbError(f"adb {' '.join(args)} timed out") from e

        if process.returncode != 0:
            message = stderr.decode("utf-8", errors="replace").strip() or f"exit code {process.returncode}"
            raise AdbError(f"adb {' '.join(args)} failed: {message}")
        return stdout.decode("utf-8", errors="replace")

    async def shell(self, device: str, command: str, timeout: Optional[float] = None) -> str:
        """Execute an ADB shell command and return stdout as a string."""
        return await self.run("shell", command, device=device, timeout=timeout)

    # ------------------------------------------------------------------
    # DeviceControl
    # ------------------------------------------------------------------

    async def list_devices(self) -> List[DeviceInfo]:
        """Return every device adb reports, available or not."""
        output = await self.run("devices", "-l")
        devices = parse_device_list(output)
        log.debug(f"adb reported {len(devices)} device(s)")
        return devices

    async def grant_capability(self, device: str, app: str, capability_id: str) -> bool:
        """Grant one runtime permission; returns ``False`` when the device refuses."""
        permission = permission_name(capability_id)
        try:
            await self.shell(device, f"pm grant {app} {permission}")
            return True
        except AdbError as e:
            # Permissions not declared by the app, or not runtime-grantable, land here
            log.debug(f"Could not grant {permission} to {app} on {device}: {e}")
            return False

    async def start_watcher_process(self, device: str) -> WatcherHandle:
        """Start the on-device dialog watcher instrumentation.

        Raises:
            DeviceUnavailable: If the watcher process cannot be spawned.
        """
        if config.watcher_apk_path:
            await self.run("install", "-r", "-t", config.watcher_apk_path, device=device)

        cmd = [
            self.adb_path, "-s", device, "shell", "am", "instrument", "-w",
            "-e", "class", config.watcher_class,
            f"{config.watcher_package}/androidx.test.runner.AndroidJUnitRunner",
        ]
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as e:
            raise DeviceUnavailable(device, f"watcher failed to start: {e}") from e

        await asyncio.sleep(self.watcher_startup_delay)
        log.info(f"Native watcher started on {device} (PID: {process.pid})")
        return WatcherHandle(device_id=device, pid=process.pid, process=process)

    async def stop_watcher_process(self, handle: WatcherHandle) -> None:
        """Terminate the watcher and its children, killing whatever outlives the timeout."""
        if handle.pid is not None:
            await asyncio.to_thread(self._terminate_tree, handle.pid, self.watcher_stop_timeout)

        process = handle.process
        if process is not None and process.returncode is None:
            try:
                await asyncio.wait_for(process.wait(), timeout=self.watcher_stop_timeout)
            except asyncio.TimeoutError:
                log.warning(f"Watcher on {handle.device_id} did not exit, sending SIGKILL")
                process.kill()
                await process.wait()
        log.info(f"Native watcher stopped on {handle.device_id}")

    @staticmethod
    def _terminate_tree(pid: int, timeout: float) -> None:
        try:
            parent = psutil.Process(pid)
        except psutil.NoSuchProcess:
            return
        procs = parent.children(recursive=True) + [parent]
        for proc in procs:
            try:
                proc.terminate()
            except psutil.NoSuchProcess:
                continue
        _, alive = psutil.wait_procs(procs, timeout=timeout)
        for proc in alive:
            try:
                proc.kill()
            except psutil.NoSuchProcess:
                continue

    # ------------------------------------------------------------------
    # Run setup helpers
    # ------------------------------------------------------------------

    async def grant_capabilities(
        self, device: str, app: str, capabilities: Optional[Iterable[str]] = None
    ) -> Dict[str, bool]:
        """Grant several permissions, defaulting to :data:`COMMON_PERMISSIONS`."""
        wanted = list(capabilities) if capabilities is not None else COMMON_PERMISSIONS
        results = {}
        for capability in wanted:
            results[capability] = await self.grant_capability(device, app, capability)
        granted = sum(results.values())
        log.info(f"Granted {granted}/{len(results)} permissions to {app} on {device}")
        return results

    async def set_animation_scale(self, device: str, scale: float) -> None:
        for setting in ANIMATION_SETTINGS:
            await self.shell(device, f"settings put global {setting} {scale:g}")

    async def disable_animations(self, device: str) -> None:
        """Turn off window, transition and animator scales."""
        await self.set_animation_scale(device, 0)
        log.debug(f"Animations disabled on {device}")

    async def enable_animations(self, device: str) -> None:
        await self.set_animation_scale(device, 1)

    async def clear_app_data(self, device: str, app: str) -> None:
        """Reset the app under test to a fresh install state."""
        await self.shell(device, f"pm clear {app}")
        log.debug(f"Cleared app data for {app} on {device}")
