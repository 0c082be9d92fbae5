"""Where loopauth keeps its files, and whether a lock holder is still running."""

import os
import sys
from pathlib import Path

# Platform detection
IS_WINDOWS = sys.platform == "win32"
IS_MACOS = sys.platform == "darwin"

APP_NAME = "loopauth"


def get_data_dir() -> Path:
    """Get the per-user data directory for loopauth.

    Priority order:
    1. LOOPAUTH_DATA_DIR - explicit override for testing/advanced usage
    2. %LOCALAPPDATA%\\loopauth - Windows
    3. ~/Library/Application Support/loopauth - macOS
    4. $XDG_DATA_HOME/loopauth or ~/.local/share/loopauth - everything else
    """
    override = os.environ.get("LOOPAUTH_DATA_DIR")
    if override:
        return Path(override).expanduser()

    if IS_WINDOWS:
        base = os.environ.get("LOCALAPPDATA") or os.environ.get("APPDATA")
        if base:
            return Path(base) / APP_NAME
        return Path.home() / "AppData" / "Local" / APP_NAME

    if IS_MACOS:
        return Path.home() / "Library" / "Application Support" / APP_NAME

    xdg = os.environ.get("XDG_DATA_HOME")
    if xdg:
        return Path(xdg) / APP_NAME
    return Path.home() / ".local" / "share" / APP_NAME


def is_process_alive(pid: int) -> bool:
    """Whether ``pid`` names a running process.

    A process we are not allowed to signal or open still exists, so access
    errors count as alive. Non-positive PIDs never do.
    """
    if pid <= 0:
        return False
    if IS_WINDOWS:
        return _windows_process_exists(pid)

    try:
        os.kill(pid, 0)  # signal 0: existence and permission check only
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


def _windows_process_exists(pid: int) -> bool:
    import ctypes
    from ctypes import wintypes

    PROCESS_QUERY_LIMITED_INFORMATION = 0x1000
    ERROR_ACCESS_DENIED = 5
    STILL_ACTIVE = 259

    kernel32 = ctypes.WinDLL("kernel32", use_last_error=True)
    handle = kernel32.OpenProcess(PROCESS_QUERY_LIMITED_INFORMATION, False, pid)
    if not handle:
        return ctypes.get_last_error() == ERROR_ACCESS_DENIED

    try:
        exit_code = wintypes.DWORD()
        if not kernel32.GetExitCodeProcess(handle, ctypes.byref(exit_code)):
            return True
        return exit_code.value == STILL_ACTIVE
    finally:
        kernel32.CloseHandle(handle)
