import asyncio
import functools
import os
import stat
from datetime import datetime, timezone
from typing import Any, Callable, Optional

MIB = 1024 * 1024


async def run_blocking(func: Callable[..., Any], *args, **kwargs) -> Any:
    """Run a blocking call (paramiko, disk I/O) in the default executor."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, functools.partial(func, *args, **kwargs))


def shell_quote(value: str) -> str:
    """Wrap a value in single quotes for a POSIX shell.

    Embedded single quotes become ``'\\''`` so the shell sees the exact
    original string as one argument.
    """
    return "'" + value.replace("'", "'\\''") + "'"


def is_directory_mode(mode: Optional[int]) -> bool:
    return mode is not None and stat.S_ISDIR(mode)


def format_permissions(mode: Optional[int]) -> str:
    """Octal string of the low 9 permission bits, e.g. ``"644"``."""
    return format((mode or 0) & 0o777, "o")


def iso_timestamp(mtime: Optional[float]) -> str:
    moment = datetime.fromtimestamp(mtime or 0, tz=timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def safe_filename(name: str, default: str = "download") -> str:
    """Basename without characters that break a Content-Disposition header."""
    cleaned = os.path.basename((name or "").replace("\\", "/"))
    cleaned = cleaned.replace("\r", "").replace("\n", "").replace('"', "")
    return cleaned or default
