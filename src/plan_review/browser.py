from __future__ import annotations

import asyncio
import logging
import sys

from .errors import BrowserLaunchError

logger = logging.getLogger(__name__)


def browser_command(url: str, platform: str | None = None) -> list[str]:
    """Return the argv that opens ``url`` in the platform's default browser."""
    current = platform if platform is not None else sys.platform
    if current == "darwin":
        return ["open", url]
    if current == "win32":
        return ["cmd", "/c", "start", "", url]
    return ["xdg-open", url]


async def open_url(url: str) -> None:
    """Open ``url`` in the default browser.

    Raises:
        BrowserLaunchError: If the launcher is missing or exits non-zero.
    """
    command = browser_command(url)
    logger.debug("Opening browser: %s", command[0])
    try:
        process = await asyncio.create_subprocess_exec(
            *command,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        raise BrowserLaunchError(f"Failed to open browser: {exc}", url=url) from exc
    _, stderr = await process.communicate()
    if process.returncode != 0:
        detail = stderr.decode("utf-8", errors="replace").strip()
        raise BrowserLaunchError(
            detail or f"Failed to open browser (exit code {process.returncode})",
            url=url,
        )
