"""
Browser launching.

A launcher either finds a browser already listening on the debugging port
or starts one, and reports which of the two happened: the connector reuses
the first tab of a browser it started, but opens its own tab in one it
found running.
"""

import asyncio
import logging
import os
import shutil
import subprocess
import tempfile
from typing import List, Optional

from .cdp.exceptions import LauncherError
from .cdp.session import CDPSession
from .types import BrowserInfo

logger = logging.getLogger(__name__)

BROWSER_CANDIDATES = [
    "google-chrome",
    "google-chrome-stable",
    "chromium",
    "chromium-browser",
    "chrome",
    "/Applications/Google Chrome.app/Contents/MacOS/Google Chrome",
    "/Applications/Chromium.app/Contents/MacOS/Chromium",
    r"C:\Program Files\Google\Chrome\Application\chrome.exe",
    r"C:\Program Files (x86)\Google\Chrome\Application\chrome.exe",
]

READY_TIMEOUT = 15.0
READY_POLL_INTERVAL = 0.2


class Launcher:
    """Interface: make a browser available and say where."""

    async def launch(self, initial_url: str) -> BrowserInfo:
        raise NotImplementedError


def find_browser(candidates: Optional[List[str]] = None) -> Optional[str]:
    """First Chrome/Chromium executable found on PATH or at a well-known location."""
    for candidate in candidates or BROWSER_CANDIDATES:
        if os.path.isabs(candidate):
            if os.path.isfile(candidate):
                return candidate
            continue
        found = shutil.which(candidate)
        if found:
            return found
    return None


class ChromeLauncher(Launcher):
    """
    Attaches to a running Chrome on ``port`` or starts one.

    Usage:
        launcher = ChromeLauncher(port=9222, headless=True)
        info = await launcher.launch("about:blank")
        ...
        launcher.kill()

    Attributes:
        port: Remote debugging port
        host: Host of the debugging endpoint
        chrome_path: Browser executable (None = search common locations)
        headless: Start new browsers headless
        flags: Extra command line flags for new browsers
    """

    def __init__(
        self,
        port: int = 9222,
        host: str = "localhost",
        chrome_path: Optional[str] = None,
        headless: bool = True,
        flags: Optional[List[str]] = None,
    ):
        self.port = port
        self.host = host
        self.chrome_path = chrome_path
        self.headless = headless
        self.flags = list(flags or [])

        self._session = CDPSession(chrome_host=host, chrome_port=port)
        self._process: Optional[subprocess.Popen] = None
        self._user_data_dir: Optional[tempfile.TemporaryDirectory] = None

    def command(self, executable: str, initial_url: str, user_data_dir: str) -> List[str]:
        cmd = [
            executable,
            f"--remote-debugging-port={self.port}",
            f"--user-data-dir={user_data_dir}",
            "--remote-allow-origins=*",
            "--no-first-run",
            "--no-default-browser-check",
            "--disable-extensions",
        ]
        if self.headless:
            cmd.append("--headless=new")
        cmd.extend(self.flags)
        cmd.append(initial_url)
        return cmd

    async def launch(self, initial_url: str) -> BrowserInfo:
        """
        Raises:
            LauncherError: No executable found, or it never answered on the port
        """
        if await asyncio.to_thread(self._session.is_available):
            logger.info(f"Reusing browser on port {self.port}")
            return BrowserInfo(port=self.port, is_new=False)

        executable = self.chrome_path or find_browser()
        if not executable:
            raise LauncherError(
                "No Chrome or Chromium executable found",
                details={"recovery": "Install Chrome or set chrome_path / WEBSCAN_CHROME_PATH"},
            )

        self._user_data_dir = tempfile.TemporaryDirectory(prefix="webscan-")
        cmd = self.command(executable, initial_url, self._user_data_dir.name)

        try:
            self._process = subprocess.Popen(
                cmd,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )
        except OSError as e:
            self._cleanup_profile()
            raise LauncherError(f"Failed to start {executable}: {e}") from e

        logger.info(f"Launched browser with CDP on port {self.port}: {executable}")

        loop = asyncio.get_running_loop()
        deadline = loop.time() + READY_TIMEOUT
        while loop.time() < deadline:
            if self._process.poll() is not None:
                break
            if await asyncio.to_thread(self._session.is_available):
                return BrowserInfo(port=self.port, is_new=True, pid=self._process.pid)
            await asyncio.sleep(READY_POLL_INTERVAL)

        self.kill()
        raise LauncherError(
            f"Browser did not answer on port {self.port}",
            details={"recovery": "Check that the port is free and the binary starts"},
        )

    def kill(self) -> None:
        """Terminate a browser this launcher started; no-op for reused ones."""
        if self._process is not None and self._process.poll() is None:
            self._process.terminate()
            try:
                self._process.wait(timeout=5)
            except subprocess.TimeoutExpired:
                self._process.kill()
                self._process.wait()
        self._process = None
        self._cleanup_profile()

    def _cleanup_profile(self) -> None:
        if self._user_data_dir is not None:
            self._user_data_dir.cleanup()
            self._user_data_dir = None
