from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
import enum
import logging
from typing import AsyncIterator, Awaitable, Callable

from lra.core.process import AgentBrowser, CommandResult

logger = logging.getLogger("lra.core.session")

Sleep = Callable[[float], Awaitable[None]]

OPEN_TIMEOUT_MS = 15_000
CLOSE_TIMEOUT_MS = 10_000
SETTLE_MS = 2_000
OPEN_FAILED_PREFIX = "Failed to open browser"


class SessionState(str, enum.Enum):
    CLOSED = "closed"
    OPENING = "opening"
    OPEN = "open"


class OpenFailure(RuntimeError):
    def __init__(self, url: str, error: str | None) -> None:
        super().__init__(f"{OPEN_FAILED_PREFIX}: {error or 'unknown error'}")
        self.url = url
        self.error = error


class BrowserSession:
    """Lifecycle of one agent-browser session: closed -> opening -> open -> closed."""

    def __init__(
        self,
        browser: AgentBrowser,
        *,
        open_timeout_ms: int = OPEN_TIMEOUT_MS,
        settle_ms: int = SETTLE_MS,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.browser = browser
        self.open_timeout_ms = open_timeout_ms
        self.settle_ms = settle_ms
        self.sleep = sleep
        self.state = SessionState.CLOSED

    def _open_args(self, url: str, headless: bool) -> list[str]:
        args = ["open", url]
        if not headless:
            args.append("--headed")
        return args

    async def open(self, url: str, *, headless: bool = False) -> CommandResult:
        self.state = SessionState.OPENING
        args = self._open_args(url, headless)
        result = await self.browser.run(args, timeout_ms=self.open_timeout_ms)
        if not result.success:
            # A session left over from an earlier run blocks `open`.
            logger.warning("open failed, closing stale session and retrying: %s", result.error)
            await self.browser.run(["close"], silent=True, timeout_ms=CLOSE_TIMEOUT_MS)
            result = await self.browser.run(args, timeout_ms=self.open_timeout_ms)
        if not result.success:
            self.state = SessionState.CLOSED
            raise OpenFailure(url, result.error)

        self.state = SessionState.OPEN
        await self.sleep(self.settle_ms / 1000)
        return result

    async def close(self) -> None:
        try:
            result = await self.browser.run(["close"], silent=True, timeout_ms=CLOSE_TIMEOUT_MS)
        except Exception as exc:
            logger.warning("close raised, ignoring: %s", exc)
        else:
            if not result.success:
                logger.info("close failed, ignoring: %s", result.error)
        finally:
            self.state = SessionState.CLOSED

    @asynccontextmanager
    async def opened(self, url: str, *, headless: bool = False) -> AsyncIterator["BrowserSession"]:
        """Open a session and close it on every exit path, including a failed open."""
        try:
            await self.open(url, headless=headless)
            yield self
        finally:
            await self.close()
