from __future__ import annotations

import asyncio
from dataclasses import dataclass
import json
import logging
from typing import Any, Awaitable, Callable, Iterator, Mapping, Sequence
from urllib.parse import urlparse

from lra.core import steps as steps_core
from lra.core.features import Feature
from lra.core.process import AgentBrowser, CommandResult
from lra.core.steps import ActionKind

logger = logging.getLogger("lra.core.actions")

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class Timeouts:
    navigate_ms: int = 10_000
    action_ms: int = 5_000
    read_ms: int = 10_000
    screenshot_ms: int = 10_000

    @classmethod
    def uniform(cls, timeout_ms: int) -> "Timeouts":
        return cls(navigate_ms=timeout_ms, action_ms=timeout_ms, read_ms=timeout_ms, screenshot_ms=timeout_ms)


@dataclass(frozen=True)
class LoginCredentials:
    student_id_field: str = "学号"
    student_id: str = "2021001"
    password_field: str = "密码"
    password: str = "123456"
    submit_button: str = "登录"


@dataclass(frozen=True)
class Attempt:
    """One candidate low-level command for an action."""

    args: tuple[str, ...]
    timeout_ms: int


@dataclass(frozen=True)
class ActionOutcome:
    passed: bool
    error: str | None = None


PASSED = ActionOutcome(passed=True)


def _css_string(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


def _scalars(node: Any) -> Iterator[str]:
    if isinstance(node, dict):
        for value in node.values():
            yield from _scalars(value)
    elif isinstance(node, list):
        for item in node:
            yield from _scalars(item)
    elif isinstance(node, str):
        yield node
    elif isinstance(node, (int, float)) and not isinstance(node, bool):
        yield str(node)


def snapshot_text(raw: str) -> str:
    """Join the values of `snapshot --json` output; unparseable output is no evidence."""
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError):
        return ""
    return "\n".join(_scalars(parsed))


def url_matches_route(current_url: str, route: str) -> bool:
    path = urlparse(current_url.strip()).path
    return path.rstrip("/") == route.rstrip("/")


class StepExecutor:
    def __init__(
        self,
        browser: AgentBrowser,
        *,
        base_url: str,
        routes: Mapping[str, str] = steps_core.DEFAULT_ROUTES,
        credentials: LoginCredentials = LoginCredentials(),
        timeouts: Timeouts = Timeouts(),
        fill_settle_ms: int = 300,
        verify_settle_ms: int = 1_500,
        default_wait_ms: int = steps_core.DEFAULT_WAIT_MS,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.browser = browser
        self.base_url = base_url
        self.routes = routes
        self.credentials = credentials
        self.timeouts = timeouts
        self.fill_settle_ms = fill_settle_ms
        self.verify_settle_ms = verify_settle_ms
        self.default_wait_ms = default_wait_ms
        self.sleep = sleep

    async def _pause(self, ms: int) -> None:
        await self.sleep(ms / 1000)

    async def _command(self, args: Sequence[str], timeout_ms: int) -> CommandResult:
        return await self.browser.run(list(args), silent=True, timeout_ms=timeout_ms)

    async def first_success(self, attempts: Sequence[Attempt]) -> CommandResult:
        """Run attempts in order and stop at the first one that succeeds."""
        result = CommandResult(success=False, error="no strategy attempted")
        for attempt in attempts:
            result = await self._command(attempt.args, attempt.timeout_ms)
            if result.success:
                return result
            logger.debug("strategy %s failed: %s", attempt.args[:3], result.error)
        return result

    async def execute(self, step: str, feature: Feature | None = None) -> ActionOutcome:
        kind = steps_core.classify(step)
        logger.info("step %r classified as %s", step, kind.value)
        if kind is ActionKind.NAVIGATE:
            return await self.navigate(step)
        if kind is ActionKind.CLICK:
            return await self.click(step)
        if kind is ActionKind.FILL:
            if steps_core.is_credentials_step(step):
                return await self.fill_credentials()
            return await self.fill(step, feature)
        if kind is ActionKind.VERIFY:
            return await self.verify(step)
        if kind is ActionKind.LOGIN:
            return await self.login()
        if kind is ActionKind.WAIT:
            return await self.wait(step)
        return PASSED

    def resolve_url(self, target: str) -> str:
        if steps_core.is_absolute_url(target):
            return target
        return f"{self.base_url.rstrip('/')}/{target.lstrip('/')}"

    async def open_url(self, url: str) -> CommandResult:
        return await self._command(["open", url], self.timeouts.navigate_ms)

    async def navigate(self, step: str) -> ActionOutcome:
        url = self.resolve_url(steps_core.extract_target(step, self.routes))
        result = await self.open_url(url)
        if result.success:
            return PASSED
        return ActionOutcome(passed=False, error=f"Failed to open {url}: {result.error}")

    def click_attempts(self, target: str) -> list[Attempt]:
        timeout = self.timeouts.action_ms
        return [
            Attempt(("find", "role", "button", "click", "--name", target), timeout),
            Attempt(("find", "text", target, "click"), timeout),
            Attempt(("click", f"text={target}"), timeout),
        ]

    async def click(self, step: str) -> ActionOutcome:
        target = steps_core.extract_click_target(step)
        result = await self.first_success(self.click_attempts(target))
        if result.success:
            return PASSED
        return ActionOutcome(passed=False, error=f"Could not click {target!r}: {result.error}")

    def fill_attempts(self, field: str, value: str) -> list[Attempt]:
        timeout = self.timeouts.action_ms
        selector = f'input[name*="{_css_string(field)}"], textarea[name*="{_css_string(field)}"]'
        return [
            Attempt(("find", "placeholder", field, "fill", value), timeout),
            Attempt(("fill", selector, value), timeout),
        ]

    async def fill_field(self, field: str, value: str) -> CommandResult:
        return await self.first_success(self.fill_attempts(field, value))

    async def fill(self, step: str, feature: Feature | None = None) -> ActionOutcome:
        target = steps_core.extract_input(step, feature)
        result = await self.fill_field(target.field, target.value)
        if result.success:
            return PASSED
        return ActionOutcome(passed=False, error=f"Could not fill {target.field!r}: {result.error}")

    async def fill_credentials(self) -> ActionOutcome:
        creds = self.credentials
        first = await self.fill_field(creds.student_id_field, creds.student_id)
        await self._pause(self.fill_settle_ms)
        second = await self.fill_field(creds.password_field, creds.password)
        if first.success and second.success:
            return PASSED
        failed = creds.student_id_field if not first.success else creds.password_field
        error = first.error if not first.success else second.error
        return ActionOutcome(passed=False, error=f"Could not fill {failed!r}: {error}")

    async def login(self) -> ActionOutcome:
        creds = self.credentials
        await self.fill_field(creds.student_id_field, creds.student_id)
        await self._pause(self.fill_settle_ms)
        await self.fill_field(creds.password_field, creds.password)
        await self._pause(self.fill_settle_ms)
        result = await self._command(
            ["find", "role", "button", "click", "--name", creds.submit_button],
            self.timeouts.action_ms,
        )
        if result.success:
            return PASSED
        return ActionOutcome(passed=False, error=f"Could not click {creds.submit_button!r}: {result.error}")

    async def read_snapshot(self) -> CommandResult:
        return await self._command(["snapshot", "-i", "--json"], self.timeouts.read_ms)

    async def _snapshot_evidence(self) -> str:
        result = await self.read_snapshot()
        return snapshot_text(result.output) if result.success else ""

    async def _page_text_evidence(self) -> str:
        result = await self._command(["get", "text", "body"], self.timeouts.read_ms)
        return result.output if result.success else ""

    async def _url_evidence(self, target: str) -> bool:
        route = steps_core.resolve_route(target, self.routes)
        if route is None:
            return False
        result = await self._command(["url"], self.timeouts.read_ms)
        return result.success and url_matches_route(result.output, route)

    async def verify(self, step: str) -> ActionOutcome:
        await self._pause(self.verify_settle_ms)
        target = steps_core.extract_verify_target(step)
        if not target:
            return await self.generic_check()
        if target in await self._snapshot_evidence():
            return PASSED
        if target in await self._page_text_evidence():
            return PASSED
        if await self._url_evidence(target):
            return PASSED
        return ActionOutcome(passed=False, error=f"Expected {target!r} on page, not found")

    async def wait(self, step: str) -> ActionOutcome:
        await self._pause(steps_core.parse_wait_ms(step, self.default_wait_ms))
        return PASSED

    async def generic_check(self) -> ActionOutcome:
        result = await self.read_snapshot()
        if result.success:
            return PASSED
        return ActionOutcome(passed=False, error=f"Page snapshot failed: {result.error}")

    async def screenshot(self, path: str, *, full: bool = False) -> bool:
        args = ["screenshot", path]
        if full:
            args.append("--full")
        result = await self._command(args, self.timeouts.screenshot_ms)
        return result.success
