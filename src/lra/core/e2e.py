"""End-to-end runs of feature test steps against a live agent-browser session.

One feature runs at a time: the browser is a single stateful resource, so
features (and the steps inside them) are strictly sequential, and every
wait is an `await` on the one running coroutine.
"""

from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass, field
import logging
import os
from pathlib import Path
from typing import Any, Iterable, Mapping

from lra.core import clock, config as config_core, paths
from lra.core import steps as steps_core
from lra.core.actions import LoginCredentials, Sleep, StepExecutor, Timeouts
from lra.core.features import Feature
from lra.core.process import AGENT_BROWSER, AgentBrowser, run_process
from lra.core.session import OPEN_FAILED_PREFIX, OPEN_TIMEOUT_MS, SETTLE_MS, BrowserSession, OpenFailure

logger = logging.getLogger("lra.core.e2e")

DEFAULT_BASE_URL = "http://localhost:3000"
INSTALL_TIMEOUT_MS = 300_000
GENERIC_CHECK_STEP = "generic page check"
DEPENDENCY_MISSING = "dependency not installed: agent-browser"

_TRUE_VALUES = {"1", "true", "yes", "on"}


class DependencyMissingError(RuntimeError):
    def __init__(self, tool: str = AGENT_BROWSER) -> None:
        super().__init__(f"dependency not installed: {tool}")
        self.tool = tool


@dataclass(frozen=True)
class RunOptions:
    base_url: str = DEFAULT_BASE_URL
    headless: bool = False
    timeout_ms: int | None = None
    test_all: bool = False
    screenshot_dir: Path | None = None
    routes: Mapping[str, str] = field(default_factory=lambda: dict(steps_core.DEFAULT_ROUTES))
    credentials: LoginCredentials = LoginCredentials()
    settle_ms: int = SETTLE_MS
    fill_settle_ms: int = 300
    verify_settle_ms: int = 1_500
    default_wait_ms: int = steps_core.DEFAULT_WAIT_MS
    binary: str = AGENT_BROWSER

    @property
    def timeouts(self) -> Timeouts:
        return Timeouts.uniform(self.timeout_ms) if self.timeout_ms else Timeouts()

    def browser(self) -> AgentBrowser:
        return AgentBrowser(self.binary)

    def session_for(self, browser: AgentBrowser, *, sleep: Sleep = asyncio.sleep) -> BrowserSession:
        return BrowserSession(
            browser,
            open_timeout_ms=self.timeout_ms or OPEN_TIMEOUT_MS,
            settle_ms=self.settle_ms,
            sleep=sleep,
        )

    def executor_for(self, browser: AgentBrowser, *, sleep: Sleep = asyncio.sleep) -> StepExecutor:
        return StepExecutor(
            browser,
            base_url=self.base_url,
            routes=self.routes,
            credentials=self.credentials,
            timeouts=self.timeouts,
            fill_settle_ms=self.fill_settle_ms,
            verify_settle_ms=self.verify_settle_ms,
            default_wait_ms=self.default_wait_ms,
            sleep=sleep,
        )


@dataclass(frozen=True)
class StepResult:
    step: str
    passed: bool
    error: str | None = None


@dataclass(frozen=True)
class FeatureResult:
    feature_id: str
    description: str
    steps: tuple[StepResult, ...] = ()
    passed: bool = False
    error: str | None = None
    screenshots: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class BatchResult:
    total: int
    passed: int
    failed: int
    results: tuple[FeatureResult, ...] = ()
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _env_flag(name: str) -> bool | None:
    raw = os.environ.get(name)
    if raw is None:
        return None
    return raw.strip().lower() in _TRUE_VALUES


def load_run_options(
    *,
    base_url: str | None = None,
    headless: bool | None = None,
    test_all: bool = False,
    timeout_ms: int | None = None,
    screenshot_dir: str | None = None,
) -> RunOptions:
    """Build run options: CLI value, then config file, then environment, then default."""
    if base_url is None:
        base_url = config_core.get_str("e2e", "base_url", default=os.environ.get("LRA_BASE_URL") or DEFAULT_BASE_URL)
    if headless is None:
        configured = config_core.get_config_value("e2e", "headless")
        if isinstance(configured, bool):
            headless = configured
        else:
            headless = bool(_env_flag("LRA_HEADLESS"))
    if timeout_ms is None:
        configured_timeout = config_core.get_int("e2e", "timeout_ms", default=0)
        timeout_ms = configured_timeout or None

    routes = dict(steps_core.DEFAULT_ROUTES)
    configured_routes = config_core.get_table("e2e", "routes")
    if configured_routes:
        routes = configured_routes

    defaults = LoginCredentials()
    credentials = LoginCredentials(
        student_id_field=config_core.get_str("e2e", "login", "student_id_field", default=defaults.student_id_field),
        student_id=config_core.get_str("e2e", "login", "student_id", default=defaults.student_id),
        password_field=config_core.get_str("e2e", "login", "password_field", default=defaults.password_field),
        password=config_core.get_str("e2e", "login", "password", default=defaults.password),
        submit_button=config_core.get_str("e2e", "login", "submit_button", default=defaults.submit_button),
    )

    shots = screenshot_dir or config_core.get_config_value("e2e", "screenshot_dir")
    return RunOptions(
        base_url=base_url,
        headless=headless,
        timeout_ms=timeout_ms,
        test_all=test_all,
        screenshot_dir=paths.screenshots_dir(str(shots)) if shots else None,
        routes=routes,
        credentials=credentials,
        settle_ms=config_core.get_int("e2e", "settle_ms", default=SETTLE_MS),
        fill_settle_ms=config_core.get_int("e2e", "fill_settle_ms", default=300),
        verify_settle_ms=config_core.get_int("e2e", "verify_settle_ms", default=1_500),
        default_wait_ms=config_core.get_int("e2e", "default_wait_ms", default=steps_core.DEFAULT_WAIT_MS),
        binary=config_core.get_str("e2e", "binary", default=AGENT_BROWSER),
    )


async def ensure_agent_browser_installed(browser: AgentBrowser) -> bool:
    """Install agent-browser (and its browser download) once if it is missing."""
    if browser.is_installed():
        return True
    logger.warning("%s is not installed, attempting `npm install -g agent-browser`", browser.binary)
    for cmd in (["npm", "install", "-g", "agent-browser"], [browser.binary, "install"]):
        result = await run_process(cmd, silent=True, timeout_ms=INSTALL_TIMEOUT_MS)
        if not result.success:
            logger.error("install step %s failed: %s", cmd, result.error)
            return False
    return browser.is_installed()


def screenshot_path(feature: Feature, options: RunOptions) -> Path:
    directory = options.screenshot_dir or paths.screenshots_dir()
    return directory / f"{feature.id}-{clock.file_stamp()}.png"


async def _capture_failure(executor: StepExecutor, feature: Feature, options: RunOptions) -> str | None:
    path = screenshot_path(feature, options)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        if await executor.screenshot(str(path)):
            return str(path)
    except Exception as exc:
        logger.warning("failure screenshot for %s not captured: %s", feature.id, exc)
    return None


async def run_feature_test(
    feature: Feature,
    options: RunOptions,
    *,
    browser: AgentBrowser | None = None,
    session: BrowserSession | None = None,
    executor: StepExecutor | None = None,
) -> FeatureResult:
    browser = browser or options.browser()
    logger.info("testing %s - %s (base_url=%s headless=%s)", feature.id, feature.description, options.base_url, options.headless)

    if not await ensure_agent_browser_installed(browser):
        return FeatureResult(feature_id=feature.id, description=feature.description, error=DEPENDENCY_MISSING)

    session = session or options.session_for(browser)
    executor = executor or options.executor_for(browser)

    results: list[StepResult] = []
    screenshots: list[str] = []
    error: str | None = None
    current: tuple[int, str] | None = None
    try:
        async with session.opened(options.base_url, headless=options.headless):
            # Faults are handled inside the session so the failure screenshot
            # still sees the page.
            try:
                planned = list(feature.steps) or [GENERIC_CHECK_STEP]
                for index, step in enumerate(planned, start=1):
                    current = (index, step)
                    if feature.steps:
                        outcome = await executor.execute(step, feature)
                    else:
                        outcome = await executor.generic_check()
                    results.append(StepResult(step=step, passed=outcome.passed, error=outcome.error))
                    current = None
                    logger.info("  %d. %s -> %s", index, step, "passed" if outcome.passed else outcome.error)
                    if not outcome.passed:
                        error = f"Step {index} failed: {outcome.error}"
                        shot = await _capture_failure(executor, feature, options)
                        if shot:
                            screenshots.append(shot)
                        break
            except Exception as exc:
                if current is None:
                    raise
                logger.exception("unexpected fault in step %d of %s", current[0], feature.id)
                index, step = current
                results.append(StepResult(step=step, passed=False, error=str(exc)))
                error = f"Step {index} failed: {exc}"
                shot = await _capture_failure(executor, feature, options)
                if shot:
                    screenshots.append(shot)
    except OpenFailure as exc:
        logger.error("%s: %s", feature.id, exc)
        error = str(exc)
    except Exception as exc:
        logger.exception("unexpected fault while testing %s", feature.id)
        error = f"Unexpected error: {exc}"

    passed = error is None and bool(results) and all(r.passed for r in results)
    return FeatureResult(
        feature_id=feature.id,
        description=feature.description,
        steps=tuple(results),
        passed=passed,
        error=error,
        screenshots=tuple(screenshots),
    )


async def run_all(
    features: Iterable[Feature],
    options: RunOptions,
    *,
    browser: AgentBrowser | None = None,
) -> BatchResult:
    """Run accepted features (or all of them with `test_all`) one after another."""
    features = list(features)
    browser = browser or options.browser()
    if not await ensure_agent_browser_installed(browser):
        return BatchResult(total=len(features), passed=0, failed=len(features), error=DEPENDENCY_MISSING)

    results: list[FeatureResult] = []
    passed = failed = 0
    for feature in features:
        if not (feature.passes or options.test_all):
            continue
        result = await run_feature_test(feature, options, browser=browser)
        results.append(result)
        if result.passed:
            passed += 1
        else:
            failed += 1

    logger.info("batch finished: %d passed, %d failed", passed, failed)
    return BatchResult(total=len(results), passed=passed, failed=failed, results=tuple(results))


def failure_type(error: str | None) -> str | None:
    """Map a run error onto the envelope error type the CLI reports."""
    if error is None:
        return None
    if error == DEPENDENCY_MISSING:
        return "DEPENDENCY_MISSING"
    if error.startswith(OPEN_FAILED_PREFIX):
        return "OPEN_FAILED"
    return "STEP_FAILED"
