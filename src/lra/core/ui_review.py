from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass
import logging
from pathlib import Path
from typing import Sequence

from lra.core import clock, config as config_core, jsonio
from lra.core.actions import Sleep
from lra.core.e2e import DependencyMissingError, RunOptions, ensure_agent_browser_installed
from lra.core.envelope import Artifact
from lra.core.process import AgentBrowser

logger = logging.getLogger("lra.core.ui_review")

RESULTS_FILE = "ui-review-results.json"
PAGE_SETTLE_MS = 2_000


@dataclass(frozen=True)
class ReviewPage:
    name: str
    path: str
    label: str
    requires_auth: bool = False


@dataclass(frozen=True)
class Screenshot:
    name: str
    label: str
    path: str


DEFAULT_PAGES: tuple[ReviewPage, ...] = (
    ReviewPage("login", "/login", "登录页"),
    ReviewPage("courses", "/courses", "课程列表页", requires_auth=True),
    ReviewPage("selected", "/selected", "已选课程页", requires_auth=True),
    ReviewPage("schedule", "/schedule", "课表页", requires_auth=True),
    ReviewPage("profile", "/profile", "个人中心页", requires_auth=True),
)


@dataclass(frozen=True)
class ReviewResult:
    output_dir: str
    screenshots: tuple[Screenshot, ...]
    results_path: str

    @property
    def artifacts(self) -> list[Artifact]:
        items = [Artifact(path=s.path, mime="image/png", purpose=f"ui_review.{s.name}") for s in self.screenshots]
        items.append(Artifact(path=self.results_path, mime="application/json", purpose="ui_review.results"))
        return items


def configured_pages() -> tuple[ReviewPage, ...]:
    raw = config_core.get_config_value("ui_review", "pages")
    if not isinstance(raw, list) or not raw:
        return DEFAULT_PAGES
    pages: list[ReviewPage] = []
    for entry in raw:
        if not isinstance(entry, dict) or "name" not in entry or "path" not in entry:
            raise ValueError(f"Invalid ui_review page entry: {entry!r}")
        pages.append(
            ReviewPage(
                name=str(entry["name"]),
                path=str(entry["path"]),
                label=str(entry.get("label") or entry["name"]),
                requires_auth=bool(entry.get("requires_auth", False)),
            )
        )
    return tuple(pages)


async def capture_screenshots(
    options: RunOptions,
    output_dir: Path,
    *,
    pages: Sequence[ReviewPage] = DEFAULT_PAGES,
    browser: AgentBrowser | None = None,
    sleep: Sleep = asyncio.sleep,
    page_settle_ms: int = PAGE_SETTLE_MS,
) -> list[Screenshot]:
    """Log in once if needed, then take a full-page screenshot of every page."""
    browser = browser or options.browser()
    session = options.session_for(browser, sleep=sleep)
    executor = options.executor_for(browser, sleep=sleep)
    output_dir.mkdir(parents=True, exist_ok=True)

    screenshots: list[Screenshot] = []
    logged_in = False
    async with session.opened(options.base_url, headless=options.headless):
        for page in pages:
            if page.requires_auth and not logged_in:
                logger.info("logging in before %s", page.label)
                await executor.open_url(executor.resolve_url("/login"))
                await sleep(page_settle_ms / 1000)
                await executor.login()
                await sleep(page_settle_ms / 1000)
                logged_in = True

            await executor.open_url(executor.resolve_url(page.path))
            await sleep(page_settle_ms / 1000)

            target = output_dir / f"{page.name}.png"
            # A file from an earlier review must not pass for this one.
            target.unlink(missing_ok=True)
            if await executor.screenshot(str(target), full=True) and target.exists():
                screenshots.append(Screenshot(name=page.name, label=page.label, path=str(target)))
                logger.info("captured %s -> %s", page.label, target)
            else:
                logger.warning("failed to capture %s", page.label)
    return screenshots


async def run_ui_review(options: RunOptions, output_dir: Path, *, browser: AgentBrowser | None = None) -> ReviewResult:
    browser = browser or options.browser()
    if not await ensure_agent_browser_installed(browser):
        raise DependencyMissingError(browser.binary)
    shots = await capture_screenshots(
        options,
        output_dir,
        pages=configured_pages(),
        browser=browser,
        page_settle_ms=config_core.get_int("ui_review", "page_settle_ms", default=PAGE_SETTLE_MS),
    )
    results_path = output_dir / RESULTS_FILE
    payload = {
        "generated_at": clock.now_utc().isoformat(),
        "base_url": options.base_url,
        "screenshots": [asdict(s) for s in shots],
    }
    results_path.write_text(jsonio.dumps(payload), encoding="utf-8")
    return ReviewResult(output_dir=str(output_dir), screenshots=tuple(shots), results_path=str(results_path))
