from __future__ import annotations

import asyncio

import pytest

from lra.core.session import BrowserSession, OpenFailure, SessionState
from tests.unit._fakes import FakeBrowser, RecordingSleep


def _session(browser: FakeBrowser, sleep: RecordingSleep | None = None) -> BrowserSession:
    return BrowserSession(browser, settle_ms=2_000, sleep=sleep or RecordingSleep())


def test_open_headed_by_default_and_settles():
    browser = FakeBrowser()
    sleep = RecordingSleep()
    session = _session(browser, sleep)
    asyncio.run(session.open("http://app.test"))
    assert browser.commands == [["open", "http://app.test", "--headed"]]
    assert sleep.waits == [2.0]
    assert session.state is SessionState.OPEN


def test_open_headless_omits_headed_flag():
    browser = FakeBrowser()
    asyncio.run(_session(browser).open("http://app.test", headless=True))
    assert browser.commands == [["open", "http://app.test"]]


def test_open_retries_once_after_closing_stale_session():
    browser = FakeBrowser().on("open", success=False, times=1)
    session = _session(browser)
    asyncio.run(session.open("http://app.test", headless=True))
    assert browser.verbs() == ["open", "close", "open"]
    assert session.state is SessionState.OPEN


def test_open_fails_after_single_retry():
    browser = FakeBrowser().on("open", success=False, error="port in use")
    sleep = RecordingSleep()
    session = _session(browser, sleep)
    with pytest.raises(OpenFailure) as excinfo:
        asyncio.run(session.open("http://app.test", headless=True))
    assert browser.verbs() == ["open", "close", "open"]
    assert "port in use" in str(excinfo.value)
    assert excinfo.value.url == "http://app.test"
    assert session.state is SessionState.CLOSED
    assert sleep.waits == []


def test_close_swallows_failures_and_exceptions():
    browser = FakeBrowser().on("close", raises=RuntimeError("gone"))
    session = _session(browser)
    asyncio.run(session.close())
    assert session.state is SessionState.CLOSED

    failing = FakeBrowser().on("close", success=False)
    asyncio.run(_session(failing).close())
    assert failing.verbs() == ["close"]


def test_opened_context_closes_even_when_open_fails():
    browser = FakeBrowser().on("open", success=False)
    session = _session(browser)

    async def scenario() -> None:
        async with session.opened("http://app.test", headless=True):
            raise AssertionError("body must not run")

    with pytest.raises(OpenFailure):
        asyncio.run(scenario())
    assert browser.verbs() == ["open", "close", "open", "close"]
