# pytest configuration hooks.
#
# Policy: No skipped tests. Skips hide real problems.
# If something cannot run in this environment, use xfail with a clear reason (and fix it later).

from __future__ import annotations

import os
from pathlib import Path
import pytest

from lra.core import config as config_core

# Register pytest-bdd step definitions as a pytest plugin so fixtures are discoverable.
pytest_plugins = ["tests.bdd.steps"]

_SKIP_COUNT = 0


def pytest_configure() -> None:
    if "LRA_CONFIG_PATH" not in os.environ:
        path = Path(__file__).resolve().parents[1] / ".lra-test-config.toml"
        os.environ["LRA_CONFIG_PATH"] = str(path)
    for key in ("LRA_PROJECT_DIR", "LRA_BASE_URL", "LRA_HEADLESS", "LRA_LOG_LEVEL", "LRA_TEST_NOW_ISO"):
        os.environ.pop(key, None)


@pytest.fixture(autouse=True)
def _fresh_config_cache():
    config_core.reset_config_cache()
    yield
    config_core.reset_config_cache()


def pytest_runtest_logreport(report: pytest.TestReport) -> None:
    global _SKIP_COUNT
    if report.when == "setup" and report.outcome == "skipped":
        _SKIP_COUNT += 1


def pytest_sessionfinish(session: pytest.Session, exitstatus: int) -> None:
    if _SKIP_COUNT > 0:
        pytest.exit(f"Skipped tests are not allowed (skipped={_SKIP_COUNT}).", returncode=2)
