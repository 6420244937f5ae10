import json
import os
import subprocess
import sys
from pathlib import Path

import pytest

from tests import fake_agent_browser


class Workspace:
    def __init__(self, tmp_path: Path) -> None:
        self.root = tmp_path / "project"
        self.root.mkdir()
        self.bin_dir = tmp_path / "bin"
        self.bin_dir.mkdir()
        self.config = fake_agent_browser.write_config(tmp_path / "config.toml")
        self.env = os.environ.copy()
        self.env["LRA_PROJECT_DIR"] = str(self.root)
        self.env["LRA_CONFIG_PATH"] = str(self.config)
        # Only scripted tools are visible: no git, no npm, no real agent-browser.
        self.env["PATH"] = str(self.bin_dir)

    def browser(self, **kwargs) -> None:
        fake_agent_browser.install(self.bin_dir, **kwargs)

    def calls(self) -> list[list[str]]:
        return fake_agent_browser.calls(self.bin_dir)

    def run(self, *args: str, ok: bool = True) -> dict:
        p = subprocess.run([sys.executable, "-m", "lra.cli", *args], env=self.env, capture_output=True, text=True)
        out = json.loads(p.stdout)
        assert out["ok"] is ok, p.stdout + p.stderr
        assert (p.returncode == 0) is ok
        return out


@pytest.fixture()
def ws(tmp_path):
    workspace = Workspace(tmp_path)
    workspace.run("init", "demo")
    return workspace


def test_single_feature_passes_and_run_is_recorded(ws):
    ws.browser()
    ws.run("add", "Login page", "--step", "打开登录页", "--step", "验证显示登录")

    out = ws.run("test", "feat-001")
    result = out["data"]["result"]
    assert result["passed"] is True
    assert [s["passed"] for s in result["steps"]] == [True, True]
    assert ws.calls() == [
        ["open", "http://app.test"],
        ["open", "http://app.test/login"],
        ["snapshot", "-i", "--json"],
        ["close"],
    ]

    run_file = ws.root / ".agent" / "runs" / f"{out['data']['run_id']}.json"
    record = json.loads(run_file.read_text(encoding="utf-8"))
    assert record["result"]["feature_id"] == "feat-001"
    assert out["artifacts"][0]["path"] == str(run_file)


def test_headed_flag_and_base_url_override(ws):
    ws.browser()
    ws.run("add", "Home", "--step", "打开首页")
    ws.run("test", "feat-001", "--headed", "--base-url", "http://other.test")
    assert ws.calls()[0] == ["open", "http://other.test", "--headed"]


def test_failing_step_reports_position_and_screenshot(ws):
    ws.browser(fail=["find", "click"])
    ws.run("add", "Select course", "--step", "打开课程列表页", "--step", "点击选课按钮", "--step", "验证选课成功")

    out = ws.run("test", "feat-001", ok=False)
    assert out["error"]["type"] == "STEP_FAILED"
    assert out["error"]["message"].startswith("Step 2 failed: ")
    details = out["error"]["details"]
    steps = details["result"]["steps"]
    assert [s["step"] for s in steps] == ["打开课程列表页", "点击选课按钮"]
    shot = Path(details["result"]["screenshots"][0])
    assert shot.exists()
    assert shot.parent == ws.root / ".agent" / "screenshots"
    verbs = [c[0] for c in ws.calls()]
    assert verbs[-2:] == ["screenshot", "close"]
    assert "snapshot" not in verbs


def test_open_failure(ws):
    ws.browser(fail=["open"])
    ws.run("add", "Anything", "--step", "打开登录页")
    out = ws.run("test", "feat-001", ok=False)
    assert out["error"]["type"] == "OPEN_FAILED"
    assert [c[0] for c in ws.calls()] == ["open", "close", "open", "close"]


def test_batch_runs_completed_features_only(ws):
    ws.browser()
    ws.run("add", "Login", "--step", "打开登录页")
    ws.run("add", "Schedule", "--step", "打开课表")
    ws.run("done", "feat-002")

    out = ws.run("test", "--all")
    assert out["data"]["total"] == 1
    assert [r["feature_id"] for r in out["data"]["results"]] == ["feat-002"]

    everything = ws.run("test", "--all", "--include-pending")
    assert [r["feature_id"] for r in everything["data"]["results"]] == ["feat-001", "feat-002"]


def test_batch_failure_counts(ws):
    ws.browser(fail=["open http://app.test/schedule"])
    ws.run("add", "Login", "--step", "打开登录页")
    ws.run("add", "Schedule", "--step", "打开课表")
    out = ws.run("test", "--all", "--include-pending", ok=False)
    assert out["error"]["type"] == "STEP_FAILED"
    assert out["error"]["details"]["passed"] == 1
    assert out["error"]["details"]["failed"] == 1


def test_id_and_all_together_is_rejected(ws):
    out = ws.run("test", "feat-001", "--all", ok=False)
    assert out["error"]["type"] == "INVALID_ARGUMENT"


def test_missing_agent_browser_and_npm(ws):
    ws.run("add", "Login", "--step", "打开登录页")
    out = ws.run("test", "feat-001", ok=False)
    assert out["error"]["type"] == "DEPENDENCY_MISSING"
    assert out["error"]["details"]["result"]["steps"] == []


def test_verify_marks_done_only_on_pass(ws):
    ws.browser(page_text="欢迎回来")
    ws.run("add", "Welcome", "--step", "打开首页", "--step", "验证欢迎")
    ws.run("add", "Broken", "--step", "打开首页", "--step", "验证不存在")

    passed = ws.run("verify", "feat-001", "--notes", "e2e ok")
    assert passed["data"]["marked_done"] is True
    assert passed["data"]["progress"]["completed"] == 1

    failed = ws.run("verify", "feat-002", ok=False)
    assert failed["error"]["type"] == "STEP_FAILED"
    assert failed["error"]["details"]["marked_done"] is False

    listed = ws.run("list", "--filter", "done")
    assert [f["id"] for f in listed["data"]["features"]] == ["feat-001"]
    assert listed["data"]["features"][0]["notes"] == "e2e ok"


def test_browser_passthrough(ws):
    ws.browser(url="http://app.test/courses")
    out = ws.run("browser", "url")
    assert out["data"]["output"].strip() == "http://app.test/courses"

    ws.run("browser", "snapshot", "-i", "--json")
    assert ws.calls()[-1] == ["snapshot", "-i", "--json"]


def test_browser_passthrough_failure(ws):
    ws.browser(fail=["close"])
    out = ws.run("browser", "close", ok=False)
    assert out["error"]["type"] == "BACKEND_FAILED"


def test_browser_passthrough_without_agent_browser(ws):
    out = ws.run("browser", "close", ok=False)
    assert out["error"]["type"] == "TOOL_MISSING"


def test_ui_review_captures_pages(ws, tmp_path):
    ws.browser()
    ws.config.write_text(
        ws.config.read_text(encoding="utf-8")
        + '[ui_review]\npage_settle_ms = 0\n\n[[ui_review.pages]]\nname = "login"\npath = "/login"\n\n'
        '[[ui_review.pages]]\nname = "courses"\npath = "/courses"\nrequires_auth = true\n',
        encoding="utf-8",
    )
    out = ws.run("ui-review", "--output", str(tmp_path / "review"))
    assert [s["name"] for s in out["data"]["screenshots"]] == ["login", "courses"]
    assert (tmp_path / "review" / "ui-review-results.json").exists()
    assert (tmp_path / "review" / "courses.png").exists()


def test_ui_review_without_screenshots_fails(ws, tmp_path):
    ws.browser(fail=["screenshot"])
    ws.config.write_text(
        ws.config.read_text(encoding="utf-8")
        + '[ui_review]\npage_settle_ms = 0\n\n[[ui_review.pages]]\nname = "login"\npath = "/login"\n',
        encoding="utf-8",
    )
    out = ws.run("ui-review", "--output", str(tmp_path / "review"), ok=False)
    assert out["error"]["type"] == "STEP_FAILED"


def test_batch_requires_all_flag(ws):
    ws.browser()
    ws.run("add", "Login", "--step", "打开登录页")
    out = ws.run("test", ok=False)
    assert out["error"]["type"] == "INVALID_ARGUMENT"
    assert ws.calls() == []


def test_ui_review_headed_opens_a_visible_session(ws, tmp_path):
    ws.browser()
    ws.config.write_text(
        ws.config.read_text(encoding="utf-8")
        + '[ui_review]\npage_settle_ms = 0\n\n[[ui_review.pages]]\nname = "login"\npath = "/login"\n',
        encoding="utf-8",
    )
    ws.run("ui-review", "--headed", "--output", str(tmp_path / "review"))
    calls = ws.calls()
    assert calls[0] == ["open", "http://app.test", "--headed"]
    assert calls[-1] == ["close"]


def test_ui_review_open_failure(ws, tmp_path):
    ws.browser(fail=["open"])
    out = ws.run("ui-review", "--output", str(tmp_path / "review"), ok=False)
    assert out["error"]["type"] == "OPEN_FAILED"
    assert out["error"]["details"]["url"] == "http://app.test"
