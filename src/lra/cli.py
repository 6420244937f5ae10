from __future__ import annotations

import asyncio
import os
import shutil
from pathlib import Path
from typing import Any, Optional

import typer

from lra.core import (
    clock,
    config as config_core,
    e2e,
    envelope,
    features as features_core,
    ids,
    logs,
    paths,
    project,
    ui_review,
)
from lra.core.features import FeatureNotFoundError, ProjectNotFoundError
from lra.core.jsonio import dumps
from lra.core.process import ProcessFailedError, ToolMissingError
from lra.core.session import OpenFailure

VERSION = "0.1.0"

app = typer.Typer(add_completion=False, help="lra - long-running agent harness: feature list, progress, browser e2e checks")


def _emit(out: dict) -> None:
    typer.echo(dumps(out))
    if out.get("ok") is True:
        raise typer.Exit(code=0)
    raise typer.Exit(code=1)


def _project_err(command: str, exc: Exception, **details: Any) -> dict:
    if isinstance(exc, ProjectNotFoundError):
        return envelope.err(command=command, error_type="NOT_A_PROJECT", message=str(exc), details={"path": exc.path})
    if isinstance(exc, FeatureNotFoundError):
        return envelope.err(
            command=command,
            error_type="NOT_FOUND",
            message=str(exc),
            details={"feature_id": exc.feature_id, **details},
        )
    return envelope.err(command=command, error_type="INVALID_ARGUMENT", message=str(exc), details=details)


def _progress(metadata: dict) -> dict:
    return {
        "total": metadata.get("total_features", 0),
        "completed": metadata.get("completed_features", 0),
        "percentage": metadata.get("completion_percentage", 0),
    }


@app.callback()
def main(
    ctx: typer.Context,
    log_level: Optional[str] = typer.Option(None, "--log-level", help="DEBUG|INFO|WARNING|ERROR (default from config)"),
):
    try:
        logs.configure(log_level)
    except ValueError as exc:
        _emit(
            envelope.err(
                command=ctx.invoked_subcommand or "lra",
                error_type="INVALID_ARGUMENT",
                message=str(exc),
                details={"log_level": log_level},
            )
        )


# ---- Global commands ----
@app.command()
def version(json_output: bool = typer.Option(False, "--json", help="Output JSON envelope")):
    if json_output:
        _emit(envelope.ok(command="version", data={"version": VERSION}))
    typer.echo(f"lra {VERSION}")


@app.command()
def doctor(json_output: bool = typer.Option(True, "--json")):
    root = paths.project_dir()
    features_file = paths.features_path(root)
    checks: list[dict] = [
        {
            "name": "project.path",
            "ok": features_file.exists(),
            "details": {
                "path": str(root),
                "features_file": str(features_file),
                "override": os.environ.get("LRA_PROJECT_DIR"),
            },
        }
    ]

    binary = "agent-browser"
    config_file = config_core.config_path()
    config_details: dict[str, Any] = {"path": str(config_file), "exists": config_file.exists()}
    try:
        binary = config_core.get_str("e2e", "binary", default=binary)
    except ValueError as exc:
        config_details["error"] = str(exc)
        checks.append({"name": "config", "ok": False, "details": config_details})
    else:
        checks.append({"name": "config", "ok": True, "details": config_details})

    for name, tool in (("agent-browser", binary), ("npm", "npm"), ("git", "git")):
        path = shutil.which(tool)
        checks.append({"name": f"tool.{name}", "ok": path is not None, "details": {"path": path}})

    _emit(envelope.ok(command="doctor", data={"checks": checks}))


# -------------- project --------------
@app.command()
def init(
    name: Optional[str] = typer.Argument(None, help="Project name (defaults to the directory name)"),
    type: str = typer.Option("web", "--type", "-t", help="web|api|cli|library"),
    directory: Optional[str] = typer.Option(None, "--dir", "-d", help="Target directory"),
    json_output: bool = typer.Option(True, "--json"),
):
    root = Path(directory).expanduser() if directory else None
    try:
        result = project.init_project(name, project_type=type, root=root)
        out = envelope.ok(
            command="init",
            data={
                "root": result.root,
                "project_id": result.project_id,
                "project_name": result.project_name,
                "project_type": result.project_type,
                "files": list(result.files),
                "git_initialized": result.git_initialized,
            },
        )
    except project.AlreadyInitializedError as exc:
        out = envelope.err(command="init", error_type="ALREADY_INITIALIZED", message=str(exc), details={"path": exc.path})
    except ValueError as exc:
        out = envelope.err(command="init", error_type="INVALID_ARGUMENT", message=str(exc), details={"type": type})
    _emit(out)


@app.command()
def status(json_output: bool = typer.Option(True, "--json")):
    try:
        state = features_core.load_project()
    except (ProjectNotFoundError, ValueError) as exc:
        _emit(_project_err("status", exc))
    metadata = state.data.get("metadata") or features_core.update_metadata(state.features)
    out = envelope.ok(
        command="status",
        data={
            "project_name": state.data.get("project_name"),
            "progress": _progress(metadata),
            "by_priority": metadata.get("by_priority", {}),
            "by_category": metadata.get("by_category", {}),
            "next_feature": features_core.next_pending_feature(state.features),
        },
    )
    _emit(out)


@app.command()
def add(
    description: str = typer.Argument(...),
    priority: str = typer.Option("medium", "--priority", "-p", help="critical|high|medium|low"),
    category: str = typer.Option("functional", "--category", "-c", help="functional|style|performance|security"),
    step: list[str] = typer.Option([], "--step", "-s", help="Test step (repeatable, in order)"),
    json_output: bool = typer.Option(True, "--json"),
):
    try:
        feature = features_core.add_feature(description, category=category, priority=priority, steps=step)
        out = envelope.ok(command="add", data={"feature": feature})
    except (ProjectNotFoundError, ValueError) as exc:
        out = _project_err("add", exc, priority=priority, category=category)
    _emit(out)


@app.command("next")
def next_feature(json_output: bool = typer.Option(True, "--json")):
    try:
        state = features_core.load_project()
    except (ProjectNotFoundError, ValueError) as exc:
        _emit(_project_err("next", exc))
    upcoming = features_core.next_pending_feature(state.features)
    _emit(envelope.ok(command="next", data={"feature": upcoming, "all_done": upcoming is None}))


@app.command()
def done(
    feature_id: str = typer.Argument(...),
    notes: Optional[str] = typer.Option(None, "--notes", "-n"),
    json_output: bool = typer.Option(True, "--json"),
):
    try:
        updated, metadata = features_core.mark_done(feature_id, notes=notes)
        out = envelope.ok(command="done", data={"feature": updated, "progress": _progress(metadata)})
    except (ProjectNotFoundError, FeatureNotFoundError, ValueError) as exc:
        out = _project_err("done", exc)
    _emit(out)


@app.command()
def commit(
    feature_id: Optional[str] = typer.Argument(None),
    message: Optional[str] = typer.Option(None, "--message", "-m"),
    json_output: bool = typer.Option(True, "--json"),
):
    try:
        result = project.commit_progress(feature_id, message=message)
        out = envelope.ok(command="commit", data={"message": result.message, "progress": _progress(result.metadata)})
    except (ProjectNotFoundError, ValueError) as exc:
        out = _project_err("commit", exc)
    except project.NotAGitRepoError as exc:
        out = envelope.err(command="commit", error_type="NOT_A_GIT_REPO", message=str(exc), details={"path": exc.path})
    except project.NothingToCommitError as exc:
        out = envelope.err(command="commit", error_type="NOTHING_TO_COMMIT", message=str(exc))
    except ToolMissingError as exc:
        out = envelope.err(command="commit", error_type="TOOL_MISSING", message=str(exc), details={"tool": exc.tool})
    except ProcessFailedError as exc:
        out = envelope.err(
            command="commit",
            error_type="BACKEND_FAILED",
            message=str(exc),
            details={"returncode": exc.returncode, "stderr": exc.stderr[-2000:]},
        )
    _emit(out)


@app.command("list")
def list_features(
    filter: str = typer.Option("all", "--filter", "-f", help="all|pending|done"),
    priority: Optional[str] = typer.Option(None, "--priority", "-p"),
    json_output: bool = typer.Option(True, "--json"),
):
    try:
        state = features_core.load_project()
        items = features_core.filter_features(state.features, status=filter, priority=priority)
        out = envelope.ok(
            command="list",
            data={"features": items, "count": len(items)},
            limits={"filter": filter, "priority": priority},
        )
    except (ProjectNotFoundError, ValueError) as exc:
        out = _project_err("list", exc, filter=filter)
    _emit(out)


@app.command()
def export(
    output: Optional[str] = typer.Option(None, "--output", "-o"),
    json_output: bool = typer.Option(True, "--json"),
):
    try:
        target = project.export_project(output)
        out = envelope.ok(
            command="export",
            data={"path": str(target)},
            artifacts=[envelope.Artifact(path=str(target), mime="application/json", purpose="export", bytes=target.stat().st_size)],
        )
    except (ProjectNotFoundError, ValueError) as exc:
        out = _project_err("export", exc)
    _emit(out)


# -------------- e2e --------------
def _write_run(run_id: str, command: str, options: e2e.RunOptions, result: dict) -> Path:
    directory = paths.runs_dir()
    directory.mkdir(parents=True, exist_ok=True)
    target = directory / f"{run_id}.json"
    record = {
        "run_id": run_id,
        "command": command,
        "finished_at": clock.now_utc().isoformat(),
        "base_url": options.base_url,
        "headless": options.headless,
        "result": result,
    }
    target.write_text(dumps(record), encoding="utf-8")
    return target


def _run_artifacts(run_path: Path, results: list[e2e.FeatureResult]) -> list[envelope.Artifact]:
    items = [envelope.Artifact(path=str(run_path), mime="application/json", purpose="e2e.run")]
    for result in results:
        for shot in result.screenshots:
            items.append(envelope.Artifact(path=shot, mime="image/png", purpose=f"e2e.failure.{result.feature_id}"))
    return items


def _feature_run_envelope(command: str, result: e2e.FeatureResult, run_id: str, run_path: Path, extra: dict | None = None) -> dict:
    data = {"run_id": run_id, "result": result.to_dict(), **(extra or {})}
    if result.passed:
        return envelope.ok(command=command, data=data, artifacts=_run_artifacts(run_path, [result]))
    return envelope.err(
        command=command,
        error_type=e2e.failure_type(result.error) or "STEP_FAILED",
        message=result.error or f"Feature {result.feature_id} did not pass",
        details={**data, "run_path": str(run_path)},
    )


@app.command("test")
def test_features(
    feature_id: Optional[str] = typer.Argument(None, help="Feature to test (or use --all)"),
    all_features: bool = typer.Option(False, "--all", "-a", help="Run the batch of completed features"),
    include_pending: bool = typer.Option(False, "--include-pending", help="Batch also runs features not yet passing"),
    base_url: Optional[str] = typer.Option(None, "--base-url", "-b"),
    headless: Optional[bool] = typer.Option(None, "--headless/--headed"),
    json_output: bool = typer.Option(True, "--json"),
):
    if feature_id and all_features:
        _emit(envelope.err(command="test", error_type="INVALID_ARGUMENT", message="Use a feature id or --all, not both"))
    if not feature_id and not all_features:
        _emit(envelope.err(command="test", error_type="INVALID_ARGUMENT", message="Pass a feature id, or --all for the batch"))
    try:
        options = e2e.load_run_options(base_url=base_url, headless=headless, test_all=include_pending)
        if feature_id:
            feature = features_core.get_feature(feature_id)
        else:
            batch = features_core.all_features()
    except (ProjectNotFoundError, FeatureNotFoundError, ValueError) as exc:
        _emit(_project_err("test", exc))

    run_id = ids.run_id()
    if feature_id:
        result = asyncio.run(e2e.run_feature_test(feature, options))
        run_path = _write_run(run_id, "test", options, result.to_dict())
        _emit(_feature_run_envelope("test", result, run_id, run_path))

    outcome = asyncio.run(e2e.run_all(batch, options))
    run_path = _write_run(run_id, "test", options, outcome.to_dict())
    data = {"run_id": run_id, **outcome.to_dict()}
    if outcome.error is None and outcome.failed == 0:
        _emit(envelope.ok(command="test", data=data, artifacts=_run_artifacts(run_path, list(outcome.results))))
    if outcome.error is not None:
        error_type = e2e.failure_type(outcome.error) or "STEP_FAILED"
        message = outcome.error
    else:
        error_type = "STEP_FAILED"
        message = f"{outcome.failed} of {outcome.total} features failed"
    _emit(envelope.err(command="test", error_type=error_type, message=message, details={**data, "run_path": str(run_path)}))


@app.command()
def verify(
    feature_id: str = typer.Argument(...),
    notes: Optional[str] = typer.Option(None, "--notes", "-n"),
    base_url: Optional[str] = typer.Option(None, "--base-url", "-b"),
    headless: Optional[bool] = typer.Option(None, "--headless/--headed"),
    json_output: bool = typer.Option(True, "--json"),
):
    """Run a feature's steps and mark it complete when they all pass."""
    try:
        options = e2e.load_run_options(base_url=base_url, headless=headless)
        feature = features_core.get_feature(feature_id)
    except (ProjectNotFoundError, FeatureNotFoundError, ValueError) as exc:
        _emit(_project_err("verify", exc))

    run_id = ids.run_id()
    result = asyncio.run(e2e.run_feature_test(feature, options))
    run_path = _write_run(run_id, "verify", options, result.to_dict())
    extra: dict[str, Any] = {"marked_done": False}
    if result.passed:
        _, metadata = features_core.mark_done(feature_id, notes=notes)
        extra = {"marked_done": True, "progress": _progress(metadata)}
    _emit(_feature_run_envelope("verify", result, run_id, run_path, extra))


@app.command(
    "browser",
    context_settings={"allow_extra_args": True, "ignore_unknown_options": True},
)
def browser_passthrough(
    args: list[str] = typer.Argument(..., help="Arguments passed to agent-browser as-is, e.g. `open URL` or `close`"),
    timeout_ms: Optional[int] = typer.Option(None, "--timeout-ms", min=1),
):
    """Run one raw agent-browser command and report its output."""
    try:
        gateway = e2e.load_run_options(timeout_ms=timeout_ms).browser()
    except ValueError as exc:
        _emit(envelope.err(command="browser", error_type="INVALID_ARGUMENT", message=str(exc)))
    if not gateway.is_installed():
        _emit(
            envelope.err(
                command="browser",
                error_type="TOOL_MISSING",
                message=f"Required tool not found on PATH: {gateway.binary}",
                details={"tool": gateway.binary},
            )
        )
    result = asyncio.run(gateway.run(args, silent=True, timeout_ms=timeout_ms))
    data = {"args": list(args), "output": result.output, "returncode": result.returncode}
    if result.success:
        _emit(envelope.ok(command="browser", data=data))
    _emit(envelope.err(command="browser", error_type="BACKEND_FAILED", message=result.error or "agent-browser failed", details=data))


@app.command("ui-review")
def ui_review_cmd(
    base_url: Optional[str] = typer.Option(None, "--base-url", "-b"),
    output: str = typer.Option("./ui-review", "--output", "-o", help="Directory for screenshots and results"),
    headless: Optional[bool] = typer.Option(None, "--headless/--headed"),
    json_output: bool = typer.Option(True, "--json"),
):
    try:
        options = e2e.load_run_options(base_url=base_url, headless=headless)
        output_dir = Path(output).expanduser()
        if not output_dir.is_absolute():
            output_dir = paths.project_dir() / output_dir
        result = asyncio.run(ui_review.run_ui_review(options, output_dir))
    except e2e.DependencyMissingError as exc:
        _emit(envelope.err(command="ui-review", error_type="DEPENDENCY_MISSING", message=str(exc), details={"tool": exc.tool}))
    except OpenFailure as exc:
        _emit(envelope.err(command="ui-review", error_type="OPEN_FAILED", message=str(exc), details={"url": exc.url}))
    except ValueError as exc:
        _emit(envelope.err(command="ui-review", error_type="INVALID_ARGUMENT", message=str(exc)))

    data = {
        "output_dir": result.output_dir,
        "results_path": result.results_path,
        "screenshots": [{"name": s.name, "label": s.label, "path": s.path} for s in result.screenshots],
    }
    if not result.screenshots:
        _emit(envelope.err(command="ui-review", error_type="STEP_FAILED", message="No screenshots were captured", details=data))
    _emit(envelope.ok(command="ui-review", data=data, artifacts=result.artifacts))


if __name__ == "__main__":
    app()
