from __future__ import annotations

from dataclasses import dataclass
import logging
from pathlib import Path
from typing import Any

from lra.core import clock, jsonio, paths
from lra.core.features import create_features_data, load_project
from lra.core.process import ProcessFailedError, ToolMissingError, ensure_tool, run_checked

logger = logging.getLogger("lra.core.project")

PROJECT_TYPES = ("web", "api", "cli", "library")
INITIAL_COMMIT_MESSAGE = "Initial: project setup"


class AlreadyInitializedError(FileExistsError):
    def __init__(self, path: str) -> None:
        super().__init__(f"Project already initialized: {path}")
        self.path = path


class NotAGitRepoError(RuntimeError):
    def __init__(self, path: str) -> None:
        super().__init__(f"Not a git repository: {path}")
        self.path = path


class NothingToCommitError(RuntimeError):
    def __init__(self) -> None:
        super().__init__("Nothing to commit")


@dataclass(frozen=True)
class InitResult:
    root: str
    project_id: str
    project_name: str
    project_type: str
    files: tuple[str, ...]
    git_initialized: bool


@dataclass(frozen=True)
class CommitResult:
    message: str
    metadata: dict[str, Any]


_PROGRESS_TEMPLATE = """# {name} - 项目进度

## 基本信息
- 项目名称: {name}
- 项目类型: {type}
- 创建时间: {date}
- 最后更新: {date}

## 当前状态
- 进度: 0/0 (0%)
- 状态: 初始化
- 当前功能: 无
- 阻塞: 无

## 会话记录
_暂无会话记录_

## 功能清单

### 已完成 (0)
_暂无_

### 进行中 (0)
_暂无_

### 待处理 (0)
_暂无_
"""

_APP_SPEC_TEMPLATE = """# {name} - 应用规格说明

## 概述
[描述你的应用]

## 核心功能
1. [功能 1]
2. [功能 2]
3. [功能 3]

## 技术栈
- 前端: [React/Vue/etc]
- 后端: [Node.js/Python/etc]
- 数据库: [PostgreSQL/MongoDB/etc]

## 非功能性需求
- 性能: [要求]
- 安全: [要求]
"""

_AGENT_GUIDE_TEMPLATE = """# {name} - 项目指令

本文件说明 agent 如何在这个长运行项目中工作。

## 每次会话开始时

```bash
pwd
cat .agent/features.json
cat .agent/progress.md
git log --oneline -5
lra next
```

## 工作流程

1. `lra next` 获取下一个待处理功能，一次只处理一个功能
2. 编写代码并在本地测试
3. `lra verify feat-xxx` 运行端到端测试，通过后自动标记完成
4. `lra commit feat-xxx` 提交进度
5. `lra status` 查看状态

## 核心规则

1. 功能列表不可变：不能删除功能，不能修改功能描述，只能通过 `done`/`verify` 标记完成
2. 增量进展：每次会话完成 1-3 个功能
3. 验证优先：功能完成后必须通过端到端测试
4. 状态同步：代码变更对应 git commit，功能完成对应 features.json

## 会话结束检查

- [ ] 当前功能已测试通过
- [ ] `lra done` 或 `lra verify` 已执行
- [ ] `lra commit` 已执行
- [ ] `git status` 干净
"""

_INIT_SCRIPTS = {
    "web": """#!/bin/bash
cd "$(dirname "$0")"

echo "Setting up web development environment..."

if [ -f "package.json" ]; then
    npm install
    npm run dev
else
    echo "No package.json found"
    echo "Please run: npm init -y"
fi
""",
    "api": """#!/bin/bash
cd "$(dirname "$0")"

echo "Setting up API development environment..."

if [ -f "requirements.txt" ]; then
    pip install -r requirements.txt
    python main.py
elif [ -f "package.json" ]; then
    npm install
    npm run dev
else
    echo "No package.json or requirements.txt found"
fi
""",
}

_DEFAULT_INIT_SCRIPT = """#!/bin/bash
cd "$(dirname "$0")"

echo "Setting up development environment..."
echo "Please customize this script for your project."
"""


def init_script(project_type: str) -> str:
    return _INIT_SCRIPTS.get(project_type, _DEFAULT_INIT_SCRIPT)


def _git_init(root: Path) -> bool:
    """Best effort: a missing git or an unconfigured identity must not fail init."""
    try:
        ensure_tool("git")
        run_checked(["git", "init"], cwd=root)
        run_checked(["git", "add", "."], cwd=root)
        run_checked(["git", "commit", "-m", INITIAL_COMMIT_MESSAGE], cwd=root)
    except (ToolMissingError, ProcessFailedError) as exc:
        logger.warning("git setup skipped: %s", exc)
        return False
    return True


def init_project(name: str | None = None, *, project_type: str = "web", root: Path | None = None) -> InitResult:
    if project_type not in PROJECT_TYPES:
        raise ValueError(f"Unsupported project type: {project_type} (expected one of {', '.join(PROJECT_TYPES)})")
    root = (root or paths.project_dir()).resolve()
    features_file = paths.features_path(root)
    if features_file.exists():
        raise AlreadyInitializedError(str(features_file))

    project_name = name or root.name
    root.mkdir(parents=True, exist_ok=True)
    paths.ensure_agent_dir(root)

    data = create_features_data(project_name, project_type)
    features_file.write_text(jsonio.dumps(data), encoding="utf-8")

    today = clock.now_utc().date().isoformat()
    progress_file = paths.progress_path(root)
    progress_file.write_text(_PROGRESS_TEMPLATE.format(name=project_name, type=project_type, date=today), encoding="utf-8")

    script = root / "init.sh"
    script.write_text(init_script(project_type), encoding="utf-8")
    script.chmod(0o755)

    guide = root / ".claude" / "CLAUDE.md"
    guide.parent.mkdir(parents=True, exist_ok=True)
    guide.write_text(_AGENT_GUIDE_TEMPLATE.format(name=project_name), encoding="utf-8")

    app_spec = root / "app_spec.txt"
    app_spec.write_text(_APP_SPEC_TEMPLATE.format(name=project_name), encoding="utf-8")

    created = (features_file, progress_file, script, guide, app_spec)
    git_initialized = _git_init(root)
    logger.info("initialized %s at %s (git=%s)", project_name, root, git_initialized)
    return InitResult(
        root=str(root),
        project_id=data["project_id"],
        project_name=project_name,
        project_type=project_type,
        files=tuple(str(path.relative_to(root)) for path in created),
        git_initialized=git_initialized,
    )


def commit_message(feature_id: str | None = None, message: str | None = None) -> str:
    if message:
        return message
    if feature_id:
        for raw in load_project().features:
            if raw.get("id") == feature_id:
                return f"feat: {raw.get('description', '')}"
    return "chore: update progress"


def commit_progress(feature_id: str | None = None, *, message: str | None = None) -> CommitResult:
    """Stage everything and commit; git gets an argv list, never a shell string."""
    state = load_project()
    root = paths.project_dir()
    ensure_tool("git")
    try:
        run_checked(["git", "rev-parse", "--is-inside-work-tree"], cwd=root)
    except ProcessFailedError as exc:
        raise NotAGitRepoError(str(root)) from exc

    resolved = commit_message(feature_id, message)
    run_checked(["git", "add", "-A"], cwd=root)
    if not run_checked(["git", "status", "--porcelain"], cwd=root).stdout.strip():
        raise NothingToCommitError()
    run_checked(["git", "commit", "-m", resolved], cwd=root)
    logger.info("committed: %s", resolved)
    return CommitResult(message=resolved, metadata=state.data.get("metadata", {}))


def export_project(output: str | None = None) -> Path:
    state = load_project()
    target = Path(output) if output else Path(f"export-{clock.file_stamp()}.json")
    if not target.is_absolute():
        target = paths.project_dir() / target
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(jsonio.dumps(state.data), encoding="utf-8")
    return target
