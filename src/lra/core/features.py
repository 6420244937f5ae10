from __future__ import annotations

from dataclasses import dataclass, field
import json
from datetime import datetime
import re
from typing import Any, Iterable

from lra.core import clock, jsonio, paths

PRIORITY_ORDER = {"critical": 0, "high": 1, "medium": 2, "low": 3}
ALLOWED_PRIORITIES = tuple(PRIORITY_ORDER)
ALLOWED_CATEGORIES = ("functional", "style", "performance", "security")
STATUS_FILTERS = ("all", "pending", "done")


class ProjectNotFoundError(FileNotFoundError):
    def __init__(self, path: str) -> None:
        super().__init__(f"Not an LRA project (missing {path}); run `lra init` first")
        self.path = path


class FeatureNotFoundError(LookupError):
    def __init__(self, feature_id: str) -> None:
        super().__init__(f"Feature {feature_id} not found")
        self.feature_id = feature_id


@dataclass(frozen=True)
class TestData:
    __test__ = False  # not a pytest class

    field: str
    value: str


@dataclass(frozen=True)
class Feature:
    """Read-only view of one feature, as the e2e runner sees it."""

    id: str
    description: str
    steps: tuple[str, ...] = ()
    passes: bool = False
    test_data: TestData | None = None
    priority: str = "medium"
    category: str = "functional"

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "Feature":
        test_data = None
        raw_test_data = raw.get("test_data") or raw.get("testData")
        if isinstance(raw_test_data, dict) and "field" in raw_test_data and "value" in raw_test_data:
            test_data = TestData(field=str(raw_test_data["field"]), value=str(raw_test_data["value"]))
        return cls(
            id=str(raw["id"]),
            description=str(raw.get("description", "")),
            steps=tuple(str(step) for step in raw.get("steps") or []),
            passes=bool(raw.get("passes", False)),
            test_data=test_data,
            priority=str(raw.get("priority") or "medium"),
            category=str(raw.get("category") or "functional"),
        )


@dataclass
class ProjectState:
    data: dict[str, Any]
    features: list[dict[str, Any]] = field(default_factory=list)

    def find(self, feature_id: str) -> dict[str, Any]:
        for raw in self.features:
            if raw.get("id") == feature_id:
                return raw
        raise FeatureNotFoundError(feature_id)


def generate_feature_id(index: int) -> str:
    return f"feat-{index:03d}"


def generate_project_id(name: str) -> str:
    return re.sub(r"[^a-z0-9-]", "-", name.lower())


def update_metadata(features: Iterable[dict[str, Any]]) -> dict[str, Any]:
    features = list(features)
    total = len(features)
    completed = sum(1 for f in features if f.get("passes"))

    by_priority: dict[str, dict[str, int]] = {}
    by_category: dict[str, dict[str, int]] = {}
    for f in features:
        for bucket, key in ((by_priority, f.get("priority") or "medium"), (by_category, f.get("category") or "functional")):
            stats = bucket.setdefault(key, {"total": 0, "completed": 0})
            stats["total"] += 1
            if f.get("passes"):
                stats["completed"] += 1

    return {
        "total_features": total,
        "completed_features": completed,
        "completion_percentage": round(completed / total * 100, 2) if total else 0,
        "by_priority": by_priority,
        "by_category": by_category,
    }


def next_pending_feature(features: Iterable[dict[str, Any]]) -> dict[str, Any] | None:
    pending = [f for f in features if not f.get("passes")]
    if not pending:
        return None
    # sorted() is stable, so equal priorities keep file order.
    pending.sort(key=lambda f: PRIORITY_ORDER.get(f.get("priority"), PRIORITY_ORDER["medium"]))
    return pending[0]


def filter_features(
    features: Iterable[dict[str, Any]],
    *,
    status: str = "all",
    priority: str | None = None,
) -> list[dict[str, Any]]:
    if status not in STATUS_FILTERS:
        raise ValueError(f"Unsupported filter: {status} (expected one of {', '.join(STATUS_FILTERS)})")
    result = list(features)
    if status == "pending":
        result = [f for f in result if not f.get("passes")]
    elif status == "done":
        result = [f for f in result if f.get("passes")]
    if priority:
        result = [f for f in result if f.get("priority") == priority]
    return result


def create_feature(
    feature_id: str,
    description: str,
    *,
    category: str = "functional",
    priority: str = "medium",
    steps: Iterable[str] | None = None,
) -> dict[str, Any]:
    if priority not in PRIORITY_ORDER:
        raise ValueError(f"Unsupported priority: {priority}")
    return {
        "id": feature_id,
        "category": category,
        "priority": priority,
        "description": description,
        "steps": list(steps or []),
        "acceptance_criteria": [],
        "dependencies": [],
        "status": "pending",
        "passes": False,
        "attempts": 0,
        "notes": "",
    }


def create_features_data(project_name: str, project_type: str = "web", *, now: datetime | None = None) -> dict[str, Any]:
    stamp = (now or clock.now_utc()).isoformat()
    return {
        "version": "1.0",
        "project_id": generate_project_id(project_name),
        "project_name": project_name,
        "project_type": project_type,
        "created_at": stamp,
        "updated_at": stamp,
        "features": [],
        "metadata": update_metadata([]),
        "sessions": [],
    }


def mark_feature_complete(feature: dict[str, Any], *, notes: str | None = None, now: datetime | None = None) -> dict[str, Any]:
    return {
        **feature,
        "passes": True,
        "status": "completed",
        "completed_at": (now or clock.now_utc()).isoformat(),
        "attempts": int(feature.get("attempts") or 0) + 1,
        "notes": notes or feature.get("notes", ""),
    }


def load_project() -> ProjectState:
    path = paths.features_path()
    if not path.exists():
        raise ProjectNotFoundError(str(path))
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise ValueError(f"Cannot read {path}: {exc}") from exc
    if not isinstance(data, dict) or not isinstance(data.get("features"), list):
        raise ValueError(f"Invalid features file structure: {path}")
    return ProjectState(data=data, features=data["features"])


def save_project(state: ProjectState) -> dict[str, Any]:
    state.data["features"] = state.features
    state.data["updated_at"] = clock.now_utc().isoformat()
    state.data["metadata"] = update_metadata(state.features)
    paths.features_path().write_text(jsonio.dumps(state.data), encoding="utf-8")
    return state.data["metadata"]


def add_feature(
    description: str,
    *,
    category: str = "functional",
    priority: str = "medium",
    steps: Iterable[str] | None = None,
) -> dict[str, Any]:
    state = load_project()
    feature = create_feature(
        generate_feature_id(len(state.features) + 1),
        description,
        category=category,
        priority=priority,
        steps=steps,
    )
    state.features.append(feature)
    save_project(state)
    return feature


def mark_done(feature_id: str, *, notes: str | None = None) -> tuple[dict[str, Any], dict[str, Any]]:
    state = load_project()
    current = state.find(feature_id)
    updated = mark_feature_complete(current, notes=notes)
    state.features[state.features.index(current)] = updated
    metadata = save_project(state)
    return updated, metadata


def get_feature(feature_id: str) -> Feature:
    return Feature.from_dict(load_project().find(feature_id))


def all_features() -> list[Feature]:
    return [Feature.from_dict(raw) for raw in load_project().features]
