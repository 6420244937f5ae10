from __future__ import annotations

import json
from datetime import datetime, timezone

import pytest

from lra.core import features, paths
from lra.core.features import Feature, FeatureNotFoundError, ProjectNotFoundError


@pytest.fixture()
def project(tmp_path, monkeypatch):
    monkeypatch.setenv("LRA_PROJECT_DIR", str(tmp_path))
    monkeypatch.setenv("LRA_TEST_NOW_ISO", "2025-03-04T05:06:07Z")
    paths.ensure_agent_dir()
    data = features.create_features_data("Course Picker")
    paths.features_path().write_text(json.dumps(data), encoding="utf-8")
    return tmp_path


def test_ids():
    assert features.generate_feature_id(1) == "feat-001"
    assert features.generate_feature_id(123) == "feat-123"
    assert features.generate_project_id("My App_v2") == "my-app-v2"


def test_update_metadata_rounds_and_groups():
    items = [
        {"priority": "high", "category": "functional", "passes": True},
        {"priority": "high", "category": "style", "passes": False},
        {"priority": None, "category": "functional", "passes": False},
    ]
    meta = features.update_metadata(items)
    assert meta["total_features"] == 3
    assert meta["completed_features"] == 1
    assert meta["completion_percentage"] == 33.33
    assert meta["by_priority"] == {"high": {"total": 2, "completed": 1}, "medium": {"total": 1, "completed": 0}}
    assert meta["by_category"]["functional"] == {"total": 2, "completed": 1}
    assert features.update_metadata([])["completion_percentage"] == 0


def test_next_pending_feature_orders_by_priority_and_keeps_file_order():
    items = [
        {"id": "a", "priority": "low", "passes": False},
        {"id": "b", "priority": "high", "passes": False},
        {"id": "c", "priority": "critical", "passes": True},
        {"id": "d", "priority": "high", "passes": False},
        {"id": "e", "priority": "bogus", "passes": False},
    ]
    assert features.next_pending_feature(items)["id"] == "b"
    assert features.next_pending_feature([{"id": "x", "passes": True}]) is None


def test_unknown_priority_sorts_as_medium():
    items = [
        {"id": "a", "priority": "low", "passes": False},
        {"id": "b", "priority": "bogus", "passes": False},
        {"id": "c", "priority": "medium", "passes": False},
    ]
    assert features.next_pending_feature(items)["id"] == "b"


def test_filter_features():
    items = [
        {"id": "a", "priority": "high", "passes": True},
        {"id": "b", "priority": "low", "passes": False},
    ]
    assert [f["id"] for f in features.filter_features(items, status="done")] == ["a"]
    assert [f["id"] for f in features.filter_features(items, status="pending")] == ["b"]
    assert [f["id"] for f in features.filter_features(items, priority="low")] == ["b"]
    with pytest.raises(ValueError):
        features.filter_features(items, status="maybe")


def test_create_feature_rejects_unknown_priority():
    with pytest.raises(ValueError):
        features.create_feature("feat-001", "x", priority="urgent")


def test_mark_feature_complete_keeps_notes_unless_given():
    now = datetime(2025, 1, 2, tzinfo=timezone.utc)
    base = features.create_feature("feat-001", "x")
    base["notes"] = "old"
    done = features.mark_feature_complete(base, now=now)
    assert done["passes"] is True
    assert done["status"] == "completed"
    assert done["completed_at"] == "2025-01-02T00:00:00+00:00"
    assert done["attempts"] == 1
    assert done["notes"] == "old"
    assert features.mark_feature_complete(done, notes="new", now=now)["notes"] == "new"


def test_add_and_mark_done_persist(project):
    first = features.add_feature("Login", priority="critical", steps=["打开登录页", "登录"])
    second = features.add_feature("Browse")
    assert (first["id"], second["id"]) == ("feat-001", "feat-002")

    updated, meta = features.mark_done("feat-001", notes="ok")
    assert updated["notes"] == "ok"
    assert meta["completed_features"] == 1
    assert meta["completion_percentage"] == 50.0

    stored = json.loads(paths.features_path().read_text(encoding="utf-8"))
    assert stored["updated_at"] == "2025-03-04T05:06:07+00:00"
    assert stored["metadata"]["total_features"] == 2
    assert stored["features"][0]["steps"] == ["打开登录页", "登录"]


def test_get_feature_and_not_found(project):
    features.add_feature("Login", steps=["打开登录页"])
    feature = features.get_feature("feat-001")
    assert feature == Feature(id="feat-001", description="Login", steps=("打开登录页",))
    with pytest.raises(FeatureNotFoundError):
        features.get_feature("feat-999")


def test_load_project_outside_project(tmp_path, monkeypatch):
    monkeypatch.setenv("LRA_PROJECT_DIR", str(tmp_path))
    with pytest.raises(ProjectNotFoundError):
        features.load_project()


def test_load_project_rejects_broken_file(project):
    paths.features_path().write_text("{not json", encoding="utf-8")
    with pytest.raises(ValueError):
        features.load_project()


def test_feature_from_dict_accepts_camel_case_test_data():
    feature = Feature.from_dict(
        {"id": "feat-002", "description": "search", "steps": ["输入内容"], "testData": {"field": "q", "value": 1}}
    )
    assert feature.test_data == features.TestData(field="q", value="1")
    assert feature.passes is False
    assert feature.priority == "medium"
