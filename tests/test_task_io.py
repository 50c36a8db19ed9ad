"""Tests for the persisted task document codec."""

from __future__ import annotations

import json

import pytest

from wavefront.errors import Corrupt
from wavefront.io_utils import write_text
from wavefront.tasks.io import (
    dumps_task_set,
    load_task_file,
    loads_task_set,
    task_from_dict,
    task_to_dict,
)
from wavefront.tasks.model import TaskStatus


def _doc(**overrides) -> str:
    doc = {
        "version": "1.0",
        "spec": "demo",
        "tasks": [
            {"id": "1", "description": "First", "status": "pending", "file_footprint": ["a.py"]},
            {"id": "1.1", "description": "Sub", "status": "pass", "file_footprint": ["b.py"]},
        ],
    }
    doc.update(overrides)
    return json.dumps(doc)


class TestLoads:
    def test_parses_tasks_and_hierarchy(self):
        ts = loads_task_set(_doc())
        assert ts.spec == "demo"
        assert [t.id for t in ts.tasks] == ["1", "1.1"]
        assert ts.tasks[1].status == TaskStatus.PASS
        assert ts.tasks[1].parent_id == "1"

    def test_numeric_ids_become_strings(self):
        ts = loads_task_set(json.dumps({"tasks": [{"id": 7}]}))
        assert ts.tasks[0].id == "7"

    def test_title_is_description_fallback(self):
        task = task_from_dict({"id": "1", "title": "From title"})
        assert task.description == "From title"

    def test_minor_version_bump_is_accepted(self):
        ts = loads_task_set(_doc(version="1.4"))
        assert ts.version == "1.4"

    def test_missing_tasks_is_empty_set(self):
        assert loads_task_set("{}").tasks == []


class TestRejects:
    @pytest.mark.parametrize(
        "text",
        [
            "not json",
            json.dumps([1, 2]),
            json.dumps({"tasks": [{"id": "1", "status": "done"}]}),
            json.dumps({"tasks": [{"description": "no id"}]}),
            json.dumps({"tasks": [{"id": "1", "file_footprint": "a.py"}]}),
            json.dumps({"tasks": "1"}),
            json.dumps({"version": "2.0", "tasks": []}),
        ],
        ids=["bad-json", "not-object", "bad-status", "no-id", "footprint-str", "tasks-str", "major-2"],
    )
    def test_malformed_documents_raise_corrupt(self, text):
        with pytest.raises(Corrupt):
            loads_task_set(text)

    def test_non_utf8_file_is_corrupt(self, tmp_path):
        path = tmp_path / "tasks.json"
        path.write_bytes(b"\xff\xfe{not utf8")
        with pytest.raises(Corrupt):
            load_task_file(path)


class TestUnknownKeys:
    def test_unknown_keys_survive_a_rewrite(self):
        text = json.dumps({
            "tasks": [{"id": "1", "owner": "ana", "labels": ["x"]}],
            "project_meta": {"team": "core"},
            "future_tasks": [{"id": "F1", "description": "later", "ticket": "T-9"}],
        })
        data = json.loads(dumps_task_set(loads_task_set(text)))
        assert data["project_meta"] == {"team": "core"}
        assert data["tasks"][0]["owner"] == "ana"
        assert data["tasks"][0]["labels"] == ["x"]
        assert data["future_tasks"][0]["ticket"] == "T-9"

    def test_unknown_nested_keys_survive_a_rewrite(self):
        text = json.dumps({
            "tasks": [{
                "id": "1",
                "status": "pass",
                "parallelization": {"blocked_by": [], "custom_p": 1},
                "verification": {
                    "verified": {},
                    "unverified_claims": [
                        {"kind": "file", "value": "a", "reason": "missing", "checked_by": "ci"}
                    ],
                    "reviewer": "bo",
                },
            }],
            "execution_strategy": {
                "waves": [{"wave_id": 1, "tasks": ["1"], "lane": "fast"}],
            },
        })
        data = json.loads(dumps_task_set(loads_task_set(text)))
        task = data["tasks"][0]
        assert task["parallelization"]["custom_p"] == 1
        assert task["verification"]["reviewer"] == "bo"
        assert task["verification"]["unverified_claims"][0]["checked_by"] == "ci"
        assert "flagged_unverified" not in loads_task_set(text).tasks[0].verification.extra
        assert data["execution_strategy"]["waves"][0]["lane"] == "fast"

    def test_unknown_artifact_keys_survive(self):
        task = task_from_dict({"id": "1", "artifacts": {"files_created": ["a"], "commit": "abc"}})
        assert task_to_dict(task)["artifacts"]["commit"] == "abc"


class TestDumps:
    def test_type_and_parent_written(self):
        ts = loads_task_set(_doc())
        data = json.loads(dumps_task_set(ts))
        assert data["tasks"][0]["type"] == "parent"
        assert data["tasks"][1]["type"] == "subtask"
        assert data["tasks"][1]["parent"] == "1"

    def test_no_plan_written_as_null(self):
        data = json.loads(dumps_task_set(loads_task_set(_doc())))
        assert data["execution_strategy"] is None

    def test_load_task_file_reads_utf8(self, tmp_path):
        path = tmp_path / "tasks.json"
        write_text(path, json.dumps({"tasks": [{"id": "1", "description": "café"}]}))
        assert load_task_file(path).tasks[0].description == "café"
