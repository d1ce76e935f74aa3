"""Tests for the imgflow command line."""

import json

import pytest
import yaml

from imgflow.cli import main

GRAPH = {
    "nodes": [
        {"id": "gen", "type": "generator", "data": {"generatorName": "chart", "params": {}}},
        {"id": "small", "type": "transform", "data": {"operation": "resize"}},
        {"id": "out", "type": "save", "data": {"destination": "./out.png"}},
    ],
    "edges": [
        {"id": "e1", "source": "gen", "target": "small"},
        {"id": "e2", "source": "small", "target": "out"},
    ],
}


def _exit_code(argv: list[str]) -> int:
    with pytest.raises(SystemExit) as exc_info:
        main(argv)
    return exc_info.value.code


@pytest.fixture(autouse=True)
def _no_config(monkeypatch):
    monkeypatch.delenv("IMGFLOW_CONFIG", raising=False)


class TestCompileCommand:
    def test_compile_to_yaml(self, tmp_path, capsys):
        path = tmp_path / "graph.json"
        path.write_text(json.dumps(GRAPH))
        assert _exit_code(["compile", str(path), "--name", "Chart"]) == 0
        wire = yaml.safe_load(capsys.readouterr().out)
        assert wire["name"] == "Chart"
        assert [s["kind"] for s in wire["steps"]] == ["generate", "transform", "save"]

    def test_compile_to_file(self, tmp_path):
        path = tmp_path / "graph.json"
        path.write_text(json.dumps(GRAPH))
        out = tmp_path / "pipeline.json"
        assert _exit_code(["compile", str(path), "--format", "json", "-o", str(out)]) == 0
        assert json.loads(out.read_text())["steps"][1]["in"] == "gen"

    def test_invalid_graph_exits_2(self, tmp_path, capsys):
        graph = {"nodes": GRAPH["nodes"], "edges": GRAPH["edges"] + [{"source": "gen", "target": "ghost"}]}
        path = tmp_path / "graph.json"
        path.write_text(json.dumps(graph))
        assert _exit_code(["compile", str(path)]) == 2
        assert "ghost" in capsys.readouterr().err

    def test_cycle_exits_2(self, tmp_path):
        graph = {
            "nodes": GRAPH["nodes"][:2],
            "edges": [
                {"id": "a", "source": "gen", "target": "small"},
                {"id": "b", "source": "small", "target": "gen", "targetHandle": "text"},
            ],
        }
        path = tmp_path / "graph.json"
        path.write_text(json.dumps(graph))
        assert _exit_code(["compile", str(path)]) == 2


class TestRunCommand:
    def test_dry_run(self, tmp_path, capsys):
        path = tmp_path / "graph.json"
        path.write_text(json.dumps(GRAPH))
        assert _exit_code(["run", str(path), "--dry-run"]) == 0
        out = capsys.readouterr().out
        assert "Steps: 3" in out
        assert "Dry run" in out

    def test_events_are_json_lines(self, tmp_path, capsys):
        path = tmp_path / "graph.json"
        path.write_text(json.dumps(GRAPH))
        assert _exit_code(["run", str(path), "--dry-run", "--events"]) == 0
        captured = capsys.readouterr()
        lines = [line for line in captured.out.splitlines() if line.strip()]
        types = [json.loads(line)["type"] for line in lines]
        assert types == ["execution.started", "execution.completed"]
        assert "Steps: 3" in captured.err
        assert "Dry run" in captured.err

    def test_failed_run_events_include_skipped_steps(self, tmp_path, capsys):
        path = tmp_path / "graph.json"
        path.write_text(json.dumps(GRAPH))
        assert _exit_code(["run", str(path), "--events"]) == 1
        events = [json.loads(line) for line in capsys.readouterr().out.splitlines() if line.strip()]
        skipped = [e["data"]["stepId"] for e in events if e["data"].get("status") == "skipped"]
        assert skipped == ["small", "out"]
        assert events[-1]["type"] == "execution.error"

    def test_missing_provider_fails(self, tmp_path, capsys):
        path = tmp_path / "graph.json"
        path.write_text(json.dumps(GRAPH))
        assert _exit_code(["run", str(path)]) == 1
        assert "PROVIDER_NOT_FOUND" in capsys.readouterr().out


class TestVariantsCommand:
    def test_prints_graph(self, capsys):
        assert _exit_code(["variants", "--prompt", "a fox", "--count", "2"]) == 0
        graph = json.loads(capsys.readouterr().out)
        assert [n["id"] for n in graph["nodes"]][:4] == ["prompts", "variants", "gen_0", "gen_1"]

    def test_no_command_prints_help(self, capsys):
        assert _exit_code([]) == 1
        assert "usage" in capsys.readouterr().out
