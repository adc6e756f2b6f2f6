"""Tests for the leadflow command line: validate, publish, status and simulate."""

import json
from pathlib import Path

import pytest
from flows import make_graph

from leadflow.cli import main, simulate


def ab_campaign(delay: int = 0, unit: str = "seconds"):
    return make_graph(
        "ab-welcome",
        [
            {"id": "start", "kind": "trigger"},
            {"id": "pause", "kind": "delay", "duration": delay, "unit": unit},
            {"id": "ab", "kind": "split", "variant_a_percent": 70},
            {"id": "a", "kind": "action", "action": {"type": "send_message", "template": "A"}},
            {"id": "b", "kind": "action", "action": {"type": "send_message", "template": "B"}},
            {"id": "done", "kind": "closing", "final_status": "completed"},
        ],
        [
            ("start", "pause"),
            ("pause", "ab"),
            ("ab", "variant_a", "a"),
            ("ab", "variant_b", "b"),
            ("a", "done"),
            ("b", "done"),
        ],
    )


@pytest.fixture
def graph_file(tmp_path: Path) -> Path:
    path = tmp_path / "welcome.json"
    path.write_text(ab_campaign().model_dump_json(), encoding="utf-8")
    return path


@pytest.fixture
def broken_file(tmp_path: Path) -> Path:
    path = tmp_path / "broken.json"
    doc = {
        "campaign_id": "broken",
        "nodes": [
            {"id": "start", "kind": "trigger"},
            {"id": "jump", "kind": "goto", "target_node_id": "nowhere"},
        ],
        "edges": [{"source": "start", "target": "jump"}],
    }
    path.write_text(json.dumps(doc), encoding="utf-8")
    return path


class TestValidate:
    def test_valid_graph(self, graph_file, capsys):
        assert main(["validate", str(graph_file)]) == 0

        out = capsys.readouterr().out
        assert "✓" in out
        assert "campaign 'ab-welcome'" in out
        assert "1 split" in out

    def test_invalid_graph_lists_errors(self, graph_file, broken_file, capsys):
        assert main(["validate", str(graph_file), str(broken_file)]) == 1

        err = capsys.readouterr().err
        assert "broken.json is invalid" in err
        assert "missing node 'nowhere'" in err

    def test_not_json(self, tmp_path, capsys):
        path = tmp_path / "notes.json"
        path.write_text("{ nope", encoding="utf-8")

        assert main(["validate", str(path)]) == 1
        assert "not valid JSON" in capsys.readouterr().err

    def test_missing_file(self, tmp_path, capsys):
        assert main(["validate", str(tmp_path / "absent.json")]) == 1
        assert "Cannot read" in capsys.readouterr().err


class TestPublishAndStatus:
    def test_publish_assigns_versions(self, graph_file, tmp_path, capsys):
        store = tmp_path / "store"

        assert main(["publish", str(graph_file), "--store", str(store)]) == 0
        assert main(["publish", str(graph_file), "--store", str(store)]) == 0

        out = capsys.readouterr().out
        assert "Published 'ab-welcome' v1" in out
        assert "Published 'ab-welcome' v2" in out
        assert (store / "graphs" / "ab-welcome" / "v2.json").exists()

    def test_publish_stops_on_invalid_graph(self, broken_file, tmp_path):
        assert main(["publish", str(broken_file), "--store", str(tmp_path / "store")]) == 1

    def test_status_of_unknown_lead(self, tmp_path, capsys):
        assert main(["status", "lead-404", "--store", str(tmp_path)]) == 1
        assert "not found" in capsys.readouterr().err


class TestServe:
    def test_requires_messaging_url(self, capsys):
        with pytest.raises(SystemExit) as exc:
            main(["serve"])
        assert exc.value.code == 2
        assert "--messaging-url" in capsys.readouterr().err


class TestSimulate:
    @pytest.mark.asyncio
    async def test_split_respects_weights(self):
        report = await simulate(ab_campaign(), leads=1000)

        assert report["leads"] == 1000
        assert report["status"] == {"closed": 1000}
        assert report["final_status"] == {"completed": 1000}
        assert report["messages_sent"] == 1000

        branches = report["branches"]
        assert branches["ab:variant_a"] + branches["ab:variant_b"] == 1000
        assert 640 <= branches["ab:variant_a"] <= 760

    @pytest.mark.asyncio
    async def test_time_jumps_through_delays(self):
        report = await simulate(ab_campaign(delay=3, unit="days"), leads=20)

        assert report["status"] == {"closed": 20}
        assert report["messages_sent"] == 20

    @pytest.mark.asyncio
    async def test_same_seed_same_branches(self):
        first = await simulate(ab_campaign(), leads=200)
        second = await simulate(ab_campaign(), leads=200)

        assert first["branches"] == second["branches"]

    def test_json_report(self, graph_file, capsys):
        assert main(["simulate", str(graph_file), "--leads", "50", "--json"]) == 0

        report = json.loads(capsys.readouterr().out)
        assert report["campaign_id"] == "ab-welcome"
        assert report["leads"] == 50

    def test_text_report(self, graph_file, capsys):
        assert main(["simulate", str(graph_file), "--leads", "10"]) == 0

        out = capsys.readouterr().out
        assert "Simulated 10 lead(s) through 'ab-welcome'" in out
        assert "Messages sent: 10" in out
