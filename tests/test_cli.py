import argparse
import json
import logging
import sys

import pytest

from emotion_rec import cli
from emotion_rec.errors import ValidationFault


def _run(monkeypatch, *argv):
    monkeypatch.setattr(sys, "argv", ["prog", *argv])
    cli.main()


def _json_output(caplog):
    for record in reversed(caplog.records):
        message = record.getMessage()
        if message.startswith(("{", "[")):
            return json.loads(message)
    raise AssertionError("no JSON output logged")


@pytest.fixture
def catalog_file(tmp_path, catalog):
    path = tmp_path / "catalog.json"
    path.write_text(json.dumps([p.to_dict() for p in catalog]))
    return path


def test_validate_user_id():
    assert cli._validate_user_id("  alice ") == "alice"
    with pytest.raises(ValidationFault):
        cli._validate_user_id("   ")
    with pytest.raises(ValidationFault):
        cli._validate_user_id("x" * 201)


def test_parse_state_rejects_out_of_range():
    state = cli._parse_state([-0.5, 0.2, 0.7], "current")
    assert (state.valence, state.arousal, state.stress) == (-0.5, 0.2, 0.7)
    with pytest.raises(ValidationFault, match="valence"):
        cli._parse_state([1.5, 0.0, 0.0], "current")
    with pytest.raises(ValidationFault, match="stress"):
        cli._parse_state([0.0, 0.0, -0.1], "current")
    with pytest.raises(ValidationFault):
        cli._parse_state([float("nan"), 0.0, 0.0], "current")


def test_parse_desired_infers_when_missing():
    current = cli._parse_state([-0.6, 0.2, 0.7], "current")
    inferred = cli._parse_desired(None, current)
    assert inferred.target_valence > current.valence

    explicit = cli._parse_desired([0.5, -0.2, 0.3], current)
    assert (explicit.target_valence, explicit.target_arousal, explicit.target_stress) == (0.5, -0.2, 0.3)


def test_main_dispatches_recommend(monkeypatch):
    captured = {}

    def fake_recommend(args):
        captured["user_id"] = args.user_id
        captured["state"] = args.state
        captured["target"] = args.target
        captured["limit"] = args.limit

    monkeypatch.setattr(cli, "cmd_recommend", fake_recommend)
    _run(monkeypatch, "recommend", "alice", "--state", "-0.6", "0.2", "0.7", "--limit", "3")

    assert captured == {"user_id": "alice", "state": [-0.6, 0.2, 0.7], "target": None, "limit": 3}


def test_recommend_from_catalog(monkeypatch, caplog, tmp_path, catalog_file):
    caplog.set_level(logging.INFO)
    _run(monkeypatch, "--db", str(tmp_path / "cli.db"), "recommend", "alice",
         "--state", "-0.6", "0.2", "0.7", "--target", "0.5", "-0.2", "0.3",
         "--catalog", str(catalog_file), "--limit", "3", "--json")

    recs = _json_output(caplog)
    assert len(recs) == 3
    assert [r["rank"] for r in recs] == [1, 2, 3]
    assert all(r["is_exploration"] for r in recs)


def test_recommend_text_output(monkeypatch, caplog, tmp_path, catalog_file):
    caplog.set_level(logging.INFO)
    _run(monkeypatch, "--db", str(tmp_path / "cli.db"), "recommend", "alice",
         "--state", "-0.6", "0.2", "0.7", "--catalog", str(catalog_file), "--explain")

    assert "Recommendations for alice" in caplog.text
    assert "Quiet Forest" in caplog.text
    assert "[explore]" in caplog.text


def test_feedback_then_progress_and_stats(monkeypatch, caplog, tmp_path):
    caplog.set_level(logging.INFO)
    db_path = str(tmp_path / "cli.db")

    _run(monkeypatch, "--db", db_path, "feedback", "alice", "calm-doc",
         "--before", "-0.6", "0.2", "0.7", "--after", "0.4", "-0.1", "0.4",
         "--target", "0.5", "-0.2", "0.3", "--completed", "--rating", "5",
         "--watched", "50", "--total", "50")
    assert "Reward: +" in caplog.text
    assert "Q[v1:a3:s2][calm-doc]: 0.5000 ->" in caplog.text
    assert "Exploration rate: 0.14" in caplog.text

    caplog.clear()
    _run(monkeypatch, "--db", db_path, "progress", "alice", "--json")
    progress = _json_output(caplog)
    assert progress["total_experiences"] == 1
    assert progress["convergence"]["stage"] == "exploring"
    assert progress["best_content"] == ["calm-doc"]
    assert progress["exploration_rate"] == pytest.approx(0.1425)

    caplog.clear()
    _run(monkeypatch, "--db", db_path, "qtable-stats", "--user", "alice")
    assert "Entries: 1" in caplog.text
    assert "v1:a3:s2 calm-doc" in caplog.text


def test_progress_text_for_new_user(monkeypatch, caplog, tmp_path):
    caplog.set_level(logging.INFO)
    _run(monkeypatch, "--db", str(tmp_path / "cli.db"), "progress", "nobody")
    assert "Experiences: 0" in caplog.text
    assert "Just getting started" in caplog.text


def test_simulate_in_memory(monkeypatch, caplog, tmp_path):
    caplog.set_level(logging.INFO)
    db_path = tmp_path / "sim.db"
    _run(monkeypatch, "--db", str(db_path), "simulate", "sim", "--steps", "8",
         "--limit", "2", "--catalog-size", "12", "--seed", "3", "--json")

    progress = _json_output(caplog)
    assert progress["total_experiences"] == 8
    assert progress["exploration_count"] + progress["exploitation_count"] == 8
    assert not db_path.exists()


def test_simulate_is_reproducible(monkeypatch, caplog):
    caplog.set_level(logging.INFO)
    args = ("simulate", "--steps", "6", "--catalog-size", "12", "--seed", "5",
            "--reward-strategy", "direction_magnitude", "--json")
    _run(monkeypatch, *args)
    first = _json_output(caplog)
    caplog.clear()
    _run(monkeypatch, *args)
    second = _json_output(caplog)

    assert first["recent_rewards"] == second["recent_rewards"]
    assert first["best_content"] == second["best_content"]


def test_simulate_persists_when_asked(monkeypatch, caplog, tmp_path):
    caplog.set_level(logging.INFO)
    db_path = str(tmp_path / "sim.db")
    _run(monkeypatch, "--db", db_path, "simulate", "--steps", "3", "--catalog-size", "6", "--persist")

    caplog.clear()
    _run(monkeypatch, "--db", db_path, "progress", "sim-user", "--json")
    assert _json_output(caplog)["total_experiences"] == 3


@pytest.mark.parametrize(
    "argv",
    [
        ("recommend", "alice", "--state", "2", "0", "0"),
        ("feedback", "alice", "x", "--before", "0", "0", "0", "--after", "0", "0", "0", "--rating", "9"),
        ("feedback", "alice", "x", "--before", "0", "0", "0", "--after", "0", "0", "0", "--watched", "-1"),
        ("progress", " "),
    ],
)
def test_invalid_input_exits_with_error(monkeypatch, caplog, tmp_path, argv):
    with pytest.raises(SystemExit) as excinfo:
        _run(monkeypatch, "--db", str(tmp_path / "cli.db"), *argv)
    assert excinfo.value.code == 1


def test_bad_config_file_exits(monkeypatch, tmp_path):
    config = tmp_path / "engine.json"
    config.write_text(json.dumps({"rl": {"alpha": 5}}))
    with pytest.raises(SystemExit) as excinfo:
        _run(monkeypatch, "--db", str(tmp_path / "cli.db"), "--config", str(config), "progress", "alice")
    assert excinfo.value.code == 1


def test_config_file_overrides_engine(tmp_path):
    config = tmp_path / "engine.json"
    config.write_text(json.dumps({"rl": {"alpha": 0.3}, "reward_strategy": "direction_magnitude"}))
    args = argparse.Namespace(config=config, reward_strategy=None)

    loaded = cli._load_config(args)
    assert loaded.rl.alpha == 0.3
    assert loaded.reward_strategy.value == "direction_magnitude"
