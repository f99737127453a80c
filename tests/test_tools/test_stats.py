import json

import pytest

from shellpilot.stats import UNKNOWN_COMMAND_KEY, CommandStats, resolve_command_key


@pytest.mark.parametrize(
    ("command", "expected"),
    [
        ({"run": "git status --short"}, "git"),
        ({"key": "deploy", "run": "make deploy"}, "deploy"),
        ({"key": "  ", "run": "ls -la"}, "ls"),
        ({"run": "   "}, UNKNOWN_COMMAND_KEY),
        ("npm test", "npm test"),
        (None, UNKNOWN_COMMAND_KEY),
    ],
)
def test_resolve_command_key(command, expected):
    assert resolve_command_key(command) == expected


def test_increment_writes_counts(tmp_path):
    path = tmp_path / "nested" / "stats.json"
    stats = CommandStats(path=path)

    assert stats.increment({"run": "ls"}) is True
    assert stats.increment({"run": "ls -la"}) is True
    assert stats.increment({"run": "pwd"}) is True

    assert json.loads(path.read_text(encoding="utf-8")) == {"ls": 2, "pwd": 1}
    assert [p.name for p in path.parent.iterdir()] == ["stats.json"]


def test_disabled_stats_do_not_write(tmp_path):
    stats = CommandStats(path=tmp_path / "stats.json")
    stats.enabled = False

    assert stats.increment({"run": "ls"}) is False
    assert not (tmp_path / "stats.json").exists()


def test_unreadable_file_is_treated_as_empty(tmp_path):
    path = tmp_path / "stats.json"
    path.write_text("{not json", encoding="utf-8")
    stats = CommandStats(path=path)

    assert stats.load() == {}
    assert stats.increment({"run": "ls"}) is True
    assert stats.load() == {"ls": 1}


def test_non_numeric_counts_are_dropped(tmp_path):
    path = tmp_path / "stats.json"
    path.write_text(json.dumps({"ls": "3", "bad": "x", "": 4}), encoding="utf-8")

    assert CommandStats(path=path).load() == {"ls": 3}


def test_write_failure_returns_false(tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("file, not a directory", encoding="utf-8")
    stats = CommandStats(path=blocker / "stats.json")

    assert stats.increment({"run": "ls"}) is False
