"""
Tests for the dispatch log (JSONL narrative + debug buffer + tap renderer).
Run with: pytest tests/test_dispatch_log.py
"""

import json

from lmdispatch.dispatch_log import MAX_CONTENT, DispatchLog, _format_entry, live_tap


def _read(path):
    return [json.loads(line) for line in path.read_text().splitlines() if line.strip()]


def test_writes_jsonl(tmp_path):
    path = tmp_path / "logs" / "dispatch.jsonl"
    log = DispatchLog(str(path))
    log.log(1, "Turn 1/5 started")
    log.log(2, "tool ran", level="tool")
    log.close()

    entries = _read(path)
    assert [e["conv"] for e in entries] == [1, 2]
    assert entries[0]["message"] == "Turn 1/5 started"
    assert entries[1]["level"] == "tool"
    assert {"ts", "conv", "level", "len", "message"} <= set(entries[0])


def test_long_messages_are_truncated(tmp_path):
    path = tmp_path / "dispatch.jsonl"
    log = DispatchLog(str(path))
    log.log(1, "a" * 1000 + "b" * 3000)
    log.close()

    entry = _read(path)[0]
    assert entry["len"] == 4000
    assert "chars truncated" in entry["message"]
    assert entry["message"].startswith("a" * 1000)
    assert entry["message"].endswith("b" * 1000)
    assert len(entry["message"]) < MAX_CONTENT + 100


def test_no_path_writes_nothing(tmp_path):
    log = DispatchLog(None)
    log.log(1, "hello")
    log.close()
    assert list(tmp_path.iterdir()) == []


def test_debug_buffer_filters_by_conversation():
    log = DispatchLog(None)
    log.log(1, "before debug")
    log.enable_debug()
    log.log(1, "one")
    log.log(2, "two")

    assert len(log.get_debug_logs()) == 2
    assert log.get_debug_logs()[1].startswith("[Conv-2] ")
    only_one = log.get_debug_logs(1)
    assert len(only_one) == 1
    assert only_one[0].endswith(" - one")

    log.clear_debug()
    assert log.get_debug_logs() == []
    log.disable_debug()
    log.log(1, "after")
    assert log.get_debug_logs() == []


def test_format_entry():
    entry = {"ts": "2024-01-15T12:34:56+00:00", "conv": 3, "level": "error", "message": "boom\nline2"}
    out = _format_entry(entry)
    assert "12:34:56" in out
    assert "[Conv-3]" in out
    assert "ERROR" in out
    assert "line2" in out
    assert json.loads(_format_entry(entry, raw=True)) == entry


def test_live_tap_filters(tmp_path, capsys):
    path = tmp_path / "dispatch.jsonl"
    log = DispatchLog(str(path))
    log.log(1, "first conversation")
    log.log(2, "second conversation", level="warning")
    log.close()

    live_tap(log_path=str(path), follow=False, conv_filter=2, raw=True)
    out = capsys.readouterr().out
    assert "second conversation" in out
    assert "first conversation" not in out


def test_live_tap_missing_file(tmp_path, capsys):
    live_tap(log_path=str(tmp_path / "nope.jsonl"), follow=False)
    assert "No dispatch log found" in capsys.readouterr().out


def test_debug_buffer_is_bounded():
    log = DispatchLog(None, debug_limit=3)
    log.enable_debug()
    for i in range(5):
        log.log(1, f"step {i}")
    lines = log.get_debug_logs(1)
    assert len(lines) == 3
    assert lines[0].endswith(" - step 2")


def test_drop_debug_forgets_one_conversation():
    log = DispatchLog(None)
    log.enable_debug()
    log.log(1, "one")
    log.log(2, "two")
    log.drop_debug(1)
    assert log.get_debug_logs(1) == []
    assert len(log.get_debug_logs(2)) == 1
