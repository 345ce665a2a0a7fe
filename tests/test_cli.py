"""
Tests for the CLI parser and the commands that talk to a running server.
Run with: pytest tests/test_cli.py
"""

from unittest.mock import MagicMock, patch

import httpx
import pytest

from lmdispatch import cli
from lmdispatch.orchestrator import AUTO_SELECT


@pytest.mark.parametrize("name", ["dial", "start", "serve"])
def test_dial_aliases(name):
    args = cli.build_parser().parse_args([name, "--port", "9000"])
    assert args.func is cli.cmd_dial
    assert args.port == 9000


def test_dispatch_arguments():
    args = cli.build_parser().parse_args([
        "run", "count", "the", "files",
        "-f", "a.instructions.md", "-f", "b.instructions.md",
        "-c", "notes.md", "--tool", "calculator", "-t", "4", "--caller", "me",
    ])
    assert args.func is cli.cmd_dispatch
    assert " ".join(args.goal) == "count the files"
    assert cli._instructions_from_args(args) == ["a.instructions.md", "b.instructions.md"]
    assert args.context == ["notes.md"]
    assert args.tool == ["calculator"]
    assert args.max_turns == 4
    assert args.allow_unsafe is None


def test_dispatch_instruction_sources():
    parser = cli.build_parser()
    assert cli._instructions_from_args(parser.parse_args(["dispatch", "g", "--auto-select"])) == AUTO_SELECT
    assert cli._instructions_from_args(parser.parse_args(["dispatch", "g", "-i", "Be terse."])) == "Be terse."
    assert cli._instructions_from_args(parser.parse_args(["dispatch", "g"])) is None

    with pytest.raises(SystemExit):
        parser.parse_args(["dispatch", "g", "-i", "x", "--auto-select"])


def test_tap_arguments():
    args = cli.build_parser().parse_args(["tail", "--conv", "3", "-l", "error", "--no-follow"])
    assert args.func is cli.cmd_tap
    assert args.conv == 3
    assert args.level == "error"
    assert args.no_follow is True


def test_hangup_posts_cancel(capsys):
    args = cli.build_parser().parse_args(["cancel", "7", "-u", "http://box:8787/"])
    resp = MagicMock(status_code=200)
    with patch("httpx.post", return_value=resp) as post:
        args.func(args)
    post.assert_called_once_with("http://box:8787/api/v1/conversations/7/cancel", timeout=5)
    assert "cancellation requested" in capsys.readouterr().out


def test_hangup_unknown_id(capsys):
    args = cli.build_parser().parse_args(["hangup", "7"])
    with patch("httpx.post", return_value=MagicMock(status_code=404)):
        args.func(args)
    assert "No conversation 7" in capsys.readouterr().out


def test_ring_dead_line(capsys):
    args = cli.build_parser().parse_args(["ps"])
    with patch("httpx.get", side_effect=httpx.ConnectError("refused")):
        args.func(args)
    assert "Dead line" in capsys.readouterr().out


def test_ring_lists_conversations(capsys):
    health = MagicMock(status_code=200)
    health.json.return_value = {"version": "0.3.0", "backend": "ollama", "backend_reachable": True, "active": 1}
    listing = MagicMock(status_code=200)
    listing.json.return_value = {"conversations": [{
        "id": 1, "goal": "Count files", "status": "working", "title": "Counter",
        "current_turn": 1, "max_turns": 5, "total_tokens": 12, "model_id": "llama3.2",
        "started_at": None, "caller": None, "results": None, "error_message": None,
    }], "count": 1}
    args = cli.build_parser().parse_args(["ring"])
    with patch("httpx.get", side_effect=[health, listing]):
        args.func(args)
    out = capsys.readouterr().out
    assert "is UP (v0.3.0)" in out
    assert "[1] ⟳ Counter" in out
    assert "1/5 | Tks: 12 | llama3.2" in out


def test_no_command_prints_help(capsys):
    with patch("sys.argv", ["lmdispatch"]):
        cli.main()
    assert "lmdispatch" in capsys.readouterr().out
