from __future__ import annotations

import pytest

from lilypreview.cli import CONSOLE_HELP, handle_console_command, main


class _FakeController:
    def __init__(self) -> None:
        self.commands: list[str] = []

    def refresh_now(self) -> bool:
        self.commands.append("refresh")
        return True

    def toggle_auto_refresh(self) -> str:
        self.commands.append("toggle")
        return "manual"


class _FakeApp:
    def __init__(self) -> None:
        self.quit_calls = 0

    def quit(self) -> None:
        self.quit_calls += 1


@pytest.fixture
def score(tmp_path, monkeypatch):
    monkeypatch.setenv("LILYPREVIEW_CONFIG_DIR", str(tmp_path / "config"))
    path = tmp_path / "song.ly"
    path.write_text('\\version "2.24.4"\n\n{ c4 d e f }\n', encoding="utf-8")
    return path


def test_transpose_prints_the_result(score, capsys):
    assert main(["transpose", "c", "d", str(score)]) == 0
    out = capsys.readouterr().out
    assert out == '\\version "2.24.4"\n\n\\transpose c d {\n  { c4 d e f }\n}\n'
    assert score.read_text(encoding="utf-8") == '\\version "2.24.4"\n\n{ c4 d e f }\n'


def test_transpose_in_place_on_a_line_range(score, capsys):
    assert main(["transpose", "c", "bes,", str(score), "--lines", "3", "--in-place"]) == 0
    assert "Applied transpose c -> bes, (lines 3-3)." in capsys.readouterr().out
    assert score.read_text(encoding="utf-8") == (
        '\\version "2.24.4"\n\n\\transpose c bes, {\n  { c4 d e f }\n}\n'
    )


def test_transpose_rejects_bad_pitches_and_ranges(score, capsys):
    with pytest.raises(SystemExit):
        main(["transpose", "h", "d", str(score)])
    with pytest.raises(SystemExit):
        main(["transpose", "c", "d", str(score), "--lines", "5:2"])
    assert main(["transpose", "c", "d", str(score), "--lines", "2"]) == 1
    assert "Select a music fragment" in capsys.readouterr().err


def test_console_commands():
    controller = _FakeController()
    app = _FakeApp()

    assert handle_console_command("r\n", controller, app)
    assert handle_console_command(" M ", controller, app)
    assert handle_console_command("", controller, app)
    assert controller.commands == ["refresh", "toggle"]

    assert handle_console_command("q", controller, app)
    assert app.quit_calls == 1


def test_unknown_console_command_prints_help(capsys):
    assert handle_console_command("x", _FakeController(), _FakeApp()) is False
    assert CONSOLE_HELP in capsys.readouterr().out
