from __future__ import annotations

import json
from pathlib import Path

from neonmaster import __version__
from neonmaster.__main__ import build_parser, main


def test_version(capsys) -> None:
    assert main(["--version"]) == 0
    assert __version__ in capsys.readouterr().out


def test_render_arguments() -> None:
    args = build_parser().parse_args(["render", "in.wav", "out.wav", "--normalize", "--target-lufs", "-16"])
    assert args.cmd == "render"
    assert args.normalize is True
    assert args.target_lufs == -16.0
    assert args.volume == 1.0


def test_render_reports_bad_preset(tmp_path: Path, capsys) -> None:
    preset = tmp_path / "bad.json"
    preset.write_text(json.dumps({"eq": {}}), encoding="utf-8")
    code = main(["render", str(tmp_path / "in.wav"), str(tmp_path / "out.wav"), "--preset", str(preset)])
    assert code == 1
    assert "Invalid preset file" in capsys.readouterr().err
