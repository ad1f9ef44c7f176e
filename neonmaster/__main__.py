from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import dataclass
from pathlib import Path

from . import __version__
from .config import DEFAULT_TARGET_LUFS
from .errors import DecodeError, RenderError, ValidationError
from .models import ChainState
from .utils import have_exe


@dataclass
class DoctorResult:
    ok: bool
    notes: list[str]


def _doctor() -> DoctorResult:
    notes: list[str] = []
    ok = True

    for exe, purpose in (("ffmpeg", "decoding"), ("ffprobe", "track metadata")):
        if have_exe(exe):
            notes.append(f"{exe}: OK")
        else:
            ok = False
            notes.append(f"{exe}: MISSING (needed for {purpose})")

    from .audio import engine

    if engine.sd is None:
        notes.append(f"sounddevice: UNAVAILABLE ({engine._sounddevice_import_error}); live playback disabled")
    else:
        try:
            device = engine.sd.query_devices(kind="output")
            notes.append(f"audio output: OK ({device['name']})")
        except Exception as e:
            notes.append(f"audio output: NONE ({e}); live playback disabled")

    notes.append(f"python: {sys.version.split()[0]}")
    notes.append(f"platform: {sys.platform}")
    return DoctorResult(ok=ok, notes=notes)


def _load_state(path: str | None) -> ChainState:
    if not path:
        return ChainState()
    from .presets import preset_from_doc

    doc = json.loads(Path(path).expanduser().read_text(encoding="utf-8"))
    return preset_from_doc(doc).state


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="neonmaster",
        description="Mastering chain: render a track offline through EQ, dynamics and limiter.",
    )
    p.add_argument("--version", action="store_true", help="Print version and exit.")
    p.add_argument("-v", "--verbose", action="store_true", help="Debug logging.")

    sub = p.add_subparsers(dest="cmd")
    sub.add_parser("doctor", help="Check for ffmpeg/ffprobe and an audio output device.")

    render = sub.add_parser("render", help="Master a file offline and write a 16-bit WAV.")
    render.add_argument("input", help="Source audio file (anything ffmpeg decodes)")
    render.add_argument("output", help="Destination .wav path")
    render.add_argument("--preset", default=None, help="Preset JSON document")
    render.add_argument("--normalize", action="store_true", help="Normalize loudness to --target-lufs")
    render.add_argument("--target-lufs", type=float, default=DEFAULT_TARGET_LUFS, dest="target_lufs")
    render.add_argument("--volume", type=float, default=1.0, help="Output volume 0..1")
    return p


def main(argv: list[str] | None = None) -> int:
    argv = list(sys.argv[1:] if argv is None else argv)
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s | %(levelname)-7s | %(name)s | %(message)s",
    )

    if args.version:
        print(f"neonmaster {__version__}")
        return 0

    if args.cmd == "doctor":
        res = _doctor()
        print(f"neonmaster doctor: {'OK' if res.ok else 'MISSING_DEPS'}")
        for n in res.notes:
            print(f"- {n}")
        return 0 if res.ok else 1

    if args.cmd == "render":
        from .audio.render import render_offline
        from .decoder import decode_file
        from .wav import write_wav

        try:
            state = _load_state(args.preset)
            track = decode_file(args.input)
            result = render_offline(
                track,
                state,
                volume=max(0.0, min(1.0, args.volume)),
                normalize=args.normalize,
                target_lufs=args.target_lufs,
            )
            out = write_wav(Path(args.output), result.samples, sample_rate=result.sample_rate)
        except (OSError, json.JSONDecodeError, ValidationError, DecodeError, RenderError) as e:
            print(f"ERROR: {e}", file=sys.stderr)
            return 1
        print(f"wrote {out} ({result.frames} frames, {result.lufs:.2f} LUFS)")
        return 0

    build_parser().print_help()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
