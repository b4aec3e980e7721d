"""Quick demo script for the animation export path.

Launches one engine instance, builds a small construction driven by a
slider ``t`` and exports the sweep as a GIF or MP4 into the export directory.

Examples
--------
Export a 30 frame GIF with the default profile::

    python scripts/demo_export.py --format gif --frames 30

Export an MP4 at an odd size (rounded down to 800x600 by the encoder)::

    python scripts/demo_export.py --format video --width 801 --height 601

Run the browser visibly while debugging the handshake::

    python scripts/demo_export.py --profile debug
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import Iterable

from ggbhost.animation import AnimationExporter, AnimationExportJob
from ggbhost.config import load_config
from ggbhost.errors import EngineError
from ggbhost.runtime import InstancePool
from ggbhost.utils import configure_logging

DEMO_COMMANDS = (
    "t = Slider(0, 2pi, 0.01)",
    "P = (cos(t), sin(t))",
    "c = Circle((0, 0), 1)",
    "s = Segment((0, 0), P)",
)


def parse_args(argv: Iterable[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="ggbhost animation export demo")
    parser.add_argument("--profile", default=None, help="Config profile to load.")
    parser.add_argument("--format", choices=("frames", "gif", "video"), default="gif")
    parser.add_argument("--frames", type=int, default=24, help="Number of frames to capture.")
    parser.add_argument("--frame-rate", type=float, default=None, help="Output frame rate.")
    parser.add_argument("--width", type=int, default=None)
    parser.add_argument("--height", type=int, default=None)
    parser.add_argument("--filename", default=None, help="Output file name inside the export dir.")
    return parser.parse_args(list(argv) if argv is not None else None)


async def run_demo(args: argparse.Namespace) -> dict:
    config = load_config(args.profile)
    config.ensure_directories()
    pool = InstancePool.from_config(config)
    exporter = AnimationExporter.from_config(config, pool)
    try:
        instance = await pool.get_default_instance()
        for command in DEMO_COMMANDS:
            (await instance.eval_command(command)).raise_for_error()
        job = AnimationExportJob(
            frame_count=args.frames,
            frame_rate=args.frame_rate,
            width=args.width,
            height=args.height,
            format=args.format,
            parameter="t",
            filename=args.filename,
        )
        result = await exporter.export_animation(job, instance)
        return result.to_dict(include_frames=False)
    finally:
        await pool.cleanup()


def main(argv: Iterable[str] | None = None) -> int:
    args = parse_args(argv)
    configure_logging()
    try:
        summary = asyncio.run(run_demo(args))
    except EngineError as exc:
        print(json.dumps(exc.to_dict(), indent=2), file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130
    print(json.dumps(summary, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
