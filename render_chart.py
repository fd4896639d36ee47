#!/usr/bin/env python3
import argparse
import json
import logging
from pathlib import Path

from pedigree_chart_lib import AscendingChart, ChartError, deep_merge

logger = logging.getLogger("render_chart")


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Render genealogy JSON to an ascending pedigree chart SVG.")
    parser.add_argument("input_json", type=Path, help="Path to input genealogy JSON file.")
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=None,
        help="Path to chart config JSON file (generations, layers, margin, font, style).",
    )
    parser.add_argument(
        "-o",
        "--output",
        type=Path,
        default=Path("pedigree.svg"),
        help="Path to output SVG file (default: pedigree.svg).",
    )
    parser.add_argument("--font-path", default=None, help="TrueType font used to measure text for fitting.")
    parser.add_argument("--no-fit", action="store_true", help="Keep configured font sizes, skip text fitting.")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging.")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    data = json.loads(args.input_json.read_text(encoding="utf-8"))
    config = json.loads(args.config.read_text(encoding="utf-8")) if args.config else {}
    if args.font_path:
        config = deep_merge(config, {"font": {"path": args.font_path}})

    chart = AscendingChart()
    chart.fit = not args.no_fit
    try:
        chart.load_from_json(data, config)
        chart.render_and_save(str(args.output))
    except ChartError as exc:
        logger.error("%s", exc)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
