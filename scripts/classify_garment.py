from __future__ import annotations

import argparse

from rich.console import Console
from rich.table import Table

from tryon_engine.pipeline.garment import GarmentAnalyzer, detect_photo_type


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Show the provider parameters derived from garment hints."
    )
    parser.add_argument(
        "hints",
        nargs="+",
        help="Garment descriptions, types or URLs to classify.",
    )
    parser.add_argument(
        "--source",
        type=str,
        default=None,
        help="Optional garment source used for photo-type detection.",
    )
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    console = Console()
    analyzer = GarmentAnalyzer()

    table = Table(title="Garment classification")
    for column in ("hint", "category", "fitting", "complexity", "segmentation_free", "photo type"):
        table.add_column(column)

    for hint in args.hints:
        profile = analyzer.classify(hint)
        table.add_row(
            hint,
            profile.category,
            profile.fitting_type,
            profile.complexity,
            str(profile.skip_segmentation),
            detect_photo_type(hint, args.source),
        )
    console.print(table)


if __name__ == "__main__":
    main()
