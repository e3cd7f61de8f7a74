from __future__ import annotations

import argparse
import asyncio
import base64
import json
import logging
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from tryon_engine.config import load_config
from tryon_engine.errors import MissingImageError
from tryon_engine.pipeline.gate import GateState
from tryon_engine.pipeline.orchestrator import TryOnOrchestrator
from tryon_engine.types import TryOnOptions, TryOnResult


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Run a single virtual try-on from a local avatar and garment image."
    )
    parser.add_argument("avatar", type=str, help="Avatar image path or http(s) URL.")
    parser.add_argument("garment", type=str, help="Garment image path or http(s) URL.")
    parser.add_argument(
        "--description",
        type=str,
        default=None,
        help="Free-text garment description used to derive category and fitting.",
    )
    parser.add_argument(
        "--garment-type",
        type=str,
        default=None,
        help="Garment type hint (e.g. 'jacket', 'dress') used when no description is given.",
    )
    parser.add_argument(
        "--source",
        type=str,
        default=None,
        help="Where the garment came from (closet, inspiration, external-search, ...).",
    )
    parser.add_argument("--seed", type=int, default=None, help="Fixed provider seed.")
    parser.add_argument(
        "--samples",
        type=int,
        default=None,
        help="Number of candidate images to request (1-4).",
    )
    parser.add_argument(
        "--timeout-ms",
        type=int,
        default=None,
        help="Polling budget in milliseconds (defaults to TRYON_MAX_POLL_BUDGET_MS).",
    )
    parser.add_argument(
        "--output",
        type=Path,
        default=None,
        help="Optional path for the result image when the provider returns a data URL.",
    )
    parser.add_argument(
        "--dotenv",
        type=Path,
        default=None,
        help="Optional path to a .env file containing provider credentials.",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging.")
    return parser.parse_args()


def _load_image(value: str, console: Console) -> bytes | str:
    if value.lower().startswith(("http://", "https://")):
        return value
    path = Path(value)
    if not path.exists():
        console.print(f"[red]Image not found:[/red] {path}")
        raise SystemExit(1)
    return path.read_bytes()


def _render(result: TryOnResult, console: Console) -> None:
    table = Table(title="Try-on result", show_header=False)
    table.add_column("field", style="cyan")
    table.add_column("value")
    table.add_row("fallback used", "yes" if result.fallback_used else "no")
    preview = result.image_url if len(result.image_url) < 120 else result.image_url[:117] + "..."
    table.add_row("image", preview)
    for key, value in result.diagnostics.as_dict().items():
        if isinstance(value, (list, dict)):
            value = json.dumps(value) if value else "-"
        table.add_row(key, "-" if value is None else str(value))
    console.print(table)


def _save_output(result: TryOnResult, path: Path, console: Console) -> None:
    if not result.image_url.startswith("data:"):
        console.print(f"[yellow]Result is a remote URL; not saving:[/yellow] {result.image_url}")
        return
    encoded = result.image_url.split(",", 1)[-1]
    path.write_bytes(base64.b64decode(encoded))
    console.print(f"[green]Result saved to[/green] {path}")


async def _run(args: argparse.Namespace, console: Console) -> TryOnResult:
    config = load_config(args.dotenv)
    options = TryOnOptions(
        garment_description=args.description,
        garment_type=args.garment_type,
        source=args.source,
        seed=args.seed,
        sample_count=args.samples,
        timeout_ms=args.timeout_ms,
    )
    async with TryOnOrchestrator(config, GateState()) as orchestrator:
        return await orchestrator.try_on(
            _load_image(args.avatar, console),
            _load_image(args.garment, console),
            options,
        )


def main() -> None:
    args = parse_args()
    console = Console()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)

    try:
        result = asyncio.run(_run(args, console))
    except (MissingImageError, RuntimeError) as exc:
        console.print(f"[red]{exc}[/red]")
        raise SystemExit(1) from exc

    _render(result, console)
    if args.output is not None:
        _save_output(result, args.output, console)
    if result.fallback_used:
        raise SystemExit(2)


if __name__ == "__main__":
    main()
