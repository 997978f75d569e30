"""CLI entry point for the region patcher."""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from genai_patcher.core.exceptions import PatcherError
from genai_patcher.core.settings import get_settings
from genai_patcher.core.utils import setup_logging
from genai_patcher.enums import ProcessScope
from genai_patcher.models import Region, new_region_id
from genai_patcher.services import ImageStore, RegionProcessor
from genai_patcher.services.concurrency import CancellationToken
from genai_patcher.services.detection_service import DetectionClient
from genai_patcher.services.edit_service import list_openai_models

logger = logging.getLogger(__name__)


def parse_region(value: str) -> Region:
    """
    Parse an "x,y,w,h" percent rectangle.

    Args:
        value (str): Comma separated percentages.

    Returns:
        Region: Pending manual region.

    Raises:
        argparse.ArgumentTypeError: If the value is malformed or out of bounds.
    """
    parts = value.split(",")
    if len(parts) != 4:
        raise argparse.ArgumentTypeError(f"Region must be x,y,w,h: {value}")
    try:
        x, y, width, height = (float(part) for part in parts)
        return Region(x=x, y=y, width=width, height=height)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"Invalid region {value}: {e}") from e


def build_parser() -> argparse.ArgumentParser:
    """
    Build the argument parser.

    Returns:
        argparse.ArgumentParser: Configured parser.
    """
    parser = argparse.ArgumentParser(
        description="Generative region patcher",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    process_parser = subparsers.add_parser("process", help="Edit regions of images")
    process_parser.add_argument("images", nargs="+", type=Path, help="Image files")
    process_parser.add_argument(
        "--region",
        action="append",
        type=parse_region,
        default=[],
        help="Region as x,y,w,h percentages, repeatable",
    )
    process_parser.add_argument("--output", type=Path, default=None, help="Output directory")
    process_parser.add_argument("--prompt", default=None, help="Edit prompt")

    detect_parser = subparsers.add_parser("detect", help="Detect text bubbles")
    detect_parser.add_argument("image", type=Path, help="Image file")

    subparsers.add_parser("models", help="List models of the OpenAI-compatible endpoint")

    return parser


def main(argv: list[str] | None = None) -> int:
    """
    Main CLI entry point.

    Args:
        argv (list[str] | None): Arguments, sys.argv when None.

    Returns:
        int: Exit code (0 for success).
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    settings = get_settings()
    setup_logging(settings.logging)

    try:
        if args.command == "process":
            return asyncio.run(run_process(args))
        if args.command == "detect":
            return asyncio.run(run_detect(args))
        return asyncio.run(run_models())
    except PatcherError as e:
        logger.error(str(e))
        return 1


async def run_process(args: argparse.Namespace) -> int:
    """
    Process image files and write the stitched results.

    Args:
        args (argparse.Namespace): Parsed command line arguments.

    Returns:
        int: 0 when every region completed, 1 otherwise.
    """
    settings = get_settings()
    if args.prompt:
        settings = settings.model_copy(
            update={"processing": settings.processing.model_copy(update={"prompt": args.prompt})}
        )

    store = ImageStore()
    sources: dict[str, Path] = {}
    for path in args.images:
        image = store.add_image(path.read_bytes(), name=path.name)
        sources[image.id] = path
        if args.region:
            store.set_regions(
                image.id, [region.model_copy(update={"id": new_region_id()}) for region in args.region]
            )

    processor = RegionProcessor(store, settings)
    report = await processor.process(ProcessScope.ALL)

    for image in store.images:
        if image.final_result is None:
            logger.warning(f"No result for {image.name}")
            continue
        source = sources[image.id]
        output_dir = args.output or source.parent
        output_dir.mkdir(parents=True, exist_ok=True)
        target = output_dir / f"{source.stem}_result.png"
        target.write_bytes(image.final_result)
        print(target)

    logger.info(f"{report.completed} region(s) completed, {report.failed} failed")
    return 0 if report.failed == 0 else 1


async def run_detect(args: argparse.Namespace) -> int:
    """
    Print detected regions of an image as JSON.

    Args:
        args (argparse.Namespace): Parsed command line arguments.

    Returns:
        int: Exit code (0 for success).
    """
    client = DetectionClient(get_settings().detection)
    regions = await client.detect(args.image.read_bytes(), CancellationToken())
    print(
        json.dumps(
            [region.model_dump(mode="json", include={"x", "y", "width", "height"}) for region in regions],
            indent=2,
        )
    )
    return 0


async def run_models() -> int:
    """
    Print the model ids of the OpenAI-compatible endpoint.

    Returns:
        int: Exit code (0 for success).
    """
    edit_settings = get_settings().edit_service
    for model in await list_openai_models(edit_settings.openai_base_url, edit_settings.openai_api_key):
        print(model)
    return 0


if __name__ == "__main__":
    sys.exit(main())
