#!/usr/bin/env python3
"""Command-line front end for the transcoding core.

Runs a single job to completion, or inspects and maintains the temp tree
that jobs leave behind.

Usage:
    ./transcode_worker.py clip.mov --file-id vid-1 --namespace capsules
    ./transcode_worker.py clip.mp4 --file-id vid-1 --namespace capsules --force
    ./transcode_worker.py --list-dangling capsules
    ./transcode_worker.py --cleanup --file-id vid-1 --namespace capsules
    ./transcode_worker.py --sweep --max-age-hours 12
    ./transcode_worker.py --stats
    ./transcode_worker.py --check-gpu
"""

import argparse
import asyncio
import logging
import shutil
import signal
import sys
from pathlib import Path
from typing import Optional

# Add the backend directory to Python path for imports
sys.path.insert(0, str(Path(__file__).parent))

from mediaproc.config import get_settings
from mediaproc.exceptions import MediaProcError
from mediaproc.main import Services, build_services
from mediaproc.services.processing import ProcessOptions
from mediaproc.services.temp_store import SourceFile
from mediaproc.services.transcoder import Quality

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("transcode_worker")


def parse_namespace(value: str) -> list[str]:
    """Split "a/b" into ["a", "b"]."""
    segments = value.strip("/").split("/")
    if not all(segments):
        raise argparse.ArgumentTypeError(f"invalid namespace: {value!r}")
    return segments


async def check_gpu(services: Services) -> int:
    print("\nHardware Encoding Check:")
    print("-" * 40)

    ffmpeg_path = shutil.which(services.settings.ffmpeg_path)
    if ffmpeg_path:
        print(f"  FFmpeg:  {ffmpeg_path}")
    else:
        print("  FFmpeg:  NOT FOUND")
        return 1

    result = await services.hwaccel.detect()
    tried = ", ".join(t.value for t in result.attempted) or "none"
    print(f"  Tried:   {tried}")
    if result.available:
        print(f"  Encoder: {result.selected.codec} ({result.selected.encoder_type.value})")
    else:
        print("  Encoder: libx264 (software)")
        print("\n  No hardware encoder passed the test encode.")
    return 0


def list_dangling(services: Services, namespace: list[str]) -> int:
    jobs = services.service.list_dangling(namespace)
    if not jobs:
        print(f"No dangling jobs in {'/'.join(namespace)}")
        return 0

    print(f"\nDangling jobs in {'/'.join(namespace)}:")
    for job in jobs:
        state = "complete" if job.is_complete else "incomplete"
        print(
            f"  {job.file_id:<36} {state:<10} "
            f"started {job.lock.started_at.isoformat()} pid {job.lock.owner_process_id} "
            f"({job.lock.original_name})"
        )
    return 0


def show_stats(services: Services) -> int:
    stats = services.service.get_stats()
    print("\nTemp Storage Statistics:")
    print(f"  Jobs:       {stats.total_jobs}")
    print(f"  Dangling:   {stats.dangling_count}")
    print(f"  Size:       {stats.total_size_mb:.2f} MB")
    for name, ns in stats.by_namespace.items():
        print(f"  {name}: {ns.jobs} job(s), {ns.dangling} dangling, {ns.size_bytes} bytes")
    return 0


async def process_file(
    services: Services,
    input_path: Path,
    file_id: str,
    namespace: list[str],
    force: bool,
    quality: Quality,
) -> int:
    await services.hwaccel.detect()

    cancel_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    # Handle shutdown signals
    def on_signal(sig: int) -> None:
        logger.info(f"Received signal {sig}, cancelling...")
        cancel_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, on_signal, sig)
        except NotImplementedError:
            pass

    last_logged = -10.0

    def on_progress(percent: float) -> None:
        nonlocal last_logged
        if percent - last_logged >= 10 or percent >= 100:
            logger.info(f"Progress: {percent:.1f}%")
            last_logged = percent

    options = ProcessOptions(
        on_progress=on_progress,
        cancel_event=cancel_event,
        force_convert=force,
        quality=quality,
    )

    try:
        result = await services.service.process(
            file_id, namespace, SourceFile.from_path(input_path), options
        )
    except MediaProcError as e:
        logger.error(e.message)
        return 1

    print(f"\nOutput:    {result.output_path}")
    print(f"Converted: {'yes' if result.was_converted else 'no (already H.264)'}")
    print(f"Size:      {result.size} bytes")
    print(f"Video:     {result.codec} {result.width}x{result.height}, {result.duration:.2f}s")
    return 0


def main(argv: Optional[list[str]] = None) -> None:
    """Main entry point for transcode worker CLI."""
    parser = argparse.ArgumentParser(
        description="Segmented H.264 transcoding with crash-recoverable temp files",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Quality presets (rate-control value, software / hardware):
  low:     32 / 28
  medium:  28 / 23  (default)
  high:    23 / 19

Namespaces are given as slash-separated segments, e.g. capsules/2024.
        """,
    )

    # Load settings for defaults
    settings = get_settings()

    parser.add_argument("input", nargs="?", type=Path, help="Video file to process")
    parser.add_argument("--file-id", help="Caller's identifier for the file")
    parser.add_argument("--namespace", type=parse_namespace, help="Namespace, e.g. capsules")
    parser.add_argument(
        "--force",
        action="store_true",
        help="Re-encode even if the source is already H.264",
    )
    parser.add_argument(
        "--quality",
        type=Quality,
        default=Quality.MEDIUM,
        choices=list(Quality),
        help="Quality preset (default: medium)",
    )
    parser.add_argument(
        "--temp-dir",
        type=Path,
        default=None,
        help=f"Temp base directory (default: {settings.temp_base_path})",
    )

    actions = parser.add_mutually_exclusive_group()
    actions.add_argument(
        "--list-dangling",
        type=parse_namespace,
        metavar="NAMESPACE",
        help="List jobs whose owner is no longer running and exit",
    )
    actions.add_argument(
        "--cleanup",
        action="store_true",
        help="Delete temp files of --file-id in --namespace and exit",
    )
    actions.add_argument(
        "--sweep",
        action="store_true",
        help="Delete old dangling jobs and exit",
    )
    actions.add_argument(
        "--stats",
        action="store_true",
        help="Show temp storage statistics and exit",
    )
    actions.add_argument(
        "--check-gpu",
        action="store_true",
        help="Check hardware encoder availability and exit",
    )

    parser.add_argument(
        "--max-age-hours",
        type=float,
        default=None,
        help=f"Age threshold for --sweep (default: {settings.temp_max_age_hours})",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable debug logging",
    )

    args = parser.parse_args(argv)

    # Configure logging level
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    if args.temp_dir is not None:
        settings = settings.model_copy(update={"temp_base_path": args.temp_dir})
    services = build_services(settings)

    if args.check_gpu:
        sys.exit(asyncio.run(check_gpu(services)))

    if args.list_dangling:
        sys.exit(list_dangling(services, args.list_dangling))

    if args.stats:
        sys.exit(show_stats(services))

    if args.sweep:
        hours = args.max_age_hours if args.max_age_hours is not None else settings.temp_max_age_hours
        removed = services.service.sweep(hours * 3600)
        print(f"Removed {removed} dangling job(s) older than {hours}h")
        sys.exit(0)

    if not args.file_id or not args.namespace:
        parser.error("--file-id and --namespace are required")

    try:
        if args.cleanup:
            services.service.cleanup(args.file_id, args.namespace)
            print(f"Cleaned up {args.file_id}")
            sys.exit(0)

        if args.input is None:
            parser.error("an input file is required")
        if not args.input.is_file():
            logger.error(f"Input file does not exist: {args.input}")
            sys.exit(1)

        services.store.ensure_base_dir()
        sys.exit(
            asyncio.run(
                process_file(
                    services,
                    args.input,
                    args.file_id,
                    args.namespace,
                    args.force,
                    args.quality,
                )
            )
        )
    except (MediaProcError, ValueError) as e:
        logger.error(str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
