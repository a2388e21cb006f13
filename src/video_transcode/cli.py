import argparse
import asyncio
import logging
import os
import sys

from . import ffmpeg_runner
from .batch import process_batch
from .config import resolve_config
from .models import ProcessingOptions, WatermarkOptions
from .pipeline import VideoPipeline
from .queue import ProcessingStatus, SQLiteVideoStore, VideoProcessingQueue

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(name)s - %(message)s"


def _add_options_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--renditions", type=str, help="Comma-separated quality labels (360p,720p)"
    )
    parser.add_argument("--thumbnails", type=int, help="Number of thumbnails to extract")
    parser.add_argument(
        "--no-thumbnails", action="store_true", help="Skip thumbnail extraction"
    )
    parser.add_argument("--max-duration", type=float, help="Reject sources longer than this (s)")
    parser.add_argument("--watermark-text", type=str, help="Text watermark")
    parser.add_argument("--watermark-image", type=str, help="Image watermark path")
    parser.add_argument(
        "--watermark-position",
        choices=["top-left", "top-right", "bottom-left", "bottom-right", "center"],
        default="bottom-right",
        help="Watermark anchor",
    )


def build_options(args: argparse.Namespace) -> ProcessingOptions:
    """Translate CLI flags into ProcessingOptions."""
    data = {}
    if getattr(args, "renditions", None):
        data["renditions"] = [q.strip() for q in args.renditions.split(",") if q.strip()]
    if getattr(args, "thumbnails", None) is not None:
        data["thumbnail_count"] = args.thumbnails
    if getattr(args, "no_thumbnails", False):
        data["generate_thumbnails"] = False
    if getattr(args, "max_duration", None) is not None:
        data["max_duration"] = args.max_duration
    if getattr(args, "watermark_text", None) or getattr(args, "watermark_image", None):
        data["watermark"] = WatermarkOptions(
            text=args.watermark_text,
            image_path=args.watermark_image,
            position=args.watermark_position,
        )
    return ProcessingOptions(**data)


def build_queue(config) -> VideoProcessingQueue:
    return VideoProcessingQueue(
        SQLiteVideoStore(config.db_path),
        VideoPipeline(config).process_video,
        concurrency=config.queue.concurrency,
        max_retries=config.queue.max_retries,
        retry_base_delay_s=config.queue.retry_base_delay_s,
    )


async def _enqueue_and_drain(queue: VideoProcessingQueue, video_id: str, url: str, options) -> None:
    await queue.add_job(video_id, url, options)
    await queue.join()


async def _retry_and_drain(queue: VideoProcessingQueue, video_id: str) -> None:
    await queue.retry_video(video_id)
    await queue.join()


async def _recover_and_drain(queue: VideoProcessingQueue, stale_after_s: int) -> int:
    admitted = await queue.recover_stale(stale_after_s)
    await queue.join()
    return admitted


def _print_record(store: SQLiteVideoStore, video_id: str) -> None:
    record = store.get(video_id)
    if record is None:
        return
    print(f"{record.video_id}: {record.status.value}")
    for fmt in record.processed_formats:
        print(f"  {fmt['quality']:<10} {fmt['resolution']:<10} {fmt['url']}")
    if record.thumbnails:
        print(f"  thumbnails: {len(record.thumbnails)}")
    if record.last_error:
        print(f"  error: {record.last_error}")


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="video-transcode", description="Video transcoding pipeline and job queue"
    )
    subparsers = parser.add_subparsers(dest="command", help="Subcommands")

    # CHECK FFMPEG
    subparsers.add_parser("check", help="Verify dependencies")

    # PROCESS (batch, no queue)
    process_parser = subparsers.add_parser("process", help="Transcode sources directly in chunks")
    process_parser.add_argument("urls", nargs="+", help="Source URLs or paths")
    process_parser.add_argument("--chunk-size", type=int, help="Sources processed concurrently")
    _add_options_arguments(process_parser)

    # ENQUEUE (queue + persisted status)
    enqueue_parser = subparsers.add_parser("enqueue", help="Queue a video and run until drained")
    enqueue_parser.add_argument("video_id", help="Video identifier")
    enqueue_parser.add_argument("url", help="Source URL or path")
    enqueue_parser.add_argument("--db", type=str, help="Status database path")
    enqueue_parser.add_argument("--concurrency", type=int, help="Parallel pipelines")
    _add_options_arguments(enqueue_parser)

    # QUEUE subcommands (status, failed, retry, recover)
    queue_parser = subparsers.add_parser("queue", help="Manage persisted video status")
    queue_subparsers = queue_parser.add_subparsers(dest="queue_command", help="Queue commands")

    status_parser = queue_subparsers.add_parser("status", help="Show counts per status")
    status_parser.add_argument("--db", type=str, help="Status database path")

    failed_parser = queue_subparsers.add_parser("failed", help="List failed videos")
    failed_parser.add_argument("--db", type=str, help="Status database path")

    retry_parser = queue_subparsers.add_parser("retry", help="Retry a failed video")
    retry_parser.add_argument("video_id", help="Video identifier")
    retry_parser.add_argument("--db", type=str, help="Status database path")

    recover_parser = queue_subparsers.add_parser("recover", help="Re-admit stranded videos")
    recover_parser.add_argument("--db", type=str, help="Status database path")
    recover_parser.add_argument(
        "--stale-after", type=int, help="Seconds before a 'processing' row counts as stale"
    )

    args = parser.parse_args(argv)

    logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO").upper(), format=LOG_FORMAT)

    overrides = {
        "db_path": getattr(args, "db", None),
        "chunk_size": getattr(args, "chunk_size", None),
        "concurrency": getattr(args, "concurrency", None),
        "stale_after_s": getattr(args, "stale_after", None),
    }

    if args.command == "check":
        print("Checking dependencies...")
        if ffmpeg_runner.check_ffmpeg():
            print("✅ ffmpeg found.")
        else:
            print("❌ ffmpeg NOT found.")
            sys.exit(1)

    elif args.command == "process":
        config = resolve_config(overrides)
        options = build_options(args)
        pipeline = VideoPipeline(config)
        results = asyncio.run(
            process_batch(
                args.urls,
                options,
                processor=pipeline.process_video,
                chunk_size=config.batch.chunk_size,
            )
        )
        print("\n" + "=" * 60)
        print("BATCH SUMMARY")
        print("=" * 60)
        print(f"Succeeded:            {len(results)}")
        print(f"Failed:               {len(args.urls) - len(results)}")
        for result in results:
            qualities = ", ".join(f.quality for f in result.formats)
            print(f"  {result.duration:.1f}s source -> {qualities} ({result.processing_time}ms)")
        print("=" * 60)
        if not results:
            sys.exit(1)

    elif args.command == "enqueue":
        config = resolve_config(overrides)
        queue = build_queue(config)
        asyncio.run(_enqueue_and_drain(queue, args.video_id, args.url, build_options(args)))
        _print_record(queue.store, args.video_id)

    elif args.command == "queue":
        config = resolve_config(overrides)

        if args.queue_command == "status":
            counts = SQLiteVideoStore(config.db_path).status_counts()
            print("\n" + "=" * 60)
            print("QUEUE STATUS")
            print("=" * 60)
            print(f"Pending:              {counts['pending']}")
            print(f"Processing:           {counts['processing']}")
            print(f"Completed:            {counts['completed']}")
            print(f"Failed:               {counts['failed']}")
            print(f"Total:                {sum(counts.values())}")
            print("=" * 60)

        elif args.queue_command == "failed":
            records = SQLiteVideoStore(config.db_path).list_by_status(ProcessingStatus.FAILED)
            if not records:
                print("No failed videos.")
            for record in records:
                print(f"{record.video_id}  {record.updated_at}  {record.last_error}")

        elif args.queue_command == "retry":
            queue = build_queue(config)
            try:
                asyncio.run(_retry_and_drain(queue, args.video_id))
            except (LookupError, ValueError) as e:
                print(f"❌ {e}")
                sys.exit(1)
            _print_record(queue.store, args.video_id)

        elif args.queue_command == "recover":
            queue = build_queue(config)
            admitted = asyncio.run(_recover_and_drain(queue, config.queue.stale_after_s))
            print(f"Recovered {admitted} videos.")

        else:
            queue_parser.print_help()

    else:
        parser.print_help()


if __name__ == "__main__":
    main()
