import argparse
import asyncio
import logging
import sys

from job_runner.config.base_config import settings
from job_runner.services.transcoding_service import TranscodingOrchestrator


logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Run a list of chunked transcode jobs.")
    parser.add_argument("definitions_uri", help="JSON job definitions, a local path or s3://bucket/key.")
    parser.add_argument("--run-id", default=None, help="Run id to record timings under (default: random UUID).")
    parser.add_argument(
        "--strict",
        action="store_true",
        help="Exit non-zero when any job failed or was skipped.",
    )
    parser.add_argument(
        "--video-threads",
        type=int,
        default=None,
        help="Encoder threads for jobs that do not set video_threads themselves.",
    )
    return parser.parse_args(argv)


async def main(argv=None) -> int:
    args = parse_args(argv)
    orchestrator = TranscodingOrchestrator(video_threads=args.video_threads)
    report = await orchestrator.run_from_source(args.definitions_uri, run_id=args.run_id)

    for result in report.results:
        logger.info(
            f"Job {result.job_counter} ({result.job_name}): {result.status.value}"
            + (f" at {result.stage}: {result.error}" if result.error else "")
        )
    print(report.model_dump_json(indent=2))
    return 1 if args.strict and report.partial_failure else 0


def cli():
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    cli()
