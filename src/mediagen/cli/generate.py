"""Command line interface for the generation orchestrator.

Usage:
    python -m mediagen.cli generate {image|video} PROMPT [OPTIONS]
    python -m mediagen.cli serve [--host HOST] [--port PORT]

Examples:
    # Generate an image and print its URL
    python -m mediagen.cli generate image "a lighthouse at dusk" --size 1792x1024

    # Generate a video with verbose logging
    python -m mediagen.cli generate video "a red balloon rising" -v

    # Run the HTTP API
    python -m mediagen.cli serve --port 8080
"""

import asyncio
import sys
from argparse import ArgumentParser, Namespace
from typing import Optional, Sequence

import httpx
import structlog
import uvicorn

from mediagen.core.config import Settings, configure_logging
from mediagen.models.generation_job import JobKind, JobState
from mediagen.services.generation.orchestrator import GenerationOrchestrator
from mediagen.services.generation.prompts import IMAGE_QUALITIES, IMAGE_SIZES

logger = structlog.get_logger()


def parse_args(argv: Optional[Sequence[str]] = None) -> Namespace:
    """Parse command-line arguments."""
    parser = ArgumentParser(description="Asynchronous image and video generation")
    subparsers = parser.add_subparsers(dest="command", required=True)

    generate = subparsers.add_parser("generate", help="Submit a job and wait for its result")
    generate.add_argument("kind", choices=[kind.value for kind in JobKind])
    generate.add_argument("prompt", help="Text prompt")
    generate.add_argument("--size", choices=IMAGE_SIZES, help="Image size")
    generate.add_argument("--quality", choices=IMAGE_QUALITIES, help="Image quality")
    generate.add_argument(
        "--timeout",
        type=float,
        help="Give up waiting after this many seconds (default: wait until finished)",
    )
    generate.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging (DEBUG level)",
    )

    serve = subparsers.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", help="Bind address (default: HOST setting)")
    serve.add_argument("--port", type=int, help="Bind port (default: PORT setting)")

    return parser.parse_args(argv)


def _params(args: Namespace) -> dict:
    params = {}
    if args.size:
        params["size"] = args.size
    if args.quality:
        params["quality"] = args.quality
    return params


async def async_main(
    args: Namespace,
    settings: Optional[Settings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> int:
    """Submit one job and wait for a terminal state.

    Returns:
        Exit code: 0 (succeeded), 1 (failed, cancelled or timed out)
    """
    settings = settings or Settings()  # type: ignore[call-arg]
    if args.verbose:
        settings.log_level = "DEBUG"
    configure_logging(settings)

    if args.kind == JobKind.VIDEO.value and (args.size or args.quality):
        print("Error: --size and --quality apply to images only", file=sys.stderr)
        return 1

    orchestrator = GenerationOrchestrator.from_settings(settings, transport=transport)
    job = None

    try:
        job = await orchestrator.submit(args.kind, args.prompt, _params(args))
        logger.info("cli.submitted", job_id=str(job.id), external_job_id=job.external_job_id)

        if not job.is_terminal:
            print(f"Submitted {job.kind.value} job {job.id}, waiting for result...")
            await orchestrator.wait(job.id, timeout=args.timeout)

        if not job.is_terminal:
            await orchestrator.cancel(job.id)
            print(f"\nError: gave up waiting after {args.timeout}s", file=sys.stderr)
            return 1

        if job.state == JobState.SUCCEEDED:
            print(job.resolved_url)
            logger.info(
                "cli.success",
                job_id=str(job.id),
                elapsed_seconds=orchestrator.elapsed_seconds(job),
            )
            return 0

        reason = job.failure_reason or job.state.value
        print(f"\nError: {reason}", file=sys.stderr)
        return 1

    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    except asyncio.CancelledError:
        # Interrupted: stop observing the job before the loop shuts down
        if job is not None and not job.is_terminal:
            await orchestrator.cancel(job.id)
        raise

    finally:
        await orchestrator.aclose()


def serve(args: Namespace) -> int:
    """Run the HTTP API with uvicorn."""
    settings = Settings()  # type: ignore[call-arg]
    uvicorn.run(
        "mediagen.app:app",
        host=args.host or settings.host,
        port=args.port or settings.port,
    )
    return 0


def main(argv: Optional[Sequence[str]] = None) -> None:
    """Synchronous entry point for CLI."""
    args = parse_args(argv)

    if args.command == "serve":
        sys.exit(serve(args))

    try:
        sys.exit(asyncio.run(async_main(args)))
    except KeyboardInterrupt:
        logger.info("cli.interrupted")
        print("\nGeneration interrupted by user", file=sys.stderr)
        sys.exit(130)  # Standard exit code for SIGINT
