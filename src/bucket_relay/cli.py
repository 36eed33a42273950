"""Command-line interface for the bucket-relay tool."""

import asyncio
import logging
import sys
from typing import Any, List

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.logging import RichHandler

from bucket_relay.config import AppConfig, Config, S3Config
from bucket_relay.deadline import BatchDeadline
from bucket_relay.dispatcher import BatchSummary
from bucket_relay.exceptions import BucketRelayError, ConfigError, ListingError

logger: logging.Logger = logging.getLogger(__name__)


def make_log_handlers() -> List[logging.Handler]:
    """
    Build the stdout and stderr log handlers.

    Records below WARNING, including per-object success records, go to
    stdout; warnings and per-object failures go to stderr. Neither console
    pins its stream, so writes follow `sys.stdout`/`sys.stderr` as they are
    at write time, including while a progress bar redirects them.
    """
    stdout_handler: RichHandler = RichHandler(console=Console(), show_path=False)
    stdout_handler.addFilter(lambda record: record.levelno < logging.WARNING)
    stderr_handler: RichHandler = RichHandler(
        console=Console(stderr=True), rich_tracebacks=True, show_path=False
    )
    stderr_handler.setLevel(logging.WARNING)
    return [stdout_handler, stderr_handler]


def setup_logging(level: str) -> None:
    """Configure rich-based logging for the application."""
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=make_log_handlers(),
    )
    # Silence noisy loggers
    for logger_name in ["botocore", "aiobotocore", "urllib3"]:
        logging.getLogger(logger_name).setLevel(logging.WARNING)


async def main_async(config: Config) -> BatchSummary:
    """
    Asynchronously execute a copy batch under its deadline.

    Args:
        config (Config): The application configuration.

    Returns:
        BatchSummary: Outcome counts of the batch.
    """
    # Lazily import to keep the CLI fast
    from bucket_relay.pipeline import CopyPipeline

    async with BatchDeadline(config.app.timeout_s) as deadline:
        pipeline: CopyPipeline = CopyPipeline(config, deadline)
        return await pipeline.run()


@click.command(context_settings=dict(help_option_names=["-h", "--help"]))
@click.argument("source")
@click.argument("destination")
@click.option(
    "-a",
    "--acl",
    default=None,
    help="Canned ACL to apply to the copied objects.",
)
@click.option(
    "-c",
    "--concurrency",
    type=click.IntRange(min=1),
    default=10,
    metavar="NUM",
    help="Number of concurrent transfers.",
    show_default=True,
)
@click.option(
    "-r",
    "--recursive",
    is_flag=True,
    default=False,
    help="Recursively copy all objects under the source prefix.",
)
@click.option(
    "--region",
    default="us-east-1",
    envvar="AWS_REGION",
    help="AWS region.",
    show_default=True,
)
@click.option(
    "--storage-class",
    default="STANDARD",
    metavar="CLASS",
    help="Storage class to apply to the copied objects.",
    show_default=True,
)
@click.option(
    "-t",
    "--timeout",
    type=click.FloatRange(min=0),
    default=60,
    metavar="SECONDS",
    help="Deadline for the whole batch in seconds; 0 disables it.",
    show_default=True,
)
@click.option(
    "-w",
    "--wait",
    is_flag=True,
    default=False,
    help="Wait for each copied object to be visible at the destination.",
)
@click.option(
    "--endpoint-url",
    default=None,
    envvar="BUCKET_RELAY_ENDPOINT_URL",
    help="Custom S3 endpoint URL, e.g. for S3-compatible services.",
)
@click.option(
    "--progress/--no-progress",
    default=True,
    help="Show a progress bar on stderr.",
    show_default=True,
)
@click.option(
    "--log-level",
    default="INFO",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Set the logging level.",
    show_default=True,
)
def cli(**kwargs: Any) -> None:
    """
    Copy objects between S3 buckets, server-side and concurrently.

    SOURCE and DESTINATION are s3://bucket/path addresses. Without
    --recursive, SOURCE names a single object; with it, every object whose
    key starts with the SOURCE path is copied. Copies are written beneath
    the DESTINATION path, keeping their relative keys.

    Each object's outcome is logged; success records go to stdout and
    failures to stderr. The exit status only reflects fatal errors, so a
    run in which individual objects failed still exits with 0. Invalid
    option values are usage errors and exit with 2.
    """
    load_dotenv()
    setup_logging(kwargs["log_level"])

    try:
        app_config: AppConfig = AppConfig(
            concurrency=kwargs["concurrency"],
            recursive=kwargs["recursive"],
            timeout_s=kwargs["timeout"],
            wait=kwargs["wait"],
            acl=kwargs["acl"] or None,
            storage_class=kwargs["storage_class"] or None,
            show_progress=kwargs["progress"],
        )
        config: Config = Config.from_addresses(
            kwargs["source"],
            kwargs["destination"],
            s3=S3Config.from_env(kwargs["region"], kwargs["endpoint_url"]),
            app=app_config,
        )

        summary: BatchSummary = asyncio.run(main_async(config))
        logger.info(
            f"✅ Run completed: {summary.copied} of {summary.listed} objects copied."
        )
    except ConfigError as e:
        logger.critical(f"Configuration error: {e}")
        sys.exit(e.exit_code)
    except ListingError as e:
        logger.critical(f"{e}")
        sys.exit(ListingError.exit_code)
    except BucketRelayError as e:
        logger.critical(f"A critical application error occurred: {e}")
        sys.exit(1)
    except Exception:
        logger.critical(
            "An unexpected error caused the application to fail:", exc_info=True
        )
        sys.exit(1)


if __name__ == "__main__":
    cli()
