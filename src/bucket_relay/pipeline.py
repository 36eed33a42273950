"""Core orchestration logic for a bucket-relay copy batch."""

import logging
from contextlib import AsyncExitStack
from typing import TYPE_CHECKING, AsyncIterator, List, Optional

from aiobotocore.credentials import AioCredentials
from aiobotocore.session import AioSession, get_session
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError

from bucket_relay.config import EXIT_SESSION_FAILED, Config
from bucket_relay.deadline import BatchDeadline
from bucket_relay.dispatcher import BatchSummary, Dispatcher
from bucket_relay.exceptions import ConfigError
from bucket_relay.lister import iter_source_keys
from bucket_relay.worker import OutcomeStatus

if TYPE_CHECKING:
    from types_aiobotocore_s3.client import S3Client

logger: logging.Logger = logging.getLogger(__name__)


class CopyPipeline:
    """Orchestrates a copy batch from start to finish."""

    def __init__(
        self,
        config: Config,
        deadline: BatchDeadline,
        session: Optional[AioSession] = None,
    ) -> None:
        """
        Initializes the pipeline with the given configuration.

        Args:
            config (Config): The application configuration.
            deadline (BatchDeadline): The deadline shared by the whole batch.
            session (AioSession, optional): The aiobotocore session to use.
        """
        self._config: Config = config
        self._deadline: BatchDeadline = deadline
        self._session: AioSession = session or get_session()

    def _boto_config(self) -> BotoConfig:
        # Failed requests are reported, not retried, unless max_attempts
        # is raised above 1.
        return BotoConfig(
            signature_version="s3v4",
            max_pool_connections=self._config.app.concurrency + 10,
            retries={
                "mode": "standard",
                "max_attempts": self._config.app.max_attempts,
            },
        )

    async def _check_credentials(self) -> None:
        """
        Ensures botocore can resolve credentials before any work starts.

        Raises:
            ConfigError: If no credentials can be found.
        """
        if self._config.s3.has_explicit_credentials:
            return
        try:
            credentials: Optional[AioCredentials] = (
                await self._session.get_credentials()
            )
        except BotoCoreError as e:
            raise ConfigError(
                f"Failed to load AWS credentials: {e}", EXIT_SESSION_FAILED
            ) from e
        if credentials is None:
            raise ConfigError(
                "No AWS credentials found. Configure the default credential "
                "chain or set BUCKET_RELAY_ACCESS_KEY_ID and "
                "BUCKET_RELAY_SECRET_ACCESS_KEY.",
                EXIT_SESSION_FAILED,
            )

    async def run(self) -> BatchSummary:
        """
        Creates the S3 client and executes the batch.

        Returns:
            BatchSummary: Outcome counts of the batch.

        Raises:
            ConfigError: If no session can be established.
            ListingError: If the source keys cannot be listed.
        """
        await self._check_credentials()

        async with AsyncExitStack() as stack:
            try:
                client: "S3Client" = await stack.enter_async_context(
                    self._session.create_client(
                        "s3",
                        **self._config.s3.as_boto_dict(),
                        config=self._boto_config(),
                    )
                )
            except (BotoCoreError, ValueError) as e:
                raise ConfigError(
                    f"Failed to create AWS session: {e}", EXIT_SESSION_FAILED
                ) from e
            return await self.execute(client)

    async def execute(self, client: "S3Client") -> BatchSummary:
        """
        Lists the source keys and copies them with an existing client.

        Args:
            client (S3Client): An initialized aiobotocore S3 client.

        Returns:
            BatchSummary: Outcome counts of the batch.
        """
        source_uri: str = self._config.source.uri
        destination_uri: str = self._config.destination.uri
        logger.info(
            f"Copying '{source_uri}' to '{destination_uri}' "
            f"(recursive={self._config.app.recursive}, "
            f"concurrency={self._config.app.concurrency})."
        )

        pages: AsyncIterator[List[str]] = iter_source_keys(
            client,
            self._config.source,
            self._config.app.recursive,
            self._deadline,
        )
        dispatcher: Dispatcher = Dispatcher(client, self._config, self._deadline)
        summary: BatchSummary = await dispatcher.run(pages)

        logger.info(
            f"Batch finished: {summary.copied}/{summary.total} objects copied "
            f"(peak concurrency {summary.peak_in_flight})."
        )
        if summary.failed:
            logger.warning(
                f"{summary.failed} objects were not copied: "
                f"{summary.counts[OutcomeStatus.COPY_FAILED]} copy failures, "
                f"{summary.counts[OutcomeStatus.CONFIRM_FAILED]} unconfirmed, "
                f"{summary.counts[OutcomeStatus.ABORTED]} aborted."
            )
        return summary
