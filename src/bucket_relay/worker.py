"""
Defines the copy worker.

This module contains the logic for a single unit of work: one server-side
copy of an object from the source bucket to the destination, optionally
followed by a wait until the copied object is visible. No object content
passes through this process.
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, Optional

from botocore.exceptions import BotoCoreError, ClientError, WaiterError

from bucket_relay.config import AppConfig
from bucket_relay.deadline import BatchDeadline
from bucket_relay.exceptions import ConfirmationError, CopyError, DeadlineExceeded
from bucket_relay.slots import ConcurrencySlots

if TYPE_CHECKING:
    from types_aiobotocore_s3.client import S3Client
    from types_aiobotocore_s3.waiter import ObjectExistsWaiter

logger: logging.Logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CopyTask:
    """
    A single object to copy.

    Attributes:
        source_bucket (str): The bucket to copy from.
        source_key (str): The key of the object to copy.
        target_bucket (str): The bucket to copy to.
        target_key (str): The key the copy is written under.
    """

    source_bucket: str
    source_key: str
    target_bucket: str
    target_key: str

    @property
    def copy_source(self) -> Dict[str, str]:
        """
        The `CopySource` parameter of the copy request.

        botocore percent-escapes this mapping into the `x-amz-copy-source`
        header, so keys are passed through unmodified.
        """
        return {"Bucket": self.source_bucket, "Key": self.source_key}


class OutcomeStatus(Enum):
    """Enumeration for the outcome of a copy task."""

    COPIED = "copied"
    COPY_FAILED = "copy_failed"
    CONFIRM_FAILED = "confirm_failed"
    ABORTED = "aborted"


@dataclass(frozen=True)
class CopyOutcome:
    """
    A record of how a single copy task ended.

    Attributes:
        task (CopyTask): The task this outcome belongs to.
        status (OutcomeStatus): How the task ended.
        error (str, optional): The failure cause, if the task did not succeed.
        duration_s (float): Time spent on the task in seconds.
    """

    task: CopyTask
    status: OutcomeStatus
    error: Optional[str] = None
    duration_s: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.status is OutcomeStatus.COPIED


async def _copy_object(
    task: CopyTask,
    client: "S3Client",
    app_config: AppConfig,
    deadline: BatchDeadline,
) -> None:
    """
    Issues the server-side copy request.

    Raises:
        CopyError: If the service rejects or fails the copy.
        DeadlineExceeded: If the deadline fires first.
    """
    params: Dict[str, Any] = {
        "CopySource": task.copy_source,
        "Bucket": task.target_bucket,
        "Key": task.target_key,
    }
    if app_config.acl:
        params["ACL"] = app_config.acl
    if app_config.storage_class:
        params["StorageClass"] = app_config.storage_class

    try:
        await deadline.bound(client.copy_object(**params))
    except (ClientError, BotoCoreError) as e:
        raise CopyError(str(e)) from e


async def _confirm_visible(
    task: CopyTask,
    client: "S3Client",
    app_config: AppConfig,
    deadline: BatchDeadline,
) -> None:
    """
    Blocks until the copied object exists at the destination.

    Raises:
        ConfirmationError: If the object does not show up in time, or the
            existence checks fail.
        DeadlineExceeded: If the deadline fires first.
    """
    waiter: "ObjectExistsWaiter" = client.get_waiter("object_exists")
    try:
        await deadline.bound(
            waiter.wait(
                Bucket=task.target_bucket,
                Key=task.target_key,
                WaiterConfig={
                    "Delay": app_config.waiter_delay_s,
                    "MaxAttempts": app_config.waiter_max_attempts,
                },
            )
        )
    except (WaiterError, ClientError, BotoCoreError) as e:
        raise ConfirmationError(str(e)) from e


async def copy_worker(
    task: CopyTask,
    client: "S3Client",
    app_config: AppConfig,
    deadline: BatchDeadline,
    slots: ConcurrencySlots,
) -> CopyOutcome:
    """
    Copies one object and reports how it went.

    The caller must have acquired a slot from `slots`; it is released here
    exactly once, whatever the outcome. Per-item failures never propagate:
    they are logged and returned as the outcome, so sibling tasks carry on.

    Args:
        task (CopyTask): The object to copy.
        client (S3Client): The aiobotocore S3 client.
        app_config (AppConfig): The application configuration.
        deadline (BatchDeadline): The batch deadline bounding every remote call.
        slots (ConcurrencySlots): The slot pool to return the held slot to.

    Returns:
        CopyOutcome: The outcome of the task.
    """
    start_time: float = time.monotonic()
    status: OutcomeStatus = OutcomeStatus.COPIED
    error: Optional[str] = None
    phase: str = "copy"

    try:
        await _copy_object(task, client, app_config, deadline)
        if app_config.wait:
            phase = "wait"
            await _confirm_visible(task, client, app_config, deadline)
        logger.info(
            f"Item '{task.source_key}' successfully copied from bucket "
            f"'{task.source_bucket}' to bucket '{task.target_bucket}'"
        )
    except DeadlineExceeded as e:
        status, error = OutcomeStatus.ABORTED, str(e)
        logger.error(
            f"Aborted {phase} of object '{task.source_key}': deadline exceeded ({e})"
        )
    except CopyError as e:
        status, error = OutcomeStatus.COPY_FAILED, str(e)
        logger.error(f"Failed to copy object '{task.source_key}': {e}")
    except ConfirmationError as e:
        status, error = OutcomeStatus.CONFIRM_FAILED, str(e)
        logger.error(f"Failed to wait for object '{task.target_key}': {e}")
    except Exception as e:
        status, error = OutcomeStatus.COPY_FAILED, f"{type(e).__name__}: {e}"
        logger.exception(
            f"An unexpected error occurred copying '{task.source_key}'"
        )
    finally:
        slots.release()

    return CopyOutcome(
        task=task,
        status=status,
        error=error,
        duration_s=time.monotonic() - start_time,
    )
