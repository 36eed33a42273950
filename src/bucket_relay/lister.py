"""
Enumerates the source keys of a copy batch.

In recursive mode the source prefix is listed page by page and each page is
handed on as soon as it arrives, so that copying can start before the listing
is complete.
"""

import logging
from typing import (
    TYPE_CHECKING,
    Any,
    AsyncGenerator,
    AsyncIterator,
    List,
    Optional,
)

from botocore.exceptions import BotoCoreError, ClientError

from bucket_relay.config import Location
from bucket_relay.deadline import BatchDeadline
from bucket_relay.exceptions import DeadlineExceeded, ListingError

if TYPE_CHECKING:
    from types_aiobotocore_s3.client import S3Client
    from types_aiobotocore_s3.paginator import ListObjectsV2Paginator
    from types_aiobotocore_s3.type_defs import ListObjectsV2OutputTypeDef

logger: logging.Logger = logging.getLogger(__name__)


async def _next_page(
    pages: AsyncIterator["ListObjectsV2OutputTypeDef"],
) -> Optional["ListObjectsV2OutputTypeDef"]:
    """Fetches the next listing page, or None once the listing is exhausted."""
    try:
        return await pages.__anext__()
    except StopAsyncIteration:
        return None


async def iter_source_keys(
    client: "S3Client",
    source: Location,
    recursive: bool,
    deadline: BatchDeadline,
) -> AsyncIterator[List[str]]:
    """
    Yields the source keys to copy, one listing page at a time.

    Args:
        client (S3Client): The aiobotocore S3 client.
        source (Location): The source bucket and key (or key prefix).
        recursive (bool): List every key under the prefix instead of copying
            the single key named by `source`.
        deadline (BatchDeadline): The batch deadline bounding each page fetch.

    Yields:
        List[str]: The keys of one listing page. In non-recursive mode a
            single page holding `source.key` verbatim; its existence is not
            checked here.

    Raises:
        ListingError: If any page cannot be fetched. No partial listing is
            trusted, so this is fatal to the whole batch.
    """
    if not recursive:
        yield [source.key]
        return

    logger.info(f"Listing objects under '{source.uri}'...")
    paginator: "ListObjectsV2Paginator" = client.get_paginator("list_objects_v2")
    pages: Any = paginator.paginate(Bucket=source.bucket, Prefix=source.key)
    page_iter: AsyncGenerator["ListObjectsV2OutputTypeDef", None] = pages.__aiter__()

    num_pages: int = 0
    num_keys: int = 0
    try:
        while True:
            try:
                page: Optional["ListObjectsV2OutputTypeDef"] = await deadline.bound(
                    _next_page(page_iter)
                )
            except (ClientError, BotoCoreError, DeadlineExceeded) as e:
                raise ListingError(
                    f"Failed to list objects for source bucket '{source.bucket}': {e}"
                ) from e
            if page is None:
                break

            num_pages += 1
            keys: List[str] = [obj["Key"] for obj in page.get("Contents", [])]
            if keys:
                num_keys += len(keys)
                logger.debug(f"Listing page {num_pages}: {len(keys)} keys.")
                yield keys

            # The last page needs no further request, so a deadline firing
            # while it is being dispatched does not fail the listing.
            if not page.get("IsTruncated"):
                break
    finally:
        await page_iter.aclose()

    logger.info(f"Listed {num_keys} objects across {num_pages} page(s).")
