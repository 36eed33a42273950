"""
Pytest configuration and fixtures for the bucket-relay tests.

This module sets up the testing environment, including:
- An in-memory stand-in for the aiobotocore S3 client, used by the unit tests
  to observe copy requests and in-flight concurrency without a network.
- Spinning up a Docker container for an S3 service (MinIO) for the
  end-to-end tests.
- Creating and cleaning up isolated S3 buckets for each end-to-end test.
"""

import asyncio
import os
import uuid
from pathlib import Path
from typing import (
    Any,
    AsyncGenerator,
    AsyncIterator,
    Dict,
    Iterable,
    List,
    Optional,
    Set,
)

import boto3
import pytest
import pytest_asyncio
import requests
from aiobotocore.session import AioSession, get_session
from botocore.config import Config as BotoConfig
from botocore.exceptions import ClientError, WaiterError
from requests.exceptions import ConnectionError

from bucket_relay.config import AppConfig, Config

# --- Constants ---
S3_ACCESS_KEY: str = "minio-key"
S3_SECRET_KEY: str = "minio-secret"
S3_REGION: str = "us-east-1"


def _client_error(code: str, operation: str) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


# --- In-memory S3 ---
class FakePaginator:
    """Pages through a fake bucket the way `list_objects_v2` does."""

    def __init__(self, client: "FakeS3Client") -> None:
        self._client: FakeS3Client = client

    def paginate(self, Bucket: str, Prefix: str = "") -> AsyncIterator[Dict[str, Any]]:
        return self._pages(Bucket, Prefix)

    async def _pages(self, bucket: str, prefix: str) -> AsyncIterator[Dict[str, Any]]:
        keys: List[str] = sorted(
            key for key in self._client.buckets.get(bucket, {}) if key.startswith(prefix)
        )
        size: int = self._client.page_size
        chunks: List[List[str]] = [keys[i : i + size] for i in range(0, len(keys), size)]
        if not chunks:
            chunks = [[]]
        for number, chunk in enumerate(chunks):
            await asyncio.sleep(0)
            self._client.list_calls += 1
            if self._client.list_error_on_page == number:
                raise _client_error("AccessDenied", "ListObjectsV2")
            page: Dict[str, Any] = {"IsTruncated": number < len(chunks) - 1}
            if chunk:
                page["Contents"] = [{"Key": key} for key in chunk]
            yield page


class FakeWaiter:
    """Stands in for the `object_exists` waiter."""

    def __init__(self, client: "FakeS3Client") -> None:
        self._client: FakeS3Client = client

    async def wait(self, Bucket: str, Key: str, WaiterConfig: Dict[str, int]) -> None:
        self._client.wait_calls.append({"Bucket": Bucket, "Key": Key, **WaiterConfig})
        await asyncio.sleep(self._client.wait_delay)
        if Key in self._client.unconfirmed_keys or Key not in self._client.buckets.get(
            Bucket, {}
        ):
            raise WaiterError(
                name="ObjectExists",
                reason="Max attempts exceeded",
                last_response={},
            )


class FakeS3Client:
    """
    The subset of the aiobotocore S3 client used by bucket-relay.

    Attributes:
        buckets (Dict[str, Dict[str, bytes]]): Bucket contents by key.
        copy_calls (List[Dict[str, Any]]): Parameters of every copy request.
        in_flight (int): Copy requests currently in progress.
        peak_in_flight (int): Highest number of concurrent copy requests seen.
    """

    def __init__(
        self,
        buckets: Optional[Dict[str, Dict[str, bytes]]] = None,
        page_size: int = 1000,
        copy_delay: float = 0.0,
        wait_delay: float = 0.0,
        failing_keys: Iterable[str] = (),
        unconfirmed_keys: Iterable[str] = (),
        list_error_on_page: Optional[int] = None,
    ) -> None:
        self.buckets: Dict[str, Dict[str, bytes]] = buckets or {}
        self.page_size: int = page_size
        self.copy_delay: float = copy_delay
        self.wait_delay: float = wait_delay
        self.failing_keys: Set[str] = set(failing_keys)
        self.unconfirmed_keys: Set[str] = set(unconfirmed_keys)
        self.list_error_on_page: Optional[int] = list_error_on_page
        self.copy_calls: List[Dict[str, Any]] = []
        self.wait_calls: List[Dict[str, Any]] = []
        self.list_calls: int = 0
        self.in_flight: int = 0
        self.peak_in_flight: int = 0

    async def copy_object(self, **params: Any) -> Dict[str, Any]:
        self.copy_calls.append(params)
        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.copy_delay)
            source: Dict[str, str] = params["CopySource"]
            contents: Dict[str, bytes] = self.buckets.get(source["Bucket"], {})
            if source["Key"] in self.failing_keys or source["Key"] not in contents:
                raise _client_error("NoSuchKey", "CopyObject")
            self.buckets.setdefault(params["Bucket"], {})[params["Key"]] = contents[
                source["Key"]
            ]
            return {"CopyObjectResult": {"ETag": '"etag"'}}
        finally:
            self.in_flight -= 1

    def get_paginator(self, name: str) -> FakePaginator:
        assert name == "list_objects_v2"
        return FakePaginator(self)

    def get_waiter(self, name: str) -> FakeWaiter:
        assert name == "object_exists"
        return FakeWaiter(self)


@pytest.fixture(scope="function")
def fake_s3() -> FakeS3Client:
    """
    Provide an in-memory S3 client with a populated source bucket.

    Returns:
        FakeS3Client: A client whose "src" bucket holds `file.txt` and three
            objects under `data/`.
    """
    return FakeS3Client(
        buckets={
            "src": {
                "file.txt": b"file",
                "data/a.txt": b"a",
                "data/b/c.txt": b"c",
                "data/d.txt": b"d",
            },
            "dst": {},
        }
    )


@pytest.fixture(scope="function")
def make_config() -> Any:
    """
    Provide a factory for configurations with progress output disabled.

    Returns:
        A function taking source and destination addresses plus `AppConfig`
        overrides and returning a validated `Config`.
    """

    def _factory(source: str, destination: str, **app_options: Any) -> Config:
        app_options.setdefault("show_progress", False)
        return Config.from_addresses(source, destination, app=AppConfig(**app_options))

    return _factory


# --- Docker Fixtures ---
@pytest.fixture(scope="session")
def docker_compose_file(pytestconfig: pytest.Config) -> str:
    """
    Locate the docker-compose.yml file for the test suite.

    Args:
        pytestconfig (pytest.Config): The pytest configuration object.

    Returns:
        str: The absolute path to the docker-compose.yml file.
    """
    return str(Path(pytestconfig.rootdir) / "tests" / "docker-compose.yml")


@pytest.fixture(scope="session")
def docker_compose_project_name() -> str:
    """
    Define a unique, static project name for the Docker stack.

    Returns:
        str: A unique name for the docker-compose project.
    """
    return "bucket-relay-tests"


def _is_s3_responsive(url: str) -> bool:
    """
    Check if the MinIO health endpoint is responsive.

    Args:
        url (str): The base URL of the MinIO API.

    Returns:
        bool: True if the service is responsive, False otherwise.
    """
    try:
        # The health check endpoint for MinIO is /minio/health/live
        response: requests.Response = requests.get(f"{url}/minio/health/live")
        return response.status_code == 200
    except ConnectionError:
        return False


@pytest.fixture(scope="session")
def s3_service(docker_ip: str, docker_services: Any) -> Dict[str, Any]:
    """
    Ensure the S3 service is running and return its connection details.

    Args:
        docker_ip (str): The IP address of the Docker host, provided by pytest-docker.
        docker_services (Any): The pytest-docker services fixture.

    Returns:
        Dict[str, Any]: A dictionary with connection details for the S3 service.
    """
    port: int = docker_services.port_for("minio", 9000)
    api_url: str = f"http://{docker_ip}:{port}"
    docker_services.wait_until_responsive(
        timeout=30.0, pause=0.1, check=lambda: _is_s3_responsive(api_url)
    )
    return {
        "endpoint_url": api_url,
        "aws_access_key_id": S3_ACCESS_KEY,
        "aws_secret_access_key": S3_SECRET_KEY,
        "region_name": S3_REGION,
    }


@pytest_asyncio.fixture(scope="function")
async def s3_buckets(s3_service: Dict[str, Any]) -> AsyncGenerator[Dict[str, str], None]:
    """
    Create unique, isolated S3 buckets for a single test function.

    This fixture sets the environment variables `S3Config.from_env` reads and
    guarantees cleanup of the buckets and their contents after the test.

    Args:
        s3_service (Dict[str, Any]): Connection details for the S3 service.

    Yield:
        AsyncGenerator[Dict[str, str], None]: A dictionary with the names of
            the created source and destination buckets.
    """
    session: AioSession = get_session()
    bucket_name_suffix: str = f"test-bucket-{uuid.uuid4()}"
    source_bucket: str = f"source-{bucket_name_suffix}"
    dest_bucket: str = f"dest-{bucket_name_suffix}"

    os.environ["BUCKET_RELAY_ENDPOINT_URL"] = s3_service["endpoint_url"]
    os.environ["BUCKET_RELAY_ACCESS_KEY_ID"] = S3_ACCESS_KEY
    os.environ["BUCKET_RELAY_SECRET_ACCESS_KEY"] = S3_SECRET_KEY

    async with session.create_client("s3", **s3_service) as s3:
        await s3.create_bucket(Bucket=source_bucket)
        await s3.create_bucket(Bucket=dest_bucket)

    yield {"source": source_bucket, "destination": dest_bucket}

    # Cleanup: boto3 is simpler for synchronous, recursive delete
    boto_config: BotoConfig = BotoConfig(
        retries={"max_attempts": 0, "mode": "standard"}
    )
    s3_resource: Any = boto3.resource("s3", **s3_service, config=boto_config)
    for bucket in (source_bucket, dest_bucket):
        try:
            bucket_obj: Any = s3_resource.Bucket(bucket)
            bucket_obj.objects.all().delete()
            bucket_obj.delete()
        except ClientError as e:
            if e.response["Error"]["Code"] != "NoSuchBucket":
                raise

