"""
Configuration for the bucket-relay copy pipeline.

This module centralizes all configuration, parsing the source and destination
addresses, loading optional connection settings from environment variables
and providing typed dataclasses for use throughout the application.
"""

import os
import re
from dataclasses import dataclass, field
from typing import Dict, Optional
from urllib.parse import SplitResult, unquote, urlsplit

from bucket_relay.exceptions import ConfigError

S3_SCHEME: str = "s3"

# Exit statuses, one per class of configuration failure.
EXIT_INVALID_SOURCE: int = 1
EXIT_INVALID_DESTINATION: int = 2
EXIT_INVALID_SCHEME: int = 3
EXIT_SESSION_FAILED: int = 4

_BAD_ESCAPE: re.Pattern = re.compile(r"%(?![0-9A-Fa-f]{2})")


def _get_env_var(name: str, default: Optional[str] = None) -> Optional[str]:
    """
    Retrieves an optional environment variable, treating blanks as unset.

    Args:
        name (str): The name of the environment variable.
        default (str, optional): The default value if the variable is not set.

    Returns:
        Optional[str]: The value of the environment variable, or the default.
    """
    value: Optional[str] = os.environ.get(name, default)
    return value or default


@dataclass(frozen=True)
class Location:
    """
    An addressable endpoint in the object store.

    Attributes:
        bucket (str): The bucket name.
        key (str): The object key or key prefix, without a leading slash.
    """

    bucket: str
    key: str = ""

    @property
    def uri(self) -> str:
        """The location rendered as an `s3://` address."""
        return f"{S3_SCHEME}://{self.bucket}/{self.key}"


def parse_location(uri: str, role: str = "source") -> Location:
    """
    Parse a `scheme://bucket/path` address into a `Location`.

    The path is percent-decoded, so `s3://src/my%20file.txt` names the key
    `my file.txt`.

    Args:
        uri (str): The address given on the command line.
        role (str): Either "source" or "destination"; selects the exit status
            reported for a malformed address.

    Returns:
        Location: The parsed bucket and key.

    Raises:
        ConfigError: If the address is malformed, has no bucket, carries a
            query or fragment, or does not use the `s3` scheme.
    """
    exit_code: int = (
        EXIT_INVALID_SOURCE if role == "source" else EXIT_INVALID_DESTINATION
    )
    try:
        parsed: SplitResult = urlsplit(uri)
    except ValueError as e:
        raise ConfigError(f"Invalid {role} address '{uri}': {e}", exit_code) from e

    if parsed.scheme != S3_SCHEME:
        raise ConfigError(
            "Source and destination must be s3:// addresses "
            f"(got {role} '{uri}').",
            EXIT_INVALID_SCHEME,
        )
    if not parsed.netloc:
        raise ConfigError(f"The {role} address '{uri}' has no bucket.", exit_code)
    # '?' and '#' would otherwise cut the key short; they must be escaped.
    if parsed.query or parsed.fragment or uri.endswith(("?", "#")):
        raise ConfigError(
            f"The {role} address '{uri}' has a query or fragment; "
            "escape '?' as %3F and '#' as %23 in keys.",
            exit_code,
        )
    if _BAD_ESCAPE.search(parsed.path):
        raise ConfigError(
            f"Invalid {role} address '{uri}': malformed percent-escape.",
            exit_code,
        )

    return Location(bucket=parsed.netloc, key=unquote(parsed.path).lstrip("/"))


def join_key(prefix: str, key: str) -> str:
    """
    Join a destination prefix and a source key into a target key.

    The source key's relative structure, including a trailing slash, is kept
    as is beneath the prefix.

    Args:
        prefix (str): The destination path prefix, possibly empty.
        key (str): The source object key.

    Returns:
        str: The target object key.
    """
    parts = [part for part in (prefix.strip("/"), key.lstrip("/")) if part]
    return "/".join(parts)


@dataclass(frozen=True)
class S3Config:
    """
    Represents the connection settings for the S3-compatible service.

    Attributes:
        region (str): The AWS region.
        endpoint_url (str, optional): A custom S3 endpoint URL.
        access_key_id (str, optional): An explicit access key ID.
        secret_access_key (str, optional): An explicit secret access key.
    """

    region: str = "us-east-1"
    endpoint_url: Optional[str] = None
    access_key_id: Optional[str] = None
    secret_access_key: Optional[str] = None

    def __post_init__(self) -> None:
        if bool(self.access_key_id) != bool(self.secret_access_key):
            raise ConfigError(
                "Both an access key ID and a secret access key must be set, "
                "or neither.",
                EXIT_SESSION_FAILED,
            )

    @property
    def has_explicit_credentials(self) -> bool:
        """Whether credentials bypass botocore's default provider chain."""
        return bool(self.access_key_id and self.secret_access_key)

    @classmethod
    def from_env(
        cls, region: str = "us-east-1", endpoint_url: Optional[str] = None
    ) -> "S3Config":
        """
        Builds the connection settings from `BUCKET_RELAY_*` variables.

        Args:
            region (str): The AWS region.
            endpoint_url (str, optional): Overrides `BUCKET_RELAY_ENDPOINT_URL`.

        Returns:
            S3Config: The resolved connection settings.
        """
        return cls(
            region=region,
            endpoint_url=endpoint_url or _get_env_var("BUCKET_RELAY_ENDPOINT_URL"),
            access_key_id=_get_env_var("BUCKET_RELAY_ACCESS_KEY_ID"),
            secret_access_key=_get_env_var("BUCKET_RELAY_SECRET_ACCESS_KEY"),
        )

    def as_boto_dict(self) -> Dict[str, str]:
        """
        Returns the configuration as a dictionary suitable for aiobotocore clients.

        Unset values are left out so botocore's default resolution applies.

        Returns:
            Dict[str, str]: A dictionary of client parameters.
        """
        params: Dict[str, Optional[str]] = {
            "region_name": self.region,
            "endpoint_url": self.endpoint_url,
            "aws_access_key_id": self.access_key_id,
            "aws_secret_access_key": self.secret_access_key,
        }
        return {name: value for name, value in params.items() if value}


@dataclass(frozen=True)
class AppConfig:
    """
    Defines the application's operational parameters.

    Attributes:
        concurrency (int): Maximum number of copies in flight at once.
        recursive (bool): Copy every object under the source prefix.
        timeout_s (float): Batch deadline in seconds; 0 or less disables it.
        wait (bool): Wait for each copied object to be visible.
        acl (str, optional): Canned ACL applied to copied objects.
        storage_class (str, optional): Storage class of copied objects.
        waiter_delay_s (int): Delay between existence checks in seconds.
        waiter_max_attempts (int): Maximum number of existence checks.
        max_attempts (int): Attempts per request made by botocore.
        show_progress (bool): Whether to render a progress bar.
    """

    concurrency: int = 10
    recursive: bool = False
    timeout_s: float = 60
    wait: bool = False
    acl: Optional[str] = None
    storage_class: Optional[str] = "STANDARD"
    waiter_delay_s: int = 5
    waiter_max_attempts: int = 20
    max_attempts: int = 1
    show_progress: bool = True

    def __post_init__(self) -> None:
        if self.concurrency < 1:
            raise ConfigError(
                f"Concurrency must be a positive integer, got {self.concurrency}."
            )


@dataclass(frozen=True)
class Config:
    """
    Top-level configuration container for the entire application.

    Attributes:
        source (Location): Where objects are copied from.
        destination (Location): The bucket and prefix objects are copied to.
        s3 (S3Config): Connection settings for the S3-compatible service.
        app (AppConfig): General application settings.
    """

    source: Location
    destination: Location
    s3: S3Config = field(default_factory=S3Config)
    app: AppConfig = field(default_factory=AppConfig)

    def __post_init__(self) -> None:
        if not self.app.recursive and not self.source.key:
            raise ConfigError(
                f"The source address '{self.source.uri}' names no object; "
                "use --recursive to copy a whole bucket.",
                EXIT_INVALID_SOURCE,
            )

    @classmethod
    def from_addresses(
        cls,
        source: str,
        destination: str,
        s3: Optional[S3Config] = None,
        app: Optional[AppConfig] = None,
    ) -> "Config":
        """
        Builds a configuration from the two command-line addresses.

        Args:
            source (str): The source address, e.g. `s3://bucket/key`.
            destination (str): The destination address, e.g. `s3://bucket/prefix/`.
            s3 (S3Config, optional): Connection settings.
            app (AppConfig, optional): Operational parameters.

        Returns:
            Config: The validated configuration.
        """
        return cls(
            source=parse_location(source, "source"),
            destination=parse_location(destination, "destination"),
            s3=s3 or S3Config(),
            app=app or AppConfig(),
        )
