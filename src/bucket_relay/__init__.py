"""
bucket-relay: A concurrent, server-side S3 bucket-to-bucket copier.

This package copies a single object, or every object under a prefix, from one
S3 bucket to another using server-side copy requests. Copies run under a
bounded concurrency limit and a single batch deadline, and each object's
outcome is reported on its own.

The primary entry point for programmatic use is the `CopyPipeline` class.
"""

from typing import List

from bucket_relay.pipeline import CopyPipeline

__all__: List[str] = ["CopyPipeline"]
