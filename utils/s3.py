"""
S3 Client Utilities

Provides the process-wide boto3 S3 client. The client is created lazily on
first use and cached for the life of the process, so warm invocations reuse
its connection pool; a new process builds its own. Call ``reset_s3_client()``
to force re-creation (tests, credential rotation).
"""

import logging
from functools import lru_cache

import boto3
from botocore.config import Config

from utils.config import settings

logger = logging.getLogger(__name__)


@lru_cache()
def get_s3_client():
    """Get cached S3 client instance.

    Returns:
        boto3 S3 client configured from settings
    """
    kwargs = {
        "config": Config(
            signature_version="s3v4",
            retries={"max_attempts": 5, "mode": "standard"},
        ),
    }
    if settings.S3_REGION:
        kwargs["region_name"] = settings.S3_REGION
    if settings.S3_ENDPOINT_URL:
        kwargs["endpoint_url"] = settings.S3_ENDPOINT_URL

    logger.info("Creating S3 client (region=%s, endpoint=%s)", settings.S3_REGION, settings.S3_ENDPOINT_URL)
    return boto3.client("s3", **kwargs)


def reset_s3_client() -> None:
    """Drop the cached client so the next call builds a fresh one."""
    get_s3_client.cache_clear()
