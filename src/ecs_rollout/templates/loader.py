"""Read templates and values files from disk, S3 or HTTP(S)."""
import logging
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

import boto3
import requests
from botocore.exceptions import BotoCoreError, ClientError

from ecs_rollout.exceptions import TemplateError

logger = logging.getLogger(__name__)

HTTP_TIMEOUT_S = 30.0


def is_uri(location: str) -> bool:
    return bool(urlparse(location).scheme) and "://" in location


def read_file_or_uri(location: str, s3_client=None) -> str:
    """Read text from a local path or an ``s3://``, ``http://`` or ``https://`` URI.

    Args:
        location: Local path or URI
        s3_client: boto3 S3 client; created on demand for s3:// URIs

    Raises:
        TemplateError: the location cannot be read or has an unknown scheme
    """
    if not is_uri(location):
        try:
            return Path(location).read_text(encoding="utf-8")
        except OSError as e:
            raise TemplateError(f"Could not read {location}: {e}") from e

    parsed = urlparse(location)
    if parsed.scheme == "s3":
        return _read_s3(parsed.netloc, parsed.path.lstrip("/"), location, s3_client)
    if parsed.scheme in ("http", "https"):
        return _read_http(location)
    raise TemplateError(f"Unexpected URL scheme {parsed.scheme} in URI {location}")


def _read_s3(bucket: str, key: str, location: str, s3_client=None) -> str:
    logger.debug(f"Fetching s3://{bucket}/{key}")
    try:
        client = s3_client or boto3.client("s3")
        response = client.get_object(Bucket=bucket, Key=key)
        return response["Body"].read().decode("utf-8")
    except (ClientError, BotoCoreError) as e:
        raise TemplateError(f"Could not retrieve S3 object {location}: {e}") from e


def _read_http(location: str, timeout: Optional[float] = HTTP_TIMEOUT_S) -> str:
    logger.debug(f"Fetching {location}")
    try:
        response = requests.get(location, timeout=timeout)
        response.raise_for_status()
    except requests.RequestException as e:
        raise TemplateError(f"Could not retrieve {location}: {e}") from e
    return response.text
