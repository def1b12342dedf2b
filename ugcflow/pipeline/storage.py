"""
R2 (S3-compatible) storage for pipeline artifacts.

Provider-hosted outputs (images, videos, renders) are referenced by URL.
Only bytes we produce ourselves, i.e. synthesized voiceover audio, are
uploaded here, under:
  projects/{project_id}/{filename}
"""

import logging
import os
from typing import Optional

import boto3
from botocore.config import Config as BotoConfig

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────

R2_PUBLIC_URL = os.getenv("R2_PUBLIC_URL", "")
R2_ACCOUNT_ID = os.getenv("R2_ACCOUNT_ID", "")
R2_ACCESS_KEY_ID = os.getenv("R2_ACCESS_KEY_ID", "")
R2_SECRET_ACCESS_KEY = os.getenv("R2_SECRET_ACCESS_KEY", "")
R2_BUCKET_NAME = os.getenv("R2_BUCKET_NAME", "assets")

_s3 = None


def _get_s3():
    global _s3
    if _s3 is None:
        _s3 = boto3.client(
            "s3",
            endpoint_url=f"https://{R2_ACCOUNT_ID}.r2.cloudflarestorage.com",
            aws_access_key_id=R2_ACCESS_KEY_ID,
            aws_secret_access_key=R2_SECRET_ACCESS_KEY,
            config=BotoConfig(signature_version="s3v4"),
            region_name="auto",
        )
    return _s3


def artifact_key(project_id: str, filename: str) -> str:
    return f"projects/{project_id}/{filename}"


async def upload_to_r2(key: str, data: bytes, content_type: str = "audio/mpeg",
                       s3_client: Optional[object] = None) -> str:
    """Upload bytes and return the public URL."""
    s3 = s3_client or _get_s3()
    try:
        s3.put_object(
            Bucket=R2_BUCKET_NAME,
            Key=key,
            Body=data,
            ContentType=content_type,
        )
    except Exception as e:
        logger.error(f"R2 upload failed for key={key}: {e}")
        raise

    public_url = f"{R2_PUBLIC_URL.rstrip('/')}/{key}"
    logger.info(f"Uploaded to R2: {public_url}")
    return public_url


async def upload_project_artifact(
    project_id: str, filename: str, data: bytes, content_type: str = "audio/mpeg"
) -> str:
    """Upload a pipeline artifact (voiceover audio, etc.) for a project."""
    return await upload_to_r2(artifact_key(project_id, filename), data, content_type)
