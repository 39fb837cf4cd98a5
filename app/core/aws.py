"""AWS S3 Service."""

import logging
import re
from typing import Iterator

import boto3
from botocore.exceptions import ClientError

from app.core.config import get_settings

settings = get_settings()
logger = logging.getLogger(__name__)

READ_CHUNK_BYTES = 1024 * 1024


class S3Service:
    """Handles S3 interactions."""

    _instance = None
    _s3_client = None

    def __new__(cls):
        """Singleton pattern."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            try:
                cls._instance._s3_client = boto3.client(
                    "s3",
                    aws_access_key_id=settings.AWS_ACCESS_KEY_ID or None,
                    aws_secret_access_key=settings.AWS_SECRET_ACCESS_KEY or None,
                    region_name=settings.AWS_REGION,
                    config=boto3.session.Config(s3={'addressing_style': 'path'})
                )
            except Exception as e:
                logger.error(f"Failed to initialize S3 client: {e}")
                cls._instance._s3_client = None
        return cls._instance

    @property
    def client(self):
        """Get S3 client."""
        return self._s3_client

    @staticmethod
    def _validated_bucket_name() -> str:
        bucket = (settings.AWS_S3_BUCKET or "").strip()
        if not bucket:
            raise ValueError("AWS_S3_BUCKET is not configured.")
        # https://docs.aws.amazon.com/AmazonS3/latest/userguide/bucketnamingrules.html
        if not re.fullmatch(r"[a-z0-9][a-z0-9.-]{1,61}[a-z0-9]", bucket):
            raise ValueError(f"Invalid AWS_S3_BUCKET value '{bucket}'.")
        return bucket

    def generate_presigned_get_url(self, object_name: str, expiration=900):
        """Generate a presigned URL for reading private objects."""
        if not self.client:
            raise ValueError("AWS S3 credentials not configured.")

        try:
            bucket = self._validated_bucket_name()
            url = self.client.generate_presigned_url(
                ClientMethod='get_object',
                Params={
                    'Bucket': bucket,
                    'Key': object_name
                },
                ExpiresIn=expiration
            )
            return url
        except ClientError as e:
            logger.error(f"Error generating presigned GET URL: {e}")
            raise

    def iter_object_chunks(self, object_name: str) -> Iterator[bytes]:
        """
        Stream an object's bytes in chunks (used for content addressing).
        Objects larger than MAX_INPUT_OBJECT_BYTES are rejected.
        """
        if not self.client:
            raise ValueError("AWS S3 credentials not configured.")

        bucket = self._validated_bucket_name()
        try:
            head = self.client.head_object(Bucket=bucket, Key=object_name)
            size = int(head.get("ContentLength") or 0)
            if size > int(settings.MAX_INPUT_OBJECT_BYTES):
                raise ValueError("Media is too large to process.")
            body = self.client.get_object(Bucket=bucket, Key=object_name)["Body"]
        except ClientError as e:
            code = str(e.response.get("Error", {}).get("Code", ""))
            if code in ("404", "NoSuchKey", "NotFound"):
                raise ValueError("Uploaded media not found.") from e
            logger.error(f"Error reading {object_name} from S3: {e}")
            raise

        try:
            for chunk in body.iter_chunks(chunk_size=READ_CHUNK_BYTES):
                yield chunk
        finally:
            body.close()
