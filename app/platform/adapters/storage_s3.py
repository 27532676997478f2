import logging
from typing import BinaryIO
import boto3
from boto3.s3.transfer import TransferConfig
from botocore.client import Config
from botocore.exceptions import BotoCoreError, ClientError
from app.core import errors
from app.platform.ports.object_storage import ObjectStoragePort, StoredObject, Visibility

log = logging.getLogger("storage.s3")

NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}
PERMANENT_CODES = {
    "AccessDenied", "InvalidAccessKeyId", "SignatureDoesNotMatch",
    "NoSuchBucket", "AllAccessDisabled", "InvalidBucketName", "AuthorizationHeaderMalformed",
}
DELETE_BATCH = 1000  # DeleteObjects limit

def classify(exc: Exception, key: str, action: str) -> errors.StorageError:
    """Map a botocore failure onto not-found / permanent / transient."""
    if isinstance(exc, ClientError):
        code = str(exc.response.get("Error", {}).get("Code", ""))
        if code in NOT_FOUND_CODES:
            return errors.StorageNotFound(f"Object not found: {key}")
        if code in PERMANENT_CODES:
            return errors.PermanentStorageError(f"S3 {action} rejected for {key}: {code}")
        return errors.TransientStorageError(f"S3 {action} failed for {key}: {code or exc}")
    return errors.TransientStorageError(f"S3 {action} failed for {key}: {exc}")

class S3Storage(ObjectStoragePort):
    def __init__(
        self,
        bucket: str,
        region: str,
        endpoint_url: str | None = None,
        access_key: str | None = None,
        secret_key: str | None = None,
        client=None,
    ):
        if client is None:
            session = boto3.session.Session(
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                region_name=region,
            )
            # boto3 clients are thread-safe; one instance serves every caller
            client = session.client(
                "s3",
                endpoint_url=endpoint_url,
                config=Config(signature_version="s3v4", retries={"max_attempts": 3, "mode": "standard"}),
            )
        self.s3 = client
        self.bucket = bucket
        self.transfer_config = TransferConfig(use_threads=False)

    def put(self, key: str, data: bytes | BinaryIO, content_type: str, visibility: Visibility = "private") -> None:
        extra = {"ContentType": content_type}
        if visibility == "public":
            extra["ACL"] = "public-read"
        try:
            if isinstance(data, (bytes, bytearray)):
                self.s3.put_object(Bucket=self.bucket, Key=key, Body=bytes(data), **extra)
            else:
                self.s3.upload_fileobj(data, self.bucket, key, ExtraArgs=extra, Config=self.transfer_config)
        except (ClientError, BotoCoreError) as e:
            raise classify(e, key, "put") from e
        log.debug(f"PUT s3://{self.bucket}/{key} ({content_type}, {visibility})")

    def get(self, key: str) -> bytes:
        try:
            resp = self.s3.get_object(Bucket=self.bucket, Key=key)
            return resp["Body"].read()
        except (ClientError, BotoCoreError) as e:
            raise classify(e, key, "get") from e

    def open(self, key: str, chunk_size: int = 64 * 1024) -> StoredObject:
        try:
            resp = self.s3.get_object(Bucket=self.bucket, Key=key)
        except (ClientError, BotoCoreError) as e:
            raise classify(e, key, "get") from e
        return StoredObject(
            key=key,
            body=resp["Body"].iter_chunks(chunk_size),
            content_type=resp.get("ContentType") or "application/octet-stream",
            content_length=resp.get("ContentLength"),
        )

    def delete(self, key: str) -> None:
        try:
            self.s3.delete_object(Bucket=self.bucket, Key=key)
        except (ClientError, BotoCoreError) as e:
            raise classify(e, key, "delete") from e

    def delete_prefix(self, prefix: str) -> list[str]:
        keys = self.list_keys(prefix)
        deleted, remaining = [], []
        for i in range(0, len(keys), DELETE_BATCH):
            batch = keys[i:i + DELETE_BATCH]
            try:
                resp = self.s3.delete_objects(
                    Bucket=self.bucket,
                    Delete={"Objects": [{"Key": k} for k in batch], "Quiet": False},
                )
            except (ClientError, BotoCoreError) as e:
                log.error(f"DeleteObjects failed under {prefix}: {e}")
                remaining.extend(batch)
                continue
            failed = {err["Key"] for err in resp.get("Errors", [])}
            for err in resp.get("Errors", []):
                log.error(f"Could not delete {err['Key']}: {err.get('Code')} {err.get('Message')}")
            deleted.extend(k for k in batch if k not in failed)
            remaining.extend(k for k in batch if k in failed)
        if remaining:
            raise errors.DeletePrefixError(
                f"{len(remaining)} object(s) left under {prefix}", remaining_keys=remaining
            )
        return deleted

    def exists(self, key: str) -> bool:
        try:
            self.s3.head_object(Bucket=self.bucket, Key=key)
            return True
        except (ClientError, BotoCoreError) as e:
            err = classify(e, key, "head")
            if isinstance(err, errors.StorageNotFound):
                return False
            raise err from e

    def list_keys(self, prefix: str) -> list[str]:
        keys = []
        try:
            paginator = self.s3.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
                keys.extend(obj["Key"] for obj in page.get("Contents", []))
        except (ClientError, BotoCoreError) as e:
            raise classify(e, prefix, "list") from e
        return keys

    def presign(self, key: str, ttl_seconds: int) -> str:
        try:
            return self.s3.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket, "Key": key},
                ExpiresIn=int(ttl_seconds),
            )
        except (ClientError, BotoCoreError) as e:
            raise classify(e, key, "presign") from e

    def check(self) -> None:
        try:
            self.s3.list_objects_v2(Bucket=self.bucket, MaxKeys=1)
        except (ClientError, BotoCoreError) as e:
            raise classify(e, self.bucket, "list") from e
