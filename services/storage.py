"""Named storage disks: a local filesystem root or an S3 bucket prefix."""
import shutil
from pathlib import Path
from typing import BinaryIO, Protocol

import boto3
import structlog
from botocore.client import Config
from botocore.exceptions import BotoCoreError, ClientError

from config import StorageSettings
from errors import PathSafetyError, StorageError

logger = structlog.get_logger(__name__)


class Disk(Protocol):
    name: str

    def put(self, key: str, stream: BinaryIO, content_type: str | None = None) -> None: ...

    def read(self, key: str) -> bytes: ...

    def exists(self, key: str) -> bool: ...

    def directory_exists(self, prefix: str) -> bool: ...

    def delete(self, key: str) -> None: ...

    def delete_directory(self, prefix: str) -> None: ...


class LocalDisk:
    def __init__(self, name: str, root: str | Path):
        self.name = name
        self.root = Path(root).resolve()

    def path(self, key: str) -> Path:
        candidate = (self.root / key).resolve()
        if candidate != self.root and self.root not in candidate.parents:
            raise PathSafetyError(key, "outside_disk_root")
        return candidate

    def put(self, key: str, stream: BinaryIO, content_type: str | None = None) -> None:
        target = self.path(key)
        target.parent.mkdir(parents=True, exist_ok=True)
        with target.open("wb") as handle:
            shutil.copyfileobj(stream, handle)

    def read(self, key: str) -> bytes:
        target = self.path(key)
        if not target.is_file():
            raise FileNotFoundError(key)
        return target.read_bytes()

    def exists(self, key: str) -> bool:
        return self.path(key).is_file()

    def directory_exists(self, prefix: str) -> bool:
        return self.path(prefix).is_dir()

    def delete(self, key: str) -> None:
        self.path(key).unlink(missing_ok=True)

    def delete_directory(self, prefix: str) -> None:
        target = self.path(prefix)
        if target == self.root:
            raise PathSafetyError(prefix, "disk_root")
        shutil.rmtree(target, ignore_errors=False)


class S3Disk:
    def __init__(self, name: str, bucket: str, prefix: str = "", client=None, region: str | None = None):
        self.name = name
        self.bucket = bucket
        self.prefix = prefix.strip("/")
        self.client = client or boto3.client(
            "s3",
            region_name=region,
            config=Config(signature_version="s3v4", s3={"addressing_style": "virtual"}),
        )

    def _key(self, key: str) -> str:
        key = key.strip("/")
        return f"{self.prefix}/{key}" if self.prefix else key

    def put(self, key: str, stream: BinaryIO, content_type: str | None = None) -> None:
        extra = {"ContentType": content_type} if content_type else {}
        try:
            self.client.put_object(Bucket=self.bucket, Key=self._key(key), Body=stream.read(), **extra)
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"s3 put failed for {self.name}") from exc

    def read(self, key: str) -> bytes:
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=self._key(key))
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code")
            if code in {"NoSuchKey", "NotFound", "404"}:
                raise FileNotFoundError(key) from exc
            raise StorageError(f"s3 read failed for {self.name}") from exc
        return response["Body"].read()

    def exists(self, key: str) -> bool:
        try:
            self.client.head_object(Bucket=self.bucket, Key=self._key(key))
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code")
            if code in {"NoSuchKey", "NotFound", "404"}:
                return False
            raise StorageError(f"s3 head failed for {self.name}") from exc
        except BotoCoreError as exc:
            raise StorageError(f"s3 head failed for {self.name}") from exc
        return True

    def delete(self, key: str) -> None:
        try:
            self.client.delete_object(Bucket=self.bucket, Key=self._key(key))
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"s3 delete failed for {self.name}") from exc

    def directory_exists(self, prefix: str) -> bool:
        try:
            response = self.client.list_objects_v2(
                Bucket=self.bucket, Prefix=self._key(prefix) + "/", MaxKeys=1
            )
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"s3 list failed for {self.name}") from exc
        return response.get("KeyCount", 0) > 0

    def delete_directory(self, prefix: str) -> None:
        full_prefix = self._key(prefix) + "/"
        token = None
        removed = 0
        while True:
            kwargs = {"Bucket": self.bucket, "Prefix": full_prefix}
            if token:
                kwargs["ContinuationToken"] = token
            try:
                response = self.client.list_objects_v2(**kwargs)
                objects = [{"Key": item["Key"]} for item in response.get("Contents", [])]
                result = (
                    self.client.delete_objects(
                        Bucket=self.bucket, Delete={"Objects": objects, "Quiet": True}
                    )
                    if objects
                    else {}
                )
            except (BotoCoreError, ClientError) as exc:
                raise StorageError(f"s3 delete failed for {self.name} under {full_prefix}") from exc
            if objects:
                if result.get("Errors"):
                    raise StorageError(f"s3 delete failed for {len(result['Errors'])} objects")
                removed += len(objects)
            if not response.get("IsTruncated"):
                break
            token = response.get("NextContinuationToken")
        logger.debug("s3_directory_deleted", disk=self.name, prefix=full_prefix, objects=removed)


class DiskRegistry:
    def __init__(self, disks: dict[str, Disk] | None = None):
        self._disks = dict(disks or {})

    @classmethod
    def from_settings(cls, settings: StorageSettings) -> "DiskRegistry":
        disks: dict[str, Disk] = {
            name: LocalDisk(name, root) for name, root in settings.local_disks.items()
        }
        if settings.s3_bucket and settings.s3_disk:
            disks[settings.s3_disk] = S3Disk(
                settings.s3_disk, settings.s3_bucket, settings.s3_prefix, region=settings.s3_region
            )
        return cls(disks)

    def has(self, name: str) -> bool:
        return name in self._disks

    def get(self, name: str) -> Disk:
        try:
            return self._disks[name]
        except KeyError:
            raise StorageError(f"unknown disk '{name}'") from None

    def names(self) -> list[str]:
        return sorted(self._disks)
