import io

import boto3
import pytest
from botocore.stub import Stubber

from errors import PathSafetyError, StorageError
from services.cleanup_executor import ArtifactCleanupExecutor
from services.storage import DiskRegistry, LocalDisk, S3Disk


def test_local_disk_round_trip(tmp_path):
    disk = LocalDisk("public", tmp_path)
    disk.put("tenants/1/a/file.jpg", io.BytesIO(b"data"))

    assert disk.read("tenants/1/a/file.jpg") == b"data"
    assert disk.exists("tenants/1/a/file.jpg")
    assert disk.directory_exists("tenants/1/a")

    disk.delete_directory("tenants/1/a")
    assert not disk.directory_exists("tenants/1/a")
    with pytest.raises(FileNotFoundError):
        disk.read("tenants/1/a/file.jpg")


def test_local_disk_confines_keys_to_root(tmp_path):
    disk = LocalDisk("public", tmp_path / "root")
    with pytest.raises(PathSafetyError):
        disk.put("../escape.txt", io.BytesIO(b"x"))
    with pytest.raises(PathSafetyError):
        disk.delete_directory(".")


def test_registry_reports_unknown_disks(tmp_path):
    registry = DiskRegistry({"public": LocalDisk("public", tmp_path)})
    assert registry.has("public")
    assert registry.names() == ["public"]
    with pytest.raises(StorageError):
        registry.get("archive")


@pytest.fixture
def s3_client():
    return boto3.client(
        "s3", region_name="us-east-1", aws_access_key_id="test", aws_secret_access_key="test"
    )


def test_s3_delete_directory_pages_through_listing(s3_client):
    disk = S3Disk("s3", "media-bucket", prefix="app", client=s3_client)
    with Stubber(s3_client) as stub:
        stub.add_response(
            "list_objects_v2",
            {
                "Contents": [{"Key": "app/tenants/1/a/v1.jpg"}],
                "IsTruncated": True,
                "NextContinuationToken": "next",
            },
            {"Bucket": "media-bucket", "Prefix": "app/tenants/1/a/"},
        )
        stub.add_response(
            "delete_objects",
            {"Deleted": [{"Key": "app/tenants/1/a/v1.jpg"}]},
            {
                "Bucket": "media-bucket",
                "Delete": {"Objects": [{"Key": "app/tenants/1/a/v1.jpg"}], "Quiet": True},
            },
        )
        stub.add_response(
            "list_objects_v2",
            {"Contents": [], "IsTruncated": False},
            {"Bucket": "media-bucket", "Prefix": "app/tenants/1/a/", "ContinuationToken": "next"},
        )
        disk.delete_directory("tenants/1/a")
        stub.assert_no_pending_responses()


def test_s3_missing_key_maps_to_file_not_found(s3_client):
    disk = S3Disk("s3", "media-bucket", client=s3_client)
    with Stubber(s3_client) as stub:
        stub.add_client_error("get_object", service_error_code="NoSuchKey", http_status_code=404)
        with pytest.raises(FileNotFoundError):
            disk.read("tenants/1/missing.jpg")


def test_s3_put_failure_is_a_storage_error(s3_client):
    disk = S3Disk("s3", "media-bucket", client=s3_client)
    with Stubber(s3_client) as stub:
        stub.add_client_error("put_object", service_error_code="AccessDenied", http_status_code=403)
        with pytest.raises(StorageError):
            disk.put("tenants/1/a.jpg", io.BytesIO(b"x"), content_type="image/jpeg")


def test_s3_listing_failure_is_a_storage_error(s3_client):
    disk = S3Disk("s3", "media-bucket", client=s3_client)
    with Stubber(s3_client) as stub:
        stub.add_client_error("list_objects_v2", service_error_code="AccessDenied", http_status_code=403)
        with pytest.raises(StorageError):
            disk.delete_directory("tenants/1/a")


def test_throttled_s3_entry_does_not_block_the_rest_of_the_batch(s3_client):
    disk = S3Disk("s3", "media-bucket", client=s3_client)
    executor = ArtifactCleanupExecutor(DiskRegistry({"s3": disk}))
    with Stubber(s3_client) as stub:
        stub.add_client_error(
            "list_objects_v2",
            service_error_code="SlowDown",
            http_status_code=503,
            expected_params={"Bucket": "media-bucket", "Prefix": "tenants/1/a/", "MaxKeys": 1},
        )
        stub.add_response(
            "list_objects_v2",
            {"KeyCount": 1, "Contents": [{"Key": "tenants/1/b/v1.jpg"}]},
            {"Bucket": "media-bucket", "Prefix": "tenants/1/b/", "MaxKeys": 1},
        )
        stub.add_response(
            "list_objects_v2",
            {"Contents": [{"Key": "tenants/1/b/v1.jpg"}], "IsTruncated": False},
            {"Bucket": "media-bucket", "Prefix": "tenants/1/b/"},
        )
        stub.add_response(
            "delete_objects",
            {"Deleted": [{"Key": "tenants/1/b/v1.jpg"}]},
            {
                "Bucket": "media-bucket",
                "Delete": {"Objects": [{"Key": "tenants/1/b/v1.jpg"}], "Quiet": True},
            },
        )
        stats = executor.run(
            {"s3": [{"dir": "tenants/1/a", "mediaId": "1"}, {"dir": "tenants/1/b", "mediaId": "2"}]}
        )
        stub.assert_no_pending_responses()

    assert stats.errors == 1
    assert stats.deleted == 1
    assert stats.cleared_media_ids == {"2"}
