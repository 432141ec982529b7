import pytest

from errors import StorageError


def _make_tree(root, directory, files=("v1.jpg",)):
    target = root / directory
    target.mkdir(parents=True, exist_ok=True)
    for name in files:
        (target / name).write_bytes(b"x")
    return target


def test_deletes_attributed_directories(executor, public_root):
    old = _make_tree(public_root, "tenants/1/users/5/avatars/a1")
    _make_tree(public_root, "tenants/1/users/5/avatars/a1/conversions", ["v1-thumb.webp"])

    stats = executor.run(
        {
            "public": [
                {"dir": "tenants/1/users/5/avatars/a1", "mediaId": "11"},
                {"dir": "tenants/1/users/5/avatars/a1/conversions", "mediaId": "11"},
            ]
        }
    )

    assert not old.exists()
    assert stats.deleted == 1
    assert stats.missing == 1
    assert stats.cleared_media_ids == {"11"}


def test_unattributable_legacy_path_is_left_alone(executor, public_root):
    kept = _make_tree(public_root, "tenants/1/users/5/avatars/77/conversions", ["thumb.webp"])

    stats = executor.run({"public": ["tenants/1/users/5/avatars/77/conversions"]}, preserve_media_ids=["78"])

    assert kept.exists()
    assert stats.skipped_legacy_unparsable == 1
    assert stats.deleted == 0


def test_legacy_media_segment_is_used_for_attribution(executor, public_root):
    legacy = _make_tree(public_root, "tenants/1/media/42/conversions", ["thumb.webp"])
    preserved = _make_tree(public_root, "tenants/1/media/43/conversions", ["thumb.webp"])

    stats = executor.run(
        {"public": ["tenants/1/media/42/conversions", "tenants/1/media/43/conversions"]},
        preserve_media_ids=["43"],
    )

    assert not legacy.exists()
    assert preserved.exists()
    assert stats.deleted == 1
    assert stats.preserved == 1


def test_preserved_media_is_never_deleted(executor, public_root):
    current = _make_tree(public_root, "tenants/1/users/5/avatars/a2")
    stats = executor.run(
        {"public": [{"dir": "tenants/1/users/5/avatars/a2", "mediaId": "12"}]}, preserve_media_ids=[12]
    )
    assert current.exists()
    assert stats.preserved == 1


def test_invalid_entries_are_skipped(executor, public_root):
    outside = public_root.parent / "secrets"
    outside.mkdir()

    stats = executor.run(
        {
            "public": [
                {"dir": "../secrets", "mediaId": "1"},
                {"dir": "media/1/conversions", "mediaId": "1"},
            ],
            "nowhere": [{"dir": "tenants/1/x", "mediaId": "2"}],
        }
    )

    assert outside.exists()
    assert stats.skipped_invalid == 3
    assert stats.cleared_media_ids == set()


def test_rerun_only_counts_missing(executor, public_root):
    _make_tree(public_root, "tenants/1/users/5/avatars/a3")
    artifacts = {"public": [{"dir": "tenants/1/users/5/avatars/a3", "mediaId": "13"}]}

    first = executor.run(artifacts)
    second = executor.run(artifacts)

    assert (first.deleted, first.missing) == (1, 0)
    assert (second.deleted, second.missing) == (0, 1)


def test_delete_errors_keep_media_uncleared(executor, disks, public_root, monkeypatch):
    _make_tree(public_root, "tenants/1/users/5/avatars/a4")

    def fail(prefix):
        raise StorageError("disk offline")

    monkeypatch.setattr(disks.get("public"), "delete_directory", fail)
    stats = executor.run({"public": [{"dir": "tenants/1/users/5/avatars/a4", "mediaId": "14"}]})

    assert stats.errors == 1
    assert stats.cleared_media_ids == set()


@pytest.mark.parametrize("preserve", [["14"], [" 14 "], [14]])
def test_preserve_ids_are_normalized(executor, public_root, preserve):
    _make_tree(public_root, "tenants/1/users/5/avatars/a5")
    stats = executor.run(
        {"public": [{"dir": "tenants/1/users/5/avatars/a5", "mediaId": 14}]}, preserve_media_ids=preserve
    )
    assert stats.preserved == 1
