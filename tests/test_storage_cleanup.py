"""
Tests for the orphaned blob cleanup
"""
import os
from datetime import datetime, timedelta, timezone

import database
from patlog import storage
from patlog.storage_cleanup import purge_orphaned_blobs, schedule_storage_cleanup, cancel_storage_cleanup

LATER = datetime.now(timezone.utc) + timedelta(days=3)


class TestPurgeOrphanedBlobs:

    def test_old_orphan_purged(self, image_bytes):
        blob = storage.store_blob(image_bytes(), 'orphan.jpg', 'image/jpeg')
        path = storage._blob_path(blob.key)

        assert purge_orphaned_blobs(now=LATER) == 1
        assert database.get_blob_by_id(blob.id) is None
        assert not os.path.exists(path)

    def test_recent_orphan_kept(self, image_bytes):
        blob = storage.store_blob(image_bytes(), 'orphan.jpg', 'image/jpeg')
        assert purge_orphaned_blobs() == 0
        assert database.get_blob_by_id(blob.id) is not None

    def test_attached_blob_kept(self, user, make_inspection, jpeg_upload):
        inspection = make_inspection(user, image=jpeg_upload)
        assert purge_orphaned_blobs(now=LATER) == 0
        assert database.get_blob_by_id(inspection.image_blob_id) is not None

    def test_second_run_is_a_no_op(self, image_bytes):
        storage.store_blob(image_bytes(), 'a.jpg', 'image/jpeg')
        storage.store_blob(image_bytes(), 'b.jpg', 'image/jpeg')
        assert purge_orphaned_blobs(now=LATER) == 2
        assert purge_orphaned_blobs(now=LATER) == 0

    def test_missing_file_still_purges_row(self, image_bytes):
        blob = storage.store_blob(image_bytes(), 'a.jpg', 'image/jpeg')
        os.remove(storage._blob_path(blob.key))
        assert purge_orphaned_blobs(now=LATER) == 1

    def test_purge_blob_twice(self, image_bytes):
        blob = storage.store_blob(image_bytes(), 'a.jpg', 'image/jpeg')
        assert storage.purge_blob(blob.id) is True
        assert storage.purge_blob(blob.id) is False


def test_schedule_arms_daemon_timer():
    timer = schedule_storage_cleanup(timedelta(hours=1))
    try:
        assert timer.daemon
        assert timer.is_alive()
    finally:
        cancel_storage_cleanup()
    timer.join(timeout=1)
    assert not timer.is_alive()
