# patlog/storage_cleanup.py
import logging
import threading
from datetime import datetime, timezone, timedelta
from typing import Optional

import database
from patlog import config, storage

_timer: Optional[threading.Timer] = None
_lock = threading.Lock()


def purge_orphaned_blobs(retention: timedelta = None, now: datetime = None) -> int:
    """
    Deletes blobs no inspection references that are older than the retention
    window. Returns how many were removed by this call; a second run finds
    nothing to do.
    """
    retention = config.ORPHAN_RETENTION if retention is None else retention
    now = now or datetime.now(timezone.utc)
    cutoff = (now - retention).astimezone(timezone.utc).isoformat(timespec='microseconds')

    purged = 0
    for row in database.get_orphaned_blobs(created_before=cutoff):
        try:
            if storage.purge_blob(row['id']):
                purged += 1
        except Exception:
            logging.warning(f"Could not purge orphaned blob {row['key']}", exc_info=True)

    logging.info(f"Storage cleanup: {purged} orphaned blobs removed (older than {cutoff}).")
    return purged

def _run_and_reschedule(interval: timedelta):
    try:
        purge_orphaned_blobs()
    except Exception:
        logging.error("Storage cleanup failed.", exc_info=True)
    finally:
        schedule_storage_cleanup(interval)

def schedule_storage_cleanup(interval: timedelta = None) -> threading.Timer:
    """Arms a daemon timer that runs a cleanup pass, then re-arms itself."""
    global _timer
    interval = interval or config.STORAGE_CLEANUP_INTERVAL
    with _lock:
        _timer = threading.Timer(interval.total_seconds(), _run_and_reschedule, args=(interval,))
        _timer.daemon = True
        _timer.start()
    logging.info(f"Storage cleanup scheduled every {interval}.")
    return _timer

def cancel_storage_cleanup():
    global _timer
    with _lock:
        if _timer is not None:
            _timer.cancel()
            _timer = None
