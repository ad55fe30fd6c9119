# patlog/storage.py
"""
Local-disk blob store.

Bytes live under STORAGE_DIR/<first two chars of key>/<key>; the blobs table
holds filename, content type and size. Deleting is idempotent so two cleanup
passes racing on the same blob never fail.
"""
import os
import uuid
import logging

import database
from patlog import config
from patlog.data_models import Blob


def _blob_path(key: str) -> str:
    return os.path.join(config.STORAGE_DIR, key[:2], key)

def store_blob(data: bytes, filename: str, content_type: str) -> Blob:
    """Writes the bytes to disk, then records the blob row."""
    key = uuid.uuid4().hex
    path = _blob_path(key)
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "wb") as f:
        f.write(data)

    timestamp = database._now_iso()
    try:
        blob_id = database.insert_blob(key, filename, content_type, len(data), timestamp)
    except Exception:
        _remove_file(path)
        raise

    logging.info(f"Blob stored: key={key}, filename={filename}, size={len(data)} bytes")
    return Blob(id=blob_id, key=key, filename=filename, content_type=content_type,
                byte_size=len(data))

def read_blob(blob: Blob) -> bytes:
    """Raises FileNotFoundError when the file has gone missing from disk."""
    with open(_blob_path(blob.key), "rb") as f:
        return f.read()

def get_blob(key: str):
    row = database.get_blob_by_key(key)
    return Blob.from_row(row) if row else None

def purge_blob(blob_id: int) -> bool:
    """
    Removes a blob row and its file. Returns False if another caller already
    removed it.
    """
    row = database.get_blob_by_id(blob_id)
    if not row:
        return False
    deleted = database.delete_blob(blob_id)
    _remove_file(_blob_path(row['key']))
    if deleted:
        logging.info(f"Blob purged: key={row['key']}")
    return bool(deleted)

def _remove_file(path: str) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError:
        logging.warning(f"Could not remove blob file: {path}", exc_info=True)
