# main.py
import logging
import os
import sys

import uvicorn

import database
from patlog import config
from patlog.logging_config import setup_logging
from patlog.storage_cleanup import purge_orphaned_blobs

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", 8000))


if __name__ == '__main__':
    setup_logging()
    logging.info("=====================================")
    logging.info("||   Starting PAT Inspection Logger ||")
    logging.info("=====================================")
    logging.info(f"BASE_DIR: {config.BASE_DIR}")
    logging.info(f"APP_DATA_DIR: {config.APP_DATA_DIR}")
    logging.info(f"DB_PATH: {config.DB_PATH}")
    logging.info(f"STORAGE_DIR: {config.STORAGE_DIR}")
    logging.info(f"BASE_URL: {config.BASE_URL}")

    database.migrate_database()

    if len(sys.argv) > 1 and sys.argv[1] == "cleanup":
        # One pass, for cron or a systemd timer
        purge_orphaned_blobs()
        sys.exit(0)

    from web_server import app
    uvicorn.run(app, host=HOST, port=PORT, log_config=None)
    logging.info("Server stopped.")
