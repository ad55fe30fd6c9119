# patlog/config.py
import logging
import os
import sys
import configparser
from datetime import timedelta

from dotenv import load_dotenv

load_dotenv()

def get_base_dir():
    """Returns the folder that holds the program files."""
    if getattr(sys, 'frozen', False):
        return os.path.dirname(sys.executable)
    else:
        return os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))

def get_app_data_dir():
    """
    Returns the application data folder, creating it when missing.
    (e.g. /home/<user>/.PATInspectionLogger)
    """
    override = os.getenv("PATLOG_DATA_DIR")
    if override:
        app_data_path = override
    elif sys.platform == "win32":
        app_data_path = os.path.join(os.environ['APPDATA'], "PATInspectionLogger")
    else:
        app_data_path = os.path.join(os.path.expanduser('~'), '.PATInspectionLogger')

    os.makedirs(app_data_path, exist_ok=True)
    return app_data_path

# --- Paths ---
BASE_DIR = get_base_dir()
APP_DATA_DIR = get_app_data_dir()

DB_PATH = os.getenv("PATLOG_DB_PATH", os.path.join(APP_DATA_DIR, "patlog.db"))
STORAGE_DIR = os.getenv("PATLOG_STORAGE_DIR", os.path.join(APP_DATA_DIR, "storage"))
LOG_DIR = os.path.join(APP_DATA_DIR, "logs")
MIGRATIONS_DIR = os.path.join(BASE_DIR, "migrations")
FONT_DIR = os.getenv("PATLOG_FONT_DIR", os.path.join(BASE_DIR, "fonts"))
CONFIG_INI_PATH = os.path.join(BASE_DIR, "config.ini")

APP_NAME = "PAT Inspection Logger"
VERSION = "1.4.0"

# --- Security ---
SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret-change-me")
ALGORITHM = os.getenv("ALGORITHM", "HS256")
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 24 * 30))  # 30 days
SESSION_COOKIE = "patlog_session"
FLASH_COOKIE = "flash"

# --- Business rules ---
DEFAULT_INSPECTION_LIMIT = 10
MIN_PASSWORD_LENGTH = 6
MAX_IMAGE_BYTES = 10 * 1024 * 1024
MAX_FUSE_RATING = 32
ORPHAN_RETENTION = timedelta(days=2)
STORAGE_CLEANUP_INTERVAL = timedelta(days=1)
STORAGE_CLEANUP_ENABLED = os.getenv("STORAGE_CLEANUP_ENABLED", "").strip().lower() in ("1", "true", "yes")

# --- Images & report ---
JPEG_QUALITY = 78
QR_RENDER_WIDTH = 180

def load_base_url():
    """Reads the public URL from the environment, falling back to config.ini."""
    env_url = os.getenv("BASE_URL")
    if env_url:
        return env_url.rstrip('/')
    parser = configparser.ConfigParser()
    if os.path.exists(CONFIG_INI_PATH):
        parser.read(CONFIG_INI_PATH)
        return parser.get('server', 'url', fallback='http://localhost:8000').rstrip('/')
    return 'http://localhost:8000'

BASE_URL = load_base_url()

if SECRET_KEY == "dev-secret-change-me":
    logging.warning("SECRET_KEY is not set: using the development key.")
