# storage.py
import os
import time

from werkzeug.utils import secure_filename

from logger import get_logger

logger = get_logger(__name__)


def stored_name(original_name, millis=None):
    """Name used on disk: ``{epoch-millis}_{sanitized original name}``."""
    if millis is None:
        millis = int(time.time() * 1000)
    return f"{millis}_{secure_filename(original_name) or 'upload'}"


def save_upload(file, upload_dir):
    """Write an uploaded FileStorage into upload_dir.

    Returns (original_name, absolute_path). OSError propagates to the caller.
    """
    os.makedirs(upload_dir, exist_ok=True)
    path = os.path.join(upload_dir, stored_name(file.filename))
    file.save(path)
    logger.info("File stored", file_name=file.filename, path=path)
    return file.filename, path


def delete_file(path):
    """Remove a stored file. Best-effort: failures are logged, never raised."""
    try:
        os.remove(path)
    except FileNotFoundError:
        logger.warning("File already gone", path=path)
        return False
    except OSError:
        logger.exception("Failed to remove file", path=path)
        return False
    logger.info("File removed", path=path)
    return True


def file_exists(path):
    return bool(path) and os.path.isfile(path)
