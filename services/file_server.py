# services/file_server.py
"""
Document storage on the library FTP server.

With FILE_SERVER_MOCK=true files are written under LOCAL_UPLOAD_FOLDER
instead, using the same relative paths.
"""
import io
import logging
import mimetypes
import os
import posixpath
import time
from datetime import datetime
from ftplib import FTP, error_perm, all_errors
from typing import Any, Dict, Optional

from werkzeug.utils import secure_filename

from config import Config
from errors import ValidationError
from services.documents import DOCUMENT_TYPES

log = logging.getLogger(__name__)

# Student record folders under academic-documents/
ACADEMIC_CATEGORY_FOLDERS = {
    "diplomes": "Diplomes",
    "diplome": "Diplomes",
    "releves": "releves",
    "releve": "releves",
}

MIME_TYPES = {
    "pdf": "application/pdf",
    "doc": "application/msword",
    "docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "epub": "application/epub+zip",
    "txt": "text/plain",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
}


def file_extension(name: str) -> str:
    return name.rsplit(".", 1)[1].lower() if "." in (name or "") else ""


def mime_type_for(name: str) -> str:
    ext = file_extension(name)
    return MIME_TYPES.get(ext) or mimetypes.guess_type(name)[0] or "application/octet-stream"


def build_file_name(document_id: str, original_name: str) -> str:
    """'<document_id>_<ms timestamp>.<ext>'."""
    ext = file_extension(original_name) or "bin"
    return f"{secure_filename(str(document_id))}_{int(time.time() * 1000)}.{ext}"


def target_folder(document_type: str, category: Optional[str] = None) -> str:
    if document_type == "academic-documents":
        sub = ACADEMIC_CATEGORY_FOLDERS.get((category or "").strip().lower(), "autres")
        return f"academic-documents/{sub}"
    meta = DOCUMENT_TYPES.get(document_type)
    return meta["folder"] if meta else "documents"


def _remote_path(relative: str) -> str:
    return posixpath.join(Config.FILE_SERVER_BASE_PATH or "/", relative.lstrip("/"))


def _local_path(relative: str) -> str:
    path = os.path.normpath(os.path.join(Config.LOCAL_UPLOAD_FOLDER, relative.lstrip("/")))
    root = os.path.normpath(Config.LOCAL_UPLOAD_FOLDER)
    if not path.startswith(root + os.sep):
        raise ValidationError("Chemin de fichier invalide")
    return path


def file_url(relative: str) -> str:
    return f"{Config.FILE_SERVER_BASE_URL.rstrip('/')}/{relative.lstrip('/')}"


def _connect() -> FTP:
    ftp = FTP(timeout=Config.FILE_SERVER_TIMEOUT)
    ftp.connect(Config.FILE_SERVER_HOST, Config.FILE_SERVER_PORT)
    ftp.login(Config.FILE_SERVER_USER, Config.FILE_SERVER_PASSWORD)
    ftp.set_pasv(Config.FILE_SERVER_PASSIVE)
    return ftp


def _ensure_remote_dir(ftp: FTP, directory: str) -> None:
    """mkdir -p over FTP."""
    current = ""
    for part in [p for p in directory.split("/") if p]:
        current = f"{current}/{part}"
        try:
            ftp.cwd(current)
        except error_perm:
            ftp.mkd(current)
    ftp.cwd("/")


def upload_file(data: bytes, original_name: str, document_type: str, document_id: str,
                replace_path: Optional[str] = None, category: Optional[str] = None) -> Dict[str, Any]:
    ext = file_extension(original_name)
    if ext not in Config.ALLOWED_DOCUMENT_EXTENSIONS:
        raise ValidationError(
            f"Type de fichier non autorisé: .{ext or '?'}",
            details={"allowed": sorted(Config.ALLOWED_DOCUMENT_EXTENSIONS)},
            code="INVALID_FILE_TYPE",
        )
    if not data:
        raise ValidationError("Fichier vide", code="EMPTY_FILE")

    file_name = build_file_name(document_id, original_name)
    relative = f"{target_folder(document_type, category)}/{file_name}"

    if Config.FILE_SERVER_MOCK:
        path = _local_path(relative)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "wb") as f:
            f.write(data)
        if replace_path and replace_path != relative:
            delete_file(replace_path)
    else:
        ftp = _connect()
        try:
            remote = _remote_path(relative)
            _ensure_remote_dir(ftp, posixpath.dirname(remote))
            ftp.storbinary(f"STOR {remote}", io.BytesIO(data))
            if replace_path and replace_path != relative:
                try:
                    ftp.delete(_remote_path(replace_path))
                except error_perm as e:
                    log.warning(f"⚠️ Previous file {replace_path} not removed: {e}")
        finally:
            ftp.quit()

    log.info(f"📁 Stored {original_name} as {relative} ({len(data)} bytes)")
    return {
        "original_name": original_name,
        "file_name": file_name,
        "file_path": relative,
        "file_url": file_url(relative),
        "file_size": len(data),
        "file_type": mime_type_for(original_name),
        "uploaded_at": datetime.now().isoformat(),
    }


def download_file(relative: str) -> Optional[bytes]:
    if not relative:
        return None
    if Config.FILE_SERVER_MOCK:
        path = _local_path(relative)
        if not os.path.exists(path):
            return None
        with open(path, "rb") as f:
            return f.read()

    buffer = io.BytesIO()
    ftp = _connect()
    try:
        ftp.retrbinary(f"RETR {_remote_path(relative)}", buffer.write)
    except error_perm as e:
        log.warning(f"⚠️ Download failed for {relative}: {e}")
        return None
    finally:
        ftp.quit()
    return buffer.getvalue()


def delete_file(relative: str) -> bool:
    if not relative:
        return False
    if Config.FILE_SERVER_MOCK:
        path = _local_path(relative)
        if os.path.exists(path):
            os.remove(path)
            return True
        return False

    ftp = _connect()
    try:
        ftp.delete(_remote_path(relative))
        return True
    except error_perm as e:
        log.warning(f"⚠️ Delete failed for {relative}: {e}")
        return False
    finally:
        ftp.quit()


def test_connection() -> Dict[str, Any]:
    result = {
        "mode": "local" if Config.FILE_SERVER_MOCK else "ftp",
        "host": Config.FILE_SERVER_HOST,
        "port": Config.FILE_SERVER_PORT,
        "connected": False,
    }
    if Config.FILE_SERVER_MOCK:
        os.makedirs(Config.LOCAL_UPLOAD_FOLDER, exist_ok=True)
        result["connected"] = os.access(Config.LOCAL_UPLOAD_FOLDER, os.W_OK)
        result["path"] = Config.LOCAL_UPLOAD_FOLDER
        return result
    try:
        ftp = _connect()
        try:
            result["welcome"] = ftp.getwelcome()
            result["cwd"] = ftp.pwd()
            result["connected"] = True
        finally:
            ftp.quit()
    except all_errors as e:
        result["error"] = str(e)
    return result
