import hashlib
import logging
import os
import secrets
import time
from pathlib import Path

import magic
from dotenv import load_dotenv
from fastapi import APIRouter, Depends, HTTPException, UploadFile, File
from sqlalchemy.orm import Session

from carehub.database.connection import get_db
from carehub.database.models import User, UploadedFile
from carehub.utils.audit import log_action
from .auth import get_current_user

load_dotenv()
router = APIRouter(prefix="/api/uploads", tags=["File Upload"])
logger = logging.getLogger(__name__)

# ==================== CONFIG ====================

UPLOAD_BASE_DIR = Path(os.getenv("UPLOAD_DIR", "uploads"))
MAX_FILE_SIZE = int(os.getenv("MAX_FILE_SIZE", str(10 * 1024 * 1024)))  # 10 MB

ALLOWED_MIME_TYPES = {
    ".jpg": {"image/jpeg", "image/jpg"},
    ".jpeg": {"image/jpeg", "image/jpg"},
    ".png": {"image/png"},
    ".pdf": {"application/pdf"},
}

FILE_SIGNATURES = {
    ".jpg": [b"\xFF\xD8\xFF"],
    ".jpeg": [b"\xFF\xD8\xFF"],
    ".png": [b"\x89\x50\x4E\x47\x0D\x0A\x1A\x0A"],
    ".pdf": [b"%PDF"],
}

# category -> sub folder
FILE_CATEGORIES = {
    "certificate": "certificates",
    "prescription": "prescriptions",
    "license": "licenses",
}

CHUNK_SIZE = 8192

# ==================== HELPER FUNCTIONS ====================

def is_valid_signature(file_content: bytes, extension: str) -> bool:
    """
    Validate file signature vs extension
    Prevents fake extensions
    """
    return any(file_content.startswith(sig) for sig in FILE_SIGNATURES.get(extension, []))


def detect_mime_type(head: bytes) -> str:
    """MIME type sniffed from the leading bytes with libmagic"""
    return magic.Magic(mime=True).from_buffer(head)


def validate_upload(file: UploadFile) -> tuple:
    """
    🔒 Extension, size, sniffed MIME type and leading bytes

    Size comes from seek/tell so nothing is read for an oversized file.
    Returns (errors, detected MIME type).
    """
    errors = []

    filename = Path(file.filename or "").name
    extension = Path(filename).suffix.lower()

    if extension not in ALLOWED_MIME_TYPES:
        errors.append("Only JPEG, JPG, PNG and PDF files are allowed")
        return errors, None

    file.file.seek(0, 2)
    file_size = file.file.tell()
    file.file.seek(0)

    if file_size == 0:
        errors.append("File is empty")
        return errors, None
    if file_size > MAX_FILE_SIZE:
        errors.append(
            f"File size {file_size/1024/1024:.1f}MB exceeds maximum {MAX_FILE_SIZE/1024/1024:.1f}MB"
        )
        return errors, None

    # First 2048 bytes are enough for libmagic
    head = file.file.read(2048)
    file.file.seek(0)

    detected = detect_mime_type(head)
    if detected not in ALLOWED_MIME_TYPES[extension]:
        errors.append(f"File content is {detected}, not allowed for {extension}")

    if not is_valid_signature(head[:16], extension):
        errors.append(f"File signature doesn't match extension {extension}")

    return errors, detected


def generate_stored_name(category: str, extension: str) -> str:
    """<category>-<epoch millis>-<9 random digits><ext>"""
    millis = int(time.time() * 1000)
    suffix = secrets.randbelow(10 ** 9)
    return f"{category}-{millis}-{suffix:09d}{extension}"


def save_file(file: UploadFile, category: str, extension: str) -> dict:
    """Stream the upload to disk in chunks, hashing as it goes"""
    folder = UPLOAD_BASE_DIR / FILE_CATEGORIES[category]
    folder.mkdir(parents=True, exist_ok=True)

    stored_name = generate_stored_name(category, extension)
    filepath = folder / stored_name

    sha256_hash = hashlib.sha256()
    size = 0
    file.file.seek(0)
    try:
        with open(filepath, "wb") as f:
            while chunk := file.file.read(CHUNK_SIZE):
                f.write(chunk)
                sha256_hash.update(chunk)
                size += len(chunk)
    except OSError:
        filepath.unlink(missing_ok=True)
        raise

    return {
        "path": str(filepath),
        "url": f"/uploads/{FILE_CATEGORIES[category]}/{stored_name}",
        "stored_name": stored_name,
        "hash": sha256_hash.hexdigest(),
        "size": size
    }

# ==================== API ENDPOINTS ====================

@router.post("/{category}", status_code=201, response_model=dict)
async def upload_file(
    category: str,
    file: UploadFile = File(...),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    📄 UPLOAD CERTIFICATE / PRESCRIPTION / LICENSE

    Accepts jpeg/jpg/png/pdf only, judged by content rather than the
    client's Content-Type. Stored under UPLOAD_DIR/<category>s/.
    """
    if category not in FILE_CATEGORIES:
        raise HTTPException(
            status_code=400,
            detail=f"Unknown upload category '{category}'. Use one of: {', '.join(FILE_CATEGORIES)}"
        )

    errors, detected_type = validate_upload(file)
    if errors:
        raise HTTPException(
            status_code=400,
            detail=f"File validation failed: {', '.join(errors)}"
        )

    extension = Path(file.filename).suffix.lower()
    try:
        file_info = save_file(file, category, extension)
    except OSError as e:
        logger.error(f"File save error: {str(e)}")
        raise HTTPException(status_code=500, detail="File save failed")

    try:
        uploaded_file = UploadedFile(
            user_id=current_user.id,
            filename=Path(file.filename).name,
            stored_filename=file_info["stored_name"],
            file_path=file_info["path"],
            file_size=file_info["size"],
            file_hash=file_info["hash"],
            content_type=detected_type,
            category=category
        )
        db.add(uploaded_file)
        db.commit()
        db.refresh(uploaded_file)
    except Exception as e:
        db.rollback()
        Path(file_info["path"]).unlink(missing_ok=True)
        logger.error(f"Upload record failed, removed {file_info['stored_name']}: {str(e)}")
        raise HTTPException(status_code=500, detail="File upload failed")

    log_action(
        db=db,
        user_id=current_user.id,
        action="FILE_UPLOADED",
        entity_type="file",
        entity_id=uploaded_file.id,
        details={
            "category": category,
            "filename": uploaded_file.filename,
            "size": file_info["size"],
            "file_hash": file_info["hash"]
        }
    )

    return {
        "success": True,
        "message": "File uploaded successfully",
        "data": {
            "fileId": uploaded_file.id,
            "path": file_info["path"],
            "url": file_info["url"],
            "filename": file_info["stored_name"],
            "size": file_info["size"]
        }
    }
