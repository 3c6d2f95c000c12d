"""
File storage for alumni attachments

Uploads a named file under a folder and returns a durable URL. Two backends:
S3 (boto3) for deployments and local disk for development and tests.
"""

import os
import re
import uuid
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import BinaryIO, Dict, Optional, Tuple

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from fastapi import UploadFile

from config import settings
from exceptions import UploadError, ValidationError
from logging_config import logger

# multipart field -> upload folder
ATTACHMENT_FOLDERS: Dict[str, str] = {
    "qualificationImage": "alumni/qualifications",
    "employmentImage": "alumni/employment",
    "higherEducationImage": "alumni/higher-education",
}

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def sanitize_filename(filename: str) -> str:
    name = os.path.basename(filename or "").strip()
    name = _UNSAFE_CHARS.sub("-", name).strip("-.")
    return name or "file"


class FileStorage:
    """S3 or local-disk storage client for attachment uploads"""

    def __init__(self, backend: Optional[str] = None, upload_dir: Optional[str] = None,
                 public_base_url: Optional[str] = None):
        self.backend = (backend or settings.STORAGE_BACKEND).lower()
        self.max_bytes = settings.MAX_UPLOAD_SIZE_MB * 1024 * 1024
        self.allowed_extensions = settings.ALLOWED_UPLOAD_EXTENSIONS

        if self.backend == "s3":
            self.client = boto3.client(
                's3',
                aws_access_key_id=settings.AWS_ACCESS_KEY_ID,
                aws_secret_access_key=settings.AWS_SECRET_ACCESS_KEY,
                region_name=settings.AWS_REGION
            )
            self.bucket_name = settings.S3_BUCKET_NAME
        elif self.backend == "local":
            self.client = None
            self.upload_dir = Path(upload_dir or settings.UPLOAD_DIR)
            self.public_base_url = (public_base_url or settings.PUBLIC_BASE_URL).rstrip("/")
        else:
            raise ValueError(f"Unknown STORAGE_BACKEND: {self.backend}")

    def validate(self, field: str, file: UploadFile) -> Tuple[str, int]:
        """Check extension and size; returns (sanitized filename, size in bytes)"""
        filename = sanitize_filename(file.filename or "")
        extension = filename.rsplit(".", 1)[-1].lower() if "." in filename else ""
        if extension not in self.allowed_extensions:
            raise ValidationError(
                f"File type '{extension or 'unknown'}' not allowed. "
                f"Allowed: {', '.join(self.allowed_extensions)}",
                field=field,
            )

        file.file.seek(0, 2)
        size = file.file.tell()
        file.file.seek(0)
        if size > self.max_bytes:
            raise ValidationError(
                f"File exceeds the {settings.MAX_UPLOAD_SIZE_MB}MB limit",
                field=field,
            )
        return filename, size

    def upload(self, field: str, file: UploadFile, folder: str) -> str:
        """
        Upload a file and return its URL

        Raises:
            ValidationError: disallowed type or too large
            UploadError: backend rejected or unreachable
        """
        filename, size = self.validate(field, file)
        object_name = f"{folder}/{uuid.uuid4().hex}-{filename}"

        try:
            if self.backend == "s3":
                url = self._upload_s3(file.file, object_name, file.content_type)
            else:
                url = self._upload_local(file.file, object_name)
        except (ClientError, BotoCoreError, OSError) as e:
            logger.error(f"Error uploading {field} to {object_name}: {e}", exc_info=True)
            raise UploadError(field, "storage backend rejected the file") from e

        logger.info(f"Uploaded {field} ({size} bytes): {object_name}")
        return url

    def _upload_s3(self, file_obj: BinaryIO, object_name: str, content_type: Optional[str]) -> str:
        extra_args = {}
        if content_type:
            extra_args['ContentType'] = content_type

        self.client.upload_fileobj(
            file_obj,
            self.bucket_name,
            object_name,
            ExtraArgs=extra_args
        )
        if settings.S3_PUBLIC_URL:
            return f"{settings.S3_PUBLIC_URL.rstrip('/')}/{object_name}"
        return f"https://{self.bucket_name}.s3.{settings.AWS_REGION}.amazonaws.com/{object_name}"

    def _upload_local(self, file_obj: BinaryIO, object_name: str) -> str:
        target = self.upload_dir / object_name
        target.parent.mkdir(parents=True, exist_ok=True)
        with open(target, "wb") as out:
            while True:
                chunk = file_obj.read(1024 * 1024)
                if not chunk:
                    break
                out.write(chunk)
        return f"{self.public_base_url}/uploads/{object_name}"

    def upload_attachments(self, files: Dict[str, UploadFile]) -> Dict[str, str]:
        """
        Upload every known attachment field and return {field: url}.

        Fields are independent, so they are uploaded concurrently. Any
        failure fails the whole batch; files already stored are left behind.
        """
        selected = {
            field: file for field, file in files.items()
            if field in ATTACHMENT_FOLDERS and file is not None and file.filename
        }
        if not selected:
            return {}

        # Validate everything first so a bad file never leaves partial uploads
        for field, file in selected.items():
            self.validate(field, file)

        with ThreadPoolExecutor(max_workers=len(selected)) as pool:
            futures = {
                field: pool.submit(self.upload, field, file, ATTACHMENT_FOLDERS[field])
                for field, file in selected.items()
            }
            return {field: future.result() for field, future in futures.items()}


_storage: Optional[FileStorage] = None


def get_storage() -> FileStorage:
    """FastAPI dependency returning the process-wide storage client"""
    global _storage
    if _storage is None:
        _storage = FileStorage()
    return _storage
