"""
Uploaded document extraction. Files are looked up by name inside the
upload root; only text-based formats are read.
"""

import json
import logging
from pathlib import Path

from distiller.core.constants import (
    ErrorKind, SourceKind, EXTRACT_TIMEOUT_SEC, MAX_DOWNLOAD_BYTES,
    TEXT_FILE_SUFFIXES, HTML_FILE_SUFFIXES, CAPTION_FILE_SUFFIXES,
)
from distiller.core.error_codes import JobError
from distiller.core.extractors import Extractor
from distiller.core.extract_web import html_to_text
from distiller.core.extract_youtube import captions_to_text
from distiller.core.security_utils import safe_upload_path

logger = logging.getLogger(__name__)


class UploadedFileExtractor(Extractor):
    source_kind = SourceKind.FILE

    def __init__(self, upload_root: Path, timeout_sec: float = EXTRACT_TIMEOUT_SEC):
        super().__init__(timeout_sec)
        self.upload_root = Path(upload_root)

    def describe(self, source_ref: str) -> str:
        return "Reading uploaded document"

    def extract(self, source_ref: str) -> str:
        path = safe_upload_path(self.upload_root, source_ref)
        if path is None:
            raise JobError(ErrorKind.EXTRACTION_FAILED, f"Invalid file name: {source_ref!r}")
        if not path.is_file():
            raise JobError(ErrorKind.EXTRACTION_FAILED, f"Uploaded file not found: {path.name}")

        size = path.stat().st_size
        if size > MAX_DOWNLOAD_BYTES:
            raise JobError(ErrorKind.EXTRACTION_FAILED,
                           f"{path.name} is too large ({size} bytes)")

        suffix = path.suffix.lower()
        try:
            content = path.read_text(encoding='utf-8', errors='replace')
        except OSError as e:
            raise JobError(ErrorKind.EXTRACTION_FAILED, f"Could not read {path.name}: {e}")

        if suffix in HTML_FILE_SUFFIXES:
            title, text = html_to_text(content)
            text = f"{title}\n\n{text}" if title and text else text
        elif suffix in CAPTION_FILE_SUFFIXES:
            text = captions_to_text(content)
        elif suffix == '.json':
            text = self._json_to_text(content, path.name)
        elif suffix in TEXT_FILE_SUFFIXES:
            text = content
        else:
            raise JobError(ErrorKind.EXTRACTION_FAILED,
                           f"Unsupported file type {suffix or '(none)'}: {path.name}")

        logger.info("Extracted %d characters from %s", len(text), path.name)
        return text.strip()

    @staticmethod
    def _json_to_text(content: str, name: str) -> str:
        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            raise JobError(ErrorKind.EXTRACTION_FAILED, f"{name} is not valid JSON: {e}")
        return json.dumps(data, indent=2, ensure_ascii=False)
