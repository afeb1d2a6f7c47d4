"""
Extractor contract and source-kind dispatch.

An extractor turns a source reference (URL, video link, uploaded file
name) into raw text. It raises JobError(ExtractionFailed) on failure and
keeps no state between calls.
"""

import logging
from abc import ABC, abstractmethod
from pathlib import Path

from distiller.core.constants import (
    ErrorKind, SourceKind, EXTRACT_TIMEOUT_SEC, DEFAULT_UPLOAD_ROOT,
)
from distiller.core.error_codes import JobError

logger = logging.getLogger(__name__)


class Extractor(ABC):
    """Converts one kind of source reference into raw text."""

    source_kind: str = ""

    def __init__(self, timeout_sec: float = EXTRACT_TIMEOUT_SEC):
        self.timeout_sec = timeout_sec

    @abstractmethod
    def extract(self, source_ref: str) -> str:
        """Return the extracted text; raise JobError(ExtractionFailed) on failure."""

    def describe(self, source_ref: str) -> str:
        return f"Extracting content from {self.source_kind} source"


def default_extractors(upload_root: Path | None = None,
                       timeout_sec: float = EXTRACT_TIMEOUT_SEC,
                       cookies_path: Path | None = None) -> dict[str, Extractor]:
    from distiller.core.extract_web import WebPageExtractor
    from distiller.core.extract_youtube import YouTubeExtractor
    from distiller.core.extract_file import UploadedFileExtractor

    return {
        SourceKind.URL: WebPageExtractor(timeout_sec=timeout_sec),
        SourceKind.YOUTUBE: YouTubeExtractor(timeout_sec=timeout_sec,
                                             cookies_path=cookies_path),
        SourceKind.FILE: UploadedFileExtractor(upload_root or DEFAULT_UPLOAD_ROOT,
                                               timeout_sec=timeout_sec),
    }


def resolve_extractor(extractors: dict[str, Extractor], source_kind: str) -> Extractor:
    extractor = extractors.get(source_kind)
    if extractor is None:
        raise JobError(ErrorKind.UNSUPPORTED_SOURCE,
                       f"No extractor for source kind {source_kind!r}")
    return extractor


def extract(extractors: dict[str, Extractor], source_kind: str, source_ref: str) -> str:
    """Dispatch to the right extractor for `source_kind`."""
    return run_extractor(resolve_extractor(extractors, source_kind), source_ref)


def run_extractor(extractor: Extractor, source_ref: str) -> str:
    """Blank output is ExtractionFailed; unexpected faults become Unknown."""
    try:
        text = extractor.extract(source_ref)
    except JobError:
        raise
    except Exception as e:
        logger.error("Extractor %s crashed on %r: %s",
                     type(extractor).__name__, source_ref, e, exc_info=True)
        raise JobError(ErrorKind.UNKNOWN, f"Unexpected extractor failure: {e}")
    if not text or not text.strip():
        raise JobError(ErrorKind.EXTRACTION_FAILED,
                       f"No text could be extracted from {source_ref}")
    return text
