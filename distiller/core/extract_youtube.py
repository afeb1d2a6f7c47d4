"""
YouTube extraction via yt-dlp: video metadata plus English captions,
converted from VTT to plain text.

Creator-provided captions are preferred; auto-generated captions are the
fallback. Each call works in its own temporary directory.
"""

import json
import logging
import re
import tempfile
from pathlib import Path
from urllib.parse import urlparse, parse_qs

from distiller.core.constants import ErrorKind, SourceKind, YOUTUBE_URL_PATTERNS
from distiller.core.error_codes import JobError
from distiller.core.extractors import Extractor
from distiller.core.security_utils import run_subprocess_capture

logger = logging.getLogger(__name__)

# Regex patterns for VTT/SRT cleanup
_TIMESTAMP_RE = re.compile(
    r'^\d{2}:\d{2}(?::\d{2})?[.,]\d{3}\s*-->\s*\d{2}:\d{2}(?::\d{2})?[.,]\d{3}.*$',
    re.MULTILINE,
)
# A cue id is a digit-only line directly above its timing line
_CUE_ID_RE = re.compile(
    r'^\d+[ \t]*\r?\n(?=\d{2}:\d{2}(?::\d{2})?[.,]\d{3}\s*-->)',
    re.MULTILINE,
)
_HEADER_RE = re.compile(r'^(?:WEBVTT|Kind:|Language:|NOTE\s).*$', re.MULTILINE)
_INLINE_TIME_RE = re.compile(r'<\d{2}:\d{2}:\d{2}\.\d{3}>')
_TAG_RE = re.compile(r'<[^>]+>')
_CUE_SETTING_RE = re.compile(r'\b(?:position|align|size|line):\S+', re.IGNORECASE)


# ── URL handling ──────────────────────────────────────────────────────

def extract_video_id(url: str) -> str | None:
    """The 11-character video id of a YouTube URL, or None."""
    url = url.strip()
    if not url:
        return None

    for pattern in YOUTUBE_URL_PATTERNS:
        m = re.search(pattern, url)
        if m:
            return m.group(1)

    # Fallback: 'v' query parameter on any youtube host
    parsed = urlparse(url)
    if 'youtube.com' in parsed.netloc:
        v = parse_qs(parsed.query).get('v', [None])[0]
        if v and re.fullmatch(r'[a-zA-Z0-9_-]{11}', v):
            return v
    return None


def is_youtube_url(url: str) -> bool:
    return extract_video_id(url) is not None


# ── Captions → text ───────────────────────────────────────────────────

def captions_to_text(content: str) -> str:
    """
    Convert WebVTT or SRT caption content to plain text: drops headers,
    timestamps, cue ids, styling; removes the rolling duplicates that
    auto-generated captions repeat from cue to cue.
    """
    content = _HEADER_RE.sub('', content)
    content = _CUE_ID_RE.sub('', content)
    content = _TIMESTAMP_RE.sub('', content)
    content = _INLINE_TIME_RE.sub('', content)
    content = _TAG_RE.sub('', content)
    content = _CUE_SETTING_RE.sub('', content)

    lines = []
    seen_recent: list[str] = []
    for raw in content.splitlines():
        line = re.sub(r'\s+', ' ', raw).strip()
        if not line:
            continue
        if line in seen_recent:
            continue
        lines.append(line)
        seen_recent = (seen_recent + [line])[-3:]

    return ' '.join(lines).strip()


# ── yt-dlp calls ──────────────────────────────────────────────────────

def _cookie_args(cookies_path: Path | None) -> list[str]:
    if cookies_path and cookies_path.exists():
        return ["--cookies", str(cookies_path)]
    return []


def fetch_metadata(video_url: str, timeout_sec: float,
                   cookies_path: Path | None = None) -> dict:
    """Video metadata via `yt-dlp --dump-json`."""
    args = ["yt-dlp", "--dump-json", "--no-playlist", "--skip-download",
            *_cookie_args(cookies_path), video_url]
    try:
        result = run_subprocess_capture(args, timeout=timeout_sec)
    except FileNotFoundError:
        raise JobError(ErrorKind.EXTRACTION_FAILED, "yt-dlp is not installed")
    except Exception as e:
        raise JobError(ErrorKind.EXTRACTION_FAILED, f"yt-dlp metadata fetch failed: {e}")

    if result.returncode != 0:
        stderr = result.stderr or ""
        if "Video unavailable" in stderr or "is not available" in stderr:
            raise JobError(ErrorKind.EXTRACTION_FAILED, f"Video unavailable: {stderr[:200]}")
        if "Sign in" in stderr or "confirm your age" in stderr:
            raise JobError(ErrorKind.EXTRACTION_FAILED,
                           f"Restricted content (login/age required): {stderr[:200]}")
        raise JobError(ErrorKind.EXTRACTION_FAILED,
                       f"yt-dlp failed (rc={result.returncode}): {stderr[:300]}")

    try:
        return json.loads(result.stdout)
    except json.JSONDecodeError as e:
        raise JobError(ErrorKind.EXTRACTION_FAILED, f"Failed to parse yt-dlp JSON: {e}")


def fetch_captions(video_url: str, work_dir: Path, timeout_sec: float,
                   cookies_path: Path | None = None) -> Path | None:
    """Download English captions (creator first, then automatic). None if absent."""
    for subs_flag in ("--write-subs", "--write-auto-subs"):
        args = ["yt-dlp", "--skip-download", subs_flag,
                "--sub-langs", "en.*,en", "--sub-format", "vtt",
                "--no-playlist", "-o", str(work_dir / "%(id)s.%(ext)s"),
                *_cookie_args(cookies_path), video_url]
        try:
            run_subprocess_capture(args, timeout=timeout_sec)
        except Exception as e:
            logger.warning("Captions fetch error (%s): %s", subs_flag, e)
            continue

        vtt_files = sorted(work_dir.glob("*.vtt"))
        if vtt_files:
            logger.info("Using %s captions: %s", subs_flag, vtt_files[0].name)
            return vtt_files[0]
    return None


class YouTubeExtractor(Extractor):
    source_kind = SourceKind.YOUTUBE

    def __init__(self, timeout_sec: float, cookies_path: Path | None = None):
        super().__init__(timeout_sec)
        self.cookies_path = cookies_path

    def describe(self, source_ref: str) -> str:
        return "Fetching video captions"

    def extract(self, source_ref: str) -> str:
        video_id = extract_video_id(source_ref)
        if not video_id:
            raise JobError(ErrorKind.EXTRACTION_FAILED,
                           f"Not a valid YouTube URL: {source_ref}")

        metadata = fetch_metadata(source_ref, self.timeout_sec, self.cookies_path)
        title = metadata.get('title') or f"video_{video_id}"

        with tempfile.TemporaryDirectory(prefix=f"yt_{video_id}_") as tmp:
            vtt_path = fetch_captions(source_ref, Path(tmp), self.timeout_sec,
                                      self.cookies_path)
            if vtt_path is None:
                raise JobError(ErrorKind.EXTRACTION_FAILED,
                               f"No English captions available for {video_id}")
            transcript = captions_to_text(
                vtt_path.read_text(encoding='utf-8', errors='replace'))

        if not transcript:
            raise JobError(ErrorKind.EXTRACTION_FAILED,
                           f"Captions for {video_id} contained no text")

        header = [f"Title: {title}"]
        if metadata.get('uploader'):
            header.append(f"Channel: {metadata['uploader']}")
        return "\n".join(header) + "\n\nTranscript:\n" + transcript
