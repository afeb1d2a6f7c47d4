"""
Web page extraction: download a page and reduce its HTML to readable text.
"""

import logging
import re
from html.parser import HTMLParser

import requests

from distiller.core.constants import (
    ErrorKind, SourceKind, MAX_DOWNLOAD_BYTES, USER_AGENT,
)
from distiller.core.error_codes import JobError
from distiller.core.extractors import Extractor

logger = logging.getLogger(__name__)

_SKIP_TAGS = {'script', 'style', 'noscript', 'template', 'svg', 'nav',
              'footer', 'header', 'aside', 'form', 'iframe'}
_BLOCK_TAGS = {'p', 'div', 'section', 'article', 'main', 'br', 'li', 'ul', 'ol',
               'h1', 'h2', 'h3', 'h4', 'h5', 'h6', 'tr', 'table', 'blockquote',
               'pre', 'hr', 'dd', 'dt', 'figcaption'}
_VOID_TAGS = {'br', 'hr', 'img', 'meta', 'link', 'input'}


class _TextCollector(HTMLParser):
    """Collects visible text, one block element per line."""

    def __init__(self):
        super().__init__(convert_charrefs=True)
        self.parts: list[str] = []
        self.title = ""
        self._skip_depth = 0
        self._in_title = False

    def handle_starttag(self, tag, attrs):
        if tag in _SKIP_TAGS:
            self._skip_depth += 1
        elif tag == 'title':
            self._in_title = True
        if tag in _BLOCK_TAGS:
            self.parts.append('\n')

    def handle_startendtag(self, tag, attrs):
        if tag in _BLOCK_TAGS:
            self.parts.append('\n')

    def handle_endtag(self, tag):
        if tag in _SKIP_TAGS and self._skip_depth:
            self._skip_depth -= 1
        elif tag == 'title':
            self._in_title = False
        if tag in _BLOCK_TAGS and tag not in _VOID_TAGS:
            self.parts.append('\n')

    def handle_data(self, data):
        if self._in_title:
            self.title += data
            return
        if not self._skip_depth:
            self.parts.append(data)


def html_to_text(html: str) -> tuple[str, str]:
    """Return (title, text) for an HTML document."""
    parser = _TextCollector()
    parser.feed(html)
    parser.close()

    lines = []
    for line in ''.join(parser.parts).splitlines():
        line = re.sub(r'[ \t\xa0]+', ' ', line).strip()
        if line:
            lines.append(line)
    return parser.title.strip(), '\n\n'.join(lines)


class WebPageExtractor(Extractor):
    source_kind = SourceKind.URL

    def describe(self, source_ref: str) -> str:
        return "Fetching web page"

    def extract(self, source_ref: str) -> str:
        html, content_type = self._download(source_ref)
        if 'html' not in content_type and content_type:
            if content_type.startswith('text/'):
                return html.strip()
            raise JobError(ErrorKind.EXTRACTION_FAILED,
                           f"Unsupported content type {content_type!r} at {source_ref}")

        title, text = html_to_text(html)
        logger.info("Extracted %d characters from %s", len(text), source_ref)
        if title and text:
            return f"{title}\n\n{text}"
        return text

    def _download(self, url: str) -> tuple[str, str]:
        try:
            resp = requests.get(url, headers={'User-Agent': USER_AGENT},
                                timeout=self.timeout_sec, stream=True)
        except requests.exceptions.Timeout:
            raise JobError(ErrorKind.EXTRACTION_FAILED, f"Timed out fetching {url}")
        except requests.exceptions.RequestException as e:
            raise JobError(ErrorKind.EXTRACTION_FAILED, f"Could not fetch {url}: {e}")

        with resp:
            if resp.status_code != 200:
                raise JobError(ErrorKind.EXTRACTION_FAILED,
                               f"Fetching {url} returned HTTP {resp.status_code}")

            chunks = []
            size = 0
            try:
                for chunk in resp.iter_content(chunk_size=64 * 1024):
                    size += len(chunk)
                    if size > MAX_DOWNLOAD_BYTES:
                        raise JobError(ErrorKind.EXTRACTION_FAILED,
                                       f"Page at {url} exceeds {MAX_DOWNLOAD_BYTES} bytes")
                    chunks.append(chunk)
            except requests.exceptions.RequestException as e:
                raise JobError(ErrorKind.EXTRACTION_FAILED, f"Download of {url} failed: {e}")

            header = resp.headers.get('Content-Type', '')
            encoding = (resp.encoding if 'charset' in header.lower() else None) or 'utf-8'
            content_type = header.split(';')[0].strip().lower()

        body = b''.join(chunks)
        try:
            return body.decode(encoding, errors='replace'), content_type
        except LookupError:
            logger.warning("Unknown charset %r for %s; decoding as utf-8", encoding, url)
            return body.decode('utf-8', errors='replace'), content_type
