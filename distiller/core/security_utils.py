"""
Security utilities for KnowledgeDistiller.
- Upload path confinement and filename sanitization
- Safe subprocess execution (argument arrays only)
- Provider API keys in the macOS Keychain (never in config.json)
"""

import re
import subprocess
import pathlib
import logging

from distiller.core.constants import (
    UNSAFE_FILENAME_CHARS,
    MAX_FILENAME_LEN,
    KEYCHAIN_SERVICE_PREFIX,
    KEYCHAIN_ACCOUNT,
)

logger = logging.getLogger(__name__)


# ── Filename / path safety ────────────────────────────────────────────

def sanitize_filename(name: str) -> str:
    """Reduce an uploaded file name to a single safe path component."""
    if not name:
        return ""
    # Keep only the last component of whatever path we were given
    name = re.split(r'[\\/]', name)[-1]
    safe = re.sub(UNSAFE_FILENAME_CHARS, '_', name)
    safe = safe.replace('..', '')
    safe = re.sub(r'\s+', ' ', safe).strip()
    if len(safe) > MAX_FILENAME_LEN:
        safe = safe[:MAX_FILENAME_LEN].rstrip()
    # No hidden files
    safe = safe.lstrip('.')
    return safe


def safe_upload_path(upload_root: pathlib.Path, name: str) -> pathlib.Path | None:
    """
    Resolve an uploaded file name inside `upload_root`. Returns None when
    the name is empty after sanitizing or would escape the upload root.
    """
    sanitized = sanitize_filename(name)
    if not sanitized:
        return None

    real_root = upload_root.resolve(strict=False)
    candidate = (upload_root / sanitized).resolve(strict=False)
    if not candidate.is_relative_to(real_root):
        logger.warning("Rejected upload path outside root: %r", name)
        return None
    return candidate


def mask_secret(secret: str | None) -> str:
    """Loggable form of an API key."""
    if not secret:
        return "<none>"
    if len(secret) <= 8:
        return "****"
    return f"{secret[:4]}…{secret[-2:]}"


# ── Subprocess safety ─────────────────────────────────────────────────

def _loggable_args(args) -> str:
    # Never log the value following a password flag
    shown = []
    hide_next = False
    for arg in args:
        shown.append("****" if hide_next else str(arg))
        hide_next = arg == "-w" and not hide_next
    return ' '.join(shown)


def run_subprocess(args: list[str], **kwargs) -> subprocess.CompletedProcess:
    """Run a command from an argument list; shell=True is never allowed."""
    if not isinstance(args, (list, tuple)):
        raise TypeError("Subprocess args must be a list/tuple, not a string")
    kwargs.pop('shell', None)
    logger.debug("Running subprocess: %s", _loggable_args(args))
    return subprocess.run(list(args), shell=False, **kwargs)


def run_subprocess_capture(args: list[str], timeout: float = 300,
                           **kwargs) -> subprocess.CompletedProcess:
    """Same as run_subprocess, returning stdout/stderr as text."""
    return run_subprocess(args, capture_output=True, text=True,
                          timeout=timeout, **kwargs)


# ── Keychain (macOS `security` CLI) ───────────────────────────────────
# One generic-password item per provider: service "KnowledgeDistiller:<provider>".

def _keychain(action: str, provider: str, *extra: str) -> subprocess.CompletedProcess:
    return run_subprocess_capture(
        ["security", action,
         "-s", f"{KEYCHAIN_SERVICE_PREFIX}:{provider}",
         "-a", KEYCHAIN_ACCOUNT,
         *extra],
        timeout=10,
    )


def keychain_get_api_key(provider: str) -> str | None:
    """The stored API key for `provider`, or None."""
    try:
        result = _keychain("find-generic-password", provider, "-w")
    except (subprocess.TimeoutExpired, FileNotFoundError):
        return None
    except Exception as e:
        logger.warning("Keychain read for %s failed: %s", provider, type(e).__name__)
        return None
    key = result.stdout.strip() if result.returncode == 0 else ""
    return key or None


def keychain_set_api_key(provider: str, api_key: str) -> bool:
    """Store (or replace, via -U) the API key for `provider`."""
    try:
        result = _keychain("add-generic-password", provider, "-w", api_key, "-U")
    except Exception as e:
        logger.error("Keychain write for %s failed: %s", provider, type(e).__name__)
        return False
    if result.returncode != 0:
        logger.error("Keychain write for %s failed (rc=%d)", provider, result.returncode)
    return result.returncode == 0


def keychain_delete_api_key(provider: str) -> bool:
    try:
        result = _keychain("delete-generic-password", provider)
    except Exception as e:
        logger.warning("Keychain delete for %s failed: %s", provider, type(e).__name__)
        return False
    return result.returncode == 0
