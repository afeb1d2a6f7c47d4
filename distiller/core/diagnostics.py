"""
Diagnostics: tool version detection and provider checks.
"""

import logging
from datetime import datetime, timezone
from pathlib import Path

from distiller.core.constants import APP_VERSION, ONLINE_PROVIDERS
from distiller.core.provider_registry import ProviderRegistry
from distiller.core.security_utils import run_subprocess_capture, keychain_get_api_key

logger = logging.getLogger(__name__)


def get_ytdlp_version() -> str:
    """Return yt-dlp version string, or error message."""
    try:
        result = run_subprocess_capture(["yt-dlp", "--version"], timeout=10)
        if result.returncode == 0:
            return result.stdout.strip()
        return f"Error (rc={result.returncode})"
    except FileNotFoundError:
        return "Not installed"
    except Exception as e:
        return f"Error: {e}"


def check_cookies_file(cookies_path: Path | None) -> dict:
    """Check if a cookies.txt for yt-dlp is configured and present."""
    info = {"detected": False, "path": str(cookies_path) if cookies_path else None,
            "last_modified": None}
    if cookies_path and cookies_path.exists():
        info["detected"] = True
        info["last_modified"] = datetime.fromtimestamp(
            cookies_path.stat().st_mtime, tz=timezone.utc
        ).isoformat()
    return info


def stored_api_keys() -> dict[str, bool]:
    """Which online providers have a key in the Keychain."""
    return {provider: keychain_get_api_key(provider) is not None
            for provider in ONLINE_PROVIDERS}


def get_diagnostics(registry: ProviderRegistry | None = None,
                    cookies_path: Path | None = None,
                    test_provider: bool = False) -> dict:
    """Gather all diagnostic information."""
    info = {
        "app_version": APP_VERSION,
        "ytdlp_version": get_ytdlp_version(),
        "cookies": check_cookies_file(cookies_path),
        "api_keys": stored_api_keys(),
        "provider": None,
    }
    if registry is not None and registry.is_configured:
        config = registry.snapshot().config
        info["provider"] = {"mode": config.mode, "provider": config.provider,
                            "model": config.model}
        if test_provider:
            info["provider"]["connection"] = registry.test_connection()
    return info
