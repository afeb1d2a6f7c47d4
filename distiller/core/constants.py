"""
Shared constants for KnowledgeDistiller.
Single source of truth — imported by every other module.
"""

import pathlib

# ── Application identity ──────────────────────────────────────────────
APP_NAME = "KnowledgeDistiller"
APP_DISPLAY_NAME = "Knowledge Distiller"
APP_VERSION = "1.0.0"

# ── Filesystem paths ─────────────────────────────────────────────────
HOME = pathlib.Path.home()

APP_SUPPORT_DIR = HOME / ".local" / "share" / APP_NAME
APP_LOG_DIR = HOME / ".local" / "state" / APP_NAME / "logs"
DB_PATH = APP_SUPPORT_DIR / "jobs.db"
CONFIG_PATH = APP_SUPPORT_DIR / "config.json"
DEFAULT_UPLOAD_ROOT = APP_SUPPORT_DIR / "uploads"

# ── Keychain identifiers ─────────────────────────────────────────────
KEYCHAIN_SERVICE_PREFIX = "KnowledgeDistiller"
KEYCHAIN_ACCOUNT = "default"


# ── Source kinds ──────────────────────────────────────────────────────
class SourceKind:
    URL = "url"
    YOUTUBE = "youtube"
    FILE = "file"


# ── Job status values ─────────────────────────────────────────────────
class JobStatus:
    QUEUED = "queued"
    INITIALIZING = "initializing"
    EXTRACTING = "extracting"
    SUMMARIZING = "summarizing"
    COMPLETED = "completed"
    ERROR = "error"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({
    JobStatus.COMPLETED,
    JobStatus.ERROR,
    JobStatus.CANCELLED,
})

ACTIVE_STATUSES = frozenset({
    JobStatus.INITIALIZING,
    JobStatus.EXTRACTING,
    JobStatus.SUMMARIZING,
})


# ── Log levels for job-visible logs ──────────────────────────────────
class LogLevel:
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


# ── Error kinds ───────────────────────────────────────────────────────
class ErrorKind:
    # Pipeline
    UNSUPPORTED_SOURCE = "UnsupportedSource"
    EXTRACTION_FAILED = "ExtractionFailed"
    CANCELLED = "Cancelled"
    UNKNOWN = "Unknown"

    # Provider taxonomy
    AUTH_ERROR = "AuthError"
    RATE_LIMITED = "RateLimited"
    BAD_REQUEST = "BadRequest"
    PROVIDER_UNAVAILABLE = "ProviderUnavailable"


RETRYABLE_ERRORS = frozenset({
    ErrorKind.RATE_LIMITED,
    ErrorKind.PROVIDER_UNAVAILABLE,
})

# ── Retry policy (summarizing stage only) ────────────────────────────
RATE_LIMIT_MAX_ATTEMPTS = 5
UNAVAILABLE_MAX_ATTEMPTS = 3
RETRY_BASE_DELAY_SEC = 2.0     # doubles each attempt
RETRY_MAX_DELAY_SEC = 60.0
RETRY_JITTER = 0.1             # +/- 10%
RETRY_AFTER_MAX_SEC = 300.0

# ── Scheduler ─────────────────────────────────────────────────────────
DEFAULT_CONCURRENT_JOBS = 1
MAX_CONCURRENT_JOBS = 10
DEFAULT_MAX_PENDING_JOBS = 500
MAX_PENDING_JOBS_LIMIT = 10000


# ── Provider configuration ───────────────────────────────────────────
class ProviderMode:
    OFFLINE = "offline"
    ONLINE = "online"


class Provider:
    OLLAMA = "ollama"
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GOOGLE = "google"
    MICROSOFT = "microsoft"
    GROK = "grok"
    DEEPSEEK = "deepseek"


ONLINE_PROVIDERS = (
    Provider.OPENAI,
    Provider.ANTHROPIC,
    Provider.GOOGLE,
    Provider.MICROSOFT,
    Provider.GROK,
    Provider.DEEPSEEK,
)

DEFAULT_REQUEST_TIMEOUT_SEC = 60
MIN_REQUEST_TIMEOUT_SEC = 5
MAX_REQUEST_TIMEOUT_SEC = 600
VALIDATION_TIMEOUT_SEC = 10
CONNECTION_TEST_TIMEOUT_SEC = 30

DEFAULT_OLLAMA_ENDPOINT = "http://localhost:11434"
DEFAULT_MAX_OUTPUT_TOKENS = 1000
DEFAULT_TEMPERATURE = 0.7

# Display name, default endpoint/model, models offered, input budget (chars)
# and API key format for each backend.
PROVIDER_INFO = {
    Provider.OLLAMA: {
        "name": "Ollama (local)",
        "endpoint": DEFAULT_OLLAMA_ENDPOINT,
        "default_model": "llama3",
        "models": [],
        "max_input_chars": 30000,
        "key_prefix": "",
        "key_min_length": 0,
    },
    Provider.OPENAI: {
        "name": "OpenAI",
        "endpoint": "https://api.openai.com/v1",
        "default_model": "gpt-4o-mini",
        "models": ["gpt-3.5-turbo", "gpt-3.5-turbo-16k", "gpt-4",
                   "gpt-4-turbo", "gpt-4o", "gpt-4o-mini"],
        "max_input_chars": 100000,
        "key_prefix": "sk-",
        "key_min_length": 50,
    },
    Provider.ANTHROPIC: {
        "name": "Anthropic Claude",
        "endpoint": "https://api.anthropic.com/v1",
        "default_model": "claude-3-5-sonnet-20241022",
        "models": ["claude-3-haiku-20240307", "claude-3-sonnet-20240229",
                   "claude-3-opus-20240229", "claude-3-5-sonnet-20241022"],
        "max_input_chars": 150000,
        "key_prefix": "sk-ant-",
        "key_min_length": 90,
    },
    Provider.GOOGLE: {
        "name": "Google Gemini",
        "endpoint": "https://generativelanguage.googleapis.com/v1beta",
        "default_model": "gemini-2.5-flash",
        "models": ["gemini-2.5-flash"],
        "max_input_chars": 800000,
        "key_prefix": "",
        "key_min_length": 30,
    },
    Provider.MICROSOFT: {
        "name": "Microsoft Copilot",
        "endpoint": None,   # Azure resource URL must be supplied
        "default_model": "gpt-4",
        "models": ["gpt-4", "gpt-4-turbo", "gpt-3.5-turbo", "gpt-3.5-turbo-16k"],
        "max_input_chars": 100000,
        "key_prefix": "",
        "key_min_length": 20,
    },
    Provider.GROK: {
        "name": "Grok",
        "endpoint": "https://api.x.ai/v1",
        "default_model": "grok-1.5",
        "models": ["grok-1", "grok-1.5"],
        "max_input_chars": 100000,
        "key_prefix": "xai-",
        "key_min_length": 40,
    },
    Provider.DEEPSEEK: {
        "name": "Deepseek",
        "endpoint": "https://api.deepseek.com/v1",
        "default_model": "deepseek-chat",
        "models": ["deepseek-chat", "deepseek-reasoner"],
        "max_input_chars": 60000,
        "key_prefix": "sk-",
        "key_min_length": 40,
    },
}

AZURE_API_VERSION = "2024-02-15-preview"
ANTHROPIC_API_VERSION = "2023-06-01"

# ── Extraction ────────────────────────────────────────────────────────
EXTRACT_TIMEOUT_SEC = 30
MAX_DOWNLOAD_BYTES = 10 * 1024 * 1024
USER_AGENT = f"{APP_NAME}/{APP_VERSION}"

YOUTUBE_URL_PATTERNS = [
    r'(?:https?://)?(?:www\.)?youtube\.com/watch\?v=([a-zA-Z0-9_-]{11})',
    r'(?:https?://)?youtu\.be/([a-zA-Z0-9_-]{11})',
    r'(?:https?://)?(?:www\.)?youtube\.com/embed/([a-zA-Z0-9_-]{11})',
    r'(?:https?://)?(?:www\.)?youtube\.com/shorts/([a-zA-Z0-9_-]{11})',
    r'(?:https?://)?m\.youtube\.com/watch\?v=([a-zA-Z0-9_-]{11})',
]

TEXT_FILE_SUFFIXES = {".txt", ".md", ".markdown", ".rst", ".csv", ".json", ".log"}
HTML_FILE_SUFFIXES = {".html", ".htm"}
CAPTION_FILE_SUFFIXES = {".vtt", ".srt"}

# Characters forbidden in uploaded file names
UNSAFE_FILENAME_CHARS = r'[<>:"/\\|?*\x00-\x1f]'
MAX_FILENAME_LEN = 200
