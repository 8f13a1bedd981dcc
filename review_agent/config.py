"""Configuration for the batched pull-request reviewer."""

from __future__ import annotations

# ── Bedrock Config ───────────────────────────────────────────────────────────
BEDROCK_PROFILE = "bedrock"
BEDROCK_REGION = "eu-west-1"
BEDROCK_MODEL_ID = "eu.anthropic.claude-sonnet-4-6"
BEDROCK_MAX_TOKENS = 8192

# ── Model Context Limits ─────────────────────────────────────────────────────
# Input capacity (tokens) per model. A conversation must estimate strictly
# below this number to be sent.
MODEL_TOKEN_LIMITS: dict[str, int] = {
    "eu.anthropic.claude-sonnet-4-6": 200_000,
    "anthropic.claude-sonnet-4-6": 200_000,
    "eu.anthropic.claude-opus-4-6-v1": 200_000,
    "anthropic.claude-opus-4-6-v1": 200_000,
    "llama-3.3-70b-versatile": 128_000,
    "gemma-7b-it": 32_768,
    "llama3-70b-8192": 8_192,
}

DEFAULT_MODEL = BEDROCK_MODEL_ID

# ── Token Estimation ─────────────────────────────────────────────────────────
# Code tokenizes denser than prose; 3 chars/token over-counts for almost all
# source text. The margin covers the tail where it doesn't.
CHARS_PER_TOKEN = 3.0
TOKEN_SAFETY_MARGIN = 0.05
# Role markers and separators the service wraps around each message
MESSAGE_OVERHEAD_TOKENS = 4
CONVERSATION_OVERHEAD_TOKENS = 3

# ── File Filtering ───────────────────────────────────────────────────────────
IGNORED_EXTENSIONS = frozenset(
    {
        "pdf",
        "png",
        "jpg",
        "jpeg",
        "gif",
        "mp4",
        "mp3",
        "md",
        "json",
        "env",
        "toml",
        "svg",
    }
)

IGNORED_FILENAMES = frozenset(
    {
        "package-lock.json",
        "yarn.lock",
        ".gitignore",
        "package.json",
        "tsconfig.json",
        "poetry.lock",
        "readme.md",
    }
)

# ── Fallback Parser Heuristics ───────────────────────────────────────────────
# Tuned against one service's phrasing; treat as defaults, not contracts.
FALLBACK_FILENAME_WINDOW = 500
FALLBACK_COMMENT_WINDOW = 300
FALLBACK_MIN_COMMENT_LENGTH = 20
FALLBACK_DEFAULT_LANGUAGE = "js"
FALLBACK_CATEGORY = "improvement"

LANGUAGE_EXTENSIONS = {
    "js": "js",
    "javascript": "js",
    "ts": "ts",
    "typescript": "ts",
    "py": "py",
    "python": "py",
    "java": "java",
    "c": "c",
    "cpp": "cpp",
    "cs": "cs",
    "go": "go",
    "rust": "rs",
    "php": "php",
    "ruby": "rb",
    "html": "html",
    "css": "css",
}

# ── Issue Links ──────────────────────────────────────────────────────────────
ISSUE_HOST = "https://github.com"
ISSUE_TITLE_MAX_CHARS = 200
ISSUE_BODY_MAX_CHARS = 5000
ISSUE_CODE_MAX_CHARS = 10_000
ISSUE_URL_MAX_CHARS = 2048
ISSUE_PLACEHOLDER_LINK = f"[Create Issue]({ISSUE_HOST})"
REPO_NAME_PATTERN = r"^[A-Za-z0-9_.-]+$"

# ── Inline Fixes ─────────────────────────────────────────────────────────────
MAX_INDENT_CHARS = 100

# ── Server Config ────────────────────────────────────────────────────────────
SERVER_NAME = "review-agent-mcp"
SERVER_VERSION = "0.3.0"
SERVER_HOST = "127.0.0.1"
SERVER_PORT = 8088

# ── Usage Logging ────────────────────────────────────────────────────────────
USAGE_LOG_PATH = "usage.log"
