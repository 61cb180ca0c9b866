#!/usr/bin/env python3
"""
Configuration for Gemini CLI
"""

import os
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables
PROJECT_DIR = Path(__file__).parent.parent
load_dotenv(PROJECT_DIR / ".env")


def load_env_file(path: str | None) -> bool:
    """Load an extra .env file. Values already in the environment win."""
    if not path:
        return False
    return load_dotenv(Path(path).expanduser(), override=False)


def get_setting(name: str, default: str = "") -> str:
    """Read a setting at call time so --env files loaded late still apply."""
    return os.getenv(name, default).strip()


# Gemini URL
GEMINI_URL = "https://gemini.google.com"

# StreamGenerate endpoint (the web app's own chat RPC)
STREAM_GENERATE_URL = (
    f"{GEMINI_URL}/_/BardChatUi/data/assistant.lamda.BardFrontendService/StreamGenerate"
)

# Backend build labels. The reply layout changed between these deployments,
# so each label is paired with one schema variant in envelope.py.
BUILD_LABELS = {
    "legacy": "boq_assistant-bard-web-server_20230507.20_p2",
    "current": "boq_assistant-bard-web-server_20240717.08_p5",
}

DEFAULT_SCHEMA = "current"

# Cookie names for authentication
PSID_COOKIE = "__Secure-1PSID"
PSIDTS_COOKIE = "__Secure-1PSIDTS"

# Anti-forgery token embedded in the landing page HTML
SNLM0E_PATTERN = r'SNlM0e":"(.*?)"'

# Present in the body when Google serves a bot challenge instead of the app
BLOCKED_MARKER = "CAPTCHA"

# _reqid handling: random start, sparse increments
REQID_RANGE = (100000, 999999)
REQID_STEP = 100000

# Match a real Chrome browser to avoid fingerprint-based blocking.
USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/126.0.0.0 Safari/537.36"
)

DEFAULT_TIMEOUT = int(os.getenv("DEFAULT_TIMEOUT", "60"))

# Interactive commands
EXIT_COMMAND = "!exit"
RESET_COMMAND = "!reset"
SHOW_COMMAND = "!show"
