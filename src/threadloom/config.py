"""Central configuration for paths and constants."""

import os
from pathlib import Path

# Data directory, override with THREADLOOM_DATA_DIR env var
DATA_DIR = Path(
    os.environ.get("THREADLOOM_DATA_DIR", str(Path.home() / ".threadloom"))
)

# Database path
SQLITE_PATH = DATA_DIR / "threadloom.db"

# HTTP server
HOST = os.environ.get("THREADLOOM_HOST", "127.0.0.1")
PORT = int(os.environ.get("THREADLOOM_PORT", "3001"))

# Response generation
ANTHROPIC_API_KEY = os.environ.get("ANTHROPIC_API_KEY")
DEFAULT_MODEL = os.environ.get("THREADLOOM_MODEL", "claude-sonnet-4-20250514")
DEFAULT_MAX_TOKENS = int(os.environ.get("THREADLOOM_MAX_TOKENS", "4096"))
MOCK_DELAY = float(os.environ.get("THREADLOOM_MOCK_DELAY", "0.05"))  # seconds per word

# Seconds to wait for a superseded stream to settle before refusing a new one
SUPERSEDE_TIMEOUT = float(os.environ.get("THREADLOOM_SUPERSEDE_TIMEOUT", "5"))

LOG_LEVEL = os.environ.get("THREADLOOM_LOG_LEVEL", "WARNING").upper()
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

# Conversations
DEFAULT_TITLE = "New Conversation"
TITLE_MAX_CHARS = 50
CHARS_PER_TOKEN = 4  # rough estimate when the producer reports no usage

# Roles accepted in the message tree
ROLES = {"user", "assistant"}
