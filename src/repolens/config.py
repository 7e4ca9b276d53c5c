"""
Configuration - loads settings from environment / .env file.
"""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

# GitHub
GITHUB_API_BASE = os.getenv("GITHUB_API_BASE", "https://api.github.com")
GITHUB_TOKEN = os.getenv("GITHUB_TOKEN", "")

# Generative text (Ollama)
OLLAMA_BASE_URL = os.getenv("OLLAMA_BASE_URL", "http://localhost:11434")
MODEL_NAME = os.getenv("REPOLENS_MODEL", "qwen2.5-coder:7b")

# Storage
DATABASE_PATH = Path(os.getenv("REPOLENS_DB", "./data/repolens.db"))

# Network behaviour
HTTP_TIMEOUT = float(os.getenv("REPOLENS_HTTP_TIMEOUT", "30"))
GENERATE_TIMEOUT = float(os.getenv("REPOLENS_GENERATE_TIMEOUT", "300"))
HTTP_MAX_RETRIES = int(os.getenv("REPOLENS_HTTP_RETRIES", "3"))
RETRY_BASE_DELAY = float(os.getenv("REPOLENS_RETRY_DELAY", "1.0"))  # seconds, doubled per attempt

# Analysis
DESCRIPTION_TTL_HOURS = float(os.getenv("REPOLENS_DESCRIPTION_TTL_HOURS", "48"))
STALE_ANALYSIS_SECONDS = int(os.getenv("REPOLENS_STALE_ANALYSIS_SECONDS", "900"))
ENRICH_CONCURRENCY = int(os.getenv("REPOLENS_ENRICH_CONCURRENCY", "4"))

# Chat
CHAT_HISTORY_LIMIT = int(os.getenv("REPOLENS_CHAT_HISTORY_LIMIT", "100"))
CHAT_CONTEXT_MESSAGES = int(os.getenv("REPOLENS_CHAT_CONTEXT_MESSAGES", "10"))

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Max characters of file content sent to the model
MAX_FILE_CONTENT_CHARS = 6_000
