"""
Application-wide settings and environment configuration
"""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env before any variable below is read
load_dotenv()

# Project paths
SIGNALQ_ROOT = Path(__file__).parent.parent

# Google Cloud / Gemini
GOOGLE_CLOUD_PROJECT = os.getenv("GOOGLE_CLOUD_PROJECT")
GOOGLE_API_KEY = os.getenv("GOOGLE_API_KEY")
GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-2.0-flash-001")
GEMINI_LOCATION = os.getenv("GEMINI_LOCATION", "us-central1")
GEMINI_MAX_TOKENS = int(os.getenv("GEMINI_MAX_TOKENS", "1024"))
GEMINI_TEMPERATURE = float(os.getenv("GEMINI_TEMPERATURE", "0.7"))

# Slack
SLACK_BOT_TOKEN = os.getenv("SLACK_BOT_TOKEN")
SLACK_WORKSPACE_ID = os.getenv("SLACK_WORKSPACE_ID", "default")

# Keyed ephemeral store (buffer windows). Unset means in-process only.
REDIS_URL = os.getenv("REDIS_URL")

# Durable store
DB_FILE = SIGNALQ_ROOT / "data" / "signalq.db"
