"""
config.py — Loads settings.yaml and environment variables.
Provides typed access to all configuration.
"""

import os
from pathlib import Path

import yaml
from dotenv import load_dotenv

# Load .env file
load_dotenv()

# Project root directory
PROJECT_ROOT = Path(__file__).parent

# Load settings.yaml
SETTINGS_PATH = Path(os.getenv("DETECTOR_SETTINGS", PROJECT_ROOT / "settings.yaml"))
with open(SETTINGS_PATH, "r") as f:
    _settings = yaml.safe_load(f)


# --- Search Terms ---
SEARCH_TERMS = [t.strip() for t in _settings["search_terms"] if t and t.strip()]

# --- Scraper ---
SCRAPER = _settings["scraper"]
PLATFORM = SCRAPER.get("platform", "LinkedIn")
MAX_ITEMS_PER_TERM = int(SCRAPER.get("max_items_per_term", 500))

# --- Analysis ---
ANALYSIS = _settings["analysis"]
ANTHROPIC_MODEL = os.getenv("ANTHROPIC_MODEL", ANALYSIS["model"])

# --- Rate Limiting ---
RATE_LIMITS = _settings["rate_limiting"]

# --- Schedule ---
SCHEDULE = _settings["schedule"]
REFRESH_DAYS = int(SCHEDULE.get("refresh_days", 7))

# --- Deduplication ---
DEDUPLICATION = _settings["deduplication"]

# --- Storage ---
STORAGE = _settings["storage"]

# --- API Keys & Secrets (from .env) ---
ANTHROPIC_API_KEY = os.getenv("ANTHROPIC_API_KEY", "")
APIFY_TOKEN = os.getenv("APIFY_TOKEN", "")

# --- Database ---
DB_PATH = Path(os.getenv("DETECTOR_DB_PATH", PROJECT_ROOT / "data" / "detector.db"))

# --- Logging ---
LOG_DIR = Path(os.getenv("DETECTOR_LOG_DIR", PROJECT_ROOT / "logs"))
LOG_FILE = LOG_DIR / "tool_detector.log"


def validate_config():
    """Check that critical configuration is present."""
    warnings = []

    if not ANTHROPIC_API_KEY:
        warnings.append("ANTHROPIC_API_KEY is not set — analysis will fail for every posting")
    if not APIFY_TOKEN:
        warnings.append("APIFY_TOKEN is not set — LinkedIn scraper will fail for every term")
    if not SEARCH_TERMS:
        warnings.append("No search terms configured in settings.yaml")
    if RATE_LIMITS.get("min_delay_seconds", 0) <= 0:
        warnings.append("rate_limiting.min_delay_seconds is not positive — calls will not be spaced")

    return warnings
