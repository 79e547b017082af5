"""
Configuration
=============
Loads environment variables from .env file using python-dotenv.

Environment Variables:
    GEMINI_API_KEY            — Primary advisory LLM provider API key (Google Gemini)
    GROQ_API_KEY              — Fallback advisory provider API key (Groq)
    OPENROUTER_API_KEY        — Second fallback provider (OpenRouter free models)
    ENABLE_AI_ADVISORY        — Wire the LLM advisor into validation (default: false)
    ADVISORY_TIMEOUT_SECONDS  — Upper bound for one advisory call (default: 10)
    DEFAULT_MIN_CONFIDENCE    — Confidence floor used by HealingPolicy (default: 0.7)
    HISTORY_FILE              — Persist healing history as JSON at this path (default: in-memory)
    HISTORY_MAX_QUERIES       — Max query hashes kept in history, FIFO eviction (default: 1000)
    HISTORY_MAX_ENTRIES       — Max entries kept per query hash (default: 50)
    LOG_DIR / LOG_LEVEL       — Logging destination and verbosity

Advisory Timeout Philosophy:
    The advisory call is the only network hop in a healing run. It is
    always optional: on timeout the Validator keeps its rule-based verdict
    and records a warning, so a slow provider can never stall healing.
"""
import os
from dotenv import load_dotenv

load_dotenv()

GEMINI_API_KEY = os.getenv("GEMINI_API_KEY")
GROQ_API_KEY = os.getenv("GROQ_API_KEY")
OPENROUTER_API_KEY = os.getenv("OPENROUTER_API_KEY")

ENABLE_AI_ADVISORY = os.getenv("ENABLE_AI_ADVISORY", "false").lower() == "true"
ADVISORY_TIMEOUT_SECONDS = float(os.getenv("ADVISORY_TIMEOUT_SECONDS", 10))

# Fix gating
DEFAULT_MIN_CONFIDENCE = float(os.getenv("DEFAULT_MIN_CONFIDENCE", 0.7))

# History persistence and caps
HISTORY_FILE = os.getenv("HISTORY_FILE", "")
HISTORY_MAX_QUERIES = int(os.getenv("HISTORY_MAX_QUERIES", 1000))
HISTORY_MAX_ENTRIES = int(os.getenv("HISTORY_MAX_ENTRIES", 50))

# Provider health cooldown
PROVIDER_COOLDOWN_THRESHOLD = int(os.getenv("PROVIDER_COOLDOWN_THRESHOLD", 4))
PROVIDER_COOLDOWN_SKIP_COUNT = int(os.getenv("PROVIDER_COOLDOWN_SKIP_COUNT", 5))

# Logging
LOG_DIR = os.getenv("LOG_DIR", "logs")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
