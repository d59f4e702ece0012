"""
Configuration management for the Synapse study engine backend.
Loads configuration from environment variables and .env file.
"""
import os
from pathlib import Path
from dotenv import load_dotenv

# Look for .env file in the project root or the backend directory
BACKEND_DIR = Path(__file__).parent.parent
PROJECT_ROOT = BACKEND_DIR.parent
ENV_FILE = PROJECT_ROOT / ".env"

if ENV_FILE.exists():
    load_dotenv(ENV_FILE)
else:
    backend_env = BACKEND_DIR / ".env"
    if backend_env.exists():
        load_dotenv(backend_env)

# Base paths
BASE_DIR = PROJECT_ROOT
DATA_DIR = Path(os.getenv("DATA_DIR", str(BASE_DIR / "data")))
DB_PATH = Path(os.getenv("DB_PATH", str(DATA_DIR / "synapse.db")))
PROMPTS_DIR = BACKEND_DIR / "prompts"

DATA_DIR.mkdir(parents=True, exist_ok=True)

# Ollama configuration
OLLAMA_BASE_URL = os.getenv("OLLAMA_BASE_URL", "http://localhost:11434")
GENERATION_MODEL = os.getenv("GENERATION_MODEL", "qwen3:14b")
CHAT_MODEL = os.getenv("CHAT_MODEL", GENERATION_MODEL)
OLLAMA_THINK = os.getenv("OLLAMA_THINK", "true").lower() == "true"
OLLAMA_TIMEOUT_SECONDS = float(os.getenv("OLLAMA_TIMEOUT_SECONDS", "600"))

# Sampling
GRAPH_TEMPERATURE = float(os.getenv("GRAPH_TEMPERATURE", "0.3"))
GUIDE_TEMPERATURE = float(os.getenv("GUIDE_TEMPERATURE", "0.3"))
CHAT_TEMPERATURE = float(os.getenv("CHAT_TEMPERATURE", "0.75"))
QUIZ_TEMPERATURE = float(os.getenv("QUIZ_TEMPERATURE", "0.6"))
FEEDBACK_TEMPERATURE = float(os.getenv("FEEDBACK_TEMPERATURE", "0.7"))
GRAPH_MAX_TOKENS = int(os.getenv("GRAPH_MAX_TOKENS", "8192"))
GUIDE_MAX_TOKENS = int(os.getenv("GUIDE_MAX_TOKENS", "32768"))
CHAT_MAX_TOKENS = int(os.getenv("CHAT_MAX_TOKENS", "8192"))

# Guide generation thresholds (characters)
MIN_GUIDE_CHARS = int(os.getenv("MIN_GUIDE_CHARS", "100"))
WRITING_STAGE_CHARS = int(os.getenv("WRITING_STAGE_CHARS", "500"))
CITING_STAGE_CHARS = int(os.getenv("CITING_STAGE_CHARS", "30000"))
MAX_GUIDE_CHARS = int(os.getenv("MAX_GUIDE_CHARS", "100000"))
MAX_CONTINUATIONS = int(os.getenv("MAX_CONTINUATIONS", "2"))

# Recovery
RETRY_COUNTDOWN_SECONDS = int(os.getenv("RETRY_COUNTDOWN_SECONDS", "60"))
LLM_MAX_RETRIES = int(os.getenv("LLM_MAX_RETRIES", "3"))
LLM_RETRY_BASE_DELAY = float(os.getenv("LLM_RETRY_BASE_DELAY", "1.0"))

# Conversation
CHAT_HISTORY_WINDOW = int(os.getenv("CHAT_HISTORY_WINDOW", "10"))
CONTEXT_CHAR_LIMIT = int(os.getenv("CONTEXT_CHAR_LIMIT", "22000"))
NOTICE_DISMISS_SECONDS = float(os.getenv("NOTICE_DISMISS_SECONDS", "3.0"))

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# API configuration
API_V1_PREFIX = "/api/v1"
# CORS origins can be comma-separated list in env var
CORS_ORIGINS_STR = os.getenv("CORS_ORIGINS", "http://localhost:3000,http://localhost:5173")
CORS_ORIGINS = [origin.strip() for origin in CORS_ORIGINS_STR.split(",")]
VALIDATE_CONFIG_ON_STARTUP = os.getenv("VALIDATE_CONFIG_ON_STARTUP", "true").lower() == "true"
