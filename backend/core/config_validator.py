"""
Configuration validation for the Synapse backend.
Checks prompt files, the Ollama service and its models, the database and
threshold settings on startup.
"""
from typing import Any, Dict, List, Optional

import requests

from core import config
from core.database import Database
from core.prompt_manager import REQUIRED_PROMPTS


class ConfigurationError(Exception):
    """Raised when configuration is invalid."""
    pass


class ConfigValidator:
    """Validates system configuration before serving requests."""

    def __init__(self, database: Optional[Database] = None, check_ollama: bool = True):
        self.database = database
        self.check_ollama = check_ollama
        self.errors: List[str] = []
        self.warnings: List[str] = []

    def validate_all(self) -> Dict[str, Any]:
        """
        Run all validation checks.

        Returns:
            {
                "valid": bool,
                "errors": List[str],
                "warnings": List[str]
            }
        """
        self.errors = []
        self.warnings = []

        self._validate_prompt_files()
        if self.check_ollama:
            available = self._validate_ollama_connection()
            if available is not None:
                self._validate_ollama_models(available)
        self._validate_database()
        self._validate_config_values()

        return {
            "valid": len(self.errors) == 0,
            "errors": self.errors,
            "warnings": self.warnings,
        }

    def raise_if_invalid(self):
        result = self.validate_all()
        if not result["valid"]:
            raise ConfigurationError("; ".join(result["errors"]))

    def _validate_prompt_files(self):
        """Prompts fall back to built-in templates, so a missing file is only a warning."""
        prompts_dir = config.PROMPTS_DIR
        if not prompts_dir.exists():
            self.warnings.append(
                f"Prompts directory not found: {prompts_dir}. Built-in templates will be used."
            )
            return

        for name in REQUIRED_PROMPTS:
            path = prompts_dir / f"{name}.txt"
            if not path.exists():
                self.warnings.append(f"Prompt file missing: {path.name}. Built-in template will be used.")
            elif path.stat().st_size == 0:
                self.warnings.append(f"Prompt file is empty: {path.name}")

    def _validate_ollama_connection(self) -> Optional[List[str]]:
        """Check that Ollama is reachable; returns the pulled model names."""
        try:
            response = requests.get(f"{config.OLLAMA_BASE_URL}/api/tags", timeout=5)
            response.raise_for_status()
        except requests.exceptions.ConnectionError:
            self.errors.append(
                f"Cannot connect to Ollama at {config.OLLAMA_BASE_URL}. "
                "Ensure Ollama is running: `ollama serve`"
            )
            return None
        except requests.exceptions.Timeout:
            self.errors.append(f"Ollama connection timeout at {config.OLLAMA_BASE_URL}.")
            return None
        except requests.exceptions.RequestException as e:
            self.errors.append(f"Ollama connection error: {e}")
            return None

        return [model.get("name", "") for model in response.json().get("models", [])]

    def _validate_ollama_models(self, available: List[str]):
        required_models = {
            "Study guide generation": config.GENERATION_MODEL,
            "Tutor chat": config.CHAT_MODEL,
        }
        for purpose, model_id in required_models.items():
            if model_id not in available:
                self.errors.append(
                    f"Required model not found: {purpose} ({model_id}). "
                    f"Pull it with: `ollama pull {model_id}`"
                )

    def _validate_database(self):
        if self.database is None:
            if not config.DB_PATH.exists():
                self.warnings.append(f"Database file not found at {config.DB_PATH}. Will be created on first run.")
            return

        try:
            for table in self.database.missing_tables():
                self.errors.append(f"Required database table missing: {table}. Run schema initialization.")
        except Exception as e:
            self.errors.append(f"Database connection error: {e}")

    def _validate_config_values(self):
        if config.WRITING_STAGE_CHARS >= config.CITING_STAGE_CHARS:
            self.errors.append(
                f"WRITING_STAGE_CHARS ({config.WRITING_STAGE_CHARS}) must be < "
                f"CITING_STAGE_CHARS ({config.CITING_STAGE_CHARS})"
            )
        if config.CITING_STAGE_CHARS >= config.MAX_GUIDE_CHARS:
            self.errors.append(
                f"CITING_STAGE_CHARS ({config.CITING_STAGE_CHARS}) must be < "
                f"MAX_GUIDE_CHARS ({config.MAX_GUIDE_CHARS})"
            )
        if config.MIN_GUIDE_CHARS <= 0:
            self.errors.append(f"MIN_GUIDE_CHARS ({config.MIN_GUIDE_CHARS}) must be positive")
        if config.RETRY_COUNTDOWN_SECONDS <= 0:
            self.errors.append(f"RETRY_COUNTDOWN_SECONDS ({config.RETRY_COUNTDOWN_SECONDS}) must be positive")

        temperatures = {
            "GRAPH_TEMPERATURE": config.GRAPH_TEMPERATURE,
            "GUIDE_TEMPERATURE": config.GUIDE_TEMPERATURE,
            "CHAT_TEMPERATURE": config.CHAT_TEMPERATURE,
            "QUIZ_TEMPERATURE": config.QUIZ_TEMPERATURE,
            "FEEDBACK_TEMPERATURE": config.FEEDBACK_TEMPERATURE,
        }
        for name, value in temperatures.items():
            if not (0.0 <= value <= 1.0):
                self.warnings.append(f"{name} ({value}) outside normal range [0.0, 1.0]")
