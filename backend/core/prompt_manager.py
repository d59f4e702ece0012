"""
Centralized prompt file management with fallback templates.
"""
import logging
from pathlib import Path
from typing import Dict, Optional

from core.config import PROMPTS_DIR

logger = logging.getLogger(__name__)

REQUIRED_PROMPTS = (
    "graph_extraction",
    "guide_writing",
    "guide_continuation",
    "quiz_feedback",
    "idk_explanation",
)


class PromptManager:
    """Manages prompt file loading with consistent fallback behavior."""

    def __init__(self, prompts_dir: Optional[Path] = None):
        self.prompts_dir = prompts_dir or PROMPTS_DIR
        self.loaded_prompts: Dict[str, str] = {}

        self.fallback_templates = {
            "graph_extraction": self._get_graph_extraction_fallback(),
            "guide_writing": self._get_guide_writing_fallback(),
            "guide_continuation": self._get_guide_continuation_fallback(),
            "quiz_feedback": self._get_quiz_feedback_fallback(),
            "idk_explanation": self._get_idk_explanation_fallback(),
        }

    def get_prompt(self, prompt_name: str) -> str:
        """
        Load prompt by name with fallback.

        Args:
            prompt_name: Name of prompt file (without .txt extension)

        Returns:
            Prompt template string
        """
        if prompt_name in self.loaded_prompts:
            return self.loaded_prompts[prompt_name]

        prompt_file = self.prompts_dir / f"{prompt_name}.txt"

        if prompt_file.exists():
            try:
                template = prompt_file.read_text(encoding="utf-8")
                if not template.strip():
                    raise ValueError(f"Prompt file is empty: {prompt_file}")

                self.loaded_prompts[prompt_name] = template
                return template

            except (OSError, ValueError) as e:
                logger.warning(f"Failed to load prompt file {prompt_file}: {e}")

        if prompt_name in self.fallback_templates:
            logger.info(f"Using fallback template for: {prompt_name}")
            template = self.fallback_templates[prompt_name]
            self.loaded_prompts[prompt_name] = template
            return template

        raise FileNotFoundError(
            f"Prompt file not found and no fallback available: {prompt_name}.txt. "
            f"Expected at: {prompt_file}"
        )

    def render(self, prompt_name: str, **values: str) -> str:
        """Load a template and fill its ``{placeholders}``."""
        return self.get_prompt(prompt_name).format(**values)

    def _get_graph_extraction_fallback(self) -> str:
        return """You are a clinical knowledge engineer.

Build a knowledge graph of "{topic}" from the attached source material.
{profile_context}

Respond with ONE JSON object:
{{
  "title": "Guide title",
  "summary": "Two sentence summary",
  "eli5Analogy": "Simple analogy",
  "pearls": [{{"type": "exam-tip", "content": "..."}}],
  "graphNodes": [{{"id": "kebab-case-id", "label": "Concept", "group": 1, "val": 10, "description": "..."}}],
  "graphLinks": [{{"source": "node-id", "target": "node-id", "relationship": "causes"}}]
}}"""

    def _get_guide_writing_fallback(self) -> str:
        return """You are an expert clinical educator writing a study guide on "{topic}".
{profile_context}

Key concepts to cover:
{concept_outline}

Write a complete markdown study guide with numbered H2 sections. Put graph
concept names in [square brackets] and cite web sources as markdown links.

SOURCE MATERIAL:
{source_text}"""

    def _get_guide_continuation_fallback(self) -> str:
        return """Continue the study guide on "{topic}" exactly where it stopped.
The last section was: {last_section}

The guide so far ends with:
{tail}

Do not repeat earlier content. Finish the current section and any remaining sections."""

    def _get_quiz_feedback_fallback(self) -> str:
        return """You are an expert clinical educator preparing a student for {exam_goal}.

Evaluate the selected answer. Respond with JSON containing "verdict"
("CORRECT" or "INCORRECT"), "analysis", "optionAnalysis" (A-D, each starting
with CORRECT: or INCORRECT:), "corePrinciple", "examStrategy",
"correctAnswer" and "correctAnswerExplanation"."""

    def _get_idk_explanation_fallback(self) -> str:
        return """{student_name} does not know the answer to a {exam_goal} practice question.

Do not reveal the answer. Give a short hint, then ask one guiding question."""
