"""
Learner profile used to tailor prompts.
"""
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List

from models.note_models import now_ms


@dataclass
class UserProfile:
    name: str = ""
    discipline: str = ""
    level: str = ""
    teaching_style: str = ""
    custom_teaching_style: str = ""
    exam_goal: str = ""
    custom_exam_goal: str = ""
    specialties: List[str] = field(default_factory=list)
    learning_goals: str = ""
    created_at: int = field(default_factory=now_ms)
    updated_at: int = field(default_factory=now_ms)

    @property
    def display_name(self) -> str:
        return self.name or "there"

    @property
    def effective_exam_goal(self) -> str:
        if self.exam_goal == "Other" and self.custom_exam_goal:
            return self.custom_exam_goal
        return self.exam_goal or "General Knowledge"

    @property
    def effective_teaching_style(self) -> str:
        if self.teaching_style == "Other" and self.custom_teaching_style:
            return self.custom_teaching_style
        return self.teaching_style or "Socratic"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UserProfile":
        known = {f for f in cls.__dataclass_fields__}
        return cls(**{k: v for k, v in data.items() if k in known})
