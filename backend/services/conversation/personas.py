"""
System-instruction builders for each conversation mode.
"""
import json
from typing import Dict, List, Optional

from models.chat_models import FULL_GUIDE_TOPIC_ID, ConversationMode
from models.note_models import KnowledgeNode
from models.profile_models import UserProfile

SIMULATION_COMPLETE_MARKER = "SIMULATION COMPLETE"

EXAM_STRATEGIES: Dict[str, Dict[str, str]] = {
    "USMLE Step 1": {
        "style": "Two-step vignette: clinical presentation to pathophysiology mechanism",
        "focus": "Mechanism of disease, biochemistry pathways, pharmacology MOA, histology correlates",
        "tips": "Focus on the WHY: connect symptoms to the underlying biochemistry or pathology",
    },
    "USMLE Step 2 CK": {
        "style": "Clinical vignette with next-best-step management",
        "focus": "Diagnosis, management algorithms, treatment priorities, patient safety",
        "tips": "Ask what would harm the patient if missed, and what the most likely diagnosis is",
    },
    "NCLEX-RN": {
        "style": "Priority, delegation and safety focused questions",
        "focus": "Patient safety, nursing priorities, delegation rules, assessment first",
        "tips": "ABCs, Maslow's hierarchy and the nursing process. Safety always comes first",
    },
    "MCAT": {
        "style": "Passage-based critical reasoning with science application",
        "focus": "Scientific reasoning, data interpretation, concept application",
        "tips": "The answer is in the passage or directly testable",
    },
    "University Semester Exam": {
        "style": "Mix of conceptual understanding and factual recall",
        "focus": "Core concepts, classifications, definitions, clinical correlations",
        "tips": "Lecture notes often reveal where the emphasis lies",
    },
    "default": {
        "style": "Balanced clinical and conceptual assessment",
        "focus": "Core knowledge, clinical application, critical thinking",
        "tips": "Focus on understanding over memorization",
    },
}


def exam_strategy(profile: UserProfile) -> Dict[str, str]:
    return EXAM_STRATEGIES.get(profile.effective_exam_goal, EXAM_STRATEGIES["default"])


def build_profile_context(profile: Optional[UserProfile]) -> str:
    """Short learner description shared by every prompt."""
    if profile is None:
        return "LEARNER: not specified. Write for a clinical student."
    parts = [
        f"Name: {profile.name or 'Learner'}",
        f"Discipline: {profile.discipline or 'Healthcare'}",
        f"Level: {profile.level or 'Student'}",
        f"Exam goal: {profile.effective_exam_goal}",
        f"Teaching style: {profile.effective_teaching_style}",
    ]
    if profile.specialties:
        parts.append(f"Specialties: {', '.join(profile.specialties)}")
    if profile.learning_goals:
        parts.append(f"Learning goals: {profile.learning_goals}")
    return "LEARNER PROFILE:\n" + "\n".join(f"- {part}" for part in parts)


def _mode_instruction(mode: ConversationMode, profile: UserProfile, topic_scope: Optional[str]) -> str:
    strategy = exam_strategy(profile)
    name = profile.display_name

    if mode == ConversationMode.QUIZ:
        if topic_scope and topic_scope != FULL_GUIDE_TOPIC_ID:
            scope = f'FOCUS AREA: generate questions specifically about "{topic_scope}".'
        else:
            scope = "SCOPE: questions can cover any topic from the guide."
        return f"""QUIZ MODE ({profile.effective_exam_goal} style active recall)

{scope}

Exam strategy:
- Style: {strategy['style']}
- Key focus: {strategy['focus']}
- Test pattern: {strategy['tips']}

Generate ONE multiple-choice question at a time, formatted EXACTLY like this:
---QUIZ---
TOPIC: [Brief topic name]
DIFFICULTY: [foundational/intermediate/advanced]
QUESTION: [Question stem]
A) [Option]
B) [Option]
C) [Option]
D) [Option]
---END---

Do not reveal the answer until {name} submits one. Distractors must represent real
clinical pitfalls."""

    if mode == ConversationMode.EXPLAIN:
        return f"""EXPLAIN MODE (deep conceptual breakdown)

Break the concept into layers: one-line definition, mechanism, clinical relevance,
common misconception. Use analogies from {profile.discipline or 'clinical practice'}.
Check understanding with one question at the end."""

    if mode == ConversationMode.COMPARE:
        return """COMPARE MODE (discriminating similar concepts)

Compare the concepts side by side in a markdown table covering presentation,
mechanism, diagnostics and management. Finish with the single feature that best
tells them apart on an exam."""

    if mode == ConversationMode.CLINICAL:
        return """CLINICAL SIMULATION MODE

Stay in character as the simulation engine. Reveal findings only when the learner
asks for them or performs the matching action."""

    return f"""TUTOR MODE (adaptive Socratic guidance)

Guide discovery through questions instead of dumping information. Gauge what
{name} already knows before teaching, use the "{profile.effective_teaching_style}"
teaching style, connect new ideas to the guide and end with a follow-up question."""


def build_system_instruction(
    profile: Optional[UserProfile],
    mode: ConversationMode,
    content_context: str,
    graph_nodes: List[KnowledgeNode],
    topic_scope: Optional[str] = None,
    context_limit: int = 22000,
) -> str:
    """System instruction for a standard (non-simulation) chat turn."""
    profile = profile or UserProfile()
    concepts = ", ".join(node.label for node in graph_nodes[:60]) or "none"
    return f"""You are an expert clinical tutor working from the learner's study guide.

{build_profile_context(profile)}

{_mode_instruction(mode, profile, topic_scope)}

KNOWLEDGE GRAPH CONCEPTS: {concepts}

STUDY GUIDE:
{content_context[:context_limit]}"""


def build_clinical_simulation_persona(profile: Optional[UserProfile], note_title: str, content: str = "") -> str:
    """Persona for a high-fidelity clinical case built from the guide."""
    profile = profile or UserProfile()
    level = (profile.level or "").lower()
    pre_clinical = any(word in level for word in ("year 1", "year 2", "pre-clinical", "preclinical"))
    advanced = any(word in level for word in ("resident", "fellow", "attending", "consultant", "practicing"))

    if pre_clinical:
        difficulty = "DIFFICULTY: foundational. Offer hints after two unproductive actions and keep vitals stable unless the learner errs badly."
        begin = f'Execute a short pre-brief first: welcome {profile.name or "the learner"}, outline learning objectives for "{note_title}", and wait for confirmation before starting.'
    elif advanced:
        difficulty = "DIFFICULTY: advanced. No hints, atypical presentations allowed, the patient deteriorates in real time when care is delayed."
        begin = f'Create an engaging case from "{note_title}". Set the scene immediately. Do not reveal the diagnosis. Await the first action.'
    else:
        difficulty = "DIFFICULTY: intermediate. Classic presentation with one complicating factor; hint only when asked."
        begin = f'Create an engaging case from "{note_title}". Set the scene immediately. Do not reveal the diagnosis. Await the first action.'

    learner = json.dumps(
        {
            "name": profile.name,
            "discipline": profile.discipline or "Healthcare Professional",
            "level": profile.level or "Student",
            "examGoal": profile.exam_goal or "Clinical Competency",
            "specialties": profile.specialties,
        },
        indent=2,
    )

    return f"""YOU ARE A HIGH-FIDELITY CLINICAL SIMULATION ENGINE.

LEARNER PROFILE:
{learner}

Case topic: "{note_title}"

{difficulty}

IMMERSION RULES:
- Speak as the patient, nurse or attending as appropriate. Never break character except for safety.
- Report vitals, labs and imaging only when ordered.
- Scope the case to what a {profile.discipline or 'healthcare professional'} would do.

SAFETY: if the learner orders something dangerous, let the consequence unfold realistically and flag it in the debrief.

CASE ENDING: when the patient is stabilized, transferred or the learner asks to finish, end with
"✅ **{SIMULATION_COMPLETE_MARKER}**" on its own line.

CASE MATERIAL:
{content[:12000]}

BEGIN NOW
{begin}"""


def build_clinical_evaluation_persona(profile: Optional[UserProfile]) -> str:
    """Instruction that turns the finished case into a scored debrief."""
    profile = profile or UserProfile()
    exam_section = ""
    if profile.exam_goal and profile.exam_goal not in ("General Knowledge", "Clinical Competency"):
        exam_section = f"""
## {profile.effective_exam_goal} RELEVANCE
- Buzzword: [key term that signals this diagnosis on exams]
- Classic stem: [how this typically appears in questions]
- Next step trap: [common wrong answer to avoid]
"""

    return f"""{SIMULATION_COMPLETE_MARKER}: GENERATE EVALUATION

LEARNER: {profile.name or 'Learner'} ({profile.discipline or 'Healthcare'}, {profile.level or 'Student'})

RULES:
1. Do not recap the case; the learner just played it.
2. Every sentence must add value.
3. Grade on competencies relevant to the learner's discipline.

FORMAT:
## SCORE: [X]/10
**Verdict:** [one sentence]

## DIAGNOSIS REVEAL
**Answer:** [diagnosis] with one line of supporting evidence

## WHAT YOU DID WELL
- [2-3 specific actions]

## CRITICAL GAPS
- [2-4 missed or wrong actions, and what should have been done]

## ROLE-SPECIFIC SCORECARD
| Competency | Score | Note |
|------------|-------|------|
{exam_section}
## ONE ACTION ITEM
**Tonight:** [single specific thing to study]"""
