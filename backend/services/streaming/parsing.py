"""
Parsers for model output: knowledge-graph JSON, quiz markup, guide topics
and cited sources.
"""
import json
import logging
import re
import uuid
from typing import Any, Dict, List, Optional

from models.chat_models import (
    DIFFICULTIES,
    FULL_GUIDE_TOPIC_ID,
    QuizOption,
    QuizQuestion,
    QuizTopic,
)
from models.note_models import (
    ClinicalPearl,
    GraphData,
    KnowledgeLink,
    KnowledgeNode,
    Source,
)
from models.stream_models import GraphPayload

logger = logging.getLogger(__name__)

QUIZ_BLOCK_PATTERN = re.compile(r"---QUIZ---(.*?)---END---", re.DOTALL)
QUIZ_TOPIC_PATTERN = re.compile(r"TOPIC:\s*(.+)", re.IGNORECASE)
QUIZ_DIFFICULTY_PATTERN = re.compile(r"DIFFICULTY:\s*(.+)", re.IGNORECASE)
QUIZ_QUESTION_PATTERN = re.compile(r"QUESTION:\s*(.*?)(?=\n\s*[A-D]\))", re.IGNORECASE | re.DOTALL)
QUIZ_OPTION_PATTERN = re.compile(r"^\s*([A-D])\)\s*(.+?)(?=\n\s*[A-D]\)|\Z)", re.MULTILINE | re.DOTALL)

HEADING_PATTERN = re.compile(r"^#{1,3}\s+(.+)$", re.MULTILINE)
SOURCE_LINK_PATTERN = re.compile(r"\[([^\]]+)\]\((https?://[^)\s]+)\)")

FULL_GUIDE_TOPIC_NAME = "Full Guide (All Topics)"


def strip_emphasis(text: str) -> str:
    """Remove markdown emphasis and inline code markers."""
    text = re.sub(r"\*\*(.+?)\*\*", r"\1", text)
    text = re.sub(r"\*(.+?)\*", r"\1", text)
    text = re.sub(r"_(.+?)_", r"\1", text)
    text = re.sub(r"`(.+?)`", r"\1", text)
    return text.strip()


def parse_quiz_from_response(text: str) -> Optional[QuizQuestion]:
    """
    Extract a multiple-choice question from a ``---QUIZ--- ... ---END---`` block.

    Returns None unless the block has a question stem and at least two options.
    """
    match = QUIZ_BLOCK_PATTERN.search(text or "")
    if not match:
        return None

    block = match.group(1)
    question_match = QUIZ_QUESTION_PATTERN.search(block)
    options = [
        QuizOption(label=label.upper(), text=strip_emphasis(option_text))
        for label, option_text in QUIZ_OPTION_PATTERN.findall(block)
    ]
    if not question_match or len(options) < 2:
        return None

    topic_match = QUIZ_TOPIC_PATTERN.search(block)
    difficulty_match = QUIZ_DIFFICULTY_PATTERN.search(block)
    difficulty = difficulty_match.group(1).strip().lower() if difficulty_match else ""
    if difficulty not in DIFFICULTIES:
        difficulty = "intermediate"

    return QuizQuestion(
        id=str(uuid.uuid4()),
        topic=topic_match.group(1).strip() if topic_match else "Clinical Concept",
        question=strip_emphasis(question_match.group(1)),
        options=options,
        difficulty=difficulty,
    )


def extract_topics_from_content(markdown: str) -> List[QuizTopic]:
    """Quiz topics from H1-H3 headings, led by a whole-guide entry."""
    topics: List[QuizTopic] = []
    for heading in HEADING_PATTERN.findall(markdown or ""):
        name = re.sub(r"\[([^\]]+)\]\([^)]+\)", r"\1", heading)
        name = re.sub(r"\[([^\]]+)\]", r"\1", name)
        name = re.sub(r"[*_`]", "", name)
        name = re.sub(r"\(node:[^)]+\)", "", name).strip()

        if 3 < len(name) < 80 and "table of contents" not in name.lower():
            topics.append(QuizTopic(id=f"topic-{len(topics)}", name=name))

    if topics:
        topics.insert(0, QuizTopic(id=FULL_GUIDE_TOPIC_ID, name=FULL_GUIDE_TOPIC_NAME))
    return topics


def extract_sources(markdown: str) -> List[Source]:
    """Unique web links cited in a guide, in order of first appearance."""
    seen = set()
    sources = []
    for title, uri in SOURCE_LINK_PATTERN.findall(markdown or ""):
        if uri in seen:
            continue
        seen.add(uri)
        sources.append(Source(title=title.strip(), uri=uri))
    return sources


def _try_parse(text: str) -> Optional[Dict[str, Any]]:
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


def parse_json_object(text: str) -> Dict[str, Any]:
    """
    Parse the outermost JSON object in a model reply.

    Tolerates code fences, stray backslashes, trailing commas and raw
    newlines inside strings. Returns an empty dict when nothing parses.
    """
    if not text:
        return {}
    text = re.sub(r"^```(?:json)?\s*|\s*```$", "", text.strip())

    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        return {}
    candidate = text[start:end + 1]

    parsed = _try_parse(candidate)
    if parsed is not None:
        return parsed

    sanitized = re.sub(r'\\(?!["\\/bfnrtu])', r"\\\\", candidate)
    parsed = _try_parse(sanitized)
    if parsed is not None:
        return parsed

    sanitized = re.sub(r",\s*([}\]])", r"\1", sanitized)
    parsed = _try_parse(sanitized)
    if parsed is not None:
        return parsed

    sanitized = re.sub(r"\r?\n", r"\\n", sanitized)
    parsed = _try_parse(sanitized)
    if parsed is not None:
        return parsed

    logger.warning("JSON parse failed after all sanitization attempts")
    return {}


def build_graph_payload(data: Dict[str, Any], topic: str) -> GraphPayload:
    """
    Turn the graph-phase JSON into note data.

    Links whose endpoints are not known node ids are dropped. Raises
    ValueError when the reply has no usable nodes.
    """
    raw_nodes = data.get("graphNodes") or data.get("nodes") or []
    nodes: List[KnowledgeNode] = []
    for raw in raw_nodes:
        if not isinstance(raw, dict) or not raw.get("id"):
            continue
        nodes.append(KnowledgeNode.from_dict(raw))
    if not nodes:
        raise ValueError("Knowledge graph reply contained no nodes")

    node_ids = {node.id for node in nodes}
    links = []
    for raw in data.get("graphLinks") or data.get("links") or []:
        if not isinstance(raw, dict):
            continue
        if raw.get("source") in node_ids and raw.get("target") in node_ids:
            links.append(KnowledgeLink.from_dict(raw))

    pearls = [
        ClinicalPearl.from_dict(raw)
        for raw in data.get("pearls") or []
        if isinstance(raw, dict) and raw.get("content")
    ]

    return GraphPayload(
        title=data.get("title") or topic,
        summary=data.get("summary") or "",
        eli5_analogy=data.get("eli5Analogy") or data.get("eli5_analogy") or "",
        pearls=pearls,
        graph_data=GraphData(nodes=nodes, links=links),
    )
