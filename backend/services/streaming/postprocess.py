"""
Markdown clean-up applied to generated guides.
"""
import logging
import re
from typing import Dict, List, Optional

from models.note_models import KnowledgeNode

logger = logging.getLogger(__name__)

NUMBERED_SECTION_SPLIT = re.compile(r"(?=^#{1,2}\s+\d+\.)", re.MULTILINE)
NUMBERED_SECTION_HEADER = re.compile(r"^(#{1,2}\s+\d+\.\s*[^\n]+)")
HEADING_LINE = re.compile(r"^#{1,6}\s+.+$", re.MULTILINE)


def _normalize_term(text: str) -> str:
    return text.lower().replace("-", " ").strip()


def remove_redundant_sections(markdown: str) -> str:
    """
    Drop content the model emitted twice.

    A repeat of the first H1 (more than ten lines later) cuts everything from
    the repeat on; a numbered section heading seen twice keeps only its first
    occurrence.
    """
    if not markdown:
        return ""

    lines = markdown.split("\n")
    first_h1 = next((i for i, line in enumerate(lines) if re.match(r"^#\s+[^#]", line)), None)
    if first_h1 is not None:
        for idx in range(first_h1 + 11, len(lines)):
            if lines[idx] == lines[first_h1]:
                logger.warning("Detected duplicated guide content, removing second occurrence")
                lines = lines[:idx]
                break
    cleaned = "\n".join(lines)

    unique: Dict[str, str] = {}
    for section in NUMBERED_SECTION_SPLIT.split(cleaned):
        header_match = NUMBERED_SECTION_HEADER.match(section)
        if header_match:
            header = re.sub(r"\s+", " ", header_match.group(1).lower()).strip()
            if header in unique:
                logger.warning(f"Removed duplicate section: {header}")
                continue
            unique[header] = section
        elif section.strip():
            unique[f"_intro_{len(unique)}"] = section

    return "".join(unique.values()).strip()


def linkify_clinical_terms(text: str, nodes: List[KnowledgeNode]) -> str:
    """
    Rewrite mentions of graph concepts as ``[term](node:<id>)`` links.

    Node labels and ids of three or more characters are matched
    case-insensitively, with hyphens and spaces interchangeable. Existing
    links are left alone, bracketed ``[term]`` markers become links or lose
    their brackets, and headings only get their bracketed markers resolved.
    """
    if not text:
        return ""
    if not nodes:
        return text

    node_map: Dict[str, KnowledgeNode] = {}
    terms: List[str] = []
    for node in nodes:
        if not node.label or len(node.label) < 3:
            continue
        label_key = _normalize_term(node.label)
        if label_key not in node_map:
            node_map[label_key] = node
            terms.append(re.escape(node.label))
        if node.id and len(node.id) >= 3:
            id_key = _normalize_term(node.id)
            if id_key not in node_map:
                node_map[id_key] = node
                id_pattern = re.escape(node.id).replace(r"\-", "-").replace("-", r"[-\s]")
                if id_pattern not in terms:
                    terms.append(id_pattern)

    if not terms:
        return text

    terms.sort(key=len, reverse=True)
    link_or_bracket = r"(\[.+?\]\(.+?\))|(\[([^\]]+)\])"
    heading_regex = re.compile(link_or_bracket, re.IGNORECASE)
    body_regex = re.compile(link_or_bracket + r"|\b(" + "|".join(terms) + r")\b", re.IGNORECASE)

    def replace(match: re.Match) -> str:
        existing_link = match.group(1)
        if existing_link:
            return existing_link
        bracketed_inner = match.group(3)
        term = match.group(4) if match.re is body_regex else None
        actual = bracketed_inner or term or ""
        if not actual:
            return match.group(0)

        node = node_map.get(_normalize_term(actual))
        if node:
            return f"[{actual}](node:{node.id})"
        if bracketed_inner:
            return actual
        return match.group(0)

    processed = []
    for line in text.split("\n"):
        regex = heading_regex if line.strip().startswith("#") else body_regex
        processed.append(regex.sub(replace, line))
    return "\n".join(processed)


def find_last_section(markdown: str) -> Optional[str]:
    headings = HEADING_LINE.findall(markdown or "")
    if not headings:
        return None
    return re.sub(r"^#{1,6}\s+", "", headings[-1]).strip()


def detect_truncation(markdown: str) -> bool:
    """Whether a guide looks cut off mid-output."""
    if not markdown or len(markdown) < 100:
        return False

    trimmed = markdown.strip()
    last_line = trimmed.split("\n")[-1].strip()
    has_open_code_block = trimmed.count("```") % 2 != 0

    if len(trimmed) > 80000:
        # Long guides only count as truncated when clearly incomplete
        mid_sentence = (
            len(last_line) > 10
            and not last_line.endswith((".", "!", "?", ":"))
            and not last_line.startswith("#")
            and "[" not in last_line
            and "|" not in last_line
        )
        return has_open_code_block or mid_sentence

    ends_with_punctuation = bool(re.search(r"[.!?:]\s*$", trimmed))
    open_table_row = bool(re.search(r"\|[^\n]*$", trimmed)) and not trimmed.endswith("|")
    return not ends_with_punctuation or open_table_row or has_open_code_block
