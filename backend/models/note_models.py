"""
Data models for study-guide notes and their knowledge graphs.
"""
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional


PEARL_TYPES = ("gap-filler", "fact-check", "exam-tip", "red-flag")


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class ClinicalPearl:
    """High-yield fact surfaced while building the graph."""
    type: str
    content: str
    citation: Optional[str] = None
    source_url: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClinicalPearl":
        pearl_type = data.get("type", "gap-filler")
        if pearl_type not in PEARL_TYPES:
            pearl_type = "gap-filler"
        return cls(
            type=pearl_type,
            content=str(data.get("content", "")),
            citation=data.get("citation"),
            source_url=data.get("source_url") or data.get("sourceUrl"),
        )


@dataclass
class KnowledgeNode:
    id: str
    label: str
    group: int = 1
    val: int = 10
    description: Optional[str] = None
    details: Optional[str] = None
    synonyms: List[str] = field(default_factory=list)
    clinical_pearl: Optional[str] = None
    differentials: List[Dict[str, str]] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "KnowledgeNode":
        return cls(
            id=str(data["id"]),
            label=str(data.get("label") or data["id"]),
            group=int(data.get("group", 1) or 1),
            val=int(data.get("val", 10) or 10),
            description=data.get("description"),
            details=data.get("details"),
            synonyms=list(data.get("synonyms") or []),
            clinical_pearl=data.get("clinical_pearl") or data.get("clinicalPearl"),
            differentials=list(data.get("differentials") or []),
        )


@dataclass
class KnowledgeLink:
    source: str
    target: str
    relationship: str = "relates to"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "KnowledgeLink":
        return cls(
            source=str(data["source"]),
            target=str(data["target"]),
            relationship=data.get("relationship") or data.get("label") or "relates to",
        )


@dataclass
class GraphData:
    nodes: List[KnowledgeNode] = field(default_factory=list)
    links: List[KnowledgeLink] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "GraphData":
        data = data or {}
        return cls(
            nodes=[KnowledgeNode.from_dict(n) for n in data.get("nodes", [])],
            links=[KnowledgeLink.from_dict(l) for l in data.get("links", [])],
        )


@dataclass
class Source:
    """Web source cited by a guide."""
    title: str
    uri: str


@dataclass
class SourceFile:
    """An uploaded original handed to the generator."""
    name: str
    mime_type: str
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def is_text(self) -> bool:
        return self.mime_type.startswith("text/") or self.mime_type in (
            "application/json",
            "application/xml",
            "application/x-yaml",
        )

    @property
    def is_image(self) -> bool:
        return self.mime_type.startswith("image/")


@dataclass
class Note:
    """A generated study guide with its knowledge graph."""
    id: str
    title: str
    markdown_content: str = ""
    summary: str = ""
    eli5_analogy: str = ""
    pearls: List[ClinicalPearl] = field(default_factory=list)
    graph_data: GraphData = field(default_factory=GraphData)
    sources: List[Source] = field(default_factory=list)
    source_file_names: List[str] = field(default_factory=list)
    source_file_ids: List[str] = field(default_factory=list)
    created_at: int = field(default_factory=now_ms)
    updated_at: int = field(default_factory=now_ms)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Note":
        return cls(
            id=data["id"],
            title=data.get("title", ""),
            markdown_content=data.get("markdown_content", ""),
            summary=data.get("summary", ""),
            eli5_analogy=data.get("eli5_analogy", ""),
            pearls=[ClinicalPearl.from_dict(p) for p in data.get("pearls", [])],
            graph_data=GraphData.from_dict(data.get("graph_data")),
            sources=[Source(title=s.get("title", ""), uri=s.get("uri", "")) for s in data.get("sources", [])],
            source_file_names=list(data.get("source_file_names", [])),
            source_file_ids=list(data.get("source_file_ids", [])),
            created_at=int(data.get("created_at") or now_ms()),
            updated_at=int(data.get("updated_at") or now_ms()),
        )
