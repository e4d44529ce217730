"""Core data models for repochat."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from .text import extract_repo_from_url


@dataclass
class Project:
    """A tracked repository in the catalog."""

    id: str
    name: str
    description: str = ""
    url: str = ""  # e.g. "https://github.com/acme/widget"
    repo: str = ""  # e.g. "acme/widget"
    tags: list[str] = field(default_factory=list)

    @property
    def repo_identifier(self) -> Optional[str]:
        """Canonical "owner/name", or None if it cannot be derived."""
        for value in (self.url, self.repo):
            found = extract_repo_from_url(value)
            if found:
                return found
        if "/" in self.repo.strip():
            return self.repo.strip()
        if "/" in self.name.strip():
            return self.name.strip()
        return None

    @classmethod
    def from_dict(cls, data: dict) -> "Project":
        name = str(data.get("name") or "")
        tags = data.get("tags") or []
        return cls(
            id=str(data.get("id") or name or data.get("repo") or ""),
            name=name,
            description=str(data.get("description") or ""),
            url=str(data.get("url") or ""),
            repo=str(data.get("repo") or ""),
            tags=[str(t) for t in tags if t],
        )


@dataclass
class Citation:
    """A source reference attached to an assistant answer."""

    index: int  # 1-based, unique within one answer
    repo: str = ""
    path: Optional[str] = None
    url: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> Optional["Citation"]:
        try:
            index = int(data.get("index"))
        except (TypeError, ValueError):
            return None
        return cls(
            index=index,
            repo=str(data.get("repo") or ""),
            path=data.get("path") or None,
            url=data.get("url") or None,
        )

    def to_dict(self) -> dict:
        data = {"index": self.index, "repo": self.repo}
        if self.path:
            data["path"] = self.path
        if self.url:
            data["url"] = self.url
        return data


@dataclass
class ChatSession:
    """A visitor's conversation."""

    id: str
    visitor_id: str
    created_at: Optional[datetime] = None
    last_message_at: Optional[datetime] = None
    last_message_summary: str = ""
    active_repo: Optional[str] = None


@dataclass
class Message:
    """A single persisted message within a chat session."""

    id: str
    session_id: str
    role: str  # "user" | "assistant"
    content: str
    citations: list[Citation] = field(default_factory=list)
    created_at: Optional[datetime] = None


@dataclass
class ResolutionCandidate:
    """A scored match between a question and one catalog project."""

    repo: str
    score: int
    explicit: bool


@dataclass
class Resolution:
    """The repository a question was resolved to."""

    repo: str
    explicit: bool


def parse_citations(raw) -> list[Citation]:
    """Build citations from provider JSON, keeping the first of each index."""
    if not isinstance(raw, list):
        return []
    citations = []
    seen = set()
    for item in raw:
        if not isinstance(item, dict):
            continue
        citation = Citation.from_dict(item)
        if citation is None or citation.index in seen:
            continue
        seen.add(citation.index)
        citations.append(citation)
    return citations
