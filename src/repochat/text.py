"""Text normalisation helpers shared by the resolver."""

import re

_GITHUB_URL_RE = re.compile(
    r"https?://(?:www\.)?github\.com/([A-Za-z0-9_.-]+)/([A-Za-z0-9_.-]+)",
    re.IGNORECASE,
)
_NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")

INTENT_PREFIXES = (
    "what is ",
    "tell me about ",
    "describe ",
    "explain ",
    "summarize ",
    "overview of ",
)
PROJECT_NOUNS = frozenset({
    "project",
    "repo",
    "repository",
    "codebase",
    "app",
    "service",
    "library",
})


def extract_repo_from_url(text: str) -> str | None:
    """Return "owner/name" from the first GitHub URL in text, or None."""
    if not text:
        return None
    for match in _GITHUB_URL_RE.finditer(text):
        owner, name = match.group(1), match.group(2)
        if name.lower().endswith(".git"):
            name = name[:-4]
        name = name.rstrip(".")
        if owner and name:
            return f"{owner}/{name}"
    return None


def normalize_loose(text: str) -> str:
    """Lowercase and drop everything that isn't a letter or digit."""
    return _NON_ALNUM_RE.sub("", (text or "").lower())


def tokenize(text: str) -> list[str]:
    """Lowercase and split on runs of non-alphanumerics."""
    return [t for t in _NON_ALNUM_RE.split((text or "").lower()) if t]


def has_project_intent(question: str) -> bool:
    """True if the question reads like it's asking about a project."""
    lowered = (question or "").strip().lower()
    if lowered.startswith(INTENT_PREFIXES):
        return True
    return any(token in PROJECT_NOUNS for token in tokenize(lowered))
