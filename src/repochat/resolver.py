"""Map a free-text question to a tracked repository.

Matching is purely lexical. Each project gets at most one candidate, taken
from the highest-priority rule that applies:

- 3: the "owner/name" identifier appears verbatim in the question (explicit)
- 2: the display name appears, ignoring punctuation and spacing
- 1: the name segment of the identifier appears, ignoring punctuation
- 0: a token of 4+ characters is shared with the name or identifier

A GitHub URL naming a cataloged repository wins outright. If two different
repositories share the top score the question is ambiguous and nothing is
returned, so callers keep whatever repository was active before.
"""

import logging
from typing import Iterable, Optional

from .core import Citation, Project, Resolution, ResolutionCandidate
from .text import extract_repo_from_url, has_project_intent, normalize_loose, tokenize

logger = logging.getLogger(__name__)

MIN_SHARED_TOKEN_LEN = 4
SHORT_TOKEN_LEN = 5


def resolve(
    question: str,
    catalog: Iterable[Project],
    active_repo: Optional[str] = None,
) -> Optional[Resolution]:
    """Pick the repository a question is about, or None if unclear.

    active_repo is not consulted when scoring. Callers fall back to it when
    this returns None.
    """
    projects = [(p, p.repo_identifier) for p in catalog]
    projects = [(p, repo_id) for p, repo_id in projects if repo_id]

    url_repo = extract_repo_from_url(question)
    if url_repo:
        for _, repo_id in projects:
            if repo_id.lower() == url_repo.lower():
                return Resolution(repo=repo_id, explicit=True)
        logger.debug("URL repo %s is not in the catalog", url_repo)

    question_lower = (question or "").lower()
    question_loose = normalize_loose(question)
    question_tokens = tokenize(question)
    question_token_set = set(question_tokens)
    intent = has_project_intent(question)

    candidates: list[ResolutionCandidate] = []
    for project, repo_id in projects:
        candidate = _score_project(
            project, repo_id, question_lower, question_loose,
            question_tokens, question_token_set, intent,
        )
        if candidate:
            candidates.append(candidate)

    if not candidates:
        return None

    best: dict[str, ResolutionCandidate] = {}
    for candidate in sorted(candidates, key=lambda c: c.score, reverse=True):
        best.setdefault(candidate.repo.lower(), candidate)

    top_score = max(c.score for c in best.values())
    leaders = [c for c in best.values() if c.score == top_score]
    if len(leaders) > 1:
        logger.debug(
            "Ambiguous question, %d repos tie at score %d: %s",
            len(leaders), top_score, [c.repo for c in leaders],
        )
        return None

    winner = leaders[0]
    return Resolution(repo=winner.repo, explicit=winner.explicit)


def is_explicit_match(phrase: list[str], question_tokens: list[str], intent: bool) -> bool:
    """Check that the phrase shows up in the question as whole tokens.

    Some contiguous run of the phrase (at least two tokens for multi-word
    phrases) must appear contiguously in the question. Short single words
    also need the question to be asking about a project.
    """
    if not phrase or not question_tokens:
        return False
    if len(phrase) == 1 and len(phrase[0]) < SHORT_TOKEN_LEN and not intent:
        return False

    min_run = 2 if len(phrase) >= 2 else 1
    for size in range(min_run, len(phrase) + 1):
        for start in range(len(phrase) - size + 1):
            if _contains_run(question_tokens, phrase[start:start + size]):
                return True
    return False


def infer_active_repo(citations: Iterable[Citation]) -> Optional[str]:
    """Majority vote over citation repos; ties go to the first one seen."""
    counts: dict[str, int] = {}
    for citation in citations:
        repo = (citation.repo or "").strip()
        if repo:
            counts[repo] = counts.get(repo, 0) + 1
    if not counts:
        return None
    # dicts keep insertion order, and max() returns the first maximal item
    return max(counts, key=lambda repo: counts[repo])


def should_reset_history(resolution: Optional[Resolution], active_repo: Optional[str]) -> bool:
    """An explicit switch to a different repository starts a fresh context."""
    if resolution is None or not resolution.explicit:
        return False
    if not active_repo:
        return False
    return resolution.repo.lower() != active_repo.lower()


def _score_project(
    project: Project,
    repo_id: str,
    question_lower: str,
    question_loose: str,
    question_tokens: list[str],
    question_token_set: set[str],
    intent: bool,
) -> Optional[ResolutionCandidate]:
    if repo_id.lower() in question_lower:
        return ResolutionCandidate(repo=repo_id, score=3, explicit=True)

    name_loose = normalize_loose(project.name)
    if name_loose and name_loose in question_loose:
        explicit = is_explicit_match(tokenize(project.name), question_tokens, intent)
        return ResolutionCandidate(repo=repo_id, score=2, explicit=explicit)

    segment = repo_id.split("/", 1)[-1]
    segment_loose = normalize_loose(segment)
    if segment_loose and segment_loose in question_loose:
        explicit = is_explicit_match(tokenize(segment), question_tokens, intent)
        return ResolutionCandidate(repo=repo_id, score=1, explicit=explicit)

    project_tokens = set(tokenize(project.name)) | set(tokenize(repo_id))
    shared = {
        t for t in project_tokens & question_token_set
        if len(t) >= MIN_SHARED_TOKEN_LEN
    }
    if shared:
        return ResolutionCandidate(repo=repo_id, score=0, explicit=False)

    return None


def _contains_run(tokens: list[str], run: list[str]) -> bool:
    size = len(run)
    return any(tokens[i:i + size] == run for i in range(len(tokens) - size + 1))
