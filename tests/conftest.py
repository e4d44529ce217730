"""Shared test fixtures for repochat."""

import json

import pytest

from repochat.core import Project
from repochat.frames import Frame, encode_frame
from repochat.provider import AnswerProvider
from repochat.store import ChatStore


class ScriptedProvider(AnswerProvider):
    """Answer provider that replays canned chunks.

    If `error` is set it is raised after the chunks have been yielded.
    """

    name = "scripted"

    def __init__(self, chunks=(), error=None):
        self.chunks = list(chunks)
        self.error = error
        self.requests = []
        self.closed = False

    async def stream(self, request, cancel):
        self.requests.append(request)
        try:
            for chunk in self.chunks:
                if cancel.cancelled:
                    return
                yield chunk.encode("utf-8") if isinstance(chunk, str) else chunk
            if self.error is not None:
                raise self.error
        finally:
            self.closed = True


def sse(event: str, data) -> str:
    return encode_frame(Frame(event, data))


@pytest.fixture
def sample_projects():
    return [
        Project(
            id="widget",
            name="Widget",
            description="A small widget toolkit",
            url="https://github.com/acme/widget",
            tags=["ui"],
        ),
        Project(
            id="auth",
            name="auth-service",
            description="Login and token service",
            repo="acme/auth-service",
            tags=["backend"],
        ),
        Project(
            id="pipeline",
            name="Data Pipeline Kit",
            description="ETL building blocks",
            url="https://github.com/dataco/pipeline-kit",
        ),
    ]


@pytest.fixture
def store(tmp_path, sample_projects):
    """A fresh SQLite store holding the sample catalog."""
    s = ChatStore(tmp_path / "repochat.db")
    s.replace_projects(sample_projects)
    return s


@pytest.fixture
def answer_chunks():
    """A well-formed provider stream for one answer."""
    return [
        sse("meta", {
            "citations": [
                {"index": 1, "repo": "acme/widget", "path": "README.md"},
                {"index": 2, "repo": "acme/widget", "path": "src/widget.py"},
                {"index": 3, "repo": "dataco/pipeline-kit", "url": "https://github.com/dataco/pipeline-kit"},
            ],
        }),
        sse("delta", {"delta": "Widget is "}),
        sse("delta", {"delta": "a UI toolkit [1]."}),
        sse("done", {}),
    ]


@pytest.fixture
def scripted_provider():
    """Factory for ScriptedProvider instances."""
    return ScriptedProvider


@pytest.fixture
def catalog_file(tmp_path):
    path = tmp_path / "projects.json"
    projects = [
        {"name": "Widget", "description": "UI toolkit", "url": "https://github.com/acme/widget", "tags": ["ui"]},
        {"name": "acme/gadget", "description": "Gadgets"},
        {"name": "No Repo", "description": "Missing identifier"},
    ]
    path.write_text(json.dumps(projects), encoding="utf-8")
    return path
