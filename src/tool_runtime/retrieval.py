# retrieval.py
# The retrieval capability: search over a corpus, return attributed text.
#
# It is an ordinary Capability. What sets it apart is only its
# description, which steers the model toward it for knowledge questions.
# Similarity search itself is behind the Corpus protocol; KeywordCorpus is
# a term-overlap stand-in for demos and tests, not an embedding index.

import re
from typing import Protocol

from pydantic import BaseModel, ConfigDict, Field

from tool_runtime.capabilities import Capability

DEFAULT_DESCRIPTION = (
    "Search the knowledge corpus for passages relevant to a question. "
    "Prefer this over answering from memory for any factual or domain question; "
    "cite the [source-id] of passages you rely on."
)

NO_RESULTS = "No relevant passages found."

_TOKEN = re.compile(r"[a-z0-9]+")


class Snippet(BaseModel):
    source_id: str
    text: str
    score: float = 0.0


class Corpus(Protocol):
    def search(self, query: str, k: int) -> list[Snippet]: ...


class RetrievalArgs(BaseModel):
    model_config = ConfigDict(extra="forbid")

    query: str = Field(..., min_length=1, description="Natural-language search query.")
    k: int = Field(default=4, ge=1, le=20, description="Maximum number of passages.")


def _terms(text: str) -> set[str]:
    return set(_TOKEN.findall(text.lower()))


class KeywordCorpus:
    """In-memory documents ranked by the share of query terms they contain."""

    def __init__(self, documents: dict[str, str] | None = None) -> None:
        self._documents: dict[str, str] = {}
        self._terms: dict[str, set[str]] = {}
        for source_id, text in (documents or {}).items():
            self.add(source_id, text)

    def add(self, source_id: str, text: str) -> None:
        self._documents[source_id] = text
        self._terms[source_id] = _terms(text)

    def search(self, query: str, k: int) -> list[Snippet]:
        wanted = _terms(query)
        if not wanted:
            return []
        scored = []
        for source_id, terms in self._terms.items():
            overlap = len(wanted & terms)
            if overlap:
                scored.append(Snippet(source_id=source_id, text=self._documents[source_id], score=overlap / len(wanted)))
        scored.sort(key=lambda s: (-s.score, s.source_id))
        return scored[:k]

    def __len__(self) -> int:
        return len(self._documents)


def format_snippets(snippets: list[Snippet], max_chars: int = 500) -> str:
    """Render snippets as `[source-id]: excerpt` lines, the shape the model consumes."""
    if not snippets:
        return NO_RESULTS
    lines = []
    for snippet in snippets:
        text = " ".join(snippet.text.split())
        if len(text) > max_chars:
            text = text[:max_chars].rstrip() + "…"
        lines.append(f"[{snippet.source_id}]: {text}")
    return "\n".join(lines)


def retrieval_capability(
    corpus: Corpus,
    name: str = "search_corpus",
    description: str = DEFAULT_DESCRIPTION,
    max_chars: int = 500,
) -> Capability:
    """Bind a corpus to a Capability the planner can call."""

    def _search(args: dict) -> str:
        return format_snippets(corpus.search(args["query"], args["k"]), max_chars=max_chars)

    return Capability(name=name, description=description, argument_schema=RetrievalArgs, handler=_search)
