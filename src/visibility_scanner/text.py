"""Tokenisation shared by the lexical index and keyword relevance judgment."""

from __future__ import annotations

import re

_TOKEN_RE = re.compile(r"[^\W_]+(?:['’][^\W_]+)*", re.UNICODE)

STOP_WORDS = frozenset(
    """
    a about above after again against all am an and any are as at be because been before being
    below between both but by can could did do does doing down during each few for from further
    had has have having he her here hers herself him himself his how i if in into is it its itself
    just me more most my myself no nor not of off on once only or other our ours ourselves out over
    own same she should so some such than that the their theirs them themselves then there these
    they this those through to too under until up very was we were what when where which while who
    whom why will with would you your yours yourself yourselves
    """.split()
)

_SUFFIXES = ("ing", "edly", "ed", "ies", "es", "s", "e")


def normalise_token(token: str) -> str:
    """Lowercase and strip a few inflectional suffixes."""
    token = token.lower().replace("’", "'")
    if token.endswith("'s"):
        token = token[:-2]
    for suffix in _SUFFIXES:
        if len(token) > len(suffix) + 3 and token.endswith(suffix):
            if suffix == "ies":
                return token[:-3] + "y"
            return token[: -len(suffix)]
    return token


def tokenize(text: str) -> list[str]:
    """Split text into normalised content terms, stop words removed."""
    terms: list[str] = []
    for match in _TOKEN_RE.finditer(text):
        raw = match.group(0).lower()
        if raw in STOP_WORDS:
            continue
        term = normalise_token(raw)
        if term and term not in STOP_WORDS:
            terms.append(term)
    return terms


def make_snippet(text: str, query: str, context_words: int = 30) -> str:
    """Return a window of words around the first query term found in text."""
    words = text.split()
    if not words:
        return ""
    query_terms = set(tokenize(query))
    hit = next(
        (i for i, word in enumerate(words) if query_terms.intersection(tokenize(word))),
        None,
    )
    if hit is None:
        snippet = " ".join(words[: context_words * 2])
        return snippet + ("..." if len(words) > context_words * 2 else "")

    start = max(0, hit - context_words)
    end = min(len(words), hit + context_words)
    snippet = " ".join(words[start:end])
    if start > 0:
        snippet = "..." + snippet
    if end < len(words):
        snippet += "..."
    return snippet
