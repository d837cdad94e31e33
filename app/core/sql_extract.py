"""Recover a single SQL statement from free-form LLM output.

Heuristic, layered matching. Callers use ``extract_sql_candidate`` and treat
``None`` as "the model did not produce SQL"; ``extract_sql`` keeps the
soft-failure behavior of handing back the trimmed text.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Literal, Optional


CandidateSource = Literal["json_fence", "fence", "keyword"]

CONTENT_TAG_RE = re.compile(r"<content[^>]*>([\s\S]*?)</content>", re.IGNORECASE)
FENCE_RE = re.compile(r"```(?:sql)?\s*\n?([\s\S]*?)\n?```", re.IGNORECASE)
SQL_START_RE = re.compile(r"\b(SELECT|WITH)\b[\s\S]+", re.IGNORECASE)

# Order matters: &amp; last so "&amp;quot;" decodes to "&quot;" only once
HTML_ENTITIES = (
    ("&quot;", '"'),
    ("&#39;", "'"),
    ("&lt;", "<"),
    ("&gt;", ">"),
    ("&amp;", "&"),
)
ESCAPE_SEQUENCES = (
    ("\\n", "\n"),
    ("\\t", "\t"),
    ('\\"', '"'),
    ("\\'", "'"),
)


@dataclass(frozen=True)
class SqlCandidate:
    sql: str
    source: CandidateSource


def _strip_content_tag(text: str) -> str:
    return CONTENT_TAG_RE.sub(lambda m: m.group(1), text, count=1).strip()


def _looks_like_json_object(text: str) -> bool:
    return text.startswith("{") and text.endswith("}")


def extract_sql_candidate(text: str) -> Optional[SqlCandidate]:
    """First match wins: JSON-wrapped fence, fence, bare SELECT/WITH."""
    clean = _strip_content_tag(text or "")

    if _looks_like_json_object(clean):
        match = FENCE_RE.search(clean)
        if match:
            return SqlCandidate(sql=match.group(1).strip(), source="json_fence")

    match = FENCE_RE.search(clean)
    if match:
        return SqlCandidate(sql=match.group(1).strip(), source="fence")

    match = SQL_START_RE.search(clean)
    if match:
        return SqlCandidate(sql=match.group(0).split("```")[0].strip(), source="keyword")

    return None


def extract_sql(text: str) -> str:
    candidate = extract_sql_candidate(text)
    if candidate is None:
        return _strip_content_tag(text or "")
    return candidate.sql


def normalize_sql(sql: str) -> str:
    """Decode HTML entities and literal escape sequences, then trim."""
    out = sql or ""
    for entity, char in HTML_ENTITIES:
        out = out.replace(entity, char)
    for escaped, char in ESCAPE_SEQUENCES:
        out = out.replace(escaped, char)
    return out.strip()
