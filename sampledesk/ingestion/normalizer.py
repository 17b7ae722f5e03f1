"""
SampleDesk Record Normalizer

Maps heterogeneous raw records onto the canonical training-sample shape.

Alias table (keys matched case-insensitively, ignoring spaces, "_" and "-"):
    question     ← question, q, prompt, query
    answer       ← answer, a, response
    type         ← type            (default 'qa' when absent or unknown)
    tags         ← tags            (list, or comma / semicolon separated string)
    language     ← language, lang  (default 'en')
    code_snippet ← code, code_snippet, snippet
    greeting     ← greeting
    suggestions  ← suggestions     (same splitting rules as tags)

Normalization is pure and total: it never raises. Records whose trimmed
question is shorter than MIN_QUESTION_LENGTH or whose trimmed answer is
shorter than MIN_ANSWER_LENGTH are rejected.
"""

import re
from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from typing import Any, Mapping, Optional

MIN_QUESTION_LENGTH = 5
MIN_ANSWER_LENGTH = 10

SAMPLE_TYPES = ("qa", "snippet", "doc", "faq", "other")
DEFAULT_TYPE = "qa"
DEFAULT_LANGUAGE = "en"

_ALIASES: dict[str, tuple[str, ...]] = {
    "question": ("question", "q", "prompt", "query"),
    "answer": ("answer", "a", "response"),
    "type": ("type",),
    "tags": ("tags",),
    "language": ("language", "lang"),
    "code_snippet": ("code", "codesnippet", "snippet"),
    "greeting": ("greeting",),
    "suggestions": ("suggestions",),
}

_KEY_NOISE = re.compile(r"[\s_\-]+")
_LIST_SEPARATORS = re.compile(r"[;,]")


@dataclass(frozen=True)
class CanonicalRecord:
    """A validated question/answer record ready for embedding."""
    question: str
    answer: str
    type: str = DEFAULT_TYPE
    tags: tuple[str, ...] = field(default_factory=tuple)
    language: str = DEFAULT_LANGUAGE
    code_snippet: Optional[str] = None
    greeting: Optional[str] = None
    suggestions: tuple[str, ...] = field(default_factory=tuple)

    def to_raw(self) -> dict[str, Any]:
        """Plain dict form; ``normalize(record.to_raw()) == record``."""
        raw = asdict(self)
        raw["tags"] = list(self.tags)
        raw["suggestions"] = list(self.suggestions)
        return raw

    def answer_template(self) -> dict[str, Any]:
        """The structured answer object stored on a training sample."""
        template: dict[str, Any] = {
            "answer": self.answer,
            "sections": [],
            "suggestions": list(self.suggestions),
        }
        if self.greeting:
            template["greeting"] = self.greeting
        return template


def _canonical_key(key: Any) -> str:
    if not isinstance(key, str):
        return ""
    return _KEY_NOISE.sub("", key).lower()


def _text(value: Any) -> str:
    """Render a scalar cell value as trimmed text; non-scalars become ''."""
    if value is None or isinstance(value, bool):
        return ""
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (int, float)):
        return str(value)
    return ""


def _string_list(value: Any) -> tuple[str, ...]:
    if isinstance(value, (list, tuple)):
        items = [_text(v) for v in value]
    elif isinstance(value, str):
        items = [part.strip() for part in _LIST_SEPARATORS.split(value)]
    else:
        items = [_text(value)]

    seen: dict[str, None] = {}
    for item in items:
        if item and item not in seen:
            seen[item] = None
    return tuple(seen)


def _lookup(fields: Mapping[str, Any], canonical: str) -> Any:
    for alias in _ALIASES[canonical]:
        if alias in fields:
            return fields[alias]
    return None


def normalize_with_reason(raw: Mapping[str, Any]) -> tuple[Optional[CanonicalRecord], Optional[str]]:
    """
    Normalize a raw record.

    Returns ``(record, None)`` on success and ``(None, reason)`` when the
    record has to be dropped.
    """
    if not isinstance(raw, Mapping):
        return None, "record is not a key/value mapping"

    fields: dict[str, Any] = {}
    for key, value in raw.items():
        ckey = _canonical_key(key)
        if ckey and ckey not in fields:
            fields[ckey] = value

    question = _text(_lookup(fields, "question"))
    answer = _text(_lookup(fields, "answer"))

    if not question:
        return None, "missing question"
    if not answer:
        return None, "missing answer"
    if len(question) < MIN_QUESTION_LENGTH:
        return None, f"question shorter than {MIN_QUESTION_LENGTH} characters"
    if len(answer) < MIN_ANSWER_LENGTH:
        return None, f"answer shorter than {MIN_ANSWER_LENGTH} characters"

    sample_type = _text(_lookup(fields, "type")).lower()
    if sample_type not in SAMPLE_TYPES:
        sample_type = DEFAULT_TYPE

    language = _text(_lookup(fields, "language")).lower() or DEFAULT_LANGUAGE

    return CanonicalRecord(
        question=question,
        answer=answer,
        type=sample_type,
        tags=_string_list(_lookup(fields, "tags")),
        language=language,
        code_snippet=_text(_lookup(fields, "code_snippet")) or None,
        greeting=_text(_lookup(fields, "greeting")) or None,
        suggestions=_string_list(_lookup(fields, "suggestions")),
    ), None


def normalize(raw: Mapping[str, Any]) -> Optional[CanonicalRecord]:
    """Normalize a raw record, or return None when it is invalid."""
    record, _ = normalize_with_reason(raw)
    return record
