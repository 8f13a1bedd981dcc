"""Reply parsing: extract suggestions from tagged markup or fenced code blocks."""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Optional, Union
from xml.etree.ElementTree import Element, ParseError

from defusedxml import DefusedXmlException
from defusedxml.ElementTree import fromstring

from review_agent.config import (
    FALLBACK_CATEGORY,
    FALLBACK_COMMENT_WINDOW,
    FALLBACK_DEFAULT_LANGUAGE,
    FALLBACK_FILENAME_WINDOW,
    FALLBACK_MIN_COMMENT_LENGTH,
    LANGUAGE_EXTENSIONS,
)
from review_agent.models import Suggestion
from review_agent.prompts import (
    CODE_TAG,
    COMMENT_TAG,
    DESCRIBE_TAG,
    FILENAME_TAG,
    REVIEW_TAG,
    SUGGESTION_TAG,
    TYPE_TAG,
)

logger = logging.getLogger(__name__)

_OPEN_REVIEW = f"<{REVIEW_TAG}>"
_CLOSE_REVIEW = f"</{REVIEW_TAG}>"

_DOCTYPE = re.compile(r"<!DOCTYPE[^>\[]*(?:\[[\s\S]*?\])?\s*>", re.IGNORECASE)
_ENTITY = re.compile(r"<!ENTITY[^>]*>", re.IGNORECASE)
_CODE_ELEMENT = re.compile(rf"<{CODE_TAG}>([\s\S]*?)</{CODE_TAG}>")
_FENCE_OPEN = re.compile(r"```[\w+#.-]*[ \t]*\n?")
_STRAY_FENCE = re.compile(r"```[\w+#.-]*\n([\s\S]*?)```")
_CDATA_WRAPPED = re.compile(r"^\s*<!\[CDATA\[([\s\S]*)\]\]>\s*$")
_CDATA_SECTION = re.compile(r"(<!\[CDATA\[[\s\S]*?\]\]>)")
_BARE_AMPERSAND = re.compile(r"&(?!(?:amp|lt|gt|quot|apos|#\d+|#x[0-9a-fA-F]+);)")
_KNOWN_TAGS = "|".join(
    (REVIEW_TAG, SUGGESTION_TAG, DESCRIBE_TAG, TYPE_TAG, COMMENT_TAG, CODE_TAG, FILENAME_TAG)
)
_STRAY_LESS_THAN = re.compile(rf"<(?!/?(?:{_KNOWN_TAGS})(?:\s[^<>]*)?/?>)")


# ── Raw fields ───────────────────────────────────────────────────────────────
# A parsed child field arrives in one of these shapes depending on what the
# service emitted. normalize_field() collapses every shape to text.


@dataclass(frozen=True)
class MissingField:
    pass


@dataclass(frozen=True)
class TextField:
    value: str


@dataclass(frozen=True)
class NodeField:
    """An element carrying attributes, with or without text content."""

    text: Optional[str]
    attributes: dict[str, str]


@dataclass(frozen=True)
class ListField:
    items: tuple["RawField", ...]


RawField = Union[MissingField, TextField, NodeField, ListField]


def _element_field(element: Element) -> RawField:
    text = "".join(element.itertext())
    if not element.attrib:
        return TextField(text)
    return NodeField(text=text or None, attributes=dict(element.attrib))


def raw_field(elements: Sequence[Element]) -> RawField:
    if not elements:
        return MissingField()
    if len(elements) == 1:
        return _element_field(elements[0])
    return ListField(tuple(_element_field(e) for e in elements))


def normalize_field(field: RawField) -> Optional[str]:
    """Collapse a raw field to a single text value, or None when it has none."""
    if isinstance(field, MissingField):
        return None
    if isinstance(field, TextField):
        return field.value
    if isinstance(field, NodeField):
        if field.text is not None and field.text.strip():
            return field.text
        return json.dumps(field.attributes, sort_keys=True)
    if isinstance(field, ListField):
        if not field.items:
            return None
        return normalize_field(field.items[0])
    raise TypeError(f"Unknown raw field type: {type(field).__name__}")


# ── Structured (tagged markup) parser ────────────────────────────────────────


def _cdata(text: str) -> str:
    # A literal "]]>" would close the section early; split it across two
    return "<![CDATA[" + text.replace("]]>", "]]]]><![CDATA[>") + "]]>"


def _protect_code(match: re.Match) -> str:
    content = match.group(1)
    wrapped = _CDATA_WRAPPED.match(content)
    if wrapped:
        content = wrapped.group(1)
    content = _FENCE_OPEN.sub("", content).replace("```", "")
    return f"<{CODE_TAG}>{_cdata(content)}</{CODE_TAG}>"


def sanitize_review_markup(reply: str) -> Optional[str]:
    """Cut the reply down to its review element and make it safe to parse.

    Returns None when the reply has no review element at all.
    """
    start = reply.find(_OPEN_REVIEW)
    end = reply.rfind(_CLOSE_REVIEW)
    if start == -1 or end == -1 or end < start:
        return None

    markup = reply[start : end + len(_CLOSE_REVIEW)]
    markup = _DOCTYPE.sub("", markup)
    markup = _ENTITY.sub("", markup)
    markup = _CODE_ELEMENT.sub(_protect_code, markup)
    # Fenced blocks the service left outside any code element
    markup = _STRAY_FENCE.sub(
        lambda m: f"<{CODE_TAG}>{_cdata(m.group(1))}</{CODE_TAG}>", markup
    )
    # Prose fields often carry a literal "&" or a comparison like "a < b";
    # unknown entity references are kept as text, never resolved
    parts = _CDATA_SECTION.split(markup)
    for i in range(0, len(parts), 2):
        parts[i] = _BARE_AMPERSAND.sub("&amp;", parts[i])
        parts[i] = _STRAY_LESS_THAN.sub("&lt;", parts[i])
    return "".join(parts)


def _trim_code(code: str) -> str:
    lines = code.strip().split("\n")
    lines[0] = lines[0].strip()
    lines[-1] = lines[-1].strip()
    return "\n".join(lines)


def _suggestion_from_element(element: Element) -> Optional[Suggestion]:
    code = normalize_field(raw_field(element.findall(CODE_TAG)))
    if code is None or not code.strip():
        logger.debug("Dropping suggestion without code")
        return None

    def text_of(tag: str) -> str:
        value = normalize_field(raw_field(element.findall(tag)))
        return value.strip() if value else ""

    return Suggestion(
        description=text_of(DESCRIBE_TAG),
        category=text_of(TYPE_TAG),
        comment=text_of(COMMENT_TAG),
        code=_trim_code(code),
        filename=text_of(FILENAME_TAG),
    )


def parse_review_reply(reply: str) -> list[Suggestion]:
    """Parse one reply in the tagged format; any parse failure yields []."""
    markup = sanitize_review_markup(reply)
    if markup is None:
        logger.debug("No %s element in reply (%d chars)", REVIEW_TAG, len(reply))
        return []

    try:
        root = fromstring(markup, forbid_dtd=True, forbid_entities=True)
    except (ParseError, DefusedXmlException) as e:
        logger.warning("Failed to parse review markup: %s", e)
        return []

    if root.tag != REVIEW_TAG:
        return []

    suggestions: list[Suggestion] = []
    for element in root.findall(SUGGESTION_TAG):
        suggestion = _suggestion_from_element(element)
        if suggestion is not None:
            suggestions.append(suggestion)
    return suggestions


def parse_xml_suggestions(replies: Sequence[str]) -> list[Suggestion]:
    suggestions: list[Suggestion] = []
    for reply in replies:
        suggestions.extend(parse_review_reply(reply))
    logger.info(
        "Structured parser found %d suggestion(s) in %d reply(ies)",
        len(suggestions),
        len(replies),
    )
    return suggestions


# ── Fallback (fenced code block) parser ──────────────────────────────────────

_CODE_BLOCK = re.compile(r"```(\w+)?[ \t]*\n?([\s\S]*?)```")

_PATH = r"([^\s,`'\"()<>]+\.[a-zA-Z0-9]+)"

FILENAME_PATTERNS = [
    re.compile(rf"(?:file|filename|path)[:\s]+{_PATH}", re.IGNORECASE),
    re.compile(rf"\bin\s+(?:(?:file|filename|path)\s+)?{_PATH}", re.IGNORECASE),
    re.compile(rf"\bfor\s+(?:(?:file|filename|path)\s+)?{_PATH}", re.IGNORECASE),
    re.compile(rf"{_PATH}:"),
]


def find_filename_hint(text: str) -> Optional[str]:
    """Nearest filename mentioned in ``text``, trying patterns in priority order."""
    for pattern in FILENAME_PATTERNS:
        matches = list(pattern.finditer(text))
        if matches:
            return matches[-1].group(1)
    return None


def synthesized_filename(language: str) -> str:
    extension = LANGUAGE_EXTENSIONS.get(language.lower(), "txt")
    return f"code-suggestion.{extension}"


def find_comment(text: str, language: str) -> str:
    area = text[-FALLBACK_COMMENT_WINDOW:]

    paragraphs = re.split(r"\n\s*\n", area)
    comment = paragraphs[-1].strip() if paragraphs else ""

    if len(comment) < FALLBACK_MIN_COMMENT_LENGTH:
        sentences = re.split(r"[.!?]\s+", area)
        comment = ". ".join(sentences[-2:]).strip()

    if len(comment) < FALLBACK_MIN_COMMENT_LENGTH:
        comment = f"Consider this code improvement for better {language} implementation"
    return comment


def fallback_parse(text: str) -> list[Suggestion]:
    """Turn every non-empty fenced code block into an 'improvement' suggestion.

    Filename and comment are read from the prose between the previous block
    and this one.
    """
    suggestions: list[Suggestion] = []
    previous_end = 0

    for match in _CODE_BLOCK.finditer(text):
        language = match.group(1) or FALLBACK_DEFAULT_LANGUAGE
        code = match.group(2).strip("\n").rstrip()
        window_start = max(previous_end, match.start() - FALLBACK_FILENAME_WINDOW)
        before = text[window_start : match.start()]
        previous_end = match.end()

        if not code.strip():
            continue

        filename = find_filename_hint(before) or synthesized_filename(language)
        suggestions.append(
            Suggestion(
                description=f"Code suggestion for {filename}",
                category=FALLBACK_CATEGORY,
                comment=find_comment(before, language),
                code=f"```{language}\n{code}\n```",
                filename=filename,
            )
        )

    logger.debug("Fallback parser found %d suggestion(s)", len(suggestions))
    return suggestions


def parse_suggestions(replies: Sequence[str]) -> list[Suggestion]:
    """Structured parse first; fenced-block recovery only if it found nothing."""
    suggestions = parse_xml_suggestions(replies)
    if suggestions:
        return suggestions

    logger.info("Structured parsing yielded nothing, trying fallback text parser")
    recovered: list[Suggestion] = []
    for reply in replies:
        recovered.extend(fallback_parse(reply))
    logger.info("Fallback parser found %d suggestion(s)", len(recovered))
    return recovered
