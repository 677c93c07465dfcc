import html
import re

_TAG_RE = re.compile(r"<[^>]+>")
_WHITESPACE_RE = re.compile(r"\s+", re.UNICODE)


def normalize_text(raw: str) -> str:
    """Plain text from lesson input: tags stripped, entities decoded, whitespace collapsed."""
    if not raw:
        return ""
    text = _TAG_RE.sub(" ", raw)
    text = html.unescape(text)
    return _WHITESPACE_RE.sub(" ", text).strip()


def shrink_text(text: str, max_chars: int) -> str:
    """Keep head and tail halves of text longer than max_chars."""
    if max_chars <= 0 or len(text) <= max_chars:
        return text
    half = max_chars // 2
    return text[:half].rstrip() + "\n...\n" + text[-half:].lstrip()


def word_count(text: str) -> int:
    return len(text.split()) if text else 0


def truncate(text: str, limit: int) -> str:
    return text[:limit] if len(text) > limit else text
