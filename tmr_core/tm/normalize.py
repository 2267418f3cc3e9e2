from __future__ import annotations

from hashlib import sha256
import re

_WHITESPACE_PATTERN = re.compile(r"\s+")
_NON_WORD_PATTERN = re.compile(r"[\W_]+", re.UNICODE)

# UTF-8 bytes that were decoded with a single-byte codepage and stored again.
# CP866 renders Cyrillic lead bytes D0/D1 as box drawing (``╨`` / ``╤``) and
# CP1252/Latin-1 renders them as ``Ð`` / ``Ñ`` (``Ã`` for Latin supplements).
_MOJIBAKE_PATTERN = re.compile(
    "[╨╤][А-п─-▟]"
    "|┬[«»л╗]"
    "|тА[А-п]"
    "|[ÃÂÐÑ][\u0080-¿Œ-ƒˆ-˜–-™]"
    "|â€"
)
_REPAIR_CODECS = ("cp866", "cp1252", "latin-1")


def _expected_alphabet_share(text: str) -> float:
    if not text:
        return 0.0
    artifact_chars = sum(len(match.group(0)) for match in _MOJIBAKE_PATTERN.finditer(text))
    expected = sum(1 for char in text if char.isalnum() or char.isspace())
    return max(0, expected - artifact_chars) / len(text)


def has_mojibake(text: str) -> bool:
    return _MOJIBAKE_PATTERN.search(text) is not None


def repair_mojibake(text: str) -> str:
    """Undo one round of UTF-8 double encoding when that clearly helps.

    The repaired form is kept only when the artifact pattern disappears and the
    share of letters/digits/whitespace goes up; otherwise the input is returned.
    """

    if not text or not has_mojibake(text):
        return text

    baseline = _expected_alphabet_share(text)
    for codec in _REPAIR_CODECS:
        try:
            candidate = text.encode(codec).decode("utf-8")
        except UnicodeError:
            continue
        if has_mojibake(candidate):
            continue
        if _expected_alphabet_share(candidate) > baseline:
            return candidate
    return text


def normalize_source_text(text: str) -> str:
    collapsed = _WHITESPACE_PATTERN.sub(" ", text.strip())
    return collapsed.lower()


def normalize_for_matching(text: str | None) -> str:
    if not text:
        return ""
    return normalize_source_text(repair_mojibake(text))


def normalized_source_hash(text: str) -> str:
    normalized = normalize_source_text(text)
    return sha256(normalized.encode("utf-8")).hexdigest()


def split_words(normalized: str) -> list[str]:
    return [word for word in normalized.split(" ") if word]


def strip_punctuation(words: list[str]) -> list[str]:
    stripped = (_NON_WORD_PATTERN.sub("", word) for word in words)
    return [word for word in stripped if word]
