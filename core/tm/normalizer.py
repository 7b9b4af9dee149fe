"""
TM Text Normalizer
Canonical form of a segment for hashing and fuzzy matching.

Default pipeline: lowercase, Unicode NFD, whitespace collapse, trim.
Placeholders ({0}, {name}, {{var}}, %s, %1$s, %1, $1 ...) are kept verbatim.
"""
import hashlib
import re
import unicodedata
from dataclasses import dataclass
from typing import FrozenSet, List, Optional


# Order matters: double braces before single braces, positional printf before bare %N
PLACEHOLDER_PATTERN = re.compile(
    r"\{\{[^{}]+\}\}"                                  # {{var}}
    r"|\{[^{}\s]*\}"                                   # {0}, {name}, {}
    r"|%\d+\$[-+#0]*\d*(?:\.\d+)?[sdifuxXeEgGcp]"      # %1$s
    r"|%[-+#0]*\d*(?:\.\d+)?[sdifuxXeEgGcp@]"          # %s, %d, %.2f
    r"|%\d+"                                           # %1
    r"|\$\d+"                                          # $1
)

_WHITESPACE = re.compile(r"\s+")
_XML_TAG = re.compile(r"<[^>]+>")
_BBCODE_TAG = re.compile(r"\[\[/?[^\[\]]+\]\]|\[/?[A-Za-z][^\[\]]*\]")
_REPEATED_PUNCT = re.compile(r"([!?])\1+")
# Code points XML 1.0 forbids; vertical tab and form feed read as spaces
_XML_INVALID = re.compile(r"[\x00-\x08\x0e-\x1f\ud800-\udfff\ufffe\uffff]")
_XML_SPACE = re.compile(r"[\x0b\x0c]")

SIGNIFICANT_TERM_LENGTH = 3
MAX_SIGNIFICANT_TERMS = 5

_PUNCTUATION_MAP = str.maketrans({
    "‘": "'",
    "’": "'",
    "“": '"',
    "”": '"',
    "–": "-",
    "—": "-",
    "…": "...",
})


@dataclass(frozen=True)
class NormalizationOptions:
    """Switches for the optional normalization steps."""
    lowercase: bool = True
    remove_markup: bool = False
    normalize_punctuation: bool = False


DEFAULT_OPTIONS = NormalizationOptions()


def _split_placeholders(text: str) -> List[tuple]:
    """Split text into (chunk, is_placeholder) pairs."""
    parts = []
    pos = 0
    for match in PLACEHOLDER_PATTERN.finditer(text):
        if match.start() > pos:
            parts.append((text[pos:match.start()], False))
        parts.append((match.group(0), True))
        pos = match.end()
    if pos < len(text):
        parts.append((text[pos:], False))
    return parts


def _normalize_chunk(chunk: str, options: NormalizationOptions) -> str:
    if options.remove_markup:
        chunk = _XML_TAG.sub("", chunk)
        chunk = _BBCODE_TAG.sub("", chunk)
    if options.normalize_punctuation:
        chunk = chunk.translate(_PUNCTUATION_MAP)
        chunk = _REPEATED_PUNCT.sub(r"\1", chunk)
    if options.lowercase:
        chunk = chunk.lower()
    return unicodedata.normalize("NFD", chunk)


def normalize(text: Optional[str], options: Optional[NormalizationOptions] = None) -> str:
    """
    Normalize a segment. Never raises; None becomes "".

    Args:
        text: Raw segment text
        options: Optional extra steps (markup removal, punctuation)

    Returns:
        Normalized text
    """
    if not text:
        return ""
    options = options or DEFAULT_OPTIONS

    pieces = [
        chunk if is_placeholder else _normalize_chunk(chunk, options)
        for chunk, is_placeholder in _split_placeholders(text)
    ]
    return _WHITESPACE.sub(" ", "".join(pieces)).strip()


def hash_normalized(normalized: str) -> str:
    """SHA-256 hex digest of already-normalized text."""
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


def compute_source_hash(text: str, options: Optional[NormalizationOptions] = None) -> str:
    """Content hash used for exact matching."""
    return hash_normalized(normalize(text, options))


def tokenize(normalized: str) -> FrozenSet[str]:
    """Whitespace token set of a normalized string."""
    return frozenset(normalized.split())


def extract_placeholders(text: str) -> List[str]:
    """Placeholders in order of appearance."""
    return [m.group(0) for m in PLACEHOLDER_PATTERN.finditer(text or "")]


def strip_invalid_xml(text: Optional[str]) -> Optional[str]:
    """Drop code points that cannot appear in an XML 1.0 document."""
    if not text:
        return text
    return _XML_INVALID.sub("", _XML_SPACE.sub(" ", text))


def significant_terms(normalized: str) -> List[str]:
    """
    First few distinct tokens long enough to narrow a candidate search.

    Placeholders are skipped; they say nothing about the sentence.
    """
    terms: List[str] = []
    for token in normalized.split():
        if len(token) < SIGNIFICANT_TERM_LENGTH or token in terms:
            continue
        if PLACEHOLDER_PATTERN.fullmatch(token):
            continue
        terms.append(token)
        if len(terms) == MAX_SIGNIFICANT_TERMS:
            break
    return terms
