"""Token-reduction rewrites for message content."""

import re

LEVELS = ("light", "balanced", "aggressive")

_FENCE = re.compile(r"(```.*?```)", re.DOTALL)

_FILLERS = [
    re.compile(r"\b(um|uh|er|you know|basically|literally|actually)\b,?", re.IGNORECASE),
    re.compile(r"\b(sort of|kind of|more or less|pretty much)\b", re.IGNORECASE),
]

_REDUNDANT = [
    (re.compile(r"\bin order to\b", re.IGNORECASE), "to"),
    (re.compile(r"\bdue to the fact that\b", re.IGNORECASE), "because"),
    (re.compile(r"\bat this point in time\b", re.IGNORECASE), "now"),
    (re.compile(r"\bfor the purpose of\b", re.IGNORECASE), "to"),
    (re.compile(r"\bin the event that\b", re.IGNORECASE), "if"),
]

_CONTRACTIONS = [
    (re.compile(r"\bdo not\b", re.IGNORECASE), "don't"),
    (re.compile(r"\bcannot\b", re.IGNORECASE), "can't"),
    (re.compile(r"\bwill not\b", re.IGNORECASE), "won't"),
    (re.compile(r"\bshould not\b", re.IGNORECASE), "shouldn't"),
    (re.compile(r"\bwould not\b", re.IGNORECASE), "wouldn't"),
    (re.compile(r"\bis not\b", re.IGNORECASE), "isn't"),
    (re.compile(r"\bare not\b", re.IGNORECASE), "aren't"),
    (re.compile(r"\bwas not\b", re.IGNORECASE), "wasn't"),
    (re.compile(r"\bwere not\b", re.IGNORECASE), "weren't"),
]

_MODIFIERS = re.compile(
    r"\b(very|really|quite|rather|extremely|incredibly|absolutely|totally|completely)\s+",
    re.IGNORECASE,
)

_ABBREVIATIONS = [
    (re.compile(r"\bfor example\b", re.IGNORECASE), "e.g."),
    (re.compile(r"\band so on\b", re.IGNORECASE), "etc."),
    (re.compile(r"\band so forth\b", re.IGNORECASE), "etc."),
]

_ARTICLES = re.compile(r"\b(a|an|the)\s+", re.IGNORECASE)


def _light(text: str) -> str:
    text = re.sub(r"\s+", " ", text).strip()
    text = re.sub(r"\.{4,}", "...", text)
    text = re.sub(r"!{2,}", "!", text)
    text = re.sub(r"\?{2,}", "?", text)
    return text


def _balanced(text: str) -> str:
    text = _light(text)
    for pattern in _FILLERS:
        text = pattern.sub("", text)
    for pattern, replacement in _REDUNDANT:
        text = pattern.sub(replacement, text)
    return re.sub(r"\s+", " ", text).strip()


def _aggressive(text: str) -> str:
    text = _balanced(text)
    text = _ARTICLES.sub("", text)
    for pattern, replacement in _CONTRACTIONS:
        text = pattern.sub(replacement, text)
    text = _MODIFIERS.sub("", text)
    for pattern, replacement in _ABBREVIATIONS:
        text = pattern.sub(replacement, text)
    return re.sub(r"\s+", " ", text).strip()


_REWRITERS = {"light": _light, "balanced": _balanced, "aggressive": _aggressive}


def optimize_text(text: str, level: str = "balanced") -> str:
    """
    Shrink prose at the given level, leaving fenced code blocks untouched.

    Raises:
        ValueError: for an unknown level
    """
    if level not in _REWRITERS:
        raise ValueError(f"Unknown optimization level: {level}. Must be one of {', '.join(LEVELS)}")
    rewrite = _REWRITERS[level]

    parts = []
    for part in _FENCE.split(text):
        if part.startswith("```") and part.endswith("```") and len(part) >= 6:
            parts.append(part)
        elif part.strip():
            parts.append(rewrite(part))
    result = "\n".join(parts)
    return result if len(result) < len(text) else text
