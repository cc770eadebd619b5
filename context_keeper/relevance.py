"""
Search-enhanced context retrieval.

When the outgoing message refers back to an earlier topic ("what was my
favorite color?"), extract the referenced terms, search the conversation
for them and rank the hits so the manager can pull them back into context.
"""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from context_keeper.models import (
    ASSISTANT,
    EARLIEST,
    USER,
    Conversation,
    MessageRecord,
    as_utc,
    utc_now,
)
from context_keeper.search.base import MessageSearch, SearchPage

logger = logging.getLogger(__name__)

MAX_TERMS_PER_GROUP = 4

_PHRASE = r"([^?.!,;:\n]+)"

REFERENTIAL_PATTERNS = [
    re.compile(r"\bwhat(?: was| were| is| are|'s) my " + _PHRASE),
    re.compile(
        r"\bremember\b(?: when| that| how| what)?(?: we| i| you)?"
        r"(?: talked| spoke| chatted| discussed| said)?(?: about)? " + _PHRASE
    ),
    re.compile(r"\bwe (?:discussed|talked about|spoke about|mentioned|covered) " + _PHRASE),
    re.compile(
        r"\byou (?:said|mentioned|told me|suggested)(?: something)?(?: about| regarding| that)? "
        + _PHRASE
    ),
    re.compile(r"\bearlier,? (?:i|we) (?:mentioned|said|discussed) " + _PHRASE),
    re.compile(r"\b(?:tell me more about|more about|expand on|continue with) " + _PHRASE),
]
_QUOTED = re.compile(r'"([^"]+)"|“([^”]+)”')
_WORD = re.compile(r"[a-z0-9][a-z0-9'_-]*")

STOP_WORDS = frozenset(
    """
    a an the my your our their his her its me you we i us they them it this that these those
    about again some something anything thing things stuff when what where which who how why
    was were is are be been am do does did to of in on at for with from and or but so
    said say mentioned told talked discussed earlier before previously ago there here
    more just really very please can could would should will just one
    """.split()
)


def extract_term_groups(text: str) -> list[list[str]]:
    """
    Extract one group of search terms per referential phrase.

    "What was my favorite color?" -> [["favorite", "color"]]. Text without
    referential language yields an empty list.
    """
    content = text.lower()
    phrases = []
    for pattern in REFERENTIAL_PATTERNS:
        match = pattern.search(content)
        if match:
            phrases.append(match.group(1))
    for match in _QUOTED.finditer(content):
        phrases.append(match.group(1) or match.group(2))

    groups: list[list[str]] = []
    for phrase in phrases:
        terms = [w for w in _WORD.findall(phrase) if w not in STOP_WORDS and len(w) > 1]
        terms = terms[:MAX_TERMS_PER_GROUP]
        if terms and terms not in groups:
            groups.append(terms)
    return groups


def extract_search_terms(text: str) -> list[str]:
    """Flattened, de-duplicated search terms."""
    terms: list[str] = []
    for group in extract_term_groups(text):
        for term in group:
            if term not in terms:
                terms.append(term)
    return terms


@dataclass
class RelevanceResult:
    """Outcome of a search-enhanced context lookup."""

    search_performed: bool = False
    search_terms: list[str] = field(default_factory=list)
    total_found: int = 0
    relevant_messages: list[MessageRecord] = field(default_factory=list)
    relevance_scores: dict[int, float] = field(default_factory=dict)  # by sequence number


class RelevanceFinder:
    """Finds historical messages relevant to the current turn."""

    def __init__(
        self,
        search: MessageSearch,
        max_search_results: int = 10,
        relevance_threshold: float = 0.7,
        timeout_seconds: float = 2.0,
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Initialize relevance finder.

        Args:
            search: Message search capability scoped by conversation
            max_search_results: Candidates requested per search query
            relevance_threshold: Minimum score for a candidate to be kept
            timeout_seconds: Deadline for the whole search phase
            clock: Source of "now" for recency scoring
        """
        self.search = search
        self.max_search_results = max_search_results
        self.relevance_threshold = relevance_threshold
        self.timeout_seconds = timeout_seconds
        self.clock = clock

    def extract_term_groups(self, text: str) -> list[list[str]]:
        return extract_term_groups(text)

    def extract_search_terms(self, text: str) -> list[str]:
        return extract_search_terms(text)

    async def find_relevant_context(
        self,
        conversation: Conversation,
        current_message: MessageRecord,
        max_results: Optional[int] = None,
        threshold: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> RelevanceResult:
        """
        Find older messages relevant to `current_message`.

        Never raises for search failures: a failing query contributes no
        candidates and a timeout yields an empty result with
        search_performed set.
        """
        groups = self.extract_term_groups(current_message.content)
        if not groups:
            return RelevanceResult()

        now = as_utc(now) if now is not None else as_utc(self.clock())
        limit = max_results if max_results is not None else self.max_search_results
        threshold = threshold if threshold is not None else self.relevance_threshold
        all_terms = self.extract_search_terms(current_message.content)

        try:
            pages = await asyncio.wait_for(
                asyncio.gather(
                    *[self.search.search(conversation.id, " ".join(group), limit) for group in groups],
                    return_exceptions=True,
                ),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(
                f"Message search timed out after {self.timeout_seconds}s for conversation {conversation.id}"
            )
            return RelevanceResult(search_performed=True, search_terms=all_terms)

        candidates: dict[int, MessageRecord] = {}
        scores: dict[int, float] = {}
        for group, page in zip(groups, pages):
            if isinstance(page, BaseException):
                logger.warning(
                    f"Failed to search for terms {group} in conversation {conversation.id}: {page}"
                )
                continue
            for message in self._page_items(page):
                if message.sequence_number == current_message.sequence_number:
                    continue
                score = self.relevance(message, current_message, group, now)
                if score < threshold or score <= 0:
                    continue
                key = message.sequence_number
                candidates.setdefault(key, message)
                if scores.get(key, -1.0) < score:
                    scores[key] = score

        ranked = sorted(
            candidates.values(),
            key=lambda m: (scores[m.sequence_number], m.created_at or EARLIEST, m.sequence_number),
            reverse=True,
        )
        result = RelevanceResult(
            search_performed=True,
            search_terms=all_terms,
            total_found=len(ranked),
            relevant_messages=ranked,
            relevance_scores={m.sequence_number: scores[m.sequence_number] for m in ranked},
        )

        stats = self.get_search_statistics(result)
        logger.info(
            f"Search-enhanced retrieval for conversation {conversation.id}: "
            f"terms={all_terms} found={result.total_found} avg_score={stats['avg_relevance_score']:.2f}"
        )
        return result

    @staticmethod
    def _page_items(page: Any) -> list[MessageRecord]:
        if isinstance(page, SearchPage):
            return page.items
        return list(page or [])

    def relevance(
        self,
        candidate: MessageRecord,
        current_message: MessageRecord,
        terms: list[str],
        now: Optional[datetime] = None,
    ) -> float:
        """Keyword overlap plus role, length and recency bonuses, capped at 1.0."""
        now = as_utc(now) if now is not None else as_utc(self.clock())
        content = candidate.content.lower()
        matched = sum(1 for term in terms if term.lower() in content)
        if not terms or matched == 0:
            return 0.0

        score = (matched / len(terms)) * 0.5
        if " ".join(terms).lower() in content:
            score += 0.3

        if candidate.role == USER:
            score += 0.2
        elif candidate.role == ASSISTANT:
            score += 0.1

        if len(candidate.content) > 200:
            score += 0.1

        if candidate.created_at is not None:
            age = now - candidate.created_at
            if age < timedelta(days=1):
                score += 0.1
            elif age < timedelta(days=7):
                score += 0.05

        if (
            current_message.role == USER
            and candidate.role == USER
            and "?" in current_message.content
            and "?" in candidate.content
        ):
            score += 0.1

        return round(min(score, 1.0), 6)

    @staticmethod
    def get_search_statistics(result: RelevanceResult) -> dict[str, Any]:
        """Aggregate figures about a lookup, for logging and the API."""
        scores = list(result.relevance_scores.values())
        return {
            "search_performed": result.search_performed,
            "search_terms_count": len(result.search_terms),
            "relevant_messages_found": result.total_found,
            "avg_relevance_score": sum(scores) / len(scores) if scores else 0.0,
            "max_relevance_score": max(scores) if scores else 0.0,
            "min_relevance_score": min(scores) if scores else 0.0,
            "search_terms": list(result.search_terms),
        }
