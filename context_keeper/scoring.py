"""
Preservation scoring.

Tags each message with semantic markers (system instruction, question, code,
user preference, error/solution, recency, conversational flow) and turns the
markers into a priority score used by the retention strategies.
"""

import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional, Sequence

from context_keeper.models import ASSISTANT, SYSTEM, USER, MessageRecord, as_utc, utc_now

SYSTEM_WEIGHT = 2.5
OTHER_WEIGHT_CAP = 2.0
UNKNOWN_MARKER_WEIGHT = 0.1
DETAILED_CONTENT_LENGTH = 500
CONVERSATION_RESTART_GAP = timedelta(hours=24)

# Weights for everything except system_message, which is SYSTEM_WEIGHT.
MARKER_WEIGHTS: dict[str, float] = {
    "important_content": 0.9,
    "error_or_problem": 0.8,
    "solution": 0.8,
    "user_preference": 0.7,
    "definition": 0.7,
    "question_in_pair": 0.6,
    "answer_in_pair": 0.6,
    "code_content": 0.6,
    "error_solution_pair": 0.5,
    "context_reference": 0.5,
    "detailed_content": 0.4,
    "question": 0.4,
    "follow_up_question": 0.3,
    "recent": 0.3,
    "conversation_starter": 0.2,
    "topic_change": 0.2,
}

REASONS = [
    ("system_message", "System instruction"),
    ("important_content", "Contains important keywords"),
    ("user_preference", "User preference or personal info"),
    ("error_or_problem", "Error or problem description"),
    ("solution", "Solution or answer"),
    ("question_in_pair", "Question in Q&A pair"),
    ("code_content", "Contains code"),
    ("context_reference", "References previous context"),
]

_IMPORTANT = re.compile(
    r"\b(remember|important|note|warning|critical|urgent|attention|caution|alert|"
    r"essential|crucial|vital|must|never forget|do not forget|don't forget)\b"
)
_CREDENTIAL = re.compile(
    r"\b(password|passphrase|api[ _-]?key|secret|access[ _-]?token|private key|credentials?)\b"
    r"|\b(sk|pk|ghp|xox[bp])[-_][a-z0-9_-]{8,}"
)
_INTERROGATIVE = re.compile(
    r"^(what|how|why|when|where|who|whom|whose|which|can|could|would|should|will|"
    r"is|are|was|were|do|does|did|have|has|may|might)\b"
)
_CODE = re.compile(r"```|`[^`\n]+`")
_PREFERENCE = re.compile(
    r"\b(my favou?rite|i prefer|i like|i love|i hate|i dislike|i usually|i always|"
    r"i never|my name is|call me)\b"
)
_PROBLEM = re.compile(
    r"\b(error|errors|bug|bugs|issue|problem|fail|fails|failed|failing|failure|broken|"
    r"exception|crash|crashes|crashed|stuck|trouble|doesn't work|does not work|not working)\b"
)
_SOLUTION = re.compile(
    r"\b(solution|fix|fixed|fixes|resolve|resolved|workaround|try this|here's how|"
    r"to solve|the way to|you can)\b"
)
_DEFINITION = re.compile(
    r"\b(is defined as|refers to|in other words|definition of|stands for)\b"
)
_CONTEXT_REFERENCE = re.compile(
    r"\b(as we discussed|as discussed|we discussed|earlier you said|you said|you mentioned|"
    r"remember when|as i mentioned|we talked about|we covered|like we|previously)\b"
)
_FOLLOW_UP = re.compile(
    r"^(also|additionally|furthermore|moreover|and what about|what about|and how about|"
    r"how about|and|but|however)\b"
)
_GREETING = re.compile(r"^(hello|hi|hey|good morning|good afternoon|good evening)\b")
_TOPIC_CHANGE = re.compile(
    r"\b(by the way|speaking of|on another note|changing topics|different question|"
    r"new topic|something else)\b"
)


@dataclass(frozen=True)
class PreservationInfo:
    """Markers, priority and a human-readable reason for one message."""

    markers: frozenset[str]
    priority_score: float
    reason: str


def priority_for(markers: Iterable[str]) -> float:
    """Weighted sum of markers; system messages outrank everything else."""
    markers = set(markers)
    others = sum(
        MARKER_WEIGHTS.get(marker, UNKNOWN_MARKER_WEIGHT)
        for marker in markers
        if marker != "system_message"
    )
    score = min(others, OTHER_WEIGHT_CAP)
    if "system_message" in markers:
        score += SYSTEM_WEIGHT
    return round(score, 6)


def reason_for(markers: Iterable[str]) -> str:
    markers = set(markers)
    reasons = [text for marker, text in REASONS if marker in markers]
    return ", ".join(reasons) or "General preservation"


class PreservationScorer:
    """Computes preservation markers and priority scores for messages."""

    def __init__(
        self,
        recency_window: timedelta = timedelta(minutes=60),
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Initialize scorer.

        Args:
            recency_window: Age under which a message is marked recent
            clock: Source of "now" when score() is not given one
        """
        self.recency_window = recency_window
        self.clock = clock

    def score(
        self, messages: Sequence[MessageRecord], now: Optional[datetime] = None
    ) -> dict[int, PreservationInfo]:
        """
        Score every message.

        Returns:
            Mapping of sequence number to PreservationInfo. Messages without
            markers are present with an empty marker set and score 0.
        """
        now = as_utc(now) if now is not None else as_utc(self.clock())
        ordered = sorted(messages, key=lambda m: m.sequence_number)
        content_markers = [self._content_markers(m, now) for m in ordered]
        flow_markers = self._flow_markers(ordered, content_markers)

        result: dict[int, PreservationInfo] = {}
        for message, markers, flow in zip(ordered, content_markers, flow_markers):
            combined = frozenset(markers | flow)
            result[message.sequence_number] = PreservationInfo(
                markers=combined,
                priority_score=priority_for(combined),
                reason=reason_for(combined),
            )
        return result

    def _content_markers(self, message: MessageRecord, now: datetime) -> set[str]:
        markers: set[str] = set()
        content = message.content.lower()
        stripped = content.strip()

        if message.role == SYSTEM:
            markers.add("system_message")
        if "?" in content or _INTERROGATIVE.match(stripped):
            markers.add("question")
        if _IMPORTANT.search(content) or _CREDENTIAL.search(content):
            markers.add("important_content")
        if _CODE.search(content):
            markers.add("code_content")
        if message.role == USER and _PREFERENCE.search(content):
            markers.add("user_preference")
        if _PROBLEM.search(content):
            markers.add("error_or_problem")
        if _SOLUTION.search(content):
            markers.add("solution")
        if _DEFINITION.search(content):
            markers.add("definition")
        if _CONTEXT_REFERENCE.search(content):
            markers.add("context_reference")
        if len(message.content) > DETAILED_CONTENT_LENGTH:
            markers.add("detailed_content")
        if message.created_at is not None and now - message.created_at < self.recency_window:
            markers.add("recent")

        return markers

    def _flow_markers(
        self, ordered: list[MessageRecord], content_markers: list[set[str]]
    ) -> list[set[str]]:
        flow: list[set[str]] = [set() for _ in ordered]

        for i, message in enumerate(ordered):
            prev = ordered[i - 1] if i > 0 else None
            nxt = ordered[i + 1] if i + 1 < len(ordered) else None
            stripped = message.content.lower().strip()

            if message.role == USER and nxt is not None and nxt.role == ASSISTANT:
                flow[i].add("question_in_pair")
            elif message.role == ASSISTANT and prev is not None and prev.role == USER:
                flow[i].add("answer_in_pair")

            # A follow-up comes right after a completed question/answer pair
            if (
                message.role == USER
                and i >= 2
                and prev.role == ASSISTANT
                and ordered[i - 2].role == USER
                and _FOLLOW_UP.match(stripped)
            ):
                flow[i].add("follow_up_question")

            if (
                nxt is not None
                and "error_or_problem" in content_markers[i]
                and "solution" in content_markers[i + 1]
                and nxt.role != message.role
            ):
                flow[i].add("error_solution_pair")
                flow[i + 1].add("error_solution_pair")

            if prev is None or self._is_restart(message, prev, stripped):
                flow[i].add("conversation_starter")
            elif _TOPIC_CHANGE.search(stripped):
                flow[i].add("topic_change")

        return flow

    def _is_restart(self, message: MessageRecord, prev: MessageRecord, stripped: str) -> bool:
        if message.created_at is not None and prev.created_at is not None:
            if message.created_at - prev.created_at > CONVERSATION_RESTART_GAP:
                return True
        return bool(_GREETING.match(stripped))

    def filter_by_markers(
        self,
        messages: Sequence[MessageRecord],
        marker_map: dict[int, PreservationInfo],
        required: Iterable[str] = (),
        min_score: float = 0.0,
    ) -> list[MessageRecord]:
        """
        Select messages carrying any of the required markers.

        A message passes if it has at least one of `required` (when given)
        and a priority score of at least `min_score`. Order is preserved.
        """
        required = set(required)
        selected = []
        for message in messages:
            info = marker_map.get(message.sequence_number)
            if info is None or info.priority_score < min_score:
                continue
            if required and not (required & info.markers):
                continue
            selected.append(message)
        return selected
