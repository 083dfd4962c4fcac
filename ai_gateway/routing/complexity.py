"""Heuristic query complexity scoring and token estimation."""

import math
import re
from collections.abc import Iterable

from ai_gateway.core.models import ChatMessage

SIMPLE_ANCHOR = 0.2
NEUTRAL_ANCHOR = 0.5
COMPLEX_ANCHOR = 0.8

MAX_LENGTH_CHARS = 500
MAX_AVG_WORD_LENGTH = 10.0

ANCHOR_WEIGHT = 0.6
LENGTH_WEIGHT = 0.25
WORD_LENGTH_WEIGHT = 0.15

CODE_BLOCK_BOOST = 0.3
ARITHMETIC_BOOST = 0.2
MULTI_QUESTION_BOOST = 0.2

# Per-message framing overhead used by chat formats
MESSAGE_OVERHEAD_TOKENS = 4

COMPLEX_PATTERNS = [
    re.compile(r"```"),
    re.compile(r"\b(def|class|function|import|async|await|const|lambda)\b"),
    re.compile(r"\b(implement|refactor|debug|optimi[sz]e|algorithm|complexity)\b", re.I),
    re.compile(r"\b(prove|proof|theorem|lemma|derive|derivation|integral|derivative|equation)\b", re.I),
    re.compile(r"\b(calculate|solve|compute)\b", re.I),
    re.compile(r"\b(step[- ]by[- ]step|analy[sz]e|compare and contrast|trade-?offs?|evaluate)\b", re.I),
    re.compile(r"\bfirst\b.*\bthen\b", re.I | re.S),
]

SIMPLE_PATTERNS = [
    re.compile(r"^\s*(hi|hello|hey|thanks|thank you|good (morning|afternoon|evening))\b[\s\w,!.?]*$", re.I),
    re.compile(r"^\s*(what is|what's|who is|define|definition of|meaning of)\b[^`]{0,80}$", re.I),
    re.compile(r"^\s*(translate|how do you say)\b", re.I),
]

_CODE_BLOCK = re.compile(r"```")
_ARITHMETIC = re.compile(r"\d\s*[-+*/^%=]\s*\d")


class QueryComplexityAnalyzer:
    """Scores natural-language queries from 0 (trivial) to 1 (hard)."""

    def score(self, query: str) -> float:
        """Score a query.

        Complex patterns take precedence over simple ones; the matched anchor
        is blended with normalized length and average word length, then
        indicator boosts are added.

        Args:
            query: Raw query text

        Returns:
            Complexity in [0, 1]
        """
        anchor = self._anchor(query)

        length_score = min(len(query), MAX_LENGTH_CHARS) / MAX_LENGTH_CHARS

        words = query.split()
        avg_word_length = sum(len(w) for w in words) / len(words) if words else 0.0
        word_score = min(avg_word_length / MAX_AVG_WORD_LENGTH, 1.0)

        weighted = (
            ANCHOR_WEIGHT * anchor
            + LENGTH_WEIGHT * length_score
            + WORD_LENGTH_WEIGHT * word_score
        ) / (ANCHOR_WEIGHT + LENGTH_WEIGHT + WORD_LENGTH_WEIGHT)

        boost = 0.0
        if _CODE_BLOCK.search(query):
            boost += CODE_BLOCK_BOOST
        if _ARITHMETIC.search(query):
            boost += ARITHMETIC_BOOST
        if query.count("?") > 1:
            boost += MULTI_QUESTION_BOOST

        return max(0.0, min(1.0, weighted + boost))

    def _anchor(self, query: str) -> float:
        if any(p.search(query) for p in COMPLEX_PATTERNS):
            return COMPLEX_ANCHOR
        if any(p.search(query) for p in SIMPLE_PATTERNS):
            return SIMPLE_ANCHOR
        return NEUTRAL_ANCHOR

    def estimate_tokens(self, text: str) -> int:
        return estimate_tokens(text)


def estimate_tokens(text: str) -> int:
    """Cheap token estimate: one token per four characters, rounded up."""
    return math.ceil(len(text) / 4)


def estimate_messages_tokens(messages: Iterable[ChatMessage]) -> int:
    return sum(estimate_tokens(m.content) + MESSAGE_OVERHEAD_TOKENS for m in messages)
