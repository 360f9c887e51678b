"""
Heuristic complexity scoring for transcripts.

A high score predicts a long backend turn, which is when the client plays a
"thinking" cue. Advisory only.
"""
import re
from dataclasses import dataclass, field
from typing import List

LENGTH_REQUESTS = (
    "in detail", "step by step", "step-by-step", "paragraph", "essay", "long answer",
    "full explanation", "elaborate", "everything about", "tell me more", "walk me through",
)
EXPLANATION_VERBS = (
    "explain", "describe", "compare", "analyze", "analyse", "summarize", "summarise",
    "discuss", "why", "how does", "how do", "how would", "what if",
)
DEPTH_MODIFIERS = (
    "deeply", "thoroughly", "comprehensive", "detailed", "in depth", "in-depth",
    "extensively", "exhaustive", "nuanced",
)
BROAD_TOPICS = (
    "history", "philosophy", "science", "economics", "politics", "universe",
    "religion", "psychology", "technology", "evolution", "climate", "meaning of life",
)

LENGTH_WEIGHT = 3
VERB_WEIGHT = 2
DEPTH_WEIGHT = 2
TOPIC_WEIGHT = 1
MAX_TOPIC_POINTS = 2


@dataclass
class ComplexityScore:
    score: int
    word_count: int
    signals: List[str] = field(default_factory=list)


def _contains(text: str, phrase: str) -> bool:
    return re.search(r"\b" + re.escape(phrase) + r"\b", text) is not None


def score_transcript(transcript: str) -> ComplexityScore:
    text = (transcript or "").lower()
    words = re.findall(r"[\w']+", text)
    result = ComplexityScore(score=0, word_count=len(words))

    if any(_contains(text, p) for p in LENGTH_REQUESTS):
        result.score += LENGTH_WEIGHT
        result.signals.append("length_request")
    if any(_contains(text, p) for p in EXPLANATION_VERBS):
        result.score += VERB_WEIGHT
        result.signals.append("explanation_verb")
    if any(_contains(text, p) for p in DEPTH_MODIFIERS):
        result.score += DEPTH_WEIGHT
        result.signals.append("depth_modifier")

    topics = sum(1 for p in BROAD_TOPICS if _contains(text, p))
    if topics:
        result.score += min(topics, MAX_TOPIC_POINTS) * TOPIC_WEIGHT
        result.signals.append("broad_topic")

    if len(words) > 25:
        result.score += 2
        result.signals.append("long_prompt")
    elif len(words) > 12:
        result.score += 1
        result.signals.append("medium_prompt")

    return result
