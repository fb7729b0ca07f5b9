"""
mentorguard.engine.vocabulary — Context derivation heuristics
==============================================================

The challenge context cache derives keywords, allowed topics, forbidden
patterns, and learning objectives from a challenge's text.  Those rules
are tables and regexes, not logic, so they live behind the
:class:`ContextVocabulary` strategy.  A deployment with a different
curriculum language or domain swaps in its own vocabulary without
touching the cache.
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from collections.abc import Iterable, Sequence

MAX_KEYWORDS = 50
MAX_OBJECTIVES = 5
FALLBACK_SENTENCES = 3
MIN_SENTENCE_LENGTH = 20
MIN_WORD_LENGTH = 4


def dedupe(items: Iterable[str]) -> list[str]:
    """Drop repeats, keeping first-seen order."""
    return list(dict.fromkeys(items))


class ContextVocabulary(ABC):
    """Strategy for deriving a challenge context from its text."""

    @abstractmethod
    def extract_keywords(self, text: str) -> list[str]:
        """Keywords found in *text*, deduplicated, at most 50."""

    @abstractmethod
    def allowed_topics(self, category: str, difficulty: str) -> list[str]:
        ...

    @abstractmethod
    def forbidden_patterns(
        self, category: str, trap_patterns: Sequence[str]
    ) -> list[str]:
        """Regex sources a prompt for this challenge must not match."""

    @abstractmethod
    def learning_objectives(self, instructions: str) -> list[str]:
        ...


# ---------------------------------------------------------------------------
# Default (English) vocabulary
# ---------------------------------------------------------------------------
TECHNICAL_TERMS: tuple[str, ...] = (
    # General concepts
    "api", "rest", "graphql", "database", "sql", "nosql", "mongodb", "postgresql",
    "authentication", "authorization", "jwt", "oauth", "security", "encryption",
    "frontend", "backend", "fullstack", "react", "vue", "angular", "node", "express",
    "python", "django", "flask", "java", "spring", "kotlin", "go", "rust",
    "docker", "kubernetes", "aws", "azure", "gcp", "devops", "ci/cd", "testing",
    "algorithm", "data structure", "performance", "optimization", "cache", "redis",
    "microservices", "serverless", "cloud", "deploy", "scalability", "architecture",
    "design pattern", "solid", "clean code", "refactoring", "debug", "log",
    "websocket", "streaming", "async", "promise", "callback", "event", "queue",
    "validation", "error handling", "middleware", "router", "controller", "service",
    "repository", "entity", "model", "schema", "migration", "orm", "query",
    # Programming fundamentals
    "function", "class", "variable", "method", "object", "array", "list",
    "loop", "condition", "iteration", "recursion", "inheritance", "polymorphism",
    "encapsulation", "abstraction", "interface", "implementation", "instance",
    "compilation", "interpretation", "execution", "syntax", "semantics",
    "library", "framework", "dependency", "module", "package", "namespace",
)

STOP_WORDS: frozenset[str] = frozenset({
    "about", "above", "after", "again", "against", "being", "below",
    "between", "could", "during", "each", "other", "should", "there",
    "these", "those", "through", "under", "until", "where", "which",
    "while", "would", "your", "their", "before", "since", "with",
    "from", "that", "this", "what", "when", "then", "because", "very",
    "more", "less", "still", "also", "always", "never", "here", "into",
    "must", "will", "were", "have", "been", "they", "them", "make",
    "using", "than", "such", "only", "some", "just", "like",
})

BASE_TOPICS: tuple[str, ...] = (
    "implementation", "algorithm", "logic", "structure", "pattern",
    "best practice", "optimization", "debug", "testing", "validation",
    "error handling", "edge case", "performance", "complexity", "approach",
    "solution", "method", "technique", "strategy", "concept",
)

CATEGORY_TOPICS: dict[str, tuple[str, ...]] = {
    "BACKEND": (
        "api design", "database schema", "authentication", "authorization",
        "middleware", "routing", "validation", "orm", "query optimization",
        "caching", "session management", "security", "encryption", "hashing",
    ),
    "FRONTEND": (
        "component", "state management", "rendering", "event handling",
        "dom manipulation", "styling", "responsive design", "accessibility",
        "user experience", "interaction", "animation", "performance optimization",
    ),
    "FULLSTACK": (
        "integration", "api consumption", "data flow", "state synchronization",
        "full stack architecture", "deploy", "environment configuration",
    ),
    "DEVOPS": (
        "deploy", "ci/cd", "containerization", "orchestration",
        "monitoring", "logging", "scalability", "infrastructure", "automation",
    ),
    "MOBILE": (
        "mobile ui", "touch events", "navigation", "offline support",
        "push notifications", "device apis", "responsive layout", "performance",
    ),
    "DATA": (
        "data processing", "etl", "data pipeline", "analytics", "visualization",
        "machine learning", "data modeling", "query optimization", "indexing",
    ),
}

DIFFICULTY_TOPICS: dict[str, tuple[str, ...]] = {
    "EASY": ("basic", "simple", "fundamental", "introduction", "beginner"),
    "MEDIUM": ("intermediate", "practical", "common pattern", "pattern"),
    "HARD": ("advanced", "complex", "optimization", "scalability", "efficiency"),
    "EXPERT": ("expert", "architecture", "system design", "distributed", "concurrent"),
}

BASE_FORBIDDEN_PATTERNS: tuple[str, ...] = (
    r"eval\s*\(",
    r"exec\s*\(",
    r"\$\{.*\}",
    r"<script",
    r"document\.cookie",
    r"localStorage\.",
    r"__proto__",
    r"require\s*\(.*\.\.",
)

CATEGORY_FORBIDDEN_PATTERNS: dict[str, tuple[str, ...]] = {
    "BACKEND": (
        r"DROP\s+TABLE",
        r"DELETE\s+FROM\s+users",
        r"; --",
        r"admin.*true",
        r"password.*=.*[\"']",
    ),
    "FRONTEND": (
        r"innerHTML\s*=",
        r"document\.write",
        r"on\w+\s*=",
    ),
    "FULLSTACK": (
        r"cors.*\*",
        r"csrf.*disable",
    ),
}

OBJECTIVE_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"\blearn\s+(?:how\s+)?(?:to\s+)?([^.]+)",
        r"\bunderstand\s+([^.]+)",
        r"\bmaster\s+([^.]+)",
        r"\bpractice\s+([^.]+)",
        r"\bimplement\s+([^.]+)",
        r"\bbuild\s+([^.]+)",
        r"\bcreate\s+([^.]+)",
        r"\bdevelop\s+([^.]+)",
    )
)

_NON_WORD = re.compile(r"[^\w\s/]|_")
_SENTENCE_END = re.compile(r"[.!?]")


class DefaultVocabulary(ContextVocabulary):
    """English technical vocabulary for programming challenges.

    *technical_terms* and *stop_words* may be overridden per instance;
    the topic and pattern tables are class attributes so a subclass can
    replace them wholesale.
    """

    base_topics = BASE_TOPICS
    category_topics = CATEGORY_TOPICS
    difficulty_topics = DIFFICULTY_TOPICS
    base_forbidden_patterns = BASE_FORBIDDEN_PATTERNS
    category_forbidden_patterns = CATEGORY_FORBIDDEN_PATTERNS
    objective_patterns = OBJECTIVE_PATTERNS

    def __init__(
        self,
        technical_terms: Iterable[str] = TECHNICAL_TERMS,
        stop_words: Iterable[str] = STOP_WORDS,
    ) -> None:
        self.technical_terms = tuple(t.lower() for t in technical_terms)
        self.stop_words = frozenset(w.lower() for w in stop_words)
        # Whole-word match so "go" does not fire on "good"
        self._term_patterns = [
            (term, re.compile(rf"(?<!\w){re.escape(term)}(?!\w)"))
            for term in self.technical_terms
        ]

    def extract_keywords(self, text: str) -> list[str]:
        lower = text.lower()
        found = [term for term, pattern in self._term_patterns if pattern.search(lower)]

        for word in _NON_WORD.sub(" ", lower).split():
            if len(word) < MIN_WORD_LENGTH or word in self.stop_words:
                continue
            found.append(word)

        return dedupe(found)[:MAX_KEYWORDS]

    def allowed_topics(self, category: str, difficulty: str) -> list[str]:
        return [
            *self.base_topics,
            *self.category_topics.get(str(category).upper(), ()),
            *self.difficulty_topics.get(str(difficulty).upper(), ()),
        ]

    def forbidden_patterns(
        self, category: str, trap_patterns: Sequence[str]
    ) -> list[str]:
        return [
            *self.base_forbidden_patterns,
            *self.category_forbidden_patterns.get(str(category).upper(), ()),
            *(p for p in trap_patterns if p),
        ]

    def learning_objectives(self, instructions: str) -> list[str]:
        objectives: list[str] = []
        for pattern in self.objective_patterns:
            for match in pattern.finditer(instructions):
                objective = match.group(1).strip().lower()
                if objective:
                    objectives.append(objective)

        if not objectives:
            sentences = [
                s.strip() for s in _SENTENCE_END.split(instructions)
                if len(s.strip()) > MIN_SENTENCE_LENGTH
            ]
            objectives = [s.lower() for s in sentences[:FALLBACK_SENTENCES]]

        return objectives[:MAX_OBJECTIVES]
