"""Keyword-based problem statement classifier.

A cheap, deterministic, rule-based scorer that labels a free-text problem
statement with a complexity, a bug type and a priority before the job is
dispatched.  The complexity label is forwarded to the worker workflow; all
three are stored on the job for filtering and statistics.

Matching is plain substring containment on the lower-cased text, so
``"log"`` also hits ``"login"``.  Confidence values are heuristic scores in
the 30-95 range, not calibrated probabilities.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Literal

logger = logging.getLogger(__name__)

Complexity = Literal["simple", "medium", "complex"]
Priority = Literal["P0", "P1", "P2", "P3"]


# =============================================================================
#  Keyword tables
# =============================================================================

SIMPLE_KEYWORDS: tuple[str, ...] = (
    "typo", "spelling", "comment", "log", "console.log",
    "documentation", "readme", "docs", "text",
    "label", "title", "placeholder", "tooltip",
    "color", "css", "style", "spacing", "margin", "padding",
    "rename", "remove unused", "dead code",
)

MEDIUM_KEYWORDS: tuple[str, ...] = (
    "add feature", "implement", "create endpoint",
    "bug fix", "error handling", "validation",
    "api endpoint", "route", "controller",
    "component", "form", "modal", "dropdown",
    "integration", "third-party", "service",
    "cache", "state management",
)

COMPLEX_KEYWORDS: tuple[str, ...] = (
    "architecture", "redesign", "refactor entire", "rewrite",
    "database schema", "migration", "upgrade",
    "security vulnerability", "sql injection", "xss", "csrf",
    "performance optimization", "memory leak", "race condition",
    "distributed", "scalability", "microservice",
    "authentication system", "authorization",
    "real-time", "websocket", "streaming",
    "infrastructure", "deployment pipeline",
)

# Declaration order is the tie-break order: the first category with the
# highest count wins.
BUG_TYPE_KEYWORDS: dict[str, tuple[str, ...]] = {
    "frontend": (
        "ui", "ux", "react", "component", "render", "display",
        "button", "form", "input", "modal", "dropdown",
        "css", "style", "layout", "responsive",
        "click", "hover", "animation", "transition",
        "next.js", "tailwind", "typescript",
    ),
    "backend": (
        "server", "api", "endpoint", "route", "controller",
        "service", "business logic", "processing",
        "node.js", "express", "fastify",
        "request", "response", "middleware",
    ),
    "database": (
        "database", "db", "sql", "query", "table", "column",
        "postgres", "mysql", "mongodb", "supabase",
        "migration", "schema", "index",
        "insert", "update", "delete", "select",
    ),
    "api": (
        "rest api", "graphql", "webhook", "http",
        "get", "post", "put", "patch", "delete",
        "status code", "404", "500", "401", "403",
        "json", "payload", "headers",
    ),
    "security": (
        "security", "vulnerability", "exploit",
        "xss", "csrf", "sql injection", "authentication",
        "authorization", "permission", "access control",
        "token", "jwt", "oauth", "encryption",
        "password", "credential", "secret",
    ),
    "performance": (
        "performance", "slow", "optimization", "speed",
        "memory leak", "cpu", "latency", "timeout",
        "cache", "caching", "lazy load",
        "bundle size", "load time", "ttfb",
    ),
    "ui-ux": (
        "user experience", "usability", "accessibility",
        "a11y", "aria", "screen reader",
        "navigation", "flow", "user journey",
        "mobile", "tablet", "desktop",
    ),
    "authentication": (
        "login", "logout", "sign in", "sign up",
        "session", "cookie", "token expired",
        "password reset", "forgot password",
        "email verification", "2fa", "mfa",
    ),
    "deployment": (
        "deployment", "build", "ci/cd", "pipeline",
        "docker", "kubernetes", "vercel", "netlify",
        "environment", "production", "staging",
        "deploy failed", "build error",
    ),
    "documentation": (
        "documentation", "docs", "readme", "comment",
        "jsdoc", "type definition", "interface",
        "example", "guide", "tutorial",
    ),
    "testing": (
        "test", "jest", "vitest", "cypress", "playwright",
        "unit test", "integration test", "e2e",
        "coverage", "mock", "stub",
    ),
    "configuration": (
        "config", "configuration", "settings", "env",
        "environment variable", ".env",
        "package.json", "tsconfig", "eslint",
    ),
}

P0_KEYWORDS: tuple[str, ...] = (
    "critical", "blocker", "urgent", "asap", "emergency",
    "production down", "outage", "broken", "not working",
    "security breach", "data loss", "exploit",
    "all users affected", "complete failure",
    "payment failing", "checkout broken",
)

P1_KEYWORDS: tuple[str, ...] = (
    "high priority", "important", "major",
    "user impact", "many users", "regression",
    "login issue", "authentication failing",
    "data corruption", "incorrect calculation",
    "performance issue", "very slow",
)

P2_KEYWORDS: tuple[str, ...] = (
    "medium", "normal", "improvement",
    "some users", "intermittent", "sometimes",
    "minor bug", "edge case",
    "nice to have", "enhancement",
)

P3_KEYWORDS: tuple[str, ...] = (
    "low priority", "minor", "trivial",
    "typo", "cosmetic", "polish",
    "documentation", "comment",
    "cleanup", "refactor",
)

_MENTIONS_USERS = re.compile(r"users?|customers?|clients?")
_MENTIONS_PRODUCTION = re.compile(r"production|prod|live")
_STRONG_COMPLEXITY_INDICATOR = re.compile(r"typo|comment|documentation|architecture|refactor")
_NAMED_CATEGORY = re.compile(r"\b(frontend|backend|database|api|security|performance)\b")
_EXPLICIT_PRIORITY = re.compile(r"\b(critical|blocker|urgent|low priority|high priority)\b")

COMPLEXITY_REASONS: dict[str, str] = {
    "simple": "Contains simple fix keywords like typo, documentation, or styling",
    "medium": "Requires moderate implementation effort with feature additions or bug fixes",
    "complex": "Involves architectural changes, security, or system-wide modifications",
}

BUG_TYPE_REASONS: dict[str, str] = {
    "frontend": "UI/UX issue affecting user interface components",
    "backend": "Server-side logic or API processing issue",
    "database": "Database schema, query, or data integrity issue",
    "api": "REST/GraphQL API endpoint or integration issue",
    "security": "Security vulnerability or access control issue",
    "performance": "Performance, optimization, or resource usage issue",
    "ui-ux": "User experience or accessibility concern",
    "authentication": "Login, session, or user authentication issue",
    "deployment": "Build, deployment, or environment configuration issue",
    "documentation": "Documentation, comments, or examples update",
    "testing": "Test coverage, test failures, or testing infrastructure",
    "configuration": "Configuration, settings, or environment variables",
    "other": "General issue not matching specific categories",
}

PRIORITY_REASONS: dict[str, str] = {
    "P0": "Critical/Blocker - Immediate attention required, production impact",
    "P1": "High Priority - Significant user impact, fix within 1-2 days",
    "P2": "Medium Priority - Normal fix, schedule within sprint",
    "P3": "Low Priority - Nice to have, can be deferred",
}

# Rough agent cost per completed job, in USD.
ESTIMATED_COST_USD: dict[str, float] = {
    "simple": 0.05,
    "medium": 0.34,
    "complex": 0.80,
}


# =============================================================================
#  Result data class
# =============================================================================


@dataclass(frozen=True)
class Classification:
    """Outcome of classifying one problem statement."""

    complexity: Complexity
    bug_type: str
    priority: Priority
    confidence: dict[str, int] = field(default_factory=dict)
    reasoning: dict[str, str] = field(default_factory=dict)


# =============================================================================
#  Classifier
# =============================================================================


def _count_hits(text: str, keywords: tuple[str, ...]) -> int:
    return sum(1 for keyword in keywords if keyword in text)


def _word_count(text: str) -> int:
    return len(re.split(r"\s+", text))


class ProblemClassifier:
    """Scores a problem statement against keyword tables.

    Decisions, in order:

    Complexity
        1. ``<= 10`` words and no complex keyword → simple
        2. any complex keyword → complex
        3. more simple than medium hits → simple
        4. otherwise → medium
    Priority
        1. any P0 keyword, or ``!!`` plus a production mention → P0
        2. any P1 keyword, or a users/customers mention without P2 keywords → P1
        3. more P3 than P2 hits → P3
        4. otherwise → P2
    """

    def classify(self, problem_statement: str) -> Classification:
        text = problem_statement.lower()

        complexity = self.detect_complexity(text)
        bug_type = self.detect_bug_type(text)
        priority = self.detect_priority(text)

        result = Classification(
            complexity=complexity,
            bug_type=bug_type,
            priority=priority,
            confidence={
                "complexity": self._complexity_confidence(text),
                "bug_type": self._bug_type_confidence(bug_type, text),
                "priority": self._priority_confidence(text),
            },
            reasoning={
                "complexity": COMPLEXITY_REASONS[complexity],
                "bug_type": BUG_TYPE_REASONS[bug_type],
                "priority": PRIORITY_REASONS[priority],
            },
        )
        logger.debug(
            "Problem classified",
            extra={"complexity": complexity, "bug_type": bug_type, "priority": priority},
        )
        return result

    @staticmethod
    def detect_complexity(text: str) -> Complexity:
        simple_score = _count_hits(text, SIMPLE_KEYWORDS)
        medium_score = _count_hits(text, MEDIUM_KEYWORDS)
        complex_score = _count_hits(text, COMPLEX_KEYWORDS)

        if _word_count(text) <= 10 and complex_score == 0:
            return "simple"
        if complex_score > 0:
            return "complex"
        if simple_score > medium_score and simple_score > 0:
            return "simple"
        return "medium"

    @staticmethod
    def detect_bug_type(text: str) -> str:
        best_type = "other"
        best_score = 0
        for bug_type, keywords in BUG_TYPE_KEYWORDS.items():
            score = _count_hits(text, keywords)
            if score > best_score:
                best_type, best_score = bug_type, score
        return best_type

    @staticmethod
    def detect_priority(text: str) -> Priority:
        p0_score = _count_hits(text, P0_KEYWORDS)
        p1_score = _count_hits(text, P1_KEYWORDS)
        p2_score = _count_hits(text, P2_KEYWORDS)
        p3_score = _count_hits(text, P3_KEYWORDS)

        repeated_exclamation = text.count("!") >= 2
        mentions_users = _MENTIONS_USERS.search(text) is not None
        mentions_production = _MENTIONS_PRODUCTION.search(text) is not None

        if p0_score > 0 or (repeated_exclamation and mentions_production):
            return "P0"
        if p1_score > 0 or (mentions_users and p2_score == 0):
            return "P1"
        if p3_score > p2_score and p3_score > 0:
            return "P3"
        return "P2"

    @staticmethod
    def _complexity_confidence(text: str) -> int:
        words = _word_count(text)
        if _STRONG_COMPLEXITY_INDICATOR.search(text):
            return 90
        if words > 50:
            return 70
        if words > 20:
            return 60
        if words <= 10:
            return 80
        return 50

    @staticmethod
    def _bug_type_confidence(bug_type: str, text: str) -> int:
        if bug_type == "other":
            return 30
        if _NAMED_CATEGORY.search(text):
            return 95
        return 70

    @staticmethod
    def _priority_confidence(text: str) -> int:
        return 95 if _EXPLICIT_PRIORITY.search(text) else 60


_default_classifier = ProblemClassifier()


def classify_problem(problem_statement: str) -> Classification:
    """Classify ``problem_statement`` with the default keyword tables."""
    return _default_classifier.classify(problem_statement)
