"""
Importance scoring and promotion heuristics for session memory.

Everything here is keyword/regex based so it runs without a model.
"""

import re
from dataclasses import dataclass
from typing import Literal, Optional

from ..types import Message, Role

Importance = Literal["low", "medium", "high"]

HIGH_IMPORTANCE_KEYWORDS = [
    "bug", "fix", "error", "security", "performance", "optimiz", "crash",
    "修复", "问题", "优化", "性能", "安全",
]

TOPIC_KEYWORDS = [
    "React", "TypeScript", "Python", "Node.js", "API", "Database",
    "AI", "LLM", "MCP", "RAG", "Context", "Embedding",
    "Bug", "Fix", "Error", "Performance", "Architecture", "Design",
    "Component", "State", "Memory", "Storage", "File", "Search",
]

DECISION_PATTERNS = [
    re.compile(r"(?:we decided|decided to|decision was|chose to|will use|using)\s+([^.]+)", re.I),
    re.compile(r"(?:解决方案|solution|方法|approach)[:\s]+([^.]+)", re.I),
]

FINDING_PATTERNS = [
    re.compile(r"(?:found|discovered|learned|noticed|realized|important|critical|key)s?[:\s]+([^.]+)", re.I),
    re.compile(r"(?:发现|重要|关键|注意)[:\s]+([^.]+)", re.I),
]

CODE_FIX_RE = re.compile(r"\b(fix|bug|error|issue|repair|solve|resolve)\b", re.I)
LEARNING_RE = re.compile(r"\b(learn|discover|understand|realize|notice)\b", re.I)
TECH_STACK_RE = re.compile(
    r"\b(react|typescript|electron|node|python|api|database|server|client)\b", re.I
)


def calculate_memory_importance(
    topics: list[str],
    decisions: list[str],
    key_findings: list[str],
) -> Importance:
    """
    Weighted importance: decisions x2, findings x1.5, topics x0.5, +3 if any
    topic matches a high-importance keyword. High at >= 5, medium at >= 2.
    """
    score = len(decisions) * 2 + len(key_findings) * 1.5 + len(topics) * 0.5

    if any(k in t.lower() for t in topics for k in HIGH_IMPORTANCE_KEYWORDS):
        score += 3

    if score >= 5:
        return "high"
    if score >= 2:
        return "medium"
    return "low"


@dataclass
class PromotionCriteria:
    """
    Overrides for the promotion signals. ``None`` means "derive from content".
    """

    has_code_fix: Optional[bool] = None
    has_learning: Optional[bool] = None
    has_tech_stack: Optional[bool] = None
    user_marked_important: bool = False
    mention_count: int = 0
    min_session_length: int = 10


def promotion_score(
    decisions: list[str],
    key_findings: list[str],
    topics: list[str],
    criteria: Optional[PromotionCriteria] = None,
) -> int:
    criteria = criteria or PromotionCriteria()
    has_code_fix = criteria.has_code_fix
    if has_code_fix is None:
        has_code_fix = any(CODE_FIX_RE.search(d) for d in decisions)
    has_learning = criteria.has_learning
    if has_learning is None:
        has_learning = any(LEARNING_RE.search(f) for f in key_findings)
    has_tech_stack = criteria.has_tech_stack
    if has_tech_stack is None:
        has_tech_stack = any(TECH_STACK_RE.search(t) for t in topics)

    return (
        (3 if has_code_fix else 0)
        + (2 if has_learning else 0)
        + (1 if has_tech_stack else 0)
        + (5 if criteria.user_marked_important else 0)
        + min(criteria.mention_count, 3)
    )


def should_promote_to_permanent_memory(
    decisions: list[str],
    key_findings: list[str],
    topics: list[str],
    session_length: int,
    criteria: Optional[PromotionCriteria] = None,
) -> bool:
    """
    Promote when the signal score reaches 3, or when the session is long
    enough on its own (``session_length >= criteria.min_session_length``).
    """
    criteria = criteria or PromotionCriteria()
    score = promotion_score(decisions, key_findings, topics, criteria)
    return score >= 3 or session_length >= criteria.min_session_length


def _dedupe(items: list[str], limit: int) -> list[str]:
    return list(dict.fromkeys(items))[:limit]


def extract_topics(messages: list[Message], limit: int = 5) -> list[str]:
    topics: list[str] = []
    for msg in messages:
        content = (msg.content or "").lower()
        for keyword in TOPIC_KEYWORDS:
            if keyword.lower() in content and keyword not in topics:
                topics.append(keyword)
    return topics[:limit]


def extract_decisions(messages: list[Message], limit: int = 5) -> list[str]:
    decisions = []
    for msg in messages:
        if msg.role != Role.ASSISTANT:
            continue
        for pattern in DECISION_PATTERNS:
            for match in pattern.finditer(msg.content or ""):
                decisions.append(match.group(1).strip()[:150])
    return _dedupe(decisions, limit)


def extract_key_findings(messages: list[Message], limit: int = 5) -> list[str]:
    findings = []
    for msg in messages:
        for pattern in FINDING_PATTERNS:
            for match in pattern.finditer(msg.content or ""):
                findings.append(match.group(1).strip()[:200])
    return _dedupe(findings, limit)


def generate_session_summary(messages: list[Message]) -> str:
    """Model-free fallback summary built from the last few exchanges."""
    user_msgs = [m for m in messages if m.role == Role.USER][-5:]
    assistant_msgs = [m for m in messages if m.role == Role.ASSISTANT][-5:]

    exchanges = []
    for i, user in enumerate(user_msgs):
        reply = assistant_msgs[i].content if i < len(assistant_msgs) else "N/A"
        exchanges.append(f"User: {user.content[:200]}...\nAssistant: {reply[:200]}...")

    recent = "\n\n---\n\n".join(exchanges)
    return f"Session contains {len(messages)} messages.\n\nRecent conversation:\n{recent}"
