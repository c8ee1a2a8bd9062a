from __future__ import annotations

from dataclasses import dataclass
from typing import Union


@dataclass(frozen=True)
class EscalationTrigger:
    category: str
    keywords: tuple[str, ...]


@dataclass(frozen=True)
class NoMatch:
    pass


@dataclass(frozen=True)
class Matched:
    category: str
    keywords: tuple[str, ...]


DetectionResult = Union[NoMatch, Matched]


# Iteration order is part of the contract: the first category with a hit wins.
DEFAULT_TRIGGERS: tuple[EscalationTrigger, ...] = (
    EscalationTrigger(
        "system_error",
        (
            "エラー",
            "バグ",
            "動かない",
            "表示されない",
            "クラッシュ",
            "フリーズ",
            "500",
            "404",
            "システム障害",
            "error",
            "bug",
            "crash",
            "freeze",
            "frozen",
            "not working",
            "doesn't work",
            "does not work",
            "not showing",
            "not displayed",
            "system failure",
            "outage",
        ),
    ),
    EscalationTrigger(
        "bug_report",
        (
            "不具合",
            "おかしい",
            "壊れ",
            "正しく動作しない",
            "意図しない動作",
            "broken",
            "defect",
            "malfunction",
            "glitch",
            "incorrect behavior",
            "unexpected behavior",
        ),
    ),
    EscalationTrigger(
        "urgent",
        (
            "緊急",
            "至急",
            "急ぎ",
            "すぐに",
            "今すぐ",
            "大至急",
            "urgent",
            "asap",
            "emergency",
            "immediately",
            "right now",
        ),
    ),
)

# Human-readable labels used in notifications.
TRIGGER_LABELS: dict[str, str] = {
    "system_error": "System error",
    "bug_report": "Bug report",
    "urgent": "Urgent",
    "manual": "Manual escalation",
    "sentiment": "Negative sentiment",
}


class EscalationDetector:
    def __init__(self, triggers: tuple[EscalationTrigger, ...] = DEFAULT_TRIGGERS) -> None:
        # Fold keywords once; matching is case-insensitive substring containment.
        self._triggers = tuple(
            (trigger.category, tuple((keyword, keyword.casefold()) for keyword in trigger.keywords))
            for trigger in triggers
        )

    def detect(self, message: str) -> DetectionResult:
        folded = message.casefold()
        for category, keywords in self._triggers:
            hits = tuple(keyword for keyword, needle in keywords if needle and needle in folded)
            if hits:
                return Matched(category=category, keywords=hits)
        return NoMatch()


_default_detector = EscalationDetector()


def detect_escalation(message: str) -> DetectionResult:
    return _default_detector.detect(message)
