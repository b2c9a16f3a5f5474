"""Keyword and pattern based content screening.

Scores text in six categories against the rule table from
``Settings.load_safety_rules()``. Results are cached in ``ai_cache`` by a
hash of (content, entity type, entity id); a cache hit is returned as
stored and is not analysed or persisted again.
"""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from sqlalchemy import desc, select
from sqlalchemy.orm import Session

from oddly.config import Settings, get_settings
from oddly.models import AICache, Challenge, SafetyIncident, SafetyModerationResult
from oddly.utils import canonical_hash, json_parse, utc_now

log = logging.getLogger(__name__)

SERVICE_NAME = "SAFETY"
CATEGORIES = ("harassment", "hate", "selfHarm", "violence", "sexual", "spam")
CATEGORY_NAMES = {
    "harassment": "HARASSMENT",
    "hate": "HATE",
    "selfHarm": "SELF_HARM",
    "violence": "VIOLENCE",
    "sexual": "SEXUAL",
    "spam": "SPAM",
}


@dataclass
class SafetyAnalysis:
    overall_score: float
    categories: dict[str, float]
    flagged: bool
    confidence: float
    detection_method: str = "LOCAL"

    def as_dict(self) -> dict:
        return {
            "overallScore": self.overall_score,
            "categories": dict(self.categories),
            "flagged": self.flagged,
            "confidence": self.confidence,
            "detectionMethod": self.detection_method,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SafetyAnalysis:
        return cls(
            overall_score=data["overallScore"],
            categories=dict(data["categories"]),
            flagged=data["flagged"],
            confidence=data["confidence"],
            detection_method=data.get("detectionMethod", "LOCAL"),
        )


def _word_pattern(word: str, whole: bool = True) -> re.Pattern:
    suffix = r"\b" if whole else ""
    return re.compile(rf"\b{re.escape(word)}{suffix}", re.IGNORECASE)


class LocalAnalyzer:
    """Scores one piece of text. Holds compiled rules only, no state between calls."""

    def __init__(self, rules: dict[str, Any]):
        self.rules = rules
        self.weights: dict[str, float] = {c: float(rules["weights"][c]) for c in CATEGORIES}
        self.flag_threshold = float(rules["flag_threshold"])
        self.auto_block_threshold = float(rules["auto_block_threshold"])
        self.profanity = [_word_pattern(w) for w in rules["profanity"]]
        self.harassment = [re.compile(p, re.IGNORECASE) for p in rules["harassment"]["patterns"]]
        self.hate_keywords = [_word_pattern(w, whole=False) for w in rules["hate"]["keywords"]]
        self.self_harm = [re.compile(p, re.IGNORECASE) for p in rules["selfHarm"]["patterns"]]
        self.violence_keywords = [_word_pattern(w, whole=False) for w in rules["violence"]["keywords"]]
        self.weapons = [_word_pattern(w, whole=False) for w in rules["violence"]["weapons"]]
        self.sexual_keywords = [_word_pattern(w, whole=False) for w in rules["sexual"]["keywords"]]
        self.spam = [re.compile(p, re.IGNORECASE) for p in rules["spam"]["patterns"]]

    # -- category scorers --------------------------------------------------

    def _profanity_chars(self, content: str) -> int:
        return sum(len(m.group(0)) for p in self.profanity for m in p.finditer(content))

    def _is_profane(self, content: str) -> bool:
        return any(p.search(content) for p in self.profanity)

    def harassment_score(self, content: str) -> float:
        r = self.rules["harassment"]
        score = sum(r["pattern_score"] for p in self.harassment if p.search(content))
        if self._is_profane(content):
            score += r["profanity_score"]
        return min(1.0, score)

    def hate_score(self, content: str) -> float:
        r = self.rules["hate"]
        score = 0.0
        if content:
            score += self._profanity_chars(content) / len(content) * r["profanity_ratio_weight"]
        score += sum(r["keyword_score"] for p in self.hate_keywords if p.search(content))
        return min(1.0, score)

    def self_harm_score(self, content: str) -> float:
        r = self.rules["selfHarm"]
        return min(1.0, sum(r["pattern_score"] for p in self.self_harm if p.search(content)))

    def violence_score(self, content: str) -> float:
        r = self.rules["violence"]
        score = sum(r["keyword_score"] for p in self.violence_keywords if p.search(content))
        score += sum(len(p.findall(content)) * r["weapon_score"] for p in self.weapons)
        return min(1.0, score)

    def sexual_score(self, content: str) -> float:
        r = self.rules["sexual"]
        return min(1.0, sum(r["keyword_score"] for p in self.sexual_keywords if p.search(content)))

    def spam_score(self, content: str) -> float:
        r = self.rules["spam"]
        score = sum(r["pattern_score"] for p in self.spam if p.search(content))
        letters = [ch for ch in content if ch.isascii() and ch.isalpha()]
        caps = [ch for ch in letters if ch.isupper()]
        if letters and len(caps) / len(letters) > r["caps_ratio"]:
            score += r["caps_score"]
        if sum(1 for ch in content if ch in "!?.") > r["punctuation_limit"]:
            score += r["punctuation_score"]
        return min(1.0, score)

    # -- aggregation -------------------------------------------------------

    def score_categories(self, content: str) -> dict[str, float]:
        return {
            "harassment": self.harassment_score(content),
            "hate": self.hate_score(content),
            "selfHarm": self.self_harm_score(content),
            "violence": self.violence_score(content),
            "sexual": self.sexual_score(content),
            "spam": self.spam_score(content),
        }

    def overall(self, categories: dict[str, float]) -> float:
        """Weighted mean, raised to the strongest single weighted category.

        A lone self-harm hit must be able to cross the flag threshold on its
        own, which a plain mean over six categories never allows.
        """
        total_weight = sum(self.weights.values())
        mean = sum(categories[c] * self.weights[c] for c in CATEGORIES) / total_weight
        top_weight = max(self.weights.values())
        peak = max(categories[c] * self.weights[c] / top_weight for c in CATEGORIES)
        return min(1.0, max(mean, peak))

    def analyze(self, content: str) -> SafetyAnalysis:
        categories = self.score_categories(content)
        overall = self.overall(categories)
        confidence = min(0.95, 0.6 + abs(overall - 0.5) * 0.7)
        return SafetyAnalysis(
            overall_score=overall,
            categories=categories,
            flagged=overall >= self.flag_threshold,
            confidence=confidence,
        )


def severity_for(analysis: SafetyAnalysis, floors: dict[str, int]) -> int:
    """Incident severity 1-5 from the overall score, never below a matched category's floor."""
    score = analysis.overall_score
    if score >= 0.9:
        severity = 5
    elif score >= 0.75:
        severity = 4
    elif score >= 0.6:
        severity = 3
    elif score >= 0.4:
        severity = 2
    else:
        severity = 1
    for category, floor in floors.items():
        if analysis.categories.get(category, 0) > 0:
            severity = max(severity, int(floor))
    return min(5, severity)


def top_category(categories: dict[str, float]) -> str:
    if not categories:
        return "OTHER"
    name = max(categories, key=lambda c: categories[c])
    return CATEGORY_NAMES.get(name, "OTHER")


class SafetyScreener:
    def __init__(self, session: Session, settings: Settings | None = None,
                 rules: dict[str, Any] | None = None):
        self.session = session
        self.settings = settings or get_settings()
        self.rules = rules if rules is not None else self.settings.load_safety_rules()
        self.analyzer = LocalAnalyzer(self.rules)

    @staticmethod
    def input_hash(content: str, entity_type: str, entity_id: str) -> str:
        return canonical_hash({
            "service": SERVICE_NAME,
            "content": content,
            "entityType": entity_type,
            "entityId": entity_id,
        })

    # -- cache -------------------------------------------------------------

    def _check_cache(self, input_hash: str) -> SafetyAnalysis | None:
        cached = self.session.execute(
            select(AICache).where(AICache.input_hash == input_hash)
        ).scalars().first()
        if cached is None:
            return None
        if utc_now() > cached.expires_at:
            self.session.delete(cached)
            self.session.flush()
            log.debug("Expired cache entry %s removed", input_hash)
            return None
        log.debug("Cache hit: %s", input_hash)
        return SafetyAnalysis.from_dict(json_parse(cached.response_json))

    def _set_cache(self, input_hash: str, analysis: SafetyAnalysis) -> None:
        self.session.add(AICache(
            service=SERVICE_NAME,
            input_hash=input_hash,
            response_json=json.dumps(analysis.as_dict()),
            confidence=analysis.confidence,
            expires_at=utc_now() + timedelta(seconds=self.settings.safety_cache_ttl_seconds),
        ))
        self.session.flush()

    def _store_result(self, entity_type: str, entity_id: str,
                      analysis: SafetyAnalysis) -> SafetyModerationResult:
        record = SafetyModerationResult(
            entity_type=entity_type,
            entity_id=entity_id,
            overall_score=analysis.overall_score,
            categories_json=json.dumps(analysis.categories),
            flagged=analysis.flagged,
            detection_method=analysis.detection_method,
            confidence=analysis.confidence,
        )
        self.session.add(record)
        self.session.flush()
        return record

    # -- public operations -------------------------------------------------

    def analyze_content(self, content: str, entity_type: str, entity_id: str
                        ) -> tuple[SafetyAnalysis, SafetyModerationResult | None]:
        """Analyse text, or return the cached analysis (caller must commit).

        The moderation record is ``None`` on a cache hit.
        """
        key = self.input_hash(content, entity_type, entity_id)
        cached = self._check_cache(key)
        if cached is not None:
            return cached, None

        analysis = self.analyzer.analyze(content)
        record = self._store_result(entity_type, entity_id, analysis)
        self._set_cache(key, analysis)
        if analysis.flagged:
            log.warning("Content flagged for %s:%s (score %.2f)",
                        entity_type, entity_id, analysis.overall_score)
        return analysis, record

    def moderate(self, content: str, entity_type: str, entity_id: str,
                 author_id: str | None = None) -> dict:
        """Analyse and open an incident for flagged content (caller must commit).

        Every flagged result gets an incident; only scores above the
        auto-block threshold report ``blocked``.
        """
        analysis, record = self.analyze_content(content, entity_type, entity_id)
        if not analysis.flagged:
            return {"blocked": False, "incidentId": None}

        challenge_id = None
        if entity_type == "CHALLENGE" and self.session.get(Challenge, entity_id) is not None:
            challenge_id = entity_id
        incident = SafetyIncident(
            challenge_id=challenge_id,
            raised_by_id=None,
            status="OPEN",
            category=top_category(analysis.categories),
            severity=severity_for(analysis, self.rules.get("severity_floors", {})),
            description=f"AI-detected safety issue (confidence: {analysis.confidence * 100:.1f}%)",
            ai_detected=True,
        )
        self.session.add(incident)
        self.session.flush()
        if record is not None:
            record.incident_id = incident.id
        log.warning("Safety incident %s opened (%s, severity %d) for %s:%s by %s",
                    incident.id, incident.category, incident.severity,
                    entity_type, entity_id, author_id or "unknown")
        blocked = analysis.overall_score > self.analyzer.auto_block_threshold
        return {"blocked": blocked, "incidentId": incident.id}

    def get_results(self, entity_type: str, entity_id: str) -> list[SafetyModerationResult]:
        return list(self.session.execute(
            select(SafetyModerationResult)
            .where(SafetyModerationResult.entity_type == entity_type,
                   SafetyModerationResult.entity_id == entity_id)
            .order_by(desc(SafetyModerationResult.created_at))
        ).scalars())


def moderation_summary(record: SafetyModerationResult) -> dict:
    return {
        "id": record.id,
        "entityType": record.entity_type,
        "entityId": record.entity_id,
        "overallScore": record.overall_score,
        "categories": json_parse(record.categories_json, {}),
        "flagged": record.flagged,
        "confidence": record.confidence,
        "detectionMethod": record.detection_method,
        "incidentId": record.incident_id,
        "createdAt": record.created_at.isoformat(),
    }
