"""Fairness audit of a challenge's payout.

The pure functions at the top (Gini, flag detectors, scoring,
recommendations) take plain values and never touch the database;
``EthicsAuditor`` gathers those values, runs them, and stores the result.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy import desc, select
from sqlalchemy.orm import Session

from oddly import repository
from oddly.config import Settings, get_settings
from oddly.errors import NotFoundError, ValidationError
from oddly.models import EthicsAudit, Event, Reputation
from oddly.utils import json_parse, outside_tolerance

log = logging.getLogger(__name__)

DOMINANCE_THRESHOLD = 0.7
EXTREME_GINI = 0.7
MODERATE_GINI = 0.5
FAIR_GINI = 0.4
VARIANCE_TOLERANCE = 0.05
SUSPICIOUS_WINDOW = timedelta(hours=1)
TRANSPARENT_WINDOW = timedelta(hours=24)

EVIDENCE_ACTIONS = ("MANIFEST_SIGNED", "PAYOUT_PROPOSED", "CONTRIBUTION_SUBMITTED", "CHALLENGE_COMPLETED")


@dataclass
class Recommendation:
    type: str  # CRITICAL | WARNING | SUGGESTION
    description: str
    action_required: bool

    def as_dict(self) -> dict:
        return {"type": self.type, "description": self.description, "actionRequired": self.action_required}


@dataclass
class AuditInputs:
    """Everything the flag detectors look at, as plain values."""

    contributions: list[tuple[str, str]]  # (user_id, type)
    distribution: list[tuple[str, float]]  # (user_id, amount)
    manifest_entries: list[dict] | None = None  # None when there is no manifest
    manifest_signed: bool = False
    manifest_signed_at: datetime | None = None
    proposal_created_at: datetime | None = None
    leader_reputation: Reputation | None = None

    @property
    def has_manifest(self) -> bool:
        return self.manifest_entries is not None

    def recipient_totals(self) -> dict[str, float]:
        """Payout per recipient, with repeated entries for one user added together."""
        totals: dict[str, float] = {}
        for user_id, amount in self.distribution:
            totals[user_id] = totals.get(user_id, 0.0) + amount
        return totals

    @property
    def amounts(self) -> list[float]:
        return list(self.recipient_totals().values())

    @property
    def total_payout(self) -> float:
        return sum(self.amounts)

    def shares(self) -> dict[str, float]:
        total = self.total_payout
        if total == 0:
            return {}
        return {user_id: amount / total for user_id, amount in self.recipient_totals().items()}


@dataclass
class EthicsAuditResult:
    fairness_score: float
    gini_coefficient: float
    red_flags: list[str] = field(default_factory=list)
    yellow_flags: list[str] = field(default_factory=list)
    green_flags: list[str] = field(default_factory=list)
    recommendations: list[Recommendation] = field(default_factory=list)
    evidence_links: list[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "fairnessScore": self.fairness_score,
            "giniCoefficient": self.gini_coefficient,
            "redFlags": list(self.red_flags),
            "yellowFlags": list(self.yellow_flags),
            "greenFlags": list(self.green_flags),
            "recommendations": [r.as_dict() for r in self.recommendations],
            "evidenceLinks": list(self.evidence_links),
        }


# ---------------------------------------------------------------------------
# Calculators
# ---------------------------------------------------------------------------


def gini(values: list[float]) -> float:
    """Gini coefficient of non-negative values, clamped to [0, 1].

    Fewer than two values, or a zero total, is defined as perfect equality (0).
    """
    n = len(values)
    if n < 2:
        return 0.0
    total = sum(values)
    if total == 0:
        return 0.0
    ordered = sorted(values)
    weighted = sum((i + 1) * x for i, x in enumerate(ordered))
    g = (2 * weighted - (n + 1) * total) / (n * total)
    return max(0.0, min(1.0, g))


def interpret_gini(g: float) -> str:
    if g < 0.3:
        return "EXCELLENT"
    if g < 0.4:
        return "GOOD"
    if g < 0.6:
        return "FAIR"
    if g < 0.7:
        return "POOR"
    return "EXTREME"


def fairness_score(g: float, red_count: int, green_count: int, settings: Settings | None = None) -> float:
    """1.0 minus a Gini penalty and a per-red-flag penalty, plus a small green bonus.

    More red flags never raise the score; zero red flags at G=0 gives 1.0.
    """
    s = settings or get_settings()
    score = 1.0 - g * s.gini_weight - red_count * s.red_flag_penalty + green_count * s.green_flag_bonus
    return max(0.0, min(1.0, score))


def interpret_fairness(score: float) -> str:
    if score >= 0.85:
        return "EXCELLENT"
    if score >= 0.7:
        return "GOOD"
    if score >= 0.5:
        return "FAIR"
    if score >= 0.3:
        return "POOR"
    return "CRITICAL"


# ---------------------------------------------------------------------------
# Flag detectors
# ---------------------------------------------------------------------------


def _contributor_ids(inputs: AuditInputs) -> set[str]:
    return {user_id for user_id, _ in inputs.contributions}


def _paid_ids(inputs: AuditInputs) -> set[str]:
    return {user_id for user_id, amount in inputs.recipient_totals().items() if amount > 0}


def _types(inputs: AuditInputs) -> set[str]:
    return {ctype.upper() for _, ctype in inputs.contributions}


def _has_variance(inputs: AuditInputs) -> bool:
    shares = inputs.shares()
    if not shares:
        return False
    for entry in inputs.manifest_entries or []:
        weight = float(entry.get("weight") or 0)
        if outside_tolerance(weight, shares.get(entry.get("contributorId"), 0.0), VARIANCE_TOLERANCE):
            return True
    return False


def _signed_gap(inputs: AuditInputs) -> timedelta | None:
    if inputs.manifest_signed_at is None or inputs.proposal_created_at is None:
        return None
    return inputs.proposal_created_at - inputs.manifest_signed_at


def detect_red_flags(inputs: AuditInputs, g: float) -> list[str]:
    flags: list[str] = []
    total = inputs.total_payout
    if total > 0 and max(inputs.amounts) / total > DOMINANCE_THRESHOLD:
        flags.append("SINGLE_CONTRIBUTOR_DOMINANCE")
    if _contributor_ids(inputs) - _paid_ids(inputs):
        flags.append("UNPAID_WORK_DETECTED")
    if g > EXTREME_GINI:
        flags.append("EXTREME_INEQUALITY")
    if inputs.has_manifest:
        listed = {e.get("contributorId") for e in inputs.manifest_entries or []}
        if _contributor_ids(inputs) - listed:
            flags.append("MISSING_ATTRIBUTION")
        gap = _signed_gap(inputs)
        if gap is not None and gap < SUSPICIOUS_WINDOW:
            flags.append("SUSPICIOUS_TIMING")
        if _has_variance(inputs):
            flags.append("UNEXPLAINED_VARIANCE")
    if len(_types(inputs)) == 1:
        flags.append("NO_DIVERSE_ROLES")
    rep = inputs.leader_reputation
    if rep is not None and (
        rep.disputes_against >= 3 or (rep.as_project_leader < 50 and rep.disputes_against > 0)
    ):
        flags.append("EXPLOITATION_PATTERN")
    return flags


def detect_yellow_flags(inputs: AuditInputs, g: float) -> list[str]:
    flags: list[str] = []
    if MODERATE_GINI < g <= EXTREME_GINI:
        flags.append("MODERATE_INEQUALITY")
    if not inputs.has_manifest:
        flags.append("MISSING_MANIFEST")
    elif not inputs.manifest_signed:
        flags.append("UNSIGNED_MANIFEST")
    return flags


def detect_green_flags(inputs: AuditInputs, g: float) -> list[str]:
    flags: list[str] = []
    if len(_types(inputs)) >= 3:
        flags.append("DIVERSE_CONTRIBUTION_TYPES")
    contributors = _contributor_ids(inputs)
    if contributors and not contributors - _paid_ids(inputs):
        flags.append("ALL_CONTRIBUTORS_PAID")
    if g < FAIR_GINI:
        flags.append("FAIR_DISTRIBUTION")
    gap = _signed_gap(inputs)
    if inputs.has_manifest and gap is not None and gap >= TRANSPARENT_WINDOW:
        flags.append("TRANSPARENT_MANIFEST")
    if (inputs.manifest_signed and inputs.manifest_entries
            and inputs.shares() and not _has_variance(inputs)):
        flags.append("MANIFEST_MATCHES_PAYOUT")
    return flags


_RED_FLAG_ADVICE: dict[str, tuple[str, str, bool]] = {
    "SINGLE_CONTRIBUTOR_DOMINANCE": (
        "CRITICAL",
        "One contributor receives >70% of payout. Review contribution weights to ensure fair attribution.",
        True,
    ),
    "UNPAID_WORK_DETECTED": (
        "CRITICAL",
        "Contributors with recorded work are not receiving payment. Ensure all contributors are compensated.",
        True,
    ),
    "MISSING_ATTRIBUTION": (
        "CRITICAL",
        "Some contributors are missing from the composition manifest. "
        "Update manifest to include all contributors.",
        True,
    ),
    "SUSPICIOUS_TIMING": (
        "WARNING",
        "Manifest was signed <1 hour before payout proposal. Allow adequate review time for transparency.",
        True,
    ),
    "UNEXPLAINED_VARIANCE": (
        "CRITICAL",
        "Payout percentages deviate >5% from manifest weights without explanation. "
        "Align payouts with agreed attribution.",
        True,
    ),
    "NO_DIVERSE_ROLES": (
        "WARNING",
        "All contributions are the same type. Consider if additional skills/roles were needed but unrecognized.",
        False,
    ),
    "EXPLOITATION_PATTERN": (
        "CRITICAL",
        "Project leader has history of disputes/unfair distributions. Require additional oversight for this payout.",
        True,
    ),
}


def build_recommendations(
    red_flags: list[str], green_flags: list[str], g: float, has_manifest: bool,
) -> list[Recommendation]:
    recs: list[Recommendation] = []
    for flag in red_flags:
        if flag == "EXTREME_INEQUALITY":
            recs.append(Recommendation(
                "CRITICAL",
                f"Distribution shows extreme inequality (Gini: {g:.2f}). "
                "Consider more equitable payout allocation.",
                True,
            ))
        elif flag in _RED_FLAG_ADVICE:
            recs.append(Recommendation(*_RED_FLAG_ADVICE[flag]))

    if not red_flags and len(green_flags) >= 3:
        recs.append(Recommendation(
            "SUGGESTION",
            "Excellent fairness practices detected. This distribution serves as a good model for future challenges.",
            False,
        ))
    if not has_manifest:
        recs.append(Recommendation(
            "WARNING",
            "No composition manifest found. Create and sign a manifest to improve transparency and auditability.",
            True,
        ))
    if MODERATE_GINI < g <= EXTREME_GINI and "EXTREME_INEQUALITY" not in red_flags:
        recs.append(Recommendation(
            "WARNING",
            f"Distribution shows moderate inequality (Gini: {g:.2f}). "
            "Review if this reflects actual contribution differences.",
            False,
        ))
    return recs


def evaluate(inputs: AuditInputs, settings: Settings | None = None) -> EthicsAuditResult:
    """Run every calculator and detector over already-gathered inputs."""
    g = gini(inputs.amounts)
    red = detect_red_flags(inputs, g)
    yellow = detect_yellow_flags(inputs, g)
    green = detect_green_flags(inputs, g)
    return EthicsAuditResult(
        fairness_score=fairness_score(g, len(red), len(green), settings),
        gini_coefficient=g,
        red_flags=red,
        yellow_flags=yellow,
        green_flags=green,
        recommendations=build_recommendations(red, green, g, inputs.has_manifest),
    )


# ---------------------------------------------------------------------------
# Database-backed auditor
# ---------------------------------------------------------------------------


class EthicsAuditor:
    def __init__(self, session: Session, settings: Settings | None = None):
        self.session = session
        self.settings = settings or get_settings()

    def gather(self, challenge_id: str) -> AuditInputs:
        challenge = repository.get_challenge(self.session, challenge_id)
        if challenge is None:
            raise NotFoundError("Challenge")

        proposal = repository.get_latest_proposal(self.session, challenge_id)
        totals: dict[str, float] = {}
        if proposal is not None:
            for d in repository.proposal_distribution(proposal):
                user_id = str(d.get("userId") or "")
                totals[user_id] = totals.get(user_id, 0.0) + float(d.get("amount") or 0)
            if not totals:
                raise ValidationError("Invalid or empty distribution in payout proposal")
        else:
            log.info("No payout proposal for %s, using payment records", challenge_id)
            for payment in repository.get_payments(self.session, challenge_id):
                totals[payment.user_id] = totals.get(payment.user_id, 0.0) + payment.amount
            if not totals:
                log.error("No payout proposal or payments found for challenge %s", challenge_id)
                raise ValidationError(f"No payout proposal or payments found for challenge: {challenge_id}")
        distribution = list(totals.items())

        manifest = repository.get_manifest(self.session, challenge_id)
        entries = repository.manifest_entries(manifest) if manifest is not None else None
        if entries:
            declared = sum(float(e.get("weight") or 0) for e in entries)
            if outside_tolerance(declared, 1.0, self.settings.manifest_tolerance):
                log.warning("Manifest weights for %s sum to %s, expected 1.0", challenge_id, declared)

        return AuditInputs(
            contributions=[(c.user_id, c.type) for c in repository.get_contributions(self.session, challenge_id)],
            distribution=distribution,
            manifest_entries=entries,
            manifest_signed=bool(manifest and manifest.signed_by_leader),
            manifest_signed_at=manifest.signed_at if manifest is not None else None,
            proposal_created_at=proposal.created_at if proposal is not None else None,
            leader_reputation=repository.get_reputation(self.session, challenge.project_leader_id),
        )

    def evidence_links(self, challenge_id: str) -> list[str]:
        events = self.session.execute(
            select(Event)
            .where(
                Event.entity_type == "CHALLENGE",
                Event.entity_id == challenge_id,
                Event.action.in_(EVIDENCE_ACTIONS),
            )
            .order_by(Event.created_at, Event.id)
        ).scalars()
        links = [f"event:{e.id}:{e.action}" for e in events]
        links.extend(f"file:{f.sha256}:{f.filename}"
                     for f in repository.get_challenge_files(self.session, challenge_id))
        return links

    def audit_challenge(self, challenge_id: str) -> tuple[EthicsAuditResult, EthicsAudit]:
        """Audit and store the result (caller must commit)."""
        inputs = self.gather(challenge_id)
        result = evaluate(inputs, self.settings)
        result.evidence_links = self.evidence_links(challenge_id)

        record = EthicsAudit(
            challenge_id=challenge_id,
            fairness_score=result.fairness_score,
            gini_coefficient=result.gini_coefficient,
            red_flags_json=json.dumps(result.red_flags),
            yellow_flags_json=json.dumps(result.yellow_flags),
            green_flags_json=json.dumps(result.green_flags),
            recommendations_json=json.dumps([r.as_dict() for r in result.recommendations]),
            evidence_links_json=json.dumps(result.evidence_links),
        )
        self.session.add(record)
        self.session.flush()
        log.info(
            "Ethics audit %s for %s: fairness %.2f (%s), gini %.3f, %d red, %d green",
            record.id, challenge_id, result.fairness_score, interpret_fairness(result.fairness_score),
            result.gini_coefficient, len(result.red_flags), len(result.green_flags),
        )
        return result, record

    def get_audit_history(self, challenge_id: str) -> list[EthicsAudit]:
        return list(self.session.execute(
            select(EthicsAudit)
            .where(EthicsAudit.challenge_id == challenge_id)
            .order_by(desc(EthicsAudit.created_at))
        ).scalars())

    def get_latest_audit(self, challenge_id: str) -> EthicsAudit | None:
        history = self.get_audit_history(challenge_id)
        return history[0] if history else None


def audit_summary(audit: EthicsAudit) -> dict:
    return {
        "id": audit.id,
        "challengeId": audit.challenge_id,
        "fairnessScore": audit.fairness_score,
        "giniCoefficient": audit.gini_coefficient,
        "redFlags": json_parse(audit.red_flags_json, []),
        "yellowFlags": json_parse(audit.yellow_flags_json, []),
        "greenFlags": json_parse(audit.green_flags_json, []),
        "recommendations": json_parse(audit.recommendations_json, []),
        "evidenceLinks": json_parse(audit.evidence_links_json, []),
        "createdAt": audit.created_at.isoformat(),
    }
