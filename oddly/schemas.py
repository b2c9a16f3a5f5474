"""Pydantic request/response schemas for the oddly API.

Field names are snake_case in Python and camelCase on the wire.
"""
from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


class ChallengeCreate(CamelModel):
    title: str = Field(min_length=1, max_length=300)
    description: str = ""
    bounty_amount: float = Field(gt=0)
    project_leader_id: str | None = None


class ChallengeStatusUpdate(CamelModel):
    status: Literal["OPEN", "IN_PROGRESS", "COMPLETED", "CLOSED"]


class VettingUpdate(CamelModel):
    status: Literal["APPROVED", "REJECTED"]
    notes: str = ""


class ContributionCreate(CamelModel):
    type: Literal["CODE", "DESIGN", "IDEA", "RESEARCH"]
    content: str = ""


class CompleteChallenge(CamelModel):
    method: Literal["CRYPTO", "FIAT"] = "FIAT"


class ManifestEntry(CamelModel):
    contributor_id: str
    type: str = ""
    weight: float = Field(ge=0, le=1)
    ref: str | None = None


class ManifestUpsert(CamelModel):
    entries: list[ManifestEntry]

    @field_validator("entries")
    @classmethod
    def _unique_contributors(cls, v: list[ManifestEntry]) -> list[ManifestEntry]:
        ids = [e.contributor_id for e in v]
        if len(ids) != len(set(ids)):
            raise ValueError("Each contributor may appear only once in a manifest")
        return v


class DistributionEntry(CamelModel):
    user_id: str
    amount: float = Field(ge=0)
    reason: str | None = None


class ProposalCreate(CamelModel):
    distribution: list[DistributionEntry] = Field(min_length=1)


class JoinProposalCreate(CamelModel):
    message: str = Field(default="", max_length=5000)


class JoinProposalResponse(CamelModel):
    action: Literal["ACCEPT", "REJECT"]
    response_message: str = ""


class SubmissionCreate(CamelModel):
    title: str = Field(min_length=1, max_length=300)
    description: str = ""


class SubmissionReview(CamelModel):
    notes: str = ""


class PaymentStatusUpdate(CamelModel):
    status: Literal["PENDING", "COMPLETED", "FAILED"]
    blockchain_tx_hash: str | None = None


class SafetyAnalyzeRequest(CamelModel):
    content: str
    entity_type: str
    entity_id: str


class SafetyModerateRequest(CamelModel):
    content: str
    author_id: str | None = None


class EvidenceGenerateRequest(CamelModel):
    package_type: Literal[
        "PAYOUT_AUDIT", "COMPLIANCE_REPORT", "INCIDENT_EVIDENCE", "ETHICS_CERTIFICATION",
    ] = "PAYOUT_AUDIT"
    include_timeline: bool = True
    include_file_hashes: bool = True
    include_signatures: bool = True
    include_ai_analysis: bool = Field(False, alias="includeAIAnalysis")


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


class SplitOut(CamelModel):
    contributor_id: str
    contribution_id: str
    percentage: float
    amount: float
    token_value: float


class ComplianceCheckOut(CamelModel):
    name: str
    status: Literal["GREEN", "AMBER", "RED"]
    details: str
    blocks_action: bool | None = None


class HeartbeatOut(CamelModel):
    overall: Literal["GREEN", "AMBER", "RED"]
    checks: list[ComplianceCheckOut]
    timestamp: str
    challenge_id: str | None = None


class PayoutValidationOut(CamelModel):
    ok: bool
    violations: list[str]
    warnings: list[str]


class RecommendationOut(CamelModel):
    type: Literal["CRITICAL", "WARNING", "SUGGESTION"]
    description: str
    action_required: bool


class EthicsAuditOut(CamelModel):
    fairness_score: float = Field(ge=0, le=1)
    gini_coefficient: float = Field(ge=0, le=1)
    red_flags: list[str]
    yellow_flags: list[str]
    green_flags: list[str]
    recommendations: list[RecommendationOut]
    evidence_links: list[str]


class SafetyAnalysisOut(CamelModel):
    overall_score: float = Field(ge=0, le=1)
    categories: dict[str, float]
    flagged: bool
    confidence: float = Field(ge=0, le=1)
    detection_method: Literal["LOCAL", "API", "MANUAL"]


class ModerationOut(CamelModel):
    blocked: bool
    incident_id: str | None = None


class EvidencePackageOut(CamelModel):
    id: str
    challenge_id: str
    package_type: str
    file_name: str
    file_size: int
    sha256: str
    includes_events: bool
    includes_files: bool
    includes_signatures: bool
    includes_ai_analysis: bool = Field(alias="includesAIAnalysis")
    verification_url: str
    created_at: str


class PackageVerificationOut(CamelModel):
    package_id: str
    challenge_id: str
    sha256: str
    created_at: str
    file_exists: bool
    hash_matches: bool
    valid: bool
