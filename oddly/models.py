from __future__ import annotations

from datetime import datetime
from enum import Enum

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from oddly.utils import new_id, utc_now


class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Enumerations (stored as plain strings)
# ---------------------------------------------------------------------------


class ChallengeStatus(str, Enum):
    OPEN = "OPEN"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CLOSED = "CLOSED"


class VettingStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class ContributionType(str, Enum):
    CODE = "CODE"
    DESIGN = "DESIGN"
    IDEA = "IDEA"
    RESEARCH = "RESEARCH"


class KycStatus(str, Enum):
    PENDING = "PENDING"
    VERIFIED = "VERIFIED"
    REJECTED = "REJECTED"


class PaymentMethod(str, Enum):
    CRYPTO = "CRYPTO"
    FIAT = "FIAT"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class JoinProposalStatus(str, Enum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    WITHDRAWN = "WITHDRAWN"


class SubmissionStatus(str, Enum):
    DRAFT = "DRAFT"
    SUBMITTED = "SUBMITTED"
    IN_REVIEW = "IN_REVIEW"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    REVISION_REQUESTED = "REVISION_REQUESTED"


# ---------------------------------------------------------------------------
# Core entities
# ---------------------------------------------------------------------------


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    email: Mapped[str] = mapped_column(String(300), unique=True, nullable=False)
    role: Mapped[str] = mapped_column(String(20), default="USER")
    wallet_address: Mapped[str] = mapped_column(String(100), default="")
    kyc_status: Mapped[str] = mapped_column(String(20), default=KycStatus.PENDING.value)
    kyc_verified_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)


class Reputation(Base):
    __tablename__ = "reputations"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(32), ForeignKey("users.id"), unique=True, nullable=False)
    as_contributor: Mapped[int] = mapped_column(Integer, default=0)
    as_project_leader: Mapped[int] = mapped_column(Integer, default=0)
    as_sponsor: Mapped[int] = mapped_column(Integer, default=0)
    disputes_raised: Mapped[int] = mapped_column(Integer, default=0)
    disputes_against: Mapped[int] = mapped_column(Integer, default=0)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)


class Challenge(Base):
    __tablename__ = "challenges"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    title: Mapped[str] = mapped_column(String(300), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    bounty_amount: Mapped[float] = mapped_column(Float, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=ChallengeStatus.OPEN.value)
    vetting_status: Mapped[str] = mapped_column(String(20), default=VettingStatus.PENDING.value)
    vetting_notes: Mapped[str] = mapped_column(Text, default="")
    vetted_by: Mapped[str | None] = mapped_column(String(32), ForeignKey("users.id"), nullable=True)
    vetted_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    sponsor_id: Mapped[str] = mapped_column(String(32), ForeignKey("users.id"), nullable=False)
    project_leader_id: Mapped[str | None] = mapped_column(String(32), ForeignKey("users.id"), nullable=True)
    scoping_complete: Mapped[bool] = mapped_column(Boolean, default=False)
    scope_signed_off: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, onupdate=utc_now)

    contributions: Mapped[list[Contribution]] = relationship(
        "Contribution", back_populates="challenge", cascade="all, delete-orphan",
        order_by="Contribution.created_at",
    )


class Contribution(Base):
    __tablename__ = "contributions"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    challenge_id: Mapped[str] = mapped_column(String(32), ForeignKey("challenges.id"), nullable=False)
    user_id: Mapped[str] = mapped_column(String(32), ForeignKey("users.id"), nullable=False)
    type: Mapped[str] = mapped_column(String(20), nullable=False)  # CODE | DESIGN | IDEA | RESEARCH
    content: Mapped[str] = mapped_column(Text, default="")
    token_value: Mapped[float] = mapped_column(Float, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)

    challenge: Mapped[Challenge] = relationship("Challenge", back_populates="contributions")

    __table_args__ = (Index("ix_contributions_challenge_created", "challenge_id", "created_at"),)


class CompositionManifest(Base):
    __tablename__ = "composition_manifests"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    challenge_id: Mapped[str] = mapped_column(String(32), ForeignKey("challenges.id"), unique=True, nullable=False)
    leader_id: Mapped[str] = mapped_column(String(32), ForeignKey("users.id"), nullable=False)
    entries_json: Mapped[str] = mapped_column(Text, default="[]")  # [{contributorId, type, weight, ref}]
    total_declared: Mapped[float] = mapped_column(Float, default=0.0)
    signed_by_leader: Mapped[bool] = mapped_column(Boolean, default=False)
    signed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, onupdate=utc_now)


class PayoutProposal(Base):
    __tablename__ = "payout_proposals"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    challenge_id: Mapped[str] = mapped_column(String(32), ForeignKey("challenges.id"), nullable=False, index=True)
    leader_id: Mapped[str] = mapped_column(String(32), ForeignKey("users.id"), nullable=False)
    distribution_json: Mapped[str] = mapped_column(Text, default="[]")  # [{userId, amount, reason}]
    within_tolerance: Mapped[bool] = mapped_column(Boolean, default=True)
    tolerance_note: Mapped[str] = mapped_column(Text, default="")
    signed_by_leader: Mapped[bool] = mapped_column(Boolean, default=False)
    leader_signed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    sponsor_approved: Mapped[bool] = mapped_column(Boolean, default=False)
    sponsor_approved_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    audit_status: Mapped[str] = mapped_column(String(20), default="PENDING")
    evidence_pack_url: Mapped[str] = mapped_column(String(500), default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)


class Payment(Base):
    __tablename__ = "payments"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    challenge_id: Mapped[str] = mapped_column(String(32), ForeignKey("challenges.id"), nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(String(32), ForeignKey("users.id"), nullable=False)
    amount: Mapped[float] = mapped_column(Float, nullable=False)
    method: Mapped[str] = mapped_column(String(10), default=PaymentMethod.FIAT.value)
    status: Mapped[str] = mapped_column(String(20), default=PaymentStatus.PENDING.value)
    blockchain_tx_hash: Mapped[str | None] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, onupdate=utc_now)


class JoinProposal(Base):
    """A contributor's request to join a challenge, answered by its leader."""

    __tablename__ = "join_proposals"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    challenge_id: Mapped[str] = mapped_column(String(32), ForeignKey("challenges.id"), nullable=False, index=True)
    contributor_id: Mapped[str] = mapped_column(String(32), ForeignKey("users.id"), nullable=False, index=True)
    message: Mapped[str] = mapped_column(Text, default="")
    status: Mapped[str] = mapped_column(String(20), default=JoinProposalStatus.PENDING.value)
    responded_by: Mapped[str | None] = mapped_column(String(32), ForeignKey("users.id"), nullable=True)
    responded_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    response_message: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, onupdate=utc_now)


class Submission(Base):
    __tablename__ = "submissions"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    challenge_id: Mapped[str] = mapped_column(String(32), ForeignKey("challenges.id"), nullable=False, index=True)
    contributor_id: Mapped[str] = mapped_column(String(32), ForeignKey("users.id"), nullable=False, index=True)
    proposal_id: Mapped[str | None] = mapped_column(String(32), ForeignKey("join_proposals.id"), nullable=True)
    title: Mapped[str] = mapped_column(String(300), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    status: Mapped[str] = mapped_column(String(20), default=SubmissionStatus.DRAFT.value)
    submitted_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    reviewed_by: Mapped[str | None] = mapped_column(String(32), ForeignKey("users.id"), nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    review_notes: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, onupdate=utc_now)


class SubmissionFile(Base):
    """Links a stored file to a submission.

    ``file_id`` is a plain reference: the same content-addressed artifact
    may be attached to several submissions.
    """

    __tablename__ = "submission_files"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    submission_id: Mapped[str] = mapped_column(String(32), ForeignKey("submissions.id"), nullable=False, index=True)
    file_id: Mapped[str] = mapped_column(String(32), nullable=False)
    original_name: Mapped[str] = mapped_column(String(500), default="")
    sha256: Mapped[str] = mapped_column(String(64), default="")
    size: Mapped[int] = mapped_column(Integer, default=0)
    uploaded_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)


# ---------------------------------------------------------------------------
# Governance records
# ---------------------------------------------------------------------------


class Event(Base):
    """Append-only audit record. Rows are never updated or deleted."""

    __tablename__ = "events"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    actor_id: Mapped[str] = mapped_column(String(32), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(32), nullable=False)
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    content_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    metadata_json: Mapped[str] = mapped_column(Text, default="{}")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)

    __table_args__ = (
        Index("ix_events_entity_created", "entity_type", "entity_id", "created_at"),
        Index("ix_events_actor_created", "actor_id", "created_at"),
    )


class FileArtifact(Base):
    __tablename__ = "file_artifacts"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    owner_id: Mapped[str] = mapped_column(String(32), nullable=False)
    challenge_id: Mapped[str | None] = mapped_column(String(32), ForeignKey("challenges.id"), nullable=True)
    filename: Mapped[str] = mapped_column(String(300), nullable=False)
    mime: Mapped[str] = mapped_column(String(100), default="application/octet-stream")
    bytes: Mapped[int] = mapped_column(Integer, nullable=False)
    sha256: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    storage_key: Mapped[str] = mapped_column(String(500), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)


class AICache(Base):
    __tablename__ = "ai_cache"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    service: Mapped[str] = mapped_column(String(50), nullable=False)
    input_hash: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    response_json: Mapped[str] = mapped_column(Text, nullable=False)
    confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class SafetyModerationResult(Base):
    __tablename__ = "safety_moderation_results"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(32), nullable=False)
    overall_score: Mapped[float] = mapped_column(Float, nullable=False)
    categories_json: Mapped[str] = mapped_column(Text, default="{}")
    flagged: Mapped[bool] = mapped_column(Boolean, default=False)
    detection_method: Mapped[str] = mapped_column(String(20), default="LOCAL")
    confidence: Mapped[float] = mapped_column(Float, default=0.0)
    incident_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)

    __table_args__ = (Index("ix_moderation_entity", "entity_type", "entity_id"),)


class SafetyIncident(Base):
    __tablename__ = "safety_incidents"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    challenge_id: Mapped[str | None] = mapped_column(String(32), ForeignKey("challenges.id"), nullable=True)
    raised_by_id: Mapped[str | None] = mapped_column(String(32), nullable=True)  # None = system
    status: Mapped[str] = mapped_column(String(20), default="OPEN")
    category: Mapped[str] = mapped_column(String(30), nullable=False)
    severity: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    ai_detected: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)
    closed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class EthicsAudit(Base):
    __tablename__ = "ethics_audits"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    challenge_id: Mapped[str] = mapped_column(String(32), ForeignKey("challenges.id"), nullable=False, index=True)
    fairness_score: Mapped[float] = mapped_column(Float, nullable=False)
    gini_coefficient: Mapped[float] = mapped_column(Float, nullable=False)
    red_flags_json: Mapped[str] = mapped_column(Text, default="[]")
    yellow_flags_json: Mapped[str] = mapped_column(Text, default="[]")
    green_flags_json: Mapped[str] = mapped_column(Text, default="[]")
    recommendations_json: Mapped[str] = mapped_column(Text, default="[]")
    evidence_links_json: Mapped[str] = mapped_column(Text, default="[]")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)


class EvidencePackage(Base):
    __tablename__ = "evidence_packages"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    challenge_id: Mapped[str] = mapped_column(String(32), ForeignKey("challenges.id"), nullable=False, index=True)
    package_type: Mapped[str] = mapped_column(String(30), nullable=False)
    file_name: Mapped[str] = mapped_column(String(300), nullable=False)
    file_size: Mapped[int] = mapped_column(Integer, nullable=False)
    storage_key: Mapped[str] = mapped_column(String(500), nullable=False)
    sha256: Mapped[str] = mapped_column(String(64), nullable=False)
    content_digest: Mapped[str] = mapped_column(String(64), default="")
    includes_events: Mapped[bool] = mapped_column(Boolean, default=False)
    includes_files: Mapped[bool] = mapped_column(Boolean, default=False)
    includes_signatures: Mapped[bool] = mapped_column(Boolean, default=False)
    includes_ai_analysis: Mapped[bool] = mapped_column(Boolean, default=False)
    verification_token: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    verification_url: Mapped[str] = mapped_column(String(500), default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)
