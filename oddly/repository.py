"""Explicit query functions shared by the evaluators.

Component logic reads through these helpers instead of walking ORM
relationships, so every query a check depends on is visible in one place.
"""
from __future__ import annotations

from typing import Any

from sqlalchemy import desc, func, select
from sqlalchemy.orm import Session

from oddly.errors import NotFoundError
from oddly.models import (
    Challenge,
    CompositionManifest,
    Contribution,
    Event,
    FileArtifact,
    JoinProposal,
    Payment,
    PayoutProposal,
    Reputation,
    Submission,
    SubmissionFile,
    User,
)
from oddly.utils import json_parse


def get_or_raise(session: Session, model, entity_id: str, label: str = "Entity"):
    obj = session.get(model, entity_id)
    if obj is None:
        raise NotFoundError(label)
    return obj


def get_challenge(session: Session, challenge_id: str) -> Challenge | None:
    return session.get(Challenge, challenge_id)


def get_contributions(session: Session, challenge_id: str) -> list[Contribution]:
    """All contributions for a challenge, oldest first."""
    return list(session.execute(
        select(Contribution)
        .where(Contribution.challenge_id == challenge_id)
        .order_by(Contribution.created_at, Contribution.id)
    ).scalars())


def get_contributors(session: Session, challenge_id: str) -> list[User]:
    """Distinct users with at least one contribution, in first-contribution order."""
    users: dict[str, User] = {}
    for contribution in get_contributions(session, challenge_id):
        if contribution.user_id not in users:
            user = session.get(User, contribution.user_id)
            if user is not None:
                users[user.id] = user
    return list(users.values())


def get_manifest(session: Session, challenge_id: str) -> CompositionManifest | None:
    return session.execute(
        select(CompositionManifest).where(CompositionManifest.challenge_id == challenge_id)
    ).scalars().first()


def manifest_entries(manifest: CompositionManifest | None) -> list[dict[str, Any]]:
    if manifest is None:
        return []
    entries = json_parse(manifest.entries_json, [])
    return entries if isinstance(entries, list) else []


def get_latest_proposal(session: Session, challenge_id: str) -> PayoutProposal | None:
    return session.execute(
        select(PayoutProposal)
        .where(PayoutProposal.challenge_id == challenge_id)
        .order_by(desc(PayoutProposal.created_at))
        .limit(1)
    ).scalars().first()


def proposal_distribution(proposal: PayoutProposal | None) -> list[dict[str, Any]]:
    if proposal is None:
        return []
    distribution = json_parse(proposal.distribution_json, [])
    return distribution if isinstance(distribution, list) else []


def get_payments(session: Session, challenge_id: str) -> list[Payment]:
    return list(session.execute(
        select(Payment)
        .where(Payment.challenge_id == challenge_id)
        .order_by(desc(Payment.created_at))
    ).scalars())


def count_events(session: Session, entity_type: str, entity_id: str) -> int:
    return session.execute(
        select(func.count(Event.id))
        .where(Event.entity_type == entity_type, Event.entity_id == entity_id)
    ).scalar_one()


def get_challenge_files(session: Session, challenge_id: str) -> list[FileArtifact]:
    return list(session.execute(
        select(FileArtifact)
        .where(FileArtifact.challenge_id == challenge_id)
        .order_by(desc(FileArtifact.created_at))
    ).scalars())


def get_join_proposals(session: Session, challenge_id: str | None = None,
                       contributor_id: str | None = None, status: str | None = None) -> list[JoinProposal]:
    """Join proposals matching every given filter, newest first."""
    query = select(JoinProposal)
    if challenge_id:
        query = query.where(JoinProposal.challenge_id == challenge_id)
    if contributor_id:
        query = query.where(JoinProposal.contributor_id == contributor_id)
    if status:
        query = query.where(JoinProposal.status == status)
    return list(session.execute(query.order_by(desc(JoinProposal.created_at))).scalars())


def get_submissions(session: Session, challenge_id: str | None = None,
                    contributor_id: str | None = None) -> list[Submission]:
    query = select(Submission)
    if challenge_id:
        query = query.where(Submission.challenge_id == challenge_id)
    if contributor_id:
        query = query.where(Submission.contributor_id == contributor_id)
    return list(session.execute(query.order_by(desc(Submission.created_at))).scalars())


def get_submission_files(session: Session, submission_id: str) -> list[SubmissionFile]:
    return list(session.execute(
        select(SubmissionFile)
        .where(SubmissionFile.submission_id == submission_id)
        .order_by(SubmissionFile.uploaded_at)
    ).scalars())


def get_reputation(session: Session, user_id: str | None) -> Reputation | None:
    if not user_id:
        return None
    return session.execute(
        select(Reputation).where(Reputation.user_id == user_id)
    ).scalars().first()


def count_users_with_kyc(session: Session, status: str) -> int:
    return session.execute(
        select(func.count(User.id)).where(User.kyc_status == status)
    ).scalar_one()


def count_all_events(session: Session) -> int:
    return session.execute(select(func.count(Event.id))).scalar_one()
