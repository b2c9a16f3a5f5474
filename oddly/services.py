"""Challenge, team and governance workflows shared by the API and CLI.

Functions add and flush; the caller commits. ``complete_challenge`` is the
exception because payment distribution commits its own transaction.
"""
from __future__ import annotations

import json
import logging
from typing import Any

from sqlalchemy.orm import Session

from oddly import events, payments, repository
from oddly.config import get_settings
from oddly.errors import ConflictError, NotFoundError, UnauthorizedError, ValidationError
from oddly.models import (
    Challenge,
    ChallengeStatus,
    CompositionManifest,
    Contribution,
    FileArtifact,
    JoinProposal,
    JoinProposalStatus,
    KycStatus,
    Payment,
    PayoutProposal,
    Submission,
    SubmissionFile,
    SubmissionStatus,
    User,
    VettingStatus,
)
from oddly.utils import json_parse, outside_tolerance, utc_now

log = logging.getLogger(__name__)

CHALLENGE_ENTITY = "CHALLENGE"
ADMIN_ROLE = "ADMIN"
_FINISHED = {ChallengeStatus.COMPLETED.value, ChallengeStatus.CLOSED.value}

# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def _iso(value) -> str | None:
    return value.isoformat() if value else None


def challenge_summary(challenge: Challenge) -> dict:
    return {
        "id": challenge.id, "title": challenge.title, "description": challenge.description,
        "bountyAmount": challenge.bounty_amount, "status": challenge.status,
        "vettingStatus": challenge.vetting_status, "vettingNotes": challenge.vetting_notes,
        "sponsorId": challenge.sponsor_id, "projectLeaderId": challenge.project_leader_id,
        "scopingComplete": challenge.scoping_complete,
        "createdAt": _iso(challenge.created_at), "updatedAt": _iso(challenge.updated_at),
    }


def contribution_summary(contribution: Contribution) -> dict:
    return {
        "id": contribution.id, "challengeId": contribution.challenge_id,
        "userId": contribution.user_id, "type": contribution.type,
        "content": contribution.content, "tokenValue": contribution.token_value,
        "createdAt": _iso(contribution.created_at),
    }


def challenge_detail(session: Session, challenge: Challenge) -> dict:
    base = challenge_summary(challenge)
    base["contributions"] = [
        contribution_summary(c) for c in repository.get_contributions(session, challenge.id)
    ]
    return base


def manifest_summary(manifest: CompositionManifest) -> dict:
    return {
        "id": manifest.id, "challengeId": manifest.challenge_id, "leaderId": manifest.leader_id,
        "entries": repository.manifest_entries(manifest), "totalDeclared": manifest.total_declared,
        "signedByLeader": manifest.signed_by_leader, "signedAt": _iso(manifest.signed_at),
    }


def proposal_summary(proposal: PayoutProposal) -> dict:
    return {
        "id": proposal.id, "challengeId": proposal.challenge_id, "leaderId": proposal.leader_id,
        "distribution": json_parse(proposal.distribution_json, []),
        "withinTolerance": proposal.within_tolerance, "toleranceNote": proposal.tolerance_note,
        "signedByLeader": proposal.signed_by_leader, "leaderSignedAt": _iso(proposal.leader_signed_at),
        "sponsorApproved": proposal.sponsor_approved,
        "sponsorApprovedAt": _iso(proposal.sponsor_approved_at),
        "auditStatus": proposal.audit_status, "evidencePackUrl": proposal.evidence_pack_url,
        "createdAt": _iso(proposal.created_at),
    }


# ---------------------------------------------------------------------------
# Access helpers
# ---------------------------------------------------------------------------


def _require_user(session: Session, user_id: str | None) -> User:
    if not user_id:
        raise UnauthorizedError("Missing acting user")
    user = session.get(User, user_id)
    if user is None:
        raise NotFoundError("User")
    return user


def _require_one_of(actor: User, allowed: tuple[str | None, ...], action: str) -> None:
    if actor.role == ADMIN_ROLE or actor.id in allowed:
        return
    raise UnauthorizedError(f"Not allowed to {action}")


def _leader_of(challenge: Challenge) -> str:
    return challenge.project_leader_id or challenge.sponsor_id


def _reject_closed(challenge: Challenge) -> None:
    if challenge.status == ChallengeStatus.CLOSED.value:
        raise ValidationError("Closed challenges cannot be changed")


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


def create_user(session: Session, email: str, role: str = "USER",
                kyc_status: str = KycStatus.PENDING.value, wallet_address: str = "") -> User:
    user = User(email=email, role=role, kyc_status=kyc_status, wallet_address=wallet_address)
    if kyc_status == KycStatus.VERIFIED.value:
        user.kyc_verified_at = utc_now()
    session.add(user)
    session.flush()
    return user


# ---------------------------------------------------------------------------
# Challenge workflow
# ---------------------------------------------------------------------------


def create_challenge(session: Session, actor_id: str, title: str, bounty_amount: float,
                     description: str = "", project_leader_id: str | None = None) -> Challenge:
    sponsor = _require_user(session, actor_id)
    if bounty_amount <= 0:
        raise ValidationError("Bounty amount must be positive")
    if project_leader_id and session.get(User, project_leader_id) is None:
        raise NotFoundError("Project leader")

    challenge = Challenge(
        title=title, description=description, bounty_amount=bounty_amount,
        sponsor_id=sponsor.id, project_leader_id=project_leader_id,
        status=ChallengeStatus.OPEN.value, vetting_status=VettingStatus.PENDING.value,
    )
    session.add(challenge)
    session.flush()
    events.emit(session, sponsor.id, CHALLENGE_ENTITY, challenge.id, "CHALLENGE_CREATED",
                metadata={"bountyAmount": bounty_amount},
                snapshot={"title": title, "description": description, "bountyAmount": bounty_amount})
    log.info("Challenge %s created by %s (bounty %s)", challenge.id, sponsor.id, bounty_amount)
    return challenge


def vet_challenge(session: Session, actor_id: str, challenge_id: str,
                  status: str, notes: str = "") -> Challenge:
    actor = _require_user(session, actor_id)
    _require_one_of(actor, (), "vet challenges")
    if status not in (VettingStatus.APPROVED.value, VettingStatus.REJECTED.value):
        raise ValidationError(f"Invalid vetting status: {status}")
    challenge = repository.get_or_raise(session, Challenge, challenge_id, "Challenge")
    challenge.vetting_status = status
    challenge.vetting_notes = notes
    challenge.vetted_by = actor.id
    challenge.vetted_at = utc_now()
    session.flush()
    events.emit(session, actor.id, CHALLENGE_ENTITY, challenge.id, f"CHALLENGE_{status}",
                metadata={"notes": notes})
    return challenge


def update_challenge_status(session: Session, actor_id: str, challenge_id: str, status: str) -> Challenge:
    actor = _require_user(session, actor_id)
    challenge = repository.get_or_raise(session, Challenge, challenge_id, "Challenge")
    _require_one_of(actor, (challenge.sponsor_id,), "change this challenge")
    _reject_closed(challenge)
    if status not in {s.value for s in ChallengeStatus}:
        raise ValidationError(f"Invalid challenge status: {status}")
    previous = challenge.status
    challenge.status = status
    session.flush()
    events.emit(session, actor.id, CHALLENGE_ENTITY, challenge.id, "STATUS_CHANGED",
                metadata={"from": previous, "to": status})
    return challenge


def add_contribution(session: Session, actor_id: str, challenge_id: str,
                     contribution_type: str, content: str = "") -> Contribution:
    actor = _require_user(session, actor_id)
    challenge = repository.get_or_raise(session, Challenge, challenge_id, "Challenge")
    if challenge.status in _FINISHED:
        raise ValidationError(f"Cannot contribute to a {challenge.status} challenge")

    contribution = Contribution(
        challenge_id=challenge.id, user_id=actor.id, type=contribution_type,
        content=content, token_value=payments.token_value_for(contribution_type),
    )
    session.add(contribution)
    session.flush()
    events.emit(session, actor.id, CHALLENGE_ENTITY, challenge.id, "CONTRIBUTION_SUBMITTED",
                metadata={"contributionId": contribution.id, "type": contribution_type},
                snapshot={"type": contribution_type, "content": content})
    return contribution


def complete_challenge(session: Session, actor_id: str, challenge_id: str,
                       method: str = "FIAT") -> tuple[list[payments.PaymentSplit], list[Payment]]:
    """Split the bounty, mark the challenge COMPLETED and create pending payments.

    Status change, event and payments are committed together; a failure
    while inserting payments rolls all of it back.
    """
    actor = _require_user(session, actor_id)
    challenge = repository.get_or_raise(session, Challenge, challenge_id, "Challenge")
    _require_one_of(actor, (challenge.sponsor_id, challenge.project_leader_id), "complete this challenge")
    if challenge.status in _FINISHED:
        raise ValidationError(f"Challenge is already {challenge.status}")

    splits = payments.calculate_splits(session, challenge.id)
    challenge.status = ChallengeStatus.COMPLETED.value
    session.flush()
    events.emit(session, actor.id, CHALLENGE_ENTITY, challenge.id, "CHALLENGE_COMPLETED",
                metadata={"splits": len(splits), "method": method},
                snapshot=payments.splits_as_dicts(splits))
    created = payments.distribute_payments(session, challenge.id, splits, method)
    return splits, created


# ---------------------------------------------------------------------------
# Governance workflow
# ---------------------------------------------------------------------------


def upsert_manifest(session: Session, actor_id: str, challenge_id: str,
                    entries: list[dict[str, Any]]) -> CompositionManifest:
    actor = _require_user(session, actor_id)
    challenge = repository.get_or_raise(session, Challenge, challenge_id, "Challenge")
    _require_one_of(actor, (_leader_of(challenge),), "edit this manifest")
    _reject_closed(challenge)

    clean = [
        {"contributorId": e["contributorId"], "type": e.get("type") or "",
         "weight": float(e["weight"]), "ref": e.get("ref")}
        for e in entries
    ]
    total = sum(e["weight"] for e in clean)
    if outside_tolerance(total, 1.0, get_settings().manifest_tolerance):
        log.warning("Manifest for %s declares total weight %s, expected 1.0", challenge_id, total)

    manifest = repository.get_manifest(session, challenge_id)
    if manifest is None:
        manifest = CompositionManifest(challenge_id=challenge.id, leader_id=actor.id)
        session.add(manifest)
    elif manifest.signed_by_leader:
        raise ConflictError("Manifest is already signed")
    manifest.entries_json = json.dumps(clean)
    manifest.total_declared = total
    session.flush()
    events.emit(session, actor.id, CHALLENGE_ENTITY, challenge.id, "MANIFEST_UPDATED",
                metadata={"entries": len(clean), "totalDeclared": total}, snapshot=clean)
    return manifest


def sign_manifest(session: Session, actor_id: str, challenge_id: str) -> CompositionManifest:
    actor = _require_user(session, actor_id)
    challenge = repository.get_or_raise(session, Challenge, challenge_id, "Challenge")
    manifest = repository.get_manifest(session, challenge_id)
    if manifest is None:
        raise NotFoundError("Composition manifest")
    _require_one_of(actor, (_leader_of(challenge),), "sign this manifest")
    if manifest.signed_by_leader:
        raise ConflictError("Manifest is already signed")

    manifest.signed_by_leader = True
    manifest.signed_at = utc_now()
    session.flush()
    events.emit(session, actor.id, CHALLENGE_ENTITY, challenge.id, "MANIFEST_SIGNED",
                metadata={"manifestId": manifest.id, "totalDeclared": manifest.total_declared},
                snapshot=repository.manifest_entries(manifest))
    return manifest


def check_tolerance(distribution: list[dict[str, Any]], manifest_entries: list[dict[str, Any]] | None,
                    tolerance: float) -> tuple[bool, str]:
    """Compare each recipient's share of the proposal with its manifest weight."""
    if manifest_entries is None:
        return False, "No composition manifest to compare against"
    total = sum(float(d["amount"]) for d in distribution)
    if total <= 0:
        return False, "Proposed distribution is empty"
    shares: dict[str, float] = {}
    for d in distribution:
        shares[d["userId"]] = shares.get(d["userId"], 0.0) + float(d["amount"]) / total
    weights = {e["contributorId"]: float(e.get("weight") or 0) for e in manifest_entries}
    outliers = sorted(
        uid for uid in set(shares) | set(weights)
        if outside_tolerance(shares.get(uid, 0.0), weights.get(uid, 0.0), tolerance)
    )
    if outliers:
        return False, f"{len(outliers)} recipients outside ±{round(tolerance * 100)}% of manifest weight"
    return True, ""


def create_payout_proposal(session: Session, actor_id: str, challenge_id: str,
                           distribution: list[dict[str, Any]]) -> PayoutProposal:
    actor = _require_user(session, actor_id)
    challenge = repository.get_or_raise(session, Challenge, challenge_id, "Challenge")
    _require_one_of(actor, (_leader_of(challenge),), "propose a payout")
    _reject_closed(challenge)
    if not distribution:
        raise ValidationError("Distribution must not be empty")

    clean = [
        {"userId": d["userId"], "amount": float(d["amount"]), "reason": d.get("reason")}
        for d in distribution
    ]
    manifest = repository.get_manifest(session, challenge_id)
    within, note = check_tolerance(
        clean, repository.manifest_entries(manifest) if manifest is not None else None,
        get_settings().proposal_tolerance,
    )
    proposal = PayoutProposal(
        challenge_id=challenge.id, leader_id=actor.id, distribution_json=json.dumps(clean),
        within_tolerance=within, tolerance_note=note,
    )
    session.add(proposal)
    session.flush()
    events.emit(session, actor.id, CHALLENGE_ENTITY, challenge.id, "PAYOUT_PROPOSED",
                metadata={"proposalId": proposal.id, "withinTolerance": within}, snapshot=clean)
    if not within:
        log.warning("Payout proposal %s outside tolerance: %s", proposal.id, note)
    return proposal


def sign_proposal(session: Session, actor_id: str, proposal_id: str) -> PayoutProposal:
    actor = _require_user(session, actor_id)
    proposal = repository.get_or_raise(session, PayoutProposal, proposal_id, "Payout proposal")
    challenge = repository.get_or_raise(session, Challenge, proposal.challenge_id, "Challenge")
    _require_one_of(actor, (_leader_of(challenge),), "sign this proposal")
    if proposal.signed_by_leader:
        raise ConflictError("Proposal is already signed")
    proposal.signed_by_leader = True
    proposal.leader_signed_at = utc_now()
    session.flush()
    events.emit(session, actor.id, CHALLENGE_ENTITY, challenge.id, "PAYOUT_SIGNED",
                metadata={"proposalId": proposal.id})
    return proposal


def approve_proposal(session: Session, actor_id: str, proposal_id: str) -> PayoutProposal:
    actor = _require_user(session, actor_id)
    proposal = repository.get_or_raise(session, PayoutProposal, proposal_id, "Payout proposal")
    challenge = repository.get_or_raise(session, Challenge, proposal.challenge_id, "Challenge")
    _require_one_of(actor, (challenge.sponsor_id,), "approve this proposal")
    if proposal.sponsor_approved:
        raise ConflictError("Proposal is already approved")
    proposal.sponsor_approved = True
    proposal.sponsor_approved_at = utc_now()
    session.flush()
    events.emit(session, actor.id, CHALLENGE_ENTITY, challenge.id, "PAYOUT_APPROVED",
                metadata={"proposalId": proposal.id})
    return proposal


# ---------------------------------------------------------------------------
# Join proposals
# ---------------------------------------------------------------------------


def join_proposal_summary(proposal: JoinProposal) -> dict:
    return {
        "id": proposal.id, "challengeId": proposal.challenge_id,
        "contributorId": proposal.contributor_id, "message": proposal.message,
        "status": proposal.status, "respondedBy": proposal.responded_by,
        "respondedAt": _iso(proposal.responded_at), "responseMessage": proposal.response_message,
        "createdAt": _iso(proposal.created_at),
    }


def create_join_proposal(session: Session, actor_id: str, challenge_id: str,
                         message: str = "") -> JoinProposal:
    """Ask to join an OPEN challenge. One pending or accepted request per contributor."""
    actor = _require_user(session, actor_id)
    challenge = repository.get_or_raise(session, Challenge, challenge_id, "Challenge")
    if challenge.sponsor_id == actor.id:
        raise ValidationError("Sponsors cannot propose to their own challenge")
    if challenge.status != ChallengeStatus.OPEN.value:
        raise ValidationError("Can only propose to OPEN challenges")
    active = [
        p for p in repository.get_join_proposals(session, challenge_id=challenge.id, contributor_id=actor.id)
        if p.status in (JoinProposalStatus.PENDING.value, JoinProposalStatus.ACCEPTED.value)
    ]
    if active:
        raise ConflictError(f"You already have a {active[0].status.lower()} proposal for this challenge")

    proposal = JoinProposal(challenge_id=challenge.id, contributor_id=actor.id, message=message)
    session.add(proposal)
    session.flush()
    events.emit(session, actor.id, CHALLENGE_ENTITY, challenge.id, "JOIN_PROPOSED",
                metadata={"joinProposalId": proposal.id}, snapshot={"message": message})
    return proposal


def _respond(session: Session, actor_id: str, proposal_id: str, status: str,
             response_message: str) -> JoinProposal:
    actor = _require_user(session, actor_id)
    proposal = repository.get_or_raise(session, JoinProposal, proposal_id, "Join proposal")
    challenge = repository.get_or_raise(session, Challenge, proposal.challenge_id, "Challenge")
    _require_one_of(actor, (_leader_of(challenge),), "respond to this proposal")
    if proposal.status != JoinProposalStatus.PENDING.value:
        raise ValidationError(f"Proposal is already {proposal.status}")
    if status == JoinProposalStatus.ACCEPTED.value and challenge.status in _FINISHED:
        raise ValidationError(f"Cannot accept proposals for a {challenge.status} challenge")

    proposal.status = status
    proposal.responded_by = actor.id
    proposal.responded_at = utc_now()
    proposal.response_message = response_message
    session.flush()
    events.emit(session, actor.id, CHALLENGE_ENTITY, challenge.id, f"JOIN_{status}",
                metadata={"joinProposalId": proposal.id, "contributorId": proposal.contributor_id},
                snapshot={"responseMessage": response_message})
    return proposal


def accept_join_proposal(session: Session, actor_id: str, proposal_id: str,
                         response_message: str = "") -> JoinProposal:
    return _respond(session, actor_id, proposal_id, JoinProposalStatus.ACCEPTED.value, response_message)


def reject_join_proposal(session: Session, actor_id: str, proposal_id: str,
                         response_message: str = "") -> JoinProposal:
    return _respond(session, actor_id, proposal_id, JoinProposalStatus.REJECTED.value, response_message)


def withdraw_join_proposal(session: Session, actor_id: str, proposal_id: str) -> JoinProposal:
    actor = _require_user(session, actor_id)
    proposal = repository.get_or_raise(session, JoinProposal, proposal_id, "Join proposal")
    if proposal.contributor_id != actor.id:
        raise UnauthorizedError("Not allowed to withdraw this proposal")
    if proposal.status != JoinProposalStatus.PENDING.value:
        raise ValidationError("Only pending proposals can be withdrawn")
    proposal.status = JoinProposalStatus.WITHDRAWN.value
    session.flush()
    events.emit(session, actor.id, CHALLENGE_ENTITY, proposal.challenge_id, "JOIN_WITHDRAWN",
                metadata={"joinProposalId": proposal.id})
    return proposal


# ---------------------------------------------------------------------------
# Submissions
# ---------------------------------------------------------------------------

_EDITABLE = {SubmissionStatus.DRAFT.value, SubmissionStatus.REVISION_REQUESTED.value}


def submission_file_summary(link: SubmissionFile) -> dict:
    return {
        "id": link.id, "submissionId": link.submission_id, "fileId": link.file_id,
        "originalName": link.original_name, "sha256": link.sha256, "size": link.size,
        "uploadedAt": _iso(link.uploaded_at),
    }


def submission_summary(session: Session, submission: Submission) -> dict:
    return {
        "id": submission.id, "challengeId": submission.challenge_id,
        "contributorId": submission.contributor_id, "proposalId": submission.proposal_id,
        "title": submission.title, "description": submission.description,
        "status": submission.status, "submittedAt": _iso(submission.submitted_at),
        "reviewedBy": submission.reviewed_by, "reviewedAt": _iso(submission.reviewed_at),
        "reviewNotes": submission.review_notes, "createdAt": _iso(submission.created_at),
        "files": [submission_file_summary(f) for f in repository.get_submission_files(session, submission.id)],
    }


def _own_submission(session: Session, actor_id: str, submission_id: str) -> tuple[User, Submission]:
    actor = _require_user(session, actor_id)
    submission = repository.get_or_raise(session, Submission, submission_id, "Submission")
    if submission.contributor_id != actor.id:
        raise UnauthorizedError("Not allowed to change this submission")
    return actor, submission


def editable_submission(session: Session, actor_id: str, submission_id: str) -> tuple[User, Submission]:
    """The actor's own submission, provided its files may still change."""
    actor, submission = _own_submission(session, actor_id, submission_id)
    if submission.status not in _EDITABLE:
        raise ValidationError(f"Files cannot change on a {submission.status} submission")
    return actor, submission


def create_submission(session: Session, actor_id: str, challenge_id: str, title: str,
                      description: str = "") -> Submission:
    """Open a DRAFT submission. Requires an accepted join proposal."""
    actor = _require_user(session, actor_id)
    challenge = repository.get_or_raise(session, Challenge, challenge_id, "Challenge")
    if challenge.status in _FINISHED:
        raise ValidationError(f"Cannot submit work to a {challenge.status} challenge")
    accepted = repository.get_join_proposals(
        session, challenge_id=challenge.id, contributor_id=actor.id,
        status=JoinProposalStatus.ACCEPTED.value,
    )
    if not accepted:
        raise UnauthorizedError("An accepted proposal is required to submit work")
    if any(s.status != SubmissionStatus.REJECTED.value
           for s in repository.get_submissions(session, challenge_id=challenge.id, contributor_id=actor.id)):
        raise ConflictError("You already have an active submission for this challenge")

    submission = Submission(
        challenge_id=challenge.id, contributor_id=actor.id, proposal_id=accepted[0].id,
        title=title, description=description,
    )
    session.add(submission)
    session.flush()
    events.emit(session, actor.id, CHALLENGE_ENTITY, challenge.id, "SUBMISSION_CREATED",
                metadata={"submissionId": submission.id},
                snapshot={"title": title, "description": description})
    return submission


def add_submission_file(session: Session, actor_id: str, submission_id: str,
                        artifact: FileArtifact, original_name: str | None = None) -> SubmissionFile:
    actor, submission = editable_submission(session, actor_id, submission_id)
    link = SubmissionFile(
        submission_id=submission.id, file_id=artifact.id, original_name=original_name or artifact.filename,
        sha256=artifact.sha256, size=artifact.bytes,
    )
    session.add(link)
    session.flush()
    events.emit(session, actor.id, CHALLENGE_ENTITY, submission.challenge_id, "SUBMISSION_FILE_ADDED",
                metadata={"submissionId": submission.id, "fileId": artifact.id, "sha256": artifact.sha256})
    return link


def remove_submission_file(session: Session, actor_id: str, submission_id: str,
                           submission_file_id: str) -> None:
    """Detach a file. The stored artifact stays, other records may share it."""
    actor, submission = editable_submission(session, actor_id, submission_id)
    link = session.get(SubmissionFile, submission_file_id)
    if link is None or link.submission_id != submission.id:
        raise NotFoundError("Submission file")
    session.delete(link)
    session.flush()
    events.emit(session, actor.id, CHALLENGE_ENTITY, submission.challenge_id, "SUBMISSION_FILE_REMOVED",
                metadata={"submissionId": submission.id, "fileId": link.file_id})


def submit_submission(session: Session, actor_id: str, submission_id: str) -> Submission:
    actor, submission = _own_submission(session, actor_id, submission_id)
    if submission.status not in _EDITABLE:
        raise ValidationError(f"Cannot submit a {submission.status} submission")
    submission.status = SubmissionStatus.SUBMITTED.value
    submission.submitted_at = utc_now()
    session.flush()
    events.emit(session, actor.id, CHALLENGE_ENTITY, submission.challenge_id, "SUBMISSION_SUBMITTED",
                metadata={"submissionId": submission.id})
    return submission


def _review(session: Session, actor_id: str, submission_id: str, expected: str, status: str,
            notes: str = "", action: str = "SUBMISSION_REVIEWED") -> Submission:
    actor = _require_user(session, actor_id)
    submission = repository.get_or_raise(session, Submission, submission_id, "Submission")
    challenge = repository.get_or_raise(session, Challenge, submission.challenge_id, "Challenge")
    _require_one_of(actor, (_leader_of(challenge),), "review this submission")
    if submission.status != expected:
        raise ValidationError(f"Submission must be {expected}, not {submission.status}")

    submission.status = status
    if status != SubmissionStatus.IN_REVIEW.value:
        submission.reviewed_by = actor.id
        submission.reviewed_at = utc_now()
        submission.review_notes = notes
    session.flush()
    events.emit(session, actor.id, CHALLENGE_ENTITY, challenge.id, action,
                metadata={"submissionId": submission.id, "contributorId": submission.contributor_id},
                snapshot={"notes": notes} if notes else None)
    return submission


def start_review(session: Session, actor_id: str, submission_id: str) -> Submission:
    return _review(session, actor_id, submission_id, SubmissionStatus.SUBMITTED.value,
                   SubmissionStatus.IN_REVIEW.value, action="SUBMISSION_REVIEW_STARTED")


def approve_submission(session: Session, actor_id: str, submission_id: str, notes: str = "") -> Submission:
    return _review(session, actor_id, submission_id, SubmissionStatus.IN_REVIEW.value,
                   SubmissionStatus.APPROVED.value, notes, "SUBMISSION_APPROVED")


def reject_submission(session: Session, actor_id: str, submission_id: str, notes: str) -> Submission:
    if not notes.strip():
        raise ValidationError("Review notes are required when rejecting")
    return _review(session, actor_id, submission_id, SubmissionStatus.IN_REVIEW.value,
                   SubmissionStatus.REJECTED.value, notes, "SUBMISSION_REJECTED")


def request_revision(session: Session, actor_id: str, submission_id: str, notes: str) -> Submission:
    if not notes.strip():
        raise ValidationError("Review notes are required when requesting a revision")
    return _review(session, actor_id, submission_id, SubmissionStatus.IN_REVIEW.value,
                   SubmissionStatus.REVISION_REQUESTED.value, notes, "SUBMISSION_REVISION_REQUESTED")
