from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Generator

from fastapi import Depends, FastAPI, File, Form, Header, Query, Request, UploadFile
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

from oddly import events, payments, repository, services
from oddly.auditor import Auditor
from oddly.config import Settings, get_settings
from oddly.db import init_db, session_generator
from oddly.errors import AppError, UnauthorizedError
from oddly.ethics import EthicsAuditor, audit_summary
from oddly.evidence import EvidenceBuilder, EvidenceRequest, package_summary
from oddly.files import FileStore, file_summary
from oddly.models import Challenge, Submission
from oddly.repository import get_or_raise
from oddly.safety import SafetyScreener, moderation_summary
from oddly.schemas import (
    ChallengeCreate,
    ChallengeStatusUpdate,
    CompleteChallenge,
    ContributionCreate,
    EthicsAuditOut,
    EvidenceGenerateRequest,
    EvidencePackageOut,
    HeartbeatOut,
    JoinProposalCreate,
    JoinProposalResponse,
    ManifestUpsert,
    ModerationOut,
    PackageVerificationOut,
    PaymentStatusUpdate,
    PayoutValidationOut,
    ProposalCreate,
    SafetyAnalysisOut,
    SafetyAnalyzeRequest,
    SafetyModerateRequest,
    SplitOut,
    SubmissionCreate,
    SubmissionReview,
    VettingUpdate,
)

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(
    title="oddly-brilliant",
    version="0.1.0",
    description=(
        "Bounty challenges with proportional payouts and a governance layer: "
        "append-only events, content-addressed files, compliance checks, "
        "fairness audits, content screening and verifiable evidence packages. "
        "The acting user is taken from the X-User-Id header."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Challenges", "description": "Create, vet, contribute to and complete challenges."},
        {"name": "Governance", "description": "Composition manifests and payout proposals."},
        {"name": "Teams", "description": "Join proposals and reviewed work submissions."},
        {"name": "Payments", "description": "Payment history and settlement status."},
        {"name": "Files", "description": "Content-addressed uploads with deduplication."},
        {"name": "Events", "description": "Append-only audit trail."},
        {"name": "Auditor", "description": "Compliance heartbeat and payout validation."},
        {"name": "Ethics", "description": "Fairness audits of payout distributions."},
        {"name": "Safety", "description": "Keyword-based content screening."},
        {"name": "Evidence", "description": "Hash-verifiable PDF evidence packages."},
    ],
)


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    if exc.status_code >= 500:
        log.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": {"message": exc.message, "code": exc.code}},
    )


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    yield from session_generator()


def app_settings() -> Settings:
    return get_settings()


def actor_id(x_user_id: str | None = Header(None)) -> str | None:
    return x_user_id


def _require_actor(actor: str | None) -> str:
    if not actor:
        raise UnauthorizedError("Missing X-User-Id header")
    return actor


# ---------------------------------------------------------------------------
# Routes: Challenges
# ---------------------------------------------------------------------------


@app.post("/api/challenges", status_code=201, tags=["Challenges"], summary="Create a challenge")
async def create_challenge(body: ChallengeCreate, session: Session = Depends(db_session),
                           actor: str | None = Depends(actor_id)):
    challenge = services.create_challenge(
        session, actor, title=body.title, bounty_amount=body.bounty_amount,
        description=body.description, project_leader_id=body.project_leader_id,
    )
    session.commit()
    return services.challenge_summary(challenge)


@app.get("/api/challenges/{challenge_id}", tags=["Challenges"],
         summary="Get a challenge with its contributions")
async def get_challenge(challenge_id: str, session: Session = Depends(db_session)):
    challenge = get_or_raise(session, Challenge, challenge_id, "Challenge")
    return services.challenge_detail(session, challenge)


@app.put("/api/challenges/{challenge_id}/status", tags=["Challenges"],
         summary="Change challenge status (closed challenges are immutable)")
async def update_status(challenge_id: str, body: ChallengeStatusUpdate,
                        session: Session = Depends(db_session), actor: str | None = Depends(actor_id)):
    challenge = services.update_challenge_status(session, actor, challenge_id, body.status)
    session.commit()
    return services.challenge_summary(challenge)


@app.put("/api/challenges/{challenge_id}/vetting", tags=["Challenges"],
         summary="Approve or reject a challenge (admin)")
async def vet_challenge(challenge_id: str, body: VettingUpdate,
                        session: Session = Depends(db_session), actor: str | None = Depends(actor_id)):
    challenge = services.vet_challenge(session, actor, challenge_id, body.status, body.notes)
    session.commit()
    return services.challenge_summary(challenge)


@app.post("/api/challenges/{challenge_id}/contributions", status_code=201, tags=["Challenges"],
          summary="Submit a contribution (token value is set by type)")
async def add_contribution(challenge_id: str, body: ContributionCreate,
                           session: Session = Depends(db_session), actor: str | None = Depends(actor_id)):
    contribution = services.add_contribution(session, actor, challenge_id, body.type, body.content)
    session.commit()
    return services.contribution_summary(contribution)


@app.get("/api/challenges/{challenge_id}/splits", response_model=list[SplitOut], tags=["Challenges"],
         summary="Preview the proportional payment split")
async def get_splits(challenge_id: str, session: Session = Depends(db_session)):
    return payments.splits_as_dicts(payments.calculate_splits(session, challenge_id))


@app.post("/api/challenges/{challenge_id}/complete", tags=["Challenges"],
          summary="Complete a challenge and create pending payments")
async def complete_challenge(challenge_id: str, body: CompleteChallenge | None = None,
                             session: Session = Depends(db_session), actor: str | None = Depends(actor_id)):
    method = body.method if body else "FIAT"
    splits, created = services.complete_challenge(session, actor, challenge_id, method)
    session.commit()
    return {
        "splits": payments.splits_as_dicts(splits),
        "payments": [payments.payment_summary(p) for p in created],
    }


# ---------------------------------------------------------------------------
# Routes: Governance
# ---------------------------------------------------------------------------


@app.put("/api/challenges/{challenge_id}/manifest", tags=["Governance"],
         summary="Create or replace the composition manifest")
async def upsert_manifest(challenge_id: str, body: ManifestUpsert,
                          session: Session = Depends(db_session), actor: str | None = Depends(actor_id)):
    entries = [e.model_dump(by_alias=True) for e in body.entries]
    manifest = services.upsert_manifest(session, actor, challenge_id, entries)
    session.commit()
    return services.manifest_summary(manifest)


@app.post("/api/challenges/{challenge_id}/manifest/sign", tags=["Governance"],
          summary="Sign the composition manifest as project leader")
async def sign_manifest(challenge_id: str, session: Session = Depends(db_session),
                        actor: str | None = Depends(actor_id)):
    manifest = services.sign_manifest(session, actor, challenge_id)
    session.commit()
    return services.manifest_summary(manifest)


@app.post("/api/challenges/{challenge_id}/proposals", status_code=201, tags=["Governance"],
          summary="Propose a payout distribution")
async def create_proposal(challenge_id: str, body: ProposalCreate,
                          session: Session = Depends(db_session), actor: str | None = Depends(actor_id)):
    distribution = [d.model_dump(by_alias=True) for d in body.distribution]
    proposal = services.create_payout_proposal(session, actor, challenge_id, distribution)
    session.commit()
    return services.proposal_summary(proposal)


@app.post("/api/proposals/{proposal_id}/sign", tags=["Governance"], summary="Leader-sign a payout proposal")
async def sign_proposal(proposal_id: str, session: Session = Depends(db_session),
                        actor: str | None = Depends(actor_id)):
    proposal = services.sign_proposal(session, actor, proposal_id)
    session.commit()
    return services.proposal_summary(proposal)


@app.post("/api/proposals/{proposal_id}/approve", tags=["Governance"],
          summary="Sponsor-approve a payout proposal")
async def approve_proposal(proposal_id: str, session: Session = Depends(db_session),
                           actor: str | None = Depends(actor_id)):
    proposal = services.approve_proposal(session, actor, proposal_id)
    session.commit()
    return services.proposal_summary(proposal)


# ---------------------------------------------------------------------------
# Routes: Payments (fixed segments before parameterized)
# ---------------------------------------------------------------------------


@app.get("/api/payments/user/{user_id}/earnings", tags=["Payments"],
         summary="Total of a user's COMPLETED payments")
async def user_earnings(user_id: str, session: Session = Depends(db_session)):
    return {"userId": user_id, "totalEarnings": payments.get_user_total_earnings(session, user_id)}


@app.get("/api/payments/user/{user_id}", tags=["Payments"], summary="A user's payments, newest first")
async def user_payments(user_id: str, session: Session = Depends(db_session)):
    return [payments.payment_summary(p) for p in payments.get_user_payments(session, user_id)]


@app.get("/api/payments/challenge/{challenge_id}", tags=["Payments"],
         summary="A challenge's payments, newest first")
async def challenge_payments(challenge_id: str, session: Session = Depends(db_session)):
    get_or_raise(session, Challenge, challenge_id, "Challenge")
    return [payments.payment_summary(p) for p in payments.get_challenge_payments(session, challenge_id)]


@app.put("/api/payments/{payment_id}/status", tags=["Payments"], summary="Record a settlement outcome")
async def update_payment_status(payment_id: str, body: PaymentStatusUpdate,
                                session: Session = Depends(db_session)):
    payment = payments.update_payment_status(session, payment_id, body.status, body.blockchain_tx_hash)
    session.commit()
    return payments.payment_summary(payment)


# ---------------------------------------------------------------------------
# Routes: Files (fixed segments before parameterized)
# ---------------------------------------------------------------------------


def file_store(session: Session = Depends(db_session), settings: Settings = Depends(app_settings)) -> FileStore:
    return FileStore(session, settings.upload_dir, settings.max_upload_bytes)


@app.post("/api/files/upload", status_code=201, tags=["Files"],
          summary="Upload a file (identical bytes return the existing record)")
async def upload_file(
    file: UploadFile = File(...),
    challenge_id: str | None = Form(None, alias="challengeId"),
    store: FileStore = Depends(file_store),
    actor: str | None = Depends(actor_id),
):
    owner = _require_actor(actor)
    content = await file.read()
    artifact, created = store.upload(
        content, owner_id=owner, original_name=file.filename or "upload.bin",
        mime=file.content_type or "application/octet-stream", challenge_id=challenge_id,
    )
    store.session.commit()
    return {"file": file_summary(artifact), "deduplicated": not created}


@app.get("/api/files/my/files", tags=["Files"], summary="Files uploaded by the acting user")
async def my_files(store: FileStore = Depends(file_store), actor: str | None = Depends(actor_id)):
    return [file_summary(f) for f in store.get_by_owner(_require_actor(actor))]


@app.get("/api/files/challenge/{challenge_id}", tags=["Files"], summary="Files attached to a challenge")
async def challenge_files(challenge_id: str, store: FileStore = Depends(file_store)):
    return [file_summary(f) for f in store.get_by_challenge(challenge_id)]


@app.get("/api/files/{file_id}/verify", tags=["Files"], summary="Re-hash a stored file")
async def verify_file(file_id: str, store: FileStore = Depends(file_store)):
    return {"fileId": file_id, "valid": store.verify(file_id)}


@app.get("/api/files/{file_id}", tags=["Files"], summary="Download a file")
async def download_file(file_id: str, store: FileStore = Depends(file_store)):
    stored = store.get(file_id)
    meta = stored.metadata
    return Response(
        content=stored.content,
        media_type=meta.mime,
        headers={
            "Content-Disposition": f'attachment; filename="{meta.filename}"',
            "X-File-SHA256": meta.sha256,
        },
    )


@app.delete("/api/files/{file_id}", tags=["Files"], summary="Delete your own file")
async def delete_file(file_id: str, store: FileStore = Depends(file_store),
                      actor: str | None = Depends(actor_id)):
    store.delete(file_id, _require_actor(actor))
    store.session.commit()
    return {"ok": True}


# ---------------------------------------------------------------------------
# Routes: Join proposals (fixed segments before parameterized)
# ---------------------------------------------------------------------------


@app.post("/api/challenges/{challenge_id}/join-proposals", status_code=201, tags=["Teams"],
          summary="Ask to join an OPEN challenge")
async def create_join_proposal(challenge_id: str, body: JoinProposalCreate | None = None,
                               session: Session = Depends(db_session), actor: str | None = Depends(actor_id)):
    proposal = services.create_join_proposal(session, actor, challenge_id, body.message if body else "")
    session.commit()
    return services.join_proposal_summary(proposal)


@app.get("/api/challenges/{challenge_id}/join-proposals", tags=["Teams"],
         summary="Join proposals for a challenge, newest first")
async def challenge_join_proposals(challenge_id: str, status: str | None = Query(None),
                                   session: Session = Depends(db_session)):
    get_or_raise(session, Challenge, challenge_id, "Challenge")
    return [services.join_proposal_summary(p)
            for p in repository.get_join_proposals(session, challenge_id=challenge_id, status=status)]


@app.get("/api/join-proposals/my", tags=["Teams"], summary="The acting user's join proposals")
async def my_join_proposals(session: Session = Depends(db_session), actor: str | None = Depends(actor_id)):
    return [services.join_proposal_summary(p)
            for p in repository.get_join_proposals(session, contributor_id=_require_actor(actor))]


@app.put("/api/join-proposals/{proposal_id}/respond", tags=["Teams"],
         summary="Accept or reject a join proposal as project leader")
async def respond_join_proposal(proposal_id: str, body: JoinProposalResponse,
                                session: Session = Depends(db_session), actor: str | None = Depends(actor_id)):
    respond = services.accept_join_proposal if body.action == "ACCEPT" else services.reject_join_proposal
    proposal = respond(session, actor, proposal_id, body.response_message)
    session.commit()
    return services.join_proposal_summary(proposal)


@app.put("/api/join-proposals/{proposal_id}/withdraw", tags=["Teams"],
         summary="Withdraw your own pending proposal")
async def withdraw_join_proposal(proposal_id: str, session: Session = Depends(db_session),
                                 actor: str | None = Depends(actor_id)):
    proposal = services.withdraw_join_proposal(session, actor, proposal_id)
    session.commit()
    return services.join_proposal_summary(proposal)


# ---------------------------------------------------------------------------
# Routes: Submissions (fixed segments before parameterized)
# ---------------------------------------------------------------------------


@app.post("/api/challenges/{challenge_id}/submissions", status_code=201, tags=["Teams"],
          summary="Open a draft submission (needs an accepted proposal)")
async def create_submission(challenge_id: str, body: SubmissionCreate,
                            session: Session = Depends(db_session), actor: str | None = Depends(actor_id)):
    submission = services.create_submission(session, actor, challenge_id, body.title, body.description)
    session.commit()
    return services.submission_summary(session, submission)


@app.get("/api/challenges/{challenge_id}/submissions", tags=["Teams"],
         summary="Submissions for a challenge, newest first")
async def challenge_submissions(challenge_id: str, session: Session = Depends(db_session)):
    get_or_raise(session, Challenge, challenge_id, "Challenge")
    return [services.submission_summary(session, s)
            for s in repository.get_submissions(session, challenge_id=challenge_id)]


@app.get("/api/submissions/my", tags=["Teams"], summary="The acting user's submissions")
async def my_submissions(session: Session = Depends(db_session), actor: str | None = Depends(actor_id)):
    return [services.submission_summary(session, s)
            for s in repository.get_submissions(session, contributor_id=_require_actor(actor))]


@app.get("/api/submissions/{submission_id}", tags=["Teams"], summary="Get a submission with its files")
async def get_submission(submission_id: str, session: Session = Depends(db_session)):
    return services.submission_summary(session, get_or_raise(session, Submission, submission_id, "Submission"))


@app.post("/api/submissions/{submission_id}/files", status_code=201, tags=["Teams"],
          summary="Attach an uploaded file to a draft submission")
async def add_submission_file(submission_id: str, file: UploadFile = File(...),
                              store: FileStore = Depends(file_store), actor: str | None = Depends(actor_id)):
    _, submission = services.editable_submission(store.session, actor, submission_id)
    content = await file.read()
    artifact, _ = store.upload(
        content, owner_id=submission.contributor_id, original_name=file.filename or "upload.bin",
        mime=file.content_type or "application/octet-stream", challenge_id=submission.challenge_id,
    )
    link = services.add_submission_file(store.session, actor, submission_id, artifact, file.filename)
    store.session.commit()
    return services.submission_file_summary(link)


@app.delete("/api/submissions/{submission_id}/files/{submission_file_id}", tags=["Teams"],
            summary="Detach a file from a draft submission")
async def remove_submission_file(submission_id: str, submission_file_id: str,
                                 session: Session = Depends(db_session), actor: str | None = Depends(actor_id)):
    services.remove_submission_file(session, actor, submission_id, submission_file_id)
    session.commit()
    return {"ok": True}


@app.put("/api/submissions/{submission_id}/submit", tags=["Teams"], summary="Submit a draft for review")
async def submit_submission(submission_id: str, session: Session = Depends(db_session),
                            actor: str | None = Depends(actor_id)):
    submission = services.submit_submission(session, actor, submission_id)
    session.commit()
    return services.submission_summary(session, submission)


@app.put("/api/submissions/{submission_id}/review", tags=["Teams"], summary="Start reviewing a submission")
async def start_review(submission_id: str, session: Session = Depends(db_session),
                       actor: str | None = Depends(actor_id)):
    submission = services.start_review(session, actor, submission_id)
    session.commit()
    return services.submission_summary(session, submission)


@app.put("/api/submissions/{submission_id}/approve", tags=["Teams"], summary="Approve a submission in review")
async def approve_submission(submission_id: str, body: SubmissionReview | None = None,
                             session: Session = Depends(db_session), actor: str | None = Depends(actor_id)):
    submission = services.approve_submission(session, actor, submission_id, body.notes if body else "")
    session.commit()
    return services.submission_summary(session, submission)


@app.put("/api/submissions/{submission_id}/reject", tags=["Teams"],
         summary="Reject a submission in review (notes required)")
async def reject_submission(submission_id: str, body: SubmissionReview,
                            session: Session = Depends(db_session), actor: str | None = Depends(actor_id)):
    submission = services.reject_submission(session, actor, submission_id, body.notes)
    session.commit()
    return services.submission_summary(session, submission)


@app.put("/api/submissions/{submission_id}/request-revision", tags=["Teams"],
         summary="Send a submission back for changes (notes required)")
async def request_revision(submission_id: str, body: SubmissionReview,
                           session: Session = Depends(db_session), actor: str | None = Depends(actor_id)):
    submission = services.request_revision(session, actor, submission_id, body.notes)
    session.commit()
    return services.submission_summary(session, submission)


# ---------------------------------------------------------------------------
# Routes: Events (fixed segments before parameterized)
# ---------------------------------------------------------------------------


@app.get("/api/admin/events/recent", tags=["Events"], summary="Most recent events system-wide")
async def recent_events(limit: int = Query(events.DEFAULT_RECENT_LIMIT, ge=1, le=500),
                        session: Session = Depends(db_session)):
    return [events.event_summary(e) for e in events.get_recent(session, limit)]


@app.get("/api/admin/events/actor/{actor}", tags=["Events"], summary="Most recent events by one actor")
async def actor_events(actor: str, limit: int = Query(events.DEFAULT_ACTOR_LIMIT, ge=1, le=500),
                       session: Session = Depends(db_session)):
    return [events.event_summary(e) for e in events.get_by_actor(session, actor, limit)]


@app.get("/api/admin/events/{entity_type}/{entity_id}", tags=["Events"],
         summary="Full trail of one entity, oldest first")
async def entity_trail(entity_type: str, entity_id: str, session: Session = Depends(db_session)):
    return [events.event_summary(e) for e in events.get_trail(session, entity_type, entity_id)]


# ---------------------------------------------------------------------------
# Routes: Auditor
# ---------------------------------------------------------------------------


@app.get("/api/admin/auditor/heartbeat", response_model=HeartbeatOut, response_model_exclude_none=True,
         tags=["Auditor"], summary="System-wide compliance heartbeat")
async def system_heartbeat(session: Session = Depends(db_session), settings: Settings = Depends(app_settings)):
    return Auditor(session, settings).heartbeat().as_dict()


@app.get("/api/admin/auditor/heartbeat/{challenge_id}", response_model=HeartbeatOut,
         response_model_exclude_none=True, tags=["Auditor"], summary="Compliance heartbeat for one challenge")
async def challenge_heartbeat(challenge_id: str, session: Session = Depends(db_session),
                              settings: Settings = Depends(app_settings)):
    return Auditor(session, settings).heartbeat(challenge_id).as_dict()


@app.post("/api/admin/auditor/payout/validate/{challenge_id}", response_model=PayoutValidationOut,
          tags=["Auditor"], summary="Validate a challenge's payout")
async def validate_payout(challenge_id: str, session: Session = Depends(db_session),
                          settings: Settings = Depends(app_settings)):
    return Auditor(session, settings).validate_payout(challenge_id).as_dict()


# ---------------------------------------------------------------------------
# Routes: Ethics
# ---------------------------------------------------------------------------


@app.post("/api/admin/ethics/audit/{challenge_id}", response_model=EthicsAuditOut,
          tags=["Ethics"], summary="Run and store a fairness audit")
async def run_ethics_audit(challenge_id: str, session: Session = Depends(db_session),
                           settings: Settings = Depends(app_settings)):
    result, _ = EthicsAuditor(session, settings).audit_challenge(challenge_id)
    session.commit()
    return result.as_dict()


@app.get("/api/admin/ethics/audits/{challenge_id}", tags=["Ethics"],
         summary="Stored fairness audits, newest first")
async def ethics_history(challenge_id: str, session: Session = Depends(db_session),
                         settings: Settings = Depends(app_settings)):
    return [audit_summary(a) for a in EthicsAuditor(session, settings).get_audit_history(challenge_id)]


# ---------------------------------------------------------------------------
# Routes: Safety
# ---------------------------------------------------------------------------


@app.post("/api/admin/safety/analyze", response_model=SafetyAnalysisOut, tags=["Safety"],
          summary="Score content without opening incidents")
async def analyze_content(body: SafetyAnalyzeRequest, session: Session = Depends(db_session),
                          settings: Settings = Depends(app_settings)):
    analysis, _ = SafetyScreener(session, settings).analyze_content(body.content, body.entity_type, body.entity_id)
    session.commit()
    return analysis.as_dict()


@app.post("/api/admin/safety/moderate/{entity_type}/{entity_id}", response_model=ModerationOut,
          tags=["Safety"], summary="Score content and open an incident when flagged")
async def moderate_content(entity_type: str, entity_id: str, body: SafetyModerateRequest,
                           session: Session = Depends(db_session), settings: Settings = Depends(app_settings),
                           actor: str | None = Depends(actor_id)):
    outcome = SafetyScreener(session, settings).moderate(
        body.content, entity_type, entity_id, author_id=body.author_id or actor,
    )
    session.commit()
    return outcome


@app.get("/api/admin/safety/results/{entity_type}/{entity_id}", tags=["Safety"],
         summary="Stored moderation results for an entity, newest first")
async def moderation_results(entity_type: str, entity_id: str, session: Session = Depends(db_session),
                             settings: Settings = Depends(app_settings)):
    screener = SafetyScreener(session, settings)
    return [moderation_summary(r) for r in screener.get_results(entity_type, entity_id)]


# ---------------------------------------------------------------------------
# Routes: Evidence
# ---------------------------------------------------------------------------


@app.post("/api/admin/evidence/generate/{challenge_id}", response_model=EvidencePackageOut,
          status_code=201, tags=["Evidence"], summary="Generate a PDF evidence package")
async def generate_evidence(challenge_id: str, body: EvidenceGenerateRequest | None = None,
                            session: Session = Depends(db_session), settings: Settings = Depends(app_settings)):
    body = body or EvidenceGenerateRequest()
    package = EvidenceBuilder(session, settings).generate(EvidenceRequest(
        challenge_id=challenge_id,
        package_type=body.package_type,
        include_timeline=body.include_timeline,
        include_file_hashes=body.include_file_hashes,
        include_signatures=body.include_signatures,
        include_ai_analysis=body.include_ai_analysis,
    ))
    session.commit()
    return package_summary(package)


@app.get("/api/admin/evidence/download/{package_id}", tags=["Evidence"], summary="Download a package PDF")
async def download_evidence(package_id: str, session: Session = Depends(db_session),
                            settings: Settings = Depends(app_settings)):
    package, content = EvidenceBuilder(session, settings).get_package_file(package_id)
    return Response(
        content=content,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="{package.file_name}"'},
    )


@app.get("/api/admin/evidence/verify/{package_id}", response_model=PackageVerificationOut, tags=["Evidence"],
         summary="Check a package file against its stored hash (id or verification token)")
async def verify_evidence(package_id: str, session: Session = Depends(db_session),
                          settings: Settings = Depends(app_settings)):
    return EvidenceBuilder(session, settings).verify_package(package_id)


@app.get("/api/admin/evidence/list/{challenge_id}", response_model=list[EvidencePackageOut],
         tags=["Evidence"], summary="Packages generated for a challenge, newest first")
async def list_evidence(challenge_id: str, session: Session = Depends(db_session),
                        settings: Settings = Depends(app_settings)):
    return [package_summary(p) for p in EvidenceBuilder(session, settings).list_packages(challenge_id)]


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    uvicorn.run("oddly.app:app", host="127.0.0.1", port=8001, reload=True)


if __name__ == "__main__":
    main()
