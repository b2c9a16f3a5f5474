from __future__ import annotations

import pytest
from sqlalchemy import select

from oddly import events, repository, services
from oddly.errors import ConflictError, NotFoundError, UnauthorizedError, ValidationError
from oddly.files import FileStore
from oddly.models import Payment


@pytest.fixture()
def people(make_user):
    return {
        "sponsor": make_user(role="SPONSOR"),
        "leader": make_user(),
        "alice": make_user(),
        "bob": make_user(),
        "admin": make_user(role="ADMIN"),
    }


@pytest.fixture()
def challenge(session, people):
    ch = services.create_challenge(session, people["sponsor"].id, "Order book", 1000.0,
                                   project_leader_id=people["leader"].id)
    session.commit()
    return ch


def _actions(session, challenge_id):
    return [e.action for e in events.get_trail(session, "CHALLENGE", challenge_id)]


class TestChallengeWorkflow:
    def test_create(self, session, challenge, people):
        assert challenge.status == "OPEN"
        assert challenge.vetting_status == "PENDING"
        assert challenge.sponsor_id == people["sponsor"].id
        assert _actions(session, challenge.id) == ["CHALLENGE_CREATED"]
        assert services.challenge_summary(challenge)["bountyAmount"] == 1000.0

    def test_create_requires_actor(self, session):
        with pytest.raises(UnauthorizedError):
            services.create_challenge(session, None, "T", 10.0)
        with pytest.raises(NotFoundError, match="User not found"):
            services.create_challenge(session, "ghost", "T", 10.0)

    def test_create_rejects_non_positive_bounty(self, session, people):
        with pytest.raises(ValidationError):
            services.create_challenge(session, people["sponsor"].id, "T", 0.0)

    def test_vetting_is_admin_only(self, session, challenge, people):
        with pytest.raises(UnauthorizedError):
            services.vet_challenge(session, people["sponsor"].id, challenge.id, "APPROVED")

        vetted = services.vet_challenge(session, people["admin"].id, challenge.id, "APPROVED", "looks fine")

        assert vetted.vetting_status == "APPROVED"
        assert vetted.vetted_by == people["admin"].id
        assert "CHALLENGE_APPROVED" in _actions(session, challenge.id)

    def test_closed_challenge_is_frozen(self, session, challenge, people):
        services.update_challenge_status(session, people["sponsor"].id, challenge.id, "CLOSED")
        with pytest.raises(ValidationError, match="Closed challenges cannot be changed"):
            services.update_challenge_status(session, people["sponsor"].id, challenge.id, "OPEN")

    def test_status_change_by_stranger(self, session, challenge, people):
        with pytest.raises(UnauthorizedError):
            services.update_challenge_status(session, people["alice"].id, challenge.id, "IN_PROGRESS")

    def test_contribution_gets_token_value(self, session, challenge, people):
        contribution = services.add_contribution(session, people["alice"].id, challenge.id, "DESIGN", "mockups")

        assert contribution.token_value == 25
        assert services.contribution_summary(contribution)["tokenValue"] == 25
        assert "CONTRIBUTION_SUBMITTED" in _actions(session, challenge.id)

    def test_contribution_rejected_on_finished_challenge(self, session, challenge, people):
        services.update_challenge_status(session, people["sponsor"].id, challenge.id, "COMPLETED")
        with pytest.raises(ValidationError):
            services.add_contribution(session, people["alice"].id, challenge.id, "CODE")

    def test_complete(self, session, challenge, people):
        services.add_contribution(session, people["alice"].id, challenge.id, "CODE")
        services.add_contribution(session, people["bob"].id, challenge.id, "IDEA")
        session.commit()

        splits, created = services.complete_challenge(session, people["leader"].id, challenge.id, "CRYPTO")

        assert len(splits) == len(created) == 2
        assert challenge.status == "COMPLETED"
        assert sum(p.amount for p in session.execute(select(Payment)).scalars()) == pytest.approx(1000.0)
        assert "CHALLENGE_COMPLETED" in _actions(session, challenge.id)
        with pytest.raises(ValidationError):
            services.complete_challenge(session, people["leader"].id, challenge.id)

    def test_complete_by_contributor_rejected(self, session, challenge, people):
        with pytest.raises(UnauthorizedError):
            services.complete_challenge(session, people["alice"].id, challenge.id)

    def test_detail(self, session, challenge, people):
        services.add_contribution(session, people["alice"].id, challenge.id, "CODE")
        detail = services.challenge_detail(session, challenge)
        assert len(detail["contributions"]) == 1


class TestGovernanceWorkflow:
    def _entries(self, people, a=0.6, b=0.4):
        return [
            {"contributorId": people["alice"].id, "type": "CODE", "weight": a},
            {"contributorId": people["bob"].id, "type": "IDEA", "weight": b},
        ]

    def test_manifest_upsert_and_sign(self, session, challenge, people):
        manifest = services.upsert_manifest(session, people["leader"].id, challenge.id, self._entries(people))
        assert manifest.total_declared == pytest.approx(1.0)
        assert manifest.signed_by_leader is False

        # a second upsert replaces the entries on the same row
        again = services.upsert_manifest(session, people["leader"].id, challenge.id,
                                         self._entries(people, 0.5, 0.5))
        assert again.id == manifest.id

        signed = services.sign_manifest(session, people["leader"].id, challenge.id)
        assert signed.signed_by_leader is True
        assert signed.signed_at is not None
        assert "MANIFEST_SIGNED" in _actions(session, challenge.id)

        with pytest.raises(ConflictError):
            services.upsert_manifest(session, people["leader"].id, challenge.id, self._entries(people))
        with pytest.raises(ConflictError):
            services.sign_manifest(session, people["leader"].id, challenge.id)

    def test_manifest_by_contributor_rejected(self, session, challenge, people):
        with pytest.raises(UnauthorizedError):
            services.upsert_manifest(session, people["alice"].id, challenge.id, self._entries(people))

    def test_sign_without_manifest(self, session, challenge, people):
        with pytest.raises(NotFoundError):
            services.sign_manifest(session, people["leader"].id, challenge.id)

    def test_proposal_within_tolerance(self, session, challenge, people):
        services.upsert_manifest(session, people["leader"].id, challenge.id, self._entries(people))
        proposal = services.create_payout_proposal(session, people["leader"].id, challenge.id, [
            {"userId": people["alice"].id, "amount": 650.0},
            {"userId": people["bob"].id, "amount": 350.0, "reason": "less time"},
        ])

        assert proposal.within_tolerance is True
        assert services.proposal_summary(proposal)["distribution"][1]["reason"] == "less time"

    def test_proposal_outside_tolerance(self, session, challenge, people):
        services.upsert_manifest(session, people["leader"].id, challenge.id, self._entries(people))
        proposal = services.create_payout_proposal(session, people["leader"].id, challenge.id, [
            {"userId": people["alice"].id, "amount": 900.0},
            {"userId": people["bob"].id, "amount": 100.0},
        ])

        assert proposal.within_tolerance is False
        assert proposal.tolerance_note == "2 recipients outside ±10% of manifest weight"

    def test_sign_and_approve(self, session, challenge, people):
        proposal = services.create_payout_proposal(session, people["leader"].id, challenge.id, [
            {"userId": people["alice"].id, "amount": 1000.0},
        ])
        services.sign_proposal(session, people["leader"].id, proposal.id)

        with pytest.raises(UnauthorizedError):
            services.approve_proposal(session, people["leader"].id, proposal.id)
        approved = services.approve_proposal(session, people["sponsor"].id, proposal.id)

        assert approved.signed_by_leader and approved.sponsor_approved
        with pytest.raises(ConflictError):
            services.approve_proposal(session, people["sponsor"].id, proposal.id)
        assert {"PAYOUT_SIGNED", "PAYOUT_APPROVED"} <= set(_actions(session, challenge.id))

    def test_closed_challenge_rejects_manifest_and_proposal(self, session, challenge, people):
        services.update_challenge_status(session, people["sponsor"].id, challenge.id, "CLOSED")

        with pytest.raises(ValidationError, match="Closed challenges cannot be changed"):
            services.upsert_manifest(session, people["leader"].id, challenge.id, self._entries(people))
        with pytest.raises(ValidationError, match="Closed challenges cannot be changed"):
            services.create_payout_proposal(session, people["leader"].id, challenge.id, [
                {"userId": people["alice"].id, "amount": 1000.0},
            ])
        assert "MANIFEST_UPDATED" not in _actions(session, challenge.id)
        assert "PAYOUT_PROPOSED" not in _actions(session, challenge.id)


class TestCheckTolerance:
    def test_no_manifest(self):
        ok, note = services.check_tolerance([{"userId": "a", "amount": 1}], None, 0.1)
        assert not ok
        assert note == "No composition manifest to compare against"

    def test_empty_distribution(self):
        ok, _ = services.check_tolerance([{"userId": "a", "amount": 0}], [], 0.1)
        assert not ok

    def test_recipient_missing_from_manifest(self):
        ok, note = services.check_tolerance(
            [{"userId": "a", "amount": 50}, {"userId": "x", "amount": 50}],
            [{"contributorId": "a", "weight": 1.0}],
            0.1,
        )
        assert not ok
        assert note.startswith("2 recipients")

    def test_split_entries_are_summed(self):
        ok, note = services.check_tolerance(
            [{"userId": "a", "amount": 30}, {"userId": "a", "amount": 30}, {"userId": "b", "amount": 40}],
            [{"contributorId": "a", "weight": 0.6}, {"contributorId": "b", "weight": 0.4}],
            0.1,
        )
        assert ok
        assert note == ""

    def test_share_on_the_boundary_is_inside(self):
        # 0.8 - 0.7 is 0.10000000000000009 in floating point
        ok, note = services.check_tolerance(
            [{"userId": "a", "amount": 80}, {"userId": "b", "amount": 20}],
            [{"contributorId": "a", "weight": 0.7}, {"contributorId": "b", "weight": 0.3}],
            0.1,
        )
        assert ok
        assert note == ""


# ---------------------------------------------------------------------------
# Join proposals and submissions
# ---------------------------------------------------------------------------


def _join(session, challenge, people, who="alice"):
    proposal = services.create_join_proposal(session, people[who].id, challenge.id, "I know matching engines")
    services.accept_join_proposal(session, people["leader"].id, proposal.id, "welcome")
    return proposal


class TestJoinProposals:
    def test_create_and_accept(self, session, challenge, people):
        proposal = services.create_join_proposal(session, people["alice"].id, challenge.id, "hello")
        assert proposal.status == "PENDING"

        accepted = services.accept_join_proposal(session, people["leader"].id, proposal.id, "welcome")

        assert accepted.status == "ACCEPTED"
        assert accepted.responded_by == people["leader"].id
        assert accepted.responded_at is not None
        summary = services.join_proposal_summary(accepted)
        assert summary["responseMessage"] == "welcome"
        assert summary["contributorId"] == people["alice"].id
        assert {"JOIN_PROPOSED", "JOIN_ACCEPTED"} <= set(_actions(session, challenge.id))

    def test_sponsor_cannot_propose(self, session, challenge, people):
        with pytest.raises(ValidationError, match="Sponsors cannot propose"):
            services.create_join_proposal(session, people["sponsor"].id, challenge.id)

    def test_only_open_challenges(self, session, challenge, people):
        services.update_challenge_status(session, people["sponsor"].id, challenge.id, "IN_PROGRESS")
        with pytest.raises(ValidationError, match="Can only propose to OPEN challenges"):
            services.create_join_proposal(session, people["alice"].id, challenge.id)

    def test_one_active_proposal_per_contributor(self, session, challenge, people):
        first = services.create_join_proposal(session, people["alice"].id, challenge.id)
        with pytest.raises(ConflictError, match="pending"):
            services.create_join_proposal(session, people["alice"].id, challenge.id)

        services.reject_join_proposal(session, people["leader"].id, first.id, "not now")
        again = services.create_join_proposal(session, people["alice"].id, challenge.id)
        assert again.id != first.id

    def test_only_leader_responds(self, session, challenge, people):
        proposal = services.create_join_proposal(session, people["alice"].id, challenge.id)
        with pytest.raises(UnauthorizedError):
            services.accept_join_proposal(session, people["bob"].id, proposal.id)
        # admins may act for any leader
        assert services.reject_join_proposal(session, people["admin"].id, proposal.id).status == "REJECTED"

    def test_respond_only_while_pending(self, session, challenge, people):
        proposal = _join(session, challenge, people)
        with pytest.raises(ValidationError, match="already ACCEPTED"):
            services.reject_join_proposal(session, people["leader"].id, proposal.id)

    def test_cannot_accept_on_finished_challenge(self, session, challenge, people):
        proposal = services.create_join_proposal(session, people["alice"].id, challenge.id)
        services.update_challenge_status(session, people["sponsor"].id, challenge.id, "COMPLETED")
        with pytest.raises(ValidationError, match="COMPLETED"):
            services.accept_join_proposal(session, people["leader"].id, proposal.id)

    def test_withdraw(self, session, challenge, people):
        proposal = services.create_join_proposal(session, people["alice"].id, challenge.id)
        with pytest.raises(UnauthorizedError):
            services.withdraw_join_proposal(session, people["bob"].id, proposal.id)

        withdrawn = services.withdraw_join_proposal(session, people["alice"].id, proposal.id)

        assert withdrawn.status == "WITHDRAWN"
        with pytest.raises(ValidationError, match="Only pending"):
            services.withdraw_join_proposal(session, people["alice"].id, proposal.id)

    def test_listing_filters(self, session, challenge, people):
        _join(session, challenge, people, "alice")
        services.create_join_proposal(session, people["bob"].id, challenge.id)

        assert len(repository.get_join_proposals(session, challenge_id=challenge.id)) == 2
        pending = repository.get_join_proposals(session, challenge_id=challenge.id, status="PENDING")
        assert [p.contributor_id for p in pending] == [people["bob"].id]
        mine = repository.get_join_proposals(session, contributor_id=people["alice"].id)
        assert [p.status for p in mine] == ["ACCEPTED"]


class TestSubmissions:
    @pytest.fixture()
    def store(self, session, tmp_path):
        return FileStore(session, tmp_path / "uploads", 1024 * 1024)

    @pytest.fixture()
    def draft(self, session, challenge, people):
        _join(session, challenge, people)
        return services.create_submission(session, people["alice"].id, challenge.id, "Matcher", "v1")

    def _in_review(self, session, draft, people):
        services.submit_submission(session, people["alice"].id, draft.id)
        return services.start_review(session, people["leader"].id, draft.id)

    def test_requires_accepted_proposal(self, session, challenge, people):
        services.create_join_proposal(session, people["bob"].id, challenge.id)
        with pytest.raises(UnauthorizedError, match="accepted proposal"):
            services.create_submission(session, people["bob"].id, challenge.id, "Early")

    def test_create_links_proposal(self, session, draft, people):
        assert draft.status == "DRAFT"
        assert draft.proposal_id is not None
        assert services.submission_summary(session, draft)["files"] == []

    def test_one_active_submission(self, session, challenge, draft, people):
        with pytest.raises(ConflictError):
            services.create_submission(session, people["alice"].id, challenge.id, "Again")

    def test_resubmit_after_rejection(self, session, challenge, draft, people):
        self._in_review(session, draft, people)
        services.reject_submission(session, people["leader"].id, draft.id, "does not build")

        second = services.create_submission(session, people["alice"].id, challenge.id, "Matcher v2")

        assert second.status == "DRAFT"

    def test_files_attach_and_detach(self, session, challenge, draft, people, store):
        artifact, _ = store.upload(b"engine source", people["alice"].id, "engine.py", "text/x-python",
                                   challenge_id=challenge.id)
        link = services.add_submission_file(session, people["alice"].id, draft.id, artifact)

        files = services.submission_summary(session, draft)["files"]
        assert [f["sha256"] for f in files] == [artifact.sha256]
        assert files[0]["originalName"] == "engine.py"

        services.remove_submission_file(session, people["alice"].id, draft.id, link.id)

        assert services.submission_summary(session, draft)["files"] == []
        # the stored artifact survives detaching
        assert store.verify(artifact.id)
        assert {"SUBMISSION_FILE_ADDED", "SUBMISSION_FILE_REMOVED"} <= set(_actions(session, challenge.id))

    def test_files_only_by_owner_while_editable(self, session, draft, people, store):
        artifact, _ = store.upload(b"notes", people["alice"].id, "notes.txt")
        with pytest.raises(UnauthorizedError):
            services.add_submission_file(session, people["bob"].id, draft.id, artifact)

        services.submit_submission(session, people["alice"].id, draft.id)

        with pytest.raises(ValidationError, match="SUBMITTED"):
            services.add_submission_file(session, people["alice"].id, draft.id, artifact)

    def test_detach_unknown_link(self, session, draft, people):
        with pytest.raises(NotFoundError):
            services.remove_submission_file(session, people["alice"].id, draft.id, "missing")

    def test_review_and_approve(self, session, challenge, draft, people):
        submitted = services.submit_submission(session, people["alice"].id, draft.id)
        assert submitted.status == "SUBMITTED"
        assert submitted.submitted_at is not None

        with pytest.raises(UnauthorizedError):
            services.start_review(session, people["alice"].id, draft.id)
        with pytest.raises(ValidationError, match="must be IN_REVIEW"):
            services.approve_submission(session, people["leader"].id, draft.id)

        services.start_review(session, people["leader"].id, draft.id)
        approved = services.approve_submission(session, people["leader"].id, draft.id, "ship it")

        assert approved.status == "APPROVED"
        assert approved.reviewed_by == people["leader"].id
        assert approved.review_notes == "ship it"
        assert {"SUBMISSION_SUBMITTED", "SUBMISSION_REVIEW_STARTED", "SUBMISSION_APPROVED"} <= set(
            _actions(session, challenge.id))

    def test_reject_and_revision_need_notes(self, session, draft, people):
        self._in_review(session, draft, people)
        with pytest.raises(ValidationError, match="notes are required"):
            services.reject_submission(session, people["leader"].id, draft.id, "  ")
        with pytest.raises(ValidationError, match="notes are required"):
            services.request_revision(session, people["leader"].id, draft.id, "")

    def test_revision_round_trip(self, session, draft, people):
        self._in_review(session, draft, people)

        revised = services.request_revision(session, people["leader"].id, draft.id, "add tests")
        assert revised.status == "REVISION_REQUESTED"
        assert revised.review_notes == "add tests"

        again = services.submit_submission(session, people["alice"].id, draft.id)
        assert again.status == "SUBMITTED"

    def test_listing(self, session, challenge, draft, people):
        assert [s.id for s in repository.get_submissions(session, challenge_id=challenge.id)] == [draft.id]
        assert repository.get_submissions(session, contributor_id=people["bob"].id) == []
