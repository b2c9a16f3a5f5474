from __future__ import annotations

import pytest

from oddly import events
from oddly.auditor import Auditor, ComplianceCheck, TrafficLight, reduce_status
from oddly.errors import NotFoundError

CHECK_NAMES = ["IP Assignments", "KYC/AML", "Manifest Signed", "Payout Tolerance", "Event Trail"]


def _checks(*statuses: TrafficLight) -> list[ComplianceCheck]:
    return [ComplianceCheck(f"c{i}", s, "") for i, s in enumerate(statuses)]


G, A, R = TrafficLight.GREEN, TrafficLight.AMBER, TrafficLight.RED


class TestReduceStatus:
    @pytest.mark.parametrize("statuses, expected", [
        ((G, G, G, G, G), G),
        ((G, A, G, G, G), A),
        ((G, G, G, G, R), R),
        ((A, R, A, G, G), R),
        ((A, A), A),
    ])
    def test_worst_wins(self, statuses, expected):
        assert reduce_status(_checks(*statuses)) == expected


@pytest.fixture()
def compliant_challenge(session, make_user, make_challenge, contribute, make_manifest, make_proposal):
    """A challenge with everything in order."""
    leader = make_user()
    challenge = make_challenge(leader=leader)
    alice, bob = make_user(), make_user()
    contribute(challenge, alice, "CODE")
    contribute(challenge, bob, "DESIGN")
    make_manifest(challenge, {alice.id: 0.5, bob.id: 0.5})
    make_proposal(challenge, {alice.id: 500.0, bob.id: 500.0}, signed=True, approved=True)
    events.emit(session, leader.id, "CHALLENGE", challenge.id, "MANIFEST_SIGNED")
    session.commit()
    return challenge


class TestHeartbeat:
    def test_system_heartbeat_all_green(self, session, make_user):
        make_user()
        beat = Auditor(session).heartbeat()

        assert beat.overall == G
        assert [c.name for c in beat.checks] == CHECK_NAMES
        payload = beat.as_dict()
        assert "challengeId" not in payload
        assert all("blocksAction" not in c for c in payload["checks"])
        assert payload["checks"][2]["details"] == "System check: N/A without specific challenge"
        assert payload["checks"][4]["details"] == "0 events logged"

    def test_pending_user_makes_system_amber(self, session, make_user):
        make_user()
        make_user(kyc_status="PENDING")

        beat = Auditor(session).heartbeat()

        assert beat.overall == A
        kyc = beat.checks[1]
        assert kyc.status == A
        assert kyc.details == "1 users pending KYC verification"

    def test_compliant_challenge_is_green(self, session, compliant_challenge):
        beat = Auditor(session).heartbeat(compliant_challenge.id)

        assert beat.overall == G
        assert beat.as_dict()["challengeId"] == compliant_challenge.id

    def test_unverified_contributor_is_red_and_blocking(self, session, compliant_challenge, make_user, contribute):
        contribute(compliant_challenge, make_user(kyc_status="PENDING"), "IDEA")

        beat = Auditor(session).heartbeat(compliant_challenge.id)

        assert beat.overall == R
        kyc = beat.as_dict()["checks"][1]
        assert kyc["status"] == "RED"
        assert kyc["blocksAction"] is True
        assert kyc["details"] == "1 contributors not KYC verified"

    def test_missing_manifest_is_red(self, session, make_challenge, make_user, contribute):
        challenge = make_challenge()
        contribute(challenge, make_user(), "CODE")

        manifest_check = Auditor(session).heartbeat(challenge.id).checks[2]

        assert manifest_check.status == R
        assert manifest_check.details == "No manifest created yet"

    def test_unsigned_manifest_is_amber(self, session, make_challenge, make_user, make_manifest):
        challenge = make_challenge()
        make_manifest(challenge, {make_user().id: 1.0}, signed=False)

        assert Auditor(session).check_manifest(challenge.id).status == A

    def test_unbalanced_manifest_blocks(self, session, make_challenge, make_user, make_manifest):
        challenge = make_challenge()
        make_manifest(challenge, {make_user().id: 0.9})

        check = Auditor(session).check_manifest(challenge.id)

        assert check.status == R
        assert check.blocks_action is True

    def test_outside_tolerance_proposal_is_amber(self, session, make_challenge, make_user, make_proposal):
        challenge = make_challenge()
        make_proposal(challenge, {make_user().id: 10.0}, within_tolerance=False)

        check = Auditor(session).check_payout_tolerance(challenge.id)

        assert check.status == A
        assert check.details == "Distribution exceeds ±10% tolerance, requires sponsor co-sign"

    def test_no_events_is_amber(self, session, make_challenge):
        challenge = make_challenge()
        assert Auditor(session).check_event_trail(challenge.id).status == A

    def test_unknown_challenge_raises(self, session):
        with pytest.raises(NotFoundError):
            Auditor(session).heartbeat("missing")


class TestValidatePayout:
    def test_missing_manifest(self, session, make_challenge, make_user, contribute):
        challenge = make_challenge()
        contribute(challenge, make_user(), "CODE")

        result = Auditor(session).validate_payout(challenge.id)

        assert result.ok is False
        assert result.violations == ["No composition manifest"]

    def test_manifest_total_off(self, session, make_challenge, make_user, contribute, make_manifest):
        challenge = make_challenge()
        alice = make_user()
        contribute(challenge, alice, "CODE")
        make_manifest(challenge, {alice.id: 0.95})

        result = Auditor(session).validate_payout(challenge.id)

        assert not result.ok
        assert any("Manifest total is" in v for v in result.violations)

    @pytest.mark.parametrize("total, balanced", [(0.99, True), (1.01, True), (0.9899, False)])
    def test_manifest_total_tolerance_boundary(self, session, make_challenge, make_user, contribute,
                                               make_manifest, total, balanced):
        challenge = make_challenge()
        alice = make_user()
        contribute(challenge, alice, "CODE")
        make_manifest(challenge, {alice.id: total})

        auditor = Auditor(session)
        result = auditor.validate_payout(challenge.id)

        assert result.ok is balanced
        assert any("Manifest total is" in v for v in result.violations) is not balanced
        assert (auditor.check_manifest(challenge.id).status == G) is balanced

    def test_unsigned_and_unbalanced_both_reported(self, session, make_challenge, make_user, make_manifest):
        challenge = make_challenge()
        make_manifest(challenge, {make_user().id: 0.5}, signed=False)

        violations = Auditor(session).validate_payout(challenge.id).violations

        assert "Composition manifest not signed by leader" in violations
        assert "Manifest total is 0.5, must be 1.0" in violations

    def test_all_good_is_ok_with_warnings(self, session, make_challenge, make_user, contribute, make_manifest):
        challenge = make_challenge()
        alice, bob = make_user(), make_user()
        contribute(challenge, alice, "CODE")
        contribute(challenge, bob, "IDEA")
        make_manifest(challenge, {alice.id: 0.6, bob.id: 0.4})

        result = Auditor(session).validate_payout(challenge.id)

        assert result.ok is True
        assert result.violations == []
        assert "No payout proposal found" in result.warnings
        assert "No event trail found (unusual)" in result.warnings

    def test_unverified_contributor_named(self, session, make_challenge, make_user, contribute, make_manifest):
        challenge = make_challenge()
        carol = make_user(kyc_status="PENDING", email="carol@example.com")
        contribute(challenge, carol, "CODE")
        contribute(challenge, carol, "IDEA")
        make_manifest(challenge, {carol.id: 1.0})

        violations = Auditor(session).validate_payout(challenge.id).violations

        assert violations == ["Contributor carol@example.com KYC not verified"]

    def test_proposal_warnings(self, session, make_challenge, make_user, make_manifest, make_proposal):
        challenge = make_challenge()
        alice = make_user()
        make_manifest(challenge, {alice.id: 1.0})
        make_proposal(challenge, {alice.id: 100.0}, within_tolerance=False)

        warnings = Auditor(session).validate_payout(challenge.id).warnings

        assert "Payout proposal not signed by leader" in warnings
        assert "Payout proposal not approved by sponsor" in warnings
        assert "Payout distribution exceeds tolerance" in warnings

    def test_fully_compliant(self, session, compliant_challenge):
        result = Auditor(session).validate_payout(compliant_challenge.id)
        assert result.as_dict() == {"ok": True, "violations": [], "warnings": []}

    def test_unknown_challenge(self, session):
        result = Auditor(session).validate_payout("missing")
        assert result.violations == ["Challenge not found"]
        assert not result.ok
