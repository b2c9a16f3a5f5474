from __future__ import annotations

import json
from datetime import datetime, timedelta

import pytest

from oddly import events
from oddly.errors import NotFoundError, ValidationError
from oddly.ethics import (
    AuditInputs,
    EthicsAuditor,
    audit_summary,
    evaluate,
    fairness_score,
    gini,
    interpret_fairness,
    interpret_gini,
)
from oddly.models import FileArtifact, Payment, PayoutProposal, Reputation

NOW = datetime(2026, 3, 1, 12, 0, 0)


def _inputs(contributions, distribution, manifest=None, signed=True, gap=timedelta(days=2), reputation=None):
    return AuditInputs(
        contributions=contributions,
        distribution=distribution,
        manifest_entries=None if manifest is None else [
            {"contributorId": uid, "weight": w} for uid, w in manifest.items()
        ],
        manifest_signed=manifest is not None and signed,
        manifest_signed_at=NOW - gap if manifest is not None and signed else None,
        proposal_created_at=NOW,
        leader_reputation=reputation,
    )


def _reputation(as_project_leader: int, disputes_against: int) -> Reputation:
    return Reputation(user_id="leader", as_contributor=0, as_project_leader=as_project_leader,
                      as_sponsor=0, disputes_raised=0, disputes_against=disputes_against)


class TestGini:
    @pytest.mark.parametrize("values, expected", [
        ([], 0.0),
        ([100.0], 0.0),
        ([10.0, 10.0, 10.0], 0.0),
        ([0.0, 0.0], 0.0),
        ([0.0, 100.0], 0.5),
        ([0.0, 0.0, 100.0], 2 / 3),
        ([100.0, 900.0], 0.4),
    ])
    def test_values(self, values, expected):
        assert gini(values) == pytest.approx(expected)

    def test_order_does_not_matter(self):
        assert gini([5, 1, 3]) == pytest.approx(gini([1, 3, 5]))

    @pytest.mark.parametrize("g, label", [
        (0.0, "EXCELLENT"), (0.35, "GOOD"), (0.5, "FAIR"), (0.65, "POOR"), (0.9, "EXTREME"),
    ])
    def test_interpretation(self, g, label):
        assert interpret_gini(g) == label


class TestFairnessScore:
    def test_perfect(self, settings):
        assert fairness_score(0.0, 0, 0, settings) == 1.0

    def test_red_flags_never_raise_score(self, settings):
        scores = [fairness_score(0.2, red, 1, settings) for red in range(8)]
        assert scores == sorted(scores, reverse=True)
        assert scores[-1] == 0.0

    def test_clamped_to_unit_interval(self, settings):
        assert fairness_score(0.0, 0, 10, settings) == 1.0
        assert fairness_score(1.0, 10, 0, settings) == 0.0

    @pytest.mark.parametrize("score, label", [
        (0.9, "EXCELLENT"), (0.75, "GOOD"), (0.55, "FAIR"), (0.35, "POOR"), (0.1, "CRITICAL"),
    ])
    def test_interpretation(self, score, label):
        assert interpret_fairness(score) == label


class TestFlags:
    def test_fair_distribution(self, settings):
        third = 1 / 3
        result = evaluate(_inputs(
            [("a", "CODE"), ("b", "DESIGN"), ("c", "IDEA")],
            [("a", 100.0), ("b", 100.0), ("c", 100.0)],
            manifest={"a": third, "b": third, "c": third},
        ), settings)

        assert result.red_flags == []
        assert result.yellow_flags == []
        assert result.green_flags == [
            "DIVERSE_CONTRIBUTION_TYPES", "ALL_CONTRIBUTORS_PAID", "FAIR_DISTRIBUTION",
            "TRANSPARENT_MANIFEST", "MANIFEST_MATCHES_PAYOUT",
        ]
        assert result.gini_coefficient == 0.0
        assert result.fairness_score == 1.0
        assert [r.type for r in result.recommendations] == ["SUGGESTION"]

    def test_dominance(self, settings):
        result = evaluate(_inputs(
            [("a", "CODE"), ("b", "CODE")],
            [("a", 900.0), ("b", 100.0)],
        ), settings)

        assert "SINGLE_CONTRIBUTOR_DOMINANCE" in result.red_flags
        assert "NO_DIVERSE_ROLES" in result.red_flags
        assert "MISSING_MANIFEST" in result.yellow_flags
        recs = [r.as_dict() for r in result.recommendations]
        assert any(r["type"] == "CRITICAL" and r["actionRequired"] for r in recs)
        assert any(r["description"].startswith("No composition manifest found") for r in recs)

    def test_extreme_inequality(self, settings):
        result = evaluate(_inputs(
            [("a", "CODE"), ("b", "IDEA"), ("c", "DESIGN"), ("d", "RESEARCH")],
            [("a", 1000.0), ("b", 1.0), ("c", 1.0), ("d", 1.0)],
        ), settings)

        assert result.gini_coefficient > 0.7
        assert "EXTREME_INEQUALITY" in result.red_flags
        assert any("extreme inequality" in r.description for r in result.recommendations)

    def test_moderate_inequality(self, settings):
        result = evaluate(_inputs([], [("a", 0.0), ("b", 0.0), ("c", 100.0)]), settings)

        assert "MODERATE_INEQUALITY" in result.yellow_flags
        assert any("moderate inequality (Gini: 0.67)" in r.description for r in result.recommendations)

    def test_unpaid_work(self, settings):
        result = evaluate(_inputs(
            [("a", "CODE"), ("b", "IDEA"), ("c", "DESIGN")],
            [("a", 500.0), ("b", 500.0)],
        ), settings)

        assert "UNPAID_WORK_DETECTED" in result.red_flags
        assert "ALL_CONTRIBUTORS_PAID" not in result.green_flags

    def test_missing_attribution(self, settings):
        result = evaluate(_inputs(
            [("a", "CODE"), ("b", "IDEA")],
            [("a", 500.0), ("b", 500.0)],
            manifest={"a": 1.0},
        ), settings)

        assert "MISSING_ATTRIBUTION" in result.red_flags

    def test_suspicious_timing(self, settings):
        result = evaluate(_inputs(
            [("a", "CODE"), ("b", "IDEA")],
            [("a", 500.0), ("b", 500.0)],
            manifest={"a": 0.5, "b": 0.5},
            gap=timedelta(minutes=10),
        ), settings)

        assert "SUSPICIOUS_TIMING" in result.red_flags
        assert "TRANSPARENT_MANIFEST" not in result.green_flags

    def test_unexplained_variance(self, settings):
        result = evaluate(_inputs(
            [("a", "CODE"), ("b", "IDEA")],
            [("a", 600.0), ("b", 400.0)],
            manifest={"a": 0.5, "b": 0.5},
        ), settings)

        assert "UNEXPLAINED_VARIANCE" in result.red_flags
        assert "MANIFEST_MATCHES_PAYOUT" not in result.green_flags

    def test_unsigned_manifest_is_yellow(self, settings):
        result = evaluate(_inputs(
            [("a", "CODE"), ("b", "IDEA")],
            [("a", 500.0), ("b", 500.0)],
            manifest={"a": 0.5, "b": 0.5},
            signed=False,
        ), settings)

        assert "UNSIGNED_MANIFEST" in result.yellow_flags

    @pytest.mark.parametrize("leader_score, disputes, flagged", [
        (100, 3, True),
        (40, 1, True),
        (80, 1, False),
        (10, 0, False),
    ])
    def test_exploitation_pattern(self, settings, leader_score, disputes, flagged):
        result = evaluate(_inputs(
            [("a", "CODE"), ("b", "IDEA")],
            [("a", 500.0), ("b", 500.0)],
            reputation=_reputation(leader_score, disputes),
        ), settings)

        assert ("EXPLOITATION_PATTERN" in result.red_flags) is flagged

    def test_split_entries_count_per_recipient(self, settings):
        result = evaluate(_inputs(
            [("a", "CODE"), ("b", "IDEA")],
            [("a", 400.0), ("a", 400.0), ("b", 200.0)],
        ), settings)

        assert "SINGLE_CONTRIBUTOR_DOMINANCE" in result.red_flags
        assert result.gini_coefficient == pytest.approx(gini([800.0, 200.0]), abs=1e-3)

    def test_single_recipient(self, settings):
        result = evaluate(_inputs([("a", "CODE")], [("a", 1000.0)]), settings)

        assert result.gini_coefficient == 0.0
        assert "SINGLE_CONTRIBUTOR_DOMINANCE" in result.red_flags


class TestEthicsAuditor:
    def test_audit_is_stored(self, session, settings, make_user, make_challenge, contribute,
                             make_manifest, make_proposal):
        challenge = make_challenge()
        alice, bob = make_user(), make_user()
        contribute(challenge, alice, "CODE")
        contribute(challenge, bob, "DESIGN")
        make_manifest(challenge, {alice.id: 0.5, bob.id: 0.5})
        make_proposal(challenge, {alice.id: 500.0, bob.id: 500.0})
        event = events.emit(session, alice.id, "CHALLENGE", challenge.id, "CONTRIBUTION_SUBMITTED")
        events.emit(session, alice.id, "CHALLENGE", challenge.id, "STATUS_CHANGED")
        session.add(FileArtifact(owner_id=alice.id, challenge_id=challenge.id, filename="design.pdf",
                                 bytes=3, sha256="ab" * 32, storage_key="k"))
        session.commit()

        auditor = EthicsAuditor(session, settings)
        result, record = auditor.audit_challenge(challenge.id)
        session.commit()

        assert result.gini_coefficient == 0.0
        assert "FAIR_DISTRIBUTION" in result.green_flags
        assert result.evidence_links == [f"event:{event.id}:CONTRIBUTION_SUBMITTED", f"file:{'ab' * 32}:design.pdf"]
        latest = auditor.get_latest_audit(challenge.id)
        assert latest.id == record.id
        summary = audit_summary(latest)
        assert summary["greenFlags"] == result.green_flags
        assert summary["recommendations"] == [r.as_dict() for r in result.recommendations]
        assert json.loads(record.evidence_links_json) == result.evidence_links

    def test_history_grows(self, session, settings, make_user, make_challenge, make_proposal):
        challenge = make_challenge()
        make_proposal(challenge, {make_user().id: 100.0})
        auditor = EthicsAuditor(session, settings)
        auditor.audit_challenge(challenge.id)
        auditor.audit_challenge(challenge.id)

        assert len(auditor.get_audit_history(challenge.id)) == 2

    def test_falls_back_to_payments(self, session, settings, make_user, make_challenge, contribute):
        challenge = make_challenge()
        alice, bob = make_user(), make_user()
        contribute(challenge, alice, "CODE")
        contribute(challenge, bob, "IDEA")
        for user, amount in ((alice, 300.0), (alice, 300.0), (bob, 400.0)):
            session.add(Payment(challenge_id=challenge.id, user_id=user.id, amount=amount))
        session.commit()

        inputs = EthicsAuditor(session, settings).gather(challenge.id)

        assert dict(inputs.distribution) == {alice.id: 600.0, bob.id: 400.0}
        assert inputs.manifest_entries is None

    def test_proposal_entries_summed_per_recipient(self, session, settings, make_user, make_challenge,
                                                   contribute):
        challenge = make_challenge()
        alice, bob = make_user(), make_user()
        contribute(challenge, alice, "CODE")
        contribute(challenge, bob, "IDEA")
        session.add(PayoutProposal(
            challenge_id=challenge.id, leader_id=challenge.sponsor_id,
            distribution_json=json.dumps([
                {"userId": alice.id, "amount": 400.0, "reason": "backend"},
                {"userId": alice.id, "amount": 400.0, "reason": "frontend"},
                {"userId": bob.id, "amount": 200.0, "reason": None},
            ]),
        ))
        session.commit()

        auditor = EthicsAuditor(session, settings)
        assert dict(auditor.gather(challenge.id).distribution) == {alice.id: 800.0, bob.id: 200.0}

        result, _ = auditor.audit_challenge(challenge.id)

        assert "SINGLE_CONTRIBUTOR_DOMINANCE" in result.red_flags
        assert result.gini_coefficient == pytest.approx(0.3, abs=1e-3)

    def test_nothing_to_audit(self, session, settings, make_challenge):
        challenge = make_challenge()
        with pytest.raises(ValidationError, match="No payout proposal or payments"):
            EthicsAuditor(session, settings).audit_challenge(challenge.id)

    def test_empty_proposal(self, session, settings, make_challenge, make_proposal):
        challenge = make_challenge()
        make_proposal(challenge, {})
        with pytest.raises(ValidationError):
            EthicsAuditor(session, settings).audit_challenge(challenge.id)

    def test_unknown_challenge(self, session, settings):
        with pytest.raises(NotFoundError):
            EthicsAuditor(session, settings).audit_challenge("missing")
