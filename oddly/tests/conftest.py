"""Shared fixtures: in-memory SQLite, isolated settings and small factories."""
from __future__ import annotations

import itertools
import json
import os
from datetime import timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from oddly.config import Settings, get_settings
from oddly.models import (
    Base, Challenge, CompositionManifest, Contribution, PayoutProposal, User,
)
from oddly.payments import TOKEN_VALUES
from oddly.utils import utc_now


@pytest.fixture(scope="session", autouse=True)
def isolated_home(tmp_path_factory):
    """Point every default path at a throwaway directory for the whole run."""
    home = tmp_path_factory.mktemp("oddly-home")
    previous = os.environ.get("ODDLY_HOME")
    os.environ["ODDLY_HOME"] = str(home)
    get_settings.cache_clear()
    yield home
    if previous is None:
        os.environ.pop("ODDLY_HOME", None)
    else:
        os.environ["ODDLY_HOME"] = previous
    get_settings.cache_clear()


@pytest.fixture()
def engine():
    eng = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
    Base.metadata.create_all(eng)
    return eng


@pytest.fixture()
def session(engine):
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    sess = SessionLocal()
    try:
        yield sess
    finally:
        sess.close()


@pytest.fixture()
def settings(tmp_path) -> Settings:
    return Settings(
        project_root=tmp_path,
        data_dir=tmp_path / "data",
        database_path=tmp_path / "data" / "oddly.db",
        upload_dir=tmp_path / "uploads",
        evidence_dir=tmp_path / "evidence",
        evidence_base_url="https://oddly.test/verify",
        safety_rules_file=tmp_path / "missing_rules.yaml",
    )


# ---------------------------------------------------------------------------
# Factories (each one commits)
# ---------------------------------------------------------------------------


@pytest.fixture()
def make_user(session: Session):
    counter = itertools.count(1)

    def _make(kyc_status: str = "VERIFIED", role: str = "USER", email: str | None = None) -> User:
        user = User(email=email or f"user{next(counter)}@example.com", role=role, kyc_status=kyc_status)
        session.add(user)
        session.commit()
        return user

    return _make


@pytest.fixture()
def make_challenge(session: Session, make_user):
    def _make(bounty: float = 1000.0, sponsor: User | None = None, leader: User | None = None,
              status: str = "OPEN") -> Challenge:
        sponsor = sponsor or make_user(role="SPONSOR")
        challenge = Challenge(
            title="Low-latency order book",
            description="Build it",
            bounty_amount=bounty,
            sponsor_id=sponsor.id,
            project_leader_id=leader.id if leader else None,
            status=status,
        )
        session.add(challenge)
        session.commit()
        return challenge

    return _make


@pytest.fixture()
def contribute(session: Session):
    def _add(challenge: Challenge, user: User, ctype: str = "CODE", token_value: float | None = None) -> Contribution:
        contribution = Contribution(
            challenge_id=challenge.id,
            user_id=user.id,
            type=ctype,
            content=f"{ctype.lower()} work",
            token_value=TOKEN_VALUES[ctype] if token_value is None else token_value,
        )
        session.add(contribution)
        session.commit()
        return contribution

    return _add


@pytest.fixture()
def make_manifest(session: Session):
    def _make(challenge: Challenge, weights: dict[str, float], signed: bool = True,
              signed_at=None, total: float | None = None) -> CompositionManifest:
        entries = [{"contributorId": uid, "type": "CODE", "weight": w, "ref": None} for uid, w in weights.items()]
        manifest = CompositionManifest(
            challenge_id=challenge.id,
            leader_id=challenge.project_leader_id or challenge.sponsor_id,
            entries_json=json.dumps(entries),
            total_declared=sum(weights.values()) if total is None else total,
            signed_by_leader=signed,
            signed_at=(signed_at or utc_now() - timedelta(days=2)) if signed else None,
        )
        session.add(manifest)
        session.commit()
        return manifest

    return _make


@pytest.fixture()
def make_proposal(session: Session):
    def _make(challenge: Challenge, amounts: dict[str, float], within_tolerance: bool = True,
              signed: bool = False, approved: bool = False) -> PayoutProposal:
        proposal = PayoutProposal(
            challenge_id=challenge.id,
            leader_id=challenge.project_leader_id or challenge.sponsor_id,
            distribution_json=json.dumps([{"userId": uid, "amount": a, "reason": None}
                                          for uid, a in amounts.items()]),
            within_tolerance=within_tolerance,
            signed_by_leader=signed,
            sponsor_approved=approved,
        )
        session.add(proposal)
        session.commit()
        return proposal

    return _make
