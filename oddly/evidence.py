"""Evidence package builder.

Collects the audit picture of one challenge (payout validation, fairness
audit, event timeline, file hashes, signatures), renders it to a PDF with
reportlab and stores it under ``Settings.evidence_dir``. The PDF carries a
digest of the assembled content plus a QR code of its verification URL; the
row stores the SHA-256 of the finished PDF bytes so ``verify_package`` can
detect any later change to the file.
"""
from __future__ import annotations

import io
import logging
import secrets
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any
from xml.sax.saxutils import escape

from reportlab.graphics.barcode.qr import QrCodeWidget
from reportlab.graphics.shapes import Drawing
from reportlab.lib.colors import HexColor
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import inch
from reportlab.platypus import HRFlowable, Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle
from sqlalchemy import desc, or_, select
from sqlalchemy.orm import Session

from oddly import events, payments, repository
from oddly.auditor import Auditor
from oddly.config import Settings, get_settings
from oddly.errors import NotFoundError, ValidationError
from oddly.ethics import EthicsAuditor, audit_summary, interpret_fairness
from oddly.models import EvidencePackage, User
from oddly.utils import canonical_hash, sha256_hex, utc_now

log = logging.getLogger(__name__)

TIMELINE_LIMIT = 50
FILE_LIMIT = 20

INK = HexColor("#1a1a1a")
MUTED = HexColor("#6e7681")
ACCENT = HexColor("#3b5bdb")
BORDER = HexColor("#d0d7de")
PASS_GREEN = HexColor("#2f9e44")
FAIL_RED = HexColor("#e03131")


class PackageType(str, Enum):
    PAYOUT_AUDIT = "PAYOUT_AUDIT"
    COMPLIANCE_REPORT = "COMPLIANCE_REPORT"
    INCIDENT_EVIDENCE = "INCIDENT_EVIDENCE"
    ETHICS_CERTIFICATION = "ETHICS_CERTIFICATION"


@dataclass
class EvidenceRequest:
    challenge_id: str
    package_type: str = PackageType.PAYOUT_AUDIT.value
    include_timeline: bool = True
    include_file_hashes: bool = True
    include_signatures: bool = True
    include_ai_analysis: bool = False


# ---------------------------------------------------------------------------
# PDF rendering
# ---------------------------------------------------------------------------


def _build_styles() -> dict[str, ParagraphStyle]:
    base = getSampleStyleSheet()
    return {
        "title": ParagraphStyle("title", parent=base["Normal"], fontName="Helvetica-Bold",
                                fontSize=18, leading=22, textColor=ACCENT, spaceAfter=4),
        "subtitle": ParagraphStyle("subtitle", parent=base["Normal"], fontName="Helvetica",
                                   fontSize=9, textColor=MUTED, spaceAfter=12),
        "section": ParagraphStyle("section", parent=base["Normal"], fontName="Helvetica-Bold",
                                  fontSize=12, textColor=INK, spaceBefore=14, spaceAfter=6),
        "body": ParagraphStyle("body", parent=base["Normal"], fontName="Helvetica",
                               fontSize=9, leading=12, textColor=INK),
        "mono": ParagraphStyle("mono", parent=base["Normal"], fontName="Courier",
                               fontSize=7, leading=9, textColor=INK),
        "pass": ParagraphStyle("pass", parent=base["Normal"], fontName="Helvetica-Bold",
                               fontSize=9, textColor=PASS_GREEN),
        "fail": ParagraphStyle("fail", parent=base["Normal"], fontName="Helvetica-Bold",
                               fontSize=9, textColor=FAIL_RED),
        "footer": ParagraphStyle("footer", parent=base["Normal"], fontName="Helvetica",
                                 fontSize=7, textColor=MUTED),
    }


def _p(text: Any, style: ParagraphStyle) -> Paragraph:
    return Paragraph(escape(str(text)), style)


def _table(rows: list[list[Any]], widths: list[float]) -> Table:
    table = Table(rows, colWidths=widths, repeatRows=1)
    table.setStyle(TableStyle([
        ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
        ("FONTSIZE", (0, 0), (-1, -1), 8),
        ("TEXTCOLOR", (0, 0), (-1, 0), MUTED),
        ("LINEBELOW", (0, 0), (-1, 0), 0.75, BORDER),
        ("LINEBELOW", (0, 1), (-1, -1), 0.25, BORDER),
        ("VALIGN", (0, 0), (-1, -1), "TOP"),
        ("TOPPADDING", (0, 0), (-1, -1), 3),
        ("BOTTOMPADDING", (0, 0), (-1, -1), 3),
    ]))
    return table


def qr_drawing(payload: str, size: float = 1.3 * inch) -> Drawing:
    widget = QrCodeWidget(payload)
    x1, y1, x2, y2 = widget.getBounds()
    width, height = x2 - x1, y2 - y1
    drawing = Drawing(size, size, transform=[size / width, 0, 0, size / height, 0, 0])
    drawing.add(widget)
    return drawing


def render_pdf(content: dict[str, Any], verification_url: str, content_digest: str) -> bytes:
    """Render assembled package content to PDF bytes."""
    styles = _build_styles()
    challenge = content["challenge"]
    story: list[Any] = [
        _p("Evidence Package", styles["title"]),
        _p(f"{content['packageType']}  |  generated {content['generatedAt']}", styles["subtitle"]),
        HRFlowable(width="100%", thickness=1.2, color=ACCENT, spaceAfter=10),
        _table([
            ["Challenge", "Bounty", "Status", "Project leader"],
            [_p(challenge["title"], styles["body"]), f"{challenge['bountyAmount']:.2f}",
             challenge["status"], _p(challenge["projectLeaderEmail"], styles["body"])],
        ], [2.6 * inch, 1.0 * inch, 1.1 * inch, 2.2 * inch]),
    ]

    story.append(_p("Contribution breakdown", styles["section"]))
    if content["contributions"]:
        rows = [["Contributor", "Type", "Share", "Payout"]]
        for c in content["contributions"]:
            rows.append([_p(c["email"], styles["body"]), c["type"],
                         f"{c['percentage']:.2f}%", f"{c['amount']:.2f}"])
        story.append(_table(rows, [2.9 * inch, 1.2 * inch, 1.2 * inch, 1.6 * inch]))
    else:
        story.append(_p("No contributions recorded.", styles["body"]))

    story.append(_p("Compliance checks", styles["section"]))
    compliance = content["compliance"]
    verdict_style = styles["pass"] if compliance["ok"] else styles["fail"]
    story.append(_p("PASS" if compliance["ok"] else "FAIL", verdict_style))
    for violation in compliance["violations"]:
        story.append(_p(f"Violation: {violation}", styles["body"]))
    for warning in compliance["warnings"]:
        story.append(_p(f"Warning: {warning}", styles["body"]))

    ethics = content.get("ethics")
    if ethics:
        story.append(_p("Fairness audit", styles["section"]))
        story.append(_p(
            f"Fairness score {ethics['fairnessScore']:.2f} ({interpret_fairness(ethics['fairnessScore'])}), "
            f"Gini {ethics['giniCoefficient']:.3f}", styles["body"]))
        for label, key in (("Red flags", "redFlags"), ("Yellow flags", "yellowFlags"),
                           ("Green flags", "greenFlags")):
            story.append(_p(f"{label}: {', '.join(ethics[key]) or 'none'}", styles["body"]))

    signatures = content.get("signatures")
    if signatures:
        story.append(_p("Signatures", styles["section"]))
        rows = [["Record", "Signed", "When"]]
        for s in signatures:
            rows.append([s["label"], "yes" if s["signed"] else "no", s["at"] or "-"])
        story.append(_table(rows, [3.2 * inch, 0.8 * inch, 2.9 * inch]))

    if "timeline" in content:
        story.append(_p("Event timeline", styles["section"]))
        if content["timeline"]:
            rows = [["Time", "Action", "Actor"]]
            for e in content["timeline"]:
                rows.append([e["timestamp"], e["action"], _p(e["actor"], styles["body"])])
            story.append(_table(rows, [2.0 * inch, 2.4 * inch, 2.5 * inch]))
        else:
            story.append(_p("No events recorded.", styles["body"]))

    if "files" in content:
        story.append(_p("File integrity", styles["section"]))
        if content["files"]:
            rows = [["File", "SHA-256"]]
            for f in content["files"]:
                rows.append([_p(f["filename"], styles["body"]), _p(f["sha256"], styles["mono"])])
            story.append(_table(rows, [2.4 * inch, 4.5 * inch]))
        else:
            story.append(_p("No files attached.", styles["body"]))

    story.append(Spacer(1, 14))
    story.append(_p("Verification", styles["section"]))
    story.append(_p(f"Content digest (SHA-256): {content_digest}", styles["mono"]))
    story.append(_p(verification_url, styles["mono"]))
    story.append(qr_drawing(verification_url))
    story.append(_p("Scan the code or open the URL to check this document against the stored hash.",
                    styles["footer"]))

    buffer = io.BytesIO()
    doc = SimpleDocTemplate(
        buffer,
        pagesize=A4,
        leftMargin=0.7 * inch,
        rightMargin=0.7 * inch,
        topMargin=0.6 * inch,
        bottomMargin=0.6 * inch,
        title=f"Evidence package {challenge['id']}",
        author="oddly-brilliant",
    )
    doc.build(story)
    pdf_bytes = buffer.getvalue()
    buffer.close()
    return pdf_bytes


# ---------------------------------------------------------------------------
# Builder
# ---------------------------------------------------------------------------


class EvidenceBuilder:
    def __init__(self, session: Session, settings: Settings | None = None,
                 auditor: Auditor | None = None, ethics: EthicsAuditor | None = None):
        self.session = session
        self.settings = settings or get_settings()
        self.auditor = auditor or Auditor(session, self.settings)
        self.ethics = ethics or EthicsAuditor(session, self.settings)

    def _email(self, user_id: str | None) -> str:
        if not user_id:
            return "N/A"
        user = self.session.get(User, user_id)
        return user.email if user is not None else user_id

    def _contributions(self, challenge_id: str) -> list[dict]:
        try:
            splits = payments.calculate_splits(self.session, challenge_id)
        except ValidationError as exc:
            log.warning("No contribution breakdown for %s: %s", challenge_id, exc.message)
            return []
        types = {c.id: c.type for c in repository.get_contributions(self.session, challenge_id)}
        return [
            {
                "email": self._email(s.contributor_id),
                "type": types.get(s.contribution_id, ""),
                "percentage": s.percentage,
                "amount": s.amount,
            }
            for s in splits
        ]

    def _ethics(self, challenge_id: str) -> dict | None:
        latest = self.ethics.get_latest_audit(challenge_id)
        if latest is not None:
            return audit_summary(latest)
        try:
            result, _ = self.ethics.audit_challenge(challenge_id)
        except ValidationError as exc:
            log.warning("Ethics audit skipped for %s: %s", challenge_id, exc.message)
            return None
        return result.as_dict()

    def _signatures(self, challenge_id: str) -> list[dict]:
        rows: list[dict] = []
        manifest = repository.get_manifest(self.session, challenge_id)
        if manifest is not None:
            rows.append({"label": "Composition manifest (leader)", "signed": manifest.signed_by_leader,
                         "at": manifest.signed_at.isoformat() if manifest.signed_at else None})
        proposal = repository.get_latest_proposal(self.session, challenge_id)
        if proposal is not None:
            rows.append({"label": "Payout proposal (leader)", "signed": proposal.signed_by_leader,
                         "at": proposal.leader_signed_at.isoformat() if proposal.leader_signed_at else None})
            rows.append({"label": "Payout proposal (sponsor)", "signed": proposal.sponsor_approved,
                         "at": proposal.sponsor_approved_at.isoformat() if proposal.sponsor_approved_at else None})
        return rows

    def assemble(self, request: EvidenceRequest) -> dict[str, Any]:
        challenge = repository.get_challenge(self.session, request.challenge_id)
        if challenge is None:
            raise NotFoundError("Challenge")

        content: dict[str, Any] = {
            "packageType": request.package_type,
            "generatedAt": utc_now().isoformat() + "Z",
            "challenge": {
                "id": challenge.id,
                "title": challenge.title,
                "bountyAmount": challenge.bounty_amount,
                "status": challenge.status,
                "projectLeaderEmail": self._email(challenge.project_leader_id),
                "createdAt": challenge.created_at.isoformat(),
            },
            "contributions": self._contributions(challenge.id),
            "compliance": self.auditor.validate_payout(challenge.id).as_dict(),
        }
        if request.include_ai_analysis:
            content["ethics"] = self._ethics(challenge.id)
        if request.include_signatures:
            content["signatures"] = self._signatures(challenge.id)
        if request.include_timeline:
            trail = events.get_trail(self.session, "CHALLENGE", challenge.id)[:TIMELINE_LIMIT]
            content["timeline"] = [
                {"timestamp": e.created_at.isoformat(), "action": e.action, "actor": self._email(e.actor_id)}
                for e in trail
            ]
        if request.include_file_hashes:
            files = list(reversed(repository.get_challenge_files(self.session, challenge.id)))[:FILE_LIMIT]
            content["files"] = [{"filename": f.filename, "sha256": f.sha256} for f in files]
        return content

    def generate(self, request: EvidenceRequest) -> EvidencePackage:
        """Build, store and register one package (caller must commit)."""
        if request.package_type not in {t.value for t in PackageType}:
            raise ValidationError(f"Unknown package type: {request.package_type}")

        content = self.assemble(request)
        digest = canonical_hash(content)
        token = secrets.token_hex(16)
        verification_url = f"{self.settings.evidence_base_url.rstrip('/')}/{token}"
        pdf_bytes = render_pdf(content, verification_url, digest)

        stamp = utc_now().strftime("%Y-%m-%dT%H-%M-%S-%f")[:23]
        file_name = f"audit_{request.challenge_id}_{stamp}.pdf"
        self.settings.evidence_dir.mkdir(parents=True, exist_ok=True)
        (self.settings.evidence_dir / file_name).write_bytes(pdf_bytes)

        package = EvidencePackage(
            challenge_id=request.challenge_id,
            package_type=request.package_type,
            file_name=file_name,
            file_size=len(pdf_bytes),
            storage_key=file_name,
            sha256=sha256_hex(pdf_bytes),
            content_digest=digest,
            includes_events=request.include_timeline,
            includes_files=request.include_file_hashes,
            includes_signatures=request.include_signatures,
            includes_ai_analysis=request.include_ai_analysis,
            verification_token=token,
            verification_url=verification_url,
        )
        self.session.add(package)
        self.session.flush()
        log.info("Evidence package %s written to %s (%d bytes)", package.id, file_name, len(pdf_bytes))
        return package

    # -- lookup -------------------------------------------------------------

    def _path(self, package: EvidencePackage) -> Path:
        return self.settings.evidence_dir / package.storage_key

    def find_package(self, package_ref: str) -> EvidencePackage:
        """Look a package up by id or by verification token."""
        package = self.session.execute(
            select(EvidencePackage).where(or_(
                EvidencePackage.id == package_ref,
                EvidencePackage.verification_token == package_ref,
            ))
        ).scalars().first()
        if package is None:
            raise NotFoundError("Evidence package")
        return package

    def verify_package(self, package_ref: str) -> dict:
        package = self.find_package(package_ref)
        path = self._path(package)
        file_exists = path.exists()
        hash_matches = file_exists and sha256_hex(path.read_bytes()) == package.sha256
        if not hash_matches:
            log.warning("Evidence package %s failed verification (exists=%s)", package.id, file_exists)
        return {
            "packageId": package.id,
            "challengeId": package.challenge_id,
            "sha256": package.sha256,
            "createdAt": package.created_at.isoformat(),
            "fileExists": file_exists,
            "hashMatches": hash_matches,
            "valid": file_exists and hash_matches,
        }

    def get_package_file(self, package_ref: str) -> tuple[EvidencePackage, bytes]:
        package = self.find_package(package_ref)
        path = self._path(package)
        if not path.exists():
            raise NotFoundError("Evidence file")
        return package, path.read_bytes()

    def list_packages(self, challenge_id: str) -> list[EvidencePackage]:
        return list(self.session.execute(
            select(EvidencePackage)
            .where(EvidencePackage.challenge_id == challenge_id)
            .order_by(desc(EvidencePackage.created_at))
        ).scalars())


def package_summary(package: EvidencePackage) -> dict:
    return {
        "id": package.id,
        "challengeId": package.challenge_id,
        "packageType": package.package_type,
        "fileName": package.file_name,
        "fileSize": package.file_size,
        "sha256": package.sha256,
        "includesEvents": package.includes_events,
        "includesFiles": package.includes_files,
        "includesSignatures": package.includes_signatures,
        "includesAIAnalysis": package.includes_ai_analysis,
        "verificationUrl": package.verification_url,
        "createdAt": package.created_at.isoformat(),
    }
