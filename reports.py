# reports.py
"""
Report text parsing, lost/found matching and verification codes.

- parse_report: "ITEM, LOCATION, ..." text -> ReportDraft
- find_matches: score found reports against a lost item name (exact or weighted)
- search_reports: manual keyword search (exact or substring)
- generate_code / verify_code: 6-character codes gating claimed/recovered updates
"""
from __future__ import annotations

import secrets
import string
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional

from pydantic import BaseModel, Field, field_validator

from db_io import NO_DESCRIPTION, Report

CODE_LENGTH = 6
CODE_ALPHABET = string.ascii_uppercase + string.digits

MATCH_EXACT = "exact"
MATCH_WEIGHTED = "weighted"
MATCH_MODES = (MATCH_EXACT, MATCH_WEIGHTED)

SEARCH_EXACT = "exact"
SEARCH_SUBSTRING = "substring"
SEARCH_MODES = (SEARCH_EXACT, SEARCH_SUBSTRING)

EXACT_SCORE = 100
CONTAINS_SCORE = 80
ITEM_KEYWORD_SCORE = 3
DESCRIPTION_KEYWORD_SCORE = 1
IMAGE_BONUS = 2
RECENT_BONUS = 1
RECENT_WINDOW = timedelta(days=7)

REPORT_TEMPLATES = {
    "lost": "ITEM, LOCATION, DESCRIPTION",
    "found": "ITEM, LOCATION, CONTACT_PHONE, DESCRIPTION (optional)",
}


class ReportFormatError(ValueError):
    """Raised when report text does not have enough comma-separated fields."""

    def __init__(self, report_type: str):
        self.report_type = report_type
        self.template = REPORT_TEMPLATES[report_type]
        super().__init__(f"Expected format: {self.template}")


class ReportDraft(BaseModel):
    type: str
    item: str = Field(min_length=1)
    location: str = Field(min_length=1)
    description: str = NO_DESCRIPTION
    contact_phone: Optional[str] = None
    image_url: Optional[str] = None

    @field_validator("item", "location", "description")
    @classmethod
    def strip_text(cls, v: str) -> str:
        return v.strip()

    def to_report(self, reporter: str, timestamp: str, verification_code: str) -> Report:
        return Report(
            type=self.type,
            item=self.item,
            location=self.location,
            description=self.description,
            contact_phone=self.contact_phone,
            image_url=self.image_url,
            reporter=reporter,
            timestamp=timestamp,
            verification_code=verification_code,
        )


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------

def parse_report(text: str, report_type: str, image_url: Optional[str] = None) -> ReportDraft:
    if report_type not in REPORT_TEMPLATES:
        raise ValueError(f"Unknown report type: {report_type}")
    parts = [p.strip() for p in (text or "").split(",")]
    if len(parts) < 3 or not parts[0] or not parts[1]:
        raise ReportFormatError(report_type)

    item, location = parts[0], parts[1]
    if report_type == "lost":
        description = ", ".join(p for p in parts[2:] if p)
        return ReportDraft(type="lost", item=item, location=location, description=description or NO_DESCRIPTION)

    contact_phone = parts[2]
    if not contact_phone:
        raise ReportFormatError(report_type)
    description = ", ".join(p for p in parts[3:] if p)
    return ReportDraft(
        type="found",
        item=item,
        location=location,
        contact_phone=contact_phone,
        description=description or NO_DESCRIPTION,
        image_url=image_url,
    )


# ---------------------------------------------------------------------------
# Matcher
# ---------------------------------------------------------------------------

@dataclass
class ScoredReport:
    report: Report
    score: int


def normalize_text(text: Optional[str]) -> str:
    return " ".join((text or "").lower().split())


def score_found_report(query: str, report: Report, now: datetime) -> int:
    needle = normalize_text(query)
    name = normalize_text(report.item)
    if not needle or not name:
        return 0
    if needle == name:
        score = EXACT_SCORE
    elif needle in name or name in needle:
        score = CONTAINS_SCORE
    else:
        description = normalize_text(report.description)
        score = 0
        for keyword in needle.split():
            if len(keyword) <= 1:
                continue
            if keyword in name:
                score += ITEM_KEYWORD_SCORE
            if keyword in description:
                score += DESCRIPTION_KEYWORD_SCORE
    # bonuses only rank reports that already match on text
    if score == 0:
        return 0
    if report.has_image:
        score += IMAGE_BONUS
    created = report.created_at()
    if created is not None and now - created <= RECENT_WINDOW:
        score += RECENT_BONUS
    return score


def find_matches(
    item: str,
    found_reports: Iterable[Report],
    mode: str = MATCH_WEIGHTED,
    now: Optional[datetime] = None,
) -> List[ScoredReport]:
    now = now or datetime.now(timezone.utc)
    candidates = [r for r in found_reports if r.type == "found"]
    if mode == MATCH_EXACT:
        needle = normalize_text(item)
        if not needle:
            return []
        return [ScoredReport(r, EXACT_SCORE) for r in candidates if normalize_text(r.item) == needle]
    if mode != MATCH_WEIGHTED:
        raise ValueError(f"Unknown match mode: {mode}")
    scored = [ScoredReport(r, score_found_report(item, r, now)) for r in candidates]
    # sorted() is stable, so equal scores keep store order
    return sorted((s for s in scored if s.score > 0), key=lambda s: s.score, reverse=True)


def search_reports(query: str, reports: Iterable[Report], mode: str = SEARCH_EXACT) -> List[Report]:
    needle = normalize_text(query)
    if not needle:
        return []
    if mode == SEARCH_EXACT:
        return [r for r in reports if normalize_text(r.item) == needle]
    if mode == SEARCH_SUBSTRING:
        return [
            r for r in reports
            if needle in normalize_text(" ".join([r.item, r.location, r.description or ""]))
        ]
    raise ValueError(f"Unknown search mode: {mode}")


# ---------------------------------------------------------------------------
# Verification codes
# ---------------------------------------------------------------------------

def generate_code(length: int = CODE_LENGTH) -> str:
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))


def normalize_code(code: Optional[str]) -> str:
    return (code or "").strip().upper()


def verify_code(report: Report, supplied: Optional[str]) -> bool:
    expected = normalize_code(report.verification_code)
    return bool(expected) and normalize_code(supplied) == expected
