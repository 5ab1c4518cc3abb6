"""
Scan history helpers - risk banding, aggregate stats, day grouping and export.

Pure functions over ScanHistoryData; no I/O.
"""

import csv
import io
import json
import math
import re
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from sentinel.models.api import ContentType, RiskBand
from sentinel.models.domain import HistoryPage, HistoryStats, ScanHistoryData

CSV_HEADERS = [
    "Date",
    "Content Type",
    "Content",
    "Risk Score",
    "Classification",
    "Explanation",
    "Recommendations",
    "Tokens Used",
]

_LEADING_INT = re.compile(r"^\s*([+-]?\d+)")


def parse_score(raw: str | int | None) -> int | None:
    """
    Parse the leading integer of a score string.

    "85.5" parses as 85; anything without a leading integer is None.
    """
    if raw is None:
        return None
    if isinstance(raw, int):
        return raw
    match = _LEADING_INT.match(raw)
    return int(match.group(1)) if match else None


def risk_band(score: int | str | None) -> RiskBand:
    """Map a 0-100 score onto its band. Unparseable scores are safe."""
    value = score if isinstance(score, int) else parse_score(score)
    if value is None:
        return RiskBand.SAFE
    if value >= 85:
        return RiskBand.CRITICAL
    if value >= 70:
        return RiskBand.HIGH
    if value >= 40:
        return RiskBand.MEDIUM
    if value >= 20:
        return RiskBand.LOW
    return RiskBand.SAFE


def default_stats() -> HistoryStats:
    return HistoryStats(
        total_scans=0,
        risk_avg=0,
        tokens_used=0,
        by_type={ct.value: 0 for ct in ContentType},
        by_risk={band.value: 0 for band in RiskBand},
    )


def _round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def calculate_stats(scans: Iterable[ScanHistoryData]) -> HistoryStats:
    """
    Aggregate a set of scans.

    Unparseable scores add 0 to the average and band as safe.
    A zero ``tokens_used`` is counted as 1.
    """
    rows = list(scans)
    stats = default_stats()
    if not rows:
        return stats

    score_sum = 0
    tokens_used = 0
    by_type = dict(stats.by_type)
    by_risk = dict(stats.by_risk)

    for scan in rows:
        score = parse_score(scan.risk_score)
        score_sum += score or 0
        tokens_used += scan.tokens_used or 1
        type_key = ContentType(scan.content_type).value
        if type_key in by_type:
            by_type[type_key] += 1
        by_risk[risk_band(score).value] += 1

    return HistoryStats(
        total_scans=len(rows),
        risk_avg=_round_half_up(score_sum / len(rows)),
        tokens_used=tokens_used,
        by_type=by_type,
        by_risk=by_risk,
    )


def day_label(moment: datetime) -> str:
    """Long-form date label, e.g. 'January 5, 2025'."""
    return f"{moment:%B} {moment.day}, {moment.year}"


def group_by_day(scans: Iterable[ScanHistoryData]) -> dict[str, list[ScanHistoryData]]:
    """Group scans by calendar day, preserving input order within and across groups."""
    grouped: dict[str, list[ScanHistoryData]] = {}
    for scan in scans:
        grouped.setdefault(day_label(scan.created_at), []).append(scan)
    return grouped


def build_page(scans: list[ScanHistoryData]) -> HistoryPage:
    return HistoryPage(scans=scans, grouped=group_by_day(scans), stats=calculate_stats(scans))


def empty_page() -> HistoryPage:
    return HistoryPage(scans=[], grouped={}, stats=default_stats())


def scan_to_dict(scan: ScanHistoryData) -> dict[str, Any]:
    return {
        "id": str(scan.id),
        "user_id": str(scan.user_id),
        "content": scan.content,
        "content_type": ContentType(scan.content_type).value,
        "risk_score": scan.risk_score,
        "classification": scan.classification,
        "explanation": scan.explanation,
        "recommendations": scan.recommendations,
        "tokens_used": scan.tokens_used,
        "created_at": scan.created_at.isoformat(),
    }


def export_json(
    user_id: UUID, scans: Iterable[ScanHistoryData], exported_at: datetime | None = None
) -> str:
    """Export as an indented JSON envelope."""
    envelope = {
        "exportedAt": (exported_at or datetime.now(UTC)).isoformat(),
        "userId": str(user_id),
        "scans": [scan_to_dict(scan) for scan in scans],
    }
    return json.dumps(envelope, indent=2)


def export_csv(scans: Iterable[ScanHistoryData]) -> str:
    """
    Export as CSV with a fixed header row.

    Fields containing commas, quotes or newlines are quoted and inner quotes doubled.
    """
    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_MINIMAL, lineterminator="\n")
    writer.writerow(CSV_HEADERS)
    for scan in scans:
        writer.writerow(
            [
                scan.created_at.isoformat(),
                ContentType(scan.content_type).value,
                scan.content,
                scan.risk_score,
                scan.classification,
                scan.explanation,
                scan.recommendations,
                scan.tokens_used,
            ]
        )
    return buffer.getvalue()
