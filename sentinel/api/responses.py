"""
Response conversion - domain dataclasses to API models.
"""

from sentinel.models.api import (
    HistoryItemResponse,
    HistoryStatsResponse,
    PlanResponse,
    ProfileResponse,
    QRScanResponse,
    ScanResultResponse,
)
from sentinel.models.domain import (
    HistoryStats,
    PlanData,
    ProfileData,
    QRScanData,
    ScanHistoryData,
    ScanResult,
)
from sentinel.services.history import risk_band


def plan_response(plan: PlanData) -> PlanResponse:
    return PlanResponse(
        id=plan.id,
        key=plan.key,
        name=plan.name,
        monthly_tokens=plan.monthly_tokens,
        monthly_price_usd=plan.monthly_price_usd,
        scan_price_usd=plan.scan_price_usd,
    )


def profile_response(profile: ProfileData) -> ProfileResponse:
    return ProfileResponse(
        id=profile.id,
        email=profile.email,
        full_name=profile.full_name,
        avatar_url=profile.avatar_url,
        subscription_plan_id=profile.subscription_plan_id,
        subscription_plan=(
            plan_response(profile.subscription_plan) if profile.subscription_plan else None
        ),
        tokens_remaining=profile.balance,
        tokens_used_total=profile.tokens_used_total,
        subscription_status=profile.subscription_status,
        current_period_end=profile.current_period_end,
        last_scan_at=profile.last_scan_at,
        created_at=profile.created_at,
        updated_at=profile.updated_at,
    )


def scan_result_response(result: ScanResult) -> ScanResultResponse:
    return ScanResultResponse(
        content=result.content,
        content_type=result.content_type,
        risk_score=result.risk_score,
        risk_band=risk_band(result.risk_score),
        classification=result.classification,
        explanation=result.explanation,
        recommendations=result.recommendations,
        detected_by=result.detected_by,
        tokens_used=result.tokens_used,
        timestamp=result.timestamp,
    )


def history_item(scan: ScanHistoryData) -> HistoryItemResponse:
    return HistoryItemResponse(
        id=scan.id,
        content=scan.content,
        content_type=scan.content_type,
        risk_score=scan.risk_score,
        classification=scan.classification,
        explanation=scan.explanation,
        recommendations=scan.recommendations,
        tokens_used=scan.tokens_used,
        created_at=scan.created_at,
    )


def stats_response(stats: HistoryStats) -> HistoryStatsResponse:
    return HistoryStatsResponse(
        total_scans=stats.total_scans,
        risk_avg=stats.risk_avg,
        tokens_used=stats.tokens_used,
        by_type=stats.by_type,
        by_risk=stats.by_risk,
    )


def qr_response(scan: QRScanData) -> QRScanResponse:
    return QRScanResponse(
        id=scan.id,
        wallet_address=scan.wallet_address,
        ens_domain=scan.ens_domain,
        scan_type=scan.scan_type,
        scanned_at=scan.scanned_at,
        metadata=scan.metadata,
    )

