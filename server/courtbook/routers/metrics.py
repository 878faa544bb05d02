"""Prometheus scrape endpoint for the reservation engine's counters."""

from fastapi import APIRouter, Response

from ..core.observability import get_prometheus_metrics

router = APIRouter()


@router.get(
    "/metrics",
    summary="Reservation engine metrics",
    description=(
        "Booking synchronization, waitlist transitions, expired transactions, "
        "audit findings, notification failures, sweep durations and running workers"
    ),
    response_class=Response,
    tags=["Observability"]
)
async def metrics():
    """
    Return the courtbook_* series in Prometheus text format.

    Covers courtbook_bookings_synchronized_total, courtbook_waitlist_transitions_total,
    courtbook_transactions_expired_total, courtbook_audit_findings_total,
    courtbook_notification_failures_total, courtbook_sweep_duration_seconds
    and courtbook_workers_running.
    """
    return Response(
        content=get_prometheus_metrics(),
        media_type="text/plain; version=0.0.4; charset=utf-8"
    )
