"""Combine layer results into found / not found / pending review."""

from __future__ import annotations

from replyguard.models import LayerResult, QuorumResult

DEFAULT_MIN_HEALTHY_LAYERS = 3


def validate_quorum(results: list[LayerResult], min_healthy_layers: int = DEFAULT_MIN_HEALTHY_LAYERS) -> QuorumResult:
    """One healthy layer that found a reply confirms it.

    Denying a reply needs at least ``min_healthy_layers`` healthy layers;
    with fewer the outcome is pending review. Unhealthy layers never count
    toward either side.
    """
    healthy = [r.layer for r in results if r.healthy]
    found = [r.layer for r in results if r.healthy and r.found]
    failed = [r.layer for r in results if not r.healthy]

    if found:
        return QuorumResult(
            quorum_met=True, found=True, pending_review=False,
            healthy_layers=healthy, found_layers=found, failed_layers=failed,
        )
    if len(healthy) >= min_healthy_layers:
        return QuorumResult(
            quorum_met=True, found=False, pending_review=False,
            healthy_layers=healthy, found_layers=found, failed_layers=failed,
        )
    return QuorumResult(
        quorum_met=False, found=False, pending_review=True,
        healthy_layers=healthy, found_layers=found, failed_layers=failed,
    )
