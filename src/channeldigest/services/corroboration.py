"""Importance adjustment based on how many distinct channels report a cluster."""

from __future__ import annotations

from collections.abc import Sequence

import structlog

from channeldigest.models.domain import Cluster, Item
from channeldigest.services.scoring import clamp01

log = structlog.get_logger(__name__)


def channel_key(item: Item) -> str:
    """Identity of the reporting channel: username, else numeric id, else title."""
    if item.source_channel:
        return "u:" + item.source_channel.lower()
    if item.source_channel_id:
        return f"id:{item.source_channel_id}"
    if item.source_channel_title:
        return "t:" + item.source_channel_title.lower()
    return ""


def unique_channels(items: Sequence[Item]) -> set[str]:
    return {key for key in (channel_key(item) for item in items) if key}


def apply_corroboration(
    items: list[Item],
    clusters: list[Cluster],
    boost: float,
    penalty: float,
) -> tuple[list[Item], list[Cluster]]:
    """
    Adjust importance for clustered items by the number of reporting channels.

    Every selected item leaves with its importance clamped to [0, 1];
    without clusters nothing else changes.

    Args:
        items: Selected items; their instances are the single source of truth
        clusters: Clusters for the window (their item views are rebound)
        boost: Added per extra corroborating channel
        penalty: Subtracted when a multi-item cluster comes from one channel

    Returns:
        ``(items, clusters)`` where every cluster member that is also a
        selected item is the same instance as in ``items``
    """
    index = {item.id: item for item in items}
    adjusted: dict[str, float] = {}

    for cluster in clusters:
        channels = len(unique_channels(cluster.items))
        if channels == 0:
            continue

        delta = 0.0
        if channels > 1:
            delta += (channels - 1) * boost
        elif len(cluster.items) > 1:
            delta -= penalty

        for member in cluster.items:
            if member.id in adjusted:
                continue
            source = index.get(member.id, member)
            adjusted[member.id] = clamp01(source.importance_score + delta)

    for item in items:
        item.importance_score = clamp01(adjusted.get(item.id, item.importance_score))

    for cluster in clusters:
        rebound = []
        for member in cluster.items:
            if member.id in index:
                rebound.append(index[member.id])
            else:
                member.importance_score = adjusted.get(member.id, member.importance_score)
                rebound.append(member)
        cluster.items = rebound

    log.debug("corroboration_applied", clusters=len(clusters), adjusted=len(adjusted))
    return items, clusters
