"""Render composed items and clusters into Telegram HTML."""

from __future__ import annotations

import html
from collections.abc import Sequence
from datetime import UTC, tzinfo

import structlog
from pydantic import BaseModel, Field

from channeldigest.errors import LLMError
from channeldigest.models.domain import Anomaly, Cluster, Evidence, FactCheck, Item, Window
from channeldigest.services.clustering import normalize_evidence_url
from channeldigest.services.corroboration import channel_key
from channeldigest.services.ports import LLMGateway
from channeldigest.services.scoring import importance_tier
from channeldigest.services.settings import DigestSettings
from channeldigest.services.summary_cache import ClusterSummaryCache
from channeldigest.utils.text import normalize_language, strip_html

log = structlog.get_logger(__name__)

SEPARATOR_LINE = "━━━━━━━━━━━━━━━━━━━━━━\n"
TIME_FORMAT = "%H:%M"
DEFAULT_SOURCE_LABEL = "Source"
MAX_CORROBORATING_CHANNELS = 3
MAX_EVIDENCE_SOURCES = 3

EMOJI_BREAKING = "🔴"
EMOJI_NOTABLE = "📌"
EMOJI_STANDARD = "📝"
EMOJI_BULLET = "•"

TIER_PREFIXES = {
    "breaking": EMOJI_BREAKING,
    "notable": EMOJI_NOTABLE,
    "standard": EMOJI_STANDARD,
    "minor": EMOJI_BULLET,
}

HEADERS = {
    "en": "Digest for",
    "ru": "Дайджест за",
    "de": "Digest für",
    "es": "Resumen para",
    "fr": "Résumé pour",
    "it": "Riassunto per",
}

SECTION_TITLES = {
    "en": ("Breaking", "Notable", "Also"),
    "ru": ("Срочно", "Важное", "Остальное"),
    "de": ("Eilmeldung", "Wichtig", "Weiteres"),
    "es": ("Última hora", "Destacado", "Otros"),
    "fr": ("Flash info", "Important", "Autres"),
    "it": ("Ultime notizie", "Importante", "Altro"),
}


class TierGroup(BaseModel):
    clusters: list[Cluster] = Field(default_factory=list)
    items: list[Item] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.clusters and not self.items


def esc(text: str | None) -> str:
    return html.escape(text or "", quote=True)


def importance_prefix(score: float) -> str:
    return TIER_PREFIXES[importance_tier(score)]


def item_label(item: Item) -> str:
    if item.source_channel:
        return "@" + item.source_channel
    return item.source_channel_title or DEFAULT_SOURCE_LABEL


def item_url(item: Item) -> str:
    if item.source_channel:
        return f"https://t.me/{item.source_channel}/{item.source_msg_id}"
    return f"https://t.me/c/{item.source_channel_id}/{item.source_msg_id}"


def format_link(item: Item, label: str | None = None) -> str:
    if not item.source_channel and not item.source_channel_id:
        return esc(label or item_label(item))
    return f'<a href="{esc(item_url(item))}">{esc(label or item_label(item))}</a>'


def cluster_max_importance(cluster: Cluster) -> float:
    return max((item.importance_score for item in cluster.items), default=0.0)


def format_fact_check_line(fact_check: FactCheck) -> str:
    if not fact_check.url:
        return ""
    label = fact_check.publisher or "Fact-check"
    return f'\n    ↳ <i>Related fact-check: <a href="{esc(fact_check.url)}">{esc(label)}</a></i>'


def format_corroboration_line(items: Sequence[Item], representative: Item) -> str:
    """
    Name up to three other channels that reported the story.

    When every item comes from the representative's channel, link the first
    other message from that channel instead.
    """
    rep_key = channel_key(representative)
    seen = {rep_key}
    others: list[str] = []
    for item in items:
        key = channel_key(item)
        if not key or key in seen:
            continue
        seen.add(key)
        others.append(format_link(item))
        if len(others) >= MAX_CORROBORATING_CHANNELS:
            break

    if others:
        return f"\n    ↳ <i>Also reported by: {', '.join(others)}</i>"

    for item in items:
        if channel_key(item) == rep_key and item.source_msg_id != representative.source_msg_id:
            return f"\n    ↳ <i>Related: {format_link(item)}</i>"
    return ""


class DigestRenderer:
    """
    Turns the composed content of one window into a single HTML message.

    Args:
        settings: Active digest settings (language, editor, evidence display)
        timezone: Zone used to display the window range
        llm: Optional gateway for consolidated summaries and the overview
        cache: Optional cluster summary cache shared with the LLM gateway
        evidence: Evidence per item id
        fact_checks: Fact checks per item id
    """

    def __init__(
        self,
        settings: DigestSettings,
        timezone: tzinfo = UTC,
        llm: LLMGateway | None = None,
        cache: ClusterSummaryCache | None = None,
        evidence: dict[str, list[Evidence]] | None = None,
        fact_checks: dict[str, list[FactCheck]] | None = None,
    ) -> None:
        self.settings = settings
        self.timezone = timezone
        self.llm = llm
        self.cache = cache
        self.evidence = evidence or {}
        self.fact_checks = fact_checks or {}
        self.language = normalize_language(settings.digest_language) or "en"
        self._seen_summaries: set[str] = set()

    def render(self, window: Window, items: Sequence[Item], clusters: Sequence[Cluster]) -> str:
        if not items:
            return ""

        self._seen_summaries = set()
        parts = [self._header(window), self._metadata(items, clusters), self._narrative(items)]

        titles = SECTION_TITLES.get(self.language, SECTION_TITLES["en"])
        emojis = (EMOJI_BREAKING, EMOJI_NOTABLE, EMOJI_STANDARD)
        for group, title, emoji in zip(self._tiers(items, clusters), titles, emojis):
            parts.append(self._render_group(group, emoji, title))

        parts.append(self._context_section())
        return "".join(parts).rstrip() + "\n"

    def _header(self, window: Window) -> str:
        start = window.start.astimezone(self.timezone).strftime(TIME_FORMAT)
        end = window.end.astimezone(self.timezone).strftime(TIME_FORMAT)
        header = HEADERS.get(self.language, HEADERS["en"])
        return f"{SEPARATOR_LINE}📰 <b>{esc(header)}</b> • {start} - {end}\n{SEPARATOR_LINE}"

    def _metadata(self, items: Sequence[Item], clusters: Sequence[Cluster]) -> str:
        channels = {channel_key(item) for item in items}
        topics = 0
        if self.settings.topics_enabled:
            topics = len(clusters) or len({item.topic.strip().lower() for item in items if item.topic.strip()})
        return f"📊 <i>{len(items)} items from {len(channels)} channels | {topics} topics</i>\n\n"

    def _narrative(self, items: Sequence[Item]) -> str:
        if not self.settings.editor_enabled or self.llm is None:
            return ""
        try:
            narrative = strip_html(self.llm.compose_narrative(items, self.language))
        except LLMError as exc:
            log.warning("render.narrative_failed", error=str(exc))
            return ""
        if not narrative:
            return ""
        return f"<blockquote>\n📝 <b>Overview</b>\n\n{esc(narrative)}\n</blockquote>\n"

    def _tiers(self, items: Sequence[Item], clusters: Sequence[Cluster]) -> tuple[TierGroup, TierGroup, TierGroup]:
        breaking, notable, also = TierGroup(), TierGroup(), TierGroup()

        sections = {"breaking": breaking, "notable": notable}

        def pick(score: float) -> TierGroup:
            return sections.get(importance_tier(score), also)

        clustered: set[str] = set()
        if self.settings.topics_enabled:
            for cluster in clusters:
                if not cluster.items:
                    continue
                pick(cluster_max_importance(cluster)).clusters.append(cluster)
                clustered.update(item.id for item in cluster.items)

        for item in items:
            if item.id not in clustered:
                pick(item.importance_score).items.append(item)

        return breaking, notable, also

    def _render_group(self, group: TierGroup, emoji: str, title: str) -> str:
        if group.is_empty:
            return ""

        body = []
        for cluster in group.clusters:
            if len(cluster.items) > 1:
                body.append(self._render_cluster(cluster))
            else:
                body.append(self._render_items(cluster.items))
        body.append(self._render_items(group.items))

        content = "".join(body)
        if not content:
            return ""
        return f"{emoji} <b>{esc(title)}</b>\n{content}\n"

    def _render_items(self, items: Sequence[Item]) -> str:
        """One bullet per distinct summary; items repeating a summary share its line."""
        grouped: dict[str, list[Item]] = {}
        for item in items:
            summary = item.summary.strip()
            if not summary or summary in self._seen_summaries:
                continue
            grouped.setdefault(summary, []).append(item)

        lines = []
        for summary, same in grouped.items():
            self._seen_summaries.add(summary)
            lead = same[0]
            prefix = importance_prefix(max(item.importance_score for item in same))
            text = esc(summary)
            if lead.topic and self.settings.topics_enabled:
                text = f"<b>{esc(lead.topic)}</b>: {text}"
            links = " • ".join(format_link(item) for item in same)
            line = f"{prefix} {text}\n    ↳ <i>via {links}</i>"
            line += self._fact_check_line(same)
            line += self._evidence_line(same)
            lines.append(line + "\n")
        return "".join(lines)

    def _render_cluster(self, cluster: Cluster) -> str:
        representative = cluster.representative
        if representative is None:
            return ""

        prefix = importance_prefix(cluster_max_importance(cluster))
        topic = esc((cluster.topic or representative.topic or "").upper())
        summary = self._consolidated_summary(cluster)

        if summary:
            text = f"{prefix} <b>{topic}</b>\n{esc(summary)}"
            text += f"\n    ↳ <i>via {format_link(representative)}</i>"
        else:
            if representative.summary.strip() in self._seen_summaries:
                return ""
            text = f"{prefix} <b>{topic}</b>\n{prefix} {esc(representative.summary.strip())}"
            text += f" <i>via {format_link(representative)}</i>"

        text += self._fact_check_line(cluster.items)
        text += format_corroboration_line(cluster.items, representative)
        text += self._evidence_line(cluster.items)
        if not summary and len(cluster.items) > 1:
            text += f" <i>(+{len(cluster.items) - 1} related)</i>"

        for item in cluster.items:
            if item.summary.strip():
                self._seen_summaries.add(item.summary.strip())
        return text + "\n"

    def _consolidated_summary(self, cluster: Cluster) -> str:
        if not self.settings.consolidated_clusters_enabled:
            return ""

        if self.cache is not None:
            cached = self.cache.lookup(cluster.items)
            if cached:
                return strip_html(cached)

        if self.llm is None:
            return ""
        try:
            generated = strip_html(self.llm.summarize_cluster(cluster.items, self.language))
        except LLMError as exc:
            log.warning("render.cluster_summary_failed", cluster_id=cluster.id, error=str(exc))
            return ""

        if generated and self.cache is not None:
            self.cache.store(cluster.items, generated)
        return generated

    def _fact_check_line(self, items: Sequence[Item]) -> str:
        for item in items:
            for fact_check in self.fact_checks.get(item.id, []):
                line = format_fact_check_line(fact_check)
                if line:
                    return line
        return ""

    def _display_evidence(self, items: Sequence[Item]) -> list[Evidence]:
        seen: set[str] = set()
        shown: list[Evidence] = []
        for item in items:
            for ev in self.evidence.get(item.id, []):
                if ev.is_contradiction or ev.agreement_score < self.settings.evidence_display_min_agreement:
                    continue
                key = normalize_evidence_url(ev.url)
                if not key or key in seen:
                    continue
                seen.add(key)
                shown.append(ev)
        shown.sort(key=lambda ev: ev.agreement_score, reverse=True)
        return shown[:MAX_EVIDENCE_SOURCES]

    def _evidence_line(self, items: Sequence[Item]) -> str:
        shown = self._display_evidence(items)
        if not shown:
            return ""

        parts = []
        for ev in shown:
            title = ev.title or ev.domain or ev.url
            part = f'\n    • <a href="{esc(ev.url)}">{esc(title)}</a>'
            if ev.domain and title != ev.domain:
                part += f" <i>({esc(ev.domain)})</i>"
            parts.append(part)
        return "\n    ↳ <i>Sources:</i>" + "".join(parts)

    def _context_section(self) -> str:
        background: dict[str, Evidence] = {}
        for sources in self.evidence.values():
            for ev in sources:
                if "wikipedia.org" in ev.domain.lower() and ev.url not in background:
                    background[ev.url] = ev
        if not background:
            return ""

        lines = ["\n<b>📖 Context</b>\n"]
        for url in sorted(background):
            ev = background[url]
            lines.append(f'• <a href="{esc(url)}">{esc(ev.title or ev.domain)}</a> ({esc(ev.domain)})\n')
        return "".join(lines)


def format_anomaly_report(anomalies: Sequence[Anomaly], threshold: float, timezone: tzinfo = UTC) -> str:
    """Consolidated operator notification for the empty windows of one run."""
    if not anomalies:
        return ""

    starved = [anomaly for anomaly in anomalies if not anomaly.is_backlog]
    backlog = [anomaly for anomaly in anomalies if anomaly.is_backlog]

    lines = ["⚠️ <b>Digest Anomaly Report</b>", ""]
    if starved:
        first = min(anomaly.start for anomaly in starved).astimezone(timezone)
        last = max(anomaly.end for anomaly in starved).astimezone(timezone)
        lines += [
            f"📊 <b>{len(starved)} empty windows</b> (items below threshold)",
            f"• Windows: {first.strftime(TIME_FORMAT)} - {last.strftime(TIME_FORMAT)}",
            f"• Total items: <code>{sum(anomaly.total_items for anomaly in starved)}</code>",
            f"• Ready items: <code>{sum(anomaly.ready_items for anomaly in starved)}</code>",
            f"• Threshold: <code>{threshold:.2f}</code>",
            "",
            "💡 Consider lowering <code>importance_threshold</code>",
        ]
    if backlog:
        if starved:
            lines.append("")
        largest = max(anomaly.backlog_size for anomaly in backlog)
        lines += [
            f"🔄 <b>Large backlog detected</b> (<code>{largest}</code> messages)",
            f"• Windows affected: <code>{len(backlog)}</code>",
            "Pipeline is catching up - messages pending LLM processing.",
        ]
    return "\n".join(lines)
