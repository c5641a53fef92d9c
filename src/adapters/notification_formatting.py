"""Shared notification formatting helpers.

Keeping formatting here prevents drift between the group replies, private
replies and queued notifications. All output is Telegram HTML.
"""

from __future__ import annotations

import html
from typing import Dict, List, Sequence

from core.models import Analysis, AnalyzedAuthor, Target, TargetKind
from core.reveal import RevealResult

DIVIDER = "──────────────"
MENTION_LIMIT = 3


def format_mentions(authors: Sequence[AnalyzedAuthor], limit: int = MENTION_LIMIT) -> str:
    """First ``limit`` author labels, then "and N others"."""

    labels = [html.escape(author.label()) for author in authors[:limit]]
    extra = len(authors) - limit
    if extra > 0:
        return f"{', '.join(labels)} and {extra} others"
    return ", ".join(labels)


def format_variant_name(variant: str) -> str:
    return variant.replace("_", " ").capitalize()


class HtmlNotificationFormatter:
    """Renders every user-facing text of the bot."""

    def __init__(self, cost_per_reveal: int = 1) -> None:
        self._cost = cost_per_reveal

    def analysis_ready(self, target: Target, analysis: Analysis) -> str:
        noun = "Channel" if target.kind is TargetKind.CHANNEL else "Group"
        credit_word = "credit" if self._cost == 1 else "credits"
        return "\n".join(
            [
                f"✅ <b>{noun} analysis ready!</b>",
                "",
                f"Analysis completed for: {format_mentions(analysis.authors)}",
                "",
                f"💡 <b>Message me privately to view results for {self._cost} {credit_word} each</b>",
                f"<code>/analyses {target.target_id}</code>",
            ]
        )

    def insufficient_data(self, target: Target) -> str:
        if target.kind is TargetKind.CHANNEL:
            return (
                f"❌ Not enough posts to analyse {html.escape(target.title)}. "
                "The channel may be private, empty or contain only media."
            )
        return "❌ Not enough activity for analysis yet. Please have members send more messages to the group first."

    def analysis_failed(self, target: Target) -> str:
        return "❌ Analysis failed. Please try again later."

    def analysis_started(self) -> str:
        return "⏳ Analysis started. I will post the result here when it is ready."

    def analysis_running(self) -> str:
        return "⏳ An analysis for this chat is already running. Please wait for it to finish."

    def availability(self, target: Target, available: Dict[str, List[AnalyzedAuthor]]) -> str:
        if not available:
            return f"No analysis is available for {html.escape(target.title)} yet."

        lines = [f"📊 <b>Analyses for {html.escape(target.title)}</b>", DIVIDER]
        for variant, authors in available.items():
            lines.append("")
            lines.append(f"<b>{html.escape(format_variant_name(variant))}</b>")
            for author in authors:
                command = f"/reveal {target.target_id} {author.author_id} {variant}"
                lines.append(f"• {html.escape(author.label())}: <code>{html.escape(command)}</code>")
        lines.append(DIVIDER)
        return "\n".join(lines)

    def reveal(self, target: Target, result: RevealResult) -> str:
        charged = "free repeat view" if result.credits_charged == 0 else f"{result.credits_charged} credit(s) spent"
        return "\n".join(
            [
                f"<b>{html.escape(format_variant_name(result.variant))}</b>: "
                f"{html.escape(result.author.label())} in {html.escape(target.title)}",
                DIVIDER,
                "",
                html.escape(result.text),
                "",
                DIVIDER,
                f"<i>{charged}</i>",
            ]
        )

    def credits(self, balance: int) -> str:
        return f"💳 Your balance: <b>{balance}</b> credit(s)."

    def help(self, balance: int) -> str:
        return "\n".join(
            [
                "👋 <b>groupscope</b> analyses the most active members of a group or channel.",
                "",
                "Add me to a group and mention me to start an analysis there.",
                "",
                "<code>/analyze @channel</code> analyse a public channel",
                "<code>/analyses &lt;chat_id&gt;</code> list available results",
                "<code>/reveal &lt;chat_id&gt; &lt;author_id&gt; &lt;variant&gt;</code> view one result",
                "<code>/credits</code> show your balance",
                "",
                self.credits(balance),
            ]
        )
