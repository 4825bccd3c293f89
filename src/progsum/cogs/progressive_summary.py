"""Progressive summarization cog: feeds channel history to the controller."""

from __future__ import annotations

import asyncio
import io
import logging
from datetime import datetime, timezone

import discord
from discord.ext import commands

from progsum import settings
from progsum.summarization import (
    ConversationSession,
    Message,
    SqliteStateStore,
    SummarizationController,
    Summarizer,
)
from progsum.summarization.errors import NoActiveConversation
from progsum.summarization.watcher import ConversationWatcher
from progsum.text_generators import get_text_generator

__all__ = ["ProgressiveSummary"]

_LOG = logging.getLogger(__name__)

SUMMARIZED_BADGE = "🗜️"
RECENT_SUMMARIES_SHOWN = 5
_EMBED_FIELD_LIMIT = 1024


def build_controller() -> SummarizationController:
    """Wire the default store, backend and summarizer from settings."""
    api, model = settings.summary_backend()
    summarizer = Summarizer(get_text_generator(api, model))
    return SummarizationController(SqliteStateStore(), summarizer)


def to_summary_message(message: discord.Message) -> Message:
    """Convert a Discord message into the controller's Message type."""
    author = message.author
    return Message(
        id=message.id,
        is_user=not getattr(author, "bot", False),
        speaker_name=getattr(author, "display_name", None) or str(author),
        text=message.content or "",
        sent_at=message.created_at.timestamp(),
        is_system=message.is_system(),
    )


def _truncate(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[: limit - 1] + "…"


class ProgressiveSummary(commands.Cog):
    """Summarize channel history as it grows and expose the running summaries.

    Each channel is one conversation. Every new message (from users or bots)
    re-evaluates the threshold; summarized messages get a 🗜️ reaction.
    """

    def __init__(self, bot: commands.Bot, controller: SummarizationController | None = None) -> None:
        self.bot = bot
        self.controller = controller or build_controller()
        self.history_limit = settings.history_limit()
        self._active_channel_id: str | None = None
        self.watcher = ConversationWatcher(self.controller, lambda: self._active_channel_id)
        self.controller.add_listener(self._mark_summarized)
        self._tasks: set[asyncio.Task] = set()

    # ---------------------------------------------------------------- host adapter

    def _activate(self, channel: discord.abc.Messageable) -> ConversationSession | None:
        """Make *channel* the active conversation and return its session.

        Callers hold on to the returned session across awaits; another
        channel may become active before they resume.
        """
        self._active_channel_id = str(channel.id)
        self.watcher.check()
        return self.controller.session

    async def _live_messages(self, channel: discord.abc.Messageable) -> list[Message]:
        """Return the channel's recent history, oldest first."""
        items = [item async for item in channel.history(limit=self.history_limit)]
        items.reverse()
        return [to_summary_message(item) for item in items]

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    @commands.Cog.listener()
    async def on_message(self, message: discord.Message) -> None:
        ctx = await self.bot.get_context(message)
        if ctx.valid:
            return
        session = self._activate(message.channel)
        if not self.controller.config.enabled:
            return
        try:
            messages = await self._live_messages(message.channel)
        except discord.HTTPException as exc:
            _LOG.warning("Failed to read history for channel %s: %s", message.channel.id, exc)
            return
        self._spawn(self.controller.on_message_appended(messages, session))

    async def _mark_summarized(self, conversation_id: str, message_ids: frozenset) -> None:
        """Add the summarized badge to each newly summarized message."""
        channel = self.bot.get_channel(int(conversation_id))
        if channel is None:
            return
        for message_id in message_ids:
            if not isinstance(message_id, int):
                continue
            try:
                await channel.get_partial_message(message_id).add_reaction(SUMMARIZED_BADGE)
            except discord.HTTPException as exc:
                _LOG.debug("Could not badge message %s: %s", message_id, exc)

    # ---------------------------------------------------------------- presentation commands

    @commands.command(name="summarize")
    async def summarize_now(self, ctx: commands.Context) -> None:
        """Summarize the next batch of unsummarized messages right away."""
        session = self._activate(ctx.channel)
        try:
            messages = await self._live_messages(ctx.channel)
        except discord.HTTPException as exc:
            await ctx.send(f"Couldn't read channel history: {exc}")
            return
        async with ctx.typing():
            record = await self.controller.manual_summarize_now(messages, session)
        if record is None:
            await ctx.send(self.controller.status)
            return
        await ctx.send(f"Summarized {record.source_message_count} messages ({record.source_token_count} tokens).")
        if self.controller.last_warning:
            await ctx.send(f"Warning: {self.controller.last_warning}")

    @commands.command(name="clearsummaries")
    async def clear_summaries(self, ctx: commands.Context) -> None:
        """Delete every summary for this channel."""
        self._activate(ctx.channel)
        try:
            self.controller.clear_all()
        except NoActiveConversation:
            await ctx.send("No conversation is active.")
            return
        await ctx.send("Summaries cleared.")

    @commands.command(name="summarytoggle")
    async def toggle(self, ctx: commands.Context, state: str | None = None) -> None:
        """Turn progressive summarization on or off (no argument flips it)."""
        if state is None:
            enabled = not self.controller.config.enabled
        elif state.lower() in {"on", "true", "yes", "1"}:
            enabled = True
        elif state.lower() in {"off", "false", "no", "0"}:
            enabled = False
        else:
            await ctx.send("Usage: !summarytoggle [on|off]")
            return
        self.controller.set_enabled(enabled)
        await ctx.send(f"Progressive summarization {'enabled' if enabled else 'disabled'}.")

    @commands.command(name="summarythreshold")
    async def threshold(self, ctx: commands.Context, value: int) -> None:
        """Set the token threshold that triggers automatic summarization."""
        try:
            self.controller.set_token_threshold(value)
        except ValueError as exc:
            await ctx.send(str(exc))
            return
        await ctx.send(f"Token threshold set to {value}.")

    @commands.command(name="summarystatus")
    async def show_status(self, ctx: commands.Context) -> None:
        """Show the summarization status for this channel."""
        self._activate(ctx.channel)
        await ctx.send(embed=self.build_status_embed())

    def build_status_embed(self) -> discord.Embed:
        controller = self.controller
        config = controller.config
        embed = discord.Embed(title="Progressive Summarization")
        embed.add_field(name="Status", value=controller.status, inline=False)
        embed.add_field(name="Enabled", value="yes" if config.enabled else "no")
        embed.add_field(
            name="Current tokens",
            value=f"{controller.pending_token_count} / {config.token_threshold}",
        )
        embed.add_field(name="Total summaries", value=str(len(controller.summaries)))
        embed.add_field(name="Messages summarized", value=str(controller.summarized_count))

        recent = controller.summaries[-RECENT_SUMMARIES_SHOWN:]
        for record in reversed(recent):
            when = datetime.fromtimestamp(record.created_at, tz=timezone.utc).strftime("%Y-%m-%d %H:%M UTC")
            embed.add_field(
                name=f"{when} | {record.source_message_count} messages | {record.source_token_count} tokens",
                value=_truncate(record.text, _EMBED_FIELD_LIMIT),
                inline=False,
            )
        return embed

    @commands.command(name="summarycontext")
    async def show_context(self, ctx: commands.Context) -> None:
        """Attach the message list a generation call would receive for this channel."""
        self._activate(ctx.channel)
        try:
            messages = await self._live_messages(ctx.channel)
        except discord.HTTPException as exc:
            await ctx.send(f"Couldn't read channel history: {exc}")
            return
        projected = self.controller.project_for_generation(messages)
        lines = [
            f"[{'system' if m.is_system else 'user' if m.is_user else 'assistant'}] {m.speaker_name}: {m.text}"
            for m in projected
        ]
        data = io.BytesIO("\n".join(lines).encode("utf-8"))
        await ctx.send(
            f"{len(projected)} of {len(messages)} messages would be sent.",
            file=discord.File(data, filename="context.txt"),
        )

    async def cog_unload(self) -> None:
        for task in list(self._tasks):
            task.cancel()


async def setup(bot: commands.Bot):
    await bot.add_cog(ProgressiveSummary(bot))
