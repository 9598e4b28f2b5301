"""Command line entry point.

Usage:
    cardclash demo                 # two bots play a match over the in-process store
    cardclash play --name Alice    # one bot queues on the PostgreSQL store
    cardclash migrate [--dry]      # apply the store schema
"""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import logging
import random
import sys
import uuid

from dotenv import load_dotenv

from cardclash.core.config import PROJECT_DIR, GameConfig, Settings, get_settings
from cardclash.core.logging import setup_logging
from cardclash.game.session import GameSession, SessionPhase
from cardclash.services.arbiter import RoundArbiter
from cardclash.services.characters import CharacterSource
from cardclash.shared.cache import CharacterCache
from cardclash.shared.database import DatabaseManager
from cardclash.shared.migrations.runner import MigrationRunner
from cardclash.shared.models.player import PlayerIdentity
from cardclash.shared.store.memory import MemoryBackend
from cardclash.shared.store.postgres import PostgresStore

LOGGER: logging.Logger = logging.getLogger("CardClash")


def build_services(settings: Settings) -> tuple[CharacterSource, RoundArbiter]:
    characters = CharacterSource(
        base_url=settings.jikan_base_url,
        cache=CharacterCache(maxsize=settings.cache_size),
    )
    arbiter = RoundArbiter(
        api_key=settings.openrouter_api_key,
        model=settings.openrouter_model,
        base_url=settings.openrouter_base_url,
    )
    return characters, arbiter


def log_round_results(session: GameSession) -> None:
    seen: set[int] = set()

    def listener(s: GameSession) -> None:
        result = s.round_result
        if result is None or result.round in seen:
            return
        seen.add(result.round)
        mine = result.self_card.name if result.self_card else "?"
        theirs = result.opponent_card.name if result.opponent_card else "?"
        LOGGER.info(
            f"[bold]{s.player.display_name}[/bold] round {result.round}: "
            f"{mine} vs {theirs} -> {result.outcome.value}. {result.explanation}"
        )

    session.on_change(listener)


async def autoplay(session: GameSession, rng: random.Random | None = None) -> str | None:
    """Queue, then pick a random card every round until the match ends.

    Returns the match winner (player id or ``tie``), or None when no match
    was played to the end.
    """
    rng = rng or random.Random()
    changed = asyncio.Event()
    remove = session.on_change(lambda _s: changed.set())
    try:
        if not await session.start_matchmaking():
            LOGGER.warning(f"{session.player.display_name}: {session.error}")
            return None

        while True:
            changed.clear()
            if session.phase != SessionPhase.IN_GAME:
                break
            if session.room is not None and session.selected_card is None:
                await session.select_card(rng.randrange(len(session.player_cards)))
            else:
                await changed.wait()
    finally:
        remove()

    if session.phase != SessionPhase.FINISHED:
        LOGGER.warning(f"{session.player.display_name}: {session.error or 'match interrupted'}")
        return None
    LOGGER.info(
        f"{session.player.display_name} finished: {session.scores['self']} - "
        f"{session.scores['opponent']} (winner: {session.winner})"
    )
    return session.winner


async def run_demo(settings: Settings, config: GameConfig) -> None:
    backend = MemoryBackend()
    characters, arbiter = build_services(settings)
    players = [PlayerIdentity("player-a", "Alice"), PlayerIdentity("player-b", "Bob")]
    stores = [backend.connect(p.id) for p in players]
    sessions = [
        GameSession(store, characters, arbiter, player, config)
        for store, player in zip(stores, players)
    ]
    for session in sessions:
        log_round_results(session)

    try:
        await characters.warm_cache(config.cache_warm_count)
        await asyncio.gather(*(autoplay(s) for s in sessions))
        for session in sessions:
            stats = await session.stats.get(session.player.id)
            LOGGER.info(
                f"{session.player.display_name} stats: {stats.total_games} played, "
                f"{stats.wins} won, {stats.losses} lost, {stats.ties} tied"
            )
    finally:
        for session in sessions:
            await session.close()
        for store in stores:
            await store.close()
        await characters.close()


async def run_play(settings: Settings, config: GameConfig, name: str) -> None:
    if not settings.database_url:
        LOGGER.error("DATABASE_URL is not set, cannot reach the shared store")
        sys.exit(1)

    db = DatabaseManager(settings.database_url)
    await db.connect()
    player = PlayerIdentity(uuid.uuid4().hex, name)
    store = PostgresStore(db.pool, client_id=player.id)
    characters, arbiter = build_services(settings)
    session = GameSession(store, characters, arbiter, player, config)
    log_round_results(session)

    try:
        await MigrationRunner(db.pool).run_pending()
        await store.start()
        await characters.warm_cache(config.cache_warm_count)
        await autoplay(session)
    finally:
        await session.close()
        await store.close()
        await characters.close()
        await db.disconnect()


async def run_migrate(settings: Settings, dry: bool) -> None:
    if not settings.database_url:
        LOGGER.error("DATABASE_URL is not set")
        sys.exit(1)

    db = DatabaseManager(settings.database_url)
    await db.connect()
    try:
        runner = MigrationRunner(db.pool)
        if dry:
            pending = await runner.pending()
            print(f"Pending: {len(pending)}")
            for migration in pending:
                print(f"  -> {migration.version}")
        else:
            newly_applied = await runner.run_pending()
            print(f"Applied {len(newly_applied)} migration(s).")
    finally:
        await db.disconnect()


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="cardclash", description=__doc__.splitlines()[0])
    sub = parser.add_subparsers(dest="command", required=True)

    demo = sub.add_parser("demo", help="Two bots play one match in-process")
    demo.add_argument(
        "--quick", action="store_true", help="Shorten the pause between rounds"
    )

    play = sub.add_parser("play", help="Queue one bot on the PostgreSQL store")
    play.add_argument("--name", default="Player", help="Display name")

    migrate = sub.add_parser("migrate", help="Apply store schema migrations")
    migrate.add_argument("--dry", action="store_true", help="Only list pending migrations")

    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    load_dotenv(PROJECT_DIR / ".env")
    args = parse_args(argv)
    settings = get_settings()
    setup_logging(settings)
    config = GameConfig.from_settings(settings)

    try:
        if args.command == "demo":
            if args.quick:
                config = dataclasses.replace(config, result_display_delay=0.5)
            asyncio.run(run_demo(settings, config))
        elif args.command == "play":
            asyncio.run(run_play(settings, config, args.name))
        elif args.command == "migrate":
            asyncio.run(run_migrate(settings, args.dry))
    except (KeyboardInterrupt, asyncio.CancelledError):
        LOGGER.info("[yellow]Stopped[/yellow]")


if __name__ == "__main__":
    main()
