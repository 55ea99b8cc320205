"""Command line interface for the Resonance learning pipeline and song ranking."""

from __future__ import annotations

import argparse
from datetime import datetime, timedelta
import logging
import os
from pathlib import Path
import sqlite3
import sys

from resonance.backfill import BackfillOrchestrator
from resonance.biometrics import (
    HEART_RATE,
    HRV,
    SQLiteBiometricHistory,
    init_biometric_tables,
    store_readings,
    store_sleep_samples,
    store_workouts,
)
from resonance.config import PRESETS, StateEngineConfig, UserPreferences, get_preset, load_preferences
from resonance.decision import DecisionContext, DecisionEngine
from resonance.diurnal import get_default_context
from resonance.importer import ImportProblem, load_biometrics, load_events, load_library
from resonance.models import ActivityContext
from resonance.state_engine import ManualMoodInput, estimate_state
from resonance.storage import WATERMARK_KEYS, SQLiteStore, init_db

DEFAULT_DB_PATH = Path("resonance.db")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Resonance CLI")
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=("DEBUG", "INFO", "WARNING", "ERROR"),
        help="Logging verbosity (default: WARNING)",
    )
    # Default must stay None so RESONANCE_DB is read at run time.
    parser.add_argument(
        "--db",
        default=None,
        type=Path,
        help="SQLite database path. Defaults to RESONANCE_DB or ./resonance.db.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("init-db", help="Create the database schema.")

    library_parser = subparsers.add_parser(
        "import-library", help="Import songs and playlists from a JSON export."
    )
    library_parser.add_argument("input", type=Path, help="Library JSON file")

    events_parser = subparsers.add_parser(
        "import-events", help="Import logged playback events from a JSON export."
    )
    events_parser.add_argument("input", type=Path, help="Playback events JSON file")

    biometrics_parser = subparsers.add_parser(
        "import-biometrics",
        help="Import heart rate, HRV, sleep and workout history from a JSON export.",
    )
    biometrics_parser.add_argument("input", type=Path, help="Biometrics JSON file")

    backfill_parser = subparsers.add_parser(
        "backfill", help="Rebuild sessions, song effects and playlist aggregates."
    )
    backfill_parser.add_argument(
        "--full",
        action="store_true",
        help="Discard learned state and reprocess the whole history.",
    )

    subparsers.add_parser("backfill-status", help="Print the learning pipeline watermarks.")

    recommend_parser = subparsers.add_parser(
        "recommend", help="Rank a playlist's songs for the current listener state."
    )
    recommend_parser.add_argument("--playlist", required=True, help="Playlist identifier")
    recommend_parser.add_argument("--at", help="ISO-8601 timestamp to rank for (default: now)")
    recommend_parser.add_argument(
        "--context",
        choices=[context.value for context in ActivityContext],
        help="Activity context. Defaults to the time-of-day guess.",
    )
    recommend_parser.add_argument("--mood-valence", type=float, help="Manual mood valence in [0, 1]")
    recommend_parser.add_argument("--mood-energy", type=float, help="Manual mood energy in [0, 1]")
    recommend_parser.add_argument("--preset", choices=sorted(PRESETS), help="Preference preset")
    recommend_parser.add_argument(
        "--preferences",
        type=Path,
        default=None,
        help="Preferences JSON path. Defaults to RESONANCE_PREFERENCES.",
    )
    recommend_parser.add_argument("--top", type=int, default=5, help="Number of songs to print.")
    return parser


def _resolve_db(args: argparse.Namespace) -> Path:
    if args.db is not None:
        return args.db
    env_value = os.environ.get("RESONANCE_DB")
    return Path(env_value) if env_value else DEFAULT_DB_PATH


def _resolve_preferences(args: argparse.Namespace) -> UserPreferences:
    if args.preset:
        return get_preset(args.preset)
    path = args.preferences or os.environ.get("RESONANCE_PREFERENCES")
    return load_preferences(Path(path) if path else None)


def _is_valid_iso8601(value: str) -> bool:
    try:
        datetime.fromisoformat(value)
    except ValueError:
        return False
    return True


def _unit_interval(value: float | None) -> bool:
    return value is None or 0.0 <= value <= 1.0


def _print_problems(problems: list[ImportProblem]) -> None:
    if not problems:
        return
    print(f"Encountered {len(problems)} errors.", file=sys.stderr)
    for problem in problems:
        location = (
            f"{problem.file}:{problem.record_index}"
            if problem.record_index is not None
            else str(problem.file)
        )
        print(f"- {location}: {problem.message}", file=sys.stderr)


def _run_recommend(args: argparse.Namespace, connection: sqlite3.Connection) -> int:
    if args.at is not None and not _is_valid_iso8601(args.at):
        print("Invalid --at value. Use ISO-8601 format.", file=sys.stderr)
        return 1
    if (args.mood_valence is None) != (args.mood_energy is None):
        print("Provide both --mood-valence and --mood-energy, or neither.", file=sys.stderr)
        return 1
    if not _unit_interval(args.mood_valence) or not _unit_interval(args.mood_energy):
        print("Manual mood values must be between 0.0 and 1.0.", file=sys.stderr)
        return 1
    try:
        preferences = _resolve_preferences(args)
    except ValueError as exc:
        print(f"Invalid preferences: {exc}", file=sys.stderr)
        return 1

    store = SQLiteStore(connection)
    candidates = store.playlist_song_ids(args.playlist)
    if not candidates:
        print(f"No songs found for playlist {args.playlist}.", file=sys.stderr)
        return 1

    at = datetime.fromisoformat(args.at) if args.at else datetime.now()
    config = StateEngineConfig()
    history = SQLiteBiometricHistory(connection)
    manual_mood = None
    if args.mood_valence is not None:
        manual_mood = ManualMoodInput(valence=args.mood_valence, energy=args.mood_energy, recorded_at=at)
    state = estimate_state(
        at,
        history.heart_rate_history(at - timedelta(minutes=config.heart_rate_window_minutes), at),
        history.hrv_history(at - timedelta(minutes=config.hrv_window_minutes), at),
        ActivityContext(args.context) if args.context else get_default_context(at),
        manual_mood=manual_mood,
        config=config,
    )

    recently_played = {}
    for song_id in candidates:
        song = store.get_song(song_id)
        if song is not None and song.last_played_at is not None:
            recently_played[song_id] = song.last_played_at
    context = DecisionContext(
        state=state,
        candidate_song_ids=tuple(candidates),
        recently_played=recently_played,
        preferences=preferences,
        now=at,
    )
    ranked = DecisionEngine(store).rank_candidates(context)
    if not ranked:
        print("No playable songs in this playlist.", file=sys.stderr)
        return 1

    print(f"State: {state.summary}")
    for position, score in enumerate(ranked[: max(1, args.top)], start=1):
        print(f"{position}. {score.title} - {score.artist} (score {score.final_score:.3f})")
        print(f"   {score.short_explanation}")
    print()
    print(ranked[0].full_explanation)
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level), format="%(levelname)s: %(message)s")

    db_path = _resolve_db(args)
    with sqlite3.connect(db_path) as connection:
        init_db(connection)
        init_biometric_tables(connection)
        store = SQLiteStore(connection)

        if args.command == "init-db":
            print(f"Initialized database at {db_path}.")
            return 0

        if args.command == "import-library":
            result = load_library(args.input)
            store.upsert_songs(result.songs)
            for playlist in result.playlists:
                store.upsert_playlist(playlist.playlist_id, playlist.name, playlist.song_ids)
            print(f"Imported {len(result.songs)} songs and {len(result.playlists)} playlists.")
            _print_problems(result.problems)
            return 0

        if args.command == "import-events":
            result = load_events(args.input)
            inserted = store.insert_events(result.events)
            print(f"Imported {inserted} playback events ({len(result.events) - inserted} already present).")
            _print_problems(result.problems)
            return 0

        if args.command == "import-biometrics":
            result = load_biometrics(args.input)
            heart_rates = store_readings(connection, HEART_RATE, result.heart_rates)
            hrv = store_readings(connection, HRV, result.hrv)
            sleep = store_sleep_samples(connection, result.sleep)
            workouts = store_workouts(connection, result.workouts)
            print(
                "Imported biometrics: "
                f"{heart_rates} heart rate readings, "
                f"{hrv} HRV readings, "
                f"{sleep} sleep samples, "
                f"{workouts} workouts."
            )
            _print_problems(result.problems)
            return 0

        if args.command == "backfill":
            orchestrator = BackfillOrchestrator(store, SQLiteBiometricHistory(connection))
            report = orchestrator.run_full_backfill() if args.full else orchestrator.run_incremental_backfill()
            if report is None:
                print("A backfill is already running.", file=sys.stderr)
                return 1
            if not report.succeeded:
                print(f"Backfill failed: {report.error}", file=sys.stderr)
                return 1
            print(
                f"Backfill ({report.mode.value}) complete: "
                f"sessions={report.sessions.sessions_created}, "
                f"events={report.learning.events_applied}, "
                f"playlists={report.playlists.playlists_updated}"
            )
            return 0

        if args.command == "backfill-status":
            for key in WATERMARK_KEYS:
                value = store.get_watermark(key)
                print(f"{key}: {value.isoformat() if value else 'never'}")
            return 0

        if args.command == "recommend":
            return _run_recommend(args, connection)

    return 1


if __name__ == "__main__":
    raise SystemExit(main())
