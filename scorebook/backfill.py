"""Offline sweep that rebuilds ``roundLogs`` for every completed game.

Usage: python -m scorebook.backfill [--dry-run] [--limit-games=N]

Safe to re-run: logs whose content already matches the live scores are left
alone, so a second pass only writes rounds completed since the first.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence
import argparse
import json
import logging
import os

from dotenv import load_dotenv

from .scoring import SOURCE_BACKFILL, parse_players, points_by_player, round_log_doc

logger = logging.getLogger(__name__)

BATCH_LIMIT = 400

_COMPARED_FIELDS = ("roundNumber", "pointsByPlayer", "totalRoundPoints", "gameStartedAt", "gameEndedAt", "gameDate")


@dataclass
class BackfillSummary:
    dryRun: bool = False
    processedGames: int = 0
    processedRounds: int = 0
    completedRounds: int = 0
    skippedIncompleteRounds: int = 0
    writtenLogs: int = 0
    unchangedLogs: int = 0
    failedRounds: int = 0
    roundsWithOnePoint: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _same_log(existing: Optional[Dict[str, Any]], log: Dict[str, Any]) -> bool:
    if not existing:
        return False
    return all(existing.get(k) == log.get(k) for k in _COMPARED_FIELDS)


def backfill_round_logs(persistence, dry_run: bool = False, limit_games: Optional[int] = None) -> BackfillSummary:
    summary = BackfillSummary(dryRun=dry_run)
    pending: List[Dict[str, Any]] = []

    def flush() -> None:
        if pending and not dry_run:
            persistence.write_round_logs(list(pending))
        pending.clear()

    for game in persistence.iter_completed_games():
        if limit_games is not None and summary.processedGames >= limit_games:
            break
        summary.processedGames += 1
        game_id = game["id"]
        rounds = persistence.list_rounds(game_id)
        existing = persistence.get_round_logs(game_id, [r["id"] for r in rounds])

        for rnd in rounds:
            summary.processedRounds += 1
            rid = rnd["id"]
            try:
                pts = points_by_player(persistence.get_round_scores(game_id, rid), persistence.players)
                if pts is None:
                    summary.skippedIncompleteRounds += 1
                    continue
                summary.completedRounds += 1
                if any(v == 1 for v in pts.values()):
                    summary.roundsWithOnePoint += 1
                log = round_log_doc(
                    game_id,
                    rid,
                    rnd["roundNumber"],
                    pts,
                    game.get("startedAt"),
                    game.get("endedAt"),
                    SOURCE_BACKFILL,
                    datetime.now(timezone.utc),
                )
                if _same_log(existing.get(rid), log):
                    summary.unchangedLogs += 1
                    continue
                pending.append(log)
                summary.writtenLogs += 1
                if len(pending) >= BATCH_LIMIT:
                    flush()
            except Exception:
                summary.failedRounds += 1
                logger.exception("backfill failed for game %s round %s", game_id, rid)

    flush()
    logger.info("backfill finished %s", summary.to_dict())
    return summary


def _project_id() -> Optional[str]:
    for key in ("FIREBASE_PROJECT_ID", "GCLOUD_PROJECT", "GOOGLE_CLOUD_PROJECT"):
        if os.getenv(key):
            return os.getenv(key)
    return None


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Rebuild round logs for completed games.")
    parser.add_argument("--dry-run", action="store_true", help="count only, write nothing")
    parser.add_argument("--limit-games", type=int, default=None, help="stop after N games")
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    load_dotenv(dotenv_path=Path(".env.local"))
    load_dotenv(dotenv_path=Path(".env"))
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s [%(name)s] %(message)s")
    args = parse_args(argv)

    project = _project_id()
    if not project:
        raise SystemExit("Missing project id. Set FIREBASE_PROJECT_ID or GOOGLE_CLOUD_PROJECT in .env.local.")
    os.environ.setdefault("GOOGLE_CLOUD_PROJECT", project)

    from google.cloud import firestore  # type: ignore

    from .persistence import FirestorePersistence

    persistence = FirestorePersistence(
        client=firestore.Client(project=project),
        players=parse_players(os.getenv("SCOREBOOK_PLAYERS")),
    )
    summary = backfill_round_logs(persistence, dry_run=args.dry_run, limit_games=args.limit_games)
    print(json.dumps(summary.to_dict(), indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
