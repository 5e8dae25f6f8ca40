from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence, Tuple
import random

from .errors import InvalidArgumentError, InvalidRoundResultError, OutOfRangeError, TagTooLongError

DEFAULT_PLAYERS: Tuple[str, ...] = ("A", "Y", "D", "C")
DEFAULT_TOTAL_ROUNDS = 10
MIN_POINTS = 0
MAX_POINTS = 13
MAX_TAG_LENGTH = 24

STATUS_ACTIVE = "active"
STATUS_COMPLETED = "completed"
STATUS_ABANDONED = "abandoned"
TERMINAL_STATUSES = (STATUS_COMPLETED, STATUS_ABANDONED)

SOURCE_REALTIME = "realtime"
SOURCE_END_GAME = "endGame"
SOURCE_BACKFILL = "backfill"
ROUND_LOG_SOURCES = (SOURCE_REALTIME, SOURCE_END_GAME, SOURCE_BACKFILL)


def round_id(n: int) -> str:
    return f"{n:02d}"


def round_log_id(game_id: str, rid: str) -> str:
    return f"{game_id}_{rid}"


def _is_points(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def validate_points(points: Any) -> Optional[int]:
    """Return ``points`` if it is a legal score, ``None`` meaning "clear"."""
    if points is None:
        return None
    if not _is_points(points) or not (MIN_POINTS <= points <= MAX_POINTS):
        raise OutOfRangeError("points_out_of_range", f"points must be between {MIN_POINTS} and {MAX_POINTS}")
    return points


def validate_total_rounds(total_rounds: Any) -> int:
    if not _is_points(total_rounds) or total_rounds <= 0:
        raise InvalidArgumentError("invalid_total_rounds", "total rounds must be greater than zero")
    return total_rounds


def normalize_tag(tag: Optional[str]) -> Optional[str]:
    trimmed = (tag or "").strip()
    if not trimmed:
        return None
    if len(trimmed) > MAX_TAG_LENGTH:
        raise TagTooLongError("tag_too_long", f"tag must be {MAX_TAG_LENGTH} characters or fewer")
    return trimmed


def parse_players(raw: Optional[str]) -> Tuple[str, ...]:
    if not raw:
        return DEFAULT_PLAYERS
    players = tuple(p.strip() for p in raw.split(",") if p.strip())
    if len(players) < 2 or len(set(players)) != len(players):
        raise InvalidArgumentError("invalid_player_roster")
    return players


def points_by_player(scores: Iterable[Mapping[str, Any]], players: Sequence[str]) -> Optional[Dict[str, int]]:
    """Map the roster to points, or ``None`` if any roster player lacks a numeric score."""
    found: Dict[str, int] = {}
    for score in scores:
        pid = score.get("playerId")
        pts = score.get("points")
        if pid in players and _is_points(pts):
            found[pid] = pts
    if any(p not in found for p in players):
        return None
    return {p: found[p] for p in players}


class ScoringRule(Protocol):
    def winner(self, points: Mapping[str, int], rid: str) -> str: ...


class OneZeroWinnerRule:
    """A complete round is won by the single player who scored 0."""

    def winner(self, points: Mapping[str, int], rid: str) -> str:
        zeros = [pid for pid, pts in points.items() if pts == 0]
        if len(zeros) != 1:
            raise InvalidRoundResultError(rid, len(zeros))
        return zeros[0]


def validate_round_for_close(points: Mapping[str, int], rid: str = "?") -> str:
    return OneZeroWinnerRule().winner(points, rid)


@dataclass(frozen=True)
class CompletedRound:
    round_id: str
    round_number: int
    points_by_player: Dict[str, int]
    total_round_points: int


@dataclass
class Tally:
    totals: Dict[str, int]
    rounds_won: Dict[str, int]
    completed: List[CompletedRound] = field(default_factory=list)


def tally_rounds(
    rounds: Sequence[Tuple[str, int, Sequence[Mapping[str, Any]]]],
    players: Sequence[str],
    rule: Optional[ScoringRule] = None,
) -> Tally:
    """Aggregate complete rounds. ``rounds`` holds ``(round_id, round_number, scores)``.

    Incomplete rounds are skipped. A complete round that breaks the scoring
    rule raises before anything is returned.
    """
    rule = rule or OneZeroWinnerRule()
    tally = Tally(totals={p: 0 for p in players}, rounds_won={p: 0 for p in players})
    for rid, number, scores in sorted(rounds, key=lambda r: r[1]):
        pts = points_by_player(scores, players)
        if pts is None:
            continue
        winner = rule.winner(pts, rid)
        tally.rounds_won[winner] += 1
        for pid, value in pts.items():
            tally.totals[pid] += value
        tally.completed.append(CompletedRound(rid, number, pts, sum(pts.values())))
    return tally


def rank_players(totals: Mapping[str, int], players: Sequence[str], rng: random.Random) -> List[str]:
    """Order players by ascending total; each run of equal totals is shuffled."""
    ordered = sorted(players, key=lambda p: totals[p])
    i = 0
    while i < len(ordered):
        j = i + 1
        while j < len(ordered) and totals[ordered[j]] == totals[ordered[i]]:
            j += 1
        if j - i > 1:
            run = ordered[i:j]
            rng.shuffle(run)
            ordered[i:j] = run
        i = j
    return ordered


def build_results(tally: Tally, players: Sequence[str], rng: random.Random) -> List[Dict[str, Any]]:
    return [
        {
            "playerId": pid,
            "rank": idx + 1,
            "totalPoints": tally.totals[pid],
            "roundsWon": tally.rounds_won.get(pid, 0),
        }
        for idx, pid in enumerate(rank_players(tally.totals, players, rng))
    ]


def round_log_doc(
    game_id: str,
    rid: str,
    round_number: int,
    pts: Mapping[str, int],
    started_at: Optional[datetime],
    ended_at: Optional[datetime],
    source: str,
    now: datetime,
) -> Dict[str, Any]:
    if source not in ROUND_LOG_SOURCES:
        raise InvalidArgumentError("invalid_round_log_source")
    return {
        "gameId": game_id,
        "roundId": rid,
        "roundNumber": round_number,
        "pointsByPlayer": dict(pts),
        "totalRoundPoints": sum(pts.values()),
        "gameStartedAt": started_at,
        "gameEndedAt": ended_at,
        "gameDate": ended_at or started_at,
        "source": source,
        "loggedAt": now,
    }


def round_number_of(doc: Optional[Mapping[str, Any]], rid: str) -> int:
    if doc and _is_points(doc.get("roundNumber")):
        return doc["roundNumber"]
    return int(rid)


def new_game_doc(total_rounds: int, now: datetime) -> Dict[str, Any]:
    return {
        "startedAt": now,
        "endedAt": None,
        "totalRounds": total_rounds,
        "roundsPlayed": 0,
        "status": STATUS_ACTIVE,
        "hideScores": False,
        "tag": None,
        "notes": None,
    }


def new_round_doc(n: int) -> Dict[str, Any]:
    return {"roundNumber": n, "locked": False}


def game_view(game_id: str, data: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "id": game_id,
        "startedAt": data.get("startedAt"),
        "endedAt": data.get("endedAt"),
        "totalRounds": data.get("totalRounds"),
        "roundsPlayed": data.get("roundsPlayed", 0),
        "status": data.get("status"),
        "hideScores": data.get("hideScores") or False,
        "tag": data.get("tag"),
        "notes": data.get("notes"),
    }


def result_view(data: Mapping[str, Any]) -> Dict[str, Any]:
    rounds_won = data.get("roundsWon")
    return {
        "playerId": data.get("playerId"),
        "rank": data.get("rank"),
        "totalPoints": data.get("totalPoints"),
        "roundsWon": rounds_won if _is_points(rounds_won) else 0,
    }


def score_view(score_id: str, data: Mapping[str, Any]) -> Dict[str, Any]:
    pts = data.get("points")
    return {
        "id": score_id,
        "playerId": data.get("playerId"),
        "points": pts if _is_points(pts) else None,
        "enteredAt": data.get("enteredAt"),
    }


def snapshot_game_doc(snapshot: Mapping[str, Any]) -> Dict[str, Any]:
    """Game document fields carried by a deletion snapshot."""
    return {
        "startedAt": snapshot.get("startedAt"),
        "endedAt": snapshot.get("endedAt"),
        "totalRounds": snapshot.get("totalRounds"),
        "roundsPlayed": snapshot.get("roundsPlayed", 0),
        "status": snapshot.get("status"),
        "hideScores": snapshot.get("hideScores") or False,
        "tag": snapshot.get("tag"),
        "notes": snapshot.get("notes"),
    }
