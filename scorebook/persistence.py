from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple
import copy
import logging
import os
import random
import threading

try:
    from google.cloud import firestore  # type: ignore
    from google.cloud.firestore_v1.base_query import FieldFilter  # type: ignore
except Exception:  # pragma: no cover
    firestore = None  # type: ignore
    FieldFilter = None  # type: ignore

from .errors import BatchLimitError, ConflictError, GameFinishedError, InvalidArgumentError, NotFoundError
from .scoring import (
    DEFAULT_PLAYERS,
    DEFAULT_TOTAL_ROUNDS,
    SOURCE_END_GAME,
    SOURCE_REALTIME,
    STATUS_ABANDONED,
    STATUS_ACTIVE,
    STATUS_COMPLETED,
    TERMINAL_STATUSES,
    build_results,
    game_view,
    new_game_doc,
    new_round_doc,
    normalize_tag,
    points_by_player,
    result_view,
    round_id,
    round_log_doc,
    round_log_id,
    round_number_of,
    score_view,
    snapshot_game_doc,
    tally_rounds,
    validate_points,
    validate_total_rounds,
)

logger = logging.getLogger(__name__)

Handler = Callable[[Any], None]
Unsubscribe = Callable[[], None]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _ensure_not_finished(game_id: str, data: Dict[str, Any]) -> None:
    if data.get("status") in TERMINAL_STATUSES:
        raise GameFinishedError("game_finished", f"game {game_id} is {data.get('status')}")


def _check_close_status(status: str) -> None:
    if status not in (STATUS_COMPLETED, STATUS_ABANDONED):
        raise InvalidArgumentError("invalid_close_status")


class InMemoryPersistence:
    """In-memory store with the same document layout as Firestore. For tests and local dev."""

    def __init__(self, players: Sequence[str] = DEFAULT_PLAYERS, rng: Optional[random.Random] = None) -> None:
        self.players: Tuple[str, ...] = tuple(players)
        self.rng = rng or random.Random()
        self.games: Dict[str, Dict[str, Any]] = {}
        self.rounds: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.scores: Dict[Tuple[str, str], Dict[str, Dict[str, Any]]] = {}
        self.results: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.round_logs: Dict[str, Dict[str, Any]] = {}
        self.player_docs: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.RLock()
        self._next_id = 0
        self._game_listeners: Dict[str, List[Handler]] = {}
        self._rounds_listeners: Dict[str, List[Handler]] = {}
        self._score_listeners: Dict[Tuple[str, str], List[Handler]] = {}

    # -- helpers -------------------------------------------------------

    def _new_game_id(self) -> str:
        self._next_id += 1
        return f"game{self._next_id:06d}"

    def _require_game(self, game_id: str) -> Dict[str, Any]:
        game = self.games.get(game_id)
        if game is None:
            raise NotFoundError("game_not_found")
        return game

    def _require_player(self, player_id: str) -> None:
        if player_id not in self.players:
            raise InvalidArgumentError("unknown_player", f"unknown player {player_id}")

    def _round_scores(self, game_id: str, rid: str) -> List[Dict[str, Any]]:
        cells = self.scores.get((game_id, rid), {})
        return [score_view(pid, cells[pid]) for pid in sorted(cells)]

    def _drop_round(self, game_id: str, rid: str) -> None:
        self.rounds.get(game_id, {}).pop(rid, None)
        self.scores.pop((game_id, rid), None)
        self.round_logs.pop(round_log_id(game_id, rid), None)

    def _subscribe(self, registry: Dict[Any, List[Handler]], key: Any, handler: Handler, current: Any) -> Unsubscribe:
        registry.setdefault(key, []).append(handler)
        handler(current)

        def _unsubscribe() -> None:
            handlers = registry.get(key, [])
            if handler in handlers:
                handlers.remove(handler)

        return _unsubscribe

    def _notify_game(self, game_id: str) -> None:
        for handler in list(self._game_listeners.get(game_id, [])):
            handler(self.get_game(game_id))

    def _notify_rounds(self, game_id: str) -> None:
        for handler in list(self._rounds_listeners.get(game_id, [])):
            handler(self.list_rounds(game_id))

    def _notify_scores(self, game_id: str, rid: str) -> None:
        for handler in list(self._score_listeners.get((game_id, rid), [])):
            handler(self._round_scores(game_id, rid))

    # -- players -------------------------------------------------------

    def ensure_players_seeded(self) -> None:
        with self._lock:
            for pid in self.players:
                if pid not in self.player_docs:
                    self.player_docs[pid] = {
                        "initial": pid,
                        "displayName": pid,
                        "photoUrl": None,
                        "createdAt": _now(),
                    }

    # -- reads ---------------------------------------------------------

    def find_active_game_id(self) -> Optional[str]:
        with self._lock:
            for gid, game in self.games.items():
                if game.get("status") == STATUS_ACTIVE:
                    return gid
        return None

    def get_game(self, game_id: str) -> Optional[Dict[str, Any]]:
        game = self.games.get(game_id)
        if game is None:
            return None
        return game_view(game_id, game)

    def list_rounds(self, game_id: str) -> List[Dict[str, Any]]:
        rounds = self.rounds.get(game_id, {})
        return sorted(
            (
                {"id": rid, "roundNumber": doc["roundNumber"], "locked": doc.get("locked", False)}
                for rid, doc in rounds.items()
            ),
            key=lambda r: r["roundNumber"],
        )

    def get_round_scores(self, game_id: str, rid: str) -> List[Dict[str, Any]]:
        self._require_game(game_id)
        if rid not in self.rounds.get(game_id, {}):
            raise NotFoundError("round_not_found")
        return self._round_scores(game_id, rid)

    def get_results(self, game_id: str) -> List[Dict[str, Any]]:
        results = self.results.get(game_id, {})
        return sorted((result_view(r) for r in results.values()), key=lambda r: r["rank"])

    def get_round_log(self, game_id: str, rid: str) -> Optional[Dict[str, Any]]:
        log = self.round_logs.get(round_log_id(game_id, rid))
        return copy.deepcopy(log) if log is not None else None

    def get_round_logs(self, game_id: str, round_ids: Sequence[str]) -> Dict[str, Dict[str, Any]]:
        out: Dict[str, Dict[str, Any]] = {}
        for rid in round_ids:
            log = self.get_round_log(game_id, rid)
            if log is not None:
                out[rid] = log
        return out

    def _completed_sorted(self) -> List[Tuple[str, Dict[str, Any]]]:
        with self._lock:
            games = list(self.games.items())
        completed = [(gid, g) for gid, g in games if g.get("status") == STATUS_COMPLETED]
        epoch = datetime.min.replace(tzinfo=timezone.utc)
        order = {gid: idx for idx, (gid, _) in enumerate(games)}
        completed.sort(key=lambda item: (item[1].get("endedAt") or epoch, order[item[0]]), reverse=True)
        return completed

    def list_recent_completed_games(self, limit: int = 50) -> List[Dict[str, Any]]:
        return [game_view(gid, g) for gid, g in self._completed_sorted()[:limit]]

    def list_completed_games(self, limit: int = 50) -> List[Dict[str, Any]]:
        return [dict(g, results=self.get_results(g["id"])) for g in self.list_recent_completed_games(limit)]

    def get_latest_completed_game(self) -> Optional[Dict[str, Any]]:
        latest = self.list_recent_completed_games(1)
        return latest[0] if latest else None

    def iter_completed_games(self):
        for gid, game in list(self.games.items()):
            if game.get("status") == STATUS_COMPLETED:
                yield game_view(gid, game)

    # -- round store ---------------------------------------------------

    def create_rounds(self, game_id: str, count: int, start: int = 1) -> None:
        rounds = self.rounds.setdefault(game_id, {})
        for n in range(start, count + 1):
            rounds[round_id(n)] = new_round_doc(n)

    def resize_rounds(self, game_id: str, new_count: int) -> None:
        validate_total_rounds(new_count)
        with self._lock:
            self._require_game(game_id)
            current = len(self.rounds.get(game_id, {}))
            if new_count > current:
                self.create_rounds(game_id, new_count, start=current + 1)
            for n in range(new_count + 1, current + 1):
                self._drop_round(game_id, round_id(n))
        self._notify_rounds(game_id)

    def set_round_score(self, game_id: str, rid: str, player_id: str, points: Optional[int]) -> None:
        points = validate_points(points)
        self._require_player(player_id)
        with self._lock:
            game = self._require_game(game_id)
            _ensure_not_finished(game_id, game)
            if rid not in self.rounds.get(game_id, {}):
                raise NotFoundError("round_not_found")
            cells = self.scores.setdefault((game_id, rid), {})
            if points is None:
                cells.pop(player_id, None)
            else:
                cells[player_id] = {"playerId": player_id, "points": points, "enteredAt": _now()}
            self.reconcile_round_log(game_id, rid, SOURCE_REALTIME)
        self._notify_scores(game_id, rid)

    # -- round log reconciler ------------------------------------------

    def write_round_logs(self, logs: Sequence[Dict[str, Any]]) -> None:
        with self._lock:
            for log in logs:
                key = round_log_id(log["gameId"], log["roundId"])
                self.round_logs[key] = dict(self.round_logs.get(key, {}), **copy.deepcopy(log))

    def reconcile_round_log(self, game_id: str, rid: str, source: str = SOURCE_REALTIME) -> bool:
        key = round_log_id(game_id, rid)
        with self._lock:
            game = self.games.get(game_id)
            round_doc = self.rounds.get(game_id, {}).get(rid)
            pts = points_by_player(self._round_scores(game_id, rid), self.players)
            if game is None or round_doc is None or pts is None:
                self.round_logs.pop(key, None)
                logger.debug("round log %s cleared", key)
                return False
            log = round_log_doc(
                game_id,
                rid,
                round_number_of(round_doc, rid),
                pts,
                game.get("startedAt"),
                game.get("endedAt"),
                source,
                _now(),
            )
            self.write_round_logs([log])
        logger.debug("round log %s written source=%s", key, source)
        return True

    # -- progress ------------------------------------------------------

    def count_completed_rounds(self, game_id: str) -> int:
        with self._lock:
            return sum(
                1
                for r in self.list_rounds(game_id)
                if points_by_player(self._round_scores(game_id, r["id"]), self.players) is not None
            )

    def sync_progress(self, game_id: str) -> int:
        with self._lock:
            game = self._require_game(game_id)
            completed = self.count_completed_rounds(game_id)
            game["roundsPlayed"] = completed
        self._notify_game(game_id)
        return completed

    # -- lifecycle -----------------------------------------------------

    def start_game(self, total_rounds: int = DEFAULT_TOTAL_ROUNDS) -> str:
        validate_total_rounds(total_rounds)
        with self._lock:
            if self.find_active_game_id() is not None:
                raise ConflictError("active_game_exists")
            game_id = self._new_game_id()
            self.games[game_id] = new_game_doc(total_rounds, _now())
            self.create_rounds(game_id, total_rounds)
        logger.info("started game %s with %d rounds", game_id, total_rounds)
        return game_id

    def update_total_rounds(self, game_id: str, total_rounds: int) -> None:
        validate_total_rounds(total_rounds)
        with self._lock:
            game = self._require_game(game_id)
            _ensure_not_finished(game_id, game)
            game["totalRounds"] = total_rounds
            game["roundsPlayed"] = min(game.get("roundsPlayed", 0), total_rounds)
            self.resize_rounds(game_id, total_rounds)
            self.sync_progress(game_id)
        logger.info("game %s resized to %d rounds", game_id, total_rounds)

    def toggle_hide_scores(self, game_id: str, hide: bool) -> None:
        with self._lock:
            self._require_game(game_id)["hideScores"] = bool(hide)
        self._notify_game(game_id)

    def update_tag(self, game_id: str, tag: Optional[str]) -> None:
        value = normalize_tag(tag)
        with self._lock:
            self._require_game(game_id)["tag"] = value
        self._notify_game(game_id)

    def abandon(self, game_id: str) -> None:
        with self._lock:
            game = self._require_game(game_id)
            _ensure_not_finished(game_id, game)
            game["status"] = STATUS_ABANDONED
            game["endedAt"] = _now()
        logger.info("game %s abandoned", game_id)
        self._notify_game(game_id)

    def close_game(self, game_id: str, status: str = STATUS_COMPLETED) -> None:
        _check_close_status(status)
        if status == STATUS_ABANDONED:
            self.abandon(game_id)
            return
        with self._lock:
            game = self._require_game(game_id)
            _ensure_not_finished(game_id, game)
            rounds = [
                (r["id"], r["roundNumber"], self._round_scores(game_id, r["id"]))
                for r in self.list_rounds(game_id)
            ]
            tally = tally_rounds(rounds, self.players)
            results = build_results(tally, self.players, self.rng)
            now = _now()
            logs = [
                round_log_doc(
                    game_id, c.round_id, c.round_number, c.points_by_player,
                    game.get("startedAt"), now, SOURCE_END_GAME, now,
                )
                for c in tally.completed
            ]
            # everything below is the atomic commit
            self.write_round_logs(logs)
            self.results[game_id] = {r["playerId"]: r for r in results}
            game["status"] = status
            game["endedAt"] = now
            game["roundsPlayed"] = min(game["totalRounds"], len(tally.completed))
        logger.info("game %s closed with %d completed rounds", game_id, len(tally.completed))
        self._notify_game(game_id)

    # -- deletion / undo -----------------------------------------------

    def delete_game(self, game_id: str) -> Dict[str, Any]:
        with self._lock:
            game = self.get_game(game_id)
            if game is None:
                raise NotFoundError("game_not_found")
            snapshot = dict(game, results=self.get_results(game_id))
            for rid in list(self.rounds.get(game_id, {})):
                self._drop_round(game_id, rid)
            self.rounds.pop(game_id, None)
            self.results.pop(game_id, None)
            del self.games[game_id]
        logger.info("deleted game %s", game_id)
        self._notify_game(game_id)
        self._notify_rounds(game_id)
        return snapshot

    def restore_game(self, snapshot: Dict[str, Any]) -> None:
        # Rounds, scores and round logs are not part of the snapshot.
        game_id = snapshot["id"]
        with self._lock:
            if snapshot.get("status") == STATUS_ACTIVE:
                active = self.find_active_game_id()
                if active is not None and active != game_id:
                    raise ConflictError("active_game_exists")
            self.games[game_id] = snapshot_game_doc(snapshot)
            self.results[game_id] = {
                r["playerId"]: result_view(r) for r in snapshot.get("results") or []
            }
        logger.info("restored game %s", game_id)
        self._notify_game(game_id)

    # -- subscriptions -------------------------------------------------

    def subscribe_to_game(self, game_id: str, handler: Handler) -> Unsubscribe:
        return self._subscribe(self._game_listeners, game_id, handler, self.get_game(game_id))

    def subscribe_to_rounds(self, game_id: str, handler: Handler) -> Unsubscribe:
        return self._subscribe(self._rounds_listeners, game_id, handler, self.list_rounds(game_id))

    def subscribe_to_round_scores(self, game_id: str, rid: str, handler: Handler) -> Unsubscribe:
        return self._subscribe(
            self._score_listeners, (game_id, rid), handler, self._round_scores(game_id, rid)
        )


class FirestorePersistence:
    """Firestore-backed persistence using Native mode.

    Uses FIRESTORE_EMULATOR_HOST if present; otherwise connects to production.
    Layout: games/{id}/rounds/{rid}/scores/{pid}, games/{id}/results/{pid},
    roundLogs/{id}_{rid} and players/{pid}.
    """

    BATCH_LIMIT = 400
    # Firestore rejects a single batch or transaction with more writes than this.
    MAX_ATOMIC_WRITES = 500

    def __init__(
        self,
        client: Optional[Any] = None,
        players: Sequence[str] = DEFAULT_PLAYERS,
        rng: Optional[random.Random] = None,
    ) -> None:
        if client is not None:
            self.client = client
        else:
            if firestore is None:
                raise RuntimeError("google-cloud-firestore not available")
            self.client = firestore.Client(project=os.environ.get("GOOGLE_CLOUD_PROJECT"))
        self.players: Tuple[str, ...] = tuple(players)
        self.rng = rng or random.Random()

    # -- references ----------------------------------------------------

    def _games_ref(self):
        return self.client.collection("games")

    def _game_ref(self, game_id: str):
        return self._games_ref().document(game_id)

    def _rounds_ref(self, game_id: str):
        return self._game_ref(game_id).collection("rounds")

    def _round_ref(self, game_id: str, rid: str):
        return self._rounds_ref(game_id).document(rid)

    def _scores_ref(self, game_id: str, rid: str):
        return self._round_ref(game_id, rid).collection("scores")

    def _score_ref(self, game_id: str, rid: str, player_id: str):
        return self._scores_ref(game_id, rid).document(player_id)

    def _results_ref(self, game_id: str):
        return self._game_ref(game_id).collection("results")

    def _round_log_ref(self, game_id: str, rid: str):
        return self.client.collection("roundLogs").document(round_log_id(game_id, rid))

    def _players_ref(self):
        return self.client.collection("players")

    def _status_query(self, status: str):
        return self._games_ref().where(filter=FieldFilter("status", "==", status))

    def _completed_query(self, limit: int):
        return (
            self._status_query(STATUS_COMPLETED)
            .order_by("endedAt", direction=firestore.Query.DESCENDING)
            .limit(limit)
        )

    # -- helpers -------------------------------------------------------

    def _require_game(self, game_id: str) -> Dict[str, Any]:
        snap = self._game_ref(game_id).get()
        if not snap.exists:
            raise NotFoundError("game_not_found")
        return snap.to_dict() or {}

    def _require_player(self, player_id: str) -> None:
        if player_id not in self.players:
            raise InvalidArgumentError("unknown_player", f"unknown player {player_id}")

    def _round_snaps(self, game_id: str) -> List[Any]:
        return list(self._rounds_ref(game_id).order_by("roundNumber").stream())

    def _scores_by_round(self, game_id: str, round_ids: Sequence[str]) -> Dict[str, List[Dict[str, Any]]]:
        """Fetch every roster cell of the given rounds in one multi-get."""
        out: Dict[str, List[Dict[str, Any]]] = {rid: [] for rid in round_ids}
        refs = [self._score_ref(game_id, rid, pid) for rid in round_ids for pid in self.players]
        if not refs:
            return out
        for snap in self.client.get_all(refs):
            if not snap.exists:
                continue
            rid = snap.reference.parent.parent.id
            out.setdefault(rid, []).append(score_view(snap.id, snap.to_dict() or {}))
        return out

    def _batches(self, ops: Sequence[Tuple[str, Any, Optional[Dict[str, Any]]]]) -> None:
        batch = self.client.batch()
        pending = 0
        for op, ref, data in ops:
            if op == "set":
                batch.set(ref, data)
            elif op == "merge":
                batch.set(ref, data, merge=True)
            else:
                batch.delete(ref)
            pending += 1
            if pending >= self.BATCH_LIMIT:
                batch.commit()
                batch = self.client.batch()
                pending = 0
        if pending:
            batch.commit()

    def _commit_atomic(self, ops: Sequence[Tuple[str, Any, Optional[Dict[str, Any]]]]) -> None:
        """Commit ``ops`` as one batch, refusing up front if Firestore would reject its size."""
        if len(ops) > self.MAX_ATOMIC_WRITES:
            raise BatchLimitError(
                "batch_limit_exceeded",
                f"{len(ops)} writes exceed the {self.MAX_ATOMIC_WRITES} allowed in one atomic commit",
            )
        batch = self.client.batch()
        for op, ref, data in ops:
            if op == "set":
                batch.set(ref, data)
            elif op == "merge":
                batch.set(ref, data, merge=True)
            elif op == "update":
                batch.update(ref, data)
            else:
                batch.delete(ref)
        batch.commit()

    # -- players -------------------------------------------------------

    def ensure_players_seeded(self) -> None:
        refs = [self._players_ref().document(pid) for pid in self.players]
        for snap in self.client.get_all(refs):
            if not snap.exists:
                snap.reference.set(
                    {
                        "initial": snap.id,
                        "displayName": snap.id,
                        "photoUrl": None,
                        "createdAt": _now(),
                    }
                )

    # -- reads ---------------------------------------------------------

    def find_active_game_id(self) -> Optional[str]:
        docs = list(self._status_query(STATUS_ACTIVE).limit(1).stream())
        return docs[0].id if docs else None

    def get_game(self, game_id: str) -> Optional[Dict[str, Any]]:
        snap = self._game_ref(game_id).get()
        if not snap.exists:
            return None
        return game_view(snap.id, snap.to_dict() or {})

    def list_rounds(self, game_id: str) -> List[Dict[str, Any]]:
        rounds = []
        for snap in self._round_snaps(game_id):
            data = snap.to_dict() or {}
            rounds.append(
                {
                    "id": snap.id,
                    "roundNumber": round_number_of(data, snap.id),
                    "locked": data.get("locked", False),
                }
            )
        return rounds

    def get_round_scores(self, game_id: str, rid: str) -> List[Dict[str, Any]]:
        self._require_game(game_id)
        if not self._round_ref(game_id, rid).get().exists:
            raise NotFoundError("round_not_found")
        snaps = self._scores_ref(game_id, rid).order_by("playerId").stream()
        return [score_view(s.id, s.to_dict() or {}) for s in snaps]

    def get_results(self, game_id: str) -> List[Dict[str, Any]]:
        snaps = self._results_ref(game_id).order_by("rank").stream()
        return [result_view(s.to_dict() or {}) for s in snaps]

    def get_round_log(self, game_id: str, rid: str) -> Optional[Dict[str, Any]]:
        snap = self._round_log_ref(game_id, rid).get()
        return snap.to_dict() if snap.exists else None

    def get_round_logs(self, game_id: str, round_ids: Sequence[str]) -> Dict[str, Dict[str, Any]]:
        refs = [self._round_log_ref(game_id, rid) for rid in round_ids]
        out: Dict[str, Dict[str, Any]] = {}
        if not refs:
            return out
        for snap in self.client.get_all(refs):
            if snap.exists:
                data = snap.to_dict() or {}
                out[data.get("roundId") or snap.id.split("_", 1)[-1]] = data
        return out

    def list_recent_completed_games(self, limit: int = 50) -> List[Dict[str, Any]]:
        return [game_view(s.id, s.to_dict() or {}) for s in self._completed_query(limit).stream()]

    def list_completed_games(self, limit: int = 50) -> List[Dict[str, Any]]:
        return [dict(g, results=self.get_results(g["id"])) for g in self.list_recent_completed_games(limit)]

    def get_latest_completed_game(self) -> Optional[Dict[str, Any]]:
        latest = self.list_recent_completed_games(1)
        return latest[0] if latest else None

    def iter_completed_games(self):
        for snap in self._status_query(STATUS_COMPLETED).stream():
            yield game_view(snap.id, snap.to_dict() or {})

    # -- round store ---------------------------------------------------

    def create_rounds(self, game_id: str, count: int, start: int = 1) -> None:
        self._batches([("set", self._round_ref(game_id, round_id(n)), new_round_doc(n)) for n in range(start, count + 1)])

    def resize_rounds(self, game_id: str, new_count: int) -> None:
        validate_total_rounds(new_count)
        self._require_game(game_id)
        current = len(self._round_snaps(game_id))
        if new_count > current:
            self.create_rounds(game_id, new_count, start=current + 1)
            return
        ops: List[Tuple[str, Any, Optional[Dict[str, Any]]]] = []
        for n in range(new_count + 1, current + 1):
            rid = round_id(n)
            for score in self._scores_ref(game_id, rid).stream():
                ops.append(("delete", score.reference, None))
            ops.append(("delete", self._round_ref(game_id, rid), None))
            ops.append(("delete", self._round_log_ref(game_id, rid), None))
        self._batches(ops)

    def set_round_score(self, game_id: str, rid: str, player_id: str, points: Optional[int]) -> None:
        points = validate_points(points)
        self._require_player(player_id)
        game = self._require_game(game_id)
        _ensure_not_finished(game_id, game)
        if not self._round_ref(game_id, rid).get().exists:
            raise NotFoundError("round_not_found")
        ref = self._score_ref(game_id, rid, player_id)
        if points is None:
            ref.delete()
        else:
            ref.set({"playerId": player_id, "points": points, "enteredAt": _now()}, merge=True)
        self.reconcile_round_log(game_id, rid, SOURCE_REALTIME)

    # -- round log reconciler ------------------------------------------

    def write_round_logs(self, logs: Sequence[Dict[str, Any]]) -> None:
        self._batches([("merge", self._round_log_ref(log["gameId"], log["roundId"]), log) for log in logs])

    def reconcile_round_log(self, game_id: str, rid: str, source: str = SOURCE_REALTIME) -> bool:
        log_ref = self._round_log_ref(game_id, rid)
        scores = self._scores_by_round(game_id, [rid])[rid]
        pts = points_by_player(scores, self.players)
        round_snap = self._round_ref(game_id, rid).get() if pts is not None else None
        game_snap = self._game_ref(game_id).get() if round_snap is not None and round_snap.exists else None
        if pts is None or game_snap is None or not game_snap.exists:
            log_ref.delete()
            logger.debug("round log %s cleared", log_ref.id)
            return False
        game = game_snap.to_dict() or {}
        log = round_log_doc(
            game_id,
            rid,
            round_number_of(round_snap.to_dict(), rid),
            pts,
            game.get("startedAt"),
            game.get("endedAt"),
            source,
            _now(),
        )
        log_ref.set(log, merge=True)
        logger.debug("round log %s written source=%s", log_ref.id, source)
        return True

    # -- progress ------------------------------------------------------

    def count_completed_rounds(self, game_id: str) -> int:
        round_ids = [s.id for s in self._round_snaps(game_id)]
        scores = self._scores_by_round(game_id, round_ids)
        return sum(1 for rid in round_ids if points_by_player(scores[rid], self.players) is not None)

    def sync_progress(self, game_id: str) -> int:
        self._require_game(game_id)
        completed = self.count_completed_rounds(game_id)
        self._game_ref(game_id).update({"roundsPlayed": completed})
        return completed

    # -- lifecycle -----------------------------------------------------

    def start_game(self, total_rounds: int = DEFAULT_TOTAL_ROUNDS) -> str:
        validate_total_rounds(total_rounds)
        if firestore is None:
            raise RuntimeError("google-cloud-firestore not available")

        @firestore.transactional
        def _tx(tx):  # type: ignore
            active = list(self._status_query(STATUS_ACTIVE).limit(1).get(transaction=tx))
            if active:
                raise ConflictError("active_game_exists")
            gref = self._games_ref().document()
            tx.set(gref, new_game_doc(total_rounds, _now()))
            for n in range(1, total_rounds + 1):
                tx.set(self._round_ref(gref.id, round_id(n)), new_round_doc(n))
            return gref.id

        game_id = _tx(self.client.transaction())
        logger.info("started game %s with %d rounds", game_id, total_rounds)
        return game_id

    def update_total_rounds(self, game_id: str, total_rounds: int) -> None:
        validate_total_rounds(total_rounds)
        game = self._require_game(game_id)
        _ensure_not_finished(game_id, game)
        self._game_ref(game_id).update(
            {
                "totalRounds": total_rounds,
                "roundsPlayed": min(int(game.get("roundsPlayed", 0) or 0), total_rounds),
            }
        )
        self.resize_rounds(game_id, total_rounds)
        self.sync_progress(game_id)
        logger.info("game %s resized to %d rounds", game_id, total_rounds)

    def toggle_hide_scores(self, game_id: str, hide: bool) -> None:
        self._require_game(game_id)
        self._game_ref(game_id).update({"hideScores": bool(hide)})

    def update_tag(self, game_id: str, tag: Optional[str]) -> None:
        value = normalize_tag(tag)
        self._require_game(game_id)
        self._game_ref(game_id).update({"tag": value})

    def abandon(self, game_id: str) -> None:
        game = self._require_game(game_id)
        _ensure_not_finished(game_id, game)
        self._game_ref(game_id).update({"status": STATUS_ABANDONED, "endedAt": _now()})
        logger.info("game %s abandoned", game_id)

    def close_game(self, game_id: str, status: str = STATUS_COMPLETED) -> None:
        _check_close_status(status)
        if status == STATUS_ABANDONED:
            self.abandon(game_id)
            return
        game = self._require_game(game_id)
        _ensure_not_finished(game_id, game)
        round_snaps = self._round_snaps(game_id)
        scores = self._scores_by_round(game_id, [s.id for s in round_snaps])
        rounds = [
            (s.id, round_number_of(s.to_dict(), s.id), scores[s.id])
            for s in round_snaps
        ]
        tally = tally_rounds(rounds, self.players)
        results = build_results(tally, self.players, self.rng)
        now = _now()

        ops: List[Tuple[str, Any, Optional[Dict[str, Any]]]] = []
        for c in tally.completed:
            log = round_log_doc(
                game_id, c.round_id, c.round_number, c.points_by_player,
                game.get("startedAt"), now, SOURCE_END_GAME, now,
            )
            ops.append(("merge", self._round_log_ref(game_id, c.round_id), log))
        for r in results:
            ops.append(("set", self._results_ref(game_id).document(r["playerId"]), r))
        ops.append(
            (
                "update",
                self._game_ref(game_id),
                {
                    "status": status,
                    "endedAt": now,
                    "roundsPlayed": min(int(game.get("totalRounds") or 0), len(tally.completed)),
                },
            )
        )
        self._commit_atomic(ops)
        logger.info("game %s closed with %d completed rounds", game_id, len(tally.completed))

    # -- deletion / undo -----------------------------------------------

    def delete_game(self, game_id: str) -> Dict[str, Any]:
        game = self.get_game(game_id)
        if game is None:
            raise NotFoundError("game_not_found")
        snapshot = dict(game, results=self.get_results(game_id))

        ops: List[Tuple[str, Any, Optional[Dict[str, Any]]]] = []
        for snap in self._results_ref(game_id).stream():
            ops.append(("delete", snap.reference, None))
        for round_snap in self._rounds_ref(game_id).stream():
            for score in round_snap.reference.collection("scores").stream():
                ops.append(("delete", score.reference, None))
            ops.append(("delete", round_snap.reference, None))
            ops.append(("delete", self._round_log_ref(game_id, round_snap.id), None))
        ops.append(("delete", self._game_ref(game_id), None))
        self._commit_atomic(ops)
        logger.info("deleted game %s", game_id)
        return snapshot

    def restore_game(self, snapshot: Dict[str, Any]) -> None:
        # Rounds, scores and round logs are not part of the snapshot.
        if firestore is None:
            raise RuntimeError("google-cloud-firestore not available")
        game_id = snapshot["id"]
        gref = self._game_ref(game_id)

        @firestore.transactional
        def _tx(tx):  # type: ignore
            if snapshot.get("status") == STATUS_ACTIVE:
                for snap in self._status_query(STATUS_ACTIVE).limit(2).get(transaction=tx):
                    if snap.id != game_id:
                        raise ConflictError("active_game_exists")
            tx.set(gref, snapshot_game_doc(snapshot))
            for r in snapshot.get("results") or []:
                tx.set(gref.collection("results").document(r["playerId"]), result_view(r))

        _tx(self.client.transaction())
        logger.info("restored game %s", game_id)

    # -- subscriptions -------------------------------------------------

    def subscribe_to_game(self, game_id: str, handler: Handler) -> Unsubscribe:
        def _on_snapshot(docs, changes, read_time):
            snap = docs[0] if docs else None
            if snap is None or not snap.exists:
                handler(None)
                return
            handler(game_view(snap.id, snap.to_dict() or {}))

        return self._game_ref(game_id).on_snapshot(_on_snapshot).unsubscribe

    def subscribe_to_rounds(self, game_id: str, handler: Handler) -> Unsubscribe:
        def _on_snapshot(docs, changes, read_time):
            rounds = []
            for snap in docs:
                data = snap.to_dict() or {}
                rounds.append(
                    {"id": snap.id, "roundNumber": round_number_of(data, snap.id), "locked": data.get("locked", False)}
                )
            handler(rounds)

        query = self._rounds_ref(game_id).order_by("roundNumber")
        return query.on_snapshot(_on_snapshot).unsubscribe

    def subscribe_to_round_scores(self, game_id: str, rid: str, handler: Handler) -> Unsubscribe:
        def _on_snapshot(docs, changes, read_time):
            handler([score_view(s.id, s.to_dict() or {}) for s in docs])

        query = self._scores_ref(game_id, rid).order_by("playerId")
        return query.on_snapshot(_on_snapshot).unsubscribe
