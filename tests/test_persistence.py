import random
import threading

import pytest

from scorebook.errors import (
    BatchLimitError,
    ConflictError,
    GameFinishedError,
    InvalidArgumentError,
    InvalidRoundResultError,
    NotFoundError,
    OutOfRangeError,
    TagTooLongError,
)
from scorebook.persistence import InMemoryPersistence


class ReverseRng(random.Random):
    def shuffle(self, x):
        x.reverse()


def fill_round(p, game_id, rid, **pts):
    for pid, v in pts.items():
        p.set_round_score(game_id, rid, pid, v)


def test_start_game_creates_rounds_and_rejects_second_active():
    p = InMemoryPersistence()
    gid = p.start_game(4)
    game = p.get_game(gid)
    assert game["status"] == "active"
    assert game["roundsPlayed"] == 0 and game["totalRounds"] == 4
    assert game["hideScores"] is False and game["tag"] is None
    assert [r["id"] for r in p.list_rounds(gid)] == ["01", "02", "03", "04"]
    assert p.find_active_game_id() == gid
    with pytest.raises(ConflictError) as exc:
        p.start_game(4)
    assert str(exc.value) == "active_game_exists"


def test_start_game_rejects_non_positive_rounds():
    p = InMemoryPersistence()
    with pytest.raises(InvalidArgumentError):
        p.start_game(0)
    assert p.find_active_game_id() is None


def test_set_score_read_back_and_clear():
    p = InMemoryPersistence()
    gid = p.start_game(2)
    for value in (0, 13, 6):
        p.set_round_score(gid, "01", "A", value)
        assert p.get_round_scores(gid, "01") == [
            {"id": "A", "playerId": "A", "points": value, "enteredAt": p.scores[(gid, "01")]["A"]["enteredAt"]}
        ]
    p.set_round_score(gid, "01", "A", None)
    assert p.get_round_scores(gid, "01") == []


def test_set_score_validation_leaves_no_state():
    p = InMemoryPersistence()
    gid = p.start_game(2)
    with pytest.raises(OutOfRangeError):
        p.set_round_score(gid, "01", "A", 14)
    with pytest.raises(InvalidArgumentError):
        p.set_round_score(gid, "01", "Z", 3)
    with pytest.raises(NotFoundError):
        p.set_round_score(gid, "09", "A", 3)
    with pytest.raises(NotFoundError):
        p.set_round_score("missing", "01", "A", 3)
    assert p.get_round_scores(gid, "01") == []


def test_round_log_follows_round_completeness():
    p = InMemoryPersistence()
    gid = p.start_game(3)
    fill_round(p, gid, "01", A=0, Y=3, D=5)
    assert p.get_round_log(gid, "01") is None
    p.set_round_score(gid, "01", "C", 8)
    log = p.get_round_log(gid, "01")
    assert log["pointsByPlayer"] == {"A": 0, "Y": 3, "D": 5, "C": 8}
    assert log["totalRoundPoints"] == 16
    assert log["source"] == "realtime"
    assert log["roundNumber"] == 1
    assert log["gameDate"] == p.get_game(gid)["startedAt"]

    p.set_round_score(gid, "01", "Y", 4)
    assert p.get_round_log(gid, "01")["pointsByPlayer"]["Y"] == 4

    p.set_round_score(gid, "01", "D", None)
    assert p.get_round_log(gid, "01") is None
    # clearing an already-absent log is a no-op
    assert p.reconcile_round_log(gid, "01") is False


def test_sync_progress_counts_complete_rounds():
    p = InMemoryPersistence()
    gid = p.start_game(3)
    fill_round(p, gid, "01", A=0, Y=3, D=5, C=8)
    fill_round(p, gid, "02", A=0, Y=3)
    assert p.get_game(gid)["roundsPlayed"] == 0
    assert p.sync_progress(gid) == 1
    assert p.get_game(gid)["roundsPlayed"] == 1


def test_update_total_rounds_shrink_deletes_tail():
    p = InMemoryPersistence()
    gid = p.start_game(10)
    for rid in ("01", "02", "03"):
        fill_round(p, gid, rid, A=0, Y=1, D=2, C=3)
    p.sync_progress(gid)
    assert p.get_game(gid)["roundsPlayed"] == 3

    p.update_total_rounds(gid, 2)
    game = p.get_game(gid)
    assert game["totalRounds"] == 2
    assert game["roundsPlayed"] == 2
    assert [r["id"] for r in p.list_rounds(gid)] == ["01", "02"]
    assert (gid, "03") not in p.scores
    assert p.get_round_log(gid, "03") is None
    assert p.get_round_log(gid, "02") is not None


def test_update_total_rounds_grow_and_errors():
    p = InMemoryPersistence()
    gid = p.start_game(2)
    p.update_total_rounds(gid, 5)
    assert [r["roundNumber"] for r in p.list_rounds(gid)] == [1, 2, 3, 4, 5]
    assert p.get_game(gid)["totalRounds"] == 5
    with pytest.raises(InvalidArgumentError):
        p.update_total_rounds(gid, 0)
    with pytest.raises(NotFoundError):
        p.update_total_rounds("missing", 3)


def test_hide_and_tag():
    p = InMemoryPersistence()
    gid = p.start_game(1)
    p.toggle_hide_scores(gid, True)
    assert p.get_game(gid)["hideScores"] is True
    p.update_tag(gid, "  Friday  ")
    assert p.get_game(gid)["tag"] == "Friday"
    p.update_tag(gid, "   ")
    assert p.get_game(gid)["tag"] is None
    with pytest.raises(TagTooLongError):
        p.update_tag(gid, "y" * 25)
    with pytest.raises(NotFoundError):
        p.update_tag("missing", "x")


def test_end_to_end_close_ranks_players():
    p = InMemoryPersistence()
    gid = p.start_game(4)
    fill_round(p, gid, "01", A=0, Y=3, D=5, C=8)
    p.close_game(gid)

    results = p.get_results(gid)
    assert results[0] == {"playerId": "A", "rank": 1, "totalPoints": 0, "roundsWon": 1}
    assert [(r["playerId"], r["totalPoints"]) for r in results[1:]] == [("Y", 3), ("D", 5), ("C", 8)]
    game = p.get_game(gid)
    assert game["status"] == "completed"
    assert game["endedAt"] is not None
    assert game["roundsPlayed"] == 1
    log = p.get_round_log(gid, "01")
    assert log["source"] == "endGame"
    assert log["gameEndedAt"] == game["endedAt"]
    assert p.find_active_game_id() is None


def test_close_ties_use_injected_rng():
    p = InMemoryPersistence(rng=ReverseRng())
    gid = p.start_game(2)
    fill_round(p, gid, "01", A=0, Y=4, D=4, C=9)
    p.close_game(gid)
    assert [r["playerId"] for r in p.get_results(gid)] == ["A", "D", "Y", "C"]


def test_rank_invariant_over_many_games():
    p = InMemoryPersistence(rng=random.Random(3))
    for _ in range(10):
        gid = p.start_game(3)
        fill_round(p, gid, "01", A=0, Y=2, D=2, C=2)
        fill_round(p, gid, "02", A=2, Y=0, D=2, C=2)
        p.close_game(gid)
        results = p.get_results(gid)
        assert sorted(r["rank"] for r in results) == [1, 2, 3, 4]
        totals = [r["totalPoints"] for r in results]
        assert totals == sorted(totals)


def test_close_with_invalid_round_writes_nothing():
    for bad in ({"A": 3, "Y": 3, "D": 3, "C": 3}, {"A": 0, "Y": 0, "D": 5, "C": 8}):
        p = InMemoryPersistence()
        gid = p.start_game(3)
        fill_round(p, gid, "01", A=0, Y=3, D=5, C=8)
        fill_round(p, gid, "02", **bad)
        log_before = p.get_round_log(gid, "01")
        with pytest.raises(InvalidRoundResultError):
            p.close_game(gid)
        game = p.get_game(gid)
        assert game["status"] == "active" and game["endedAt"] is None
        assert p.get_results(gid) == []
        assert p.get_round_log(gid, "01") == log_before


def test_close_missing_game_and_terminal_games():
    p = InMemoryPersistence()
    with pytest.raises(NotFoundError):
        p.close_game("missing")
    gid = p.start_game(2)
    fill_round(p, gid, "01", A=0, Y=3, D=5, C=8)
    p.close_game(gid)
    totals = {r["playerId"]: r["totalPoints"] for r in p.get_results(gid)}
    with pytest.raises(GameFinishedError):
        p.close_game(gid)
    with pytest.raises(GameFinishedError):
        p.set_round_score(gid, "02", "A", 0)
    assert {r["playerId"]: r["totalPoints"] for r in p.get_results(gid)} == totals
    with pytest.raises(InvalidArgumentError):
        p.close_game(gid, "paused")


def test_abandon_produces_no_results():
    p = InMemoryPersistence()
    gid = p.start_game(2)
    fill_round(p, gid, "01", A=0, Y=3, D=5, C=8)
    p.close_game(gid, "abandoned")
    game = p.get_game(gid)
    assert game["status"] == "abandoned"
    assert game["endedAt"] is not None
    assert p.get_results(gid) == []
    assert p.list_completed_games() == []
    # a new game can start once the previous one is terminal
    assert p.start_game(2) != gid


def test_history_lists_completed_newest_first():
    p = InMemoryPersistence()
    ids = []
    for _ in range(3):
        gid = p.start_game(1)
        fill_round(p, gid, "01", A=0, Y=1, D=2, C=3)
        p.close_game(gid)
        ids.append(gid)
    history = p.list_completed_games(limit=2)
    assert [g["id"] for g in history] == [ids[2], ids[1]]
    assert len(history[0]["results"]) == 4
    assert p.get_latest_completed_game()["id"] == ids[2]
    assert "results" not in p.list_recent_completed_games(1)[0]


def test_delete_then_restore_is_lossy_for_rounds():
    p = InMemoryPersistence()
    gid = p.start_game(3)
    p.update_tag(gid, "keeper")
    fill_round(p, gid, "01", A=0, Y=3, D=5, C=8)
    fill_round(p, gid, "02", A=2, Y=0, D=1, C=4)
    p.close_game(gid)
    game_before = p.get_game(gid)
    results_before = p.get_results(gid)

    snapshot = p.delete_game(gid)
    assert p.get_game(gid) is None
    assert p.get_results(gid) == []
    assert p.list_rounds(gid) == []
    assert p.get_round_log(gid, "01") is None
    assert snapshot["results"] == results_before

    p.restore_game(snapshot)
    assert p.get_game(gid) == game_before
    assert p.get_results(gid) == results_before
    # rounds, scores and round logs are not restored
    assert p.list_rounds(gid) == []
    assert p.count_completed_rounds(gid) == 0
    assert p.get_round_log(gid, "01") is None
    assert p.get_round_log(gid, "02") is None


def test_delete_missing_game():
    p = InMemoryPersistence()
    with pytest.raises(NotFoundError):
        p.delete_game("missing")


def test_restore_active_snapshot_refused_while_another_game_is_active():
    p = InMemoryPersistence()
    first = p.start_game(2)
    snapshot = p.delete_game(first)
    second = p.start_game(2)

    with pytest.raises(ConflictError) as exc:
        p.restore_game(snapshot)
    assert str(exc.value) == "active_game_exists"
    assert p.find_active_game_id() == second
    assert p.get_game(first) is None

    p.abandon(second)
    p.restore_game(snapshot)
    assert p.find_active_game_id() == first


def test_resize_missing_game_creates_nothing():
    p = InMemoryPersistence()
    with pytest.raises(NotFoundError):
        p.resize_rounds("missing", 3)
    assert p.list_rounds("missing") == []
    assert p.count_completed_rounds("missing") == 0


def test_history_reads_alongside_concurrent_games():
    p = InMemoryPersistence()
    errors = []

    def play(n):
        try:
            for _ in range(n):
                gid = p.start_game(1)
                fill_round(p, gid, "01", A=0, Y=1, D=2, C=3)
                p.close_game(gid)
        except Exception as exc:  # pragma: no cover
            errors.append(exc)

    def read(n):
        try:
            for _ in range(n):
                p.list_recent_completed_games(10)
                p.find_active_game_id()
        except Exception as exc:  # pragma: no cover
            errors.append(exc)

    threads = [threading.Thread(target=play, args=(20,))]
    threads += [threading.Thread(target=read, args=(200,)) for _ in range(3)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    history = p.list_recent_completed_games(50)
    assert len(history) == 20
    assert len({g["id"] for g in history}) == 20


def test_firestore_delete_refuses_oversized_atomic_commit():
    from scorebook.persistence import FirestorePersistence

    store = FirestorePersistence(client=object())
    ops = [("delete", None, None)] * (FirestorePersistence.MAX_ATOMIC_WRITES + 1)
    with pytest.raises(BatchLimitError) as exc:
        store._commit_atomic(ops)
    assert str(exc.value) == "batch_limit_exceeded"
    assert exc.value.status_code == 422


def test_subscriptions_push_updates_until_unsubscribed():
    p = InMemoryPersistence()
    gid = p.start_game(2)
    games, rounds, cells = [], [], []
    stop_game = p.subscribe_to_game(gid, games.append)
    p.subscribe_to_rounds(gid, rounds.append)
    p.subscribe_to_round_scores(gid, "01", cells.append)
    assert games[-1]["id"] == gid
    assert len(rounds[-1]) == 2
    assert cells[-1] == []

    p.set_round_score(gid, "01", "A", 0)
    assert cells[-1][0]["points"] == 0
    p.update_total_rounds(gid, 3)
    assert len(rounds[-1]) == 3
    p.toggle_hide_scores(gid, True)
    assert games[-1]["hideScores"] is True

    stop_game()
    seen = len(games)
    p.update_tag(gid, "quiet")
    assert len(games) == seen


def test_custom_roster():
    p = InMemoryPersistence(players=("N", "E", "S"))
    gid = p.start_game(1)
    fill_round(p, gid, "01", N=2, E=0, S=7)
    assert p.get_round_log(gid, "01")["pointsByPlayer"] == {"N": 2, "E": 0, "S": 7}
    p.close_game(gid)
    assert [r["playerId"] for r in p.get_results(gid)] == ["E", "N", "S"]


def test_players_seeded_once():
    p = InMemoryPersistence()
    p.ensure_players_seeded()
    created = p.player_docs["A"]["createdAt"]
    p.ensure_players_seeded()
    assert set(p.player_docs) == {"A", "Y", "D", "C"}
    assert p.player_docs["A"]["createdAt"] == created
