"""Tests for session_state.py: the reducer and the store around it."""

import itertools

import pytest

from livequiz.client.events import (
    AnswerRecorded, AnswerSelected, AnswersDelivered, LeaderboardSnapshot,
    ParticipantJoined, ParticipantLeft, QuestionAdvanced, QuestionsBroadcast,
    Reset, Resync, SessionBound, SessionEnded, TimerExpired, TimerTick,
    UserLeaderboardSnapshot,
)
from livequiz.client.session_state import SessionRegistry, SessionState, SessionStore, apply
from livequiz.server.quiz_types import (
    Answer, LeaderboardEntry, Participant, QuizPhase, UserStats,
)

from conftest import make_question


def run(state, *events):
    for event in events:
        state = apply(state, event)
    return state


@pytest.fixture
def started():
    """A session on question 0 of 3."""
    qs = (make_question(1), make_question(2), make_question(3))
    return apply(SessionState(session_code="ABC123", local_user_id="u1"), QuestionsBroadcast(questions=qs))


def entry(uid, score, rank):
    return LeaderboardEntry(user_id=uid, name=uid.upper(), score=score, rank=rank)


# -- Roster -------------------------------------------------------------------


class TestRoster:
    @pytest.mark.parametrize("uid", ["u1", "u2", "someone-else"])
    def test_join_is_idempotent(self, uid):
        join = ParticipantJoined(participant=Participant(user_id=uid, name="N", joined_at=1.0))
        once = apply(SessionState(), join)
        twice = apply(once, join)
        assert twice is once
        assert [p.user_id for p in twice.roster] == [uid]

    def test_duplicate_join_with_other_timestamp_is_still_one_entry(self):
        state = run(
            SessionState(),
            ParticipantJoined(participant=Participant(user_id="u1", name="Ada", joined_at=1.0)),
            ParticipantJoined(participant=Participant(user_id="u1", name="Ada", joined_at=2.0)),
        )
        assert len(state.roster) == 1

    def test_leave_removes(self):
        state = run(
            SessionState(),
            ParticipantJoined(participant=Participant(user_id="u1", name="Ada")),
            ParticipantJoined(participant=Participant(user_id="u2", name="Bob")),
            ParticipantLeft(user_id="u1"),
        )
        assert [p.user_id for p in state.roster] == ["u2"]

    def test_leave_of_absent_user_is_noop(self):
        state = SessionState()
        assert apply(state, ParticipantLeft(user_id="ghost")) is state


# -- Questions ----------------------------------------------------------------


class TestBroadcast:
    def test_broadcast_starts_at_question_zero(self, started):
        assert started.phase == QuizPhase.QUESTION
        assert started.current_index == 0
        assert started.current_question.id == "q1"
        assert started.question_count == 3

    def test_empty_broadcast_is_dropped(self):
        state = SessionState()
        assert apply(state, QuestionsBroadcast(questions=())) is state

    def test_redelivered_broadcast_is_noop(self, started):
        first = apply(started, QuestionsBroadcast(questions=started.questions, message_id=7))
        assert apply(first, QuestionsBroadcast(questions=started.questions, message_id=7)) is first

    @pytest.mark.parametrize("message_id", [None, 8])
    def test_republished_same_questions_clear_answers(self, started, message_id):
        state = apply(started, QuestionsBroadcast(questions=started.questions, message_id=7))
        answer = Answer(user_id="u1", question_id="q1", selected_option="option1")
        state = apply(state, AnswerRecorded(answer=answer))

        state = apply(state, QuestionsBroadcast(questions=started.questions, message_id=message_id))
        assert state.answers == ()
        assert state.current_index == 0
        assert state.broadcast_id == message_id

    def test_second_broadcast_restarts_quiz(self, started):
        answer = Answer(user_id="u1", question_id="q1", selected_option="option1")
        state = run(started, AnswerRecorded(answer=answer), QuestionAdvanced(index=1))
        assert state.current_index == 1

        state = apply(state, QuestionsBroadcast(questions=started.questions))
        assert state.current_index == 0
        assert state.answers == ()
        assert state.unsent == ()


class TestAdvance:
    def test_index_never_decreases(self, started):
        q5 = make_question(5)
        events = [
            QuestionAdvanced(index=1),
            QuestionAdvanced(index=0),
            QuestionAdvanced(index=2),
            QuestionAdvanced(index=1),
            QuestionAdvanced(index=2),
            QuestionAdvanced(index=5),
            QuestionAdvanced(index=4, question=q5),
        ]
        observed = []
        state = started
        for event in events:
            state = apply(state, event)
            observed.append(state.current_index)
        assert observed == sorted(observed)
        assert observed[-1] == 4

    def test_advance_without_known_or_attached_question_is_dropped(self, started):
        assert apply(started, QuestionAdvanced(index=7)) is started

    def test_catch_up_payload_fills_gap(self, started):
        extra = make_question(9)
        state = apply(started, QuestionAdvanced(index=4, question=extra))
        assert state.current_index == 4
        assert state.current_question == extra
        assert state.question_at(3) is None

    def test_duplicate_advance_is_noop(self, started):
        state = apply(started, QuestionAdvanced(index=1))
        assert apply(state, QuestionAdvanced(index=1)) is state

    def test_advance_clears_selection_and_timer(self, started):
        state = run(
            started,
            AnswerSelected(question_id="q1", option="option1"),
            TimerTick(remaining=10, question_index=0),
            QuestionAdvanced(index=1),
        )
        assert state.pending_selection is None
        assert state.timer is None

    def test_advance_before_any_broadcast_needs_payload(self):
        state = SessionState(session_code="ABC123")
        assert apply(state, QuestionAdvanced(index=0)) is state
        state = apply(state, QuestionAdvanced(index=0, question=make_question(1)))
        assert state.phase == QuizPhase.QUESTION
        assert state.current_question.id == "q1"

    def test_advance_after_end_is_dropped(self, started):
        ended = apply(started, SessionEnded())
        assert apply(ended, QuestionAdvanced(index=1)) is ended


# -- Leaderboard ----------------------------------------------------------------


class TestLeaderboard:
    def test_snapshot_replaces_wholesale(self, started):
        first = apply(started, LeaderboardSnapshot(entries=(entry("u1", 10, 1), entry("u2", 0, 2)), final=False))
        second = apply(first, LeaderboardSnapshot(entries=(entry("u3", 20, 1),), final=False))
        assert [e.user_id for e in second.leaderboard] == ["u3"]

    def test_final_flag_moves_to_leaderboard(self, started):
        state = apply(started, LeaderboardSnapshot(entries=(entry("u1", 10, 1),), final=True))
        assert state.phase == QuizPhase.LEADERBOARD

    def test_non_final_snapshot_on_last_question_keeps_phase(self, started):
        on_last = apply(started, QuestionAdvanced(index=2))
        state = apply(on_last, LeaderboardSnapshot(entries=(entry("u1", 10, 1),), final=False))
        assert state.phase == QuizPhase.QUESTION
        assert len(state.leaderboard) == 1

    def test_unflagged_snapshot_on_last_question_falls_back_to_index(self, started):
        on_last = apply(started, QuestionAdvanced(index=2))
        state = apply(on_last, LeaderboardSnapshot(entries=(entry("u1", 10, 1),)))
        assert state.phase == QuizPhase.LEADERBOARD

    def test_unflagged_snapshot_mid_quiz_keeps_phase(self, started):
        state = apply(started, LeaderboardSnapshot(entries=(entry("u1", 10, 1),)))
        assert state.phase == QuizPhase.QUESTION

    def test_identical_snapshot_is_noop(self, started):
        state = apply(started, LeaderboardSnapshot(entries=(entry("u1", 10, 1),), final=False))
        assert apply(state, LeaderboardSnapshot(entries=(entry("u1", 10, 1),), final=False)) is state

    def test_ended_session_stays_ended(self, started):
        ended = apply(started, SessionEnded())
        state = apply(ended, LeaderboardSnapshot(entries=(entry("u1", 10, 1),), final=True))
        assert state.phase == QuizPhase.ENDED

    def test_late_advance_after_final_leaderboard_is_dropped(self, started):
        state = run(started, QuestionAdvanced(index=1),
                    LeaderboardSnapshot(entries=(entry("u1", 10, 1),), final=True))
        late = apply(state, QuestionAdvanced(index=2))
        assert late is state
        assert late.phase == QuizPhase.LEADERBOARD

    def test_standings_follow_rank(self):
        state = SessionState(leaderboard=(entry("b", 10, 2), entry("a", 20, 1)))
        assert [e.user_id for e in state.standings] == ["a", "b"]


# -- Timer ----------------------------------------------------------------------


class TestTimer:
    def test_tick_for_other_index_is_ignored(self, started):
        on_second = apply(started, QuestionAdvanced(index=1))
        assert apply(on_second, TimerTick(remaining=12, question_index=0)) is on_second
        assert apply(on_second, TimerTick(remaining=12, question_index=2)) is on_second

    def test_ticks_count_down(self, started):
        state = run(started, TimerTick(remaining=30, question_index=0), TimerTick(remaining=29, question_index=0))
        assert state.remaining_time == 29

    def test_repeated_or_rising_tick_is_dropped(self, started):
        state = apply(started, TimerTick(remaining=20, question_index=0))
        assert apply(state, TimerTick(remaining=20, question_index=0)) is state
        assert apply(state, TimerTick(remaining=25, question_index=0)) is state

    def test_expiry_marks_complete_once(self, started):
        state = apply(started, TimerExpired(question_index=0))
        assert state.timer.complete
        assert state.remaining_time == 0
        assert apply(state, TimerExpired(question_index=0)) is state
        assert apply(state, TimerTick(remaining=3, question_index=0)) is state

    def test_timer_outside_question_phase_is_ignored(self):
        state = SessionState(session_code="ABC123")
        assert apply(state, TimerTick(remaining=5, question_index=0)) is state


# -- Per-user stats -------------------------------------------------------------


class TestUserStats:
    def test_applies_to_local_user(self, started):
        stats = UserStats(user_id="u1", name="Ada", score=10, rank=1)
        assert apply(started, UserLeaderboardSnapshot(stats=stats)).user_stats == stats

    def test_ignores_other_users(self, started):
        stats = UserStats(user_id="u2", name="Bob", score=10, rank=1)
        assert apply(started, UserLeaderboardSnapshot(stats=stats)) is started


# -- Local answer flow ----------------------------------------------------------


class TestAnswers:
    def test_selection_requires_question_in_view(self, started):
        assert apply(started, AnswerSelected(question_id="q2", option="option1")) is started
        state = apply(started, AnswerSelected(question_id="q1", option="option1"))
        assert state.pending_selection == ("q1", "option1")

    def test_selection_after_time_up_is_dropped(self, started):
        expired = apply(started, TimerExpired(question_index=0))
        assert apply(expired, AnswerSelected(question_id="q1", option="option1")) is expired

    def test_recorded_answer_is_kept_once(self, started):
        first = Answer(user_id="u1", question_id="q1", selected_option="option2")
        second = Answer(user_id="u1", question_id="q1", selected_option="option1")
        state = run(started, AnswerRecorded(answer=first), AnswerRecorded(answer=second))
        assert state.answer_for("u1", "q1").selected_option == "option2"
        assert len(state.unsent) == 1

    def test_recording_clears_matching_selection(self, started):
        state = run(
            started,
            AnswerSelected(question_id="q1", option="option3"),
            AnswerRecorded(answer=Answer(user_id="u1", question_id="q1", selected_option="option3")),
        )
        assert state.pending_selection is None

    def test_delivered_answers_leave_unsent(self, started):
        answer = Answer(user_id="u1", question_id="q1", selected_option="option2")
        state = run(started, AnswerRecorded(answer=answer), AnswersDelivered(keys=(answer.key,)))
        assert state.unsent == ()
        assert state.has_answered("u1", "q1")


# -- Resync / reset / bind ------------------------------------------------------


class TestResync:
    def test_resync_force_sets_index(self, started):
        ahead = apply(started, QuestionAdvanced(index=2))
        snapshot = Resync(phase=QuizPhase.QUESTION, questions=started.questions, current_index=1)
        state = apply(ahead, snapshot)
        assert state.current_index == 1

    def test_resync_replaces_roster_and_leaderboard(self, started):
        joined = apply(started, ParticipantJoined(participant=Participant(user_id="gone", name="Gone")))
        snapshot = Resync(
            phase=QuizPhase.QUESTION,
            questions=started.questions,
            roster=(Participant(user_id="u1", name="Ada", joined_at=1.0),),
            leaderboard=(entry("u1", 0, 1),),
        )
        state = apply(joined, snapshot)
        assert [p.user_id for p in state.roster] == ["u1"]
        assert [e.user_id for e in state.leaderboard] == ["u1"]

    def test_resync_keeps_answers_for_known_questions(self, started):
        answer = Answer(user_id="u1", question_id="q1", selected_option="option2")
        state = apply(started, AnswerRecorded(answer=answer))
        state = apply(state, Resync(phase=QuizPhase.QUESTION, questions=started.questions))
        assert state.has_answered("u1", "q1")

        other = (make_question(7),)
        state = apply(state, Resync(phase=QuizPhase.QUESTION, questions=other))
        assert state.answers == ()

    def test_reset_clears_everything(self, started):
        state = apply(started, Reset())
        assert state == SessionState()

    def test_binding_to_another_session_starts_fresh(self, started):
        state = apply(started, SessionBound(session_code="XYZ789", local_user_id="u9"))
        assert state.session_code == "XYZ789"
        assert state.questions == ()
        assert state.local_user_id == "u9"


# -- Totality -------------------------------------------------------------------


class TestApply:
    def test_every_delivery_order_keeps_state_consistent(self, started):
        events = [
            ParticipantJoined(participant=Participant(user_id="u1", name="Ada", joined_at=1.0)),
            ParticipantJoined(participant=Participant(user_id="u1", name="Ada", joined_at=2.0)),
            ParticipantJoined(participant=Participant(user_id="u2", name="Bob", joined_at=3.0)),
            QuestionAdvanced(index=1),
            QuestionAdvanced(index=2),
            TimerTick(remaining=20, question_index=1),
            LeaderboardSnapshot(entries=(entry("u1", 10, 1),), final=True),
        ]
        for order in itertools.permutations(events):
            state = started
            finished = False
            for event in order:
                new = apply(state, event)
                assert new.current_index >= state.current_index, order
                ids = [p.user_id for p in new.roster]
                assert len(ids) == len(set(ids)), order
                if finished:
                    assert new.phase == QuizPhase.LEADERBOARD, order
                finished = finished or new.phase == QuizPhase.LEADERBOARD
                if new.timer is not None:
                    assert new.timer.question_index == new.current_index, order
                state = new
            assert sorted(p.user_id for p in state.roster) == ["u1", "u2"]
            assert state.phase == QuizPhase.LEADERBOARD

    def test_unknown_event_leaves_state(self):
        state = SessionState()
        assert apply(state, object()) is state

    def test_current_question_hidden_before_start(self):
        assert SessionState().current_question is None


# -- Store / registry -----------------------------------------------------------


class TestSessionStore:
    def test_dispatch_reports_change_and_notifies(self):
        store = SessionStore(SessionState(session_code="ABC123"))
        seen = []
        store.add_listener(lambda old, new, event: seen.append(type(event).__name__))

        join = ParticipantJoined(participant=Participant(user_id="u1", name="Ada"))
        assert store.dispatch(join) is True
        assert store.dispatch(join) is False
        assert seen == ["ParticipantJoined"]

    def test_listener_remover(self):
        store = SessionStore()
        seen = []
        remove = store.add_listener(lambda *args: seen.append(1))
        remove()
        store.dispatch(ParticipantJoined(participant=Participant(user_id="u1", name="Ada")))
        assert seen == []

    def test_failing_listener_does_not_block_update(self):
        store = SessionStore()

        def broken(*args):
            raise RuntimeError("boom")

        store.add_listener(broken)
        assert store.dispatch(ParticipantJoined(participant=Participant(user_id="u1", name="Ada")))
        assert len(store.state.roster) == 1

    def test_disposed_store_ignores_events(self):
        store = SessionStore()
        store.dispose()
        assert store.dispatch(ParticipantJoined(participant=Participant(user_id="u1", name="Ada"))) is False
        assert store.state.roster == ()


class TestSessionRegistry:
    def test_one_store_per_code(self):
        registry = SessionRegistry()
        a = registry.open("AAAAAA")
        assert registry.open("AAAAAA") is a
        b = registry.open("BBBBBB")
        assert b is not a
        assert len(registry) == 2
        assert a.state.session_code == "AAAAAA"

    def test_dispose_removes_and_disposes(self):
        registry = SessionRegistry()
        store = registry.open("AAAAAA")
        registry.dispose("AAAAAA")
        assert "AAAAAA" not in registry
        assert store.disposed
        registry.dispose("AAAAAA")
        assert registry.codes == []
