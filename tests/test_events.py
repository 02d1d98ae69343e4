"""Tests for events.py: decoding bus payloads into typed events."""

import json

from livequiz.client.bus import BusMessage
from livequiz.client.common import Channels, Events
from livequiz.client.events import (
    LeaderboardSnapshot, ParticipantJoined, ParticipantLeft, QuestionAdvanced,
    QuestionsBroadcast, Resync, SessionEnded, TimerExpired, TimerTick,
    UserLeaderboardSnapshot, parse_event,
)
from livequiz.server.quiz_types import QuizPhase

from conftest import make_question


def msg(name, data, channel="quiz:users:ABC123"):
    return BusMessage(channel=channel, name=name, data=data)


class TestRosterEvents:
    def test_join_tolerates_unknown_fields(self):
        event = parse_event(msg(Events.JOIN_QUIZ, {"userId": "u1", "name": "Ada", "avatar": "x.png"}))
        assert isinstance(event, ParticipantJoined)
        assert event.participant.user_id == "u1"
        assert event.participant.name == "Ada"

    def test_join_without_name_is_dropped(self):
        assert parse_event(msg(Events.JOIN_QUIZ, {"userId": "u1"})) is None

    def test_leave_needs_only_user_id(self):
        event = parse_event(msg(Events.LEAVE_QUIZ, {"userId": "u1"}))
        assert event == ParticipantLeft(user_id="u1")

    def test_json_string_payload_is_decoded(self):
        event = parse_event(msg(Events.JOIN_QUIZ, json.dumps({"userId": "u1", "name": "Ada"})))
        assert isinstance(event, ParticipantJoined)


class TestQuestionEvents:
    def test_broadcast_list(self):
        data = [make_question(1).to_dict(), make_question(2).to_dict()]
        event = parse_event(msg(Events.BROADCAST_QUESTIONS, data))
        assert isinstance(event, QuestionsBroadcast)
        assert [q.id for q in event.questions] == ["q1", "q2"]

    def test_broadcast_carries_bus_message_id(self):
        data = [make_question(1).to_dict()]
        message = BusMessage(channel="quiz:questions:ABC123", name=Events.BROADCAST_QUESTIONS, data=data, id=42)
        assert parse_event(message).message_id == 42
        assert parse_event(msg(Events.BROADCAST_QUESTIONS, data)).message_id is None

    def test_broadcast_of_non_list_is_dropped(self):
        assert parse_event(msg(Events.BROADCAST_QUESTIONS, {"questions": "nope"})) is None

    def test_advance_with_catch_up_payload(self):
        data = {"currentIndex": 2, "question": make_question(3).to_dict(), "extra": 1}
        event = parse_event(msg(Events.NEXT_QUESTION, data))
        assert event == QuestionAdvanced(index=2, question=make_question(3))

    def test_advance_without_question(self):
        assert parse_event(msg(Events.NEXT_QUESTION, {"currentIndex": 1})) == QuestionAdvanced(index=1)

    def test_no_more_marker_is_not_an_advance(self):
        assert parse_event(msg(Events.NEXT_QUESTION, {"error": True, "noMore": True})) is None

    def test_time_limit_is_clamped(self):
        data = make_question(1).to_dict()
        data["timeLimit"] = 9999
        event = parse_event(msg(Events.BROADCAST_QUESTIONS, [data]))
        assert event.questions[0].time_limit == 300


class TestLeaderboardEvents:
    def test_legacy_list_has_no_final_flag(self):
        event = parse_event(msg(Events.LEADERBOARD_UPDATE, [{"userId": "u1", "name": "Ada", "score": 10}]))
        assert isinstance(event, LeaderboardSnapshot)
        assert event.final is None
        assert event.entries[0].score == 10

    def test_final_flag(self):
        event = parse_event(msg(Events.LEADERBOARD_UPDATE, {"entries": [], "final": True}))
        assert event.final is True

    def test_entries_must_be_a_list(self):
        assert parse_event(msg(Events.LEADERBOARD_UPDATE, {"entries": {"u1": 10}})) is None

    def test_user_stats(self):
        data = {"userId": "u1", "name": "Ada", "score": 20, "rank": 1, "correctCount": 2, "totalAnswered": 3}
        event = parse_event(msg(Events.USER_LEADERBOARD_UPDATE, data))
        assert isinstance(event, UserLeaderboardSnapshot)
        assert event.user_id == "u1"
        assert event.stats.correct_count == 2


class TestTimerEvents:
    def test_tick(self):
        event = parse_event(msg(Events.TIMER_UPDATE, {"remainingTime": 12, "questionIndex": 0},
                                channel=Channels.timer("ABC123")))
        assert event == TimerTick(remaining=12, question_index=0)

    def test_tick_missing_index_is_dropped(self):
        assert parse_event(msg(Events.TIMER_UPDATE, {"remainingTime": 12})) is None

    def test_time_up(self):
        assert parse_event(msg(Events.TIME_UP, {"questionIndex": 3})) == TimerExpired(question_index=3)


class TestMisc:
    def test_session_ended(self):
        event = parse_event(msg(Events.SESSION_ENDED, {"reason": "bye"}))
        assert event == SessionEnded(reason="bye")

    def test_unknown_event_name(self):
        assert parse_event(msg("somethingElse", {})) is None

    def test_to_data_round_trips_through_parse(self):
        event = TimerTick(remaining=5, question_index=1)
        assert parse_event(msg(event.name, event.to_data("ABC123"))) == event

    def test_resync_from_snapshot(self):
        snapshot = {
            "phase": "QUESTION",
            "questions": [make_question(1).to_dict()],
            "currentIndex": 0,
            "participants": [{"userId": "u1", "name": "Ada", "joinedAt": 1.0}],
            "leaderboard": [{"userId": "u1", "name": "Ada", "score": 0, "rank": 1}],
        }
        event = Resync.from_snapshot(snapshot)
        assert event.phase == QuizPhase.QUESTION
        assert event.roster[0].user_id == "u1"
        assert event.questions[0].id == "q1"
