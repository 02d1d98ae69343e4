"""Quiz orchestration logic (progression, scoring and standings).

This module is server-side only and does not perform any I/O. `app.py`
remains responsible for HTTP and for publishing on the bus; the
orchestrator only manipulates `QuizSession` state and returns data
structures that the server can send back or broadcast.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple
import time

from livequiz.server.quiz_types import (
    Answer, LeaderboardEntry, Question, QuizPhase, QuizSession, UserStats,
)
from livequiz.client.common import logger


POINTS_PER_CORRECT = 10


class QuizNotStarted(Exception):
    """Progression was requested before the questions were broadcast."""


@dataclass
class QuizOrchestrator:
    """
    Orchestrates a single QuizSession.

    Responsibilities:
    - Decide the authoritative next question index (hosts only ask).
    - Record answers, at most one per (participant, question).
    - Produce leaderboard, per-user stats and the resync snapshot.
    """
    session: QuizSession
    points_per_correct: int = POINTS_PER_CORRECT
    phase_started_at: float = field(default_factory=time.time)

    @property
    def phase(self) -> QuizPhase:
        return self.session.phase

    def _enter(self, phase: QuizPhase) -> None:
        self.session.phase = phase
        self.phase_started_at = time.time()

    # ---------- Lifecycle ----------

    def load(self, questions: Iterable[Question]) -> int:
        """Replace the quiz. Resets progression and answers."""
        self.session.load_questions(list(questions))
        self.phase_started_at = time.time()
        logger.debug(f"[orchestrator] {self.session.code} loaded {len(self.session.questions)} questions")
        return len(self.session.questions)

    def broadcast(self) -> List[Question]:
        """Start (or restart) the quiz at question 0 and return the full list."""
        if not self.session.questions:
            raise QuizNotStarted("No questions loaded")
        self.session.current_question_idx = 0
        self.session.answers.clear()
        self._enter(QuizPhase.QUESTION)
        return list(self.session.questions)

    def next_question(self, index: int) -> Optional[Tuple[int, Question]]:
        """
        Host-initiated advance to `index`.

        The backend never moves more than one question ahead of where it is,
        and a repeated request for the current index returns it again.
        Returns None (and enters LEADERBOARD) when there is no such question.
        """
        if self.phase == QuizPhase.NOT_STARTED:
            raise QuizNotStarted("Questions have not been broadcast")
        current = self.session.current_question_idx
        index = max(current, min(index, current + 1))

        question = self.session.get_question(index)
        if question is None or self.phase in (QuizPhase.LEADERBOARD, QuizPhase.ENDED):
            if self.phase != QuizPhase.LEADERBOARD:
                self._enter(QuizPhase.LEADERBOARD)
            return None

        self.session.current_question_idx = index
        self._enter(QuizPhase.QUESTION)
        return index, question

    # ---------- Answers ----------

    def submit_answers(self, answers: Iterable[Answer]) -> Tuple[int, int]:
        """Record a batch; returns (accepted, rejected)."""
        accepted = rejected = 0
        for answer in answers:
            if self.session.record_answer(answer):
                accepted += 1
            else:
                rejected += 1
        return accepted, rejected

    # ---------- Derived data helpers ----------

    def score_of(self, user_id: str) -> int:
        return sum(self.points_per_correct for a in self.session.answers_for(user_id) if a.is_correct)

    def get_leaderboard(self) -> List[LeaderboardEntry]:
        """Participants sorted by score desc, then name; rank is 1-based position."""
        scored = sorted(
            ((self.score_of(p.user_id), p) for p in self.session.participants.values()),
            key=lambda item: (-item[0], item[1].name),
        )
        return [
            LeaderboardEntry(user_id=p.user_id, name=p.name, score=score, rank=i + 1)
            for i, (score, p) in enumerate(scored)
        ]

    def user_stats(self, user_id: str) -> Optional[UserStats]:
        participant = self.session.participants.get(user_id)
        if participant is None:
            return None
        rank = 0
        for entry in self.get_leaderboard():
            if entry.user_id == user_id:
                rank = entry.rank
                break
        answers = self.session.answers_for(user_id)
        return UserStats(
            user_id=user_id,
            name=participant.name,
            score=self.score_of(user_id),
            rank=rank,
            correct_count=sum(1 for a in answers if a.is_correct),
            total_answered=len(answers),
        )

    def snapshot(self) -> Dict:
        """Everything a reconnecting client needs to catch up."""
        return {
            "sessionCode": self.session.code,
            "phase": self.phase.value,
            "questions": [q.to_dict() for q in self.session.questions] if self.phase != QuizPhase.NOT_STARTED else [],
            "currentIndex": self.session.current_question_idx,
            "participants": [p.to_dict() for p in self.session.participants.values()],
            "leaderboard": [e.to_dict() for e in self.get_leaderboard()],
        }


_orchestrators: Dict[str, QuizOrchestrator] = {}


def orchestrator_for(session: QuizSession) -> QuizOrchestrator:
    orch = _orchestrators.get(session.code)
    if orch is None or orch.session is not session:
        orch = QuizOrchestrator(session)
        _orchestrators[session.code] = orch
    return orch


def discard_orchestrator(code: str) -> None:
    _orchestrators.pop(code, None)
