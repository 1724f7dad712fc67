from __future__ import annotations

from typing import Iterable

from models import LastPerformanceEntry, SessionState, WorkoutSession


def _recency_key(session: WorkoutSession, position: int) -> tuple:
    # Session date first, then in-session order; completion time and id only
    # break ties between sessions sharing a date so the order is total.
    completed = session.completed_at or session.date
    return (session.date, completed, session.id, position)


class LastPerformanceIndex:
    """Maps exercise ids to the most recent completed set logged for them.

    The index is a cache over completed sessions: :meth:`rebuild` derives it
    from scratch and :meth:`apply_session` folds one newly completed session in.
    Both use the same recency key, so applying sessions one by one always ends
    in the same entries as a full rebuild.
    """

    def __init__(self) -> None:
        self._entries: dict[str, LastPerformanceEntry] = {}
        self._keys: dict[str, tuple] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, exercise_id: str) -> bool:
        return exercise_id in self._entries

    def rebuild(self, sessions: Iterable[WorkoutSession]) -> "LastPerformanceIndex":
        self._entries.clear()
        self._keys.clear()
        for session in sessions:
            self.apply_session(session)
        return self

    def apply_session(self, session: WorkoutSession) -> int:
        """Fold a completed session into the index and return entries replaced."""
        if session.state != SessionState.COMPLETED:
            return 0
        replaced = 0
        for position, logged in session.iter_sets():
            if not logged.completed:
                continue
            key = _recency_key(session, position)
            current = self._keys.get(logged.exercise_id)
            if current is not None and key <= current:
                continue
            self._keys[logged.exercise_id] = key
            self._entries[logged.exercise_id] = LastPerformanceEntry(
                exercise_id=logged.exercise_id,
                reps=logged.reps,
                weight=logged.weight,
                set_type=logged.set_type,
                session_id=session.id,
                session_date=session.date,
                position=position,
            )
            replaced += 1
        return replaced

    def lookup(self, exercise_id: str) -> LastPerformanceEntry:
        entry = self._entries.get(exercise_id)
        if entry is None:
            return LastPerformanceEntry(exercise_id=exercise_id)
        return entry.model_copy()

    def snapshot(self) -> dict[str, LastPerformanceEntry]:
        return {key: entry.model_copy() for key, entry in self._entries.items()}

    def matches(self, sessions: Iterable[WorkoutSession]) -> bool:
        """Return True when the index equals a fresh rebuild over ``sessions``."""
        return LastPerformanceIndex().rebuild(sessions).snapshot() == self.snapshot()
