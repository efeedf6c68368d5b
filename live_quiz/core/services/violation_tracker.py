"""Counts suspicious client events per participant and removes repeat offenders."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from live_quiz.core.models import EventType, Participant, ViolationOutcome, ViolationRecord

REMOVED_FOR_VIOLATIONS = "violations"
REMOVED_SESSION_ENDED = "session_ended"


@dataclass(slots=True, frozen=True)
class ViolationResult:
    outcome: ViolationOutcome
    event_type: EventType | None = None
    data: dict[str, object] | None = None
    audit: ViolationRecord | None = None


class ViolationTracker:
    """Threshold-only policy: every kind counts as one violation.

    The kind is kept on the audit record and in the event payload but never
    changes how much a violation weighs.
    """

    def __init__(self, threshold: int) -> None:
        if threshold < 1:
            raise ValueError("Violation threshold must be at least 1.")
        self._threshold = threshold

    @property
    def threshold(self) -> int:
        return self._threshold

    def record(self, participant: Participant, kind: str, now: datetime) -> ViolationResult:
        """Apply one violation to ``participant`` (mutated in place)."""
        kind = kind.strip() or "unspecified"
        if participant.removed:
            return ViolationResult(outcome=self._outcome(participant, changed=False))

        participant.violation_count += 1
        audit = ViolationRecord(
            session_id=participant.session_id,
            participant_id=participant.id,
            kind=kind,
            recorded_at=now,
            count_after=participant.violation_count,
        )
        data: dict[str, object] = {
            "participant_id": participant.id,
            "student_id": participant.student_id,
            "kind": kind,
            "violation_count": participant.violation_count,
            "threshold": self._threshold,
        }
        if participant.violation_count >= self._threshold:
            mark_removed(participant, REMOVED_FOR_VIOLATIONS)
            data["reason"] = REMOVED_FOR_VIOLATIONS
            event_type = EventType.PARTICIPANT_REMOVED
        else:
            event_type = EventType.VIOLATION_WARNING
        return ViolationResult(
            outcome=self._outcome(participant, changed=True),
            event_type=event_type,
            data=data,
            audit=audit,
        )

    def _outcome(self, participant: Participant, changed: bool) -> ViolationOutcome:
        return ViolationOutcome(
            participant_id=participant.id,
            violation_count=participant.violation_count,
            threshold=self._threshold,
            removed=participant.removed,
            changed=changed,
        )


def mark_removed(participant: Participant, reason: str) -> bool:
    """Soft-delete a participant. Returns False if it was already removed."""
    if participant.removed:
        return False
    participant.removed = True
    participant.removed_reason = reason
    participant.connected = False
    return True
