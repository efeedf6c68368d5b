"""Capability checks: who may act on a class, a question list or a session.

Every resource kind resolves to an owning teacher. A principal may act on a
resource when it is that teacher, or when it is an administrator. Students
never own anything; their membership checks live in the engine.
"""

from __future__ import annotations

from enum import Enum

from live_quiz.core.models import Principal, Role
from live_quiz.core.services.session_store import SessionStore


class ResourceKind(str, Enum):
    CLASS = "class"
    QUESTION_LIST = "question_list"
    SESSION = "session"


def owning_teacher(store: SessionStore, kind: ResourceKind, resource_id: int) -> int | None:
    """Return the id of the teacher who owns the resource, or None if it is unknown."""
    if kind is ResourceKind.CLASS:
        classroom = store.get_class(resource_id)
        return classroom.teacher_id if classroom else None
    if kind is ResourceKind.QUESTION_LIST:
        question_list = store.get_question_list(resource_id)
        if question_list is None:
            return None
        return owning_teacher(store, ResourceKind.CLASS, question_list.class_id)
    if kind is ResourceKind.SESSION:
        session = store.get_session(resource_id)
        return session.teacher_id if session else None
    raise ValueError(f"Unknown resource kind: {kind!r}")


def can_act(
    store: SessionStore,
    principal: Principal,
    kind: ResourceKind,
    resource_id: int,
) -> bool:
    if principal.is_admin:
        return True
    if principal.role is not Role.TEACHER:
        return False
    return owning_teacher(store, kind, resource_id) == principal.user_id
