# User Role Assignment - Role creation and case-insensitive attach/detach against the role store
# Main functions: create_role(), attach_role(), detach_role(), role_tokens_for_user()
# Flow: normalize name -> validate -> resolve role id (id, name, lower-case, canonical key) -> mutate -> audit on change

from __future__ import annotations

import re
import unicodedata
from typing import List, Optional

from sqlmodel import Session, select
from structlog import get_logger

from policygate.core.errors import InvalidRoleName, RoleAlreadyExists, RoleNotFound
from policygate.core.normalize import normalize_role_token
from policygate.db.schemas_sqlmodel import Role, UserRole
from policygate.utils.audit_logger import AuditSink, deliver


logger = get_logger(__name__)

_WHITESPACE = re.compile(r"\s+")
_ASSIGNABLE_NAME = re.compile(r"^[\w-]{2,64}$")
_ROLE_NAME = re.compile(r"^[\w -]{2,64}$")
_NOT_KEY_CHARS = re.compile(r"[^\w\s-]+")
_SEPARATORS = re.compile(r"[\s-]+")
_UNDERSCORES = re.compile(r"_+")


def normalize_role_name(value: str) -> str:
    return _WHITESPACE.sub(" ", value.strip())


def canonical_role_key(value: str) -> str:
    """Fold a role id or name to a comparison key: no accents, punctuation or case; spaces and hyphens become "_"."""
    value = value.strip()
    if not value:
        return ""
    decomposed = unicodedata.normalize("NFD", value)
    value = "".join(ch for ch in decomposed if unicodedata.category(ch) != "Mn")
    value = _NOT_KEY_CHARS.sub("", value)
    value = _SEPARATORS.sub("_", value)
    value = _UNDERSCORES.sub("_", value).strip("_")
    return value.lower()


def resolve_role_id(session: Session, value: str) -> Optional[str]:
    norm = normalize_role_name(value)
    canonical = canonical_role_key(value)

    for candidate in dict.fromkeys([value, norm]):
        row = session.get(Role, candidate)
        if row is not None:
            return row.id

    exact = session.exec(select(Role).where(Role.name == norm)).first()
    if exact is not None:
        return exact.id

    target = norm.lower()
    for row in session.exec(select(Role)).all():
        if normalize_role_name(row.name).lower() == target:
            return row.id
        if canonical and canonical in {canonical_role_key(row.id), canonical_role_key(row.name)}:
            return row.id
    return None


def list_roles(session: Session) -> List[Role]:
    return list(session.exec(select(Role).order_by(Role.name)).all())


def roles_for_user(session: Session, user_id: str) -> List[Role]:
    statement = select(Role).join(UserRole, UserRole.role_id == Role.id).where(UserRole.user_id == user_id)
    return sorted(session.exec(statement).all(), key=lambda row: row.name)


def role_names_for_user(session: Session, user_id: str) -> List[str]:
    return [row.name for row in roles_for_user(session, user_id)]


def role_tokens_for_user(session: Session, user_id: str) -> List[str]:
    """Tokens a user's stored roles satisfy: every role's id and its normalized name."""
    tokens = set()
    for row in roles_for_user(session, user_id):
        tokens.update({normalize_role_token(row.id), normalize_role_token(row.name)})
    tokens.discard("")
    return sorted(tokens)


def create_role(session: Session, name: str, sink: Optional[AuditSink] = None, actor_id: Optional[str] = None) -> Role:
    norm = normalize_role_name(name)
    if not _ROLE_NAME.match(norm):
        raise InvalidRoleName(name, "Role name must be 2-64 letters, numbers, spaces, underscores, or hyphens.")

    key = canonical_role_key(norm)
    if not key:
        raise InvalidRoleName(name)
    existing = resolve_role_id(session, norm)
    if existing is not None:
        raise RoleAlreadyExists(existing)

    role = Role(id=f"role_{key}", name=norm)
    session.add(role)
    session.commit()
    session.refresh(role)

    deliver(
        sink,
        {
            "action": "rbac.role.created",
            "category": "RBAC",
            "entity_type": "role",
            "entity_id": role.id,
            "actor_id": actor_id,
            "meta": {"role": role.name, "role_id": role.id},
        },
    )
    return role


def _resolve_assignable(session: Session, role: str) -> Role:
    norm = normalize_role_name(role)
    if not _ASSIGNABLE_NAME.match(norm):
        raise InvalidRoleName(role)
    role_id = resolve_role_id(session, norm)
    if role_id is None:
        raise RoleNotFound([role])
    row = session.get(Role, role_id)
    if row is None:
        raise RoleNotFound([role])
    return row


def attach_role(
    session: Session,
    user_id: str,
    role: str,
    sink: Optional[AuditSink] = None,
    actor_id: Optional[str] = None,
) -> List[str]:
    """Attach a role (matched case-insensitively) and return the user's role names afterwards."""
    row = _resolve_assignable(session, role)
    before = role_names_for_user(session, user_id)

    if session.get(UserRole, (user_id, row.id)) is None:
        session.add(UserRole(user_id=user_id, role_id=row.id))
        session.commit()

    after = role_names_for_user(session, user_id)
    if row.name not in before:
        logger.info("rbac.user_role.attached", user_id=user_id, role_id=row.id)
        _audit_membership(sink, "rbac.user_role.attached", user_id, row, before, after, actor_id)
    return after


def detach_role(
    session: Session,
    user_id: str,
    role: str,
    sink: Optional[AuditSink] = None,
    actor_id: Optional[str] = None,
) -> List[str]:
    row = _resolve_assignable(session, role)
    before = role_names_for_user(session, user_id)

    link = session.get(UserRole, (user_id, row.id))
    if link is not None:
        session.delete(link)
        session.commit()

    after = role_names_for_user(session, user_id)
    if row.name in before and row.name not in after:
        logger.info("rbac.user_role.detached", user_id=user_id, role_id=row.id)
        _audit_membership(sink, "rbac.user_role.detached", user_id, row, before, after, actor_id)
    return after


def _audit_membership(
    sink: Optional[AuditSink],
    action: str,
    user_id: str,
    role: Role,
    before: List[str],
    after: List[str],
    actor_id: Optional[str],
) -> None:
    deliver(
        sink,
        {
            "action": action,
            "category": "RBAC",
            "entity_type": "user",
            "entity_id": user_id,
            "actor_id": actor_id,
            "meta": {"role": role.name, "role_id": role.id, "before": before, "after": after},
        },
    )
