from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Protocol

from fastapi import HTTPException, status
from sqlalchemy import and_, delete, select
from sqlalchemy.orm import Session

from flexicrm import audit, events
from flexicrm.authz.catalog import DEFAULT_ROLE_PERMISSIONS, PERMISSION_CATEGORIES
from flexicrm.authz.models import Permission, PermissionOverride, RolePermission
from flexicrm.authz.schemas import PermissionStateRead, SessionContextRead
from flexicrm.metrics import observe_permission_override
from flexicrm.org.models import UserProfile
from flexicrm.platform.security.context import AuthContext


logger = logging.getLogger("flexicrm.authz")


class OverrideLike(Protocol):
    permission_id: str
    granted: bool


def compute_effective_permissions(
    role: str,
    overrides: Iterable[OverrideLike],
    role_permissions: dict[str, frozenset[str]] | None = None,
) -> set[str]:
    """Resolve role defaults plus per-user overrides.

    Overrides are applied in iteration order, so if a caller ever passes two
    overrides for the same permission the later one decides the outcome.
    """

    lookup = role_permissions if role_permissions is not None else DEFAULT_ROLE_PERMISSIONS
    effective = set(lookup.get(role, frozenset()))
    for override in overrides:
        if override.granted:
            effective.add(override.permission_id)
        else:
            effective.discard(override.permission_id)
    return effective


def has_permission(permissions: set[str] | frozenset[str], permission_id: str) -> bool:
    return permission_id in permissions


@dataclass
class ActorUser:
    """Per-request session context: who is acting, in which organization, with which permissions."""

    user_id: str
    organization_id: str
    role: str
    permissions: set[str]
    team_id: str | None = None
    full_name: str | None = None
    correlation_id: str | None = None
    is_active: bool = field(default=True)

    @classmethod
    def load(cls, session: Session, user_id: str, *, correlation_id: str | None = None) -> ActorUser | None:
        try:
            parsed_user_id = uuid.UUID(str(user_id))
        except ValueError:
            return None
        profile = session.get(UserProfile, parsed_user_id)
        if profile is None or not profile.is_active:
            return None
        return cls(
            user_id=str(profile.id),
            organization_id=str(profile.organization_id),
            role=profile.role,
            team_id=str(profile.team_id) if profile.team_id else None,
            full_name=profile.full_name,
            permissions=permission_service.effective_permissions(session, profile),
            correlation_id=correlation_id,
        )

    def reload(self, session: Session) -> ActorUser:
        """Re-read role, team and overrides after a mutation that may have changed them."""

        profile = session.get(UserProfile, uuid.UUID(self.user_id), populate_existing=True)
        if profile is None or not profile.is_active:
            self.is_active = False
            self.permissions = set()
            return self
        self.role = profile.role
        self.team_id = str(profile.team_id) if profile.team_id else None
        self.full_name = profile.full_name
        self.permissions = permission_service.effective_permissions(session, profile)
        return self

    def has_permission(self, permission_id: str) -> bool:
        return has_permission(self.permissions, permission_id)

    def to_auth_context(self) -> AuthContext:
        return AuthContext(
            user_id=self.user_id,
            organization_id=self.organization_id,
            team_id=self.team_id,
            role=self.role,
            correlation_id=self.correlation_id,
            permissions=frozenset(self.permissions),
        )

    def to_read(self) -> SessionContextRead:
        return SessionContextRead(
            user_id=self.user_id,
            organization_id=self.organization_id,
            role=self.role,
            team_id=self.team_id,
            full_name=self.full_name,
            permissions=sorted(self.permissions),
        )


class PermissionService:
    entity_type = "authz.permission_override"

    def list_catalog(self, session: Session) -> list[Permission]:
        rows = session.scalars(select(Permission)).all()
        category_rank = {category: index for index, category in enumerate(PERMISSION_CATEGORIES)}
        return sorted(rows, key=lambda row: (category_rank.get(row.category, len(category_rank)), row.id))

    def role_permissions(self, session: Session) -> dict[str, frozenset[str]]:
        grants: dict[str, set[str]] = {}
        for row in session.scalars(select(RolePermission)).all():
            grants.setdefault(row.role, set()).add(row.permission_id)
        return {role: frozenset(permission_ids) for role, permission_ids in grants.items()}

    def get_overrides(self, session: Session, user_id: uuid.UUID) -> list[PermissionOverride]:
        return list(
            session.scalars(
                select(PermissionOverride)
                .where(PermissionOverride.user_id == user_id)
                .order_by(PermissionOverride.created_at.asc(), PermissionOverride.id.asc())
            ).all()
        )

    def effective_permissions(self, session: Session, profile: UserProfile) -> set[str]:
        return compute_effective_permissions(
            profile.role,
            self.get_overrides(session, profile.id),
            self.role_permissions(session),
        )

    def permission_states(self, session: Session, actor_user: ActorUser, user_id: uuid.UUID) -> list[PermissionStateRead]:
        profile = self._load_member(session, actor_user, user_id)
        role_defaults = self.role_permissions(session).get(profile.role, frozenset())
        overrides = {row.permission_id: row.granted for row in self.get_overrides(session, profile.id)}
        return [
            self._to_state(permission, role_defaults, overrides.get(permission.id))
            for permission in self.list_catalog(session)
        ]

    def toggle_permission(
        self,
        session: Session,
        actor_user: ActorUser,
        user_id: uuid.UUID,
        permission_id: str,
    ) -> PermissionStateRead:
        """Flip between an explicit override and the role default.

        Without an override a new one is written that inverts the current effective
        value; with an override present it is removed.
        """

        profile = self._load_member(session, actor_user, user_id)
        permission = self._load_permission(session, permission_id)
        existing = self._find_override(session, profile.id, permission_id)
        if existing is not None:
            return self.clear_override(session, actor_user, user_id, permission_id)

        effective = self.effective_permissions(session, profile)
        return self._write_override(
            session,
            actor_user,
            profile,
            permission,
            granted=permission_id not in effective,
            action="toggle",
        )

    def set_override(
        self,
        session: Session,
        actor_user: ActorUser,
        user_id: uuid.UUID,
        permission_id: str,
        granted: bool,
    ) -> PermissionStateRead:
        profile = self._load_member(session, actor_user, user_id)
        permission = self._load_permission(session, permission_id)
        return self._write_override(session, actor_user, profile, permission, granted=granted, action="set")

    def clear_override(
        self,
        session: Session,
        actor_user: ActorUser,
        user_id: uuid.UUID,
        permission_id: str,
    ) -> PermissionStateRead:
        profile = self._load_member(session, actor_user, user_id)
        permission = self._load_permission(session, permission_id)
        existing = self._find_override(session, profile.id, permission_id)
        before = {"granted": existing.granted} if existing is not None else None

        session.execute(
            delete(PermissionOverride).where(
                and_(PermissionOverride.user_id == profile.id, PermissionOverride.permission_id == permission_id)
            )
        )
        session.commit()

        if before is not None:
            self._record_change(actor_user, profile, permission_id, before=before, after=None, action="clear")
        role_defaults = self.role_permissions(session).get(profile.role, frozenset())
        return self._to_state(permission, role_defaults, None)

    def _write_override(
        self,
        session: Session,
        actor_user: ActorUser,
        profile: UserProfile,
        permission: Permission,
        *,
        granted: bool,
        action: str,
    ) -> PermissionStateRead:
        existing = self._find_override(session, profile.id, permission.id)
        before = {"granted": existing.granted} if existing is not None else None

        # Delete-then-set keeps a single override per (user, permission).
        session.execute(
            delete(PermissionOverride).where(
                and_(PermissionOverride.user_id == profile.id, PermissionOverride.permission_id == permission.id)
            )
        )
        session.add(
            PermissionOverride(
                organization_id=profile.organization_id,
                user_id=profile.id,
                permission_id=permission.id,
                granted=granted,
                granted_by=uuid.UUID(actor_user.user_id),
            )
        )
        session.commit()

        self._record_change(actor_user, profile, permission.id, before=before, after={"granted": granted}, action=action)
        role_defaults = self.role_permissions(session).get(profile.role, frozenset())
        return self._to_state(permission, role_defaults, granted)

    def _record_change(
        self,
        actor_user: ActorUser,
        profile: UserProfile,
        permission_id: str,
        *,
        before: dict[str, bool] | None,
        after: dict[str, bool] | None,
        action: str,
    ) -> None:
        observe_permission_override(action)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=f"{profile.id}:{permission_id}",
            action=action,
            before=before,
            after=after,
            correlation_id=actor_user.correlation_id,
            organization_id=actor_user.organization_id,
        )
        events.publish(
            events.build_envelope(
                "authz.permission_override.changed",
                actor_user_id=actor_user.user_id,
                organization_id=actor_user.organization_id,
                payload={"user_id": str(profile.id), "permission_id": permission_id, "granted": (after or {}).get("granted")},
            )
        )
        logger.info(
            "authz.override.changed",
            extra={"user_id": str(profile.id), "permission_id": permission_id, "organization_id": actor_user.organization_id},
        )

    def _find_override(self, session: Session, user_id: uuid.UUID, permission_id: str) -> PermissionOverride | None:
        return session.scalar(
            select(PermissionOverride)
            .where(and_(PermissionOverride.user_id == user_id, PermissionOverride.permission_id == permission_id))
            .order_by(PermissionOverride.created_at.desc())
            .limit(1)
        )

    def _load_member(self, session: Session, actor_user: ActorUser, user_id: uuid.UUID) -> UserProfile:
        profile = session.scalar(
            select(UserProfile).where(
                and_(UserProfile.id == user_id, UserProfile.organization_id == uuid.UUID(actor_user.organization_id))
            )
        )
        if profile is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="member not found")
        return profile

    def _load_permission(self, session: Session, permission_id: str) -> Permission:
        permission = session.get(Permission, permission_id)
        if permission is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="permission not found")
        return permission

    def _to_state(
        self,
        permission: Permission,
        role_defaults: frozenset[str],
        override: bool | None,
    ) -> PermissionStateRead:
        role_default = permission.id in role_defaults
        effective = override if override is not None else role_default
        if override is None:
            state = "default"
        else:
            state = "granted" if override else "denied"
        return PermissionStateRead(
            permission_id=permission.id,
            category=permission.category,
            name=permission.name,
            description=permission.description,
            role_default=role_default,
            override=override,
            effective=effective,
            state=state,
        )


permission_service = PermissionService()
