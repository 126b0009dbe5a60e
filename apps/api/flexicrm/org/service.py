from __future__ import annotations

import logging
import uuid
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import and_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from flexicrm import audit, events
from flexicrm.authz.catalog import seed_permission_catalog
from flexicrm.authz.service import ActorUser
from flexicrm.core.auth import create_access_token
from flexicrm.core.security import hash_password, login_email, login_secret, verify_password
from flexicrm.crm.service import seed_default_fields
from flexicrm.org.models import TEAM_LEAD_ROLES, Organization, Team, UserCredential, UserProfile
from flexicrm.org.schemas import (
    LoginRequest,
    MemberCreate,
    MemberRead,
    MemberUpdate,
    RegisterOrganizationRequest,
    TeamCreate,
    TeamRead,
    TeamUpdate,
    TokenResponse,
)


logger = logging.getLogger("flexicrm.org")

INVALID_LOGIN = "Invalid username or password"


def _org_uuid(actor_user: ActorUser) -> uuid.UUID:
    return uuid.UUID(actor_user.organization_id)


def _record(
    actor_user_id: str,
    organization_id: str,
    entity_type: str,
    entity_id: str,
    action: str,
    *,
    before: dict[str, Any] | None,
    after: dict[str, Any] | None,
    correlation_id: str | None = None,
) -> None:
    audit.record(
        actor_user_id=actor_user_id,
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        before=before,
        after=after,
        correlation_id=correlation_id,
        organization_id=organization_id,
    )
    events.publish(
        events.build_envelope(
            f"{entity_type}.{action}",
            actor_user_id=actor_user_id,
            organization_id=organization_id,
            payload={"id": entity_id},
        )
    )


class AuthService:
    def login(self, session: Session, dto: LoginRequest) -> TokenResponse:
        email = login_email(dto.username)
        credential = session.scalar(select(UserCredential).where(UserCredential.email == email))
        profile = session.get(UserProfile, credential.user_id) if credential is not None else None
        if (
            credential is None
            or profile is None
            or not profile.is_active
            or not verify_password(login_secret(dto.password), credential.password_hash)
        ):
            logger.info("auth.login.failed")
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=INVALID_LOGIN)

        logger.info("auth.login.succeeded", extra={"user_id": str(profile.id), "organization_id": str(profile.organization_id)})
        return TokenResponse(
            access_token=create_access_token(str(profile.id), str(profile.organization_id)),
            user_id=profile.id,
            organization_id=profile.organization_id,
        )

    def provision_organization(self, session: Session, dto: RegisterOrganizationRequest) -> TokenResponse:
        """Create an organization with its CEO and the starter customer schema."""

        seed_permission_catalog(session)
        organization = Organization(name=dto.organization_name.strip())
        session.add(organization)
        session.flush()

        profile = _create_profile(
            session,
            organization_id=organization.id,
            username=dto.username,
            full_name=dto.full_name,
            password=dto.password,
            role="ceo",
            team_id=None,
        )
        seed_default_fields(session, organization.id)
        session.commit()

        _record(
            str(profile.id),
            str(organization.id),
            "org.organization",
            str(organization.id),
            "create",
            before=None,
            after={"name": organization.name},
        )
        logger.info("org.organization.provisioned", extra={"organization_id": str(organization.id), "user_id": str(profile.id)})
        return TokenResponse(
            access_token=create_access_token(str(profile.id), str(organization.id)),
            user_id=profile.id,
            organization_id=organization.id,
        )


def _create_profile(
    session: Session,
    *,
    organization_id: uuid.UUID,
    username: str,
    full_name: str,
    password: str,
    role: str,
    team_id: uuid.UUID | None,
) -> UserProfile:
    email = login_email(username)
    taken = session.scalar(select(UserCredential.user_id).where(UserCredential.email == email))
    if taken is not None:
        session.rollback()
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="username already exists")

    profile = UserProfile(
        organization_id=organization_id,
        username=username.lower().strip(),
        email=email,
        full_name=full_name.strip(),
        role=role,
        team_id=team_id,
    )
    session.add(profile)
    try:
        session.flush()
        session.add(UserCredential(user_id=profile.id, email=email, password_hash=hash_password(login_secret(password))))
        session.flush()
    except IntegrityError:
        session.rollback()
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="username already exists")
    return profile


class MemberService:
    entity_type = "org.member"

    def list_members(self, session: Session, actor_user: ActorUser, *, include_inactive: bool = False) -> list[MemberRead]:
        query = select(UserProfile).where(UserProfile.organization_id == _org_uuid(actor_user))
        if not include_inactive:
            query = query.where(UserProfile.is_active.is_(True))
        rows = session.scalars(query.order_by(UserProfile.is_active.desc(), UserProfile.full_name.asc())).all()
        return [MemberRead.model_validate(row) for row in rows]

    def create_member(self, session: Session, actor_user: ActorUser, dto: MemberCreate) -> MemberRead:
        organization_id = _org_uuid(actor_user)
        if dto.team_id is not None:
            _get_team(session, organization_id, dto.team_id)
        profile = _create_profile(
            session,
            organization_id=organization_id,
            username=dto.username,
            full_name=dto.full_name,
            password=dto.password,
            role=dto.role,
            team_id=dto.team_id,
        )
        session.commit()

        after = MemberRead.model_validate(profile)
        self._record(actor_user, profile.id, "create", before=None, after=after)
        return after

    def update_member(self, session: Session, actor_user: ActorUser, user_id: uuid.UUID, dto: MemberUpdate) -> MemberRead:
        profile = self._get(session, actor_user, user_id)
        before = MemberRead.model_validate(profile)
        payload = dto.model_dump(exclude_unset=True)

        if payload.get("full_name") is not None:
            profile.full_name = payload["full_name"].strip()
        if payload.get("role") is not None:
            profile.role = payload["role"]
        if "team_id" in payload:
            if payload["team_id"] is not None:
                _get_team(session, profile.organization_id, payload["team_id"])
            profile.team_id = payload["team_id"]
        session.commit()

        after = MemberRead.model_validate(profile)
        self._record(actor_user, profile.id, "update", before=before, after=after)
        return after

    def set_active(self, session: Session, actor_user: ActorUser, user_id: uuid.UUID, is_active: bool) -> MemberRead:
        profile = self._get(session, actor_user, user_id)
        if not is_active and str(profile.id) == actor_user.user_id:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="cannot deactivate yourself")
        before = MemberRead.model_validate(profile)
        profile.is_active = is_active
        session.commit()

        after = MemberRead.model_validate(profile)
        self._record(actor_user, profile.id, "activate" if is_active else "deactivate", before=before, after=after)
        return after

    def _get(self, session: Session, actor_user: ActorUser, user_id: uuid.UUID) -> UserProfile:
        profile = session.scalar(
            select(UserProfile).where(and_(UserProfile.id == user_id, UserProfile.organization_id == _org_uuid(actor_user)))
        )
        if profile is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="member not found")
        return profile

    def _record(
        self,
        actor_user: ActorUser,
        user_id: uuid.UUID,
        action: str,
        *,
        before: MemberRead | None,
        after: MemberRead | None,
    ) -> None:
        _record(
            actor_user.user_id,
            actor_user.organization_id,
            self.entity_type,
            str(user_id),
            action,
            before=before.model_dump(mode="json") if before else None,
            after=after.model_dump(mode="json") if after else None,
            correlation_id=actor_user.correlation_id,
        )
        logger.info(f"org.member.{action}", extra={"organization_id": actor_user.organization_id, "entity_id": str(user_id)})


def _get_team(session: Session, organization_id: uuid.UUID, team_id: uuid.UUID) -> Team:
    team = session.scalar(select(Team).where(and_(Team.id == team_id, Team.organization_id == organization_id)))
    if team is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="team not found")
    return team


class TeamService:
    entity_type = "org.team"

    def list_teams(self, session: Session, actor_user: ActorUser) -> list[TeamRead]:
        rows = session.scalars(
            select(Team).where(Team.organization_id == _org_uuid(actor_user)).order_by(Team.name.asc())
        ).all()
        return [TeamRead.model_validate(row) for row in rows]

    def lead_candidates(self, session: Session, actor_user: ActorUser) -> list[MemberRead]:
        rows = session.scalars(
            select(UserProfile)
            .where(
                and_(
                    UserProfile.organization_id == _org_uuid(actor_user),
                    UserProfile.is_active.is_(True),
                    UserProfile.role.in_(TEAM_LEAD_ROLES),
                )
            )
            .order_by(UserProfile.full_name.asc())
        ).all()
        return [MemberRead.model_validate(row) for row in rows]

    def create_team(self, session: Session, actor_user: ActorUser, dto: TeamCreate) -> TeamRead:
        organization_id = _org_uuid(actor_user)
        if dto.lead_id is not None:
            self._validate_lead(session, organization_id, dto.lead_id)
        team = Team(organization_id=organization_id, name=dto.name.strip(), lead_id=dto.lead_id)
        session.add(team)
        session.commit()

        after = TeamRead.model_validate(team)
        self._record(actor_user, team.id, "create", before=None, after=after)
        return after

    def update_team(self, session: Session, actor_user: ActorUser, team_id: uuid.UUID, dto: TeamUpdate) -> TeamRead:
        organization_id = _org_uuid(actor_user)
        team = _get_team(session, organization_id, team_id)
        before = TeamRead.model_validate(team)
        payload = dto.model_dump(exclude_unset=True)

        if payload.get("name") is not None:
            team.name = payload["name"].strip()
        if "lead_id" in payload:
            if payload["lead_id"] is not None:
                self._validate_lead(session, organization_id, payload["lead_id"])
            team.lead_id = payload["lead_id"]
        session.commit()

        after = TeamRead.model_validate(team)
        self._record(actor_user, team.id, "update", before=before, after=after)
        return after

    def delete_team(self, session: Session, actor_user: ActorUser, team_id: uuid.UUID) -> None:
        organization_id = _org_uuid(actor_user)
        team = _get_team(session, organization_id, team_id)
        before = TeamRead.model_validate(team)

        # Members are detached before the row goes so both happen in one commit.
        session.execute(
            update(UserProfile)
            .where(and_(UserProfile.organization_id == organization_id, UserProfile.team_id == team.id))
            .values(team_id=None)
        )
        session.delete(team)
        session.commit()
        self._record(actor_user, team_id, "delete", before=before, after=None)

    def _validate_lead(self, session: Session, organization_id: uuid.UUID, lead_id: uuid.UUID) -> None:
        lead = session.scalar(
            select(UserProfile).where(and_(UserProfile.id == lead_id, UserProfile.organization_id == organization_id))
        )
        if lead is None or not lead.is_active or lead.role not in TEAM_LEAD_ROLES:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="team lead must be an active ceo or team_lead of this organization",
            )

    def _record(
        self,
        actor_user: ActorUser,
        team_id: uuid.UUID,
        action: str,
        *,
        before: TeamRead | None,
        after: TeamRead | None,
    ) -> None:
        _record(
            actor_user.user_id,
            actor_user.organization_id,
            self.entity_type,
            str(team_id),
            action,
            before=before.model_dump(mode="json") if before else None,
            after=after.model_dump(mode="json") if after else None,
            correlation_id=actor_user.correlation_id,
        )
        logger.info(f"org.team.{action}", extra={"organization_id": actor_user.organization_id, "entity_id": str(team_id)})


auth_service = AuthService()
member_service = MemberService()
team_service = TeamService()
