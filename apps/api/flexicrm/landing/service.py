from __future__ import annotations

import logging
import re
import secrets
import uuid
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import and_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from flexicrm import audit, events
from flexicrm.authz.service import ActorUser
from flexicrm.core.config import get_settings
from flexicrm.crm.service import NAME_FIELD_ID, PHONE_FIELD_ID, SOURCE_FIELD_ID, insert_customer
from flexicrm.landing.models import LandingPage
from flexicrm.landing.schemas import (
    LandingContent,
    LandingPageCreate,
    LandingPageRead,
    LandingPageUpdate,
    LeadAccepted,
    PublicLandingPageRead,
)
from flexicrm.metrics import observe_landing_lead
from flexicrm.otel import start_span


logger = logging.getLogger("flexicrm.landing")

SLUG_ALPHABET = "0123456789abcdefghijklmnopqrstuvwxyz"
LEAD_SOURCE = "Landing Page"

DEFAULT_CONTENT: dict[str, str] = {
    "description": "Welcome! Please enter your number below.",
    "input_label": "Phone Number",
    "input_placeholder": "010-1234-5678",
    "button_text": "Submit",
    "success_title": "Thank you!",
    "success_message": "Your information has been registered successfully.",
    "primary_color": "#4f46e5",
}


def _random_base36(length: int) -> str:
    return "".join(secrets.choice(SLUG_ALPHABET) for _ in range(length))


def generate_slug() -> str:
    return _random_base36(6) + _random_base36(4)


def merge_content(name: str, stored: dict[str, Any] | None) -> LandingContent:
    """Fill every content key from the defaults unless the page sets a non-empty value."""

    merged: dict[str, Any] = {"title": name, **DEFAULT_CONTENT}
    for key, value in (stored or {}).items():
        if key in merged and value not in (None, ""):
            merged[key] = value
    return LandingContent(**merged)


def visitor_name(phone: str) -> str:
    digits = re.sub(r"\D", "", phone)
    return f"Visitor ({(digits or phone)[-4:]})"


class LandingPageService:
    entity_type = "landing.page"

    def list_pages(self, session: Session, actor_user: ActorUser) -> list[LandingPageRead]:
        rows = session.scalars(
            select(LandingPage)
            .where(LandingPage.organization_id == uuid.UUID(actor_user.organization_id))
            .order_by(LandingPage.created_at.desc())
        ).all()
        return [self.to_read(row) for row in rows]

    def create_page(self, session: Session, actor_user: ActorUser, dto: LandingPageCreate) -> LandingPageRead:
        organization_id = uuid.UUID(actor_user.organization_id)
        attempts = get_settings().landing_slug_max_attempts
        page: LandingPage | None = None
        for _ in range(attempts):
            candidate = LandingPage(organization_id=organization_id, name=dto.name.strip(), slug=generate_slug(), content={})
            session.add(candidate)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                logger.warning("landing.slug.collision", extra={"organization_id": actor_user.organization_id})
                continue
            page = candidate
            break
        if page is None:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="could not allocate a unique slug")

        after = self.to_read(page)
        self._record(actor_user, page.id, "create", before=None, after=after)
        logger.info("landing.page.created", extra={"organization_id": actor_user.organization_id, "slug": page.slug})
        return after

    def update_page(
        self,
        session: Session,
        actor_user: ActorUser,
        page_id: uuid.UUID,
        dto: LandingPageUpdate,
    ) -> LandingPageRead:
        page = self._get(session, actor_user, page_id)
        before = self.to_read(page)
        payload = dto.model_dump(exclude_unset=True)

        if payload.get("name") is not None:
            page.name = payload["name"].strip()
        if payload.get("is_active") is not None:
            page.is_active = payload["is_active"]
        if dto.content is not None:
            changes = dto.content.model_dump(exclude_unset=True)
            page.content = {**(page.content or {}), **changes}
        session.commit()

        after = self.to_read(page)
        self._record(actor_user, page.id, "update", before=before, after=after)
        return after

    def delete_page(self, session: Session, actor_user: ActorUser, page_id: uuid.UUID) -> None:
        page = self._get(session, actor_user, page_id)
        before = self.to_read(page)
        session.delete(page)
        session.commit()
        self._record(actor_user, page_id, "delete", before=before, after=None)

    def resolve_public(self, session: Session, slug: str) -> LandingPage | None:
        """Only active pages resolve; missing and inactive slugs are indistinguishable."""

        return session.scalar(select(LandingPage).where(and_(LandingPage.slug == slug, LandingPage.is_active.is_(True))))

    def public_view(self, page: LandingPage) -> PublicLandingPageRead:
        return PublicLandingPageRead(id=page.id, slug=page.slug, content=merge_content(page.name, page.content))

    def submit_lead(self, session: Session, page: LandingPage, phone: str) -> LeadAccepted:
        phone = phone.strip()
        if not phone:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="phone is required")

        with start_span("landing.lead.submit", tracer_name="flexicrm.landing", landing_page_id=page.id) as span:
            record = insert_customer(
                session,
                organization_id=page.organization_id,
                data={NAME_FIELD_ID: visitor_name(phone), PHONE_FIELD_ID: phone, SOURCE_FIELD_ID: LEAD_SOURCE},
                created_by=None,
                source_landing_page_id=page.id,
            )
            session.commit()
            span.set_attribute("customer_id", str(record.id))
        observe_landing_lead()
        logger.info(
            "landing.lead.submitted",
            extra={"organization_id": str(page.organization_id), "slug": page.slug, "entity_id": str(record.id)},
        )

        content = merge_content(page.name, page.content)
        return LeadAccepted(
            customer_id=record.id,
            success_title=content.success_title,
            success_message=content.success_message,
        )

    def to_read(self, page: LandingPage) -> LandingPageRead:
        return LandingPageRead(
            id=page.id,
            name=page.name,
            slug=page.slug,
            is_active=page.is_active,
            content=merge_content(page.name, page.content),
            created_at=page.created_at,
            updated_at=page.updated_at,
        )

    def _get(self, session: Session, actor_user: ActorUser, page_id: uuid.UUID) -> LandingPage:
        page = session.scalar(
            select(LandingPage).where(
                and_(LandingPage.id == page_id, LandingPage.organization_id == uuid.UUID(actor_user.organization_id))
            )
        )
        if page is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="landing page not found")
        return page

    def _record(
        self,
        actor_user: ActorUser,
        page_id: uuid.UUID,
        action: str,
        *,
        before: LandingPageRead | None,
        after: LandingPageRead | None,
    ) -> None:
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(page_id),
            action=action,
            before=before.model_dump(mode="json") if before else None,
            after=after.model_dump(mode="json") if after else None,
            correlation_id=actor_user.correlation_id,
            organization_id=actor_user.organization_id,
        )
        events.publish(
            events.build_envelope(
                f"landing.page.{action}",
                actor_user_id=actor_user.user_id,
                organization_id=actor_user.organization_id,
                payload={"landing_page_id": str(page_id)},
            )
        )


landing_page_service = LandingPageService()
