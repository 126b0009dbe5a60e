from __future__ import annotations

import logging
import uuid
from datetime import date, datetime, timezone
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import and_, delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from flexicrm import audit, events
from flexicrm.authz.service import ActorUser
from flexicrm.core.config import get_settings
from flexicrm.crm import dependency_engine
from flexicrm.crm.import_export import build_customers_csv, export_filename
from flexicrm.crm.layout import default_layout, is_valid_layout, merge_layout
from flexicrm.crm.models import (
    AutomationRule,
    CustomerRecord,
    FieldDefinition,
    new_field_id,
    new_option_id,
)
from flexicrm.crm.record_view import ColumnFilter, RecordQuery, SortSpec, apply_view
from flexicrm.crm.repositories import AutomationRuleRepository, CustomerRepository, FieldDefinitionRepository
from flexicrm.crm.schemas import (
    ApplyChangeRequest,
    ApplyChangeResponse,
    AutomationRuleCreate,
    AutomationRuleRead,
    BulkDeleteResponse,
    CustomerCreate,
    CustomerPage,
    CustomerQuery,
    CustomerRead,
    CustomerUpdate,
    FieldDefinitionCreate,
    FieldDefinitionRead,
    FieldDefinitionUpdate,
    FieldLayoutUpdate,
    FieldOptionCreate,
    FieldOptionUpdate,
    OptionUsageRead,
    ReplaceRulesRequest,
)
from flexicrm.crm.values import FieldValueError, validate_record_data
from flexicrm.metrics import observe_customer_created
from flexicrm.org.models import Team
from flexicrm.otel import start_span
from flexicrm.platform.security.errors import AuthorizationError


logger = logging.getLogger("flexicrm.crm")

field_repository = FieldDefinitionRepository()
customer_repository = CustomerRepository()
rule_repository = AutomationRuleRepository()

DEFAULT_OPTION_COLOR = "bg-gray-100 text-gray-800"
_CUSTOMER_EVENT_TYPES = {"update": "crm.customer.updated", "delete": "crm.customer.deleted"}

# Well-known ids written by public lead capture.
NAME_FIELD_ID = "f_name"
PHONE_FIELD_ID = "f_phone"
SOURCE_FIELD_ID = "f_source"

DEFAULT_FIELDS: tuple[dict[str, Any], ...] = (
    {"id": NAME_FIELD_ID, "name": "Name", "field_type": "text", "is_system": True, "column_width": 200},
    {"id": "f_email", "name": "Email", "field_type": "email", "is_system": False, "column_width": 250},
    {"id": PHONE_FIELD_ID, "name": "Phone", "field_type": "text", "is_system": False, "column_width": 160},
    {
        "id": "f_status",
        "name": "Status",
        "field_type": "select",
        "is_system": False,
        "column_width": 150,
        "options": [
            {"id": "opt_lead", "label": "New Lead", "color": "bg-blue-100 text-blue-800"},
            {"id": "opt_contacted", "label": "Contacted", "color": "bg-yellow-100 text-yellow-800"},
            {"id": "opt_closed", "label": "Closed Won", "color": "bg-green-100 text-green-800"},
            {"id": "opt_lost", "label": "Lost", "color": "bg-red-100 text-red-800"},
        ],
    },
    {"id": SOURCE_FIELD_ID, "name": "Source", "field_type": "text", "is_system": False, "column_width": 150},
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _org_uuid(actor_user: ActorUser) -> uuid.UUID:
    return uuid.UUID(actor_user.organization_id)


def seed_default_fields(session: Session, organization_id: uuid.UUID) -> None:
    """Initial schema for a new organization. Caller commits."""

    for index, definition in enumerate(DEFAULT_FIELDS):
        session.add(
            FieldDefinition(
                organization_id=organization_id,
                sort_order=index,
                layout=default_layout(index),
                **definition,
            )
        )
    session.flush()


class FieldDefinitionService:
    entity_type = "crm.field_definition"

    def list_fields(self, session: Session, actor_user: ActorUser, *, ensure_layout: bool = False) -> list[FieldDefinitionRead]:
        if ensure_layout:
            return self.backfill_layouts(session, actor_user)
        return [FieldDefinitionRead.model_validate(row) for row in self.ordered_definitions(session, actor_user)]

    def create_field(self, session: Session, actor_user: ActorUser, dto: FieldDefinitionCreate) -> FieldDefinitionRead:
        organization_id = _org_uuid(actor_user)
        count = session.scalar(
            select(func.count()).select_from(FieldDefinition).where(FieldDefinition.organization_id == organization_id)
        )
        definition = FieldDefinition(
            organization_id=organization_id,
            id=new_field_id(),
            name=dto.name.strip(),
            field_type=dto.type,
            is_visible=True,
            is_system=False,
            sort_order=int(count or 0),
            column_width=get_settings().default_field_width,
            layout=None,
            options=[] if dto.type == "select" else None,
        )
        session.add(definition)
        try:
            session.flush()
        except IntegrityError:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="field already exists")

        after = FieldDefinitionRead.model_validate(definition)
        self._record(actor_user, definition.id, "create", before=None, after=after.model_dump(mode="json"))
        session.commit()
        return after

    def update_field(
        self,
        session: Session,
        actor_user: ActorUser,
        field_id: str,
        dto: FieldDefinitionUpdate,
    ) -> FieldDefinitionRead:
        definition = self._get(session, actor_user, field_id)
        before = FieldDefinitionRead.model_validate(definition).model_dump(mode="json")
        payload = dto.model_dump(exclude_unset=True)

        if payload.get("type") is not None and payload["type"] != definition.field_type:
            if definition.is_system:
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail="type of a system field cannot be changed",
                )
            definition.field_type = payload["type"]
            if definition.field_type == "select":
                definition.options = definition.options or []
            else:
                definition.options = None
        if payload.get("name") is not None:
            definition.name = payload["name"].strip()
        if payload.get("visible") is not None:
            definition.is_visible = payload["visible"]
        if payload.get("width") is not None:
            definition.column_width = payload["width"]

        session.flush()
        after = FieldDefinitionRead.model_validate(definition)
        self._record(actor_user, definition.id, "update", before=before, after=after.model_dump(mode="json"))
        session.commit()
        return after

    def move_field(self, session: Session, actor_user: ActorUser, field_id: str, direction: str) -> list[FieldDefinitionRead]:
        ordered = self.ordered_definitions(session, actor_user)
        index = next((position for position, row in enumerate(ordered) if row.id == field_id), None)
        if index is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="field not found")

        neighbour = index - 1 if direction == "up" else index + 1
        if neighbour < 0 or neighbour >= len(ordered):
            return [FieldDefinitionRead.model_validate(row) for row in ordered]

        ordered[index], ordered[neighbour] = ordered[neighbour], ordered[index]
        for position, row in enumerate(ordered):
            row.sort_order = position
        session.flush()
        self._record(
            actor_user,
            field_id,
            "reorder",
            before={"order": index},
            after={"order": neighbour},
        )
        session.commit()
        return [FieldDefinitionRead.model_validate(row) for row in ordered]

    def update_layout(
        self,
        session: Session,
        actor_user: ActorUser,
        field_id: str,
        dto: FieldLayoutUpdate,
    ) -> FieldDefinitionRead:
        ordered = self.ordered_definitions(session, actor_user)
        index = next((position for position, row in enumerate(ordered) if row.id == field_id), None)
        if index is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="field not found")

        definition = ordered[index]
        before = dict(definition.layout) if definition.layout else None
        definition.layout = merge_layout(definition.layout, dto.model_dump(exclude_none=True), index=index)
        session.flush()
        self._record(actor_user, field_id, "layout", before=before, after=dict(definition.layout))
        session.commit()
        return FieldDefinitionRead.model_validate(definition)

    def backfill_layouts(self, session: Session, actor_user: ActorUser) -> list[FieldDefinitionRead]:
        ordered = self.ordered_definitions(session, actor_user)
        filled = 0
        for index, definition in enumerate(ordered):
            if not is_valid_layout(definition.layout):
                definition.layout = default_layout(index)
                filled += 1
        if filled:
            session.commit()
            logger.info(
                "crm.fields.layout_backfilled",
                extra={"organization_id": actor_user.organization_id, "count": filled},
            )
        return [FieldDefinitionRead.model_validate(row) for row in ordered]

    def delete_field(self, session: Session, actor_user: ActorUser, field_id: str) -> None:
        definition = self._get(session, actor_user, field_id)
        if definition.is_system:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="system field cannot be deleted")

        before = FieldDefinitionRead.model_validate(definition).model_dump(mode="json")
        session.delete(definition)
        session.flush()
        # Values stay on stored records as orphaned keys.
        for position, row in enumerate(self.ordered_definitions(session, actor_user)):
            row.sort_order = position
        self._record(actor_user, field_id, "delete", before=before, after=None)
        session.commit()

    def add_option(
        self,
        session: Session,
        actor_user: ActorUser,
        field_id: str,
        dto: FieldOptionCreate,
    ) -> FieldDefinitionRead:
        definition = self._get_select(session, actor_user, field_id)
        option = {"id": new_option_id(), "label": dto.label.strip(), "color": dto.color or DEFAULT_OPTION_COLOR}
        definition.options = [*(definition.options or []), option]
        session.flush()
        self._record(actor_user, field_id, "option.create", before=None, after=option)
        session.commit()
        return FieldDefinitionRead.model_validate(definition)

    def update_option(
        self,
        session: Session,
        actor_user: ActorUser,
        field_id: str,
        option_id: str,
        dto: FieldOptionUpdate,
    ) -> FieldDefinitionRead:
        definition = self._get_select(session, actor_user, field_id)
        options = [dict(option) for option in definition.options or []]
        target = next((option for option in options if option["id"] == option_id), None)
        if target is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="option not found")

        before = dict(target)
        if dto.label is not None:
            target["label"] = dto.label.strip()
        if dto.color is not None:
            target["color"] = dto.color
        definition.options = options
        session.flush()
        self._record(actor_user, field_id, "option.update", before=before, after=dict(target))
        session.commit()
        return FieldDefinitionRead.model_validate(definition)

    def delete_option(
        self,
        session: Session,
        actor_user: ActorUser,
        field_id: str,
        option_id: str,
        *,
        force: bool = False,
    ) -> FieldDefinitionRead:
        """Remove an option. Records still pointing at it block the delete unless `force` clears them."""

        definition = self._get_select(session, actor_user, field_id)
        options = list(definition.options or [])
        if not any(option["id"] == option_id for option in options):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="option not found")

        in_use = self._records_using_option(session, actor_user, field_id, option_id)
        if in_use and not force:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=OptionUsageRead(field_id=field_id, option_id=option_id, record_count=len(in_use)).model_dump(),
            )

        for record in in_use:
            record.data = {**record.data, field_id: None}
            record.row_version = record.row_version + 1
            record.updated_at = utcnow()

        definition.options = [option for option in options if option["id"] != option_id]
        session.flush()
        self._record(
            actor_user,
            field_id,
            "option.delete",
            before={"option_id": option_id},
            after={"cleared_records": len(in_use)},
        )
        session.commit()
        return FieldDefinitionRead.model_validate(definition)

    def option_usage(self, session: Session, actor_user: ActorUser, field_id: str, option_id: str) -> OptionUsageRead:
        self._get_select(session, actor_user, field_id)
        in_use = self._records_using_option(session, actor_user, field_id, option_id)
        return OptionUsageRead(field_id=field_id, option_id=option_id, record_count=len(in_use))

    def definitions_by_id(self, session: Session, organization_id: uuid.UUID) -> dict[str, FieldDefinition]:
        rows = session.scalars(select(FieldDefinition).where(FieldDefinition.organization_id == organization_id)).all()
        return {row.id: row for row in rows}

    def ordered_definitions(self, session: Session, actor_user: ActorUser) -> list[FieldDefinition]:
        stmt = select(FieldDefinition).order_by(
            FieldDefinition.sort_order.asc(),
            FieldDefinition.created_at.asc(),
            FieldDefinition.id.asc(),
        )
        stmt = field_repository.apply_scope_query(stmt, actor_user.to_auth_context())
        return list(session.scalars(stmt).all())

    def _get(self, session: Session, actor_user: ActorUser, field_id: str) -> FieldDefinition:
        stmt = field_repository.apply_scope_query(
            select(FieldDefinition).where(FieldDefinition.id == field_id),
            actor_user.to_auth_context(),
        )
        definition = session.scalar(stmt)
        if definition is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="field not found")
        return definition

    def _get_select(self, session: Session, actor_user: ActorUser, field_id: str) -> FieldDefinition:
        definition = self._get(session, actor_user, field_id)
        if definition.field_type != "select":
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="options are only supported on select fields")
        return definition

    def _records_using_option(
        self,
        session: Session,
        actor_user: ActorUser,
        field_id: str,
        option_id: str,
    ) -> list[CustomerRecord]:
        rows = session.scalars(
            select(CustomerRecord).where(
                and_(
                    CustomerRecord.organization_id == _org_uuid(actor_user),
                    CustomerRecord.deleted_at.is_(None),
                )
            )
        ).all()
        return [row for row in rows if (row.data or {}).get(field_id) == option_id]

    def _record(
        self,
        actor_user: ActorUser,
        field_id: str,
        action: str,
        *,
        before: dict[str, Any] | None,
        after: dict[str, Any] | None,
    ) -> None:
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=field_id,
            action=action,
            before=before,
            after=after,
            correlation_id=actor_user.correlation_id,
            organization_id=actor_user.organization_id,
        )
        events.publish(
            events.build_envelope(
                f"crm.field.{action}",
                actor_user_id=actor_user.user_id,
                organization_id=actor_user.organization_id,
                payload={"field_id": field_id},
            )
        )


class CustomerService:
    entity_type = "crm.customer"

    def list_customers(self, session: Session, actor_user: ActorUser) -> list[CustomerRead]:
        return [CustomerRead.model_validate(row) for row in self._visible_rows(session, actor_user)]

    def query_customers(self, session: Session, actor_user: ActorUser, query: CustomerQuery) -> CustomerPage:
        rows = self._visible_rows(session, actor_user)
        definitions = field_definition_service.ordered_definitions(session, actor_user)
        window, total = apply_view(rows, definitions, self._to_record_query(query))
        return CustomerPage(
            items=[CustomerRead.model_validate(row) for row in window],
            total=total,
            offset=query.offset,
        )

    def get_customer(self, session: Session, actor_user: ActorUser, customer_id: uuid.UUID) -> CustomerRead:
        return CustomerRead.model_validate(self._get(session, actor_user, customer_id, access="read"))

    def create_customer(self, session: Session, actor_user: ActorUser, dto: CustomerCreate) -> CustomerRead:
        data = self._validate_data(session, _org_uuid(actor_user), dto.data)
        self._check_team_scope(session, actor_user, dto.team_id)
        team_id = dto.team_id or (uuid.UUID(actor_user.team_id) if actor_user.team_id else None)
        with start_span("crm.customer.create", organization_id=actor_user.organization_id) as span:
            record = insert_customer(
                session,
                organization_id=_org_uuid(actor_user),
                data=data,
                created_by=uuid.UUID(actor_user.user_id),
                assigned_to=dto.assigned_to or uuid.UUID(actor_user.user_id),
                team_id=team_id,
                correlation_id=actor_user.correlation_id,
            )
            session.commit()
            span.set_attribute("customer_id", str(record.id))
        session.refresh(record)
        return CustomerRead.model_validate(record)

    def update_customer(
        self,
        session: Session,
        actor_user: ActorUser,
        customer_id: uuid.UUID,
        dto: CustomerUpdate,
    ) -> CustomerRead:
        """Full replace of the record's data; keys missing from `dto.data` are dropped."""

        existing = self._get(session, actor_user, customer_id, access="update")
        before = CustomerRead.model_validate(existing).model_dump(mode="json")
        data = self._validate_data(session, existing.organization_id, dto.data, previous=existing.data)
        if "team_id" in dto.model_fields_set:
            self._check_team_scope(session, actor_user, dto.team_id)

        changes: dict[str, Any] = {
            "data": data,
            "updated_at": utcnow(),
            "row_version": CustomerRecord.row_version + 1,
        }
        if "assigned_to" in dto.model_fields_set:
            changes["assigned_to"] = dto.assigned_to
        if "team_id" in dto.model_fields_set:
            changes["team_id"] = dto.team_id

        result = session.execute(
            update(CustomerRecord)
            .where(
                and_(
                    CustomerRecord.id == customer_id,
                    CustomerRecord.row_version == dto.row_version,
                    CustomerRecord.deleted_at.is_(None),
                )
            )
            .values(**changes)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="row_version conflict")

        session.refresh(existing)
        after = CustomerRead.model_validate(existing)
        self._record(actor_user, existing.id, "update", before=before, after=after.model_dump(mode="json"))
        session.commit()
        return after

    def soft_delete_customer(self, session: Session, actor_user: ActorUser, customer_id: uuid.UUID) -> bool:
        existing = self._get(session, actor_user, customer_id, access="read")
        existing.deleted_at = utcnow()
        existing.row_version = existing.row_version + 1
        session.flush()
        self._record(actor_user, existing.id, "delete", before={"deleted_at": None}, after={"deleted_at": existing.deleted_at.isoformat()})
        session.commit()
        return True

    def bulk_delete(self, session: Session, actor_user: ActorUser, ids: list[uuid.UUID]) -> BulkDeleteResponse:
        stmt = customer_repository.apply_scope_query(
            select(CustomerRecord).where(and_(CustomerRecord.id.in_(ids), CustomerRecord.deleted_at.is_(None))),
            actor_user.to_auth_context(),
        )
        rows = session.scalars(stmt).all()
        deleted_at = utcnow()
        for row in rows:
            row.deleted_at = deleted_at
            row.row_version = row.row_version + 1
            self._record(actor_user, row.id, "delete", before={"deleted_at": None}, after={"deleted_at": deleted_at.isoformat()})
        session.commit()
        logger.info(
            "crm.customers.bulk_deleted",
            extra={"organization_id": actor_user.organization_id, "count": len(rows)},
        )
        return BulkDeleteResponse(deleted_count=len(rows))

    def export_csv(self, session: Session, actor_user: ActorUser, query: CustomerQuery) -> tuple[str, str]:
        rows = self._visible_rows(session, actor_user)
        definitions = field_definition_service.ordered_definitions(session, actor_user)
        unbounded = query.model_copy(update={"offset": 0, "limit": None})
        window, _ = apply_view(rows, definitions, self._to_record_query(unbounded))
        visible_fields = [definition for definition in definitions if definition.is_visible]
        content = build_customers_csv(visible_fields, [row.data or {} for row in window])
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id="export",
            action="export",
            before=None,
            after={"row_count": len(window)},
            correlation_id=actor_user.correlation_id,
            organization_id=actor_user.organization_id,
        )
        return export_filename(date.today()), content

    def _visible_rows(self, session: Session, actor_user: ActorUser) -> list[CustomerRecord]:
        stmt = (
            select(CustomerRecord)
            .where(CustomerRecord.deleted_at.is_(None))
            .order_by(CustomerRecord.created_at.desc(), CustomerRecord.id.desc())
        )
        stmt = customer_repository.apply_scope_query(stmt, actor_user.to_auth_context(), access="read")
        return list(session.scalars(stmt).all())

    def _get(self, session: Session, actor_user: ActorUser, customer_id: uuid.UUID, *, access: str) -> CustomerRecord:
        stmt = customer_repository.apply_scope_query(
            select(CustomerRecord).where(and_(CustomerRecord.id == customer_id, CustomerRecord.deleted_at.is_(None))),
            actor_user.to_auth_context(),
            access=access,  # type: ignore[arg-type]
        )
        record = session.scalar(stmt)
        if record is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="customer not found")
        return record

    def _check_team_scope(self, session: Session, actor_user: ActorUser, team_id: uuid.UUID | None) -> None:
        if team_id is None:
            return
        team = session.get(Team, team_id)
        if team is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="team not found")
        try:
            customer_repository.validate_write_security(
                {"team_id": str(team_id)},
                actor_user.to_auth_context(),
                existing_organization_id=team.organization_id,
                action="assign_team",
            )
        except AuthorizationError as exc:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))

    def _validate_data(
        self,
        session: Session,
        organization_id: uuid.UUID,
        data: dict[str, Any],
        *,
        previous: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        definitions = field_definition_service.definitions_by_id(session, organization_id)
        try:
            return validate_record_data(definitions, data, previous)
        except FieldValueError as exc:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))

    def _to_record_query(self, query: CustomerQuery) -> RecordQuery:
        return RecordQuery(
            search=query.search,
            filters=[ColumnFilter(field_id=item.field_id, operator=item.operator, value=item.value) for item in query.filters],
            sort=SortSpec(field_id=query.sort.field_id, direction=query.sort.direction) if query.sort else None,
            offset=query.offset,
            limit=query.limit,
        )

    def _record(
        self,
        actor_user: ActorUser,
        customer_id: uuid.UUID,
        action: str,
        *,
        before: dict[str, Any] | None,
        after: dict[str, Any] | None,
    ) -> None:
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(customer_id),
            action=action,
            before=before,
            after=after,
            correlation_id=actor_user.correlation_id,
            organization_id=actor_user.organization_id,
        )
        events.publish(
            events.build_envelope(
                _CUSTOMER_EVENT_TYPES[action],
                actor_user_id=actor_user.user_id,
                organization_id=actor_user.organization_id,
                payload={"customer_id": str(customer_id)},
            )
        )


def insert_customer(
    session: Session,
    *,
    organization_id: uuid.UUID,
    data: dict[str, Any],
    created_by: uuid.UUID | None,
    assigned_to: uuid.UUID | None = None,
    team_id: uuid.UUID | None = None,
    source_landing_page_id: uuid.UUID | None = None,
    correlation_id: str | None = None,
) -> CustomerRecord:
    """Shared insert path for the CRM API and public lead capture. Caller commits."""

    record = CustomerRecord(
        organization_id=organization_id,
        data=data,
        created_by=created_by,
        assigned_to=assigned_to,
        team_id=team_id,
        source_landing_page_id=source_landing_page_id,
    )
    session.add(record)
    session.flush()
    observe_customer_created("landing" if source_landing_page_id is not None else "api")

    actor_id = str(created_by) if created_by else "public"
    audit.record(
        actor_user_id=actor_id,
        entity_type=CustomerService.entity_type,
        entity_id=str(record.id),
        action="create",
        before=None,
        after={"data": data, "source_landing_page_id": str(source_landing_page_id) if source_landing_page_id else None},
        correlation_id=correlation_id,
        organization_id=str(organization_id),
    )
    events.publish(
        events.build_envelope(
            "crm.customer.created",
            actor_user_id=str(created_by) if created_by else None,
            organization_id=str(organization_id),
            payload={"customer_id": str(record.id)},
        )
    )
    logger.info("crm.customer.created", extra={"organization_id": str(organization_id), "entity_id": str(record.id)})
    return record


class AutomationRuleService:
    entity_type = "crm.automation_rule"

    def list_rules(self, session: Session, actor_user: ActorUser) -> list[AutomationRuleRead]:
        return [AutomationRuleRead.model_validate(row) for row in self._active_rules(session, actor_user)]

    def create_rule(self, session: Session, actor_user: ActorUser, dto: AutomationRuleCreate) -> AutomationRuleRead:
        organization_id = _org_uuid(actor_user)
        self._validate(session, organization_id, dto)
        next_order = session.scalar(
            select(func.coalesce(func.max(AutomationRule.sort_order) + 1, 0)).where(
                AutomationRule.organization_id == organization_id
            )
        )
        rule = AutomationRule(organization_id=organization_id, sort_order=int(next_order or 0), **dto.model_dump())
        session.add(rule)
        session.flush()
        after = AutomationRuleRead.model_validate(rule)
        self._record(actor_user, str(rule.id), "create", before=None, after=after.model_dump(mode="json"))
        session.commit()
        return after

    def delete_rule(self, session: Session, actor_user: ActorUser, rule_id: uuid.UUID) -> None:
        stmt = rule_repository.apply_scope_query(
            select(AutomationRule).where(AutomationRule.id == rule_id),
            actor_user.to_auth_context(),
        )
        rule = session.scalar(stmt)
        if rule is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="rule not found")
        before = AutomationRuleRead.model_validate(rule).model_dump(mode="json")
        session.delete(rule)
        self._record(actor_user, str(rule_id), "delete", before=before, after=None)
        session.commit()

    def replace_rules(self, session: Session, actor_user: ActorUser, dto: ReplaceRulesRequest) -> list[AutomationRuleRead]:
        """Make the stored rule set equal to `dto.rules` in one transaction.

        Rules with a known id are updated in place, new ones inserted and the
        rest removed; any failure rolls back to the previous set.
        """

        organization_id = _org_uuid(actor_user)
        for item in dto.rules:
            self._validate(session, organization_id, item)

        existing = {
            row.id: row
            for row in session.scalars(select(AutomationRule).where(AutomationRule.organization_id == organization_id)).all()
        }
        unknown_ids = [str(item.id) for item in dto.rules if item.id is not None and item.id not in existing]
        if unknown_ids:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"rule not found: {', '.join(unknown_ids)}")

        with start_span("crm.rules.replace", organization_id=actor_user.organization_id, rule_count=len(dto.rules)) as span:
            kept_ids: set[uuid.UUID] = set()
            try:
                for position, item in enumerate(dto.rules):
                    values = item.model_dump(exclude={"id"})
                    row = existing.get(item.id) if item.id is not None else None
                    if row is None:
                        row = AutomationRule(organization_id=organization_id, **values)
                        session.add(row)
                    else:
                        for key, value in values.items():
                            setattr(row, key, value)
                    row.sort_order = position
                    session.flush()
                    kept_ids.add(row.id)

                stale_ids = [rule_id for rule_id in existing if rule_id not in kept_ids]
                if stale_ids:
                    session.execute(delete(AutomationRule).where(AutomationRule.id.in_(stale_ids)))
                self._record(
                    actor_user,
                    "ruleset",
                    "replace",
                    before={"count": len(existing)},
                    after={"count": len(dto.rules), "removed": len(stale_ids)},
                )
                session.commit()
                span.set_attribute("removed_count", len(stale_ids))
            except IntegrityError:
                session.rollback()
                raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="rule set could not be saved")

        return self.list_rules(session, actor_user)

    def apply_change(self, session: Session, actor_user: ActorUser, dto: ApplyChangeRequest) -> ApplyChangeResponse:
        rules = self._active_rules(session, actor_user)
        new_state = dependency_engine.apply_change(dto.field_id, dto.value, dto.form_state, rules)
        changed = [
            key
            for key, value in new_state.items()
            if key != dto.field_id and (key not in dto.form_state or dto.form_state[key] != value)
        ]
        return ApplyChangeResponse(form_state=new_state, changed_field_ids=changed)

    def _active_rules(self, session: Session, actor_user: ActorUser) -> list[AutomationRule]:
        stmt = (
            select(AutomationRule)
            .where(AutomationRule.is_active.is_(True))
            .order_by(AutomationRule.sort_order.asc(), AutomationRule.created_at.asc())
        )
        stmt = rule_repository.apply_scope_query(stmt, actor_user.to_auth_context())
        return list(session.scalars(stmt).all())

    def _validate(self, session: Session, organization_id: uuid.UUID, dto: AutomationRuleCreate) -> None:
        known_ids = field_definition_service.definitions_by_id(session, organization_id).keys()
        errors = dependency_engine.validate_rule(dto.trigger_field_id, dto.target_field_id, known_ids)
        if errors:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="; ".join(errors))

    def _record(
        self,
        actor_user: ActorUser,
        entity_id: str,
        action: str,
        *,
        before: dict[str, Any] | None,
        after: dict[str, Any] | None,
    ) -> None:
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=entity_id,
            action=action,
            before=before,
            after=after,
            correlation_id=actor_user.correlation_id,
            organization_id=actor_user.organization_id,
        )
        events.publish(
            events.build_envelope(
                f"crm.automation_rule.{action}",
                actor_user_id=actor_user.user_id,
                organization_id=actor_user.organization_id,
                payload={"entity_id": entity_id},
            )
        )


field_definition_service = FieldDefinitionService()
customer_service = CustomerService()
automation_rule_service = AutomationRuleService()
