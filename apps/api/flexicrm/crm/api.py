from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

from flexicrm.api.deps import error_response, get_current_user, require_any_permission, require_permission
from flexicrm.authz.service import ActorUser
from flexicrm.core.database import get_db
from flexicrm.crm.schemas import (
    ApplyChangeRequest,
    ApplyChangeResponse,
    AutomationRuleCreate,
    AutomationRuleRead,
    BulkDeleteRequest,
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
    FieldMoveRequest,
    FieldOptionCreate,
    FieldOptionUpdate,
    OptionUsageRead,
    ReplaceRulesRequest,
)
from flexicrm.crm.service import automation_rule_service, customer_service, field_definition_service

fields_router = APIRouter(prefix="/api/crm/fields", tags=["crm.fields"])
customers_router = APIRouter(prefix="/api/crm/customers", tags=["crm.customers"])
rules_router = APIRouter(prefix="/api/crm/rules", tags=["crm.rules"])

_CUSTOMER_READ_PERMISSIONS = ["data.customers.read.all", "data.customers.read.team", "data.customers.read.own"]
_CUSTOMER_UPDATE_PERMISSIONS = ["data.customers.update.all", "data.customers.update.team", "data.customers.update.own"]


def _failed(request: Request, exc: HTTPException, code: str) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=code,
        message=str(exc.detail),
        details=exc.detail,
    )


@fields_router.get("", response_model=list[FieldDefinitionRead])
def list_fields(
    request: Request,
    ensure_layout: bool = Query(default=False),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[FieldDefinitionRead] | JSONResponse:
    try:
        require_permission(user, "schema.fields.read")
        return field_definition_service.list_fields(db, user, ensure_layout=ensure_layout)
    except HTTPException as exc:
        return _failed(request, exc, "crm_fields_list_failed")


@fields_router.post("", response_model=FieldDefinitionRead, status_code=status.HTTP_201_CREATED)
def create_field(
    request: Request,
    dto: FieldDefinitionCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> FieldDefinitionRead | JSONResponse:
    try:
        require_permission(user, "schema.fields.create")
        return field_definition_service.create_field(db, user, dto)
    except HTTPException as exc:
        return _failed(request, exc, "crm_fields_create_failed")


@fields_router.patch("/{field_id}", response_model=FieldDefinitionRead)
def update_field(
    request: Request,
    field_id: str,
    dto: FieldDefinitionUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> FieldDefinitionRead | JSONResponse:
    try:
        require_permission(user, "schema.fields.update")
        return field_definition_service.update_field(db, user, field_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "crm_fields_update_failed")


@fields_router.post("/{field_id}/move", response_model=list[FieldDefinitionRead])
def move_field(
    request: Request,
    field_id: str,
    dto: FieldMoveRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[FieldDefinitionRead] | JSONResponse:
    try:
        require_permission(user, "schema.fields.update")
        return field_definition_service.move_field(db, user, field_id, dto.direction)
    except HTTPException as exc:
        return _failed(request, exc, "crm_fields_move_failed")


@fields_router.patch("/{field_id}/layout", response_model=FieldDefinitionRead)
def update_field_layout(
    request: Request,
    field_id: str,
    dto: FieldLayoutUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> FieldDefinitionRead | JSONResponse:
    try:
        require_permission(user, "schema.fields.update")
        return field_definition_service.update_layout(db, user, field_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "crm_fields_layout_failed")


@fields_router.delete("/{field_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_field(
    request: Request,
    field_id: str,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    try:
        require_permission(user, "schema.fields.delete")
        field_definition_service.delete_field(db, user, field_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except HTTPException as exc:
        return _failed(request, exc, "crm_fields_delete_failed")


@fields_router.post("/{field_id}/options", response_model=FieldDefinitionRead, status_code=status.HTTP_201_CREATED)
def add_field_option(
    request: Request,
    field_id: str,
    dto: FieldOptionCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> FieldDefinitionRead | JSONResponse:
    try:
        require_permission(user, "schema.fields.create")
        return field_definition_service.add_option(db, user, field_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "crm_field_options_create_failed")


@fields_router.patch("/{field_id}/options/{option_id}", response_model=FieldDefinitionRead)
def update_field_option(
    request: Request,
    field_id: str,
    option_id: str,
    dto: FieldOptionUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> FieldDefinitionRead | JSONResponse:
    try:
        require_permission(user, "schema.fields.update")
        return field_definition_service.update_option(db, user, field_id, option_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "crm_field_options_update_failed")


@fields_router.get("/{field_id}/options/{option_id}/usage", response_model=OptionUsageRead)
def read_field_option_usage(
    request: Request,
    field_id: str,
    option_id: str,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> OptionUsageRead | JSONResponse:
    try:
        require_permission(user, "schema.fields.read")
        return field_definition_service.option_usage(db, user, field_id, option_id)
    except HTTPException as exc:
        return _failed(request, exc, "crm_field_options_usage_failed")


@fields_router.delete("/{field_id}/options/{option_id}", response_model=FieldDefinitionRead)
def delete_field_option(
    request: Request,
    field_id: str,
    option_id: str,
    force: bool = Query(default=False),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> FieldDefinitionRead | JSONResponse:
    try:
        require_permission(user, "schema.fields.delete")
        return field_definition_service.delete_option(db, user, field_id, option_id, force=force)
    except HTTPException as exc:
        return _failed(request, exc, "crm_field_options_delete_failed")


@customers_router.get("", response_model=list[CustomerRead])
def list_customers(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[CustomerRead] | JSONResponse:
    try:
        require_any_permission(user, _CUSTOMER_READ_PERMISSIONS)
        return customer_service.list_customers(db, user)
    except HTTPException as exc:
        return _failed(request, exc, "crm_customers_list_failed")


@customers_router.post("/query", response_model=CustomerPage)
def query_customers(
    request: Request,
    dto: CustomerQuery,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> CustomerPage | JSONResponse:
    try:
        require_any_permission(user, _CUSTOMER_READ_PERMISSIONS)
        return customer_service.query_customers(db, user, dto)
    except HTTPException as exc:
        return _failed(request, exc, "crm_customers_query_failed")


@customers_router.post("/export")
def export_customers(
    request: Request,
    dto: CustomerQuery,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    try:
        require_permission(user, "data.customers.export")
        require_any_permission(user, _CUSTOMER_READ_PERMISSIONS)
        filename, content = customer_service.export_csv(db, user, dto)
    except HTTPException as exc:
        return _failed(request, exc, "crm_customers_export_failed")

    return Response(
        content=content.encode("utf-8"),
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@customers_router.post("/bulk-delete", response_model=BulkDeleteResponse)
def bulk_delete_customers(
    request: Request,
    dto: BulkDeleteRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> BulkDeleteResponse | JSONResponse:
    try:
        require_permission(user, "data.customers.delete")
        return customer_service.bulk_delete(db, user, dto.ids)
    except HTTPException as exc:
        return _failed(request, exc, "crm_customers_bulk_delete_failed")


@customers_router.post("", response_model=CustomerRead, status_code=status.HTTP_201_CREATED)
def create_customer(
    request: Request,
    dto: CustomerCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> CustomerRead | JSONResponse:
    try:
        require_permission(user, "data.customers.create")
        return customer_service.create_customer(db, user, dto)
    except HTTPException as exc:
        return _failed(request, exc, "crm_customers_create_failed")


@customers_router.get("/{customer_id}", response_model=CustomerRead)
def get_customer(
    request: Request,
    customer_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> CustomerRead | JSONResponse:
    try:
        require_any_permission(user, _CUSTOMER_READ_PERMISSIONS)
        return customer_service.get_customer(db, user, customer_id)
    except HTTPException as exc:
        return _failed(request, exc, "crm_customers_get_failed")


@customers_router.put("/{customer_id}", response_model=CustomerRead)
def update_customer(
    request: Request,
    customer_id: uuid.UUID,
    dto: CustomerUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> CustomerRead | JSONResponse:
    try:
        require_any_permission(user, _CUSTOMER_UPDATE_PERMISSIONS)
        return customer_service.update_customer(db, user, customer_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "crm_customers_update_failed")


@customers_router.delete("/{customer_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_customer(
    request: Request,
    customer_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    try:
        require_permission(user, "data.customers.delete")
        customer_service.soft_delete_customer(db, user, customer_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except HTTPException as exc:
        return _failed(request, exc, "crm_customers_delete_failed")


@rules_router.get("", response_model=list[AutomationRuleRead])
def list_rules(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[AutomationRuleRead] | JSONResponse:
    try:
        require_permission(user, "schema.automation.read")
        return automation_rule_service.list_rules(db, user)
    except HTTPException as exc:
        return _failed(request, exc, "crm_rules_list_failed")


@rules_router.post("", response_model=AutomationRuleRead, status_code=status.HTTP_201_CREATED)
def create_rule(
    request: Request,
    dto: AutomationRuleCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AutomationRuleRead | JSONResponse:
    try:
        require_permission(user, "schema.automation.manage")
        return automation_rule_service.create_rule(db, user, dto)
    except HTTPException as exc:
        return _failed(request, exc, "crm_rules_create_failed")


@rules_router.put("", response_model=list[AutomationRuleRead])
def replace_rules(
    request: Request,
    dto: ReplaceRulesRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[AutomationRuleRead] | JSONResponse:
    try:
        require_permission(user, "schema.automation.manage")
        return automation_rule_service.replace_rules(db, user, dto)
    except HTTPException as exc:
        return _failed(request, exc, "crm_rules_replace_failed")


@rules_router.post("/apply", response_model=ApplyChangeResponse)
def apply_rule_change(
    request: Request,
    dto: ApplyChangeRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ApplyChangeResponse | JSONResponse:
    try:
        require_any_permission(user, ["data.customers.create", *_CUSTOMER_UPDATE_PERMISSIONS])
        return automation_rule_service.apply_change(db, user, dto)
    except HTTPException as exc:
        return _failed(request, exc, "crm_rules_apply_failed")


@rules_router.delete("/{rule_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_rule(
    request: Request,
    rule_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    try:
        require_permission(user, "schema.automation.manage")
        automation_rule_service.delete_rule(db, user, rule_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except HTTPException as exc:
        return _failed(request, exc, "crm_rules_delete_failed")
