from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import date
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from sdr_ops.automation.schemas import (
    ActionType,
    AnalyticsFilters,
    AnalyticsSnapshot,
    AutomationLogDetail,
    AutomationLogPage,
    AutomationLogRead,
    AutomationNotificationRead,
    AutomationRuleCreate,
    AutomationRuleRead,
    AutomationRuleUpdate,
    BulkDeleteRequest,
    BulkDeleteResponse,
    BulkToggleRequest,
    BulkToggleResponse,
    ClearLogsRequest,
    ExportReviewFlagRead,
    LogListFilters,
    LogStatus,
    TriggerRequest,
    TriggerResponse,
)
from sdr_ops.automation.service import (
    ActorUser,
    inbox_service,
    log_service,
    rule_service,
    trigger_service,
)
from sdr_ops.context import get_correlation_id
from sdr_ops.core.auth import AuthUser, get_current_user as get_auth_user
from sdr_ops.core.database import get_db

trigger_router = APIRouter(prefix="/api", tags=["automation.trigger"])
rules_router = APIRouter(prefix="/api", tags=["automation.rules"])
logs_router = APIRouter(prefix="/api", tags=["automation.logs"])
inbox_router = APIRouter(prefix="/api", tags=["automation.inbox"])


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def _failed(request: Request, exc: HTTPException, code: str) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=code,
        message=str(exc.detail),
        details=exc.detail,
    )


def get_current_user(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> ActorUser:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    return ActorUser(
        user_id=auth_user.sub,
        organization_id=auth_user.organization_id,
        permissions=set(auth_user.roles),
        correlation_id=correlation_id,
    )


@trigger_router.post("/automation-trigger", response_model=TriggerResponse)
def trigger_automation(
    request: Request,
    dto: TriggerRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TriggerResponse | JSONResponse:
    try:
        return trigger_service.trigger_for(db, user, dto)
    except HTTPException as exc:
        return _failed(request, exc, "automation_trigger_failed")


@rules_router.get("/automation-rules", response_model=list[AutomationRuleRead])
def list_rules(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[AutomationRuleRead] | JSONResponse:
    try:
        return rule_service.list_rules(db, user)
    except HTTPException as exc:
        return _failed(request, exc, "automation_rule_list_failed")


@rules_router.post("/automation-rules", response_model=AutomationRuleRead, status_code=status.HTTP_201_CREATED)
def create_rule(
    request: Request,
    dto: AutomationRuleCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AutomationRuleRead | JSONResponse:
    try:
        return rule_service.create_rule(db, user, dto)
    except HTTPException as exc:
        return _failed(request, exc, "automation_rule_create_failed")


@rules_router.post("/automation-rules/bulk-toggle", response_model=BulkToggleResponse)
def bulk_toggle_rules(
    request: Request,
    dto: BulkToggleRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> BulkToggleResponse | JSONResponse:
    try:
        return rule_service.bulk_toggle(db, user, dto.ids, dto.enabled)
    except HTTPException as exc:
        return _failed(request, exc, "automation_rule_bulk_toggle_failed")


@rules_router.post("/automation-rules/bulk-delete", response_model=BulkDeleteResponse)
def bulk_delete_rules(
    request: Request,
    dto: BulkDeleteRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> BulkDeleteResponse | JSONResponse:
    try:
        return BulkDeleteResponse(deleted=rule_service.bulk_delete(db, user, dto.ids))
    except HTTPException as exc:
        return _failed(request, exc, "automation_rule_bulk_delete_failed")


@rules_router.get("/automation-rules/{rule_id}", response_model=AutomationRuleRead)
def get_rule(
    request: Request,
    rule_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AutomationRuleRead | JSONResponse:
    try:
        return rule_service.get_rule(db, user, rule_id)
    except HTTPException as exc:
        return _failed(request, exc, "automation_rule_get_failed")


@rules_router.patch("/automation-rules/{rule_id}", response_model=AutomationRuleRead)
def update_rule(
    request: Request,
    rule_id: uuid.UUID,
    dto: AutomationRuleUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AutomationRuleRead | JSONResponse:
    try:
        return rule_service.update_rule(db, user, rule_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "automation_rule_update_failed")


@rules_router.delete("/automation-rules/{rule_id}", status_code=status.HTTP_200_OK, response_model=None)
def delete_rule(
    request: Request,
    rule_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> dict[str, Any] | JSONResponse:
    try:
        deleted_logs = rule_service.delete_rule(db, user, rule_id)
        return {"deleted": True, "deleted_logs": deleted_logs}
    except HTTPException as exc:
        return _failed(request, exc, "automation_rule_delete_failed")


@logs_router.get("/automation-logs", response_model=AutomationLogPage)
def list_logs(
    request: Request,
    rule_id: uuid.UUID | None = Query(default=None),
    export_id: str | None = Query(default=None),
    status_filter: LogStatus | None = Query(default=None, alias="status"),
    action_type: ActionType | None = Query(default=None),
    date_from: date | None = Query(default=None),
    date_to: date | None = Query(default=None),
    tag: str | None = Query(default=None),
    search: str | None = Query(default=None),
    sort_by: str = Query(default="created_at"),
    sort_dir: str = Query(default="desc"),
    page: int = Query(default=1),
    limit: int = Query(default=50),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AutomationLogPage | JSONResponse:
    filters = LogListFilters(
        rule_id=rule_id,
        export_id=export_id,
        status=status_filter,
        action_type=action_type,
        date_from=date_from,
        date_to=date_to,
        tag=tag,
        search=search,
        sort_by=sort_by,
        sort_dir=sort_dir,
        page=page,
        limit=limit,
    )
    try:
        return log_service.list_logs(db, user, filters)
    except HTTPException as exc:
        return _failed(request, exc, "automation_log_list_failed")


@logs_router.get("/automation-logs/analytics", response_model=AnalyticsSnapshot)
def log_analytics(
    request: Request,
    rule_id: uuid.UUID | None = Query(default=None),
    status_filter: LogStatus | None = Query(default=None, alias="status"),
    date_from: date | None = Query(default=None),
    date_to: date | None = Query(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AnalyticsSnapshot | JSONResponse:
    filters = AnalyticsFilters(rule_id=rule_id, status=status_filter, date_from=date_from, date_to=date_to)
    try:
        return log_service.analytics(db, user, filters)
    except HTTPException as exc:
        return _failed(request, exc, "automation_analytics_failed")


@logs_router.post("/automation-logs/bulk-delete", response_model=BulkDeleteResponse)
def bulk_delete_logs(
    request: Request,
    dto: BulkDeleteRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> BulkDeleteResponse | JSONResponse:
    try:
        return BulkDeleteResponse(deleted=log_service.bulk_delete(db, user, dto.ids))
    except HTTPException as exc:
        return _failed(request, exc, "automation_log_bulk_delete_failed")


@logs_router.post("/automation-logs/clear", response_model=BulkDeleteResponse)
def clear_logs(
    request: Request,
    dto: ClearLogsRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> BulkDeleteResponse | JSONResponse:
    try:
        return BulkDeleteResponse(deleted=log_service.clear_logs(db, user, dto))
    except HTTPException as exc:
        return _failed(request, exc, "automation_log_clear_failed")


@logs_router.get("/automation-logs/{log_id}", response_model=AutomationLogDetail)
def get_log(
    request: Request,
    log_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AutomationLogDetail | JSONResponse:
    try:
        return log_service.get_log(db, user, log_id)
    except HTTPException as exc:
        return _failed(request, exc, "automation_log_get_failed")


@logs_router.post("/automation-logs/{log_id}/retry", response_model=AutomationLogRead, status_code=status.HTTP_201_CREATED)
def retry_log(
    request: Request,
    log_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AutomationLogRead | JSONResponse:
    try:
        return log_service.retry_log(db, user, log_id)
    except HTTPException as exc:
        return _failed(request, exc, "automation_log_retry_failed")


@inbox_router.get("/automation-notifications", response_model=list[AutomationNotificationRead])
def list_notifications(
    request: Request,
    limit: int = Query(default=50),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[AutomationNotificationRead] | JSONResponse:
    try:
        return inbox_service.list_notifications(db, user, limit)
    except HTTPException as exc:
        return _failed(request, exc, "automation_notification_list_failed")


@inbox_router.get("/export-review-flags", response_model=list[ExportReviewFlagRead])
def list_review_flags(
    request: Request,
    status_filter: str | None = Query(default=None, alias="status"),
    limit: int = Query(default=50),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[ExportReviewFlagRead] | JSONResponse:
    try:
        return inbox_service.list_review_flags(db, user, status_filter=status_filter, limit=limit)
    except HTTPException as exc:
        return _failed(request, exc, "export_review_flag_list_failed")
