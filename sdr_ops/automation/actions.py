from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx
from opentelemetry import trace
from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from sdr_ops.automation.matcher import TagChangeEvent
from sdr_ops.automation.models import AutomationNotification, AutomationRule, ExportReviewFlag
from sdr_ops.automation.repository import SideEffectRepository
from sdr_ops.automation.schemas import parse_action_config
from sdr_ops.context import get_correlation_id
from sdr_ops.core.config import get_settings


logger = logging.getLogger("app.automation.actions")
tracer = trace.get_tracer("app.automation.actions")

IDEMPOTENCY_MARKER = "sdr-ops-automation-log"


class ActionExecutionError(Exception):
    """An action's side effect could not be performed."""


@dataclass
class ActionResult:
    success: bool
    result: dict[str, Any] = field(default_factory=dict)
    error_message: str | None = None

    @classmethod
    def ok(cls, result: dict[str, Any]) -> "ActionResult":
        return cls(success=True, result=result)

    @classmethod
    def failed(cls, error_message: str) -> "ActionResult":
        return cls(success=False, error_message=error_message)


class _TemplateValues(dict):
    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


def render_template(template: str, rule: AutomationRule, event: TagChangeEvent) -> str:
    values = _TemplateValues(
        rule_name=rule.name,
        export_id=event.export_id,
        tags=", ".join(sorted(event.new_tags)),
        added_tags=", ".join(sorted(event.added_tags)),
    )
    try:
        return template.format_map(values)
    except (ValueError, IndexError, KeyError, AttributeError, TypeError):
        # fields format_map cannot resolve leave the text as written
        return template


class GitHubClient(Protocol):
    def create_issue(
        self,
        repo: str,
        *,
        title: str,
        body: str,
        labels: list[str],
        assignees: list[str],
    ) -> dict[str, Any]: ...


class HttpGitHubClient:
    """Minimal GitHub REST client for issue creation."""

    def __init__(
        self,
        *,
        base_url: str,
        token: str | None,
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._token = token
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            transport=transport,
            headers={
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": "2022-11-28",
                "User-Agent": "sdr-ops-automation",
            },
        )

    @classmethod
    def from_settings(cls, transport: httpx.BaseTransport | None = None) -> "HttpGitHubClient":
        settings = get_settings()
        return cls(
            base_url=settings.github_api_url,
            token=settings.github_token,
            timeout=settings.github_timeout_seconds,
            transport=transport,
        )

    def create_issue(
        self,
        repo: str,
        *,
        title: str,
        body: str,
        labels: list[str],
        assignees: list[str],
    ) -> dict[str, Any]:
        if not self._token:
            raise ActionExecutionError("GitHub token is not configured")

        payload: dict[str, Any] = {"title": title, "body": body}
        if labels:
            payload["labels"] = labels
        if assignees:
            payload["assignees"] = assignees

        try:
            response = self._client.post(
                f"/repos/{repo}/issues",
                json=payload,
                headers={"Authorization": f"Bearer {self._token}"},
            )
        except httpx.HTTPError as exc:
            raise ActionExecutionError(f"GitHub request failed: {exc}") from exc

        if response.status_code >= 400:
            raise ActionExecutionError(f"GitHub API error {response.status_code}: {_github_error_message(response)}")

        try:
            return response.json()
        except ValueError as exc:
            raise ActionExecutionError("GitHub API returned a non-JSON response") from exc

    def close(self) -> None:
        self._client.close()


def _github_error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text[:500] or response.reason_phrase
    if isinstance(data, dict) and data.get("message"):
        return str(data["message"])
    return response.reason_phrase


class ActionHandler(Protocol):
    action_type: str

    def execute(self, session: Session, rule: AutomationRule, event: TagChangeEvent, log_id: uuid.UUID) -> dict[str, Any]: ...


class GithubIssueHandler:
    action_type = "github_issue"

    def __init__(self, client: GitHubClient | None = None) -> None:
        self._client = client

    @property
    def client(self) -> GitHubClient:
        if self._client is None:
            self._client = HttpGitHubClient.from_settings()
        return self._client

    def execute(self, session: Session, rule: AutomationRule, event: TagChangeEvent, log_id: uuid.UUID) -> dict[str, Any]:
        config = parse_action_config(rule.action_type, rule.action_config)

        title_template = config.title or "[SDR Ops] {rule_name}: export {export_id}"
        title = render_template(title_template, rule, event)
        body = self._build_body(rule, event, log_id)

        with tracer.start_as_current_span("automation.github.create_issue") as span:
            span.set_attribute("repo", config.repo)
            span.set_attribute("log_id", str(log_id))
            span.set_attribute("correlation_id", get_correlation_id() or "")
            issue = self.client.create_issue(
                config.repo,
                title=title,
                body=body,
                labels=config.labels,
                assignees=config.assignees,
            )

        issue_url = issue.get("html_url")
        issue_number = issue.get("number")
        if not issue_url or issue_number is None:
            raise ActionExecutionError("GitHub response did not include the created issue")
        return {"issue_url": issue_url, "issue_number": issue_number, "repo": config.repo}

    def _build_body(self, rule: AutomationRule, event: TagChangeEvent, log_id: uuid.UUID) -> str:
        lines = [
            f"Automation rule **{rule.name}** matched export `{event.export_id}`.",
            "",
            f"- Trigger mode: `{rule.trigger_mode}`",
            f"- Trigger tags: {', '.join(rule.trigger_tags)}",
            f"- Tags added: {', '.join(sorted(event.added_tags)) or '-'}",
            f"- Current tags: {', '.join(sorted(event.new_tags)) or '-'}",
        ]
        if rule.description:
            lines.extend(["", rule.description])
        lines.extend(["", f"<!-- {IDEMPOTENCY_MARKER}:{log_id} -->"])
        return "\n".join(lines)


@dataclass(slots=True)
class InAppNotificationHandler:
    side_effects: SideEffectRepository = SideEffectRepository()
    action_type: str = "in_app_notification"

    def execute(self, session: Session, rule: AutomationRule, event: TagChangeEvent, log_id: uuid.UUID) -> dict[str, Any]:
        existing = self.side_effects.notification_for_log(session, log_id)
        if existing is not None:
            return self._to_result(existing, deduplicated=True)

        config = parse_action_config(rule.action_type, rule.action_config)

        if config.notify_message:
            message = render_template(config.notify_message, rule, event)
        else:
            added = ", ".join(sorted(event.added_tags))
            message = f"Automation '{rule.name}' matched export {event.export_id} (added tags: {added})"

        notification = AutomationNotification(
            organization_id=rule.organization_id,
            rule_id=rule.id,
            log_id=log_id,
            export_id=event.export_id,
            severity=config.severity,
            message=message,
        )
        try:
            session.add(notification)
            session.flush()
        except IntegrityError:
            # a concurrent delivery of the same log inserted first
            session.rollback()
            existing = self.side_effects.notification_for_log(session, log_id)
            if existing is None:
                raise
            return self._to_result(existing, deduplicated=True)
        return self._to_result(notification)

    def _to_result(self, notification: AutomationNotification, deduplicated: bool = False) -> dict[str, Any]:
        result: dict[str, Any] = {
            "notification_id": str(notification.id),
            "severity": notification.severity,
            "message": notification.message,
        }
        if deduplicated:
            result["deduplicated"] = True
        return result


@dataclass(slots=True)
class EscalateReviewHandler:
    side_effects: SideEffectRepository = SideEffectRepository()
    action_type: str = "escalate_review"

    def execute(self, session: Session, rule: AutomationRule, event: TagChangeEvent, log_id: uuid.UUID) -> dict[str, Any]:
        existing = self.side_effects.review_flag_for_log(session, log_id)
        if existing is not None:
            return self._to_result(existing, deduplicated=True)

        config = parse_action_config(rule.action_type, rule.action_config)

        flag = ExportReviewFlag(
            organization_id=rule.organization_id,
            rule_id=rule.id,
            log_id=log_id,
            export_id=event.export_id,
            priority=config.priority,
            reason=f"Escalated by automation '{rule.name}' after tags: {', '.join(sorted(event.added_tags))}",
        )
        try:
            session.add(flag)
            session.flush()
        except IntegrityError:
            session.rollback()
            existing = self.side_effects.review_flag_for_log(session, log_id)
            if existing is None:
                raise
            return self._to_result(existing, deduplicated=True)
        return self._to_result(flag)

    def _to_result(self, flag: ExportReviewFlag, deduplicated: bool = False) -> dict[str, Any]:
        result: dict[str, Any] = {"review_flag_id": str(flag.id), "priority": flag.priority, "export_id": flag.export_id}
        if deduplicated:
            result["deduplicated"] = True
        return result


class ActionDispatcher:
    def __init__(self, handlers: list[ActionHandler] | None = None) -> None:
        resolved = handlers if handlers is not None else [GithubIssueHandler(), InAppNotificationHandler(), EscalateReviewHandler()]
        self._handlers: dict[str, ActionHandler] = {handler.action_type: handler for handler in resolved}

    def dispatch(self, session: Session, rule: AutomationRule, event: TagChangeEvent, log_id: uuid.UUID) -> ActionResult:
        handler = self._handlers.get(rule.action_type)
        if handler is None:
            return ActionResult.failed(f"unsupported action_type: {rule.action_type}")

        try:
            return ActionResult.ok(handler.execute(session, rule, event, log_id))
        except ValidationError as exc:
            return ActionResult.failed(f"invalid action_config: {exc.errors()[0].get('msg', 'validation failed')}")
        except ActionExecutionError as exc:
            logger.warning(
                "automation.action_failed",
                extra={
                    "organization_id": rule.organization_id,
                    "rule_id": str(rule.id),
                    "log_id": str(log_id),
                    "action_type": rule.action_type,
                    "error": str(exc),
                },
            )
            return ActionResult.failed(str(exc))
