from sdr_ops.automation.api import inbox_router, logs_router, rules_router, trigger_router
from sdr_ops.automation.matcher import TagChangeEvent, TriggerMatcher, match_rules, rule_matches
from sdr_ops.automation.models import AutomationLog, AutomationNotification, AutomationRule, ExportReviewFlag
from sdr_ops.automation.schemas import (
    AutomationLogDetail,
    AutomationLogPage,
    AutomationLogRead,
    AutomationRuleCreate,
    AutomationRuleRead,
    AutomationRuleUpdate,
    TriggerRequest,
    TriggerResponse,
)
from sdr_ops.automation.service import (
    ActorUser,
    AutomationInboxService,
    AutomationLogService,
    AutomationRuleService,
    AutomationTriggerService,
    inbox_service,
    log_service,
    rule_service,
    trigger_service,
)

__all__ = [
    "trigger_router",
    "rules_router",
    "logs_router",
    "inbox_router",
    "TagChangeEvent",
    "TriggerMatcher",
    "match_rules",
    "rule_matches",
    "AutomationRule",
    "AutomationLog",
    "AutomationNotification",
    "ExportReviewFlag",
    "AutomationRuleCreate",
    "AutomationRuleRead",
    "AutomationRuleUpdate",
    "AutomationLogRead",
    "AutomationLogDetail",
    "AutomationLogPage",
    "TriggerRequest",
    "TriggerResponse",
    "ActorUser",
    "AutomationRuleService",
    "AutomationTriggerService",
    "AutomationLogService",
    "AutomationInboxService",
    "rule_service",
    "trigger_service",
    "log_service",
    "inbox_service",
]
