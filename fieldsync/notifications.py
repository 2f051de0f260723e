"""
Alert delivery and the notification inbox.

The in-app row is written first and is the record that an alert exists. Push
and email run afterwards, each isolated from the other: a failing channel is
reported on the DispatchResult and never undoes what already succeeded.
"""

import asyncio
from datetime import datetime, time
from typing import Callable, Dict, List, Optional, Tuple

from .config import settings
from .database import utcnow
from .logging_config import get_logger
from .mailer import EmailClient
from .models import (
    AlertDecision,
    DispatchResult,
    Notification,
    NotificationBulkDismiss,
    NotificationBulkRead,
    NotificationPreferences,
    Severity,
)
from .push import PushResult, WebPushSender, build_payload
from .repositories import (
    NotificationRepository,
    PreferencesRepository,
    PushSubscriptionRepository,
    UserRepository,
)

logger = get_logger(__name__)

ALERT_TYPE = "low_index"
MAX_PAGE_SIZE = 100

TITLES = {
    Severity.MILD: "Low vegetation index",
    Severity.MODERATE: "Vegetation index warning",
    Severity.SEVERE: "Critical vegetation index",
}


def in_quiet_hours(preferences: NotificationPreferences, now: time) -> bool:
    """True when `now` falls in the quiet window; a window like 22:00-07:00 wraps midnight"""
    if not preferences.quiet_hours_enabled:
        return False
    start, end = preferences.quiet_hours_start, preferences.quiet_hours_end
    if start == end:
        return False
    if start < end:
        return start <= now < end
    return now >= start or now < end


def alert_message(decision: AlertDecision) -> str:
    return (
        f"Field {decision.field_name}: index {decision.value:.2f} "
        f"is below the alert threshold ({decision.threshold:.2f})"
    )


class NotificationDispatcher:
    def __init__(
        self,
        notifications: NotificationRepository,
        subscriptions: PushSubscriptionRepository,
        preferences: PreferencesRepository,
        users: UserRepository,
        push_sender: WebPushSender,
        email_client: EmailClient,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.notifications = notifications
        self.subscriptions = subscriptions
        self.preferences = preferences
        self.users = users
        self.push_sender = push_sender
        self.email_client = email_client
        self.clock = clock

    async def dispatch(self, decision: AlertDecision) -> DispatchResult:
        notification = self.notifications.create(
            user_id=decision.user_id,
            type=ALERT_TYPE,
            title=TITLES[decision.severity],
            message=alert_message(decision),
            field_id=decision.field_id,
            severity=decision.severity.value,
            data={
                "value": decision.value,
                "threshold": decision.threshold,
                "observation_date": decision.observation_date.isoformat(),
            },
            episode_start=decision.episode_start,
        )
        if notification is None:
            logger.info(
                "Alert already exists for breach episode",
                extra={"extra": {"field_id": decision.field_id, "episode_start": decision.episode_start}},
            )
            return DispatchResult(created=False)

        logger.info(
            "Alert created",
            extra={"extra": {
                "notification_id": notification.id,
                "field_id": decision.field_id,
                "severity": decision.severity.value,
            }},
        )
        result = DispatchResult(notification_id=notification.id, created=True)
        preferences = self.preferences.get(decision.user_id)

        await self._push(notification, decision, preferences, result)
        await self._email(decision, preferences, result)

        if result.partial_failure:
            logger.warning(
                "Alert delivered with channel failures",
                extra={"extra": {"notification_id": notification.id, "errors": result.errors}},
            )
        return result

    async def _push(
        self,
        notification: Notification,
        decision: AlertDecision,
        preferences: NotificationPreferences,
        result: DispatchResult,
    ):
        if not preferences.push_enabled:
            result.push_skipped_reason = "disabled"
            return
        if in_quiet_hours(preferences, self.clock().time()):
            result.push_skipped_reason = "quiet_hours"
            return
        if not self.push_sender.configured:
            result.push_skipped_reason = "not_configured"
            return

        subscriptions = self.subscriptions.list_for_user(decision.user_id)
        if not subscriptions:
            result.push_skipped_reason = "no_subscriptions"
            return

        severe = decision.severity == Severity.SEVERE
        payload = build_payload(
            title=notification.title,
            body=notification.message,
            notification_type=notification.type,
            notification_id=notification.id,
            field_id=decision.field_id,
            require_interaction=severe,
        )

        # One task per endpoint, each with its own deadline
        outcomes = await asyncio.gather(
            *(
                asyncio.wait_for(
                    self.push_sender.send(subscription, payload, urgent=severe),
                    timeout=settings.PUSH_TIMEOUT_SECONDS,
                )
                for subscription in subscriptions
            ),
            return_exceptions=True,
        )

        for subscription, outcome in zip(subscriptions, outcomes):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                reason = "timeout" if isinstance(outcome, asyncio.TimeoutError) else str(outcome)
                outcome = PushResult(success=False, error=reason)

            if outcome.success:
                self.subscriptions.touch(subscription.id)
                result.push_sent += 1
            elif outcome.gone:
                self.subscriptions.delete(subscription.id)
                result.push_removed += 1
                logger.info(
                    "Removed expired push subscription",
                    extra={"extra": {"subscription_id": subscription.id, "status_code": outcome.status_code}},
                )
            else:
                result.push_failed += 1
                result.errors.append(f"push {subscription.id}: {outcome.error}")
                logger.warning(
                    "Push delivery failed",
                    extra={"extra": {"subscription_id": subscription.id, "error": outcome.error}},
                )

    async def _email(self, decision: AlertDecision, preferences: NotificationPreferences, result: DispatchResult):
        if not preferences.email_enabled or not self.email_client.configured:
            return
        user = self.users.get(decision.user_id)
        if user is None or not user.email:
            return

        try:
            sent = await self.email_client.send_low_index_alert(user.email, decision, user.full_name)
        except Exception as e:
            logger.error(
                "Email rendering or delivery crashed",
                extra={"extra": {"field_id": decision.field_id, "error": str(e)}},
                exc_info=True,
            )
            result.email_error = str(e)
        else:
            if sent.success:
                result.email_sent = True
            else:
                result.email_error = sent.error

        if result.email_error:
            result.errors.append(f"email: {result.email_error}")


class NotificationService:
    """Inbox operations, always scoped to the requesting user"""

    def __init__(self, notifications: NotificationRepository):
        self.notifications = notifications

    def list(
        self, user_id: str, unread_only: bool = False, limit: int = 20, offset: int = 0
    ) -> Tuple[List[Notification], int]:
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        offset = max(0, offset)
        return self.notifications.list_for_user(user_id, unread_only, limit, offset)

    def unread_count(self, user_id: str) -> int:
        return self.notifications.unread_count(user_id)

    def mark_read(self, user_id: str, request: NotificationBulkRead) -> int:
        ids = None if request.mark_all else request.ids
        return self.notifications.mark_read(user_id, ids)

    def dismiss(self, user_id: str, request: NotificationBulkDismiss) -> int:
        ids = None if request.dismiss_all else request.ids
        return self.notifications.dismiss(user_id, ids)

    def summary(self, user_id: str, **kwargs) -> Dict:
        notifications, total = self.list(user_id, **kwargs)
        return {
            "notifications": [n.model_dump(mode="json") for n in notifications],
            "total": total,
            "unread_count": self.unread_count(user_id),
        }
