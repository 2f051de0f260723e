import asyncio
import json
from typing import Dict, Optional

from pywebpush import WebPushException, webpush

from .config import settings
from .logging_config import get_logger
from .models import PushSubscription

logger = get_logger(__name__)

# Push services answer these when the subscription no longer exists
GONE_STATUS_CODES = (404, 410)


class PushResult:
    def __init__(self, success: bool, gone: bool = False, status_code: Optional[int] = None, error: Optional[str] = None):
        self.success = success
        self.gone = gone
        self.status_code = status_code
        self.error = error

    def __repr__(self):
        return f"PushResult(success={self.success}, gone={self.gone}, status_code={self.status_code})"


def build_payload(
    title: str,
    body: str,
    notification_type: str,
    notification_id: Optional[str] = None,
    field_id: Optional[str] = None,
    require_interaction: bool = False,
) -> Dict:
    """Payload understood by the browser service worker"""
    return {
        "title": title,
        "body": body,
        "icon": "/icons/icon-192x192.png",
        "badge": "/icons/badge-72x72.png",
        "tag": f"{notification_type}-{field_id or 'general'}",
        "requireInteraction": require_interaction,
        "data": {
            "notification_id": notification_id,
            "type": notification_type,
            "field_id": field_id,
            "url": f"/fields/{field_id}" if field_id else "/dashboard",
        },
    }


class WebPushSender:
    """Signs and encrypts Web Push messages with the VAPID key pair"""

    @property
    def configured(self) -> bool:
        return settings.push_configured

    def _send_sync(self, subscription: PushSubscription, payload: Dict, urgent: bool) -> PushResult:
        try:
            webpush(
                subscription_info=subscription.subscription_info(),
                data=json.dumps(payload),
                vapid_private_key=settings.VAPID_PRIVATE_KEY,
                # pywebpush adds "aud" to the claims dict it is given
                vapid_claims={"sub": settings.VAPID_SUBJECT},
                ttl=settings.PUSH_TTL_SECONDS,
                timeout=settings.PUSH_TIMEOUT_SECONDS,
                headers={"Urgency": "high" if urgent else "normal"},
            )
        except WebPushException as e:
            status_code = e.response.status_code if e.response is not None else None
            return PushResult(
                success=False,
                gone=status_code in GONE_STATUS_CODES,
                status_code=status_code,
                error=str(e),
            )
        return PushResult(success=True, status_code=201)

    async def send(self, subscription: PushSubscription, payload: Dict, urgent: bool = False) -> PushResult:
        # pywebpush is blocking (requests); keep it off the event loop
        return await asyncio.to_thread(self._send_sync, subscription, payload, urgent)


# Global push sender instance
push_sender = WebPushSender()
