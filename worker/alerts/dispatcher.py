"""
Notification Dispatcher: push payload construction and delivery.

Builds the flood-alert push message for a fired ``AlertDecision``, hands it
to a ``PushTransport``, and on success records the dispatch through the
``DeduplicationStore``.

Key Design Decisions:
    - **Never raises**: transport failures are returned as
      ``SendResult(success=False)`` so the orchestrator can count them.
    - **Record after send**: a failed record write does not downgrade a
      successful send (the store logs and swallows it).
    - **String-only data block**: FCM requires every data value to be a
      string, so numbers are stringified when the payload is built.
"""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from collections import deque
from typing import Any

from worker.alerts.logic.dedup import DeduplicationStore
from worker.alerts.logic.units import display_round
from worker.alerts.models import AlertDecision, PushMessage, SendResult, User

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logger = logging.getLogger(__name__)

ALERT_TYPE = "flood_alert"
ANDROID_ICON = "ic_notification"
ANDROID_COLOR = "#FF6B35"


# ---------------------------------------------------------------------------
# Payload Construction
# ---------------------------------------------------------------------------


def build_push_message(
    user: User, display_name: str, decision: AlertDecision
) -> PushMessage:
    """Build the push message for ``decision``.

    Title and body use rounded values in the user's preferred unit; the data
    block additionally carries the raw peak (CFS) and scaled threshold (CMS).
    """
    unit_label = decision.display_unit.value.upper()
    forecast_flow = display_round(decision.display_peak)
    threshold = display_round(decision.display_threshold)

    return PushMessage(
        token=user.push_token or "",
        title=f"🌊 {display_name} Flood Alert",
        body=(
            f"Forecast: {forecast_flow} {unit_label} "
            f"(exceeds {decision.crossed_label} flood threshold)"
        ),
        data={
            "type": ALERT_TYPE,
            "reachId": decision.location_id,
            "riverName": display_name,
            "forecastFlow": str(forecast_flow),
            "threshold": str(threshold),
            "returnPeriod": decision.crossed_label,
            "flowUnit": decision.display_unit.value,
            "peakFlowCfs": repr(decision.peak_flow),
            "thresholdCms": repr(decision.threshold_flow),
        },
    )


# ---------------------------------------------------------------------------
# Transports
# ---------------------------------------------------------------------------


class PushTransport(ABC):
    """Delivers a ``PushMessage`` to a device."""

    @abstractmethod
    async def send(self, message: PushMessage) -> str:
        """Send ``message``; return the provider message id.

        Raises on delivery failure.
        """
        ...


class SnsPushTransport(PushTransport):
    """AWS SNS mobile push.

    Registers the device token on the platform application (idempotent for
    an unchanged token) and publishes a per-platform JSON message. boto3 is
    synchronous, so calls run in a worker thread.

    Parameters
    ----------
    sns_client : boto3 SNS client
        Pre-configured client.
    platform_application_arn : str
        ARN of the FCM platform application.
    """

    def __init__(self, sns_client: Any, platform_application_arn: str) -> None:
        self._sns = sns_client
        self._platform_application_arn = platform_application_arn

    @staticmethod
    def _message_structure(message: PushMessage) -> str:
        gcm = {
            "notification": {
                "title": message.title,
                "body": message.body,
                "icon": ANDROID_ICON,
                "color": ANDROID_COLOR,
            },
            "data": message.data,
        }
        apns = {
            "aps": {
                "alert": {"title": message.title, "body": message.body},
                "badge": 1,
                "sound": "default",
            },
            **message.data,
        }
        return json.dumps(
            {
                "default": message.body,
                "GCM": json.dumps(gcm),
                "APNS": json.dumps(apns),
            }
        )

    def _send_sync(self, message: PushMessage) -> str:
        endpoint = self._sns.create_platform_endpoint(
            PlatformApplicationArn=self._platform_application_arn,
            Token=message.token,
        )
        response = self._sns.publish(
            TargetArn=endpoint["EndpointArn"],
            MessageStructure="json",
            Message=self._message_structure(message),
        )
        return response.get("MessageId", "")

    async def send(self, message: PushMessage) -> str:
        return await asyncio.to_thread(self._send_sync, message)


class LoggingPushTransport(PushTransport):
    """Logs messages instead of sending them. Used in local development.

    Only the most recent ``history`` messages are kept in ``sent``.
    """

    def __init__(self, history: int = 100) -> None:
        self.sent: deque[PushMessage] = deque(maxlen=history)
        self.count = 0

    async def send(self, message: PushMessage) -> str:
        self.count += 1
        self.sent.append(message)
        logger.info(
            "[push] %s | %s | data=%s", message.title, message.body, message.data
        )
        return f"local-{self.count}"


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------


class NotificationDispatcher:
    """Builds, sends and records flood-alert notifications.

    Parameters
    ----------
    transport : PushTransport
        Delivery mechanism.
    dedup : DeduplicationStore
        Receives a record for every successful send.
    """

    def __init__(self, transport: PushTransport, dedup: DeduplicationStore) -> None:
        self._transport = transport
        self._dedup = dedup

    async def dispatch(
        self, user: User, display_name: str, decision: AlertDecision
    ) -> SendResult:
        """Send the alert for ``decision`` to ``user``."""
        if not user.push_token:
            return SendResult(success=False, error="user has no push token")

        try:
            message = build_push_message(user, display_name, decision)
            message_id = await self._transport.send(message)
        except Exception as exc:
            logger.error(
                "Failed to send alert to user=%s for location=%s: %s",
                user.id,
                decision.location_id,
                exc,
            )
            return SendResult(success=False, error=str(exc))

        await self._dedup.record(
            user.id, decision.location_id, decision, display_name
        )

        logger.info(
            "Alert sent to user=%s for %s (location=%s, %s %s, %s)",
            user.id,
            display_name,
            decision.location_id,
            message.data["forecastFlow"],
            decision.display_unit.value.upper(),
            decision.crossed_label,
        )
        return SendResult(success=True, message_id=message_id or "")
