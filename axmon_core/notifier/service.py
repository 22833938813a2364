import logging
from typing import Any, Dict, List, Optional

import httpx

from ..config import settings
from ..service_manager.base_service import BaseService
from .channels import TeamsChannel, WebhookChannel

logger = logging.getLogger("axmon-core.notifier")


class NotifierService(BaseService):
    """
    Notifier Service.
    Responsibility: Fan alerts, incident digests and remediation messages out
    to every configured channel. Delivery is best-effort: a failing channel
    is logged and never surfaces to the caller.
    """
    def __init__(self, channels: Optional[List] = None, http_client: Optional[httpx.AsyncClient] = None):
        super().__init__("NotifierService")
        self._running = False
        self.channels = channels
        self.http_client = http_client
        self._owns_client = False

    async def start(self):
        self._running = True
        if self.channels is None:
            if self.http_client is None:
                self.http_client = httpx.AsyncClient(timeout=settings.NOTIFICATION_TIMEOUT_SECONDS)
                self._owns_client = True
            self.channels = self._channels_from_settings(self.http_client)
        logger.info(f"NotifierService started with channels: {[c.name for c in self.channels] or 'none'}")

    async def stop(self):
        self._running = False
        if self._owns_client and self.http_client:
            await self.http_client.aclose()
        logger.info("NotifierService stopped.")

    @staticmethod
    def _channels_from_settings(http_client: httpx.AsyncClient) -> List:
        channels = []
        if settings.WEBHOOK_URL:
            channels.append(WebhookChannel(settings.WEBHOOK_URL, http_client))
        else:
            logger.warning("WEBHOOK_URL not configured, skipping webhook channel")
        if settings.TEAMS_WEBHOOK_URL:
            channels.append(TeamsChannel(settings.TEAMS_WEBHOOK_URL, http_client))
        else:
            logger.warning("TEAMS_WEBHOOK_URL not configured, skipping Teams channel")
        return channels

    async def notify_alert(self, alert):
        for channel in self.channels or []:
            try:
                await channel.send_alert(alert)
                logger.info(f"{channel.name} notification sent for alert {alert.alert_key}")
            except Exception as e:
                logger.error(f"Error sending {channel.name} notification for alert {alert.alert_key}: {e}", exc_info=True)

    async def notify_incident(self, incident, alerts: List):
        for channel in self.channels or []:
            try:
                await channel.send_incident_digest(incident, alerts)
                logger.info(f"{channel.name} digest sent for incident {incident.correlation_key}")
            except Exception as e:
                logger.error(
                    f"Error sending {channel.name} digest for incident {incident.correlation_key}: {e}", exc_info=True
                )

    async def notify_escalation(self, alert, level: int, recipients: str, message: str, channel: str) -> bool:
        """
        Send one escalation tier through the named channel.
        False when the channel is not configured; delivery errors propagate
        so the caller can record them on the escalation.
        """
        target = next((c for c in self.channels or [] if c.name == channel), None)
        if target is None:
            logger.debug(f"Escalation channel '{channel}' not configured")
            return False
        await target.send_escalation(alert, level, recipients, message)
        logger.info(f"{target.name} escalation (level {level}) sent for alert {alert.alert_key}")
        return True

    async def send_notification(self, message: str, channel: Optional[str], context: Dict[str, Any]) -> bool:
        """
        Remediation `send_notification` capability.
        Returns True when at least one targeted channel accepted the message.
        """
        targets = [c for c in self.channels or [] if channel is None or c.name == channel]
        if not targets:
            logger.warning(f"No notification channel matches '{channel or 'any'}'")
            return False

        delivered = False
        for target in targets:
            try:
                await target.send_message(message, context)
                delivered = True
            except Exception as e:
                logger.error(f"Error sending remediation message via {target.name}: {e}", exc_info=True)
        return delivered
