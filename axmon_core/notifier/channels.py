import logging
from typing import Any, Dict, List

import httpx

logger = logging.getLogger("axmon-core.notifier.channels")


class WebhookChannel:
    """Posts alerts, incident digests and free-form messages as JSON to a generic webhook."""
    name = "webhook"

    def __init__(self, url: str, http_client: httpx.AsyncClient):
        self.url = url
        self.http_client = http_client

    async def send_alert(self, alert):
        await self._post(self.alert_payload(alert))

    async def send_incident_digest(self, incident, alerts: List):
        await self._post(self.incident_payload(incident, alerts))

    async def send_message(self, message: str, context: Dict[str, Any]):
        await self._post(self.message_payload(message, context))

    async def send_escalation(self, alert, level: int, recipients: str, message: str):
        await self._post(self.escalation_payload(alert, level, recipients, message))

    def alert_payload(self, alert) -> dict:
        return {
            "kind": "alert",
            "severity": alert.severity,
            "title": f"[{alert.severity}] {alert.type}",
            "message": alert.message,
            "details": alert.to_dict(),
        }

    def incident_payload(self, incident, alerts: List) -> dict:
        return {
            "kind": "incident",
            "severity": incident.severity,
            "title": incident.title,
            "message": incident.correlation_reason,
            "details": {
                **incident.to_dict(),
                "alerts": [a.alert_key for a in alerts],
            },
        }

    def message_payload(self, message: str, context: Dict[str, Any]) -> dict:
        return {"kind": "remediation", "message": message, "details": context}

    def escalation_payload(self, alert, level: int, recipients: str, message: str) -> dict:
        return {
            "kind": "escalation",
            "severity": alert.severity,
            "title": f"Alert escalation (Level {level}): {alert.type}",
            "message": message,
            "recipients": recipients,
            "details": alert.to_dict(),
        }

    async def _post(self, payload: dict):
        response = await self.http_client.post(self.url, json=payload)
        response.raise_for_status()
        logger.debug(f"{self.name} notification delivered ({response.status_code})")


class TeamsChannel(WebhookChannel):
    """Microsoft Teams incoming webhook (MessageCard format)."""
    name = "teams"

    _COLOR_MAP = {
        "Critical": "D13438",
        "Warning": "FFB900",
        "Info": "0078D7",
    }

    def alert_payload(self, alert) -> dict:
        return self._card(
            title=f"[{alert.severity}] {alert.type}",
            text=alert.message,
            severity=alert.severity,
            facts={
                "Alert": alert.alert_key,
                "Severity": alert.severity,
                "Created By": alert.created_by or "System",
                "Timestamp": alert.timestamp.isoformat() if alert.timestamp else "",
            },
        )

    def incident_payload(self, incident, alerts: List) -> dict:
        return self._card(
            title=incident.title,
            text=incident.description,
            severity=incident.severity,
            facts={
                "Incident": incident.correlation_key,
                "Reason": incident.correlation_reason,
                "Confidence": f"{incident.confidence_score}%",
                "Alerts": ", ".join(a.alert_key for a in alerts),
            },
        )

    def message_payload(self, message: str, context: Dict[str, Any]) -> dict:
        rule = context.get("rule", {})
        return self._card(
            title="Automated remediation",
            text=message,
            severity="Info",
            facts={"Rule": rule.get("name", ""), "Execution": context.get("execution", {}).get("id", "")},
        )

    def escalation_payload(self, alert, level: int, recipients: str, message: str) -> dict:
        return self._card(
            title=f"Alert Escalation (Level {level}): {alert.type}",
            text=message,
            severity=alert.severity,
            facts={
                "Alert": alert.alert_key,
                "Severity": alert.severity,
                "Level": level,
                "Recipients": recipients,
            },
        )

    def _card(self, title: str, text: str, severity: str, facts: Dict[str, str]) -> dict:
        return {
            "@type": "MessageCard",
            "@context": "https://schema.org/extensions",
            "themeColor": self._COLOR_MAP.get(severity, "0078D7"),
            "summary": title,
            "sections": [
                {
                    "activityTitle": title,
                    "text": text,
                    "facts": [{"name": k, "value": str(v)} for k, v in facts.items()],
                }
            ],
        }
