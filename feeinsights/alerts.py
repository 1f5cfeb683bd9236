"""Webhook alerts for congestion and engine health transitions."""

import json
from datetime import datetime, timezone
from http.client import HTTPException, HTTPSConnection, HTTPConnection
from urllib.parse import urlparse
from typing import Dict

from .constants import DEFAULT_HTTP_TIMEOUT_SECS
from .logging import get_logger
from .types import (
    CongestionState,
    EngineHealth,
    EngineStatus,
    FeeSnapshot,
    format_timestamp,
)

logger = get_logger(__name__)

_NEVER = datetime.min.replace(tzinfo=timezone.utc)


class AlertManager:
    """Posts state-transition alerts, with a quiet period per alert kind."""

    def __init__(self, webhook_url: str, min_change_secs: int):
        """
        Initialize alert manager.

        Args:
            webhook_url: Webhook URL for alerts (empty string to disable)
            min_change_secs: Minimum seconds between alerts of the same kind
        """
        self.webhook_url = webhook_url
        self.min_change_secs = min_change_secs
        self._last_congestion = {"state": CongestionState.NORMAL, "ts": _NEVER}
        self._last_health = {"health": EngineHealth.HEALTHY, "ts": _NEVER}
        self.sent = 0

    def post_webhook(self, payload: Dict) -> None:
        """
        Post payload to webhook URL. Failures are logged, never raised.

        Args:
            payload: Dictionary to send as JSON
        """
        self.sent += 1
        if not self.webhook_url:
            logger.debug(f"No webhook configured, payload: {json.dumps(payload)}")
            return

        url = urlparse(self.webhook_url)
        conn_cls = HTTPSConnection if url.scheme == "https" else HTTPConnection
        port = url.port or (443 if url.scheme == "https" else 80)

        conn = conn_cls(url.hostname, port, timeout=DEFAULT_HTTP_TIMEOUT_SECS)
        path = url.path or "/"
        if url.query:
            path += "?" + url.query

        headers = {"Content-Type": "application/json"}
        try:
            conn.request("POST", path, body=json.dumps(payload), headers=headers)
            resp = conn.getresponse()
            _ = resp.read()
            if resp.status >= 400:
                logger.warning(f"Webhook returned status {resp.status}: {resp.reason}")
            else:
                logger.debug(f"Webhook posted successfully: {json.dumps(payload)}")
        except (OSError, HTTPException, ValueError) as e:
            logger.error(f"Failed to post webhook: {e}", exc_info=True)
        finally:
            conn.close()

    def _quieted(self, last_ts: datetime, now: datetime) -> bool:
        return (now - last_ts).total_seconds() >= self.min_change_secs

    def maybe_alert_congestion(self, snapshot: FeeSnapshot, now: datetime) -> bool:
        """
        Alert when the snapshot's congestion state differs from the last alerted one.

        Returns:
            True if an alert was sent
        """
        state = snapshot.congestion
        if state is self._last_congestion["state"]:
            return False
        if not self._quieted(self._last_congestion["ts"], now):
            return False

        logger.info(f"Congestion state changed to {state.value}, sending alert")
        self.post_webhook({
            "type": "fee_congestion_change",
            "state": state.value,
            "snapshot": snapshot.to_dict(),
            "ts": format_timestamp(now),
        })
        self._last_congestion = {"state": state, "ts": now}
        return True

    def maybe_alert_health(self, status: EngineStatus, now: datetime) -> bool:
        """
        Alert when engine health flips between healthy and degraded.

        Returns:
            True if an alert was sent
        """
        if status.health is self._last_health["health"]:
            return False
        if not self._quieted(self._last_health["ts"], now):
            return False

        logger.info(f"Engine health changed to {status.health.value}, sending alert")
        self.post_webhook({
            "type": "engine_health_change",
            "status": status.to_dict(),
            "ts": format_timestamp(now),
        })
        self._last_health = {"health": status.health, "ts": now}
        return True
