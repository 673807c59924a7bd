"""
Action Gateway - einziger Weg fuer Geraetebefehle.

Jeder Aufruf wird gegen eine feste Allowlist von "domain.service" geprueft,
bevor irgendein Netzwerkzugriff passiert. Abgelehnte und fehlgeschlagene
Aufrufe werden an den Aufrufer weitergereicht und im Audit-Log vermerkt.
Service-Aufrufe werden nie wiederholt.
"""

import logging
import time
from typing import Any, Optional

from .audit import AuditLedger
from .config import yaml_config
from .errors import HomeCoreError, ServiceNotAllowedError

logger = logging.getLogger(__name__)

ALLOWED_SERVICES = frozenset({
    "light.turn_on",
    "light.turn_off",
    "light.toggle",
    "switch.turn_on",
    "switch.turn_off",
    "switch.toggle",
    "climate.set_temperature",
    "climate.set_hvac_mode",
    "climate.turn_on",
    "climate.turn_off",
    "cover.open_cover",
    "cover.close_cover",
    "cover.stop_cover",
    "cover.set_cover_position",
    "fan.turn_on",
    "fan.turn_off",
    "fan.toggle",
    "fan.set_percentage",
    "media_player.turn_on",
    "media_player.turn_off",
    "media_player.toggle",
    "media_player.volume_set",
    "media_player.media_play",
    "media_player.media_pause",
    "media_player.media_stop",
    "scene.turn_on",
    "script.turn_on",
    "automation.trigger",
    "automation.turn_on",
    "automation.turn_off",
    "input_boolean.turn_on",
    "input_boolean.turn_off",
    "input_boolean.toggle",
    "input_number.set_value",
    "input_select.select_option",
    "input_text.set_value",
})


class ActionGateway:
    """Prueft, fuehrt aus und protokolliert Service-Aufrufe."""

    def __init__(self, ha_client, audit: Optional[AuditLedger] = None):
        cfg = yaml_config.get("gateway", {})
        denied = set(cfg.get("denied_services", []) or [])
        # Konfiguration kann nur einschraenken, nie erweitern
        self.allowed = ALLOWED_SERVICES - denied
        self.rollback_points = cfg.get("rollback_points", True)
        self._ha = ha_client
        self._audit = audit

    def is_allowed(self, domain: str, service: str) -> bool:
        return f"{domain}.{service}" in self.allowed

    async def _state_of(self, entity_id: Optional[str]) -> Optional[str]:
        """Aktueller State fuer das Audit-Log. Fehler -> None."""
        if not entity_id or not self.rollback_points:
            return None
        try:
            state = await self._ha.get_state(entity_id)
        except HomeCoreError as e:
            logger.debug("State von %s nicht lesbar: %s", entity_id, e)
            return None
        return state.get("state") if state else None

    async def call_service(
        self,
        domain: str,
        service: str,
        entity_id: Optional[str] = None,
        data: Optional[dict] = None,
        *,
        source: str = "ai_assistant",
        reason: str = "",
    ) -> dict[str, Any]:
        """Fuehrt einen erlaubten Service aus.

        Raises:
            ServiceNotAllowedError: Service nicht in der Allowlist (kein Netzwerkzugriff)
            UpstreamError / CallTimeoutError: HA hat den Aufruf abgelehnt oder nicht beantwortet
        """
        service_call = f"{domain}.{service}"
        if service_call not in self.allowed:
            logger.warning("Service abgelehnt: %s (Quelle: %s)", service_call, source)
            error = ServiceNotAllowedError(service_call)
            if self._audit:
                await self._audit.log_action(
                    "service_call", entity_id, service=service_call, data=data,
                    reason=reason, source=source, success=False, error_message=str(error),
                )
            raise error

        payload: dict[str, Any] = {}
        if entity_id:
            payload["entity_id"] = entity_id
        if data:
            payload.update(data)

        before = await self._state_of(entity_id)
        started = time.monotonic()
        try:
            result = await self._ha.call_service(domain, service, payload)
        except HomeCoreError as e:
            duration_ms = int((time.monotonic() - started) * 1000)
            logger.error("Service %s fuer %s fehlgeschlagen: %s", service_call, entity_id, e)
            if self._audit:
                await self._audit.log_action(
                    "service_call", entity_id, service=service_call, data=data,
                    reason=reason, source=source, before_state=before,
                    success=False, error_message=str(e), duration_ms=duration_ms,
                )
            raise
        duration_ms = int((time.monotonic() - started) * 1000)
        logger.info("Service %s ausgefuehrt (%s, %d ms)", service_call, entity_id or "-", duration_ms)

        if self._audit:
            after = await self._state_of(entity_id)
            log = await self._audit.log_action(
                "service_call", entity_id, service=service_call, data=data,
                reason=reason, source=source, before_state=before, after_state=after,
                success=True, duration_ms=duration_ms,
            )
            if log and before is not None:
                await self._audit.create_rollback_point(
                    log["id"],
                    {entity_id: {"state": before, "timestamp": log["created_at"]}},
                    f"Before {service_call} on {entity_id}",
                )

        return {
            "success": True,
            "service": service_call,
            "entity_id": entity_id,
            "data": data,
            "result": result,
        }
