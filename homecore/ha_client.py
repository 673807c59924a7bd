"""
Home Assistant API Client - State-Abfrage und Service-Aufrufe.

Features:
  - Connection Pooling via shared aiohttp.ClientSession
  - Begrenzte Timeouts fuer jeden Request
  - Lesende Requests: ein Wiederholungsversuch mit Jitter
  - Service-Aufrufe: nie wiederholt (nicht idempotent)
  - Nicht-2xx Antworten werden als UpstreamError mit Status und Body gemeldet
"""

import asyncio
import logging
import random
from typing import Any, Optional

import aiohttp

from .config import settings
from .constants import HA_READ_RETRIES, HA_RETRY_JITTER_MAX, HA_SESSION_TIMEOUT
from .errors import CallTimeoutError, ConfigurationError, UpstreamError

logger = logging.getLogger(__name__)


class HomeAssistantClient:
    """Client fuer die Home Assistant REST API."""

    def __init__(self, url: Optional[str] = None, token: Optional[str] = None,
                 timeout: float = HA_SESSION_TIMEOUT):
        self.ha_url = (url if url is not None else settings.ha_url).rstrip("/")
        self.ha_token = token if token is not None else settings.ha_token
        self._timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None
        self._session_lock: asyncio.Lock = asyncio.Lock()

    @property
    def _ha_headers(self) -> dict:
        if not self.ha_token:
            raise ConfigurationError("Home Assistant token is not configured")
        return {
            "Authorization": f"Bearer {self.ha_token}",
            "Content-Type": "application/json",
        }

    async def _get_session(self) -> aiohttp.ClientSession:
        """Gibt die shared aiohttp Session zurueck (lazy init unter Lock)."""
        async with self._session_lock:
            if self._session is None or self._session.closed:
                timeout = aiohttp.ClientTimeout(total=self._timeout)
                self._session = aiohttp.ClientSession(timeout=timeout)
            return self._session

    async def close(self) -> None:
        """Schliesst die HTTP Session."""
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None

    # ----- Home Assistant API -----

    async def get_states(self) -> list[dict]:
        """Alle Entity-States von HA holen."""
        result = await self._get_ha("/api/states")
        return result if isinstance(result, list) else []

    async def get_state(self, entity_id: str) -> Optional[dict]:
        """State einer einzelnen Entity (None wenn HA sie nicht kennt)."""
        try:
            return await self._get_ha(f"/api/states/{entity_id}")
        except UpstreamError as e:
            if e.status == 404:
                return None
            raise

    async def call_service(self, domain: str, service: str, data: Optional[dict] = None) -> Any:
        """
        HA Service aufrufen (z.B. light.turn_off).

        Wird NICHT wiederholt: ein Timeout nach dem Senden kann bedeuten
        dass das Geraet bereits geschaltet hat.

        Returns:
            JSON-Antwort von HA (Liste geaenderter States)
        """
        return await self._post_ha(f"/api/services/{domain}/{service}", data or {})

    async def is_available(self) -> bool:
        """Prueft ob HA erreichbar ist."""
        try:
            result = await self._get_ha("/api/")
        except (UpstreamError, CallTimeoutError, ConfigurationError) as e:
            logger.debug("HA nicht erreichbar: %s", e)
            return False
        return isinstance(result, dict) and "message" in result

    # ----- Interne HTTP Methoden -----

    async def _get_ha(self, path: str) -> Any:
        """GET-Request mit einem Wiederholungsversuch bei Netzwerk- und Server-Fehlern."""
        headers = self._ha_headers
        session = await self._get_session()
        attempts = HA_READ_RETRIES + 1
        last_error: Optional[Exception] = None

        for attempt in range(attempts):
            try:
                async with session.get(f"{self.ha_url}{path}", headers=headers) as resp:
                    if 200 <= resp.status < 300:
                        return await resp.json()
                    body = await resp.text()
                    # Client-Fehler: nicht wiederholen
                    if 400 <= resp.status < 500:
                        logger.warning(
                            "HA GET %s -> %d (Client-Fehler): %s",
                            path, resp.status, body[:200],
                        )
                        raise UpstreamError(resp.status, body, source="Home Assistant API")
                    logger.warning(
                        "HA GET %s -> %d (Versuch %d/%d): %s",
                        path, resp.status, attempt + 1, attempts, body[:200],
                    )
                    last_error = UpstreamError(resp.status, body, source="Home Assistant API")
            except aiohttp.ClientError as e:
                last_error = UpstreamError(0, str(e), source="Home Assistant API")
                logger.warning(
                    "HA GET %s fehlgeschlagen (Versuch %d/%d): %s",
                    path, attempt + 1, attempts, e,
                )
            except asyncio.TimeoutError:
                last_error = CallTimeoutError(f"Home Assistant GET {path} timed out")
                logger.warning(
                    "HA GET %s Timeout (Versuch %d/%d)",
                    path, attempt + 1, attempts,
                )

            if attempt < attempts - 1:
                await asyncio.sleep(random.uniform(0, HA_RETRY_JITTER_MAX))

        logger.error("HA GET %s endgueltig fehlgeschlagen: %s", path, last_error)
        raise last_error

    async def _post_ha(self, path: str, data: dict) -> Any:
        """POST-Request ohne Wiederholung."""
        headers = self._ha_headers
        session = await self._get_session()
        try:
            async with session.post(f"{self.ha_url}{path}", headers=headers, json=data) as resp:
                if 200 <= resp.status < 300:
                    try:
                        return await resp.json()
                    except (aiohttp.ContentTypeError, ValueError):
                        return await resp.text()
                body = await resp.text()
                logger.warning("HA POST %s -> %d: %s", path, resp.status, body[:200])
                raise UpstreamError(resp.status, body, source="Home Assistant API")
        except aiohttp.ClientError as e:
            logger.error("HA POST %s fehlgeschlagen: %s", path, e)
            raise UpstreamError(0, str(e), source="Home Assistant API") from e
        except asyncio.TimeoutError as e:
            logger.error("HA POST %s Timeout", path)
            raise CallTimeoutError(f"Home Assistant POST {path} timed out") from e
