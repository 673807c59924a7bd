"""
LLM Client - Text-Modell fuer den Conversational Controller.

Nimmt ein Paar (System-Prompt, Benutzer-Nachricht) entgegen und liefert
reinen Text. Zwei Anbieter:
  - ollama: lokales Modell, hartes Zeitlimit (Standard 10s)
  - openai: OpenAI-kompatible Chat-Completions API, braucht einen API-Key

Fehler werden nicht in Text verwandelt, sondern als HomeCoreError geworfen.
Die Fallback-Antwort fuer den Benutzer erzeugt der Controller.
"""

import asyncio
import logging
import re
from typing import Optional

import aiohttp

from .config import settings, yaml_config
from .constants import LLM_TIMEOUT_LOCAL, LLM_TIMEOUT_REMOTE
from .errors import CallTimeoutError, ConfigurationError, UpstreamError

logger = logging.getLogger(__name__)

PROVIDERS = ("ollama", "openai")

# Manche lokalen Modelle liefern Reasoning-Bloecke mit
_THINK_PATTERN = re.compile(r"<think>[\s\S]*?</think>\s*", re.DOTALL)


def strip_think_tags(text: str) -> str:
    """Entfernt <think>...</think> Bloecke aus einer Modell-Antwort."""
    if not text or "<think>" not in text:
        return text
    cleaned = _THINK_PATTERN.sub("", text)
    # Nicht geschlossener Block: alles ab <think> verwerfen
    if "<think>" in cleaned:
        cleaned = cleaned.split("<think>", 1)[0]
    return cleaned.strip()


class LLMClient:
    """Schlanker Client fuer Ollama und OpenAI-kompatible Endpunkte."""

    def __init__(self, provider: Optional[str] = None, base_url: Optional[str] = None,
                 model: Optional[str] = None, api_key: Optional[str] = None):
        cfg = yaml_config.get("llm", {})
        self.provider = provider or settings.llm_provider
        if self.provider not in PROVIDERS:
            raise ConfigurationError(f"Unknown LLM provider: {self.provider}")
        self.base_url = (base_url or settings.llm_url).rstrip("/")
        self.model = model or settings.llm_model
        self.api_key = api_key if api_key is not None else settings.llm_api_key
        default_timeout = LLM_TIMEOUT_LOCAL if self.provider == "ollama" else LLM_TIMEOUT_REMOTE
        self.timeout = float(cfg.get("timeout_seconds", default_timeout))
        self.temperature = float(cfg.get("temperature", 0.7))
        self.max_tokens = int(cfg.get("max_tokens", 1000))
        self._session: Optional[aiohttp.ClientSession] = None
        self._session_lock: asyncio.Lock = asyncio.Lock()

    async def _get_session(self) -> aiohttp.ClientSession:
        async with self._session_lock:
            if self._session is None or self._session.closed:
                self._session = aiohttp.ClientSession()
            return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None

    def _request(self, system_prompt: str, user_message: str) -> tuple[str, dict, dict]:
        messages = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_message},
        ]
        if self.provider == "ollama":
            return (
                f"{self.base_url}/api/chat",
                {},
                {
                    "model": self.model,
                    "messages": messages,
                    "stream": False,
                    "options": {"temperature": self.temperature, "num_predict": self.max_tokens},
                },
            )
        if not self.api_key:
            raise ConfigurationError("LLM API key is not configured")
        return (
            f"{self.base_url}/v1/chat/completions",
            {"Authorization": f"Bearer {self.api_key}"},
            {
                "model": self.model,
                "messages": messages,
                "temperature": self.temperature,
                "max_tokens": self.max_tokens,
            },
        )

    @staticmethod
    def _extract_text(provider: str, result: dict) -> str:
        if provider == "ollama":
            return (result.get("message") or {}).get("content", "")
        choices = result.get("choices") or []
        if not choices:
            return ""
        return (choices[0].get("message") or {}).get("content", "")

    async def _post(self, url: str, headers: dict, payload: dict) -> dict:
        session = await self._get_session()
        async with session.post(url, json=payload, headers=headers) as resp:
            if not 200 <= resp.status < 300:
                body = await resp.text()
                logger.error("LLM Fehler %d: %s", resp.status, body[:200])
                raise UpstreamError(resp.status, body, source="LLM API")
            try:
                return await resp.json()
            except (ValueError, aiohttp.ContentTypeError) as e:
                logger.error("LLM Antwort ist kein JSON: %s", e)
                raise UpstreamError(resp.status, f"invalid JSON response: {e}", source="LLM API") from e

    async def complete(self, system_prompt: str, user_message: str) -> str:
        """
        Schickt System-Prompt und Nachricht an das Modell.

        Returns:
            Antworttext (ohne Think-Bloecke)

        Raises:
            ConfigurationError: API-Key fehlt
            UpstreamError: Nicht-2xx oder Netzwerkfehler
            CallTimeoutError: Zeitlimit ueberschritten
        """
        url, headers, payload = self._request(system_prompt, user_message)
        try:
            result = await asyncio.wait_for(self._post(url, headers, payload), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            logger.error("LLM Timeout nach %.0fs (%s, %s)", self.timeout, self.provider, self.model)
            raise CallTimeoutError(f"LLM request timed out after {self.timeout:.0f}s") from e
        except aiohttp.ClientError as e:
            logger.error("LLM nicht erreichbar: %s", e)
            raise UpstreamError(0, str(e), source="LLM API") from e
        try:
            text = self._extract_text(self.provider, result)
        except (AttributeError, TypeError, KeyError, IndexError) as e:
            logger.error("LLM Antwort hat unerwartetes Format: %s", str(result)[:200])
            raise UpstreamError(200, f"unexpected response shape: {e}", source="LLM API") from e
        if not isinstance(text, str):
            raise UpstreamError(200, "response content is not text", source="LLM API")
        return strip_think_tags(text)

    async def is_available(self) -> bool:
        """Prueft ob der Endpunkt antwortet."""
        path = "/api/tags" if self.provider == "ollama" else "/v1/models"
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        try:
            session = await self._get_session()
            async with session.get(
                f"{self.base_url}{path}", headers=headers,
                timeout=aiohttp.ClientTimeout(total=5),
            ) as resp:
                return resp.status == 200
        except (aiohttp.ClientError, asyncio.TimeoutError):
            return False
