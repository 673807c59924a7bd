"""
Fehler-Taxonomie fuer homecore.

Alle Komponenten werfen nur Unterklassen von HomeCoreError nach aussen,
damit die HTTP-Schicht sie gezielt auf Status-Codes abbilden kann.
"""

from typing import Optional


class HomeCoreError(Exception):
    """Basisklasse aller homecore-Fehler."""


class ConfigurationError(HomeCoreError):
    """Fehlende oder ungueltige Konfiguration (z.B. kein Token)."""


class ServiceNotAllowedError(ConfigurationError):
    """Service-Aufruf nicht in der Allowlist."""

    def __init__(self, service: str):
        self.service = service
        super().__init__(f"Service not allowed: {service}")


class UpstreamError(HomeCoreError):
    """Entfernter Dienst hat mit einem Nicht-2xx Status geantwortet."""

    def __init__(self, status: int, text: str = "", source: Optional[str] = None):
        self.status = status
        self.text = text
        self.source = source
        prefix = f"{source} " if source else ""
        super().__init__(f"{prefix}error: {status} {text}".strip())


class CallTimeoutError(HomeCoreError, TimeoutError):
    """Aufruf hat die erlaubte Zeit ueberschritten."""


class PersistenceError(HomeCoreError):
    """Lesen oder Schreiben im Record-Store fehlgeschlagen."""


class ValidationError(HomeCoreError, ValueError):
    """Eingabedaten verletzen eine Regel (Pflichtfeld, Wertebereich, Status)."""
