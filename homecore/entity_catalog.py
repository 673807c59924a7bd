"""
Entity Catalog - leitet aus HA-States Alias-Mappings ab.

Jede Entity bekommt eine geordnete, duplikatfreie Liste von Namen unter
denen der Benutzer sie ansprechen koennte. Reine Funktionen ohne I/O.
"""

from dataclasses import dataclass, field
from typing import Iterable, Optional


@dataclass
class DeviceState:
    """Momentaufnahme einer HA-Entity."""

    entity_id: str
    state: str = "unknown"
    friendly_name: str = ""
    unit: str = ""
    attributes: dict = field(default_factory=dict)
    last_updated: Optional[str] = None

    @property
    def domain(self) -> str:
        return self.entity_id.split(".", 1)[0]

    @classmethod
    def from_ha(cls, raw: dict) -> "DeviceState":
        """Baut einen DeviceState aus dem /api/states Format."""
        attributes = raw.get("attributes") or {}
        entity_id = raw.get("entity_id", "")
        return cls(
            entity_id=entity_id,
            state=str(raw.get("state", "unknown")),
            friendly_name=attributes.get("friendly_name") or entity_id,
            unit=attributes.get("unit_of_measurement") or "",
            attributes=attributes,
            last_updated=raw.get("last_updated"),
        )


@dataclass
class EntityAliasMapping:
    """Abgeleitete Sicht einer Entity fuer Kontext und Suche. Wird nie persistiert."""

    entity_id: str
    friendly_name: str
    domain: str
    state: str
    unit: str
    possible_names: list[str]


def _unique(names: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    result = []
    for name in names:
        if name and name not in seen:
            seen.add(name)
            result.append(name)
    return result


def build_alias_mapping(device: DeviceState) -> EntityAliasMapping:
    """Erzeugt die Alias-Liste fuer eine Entity.

    Reihenfolge: friendly_name, entity_id, Namensteil mit Leerzeichen,
    Namensteil ohne Trenner, dann bei mehrteiligen Namen jedes Wort
    und die zusammengeschriebene Form.
    """
    friendly = device.friendly_name or device.entity_id
    name_part = device.entity_id.split(".", 1)[1] if "." in device.entity_id else ""

    names = [
        friendly.lower(),
        device.entity_id.lower(),
        name_part.replace("_", " ").lower(),
        name_part.replace("_", "").lower(),
    ]
    words = friendly.lower().split()
    if len(words) > 1:
        names.extend(words)
        names.append("".join(words))

    return EntityAliasMapping(
        entity_id=device.entity_id,
        friendly_name=friendly,
        domain=device.domain,
        state=device.state or "unknown",
        unit=device.unit,
        possible_names=_unique(names),
    )


def build_catalog(states: Iterable) -> list[EntityAliasMapping]:
    """Mappings fuer alle States in Katalog-Reihenfolge.

    Akzeptiert DeviceState-Objekte oder rohe HA-Dicts.
    """
    mappings = []
    for item in states:
        device = item if isinstance(item, DeviceState) else DeviceState.from_ha(item)
        if not device.entity_id:
            continue
        mappings.append(build_alias_mapping(device))
    return mappings
