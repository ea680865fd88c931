"""Allow-list for the entities the agent may read and the services it may call."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable


@dataclass(frozen=True)
class Allowlist:
    """When an ``allow_all_*`` flag is set, the matching set is not enforced.

    ``write_services`` holds ``"domain.service"`` keys such as
    ``"light.turn_on"``.
    """

    allow_all_entities: bool = True
    allow_all_services: bool = True
    read_entities: frozenset[str] = field(default_factory=frozenset)
    write_services: frozenset[str] = field(default_factory=frozenset)

    @classmethod
    def restricted(
        cls,
        read_entities: Iterable[str] = (),
        write_services: Iterable[str] = (),
    ) -> Allowlist:
        return cls(
            allow_all_entities=False,
            allow_all_services=False,
            read_entities=frozenset(read_entities),
            write_services=frozenset(write_services),
        )

    def is_entity_allowed(self, entity_id: str) -> bool:
        if self.allow_all_entities:
            return True
        return entity_id in self.read_entities

    def is_service_allowed(self, domain: str, service: str) -> bool:
        if self.allow_all_services:
            return True
        return f"{domain}.{service}" in self.write_services
