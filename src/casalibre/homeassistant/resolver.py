"""
Entity resolution with synonym and fuzzy matching.

Turns an approximate phrase such as ``"bedroom blinds"`` or ``"ac"`` into a
ranked list of concrete Home Assistant entities.

The data lives in an immutable ``EntitySnapshot``.  ``EntityResolver`` holds a
reference to the current snapshot and answers queries against whichever
snapshot was current when the query started; ``refresh()`` builds a complete
new snapshot before swapping the reference, so readers never see a partial
one.  ``EntityRefresher`` owns the periodic refresh task.

Scoring, per candidate entity (after the optional domain filter):

====================================================  ==================
Rule                                                  Points
====================================================  ==================
term is a substring of the entity id or name          +100 per term
a word of ``"<id> <name>"`` starts with the term      +50 per term/word
fuzzy (only when nothing above matched; both > 3
chars, Levenshtein distance <= 2)                     +30 - 10 x distance
location is a substring of the entity id or name      +50
====================================================  ==================

Terms are the query, its synonyms and the location.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Iterable, Mapping

logger = logging.getLogger(__name__)

COMMON_SYNONYMS: dict[str, tuple[str, ...]] = {
    "blinds": ("shutter", "shade", "curtain", "cover"),
    "shutters": ("blind", "shade", "curtain", "cover"),
    "ac": ("air conditioning", "climate", "hvac", "cooling", "aircon"),
    "lights": ("lamp", "bulb", "lighting", "illumination"),
    "lamp": ("light", "bulb", "lighting"),
    "thermostat": ("temperature", "heating", "climate"),
}

DEFAULT_LIMIT = 10
DEFAULT_REFRESH_INTERVAL = 300.0

_WORD_SPLIT = re.compile(r"[\s_.\-]+")
_NAME_SPLIT = re.compile(r"[\s_\-]+")

EntitySource = Callable[[], Awaitable[list[dict[str, Any]]]]


class ResolverRefreshError(Exception):
    """Fetching or indexing the entity list failed."""


# ---------------------------------------------------------------------------
# Text helpers
# ---------------------------------------------------------------------------


def tokenize_name(name: str) -> frozenset[str]:
    """Lowercase words of a display name, dropping words of 2 chars or fewer."""
    return frozenset(w for w in _NAME_SPLIT.split(name.lower()) if len(w) > 2)


def split_words(text: str) -> tuple[str, ...]:
    return tuple(w for w in _WORD_SPLIT.split(text.lower()) if w)


def levenshtein(a: str, b: str) -> int:
    """Edit distance between *a* and *b* (insert, delete, substitute)."""
    if len(a) < len(b):
        a, b = b, a
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i]
        for j, cb in enumerate(b, start=1):
            current.append(
                min(
                    previous[j] + 1,
                    current[j - 1] + 1,
                    previous[j - 1] + (ca != cb),
                )
            )
        previous = current
    return previous[-1]


def expand_synonyms(
    term: str, synonyms: Mapping[str, Iterable[str]] = COMMON_SYNONYMS
) -> list[str]:
    """Return *term* plus its synonyms, looked up in both directions.

    If *term* is a key its values are added; if it appears among the values
    of any key, that key is added.  Order is stable: the term, its values,
    then owning keys in table order.
    """
    normalized = term.lower().strip()
    expanded = [normalized]
    for syn in synonyms.get(normalized, ()):
        if syn not in expanded:
            expanded.append(syn)
    for key, values in synonyms.items():
        if normalized in values and key not in expanded:
            expanded.append(key)
    return expanded


# ---------------------------------------------------------------------------
# Snapshot values
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EntityRecord:
    """One addressable entity as indexed by the resolver.

    Attributes:
        entity_id: Domain-prefixed id, e.g. ``"switch.kitchen"``.
        domain: Part of the id before the first ``.``.
        name: Display (friendly) name; the id when HA has none.
        state: State string at refresh time.
        tokens: Display-name words longer than two characters.
        words: Words of ``"<id> <name>"`` used for prefix and fuzzy matching.
    """

    entity_id: str
    domain: str
    name: str
    state: str = ""
    tokens: frozenset[str] = field(default_factory=frozenset)
    words: tuple[str, ...] = ()

    @classmethod
    def from_state(cls, state: Mapping[str, Any]) -> EntityRecord:
        entity_id = str(state["entity_id"])
        attributes = state.get("attributes") or {}
        friendly = attributes.get("friendly_name")
        name = friendly if isinstance(friendly, str) and friendly else ""
        return cls(
            entity_id=entity_id,
            domain=entity_id.split(".", 1)[0],
            name=name or entity_id,
            state=str(state.get("state", "")),
            tokens=tokenize_name(name),
            words=split_words(f"{entity_id} {name}"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity_id": self.entity_id,
            "friendly_name": self.name,
            "state": self.state,
            "domain": self.domain,
        }


@dataclass(frozen=True)
class MatchResult:
    entity: EntityRecord
    score: int
    reason: str


@dataclass(frozen=True)
class EntitySnapshot:
    """Immutable entity index built by one refresh."""

    records: tuple[EntityRecord, ...] = ()
    refreshed_at: datetime | None = None
    domain_keywords: Mapping[str, frozenset[str]] = field(default_factory=dict)

    @classmethod
    def build(cls, states: Iterable[Mapping[str, Any]]) -> EntitySnapshot:
        records = tuple(EntityRecord.from_state(s) for s in states)
        keywords: dict[str, set[str]] = {}
        for record in records:
            keywords.setdefault(record.domain, set()).update(record.tokens)
        return cls(
            records=records,
            refreshed_at=datetime.now(timezone.utc),
            domain_keywords={d: frozenset(w) for d, w in keywords.items()},
        )

    def __len__(self) -> int:
        return len(self.records)

    @property
    def domains(self) -> list[str]:
        return list(self.domain_keywords)


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------


def score_entity(
    record: EntityRecord, terms: list[str], location: str | None = None
) -> tuple[int, str]:
    """Score *record* against the expanded *terms*; returns ``(score, reason)``."""
    entity_id = record.entity_id.lower()
    name = record.name.lower()
    score = 0
    reason = ""

    for term in terms:
        if term in entity_id or term in name:
            score += 100
            if not reason:
                reason = f'Exact match for "{term}"'

    for term in terms:
        for word in record.words:
            if word.startswith(term):
                score += 50
                if not reason:
                    reason = f'Partial match for "{term}"'

    if score == 0:
        for term in terms:
            if len(term) <= 3:
                continue
            for word in record.words:
                if len(word) <= 3:
                    continue
                distance = levenshtein(term, word)
                if distance <= 2:
                    score += 30 - distance * 10
                    if not reason:
                        reason = f'Fuzzy match for "{term}" ({distance} edits)'

    if location:
        loc = location.lower().strip()
        if loc and (loc in entity_id or loc in name):
            score += 50
            reason += f" in {location}"

    return score, reason


class EntityResolver:
    """Answers ranked entity queries against the current snapshot.

    Args:
        source: Async callable returning raw HA state dicts.
        synonyms: Canonical term → alternates table.
    """

    def __init__(
        self,
        source: EntitySource,
        synonyms: Mapping[str, Iterable[str]] = COMMON_SYNONYMS,
    ) -> None:
        self._source = source
        self._synonyms = {k: tuple(v) for k, v in synonyms.items()}
        self._snapshot = EntitySnapshot()

    @property
    def snapshot(self) -> EntitySnapshot:
        return self._snapshot

    async def refresh(self) -> EntitySnapshot:
        """Fetch all entities and publish a new snapshot.

        Raises:
            ResolverRefreshError: If fetching or indexing fails.  The
                previous snapshot stays in place.
        """
        try:
            states = await self._source()
            snapshot = EntitySnapshot.build(states)
        except Exception as exc:
            raise ResolverRefreshError(f"Failed to refresh entities: {exc}") from exc
        self._snapshot = snapshot
        logger.info(
            "Refreshed %d entities across domains %s", len(snapshot), snapshot.domains
        )
        return snapshot

    def expand(self, term: str) -> list[str]:
        return expand_synonyms(term, self._synonyms)

    def resolve(
        self,
        query: str,
        domain: str | None = None,
        location: str | None = None,
        limit: int = DEFAULT_LIMIT,
    ) -> list[MatchResult]:
        """Return up to *limit* matches for *query*, best first.

        Entities scoring zero are left out, so an empty list means nothing
        matched.  Ties keep snapshot order.
        """
        snapshot = self._snapshot
        terms = self.expand(query)
        if location and location.strip():
            loc = location.lower().strip()
            if loc not in terms:
                terms.append(loc)
        terms = [t for t in terms if t]

        prefix = f"{domain}." if domain else None
        matches: list[MatchResult] = []
        for record in snapshot.records:
            if prefix is not None and not record.entity_id.startswith(prefix):
                continue
            score, reason = score_entity(record, terms, location)
            if score > 0:
                matches.append(MatchResult(entity=record, score=score, reason=reason))

        matches.sort(key=lambda m: m.score, reverse=True)
        return matches[: max(limit, 0)]

    def stats(self) -> dict[str, Any]:
        snapshot = self._snapshot
        return {
            "total_entities": len(snapshot),
            "domains": snapshot.domains,
            "last_refresh": snapshot.refreshed_at.isoformat() if snapshot.refreshed_at else None,
        }


class EntityRefresher:
    """Refreshes an ``EntityResolver`` on a fixed interval.

    ``start()`` performs the first refresh inline (a failure is logged, the
    server still starts) and then schedules the periodic task; ``stop()``
    cancels it.
    """

    def __init__(
        self, resolver: EntityResolver, interval: float = DEFAULT_REFRESH_INTERVAL
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.resolver = resolver
        self.interval = interval
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def refresh_once(self) -> bool:
        try:
            await self.resolver.refresh()
        except ResolverRefreshError as exc:
            logger.error("Entity refresh failed, keeping last snapshot: %s", exc)
            return False
        return True

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            await self.refresh_once()

    async def start(self) -> None:
        if self.running:
            return
        logger.info("Initializing entity cache (refresh every %.0fs)", self.interval)
        await self.refresh_once()
        self._task = asyncio.create_task(self._run(), name="entity-refresher")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Entity refresher stopped")
