"""Target catalog: the static list of pages a run scrapes.

Each configured source expands into Targets. A source with subroutes
becomes one target per subroute, identified ``<source>-<slug>`` and located
at ``<base_url>/<subroute>``; a source without subroutes is a single
target named after the source.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Iterator
from typing import Any

from pydantic import ValidationError

from peru_prices.common.exceptions import ConfigurationError
from peru_prices.configuration import Settings, SourceSettings
from peru_prices.data_types import (
    ScrollSettings,
    Target,
    WaitCondition,
    WaitForLoadState,
    WaitForSelector,
    WaitForTimeout,
    WaitForURL,
)
from peru_prices.store import RUNS_DIR

_SLUG_RE = re.compile(r"[^a-z0-9]+")


def slugify(value: str) -> str:
    """Lower-case a subroute and collapse anything else into single dashes.

    >>> slugify("/Abarrotes/Arroz")
    'abarrotes-arroz'
    """
    return _SLUG_RE.sub("-", value.lower()).strip("-")


def join_url(base_url: str, subroute: str) -> str:
    return f"{base_url.rstrip('/')}/{subroute.lstrip('/')}"


def parse_wait_condition(raw: dict[str, Any], source: str) -> WaitCondition:
    """Build a wait condition from its configuration mapping.

    ``{selector, state?, timeout?}`` waits for an element,
    ``{load_state, timeout?}`` for a load state, ``{url, timeout?}`` for a
    URL and ``{timeout}`` alone sleeps that many milliseconds.

    Raises:
        ConfigurationError: If the mapping matches none of these shapes.
    """
    keys = set(raw)
    timeout = raw.get("timeout")
    try:
        if "selector" in raw and keys <= {"selector", "state", "timeout"}:
            return WaitForSelector(
                str(raw["selector"]),
                state=str(raw.get("state", "visible")),
                timeout=None if timeout is None else int(timeout),
            )
        if "load_state" in raw and keys <= {"load_state", "timeout"}:
            return WaitForLoadState(
                str(raw["load_state"]),
                timeout=None if timeout is None else int(timeout),
            )
        if "url" in raw and keys <= {"url", "timeout"}:
            return WaitForURL(
                str(raw["url"]),
                timeout=None if timeout is None else int(timeout),
            )
        if keys == {"timeout"}:
            return WaitForTimeout(int(timeout))
    except (TypeError, ValueError) as e:
        raise ConfigurationError(
            f"Invalid wait condition for source {source}: {raw}",
            context={"source": source},
        ) from e
    raise ConfigurationError(
        f"Unrecognised wait condition for source {source}: {raw}",
        context={"source": source, "keys": ", ".join(sorted(keys))},
    )


class Catalog:
    """Ordered, id-unique collection of targets."""

    def __init__(self, targets: Iterable[Target]) -> None:
        self._targets: dict[str, Target] = {}
        for target in targets:
            if target.id == RUNS_DIR:
                raise ConfigurationError(
                    f"Target id {target.id!r} is reserved for run reports",
                    target_id=target.id,
                    context={"url": target.url},
                )
            if target.id in self._targets:
                raise ConfigurationError(
                    f"Duplicate target id {target.id!r}",
                    target_id=target.id,
                    context={"url": target.url},
                )
            self._targets[target.id] = target

    def __iter__(self) -> Iterator[Target]:
        return iter(self._targets.values())

    def __len__(self) -> int:
        return len(self._targets)

    def __contains__(self, target_id: object) -> bool:
        return target_id in self._targets

    def get(self, target_id: str) -> Target:
        try:
            return self._targets[target_id]
        except KeyError:
            raise ConfigurationError(
                f"Unknown target id {target_id!r}",
                target_id=target_id,
            ) from None

    def select(self, target_ids: Iterable[str]) -> Catalog:
        """Return a catalog restricted to ``target_ids``, in catalog order."""
        wanted = set(target_ids)
        for target_id in wanted:
            self.get(target_id)
        return Catalog(t for t in self if t.id in wanted)


def _source_targets(
    source: SourceSettings, settings: Settings
) -> Iterator[Target]:
    if isinstance(source.scroll, ScrollSettings):
        scroll: ScrollSettings | None = source.scroll
    elif source.scroll:
        scroll = settings.infinite_scrolling
    else:
        scroll = None

    wait_for = tuple(
        parse_wait_condition(raw, source.name) for raw in source.wait_for
    )
    delay_ms = source.delay_ms
    if delay_ms is None:
        delay_ms = settings.delay_ms

    if source.subroutes:
        locations = [
            (
                f"{source.name}-{slugify(subroute)}",
                join_url(source.base_url, subroute),
            )
            for subroute in source.subroutes
        ]
    else:
        locations = [(source.name, source.base_url)]

    for target_id, url in locations:
        try:
            yield Target(
                id=target_id,
                source=source.name,
                url=url,
                fetcher=source.fetcher,
                rules=source.rules,
                currency=source.defaults.currency,
                unit=source.defaults.unit,
                decimal_separator=source.defaults.decimal_separator,
                date_policy=source.defaults.date_policy,
                date_format=source.defaults.date_format,
                max_price=source.defaults.max_price,
                wait_for=wait_for,
                scroll=scroll,
                delay_ms=delay_ms,
            )
        except ValidationError as e:
            raise ConfigurationError(
                f"Invalid target {target_id}: {e}",
                target_id=target_id,
            ) from e


def build_catalog(settings: Settings) -> Catalog:
    """Expand every enabled source into its targets.

    Raises:
        ConfigurationError: On duplicate or reserved target ids, or invalid
            sources.
    """
    targets: list[Target] = []
    for source in settings.sources.values():
        if source.enabled:
            targets.extend(_source_targets(source, settings))
    return Catalog(targets)
