"""Layered settings loader.

Settings are read from a configuration directory in three layers, later
layers winning:

1. ``base.yaml`` (required)
2. ``<environment>.yaml`` (required), where the environment comes from
   ``APP_ENVIRONMENT`` and is either ``local`` or ``production``
3. environment variables prefixed ``APP_`` using ``__`` as the nesting
   separator, e.g. ``APP_PIPELINE__CONCURRENCY=4`` sets
   ``settings.pipeline.concurrency``. Values are parsed as YAML scalars so
   ``true``, ``4`` and ``0.5`` keep their types.

The merged mapping is validated by the pydantic models below; any problem
is reported as a ConfigurationError.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from decimal import Decimal
from pathlib import Path
from typing import Any, Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from peru_prices.common.exceptions import ConfigurationError
from peru_prices.data_types import (
    DEFAULT_MAX_PRICE,
    DatePolicy,
    ExtractionRules,
    FetcherKind,
    MergePolicy,
    ScrollSettings,
)

logger = logging.getLogger(__name__)

ENVIRONMENTS = ("local", "production")
ENV_PREFIX = "APP_"
ENV_SEPARATOR = "__"
DEFAULT_CONFIG_DIR = Path("configuration")


class PipelineSettings(BaseModel):
    """Knobs for the orchestrator.

    Attributes:
        concurrency: Number of targets processed at once.
        max_retries: Fetch attempts per target, including the first one.
        backoff_initial: Seconds to wait before the second attempt.
        backoff_multiplier: Factor applied to the wait after each attempt.
        backoff_max: Upper bound on a single backoff wait, in seconds.
        fetch_timeout: Seconds allowed for one fetch attempt.
        deadline: Optional wall-clock limit for the whole run, in seconds.
        merge_policy: How the store treats an existing key.
        fail_threshold: Optional fraction of failed targets above which the
            run is reported as failed even if some targets succeeded.
        timezone: Timezone used to derive observation dates from fetch time.
    """

    model_config = ConfigDict(extra="forbid")

    concurrency: int = Field(default=2, ge=1)
    max_retries: int = 3
    backoff_initial: float = Field(default=1.0, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1)
    backoff_max: float = Field(default=30.0, ge=0)
    fetch_timeout: float = Field(default=30.0, gt=0)
    deadline: float | None = Field(default=None, gt=0)
    merge_policy: MergePolicy = MergePolicy.REJECT
    fail_threshold: float | None = Field(default=None, ge=0, le=1)
    timezone: str = "America/Lima"

    @field_validator("max_retries")
    @classmethod
    def _at_least_one_attempt(cls, value: int) -> int:
        return max(1, value)

    @field_validator("timezone")
    @classmethod
    def _known_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"unknown timezone {value!r}") from e
        return value


class BrowserSettings(BaseModel):
    """How to reach a browser.

    ``endpoint`` selects the connection mode: ``ws://``/``wss://`` connects
    to a Playwright server, ``http://``/``https://`` attaches over CDP, and
    no endpoint launches a local browser.

    ``item_wait_timeout`` bounds the default readiness wait for a target's
    items, in seconds. It is capped at half the attempt timeout so that a
    page whose items never appear is still snapshotted and reported as
    having no records rather than timing out.
    """

    model_config = ConfigDict(extra="forbid")

    endpoint: str | None = None
    browser_type: Literal["chromium", "firefox", "webkit"] = "chromium"
    headless: bool = True
    locale: str = "es-PE"
    timezone_id: str = "America/Lima"
    viewport_width: int = 1920
    viewport_height: int = 1080
    user_agent: str | None = None
    item_wait_timeout: float = Field(default=10.0, gt=0)
    blocked_resource_types: list[str] = Field(
        default_factory=lambda: ["image", "media", "font"]
    )


class HttpSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    user_agent: str = "peru-prices/0.3"
    follow_redirects: bool = True


class SourceDefaults(BaseModel):
    """Per-source defaults applied to every record of its targets."""

    model_config = ConfigDict(extra="forbid")

    currency: str | None = "PEN"
    unit: str = "unit"
    decimal_separator: Literal[".", ","] = "."
    date_policy: DatePolicy = DatePolicy.FETCH
    date_format: str = "%Y-%m-%d"
    max_price: Decimal = Field(default=DEFAULT_MAX_PRICE, gt=0)


class SourceSettings(BaseModel):
    """One site to scrape.

    A source with subroutes expands into one target per subroute; without
    subroutes the base URL itself is the only target.
    """

    model_config = ConfigDict(extra="forbid")

    name: str = ""
    enabled: bool = True
    base_url: str
    subroutes: list[str] = Field(default_factory=list)
    fetcher: FetcherKind = FetcherKind.BROWSER
    rules: ExtractionRules
    defaults: SourceDefaults = Field(default_factory=SourceDefaults)
    wait_for: list[dict[str, Any]] = Field(default_factory=list)
    scroll: bool | ScrollSettings = False
    delay_ms: int | None = Field(default=None, ge=0)


class Settings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    environment: str = "local"
    out_path: Path = Path("output")
    delay_ms: int = Field(default=0, ge=0)
    infinite_scrolling: ScrollSettings = Field(default_factory=ScrollSettings)
    pipeline: PipelineSettings = Field(default_factory=PipelineSettings)
    browser: BrowserSettings = Field(default_factory=BrowserSettings)
    http: HttpSettings = Field(default_factory=HttpSettings)
    sources: dict[str, SourceSettings] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _name_sources(self) -> Settings:
        for key, source in self.sources.items():
            if not source.name:
                source.name = key
        return self


def resolve_environment(
    environment: str | None = None,
    environ: Mapping[str, str] | None = None,
) -> str:
    """Pick the running environment, defaulting to ``local``.

    Raises:
        ConfigurationError: If the name is not a supported environment.
    """
    environ = os.environ if environ is None else environ
    value = (environment or environ.get("APP_ENVIRONMENT") or "local").strip()
    value = value.lower()
    if value not in ENVIRONMENTS:
        raise ConfigurationError(
            f"{value} is not a supported environment. "
            "Use either `local` or `production`.",
            context={"supported": ", ".join(ENVIRONMENTS)},
        )
    return value


def _read_yaml(path: Path) -> dict[str, Any]:
    if not path.is_file():
        raise ConfigurationError(
            f"Missing configuration file: {path}",
            context={"path": str(path)},
        )
    try:
        with path.open(encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(
            f"Could not parse configuration file {path}: {e}",
            context={"path": str(path)},
        ) from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(
            f"Configuration file {path} must contain a mapping",
            context={"path": str(path), "type": type(data).__name__},
        )
    return data


def deep_merge(
    base: dict[str, Any], override: Mapping[str, Any]
) -> dict[str, Any]:
    """Merge ``override`` into a copy of ``base``; nested mappings merge."""
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def env_overrides(environ: Mapping[str, str]) -> dict[str, Any]:
    """Turn ``APP_A__B=value`` variables into a nested override mapping."""
    overrides: dict[str, Any] = {}
    for name, raw in environ.items():
        if not name.startswith(ENV_PREFIX) or name == "APP_ENVIRONMENT":
            continue
        path = [
            part.lower()
            for part in name[len(ENV_PREFIX) :].split(ENV_SEPARATOR)
        ]
        if not all(path):
            logger.warning(f"Ignoring malformed override variable {name}")
            continue
        if path[0] not in Settings.model_fields:
            logger.debug(f"Ignoring unrelated variable {name}")
            continue
        try:
            value = yaml.safe_load(raw)
        except yaml.YAMLError:
            value = raw
        node = overrides
        for part in path[:-1]:
            node = node.setdefault(part, {})
            if not isinstance(node, dict):
                raise ConfigurationError(
                    f"Conflicting override variables for {name}",
                    context={"variable": name},
                )
        node[path[-1]] = value
    return overrides


def load_settings(
    config_dir: Path | str = DEFAULT_CONFIG_DIR,
    environment: str | None = None,
    environ: Mapping[str, str] | None = None,
) -> Settings:
    """Load and validate settings from the configuration directory.

    Args:
        config_dir: Directory holding ``base.yaml`` and the environment files.
        environment: Explicit environment name; overrides APP_ENVIRONMENT.
        environ: Environment variables to read (defaults to os.environ).

    Returns:
        Validated Settings.

    Raises:
        ConfigurationError: If a file is missing or unparsable, the
            environment is unknown, or the merged values fail validation.
    """
    environ = os.environ if environ is None else environ
    config_dir = Path(config_dir)
    env_name = resolve_environment(environment, environ)

    data = _read_yaml(config_dir / "base.yaml")
    data = deep_merge(data, _read_yaml(config_dir / f"{env_name}.yaml"))
    data = deep_merge(data, env_overrides(environ))
    data["environment"] = env_name

    try:
        settings = Settings.model_validate(data)
    except ValidationError as e:
        errors = [
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
            for err in e.errors()
        ]
        raise ConfigurationError(
            f"Invalid configuration in {config_dir} ({env_name})",
            context={"errors": "; ".join(errors)},
        ) from e

    logger.debug(
        f"Loaded settings for {env_name} with {len(settings.sources)} sources",
        extra={"environment": env_name},
    )
    return settings
