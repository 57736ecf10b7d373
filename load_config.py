# load_config.py

import json
import logging
import os
import time
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import urlparse

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)
from ruamel.yaml import YAML

# --- Logging Setup ---
logger = logging.getLogger("LoadRunner")
if not logger.hasHandlers():
    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.INFO)
    formatter = logging.Formatter('%(asctime)sZ - %(levelname)s - %(name)s - %(message)s')
    formatter.converter = time.gmtime # UTC timestamps
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)
    logger.setLevel(logging.INFO)
logger.propagate = False # Prevent duplicate logs if root logger is configured


def configure_logging(debug: bool):
    """Configures the LoadRunner logger level based on the debug flag."""
    log_level = logging.DEBUG if debug else logging.INFO
    logger.setLevel(log_level)
    for handler in logger.handlers:
        handler.setLevel(log_level)
    logger.debug(f"Load runner logging level set to {logging.getLevelName(log_level)}")


class ConfigurationError(Exception):
    """Missing or invalid settings detected before any flow is launched."""


# Environment variable names for every setting
_ENV_ALIASES = {
    'base_url': 'CTFD_BASE_URL',
    'api_token': 'CTFD_API_ACCESS_TOKEN',
    'session_bundle_path': 'LOAD_SESSION_BUNDLE',
    'duration_seconds': 'LOAD_DURATION_SECONDS',
    'target_concurrency': 'LOAD_TARGET_CONCURRENCY',
    'pacing_ms': 'LOAD_PACING_MS',
    'detail_pacing_ms': 'LOAD_DETAIL_PACING_MS',
    'detail_calls': 'LOAD_DETAIL_CALLS',
    'request_timeout_ms': 'LOAD_REQUEST_TIMEOUT_MS',
    'verify_tls': 'LOAD_VERIFY_TLS',
    'listing_endpoint': 'LOAD_LISTING_ENDPOINT',
    'detail_endpoint': 'LOAD_DETAIL_ENDPOINT',
    'auxiliary_endpoints': 'LOAD_AUXILIARY_ENDPOINTS',
    'items_key': 'LOAD_ITEMS_KEY',
    'item_id_key': 'LOAD_ITEM_ID_KEY',
    'expected_statuses': 'LOAD_EXPECTED_STATUSES',
    'relaunch_delay_ms': 'LOAD_RELAUNCH_DELAY_MS',
    'drain_log_interval_s': 'LOAD_DRAIN_LOG_INTERVAL_S',
    'progress_interval_s': 'LOAD_PROGRESS_INTERVAL_S',
    'debug': 'LOAD_DEBUG',
}


class LoadTestConfig(BaseModel):
    """Runtime configuration for a duration-bounded load test."""
    model_config = ConfigDict(
        populate_by_name=True,
        alias_generator=lambda field_name: _ENV_ALIASES.get(field_name, field_name),
        extra="ignore",
        frozen=True,
    )

    base_url: str = Field(..., description="Base URL of the target service, e.g. https://ctfd.example.com")
    api_token: str = Field(..., min_length=1, description="API access token sent as 'Authorization: Token <token>'")
    session_bundle_path: str = Field(default="auth.json", description="Path to the pre-captured session/storage-state bundle")
    duration_seconds: float = Field(default=300.0, description="Total run duration in seconds")
    target_concurrency: int = Field(default=50, ge=1, description="Number of flows kept in flight")
    pacing_ms: int = Field(default=500, ge=0, description="Think time (ms) between major API calls")
    detail_pacing_ms: Optional[int] = Field(default=None, ge=0, description="Think time (ms) between detail calls. Defaults to pacing_ms / 2.")
    detail_calls: int = Field(default=3, ge=0, description="Number of distinct listing items fetched in detail per flow")
    request_timeout_ms: int = Field(default=30000, gt=0, description="Per-call timeout (ms)")
    verify_tls: bool = Field(default=False, description="Validate TLS certificates of the target")
    listing_endpoint: str = Field(default="/api/v1/challenges")
    detail_endpoint: str = Field(default="/api/v1/challenges/{id}", description="Detail endpoint template, '{id}' is replaced by the item id")
    auxiliary_endpoints: List[str] = Field(
        default_factory=lambda: ["/api/v1/scoreboard", "/api/v1/users", "/api/v1/notifications"]
    )
    items_key: str = Field(default="data", description="Key of the item list in the listing response body")
    item_id_key: str = Field(default="id", description="Key of the id within each listing item")
    expected_statuses: Dict[str, List[int]] = Field(
        default_factory=dict,
        description="Per-endpoint expected status override. Without an override any 2xx is expected.",
    )
    relaunch_delay_ms: int = Field(default=50, ge=0, description="Pause before a freed slot admits a replacement flow")
    drain_log_interval_s: float = Field(default=1.0, gt=0)
    progress_interval_s: float = Field(default=10.0, ge=0, description="Progress log period, 0 disables")
    debug: bool = Field(default=False)

    @field_validator('base_url')
    def validate_base_url(cls, v):
        parsed = urlparse(v)
        if parsed.scheme not in ('http', 'https') or not parsed.netloc:
            raise ValueError(f"base_url must be an absolute http(s) URL, got '{v}'")
        return v.rstrip('/')

    @field_validator('auxiliary_endpoints', mode='before')
    def split_endpoint_list(cls, v):
        if isinstance(v, str):
            return [part.strip() for part in v.split(',') if part.strip()]
        return v

    @field_validator('expected_statuses', mode='before')
    def parse_expected_statuses(cls, v):
        if isinstance(v, str):
            if not v.strip():
                return {}
            try:
                v = json.loads(v)
            except json.JSONDecodeError as e:
                raise ValueError(f"expected_statuses is not valid JSON: {e}") from e
        if isinstance(v, dict):
            # Allow a single status instead of a list
            return {k: ([s] if isinstance(s, int) else s) for k, s in v.items()}
        return v

    @field_validator('detail_pacing_ms', mode='before')
    def empty_detail_pacing(cls, v):
        if v == "":
            return None
        return v

    @model_validator(mode='after')
    def check_detail_endpoint(self) -> 'LoadTestConfig':
        if '{id}' not in self.detail_endpoint:
            raise ValueError(f"detail_endpoint must contain an '{{id}}' placeholder, got '{self.detail_endpoint}'")
        return self

    @property
    def pacing_s(self) -> float:
        return self.pacing_ms / 1000.0

    @property
    def detail_pacing_s(self) -> float:
        if self.detail_pacing_ms is None:
            return self.pacing_ms / 2000.0
        return self.detail_pacing_ms / 1000.0

    @property
    def request_timeout_s(self) -> float:
        return self.request_timeout_ms / 1000.0

    @property
    def relaunch_delay_s(self) -> float:
        return self.relaunch_delay_ms / 1000.0


def load_profile_file(profile_path: str) -> Dict[str, Any]:
    """Reads a YAML run profile. Keys are LoadTestConfig field names or their env aliases."""
    path = Path(profile_path)
    try:
        data = YAML(typ="safe").load(path.read_text(encoding="utf-8"))
    except FileNotFoundError as e:
        raise ConfigurationError(f"Run profile not found at '{path}'") from e
    except Exception as e:
        raise ConfigurationError(f"Error loading or parsing run profile '{path}': {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Run profile '{path}' must contain a mapping, got {type(data).__name__}")
    return dict(data)


def _settings_from_env(env: Mapping[str, str]) -> Dict[str, Any]:
    return {alias: env[alias] for alias in _ENV_ALIASES.values() if env.get(alias) not in (None, "")}


def _normalise_keys(data: Mapping[str, Any]) -> Dict[str, Any]:
    """Maps env aliases back to field names so later sources override earlier ones."""
    by_alias = {alias: name for name, alias in _ENV_ALIASES.items()}
    return {by_alias.get(key, key): value for key, value in data.items()}


def _describe_validation_error(err: ValidationError) -> str:
    problems = []
    for item in err.errors():
        field = ".".join(str(part) for part in item.get('loc', ())) or "config"
        if item.get('type') == 'missing':
            problems.append(f"missing required setting {field}")
        else:
            problems.append(f"{field}: {item.get('msg')}")
    return "; ".join(problems)


def load_config(
    overrides: Optional[Mapping[str, Any]] = None,
    env: Optional[Mapping[str, str]] = None,
    profile_path: Optional[str] = None,
) -> LoadTestConfig:
    """
    Builds the LoadTestConfig from a YAML profile, the environment and explicit
    overrides (lowest to highest precedence). Raises ConfigurationError.
    """
    env = os.environ if env is None else env
    merged: Dict[str, Any] = {}
    if profile_path:
        merged.update(_normalise_keys(load_profile_file(profile_path)))
    merged.update(_normalise_keys(_settings_from_env(env)))
    if overrides:
        merged.update(_normalise_keys({k: v for k, v in overrides.items() if v is not None}))

    try:
        config = LoadTestConfig.model_validate(merged)
    except ValidationError as ve:
        raise ConfigurationError(
            f"Invalid load test configuration ({_describe_validation_error(ve)}). "
            f"Please set {_ENV_ALIASES['base_url']} and {_ENV_ALIASES['api_token']}."
        ) from ve

    logger.info(
        f"Configuration loaded: Target='{config.base_url}', Duration={config.duration_seconds}s, "
        f"Concurrency={config.target_concurrency}, Detail calls={config.detail_calls}, "
        f"Session bundle='{config.session_bundle_path}', Verify TLS={config.verify_tls}"
    )
    return config
