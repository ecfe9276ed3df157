"""
Configuration: environment settings plus the target file.

The target file (TOML or JSON) describes one or more products to watch, the
retailer selectors for each, and timing/limit overrides. It is loaded once at
startup; restart the process to pick up changes.
"""

import json
import os
import tomllib
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from bestbot.errors import ConfigError


# =============================================================================
# ENVIRONMENT SETTINGS
# =============================================================================

MODE = os.getenv("MODE", "run")
TARGETS_FILE = Path(os.getenv("TARGETS_FILE", "/data/targets.toml"))
DRY_RUN = os.getenv("DRY_RUN", "false").lower() == "true"
HEADLESS = os.getenv("HEADLESS", "false").lower() == "true"

# Attach to an already running browser instead of launching one
BROWSER_CDP_ENDPOINT = os.getenv("BROWSER_CDP_ENDPOINT", "")

PROFILE_DIR = Path(os.getenv("PROFILE_DIR", "/data/profile"))
ARTIFACTS_DIR = Path(os.getenv("ARTIFACTS_DIR", "/data/artifacts"))
ATTEMPTS_FILE = Path(os.getenv("ATTEMPTS_FILE", "/data/attempts.json"))

API_HOST = os.getenv("API_HOST", "0.0.0.0")
API_PORT = int(os.getenv("API_PORT", "8000"))

# Notification transports (each optional)
DISCORD_WEBHOOK_URL = os.getenv("DISCORD_WEBHOOK_URL", "")
TWILIO_SID = os.getenv("TWILIO_SID", "")
TWILIO_AUTH_TOKEN = os.getenv("TWILIO_AUTH_TOKEN", "")
TWILIO_FROM_NUMBER = os.getenv("TWILIO_FROM_NUMBER", "")
TWILIO_TO_NUMBER = os.getenv("TWILIO_TO_NUMBER", "")

# Retailer account
BESTBOT_USERNAME = os.getenv("BESTBOT_USERNAME", "")
BESTBOT_PASSWORD = os.getenv("BESTBOT_PASSWORD", "")

# Default poll floor when the target file does not set one
POLL_INTERVAL_SECONDS = float(os.getenv("POLL_INTERVAL_SECONDS", "20"))


# =============================================================================
# TARGET FILE MODELS
# =============================================================================

class SelectorMap(BaseModel):
    """Retailer page semantics. Every entry is a list of fallback CSS selectors."""
    model_config = ConfigDict(frozen=True)

    availability: List[str]
    in_stock_text: List[str] = ["Add to Cart"]
    out_of_stock_text: List[str] = ["Sold Out", "Coming Soon", "Unavailable"]
    blocked: List[str] = []
    price: List[str] = []
    add_to_cart: List[str]
    cart_confirmation: List[str]
    cart_remove: List[str] = []
    proceed_to_checkout: List[str] = []
    place_order: List[str]
    order_confirmation: List[str]
    order_number: List[str] = []

    # Sign-in form
    sign_in_username: List[str] = []
    sign_in_password: List[str] = []
    sign_in_submit: List[str] = []
    signed_in: List[str] = []
    verification_code: List[str] = []

    @field_validator(
        "availability", "add_to_cart", "cart_confirmation", "place_order", "order_confirmation"
    )
    @classmethod
    def _not_empty(cls, value: List[str]) -> List[str]:
        if not value:
            raise ValueError("at least one selector is required")
        return value


class CheckoutField(BaseModel):
    """One checkout form control to populate before submitting."""
    model_config = ConfigDict(frozen=True)

    name: str
    selectors: List[str]
    action: str = "fill"  # "fill" or "check"
    value: str = ""
    value_env: Optional[str] = None

    @field_validator("action")
    @classmethod
    def _known_action(cls, value: str) -> str:
        if value not in ("fill", "check"):
            raise ValueError("action must be 'fill' or 'check'")
        return value

    @model_validator(mode="after")
    def _fill_has_source(self) -> "CheckoutField":
        if self.action == "fill" and not (self.value or self.value_env):
            raise ValueError(f"fill field '{self.name}' needs value or value_env")
        return self

    def resolve_value(self) -> str:
        """Value to type, reading the environment when value_env is set."""
        if self.value_env:
            return os.getenv(self.value_env, "")
        return self.value


class PurchaseLimits(BaseModel):
    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(default=3, ge=1)
    max_spend: Optional[float] = Field(default=None, gt=0)
    stop_after_purchase: bool = True
    clear_cart_on_start: bool = True


class TimingConfig(BaseModel):
    """Timing and backoff parameters, all in seconds."""
    model_config = ConfigDict(frozen=True)

    poll_interval_min: float = Field(default=POLL_INTERVAL_SECONDS, gt=0)
    poll_interval_max: float = Field(default=120.0, gt=0)
    poll_multiplier: float = Field(default=1.5, ge=1.0)
    blocked_cooldown_base: float = Field(default=60.0, gt=0)
    blocked_cooldown_max: float = Field(default=900.0, gt=0)
    blocked_multiplier: float = Field(default=2.0, ge=1.0)
    jitter: float = Field(default=0.1, ge=0.0, lt=1.0)

    attempt_cooldown: float = Field(default=600.0, ge=0)
    attempt_timeout: float = Field(default=180.0, gt=0)
    recycle_session_every: int = Field(default=0, ge=0)

    page_load_timeout: float = Field(default=30.0, gt=0)
    element_timeout: float = Field(default=10.0, gt=0)
    cart_confirm_timeout: float = Field(default=10.0, gt=0)
    confirm_timeout: float = Field(default=60.0, gt=0)
    retry_delay: float = Field(default=0.5, ge=0)

    cart_confirm_attempts: int = Field(default=2, ge=1)
    checkout_attempts: int = Field(default=2, ge=1)

    @model_validator(mode="after")
    def _ceilings_above_floors(self) -> "TimingConfig":
        if self.poll_interval_max < self.poll_interval_min:
            raise ValueError("poll_interval_max must be >= poll_interval_min")
        if self.blocked_cooldown_max < self.blocked_cooldown_base:
            raise ValueError("blocked_cooldown_max must be >= blocked_cooldown_base")
        return self


class Target(BaseModel):
    """One monitored product at one retailer."""
    model_config = ConfigDict(frozen=True)

    name: str
    url: str
    product_id: str
    cart_url: Optional[str] = None
    checkout_url: Optional[str] = None
    sign_in_url: Optional[str] = None
    selectors: SelectorMap
    checkout_fields: List[CheckoutField] = []
    limits: PurchaseLimits = PurchaseLimits()
    timing: TimingConfig = TimingConfig()

    @field_validator("url", "cart_url", "checkout_url", "sign_in_url")
    @classmethod
    def _http_url(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not value.startswith(("http://", "https://")):
            raise ValueError("must be an http(s) URL")
        return value

    @model_validator(mode="after")
    def _spend_limit_needs_price(self) -> "Target":
        if self.limits.max_spend is not None and not self.selectors.price:
            raise ValueError("limits.max_spend requires selectors.price")
        return self


# =============================================================================
# LOADING
# =============================================================================

def _merge(defaults: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    """Shallow-merge nested tables: target values win over [defaults]."""
    merged = dict(defaults)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = {**merged[key], **value}
        else:
            merged[key] = value
    return merged


def parse_targets(data: Dict[str, Any]) -> List[Target]:
    """Build validated targets from an already-decoded target document."""
    defaults = data.get("defaults", {})
    raw_targets = data.get("targets", [])
    if not raw_targets:
        raise ConfigError("No targets specified")

    targets = []
    for raw in raw_targets:
        try:
            targets.append(Target(**_merge(defaults, raw)))
        except ValidationError as e:
            raise ConfigError(f"Invalid target {raw.get('name', '?')!r}: {e}") from e

    names = [t.name for t in targets]
    if len(set(names)) != len(names):
        raise ConfigError("Target names must be unique")

    for target in targets:
        for checkout_field in target.checkout_fields:
            if checkout_field.value_env and not os.getenv(checkout_field.value_env):
                raise ConfigError(
                    f"Target {target.name!r}: {checkout_field.value_env} is not set "
                    f"(checkout field {checkout_field.name!r})"
                )
    return targets


def load_targets(path: Path = None) -> List[Target]:
    """Load targets from a TOML or JSON file."""
    path = Path(path or TARGETS_FILE)
    if not path.exists():
        raise ConfigError(f"Targets file not found: {path}")

    try:
        if path.suffix == ".json":
            with open(path, "r") as f:
                data = json.load(f)
        else:
            with open(path, "rb") as f:
                data = tomllib.load(f)
    except (json.JSONDecodeError, tomllib.TOMLDecodeError) as e:
        raise ConfigError(f"Cannot parse {path}: {e}") from e

    return parse_targets(data)
