from __future__ import annotations
import os
import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, FrozenSet, Mapping, Optional

from .errors import ValidationError
from .helpers import to_cents


# ----------------------------
# Plans
# ----------------------------
@dataclass(frozen=True)
class Plan:
    key: str
    name: str
    price_cents: int


DEFAULT_PLAN_PRICES = "basic:39.90,premium:69.90,business:199.90"
PLAN_NAMES = {"basic": "Basic", "premium": "Premium", "business": "Business"}

INSTANT_METHODS = frozenset({"credit_card"})
DEFERRED_METHODS = frozenset({"pix"})

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def parse_plan_prices(raw: str) -> Dict[str, Plan]:
    plans: Dict[str, Plan] = {}
    for chunk in raw.split(","):
        chunk = chunk.strip()
        if not chunk:
            continue
        key, sep, price = chunk.partition(":")
        key = key.strip().lower()
        if not sep or not key:
            raise ValidationError(f"PLAN_PRICES entry is malformed: {chunk!r}")
        plans[key] = Plan(
            key=key,
            name=PLAN_NAMES.get(key, key.title()),
            price_cents=to_cents(price.strip()),
        )
    if not plans:
        raise ValidationError("PLAN_PRICES defines no plans")
    return plans


def _int(env: Mapping[str, str], name: str, default: int,
         minimum: int = 0) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValidationError(f"{name} must be an integer, got {raw!r}") from None
    if value < minimum:
        raise ValidationError(f"{name} must be >= {minimum}, got {value}")
    return value


# ----------------------------
# Settings
# ----------------------------
@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///./cardpass.db"
    session_secret: str = "dev-secret-change-me"
    admin_username: str = "admin"
    admin_password: str = "supasecret"
    webhook_secret: Optional[str] = None
    mock_webhook_url: str = "http://localhost:8000/payments/webhook"
    notify_url: Optional[str] = None
    public_url: str = "http://localhost:8000"
    pix_key: str = "pix@cardpass.example"
    pix_ttl_seconds: int = 30 * 60
    handoff_ttl_seconds: int = 60 * 60
    code_prefix: str = "CD-"
    code_length: int = 6
    code_max_attempts: int = 5
    bulk_max_quantity: int = 1000
    manual_max_quantity: int = 100
    reconcile_grace_seconds: int = 15 * 60
    currency: str = "brl"
    plans: Mapping[str, Plan] = field(
        default_factory=lambda: parse_plan_prices(DEFAULT_PLAN_PRICES)
    )
    instant_methods: FrozenSet[str] = INSTANT_METHODS
    deferred_methods: FrozenSet[str] = DEFERRED_METHODS
    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "Settings":
        env = os.environ if env is None else env
        log_format = env.get("LOG_FORMAT", "json").lower()
        if log_format not in ("json", "console"):
            raise ValidationError(
                f"LOG_FORMAT must be 'json' or 'console', got {log_format!r}"
            )
        log_level = env.get("LOG_LEVEL", cls.log_level).upper()
        if log_level not in LOG_LEVELS:
            raise ValidationError(f"LOG_LEVEL is not a level: {log_level!r}")
        # redemption and lookup upper-case the code they are given
        code_prefix = env.get("CODE_PREFIX", cls.code_prefix).strip().upper()
        return cls(
            database_url=env.get("DATABASE_URL", cls.database_url),
            session_secret=env.get("SESSION_SECRET", cls.session_secret),
            admin_username=env.get("ADMIN_USERNAME", cls.admin_username),
            admin_password=env.get("ADMIN_PASSWORD", cls.admin_password),
            webhook_secret=env.get("WEBHOOK_SECRET") or None,
            mock_webhook_url=env.get("MOCK_WEBHOOK_URL", cls.mock_webhook_url),
            notify_url=env.get("NOTIFY_URL") or None,
            public_url=env.get("PUBLIC_URL", cls.public_url).rstrip("/"),
            pix_key=env.get("PIX_KEY", cls.pix_key),
            pix_ttl_seconds=_int(env, "PIX_TTL_SECONDS", cls.pix_ttl_seconds, 1),
            handoff_ttl_seconds=_int(
                env, "HANDOFF_TTL_SECONDS", cls.handoff_ttl_seconds, 1
            ),
            code_prefix=code_prefix,
            code_length=_int(env, "CODE_LENGTH", cls.code_length, 4),
            code_max_attempts=_int(
                env, "CODE_MAX_ATTEMPTS", cls.code_max_attempts, 1
            ),
            bulk_max_quantity=_int(
                env, "BULK_MAX_QUANTITY", cls.bulk_max_quantity, 1
            ),
            manual_max_quantity=_int(
                env, "MANUAL_MAX_QUANTITY", cls.manual_max_quantity, 1
            ),
            reconcile_grace_seconds=_int(
                env, "RECONCILE_GRACE_SECONDS", cls.reconcile_grace_seconds
            ),
            currency=env.get("CURRENCY", cls.currency).lower(),
            plans=parse_plan_prices(
                env.get("PLAN_PRICES", DEFAULT_PLAN_PRICES)
            ),
            log_level=log_level,
            log_format=log_format,
        )

    def plan(self, key: str | None) -> Plan:
        plan = self.plans.get((key or "").lower())
        if plan is None:
            raise ValidationError(
                f"invalid plan {key!r}; expected one of "
                f"{', '.join(sorted(self.plans))}"
            )
        return plan

    def is_instant(self, method: str) -> bool:
        return method in self.instant_methods

    def check_method(self, method: str | None) -> str:
        method = (method or "").lower()
        if method not in self.instant_methods | self.deferred_methods:
            raise ValidationError(f"invalid payment method {method!r}")
        return method


class SettingsStore:
    """Holds the active Settings. Components read ``current`` per operation,
    an operator swaps it with ``reload()``."""

    def __init__(self, settings: Settings | None = None,
                 loader: Callable[[], Settings] = Settings.from_env) -> None:
        self._loader = loader
        self._lock = threading.Lock()
        self._current = settings if settings is not None else loader()

    @property
    def current(self) -> Settings:
        return self._current

    def reload(self) -> Settings:
        # a failing loader raises and leaves the previous settings active
        fresh = self._loader()
        with self._lock:
            self._current = fresh
        return fresh


__all__ = ["Plan", "Settings", "SettingsStore", "parse_plan_prices"]
