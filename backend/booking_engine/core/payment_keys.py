# backend/booking_engine/core/payment_keys.py
"""
Stripe key material, resolved once at process start.

Two deployment shapes exist:

* Single key: ``STRIPE_SECRET_KEY`` / ``STRIPE_WEBHOOK_SECRET`` (plus the
  optional platform/connect webhook secrets). Used by local development and
  older deployments.
* Per-environment keys: ``STRIPE_ENV=test|live`` selects
  ``STRIPE_TEST_*`` or ``STRIPE_LIVE_*``. Live mode refuses anything that is
  not an ``sk_live_`` key.

Callers receive a ``PaymentKeyConfig`` and never look at the raw settings.
"""

from dataclasses import dataclass
from functools import lru_cache
import logging
from typing import Literal, Tuple, Union

from .config import Settings, settings
from .exceptions import PaymentConfigurationError

logger = logging.getLogger(__name__)

LIVE_KEY_PREFIX = "sk_live_"
TEST_KEY_PREFIX = "sk_test_"


@dataclass(frozen=True)
class SingleKeyConfig:
    secret_key: str
    webhook_secrets: Tuple[str, ...]

    @property
    def mode(self) -> str:
        if self.secret_key.startswith(LIVE_KEY_PREFIX):
            return "live"
        return "test"


@dataclass(frozen=True)
class EnvironmentKeysConfig:
    environment: Literal["test", "live"]
    secret_key: str
    webhook_secrets: Tuple[str, ...]

    @property
    def mode(self) -> str:
        return self.environment


PaymentKeyConfig = Union[SingleKeyConfig, EnvironmentKeysConfig]


def _secret(value) -> str:
    return value.get_secret_value() if value is not None else ""


def _non_empty(*values: str) -> Tuple[str, ...]:
    return tuple(v for v in values if v)


def resolve_payment_keys(config: Settings) -> PaymentKeyConfig:
    """
    Build the key configuration from settings.

    Raises:
        PaymentConfigurationError: STRIPE_ENV is set but its keys are missing,
            or the secret key does not belong to the selected environment.
    """
    raw_env = (config.stripe_env or "").strip().lower()
    if not raw_env:
        return SingleKeyConfig(
            secret_key=_secret(config.stripe_secret_key),
            webhook_secrets=_non_empty(
                _secret(config.stripe_webhook_secret),
                _secret(config.stripe_webhook_secret_platform),
                _secret(config.stripe_webhook_secret_connect),
            ),
        )

    if raw_env == "live":
        secret_key = _secret(config.stripe_live_secret_key)
        webhook_secret = _secret(config.stripe_live_webhook_secret)
        if not secret_key:
            raise PaymentConfigurationError("STRIPE_LIVE_SECRET_KEY is required when STRIPE_ENV=live")
        if not secret_key.startswith(LIVE_KEY_PREFIX):
            raise PaymentConfigurationError(
                f"STRIPE_LIVE_SECRET_KEY must be a LIVE key (must start with {LIVE_KEY_PREFIX})"
            )
        if not webhook_secret:
            raise PaymentConfigurationError(
                "STRIPE_LIVE_WEBHOOK_SECRET is required when STRIPE_ENV=live"
            )
        logger.info("Stripe LIVE mode validated")
        return EnvironmentKeysConfig("live", secret_key, (webhook_secret,))

    if raw_env == "test":
        secret_key = _secret(config.stripe_test_secret_key)
        if not secret_key:
            raise PaymentConfigurationError("STRIPE_TEST_SECRET_KEY is required when STRIPE_ENV=test")
        if not secret_key.startswith(TEST_KEY_PREFIX):
            raise PaymentConfigurationError(
                f"STRIPE_TEST_SECRET_KEY must start with {TEST_KEY_PREFIX}"
            )
        return EnvironmentKeysConfig(
            "test", secret_key, _non_empty(_secret(config.stripe_test_webhook_secret))
        )

    raise PaymentConfigurationError(f"Unsupported STRIPE_ENV '{config.stripe_env}'")


@lru_cache(maxsize=1)
def get_payment_keys() -> PaymentKeyConfig:
    """Process-wide key configuration."""
    return resolve_payment_keys(settings)
