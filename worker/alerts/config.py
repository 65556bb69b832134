"""
Configuration loader for the Flood Alert Worker.

Uses Pydantic Settings for environment variable parsing with SSM parameter
resolution in non-local environments.

The production/non-production flag controls two derived values:
    - ``scale_factor``: divisor applied to every return-period threshold
      before comparison (1 in production, ``dev_scale_factor`` otherwise).
    - ``schedule_interval_minutes``: sweep cadence used by the local dev loop.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from functools import lru_cache

import boto3
from pydantic import SecretStr
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)

PRODUCTION_ENV = "production"

PRODUCTION_INTERVAL_MINUTES = 360
DEVELOPMENT_INTERVAL_MINUTES = 2


class Settings(BaseSettings):
    """Flood Alert Worker configuration loaded from environment variables.

    In production (APP_ENV != 'local'), environment variables with an
    ``_SSM_PARAM`` suffix are resolved via AWS Systems Manager Parameter
    Store before constructing the settings object.
    """

    app_env: str = "local"
    database_url: SecretStr
    aws_region: str = "us-east-1"

    # Upstream APIs
    forecast_base_url: str = "https://api.water.noaa.gov/nwps/v1"
    return_period_url: str = "https://nwm-api-updt-9f6idmxh.uc.gateway.dev/return-period"
    return_period_api_key: SecretStr = SecretStr("")
    forecast_horizons: list[str] = ["short_range", "medium_range"]
    user_agent: str = "FloodAlertWorker/1.0"

    # Timeouts & concurrency
    request_timeout_seconds: float = 15.0
    sweep_timeout_seconds: float = 540.0
    max_concurrency: int = 8

    # Alert policy
    cooldown_hours: float = 6.0
    dev_scale_factor: float = 25.0

    # Push delivery
    sns_platform_application_arn: str = ""

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

    @property
    def is_production(self) -> bool:
        return self.app_env == PRODUCTION_ENV

    @property
    def scale_factor(self) -> float:
        """Threshold divisor: 1 in production, ``dev_scale_factor`` elsewhere."""
        return 1.0 if self.is_production else self.dev_scale_factor

    @property
    def schedule_interval_minutes(self) -> int:
        if self.is_production:
            return PRODUCTION_INTERVAL_MINUTES
        return DEVELOPMENT_INTERVAL_MINUTES


SSM_PARAM_SUFFIX = "_SSM_PARAM"
SSM_BATCH_SIZE = 10


def _ssm_references(environ: Mapping[str, str]) -> dict[str, str]:
    """Map target variable name -> SSM parameter name.

    ``DATABASE_URL_SSM_PARAM=/flood-alerts/prod/db-url`` yields
    ``{"DATABASE_URL": "/flood-alerts/prod/db-url"}``.
    """
    return {
        key[: -len(SSM_PARAM_SUFFIX)]: value
        for key, value in environ.items()
        if key.endswith(SSM_PARAM_SUFFIX) and value
    }


def _resolve_ssm_params() -> None:
    """Inject SSM Parameter Store values for every ``*_SSM_PARAM`` variable.

    Parameters missing from SSM are logged and left unset so that settings
    validation reports them.
    """
    references = _ssm_references(os.environ)
    if not references:
        return

    ssm = boto3.client("ssm", region_name=os.environ.get("AWS_REGION", "us-east-1"))

    names = sorted(set(references.values()))
    values: dict[str, str] = {}
    for start in range(0, len(names), SSM_BATCH_SIZE):
        response = ssm.get_parameters(
            Names=names[start : start + SSM_BATCH_SIZE], WithDecryption=True
        )
        values.update({p["Name"]: p["Value"] for p in response["Parameters"]})
        for missing in response.get("InvalidParameters", []):
            logger.warning("SSM parameter not found: %s", missing)

    for target, name in references.items():
        if name in values:
            os.environ[target] = values[name]


@lru_cache(maxsize=1)
def load_settings() -> Settings:
    """Build the process-wide ``Settings``.

    Outside ``APP_ENV=local`` the SSM references are resolved into the
    environment first.
    """
    if os.environ.get("APP_ENV", "local") != "local":
        _resolve_ssm_params()

    settings = Settings()  # type: ignore[call-arg]
    logger.info(
        "Loaded settings: app_env=%s scale_factor=%s horizons=%s",
        settings.app_env,
        settings.scale_factor,
        ",".join(settings.forecast_horizons),
    )
    return settings
