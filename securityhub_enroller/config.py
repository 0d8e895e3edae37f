"""
Configuration loading for the Security Hub enroller.

Settings come from an optional config.yaml with environment variable
overrides, and are read once per cold start. Environment variables that can
override config.yaml values:

- SECURITY_ACCOUNT_ID: security_account
- ORG_ID: org_id
- REGION_FILTER: region_filter (SecurityHub, ControlTower)
- OU_FILTER: ou_filter (All, ControlTower)
- ASSUME_ROLE: assume_role
- TOPIC_ARN: topic_arn
- PRIMARY_REGION / AWS_REGION: primary_region
- STANDARDS: comma-separated standards to enable (others disabled)
- MAX_WORKERS, TIME_BUDGET_SECONDS, LOG_LEVEL
"""

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

from .errors import ConfigurationError
from .retry import RetryPolicy
from .standards import STANDARD_ARN_MAP

REGION_FILTERS = ("SecurityHub", "ControlTower")
OU_FILTERS = ("All", "ControlTower")

DEFAULT_CONFIG_PATH = Path("config.yaml")

ENV_OVERRIDES = {
    "SECURITY_ACCOUNT_ID": "security_account",
    "ORG_ID": "org_id",
    "REGION_FILTER": "region_filter",
    "OU_FILTER": "ou_filter",
    "ASSUME_ROLE": "assume_role",
    "TOPIC_ARN": "topic_arn",
    "PRIMARY_REGION": "primary_region",
    "MAX_WORKERS": "max_workers",
    "TIME_BUDGET_SECONDS": "time_budget_seconds",
    "LOG_LEVEL": "log_level",
}


@dataclass(frozen=True)
class Settings:
    """Validated enroller settings."""

    security_account: str
    org_id: str
    region_filter: str = "SecurityHub"
    ou_filter: str = "All"
    assume_role: str = "AWSControlTowerExecution"
    primary_region: str = "us-east-1"
    topic_arn: Optional[str] = None
    standards: dict = field(default_factory=lambda: {"aws-foundational": True})
    regions: tuple = ()
    managed_ous: tuple = ()
    guardrail_prefix: str = "aws-guardrails-"
    resolve_account_regions: bool = False
    max_workers: int = 4
    time_budget_seconds: int = 840
    account_reserve_seconds: int = 60
    disassociate_on_delete: bool = False
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    log_level: str = "INFO"


def _match_choice(name: str, value: str, choices: tuple) -> str:
    for choice in choices:
        if str(value).lower() == choice.lower():
            return choice
    raise ConfigurationError(
        f"{name} must be one of {', '.join(choices)} (got {value!r})"
    )


def _as_int(name: str, value, low: int, high: int) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{name} must be an integer (got {value!r})")
    if not low <= number <= high:
        raise ConfigurationError(f"{name} must be between {low} and {high}")
    return number


def _as_bool(value) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def _parse_standards(raw) -> dict:
    """Accept either a mapping of name -> bool or a list of names to enable."""
    if isinstance(raw, str):
        raw = [s.strip() for s in raw.split(",") if s.strip()]
    if isinstance(raw, (list, tuple)):
        raw = {name: True for name in raw}
    if not isinstance(raw, dict):
        raise ConfigurationError("standards must be a mapping or a list")

    standards = {}
    for name, enabled in raw.items():
        if name not in STANDARD_ARN_MAP:
            raise ConfigurationError(
                f"Unknown standard {name!r}; expected one of {', '.join(sorted(STANDARD_ARN_MAP))}"
            )
        standards[name] = _as_bool(enabled)
    return standards


def read_config_file(path: Optional[Path] = None) -> dict:
    """Read the YAML config file, returning {} when it does not exist."""
    if path is None:
        path = Path(os.environ.get("ENROLLER_CONFIG", DEFAULT_CONFIG_PATH))
    path = Path(path)
    if not path.exists():
        return {}
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"{path} must contain a mapping")
    return data


def apply_env_overrides(config: dict, environ=None) -> dict:
    """Overlay environment variables on top of file values."""
    environ = os.environ if environ is None else environ
    config = dict(config)

    for env_name, key in ENV_OVERRIDES.items():
        if environ.get(env_name):
            config[key] = environ[env_name]

    if not config.get("primary_region") and environ.get("AWS_REGION"):
        config["primary_region"] = environ["AWS_REGION"]

    if environ.get("STANDARDS"):
        enabled = {s.strip() for s in environ["STANDARDS"].split(",") if s.strip()}
        config["standards"] = {name: name in enabled for name in STANDARD_ARN_MAP}

    return config


def build_settings(config: dict) -> Settings:
    """Validate a raw config mapping into Settings."""
    security_account = str(config.get("security_account") or "").strip()
    if not re.fullmatch(r"\d{12}", security_account):
        raise ConfigurationError("security_account must be a 12-digit account ID")

    org_id = str(config.get("org_id") or "").strip()
    if not re.fullmatch(r"o-[a-z0-9]{10,32}", org_id):
        raise ConfigurationError("org_id must look like o-xxxxxxxxxx")

    retry_config = config.get("retry") or {}
    retry = RetryPolicy(
        max_attempts=_as_int("retry.max_attempts", retry_config.get("max_attempts", 5), 1, 10),
        base_delay=float(retry_config.get("base_delay", 1.0)),
        max_delay=float(retry_config.get("max_delay", 20.0)),
    )

    return Settings(
        security_account=security_account,
        org_id=org_id,
        region_filter=_match_choice(
            "region_filter", config.get("region_filter", "SecurityHub"), REGION_FILTERS
        ),
        ou_filter=_match_choice("ou_filter", config.get("ou_filter", "All"), OU_FILTERS),
        assume_role=config.get("assume_role") or "AWSControlTowerExecution",
        primary_region=config.get("primary_region") or "us-east-1",
        topic_arn=config.get("topic_arn") or None,
        standards=_parse_standards(config.get("standards", {"aws-foundational": True})),
        regions=tuple(config.get("regions") or ()),
        managed_ous=tuple(config.get("managed_ous") or ()),
        guardrail_prefix=config.get("guardrail_prefix", "aws-guardrails-"),
        resolve_account_regions=_as_bool(config.get("resolve_account_regions", False)),
        max_workers=_as_int("max_workers", config.get("max_workers", 4), 1, 10),
        time_budget_seconds=_as_int(
            "time_budget_seconds", config.get("time_budget_seconds", 840), 60, 900
        ),
        account_reserve_seconds=_as_int(
            "account_reserve_seconds", config.get("account_reserve_seconds", 60), 0, 600
        ),
        disassociate_on_delete=_as_bool(config.get("disassociate_on_delete", False)),
        retry=retry,
        log_level=str(config.get("log_level", "INFO")).upper(),
    )


def load_config(path: Optional[Path] = None, environ=None) -> Settings:
    """Load configuration from config.yaml with environment variable overrides."""
    config = read_config_file(path)
    config = apply_env_overrides(config, environ)
    return build_settings(config)
