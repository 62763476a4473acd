"""
Configuration Loader (``billing_config.loader``).

Responsibility
--------------
Reads the YAML configuration file and parses each section into the typed
dataclasses of ``billing_config.schema``.  Runtime callers go through
``billing_config.get_active_config()``; this module is its implementation.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Invalid values  -> ``ValueError`` / ``ContractorConfigurationError`` from
  the section dataclasses.
* Unknown keys in a section -> ``ConfigurationError``.

Audit relevance
---------------
``compute_checksum`` fingerprints the effective configuration so a
settlement can be traced to the config that produced it.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import fields
from decimal import Decimal
from pathlib import Path
from typing import Any

import yaml

from billing_config.schema import (
    BillingConfig,
    DatabaseConfig,
    IdempotencyConfig,
    LoggingConfig,
    ProcessorConfig,
    QueueConfig,
)
from billing_kernel.exceptions import ConfigurationError
from billing_modules.allocation.config import AllocationConfig
from billing_modules.allocation.models import ContractorDefinition
from billing_modules.broadcast.config import BroadcastConfig, SmtpSettings
from billing_modules.revenue.config import RevenueConfig
from billing_modules.subscriptions.config import PlanDefinition, SubscriptionConfig
from billing_modules.subscriptions.models import BillingInterval

# Revenue fields whose YAML lists become tuples.
_REVENUE_TUPLE_FIELDS = frozenset({
    "product_type_keys",
    "physical_product_types",
    "shipping_fee_keys",
    "quantity_keys",
    "product_vocabulary",
    "plan_id_keys",
    "plan_name_keys",
    "subscription_keywords",
})


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def _check_keys(section: str, data: dict[str, Any], cls: type) -> None:
    allowed = {f.name for f in fields(cls)}
    unknown = set(data) - allowed
    if unknown:
        raise ConfigurationError(
            f"Unknown keys in '{section}': {sorted(unknown)}", field=section
        )


def parse_plans(data: dict[str, Any]) -> SubscriptionConfig:
    plans = tuple(
        PlanDefinition(
            plan_id=p["plan_id"],
            name=p.get("name", p["plan_id"]),
            interval=BillingInterval(p.get("interval", "month")),
            amount=Decimal(str(p.get("amount", "0"))),
            price_ids=tuple(p.get("price_ids", ())),
            is_corporate=bool(p.get("is_corporate", False)),
            seat_limit=p.get("seat_limit"),
        )
        for p in data.get("catalog", ())
    )
    kwargs: dict[str, Any] = {"plans": plans}
    if "default_seat_limit" in data:
        kwargs["default_seat_limit"] = int(data["default_seat_limit"])
    return SubscriptionConfig(**kwargs)


def parse_revenue(data: dict[str, Any], fetcher: dict[str, Any]) -> RevenueConfig:
    merged = {**data, **fetcher}
    _check_keys("revenue", merged, RevenueConfig)
    for key in _REVENUE_TUPLE_FIELDS & set(merged):
        merged[key] = tuple(merged[key])
    if "fee_rate" in merged:
        merged["fee_rate"] = Decimal(str(merged["fee_rate"]))
    return RevenueConfig(**merged)


def parse_allocation(data: dict[str, Any]) -> AllocationConfig:
    contractors = tuple(
        ContractorDefinition(
            key=c["key"],
            display_name=c.get("display_name", c["key"]),
            default_percent=Decimal(str(c["default_percent"])),
        )
        for c in data.get("contractors", ())
    )
    return AllocationConfig(
        pool_percent=Decimal(str(data.get("pool_percent", "60"))),
        contractors=contractors,
    )


def parse_broadcast(data: dict[str, Any]) -> BroadcastConfig:
    data = dict(data)
    smtp = data.pop("smtp", {}) or {}
    _check_keys("broadcast", data, BroadcastConfig)
    _check_keys("broadcast.smtp", smtp, SmtpSettings)
    return BroadcastConfig(smtp=SmtpSettings(**smtp), **data)


def _simple(section: str, data: dict[str, Any], cls: type) -> Any:
    _check_keys(section, data, cls)
    return cls(**data)


def build_config(data: dict[str, Any]) -> BillingConfig:
    """Parse a whole configuration document into a BillingConfig."""
    return BillingConfig(
        processor=_simple("processor", data.get("processor") or {}, ProcessorConfig),
        database=_simple("database", data.get("database") or {}, DatabaseConfig),
        plans=parse_plans(data.get("plans") or {}),
        revenue=parse_revenue(data.get("revenue") or {}, data.get("fetcher") or {}),
        allocation=parse_allocation(data.get("allocation") or {}),
        idempotency=_simple("idempotency", data.get("idempotency") or {}, IdempotencyConfig),
        queue=_simple("queue", data.get("queue") or {}, QueueConfig),
        broadcast=parse_broadcast(data.get("broadcast") or {}),
        logging=_simple("logging", data.get("logging") or {}, LoggingConfig),
        checksum=compute_checksum(data),
    )


def compute_checksum(data: dict[str, Any]) -> str:
    """
    Deterministic SHA-256 of the configuration document, secrets excluded.
    """
    redacted = dict(data)
    if "processor" in redacted:
        redacted["processor"] = {
            k: v for k, v in (redacted["processor"] or {}).items()
            if k not in ("api_key", "webhook_secret")
        }
    if "broadcast" in redacted and isinstance(redacted["broadcast"], dict):
        broadcast = dict(redacted["broadcast"])
        if isinstance(broadcast.get("smtp"), dict):
            broadcast["smtp"] = {
                k: v for k, v in broadcast["smtp"].items() if k != "password"
            }
        redacted["broadcast"] = broadcast
    canonical = json.dumps(redacted, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()
