"""Pydantic models for the declarative operator document.

These models provide:
1. Type-safe YAML parsing
2. Validation at the boundary (fail fast, fail loudly)
3. Conversion into the runtime objects used by a pass
"""

from __future__ import annotations

import re
from typing import Annotated

from pydantic import BaseModel, Field, field_validator, model_validator

from .filters import FilterAction, FilterEvaluator, FilterRule
from .records import normalize_name

VALID_SUBSCRIPTION_ID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"
VALID_DOMAIN_PATTERN = r"^(?=.{1,253}$)([a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?\.)+[a-z]{2,63}$"
VALID_ACCOUNT_NAME_PATTERN = r"^[a-z0-9][a-z0-9_.-]{0,62}$"
# Azure DNS metadata keys must be alphanumeric
VALID_METADATA_KEY_PATTERN = r"^[a-z][a-z0-9]{0,63}$"
VALID_RECORD_TYPE_PATTERN = r"^[A-Z][A-Z0-9]{0,9}$"

ROOT_ACCOUNT_NAME = "root"


def _validate_subscription_id(v: str) -> str:
    v = v.lower()
    if not re.match(VALID_SUBSCRIPTION_ID_PATTERN, v):
        raise ValueError(f"subscriptionId must be a valid GUID: {v}")
    return v


class AccountConfig(BaseModel):
    """A subscription that owns subdomain zones."""

    model_config = {"extra": "ignore", "populate_by_name": True, "frozen": True}

    name: Annotated[str, Field(min_length=1, max_length=63)]
    subscription_id: str = Field(alias="subscriptionId")
    # User-assigned managed identity to act as in this subscription
    client_id: str | None = Field(None, alias="clientId")
    # Scan Front Door custom domains for pending certificate validations
    certificates: bool = True

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        v = v.lower()
        if not re.match(VALID_ACCOUNT_NAME_PATTERN, v):
            raise ValueError(f"name must match {VALID_ACCOUNT_NAME_PATTERN}: {v}")
        if v == ROOT_ACCOUNT_NAME:
            raise ValueError(f"'{ROOT_ACCOUNT_NAME}' is reserved for the root zone account")
        return v

    @field_validator("subscription_id")
    @classmethod
    def validate_subscription(cls, v: str) -> str:
        return _validate_subscription_id(v)


class RootZoneConfig(BaseModel):
    """The authoritative zone and the subscription that owns it."""

    model_config = {"extra": "ignore", "populate_by_name": True, "frozen": True}

    domain: str
    subscription_id: str = Field(alias="subscriptionId")
    resource_group: Annotated[str, Field(min_length=1, max_length=90)] = Field(
        alias="resourceGroup"
    )
    client_id: str | None = Field(None, alias="clientId")
    certificates: bool = True

    @field_validator("domain")
    @classmethod
    def validate_domain(cls, v: str) -> str:
        v = normalize_name(v)
        if not re.match(VALID_DOMAIN_PATTERN, v):
            raise ValueError(f"domain must be a fully qualified DNS name: {v}")
        return v

    @field_validator("subscription_id")
    @classmethod
    def validate_subscription(cls, v: str) -> str:
        return _validate_subscription_id(v)

    def as_account(self) -> AccountConfig:
        """The root subscription seen as an account (reads and validations)."""
        return AccountConfig.model_construct(
            name=ROOT_ACCOUNT_NAME,
            subscription_id=self.subscription_id,
            client_id=self.client_id,
            certificates=self.certificates,
        )


class FilterRuleConfig(BaseModel):
    """One allow/deny rule."""

    model_config = {"extra": "ignore"}

    action: FilterAction
    subdomain: str = "*"
    record: str = "*"
    types: list[str] = Field(default_factory=list)

    @field_validator("types")
    @classmethod
    def validate_types(cls, v: list[str]) -> list[str]:
        types = [t.upper() for t in v]
        for t in types:
            if not re.match(VALID_RECORD_TYPE_PATTERN, t):
                raise ValueError(f"invalid record type: {t}")
        return types

    def to_rule(self) -> FilterRule:
        return FilterRule(
            action=self.action,
            subdomain=self.subdomain,
            record=self.record,
            types=frozenset(self.types),
        )


class RecordSettings(BaseModel):
    """How managed root-zone records are written and recognized."""

    model_config = {"extra": "ignore", "populate_by_name": True, "frozen": True}

    # Value of the "managedby" metadata marking record sets this operator owns
    owner_id: Annotated[str, Field(min_length=1, max_length=64)] = Field(
        "dns-delegation-operator", alias="ownerId"
    )
    promote_tag: str = Field("promoteto", alias="promoteTag")
    delegation_ttl: Annotated[int, Field(ge=60, le=172800)] = Field(86400, alias="delegationTtl")
    promotion_ttl: Annotated[int, Field(ge=30, le=86400)] = Field(300, alias="promotionTtl")
    validation_ttl: Annotated[int, Field(ge=30, le=86400)] = Field(3600, alias="validationTtl")

    @field_validator("promote_tag")
    @classmethod
    def validate_promote_tag(cls, v: str) -> str:
        v = v.lower()
        if not re.match(VALID_METADATA_KEY_PATTERN, v):
            raise ValueError(f"promoteTag must be an alphanumeric metadata key: {v}")
        return v


class ControllerSpec(BaseModel):
    """Top-level operator document."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    root_zone: RootZoneConfig = Field(alias="rootZone")
    accounts: list[AccountConfig] = Field(default_factory=list)
    filters: list[FilterRuleConfig] = Field(default_factory=list)
    records: RecordSettings = Field(default_factory=RecordSettings)

    @model_validator(mode="after")
    def validate_accounts(self) -> ControllerSpec:
        names = [a.name for a in self.accounts]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"duplicate account names: {duplicates}")
        return self

    @property
    def domain(self) -> str:
        return self.root_zone.domain

    def filter_evaluator(self) -> FilterEvaluator:
        return FilterEvaluator(rule.to_rule() for rule in self.filters)
