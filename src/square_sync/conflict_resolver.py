"""
Field-level conflict detection and resolution between Square and the platform.

Outcomes come from a fixed policy table, never from timestamps or other
runtime state, so the same conflict always resolves the same way.
"""

from collections import Counter
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping

import structlog
from pydantic import BaseModel

logger = structlog.get_logger(__name__)


class _Missing:
    """Stands in for a field that one record does not have."""

    _instance: "_Missing | None" = None

    def __new__(cls) -> "_Missing":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING: Any = _Missing()


class ResolutionSource(str, Enum):
    SQUARE = "square"
    PLATFORM = "platform"


@dataclass(frozen=True)
class Conflict:
    """One field whose values differ between the two records."""
    field: str
    square_value: Any
    platform_value: Any


@dataclass(frozen=True)
class Resolution:
    field: str
    source: ResolutionSource
    resolved_value: Any
    reason: str


@dataclass(frozen=True)
class FieldPolicy:
    source: ResolutionSource
    reason: str


PRICING_POLICY = FieldPolicy(ResolutionSource.PLATFORM, "platform is source of truth for pricing")
CONTENT_POLICY = FieldPolicy(ResolutionSource.SQUARE, "provider has more complete data")
STOCK_POLICY = FieldPolicy(ResolutionSource.SQUARE, "Square POS is source of truth for stock keeping")
MERCHANDISING_POLICY = FieldPolicy(ResolutionSource.PLATFORM, "platform controls merchandising and visibility")
DEFAULT_POLICY = FieldPolicy(ResolutionSource.PLATFORM, "no policy defined, defaulting to authoritative source")

DEFAULT_POLICIES: dict[str, FieldPolicy] = {
    "price": PRICING_POLICY,
    "currency": PRICING_POLICY,
    "name": CONTENT_POLICY,
    "description": CONTENT_POLICY,
    "sku": STOCK_POLICY,
    "quantity": STOCK_POLICY,
    "category_id": MERCHANDISING_POLICY,
    "images": MERCHANDISING_POLICY,
    "is_active": MERCHANDISING_POLICY,
    "is_public": MERCHANDISING_POLICY,
}


def _as_mapping(record: Mapping[str, Any] | BaseModel) -> Mapping[str, Any]:
    if isinstance(record, BaseModel):
        return record.model_dump()
    return record


def _differs(a: Any, b: Any) -> bool:
    """Strict inequality: values of different types always differ."""
    if a is b:
        return False
    if type(a) is not type(b):
        return True
    return a != b


def detect_conflicts(
    square_record: Mapping[str, Any] | BaseModel,
    platform_record: Mapping[str, Any] | BaseModel,
) -> list[Conflict]:
    """
    Compare two same-shaped records field by field (shallow).

    A field present on only one side conflicts with MISSING. Swapping the
    arguments reports the same field names with the values swapped.
    """
    square = _as_mapping(square_record)
    platform = _as_mapping(platform_record)

    fields = sorted(set(square) | set(platform))
    conflicts = []
    for name in fields:
        square_value = square.get(name, MISSING)
        platform_value = platform.get(name, MISSING)
        if _differs(square_value, platform_value):
            conflicts.append(Conflict(field=name, square_value=square_value, platform_value=platform_value))
    return conflicts


class ConflictResolver:
    """
    Resolves conflicts with a per-field policy table.

    Example:
        resolver = ConflictResolver()
        resolutions = resolver.resolve_all(detect_conflicts(square, platform))
        merged = resolver.apply_resolutions(platform, resolutions)
    """

    def __init__(self, policies: Mapping[str, FieldPolicy] | None = None):
        self._policies = dict(DEFAULT_POLICIES)
        if policies:
            self._policies.update(policies)

    def policy_for(self, field: str) -> FieldPolicy:
        return self._policies.get(field, DEFAULT_POLICY)

    def resolve(self, conflict: Conflict) -> Resolution:
        policy = self.policy_for(conflict.field)
        if policy.source is ResolutionSource.SQUARE:
            value = conflict.square_value
        else:
            value = conflict.platform_value
        return Resolution(
            field=conflict.field,
            source=policy.source,
            resolved_value=value,
            reason=policy.reason,
        )

    def resolve_all(self, conflicts: list[Conflict]) -> list[Resolution]:
        resolutions = [self.resolve(conflict) for conflict in conflicts]
        if resolutions:
            logger.debug("Conflicts resolved", fields=[r.field for r in resolutions], **self.summarize(resolutions))
        return resolutions

    @staticmethod
    def apply_resolutions(
        base: Mapping[str, Any],
        resolutions: list[Resolution],
    ) -> dict[str, Any]:
        """
        Merge resolved values into a copy of base.

        A resolution to MISSING removes the field.
        """
        merged = dict(base)
        for resolution in resolutions:
            if resolution.resolved_value is MISSING:
                merged.pop(resolution.field, None)
            else:
                merged[resolution.field] = resolution.resolved_value
        return merged

    @staticmethod
    def summarize(resolutions: list[Resolution]) -> dict[str, int]:
        counts = Counter(r.source.value for r in resolutions)
        return {
            "total": len(resolutions),
            "square_wins": counts.get(ResolutionSource.SQUARE.value, 0),
            "platform_wins": counts.get(ResolutionSource.PLATFORM.value, 0),
        }

    @staticmethod
    def describe(resolutions: list[Resolution]) -> str | None:
        """One-line summary stored on the product mapping."""
        if not resolutions:
            return None
        return "; ".join(f"{r.field}: {r.source.value} ({r.reason})" for r in resolutions)
