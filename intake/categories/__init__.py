"""Per-category intake configuration: schema models and cached loader."""

from .loader import CategoryConfigLoader, load_categories_jsonl
from .schema import (
    CategoryConfig,
    CategoryConfigSet,
    FieldDefinition,
    FieldSource,
    FieldType,
    FlowStep,
    MarketplaceRouting,
)

__all__ = [
    "CategoryConfig",
    "CategoryConfigLoader",
    "CategoryConfigSet",
    "FieldDefinition",
    "FieldSource",
    "FieldType",
    "FlowStep",
    "MarketplaceRouting",
    "load_categories_jsonl",
]
