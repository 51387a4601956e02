"""Abstract base class for lead marketplaces.

Defines the single submission call the pipeline needs. Any backend
(LeadProsper, a test double, etc.) implements this ABC.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional

from intake.categories.schema import MarketplaceRouting


@dataclass
class MarketplaceResponse:
    """Outcome of one submission attempt, as reported by the marketplace."""

    success: bool
    lead_id: Optional[str] = None
    status: str = ""
    code: Optional[int] = None            # HTTP status, None on transport failure
    message: str = ""
    raw: dict[str, Any] = field(default_factory=dict)


class MarketplaceClient(ABC):
    """Abstract lead marketplace backend."""

    @abstractmethod
    async def submit(
        self, payload: dict[str, Any], routing: MarketplaceRouting,
    ) -> MarketplaceResponse:
        """Send one assembled lead.

        Args:
            payload: Normalized, validated lead fields.
            routing: Campaign / supplier / key triple for the category.

        Returns:
            A MarketplaceResponse. Rejections and transport failures are
            reported with ``success=False``, not raised.
        """
