from .base import MarketplaceClient, MarketplaceResponse
from .leadprosper import LeadProsperClient

__all__ = ["LeadProsperClient", "MarketplaceClient", "MarketplaceResponse"]
