"""LeadProsper direct-post client."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from intake.categories.schema import MarketplaceRouting
from intake.marketplace.base import MarketplaceClient, MarketplaceResponse

log = logging.getLogger("intake.marketplace")

# Statuses LeadProsper reports with a 2xx that still mean "not accepted"
_REJECTED_STATUSES = {"ERROR", "REJECTED", "DUPLICATED"}


class LeadProsperClient(MarketplaceClient):
    """POSTs leads to ``{base_url}?hash={lp_key}`` as JSON."""

    def __init__(
        self,
        base_url: str = "https://api.leadprosper.io/direct_post",
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url
        self._timeout = timeout
        self._transport = transport

    async def submit(
        self, payload: dict[str, Any], routing: MarketplaceRouting,
    ) -> MarketplaceResponse:
        body = {
            "lp_campaign_id": routing.lp_campaign_id,
            "lp_supplier_id": routing.lp_supplier_id,
            "lp_key": routing.lp_key,
            **payload,
        }
        log.info(
            "Submitting lead to LeadProsper (campaign %s, %d fields)",
            routing.lp_campaign_id, len(payload),
        )

        try:
            async with httpx.AsyncClient(
                timeout=self._timeout, transport=self._transport,
            ) as client:
                resp = await client.post(
                    self._base_url, params={"hash": routing.lp_key}, json=body,
                )
        except httpx.TimeoutException as exc:
            log.error("LeadProsper submission timed out after %ss", self._timeout)
            return MarketplaceResponse(
                success=False, status="TRANSPORT_ERROR", message=f"Timed out: {exc}",
            )
        except httpx.HTTPError as exc:
            log.error("LeadProsper submission failed: %s", exc)
            return MarketplaceResponse(
                success=False, status="TRANSPORT_ERROR", message=str(exc),
            )

        try:
            data = resp.json()
        except ValueError:
            data = {"body": resp.text[:2000]}
        if not isinstance(data, dict):
            data = {"body": data}

        status = str(data.get("status") or "").upper()
        message = str(data.get("message") or data.get("error") or "")
        lead_id = data.get("lead_id") or data.get("id")

        if resp.is_success and status not in _REJECTED_STATUSES and lead_id:
            log.info("LeadProsper accepted lead %s (status %s)", lead_id, status or "OK")
            return MarketplaceResponse(
                success=True,
                lead_id=str(lead_id),
                status=status or "ACCEPTED",
                code=resp.status_code,
                message=message or "Lead submitted successfully",
                raw=data,
            )

        log.warning(
            "LeadProsper rejected lead: HTTP %s status=%s message=%s",
            resp.status_code, status, message,
        )
        return MarketplaceResponse(
            success=False,
            lead_id=str(lead_id) if lead_id else None,
            status=status or "ERROR",
            code=resp.status_code,
            message=message or f"HTTP {resp.status_code}",
            raw=data,
        )
