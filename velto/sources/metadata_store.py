"""
MetadataStore: read-only facade over the off-chain market metadata store.

Resolves a market slug to descriptive metadata and to the ledger contract
addresses of its engine, vAMM and position registry. Unavailability never
fails a view: every method degrades to None or an empty list.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, TYPE_CHECKING

import httpx

from velto.core.json_utils import dumps
from velto.core.types import ContractInfo, Market, MarketMetadata
from velto.sources.postgrest import PostgrestClient

if TYPE_CHECKING:
    from velto.monitoring.metrics import TradingMetrics

log = logging.getLogger("velto")

_METADATA_COLUMNS = "id,name,slug,description,logo_url,industry_id"
_CONTRACT_COLUMNS = (
    "startup_id,perp_engine_address,perp_market_address,position_manager_address,chain_id,deployment_block"
)


def _metadata_from_row(row: Dict[str, Any]) -> MarketMetadata:
    return MarketMetadata(
        id=str(row["id"]),
        slug=row["slug"],
        name=row.get("name") or row["slug"],
        description=row.get("description") or "",
        logo_url=row.get("logo_url") or "",
        industry_id=str(row["industry_id"]) if row.get("industry_id") is not None else None,
    )


def _contracts_from_row(row: Dict[str, Any]) -> ContractInfo:
    return ContractInfo(
        market_id=str(row["startup_id"]),
        engine=row["perp_engine_address"],
        vamm=row["perp_market_address"],
        position_registry=row["position_manager_address"],
        chain_id=int(row["chain_id"]),
        deployment_block=int(row.get("deployment_block") or 0),
    )


class MetadataStore:
    """
    Usage:
        store = MetadataStore(PostgrestClient(cfg.metadata_url, cfg.metadata_key))
        market = await store.get_market("acme")
        if market and market.is_tradable:
            ...
    """

    def __init__(
        self,
        client: Optional[PostgrestClient],
        metrics: Optional["TradingMetrics"] = None,
        log_event_callback: Optional[Callable[..., None]] = None,
    ) -> None:
        self._client = client
        self._metrics = metrics
        self._log_event = log_event_callback or self._default_log

    def _default_log(self, event: str, **kwargs: Any) -> None:
        payload = {"event": event, **kwargs}
        log.warning(dumps(payload))

    @property
    def available(self) -> bool:
        return self._client is not None

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()

    async def _select(self, table: str, params: Dict[str, Any], context: str) -> List[Dict[str, Any]]:
        if self._client is None:
            return []
        try:
            return await self._client.select(table, params)
        except (httpx.HTTPError, ValueError) as exc:
            self._log_event("metadata_unavailable", table=table, context=context, error=str(exc))
            if self._metrics:
                self._metrics.source_errors.labels(source="metadata").inc()
            return []

    async def get_market_metadata(self, slug: str) -> Optional[MarketMetadata]:
        rows = await self._select(
            "startups",
            {"select": _METADATA_COLUMNS, "slug": f"eq.{slug}", "limit": 1},
            context=slug,
        )
        if not rows:
            return None
        try:
            return _metadata_from_row(rows[0])
        except (KeyError, TypeError) as exc:
            self._log_event("metadata_malformed", context=slug, error=str(exc))
            return None

    async def get_all_markets_metadata(self) -> List[MarketMetadata]:
        rows = await self._select("startups", {"select": _METADATA_COLUMNS, "order": "name"}, context="all")
        out: List[MarketMetadata] = []
        for row in rows:
            try:
                out.append(_metadata_from_row(row))
            except (KeyError, TypeError) as exc:
                self._log_event("metadata_malformed", context=row.get("slug"), error=str(exc))
        return out

    async def get_markets_by_industry(self, industry_slug: str) -> List[MarketMetadata]:
        industries = await self._select(
            "industries", {"select": "id", "slug": f"eq.{industry_slug}", "limit": 1}, context=industry_slug
        )
        if not industries:
            return []
        rows = await self._select(
            "startups",
            {"select": _METADATA_COLUMNS, "industry_id": f"eq.{industries[0]['id']}", "order": "name"},
            context=industry_slug,
        )
        out: List[MarketMetadata] = []
        for row in rows:
            try:
                out.append(_metadata_from_row(row))
            except (KeyError, TypeError) as exc:
                self._log_event("metadata_malformed", context=row.get("slug"), error=str(exc))
        return out

    async def get_market_contract_info(self, market_id: str) -> Optional[ContractInfo]:
        rows = await self._select(
            "market_contracts",
            {
                "select": _CONTRACT_COLUMNS,
                "startup_id": f"eq.{market_id}",
                "is_active": "eq.true",
                "limit": 1,
            },
            context=market_id,
        )
        if not rows:
            return None
        try:
            return _contracts_from_row(rows[0])
        except (KeyError, TypeError, ValueError) as exc:
            self._log_event("metadata_malformed", context=market_id, error=str(exc))
            return None

    async def get_market_contract_info_by_slug(self, slug: str) -> Optional[ContractInfo]:
        metadata = await self.get_market_metadata(slug)
        if metadata is None:
            return None
        return await self.get_market_contract_info(metadata.id)

    async def get_market(self, slug: str) -> Optional[Market]:
        """Metadata plus contract addresses; contracts is None for undeployed markets."""
        metadata = await self.get_market_metadata(slug)
        if metadata is None:
            return None
        contracts = await self.get_market_contract_info(metadata.id)
        return Market(metadata=metadata, contracts=contracts)

    async def get_all_markets(self) -> List[Market]:
        metadata_list = await self.get_all_markets_metadata()
        contracts = await asyncio.gather(*(self.get_market_contract_info(m.id) for m in metadata_list))
        return [Market(metadata=m, contracts=c) for m, c in zip(metadata_list, contracts)]
