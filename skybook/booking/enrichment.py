"""Concurrent per-offer detail fetch.

Each branch returns an ``EnrichmentResult`` instead of raising, and the
reduction substitutes the basic offer for any failed branch. One bad offer
never costs the caller the rest of the batch.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from skybook.config import settings
from skybook.duffel.client import InventoryProvider
from skybook.duffel.transform import OfferNormalizer
from skybook.errors import EnrichmentError
from skybook.obs.logger import log_event
from skybook.obs.metrics import inc_counter
from skybook.types import Offer


@dataclass(frozen=True)
class EnrichmentResult:
    offer_id: str
    offer: Optional[Offer] = None
    error: Optional[EnrichmentError] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.offer is not None


async def enrich_one(provider: InventoryProvider, normalizer: OfferNormalizer, offer_id: str) -> EnrichmentResult:
    try:
        raw = await provider.get_offer(offer_id, services=True)
        return EnrichmentResult(offer_id=offer_id, offer=normalizer.normalize(raw))
    except Exception as e:
        return EnrichmentResult(offer_id=offer_id, error=EnrichmentError(offer_id, e))


def reduce_results(base: List[Offer], results: List[EnrichmentResult]) -> List[Offer]:
    """Position-wise merge: enriched offer where the branch succeeded, basic offer otherwise."""
    merged = []
    for offer, result in zip(base, results):
        if result.ok:
            merged.append(result.offer)
            continue
        inc_counter("offer_enrichment_degraded")
        log_event("offer_enrichment_failed", level="WARN", offer_id=offer.id,
                  error=str(result.error.cause) if result.error else "empty result")
        merged.append(offer)
    return merged


async def enrich_offers(provider: InventoryProvider, normalizer: OfferNormalizer,
                        raw_offers: List[Dict[str, Any]], concurrency: Optional[int] = None) -> List[Offer]:
    base = normalizer.normalize_all(raw_offers)
    if not base:
        return []

    # Limit concurrent detail calls to avoid overwhelming the provider
    semaphore = asyncio.Semaphore(concurrency or settings.ENRICHMENT_CONCURRENCY)

    async def limited(offer_id: str) -> EnrichmentResult:
        async with semaphore:
            return await enrich_one(provider, normalizer, offer_id)

    results = await asyncio.gather(*[limited(o.id) for o in base])
    return reduce_results(base, list(results))
