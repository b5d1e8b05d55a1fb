"""AGMARKNET fetcher (data.gov.in daily mandi prices).

Endpoint: https://api.data.gov.in/resource/9ef84268-d588-465a-a308-a864a43d0070
Auth: api-key query parameter (required)
Format: all numeric fields are string-encoded, dates are dd/mm/YYYY
"""

import logging
from datetime import datetime

from ..models import PriceObservation
from .base import (
    BaseFetcher,
    FetcherError,
    latest_observation,
    parse_date,
    parse_number,
    register_fetcher,
)

logger = logging.getLogger(__name__)


@register_fetcher
class AgmarknetFetcher(BaseFetcher):
    """Fetcher for the AGMARKNET daily price resource on data.gov.in.

    Records look like::

        {"state": "Punjab", "market": "Khanna", "commodity": "Wheat",
         "arrival_date": "14/10/2025", "min_price": "2100",
         "max_price": "2300", "modal_price": "2200", "arrivals": "35"}

    Only the most recent record is reported, one observation per round.
    """

    name = "agmarknet"
    requires_api_key = True
    BASE_URL = "https://api.data.gov.in/resource/9ef84268-d588-465a-a308-a864a43d0070"
    RECORD_LIMIT = 10
    DATE_FORMATS = ("%d/%m/%Y", "%d-%m-%Y", "%Y-%m-%d")

    async def fetch(
        self, commodity: str, location: str | None = None
    ) -> list[PriceObservation]:
        """Fetch the latest AGMARKNET record for a commodity.

        :param commodity: Commodity name (e.g., "Wheat").
        :param location: Optional market name filter.
        :returns: Zero or one observation.
        :raises FetcherError: On transport failure or missing API key.
        """
        params = {
            "api-key": self._require_api_key(),
            "format": "json",
            "limit": str(self.RECORD_LIMIT),
            "filters[commodity]": commodity,
        }
        if location:
            params["filters[market]"] = location

        data = await self._get_json(self.BASE_URL, params=params)
        if not isinstance(data, dict):
            raise FetcherError(f"[agmarknet] Unexpected payload type: {type(data).__name__}")

        records = data.get("records") or []
        candidates = [
            parsed for parsed in (self._parse_record(commodity, r) for r in records) if parsed
        ]
        if not candidates:
            logger.info(f"[agmarknet] No usable records for {commodity}")
            return []
        return [latest_observation(candidates)]

    def _parse_record(
        self, commodity: str, record: dict
    ) -> tuple[datetime | None, PriceObservation] | None:
        try:
            modal = parse_number(record.get("modal_price"))
            low = parse_number(record.get("min_price"))
            high = parse_number(record.get("max_price"))
            if modal is None or low is None or high is None:
                logger.warning(f"[agmarknet] Skipping record without prices: {record}")
                return None

            observed_at = parse_date(record.get("arrival_date"), self.DATE_FORMATS)
            arrivals = parse_number(record.get("arrivals")) or 0.0

            kwargs = {}
            if observed_at is not None:
                kwargs["observed_at"] = observed_at
            return observed_at, PriceObservation(
                source=self.name,
                commodity=commodity,
                min_price=low,
                max_price=high,
                modal_price=modal,
                arrivals=int(arrivals),
                market=record.get("market"),
                state=record.get("state"),
                **kwargs,
            )
        except (AttributeError, TypeError) as e:
            logger.warning(f"[agmarknet] Failed to parse record {record}: {e}")
            return None
