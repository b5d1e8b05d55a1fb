"""data.gov.in variety-wise commodity price fetcher.

Endpoint: https://api.data.gov.in/resource/35985678-0d79-46b4-9ed6-6f13308a1d24
Auth: api-key query parameter (public sample key used when none configured)
Format: capitalized field names, numeric prices, Arrival_Date as dd/mm/YYYY
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
class DataGovFetcher(BaseFetcher):
    """Fetcher for the variety-wise daily market price resource.

    Field names differ from AGMARKNET (``Modal_Price`` vs ``modal_price``,
    ``Arrival_Date`` vs ``arrival_date``) and prices are numbers rather than
    strings. Both spellings are accepted.
    """

    name = "datagov"
    BASE_URL = "https://api.data.gov.in/resource/35985678-0d79-46b4-9ed6-6f13308a1d24"

    # Rate-limited public key published in the data.gov.in API docs
    SAMPLE_API_KEY = "579b464db66ec23bdd000001cdd3946e44ce4aad7209ff7b23ac571b"
    RECORD_LIMIT = 10
    DATE_FORMATS = ("%d/%m/%Y", "%Y-%m-%d", "%d-%m-%Y")

    FIELD_ALIASES = {
        "min_price": ("Min_Price", "min_price", "Min Price"),
        "max_price": ("Max_Price", "max_price", "Max Price"),
        "modal_price": ("Modal_Price", "modal_price", "Modal Price"),
        "arrivals": ("Arrivals", "arrivals", "Arrivals_Tonnes"),
        "date": ("Arrival_Date", "date", "arrival_date"),
        "market": ("Market", "market"),
        "state": ("State", "state"),
    }

    async def fetch(
        self, commodity: str, location: str | None = None
    ) -> list[PriceObservation]:
        """Fetch the latest record for a commodity.

        :param commodity: Commodity name (e.g., "Onion").
        :param location: Optional market name filter.
        :returns: Zero or one observation.
        :raises FetcherError: On transport failure.
        """
        params = {
            "api-key": self.api_key if self.has_api_key else self.SAMPLE_API_KEY,
            "format": "json",
            "limit": str(self.RECORD_LIMIT),
            "filters[Commodity]": commodity,
        }
        if location:
            params["filters[Market]"] = location

        data = await self._get_json(self.BASE_URL, params=params)
        if not isinstance(data, dict):
            raise FetcherError(f"[datagov] Unexpected payload type: {type(data).__name__}")

        candidates = []
        for record in data.get("records") or []:
            parsed = self._parse_record(commodity, record)
            if parsed is not None:
                candidates.append(parsed)

        if not candidates:
            logger.info(f"[datagov] No usable records for {commodity}")
            return []
        return [latest_observation(candidates)]

    def _field(self, record: dict, key: str):
        for alias in self.FIELD_ALIASES[key]:
            if alias in record:
                return record[alias]
        return None

    def _parse_record(
        self, commodity: str, record: dict
    ) -> tuple[datetime | None, PriceObservation] | None:
        if not isinstance(record, dict):
            logger.warning(f"[datagov] Skipping non-object record: {record!r}")
            return None

        modal = parse_number(self._field(record, "modal_price"))
        low = parse_number(self._field(record, "min_price"))
        high = parse_number(self._field(record, "max_price"))
        if modal is None or low is None or high is None:
            logger.warning(f"[datagov] Skipping record without prices: {record}")
            return None

        observed_at = parse_date(self._field(record, "date"), self.DATE_FORMATS)
        arrivals = parse_number(self._field(record, "arrivals")) or 0.0

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
            market=self._field(record, "market"),
            state=self._field(record, "state"),
            **kwargs,
        )
