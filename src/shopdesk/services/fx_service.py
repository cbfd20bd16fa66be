from __future__ import annotations

import logging
import time
from typing import Callable, Optional

import requests

from shopdesk.domain.errors import FxUnavailableError, ValidationError
from shopdesk.domain.models import Currency, ExchangeRate

log = logging.getLogger("shopdesk.fx")

OPENEXCHANGE_URL = "https://openexchangerates.org/api/latest.json"


def parse_currency(value: Currency | str) -> Currency:
    try:
        return Currency(value.upper() if isinstance(value, str) else value)
    except ValueError:
        raise ValidationError(f"Unsupported currency: {value}") from None


def convert(amount: float, from_currency: Currency | str, to_currency: Currency | str, rate: Optional[ExchangeRate]) -> float:
    """Convert between TRY and USD with the given rate pair.

    Without a rate the amount comes back unchanged, so displays keep working
    while the first fetch is pending or failing.
    """
    src = parse_currency(from_currency)
    dst = parse_currency(to_currency)
    if rate is None or src == dst:
        return float(amount)
    if dst == Currency.TRY:
        return float(amount) * rate.usd_to_try
    return float(amount) * rate.try_to_usd


def convert_to_try(amount: float, from_currency: Currency | str = Currency.USD, rate: Optional[ExchangeRate] = None) -> float:
    return convert(amount, from_currency, Currency.TRY, rate)


def convert_to_usd(amount: float, from_currency: Currency | str = Currency.TRY, rate: Optional[ExchangeRate] = None) -> float:
    return convert(amount, from_currency, Currency.USD, rate)


class FxService:
    def __init__(
        self,
        repo,
        api_key: str = "",
        ttl_seconds: int = 3600,
        retries: int = 2,
        backoff_seconds: float = 0.5,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.repo = repo
        self.api_key = api_key
        self.ttl_seconds = int(ttl_seconds)
        self.retries = max(0, int(retries))
        self.backoff_seconds = float(backoff_seconds)
        self.clock = clock
        self.sleep = sleep

    def _fetch_json(self) -> dict:
        r = requests.get(
            OPENEXCHANGE_URL,
            params={"app_id": self.api_key, "symbols": "TRY,USD"},
            timeout=10,
        )
        r.raise_for_status()
        return r.json()

    def _validate_rate(self, value: object) -> float:
        rate = float(value)
        if rate <= 0:
            raise FxUnavailableError(f"FX rate must be > 0. Received: {rate}")
        return rate

    def _extract_rate(self, data: dict) -> ExchangeRate:
        # rates are quoted against USD: {"timestamp": 1700000000, "rates": {"TRY": 32.1, "USD": 1}}
        rates = data.get("rates") if isinstance(data, dict) else None
        if not isinstance(rates, dict) or rates.get("TRY") is None:
            raise FxUnavailableError(f"FX API response missing TRY rate. Raw: {data}")
        usd_to_try = self._validate_rate(rates["TRY"])
        now = float(self.clock())
        return ExchangeRate(
            usd_to_try=usd_to_try,
            try_to_usd=1 / usd_to_try,
            timestamp=float(data.get("timestamp") or now),
            fetched_at=now,
        )

    def refresh(self) -> ExchangeRate:
        """Fetch a fresh rate pair and cache it. Raises FxUnavailableError on failure."""
        if not self.api_key:
            raise FxUnavailableError("FX API key is not configured.")

        last_err: Exception | None = None
        for attempt in range(self.retries + 1):
            if attempt:
                self.sleep(self.backoff_seconds * attempt)
            try:
                rate = self._extract_rate(self._fetch_json())
            except (requests.RequestException, ValueError, FxUnavailableError) as e:
                last_err = e
                log.warning("fx_fetch_failed attempt=%s error=%s", attempt + 1, e)
                continue
            self.repo.set_fx_rate(rate)
            log.info("fx_rate_refreshed usd_try=%.4f", rate.usd_to_try)
            return rate

        raise FxUnavailableError(f"FX fetch failed. Last error: {last_err}")

    def cached_rate(self) -> Optional[ExchangeRate]:
        """Last stored pair, fresh or not. Never touches the network."""
        return self.repo.get_latest_fx_rate()

    def get_rate(self) -> Optional[ExchangeRate]:
        cached = self.repo.get_latest_fx_rate()
        if cached is not None and float(self.clock()) - cached.fetched_at < self.ttl_seconds:
            return cached

        try:
            return self.refresh()
        except FxUnavailableError as e:
            if cached is not None:
                log.warning("fx_fallback_cached usd_try=%.4f error=%s", cached.usd_to_try, e)
                return cached
            log.warning("fx_unavailable_identity_conversion error=%s", e)
            return None

    def converter(self, display_currency: Currency | str) -> Callable[[float, Currency | str], float]:
        target = parse_currency(display_currency)
        rate = self.get_rate()

        def to_display(amount: float, currency: Currency | str) -> float:
            return convert(amount, currency, target, rate)

        return to_display
