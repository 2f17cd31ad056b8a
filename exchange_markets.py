import logging
import threading
import time
from typing import Callable, Dict, Optional, Sequence, Set

try:
    import ccxt  # type: ignore
except ImportError:  # pragma: no cover
    ccxt = None

from archive_catalog import Market

LISTING_TTL_SEC = 3600

EXCHANGE_IDS = {
    Market.SPOT: "binance",
    Market.FUTURES: "binanceusdm",
}


def create_exchange(market: Market):
    if ccxt is None:
        raise RuntimeError("ccxt is not installed. Please install the project dependencies")
    exchange_cls = getattr(ccxt, EXCHANGE_IDS[market])
    return exchange_cls({"enableRateLimit": True})


def load_listed_pairs(market: Market, logger: logging.Logger) -> Set[str]:
    """Base/quote pairs ("BTC/USDT") listed on the exchange for a market, active or not."""
    ex = create_exchange(market)
    try:
        markets = ex.load_markets()
    finally:
        if hasattr(ex, "close"):
            ex.close()
    out: Set[str] = set()
    for m in markets.values():
        base, quote = m.get("base"), m.get("quote")
        if not base or not quote:
            continue
        if market == Market.SPOT and not m.get("spot"):
            continue
        if market == Market.FUTURES and not m.get("linear"):
            continue
        out.add(f"{base}/{quote}".upper())
    logger.info(f"Loaded {len(out)} {market.value} pairs from {EXCHANGE_IDS[market]}")
    return out


class ExchangeListings:
    """Cached view of which pairs Binance lists, per market."""

    def __init__(
        self,
        logger: logging.Logger,
        ttl: float = LISTING_TTL_SEC,
        loader: Callable[[Market, logging.Logger], Set[str]] = load_listed_pairs,
    ):
        self.logger = logger
        self.ttl = ttl
        self._loader = loader
        self._cache: Dict[Market, Set[str]] = {}
        self._loaded_at: Dict[Market, float] = {}
        self._lock = threading.Lock()

    def pairs(self, market: Market) -> Optional[Set[str]]:
        with self._lock:
            fresh = (time.time() - self._loaded_at.get(market, 0.0)) < self.ttl
            if market in self._cache and fresh:
                return self._cache[market]
        try:
            listed = self._loader(market, self.logger)
        except Exception as e:
            # keep serving the previous listing when the exchange cannot be reached
            self.logger.warning(f"Could not load {market.value} listings: {e}")
            with self._lock:
                return self._cache.get(market)
        with self._lock:
            self._cache[market] = listed
            self._loaded_at[market] = time.time()
        return listed

    def is_listed(self, pair: Sequence[str], market: Market) -> Optional[bool]:
        """True/False when known, None when the listing could not be loaded."""
        listed = self.pairs(market)
        if listed is None:
            return None
        return "/".join(p.upper() for p in pair) in listed
