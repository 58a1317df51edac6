import json
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, Iterable, List, Optional, Tuple

import requests

from .errors import (
    AssetNotFound,
    DataFeedBlocked,
    DataFeedUnavailable,
    InvalidPayload,
    MarketDataError,
    UpstreamHTTPError,
)
from .models import FundingRateData, OpenInterestData, Ticker, to_float

logger = logging.getLogger(__name__)

FUTURES_API = 'https://fapi.binance.com/fapi/v1'
SPOT_API = 'https://api.binance.com/api/v3'

MAJOR_PAIRS = [
    'BTCUSDT', 'ETHUSDT', 'BNBUSDT', 'SOLUSDT', 'XRPUSDT', 'ADAUSDT', 'DOGEUSDT',
    'MATICUSDT', 'DOTUSDT', 'AVAXUSDT', 'LINKUSDT', 'UNIUSDT', 'ATOMUSDT', 'LTCUSDT',
    'NEARUSDT', 'APTUSDT', 'ARBUSDT', 'OPUSDT', 'ICPUSDT',
]

NETWORK_ERROR_MESSAGE = (
    'Network error: Unable to reach Binance API. '
    'Check your internet connection or whether Binance is reachable from your region.'
)

# Rate-limited warning timestamps, keyed by warning category
_WARN_LOG_TIMESTAMPS: Dict[str, float] = {}


def _warn_once_per_minute(key: str, message: str) -> None:
    """Log warning message at most once per minute to prevent spam."""
    now = time.time()
    last_warn = _WARN_LOG_TIMESTAMPS.get(key, 0)
    if now - last_warn >= 60:
        logger.warning(message)
        _WARN_LOG_TIMESTAMPS[key] = now


def _backoff(attempt: int) -> float:
    return min(2 ** attempt, 10)


def _get(u, p=None, t=10, retries=3):
    """GET JSON with capped exponential backoff on network errors, 429 and 5xx.

    Structured venue errors ({code, msg}) and malformed bodies are raised
    immediately without retry.
    """
    for attempt in range(retries):
        try:
            r = requests.get(u, params=p or {}, timeout=t)
        except requests.exceptions.ProxyError as e:
            _warn_once_per_minute('proxy_block', f'Proxy blocked data feed: {e}')
            raise DataFeedBlocked(f'Binance API blocked: proxy refused access to {u}: {e}')
        except requests.exceptions.RequestException as e:
            # connection resets, timeouts, truncated bodies, redirect loops
            _warn_once_per_minute('conn_error', f'Data feed connection error: {e}')
            if attempt < retries - 1:
                time.sleep(_backoff(attempt))
                continue
            raise DataFeedUnavailable(NETWORK_ERROR_MESSAGE) from e

        status = r.status_code
        if status in (403, 451):
            raise DataFeedBlocked(f'Binance API blocked: {_error_message(r) or f"HTTP {status}"}')
        if status == 429 or status >= 500:
            if attempt < retries - 1:
                time.sleep(_backoff(attempt))
                continue
            raise UpstreamHTTPError(status, f'HTTP {status}: {_error_message(r) or r.reason}')
        if status >= 400:
            raise UpstreamHTTPError(status, f'HTTP {status}: {_error_message(r) or r.reason}')

        try:
            payload = r.json()
        except ValueError as e:
            raise InvalidPayload(f'Invalid response format from {u}: {e}')
        if isinstance(payload, dict) and 'code' in payload and 'msg' in payload:
            raise DataFeedBlocked(f"Binance API blocked: {payload['msg']}")
        return payload

    raise DataFeedUnavailable(f'Failed after {retries} retries')


def _error_message(response) -> Optional[str]:
    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, dict):
        return body.get('msg')
    return None


def _parse_tickers(payload) -> List[Ticker]:
    if not isinstance(payload, list):
        raise InvalidPayload('Invalid response format: expected an array of tickers')
    tickers = []
    for item in payload:
        try:
            tickers.append(Ticker.from_payload(item))
        except InvalidPayload as e:
            logger.warning(f'Skipping malformed ticker: {e}')
    if payload and not tickers:
        raise InvalidPayload('Invalid response format: no ticker carried the required fields')
    return tickers


def fetch_futures_tickers() -> List[Ticker]:
    return _parse_tickers(_get(f'{FUTURES_API}/ticker/24hr'))


def fetch_futures_ticker(symbol: str) -> Ticker:
    try:
        payload = _get(f'{FUTURES_API}/ticker/24hr', {'symbol': symbol})
    except UpstreamHTTPError as e:
        if e.status == 400:
            raise AssetNotFound(symbol, 'Asset not found')
        raise
    if not isinstance(payload, dict):
        raise InvalidPayload(f'Invalid response format for {symbol}')
    return Ticker.from_payload(payload)


def filter_major_pairs(tickers: Iterable[Ticker], majors: Optional[Iterable[str]] = None) -> List[Ticker]:
    wanted = set(majors or MAJOR_PAIRS)
    return [t for t in tickers if t.symbol in wanted]


def fetch_funding_rates(symbols: Iterable[str]) -> Dict[str, FundingRateData]:
    """Funding rates from the premium index. Never raises; garbled entries are skipped."""
    wanted = set(symbols)
    try:
        payload = _get(f'{FUTURES_API}/premiumIndex', retries=1)
    except (MarketDataError, requests.exceptions.RequestException) as e:
        _warn_once_per_minute('funding', f'Funding rate fetch failed: {e}')
        return {}
    if not isinstance(payload, list):
        _warn_once_per_minute('funding_shape', 'Funding rate payload is not an array')
        return {}

    out: Dict[str, FundingRateData] = {}
    for item in payload:
        try:
            symbol = item['symbol']
            if symbol not in wanted:
                continue
            out[symbol] = FundingRateData(
                symbol=symbol,
                funding_rate=float(item['lastFundingRate']),
                funding_time=int(item.get('nextFundingTime', 0)),
                mark_price=to_float(item.get('markPrice')),
            )
        except (KeyError, TypeError, ValueError) as e:
            logger.debug(f'Skipping funding entry {item!r}: {e}')
    return out


def _fetch_one_open_interest(symbol: str) -> Optional[OpenInterestData]:
    try:
        payload = _get(f'{FUTURES_API}/openInterest', {'symbol': symbol}, retries=1)
    except (MarketDataError, requests.exceptions.RequestException) as e:
        _warn_once_per_minute(f'oi_{symbol}', f'Open interest fetch failed for {symbol}: {e}')
        return None
    entries = payload if isinstance(payload, list) else [payload]
    for item in entries:
        try:
            if item.get('symbol', symbol) != symbol:
                continue
            return OpenInterestData(
                symbol=symbol,
                open_interest=float(item['openInterest']),
                time=int(item.get('time', 0)),
            )
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            logger.debug(f'Skipping open interest entry {item!r}: {e}')
    return None


def fetch_open_interest(symbols: Iterable[str], max_workers: int = 8) -> Dict[str, OpenInterestData]:
    """Open interest per symbol. Never raises; failed symbols are simply absent."""
    symbols = list(symbols)
    if not symbols:
        return {}
    with ThreadPoolExecutor(max_workers=max_workers) as pool:
        results = list(pool.map(_fetch_one_open_interest, symbols))
    return {r.symbol: r for r in results if r is not None}


def fetch_depth(symbol: str, limit: int = 100, venue: str = 'futures') -> dict:
    base = FUTURES_API if venue == 'futures' else SPOT_API
    payload = _get(f'{base}/depth', {'symbol': symbol, 'limit': limit})
    if not isinstance(payload, dict) or 'bids' not in payload or 'asks' not in payload:
        raise InvalidPayload(f'Invalid depth response for {symbol}')
    return payload


class ProxyBackend:
    """HTTP proxy that relays venue data when direct access fails.

    Every method returns the upstream body as a JSON string (empty on no data).
    """

    def __init__(self, base_url: str, timeout: int = 15):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout

    def _text(self, path: str, params: Optional[dict] = None) -> str:
        r = requests.get(f'{self.base_url}{path}', params=params or {}, timeout=self.timeout)
        r.raise_for_status()
        return r.text

    def get_spot_ticker(self, symbol: str) -> str:
        return self._text('/spot/ticker/24hr', {'symbol': symbol})

    def get_spot_depth(self, symbol: str, limit: int = 100) -> str:
        return self._text('/spot/depth', {'symbol': symbol, 'limit': limit})

    def get_futures_snapshot(self) -> dict:
        return json.loads(self._text('/futures/snapshot'))


def with_backend_fallback(primary: Callable[[], dict], fallback: Optional[Callable[[], str]]) -> Tuple[dict, bool]:
    """Run `primary`; on failure parse the JSON string from `fallback`.

    Returns (payload, used_backend_fallback).
    """
    try:
        return primary(), False
    except MarketDataError as primary_error:
        if fallback is None:
            raise
        logger.warning(f'Direct fetch failed, trying backend fallback: {primary_error}')
        try:
            text = fallback()
            if not text:
                raise InvalidPayload('Backend returned empty response')
            return json.loads(text), True
        except (MarketDataError, ValueError, requests.exceptions.RequestException) as fallback_error:
            raise DataFeedUnavailable(
                f'Direct fetch failed: {primary_error}. Backend fallback also failed: {fallback_error}'
            ) from fallback_error


def fetch_spot_ticker(symbol: str, backend: Optional[ProxyBackend] = None) -> Tuple[Ticker, bool]:
    fallback = (lambda: backend.get_spot_ticker(symbol)) if backend else None
    payload, used_fallback = with_backend_fallback(
        lambda: _get(f'{SPOT_API}/ticker/24hr', {'symbol': symbol}), fallback
    )
    return Ticker.from_payload(payload), used_fallback


def fetch_spot_depth(symbol: str, limit: int = 100, backend: Optional[ProxyBackend] = None) -> Tuple[dict, bool]:
    fallback = (lambda: backend.get_spot_depth(symbol, limit)) if backend else None
    return with_backend_fallback(lambda: fetch_depth(symbol, limit, venue='spot'), fallback)


def classify_error(exc: BaseException) -> str:
    """Bucket an error as network, blocked, rate_limit, server_error, interface_mismatch or unknown."""
    if isinstance(exc, DataFeedUnavailable):
        return 'network'
    if isinstance(exc, DataFeedBlocked):
        return 'blocked'
    message = str(exc).lower()
    status = getattr(exc, 'status', None)
    if 'interface mismatch' in message:
        return 'interface_mismatch'
    if 'network' in message or 'failed to fetch' in message:
        return 'network'
    if any(k in message for k in ('cors', 'blocked', 'restricted', 'unavailable', 'forbidden')) or status == 403:
        return 'blocked'
    if status == 429 or '429' in message or 'rate limit' in message:
        return 'rate_limit'
    if status in (500, 502, 503) or any(code in message for code in ('500', '502', '503')):
        return 'server_error'
    return 'unknown'


def describe_error(exc: BaseException) -> str:
    message = str(exc)
    lowered = message.lower()
    kind = classify_error(exc)
    if kind == 'network':
        return 'Network error: unable to reach Binance. Check your connection.'
    if kind == 'interface_mismatch':
        return message
    if kind == 'blocked':
        if 'restricted' in lowered or 'unavailable' in lowered:
            return 'Binance is unavailable from this region (restricted location).'
        if '403' in lowered or 'forbidden' in lowered:
            return 'Binance denied access (403 Forbidden).'
        if message.startswith('Binance'):
            return message
        return 'Binance access blocked (CORS or network policy).'
    if kind == 'rate_limit':
        return 'Binance rate limit reached (429). Retrying shortly.'
    if kind == 'server_error':
        return 'Binance server error. Try again later.'
    if message.startswith('Binance'):
        return message
    return f'Binance API error: {message}'
