"""
Client for the MT5 trade-history API (closed trades only).

The feed may return the same ticket again on a later, overlapping window;
deduplication is the ledger's job, not this client's.
"""

from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

import requests
from loguru import logger

from models import Trade


class TradeFeedError(RuntimeError):
    """The feed could not be reached, timed out, or answered with an error."""


def _parse_time(value) -> datetime:
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)):
        dt = datetime.fromtimestamp(value, tz=timezone.utc)
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _pick(raw: Dict[str, Any], *names):
    for name in names:
        if name in raw and raw[name] is not None:
            return raw[name]
    return None


def parse_trade(login: str, raw: Dict[str, Any]) -> Trade:
    """
    map one feed item onto a Trade. MT5 names the open/close times
    time_setup/time_done; the camel-case variants are accepted too.
    """
    ticket = _pick(raw, "ticket", "Ticket")
    open_time = _pick(raw, "time_setup", "openTime", "OpenTime")
    close_time = _pick(raw, "time_done", "closeTime", "CloseTime")
    if ticket is None or open_time is None or close_time is None:
        raise ValueError(f"Trade item is missing ticket or times: {raw!r}")

    try:
        volume = Decimal(str(_pick(raw, "volume", "Volume") or "0"))
        profit = Decimal(str(_pick(raw, "profit", "Profit") or "0"))
    except InvalidOperation:
        raise ValueError(f"Trade {ticket} has a malformed volume or profit")

    return Trade(
        ticket=int(ticket),
        login=str(login),
        symbol=str(_pick(raw, "symbol", "Symbol") or ""),
        volume=volume,
        profit=profit,
        open_time=_parse_time(open_time),
        close_time=_parse_time(close_time),
    )


class Mt5TradeFeed:
    """
    GET {base_url}/client/tradehistory/trades-closed, paged.
    every request is bounded by `timeout` seconds and one account by `max_pages` pages.
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = 15.0,
        page_size: int = 1000,
        max_pages: int = 100,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.page_size = page_size
        self.max_pages = max_pages
        self.session = session or requests.Session()

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _get_page(self, login: str, from_time: datetime, to_time: datetime, page: int):
        params = {
            "accountId": str(login),
            "page": page,
            "pageSize": self.page_size,
            "fromDate": from_time.isoformat(),
            "toDate": to_time.isoformat(),
        }
        url = f"{self.base_url}/client/tradehistory/trades-closed"

        try:
            res = self.session.get(url, params=params, headers=self._headers(), timeout=self.timeout)
        except requests.Timeout as e:
            raise TradeFeedError(f"Timed out fetching trades for account {login}") from e
        except requests.RequestException as e:
            raise TradeFeedError(f"Could not fetch trades for account {login}: {e}") from e

        try:
            data = res.json()
        except ValueError:
            data = None

        if not res.ok:
            message = None
            if isinstance(data, dict):
                message = data.get("Message") or data.get("error")
            raise TradeFeedError(
                message or f"Failed to fetch closed trades for account {login}: {res.status_code}"
            )

        if data is None:
            raise TradeFeedError(f"Feed returned a non-JSON body for account {login}")

        # the API answers either with a bare list or with {"items": [...]}
        if isinstance(data, dict):
            return data.get("items") or []
        return data

    def get_closed_trades(self, login: str, from_time: datetime, to_time: datetime) -> List[Trade]:
        trades: List[Trade] = []
        previous_tickets = None
        for page in range(1, self.max_pages + 1):
            items = self._get_page(login, from_time, to_time, page)

            # a server that ignores `page` keeps answering with the same items
            tickets = [_pick(raw, "ticket", "Ticket") if isinstance(raw, dict) else None for raw in items]
            if items and tickets == previous_tickets:
                raise TradeFeedError(f"Feed repeated page {page - 1} for account {login}")
            previous_tickets = tickets

            for raw in items:
                try:
                    trades.append(parse_trade(login, raw))
                except (ValueError, TypeError, AttributeError) as e:
                    logger.warning(f"Skipping malformed trade on account {login}: {e}")
            if len(items) < self.page_size:
                return trades

        raise TradeFeedError(f"Account {login} still had trades after {self.max_pages} pages")
