from __future__ import annotations

from typing import Any, Dict, List

import requests

from mev_price_monitor.config.settings import RatesConfig
from mev_price_monitor.ingestion.rates import HttpRateProvider, StaticRateProvider


class _Response:
    def __init__(self, payload: Any, status: int = 200) -> None:
        self._payload = payload
        self.status_code = status

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"status {self.status_code}")

    def json(self) -> Any:
        return self._payload


class _Session:
    def __init__(self, responses: List[_Response]) -> None:
        self.responses = responses
        self.requests: List[Dict[str, Any]] = []

    def get(self, url: str, **kwargs: Any) -> _Response:
        self.requests.append({"url": url, **kwargs})
        return self.responses.pop(0)


def test_static_rates_are_case_insensitive() -> None:
    provider = StaticRateProvider({"eth": 2000})

    assert provider.get_rate("ETH") == 2000.0
    assert provider.get_rate("MATIC") is None


def test_http_rates_are_fetched_and_cached() -> None:
    session = _Session([_Response({"ethereum": {"usd": 2500.5}, "matic-network": {"usd": 0.9}})])
    provider = HttpRateProvider(RatesConfig(), session=session)

    rates = provider.get_rates(["ETH", "MATIC"])

    assert rates == {"ETH": 2500.5, "MATIC": 0.9}
    assert provider.get_rate("eth") == 2500.5
    assert len(session.requests) == 1
    assert session.requests[0]["params"]["vs_currencies"] == "usd"


def test_http_failure_falls_back_to_static_rates(monkeypatch) -> None:
    monkeypatch.setattr(HttpRateProvider._request.retry, "sleep", lambda _: None)
    session = _Session([_Response({}, status=503) for _ in range(3)])
    provider = HttpRateProvider(RatesConfig(static_rates={"ETH": 1800.0}), session=session)

    assert provider.get_rate("ETH") == 1800.0
    assert len(session.requests) == 3


def test_disabled_provider_never_calls_out() -> None:
    session = _Session([])
    provider = HttpRateProvider(RatesConfig(enabled=False), session=session)

    assert provider.get_rate("MATIC") == 0.7
    assert session.requests == []


class _FailingSession:
    def __init__(self) -> None:
        self.calls = 0

    def get(self, url: str, **kwargs: Any) -> _Response:
        self.calls += 1
        raise requests.ConnectionError("rate api unreachable")


def test_failed_lookup_backs_off_before_calling_again(monkeypatch) -> None:
    monkeypatch.setattr(HttpRateProvider._request.retry, "sleep", lambda _: None)
    session = _FailingSession()
    ticks = [0.0]
    provider = HttpRateProvider(
        RatesConfig(static_rates={"ETH": 1800.0}, failure_backoff_seconds=30),
        session=session,
        clock=lambda: ticks[0],
    )

    assert provider.get_rate("ETH") == 1800.0
    assert provider.get_rate("ETH") == 1800.0
    assert session.calls == 3

    ticks[0] += 31
    assert provider.get_rate("ETH") == 1800.0
    assert session.calls == 6
