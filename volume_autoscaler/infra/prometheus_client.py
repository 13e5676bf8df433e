from __future__ import annotations

import logging
import threading
from typing import Any, Dict, Final, List

import requests

from volume_autoscaler.domain.errors import (
    AmbiguousResult,
    BackendError,
    MalformedResponse,
    NoResult,
    TransportError,
)
from volume_autoscaler.domain.volume_backend import MetricsSource

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT: Final[float] = 10.0


class PrometheusClient(MetricsSource):
    _QUERY_PATH: Final[str] = "/api/v1/query"

    def __init__(
            self,
            base_url: str,
            timeout: float = DEFAULT_TIMEOUT,
            session: requests.Session | None = None,
    ) -> None:
        self.base = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def query_scalar(self, expr: str) -> float:
        """
        Runs an instant query that must match exactly one series.
        Zero series raise NoResult, more than one raise AmbiguousResult.
        """
        result = self._query(expr)
        if not result:
            raise NoResult(f"no results for query: {expr}")
        if len(result) > 1:
            raise AmbiguousResult(expr, len(result))
        return self._parse_value(result[0], expr)

    def query_vector(self, expr: str, label_key: str) -> Dict[str, float]:
        """
        Runs an instant query and maps each series' `label_key` value to its sample.
        """
        out: Dict[str, float] = {}
        for series in self._query(expr):
            try:
                key = series["metric"].get(label_key, "")
            except (KeyError, AttributeError, TypeError) as exc:
                raise MalformedResponse(f"series without metric labels: {series!r}") from exc
            value = self._parse_value(series, expr)
            if key in out:
                logger.warning(f"Duplicate series for {label_key}={key!r} in query {expr!r}; keeping the last one")
            out[key] = value
        return out

    def _query(self, expr: str) -> List[dict[str, Any]]:
        params = {"query": expr}

        try:
            r = self.session.get(f"{self.base}{self._QUERY_PATH}", params=params, timeout=self.timeout)
            r.raise_for_status()
        except requests.RequestException as exc:
            raise TransportError(f"Failed to query Prometheus at {self.base}: {exc}") from exc

        try:
            data: dict[str, Any] = r.json()
        except ValueError as exc:
            raise MalformedResponse(f"Prometheus returned a non-JSON body: {r.text[:200]!r}") from exc

        if not isinstance(data, dict):
            raise MalformedResponse(f"Invalid Prometheus response: {data!r}")
        if data.get("status") != "success":
            raise BackendError(f"Prometheus error: {data.get('error') or data}")

        try:
            result = data["data"]["result"]
        except (KeyError, TypeError) as exc:
            raise MalformedResponse(f"Invalid Prometheus response: {data}") from exc
        if not isinstance(result, list):
            raise MalformedResponse(f"Unexpected result type in Prometheus response: {data}")

        logger.debug(f"Query {expr!r} returned {len(result)} series")
        return result

    @staticmethod
    def _parse_value(series: dict[str, Any], expr: str) -> float:
        try:
            return float(series["value"][1])
        except (KeyError, IndexError, ValueError, TypeError) as exc:
            raise MalformedResponse(f"Invalid sample for query {expr!r}: {series!r}") from exc


_clients: Dict[str, PrometheusClient] = {}
_clients_lock = threading.Lock()


def get_client(base_url: str, timeout: float = DEFAULT_TIMEOUT) -> PrometheusClient:
    """Returns a shared client per endpoint so every intent reuses one connection pool."""
    with _clients_lock:
        client = _clients.get(base_url)
        if client is None:
            client = PrometheusClient(base_url, timeout=timeout)
            _clients[base_url] = client
        return client
