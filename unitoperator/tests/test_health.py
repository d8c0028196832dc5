from __future__ import annotations

import threading
import urllib.error
import urllib.request

from unitoperator.src.health import start_health_server


def _get(url: str, timeout: float = 2) -> tuple[int, str]:
    """Helper to make a GET request and return (status_code, body)."""
    try:
        with urllib.request.urlopen(url, timeout=timeout) as response:  # noqa: S310
            return response.status, response.read().decode()
    except urllib.error.HTTPError as exc:
        return exc.code, exc.read().decode()


class TestHealthServer:
    """Readiness requires every controller to have finished its initial list."""

    def setup_method(self) -> None:
        self.unit_ready = threading.Event()
        self.unitset_ready = threading.Event()
        self.server = start_health_server([self.unit_ready, self.unitset_ready], port=0)
        self.base_url = f"http://127.0.0.1:{self.server.server_address[1]}"

    def teardown_method(self) -> None:
        self.server.shutdown()

    def test_healthz_always_returns_200(self) -> None:
        status, body = _get(f"{self.base_url}/healthz")
        assert status == 200
        assert body == "ok"

    def test_readyz_counts_waiting_controllers(self) -> None:
        status, body = _get(f"{self.base_url}/readyz")
        assert status == 503
        assert body == "ready=false waiting=2"

        self.unit_ready.set()
        status, body = _get(f"{self.base_url}/readyz")
        assert status == 503
        assert body == "ready=false waiting=1"

    def test_readyz_returns_200_when_all_ready(self) -> None:
        self.unit_ready.set()
        self.unitset_ready.set()
        status, body = _get(f"{self.base_url}/readyz")
        assert status == 200
        assert body == "ready=true"

    def test_readyz_returns_503_after_readiness_lost(self) -> None:
        self.unit_ready.set()
        self.unitset_ready.set()
        self.unitset_ready.clear()
        status, _ = _get(f"{self.base_url}/readyz")
        assert status == 503

    def test_metrics_exposes_operator_series(self) -> None:
        status, body = _get(f"{self.base_url}/metrics")
        assert status == 200
        assert "unit_operator_reconcile_total" in body

    def test_unknown_path_returns_404(self) -> None:
        status, _ = _get(f"{self.base_url}/nope")
        assert status == 404
