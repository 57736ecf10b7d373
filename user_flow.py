# user_flow.py

import asyncio
import json
import logging
import random
import time
from typing import Any, Dict, List, Optional, Sequence

import aiohttp
from aiohttp.abc import AbstractCookieJar

from flow_models import NETWORK_ERROR, CallMetric, FlowResult, now_ms
from live_metrics import Metrics
from load_config import LoadTestConfig
from session_bundle import SessionBundle, SessionSetupError

logger = logging.getLogger("LoadRunner.flow")

__all__ = ["ApiUserFlow", "sample_without_replacement"]


def sample_without_replacement(population: Sequence[Any], k: int, rng: Optional[random.Random] = None) -> List[Any]:
    """
    Returns k distinct elements of population chosen uniformly at random
    (all of them, shuffled, when k >= len(population)).

    Truncated Fisher-Yates: only the first k positions of a copy are shuffled,
    so every k-subset is equally likely and the input is left untouched.
    """
    if k < 0:
        raise ValueError(f"k must be non-negative, got {k}")
    randrange = (rng or random).randrange
    pool = list(population)
    n = len(pool)
    k = min(k, n)
    for i in range(k):
        j = randrange(i, n)
        pool[i], pool[j] = pool[j], pool[i]
    return pool[:k]


class ApiUserFlow:
    """
    One simulated user's API sequence: the listing endpoint, k random detail
    calls, then the auxiliary endpoints, with think time in between.

    Each call is timed and recorded as a CallMetric. Transport failures and
    unexpected statuses are recorded and never abort the sequence.
    """
    def __init__(
        self,
        config: LoadTestConfig,
        metrics: Optional[Metrics] = None,
        rng: Optional[random.Random] = None,
    ):
        self.config = config
        self.metrics = metrics
        self.rng = rng or random.Random()
        self._bundle: Optional[SessionBundle] = None

    async def __call__(self, user_id: int) -> FlowResult:
        return await self.execute(user_id)

    # ------------------------------------------------------------------
    # Session / transport
    # ------------------------------------------------------------------
    def base_headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Token {self.config.api_token}",
            "Accept": "application/json",
            "X-Requested-With": "XMLHttpRequest",
        }

    def create_session(self, cookie_jar: AbstractCookieJar) -> aiohttp.ClientSession:
        """Creates the per-flow ClientSession. The session owns its connector."""
        # ssl=False skips certificate validation, None uses the default context
        connector = aiohttp.TCPConnector(
            ssl=None if self.config.verify_tls else False,
            limit_per_host=10,
            enable_cleanup_closed=True,
        )
        timeout = aiohttp.ClientTimeout(total=self.config.request_timeout_s)
        return aiohttp.ClientSession(
            connector=connector,
            cookie_jar=cookie_jar,
            headers=self.base_headers(),
            timeout=timeout,
        )

    def session_bundle(self) -> SessionBundle:
        """The parsed bundle, read from disk on first use only. Raises SessionSetupError."""
        if self._bundle is None:
            self._bundle = SessionBundle.load(self.config.session_bundle_path)
            logger.debug(f"Session bundle loaded from '{self.config.session_bundle_path}' ({len(self._bundle.cookies)} cookies).")
        return self._bundle

    async def open_session(self) -> aiohttp.ClientSession:
        """Returns a ready session with its own cookie jar. Raises SessionSetupError."""
        bundle = self.session_bundle()
        try:
            return self.create_session(bundle.build_cookie_jar())
        except Exception as e:
            raise SessionSetupError(f"Could not create request context: {e}") from e

    def build_url(self, endpoint: str) -> str:
        return f"{self.config.base_url}{endpoint if endpoint.startswith('/') else '/' + endpoint}"

    def is_expected_status(self, endpoint_key: str, status: int) -> bool:
        expected = self.config.expected_statuses.get(endpoint_key)
        if expected:
            return status in expected
        return 200 <= status < 300

    # ------------------------------------------------------------------
    # Calls
    # ------------------------------------------------------------------
    async def _make_api_call(
        self,
        session: aiohttp.ClientSession,
        user_id: int,
        method: str,
        endpoint: str,
        call_metrics: List[CallMetric],
        endpoint_key: Optional[str] = None,
    ) -> Any:
        """
        Issues one call, appends its CallMetric and returns the response body
        (parsed JSON, raw text if it is not JSON, None on network failure).
        """
        user_log_prefix = f"User {user_id}"
        endpoint_key = endpoint_key or endpoint
        full_url = self.build_url(endpoint)
        response_body = None
        call_start = time.monotonic()

        try:
            async with session.request(method, full_url) as resp:
                response_status = resp.status
                raw_text = await resp.text(errors="replace")
            response_ok = self.is_expected_status(endpoint_key, response_status)

            try:
                response_body = json.loads(raw_text) if raw_text else None
            except json.JSONDecodeError:
                response_body = raw_text
                logger.warning(
                    f"{user_log_prefix}: API {method} {endpoint} Status {response_status}. JSON parse failed. "
                    f"Raw body text snippet: \"{raw_text[:200]}...\""
                )

            if self.metrics is not None:
                await self.metrics.record_response()

            duration_ms = (time.monotonic() - call_start) * 1000.0
            logger.info(f"{user_log_prefix}: API {method} {endpoint} finished with status {response_status} ({duration_ms:.2f} ms).")
            if not response_ok:
                body_repr = json.dumps(response_body) if isinstance(response_body, (dict, list)) else repr(response_body)
                logger.warning(
                    f"{user_log_prefix}: API {method} {endpoint} failed: Status {response_status} "
                    f"(expected {self.config.expected_statuses.get(endpoint_key) or '2xx'}), Body: {body_repr[:200]}"
                )

        except (aiohttp.ClientError, asyncio.TimeoutError) as conn_err:
            duration_ms = (time.monotonic() - call_start) * 1000.0
            logger.error(
                f"{user_log_prefix}: API {method} {endpoint} failed due to network error/timeout: "
                f"{type(conn_err).__name__}: {conn_err} ({duration_ms:.2f} ms)"
            )
            response_status = NETWORK_ERROR
            response_ok = False

        except Exception as e:
            duration_ms = (time.monotonic() - call_start) * 1000.0
            logger.error(
                f"{user_log_prefix}: API {method} {endpoint} failed unexpectedly: {e} ({duration_ms:.2f} ms)",
                exc_info=self.config.debug,
            )
            response_status = NETWORK_ERROR
            response_ok = False

        if response_status == NETWORK_ERROR and self.metrics is not None:
            await self.metrics.record_network_error()

        call_metrics.append(CallMetric(
            endpoint=endpoint,
            method=method,
            duration_ms=duration_ms,
            status=response_status,
            ok=response_ok,
        ))
        return response_body

    def _extract_items(self, listing_body: Any) -> List[Any]:
        if isinstance(listing_body, list):
            return listing_body
        if isinstance(listing_body, dict):
            items = listing_body.get(self.config.items_key)
            if isinstance(items, list):
                return items
        return []

    async def _pause(self, seconds: float):
        await asyncio.sleep(seconds)

    # ------------------------------------------------------------------
    # Flow
    # ------------------------------------------------------------------
    async def execute(self, user_id: int) -> FlowResult:
        """Runs the full call sequence for one user. Never raises for per-call failures."""
        user_log_prefix = f"User {user_id}"
        cfg = self.config
        session = None
        logger.info(f"{user_log_prefix}: Starting API flow with pre-authenticated session...")

        try:
            # --- Setup: request context from the session bundle ---
            try:
                session = await self.open_session()
            except SessionSetupError as e:
                logger.error(f"{user_log_prefix}: Session setup failed, no calls attempted: {e}")
                return FlowResult.failed(user_id, error=f"Session setup failed: {e}")

            logger.debug(f"{user_log_prefix}: Pre-authenticated session loaded. Beginning API calls.")
            call_metrics: List[CallMetric] = []
            # Flow timing starts after session setup
            flow_start_time = now_ms()
            flow_start_monotonic = time.monotonic()

            # 1. Listing
            listing_body = await self._make_api_call(session, user_id, "GET", cfg.listing_endpoint, call_metrics)
            await self._pause(cfg.pacing_s)

            # 2. Details for k random listing items
            items = self._extract_items(listing_body)
            if items:
                for item in sample_without_replacement(items, cfg.detail_calls, self.rng):
                    item_id = item.get(cfg.item_id_key) if isinstance(item, dict) else None
                    if item_id is not None:
                        await self._make_api_call(
                            session,
                            user_id,
                            "GET",
                            cfg.detail_endpoint.replace("{id}", str(item_id)),
                            call_metrics,
                            endpoint_key=cfg.detail_endpoint,
                        )
                    else:
                        logger.warning(f"{user_log_prefix}: Skipped detail call due to invalid item: {item!r}")
                    await self._pause(cfg.detail_pacing_s)
            else:
                body_repr = repr(listing_body)
                logger.warning(
                    f"{user_log_prefix}: No items found in {cfg.listing_endpoint} response. "
                    f"Body was: {body_repr[:200]}"
                )
            await self._pause(cfg.pacing_s)

            # 3. Auxiliary endpoints
            for endpoint in cfg.auxiliary_endpoints:
                await self._make_api_call(session, user_id, "GET", endpoint, call_metrics)
                await self._pause(cfg.pacing_s)

            # End time derived from the monotonic clock keeps the duration non-negative
            flow_end_time = flow_start_time + (time.monotonic() - flow_start_monotonic) * 1000.0
            result = FlowResult.from_calls(user_id, flow_start_time, flow_end_time, call_metrics)
            logger.info(
                f"{user_log_prefix}: API flow completed in {result.total_duration:.0f} ms "
                f"({len(call_metrics)} calls, {len(result.failed_calls)} errors)."
            )
            return result

        finally:
            if session is not None and not session.closed:
                await session.close()
                logger.debug(f"{user_log_prefix}: Session closed.")
