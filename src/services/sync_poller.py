"""
Post-checkout sync poller.

Drives the confirmation step after Stripe redirects back with a session id:
ask the API to reconcile the session once, then poll the caller's subscription
state until access is granted or the time budget runs out. Webhooks may land
before, during or after this; the poller only observes the stored record.

Usage:
    async with httpx.AsyncClient(base_url=api_url) as client:
        poller = SubscriptionSyncPoller(client, access_token, session_id)
        unsubscribe = poller.subscribe(lambda outcome: render(outcome))
        outcome = await poller.run()
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from urllib.parse import quote

import httpx

from src.config import Config
from src.utils.exceptions import BillingError, ReconciliationDriftError
from src.utils.security_validators import build_login_redirect

logger = logging.getLogger(__name__)

SYNC_PATH = "/billing/sync"
STATE_PATH = "/billing/subscription"
SUCCESS_REDIRECT = "/dashboard"
STILL_SYNCING_MESSAGE = "Still syncing payment... Refresh in a moment."


class SyncStage(str, Enum):
    STARTING = "starting"
    POLLING = "polling"
    DONE = "done"
    TIMEOUT = "timeout"
    ERROR = "error"
    CANCELLED = "cancelled"
    LOGIN_REQUIRED = "login_required"


@dataclass
class SyncOutcome:
    stage: SyncStage
    status: str | None = None
    message: str | None = None
    redirect_to: str | None = None
    attempts: int = 0
    error: BillingError | None = None


class _LoginRequired(Exception):
    pass


class SubscriptionSyncPoller:
    """One confirmation run for one checkout session"""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        access_token: str | None,
        session_id: str | None,
        *,
        poll_interval: float | None = None,
        timeout: float | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.http_client = http_client
        self.access_token = access_token
        self.session_id = session_id
        self.poll_interval = (
            poll_interval if poll_interval is not None else Config.BILLING_SYNC_POLL_INTERVAL
        )
        self.timeout = timeout if timeout is not None else Config.BILLING_SYNC_TIMEOUT
        self._clock = clock
        self._sleep = sleep
        self._alive = True
        self._callback: Callable[[SyncOutcome], None] | None = None
        self._last_status: str | None = None
        self._attempts = 0

    # ==================== Lifecycle ====================

    @property
    def alive(self) -> bool:
        return self._alive

    def cancel(self) -> None:
        """Stop at the next wake-up; no further requests or notifications follow."""
        self._alive = False

    def subscribe(self, callback: Callable[[SyncOutcome], None]) -> Callable[[], None]:
        """
        Register the state-transition callback (replaces any previous one).

        Returns:
            A function that removes this callback
        """
        self._callback = callback

        def unsubscribe() -> None:
            if self._callback is callback:
                self._callback = None

        return unsubscribe

    def _outcome(self, stage: SyncStage, **kwargs) -> SyncOutcome:
        return SyncOutcome(
            stage=stage, status=self._last_status, attempts=self._attempts, **kwargs
        )

    def _notify(self, outcome: SyncOutcome) -> SyncOutcome:
        callback = self._callback
        if callback is not None and (self._alive or outcome.stage == SyncStage.CANCELLED):
            try:
                callback(outcome)
            except Exception as e:
                logger.warning(f"Sync poller callback failed: {e}")
        return outcome

    def _cancelled(self) -> SyncOutcome:
        logger.info("Checkout sync cancelled")
        return self._notify(self._outcome(SyncStage.CANCELLED))

    # ==================== Requests ====================

    @property
    def _auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.access_token}"}

    async def _request_sync(self) -> None:
        try:
            response = await self.http_client.post(
                SYNC_PATH, json={"session_id": self.session_id}, headers=self._auth_headers
            )
        except httpx.HTTPError as e:
            logger.warning(f"Checkout sync request failed, relying on webhooks: {e}")
            return

        if response.status_code == 401:
            raise _LoginRequired()
        if response.is_success:
            try:
                body = response.json()
            except ValueError:
                logger.warning("Checkout sync returned a non-JSON body, relying on webhooks")
                return
            if isinstance(body, dict):
                self._last_status = body.get("status")
            return

        # 409 (no subscription yet) and 5xx are expected while Stripe catches up
        logger.warning(
            f"Checkout sync returned {response.status_code}, relying on webhooks: {response.text[:200]}"
        )

    async def _read_state(self) -> dict | None:
        self._attempts += 1
        try:
            response = await self.http_client.get(STATE_PATH, headers=self._auth_headers)
        except httpx.HTTPError as e:
            logger.debug(f"Subscription state read failed (attempt {self._attempts}): {e}")
            return None

        if response.status_code == 401:
            raise _LoginRequired()
        if not response.is_success:
            logger.debug(f"Subscription state read returned {response.status_code}")
            return None

        try:
            state = response.json()
        except ValueError:
            logger.debug(f"Subscription state read returned a non-JSON body (attempt {self._attempts})")
            return None
        if not isinstance(state, dict):
            return None

        self._last_status = state.get("status", self._last_status)
        return state

    # ==================== Run ====================

    async def run(self) -> SyncOutcome:
        """Run the sync to a terminal outcome. Never raises on timeout."""
        if not self.session_id:
            return self._notify(self._outcome(SyncStage.ERROR, message="Missing session_id"))

        if not self.access_token:
            return_path = f"/billing/success?session_id={quote(self.session_id, safe='')}"
            return self._notify(
                self._outcome(
                    SyncStage.LOGIN_REQUIRED, redirect_to=build_login_redirect(return_path)
                )
            )

        try:
            return await self._run()
        except _LoginRequired:
            return_path = f"/billing/success?session_id={quote(self.session_id, safe='')}"
            return self._notify(
                self._outcome(
                    SyncStage.LOGIN_REQUIRED, redirect_to=build_login_redirect(return_path)
                )
            )
        except asyncio.CancelledError:
            self._alive = False
            self._cancelled()
            raise

    async def _run(self) -> SyncOutcome:
        self._notify(self._outcome(SyncStage.STARTING))
        await self._request_sync()
        if not self._alive:
            return self._cancelled()

        self._notify(self._outcome(SyncStage.POLLING))
        deadline = self._clock() + self.timeout

        while True:
            if not self._alive:
                return self._cancelled()

            state = await self._read_state()
            if not self._alive:
                return self._cancelled()

            if state and state.get("access"):
                logger.info(f"Subscription active after {self._attempts} poll(s)")
                return self._notify(
                    self._outcome(SyncStage.DONE, redirect_to=SUCCESS_REDIRECT)
                )

            remaining = deadline - self._clock()
            if remaining <= 0:
                drift = ReconciliationDriftError(
                    f"Subscription still {self._last_status or 'unknown'} after {self.timeout:.0f}s"
                )
                logger.warning(f"Checkout sync timed out: {drift.message}")
                return self._notify(
                    self._outcome(SyncStage.TIMEOUT, message=STILL_SYNCING_MESSAGE, error=drift)
                )

            await self._sleep(min(self.poll_interval, remaining))
