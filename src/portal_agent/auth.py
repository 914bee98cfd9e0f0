"""Login and second-factor handling.

State machine::

    unauthenticated -> credentials-entered
        -> [second-factor-required -> second-factor-resolved]
        -> authenticated

Every wait has a ceiling taken from ``AuthTimeouts``. Any failure raises
``AuthenticationError``; there is no retry at this layer.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import StrEnum
from typing import Awaitable, Callable

from portal_agent.config.settings import Settings
from portal_agent.errors import (
    AgentError,
    AuthenticationError,
    BudgetExhausted,
    SurfaceTimeout,
    TimeoutOutcome,
    TransportFailure,
)
from portal_agent.models import AuthenticationConfig
from portal_agent.oracle import VisionOracle
from portal_agent.otp.client import OTPRelayClient
from portal_agent.surface import ControllableSurface

logger = logging.getLogger(__name__)

LOGIN_INDICATORS: tuple[str, ...] = (
    'input[name="username"]',
    'input[name="email"]',
    'input[id="username"]',
    'button:has-text("Sign In")',
    'button:has-text("Log In")',
    ".login-form",
    "#loginForm",
)
USERNAME_CANDIDATES: tuple[str, ...] = (
    'input[name="username"]',
    'input[name="email"]',
    'input[id="username"]',
    'input[type="email"]',
    'input[placeholder*="Username"]',
)
PASSWORD_CANDIDATES: tuple[str, ...] = (
    'input[name="password"]',
    'input[id="password"]',
    'input[type="password"]',
)
SUBMIT_CANDIDATES: tuple[str, ...] = (
    'button[type="submit"]',
    'button:has-text("Sign In")',
    'button:has-text("Log In")',
    'input[type="submit"]',
)
SECOND_FACTOR_INDICATORS: tuple[str, ...] = (
    'input[name="otpCode"]',
    'input[name="code"]',
    "text=/verification code/i",
    "text=/two.factor/i",
    "text=/2FA/i",
)
CODE_INPUT_CANDIDATES: tuple[str, ...] = (
    'input[name="otpCode"]',
    'input[name="code"]',
    'input[type="text"]:visible',
)
CODE_SUBMIT_CANDIDATES: tuple[str, ...] = (
    'button[type="submit"]',
    'button:has-text("Submit")',
    'button:has-text("Verify")',
)
POST_LOGIN_INDICATORS: tuple[str, ...] = (
    "text=/dashboard/i",
    "text=/welcome/i",
    "nav",
    ".navigation",
    "#navigation",
)
AUTH_URL_MARKERS: tuple[str, ...] = (
    "signin",
    "sign-in",
    "login",
    "authorize",
    "/auth/",
    "authenticate",
)


def looks_like_auth_url(url: str) -> bool:
    lowered = url.lower()
    return any(marker in lowered for marker in AUTH_URL_MARKERS)


class AuthState(StrEnum):
    UNAUTHENTICATED = "unauthenticated"
    CREDENTIALS_ENTERED = "credentials-entered"
    SECOND_FACTOR_REQUIRED = "second-factor-required"
    SECOND_FACTOR_RESOLVED = "second-factor-resolved"
    AUTHENTICATED = "authenticated"


@dataclass(frozen=True)
class AuthTimeouts:
    login_probe_ms: int = 5000
    field_probe_ms: int = 2000
    settle_delay_ms: int = 3000
    otp_poll_interval_s: float = 5.0
    otp_timeout_s: float = 300.0
    otp_min_age_ms: int = 0
    manual_timeout_s: float = 300.0
    completion_timeout_ms: int = 30000

    @classmethod
    def from_settings(cls, settings: Settings) -> AuthTimeouts:
        return cls(
            login_probe_ms=settings.login_probe_timeout_ms,
            field_probe_ms=settings.field_probe_timeout_ms,
            settle_delay_ms=settings.settle_delay_ms,
            otp_poll_interval_s=settings.otp_poll_interval_s,
            otp_timeout_s=settings.otp_timeout_s,
            otp_min_age_ms=settings.otp_min_age_ms,
            manual_timeout_s=settings.manual_second_factor_timeout_s,
            completion_timeout_ms=settings.auth_completion_timeout_ms,
        )


class Authenticator:
    def __init__(
        self,
        surface: ControllableSurface,
        *,
        timeouts: AuthTimeouts | None = None,
        oracle: VisionOracle | None = None,
        relay_client: OTPRelayClient | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.surface = surface
        self.timeouts = timeouts or AuthTimeouts()
        self.oracle = oracle
        self.relay_client = relay_client
        self._sleep = sleep
        self._monotonic = monotonic
        self.state = AuthState.UNAUTHENTICATED
        self.history: list[AuthState] = [self.state]

    async def needs_login(self) -> bool:
        indicator = await self._first_visible(LOGIN_INDICATORS, self.timeouts.login_probe_ms)
        if indicator is not None:
            logger.info("event=login_required indicator=%s", indicator)
            return True
        return False

    async def authenticate(self, credentials: AuthenticationConfig) -> AuthState:
        try:
            await self.enter_credentials(credentials.identity, credentials.secret)
            self._transition(AuthState.CREDENTIALS_ENTERED)

            if await self.second_factor_required():
                self._transition(AuthState.SECOND_FACTOR_REQUIRED)
                if self.relay_client is not None:
                    await self.resolve_second_factor_automated()
                else:
                    await self.resolve_second_factor_manual()
                self._transition(AuthState.SECOND_FACTOR_RESOLVED)

            await self.confirm_authenticated()
        except AuthenticationError:
            raise
        except AgentError as exc:
            raise AuthenticationError(f"Authentication failed in state {self.state}: {exc}") from exc
        self._transition(AuthState.AUTHENTICATED)
        return self.state

    async def enter_credentials(self, identity: str, secret: str) -> None:
        if self.oracle is not None:
            try:
                analysis = await self.oracle.analyze_login(await self.surface.screenshot())
                await self.surface.fill(analysis.username_selector, identity)
                await self.surface.fill(analysis.password_selector, secret)
                await self.surface.click(analysis.submit_selector)
                logger.info("event=credentials_entered method=vision")
                return
            except BudgetExhausted:
                raise
            except AgentError as exc:
                logger.warning("event=vision_login_fallback reason=%s", exc)

        username = await self._require_visible(USERNAME_CANDIDATES, "username")
        password = await self._require_visible(PASSWORD_CANDIDATES, "password")
        submit = await self._require_visible(SUBMIT_CANDIDATES, "submit")
        await self.surface.fill(username, identity)
        await self.surface.fill(password, secret)
        await self.surface.click(submit)
        logger.info("event=credentials_entered method=selectors username_selector=%s", username)

    async def second_factor_required(self) -> bool:
        await self.surface.wait(self.timeouts.settle_delay_ms)
        indicator = await self._first_visible(SECOND_FACTOR_INDICATORS, self.timeouts.field_probe_ms)
        if indicator is not None:
            logger.info("event=second_factor_required indicator=%s", indicator)
            return True
        return False

    async def resolve_second_factor_automated(self) -> None:
        if self.relay_client is None:
            raise AuthenticationError("Automated second factor needs an OTP relay endpoint")
        deadline = self._monotonic() + self.timeouts.otp_timeout_s
        attempts = 0
        while True:
            attempts += 1
            try:
                relay_code = await self.relay_client.fetch_latest(
                    min_age_ms=self.timeouts.otp_min_age_ms, claim=True
                )
            except TransportFailure as exc:
                logger.warning("event=otp_poll_failed attempt=%d reason=%s", attempts, exc)
                relay_code = None

            if relay_code is not None:
                logger.info("event=otp_received id=%s attempt=%d", relay_code.id, attempts)
                await self._submit_code(relay_code.code)
                return

            if self._monotonic() >= deadline:
                message = f"No one-time code arrived within {self.timeouts.otp_timeout_s:.0f}s"
                raise AuthenticationError(message) from TimeoutOutcome(message)
            await self._sleep(self.timeouts.otp_poll_interval_s)

    async def resolve_second_factor_manual(self) -> None:
        timeout_ms = int(self.timeouts.manual_timeout_s * 1000)
        logger.info("event=manual_second_factor_wait timeout_ms=%d", timeout_ms)
        try:
            await self.surface.wait_for_url(
                lambda url: not looks_like_auth_url(url), timeout_ms=timeout_ms
            )
        except SurfaceTimeout as exc:
            raise AuthenticationError(
                f"Second factor was not completed within {self.timeouts.manual_timeout_s:.0f}s"
            ) from exc

    async def confirm_authenticated(self) -> None:
        try:
            await self.surface.wait_for_url(
                lambda url: not looks_like_auth_url(url),
                timeout_ms=self.timeouts.completion_timeout_ms,
            )
            return
        except SurfaceTimeout as exc:
            timeout = exc

        indicator = await self._first_visible(POST_LOGIN_INDICATORS, self.timeouts.login_probe_ms)
        if indicator is None:
            raise AuthenticationError(
                "Login did not complete: URL stayed on the auth page and no post-login marker appeared"
            ) from timeout
        logger.info("event=login_confirmed_by_indicator indicator=%s", indicator)

    async def _submit_code(self, code: str) -> None:
        code_input = await self._require_visible(CODE_INPUT_CANDIDATES, "code input")
        await self.surface.fill(code_input, code)
        submit = await self._require_visible(CODE_SUBMIT_CANDIDATES, "code submit")
        await self.surface.click(submit)

    async def _require_visible(self, candidates: tuple[str, ...], field: str) -> str:
        selector = await self._first_visible(candidates, self.timeouts.field_probe_ms)
        if selector is None:
            raise AuthenticationError(f"No visible {field} control found")
        return selector

    async def _first_visible(self, candidates: tuple[str, ...], timeout_ms: int) -> str | None:
        for selector in candidates:
            if await self.surface.is_visible(selector, timeout_ms=timeout_ms):
                return selector
        return None

    def _transition(self, state: AuthState) -> None:
        logger.info("event=auth_transition from=%s to=%s", self.state, state)
        self.state = state
        self.history.append(state)
