"""
Reservation bot job.

Drives a browser session through an explicit state machine

    LOGIN -> SEARCH -> SELECT_SLOT -> FILL_DETAILS -> AWAIT_HANDOFF

and stops at the payment page, which must be completed by hand. Every browser
call carries its own timeout, so a stuck page fails the state it happened in.
One execute() is one booking attempt; retries belong to the job's retry policy.
A cancelled attempt stops before its next state and closes the browser.
"""

from __future__ import annotations

import abc
import calendar
import logging
import os
import threading
from dataclasses import dataclass
from datetime import date, timedelta
from enum import Enum
from typing import Any, Callable, Dict, Optional

try:
    from playwright.sync_api import TimeoutError as PlaywrightTimeoutError
    from playwright.sync_api import sync_playwright
except ImportError:  # pragma: no cover - dependency check at runtime
    PlaywrightTimeoutError = None
    sync_playwright = None

from overseer.config import JobDefinition, ensure_bool, ensure_int, ensure_str, reject_unknown
from overseer.errors import AttemptTimeoutError, ConfigError, OverseerError, Outcome
from overseer.logs import get_logger
from overseer.registry import JobCapability

DEFAULT_VENUE_URL = "https://www.exploretock.com/tfl"
DEFAULT_LOGIN_URL = "https://www.exploretock.com/login"
DEFAULT_PARTY_SIZE = 2
DEFAULT_PREFERRED_TIME = "19:30"
DEFAULT_NOTE = "Looking forward to dining at The French Laundry!"
DEFAULT_HANDOFF_HOLD_SECONDS = 300
DEFAULT_DEBUG_HOLD_SECONDS = 30
HOLD_SLICE_MS = 1000
USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
BROWSER_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-accelerated-2d-canvas",
    "--disable-gpu",
]

EMAIL_INPUT = 'input[name="email"]'
PASSWORD_INPUT = 'input[name="password"]'
SUBMIT_BUTTON = 'button[type="submit"]'
SLOT_LINKS = 'button[data-test-id*="search-result"], a[href*="/experience/"]'
PHONE_INPUT = 'input[name="phone"], input[type="tel"]'
NOTES_INPUT = 'textarea[name="notes"], textarea[placeholder*="special"]'
CONTINUE_BUTTON = 'button:has-text("Continue"), button:has-text("Proceed"), button[type="submit"]'

PARAM_KEYS = {
    "email",
    "password",
    "phone",
    "party_size",
    "preferred_time",
    "target_date",
    "headless",
    "note",
    "venue_url",
    "login_url",
    "handoff_hold_seconds",
    "navigation_timeout_ms",
    "selector_timeout_ms",
}


class BookingState(str, Enum):
    LOGIN = "login"
    SEARCH = "search"
    SELECT_SLOT = "select_slot"
    FILL_DETAILS = "fill_details"
    AWAIT_HANDOFF = "await_handoff"


STATE_ORDER = [
    BookingState.LOGIN,
    BookingState.SEARCH,
    BookingState.SELECT_SLOT,
    BookingState.FILL_DETAILS,
    BookingState.AWAIT_HANDOFF,
]


@dataclass(frozen=True)
class StepTimeouts:
    navigation_ms: int = 30000
    selector_ms: int = 10000
    settle_ms: int = 2000
    continue_settle_ms: int = 3000


@dataclass(frozen=True)
class BookingRequest:
    email: str
    password: str
    phone: str
    party_size: int
    preferred_time: str
    target_date: date
    headless: bool
    note: str = DEFAULT_NOTE
    venue_url: str = DEFAULT_VENUE_URL
    login_url: str = DEFAULT_LOGIN_URL

    @property
    def search_url(self) -> str:
        return (
            f"{self.venue_url.rstrip('/')}/search?date={self.target_date.isoformat()}"
            f"&size={self.party_size}&time={self.preferred_time}"
        )


def last_friday_of_next_month(today: date) -> date:
    year = today.year + (1 if today.month == 12 else 0)
    month = 1 if today.month == 12 else today.month + 1
    candidate = date(year, month, calendar.monthrange(year, month)[1])
    while candidate.weekday() != calendar.FRIDAY:
        candidate -= timedelta(days=1)
    return candidate


class BrowserSession(abc.ABC):
    """Minimal page-driving surface the booking states need."""

    @abc.abstractmethod
    def open(self, headless: bool) -> None: ...

    @abc.abstractmethod
    def goto(self, url: str, timeout_ms: int) -> None: ...

    @abc.abstractmethod
    def wait_for(self, selector: str, timeout_ms: int) -> None: ...

    @abc.abstractmethod
    def fill(self, selector: str, text: str, timeout_ms: int) -> None: ...

    @abc.abstractmethod
    def click_and_wait_for_navigation(self, selector: str, timeout_ms: int) -> None: ...

    @abc.abstractmethod
    def count(self, selector: str) -> int: ...

    @abc.abstractmethod
    def click_nth(self, selector: str, index: int, timeout_ms: int) -> None: ...

    @abc.abstractmethod
    def exists(self, selector: str) -> bool: ...

    @abc.abstractmethod
    def pause(self, milliseconds: int) -> None: ...

    @abc.abstractmethod
    def close(self) -> None: ...


def require_playwright_dependency() -> None:
    if sync_playwright is None:
        raise OverseerError(
            "Missing required dependency: playwright. Install with: "
            "pip install playwright && playwright install chromium"
        )


class PlaywrightSession(BrowserSession):
    """Chromium session through the Playwright sync API.

    The sync API is bound to the thread that opened it; a session must be
    opened, used and closed by one execute() call.
    """

    def __init__(self) -> None:
        self._playwright: Any = None
        self._browser: Any = None
        self._context: Any = None
        self._page: Any = None

    def _guard(self, label: str, timeout_ms: int, call: Callable[[], Any]) -> Any:
        try:
            return call()
        except PlaywrightTimeoutError as exc:
            raise AttemptTimeoutError(label, timeout_ms / 1000.0) from exc

    def open(self, headless: bool) -> None:
        require_playwright_dependency()
        self._playwright = sync_playwright().start()
        self._browser = self._playwright.chromium.launch(headless=headless, args=BROWSER_ARGS)
        self._context = self._browser.new_context(
            viewport={"width": 1920, "height": 1080},
            user_agent=USER_AGENT,
        )
        self._page = self._context.new_page()

    def goto(self, url: str, timeout_ms: int) -> None:
        self._guard(
            f"navigation to {url}",
            timeout_ms,
            lambda: self._page.goto(url, wait_until="networkidle", timeout=timeout_ms),
        )

    def wait_for(self, selector: str, timeout_ms: int) -> None:
        self._guard(
            f"waiting for {selector}",
            timeout_ms,
            lambda: self._page.wait_for_selector(selector, timeout=timeout_ms),
        )

    def fill(self, selector: str, text: str, timeout_ms: int) -> None:
        self._guard(
            f"filling {selector}",
            timeout_ms,
            lambda: self._page.fill(selector, text, timeout=timeout_ms),
        )

    def click_and_wait_for_navigation(self, selector: str, timeout_ms: int) -> None:
        def call() -> None:
            with self._page.expect_navigation(wait_until="networkidle", timeout=timeout_ms):
                self._page.click(selector, timeout=timeout_ms)

        self._guard(f"submitting {selector}", timeout_ms, call)

    def count(self, selector: str) -> int:
        return self._page.locator(selector).count()

    def click_nth(self, selector: str, index: int, timeout_ms: int) -> None:
        self._guard(
            f"clicking {selector}",
            timeout_ms,
            lambda: self._page.locator(selector).nth(index).click(timeout=timeout_ms),
        )

    def exists(self, selector: str) -> bool:
        return self._page.query_selector(selector) is not None

    def pause(self, milliseconds: int) -> None:
        self._page.wait_for_timeout(milliseconds)

    def close(self) -> None:
        try:
            if self._context is not None:
                self._context.close()
            if self._browser is not None:
                self._browser.close()
        finally:
            if self._playwright is not None:
                self._playwright.stop()
            self._playwright = self._browser = self._context = self._page = None


class ReservationJob(JobCapability):
    def __init__(
        self,
        name: str,
        email: Optional[str],
        password: Optional[str],
        phone: str = "",
        party_size: int = DEFAULT_PARTY_SIZE,
        preferred_time: str = DEFAULT_PREFERRED_TIME,
        target_date: Optional[date] = None,
        headless: bool = True,
        note: str = DEFAULT_NOTE,
        venue_url: str = DEFAULT_VENUE_URL,
        login_url: str = DEFAULT_LOGIN_URL,
        handoff_hold_seconds: int = DEFAULT_HANDOFF_HOLD_SECONDS,
        debug_hold_seconds: int = DEFAULT_DEBUG_HOLD_SECONDS,
        timeouts: StepTimeouts = StepTimeouts(),
        session_factory: Callable[[], BrowserSession] = PlaywrightSession,
        today: Callable[[], date] = date.today,
        logger: Optional[logging.Logger] = None,
    ):
        self.name = name
        self.email = email
        self.password = password
        self.phone = phone
        self.party_size = party_size
        self.preferred_time = preferred_time
        self.target_date = target_date
        self.headless = headless
        self.note = note
        self.venue_url = venue_url
        self.login_url = login_url
        self.handoff_hold_seconds = handoff_hold_seconds
        self.debug_hold_seconds = debug_hold_seconds
        self.timeouts = timeouts
        self.session_factory = session_factory
        self.today = today
        self.logger = get_logger(logger)
        self._handlers: Dict[BookingState, Callable[[BrowserSession, BookingRequest], Outcome]] = {
            BookingState.LOGIN: self._login,
            BookingState.SEARCH: self._search,
            BookingState.SELECT_SLOT: self._select_slot,
            BookingState.FILL_DETAILS: self._fill_details,
            BookingState.AWAIT_HANDOFF: self._await_handoff,
        }

    def build_request(self) -> BookingRequest:
        return BookingRequest(
            email=self.email or "",
            password=self.password or "",
            phone=self.phone,
            party_size=self.party_size,
            preferred_time=self.preferred_time,
            target_date=self.target_date or last_friday_of_next_month(self.today()),
            headless=self.headless,
            note=self.note,
            venue_url=self.venue_url,
            login_url=self.login_url,
        )

    def execute(self, cancel: Optional[threading.Event] = None) -> Outcome:
        self.logger.info("[%s] Reservation bot started", self.name)
        if not self.email or not self.password:
            self.logger.error("[%s] Missing credentials: TOCK_EMAIL and TOCK_PASSWORD must be set", self.name)
            return Outcome.failed("missing credentials")

        request = self.build_request()
        self.logger.info(
            "[%s] Target reservation date: %s (party of %s at %s)",
            self.name,
            request.target_date.isoformat(),
            request.party_size,
            request.preferred_time,
        )

        session = self.session_factory()
        state = BookingState.LOGIN
        try:
            self.logger.info("[%s] Launching browser (headless=%s)", self.name, request.headless)
            session.open(request.headless)
            for state in STATE_ORDER:
                if cancel is not None and cancel.is_set():
                    self.logger.warning("[%s] Cancelled before state %s", self.name, state.value)
                    return Outcome.failed(f"{state.value}: cancelled")
                self.logger.info("[%s] Entering state %s", self.name, state.value)
                outcome = self._handlers[state](session, request)
                if not outcome.success:
                    return self._fail(session, state, outcome.reason or "failed", cancel)
            if not request.headless and self.handoff_hold_seconds > 0:
                self.logger.warning(
                    "[%s] The browser will remain open for %ss for manual completion",
                    self.name,
                    self.handoff_hold_seconds,
                )
                self._hold(session, self.handoff_hold_seconds, cancel)
            return Outcome.ok()
        except Exception as exc:
            return self._fail(session, state, Outcome.from_exception(exc).reason or "failed", cancel)
        finally:
            try:
                session.close()
                self.logger.info("[%s] Browser closed", self.name)
            except Exception as exc:
                self.logger.warning("[%s] Failed to close browser: %s", self.name, exc)

    def _hold(self, session: BrowserSession, seconds: int, cancel: Optional[threading.Event]) -> None:
        remaining_ms = seconds * 1000
        while remaining_ms > 0:
            if cancel is not None and cancel.is_set():
                self.logger.warning("[%s] Hold cancelled", self.name)
                return
            step = remaining_ms if cancel is None else min(remaining_ms, HOLD_SLICE_MS)
            session.pause(step)
            remaining_ms -= step

    def _fail(
        self,
        session: BrowserSession,
        state: BookingState,
        reason: str,
        cancel: Optional[threading.Event] = None,
    ) -> Outcome:
        self.logger.error("[%s] Booking attempt failed in state %s: %s", self.name, state.value, reason)
        if not self.headless and self.debug_hold_seconds > 0:
            self.logger.info("[%s] Browser will remain open for debugging (%ss)", self.name, self.debug_hold_seconds)
            try:
                self._hold(session, self.debug_hold_seconds, cancel)
            except Exception as exc:
                self.logger.warning("[%s] Debug hold interrupted: %s", self.name, exc)
        return Outcome.failed(f"{state.value}: {reason}")

    def _login(self, session: BrowserSession, request: BookingRequest) -> Outcome:
        session.goto(request.login_url, self.timeouts.navigation_ms)
        session.wait_for(EMAIL_INPUT, self.timeouts.selector_ms)
        session.fill(EMAIL_INPUT, request.email, self.timeouts.selector_ms)
        session.fill(PASSWORD_INPUT, request.password, self.timeouts.selector_ms)
        session.click_and_wait_for_navigation(SUBMIT_BUTTON, self.timeouts.navigation_ms)
        self.logger.info("[%s] Login successful", self.name)
        return Outcome.ok()

    def _search(self, session: BrowserSession, request: BookingRequest) -> Outcome:
        self.logger.info("[%s] Searching %s", self.name, request.search_url)
        session.goto(request.search_url, self.timeouts.navigation_ms)
        session.pause(self.timeouts.settle_ms)
        return Outcome.ok()

    def _select_slot(self, session: BrowserSession, request: BookingRequest) -> Outcome:
        available = session.count(SLOT_LINKS)
        if available == 0:
            self.logger.warning("[%s] No available time slots found for %s", self.name, request.target_date)
            return Outcome.failed(f"no available time slots for {request.target_date.isoformat()}")
        self.logger.info("[%s] Found %s potential time slot(s)", self.name, available)
        session.click_nth(SLOT_LINKS, 0, self.timeouts.selector_ms)
        session.pause(self.timeouts.settle_ms)
        return Outcome.ok()

    def _fill_details(self, session: BrowserSession, request: BookingRequest) -> Outcome:
        if request.phone and session.exists(PHONE_INPUT):
            session.fill(PHONE_INPUT, request.phone, self.timeouts.selector_ms)
        if request.note and session.exists(NOTES_INPUT):
            session.fill(NOTES_INPUT, request.note, self.timeouts.selector_ms)
        return Outcome.ok()

    def _await_handoff(self, session: BrowserSession, request: BookingRequest) -> Outcome:
        if session.exists(CONTINUE_BUTTON):
            session.click_nth(CONTINUE_BUTTON, 0, self.timeouts.selector_ms)
            session.pause(self.timeouts.continue_settle_ms)
        self.logger.info("[%s] Reached payment/confirmation page", self.name)
        self.logger.warning("[%s] MANUAL INTERVENTION REQUIRED: complete the payment by hand", self.name)
        return Outcome.ok()


def _optional_str(value: Any, field_path: str) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ConfigError(f"Error: {field_path} must be a string.")
    return value


def build_reservation_job(definition: JobDefinition, logger: logging.Logger) -> ReservationJob:
    params = definition.params
    path = f"{definition.name}.params"
    reject_unknown(params, PARAM_KEYS, path)

    target_raw = params.get("target_date")
    target_date: Optional[date] = None
    if target_raw is not None:
        if isinstance(target_raw, date):
            target_date = target_raw
        else:
            try:
                target_date = date.fromisoformat(ensure_str(target_raw, f"{path}.target_date"))
            except ValueError as exc:
                raise ConfigError(f'Error: {path}.target_date must be YYYY-MM-DD, got "{target_raw}".') from exc

    headless_env = os.environ.get("HEADLESS", "true").strip().lower() != "false"
    defaults = StepTimeouts()
    return ReservationJob(
        name=definition.name,
        email=_optional_str(params.get("email"), f"{path}.email") or os.environ.get("TOCK_EMAIL"),
        password=_optional_str(params.get("password"), f"{path}.password") or os.environ.get("TOCK_PASSWORD"),
        phone=_optional_str(params.get("phone"), f"{path}.phone") or os.environ.get("TOCK_PHONE", ""),
        party_size=ensure_int(params.get("party_size"), f"{path}.party_size", DEFAULT_PARTY_SIZE, 1),
        preferred_time=ensure_str(params.get("preferred_time", DEFAULT_PREFERRED_TIME), f"{path}.preferred_time"),
        target_date=target_date,
        headless=ensure_bool(params.get("headless"), f"{path}.headless", headless_env),
        note=_optional_str(params.get("note"), f"{path}.note") if "note" in params else DEFAULT_NOTE,
        venue_url=ensure_str(params.get("venue_url", DEFAULT_VENUE_URL), f"{path}.venue_url"),
        login_url=ensure_str(params.get("login_url", DEFAULT_LOGIN_URL), f"{path}.login_url"),
        handoff_hold_seconds=ensure_int(
            params.get("handoff_hold_seconds"),
            f"{path}.handoff_hold_seconds",
            DEFAULT_HANDOFF_HOLD_SECONDS,
            0,
        ),
        timeouts=StepTimeouts(
            navigation_ms=ensure_int(
                params.get("navigation_timeout_ms"),
                f"{path}.navigation_timeout_ms",
                defaults.navigation_ms,
            ),
            selector_ms=ensure_int(
                params.get("selector_timeout_ms"),
                f"{path}.selector_timeout_ms",
                defaults.selector_ms,
            ),
        ),
        logger=logger,
    )
