"""
Tab Driver backed by Playwright.

Each surface is one Playwright page in a shared browser context. Page loads
and unexpected page closes are reported to a single listener as controller
events.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import TYPE_CHECKING, Awaitable, Callable, Dict, Optional, Protocol, Set, Union

from .errors import SurfaceError
from .models import SurfaceClosed, SurfaceNavigated

# Playwright is imported lazily in start()
if TYPE_CHECKING:
    from playwright.async_api import Browser, BrowserContext, Page, Playwright  # type: ignore

logger = logging.getLogger(__name__)

SurfaceEvent = Union[SurfaceNavigated, SurfaceClosed]
Listener = Callable[[SurfaceEvent], Awaitable[None]]

DEFAULT_NAV_TIMEOUT_MS: int = 45_000
DEFAULT_USER_AGENT: str = (
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
)


class TabDriver(Protocol):
    def set_listener(self, listener: Listener) -> None: ...

    async def open(self) -> str: ...

    async def navigate(self, surface: str, url: str) -> None: ...

    async def close(self, surface: str) -> None: ...

    async def current_url(self, surface: str) -> Optional[str]: ...

    async def content(self, surface: str) -> str: ...

    async def fetch_html(self, url: str) -> str: ...


class PlaywrightTabDriver:
    def __init__(
        self,
        *,
        headless: bool = False,
        user_agent: str = DEFAULT_USER_AGENT,
        nav_timeout_ms: int = DEFAULT_NAV_TIMEOUT_MS,
    ) -> None:
        self.headless = headless
        self.user_agent = user_agent
        self.nav_timeout_ms = int(nav_timeout_ms)

        self._pw: Optional["Playwright"] = None
        self._browser: Optional["Browser"] = None
        self._ctx: Optional["BrowserContext"] = None
        self._pw_lock = asyncio.Lock()

        self._pages: Dict[str, "Page"] = {}
        self._closing: Set[str] = set()
        self._listener: Optional[Listener] = None
        self._tasks: Set[asyncio.Task] = set()

    def set_listener(self, listener: Listener) -> None:
        self._listener = listener

    # -----------------------------
    # Lifecycle
    # -----------------------------

    async def start(self) -> None:
        async with self._pw_lock:
            if self._pw and self._browser and self._ctx:
                return

            try:
                from playwright.async_api import async_playwright  # type: ignore
            except Exception as e:
                raise SurfaceError(
                    "Playwright is not installed or not available. Install it and run 'playwright install chromium'."
                ) from e

            self._pw = await async_playwright().start()
            self._browser = await self._pw.chromium.launch(
                headless=self.headless,
                args=["--disable-dev-shm-usage"],
            )
            self._ctx = await self._browser.new_context(
                user_agent=self.user_agent,
                java_script_enabled=True,
                viewport={"width": 1365, "height": 768},
            )
            logger.info("Browser started (headless=%s)", self.headless)

    async def stop(self) -> None:
        async with self._pw_lock:
            self._closing.update(self._pages.keys())
            self._pages.clear()
            if self._ctx:
                try:
                    await self._ctx.close()
                except Exception:
                    logger.debug("Context close failed", exc_info=True)
            self._ctx = None
            if self._browser:
                try:
                    await self._browser.close()
                except Exception:
                    logger.debug("Browser close failed", exc_info=True)
            self._browser = None
            if self._pw:
                try:
                    await self._pw.stop()
                except Exception:
                    logger.debug("Playwright stop failed", exc_info=True)
            self._pw = None

    async def _context(self) -> "BrowserContext":
        await self.start()
        assert self._ctx is not None
        return self._ctx

    # -----------------------------
    # Events
    # -----------------------------

    def _emit(self, event: SurfaceEvent) -> None:
        if self._listener is None:
            return
        task = asyncio.ensure_future(self._listener(event))
        self._tasks.add(task)
        task.add_done_callback(self._emit_done)

    def _emit_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Surface event listener failed", exc_info=task.exception())

    def _wire(self, surface: str, page: "Page") -> None:
        def on_load(_page) -> None:
            self._emit(SurfaceNavigated(surface=surface))

        def on_close(_page) -> None:
            self._pages.pop(surface, None)
            if surface in self._closing:
                self._closing.discard(surface)
                return
            logger.info("Surface %s closed outside the orchestrator", surface)
            self._emit(SurfaceClosed(surface=surface))

        page.on("load", on_load)
        page.on("close", on_close)

    def _page(self, surface: str) -> "Page":
        page = self._pages.get(surface)
        if page is None:
            raise SurfaceError(f"unknown or closed surface {surface}")
        return page

    # -----------------------------
    # Surface operations
    # -----------------------------

    async def open(self) -> str:
        """Open a blank surface; callers navigate it once they own the handle."""
        ctx = await self._context()
        surface = uuid.uuid4().hex
        try:
            page = await ctx.new_page()
        except Exception as e:
            raise SurfaceError(f"could not open surface: {e}") from e

        self._pages[surface] = page
        self._wire(surface, page)
        logger.info("Opened surface %s", surface)
        return surface

    async def navigate(self, surface: str, url: str) -> None:
        page = self._page(surface)
        try:
            await page.goto(url, wait_until="domcontentloaded", timeout=self.nav_timeout_ms)
        except Exception as e:
            raise SurfaceError(f"navigation to {url} failed: {e}") from e

    async def close(self, surface: str) -> None:
        page = self._pages.pop(surface, None)
        if page is None:
            return
        self._closing.add(surface)
        try:
            await page.close()
        except Exception:
            logger.debug("Page close failed for surface %s", surface, exc_info=True)
        logger.info("Closed surface %s", surface)

    async def current_url(self, surface: str) -> Optional[str]:
        page = self._pages.get(surface)
        return page.url if page is not None else None

    async def content(self, surface: str) -> str:
        page = self._page(surface)
        return await page.content()

    async def fetch_html(self, url: str) -> str:
        """Load ``url`` in a throwaway page and return its HTML."""
        ctx = await self._context()
        page = await ctx.new_page()
        try:
            await page.goto(url, wait_until="domcontentloaded", timeout=self.nav_timeout_ms)
            return await page.content()
        except Exception as e:
            raise SurfaceError(f"could not load {url}: {e}") from e
        finally:
            try:
                await page.close()
            except Exception:
                logger.debug("Transient page close failed", exc_info=True)
