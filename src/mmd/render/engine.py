"""Render invoker - runs Mermaid source through an external engine.

Two engines share one contract::

    async with engine.invoke(input_path, options) as outcome:
        svg = await outcome.svg_markup()

BrowserEngine keeps a warm Chromium (via Playwright) and gives every call a
fresh browser context, so no DOM or mermaid state leaks between renders.
CliEngine shells out to ``mmdc`` and detects completion by exit code.

Neither engine retries; that is a caller-level policy.
"""

from __future__ import annotations

import asyncio
import shlex
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from loguru import logger
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from playwright.async_api import async_playwright

from mmd.errors import (
    EngineError,
    EngineRuntimeError,
    EngineStartupFailure,
    EngineTimeout,
    ExtractionError,
)
from mmd.models import OutputFormat, PixelSize

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from contextlib import AbstractAsyncContextManager

    from playwright.async_api import Browser, ElementHandle, Page, Playwright

    from mmd.config import EngineConfig
    from mmd.models import RenderOptions

__all__ = [
    "BrowserEngine",
    "CliEngine",
    "EngineOptions",
    "EngineOutcome",
    "RenderEngine",
    "SessionPool",
    "create_engine",
]

DIAGRAM_SELECTOR = "#container svg"
PDF_MARGIN = "20px"

_PAGE_TEMPLATE = """<!DOCTYPE html>
<html>
<head>
<meta charset="utf-8">
<title>mmd</title>
<style>
  body {
    margin: 0;
    padding: 20px;
    display: flex;
    justify-content: center;
    align-items: center;
    min-height: 100vh;
    box-sizing: border-box;
    font-family: Arial, sans-serif;
  }
  #container { max-width: 100%; max-height: 100%; }
</style>
</head>
<body><div id="container"></div></body>
</html>
"""

# Kicks off mermaid.render without awaiting it; completion is observed by
# polling window.__mmdState from Python.
_START_RENDER_JS = """
({ code, theme, background }) => {
  window.__mmdState = { done: false, error: null };
  document.body.style.background = background;
  const fail = (err) => {
    window.__mmdState.error = String((err && err.message) || err);
    window.__mmdState.done = true;
  };
  try {
    mermaid.initialize({
      startOnLoad: false,
      theme: theme,
      securityLevel: 'strict',
      flowchart: { useMaxWidth: true, htmlLabels: true, curve: 'basis', padding: 15 },
      sequence: { useMaxWidth: true },
      gantt: { useMaxWidth: true },
    });
    mermaid.render('mmd-diagram', code).then(({ svg }) => {
      document.getElementById('container').innerHTML = svg;
      window.__mmdState.done = true;
    }).catch(fail);
  } catch (err) {
    fail(err);
  }
}
"""

_DONE_JS = "() => window.__mmdState && window.__mmdState.done"


@dataclass(frozen=True)
class EngineOptions:
    """Visual options handed to the engine for one invocation."""

    output_format: OutputFormat
    width: int
    height: int
    background_color: str = "white"
    theme: str = "default"
    resolution_scale: float = 2.0
    timeout: float = 60.0

    @classmethod
    def from_render_options(cls, options: RenderOptions, timeout: float) -> EngineOptions:
        return cls(
            output_format=options.format,
            width=options.width,
            height=options.height,
            background_color=options.background_color,
            theme=options.theme,
            resolution_scale=options.resolution_scale,
            timeout=timeout,
        )

    @property
    def transparent(self) -> bool:
        return self.background_color.strip().lower() == "transparent"


class EngineOutcome(Protocol):
    """Raw output handle of a finished invocation."""

    bounding_box: PixelSize | None

    async def svg_markup(self) -> str: ...

    async def raster_png(self) -> bytes: ...

    async def pdf_document(self) -> bytes: ...


class RenderEngine(Protocol):
    """Anything that can turn a staged source file into an outcome."""

    name: str

    def invoke(
        self, input_path: Path, options: EngineOptions
    ) -> AbstractAsyncContextManager[EngineOutcome]: ...

    async def aclose(self) -> None: ...


# -----------------------------------------------------------------------------
# Browser engine
# -----------------------------------------------------------------------------


class SessionPool:
    """One warm Chromium shared by all renders.

    Contexts are capped by a semaphore; the browser is launched lazily and
    relaunched if it disconnects.
    """

    def __init__(
        self,
        *,
        max_sessions: int = 2,
        headless: bool = True,
        browser_args: list[str] | None = None,
    ) -> None:
        self.max_sessions = max_sessions
        self._headless = headless
        self._browser_args = list(browser_args or [])
        self._semaphore = asyncio.Semaphore(max_sessions)
        self._lock = asyncio.Lock()
        self._playwright: Playwright | None = None
        self._browser: Browser | None = None
        self._closed = False

    @property
    def is_running(self) -> bool:
        return self._browser is not None and self._browser.is_connected()

    async def _ensure_browser(self) -> Browser:
        async with self._lock:
            if self._closed:
                raise EngineStartupFailure("browser session pool is closed")
            if self._browser is not None and self._browser.is_connected():
                return self._browser
            if self._browser is not None:
                logger.warning("Chromium disconnected, relaunching")
            try:
                if self._playwright is None:
                    self._playwright = await async_playwright().start()
                self._browser = await self._playwright.chromium.launch(
                    headless=self._headless, args=self._browser_args
                )
            except PlaywrightError as e:
                raise EngineStartupFailure(f"could not launch Chromium: {e}") from e
            logger.info("Chromium session started")
            return self._browser

    @asynccontextmanager
    async def page(
        self, *, width: int, height: int, scale: float = 1.0
    ) -> AsyncIterator[Page]:
        """Acquire a page in a fresh context; the context is closed on exit."""
        async with self._semaphore:
            browser = await self._ensure_browser()
            try:
                context = await browser.new_context(
                    viewport={"width": width, "height": height},
                    device_scale_factor=scale,
                )
                page = await context.new_page()
            except PlaywrightError as e:
                raise EngineStartupFailure(f"could not open browser page: {e}") from e
            try:
                yield page
            finally:
                try:
                    await context.close()
                except PlaywrightError as e:
                    logger.debug(f"Browser context close failed: {e}")

    async def aclose(self) -> None:
        """Close the browser and Playwright driver."""
        async with self._lock:
            self._closed = True
            browser, self._browser = self._browser, None
            playwright, self._playwright = self._playwright, None
        if browser is not None:
            try:
                await browser.close()
            except PlaywrightError as e:
                logger.debug(f"Browser close failed: {e}")
        if playwright is not None:
            await playwright.stop()
            logger.info("Chromium session stopped")


class BrowserOutcome:
    """Rendered page holding the diagram root element."""

    def __init__(
        self, page: Page, element: ElementHandle, options: EngineOptions
    ) -> None:
        self._page = page
        self._element = element
        self._options = options
        self.bounding_box: PixelSize | None = None

    async def svg_markup(self) -> str:
        return await self._element.evaluate("el => el.outerHTML")

    async def raster_png(self) -> bytes:
        # device_scale_factor supersamples the capture
        return await self._element.screenshot(
            type="png", omit_background=self._options.transparent
        )

    async def pdf_document(self) -> bytes:
        margin = {side: PDF_MARGIN for side in ("top", "right", "bottom", "left")}
        return await self._page.pdf(
            width=f"{self._options.width}px",
            height=f"{self._options.height}px",
            margin=margin,
            print_background=True,
        )


class BrowserEngine:
    """Headless Chromium + mermaid.js."""

    name = "browser"

    def __init__(
        self,
        pool: SessionPool,
        *,
        mermaid_js_url: str,
        poll_interval_ms: int = 100,
    ) -> None:
        self.pool = pool
        self.mermaid_js_url = mermaid_js_url
        self.poll_interval_ms = poll_interval_ms

    async def _load_mermaid(self, page: Page) -> None:
        try:
            await page.set_content(_PAGE_TEMPLATE)
            if self.mermaid_js_url.startswith(("http://", "https://")):
                await page.add_script_tag(url=self.mermaid_js_url)
            else:
                local = self.mermaid_js_url.removeprefix("file://")
                await page.add_script_tag(path=str(Path(local).expanduser()))
            loaded = await page.evaluate("() => typeof window.mermaid !== 'undefined'")
        except PlaywrightTimeoutError as e:
            raise EngineStartupFailure(
                f"mermaid library did not load from {self.mermaid_js_url}"
            ) from e
        except PlaywrightError as e:
            raise EngineStartupFailure(f"mermaid library failed to load: {e}") from e
        if not loaded:
            raise EngineStartupFailure(
                f"mermaid library not defined after loading {self.mermaid_js_url}"
            )

    @asynccontextmanager
    async def invoke(
        self, input_path: Path, options: EngineOptions
    ) -> AsyncIterator[BrowserOutcome]:
        code = await asyncio.to_thread(input_path.read_text, encoding="utf-8")
        timeout_ms = options.timeout * 1000

        async with self.pool.page(
            width=options.width,
            height=options.height,
            scale=options.resolution_scale,
        ) as page:
            page.set_default_timeout(timeout_ms)
            await self._load_mermaid(page)

            try:
                await page.evaluate(
                    _START_RENDER_JS,
                    {
                        "code": code,
                        "theme": options.theme,
                        "background": options.background_color,
                    },
                )
                await page.wait_for_function(
                    _DONE_JS, timeout=timeout_ms, polling=self.poll_interval_ms
                )
                state = await page.evaluate("() => window.__mmdState")
            except PlaywrightTimeoutError as e:
                raise EngineTimeout(options.timeout) from e
            except PlaywrightError as e:
                raise EngineError(f"browser failure during render: {e}") from e

            if state.get("error"):
                raise EngineRuntimeError(state["error"])

            try:
                element = await page.query_selector(DIAGRAM_SELECTOR)
                box = await element.bounding_box() if element is not None else None
            except PlaywrightError as e:
                raise EngineError(f"browser failure while locating the diagram: {e}") from e
            if element is None:
                raise ExtractionError("rendered diagram root element not found")

            outcome = BrowserOutcome(page, element, options)
            if box:
                outcome.bounding_box = PixelSize(
                    width=round(box["width"]), height=round(box["height"])
                )
            yield outcome

    async def aclose(self) -> None:
        await self.pool.aclose()


# -----------------------------------------------------------------------------
# CLI engine
# -----------------------------------------------------------------------------


class CliOutcome:
    """File written by mmdc for the requested format."""

    def __init__(self, output_path: Path, options: EngineOptions) -> None:
        self._output_path = output_path
        self._options = options
        self.bounding_box: PixelSize | None = None

    def _read(self, expected: OutputFormat) -> bytes:
        if self._options.output_format is not expected:
            raise ExtractionError(
                f"cli engine produced {self._options.output_format.value}, not {expected.value}"
            )
        if not self._output_path.exists():
            raise ExtractionError(f"mmdc did not write {self._output_path.name}")
        return self._output_path.read_bytes()

    async def svg_markup(self) -> str:
        return (await asyncio.to_thread(self._read, OutputFormat.VECTOR)).decode("utf-8")

    async def raster_png(self) -> bytes:
        return await asyncio.to_thread(self._read, OutputFormat.RASTER)

    async def pdf_document(self) -> bytes:
        return await asyncio.to_thread(self._read, OutputFormat.DOCUMENT)


class CliEngine:
    """@mermaid-js/mermaid-cli (mmdc) as a subprocess."""

    name = "cli"

    def __init__(self, command: str = "mmdc") -> None:
        self.command = shlex.split(command)

    def build_args(self, input_path: Path, output_path: Path, options: EngineOptions) -> list[str]:
        return [
            *self.command,
            "-i", str(input_path),
            "-o", str(output_path),
            "-t", options.theme,
            "-b", options.background_color,
            "-w", str(options.width),
            "-H", str(options.height),
            "-s", f"{options.resolution_scale:g}",
        ]  # fmt: skip

    @asynccontextmanager
    async def invoke(
        self, input_path: Path, options: EngineOptions
    ) -> AsyncIterator[CliOutcome]:
        output_path = input_path.with_suffix(f".out{options.output_format.extension}")
        args = self.build_args(input_path, output_path, options)
        logger.debug(f"Running {shlex.join(args)}")

        try:
            proc = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (FileNotFoundError, PermissionError) as e:
            raise EngineStartupFailure(
                f"'{self.command[0]}' not runnable ({e}); install @mermaid-js/mermaid-cli"
            ) from e

        try:
            try:
                _, stderr = await asyncio.wait_for(proc.communicate(), timeout=options.timeout)
            except asyncio.TimeoutError:
                proc.kill()
                await proc.wait()
                raise EngineTimeout(options.timeout) from None

            if proc.returncode != 0:
                message = stderr.decode("utf-8", errors="replace").strip()
                raise EngineRuntimeError(message or f"mmdc exited with code {proc.returncode}")

            yield CliOutcome(output_path, options)
        finally:
            output_path.unlink(missing_ok=True)

    async def aclose(self) -> None:
        return None


def create_engine(config: EngineConfig) -> BrowserEngine | CliEngine:
    """Build the engine selected by configuration."""
    if config.type == "cli":
        return CliEngine(config.cli_command)
    pool = SessionPool(
        max_sessions=config.max_sessions,
        headless=config.headless,
        browser_args=config.browser_args,
    )
    return BrowserEngine(
        pool,
        mermaid_js_url=config.mermaid_js_url,
        poll_interval_ms=config.poll_interval_ms,
    )
