"""Profile page rendering and banner region extraction."""

import asyncio
import math
from io import BytesIO
from typing import Protocol

from PIL import Image, UnidentifiedImageError
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from playwright.async_api import async_playwright

from src.config import config
from src.logging_utils import get_logger
from src.bannerlease.errors import FingerprintError, RenderError

logger = get_logger(__name__)

# Element that carries the banner on X profile pages
PROFILE_HEADER_SELECTOR = 'div[data-testid="ProfileHeader"]'
VIEWPORT = {"width": 1920, "height": 1080}


class RenderGateway(Protocol):
    """Renders a URL to PNG bytes. Raises RenderError on any failure."""

    async def render(self, url: str) -> bytes: ...


def profile_url(screen_name: str) -> str:
    return config.profile_url_template.format(screen_name=screen_name.lstrip("@"))


class PlaywrightRenderGateway:
    """Headless Chromium snapshot of a profile page."""

    def __init__(
        self,
        timeout_seconds: float = None,
        selector_timeout_seconds: float = None,
    ):
        self.timeout_seconds = timeout_seconds or config.render_timeout_seconds
        self.selector_timeout_seconds = selector_timeout_seconds or config.render_selector_timeout_seconds

    async def render(self, url: str) -> bytes:
        """Take a viewport screenshot of the page at url.

        Args:
            url: Page to render.

        Returns:
            PNG bytes.

        Raises:
            RenderError: If the browser fails or the overall timeout elapses.
        """
        try:
            return await asyncio.wait_for(self._screenshot(url), timeout=self.timeout_seconds)
        except asyncio.TimeoutError as e:
            raise RenderError(f"Render of {url} timed out after {self.timeout_seconds}s") from e
        except PlaywrightError as e:
            raise RenderError(f"Render of {url} failed: {e}") from e

    async def _screenshot(self, url: str) -> bytes:
        timeout_ms = self.timeout_seconds * 1000
        async with async_playwright() as p:
            browser = await p.chromium.launch(
                headless=True,
                args=["--no-sandbox", "--disable-setuid-sandbox"],
            )
            try:
                page = await browser.new_page(viewport=VIEWPORT)
                await page.goto(url, wait_until="networkidle", timeout=timeout_ms)
                try:
                    await page.wait_for_selector(
                        PROFILE_HEADER_SELECTOR,
                        timeout=self.selector_timeout_seconds * 1000,
                    )
                except PlaywrightTimeoutError:
                    # Header may be missing on some layouts; the screenshot is still usable
                    logger.debug(f"Profile header not found on {url}")
                png = await page.screenshot(full_page=False, type="png")
            finally:
                await browser.close()
        logger.debug(f"Rendered {url}: {len(png)} bytes")
        return png


def crop_banner_region(png: bytes, fraction: float = None) -> Image.Image:
    """Extract the top fraction of a rendered page, where the banner sits.

    Args:
        png: Encoded page snapshot.
        fraction: Share of the page height to keep. Defaults to config.

    Returns:
        The cropped region at full width.
    """
    fraction = fraction or config.banner_crop_fraction
    try:
        with Image.open(BytesIO(png)) as page:
            page.load()
            width, height = page.size
            banner_height = math.floor(height * fraction)
            if width == 0 or banner_height == 0:
                raise FingerprintError(f"Snapshot too small to crop banner: {width}x{height}")
            return page.crop((0, 0, width, banner_height))
    except (UnidentifiedImageError, OSError) as e:
        raise FingerprintError(f"Cannot decode snapshot: {e}") from e
