import logging
import random

from playwright.async_api import Browser, Playwright, async_playwright
from playwright_stealth import Stealth

from site_screener.models import ProxyConfig

logger = logging.getLogger(__name__)


class GlobalBrowserManager:
    """Singleton manager for a shared headless Browser instance."""

    _playwright: Playwright | None = None
    _browser: Browser | None = None

    @classmethod
    async def start(cls) -> None:
        if not cls._playwright:
            cls._playwright = await async_playwright().start()
            logger.info("Global Playwright Started")

        if not cls._browser:
            # stealth 在 page 级别应用
            cls._browser = await cls._playwright.chromium.launch(headless=True)
            logger.info("Global Browser Instance Launched")

    @classmethod
    async def stop(cls) -> None:
        if cls._browser:
            await cls._browser.close()
            cls._browser = None
            logger.info("Global Browser Closed")

        if cls._playwright:
            await cls._playwright.stop()
            cls._playwright = None
            logger.info("Global Playwright Stopped")

    @classmethod
    def get_browser(cls) -> Browser | None:
        return cls._browser

    @classmethod
    async def render_html(
        cls,
        url: str,
        user_agent: str,
        timeout: float,
        proxy: ProxyConfig | None = None,
    ) -> tuple[int, str]:
        """
        Load ``url`` in a stealth page and return (status code, rendered HTML).

        Starts the shared browser on first use.
        """
        if not cls._browser:
            await cls.start()
        browser = cls._browser

        context_args: dict = {
            "user_agent": user_agent,
            "viewport": {
                "width": 1920 + random.randint(-100, 100),
                "height": 1080 + random.randint(-100, 100),
            },
            "locale": "en-US",
            "ignore_https_errors": True,
        }
        if proxy:
            context_args["proxy"] = {
                "server": f"{proxy.type}://{proxy.host}:{proxy.port}",
                "username": proxy.username or "",
                "password": proxy.password or "",
            }

        context = await browser.new_context(**context_args)
        try:
            page = await context.new_page()
            await Stealth().apply_stealth_async(page)
            logger.info(f"Rendering {url} in headless browser")
            response = await page.goto(url, wait_until="domcontentloaded", timeout=timeout * 1000)
            status = response.status if response else 0
            return status, await page.content()
        finally:
            await context.close()
