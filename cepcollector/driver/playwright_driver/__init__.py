"""Playwright-based browser driver for the Correios search forms.

This module provides the browser session that submits one query at a time
and reports a tagged extraction result for it.
"""

from cepcollector.driver.playwright_driver.playwright_driver import (
    BrowserSession,
)

__all__ = ["BrowserSession"]
