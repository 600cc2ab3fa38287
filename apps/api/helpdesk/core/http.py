from __future__ import annotations

from collections.abc import Generator

import httpx

from helpdesk.core.config import get_settings


def build_http_client() -> httpx.Client:
    # Outbound transports share one timeout so a stuck provider surfaces as a retryable failure.
    return httpx.Client(timeout=get_settings().SEND_TIMEOUT_SECONDS)


def get_http_client() -> Generator[httpx.Client, None, None]:
    with build_http_client() as client:
        yield client
