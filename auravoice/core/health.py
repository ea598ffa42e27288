"""
AuraVoice - Provider Health Check
=================================

Probe the configured remote providers so configuration problems (missing
or rejected keys, wrong region) show up before the first turn.

Probes run concurrently under one shared deadline:
- openai: GET /v1/models
- groq:   GET /openai/v1/models
- azure:  POST issueToken for the configured region
"""

from dataclasses import dataclass
from typing import Dict, Optional
import asyncio
import logging

import httpx

from ..config.settings import Settings

log = logging.getLogger(__name__)

HEALTH_TIMEOUT_SEC = 7.0


@dataclass(frozen=True)
class ProviderStatus:
    ok: bool
    status: Optional[int] = None
    error: Optional[str] = None


async def _probe(client: httpx.AsyncClient, method: str, url: str, headers: Dict[str, str]) -> ProviderStatus:
    try:
        response = await client.request(method, url, headers=headers)
    except httpx.HTTPError as e:
        return ProviderStatus(ok=False, error=str(e) or type(e).__name__)

    ok = response.status_code < 400
    return ProviderStatus(
        ok=ok,
        status=response.status_code,
        error=None if ok else response.text[:200],
    )


async def check_providers(
    settings: Settings,
    client: Optional[httpx.AsyncClient] = None,
    timeout: float = HEALTH_TIMEOUT_SEC,
) -> Dict[str, ProviderStatus]:
    """
    Check every remote provider.

    Returns:
        {"openai": ProviderStatus, "groq": ..., "azure": ...}
        Providers without a key report ok=False with a "Missing ..." error.
    """
    owns_client = client is None
    if client is None:
        client = httpx.AsyncClient(timeout=timeout)

    async def check_openai() -> ProviderStatus:
        key = settings.llm.openai_api_key
        if not key:
            return ProviderStatus(ok=False, error="Missing OPENAI_API_KEY")
        return await _probe(client, "GET", "https://api.openai.com/v1/models",
                            {"Authorization": f"Bearer {key}"})

    async def check_groq() -> ProviderStatus:
        key = settings.llm.groq_api_key
        if not key:
            return ProviderStatus(ok=False, error="Missing GROQ_API_KEY")
        return await _probe(client, "GET", "https://api.groq.com/openai/v1/models",
                            {"Authorization": f"Bearer {key}"})

    async def check_azure() -> ProviderStatus:
        key = settings.tts.azure_key
        if not key:
            return ProviderStatus(ok=False, error="Missing AZURE_SPEECH_KEY")
        region = settings.tts.azure_region
        return await _probe(
            client,
            "POST",
            f"https://{region}.api.cognitive.microsoft.com/sts/v1.0/issueToken",
            {
                "Ocp-Apim-Subscription-Key": key,
                "Content-Type": "application/x-www-form-urlencoded",
                "Content-Length": "0",
            },
        )

    names = ["openai", "groq", "azure"]
    tasks = [asyncio.ensure_future(check()) for check in (check_openai, check_groq, check_azure)]
    try:
        done, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
    finally:
        if owns_client:
            await client.aclose()

    results: Dict[str, ProviderStatus] = {}
    for name, task in zip(names, tasks):
        if task.cancelled():
            results[name] = ProviderStatus(ok=False, error=f"timed out after {timeout:.0f}s")
        elif task.exception() is not None:
            results[name] = ProviderStatus(ok=False, error=str(task.exception()))
        else:
            results[name] = task.result()

    for name, status in results.items():
        if status.ok:
            log.info("Provider %s reachable (status=%s)", name, status.status)
        else:
            log.warning("Provider %s unavailable (status=%s): %s", name, status.status, status.error)
    return results
