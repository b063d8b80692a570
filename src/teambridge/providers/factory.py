"""Provider construction and the cached availability probe."""

from __future__ import annotations

import shutil
import subprocess
from typing import Callable, Dict, Optional, Type

from teambridge.config import ALLOWED_PROVIDERS
from teambridge.paths import BridgePaths
from teambridge.providers.base import BaseProvider
from teambridge.providers.codex_cli import CodexCLIProvider
from teambridge.providers.gemini_cli import GeminiCLIProvider
from teambridge.team.registration import WorkerRegistry
from teambridge.team.types import ConfigProbeResult

PROBE_TIMEOUT_SEC = 15

_PROVIDERS: Dict[str, Type[BaseProvider]] = {
    "codex": CodexCLIProvider,
    "gemini": GeminiCLIProvider,
}


def build_provider(provider_id: str) -> BaseProvider:
    normalized = str(provider_id or "").strip().lower()
    if normalized not in ALLOWED_PROVIDERS or normalized not in _PROVIDERS:
        raise ValueError("unsupported provider: {0}".format(normalized or "<empty>"))
    return _PROVIDERS[normalized]()


def probe_provider(
    provider_id: str,
    *,
    which: Callable[[str], Optional[str]] = shutil.which,
) -> ConfigProbeResult:
    """Check that the provider binary exists and answers ``--version``."""

    binary = build_provider(provider_id).binary
    location = which(binary)
    if not location:
        return ConfigProbeResult(provider=provider_id, available=False, detail="{0} not found on PATH".format(binary))

    try:
        completed = subprocess.run(
            [location, "--version"],
            capture_output=True,
            text=True,
            timeout=PROBE_TIMEOUT_SEC,
            check=False,
        )
    except (OSError, subprocess.TimeoutExpired) as exc:
        return ConfigProbeResult(provider=provider_id, available=False, detail=str(exc))

    if completed.returncode != 0:
        return ConfigProbeResult(
            provider=provider_id,
            available=False,
            detail=(completed.stderr or completed.stdout).strip() or "exit code {0}".format(completed.returncode),
        )
    version = (completed.stdout or "").strip().splitlines()
    return ConfigProbeResult(
        provider=provider_id,
        available=True,
        version=version[0] if version else None,
        detail=location,
    )


def ensure_provider_probe(
    paths: BridgePaths,
    provider_id: str,
    *,
    force: bool = False,
    prober: Callable[[str], ConfigProbeResult] = probe_provider,
) -> ConfigProbeResult:
    """Return the cached probe for ``provider_id``, probing only on a cache miss."""

    registry = WorkerRegistry(paths)
    if not force:
        cached = registry.read_probe_result(provider_id)
        if cached is not None and cached.available:
            return cached
    result = prober(provider_id)
    registry.write_probe_result(result)
    return result
