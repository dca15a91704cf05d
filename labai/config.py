from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional
import logging
import os


_LOGGER = logging.getLogger(__name__)

DEFAULT_MODEL = "gpt-4o-2024-08-06"
DEFAULT_TIMEOUT = 8.0


@dataclass(frozen=True)
class FallbackSettings:
    """Settings for the generative fallback.

    Read from the environment; never hardcode the key:
      OPENAI_API_KEY      API key; the fallback is disabled without it
      LABSIM_AI_MODEL     model name (default gpt-4o-2024-08-06)
      LABSIM_AI_TIMEOUT   hard request timeout in seconds (default 8)
    """

    api_key: Optional[str] = None
    model: str = DEFAULT_MODEL
    timeout: float = DEFAULT_TIMEOUT

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "FallbackSettings":
        env = os.environ if env is None else env
        raw_timeout = (env.get("LABSIM_AI_TIMEOUT") or "").strip()
        timeout = DEFAULT_TIMEOUT
        if raw_timeout:
            try:
                timeout = float(raw_timeout)
            except ValueError:
                _LOGGER.warning("Ignoring LABSIM_AI_TIMEOUT=%r; using %.1fs", raw_timeout, DEFAULT_TIMEOUT)
            else:
                if timeout <= 0:
                    _LOGGER.warning("LABSIM_AI_TIMEOUT must be positive; using %.1fs", DEFAULT_TIMEOUT)
                    timeout = DEFAULT_TIMEOUT
        return cls(
            api_key=(env.get("OPENAI_API_KEY") or "").strip() or None,
            model=(env.get("LABSIM_AI_MODEL") or "").strip() or DEFAULT_MODEL,
            timeout=timeout,
        )
