"""Advisory market commentary from an OpenAI chat model.

The commentary is attached to a signal as free text.  It is never parsed
and never influences whether or how a trade is placed.
"""

import json
import logging
from typing import Optional

import httpx

logger = logging.getLogger("ictbot.advisor")

_API_URL = "https://api.openai.com/v1/chat/completions"
_SYSTEM_PROMPT = (
    "You are an ICT (Inner Circle Trader) market analyst. Given a JSON "
    "snapshot of session, market structure, order blocks, fair value gaps, "
    "liquidity and sentiment, write a short plain-text assessment of the "
    "setup and its main risks. Do not give position sizing."
)


class OpenAIAdvisor:
    """Chat-completions client producing a narrative for a signal.

    Args:
        api_key: OpenAI API key.  Empty disables the advisor.
        model: Chat model name.
        timeout: Request timeout in seconds.
    """

    def __init__(self, api_key: str, model: str = "gpt-4o", timeout: float = 30.0) -> None:
        self._api_key = api_key
        self._model = model
        self._timeout = timeout

    @property
    def enabled(self) -> bool:
        return bool(self._api_key)

    async def analyze(self, snapshot: dict) -> Optional[str]:
        """Return commentary for *snapshot*, or ``None`` when unavailable."""
        if not self.enabled:
            return None

        body = {
            "model": self._model,
            "messages": [
                {"role": "system", "content": _SYSTEM_PROMPT},
                {"role": "user", "content": json.dumps(snapshot, default=str)},
            ],
            "temperature": 0.3,
            "max_tokens": 600,
        }
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }
        try:
            async with httpx.AsyncClient() as client:
                resp = await client.post(_API_URL, json=body, headers=headers, timeout=self._timeout)
            resp.raise_for_status()
            content = resp.json()["choices"][0]["message"]["content"]
        except (httpx.HTTPError, KeyError, IndexError, ValueError) as exc:
            logger.warning("Advisor unavailable: %s", exc)
            return None
        return content.strip() if content else None
