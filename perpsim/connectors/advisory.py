"""LLM advisory connector producing directional trade calls."""

from __future__ import annotations

import asyncio
import math
from datetime import datetime, timezone
from typing import Any, Sequence

import orjson
import structlog
from anthropic import AsyncAnthropic
from openai import AsyncOpenAI

from perpsim.config.settings import AdvisoryConfig
from perpsim.models import AdvisoryResult, Candle, SentimentData, Side
from perpsim.monitoring.metrics import Metrics
from perpsim.strategy import heuristic

DEMO_PREFIX = "Demo Mode: "
OFFLINE_PREFIX = "Offline Fallback: "


class AdvisoryError(ValueError):
    """The model answered with something that is not a usable trade call."""


class AdvisoryClient:
    """Ask the configured model for a call; fall back to the local heuristic.

    The ``local`` provider and a missing API key answer from the heuristic
    with a demo prefix. Timeouts, API errors and malformed answers are retried
    with exponential backoff and then answered from the heuristic with an
    offline prefix. ``analyze`` never raises for provider failures.
    """

    def __init__(self, config: AdvisoryConfig, api_key: str = "", metrics: Metrics | None = None) -> None:
        self.config = config
        self.api_key = api_key
        self.metrics = metrics
        self._log = structlog.get_logger(__name__)

    @property
    def model_label(self) -> str:
        return f"{self.config.provider}:{self.config.model}"

    async def analyze(
        self,
        symbol: str,
        price: float,
        candles: Sequence[Candle],
        sentiment: SentimentData | None = None,
    ) -> AdvisoryResult:
        if self.config.provider == "local" or not self.api_key:
            return self._fallback(price, candles, sentiment, DEMO_PREFIX)

        prompt = self._prompt(symbol, price, candles, sentiment)
        retries = max(0, self.config.retry_attempts)
        backoff = self.config.retry_backoff_sec
        for attempt in range(retries + 1):
            try:
                raw = await asyncio.wait_for(
                    self._complete(prompt),
                    timeout=self.config.request_timeout_sec,
                )
                return self._parse_response(raw)
            except Exception as exc:
                self._log.warning(
                    "advisory_failed",
                    provider=self.config.provider,
                    symbol=symbol,
                    attempt=attempt + 1,
                    error=str(exc),
                )
                if attempt < retries:
                    await asyncio.sleep(backoff * (2**attempt))
        return self._fallback(price, candles, sentiment, OFFLINE_PREFIX)

    def _fallback(
        self,
        price: float,
        candles: Sequence[Candle],
        sentiment: SentimentData | None,
        prefix: str,
    ) -> AdvisoryResult:
        if self.metrics is not None:
            self.metrics.advisory_fallbacks_total.inc()
        return heuristic.analyze(price, candles, sentiment, prefix=prefix)

    async def _complete(self, prompt: str) -> str:
        if self.config.provider == "openai":
            client = AsyncOpenAI(api_key=self.api_key)
            response = await client.chat.completions.create(
                model=self.config.model,
                messages=[{"role": "user", "content": prompt}],
                temperature=self.config.temperature,
                max_tokens=self.config.max_tokens,
                response_format={"type": "json_object"},
            )
            return response.choices[0].message.content or ""
        client = AsyncAnthropic(api_key=self.api_key)
        response = await client.messages.create(
            model=self.config.model,
            max_tokens=self.config.max_tokens,
            temperature=self.config.temperature,
            messages=[{"role": "user", "content": prompt}],
        )
        return response.content[0].text if response.content else ""

    def _prompt(
        self,
        symbol: str,
        price: float,
        candles: Sequence[Candle],
        sentiment: SentimentData | None,
    ) -> str:
        recent = "\n".join(
            f"Time: {datetime.fromtimestamp(c.time / 1000, tz=timezone.utc):%H:%M:%S}, "
            f"Close: {c.close}, Vol: {c.volume}"
            for c in list(candles)[-self.config.prompt_candles :]
        )
        mood = ""
        if sentiment is not None:
            mood = (
                f"Fear & Greed: {sentiment.value:.0f} ({sentiment.classification}), "
                f"order book imbalance: {sentiment.imbalance:+.2f}\n"
            )
        return (
            f"You are a high-frequency trading AI. Analyze the market for {symbol}.\n"
            f"Current Price: {price}\n"
            f"{mood}"
            f"Recent Data:\n{recent}\n\n"
            "Provide a concise technical analysis.\n"
            "Output JSON format only:\n"
            "{\n"
            '  "reasoning": "string (max 20 words)",\n'
            '  "confidence": 0.0,\n'
            '  "side": "LONG or SHORT",\n'
            '  "suggested_stop": 0.0,\n'
            '  "suggested_target": 0.0\n'
            "}\n"
        )

    def _parse_response(self, raw: str) -> AdvisoryResult:
        text = raw.strip()
        if text.startswith("```"):
            text = text.strip("`")
            text = text[text.find("{") :]
        try:
            data = orjson.loads(text)
        except orjson.JSONDecodeError as exc:
            raise AdvisoryError(f"malformed advisory response: {raw[:120]!r}") from exc
        if not isinstance(data, dict):
            raise AdvisoryError("advisory response is not an object")
        side = str(data.get("side", "")).upper()
        if side not in {"LONG", "SHORT"}:
            raise AdvisoryError(f"unknown side {side!r}")
        confidence = self._safe_float(data.get("confidence"))
        if confidence is not None:
            confidence = min(1.0, max(0.0, confidence))
        stop = self._safe_float(data.get("suggested_stop"))
        target = self._safe_float(data.get("suggested_target"))
        return AdvisoryResult(
            side=Side(side),
            confidence=confidence,
            stop_loss=stop if stop and stop > 0 else None,
            take_profit=target if target and target > 0 else None,
            reasoning=str(data.get("reasoning", ""))[:200],
            model_label=self.model_label,
        )

    @staticmethod
    def _safe_float(value: Any) -> float | None:
        if value is None:
            return None
        try:
            number = float(value)
        except (TypeError, ValueError):
            return None
        return None if math.isnan(number) else number
