"""
responsiai/features/usage/service.py

Metered analysis: reserve -> analyze -> commit.

Usage is committed only when the analysis succeeds; a failed fetch costs
the user nothing. Threshold intents are returned to the caller so they can
be dispatched after the response is sent.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List

from responsiai.core.errors import LimitExceededError
from responsiai.features.analysis.fetcher import AnalysisReport, analyze_url
from responsiai.features.usage.meter import UsageMeter
from responsiai.models.intent import Intent
from responsiai.models.usage import UsageSnapshot

logger = logging.getLogger("responsiai.usage")

Analyzer = Callable[[str], Awaitable[AnalysisReport]]


@dataclass
class MeteredAnalysis:
    report: AnalysisReport
    usage: UsageSnapshot
    intents: List[Intent] = field(default_factory=list)


class MeteredAnalysisService:
    def __init__(self, meter: UsageMeter, analyzer: Analyzer = analyze_url) -> None:
        self.meter = meter
        self.analyzer = analyzer

    async def run(self, user_id: str, url: str) -> MeteredAnalysis:
        decision = await asyncio.to_thread(self.meter.check_and_reserve, user_id)
        if not decision.allowed:
            raise LimitExceededError(
                f"Monthly analysis limit reached ({decision.count}/{decision.limit}). Upgrade your plan for more analyses."
            )

        report = await self.analyzer(url)

        intents = await asyncio.to_thread(self.meter.commit, user_id)
        usage = await asyncio.to_thread(self.meter.current_usage, user_id)
        logger.info(
            f"[usage] analysis committed ({usage.count}/{usage.limit if usage.limit is not None else 'unlimited'})",
            extra={"user_id": user_id, "outcome": "committed"},
        )
        return MeteredAnalysis(report=report, usage=usage, intents=intents)
