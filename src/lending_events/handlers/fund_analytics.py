"""Keeps fund analytics snapshots current.

Registered under one name for several event types; runs at priority 50 so
snapshots are fresh before the priority-100 fund alerts fire.
"""

from __future__ import annotations

import logging
from typing import ClassVar

from lending_events.domain.events import DomainEvent, EventTypes

from .services import AnalyticsService

logger = logging.getLogger(__name__)


class FundAnalyticsHandler:
    HANDLER_NAME: ClassVar[str] = "FundAnalyticsHandler"
    PRIORITY: ClassVar[int] = 50
    EVENT_TYPES: ClassVar[tuple[str, ...]] = (
        EventTypes.FUND_CREATED,
        EventTypes.COMMITMENT_ACTIVATED,
        EventTypes.DISTRIBUTION_POSTED,
        EventTypes.CAPITAL_EVENT_RECORDED,
    )

    def __init__(self, analytics: AnalyticsService) -> None:
        self._analytics = analytics

    async def __call__(self, event: DomainEvent) -> None:
        if event.event_type == EventTypes.FUND_CREATED:
            fund_id: str | None = event.aggregate_id
        elif event.event_type in self.EVENT_TYPES:
            fund_id = self._fund_id(event)
        else:
            logger.warning(
                "%s received unhandled event type %s", self.HANDLER_NAME, event.event_type,
            )
            return

        logger.info(
            "Recomputing fund snapshot after %s (fund=%s)", event.event_type, fund_id,
        )
        await self._analytics.compute_fund_snapshot(fund_id)

    @staticmethod
    def _fund_id(event: DomainEvent) -> str | None:
        fund_id = event.payload.get("fundId")
        if fund_id is None and event.metadata:
            fund_id = event.metadata.get("fundId")
        return fund_id
