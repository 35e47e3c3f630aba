"""EngineManager — runs one TradeOrchestrator per trading account.

Each enabled account in ``accounts.json`` (or synthesised from env) gets
its own ``BrokerSession`` and ``TradeOrchestrator``.  Accounts run as
concurrent ``asyncio`` tasks and can be stopped individually or en masse.
Stateless analysis components, the sentiment service and the news
calendar are shared.
"""

import asyncio
import logging
from typing import Optional

from ictbot.advisor.openai_advisor import OpenAIAdvisor
from ictbot.broker.mt5_client import Mt5Client
from ictbot.broker.session import BrokerSession
from ictbot.config import Config
from ictbot.engine import TradeOrchestrator
from ictbot.models.account_config import AccountConfig
from ictbot.news.calendar import NewsCalendar
from ictbot.repos.account_repo import AccountStateRepo
from ictbot.repos.log_repo import LogRepo
from ictbot.repos.signal_repo import SignalRepo
from ictbot.repos.trade_repo import TradeRepo
from ictbot.risk.money_ladder import MoneyManagementLadder
from ictbot.sentiment.cftc import SentimentService
from ictbot.strategy.fair_value_gaps import FairValueGapDetector
from ictbot.strategy.fusion import SignalFusionEngine
from ictbot.strategy.liquidity import LiquidityDetector
from ictbot.strategy.order_blocks import OrderBlockDetector
from ictbot.strategy.session_clock import SessionClock
from ictbot.strategy.structure import StructureAnalyzer

logger = logging.getLogger("ictbot.engine_manager")


def build_orchestrator(
    config: Config,
    account: AccountConfig,
    client: Mt5Client,
    ladder: MoneyManagementLadder,
    sentiment: Optional[SentimentService] = None,
    advisor: Optional[OpenAIAdvisor] = None,
    news: Optional[NewsCalendar] = None,
) -> TradeOrchestrator:
    """Wire the production components for one account."""
    return TradeOrchestrator(
        config=config,
        account=account,
        session=BrokerSession(client, account),
        session_clock=SessionClock(offset_hours=config.broker_timezone_offset),
        analyzer=StructureAnalyzer(),
        order_blocks=OrderBlockDetector(),
        gaps=FairValueGapDetector(),
        liquidity=LiquidityDetector(),
        fusion=SignalFusionEngine(min_confidence=config.min_confidence),
        ladder=ladder,
        signal_repo=SignalRepo(config.db_path),
        log_repo=LogRepo(config.db_path),
        state_repo=AccountStateRepo(config.db_path),
        trade_repo=TradeRepo(config.db_path),
        sentiment=sentiment,
        advisor=advisor,
        news=news,
    )


class EngineManager:
    """Lifecycle manager for one-or-many trading accounts.

    Args:
        orchestrators: Pre-built orchestrators, one per enabled account.
    """

    def __init__(self, orchestrators: list[TradeOrchestrator]) -> None:
        self._engines: dict[str, TradeOrchestrator] = {}
        for orch in orchestrators:
            if orch.account_id in self._engines:
                raise ValueError(f"Duplicate account id: {orch.account_id}")
            self._engines[orch.account_id] = orch
        self._tasks: dict[str, asyncio.Task] = {}

    @classmethod
    def from_config(
        cls,
        config: Config,
        accounts: list[AccountConfig],
        client: Mt5Client,
        ladder: MoneyManagementLadder,
        sentiment: Optional[SentimentService] = None,
        advisor: Optional[OpenAIAdvisor] = None,
        news: Optional[NewsCalendar] = None,
    ) -> "EngineManager":
        orchestrators = []
        for account in accounts:
            if not account.enabled:
                logger.info("Account '%s' disabled, skipping.", account.account_id)
                continue
            orchestrators.append(
                build_orchestrator(config, account, client, ladder, sentiment, advisor, news)
            )
            logger.info(
                "Registered account '%s' → %s %s",
                account.account_id, account.symbol, account.timeframe,
            )
        return cls(orchestrators)

    # ── Public API ───────────────────────────────────────────────────────

    @property
    def engines(self) -> dict[str, TradeOrchestrator]:
        """Map of account id → ``TradeOrchestrator``."""
        return dict(self._engines)

    @property
    def account_ids(self) -> list[str]:
        return list(self._engines.keys())

    async def initialize_all(self) -> None:
        """Call ``initialize()`` on every orchestrator."""
        for account_id, engine in self._engines.items():
            await engine.initialize()
            logger.info("Initialised account '%s'.", account_id)

    async def run_all(self) -> None:
        """Launch every account concurrently and wait until all stop."""
        await self.initialize_all()

        self._tasks = {
            account_id: asyncio.create_task(engine.run(), name=f"account:{account_id}")
            for account_id, engine in self._engines.items()
        }
        for account_id, task in self._tasks.items():
            try:
                await task
            except Exception as exc:  # pragma: no cover
                logger.error("Account '%s' crashed: %s", account_id, exc)

    def stop_all(self) -> None:
        """Signal every orchestrator to stop gracefully."""
        for account_id, engine in self._engines.items():
            engine.stop()
            logger.info("Stop signal sent to account '%s'.", account_id)

    def stop_account(self, account_id: str) -> None:
        engine = self._engines.get(account_id)
        if engine:
            engine.stop()
            logger.info("Stop signal sent to account '%s'.", account_id)

    def get_status(self, account_id: Optional[str] = None) -> dict:
        """Return aggregated or per-account runtime status."""
        if account_id is not None:
            engine = self._engines.get(account_id)
            if engine is None:
                return {"error": f"Unknown account: {account_id}"}
            return self._engine_status(engine)
        return {
            "accounts": {
                aid: self._engine_status(eng) for aid, eng in self._engines.items()
            }
        }

    @staticmethod
    def _engine_status(engine: TradeOrchestrator) -> dict:
        return {
            "account_id": engine.account_id,
            "symbol": engine.symbol,
            "timeframe": engine.timeframe,
            "running": engine.running,
            "cycle_count": engine.cycle_count,
        }
