"""ICTBot trading engine (per-account orchestration).

Connects session classification, structure analysis, signal fusion, the
money-management ladder and the broker into a single cycle.  One
``TradeOrchestrator`` serves one account; a ``Ticker`` drives it.
"""

import logging
import sqlite3
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Sequence

from ictbot.advisor.openai_advisor import OpenAIAdvisor
from ictbot.api.routers import update_account_status
from ictbot.broker.models import Candle, Quote
from ictbot.broker.session import BrokerSession, SessionHandle
from ictbot.config import Config
from ictbot.models.account_config import AccountConfig
from ictbot.news.calendar import NewsCalendar
from ictbot.repos import log_repo as events
from ictbot.repos.account_repo import AccountStateRepo
from ictbot.repos.log_repo import LogRepo
from ictbot.repos.signal_repo import SignalRepo
from ictbot.repos.trade_repo import TradeRepo
from ictbot.result import CycleError, Err, ErrorKind, Ok, Result
from ictbot.risk.money_ladder import MoneyManagementLadder, TradingAccountState
from ictbot.sentiment.cftc import SentimentService
from ictbot.strategy.fair_value_gaps import FairValueGapDetector
from ictbot.strategy.fusion import SignalFusionEngine
from ictbot.strategy.liquidity import LiquidityDetector
from ictbot.strategy.models import (
    NEUTRAL,
    SignalType,
    StructureZone,
    TradingSignal,
    merge_mitigation,
)
from ictbot.strategy.order_blocks import OrderBlockDetector
from ictbot.strategy.session_clock import SessionClock
from ictbot.strategy.structure import StructureAnalyzer
from ictbot.ticker import Ticker

logger = logging.getLogger("ictbot")


class TradeOrchestrator:
    """Runs one analysis-and-execution cycle per call for one account.

    Every collaborator is passed in explicitly; see ``ictbot.main`` for
    the production wiring.

    Args:
        config: Application configuration (global settings).
        account: The account this orchestrator trades.
        session: The account's ``BrokerSession``.
        session_clock: Kill-zone classifier for the account's broker.
        analyzer: Market structure analyzer.
        order_blocks / gaps / liquidity: Zone detectors.
        fusion: Signal fusion engine.
        ladder: Money-management ladder.
        signal_repo / log_repo / state_repo / trade_repo: Persistence.
        sentiment: Optional external sentiment source.
        advisor: Optional narrative annotator.
        news: Optional high-impact news calendar; entries pause around releases.
    """

    def __init__(
        self,
        config: Config,
        account: AccountConfig,
        session: BrokerSession,
        session_clock: SessionClock,
        analyzer: StructureAnalyzer,
        order_blocks: OrderBlockDetector,
        gaps: FairValueGapDetector,
        liquidity: LiquidityDetector,
        fusion: SignalFusionEngine,
        ladder: MoneyManagementLadder,
        signal_repo: SignalRepo,
        log_repo: LogRepo,
        state_repo: AccountStateRepo,
        trade_repo: TradeRepo,
        sentiment: Optional[SentimentService] = None,
        advisor: Optional[OpenAIAdvisor] = None,
        news: Optional[NewsCalendar] = None,
    ) -> None:
        self._config = config
        self._account = account
        self._session = session
        self._clock = session_clock
        self._analyzer = analyzer
        self._order_blocks = order_blocks
        self._gaps = gaps
        self._liquidity = liquidity
        self._fusion = fusion
        self._ladder = ladder
        self._signals = signal_repo
        self._logs = log_repo
        self._states = state_repo
        self._trades = trade_repo
        self._sentiment = sentiment
        self._advisor = advisor
        self._news = news

        self._ticker: Optional[Ticker] = None
        self._running = False
        self._stop_requested = False
        self._in_cycle = False
        self._cycle_count = 0
        self._timezone_synced = False
        self._zones: list[StructureZone] = []

    @property
    def account_id(self) -> str:
        return self._account.account_id

    @property
    def symbol(self) -> str:
        return self._account.symbol

    @property
    def timeframe(self) -> str:
        return self._account.timeframe

    @property
    def running(self) -> bool:
        return self._running

    @property
    def cycle_count(self) -> int:
        return self._cycle_count

    # ── Persistence helpers ──────────────────────────────────────────────

    def _persist(self, label: str, fn: Callable[..., Any], *args, **kwargs) -> Result:
        """Run a repository call; failures are logged, never raised."""
        try:
            return Ok(fn(*args, **kwargs))
        except sqlite3.Error as exc:
            logger.warning(
                "Account '%s': persistence failed (%s): %s", self.account_id, label, exc,
            )
            return Err(ErrorKind.PERSISTENCE, f"{label}: {exc}")

    def _event(
        self,
        event_type: str,
        message: str,
        level: str = "INFO",
        data: Optional[dict] = None,
        signal_id: Optional[int] = None,
        trade_id: Optional[str] = None,
    ) -> None:
        logger.log(
            getattr(logging, level, logging.INFO),
            "Account '%s' [%s] %s", self.account_id, event_type, message,
        )
        self._persist(
            "log",
            self._logs.append,
            event_type,
            message,
            account_id=self.account_id,
            level=level,
            data=data,
            signal_id=signal_id,
            trade_id=trade_id,
        )

    def _abort(self, error: CycleError) -> dict:
        reason = "data_unavailable" if error.kind == ErrorKind.DATA_UNAVAILABLE else "connectivity"
        self._event(
            events.CYCLE_ABORTED,
            error.message,
            level="WARNING",
            data={"kind": error.kind.value},
        )
        update_account_status(self.account_id, connected=error.kind != ErrorKind.CONNECTIVITY)
        return {"action": "aborted", "reason": reason, "error": error.message}

    # ── Lifecycle ────────────────────────────────────────────────────────

    async def initialize(self) -> None:
        """Connect, load or create ladder state and publish initial status."""
        update_account_status(
            self.account_id,
            symbol=self.symbol,
            timeframe=self.timeframe,
            running=False,
        )
        async with self._session.borrow() as conn:
            if not conn.ok:
                logger.error(
                    "Account '%s': failed to initialise (bridge unreachable?): %s",
                    self.account_id, conn.error,
                )
                return
            self._event(events.CONNECTION_ESTABLISHED, f"Connected to {self._account.host}")
            update_account_status(self.account_id, connected=True)
            await self._sync_timezone(conn.value)
            await self._sync_account(conn.value, datetime.now(timezone.utc))

    def stop(self) -> None:
        """Signal the orchestrator to stop after the current cycle.

        A stop that arrives before :meth:`run` makes ``run`` return at once.
        """
        self._stop_requested = True
        self._running = False
        if self._ticker is not None:
            self._ticker.stop()

    async def run(self, poll_interval: Optional[int] = None) -> None:
        """Run cycles on the account's interval until stopped."""
        if self._stop_requested:
            logger.info("Account '%s': stop requested before start.", self.account_id)
            return
        interval = poll_interval or self._account.poll_interval_seconds
        self._ticker = Ticker(
            interval,
            self.run_cycle,
            align=True,
            immediate=True,
            name=self.account_id,
        )
        self._running = True
        update_account_status(self.account_id, running=True)
        try:
            await self._ticker.run()
        finally:
            self._running = False
            update_account_status(self.account_id, running=False)

    async def run_cycle(self, utc_now: Optional[datetime] = None) -> dict:
        """One guarded cycle: errors are logged and never escape."""
        if self._in_cycle:
            return {"action": "skipped", "reason": "cycle_in_progress"}
        self._in_cycle = True
        self._cycle_count += 1
        try:
            result = await self.run_once(utc_now)
        except Exception as exc:
            logger.exception("Account '%s': cycle %d failed", self.account_id, self._cycle_count)
            self._event(
                events.ERROR,
                f"Cycle failed: {exc}",
                level="ERROR",
                data={"kind": ErrorKind.CONNECTIVITY.value},
            )
            result = {"action": "error", "reason": str(exc)}
        finally:
            self._in_cycle = False

        logger.info("Account '%s' cycle %d: %s", self.account_id, self._cycle_count, result.get("action"))
        update_account_status(
            self.account_id,
            cycle_count=self._cycle_count,
            last_cycle_at=datetime.now(timezone.utc).isoformat(),
            last_action=result.get("action"),
        )
        return result

    # ── Single cycle ─────────────────────────────────────────────────────

    async def run_once(self, utc_now: Optional[datetime] = None) -> dict:
        """Execute one trading cycle.

        Returns a dict describing the outcome:

        - ``{"action": "aborted", "reason": "connectivity" | "data_unavailable"}``
        - ``{"action": "hold", ...}``
        - ``{"action": "skipped", "reason": "..."}``
        - ``{"action": "rejected", ...}``
        - ``{"action": "order_placed", ...}``

        Args:
            utc_now: Current UTC datetime.  Defaults to ``datetime.now(UTC)``.
        """
        if utc_now is None:
            utc_now = datetime.now(timezone.utc)

        async with self._session.borrow() as conn:
            # 1 ── Connection
            if not conn.ok:
                return self._abort(conn.error)
            handle: SessionHandle = conn.value
            update_account_status(self.account_id, connected=True)

            if not self._timezone_synced:
                await self._sync_timezone(handle)
            await self._reconcile(handle, utc_now)
            state = await self._sync_account(handle, utc_now)

            # 2 ── Market data
            quote_res = await self._session.quote(handle, self.symbol)
            if not quote_res.ok:
                return self._abort(quote_res.error)
            candles_res = await self._session.candles(
                handle, self.symbol, self.timeframe, self._config.candle_count,
            )
            if not candles_res.ok:
                return self._abort(candles_res.error)
            candles: list[Candle] = candles_res.value
            if len(candles) < self._config.min_candles:
                return self._abort(CycleError(
                    ErrorKind.DATA_UNAVAILABLE,
                    f"only {len(candles)} candles, need {self._config.min_candles}",
                ))

            # 3-5 ── Analysis and fusion
            quote: Quote = quote_res.value
            signal = await self._evaluate(candles, quote.mid, utc_now)

            signal_id = self._persist("signal", self._signals.insert_signal, self.account_id, signal).value
            self._event(
                events.SIGNAL_GENERATED,
                f"{signal.type.value} {signal.symbol} @ {signal.entry_price:.5f} "
                f"({signal.confidence:.0f}%, {signal.strength.name})",
                data={"narrative": signal.narrative},
                signal_id=signal_id,
            )
            update_account_status(
                self.account_id,
                last_signal={
                    "type": signal.type.value,
                    "confidence": signal.confidence,
                    "strength": signal.strength.name,
                    "at": signal.created_at.isoformat(),
                },
                active_session=signal.structure_snapshot.get("session"),
            )
            if signal.type == SignalType.HOLD:
                return {"action": "hold", "signal_id": signal_id, "confidence": signal.confidence}

            if not self._config.auto_trading_enabled:
                return self._skip("auto_trading_disabled", signal_id)
            if self._news is not None and await self._news.is_high_impact_window(utc_now):
                return self._skip("high_impact_news", signal_id)

            # 6 ── Money management
            if state is None:
                return self._abort(CycleError(ErrorKind.CONNECTIVITY, "account balance unavailable"))
            auth = self._ladder.authorize(state, utc_now)
            self._persist("account state", self._states.save, state)
            update_account_status(
                self.account_id,
                balance=state.current_balance,
                level=state.current_level,
                lot_size=state.current_lot_size,
            )
            if not auth.permitted:
                return self._skip(auth.reason, signal_id)

            orders_res = await self._session.open_orders(handle, self.symbol)
            if not orders_res.ok:
                return self._abort(orders_res.error)
            if len(orders_res.value) >= self._account.max_open_positions:
                return self._skip("max_open_positions", signal_id)
            market_res = await self._session.is_trade_session(handle, self.symbol)
            if not market_res.ok:
                return self._abort(market_res.error)
            if not market_res.value:
                return self._skip("market_closed", signal_id)

            # 7 ── Execution
            comment = f"ICT_L{auth.level}_{signal_id}" if signal_id else f"ICT_L{auth.level}"
            order_res = await self._session.send_order(
                handle,
                self.symbol,
                signal.type.value,
                auth.lot_size,
                signal.stop_loss,
                signal.take_profit,
                comment,
            )
            if not order_res.ok:
                if order_res.error.kind == ErrorKind.ORDER_REJECTED:
                    self._event(
                        events.TRADE_REJECTED,
                        order_res.error.message,
                        level="WARNING",
                        signal_id=signal_id,
                    )
                    return {"action": "rejected", "reason": order_res.error.message, "signal_id": signal_id}
                return self._abort(order_res.error)

            order = order_res.value
            ticket = order.broker_order_id
            if ticket is None:
                ticket = await self._recover_ticket(handle, signal, signal_id)

            signal = signal.mark_executed(ticket)
            if signal_id is not None:
                self._persist("signal link", self._signals.mark_executed, signal_id, ticket)
            if ticket is not None:
                self._persist(
                    "trade",
                    self._trades.insert_trade,
                    account_id=self.account_id,
                    broker_order_id=ticket,
                    symbol=self.symbol,
                    direction=signal.type.value,
                    volume=auth.lot_size,
                    entry_price=order.price or signal.entry_price,
                    stop_loss=signal.stop_loss,
                    take_profit=signal.take_profit,
                    signal_id=signal_id,
                )
            self._event(
                events.TRADE_OPENED,
                f"{signal.type.value} {auth.lot_size} {self.symbol} "
                f"SL {signal.stop_loss:.5f} TP {signal.take_profit:.5f}"
                + ("" if ticket is not None else " (ticket unknown)"),
                level="INFO" if ticket is not None else "WARNING",
                data={"level": auth.level, "price": order.price},
                signal_id=signal_id,
                trade_id=ticket,
            )
            return {
                "action": "order_placed",
                "direction": signal.type.value,
                "volume": auth.lot_size,
                "order_id": ticket,
                "signal_id": signal_id,
                "stop_loss": signal.stop_loss,
                "take_profit": signal.take_profit,
            }

    def _skip(self, reason: str, signal_id: Optional[int]) -> dict:
        self._event(events.TRADE_SKIPPED, reason, signal_id=signal_id)
        return {"action": "skipped", "reason": reason, "signal_id": signal_id}

    async def _recover_ticket(
        self, handle: SessionHandle, signal: TradingSignal, signal_id: Optional[int],
    ) -> Optional[str]:
        """Find the ticket of a fill reported without one and set its SL/TP.

        The newest open order for the symbol is taken as the fill.
        """
        orders_res = await self._session.open_orders(handle, self.symbol)
        if not orders_res.ok or not orders_res.value:
            logger.warning(
                "Account '%s': order filled without a ticket and none found open.", self.account_id,
            )
            return None
        oldest = datetime.min.replace(tzinfo=timezone.utc)
        latest = max(orders_res.value, key=lambda o: o.open_time or oldest)
        ticket = latest.broker_order_id
        logger.info("Account '%s': recovered ticket #%s from open orders.", self.account_id, ticket)

        modify_res = await self._session.modify_order(
            handle, ticket, signal.stop_loss, signal.take_profit,
        )
        if modify_res.ok:
            self._event(
                events.TRADE_MODIFIED,
                f"SL/TP set on #{ticket}: SL {signal.stop_loss:.5f} TP {signal.take_profit:.5f}",
                data={"stop_loss": signal.stop_loss, "take_profit": signal.take_profit},
                signal_id=signal_id,
                trade_id=ticket,
            )
        else:
            logger.warning(
                "Account '%s': could not set SL/TP on #%s: %s",
                self.account_id, ticket, modify_res.error.message,
            )
        return ticket

    # ── Analysis ─────────────────────────────────────────────────────────

    def detect_zones(self, candles: Sequence[Candle]) -> list[StructureZone]:
        """All zones for *candles*, with mitigation carried from earlier cycles."""
        zones = (
            self._order_blocks.detect(candles)
            + self._gaps.detect(candles)
            + self._liquidity.detect(candles)
        )
        zones.sort(key=lambda z: z.formed_at)
        self._zones = merge_mitigation(self._zones, zones)
        return self._zones

    async def _evaluate(
        self, candles: Sequence[Candle], price: float, utc_now: datetime,
    ) -> TradingSignal:
        active = self._clock.classify(utc_now)
        asian = self._clock.asian_range(candles)
        bias = (
            self._clock.session_bias(asian.high, asian.low, price, active)
            if asian is not None else NEUTRAL
        )
        structure = self._analyzer.analyze(candles)
        zones = self.detect_zones(candles)

        sentiment_bias = None
        if self._sentiment is not None:
            sentiment = await self._sentiment.get_sentiment(self.symbol)
            sentiment_bias = sentiment.bias if sentiment is not None else None

        signal = self._fusion.fuse(
            symbol=self.symbol,
            timeframe=self.timeframe,
            price=price,
            session=active,
            structure=structure,
            zones=zones,
            session_bias=bias,
            sentiment_bias=sentiment_bias,
            tradeable_day=self._clock.is_high_probability_day(utc_now),
            now=utc_now,
        )

        if self._advisor is not None and signal.type != SignalType.HOLD:
            snapshot = {
                **signal.structure_snapshot,
                "symbol": signal.symbol,
                "signal": signal.type.value,
                "confidence": signal.confidence,
                "entry": signal.entry_price,
                "stop_loss": signal.stop_loss,
                "take_profit": signal.take_profit,
                "zones": [z.to_dict() for z in zones if not z.mitigated][-15:],
            }
            signal = signal.annotate(await self._advisor.analyze(snapshot))
        return signal

    # ── Account state ────────────────────────────────────────────────────

    async def _sync_account(
        self, handle: SessionHandle, utc_now: datetime,
    ) -> Optional[TradingAccountState]:
        """Bring the ladder state in line with the broker balance.

        The first reported balance creates the state.  Afterwards any
        difference (deposits, withdrawals, swaps, untracked closes) is
        settled into the ladder.  Without a balance the stored state is
        returned unchanged.
        """
        state = self._persist("account state", self._states.get, self.account_id).value
        summary_res = await self._session.account_summary(handle)
        if not summary_res.ok:
            return state

        balance = summary_res.value.balance
        if state is None:
            state = self._ladder.new_state(self.account_id, balance, utc_now.date())
        else:
            self._ladder.sync_balance(state, balance, utc_now)
        self._persist("account state", self._states.save, state)
        update_account_status(
            self.account_id,
            balance=state.current_balance,
            level=state.current_level,
            lot_size=state.current_lot_size,
        )
        return state

    async def _sync_timezone(self, handle: SessionHandle) -> None:
        """Adopt the broker's reported UTC offset, once."""
        self._timezone_synced = True
        res = await self._session.server_timezone(handle)
        if res.ok and res.value is not None:
            self._clock.set_offset(res.value, source="broker")

    async def _reconcile(self, handle: SessionHandle, utc_now: datetime) -> None:
        """Close stored trades the broker no longer reports and settle the ladder.

        The realised profit is the balance change since the last settlement,
        booked once for the whole batch of closed trades.
        """
        open_trades = self._persist("open trades", self._trades.get_open_trades, self.account_id).value
        if not open_trades:
            return
        orders_res = await self._session.open_orders(handle)
        if not orders_res.ok:
            return
        live = {o.broker_order_id: o for o in orders_res.value}
        closed = []
        for trade in open_trades:
            order = live.get(trade["broker_order_id"])
            if order is None:
                closed.append(trade)
            else:
                self._persist(
                    "floating profit", self._trades.update_floating_profit, trade["id"], order.profit,
                )
        if not closed:
            return

        profit: Optional[float] = None
        summary_res = await self._session.account_summary(handle)
        state = self._persist("account state", self._states.get, self.account_id).value
        if summary_res.ok and state is not None:
            balance = summary_res.value.balance
            profit = balance - state.current_balance
            self._ladder.settle(state, profit, utc_now, new_balance=balance)
            self._persist("account state", self._states.save, state)
            update_account_status(
                self.account_id,
                balance=state.current_balance,
                level=state.current_level,
                lot_size=state.current_lot_size,
            )

        for trade in closed:
            self._persist(
                "trade close",
                self._trades.close_trade,
                trade["id"],
                profit if len(closed) == 1 else None,
            )
            self._event(
                events.TRADE_CLOSED,
                f"{trade['direction']} {trade['symbol']} #{trade['broker_order_id']} closed",
                data={"profit": profit},
                signal_id=trade["signal_id"],
                trade_id=trade["broker_order_id"],
            )
