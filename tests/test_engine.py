"""Tests for the trade orchestrator.

Verifies the cycle end to end: connect → reconcile → fetch → analyse →
fuse → authorise → order, plus every abort and skip path.  Uses a fake
bridge client and a temporary SQLite database.
"""

import asyncio
import sqlite3
from datetime import date, datetime, timedelta, timezone

import pytest
import httpx

from ictbot.api.routers import _account_statuses, reset_status
from ictbot.broker.models import AccountSummary, Candle, OpenOrder, OrderResult, Quote
from ictbot.broker.session import BrokerSession
from ictbot.config import Config
from ictbot.engine import TradeOrchestrator
from ictbot.models.account_config import AccountConfig
from ictbot.repos import log_repo as events
from ictbot.repos.account_repo import AccountStateRepo
from ictbot.repos.db import init_db
from ictbot.repos.log_repo import LogRepo
from ictbot.repos.signal_repo import SignalRepo
from ictbot.repos.trade_repo import TradeRepo
from ictbot.risk.money_ladder import MoneyManagementLadder
from ictbot.strategy.fair_value_gaps import FairValueGapDetector
from ictbot.strategy.fusion import SignalFusionEngine
from ictbot.strategy.liquidity import LiquidityDetector
from ictbot.strategy.models import SignalStrength, SignalType, TradingSignal
from ictbot.strategy.order_blocks import OrderBlockDetector
from ictbot.strategy.session_clock import SessionClock
from ictbot.strategy.structure import StructureAnalyzer

TOKEN = "8c4d6a1e-3f2b-4b7a-9d1e-2a5c7e9f0b13"
NOW = datetime(2025, 1, 8, 8, 0, tzinfo=timezone.utc)  # Wednesday, London open


# ── Helpers ──────────────────────────────────────────────────────────────


def _candles(n: int = 40) -> list[Candle]:
    start = NOW - timedelta(minutes=15 * n)
    candles = []
    for i in range(n):
        base = 2650.0 + (i % 7) - 3
        candles.append(
            Candle(start + timedelta(minutes=15 * i), base, base + 1.5, base - 1.5, base + 0.5, 100)
        )
    return candles


def _account(**overrides) -> AccountConfig:
    defaults = dict(account_id="demo-1", user="1", password="p", host="mt5.test")
    defaults.update(overrides)
    return AccountConfig(**defaults)


def _make_config(db_path: str, **overrides) -> Config:
    defaults = dict(
        mt5_user="1",
        mt5_password="p",
        mt5_host="mt5.test",
        db_path=db_path,
        sentiment_enabled=False,
    )
    defaults.update(overrides)
    return Config(**defaults)


class FakeClient:
    """Duck-typed Mt5Client for orchestrator tests."""

    def __init__(self) -> None:
        self.connect_error: Exception | None = None
        self.candle_data = _candles()
        self.balance = 500.0
        self.orders: list[OpenOrder] = []
        self.order_result = OrderResult(accepted=True, broker_order_id="9001", price=2650.3)
        self.timezone = 2
        self.market_open = True
        self.fills: list[OpenOrder] = []
        self.sent: list[dict] = []
        self.modified: list[tuple] = []

    async def connect(self, account):
        if self.connect_error is not None:
            raise self.connect_error
        return TOKEN

    async def check_connection(self, token):
        return True

    async def server_timezone(self, token):
        return self.timezone

    async def quote(self, token, symbol):
        return Quote(symbol=symbol, bid=2650.0, ask=2650.4)

    async def candles(self, token, symbol, timeframe, count):
        return list(self.candle_data)

    async def account_summary(self, token):
        return AccountSummary(balance=self.balance, equity=self.balance)

    async def open_orders(self, token, symbol=None):
        return [o for o in self.orders if symbol is None or o.symbol == symbol]

    async def send_order(self, token, symbol, direction, volume, stop_loss, take_profit, comment):
        self.sent.append(dict(symbol=symbol, direction=direction, volume=volume,
                              stop_loss=stop_loss, take_profit=take_profit, comment=comment))
        self.orders.extend(self.fills)
        return self.order_result

    async def modify_order(self, token, ticket, stop_loss, take_profit):
        self.modified.append((ticket, stop_loss, take_profit))
        return True

    async def is_trade_session(self, token, symbol):
        return self.market_open

    async def close_order(self, token, ticket, volume=None):
        return True


class StubFusion:
    """Returns a fixed decision and records what it was given."""

    def __init__(self, signal_type: SignalType = SignalType.BUY, error: Exception | None = None):
        self.signal_type = signal_type
        self.error = error
        self.calls: list[dict] = []

    def fuse(self, **kwargs):
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        price = kwargs["price"]
        hold = self.signal_type == SignalType.HOLD
        return TradingSignal(
            symbol=kwargs["symbol"],
            timeframe=kwargs["timeframe"],
            type=self.signal_type,
            strength=SignalStrength.WEAK if hold else SignalStrength.STRONG,
            entry_price=price,
            stop_loss=price if hold else price - 10,
            take_profit=price if hold else price + 25,
            confidence=0.0 if hold else 65.0,
            structure_snapshot={"session": kwargs["session"].name if kwargs["session"] else None},
            created_at=kwargs["now"],
        )


class FakeNews:
    def __init__(self, blocked: bool = True) -> None:
        self.blocked = blocked
        self.calls: list[datetime] = []

    async def is_high_impact_window(self, now=None):
        self.calls.append(now)
        return self.blocked


class FakeAdvisor:
    async def analyze(self, snapshot):
        return "Bullish continuation from London."


class BrokenLogRepo(LogRepo):
    def append(self, *args, **kwargs):
        raise sqlite3.OperationalError("disk I/O error")


@pytest.fixture
def db_path(tmp_path):
    path = str(tmp_path / "ictbot.db")
    init_db(path)
    reset_status()
    yield path
    reset_status()


def _make_orchestrator(
    db_path,
    client=None,
    fusion=None,
    account=None,
    log_repo=None,
    advisor=None,
    news=None,
    **config_overrides,
):
    client = client or FakeClient()
    account = account or _account()
    orch = TradeOrchestrator(
        config=_make_config(db_path, **config_overrides),
        account=account,
        session=BrokerSession(client, account),
        session_clock=SessionClock(offset_hours=2),
        analyzer=StructureAnalyzer(),
        order_blocks=OrderBlockDetector(),
        gaps=FairValueGapDetector(),
        liquidity=LiquidityDetector(),
        fusion=fusion or StubFusion(),
        ladder=MoneyManagementLadder(),
        signal_repo=SignalRepo(db_path),
        log_repo=log_repo or LogRepo(db_path),
        state_repo=AccountStateRepo(db_path),
        trade_repo=TradeRepo(db_path),
        advisor=advisor,
        news=news,
    )
    return orch, client


def _event_types(db_path) -> list[str]:
    return [l["event_type"] for l in LogRepo(db_path).get_logs(limit=100)]


# ── Aborts ───────────────────────────────────────────────────────────────


class TestAborts:
    @pytest.mark.asyncio
    async def test_unreachable_bridge_aborts_cycle(self, db_path):
        client = FakeClient()
        client.connect_error = httpx.ConnectError("refused")
        orch, _ = _make_orchestrator(db_path, client=client)

        result = await orch.run_once(NOW)

        assert result["action"] == "aborted"
        assert result["reason"] == "connectivity"
        assert SignalRepo(db_path).get_signals() == []
        assert events.CYCLE_ABORTED in _event_types(db_path)
        assert _account_statuses["demo-1"]["connected"] is False

    @pytest.mark.asyncio
    async def test_short_history_is_data_unavailable(self, db_path):
        client = FakeClient()
        client.candle_data = _candles(10)
        orch, _ = _make_orchestrator(db_path, client=client)

        result = await orch.run_once(NOW)

        assert result == {
            "action": "aborted",
            "reason": "data_unavailable",
            "error": "only 10 candles, need 30",
        }
        assert SignalRepo(db_path).get_signals() == []

    @pytest.mark.asyncio
    async def test_no_candles_is_data_unavailable(self, db_path):
        client = FakeClient()
        client.candle_data = []
        orch, _ = _make_orchestrator(db_path, client=client)
        result = await orch.run_once(NOW)
        assert result["reason"] == "data_unavailable"


# ── Decisions ────────────────────────────────────────────────────────────


class TestDecisions:
    @pytest.mark.asyncio
    async def test_hold_persists_signal_without_order(self, db_path):
        orch, client = _make_orchestrator(db_path, fusion=StubFusion(SignalType.HOLD))

        result = await orch.run_once(NOW)

        assert result["action"] == "hold"
        assert client.sent == []
        rows = SignalRepo(db_path).get_signals()
        assert [r["signal_type"] for r in rows] == ["HOLD"]
        assert _event_types(db_path) == [events.SIGNAL_GENERATED]

    @pytest.mark.asyncio
    async def test_fusion_receives_session_and_zones(self, db_path):
        fusion = StubFusion(SignalType.HOLD)
        orch, _ = _make_orchestrator(db_path, fusion=fusion)

        await orch.run_once(NOW)

        call = fusion.calls[0]
        assert call["session"].name == "London Open Kill Zone"
        assert call["price"] == pytest.approx(2650.2)
        assert call["tradeable_day"] is True
        assert call["sentiment_bias"] is None
        assert isinstance(call["zones"], list)

    @pytest.mark.asyncio
    async def test_real_fusion_on_flat_market_holds(self, db_path):
        """No swings, blocks or gaps: only the Asian-high sweep votes."""
        client = FakeClient()
        client.candle_data = [
            Candle(c.time, 2650.0, 2650.0, 2650.0, 2650.0, 100) for c in _candles()
        ]
        orch, _ = _make_orchestrator(db_path, client=client, fusion=SignalFusionEngine())

        result = await orch.run_once(NOW)

        assert result["action"] == "hold"
        assert client.sent == []
        row = SignalRepo(db_path).get_signals()[0]
        assert row["signal_type"] == "HOLD"
        votes = row["structure_snapshot"]["votes"]
        assert votes["structure"] == 0
        assert votes["zone"] == 0
        assert votes["session_bias"] == -1
        assert "HOLD: only 1 agreeing factor" in row["narrative"]

    @pytest.mark.asyncio
    async def test_auto_trading_disabled_skips(self, db_path):
        orch, client = _make_orchestrator(db_path, auto_trading_enabled=False)

        result = await orch.run_once(NOW)

        assert result["action"] == "skipped"
        assert result["reason"] == "auto_trading_disabled"
        assert client.sent == []


# ── Execution ────────────────────────────────────────────────────────────


class TestExecution:
    @pytest.mark.asyncio
    async def test_order_placed_end_to_end(self, db_path):
        orch, client = _make_orchestrator(db_path, advisor=FakeAdvisor())

        result = await orch.run_once(NOW)

        assert result["action"] == "order_placed"
        assert result["order_id"] == "9001"
        # 500.00 sits on the 337.50 rung → 0.03 lots
        assert result["volume"] == 0.03
        sent = client.sent[0]
        assert sent["direction"] == "BUY"
        assert sent["comment"] == f"ICT_L4_{result['signal_id']}"

        signal = SignalRepo(db_path).get_signals()[0]
        assert signal["executed"] is True
        assert signal["linked_trade_id"] == "9001"
        assert signal["ai_analysis"] == "Bullish continuation from London."

        trades = TradeRepo(db_path).get_open_trades("demo-1")
        assert len(trades) == 1
        assert trades[0]["entry_price"] == 2650.3

        state = AccountStateRepo(db_path).get("demo-1")
        assert state.current_level == 4
        assert events.TRADE_OPENED in _event_types(db_path)

    @pytest.mark.asyncio
    async def test_rejection_leaves_signal_unexecuted(self, db_path):
        client = FakeClient()
        client.order_result = OrderResult(accepted=False, error="TRADE_RETCODE_NO_MONEY")
        orch, _ = _make_orchestrator(db_path, client=client)

        result = await orch.run_once(NOW)

        assert result["action"] == "rejected"
        assert "NO_MONEY" in result["reason"]
        assert len(client.sent) == 1
        signal = SignalRepo(db_path).get_signals()[0]
        assert signal["executed"] is False
        assert TradeRepo(db_path).get_open_trades("demo-1") == []
        assert events.TRADE_REJECTED in _event_types(db_path)

    @pytest.mark.asyncio
    async def test_max_open_positions_skips(self, db_path):
        client = FakeClient()
        client.orders = [OpenOrder("5", "XAUUSDm", "BUY", 0.03, 2640.0)]
        orch, _ = _make_orchestrator(db_path, client=client)

        result = await orch.run_once(NOW)

        assert result["action"] == "skipped"
        assert result["reason"] == "max_open_positions"
        assert client.sent == []

    @pytest.mark.asyncio
    async def test_daily_target_blocks_trading(self, db_path):
        ladder = MoneyManagementLadder()
        state = ladder.new_state("demo-1", 500.0, date(2025, 1, 8))
        state.daily_target_reached = True
        AccountStateRepo(db_path).save(state)
        orch, client = _make_orchestrator(db_path)

        result = await orch.run_once(NOW)

        assert result["action"] == "skipped"
        assert "daily target" in result["reason"]
        assert client.sent == []

    @pytest.mark.asyncio
    async def test_log_failure_does_not_undo_order(self, db_path):
        orch, client = _make_orchestrator(db_path, log_repo=BrokenLogRepo(db_path))

        result = await orch.run_once(NOW)

        assert result["action"] == "order_placed"
        assert len(TradeRepo(db_path).get_open_trades("demo-1")) == 1

    @pytest.mark.asyncio
    async def test_fill_without_ticket_recovers_newest_order(self, db_path):
        client = FakeClient()
        client.orders = [
            OpenOrder("9050", "XAUUSDm", "SELL", 0.03, 2660.0, open_time=NOW - timedelta(hours=1)),
        ]
        client.fills = [OpenOrder("9100", "XAUUSDm", "BUY", 0.03, 2650.3, open_time=NOW)]
        client.order_result = OrderResult(accepted=True, price=2650.3)
        orch, _ = _make_orchestrator(
            db_path, client=client, account=_account(max_open_positions=2),
        )

        result = await orch.run_once(NOW)

        assert result["action"] == "order_placed"
        assert result["order_id"] == "9100"
        ticket, stop_loss, take_profit = client.modified[0]
        assert ticket == "9100"
        assert stop_loss == pytest.approx(2640.2)
        assert take_profit == pytest.approx(2675.2)

        trades = TradeRepo(db_path).get_open_trades("demo-1")
        assert [t["broker_order_id"] for t in trades] == ["9100"]
        signal = SignalRepo(db_path).get_signals()[0]
        assert signal["executed"] is True
        assert signal["linked_trade_id"] == "9100"
        assert events.TRADE_MODIFIED in _event_types(db_path)

    @pytest.mark.asyncio
    async def test_fill_without_ticket_and_no_open_order(self, db_path):
        client = FakeClient()
        client.order_result = OrderResult(accepted=True, price=2650.3)
        orch, _ = _make_orchestrator(db_path, client=client)

        result = await orch.run_once(NOW)

        assert result["action"] == "order_placed"
        assert result["order_id"] is None
        assert client.modified == []
        assert TradeRepo(db_path).get_open_trades("demo-1") == []
        signal = SignalRepo(db_path).get_signals()[0]
        assert signal["executed"] is True
        assert signal["linked_trade_id"] is None
        assert events.TRADE_OPENED in _event_types(db_path)

    @pytest.mark.asyncio
    async def test_broker_balance_moves_the_rung(self, db_path):
        """A deposit seen at the broker lifts the account to the next rung."""
        AccountStateRepo(db_path).save(
            MoneyManagementLadder().new_state("demo-1", 500.0, date(2025, 1, 8))
        )
        client = FakeClient()
        client.balance = 510.0
        orch, _ = _make_orchestrator(db_path, client=client)

        result = await orch.run_once(NOW)

        # 510.00 clears the 506.25 rung → 0.05 lots
        assert result["volume"] == 0.05
        assert client.sent[0]["comment"] == f"ICT_L5_{result['signal_id']}"
        state = AccountStateRepo(db_path).get("demo-1")
        assert state.current_balance == 510.0
        assert state.current_level == 5
        assert state.initial_balance == 500.0

    @pytest.mark.asyncio
    async def test_high_impact_news_skips(self, db_path):
        news = FakeNews()
        orch, client = _make_orchestrator(db_path, news=news)

        result = await orch.run_once(NOW)

        assert result["action"] == "skipped"
        assert result["reason"] == "high_impact_news"
        assert news.calls == [NOW]
        assert client.sent == []
        assert SignalRepo(db_path).get_signals()[0]["executed"] is False

    @pytest.mark.asyncio
    async def test_clear_news_window_trades(self, db_path):
        orch, client = _make_orchestrator(db_path, news=FakeNews(blocked=False))
        result = await orch.run_once(NOW)
        assert result["action"] == "order_placed"
        assert len(client.sent) == 1

    @pytest.mark.asyncio
    async def test_closed_market_skips(self, db_path):
        client = FakeClient()
        client.market_open = False
        orch, _ = _make_orchestrator(db_path, client=client)

        result = await orch.run_once(NOW)

        assert result["action"] == "skipped"
        assert result["reason"] == "market_closed"
        assert client.sent == []


# ── Reconciliation and housekeeping ──────────────────────────────────────


class TestReconcile:
    @pytest.mark.asyncio
    async def test_closed_trade_settles_ladder(self, db_path):
        ladder = MoneyManagementLadder()
        AccountStateRepo(db_path).save(ladder.new_state("demo-1", 500.0, date(2025, 1, 8)))
        TradeRepo(db_path).insert_trade(
            account_id="demo-1", broker_order_id="8001", symbol="XAUUSDm",
            direction="BUY", volume=0.03, entry_price=2640.0,
            stop_loss=2630.0, take_profit=2660.0,
        )
        client = FakeClient()
        client.balance = 520.0
        orch, _ = _make_orchestrator(db_path, client=client, fusion=StubFusion(SignalType.HOLD))

        await orch.run_once(NOW)

        closed = TradeRepo(db_path).get_trades(account_id="demo-1")[0]
        assert closed["status"] == "closed"
        assert closed["profit"] == pytest.approx(20.0)
        state = AccountStateRepo(db_path).get("demo-1")
        assert state.current_balance == 520.0
        assert state.daily_profit == pytest.approx(20.0)
        assert state.winning_trades == 1
        assert events.TRADE_CLOSED in _event_types(db_path)

    @pytest.mark.asyncio
    async def test_live_trade_left_open(self, db_path):
        TradeRepo(db_path).insert_trade(
            account_id="demo-1", broker_order_id="8001", symbol="XAUUSDm",
            direction="BUY", volume=0.03, entry_price=2640.0,
            stop_loss=2630.0, take_profit=2660.0,
        )
        client = FakeClient()
        client.orders = [OpenOrder("8001", "XAUUSDm", "BUY", 0.03, 2640.0, profit=4.5)]
        orch, _ = _make_orchestrator(db_path, client=client, fusion=StubFusion(SignalType.HOLD))

        await orch.run_once(NOW)

        trades = TradeRepo(db_path).get_open_trades("demo-1")
        assert len(trades) == 1
        assert trades[0]["floating_profit"] == 4.5

    @pytest.mark.asyncio
    async def test_broker_timezone_adopted_once(self, db_path):
        client = FakeClient()
        client.timezone = 3
        fusion = StubFusion(SignalType.HOLD)
        orch, _ = _make_orchestrator(db_path, client=client, fusion=fusion)

        await orch.run_once(NOW)
        client.timezone = 5
        await orch.run_once(NOW)

        # UTC 08:00 is broker 11:00 at +3: still London Open
        assert fusion.calls[1]["session"].name == "London Open Kill Zone"
        assert orch._clock.offset_hours == 3


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_cycle_guard_converts_errors(self, db_path):
        orch, _ = _make_orchestrator(db_path, fusion=StubFusion(error=RuntimeError("boom")))

        result = await orch.run_cycle(NOW)

        assert result["action"] == "error"
        assert orch.cycle_count == 1
        assert events.ERROR in _event_types(db_path)
        assert _account_statuses["demo-1"]["last_action"] == "error"

    @pytest.mark.asyncio
    async def test_initialize_publishes_status(self, db_path):
        orch, _ = _make_orchestrator(db_path)
        await orch.initialize()

        status = _account_statuses["demo-1"]
        assert status["connected"] is True
        assert status["balance"] == 500.0
        assert status["level"] == 4
        assert events.CONNECTION_ESTABLISHED in _event_types(db_path)

    @pytest.mark.asyncio
    async def test_run_until_stopped(self, db_path):
        orch, _ = _make_orchestrator(db_path, fusion=StubFusion(SignalType.HOLD))

        task = asyncio.create_task(orch.run(poll_interval=3600))
        await asyncio.sleep(0.05)
        assert orch.running
        orch.stop()
        await asyncio.wait_for(task, timeout=1)

        assert orch.cycle_count == 1
        assert not orch.running

    @pytest.mark.asyncio
    async def test_stop_before_run_returns_at_once(self, db_path):
        orch, _ = _make_orchestrator(db_path, fusion=StubFusion(SignalType.HOLD))

        orch.stop()
        await asyncio.wait_for(orch.run(poll_interval=3600), timeout=1)

        assert orch.cycle_count == 0
        assert not orch.running
        assert SignalRepo(db_path).get_signals() == []
