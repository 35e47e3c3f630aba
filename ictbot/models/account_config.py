"""Trading account configuration dataclass.

Represents one MT5 account in the multi-account engine.
"""

from dataclasses import dataclass, field


@dataclass(frozen=True)
class AccountConfig:
    """Configuration for a single trading account.

    Each account runs its own ``TradeOrchestrator`` with its own broker
    session, instrument, timeframe and polling interval.
    """

    account_id: str
    user: str
    password: str = field(repr=False)
    host: str
    port: int = 443
    symbol: str = "XAUUSDm"
    timeframe: str = "M15"
    poll_interval_seconds: int = 900
    max_open_positions: int = 1
    enabled: bool = True
