"""ICTBot application configuration.

Loads .env variables into a typed config object.
Validates required variables on startup.
"""

import json
import os
import pathlib
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv

from ictbot.models.account_config import AccountConfig


_REQUIRED_VARS = [
    "MT5_USER",
    "MT5_PASSWORD",
    "MT5_HOST",
]

# Candle length per MT5 timeframe, in minutes.
TIMEFRAME_MINUTES: dict[str, int] = {
    "M1": 1,
    "M5": 5,
    "M15": 15,
    "M30": 30,
    "H1": 60,
    "H4": 240,
    "D1": 1440,
    "W1": 10080,
    "MN1": 43200,
}

_DEFAULT_SENTIMENT_URL = "https://www.cftc.gov/dea/newcot/f_disagg.txt"
_DEFAULT_SENTIMENT_MAP = "XAUUSDm=GOLD - COMMODITY EXCHANGE INC."
_DEFAULT_NEWS_URL = "https://nfs.faireconomy.media/ff_calendar_thisweek.json"


@dataclass(frozen=True)
class Config:
    """Typed configuration loaded from environment variables."""

    mt5_user: str
    mt5_password: str
    mt5_host: str
    mt5_port: int = 443
    mt5_api_base_url: str = "https://mt5.mtapi.io"
    broker_timezone_offset: int = 2  # broker server hours ahead of UTC
    trading_symbol: str = "XAUUSDm"
    trading_timeframe: str = "M15"
    candle_count: int = 100
    min_candles: int = 30
    poll_interval_seconds: int = 900
    auto_trading_enabled: bool = True
    min_confidence: float = 30.0
    daily_loss_limit_pct: Optional[float] = 3.0  # None disables the pause
    db_path: str = "data/ictbot.db"
    log_level: str = "INFO"
    health_port: int = 8080
    sentiment_enabled: bool = True
    sentiment_cftc_url: str = _DEFAULT_SENTIMENT_URL
    sentiment_symbol_map: dict[str, str] = field(default_factory=dict)
    sentiment_cache_ttl_seconds: int = 21600
    sentiment_request_timeout_seconds: float = 5.0
    sentiment_net_pct_bull: float = 10.0
    sentiment_net_pct_bear: float = -10.0
    news_enabled: bool = True
    news_url: str = _DEFAULT_NEWS_URL
    news_importance: int = 3  # 3 high, 2 medium, 1 low
    news_countries: tuple[str, ...] = ()  # empty means every currency
    news_pre_minutes: int = 30
    news_post_minutes: int = 15
    news_cache_ttl_seconds: int = 300
    news_request_timeout_seconds: float = 4.0
    news_timezone_offset_hours: int = 0  # for feeds with local date and time labels
    openai_api_key: str = ""
    openai_model: str = "gpt-4o"


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_optional_float(name: str, default: float) -> Optional[float]:
    """Read a positive float; empty, 'none', 'off' or zero yields None."""
    raw = os.environ.get(name)
    if raw is None:
        return default
    raw = raw.strip().lower()
    if raw in ("", "none", "off"):
        return None
    value = float(raw)
    return value if value > 0 else None


def parse_symbol_map(raw: str) -> dict[str, str]:
    """Parse ``"SYM=Market name,SYM2=Other"`` into a dict.

    Entries without ``=`` are ignored.
    """
    mapping: dict[str, str] = {}
    for entry in raw.split(","):
        if "=" not in entry:
            continue
        symbol, market = entry.split("=", 1)
        symbol, market = symbol.strip(), market.strip()
        if symbol and market:
            mapping[symbol] = market
    return mapping


def load_config(env_path: str | None = None) -> Config:
    """Load configuration from environment variables.

    Raises ``ValueError`` with a message naming the missing variable when a
    required variable is absent, or when the timeframe is unknown.
    """
    load_dotenv(dotenv_path=env_path)

    missing = [v for v in _REQUIRED_VARS if not os.environ.get(v)]
    if missing:
        raise ValueError(
            f"Missing required environment variable(s): {', '.join(missing)}"
        )

    timeframe = os.environ.get("TRADING_TIMEFRAME", "M15").upper()
    if timeframe not in TIMEFRAME_MINUTES:
        raise ValueError(f"Unsupported TRADING_TIMEFRAME: {timeframe}")
    default_interval = TIMEFRAME_MINUTES[timeframe] * 60

    return Config(
        mt5_user=os.environ["MT5_USER"],
        mt5_password=os.environ["MT5_PASSWORD"],
        mt5_host=os.environ["MT5_HOST"],
        mt5_port=int(os.environ.get("MT5_PORT", "443")),
        mt5_api_base_url=os.environ.get("MT5_API_BASE_URL", "https://mt5.mtapi.io"),
        broker_timezone_offset=int(os.environ.get("MT5_BROKER_TIMEZONE_OFFSET", "2")),
        trading_symbol=os.environ.get("TRADING_SYMBOL", "XAUUSDm"),
        trading_timeframe=timeframe,
        candle_count=int(os.environ.get("CANDLE_COUNT", "100")),
        min_candles=int(os.environ.get("MIN_CANDLES", "30")),
        poll_interval_seconds=int(
            os.environ.get("POLL_INTERVAL_SECONDS", str(default_interval))
        ),
        auto_trading_enabled=_env_bool("AUTO_TRADING_ENABLED", True),
        min_confidence=float(os.environ.get("MIN_CONFIDENCE", "30")),
        daily_loss_limit_pct=_env_optional_float("DAILY_LOSS_LIMIT_PCT", 3.0),
        db_path=os.environ.get("DB_PATH", "data/ictbot.db"),
        log_level=os.environ.get("LOG_LEVEL", "INFO"),
        health_port=int(os.environ.get("HEALTH_PORT", "8080")),
        sentiment_enabled=_env_bool("SENTIMENT_ENABLED", True),
        sentiment_cftc_url=os.environ.get("SENTIMENT_CFTC_URL") or _DEFAULT_SENTIMENT_URL,
        sentiment_symbol_map=parse_symbol_map(
            os.environ.get("SENTIMENT_SYMBOL_MAP") or _DEFAULT_SENTIMENT_MAP
        ),
        sentiment_cache_ttl_seconds=int(
            os.environ.get("SENTIMENT_CACHE_TTL_SECONDS", "21600")
        ),
        sentiment_request_timeout_seconds=float(
            os.environ.get("SENTIMENT_REQUEST_TIMEOUT_SECONDS", "5")
        ),
        sentiment_net_pct_bull=float(os.environ.get("SENTIMENT_NET_PCT_BULL", "10")),
        sentiment_net_pct_bear=float(os.environ.get("SENTIMENT_NET_PCT_BEAR", "-10")),
        news_enabled=_env_bool("NEWS_ENABLED", True),
        news_url=os.environ.get("NEWS_FF_URL") or _DEFAULT_NEWS_URL,
        news_importance=int(os.environ.get("NEWS_IMPORTANCE", "3")),
        news_countries=tuple(
            c.strip() for c in os.environ.get("NEWS_COUNTRIES", "").split(",") if c.strip()
        ),
        news_pre_minutes=int(os.environ.get("NEWS_PRE_MINUTES", "30")),
        news_post_minutes=int(os.environ.get("NEWS_POST_MINUTES", "15")),
        news_cache_ttl_seconds=int(os.environ.get("NEWS_CACHE_TTL_SECONDS", "300")),
        news_request_timeout_seconds=float(
            os.environ.get("NEWS_REQUEST_TIMEOUT_SECONDS", "4")
        ),
        news_timezone_offset_hours=int(os.environ.get("NEWS_TIMEZONE_OFFSET_HOURS", "0")),
        openai_api_key=os.environ.get("OPENAI_API_KEY", ""),
        openai_model=os.environ.get("OPENAI_MODEL", "gpt-4o"),
    )


def load_accounts(
    config: Config,
    path: str | pathlib.Path = "accounts.json",
) -> list[AccountConfig]:
    """Load trading accounts from ``accounts.json``.

    The file holds ``{"accounts": [{...}, ...]}``; missing per-account keys
    fall back to the global config.  Without the file a single account is
    synthesised from the environment.
    """
    path = pathlib.Path(path)
    if not path.exists():
        return [
            AccountConfig(
                account_id=config.mt5_user,
                user=config.mt5_user,
                password=config.mt5_password,
                host=config.mt5_host,
                port=config.mt5_port,
                symbol=config.trading_symbol,
                timeframe=config.trading_timeframe,
                poll_interval_seconds=config.poll_interval_seconds,
            )
        ]

    data = json.loads(path.read_text(encoding="utf-8"))
    accounts: list[AccountConfig] = []
    for entry in data.get("accounts", []):
        if "user" not in entry or "password" not in entry:
            raise ValueError(f"Account entry missing credentials: {entry.get('account_id')}")
        timeframe = entry.get("timeframe", config.trading_timeframe).upper()
        if timeframe not in TIMEFRAME_MINUTES:
            raise ValueError(f"Unsupported timeframe for account: {timeframe}")
        accounts.append(
            AccountConfig(
                account_id=str(entry.get("account_id", entry["user"])),
                user=str(entry["user"]),
                password=entry["password"],
                host=entry.get("host", config.mt5_host),
                port=int(entry.get("port", config.mt5_port)),
                symbol=entry.get("symbol", config.trading_symbol),
                timeframe=timeframe,
                poll_interval_seconds=int(
                    entry.get("poll_interval_seconds", TIMEFRAME_MINUTES[timeframe] * 60)
                ),
                max_open_positions=int(entry.get("max_open_positions", 1)),
                enabled=bool(entry.get("enabled", True)),
            )
        )
    return accounts
