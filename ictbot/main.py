"""ICTBot — application entry point.

Boots the FastAPI internal server and the per-account trading engines.
"""

import logging

from fastapi import FastAPI

from ictbot.api.routers import router

app = FastAPI(title="ICTBot Internal API", version="0.1.0")
app.include_router(router)

logger = logging.getLogger("ictbot")


@app.get("/health")
async def health():
    """Liveness check."""
    return {"status": "ok"}


# ── CLI ──────────────────────────────────────────────────────────────────


def build_manager(config, accounts):
    """Compose shared services and one orchestrator per account."""
    from ictbot.advisor.openai_advisor import OpenAIAdvisor
    from ictbot.broker.mt5_client import Mt5Client
    from ictbot.engine_manager import EngineManager
    from ictbot.news.calendar import NewsCalendar
    from ictbot.repos.account_repo import LevelRepo
    from ictbot.risk.money_ladder import DEFAULT_LEVELS, MoneyManagementLadder
    from ictbot.sentiment.cftc import SentimentService

    level_repo = LevelRepo(config.db_path)
    seeded = level_repo.seed_levels(DEFAULT_LEVELS)
    if seeded:
        logger.info("Seeded %d money-management levels.", seeded)
    ladder = MoneyManagementLadder(
        levels=level_repo.get_levels() or DEFAULT_LEVELS,
        daily_loss_limit_pct=config.daily_loss_limit_pct,
    )

    sentiment = SentimentService(config) if config.sentiment_enabled else None
    news = NewsCalendar(config) if config.news_enabled else None
    advisor = OpenAIAdvisor(config.openai_api_key, config.openai_model)
    if not advisor.enabled:
        advisor = None

    return EngineManager.from_config(
        config,
        accounts,
        client=Mt5Client(config.mt5_api_base_url),
        ladder=ladder,
        sentiment=sentiment,
        advisor=advisor,
        news=news,
    )


def _run_cli() -> None:
    """Parse CLI arguments and start the bot."""
    import argparse
    import asyncio

    from ictbot.api.routers import configure_routers, update_account_status
    from ictbot.config import load_accounts, load_config
    from ictbot.repos.db import init_db
    from ictbot.repos.log_repo import LogRepo
    from ictbot.repos.signal_repo import SignalRepo

    parser = argparse.ArgumentParser(description="ICTBot trading bot")
    parser.add_argument(
        "--accounts",
        default="accounts.json",
        help="Path to the multi-account file (default: accounts.json)",
    )
    parser.add_argument(
        "--engine-only",
        action="store_true",
        help="Run trading engines without the API server",
    )
    args = parser.parse_args()

    config = load_config()
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    init_db(config.db_path)

    accounts = load_accounts(config, args.accounts)
    manager = build_manager(config, accounts)
    configure_routers(
        signal_repo=SignalRepo(config.db_path),
        log_repo=LogRepo(config.db_path),
    )

    # Push initial status so /status lists accounts immediately
    for account_id, engine in manager.engines.items():
        update_account_status(
            account_id,
            symbol=engine.symbol,
            timeframe=engine.timeframe,
            running=False,
        )

    if args.engine_only:
        asyncio.run(_run_engines_only(manager))
    else:
        asyncio.run(_run_engine_manager(manager, config.health_port))


def _install_signal_handlers(manager) -> None:
    import asyncio
    import signal

    loop = asyncio.get_running_loop()

    def handle_shutdown() -> None:
        logger.info("Shutdown signal received, stopping accounts.")
        manager.stop_all()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, handle_shutdown)
        except NotImplementedError:  # Windows event loops
            signal.signal(sig, lambda signum, frame: handle_shutdown())


async def _run_engine_manager(manager, port: int = 8080) -> None:
    """Start the API server and all trading accounts concurrently."""
    import asyncio

    import uvicorn

    logger.info("Starting ICTBot with %d account(s).", len(manager.account_ids))

    uvi_config = uvicorn.Config(app, host="0.0.0.0", port=port, log_level="info")
    server = uvicorn.Server(uvi_config)

    async def _run_engines():
        try:
            await manager.run_all()
        finally:
            server.should_exit = True

    _install_signal_handlers(manager)
    logger.info("Internal API available at http://localhost:%d", port)
    results = await asyncio.gather(
        server.serve(),
        _run_engines(),
        return_exceptions=True,
    )
    logger.info("ICTBot stopped. Results: %s", results)


async def _run_engines_only(manager) -> None:
    """Run trading engines without starting the API server."""
    logger.info("Starting ICTBot engines (no API) with %d account(s).", len(manager.account_ids))
    _install_signal_handlers(manager)
    await manager.run_all()
    logger.info("ICTBot engines stopped.")


if __name__ == "__main__":
    _run_cli()
