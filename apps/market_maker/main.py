from __future__ import annotations

import argparse
import asyncio
import importlib
import signal
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import Any, cast

from core.config import Config, load_config
from core.exchange import IExchange, IWallet, StaticWallet
from core.logging import setup_console_logging, setup_json_logging
from execution.paper import PaperExchange
from strategies.market_maker.engine import build_engine

ExchangeFactory = Callable[[Config], IExchange]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Perpetual-futures market maker",
        epilog="Example: python -m apps.market_maker.main --config-root . "
        "--exchange-factory mypkg.venue:build_exchange",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--config-root",
        default=".",
        metavar="DIR",
        help="Directory containing config/base.yaml (default: .)",
    )
    parser.add_argument(
        "--exchange-factory",
        default=None,
        metavar="MODULE:CALLABLE",
        help="Callable taking the loaded Config and returning an IExchange "
        "(default: in-memory paper exchange)",
    )
    parser.add_argument(
        "--console-log",
        action="store_true",
        help="Log to stderr instead of the NDJSON file",
    )
    return parser


def resolve_factory(target: str | None) -> ExchangeFactory:
    if target is None:
        return lambda _cfg: PaperExchange()
    module_name, sep, attr = target.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Invalid exchange factory {target!r}; expected 'module:callable'")
    module = importlib.import_module(module_name)
    factory = getattr(module, attr, None)
    if not callable(factory):
        raise ValueError(f"{target!r} is not callable")
    return cast(ExchangeFactory, factory)


def build_wallet(config: Config) -> IWallet:
    exchange_secrets = config.secrets.exchange
    if exchange_secrets is None or not exchange_secrets.wallet_address:
        return StaticWallet(ready=True, message="paper wallet")
    return StaticWallet(ready=True, message=f"wallet {exchange_secrets.wallet_address}")


async def _run(args: argparse.Namespace) -> int:
    config = load_config(Path(args.config_root))
    if args.console_log:
        logger: Any = setup_console_logging(config.logging.level)
    else:
        logger = setup_json_logging(str(config.logging.log_dir), config.logging.level)
    logger.info("market_maker_starting", env=config.app.env, pairs=config.strategy.trading_pairs)

    exchange = resolve_factory(args.exchange_factory)(config)
    engine = build_engine(config, exchange, build_wallet(config))

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    try:
        await engine.start()
        await stop_event.wait()
    except Exception as exc:
        logger.error("market_maker_error", error=str(exc), exc_info=True)
        raise
    finally:
        await engine.stop()
        status = engine.status()
        logger.info("market_maker_stopped", errors=len(engine.errors), orders=status.order_count)
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    return asyncio.run(_run(args))


if __name__ == "__main__":
    raise SystemExit(main())
