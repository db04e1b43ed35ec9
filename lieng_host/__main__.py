import argparse
import asyncio
import logging

from lieng.models import LiengConfig

from .gateways import MemoryLedger
from .server import HostServer


def main() -> None:
    parser = argparse.ArgumentParser(description="Lieng game host server")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=8765)
    parser.add_argument("--invite-time", type=int, default=30_000, help="Invite window in milliseconds")
    parser.add_argument(
        "--move-time",
        type=int,
        default=30_000,
        help="Move time in milliseconds (0 disables auto folds)",
    )
    parser.add_argument("--default-bet", type=int, default=1_000)
    parser.add_argument("--starting-balance", type=int, default=10_000)
    parser.add_argument("--ledger-file", default=None, help="JSON file that keeps balances between runs")
    parser.add_argument("--log-level", default="INFO")
    args = parser.parse_args()

    logging.basicConfig(level=getattr(logging, args.log_level.upper(), logging.INFO))

    config = LiengConfig(
        invite_time_ms=args.invite_time,
        move_time_ms=args.move_time,
        default_bet=args.default_bet,
        starting_balance=args.starting_balance,
    )
    ledger = MemoryLedger(config.starting_balance, path=args.ledger_file)

    server = HostServer(config, ledger=ledger)
    asyncio.run(server.start(host=args.host, port=args.port))


if __name__ == "__main__":
    main()
