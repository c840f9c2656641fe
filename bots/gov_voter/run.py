#!/usr/bin/env python3
"""
Run the Gov Voter bot.

Usage:
    python -m bots.gov_voter.run init     # create ~/.gov-voter with a default config.yaml
    python -m bots.gov_voter.run start    # monitor proposals (default)

Environment variables required:
    TELEGRAM_BOT_TOKEN - Telegram bot token from @BotFather

Optional:
    GOV_VOTER_HOME - home directory (default: ~/.gov-voter)
    TELEGRAM_ADMIN_IDS - comma separated user ids allowed to vote
    TAG_IN_REPLY - handles tagged in reminders
    VOTE_METADATA - metadata attached to gov v1 votes
    MONITORING_INTERVAL - minutes between polls (default: 5)

Exit codes:
    0 - clean shutdown
    1 - bad configuration or no chain online
    2 - proposal store integrity failure
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import List, Optional

# Fix Windows console encoding for emojis
if sys.platform == "win32":
    sys.stdout.reconfigure(encoding="utf-8", errors="replace")
    sys.stderr.reconfigure(encoding="utf-8", errors="replace")

from bots.gov_voter.bot import GovVoterBot
from bots.gov_voter.config import default_home_dir, ensure_home_layout, load_config
from bots.gov_voter.errors import ConfigError, StoreIntegrityError
from bots.shared.logging_utils import setup_logger

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_CONFIG = 1
EXIT_STORE_INTEGRITY = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gov-voter",
        description="Cosmos governance proposal alerts with Telegram-approved authz votes",
    )
    parser.add_argument(
        "command", nargs="?", default="start", choices=("init", "start"),
        help="init: create the home directory and default config; start: run the bot",
    )
    parser.add_argument("--home", type=Path, default=None, help="home directory (default: $GOV_VOTER_HOME or ~/.gov-voter)")
    parser.add_argument("--env-file", type=Path, default=None, help="extra .env file to load")
    return parser


def cmd_init(home: Path) -> int:
    config_path = ensure_home_layout(home)
    print(f"Config ready at {config_path}")
    print(f"Put wallet key files in {home / 'keys'} as <wallet>.json with {{\"name\", \"mnemonics\"}}")
    return EXIT_OK


async def run_bot(bot: GovVoterBot) -> int:
    try:
        await bot.run()
    except ConfigError as e:
        logger.error(f"Gov Voter cannot start: {e}")
        return EXIT_CONFIG
    except StoreIntegrityError as e:
        logger.critical(f"Proposal store integrity failure, stopping: {e}", exc_info=True)
        return EXIT_STORE_INTEGRITY
    return EXIT_OK


def cmd_start(home: Path, env_file: Optional[Path] = None) -> int:
    try:
        config = load_config(home, env_file=env_file)
    except ConfigError as e:
        setup_logger("gov_voter", logger_name="bots")
        logger.error(str(e))
        return EXIT_CONFIG

    setup_logger("gov_voter", logger_name="bots", log_level=config.log_level, log_dir=config.log_dir)
    bot = GovVoterBot(config)
    try:
        return asyncio.run(run_bot(bot))
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
        return EXIT_OK


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    home = args.home or default_home_dir()
    if args.command == "init":
        return cmd_init(home)
    return cmd_start(home, args.env_file)


if __name__ == "__main__":
    sys.exit(main())
