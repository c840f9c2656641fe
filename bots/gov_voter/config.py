"""
Configuration for the Gov Voter bot.

Networks and Telegram chats live in ``<home>/config.yaml``; secrets and
tunables come from the environment (a ``.env`` file is loaded first) and
override the optional ``settings:`` block of the YAML file.
"""

import logging
import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Union

import yaml
from dotenv import load_dotenv

from bots.gov_voter.errors import ConfigError

logger = logging.getLogger(__name__)

CONFIG_FILE = "config.yaml"
KEY_FOLDER = "keys"
DB_FOLDER = "db"
DB_FILE = "gov_voter.sqlite"

VOTE_TYPE_V1 = "/cosmos.gov.v1.MsgVote"
VOTE_TYPE_V1BETA1 = "/cosmos.gov.v1beta1.MsgVote"
EXEC_TYPE_V1BETA1 = "/cosmos.authz.v1beta1.MsgExec"
EXEC_TYPE_V1 = "/cosmos.authz.v1.MsgExec"

VOTE_TYPES = (VOTE_TYPE_V1, VOTE_TYPE_V1BETA1)
EXEC_TYPES = (EXEC_TYPE_V1BETA1, EXEC_TYPE_V1)

DEFAULT_CONFIG_YAML = """\
# Telegram chats, referenced from networks by label
telegram:
  - label: proposal
    chat_id: "<chat id>"

# Networks to monitor
networks:
  - name: cosmoshub
    chain_id: cosmoshub-4
    hd_path: "m/44'/118'/0'/0/0"
    denom: uatom
    prefix: cosmos
    decimals: 6
    wallet: default
    granter: ""
    # signer endpoint, cosmpy scheme (rest+https:// or grpc+https://)
    rpc: "rest+https://cosmos-api.polkachu.com"
    api: "https://cosmos-api.polkachu.com"
    explorer:
      proposal: "https://www.mintscan.io/cosmos/proposals/"
      tx: "https://www.mintscan.io/cosmos/txs/"
    telegram_label: proposal
    authz:
      vote_type: /cosmos.gov.v1beta1.MsgVote
      exec_type: /cosmos.authz.v1beta1.MsgExec

# Optional tunables; environment variables of the same name (upper case) win
settings:
  monitoring_interval: 5
  max_retries: 3
"""


def default_home_dir() -> Path:
    return Path(os.environ.get("GOV_VOTER_HOME") or Path.home() / ".gov-voter")


@dataclass
class ExplorerConfig:
    """Explorer URL prefixes; the proposal id or tx hash is appended."""
    proposal: str = ""
    tx: str = ""


@dataclass
class NetworkConfig:
    """One monitored chain, as written in config.yaml."""

    name: str
    chain_id: str
    api: str
    rpc: str
    granter: str
    denom: str
    decimals: int = 6
    prefix: str = "cosmos"
    hd_path: str = "m/44'/118'/0'/0/0"
    wallet: str = "default"
    telegram_label: str = ""
    explorer: ExplorerConfig = field(default_factory=ExplorerConfig)
    vote_type: str = VOTE_TYPE_V1BETA1
    exec_type: str = EXEC_TYPE_V1BETA1

    @property
    def signer_url(self) -> str:
        """Endpoint for the signing client in cosmpy's ``rest+``/``grpc+`` notation."""
        rpc = self.rpc.strip()
        if rpc.startswith(("rest+", "grpc+")):
            return rpc.rstrip("/")
        return "rest+" + self.api.strip().rstrip("/")

    def validate(self) -> List[str]:
        """Return a list of problems; empty when the entry is usable."""
        problems = []
        for attr in ("name", "chain_id", "api", "granter", "denom"):
            if not str(getattr(self, attr) or "").strip():
                problems.append(f"{attr} is required")
        if ":" in self.name:
            problems.append("name must not contain ':' (used in vote buttons)")
        if self.decimals < 0:
            problems.append("decimals must be a non-negative integer")
        if self.vote_type not in VOTE_TYPES:
            problems.append(f"authz.vote_type must be one of {', '.join(VOTE_TYPES)}")
        if self.exec_type not in EXEC_TYPES:
            problems.append(f"authz.exec_type must be one of {', '.join(EXEC_TYPES)}")
        return problems


@dataclass
class GovVoterConfig:
    """Configuration for the governance vote bot."""

    home_dir: Path
    networks: List[NetworkConfig] = field(default_factory=list)
    telegram_chats: Dict[str, Union[int, str]] = field(default_factory=dict)

    # Telegram settings
    bot_token: str = ""
    admin_ids: Set[int] = field(default_factory=set)
    tag_in_reply: str = ""

    # Voting settings
    vote_metadata: str = ""
    gas_multiplier: Decimal = Decimal("1.5")

    # Monitoring settings
    monitoring_interval_minutes: float = 5.0
    query_timeout: float = 10.0
    schema_probe_timeout: float = 5.0
    broadcast_timeout: float = 60.0
    max_retries: int = 3

    # Logging
    log_level: str = "INFO"
    log_dir: Optional[Path] = None

    @property
    def config_path(self) -> Path:
        return self.home_dir / CONFIG_FILE

    @property
    def keys_dir(self) -> Path:
        return self.home_dir / KEY_FOLDER

    @property
    def db_path(self) -> Path:
        return self.home_dir / DB_FOLDER / DB_FILE

    @property
    def monitoring_interval_seconds(self) -> float:
        return self.monitoring_interval_minutes * 60

    def chat_for(self, network: NetworkConfig) -> Optional[Union[int, str]]:
        chat_id = self.telegram_chats.get(network.telegram_label)
        if chat_id is None:
            logger.warning(f"No Telegram configuration found for label: {network.telegram_label}")
        return chat_id

    def summary(self) -> str:
        """Non-sensitive one-liner for startup logs."""
        token = f"{self.bot_token[:4]}...{self.bot_token[-2:]}" if self.bot_token else "unset"
        return (
            f"networks={len(self.networks)} chats={len(self.telegram_chats)} "
            f"interval={self.monitoring_interval_minutes}m retries={self.max_retries} "
            f"admins={len(self.admin_ids)} token={token}"
        )


# === PARSING ===

def _parse_chat_id(raw: Any) -> Union[int, str]:
    # Prefer int chat IDs for python-telegram-bot; keep @channel names as strings
    text = str(raw).strip()
    if text.lstrip("-").isdigit():
        return int(text)
    return text


def _parse_admin_ids(value: Any) -> Set[int]:
    if isinstance(value, (list, tuple, set)):
        items = [str(v) for v in value]
    else:
        items = str(value or "").split(",")
    ids = set()
    for item in items:
        item = item.strip()
        if item.isdigit():
            ids.add(int(item))
    return ids


def _parse_network(entry: Dict[str, Any]) -> NetworkConfig:
    if not isinstance(entry, dict):
        raise ConfigError(f"Network entry must be a mapping, got {type(entry).__name__}")

    explorer = entry.get("explorer") or {}
    authz = entry.get("authz") or {}
    try:
        decimals = int(entry.get("decimals", 6))
    except (TypeError, ValueError):
        raise ConfigError(f"Network {entry.get('name')!r}: decimals must be an integer")

    return NetworkConfig(
        name=str(entry.get("name") or "").strip(),
        chain_id=str(entry.get("chain_id") or entry.get("chainId") or "").strip(),
        api=str(entry.get("api") or "").strip(),
        rpc=str(entry.get("rpc") or "").strip(),
        granter=str(entry.get("granter") or (authz.get("granter") if isinstance(authz, dict) else "") or "").strip(),
        denom=str(entry.get("denom") or "").strip(),
        decimals=decimals,
        prefix=str(entry.get("prefix") or "cosmos").strip(),
        hd_path=str(entry.get("hd_path") or entry.get("hdPath") or "m/44'/118'/0'/0/0").strip(),
        wallet=str(entry.get("wallet") or "default").strip(),
        telegram_label=str(entry.get("telegram_label") or entry.get("telegramLabel") or "").strip(),
        explorer=ExplorerConfig(
            proposal=str(explorer.get("proposal") or "").strip(),
            tx=str(explorer.get("tx") or "").strip(),
        ),
        vote_type=str(authz.get("vote_type") or VOTE_TYPE_V1BETA1).strip(),
        exec_type=str(authz.get("exec_type") or EXEC_TYPE_V1BETA1).strip(),
    )


def _setting(settings: Dict[str, Any], key: str, default: Any) -> Any:
    """Environment (upper-case key) wins over the YAML settings block."""
    env_value = os.environ.get(key.upper())
    if env_value is not None and env_value.strip() != "":
        return env_value.strip()
    value = settings.get(key)
    return default if value is None else value


def _positive_number(settings: Dict[str, Any], key: str, default: float) -> float:
    raw = _setting(settings, key, default)
    try:
        value = float(raw)
    except (TypeError, ValueError):
        raise ConfigError(f"{key} must be a number, got {raw!r}")
    if value <= 0:
        raise ConfigError(f"{key} must be positive, got {raw!r}")
    return value


def parse_config(data: Dict[str, Any], home_dir: Path) -> GovVoterConfig:
    """Build a GovVoterConfig from the decoded YAML document plus environment."""
    if not isinstance(data, dict):
        raise ConfigError("config.yaml must contain a mapping at the top level")

    chats: Dict[str, Union[int, str]] = {}
    for chat in data.get("telegram") or []:
        if not isinstance(chat, dict) or not chat.get("label"):
            raise ConfigError(f"Invalid telegram entry: {chat!r}")
        chats[str(chat["label"])] = _parse_chat_id(chat.get("chat_id", chat.get("chatId", "")))

    networks = [_parse_network(entry) for entry in data.get("networks") or data.get("network") or []]
    names = [n.name for n in networks]
    duplicates = {name for name in names if names.count(name) > 1}
    if duplicates:
        raise ConfigError(f"Duplicate network names: {', '.join(sorted(duplicates))}")

    settings = data.get("settings") or {}

    try:
        gas_multiplier = Decimal(str(_setting(settings, "gas_multiplier", "1.5")))
    except InvalidOperation:
        raise ConfigError("gas_multiplier must be a decimal number")
    if gas_multiplier < 1:
        raise ConfigError("gas_multiplier must be at least 1")

    try:
        max_retries = int(_setting(settings, "max_retries", 3))
    except (TypeError, ValueError):
        raise ConfigError("max_retries must be an integer")
    if max_retries < 1:
        raise ConfigError("max_retries must be at least 1")

    log_dir = _setting(settings, "gov_voter_log_dir", None)

    return GovVoterConfig(
        home_dir=home_dir,
        networks=networks,
        telegram_chats=chats,
        bot_token=str(_setting(settings, "telegram_bot_token", "")).strip(),
        admin_ids=_parse_admin_ids(_setting(settings, "telegram_admin_ids", "")),
        tag_in_reply=str(_setting(settings, "tag_in_reply", "")),
        vote_metadata=str(_setting(settings, "vote_metadata", "")),
        gas_multiplier=gas_multiplier,
        monitoring_interval_minutes=_positive_number(settings, "monitoring_interval", 5),
        query_timeout=_positive_number(settings, "query_timeout", 10),
        schema_probe_timeout=_positive_number(settings, "schema_probe_timeout", 5),
        broadcast_timeout=_positive_number(settings, "broadcast_timeout", 60),
        max_retries=max_retries,
        log_level=str(_setting(settings, "log_level", "INFO")).upper(),
        log_dir=Path(log_dir) if log_dir else home_dir / "logs",
    )


def load_config(home_dir: Optional[Path] = None, env_file: Optional[Path] = None) -> GovVoterConfig:
    """
    Load configuration from ``<home>/config.yaml`` and the environment.

    Raises:
        ConfigError: missing or malformed config file.
    """
    # .env beside the config wins over the working directory one; real env vars win over both
    home_dir = Path(home_dir) if home_dir else default_home_dir()
    for candidate in (env_file, home_dir / ".env", Path.cwd() / ".env"):
        if candidate and Path(candidate).exists():
            load_dotenv(candidate, override=False)

    config_path = home_dir / CONFIG_FILE
    if not config_path.exists():
        raise ConfigError(f"Config file not found at path: {config_path} (run the 'init' command first)")

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse {config_path}: {e}")

    config = parse_config(data, home_dir)
    logger.info(f"Loaded config from {config_path}: {config.summary()}")
    return config


def ensure_home_layout(home_dir: Optional[Path] = None) -> Path:
    """Create the home directory, keys/db folders and a default config.yaml if missing."""
    home_dir = Path(home_dir) if home_dir else default_home_dir()
    for directory in (home_dir, home_dir / KEY_FOLDER, home_dir / DB_FOLDER):
        if not directory.exists():
            directory.mkdir(parents=True, exist_ok=True)
            logger.info(f"Created directory: {directory}")

    config_path = home_dir / CONFIG_FILE
    if not config_path.exists():
        config_path.write_text(DEFAULT_CONFIG_YAML, encoding="utf-8")
        logger.info(f"Created file with default content: {config_path}")
    return config_path
