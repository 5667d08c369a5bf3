import json
import os
import keyring
from keyring.errors import KeyringError
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional
from starling_core.logger import get_logger
from starling_core.providers.starling import BASE_URL
from starling_core.security import TokenCipher, TokenDecryptError

logger = get_logger(__name__)

APP_NAME = "starling-sync"
KEYRING_SERVICE_NAME = "starling-sync"
KEYRING_USERNAME = "master-key"
PASSPHRASE_ENV = "STARLING_SYNC_PASSPHRASE"
DEFAULT_DAYS = 7

# Standard config and data paths
CONFIG_DIR = Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config")) / APP_NAME
CONFIG_FILE = CONFIG_DIR / "config.json"
DATA_DIR = Path(
    os.environ.get(
        "STARLING_DATA_DIR",
        Path(os.environ.get("XDG_DATA_HOME", Path.home() / ".local" / "share")) / APP_NAME,
    )
)


class ConfigError(Exception):
    pass


@dataclass
class KeyEntry:
    name: str
    token: str
    account_uid: Optional[str] = None


@dataclass
class Config:
    keys: List[KeyEntry] = field(default_factory=list)
    api_url: str = BASE_URL
    days: int = DEFAULT_DAYS

    def find(self, name: str) -> Optional[KeyEntry]:
        return next((k for k in self.keys if k.name == name), None)


def _get_cipher() -> TokenCipher:
    """
    Master key resolution order: passphrase from the environment, then the OS
    keyring. A key is generated and stored in the keyring on first use.
    """
    passphrase = os.environ.get(PASSPHRASE_ENV)
    if passphrase:
        return TokenCipher.from_passphrase(passphrase)

    try:
        stored_key = keyring.get_password(KEYRING_SERVICE_NAME, KEYRING_USERNAME)
        if stored_key:
            return TokenCipher(stored_key.encode("utf-8"))

        new_key = TokenCipher.generate_key()
        keyring.set_password(KEYRING_SERVICE_NAME, KEYRING_USERNAME, new_key.decode("utf-8"))
        logger.info("Generated a new master key in the system keyring")
        return TokenCipher(new_key)
    except KeyringError as e:
        # Tokens saved under a memory-only key would be unreadable next run.
        raise ConfigError(
            f"System keyring unavailable ({e}). Set {PASSPHRASE_ENV} to encrypt tokens."
        ) from e


def database_url() -> str:
    DATA_DIR.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{DATA_DIR}/ledger.db"


def get_config() -> Config:
    """
    Reads the config file and decrypts the stored tokens.
    A missing file is an empty config; a corrupt one is an error.
    """
    if not CONFIG_FILE.exists():
        return Config(api_url=os.environ.get("STARLING_API_URL", BASE_URL))

    try:
        with open(CONFIG_FILE, "r") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"Cannot read {CONFIG_FILE}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"{CONFIG_FILE} must hold a JSON object")

    try:
        days = int(data.get("days", DEFAULT_DAYS))
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid 'days' in {CONFIG_FILE}: {e}") from e

    keys = []
    raw_keys = data.get("keys") or []
    if raw_keys:
        cipher = _get_cipher()
        try:
            for raw in raw_keys:
                keys.append(
                    KeyEntry(
                        name=raw["name"],
                        token=cipher.decrypt(raw["token"]),
                        account_uid=raw.get("account_uid"),
                    )
                )
        except TokenDecryptError as e:
            raise ConfigError(str(e)) from e
        except (KeyError, TypeError, AttributeError) as e:
            raise ConfigError(f"Malformed key entry in {CONFIG_FILE}: {e}") from e

    return Config(
        keys=keys,
        api_url=os.environ.get("STARLING_API_URL", data.get("api_url", BASE_URL)),
        days=days,
    )


def save_config(config: Config):
    """
    Encrypts the tokens and saves to the config file.
    """
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)
    cipher = _get_cipher()

    data = {
        "api_url": config.api_url,
        "days": config.days,
        "keys": [
            {
                "name": k.name,
                "token": cipher.encrypt(k.token),
                **({"account_uid": k.account_uid} if k.account_uid else {}),
            }
            for k in config.keys
        ],
    }

    with open(CONFIG_FILE, "w") as f:
        json.dump(data, f, indent=2)
    os.chmod(CONFIG_FILE, 0o600)


def add_key(name: str, token: str, account_uid: Optional[str] = None) -> Config:
    config = get_config()
    if config.find(name):
        raise ConfigError(f"A key named '{name}' already exists")
    config.keys.append(KeyEntry(name=name, token=token, account_uid=account_uid))
    save_config(config)
    return config


def remove_key(name: str) -> Config:
    config = get_config()
    entry = config.find(name)
    if entry is None:
        raise ConfigError(f"No key named '{name}'")
    config.keys.remove(entry)
    save_config(config)
    return config
