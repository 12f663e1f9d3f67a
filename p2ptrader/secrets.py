"""Secrets management: load exchange API credentials from environment or file.

Priority order:
1. Environment variables: P2P_API_KEY, P2P_API_SECRET (optional P2P_ACCOUNT_ID)
2. Accounts file: ~/.p2ptrader_accounts.json or custom path via ENV P2P_ACCOUNTS_PATH

The accounts file holds a JSON list of ``{account_id, api_key, api_secret}``
objects (a single object is accepted as well).

API secrets stored in the database can be encrypted at rest with
:class:`SecretBox`, keyed by the Fernet key in ``P2P_SECRET_KEY``.
"""
import json
import os
from pathlib import Path
from typing import Iterable, List, NamedTuple, Optional

from cryptography.fernet import Fernet, InvalidToken


class AccountCredentials(NamedTuple):
    account_id: str
    api_key: str
    api_secret: str


def load_accounts(config_path: Optional[str] = None) -> List[AccountCredentials]:
    """Load exchange credentials for one or more trading accounts.

    Args:
        config_path: Optional override path to the accounts file. If not
                     provided, checks P2P_ACCOUNTS_PATH, then
                     ~/.p2ptrader_accounts.json

    Returns:
        List of AccountCredentials

    Raises:
        ValueError: If no complete credentials are found
    """
    api_key = os.getenv("P2P_API_KEY")
    api_secret = os.getenv("P2P_API_SECRET")

    if api_key and api_secret:
        account_id = os.getenv("P2P_ACCOUNT_ID", "default")
        return [AccountCredentials(account_id=account_id, api_key=api_key, api_secret=api_secret)]

    if config_path is None:
        config_path = os.getenv("P2P_ACCOUNTS_PATH")
    if config_path is None:
        config_path = str(Path.home() / ".p2ptrader_accounts.json")

    accounts: List[AccountCredentials] = []
    config_file = Path(config_path)
    if config_file.exists():
        try:
            with config_file.open("r") as f:
                raw = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ValueError(f"Failed to load accounts from {config_path}: {e}")

        entries = raw if isinstance(raw, list) else [raw]
        for i, entry in enumerate(entries):
            key = entry.get("api_key")
            secret = entry.get("api_secret")
            if not key or not secret:
                raise ValueError(f"Account entry {i} in {config_path} is missing api_key/api_secret")
            accounts.append(AccountCredentials(
                account_id=str(entry.get("account_id") or f"account-{i + 1}"),
                api_key=key,
                api_secret=secret,
            ))

    if not accounts:
        raise ValueError(
            "Missing exchange credentials. Provide via:\n"
            "  - Environment: P2P_API_KEY, P2P_API_SECRET\n"
            f"  - Accounts file: {config_path}\n"
            "  - P2P_ACCOUNTS_PATH env var to override the file location"
        )

    return accounts


def save_accounts(config_path: str, accounts: Iterable[AccountCredentials]) -> None:
    """Write an accounts file readable only by the owner.

    WARNING: Stores secrets in plaintext. Prefer SecretBox for the database.
    """
    data = [acc._asdict() for acc in accounts]
    cfg_file = Path(config_path)
    cfg_file.parent.mkdir(parents=True, exist_ok=True)

    with cfg_file.open("w") as f:
        json.dump(data, f, indent=2)

    # Restrict permissions to owner only (Unix-like systems)
    try:
        cfg_file.chmod(0o600)
    except NotImplementedError:
        pass


class SecretBox:
    """Symmetric encryption for API secrets stored at rest."""

    ENV_KEY = "P2P_SECRET_KEY"

    def __init__(self, key: bytes):
        self._fernet = Fernet(key)

    @classmethod
    def generate_key(cls) -> bytes:
        return Fernet.generate_key()

    @classmethod
    def from_env(cls) -> Optional["SecretBox"]:
        """Return a box keyed by P2P_SECRET_KEY, or None when it is unset."""
        key = os.getenv(cls.ENV_KEY)
        if not key:
            return None
        return cls(key.encode("ascii"))

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, token: str) -> str:
        try:
            return self._fernet.decrypt(token.encode("ascii")).decode("utf-8")
        except InvalidToken:
            raise ValueError("Cannot decrypt stored secret: wrong P2P_SECRET_KEY?")
