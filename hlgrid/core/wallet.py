"""
Wallet session capability.

The engine never manages keys. A WalletSessionProvider hands out a session
(account identity, signing capability, expiry) which is passed into each grid
at start and held read-only for that grid's lifetime.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

from hlgrid.core.errors import SessionExpiredError


@dataclass(frozen=True)
class WalletSession:
    account_id: str
    # Signing capability (an eth_account LocalAccount for Hyperliquid). Not serialized.
    wallet: Any = field(repr=False, compare=False)
    expires_at: Optional[float] = None

    def is_expired(self, now: Optional[float] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now if now is not None else time.time()) >= self.expires_at

    def ensure_active(self) -> None:
        if self.is_expired():
            raise SessionExpiredError(self.account_id, self.expires_at)

    def sign(self, message: Any) -> Any:
        self.ensure_active()
        return self.wallet.sign_message(message)


class WalletSessionProvider(Protocol):
    def get_active_session(self, user_id: str) -> WalletSession:
        ...


class EnvWalletSessionProvider:
    """
    Provider backed by the process settings (HL_PRIVATE_KEY / HL_AGENT_KEY).

    Every user id maps to the same operator account; multi-user custody lives
    outside the engine.
    """

    def __init__(self, settings, session_ttl_sec: float = 0.0) -> None:
        self._settings = settings
        self._ttl = session_ttl_sec

    def get_active_session(self, user_id: str) -> WalletSession:
        signer = self._settings.resolve_signer()
        expires_at = time.time() + self._ttl if self._ttl > 0 else None
        return WalletSession(
            account_id=self._settings.resolve_account(),
            wallet=signer,
            expires_at=expires_at,
        )
