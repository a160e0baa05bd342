"""
Credential Manager

Holds the outbound API credentials for each provider and tracks their
health:

- ACTIVE        usable
- RATE_LIMITED  skipped until the rate-limit cooldown elapses
- INVALID       skipped until the invalid cooldown elapses or an operator
                refreshes it

Credentials are chosen in priority order (configuration order) or
round-robin. One instance is created at startup and injected where it
is needed; health state lives on the instance, not in module globals.
"""

import enum
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Collection, Dict, List, Optional

from ..config import Settings
from ..errors import CredentialExhaustionError

logger = logging.getLogger(__name__)


class CredentialStatus(str, enum.Enum):
    ACTIVE = "active"
    INVALID = "invalid"
    RATE_LIMITED = "rate_limited"


class FailureKind(str, enum.Enum):
    AUTHENTICATION = "authentication"
    RATE_LIMITED = "rate_limited"
    TRANSIENT = "transient"


@dataclass
class Credential:
    provider: str
    name: str
    secret: str
    priority: int = 0
    status: CredentialStatus = CredentialStatus.ACTIVE
    failure_count: int = 0
    last_failure_at: Optional[datetime] = None
    last_failure_kind: Optional[str] = None
    cooldown_until: Optional[datetime] = None
    last_used_at: Optional[datetime] = None

    @property
    def masked(self) -> str:
        if len(self.secret) <= 8:
            return "****"
        return f"{self.secret[:4]}...{self.secret[-4:]}"

    def to_status_dict(self) -> dict:
        """Health view without secret material."""
        return {
            "provider": self.provider,
            "name": self.name,
            "priority": self.priority,
            "status": self.status.value,
            "key": self.masked,
            "failure_count": self.failure_count,
            "last_failure_at": self.last_failure_at.isoformat() if self.last_failure_at else None,
            "last_failure_kind": self.last_failure_kind,
            "cooldown_until": self.cooldown_until.isoformat() if self.cooldown_until else None,
            "last_used_at": self.last_used_at.isoformat() if self.last_used_at else None,
        }


class CredentialManager:
    """
    Usage:
        manager = CredentialManager.from_settings(settings)
        credential = manager.get_credential("stripe")
        ...
        manager.report_failure(credential, FailureKind.RATE_LIMITED)
    """

    def __init__(
        self,
        strategy: str = "priority",
        rate_limit_cooldown: int = 60,
        invalid_cooldown: int = 900,
        failure_threshold: int = 3,
        clock: Callable[[], datetime] = datetime.utcnow
    ):
        self.strategy = strategy
        self.rate_limit_cooldown = timedelta(seconds=rate_limit_cooldown)
        self.invalid_cooldown = timedelta(seconds=invalid_cooldown)
        self.failure_threshold = failure_threshold
        self.clock = clock
        self._credentials: Dict[str, List[Credential]] = {}
        self._cursor: Dict[str, int] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: Settings) -> "CredentialManager":
        manager = cls(
            strategy=settings.credential_strategy,
            rate_limit_cooldown=settings.credential_rate_limit_cooldown,
            invalid_cooldown=settings.credential_invalid_cooldown,
            failure_threshold=settings.credential_failure_threshold,
        )
        manager.set_credentials("calendly", settings.calendly_api_token_list)
        manager.set_credentials("stripe", settings.stripe_api_key_list)
        return manager

    def set_credentials(self, provider: str, secrets: List[str]) -> None:
        """Replace a provider's credentials (external refresh). Order = priority."""
        with self._lock:
            self._credentials[provider] = [
                Credential(provider=provider, name=f"{provider}#{i + 1}", secret=secret, priority=i)
                for i, secret in enumerate(secrets)
            ]
            self._cursor[provider] = 0
        logger.info(f"Loaded {len(secrets)} credential(s) for {provider}")

    def count(self, provider: str) -> int:
        return len(self._credentials.get(provider, []))

    def _restore_if_cooled(self, credential: Credential, now: datetime) -> bool:
        if credential.status == CredentialStatus.ACTIVE:
            return False
        if credential.cooldown_until and credential.cooldown_until <= now:
            logger.info(f"Credential {credential.name} cooldown elapsed, restoring to active")
            credential.status = CredentialStatus.ACTIVE
            credential.failure_count = 0
            credential.cooldown_until = None
            return True
        return False

    def get_credential(self, provider: str, exclude: Collection[str] = ()) -> Credential:
        """
        Pick a healthy credential, skipping the names in exclude.

        Raises:
            CredentialExhaustionError: no credential configured or all unhealthy
        """
        with self._lock:
            credentials = self._credentials.get(provider, [])
            now = self.clock()
            for credential in credentials:
                self._restore_if_cooled(credential, now)

            healthy = [
                c for c in credentials
                if c.status == CredentialStatus.ACTIVE and c.name not in exclude
            ]
            if not healthy:
                if not exclude:
                    logger.error(f"No healthy credential available for {provider}")
                raise CredentialExhaustionError(provider)

            if self.strategy == "round_robin":
                index = self._cursor.get(provider, 0) % len(healthy)
                self._cursor[provider] = index + 1
                chosen = healthy[index]
            else:
                chosen = min(healthy, key=lambda c: c.priority)

            chosen.last_used_at = now
            return chosen

    def report_failure(self, credential: Credential, kind: FailureKind) -> CredentialStatus:
        """
        Record a failed call.

        authentication -> INVALID immediately
        rate_limited   -> RATE_LIMITED immediately
        transient      -> RATE_LIMITED once failure_threshold is reached
        """
        kind = FailureKind(kind)
        with self._lock:
            now = self.clock()
            credential.failure_count += 1
            credential.last_failure_at = now
            credential.last_failure_kind = kind.value

            if kind == FailureKind.AUTHENTICATION:
                credential.status = CredentialStatus.INVALID
                credential.cooldown_until = now + self.invalid_cooldown
            elif kind == FailureKind.RATE_LIMITED:
                credential.status = CredentialStatus.RATE_LIMITED
                credential.cooldown_until = now + self.rate_limit_cooldown
            elif credential.failure_count >= self.failure_threshold:
                credential.status = CredentialStatus.RATE_LIMITED
                credential.cooldown_until = now + self.rate_limit_cooldown

            status = credential.status

        if status != CredentialStatus.ACTIVE:
            logger.warning(
                f"Credential {credential.name} marked {status.value} after {kind.value} failure "
                f"(until {credential.cooldown_until})"
            )
        return status

    def report_success(self, credential: Credential) -> None:
        with self._lock:
            credential.failure_count = 0

    def refresh(self, provider: str, name: Optional[str] = None) -> int:
        """Operator action: force credentials back to active. Returns count restored."""
        restored = 0
        with self._lock:
            for credential in self._credentials.get(provider, []):
                if name and credential.name != name:
                    continue
                if credential.status != CredentialStatus.ACTIVE:
                    restored += 1
                credential.status = CredentialStatus.ACTIVE
                credential.failure_count = 0
                credential.cooldown_until = None
        logger.info(f"Refreshed {restored} credential(s) for {provider}")
        return restored

    def health_check(self) -> int:
        """Scheduled check: restore every credential whose cooldown elapsed."""
        restored = 0
        with self._lock:
            now = self.clock()
            for credentials in self._credentials.values():
                for credential in credentials:
                    if self._restore_if_cooled(credential, now):
                        restored += 1
        return restored

    def has_healthy(self, provider: str) -> bool:
        with self._lock:
            now = self.clock()
            return any(
                c.status == CredentialStatus.ACTIVE
                or (c.cooldown_until is not None and c.cooldown_until <= now)
                for c in self._credentials.get(provider, [])
            )

    def snapshot(self) -> Dict[str, List[dict]]:
        with self._lock:
            return {
                provider: [c.to_status_dict() for c in credentials]
                for provider, credentials in self._credentials.items()
            }
