"""
Trust Store - Pairing trust records and capability authorization.

SECURITY: This is the only gate between a radio peer and a trust-sensitive
capability. The store fails closed:
- authorize() answers False on any doubt and never raises
- every mutation is on disk (fsync + atomic rename) before the call returns
- a revocation that cannot be persisted still takes effect in memory
- tokens are encrypted at rest with Fernet; a record whose token cannot be
  decrypted on load is dropped (the device must pair again)
"""

import hmac
import logging
import os
import secrets
import threading
import time
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Union

from cryptography.fernet import Fernet, InvalidToken

from .constants import DEFAULT_CAPABILITIES, Limits, Paths, Permissions
from .exceptions import (
    AlreadyPairedError,
    TokenMismatchError,
    TrustError,
    TrustPersistenceError,
)
from .models import Capability, TrustRecord
from .utils.error_handling import ErrorCategory, handle_error, log_trust_error
from .utils.persistence import atomic_write_json, read_json_locked

logger = logging.getLogger(__name__)

RevocationCallback = Callable[[str, str], None]

STATE_VERSION = 1


@dataclass
class _PendingExchange:
    token: str
    created_at: float
    mismatches: int = 0


def _capability_name(capability: Union[Capability, str]) -> str:
    if isinstance(capability, Capability):
        return capability.value
    return str(capability)


class TrustStore:
    """
    Durable trust records keyed by device id.

    One RLock guards records, pending exchanges and persistence so that
    pair() and revoke() are atomic with respect to authorize().
    """

    def __init__(
        self,
        state_file: Optional[Union[str, Path]] = None,
        key_file: Optional[Union[str, Path]] = None,
        default_capabilities: Iterable[str] = DEFAULT_CAPABILITIES,
        max_pairing_attempts: int = Limits.MAX_PAIRING_ATTEMPTS,
        clock: Callable[[], float] = time.time,
    ):
        """
        Args:
            state_file: Where trust records are persisted (None keeps them in memory)
            key_file: Fernet key location (defaults to trust.key beside state_file)
            default_capabilities: Capabilities granted when pair() is given none
            max_pairing_attempts: Token mismatches before the exchange is voided
            clock: Time source
        """
        self.state_file = Path(state_file) if state_file else None
        if key_file:
            self.key_file = Path(key_file)
        elif self.state_file:
            self.key_file = self.state_file.with_name(Paths.TRUST_KEY_FILE)
        else:
            self.key_file = None
        self.default_capabilities = frozenset(_capability_name(c) for c in default_capabilities)
        self.max_pairing_attempts = max_pairing_attempts
        self._clock = clock

        self._records: Dict[str, TrustRecord] = {}
        self._pending: Dict[str, _PendingExchange] = {}
        self._lock = threading.RLock()

        self._revocation_callbacks: Dict[int, RevocationCallback] = {}
        self._next_callback_id = 0
        self._callback_lock = threading.Lock()

        self._fernet = Fernet(self._load_or_create_key())
        self._load()

    # -------------------------------------------------------------------------
    # Key and state files
    # -------------------------------------------------------------------------

    def _load_or_create_key(self) -> bytes:
        if self.key_file is None:
            return Fernet.generate_key()

        if self.key_file.exists():
            key = self.key_file.read_bytes().strip()
            try:
                Fernet(key)
            except ValueError as e:
                raise TrustError(f"Trust key file {self.key_file} is invalid: {e}",
                                 reason="bad_key") from e
            return key

        key = Fernet.generate_key()
        self.key_file.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.key_file, os.O_WRONLY | os.O_CREAT | os.O_EXCL, Permissions.SECURE_FILE)
        with os.fdopen(fd, 'wb') as f:
            f.write(key)
            f.flush()
            os.fsync(f.fileno())
        logger.info(f"Created trust key {self.key_file}")
        return key

    def _load(self) -> None:
        if self.state_file is None:
            return
        data = read_json_locked(self.state_file)
        if data is None:
            logger.info(f"No trust state at {self.state_file}, starting empty")
            return

        for device_id, entry in data.get('records', {}).items():
            try:
                token = self._fernet.decrypt(entry['token_enc'].encode()).decode()
                fields = dict(entry)
                fields.pop('token_enc')
                fields['token'] = token
                self._records[device_id] = TrustRecord.from_dict(fields)
            except (InvalidToken, KeyError, TypeError, ValueError) as e:
                # Unreadable record: treat as never paired
                log_trust_error(e, "load_trust_record", device_id=device_id)
                logger.critical(f"Dropped unreadable trust record for {device_id}")
        logger.info(f"Loaded {len(self._records)} trust records from {self.state_file}")

    def _persist(self) -> None:
        """Write all records. Caller holds the lock. Raises OSError."""
        if self.state_file is None:
            return
        records = {}
        for device_id, record in self._records.items():
            entry = record.to_dict()
            entry['token_enc'] = self._fernet.encrypt(entry.pop('token').encode()).decode()
            records[device_id] = entry
        atomic_write_json(self.state_file, {'version': STATE_VERSION, 'records': records},
                          mode=Permissions.SECURE_FILE)

    # -------------------------------------------------------------------------
    # Pairing
    # -------------------------------------------------------------------------

    def register_exchange(self, device_id: str, token: str) -> None:
        """Record the one-time value offered to a device for pairing."""
        if not token:
            raise ValueError("Exchange token cannot be empty")
        with self._lock:
            self._pending[device_id] = _PendingExchange(token=token, created_at=self._clock())
        logger.debug(f"Registered pairing exchange for {device_id}")

    def issue_pairing_token(self, device_id: str) -> str:
        """Generate and register a fresh exchange value."""
        token = secrets.token_urlsafe(24)
        self.register_exchange(device_id, token)
        return token

    def cancel_exchange(self, device_id: str) -> bool:
        with self._lock:
            return self._pending.pop(device_id, None) is not None

    def has_pending_exchange(self, device_id: str) -> bool:
        with self._lock:
            return device_id in self._pending

    def pair(self, device_id: str, token: str,
             capabilities: Optional[Iterable[Union[Capability, str]]] = None) -> TrustRecord:
        """
        Establish trust for a device.

        Raises:
            AlreadyPairedError: device already has a non-revoked record
            TokenMismatchError: no pending exchange or wrong token
            TrustPersistenceError: record could not be persisted (nothing changed)
        """
        with self._lock:
            existing = self._records.get(device_id)
            if existing is not None and not existing.revoked:
                raise AlreadyPairedError(f"{device_id} is already paired",
                                         reason="already_paired", device_id=device_id)

            pending = self._pending.get(device_id)
            if pending is None:
                raise TokenMismatchError(f"No pairing exchange pending for {device_id}",
                                         reason="no_exchange", device_id=device_id)
            if not hmac.compare_digest(pending.token.encode(), str(token).encode()):
                pending.mismatches += 1
                if pending.mismatches >= self.max_pairing_attempts:
                    del self._pending[device_id]
                    logger.warning(
                        f"Pairing exchange for {device_id} voided after "
                        f"{pending.mismatches} mismatches"
                    )
                raise TokenMismatchError(f"Pairing token mismatch for {device_id}",
                                         reason="token_mismatch", device_id=device_id)

            if capabilities is None:
                granted = self.default_capabilities
            else:
                granted = frozenset(_capability_name(c) for c in capabilities)

            record = TrustRecord(
                device_id=device_id,
                token=token,
                capabilities=granted,
                created_at=self._clock(),
            )
            self._records[device_id] = record
            try:
                self._persist()
            except OSError as e:
                # Roll back so memory matches disk
                if existing is not None:
                    self._records[device_id] = existing
                else:
                    del self._records[device_id]
                raise TrustPersistenceError(f"Failed to persist pairing of {device_id}: {e}",
                                            reason="persist_failed", device_id=device_id) from e

            del self._pending[device_id]

        logger.info(f"Paired {device_id} with capabilities {sorted(granted)}")
        return record

    # -------------------------------------------------------------------------
    # Authorization
    # -------------------------------------------------------------------------

    def authorize(self, device_id: str, capability: Union[Capability, str]) -> bool:
        """True only for a live record that grants the capability."""
        try:
            name = _capability_name(capability)
            with self._lock:
                record = self._records.get(device_id)
                return record is not None and record.allows(name)
        except Exception as e:
            handle_error(e, "authorize", ErrorCategory.TRUST, device_id=device_id)
            return False

    def get_record(self, device_id: str) -> Optional[TrustRecord]:
        with self._lock:
            return self._records.get(device_id)

    def is_paired(self, device_id: str) -> bool:
        with self._lock:
            record = self._records.get(device_id)
            return record is not None and not record.revoked

    def paired_devices(self) -> List[str]:
        with self._lock:
            return sorted(d for d, r in self._records.items() if not r.revoked)

    # -------------------------------------------------------------------------
    # Revocation
    # -------------------------------------------------------------------------

    def revoke(self, device_id: str, reason: str = "") -> None:
        """
        Revoke a device's trust. Unknown or already revoked devices are a no-op.

        Raises:
            TrustPersistenceError: revocation is in effect but not on disk
        """
        persist_error: Optional[OSError] = None
        with self._lock:
            self._pending.pop(device_id, None)
            record = self._records.get(device_id)
            if record is None or record.revoked:
                return
            self._records[device_id] = replace(
                record, revoked=True, revoked_at=self._clock(), revoke_reason=reason,
            )
            try:
                self._persist()
            except OSError as e:
                persist_error = e

        logger.warning(f"Revoked trust for {device_id} ({reason or 'no reason given'})")
        self._notify_revocation(device_id, reason)

        if persist_error is not None:
            raise TrustPersistenceError(
                f"Revocation of {device_id} not persisted: {persist_error}",
                reason="persist_failed", device_id=device_id,
            ) from persist_error

    def register_revocation_callback(self, callback: RevocationCallback) -> int:
        """
        Register a callback for revocations.

        Args:
            callback: Called as callback(device_id, reason)

        Returns:
            Callback ID for unregistering
        """
        with self._callback_lock:
            callback_id = self._next_callback_id
            self._next_callback_id += 1
            self._revocation_callbacks[callback_id] = callback
            return callback_id

    def unregister_revocation_callback(self, callback_id: int) -> bool:
        with self._callback_lock:
            return self._revocation_callbacks.pop(callback_id, None) is not None

    def _notify_revocation(self, device_id: str, reason: str) -> None:
        with self._callback_lock:
            callbacks = list(self._revocation_callbacks.values())
        for callback in callbacks:
            try:
                callback(device_id, reason)
            except Exception as e:
                handle_error(e, "revocation_callback", ErrorCategory.INTERNAL, device_id=device_id)

    def get_stats(self):
        with self._lock:
            return {
                'paired': sum(1 for r in self._records.values() if not r.revoked),
                'revoked': sum(1 for r in self._records.values() if r.revoked),
                'pending_exchanges': len(self._pending),
            }
