"""
Credential store

Private key material uploaded through the browser is kept in process memory
only, keyed by connection slot. Nothing here ever touches the disk.
"""

import logging
import threading
from typing import Dict, Optional

logger = logging.getLogger(__name__)


class CredentialStore:
    """In-memory PEM key holder, one key per slot"""

    def __init__(self):
        self._keys: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def store(self, slot_id: str, key_bytes: bytes) -> None:
        """Store (or overwrite) the key for a slot. The format is checked at connect time."""
        with self._lock:
            replaced = slot_id in self._keys
            self._keys[slot_id] = bytes(key_bytes)
        logger.info(
            f"PEM key {'replaced' if replaced else 'stored'} for connection {slot_id} "
            f"({len(key_bytes)} bytes)"
        )

    def has(self, slot_id: str) -> bool:
        with self._lock:
            return slot_id in self._keys

    def private_key(self, slot_id: str) -> Optional[bytes]:
        # Only the connection registry reads keys back; the API never does.
        with self._lock:
            return self._keys.get(slot_id)
