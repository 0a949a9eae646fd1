# src/pharmacy_webapp/device.py
"""
Identifies the machine the dashboard runs on, so the backend can ask for a
one-time code when a user signs in from a device it has not seen before.

The identifier has two parts: a hash over host characteristics (stable while
the machine and runtime stay the same) and a random device id created once
and kept in the persistent store.
"""

import hashlib
import json
import locale
import logging
import os
import platform
import time
import uuid
from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from .storage import KeyValueStore, StorageUnavailableError

logger = logging.getLogger(__name__)

DEVICE_ID_KEY = "device_id"


class DeviceFingerprint(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    user_agent: str
    screen_resolution: Optional[str] = None
    timezone: Optional[str] = None
    language: Optional[str] = None
    platform: str
    cookie_enabled: bool = True
    do_not_track: Optional[str] = None
    hardware_concurrency: Optional[int] = None
    device_memory: Optional[int] = None

    def fingerprint_hash(self) -> str:
        canonical = json.dumps(self.model_dump(by_alias=True), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:16]


class DeviceIdentifier(BaseModel):
    fingerprint: DeviceFingerprint
    fingerprint_hash: str
    device_id: str

    def payload(self) -> Dict[str, Any]:
        """Body fields expected by /auth/check-device and /auth/verify-otp."""
        return {
            "deviceFingerprintHash": self.fingerprint_hash,
            "deviceId": self.device_id,
            "deviceFingerprint": self.fingerprint.model_dump(by_alias=True),
        }


def generate_device_fingerprint() -> DeviceFingerprint:
    uname = platform.uname()
    return DeviceFingerprint(
        user_agent=f"pharmacy-webapp ({uname.system} {uname.release}; {uname.machine}) Python/{platform.python_version()}",
        timezone=datetime.now().astimezone().tzname(),
        language=locale.getlocale()[0],
        platform=uname.system,
        hardware_concurrency=os.cpu_count(),
    )


def get_device_id(store: KeyValueStore) -> str:
    """Return the stored device id, creating and storing one on first use."""
    try:
        device_id = store.get_item(DEVICE_ID_KEY)
    except StorageUnavailableError as e:
        logger.warning("Could not read device id: %s", e)
        device_id = None
    if device_id:
        return device_id

    device_id = f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:13]}"
    try:
        store.set_item(DEVICE_ID_KEY, device_id)
    except StorageUnavailableError as e:
        logger.warning("Could not store device id; this device will look new next time: %s", e)
    return device_id


def get_device_identifier(store: KeyValueStore) -> DeviceIdentifier:
    fingerprint = generate_device_fingerprint()
    return DeviceIdentifier(
        fingerprint=fingerprint,
        fingerprint_hash=fingerprint.fingerprint_hash(),
        device_id=get_device_id(store),
    )
