from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from typing import FrozenSet, Optional

from serialdb.apps.serials.models import TransType

REVERSAL_MODES = ("compensate", "delete")

DEFAULT_TRACKED_TRANS_TYPES: FrozenSet[int] = frozenset(
    {
        TransType.SALES_INVOICE,
        TransType.CUSTOMER_CREDIT,
        TransType.CUSTOMER_DELIVERY,
        TransType.LOCATION_TRANSFER,
        TransType.INVENTORY_ADJUSTMENT,
        TransType.SUPPLIER_RECEIPT,
        TransType.MANUFACTURING_RECEIPT,
        TransType.SERIAL_ENTRY,
        TransType.ASSET_LOAN,
        TransType.ASSET_LOAN_RETURN,
        TransType.ASSET_MAINTENANCE,
        TransType.ASSET_DISPOSAL,
    }
)


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_trans_types(name: str) -> Optional[FrozenSet[int]]:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return None
    return frozenset(int(chunk) for chunk in raw.split(",") if chunk.strip())


@dataclass(frozen=True)
class SerialSettings:
    enable_tracking: bool = True
    auto_generate: bool = False
    enable_attributes: bool = True
    reversal_mode: str = "compensate"
    max_generation_attempts: int = 10
    tracked_trans_types: FrozenSet[int] = field(default_factory=lambda: DEFAULT_TRACKED_TRANS_TYPES)

    def __post_init__(self) -> None:
        if self.reversal_mode not in REVERSAL_MODES:
            raise ValueError(f"reversal_mode must be one of {REVERSAL_MODES}, got {self.reversal_mode!r}")
        if self.max_generation_attempts < 1:
            raise ValueError("max_generation_attempts must be at least 1")

    @classmethod
    def from_env(cls) -> "SerialSettings":
        return cls(
            enable_tracking=_env_flag("SERIAL_TRACKING_ENABLED", True),
            auto_generate=_env_flag("SERIAL_AUTO_GENERATE", False),
            enable_attributes=_env_flag("SERIAL_ENABLE_ATTRIBUTES", True),
            reversal_mode=os.getenv("SERIAL_REVERSAL_MODE", "compensate").strip().lower(),
            max_generation_attempts=int(os.getenv("SERIAL_GENERATION_MAX_ATTEMPTS", "10")),
            tracked_trans_types=_env_trans_types("SERIAL_TRACKED_TRANS_TYPES") or DEFAULT_TRACKED_TRANS_TYPES,
        )

    def tracks(self, trans_type: int) -> bool:
        return self.enable_tracking and int(trans_type) in self.tracked_trans_types

    def with_overrides(self, **changes) -> "SerialSettings":
        return replace(self, **changes)
