"""
Incidents reported by grid components to the supervisor.

Components never decide to halt a grid themselves; they describe what happened
and the supervisor applies its policy.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict

from hlgrid.core.utils import now_ms


class IncidentKind(Enum):
    PLACEMENT_FAILED = "placement_failed"
    CANCEL_FAILED = "cancel_failed"
    FEED_DATA_ERROR = "feed_data_error"
    DATA_INCONSISTENCY = "data_inconsistency"
    RISK_BREACH = "risk_breach"
    SESSION_EXPIRED = "session_expired"


@dataclass(frozen=True)
class Incident:
    kind: IncidentKind
    grid_id: str
    message: str
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp_ms: int = field(default_factory=now_ms)
