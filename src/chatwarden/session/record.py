"""
Session Record: everything the core tracks for one connected account.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from chatwarden.jobs import RecurringJob
from chatwarden.protocol.base import ProtocolSocket


class LifecycleState(str, Enum):
    CREATING = "creating"
    AUTHENTICATING = "authenticating"
    CONNECTED = "connected"
    CLOSING = "closing"
    RESTART_PENDING = "restart_pending"
    TERMINATED = "terminated"


@dataclass
class GroupFeatureState:
    job: Optional[RecurringJob] = None
    welcome_enabled: bool = False

    @property
    def job_active(self) -> bool:
        return self.job is not None and self.job.active

    def cancel_job(self) -> bool:
        job, self.job = self.job, None
        return job.cancel() if job is not None else False


@dataclass
class SessionRecord:
    session_id: str
    storage_key: str
    state: LifecycleState = LifecycleState.CREATING
    connection: Optional[ProtocolSocket] = None
    reconnect_attempt: int = 0
    cached_asset: Optional[bytes] = None
    groups: Dict[str, GroupFeatureState] = field(default_factory=dict)
    reconnect_handle: Optional[asyncio.TimerHandle] = None
    created_at: datetime = field(default_factory=datetime.now)
    connected_at: Optional[datetime] = None

    @property
    def is_live(self) -> bool:
        return self.connection is not None

    def group(self, group_id: str) -> GroupFeatureState:
        """Feature state for a group, created on first reference."""
        state = self.groups.get(group_id)
        if state is None:
            state = self.groups[group_id] = GroupFeatureState()
        return state

    def job_active(self, group_id: str) -> bool:
        state = self.groups.get(group_id)
        return state is not None and state.job_active

    def cancel_jobs(self) -> int:
        """Cancel every recurring job of this session; returns how many were running."""
        return sum(1 for state in self.groups.values() if state.cancel_job())

    def cancel_reconnect(self) -> None:
        if self.reconnect_handle is not None:
            self.reconnect_handle.cancel()
            self.reconnect_handle = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "storage_key": self.storage_key,
            "state": self.state.value,
            "live": self.is_live,
            "reconnect_attempt": self.reconnect_attempt,
            "created_at": self.created_at.isoformat(),
            "connected_at": self.connected_at.isoformat() if self.connected_at else None,
            "active_jobs": sorted(g for g, s in self.groups.items() if s.job_active),
            "welcome_groups": sorted(g for g, s in self.groups.items() if s.welcome_enabled),
        }
