# Agent lifecycle states, sync types and the allowed status transitions

import enum

from .errors import InvalidTransition


class AgentStatus(str, enum.Enum):
    PENDING = 'pending'
    REGISTERED = 'registered'
    CONNECTED = 'connected'
    SYNCING = 'syncing'
    ERROR = 'error'
    OFFLINE = 'offline'


class SyncType(str, enum.Enum):
    SALES = 'sales'
    MENU = 'menu'
    INVENTORY = 'inventory'
    TABLES = 'tables'


class SyncLogStatus(str, enum.Enum):
    STARTED = 'started'
    PROCESSING = 'processing'
    COMPLETED = 'completed'
    PARTIAL = 'partial'
    FAILED = 'failed'


# Outcomes replayed on re-delivery. A failed batch may be processed again.
CACHED_LOG_STATUSES = {SyncLogStatus.COMPLETED, SyncLogStatus.PARTIAL}

# Statuses an agent may report through /heartbeat. OFFLINE is the shutdown notice.
HEARTBEAT_STATUSES = {
    AgentStatus.CONNECTED,
    AgentStatus.SYNCING,
    AgentStatus.ERROR,
    AgentStatus.OFFLINE,
}

_TRANSITIONS = {
    AgentStatus.PENDING: {AgentStatus.REGISTERED},
    AgentStatus.REGISTERED: {AgentStatus.REGISTERED, AgentStatus.CONNECTED,
                             AgentStatus.SYNCING, AgentStatus.ERROR, AgentStatus.OFFLINE},
    AgentStatus.CONNECTED: {AgentStatus.REGISTERED, AgentStatus.CONNECTED,
                            AgentStatus.SYNCING, AgentStatus.ERROR, AgentStatus.OFFLINE},
    AgentStatus.SYNCING: {AgentStatus.REGISTERED, AgentStatus.CONNECTED,
                          AgentStatus.SYNCING, AgentStatus.ERROR, AgentStatus.OFFLINE},
    AgentStatus.ERROR: {AgentStatus.REGISTERED, AgentStatus.CONNECTED,
                        AgentStatus.SYNCING, AgentStatus.ERROR, AgentStatus.OFFLINE},
    AgentStatus.OFFLINE: {AgentStatus.REGISTERED, AgentStatus.CONNECTED,
                          AgentStatus.SYNCING, AgentStatus.ERROR, AgentStatus.OFFLINE},
}

# Agent-side states never include OFFLINE: only the cloud assigns it.
_AGENT_SIDE_TRANSITIONS = {
    AgentStatus.PENDING: {AgentStatus.REGISTERED},
    AgentStatus.REGISTERED: {AgentStatus.CONNECTED, AgentStatus.SYNCING, AgentStatus.ERROR},
    AgentStatus.CONNECTED: {AgentStatus.SYNCING, AgentStatus.ERROR, AgentStatus.REGISTERED},
    AgentStatus.SYNCING: {AgentStatus.CONNECTED, AgentStatus.ERROR},
    AgentStatus.ERROR: {AgentStatus.CONNECTED, AgentStatus.SYNCING, AgentStatus.REGISTERED,
                        AgentStatus.ERROR},
}


def can_transition(current, target, agent_side: bool = False) -> bool:
    current, target = AgentStatus(current), AgentStatus(target)
    table = _AGENT_SIDE_TRANSITIONS if agent_side else _TRANSITIONS
    return target in table.get(current, set())


def check_transition(current, target, agent_side: bool = False) -> AgentStatus:
    """Return the target status or raise InvalidTransition"""
    if not can_transition(current, target, agent_side):
        raise InvalidTransition(AgentStatus(current).value, AgentStatus(target).value)
    return AgentStatus(target)
