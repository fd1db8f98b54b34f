"""cron-runner core components."""

from cronrunner.core.registry import Registry
from cronrunner.core.remote import RemoteChannel, RemoteTimeout, TransientRemoteError
from cronrunner.core.sentinel import ErrorSentinel
from cronrunner.core.state import StateStore
from cronrunner.core.stopper import StopFailure
from cronrunner.core.supervisor import LifecycleSupervisor, NotActiveError

__all__ = [
    "ErrorSentinel",
    "LifecycleSupervisor",
    "NotActiveError",
    "Registry",
    "RemoteChannel",
    "RemoteTimeout",
    "StateStore",
    "StopFailure",
    "TransientRemoteError",
]
