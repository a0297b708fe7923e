"""pgbouncer configuration fragments and process control."""

from .controller import ProxyAction, ProxyController
from .fragments import ConnectionFragment, FragmentStore

__all__ = [
    "ConnectionFragment",
    "FragmentStore",
    "ProxyAction",
    "ProxyController",
]
