"""
The Supervisor package.
Manages the lifecycle of the processes that serve registered entries.

This package contains the central LifecycleManager and the pieces it composes:
the port probe, the terminator, the process registry with its exit channel,
and the process launcher.
"""
from .lifecycle import LifecycleManager
from .port_probe import PortProbe
from .process_utils import ProcessLauncher
from .registry import ManagedProcess, ProcessRegistry
from .terminator import TerminationReport, Terminator

__all__ = [
    'LifecycleManager', 'PortProbe', 'ProcessLauncher',
    'ManagedProcess', 'ProcessRegistry', 'TerminationReport', 'Terminator',
]
