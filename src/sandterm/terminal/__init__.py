"""
Terminal I/O for sandterm.

- guard: per-connection command deny-list filter
- bridge: bidirectional relay between a WebSocket and a sandbox shell
"""

from sandterm.terminal.bridge import BridgeState, TerminalBridge, iter_chunks
from sandterm.terminal.guard import BLOCKED_COMMANDS, CommandGuard, GuardResult

__all__ = [
    "BLOCKED_COMMANDS",
    "BridgeState",
    "CommandGuard",
    "GuardResult",
    "TerminalBridge",
    "iter_chunks",
]
