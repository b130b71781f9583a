"""
Command guard for interactive input.

Keystrokes are forwarded to the shell as they arrive so remote echo stays
responsive, while a copy is buffered per line. When a line terminator
arrives, the buffered line's first token is checked against a deny-list.
A blocked line never receives its terminator: its characters are withheld
if they came in the same frame, otherwise the pending shell line is
cancelled with Ctrl-C.

This is a deterrent, not an isolation boundary. Characters forwarded in
earlier frames have already reached the shell, and line editing keys,
aliases or command substitution are not interpreted.
"""

from dataclasses import dataclass, field
from typing import Iterable, Optional

from sandterm.logger import get_logger

logger = get_logger(__name__)

INTERRUPT = "\x03"
LINE_TERMINATORS = ("\r", "\n")
BLOCKED_NOTICE = "\r\nThis command is blocked for security reasons\r\n"

BLOCKED_COMMANDS = frozenset(
    {
        # System state
        "shutdown",
        "reboot",
        "init",
        "poweroff",
        "fdisk",
        "mkfs",
        "mkswap",
        "mount",
        "umount",
        "iptables",
        "ip6tables",
        # Kernel
        "kexec",
        "kernel",
        "modprobe",
        "insmod",
        "rmmod",
        "sysctl",
        # Network inspection
        "tcpdump",
        "wireshark",
        "nmap",
        # Container and orchestrator control
        "docker",
        "kubectl",
        # Raw device access
        "dd",
        "rawread",
        "rawwrite",
        "chroot",
        # Hardware enumeration
        "lsmod",
        "lspci",
        "lsusb",
    }
)

# Full-screen viewers that quit on a single key; "q" + Enter is turned into Ctrl-C
VIEWER_COMMANDS = frozenset({"top", "htop"})
VIEWER_EXIT_KEY = "q"


def first_token(line: str) -> str:
    parts = line.split()
    return parts[0].lower() if parts else ""


@dataclass
class GuardResult:
    """What to send to the sandbox and which notices go back to the client."""

    forward: str = ""
    notices: list[str] = field(default_factory=list)

    @property
    def blocked(self) -> bool:
        return bool(self.notices)


class CommandGuard:
    """
    Per-connection line filter.

    Args:
        blocked_commands: Deny-list of command names (matched case-insensitively).
    """

    def __init__(self, blocked_commands: Optional[Iterable[str]] = None):
        self.blocked_commands = frozenset(
            name.lower() for name in (blocked_commands or BLOCKED_COMMANDS)
        )
        self._buffer = ""
        # Part of the current line already sent to the shell in earlier frames
        self._line_forwarded = False
        # After a "\r" terminator: whether a directly following "\n" is forwarded
        self._lf_after_cr: Optional[bool] = None
        self.last_command = ""

    @property
    def buffer(self) -> str:
        return self._buffer

    def is_blocked(self, command: str) -> bool:
        """True if the command's name is on the deny-list."""
        lowered = command.strip().lower()
        if not lowered:
            return False
        if first_token(lowered) in self.blocked_commands:
            return True
        return any(lowered.startswith(f"{name} ") for name in self.blocked_commands)

    def feed(self, data: str) -> GuardResult:
        """
        Process one inbound frame.

        Returns:
            The text to forward to the sandbox, in order, and any notices for
            the client.
        """
        result = GuardResult()
        out: list[str] = []
        pending = ""

        for char in data:
            if char == "\n" and self._lf_after_cr is not None:
                # Second half of a "\r\n" pair shares the line's fate
                if self._lf_after_cr:
                    out.append(char)
                self._lf_after_cr = None
                continue
            self._lf_after_cr = None

            if char not in LINE_TERMINATORS:
                self._buffer += char
                pending += char
                continue

            line = self._buffer.strip()
            forwarded = False
            if line and self.is_blocked(line):
                logger.warning(f"Blocked command: {first_token(line)}")
                if self._line_forwarded:
                    out.append(INTERRUPT)
                result.notices.append(BLOCKED_NOTICE)
            elif line == VIEWER_EXIT_KEY and self.last_command in VIEWER_COMMANDS:
                out.append(INTERRUPT)
                self.last_command = ""
            else:
                out.append(pending + char)
                forwarded = True
                if line:
                    self.last_command = first_token(line)

            self._buffer = ""
            self._line_forwarded = False
            pending = ""
            if char == "\r":
                self._lf_after_cr = forwarded

        if pending:
            out.append(pending)
            self._line_forwarded = True

        result.forward = "".join(out)
        return result

    def reset(self) -> None:
        self._buffer = ""
        self._line_forwarded = False
        self._lf_after_cr = None
        self.last_command = ""
