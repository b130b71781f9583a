"""
Security profiles applied to every sandbox container.

``minimal`` is the default: all capabilities dropped except the few an
interactive shell and ``useradd`` need, no privilege escalation and default
seccomp. Its shells run as the unprivileged ``sandbox`` user. ``privileged``
reproduces the broad profile some deployments ran with (SYS_ADMIN,
unconfined seccomp, a sudo-enabled admin user) and must be selected
explicitly.
"""

from dataclasses import dataclass, field, replace
from typing import Optional

MB = 1024 * 1024


@dataclass(frozen=True)
class SecurityProfile:
    """Resource ceilings, capability policy and provisioning for a sandbox."""

    name: str
    memory_mb: int = 512
    cpu_shares: int = 256
    pids_limit: int = 100
    cap_drop: tuple[str, ...] = ("ALL",)
    cap_add: tuple[str, ...] = ()
    security_opt: tuple[str, ...] = ("no-new-privileges",)
    network_mode: str = "bridge"
    nofile_soft: int = 1024
    nofile_hard: int = 2048
    auto_remove: bool = True
    working_dir: str = "/root"
    # Account the interactive shell runs as; None keeps the image default
    user: Optional[str] = None
    setup_script: Optional[str] = None
    labels: dict[str, str] = field(default_factory=dict)

    @property
    def memory_bytes(self) -> int:
        return self.memory_mb * MB

    @property
    def memory_swap_bytes(self) -> int:
        # Equal to the memory limit, so the sandbox gets no swap.
        return self.memory_mb * MB

    def with_limits(
        self,
        memory_mb: Optional[int] = None,
        cpu_shares: Optional[int] = None,
        pids_limit: Optional[int] = None,
        cap_add: Optional[list[str]] = None,
    ) -> "SecurityProfile":
        """Return a copy with configured overrides applied."""
        changes = {}
        if memory_mb is not None:
            changes["memory_mb"] = memory_mb
        if cpu_shares is not None:
            changes["cpu_shares"] = cpu_shares
        if pids_limit is not None:
            changes["pids_limit"] = pids_limit
        if cap_add is not None:
            changes["cap_add"] = tuple(cap.upper() for cap in cap_add)
        return replace(self, **changes)


MINIMAL = SecurityProfile(
    name="minimal",
    cap_add=("CHOWN", "DAC_OVERRIDE", "FOWNER", "SETGID", "SETUID", "AUDIT_WRITE"),
    user="sandbox",
    setup_script="id -u sandbox >/dev/null 2>&1 || useradd -m -s /bin/bash sandbox",
    labels={"sandterm.profile": "minimal"},
)

PRIVILEGED = SecurityProfile(
    name="privileged",
    cap_add=(
        "AUDIT_WRITE",
        "CHOWN",
        "DAC_OVERRIDE",
        "SETGID",
        "SETUID",
        "NET_BIND_SERVICE",
        "SYS_ADMIN",
    ),
    security_opt=("no-new-privileges:false", "seccomp=unconfined"),
    setup_script=(
        "yum update -y && "
        "yum install -y sudo && "
        "useradd -m -s /bin/bash admin && "
        'echo "admin:admin" | chpasswd && '
        "usermod -aG wheel admin && "
        'echo "admin ALL=(ALL) NOPASSWD:ALL" >> /etc/sudoers'
    ),
    labels={"sandterm.profile": "privileged"},
)

PROFILES: dict[str, SecurityProfile] = {
    MINIMAL.name: MINIMAL,
    PRIVILEGED.name: PRIVILEGED,
}


def get_profile(name: str) -> SecurityProfile:
    """Look up a profile by name."""
    try:
        return PROFILES[name]
    except KeyError:
        raise ValueError(f"Unknown security profile: {name}") from None
