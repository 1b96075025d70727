"""
Agentless session identity.

A session is keyed by the hypervisor (vCenter or standalone host) UUID, the
VM managed object reference and the asset key. The key doubles as the name
of the session's state directory, so every component is stripped of the
separator and of path characters.
"""

import re
from dataclasses import dataclass

SEPARATOR = "_"
_UNSAFE_CHARS = re.compile(r"[_/\\\s\x00]")


def _sanitize(component: str) -> str:
    return _UNSAFE_CHARS.sub("", str(component))


@dataclass(frozen=True)
class SessionIdentity:
    """Immutable, filesystem-safe key of an agentless session."""
    host_uuid: str
    vm_ref: str
    asset_key: str

    def __post_init__(self):
        # frozen dataclass: sanitize through object.__setattr__
        for name in ("host_uuid", "vm_ref", "asset_key"):
            value = _sanitize(getattr(self, name))
            if not value:
                raise ValueError(f"Session identity component '{name}' is empty")
            object.__setattr__(self, name, value)

    @classmethod
    def create(cls, host_uuid: str, vm_ref: str, asset_key: str) -> "SessionIdentity":
        return cls(host_uuid, vm_ref, asset_key)

    @classmethod
    def from_name(cls, name: str) -> "SessionIdentity":
        """
        Parse the string form produced by to_name().

        Raises:
            ValueError: If the string does not have exactly three components
        """
        parts = name.split(SEPARATOR)
        if len(parts) != 3:
            raise ValueError(f"Invalid agentless session id: '{name}'")
        return cls(*parts)

    @classmethod
    def generate(cls, client, vm_name: str, asset_key: str) -> "SessionIdentity":
        """
        Build the identity of a VM from a connected hypervisor client.

        Args:
            client: HypervisorClient connected to vCenter or a standalone host
            vm_name: VM name or managed object reference
            asset_key: Asset key the backups belong to
        """
        vm = client.retrieve_virtual_machine(vm_name)
        vm_ref = client.get_vm_ref(vm)
        return cls(client.get_host_uuid(), vm_ref, asset_key)

    def to_name(self) -> str:
        return SEPARATOR.join((self.host_uuid, self.vm_ref, self.asset_key))

    def __str__(self) -> str:
        return self.to_name()
