"""Bundle of the JSON stores a portal request or automation run works against."""
from __future__ import annotations

from dataclasses import dataclass

from .audit import AuditLog
from .config import AppConfig
from .storage import PendingChangeStore, PolicyStore, SpecialGroupStore
from .suspensions import SuspensionStore


@dataclass
class Stores:
    policies: PolicyStore
    special_groups: SpecialGroupStore
    pending_changes: PendingChangeStore
    suspensions: SuspensionStore
    audit: AuditLog

    @classmethod
    def from_config(cls, config: AppConfig) -> "Stores":
        storage = config.storage
        return cls(
            policies=PolicyStore(storage.policies_file),
            special_groups=SpecialGroupStore(storage.special_groups_file),
            pending_changes=PendingChangeStore(storage.pending_changes_file),
            suspensions=SuspensionStore(storage.suspensions_file),
            audit=AuditLog(storage.audit_file),
        )


__all__ = ["Stores"]
