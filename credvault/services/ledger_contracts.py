# =====================================================
# FILE: credvault/services/ledger_contracts.py
# Python models of the AccessControl and DocumentRegistry contracts
# =====================================================
"""
Executable models of the two deployed contracts, used by the in-memory
ledger. Revert strings and event shapes match the Solidity contracts so the
rest of the service behaves the same against a local chain or a test ledger.

Every mutating call receives `sender` (msg.sender) and an `emit` callback
that appends to the current transaction's event list. A call either returns
normally or raises ContractRevert, in which case the caller discards the
emitted events.
"""

import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Tuple

from credvault.models.enums import Role

ZERO_ADDRESS = "0x" + "0" * 40
ZERO_HASH = "0x" + "0" * 64

EmitFn = Callable[[str, dict], None]


class ContractRevert(Exception):
    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


def require(condition: bool, reason: str) -> None:
    if not condition:
        raise ContractRevert(reason)


class AccessControlContract:
    """Role registry. The deployer is the owner and first ADMIN."""

    def __init__(self, deployer: str, emit: EmitFn):
        self.owner = deployer.lower()
        self.user_roles: Dict[str, Role] = {}
        self.registered: Dict[str, bool] = {}
        self._register(self.owner, Role.ADMIN, self.owner, emit)

    # ---- modifiers ----

    def _only_registered(self, sender: str) -> None:
        require(self.registered.get(sender, False), "User not registered")

    def _only_role_or_higher(self, sender: str, minimum: Role, emit: EmitFn) -> None:
        self._only_registered(sender)
        emit("AccessAttempt", {"user": sender, "requiredRole": int(minimum)})
        require(self.user_roles[sender] >= minimum, "Insufficient role permissions")

    # ---- internals ----

    def _register(self, user: str, role: Role, by: str, emit: EmitFn) -> None:
        if self.registered.get(user):
            previous = self.user_roles[user]
            emit("RoleRevoked", {"user": user, "previousRole": int(previous), "revokedBy": by})
        else:
            self.registered[user] = True
            emit("UserRegistered", {"user": user, "role": int(role)})
        self.user_roles[user] = role
        emit("RoleAssigned", {"user": user, "role": int(role), "assignedBy": by})

    @staticmethod
    def _valid_role(role) -> Role:
        try:
            return Role(int(role))
        except (ValueError, TypeError):
            raise ContractRevert("Invalid role")

    # ---- external ----

    def assign_role(self, sender: str, user: str, role, emit: EmitFn) -> None:
        self._only_role_or_higher(sender, Role.ADMIN, emit)
        require(user != ZERO_ADDRESS, "Invalid user address")
        self._register(user, self._valid_role(role), sender, emit)

    def revoke_access(self, sender: str, user: str, emit: EmitFn) -> None:
        self._only_role_or_higher(sender, Role.ADMIN, emit)
        require(self.registered.get(user, False), "User not registered")
        require(user != self.owner, "Cannot revoke owner access")
        previous = self.user_roles[user]
        self.registered[user] = False
        self.user_roles[user] = Role.STUDENT
        emit("RoleRevoked", {"user": user, "previousRole": int(previous), "revokedBy": sender})

    def batch_assign_roles(self, sender: str, users: List[str], roles: List, emit: EmitFn) -> None:
        self._only_role_or_higher(sender, Role.ADMIN, emit)
        require(len(users) == len(roles), "Arrays length mismatch")
        require(len(users) > 0, "Empty arrays")
        for user, role in zip(users, roles):
            require(user != ZERO_ADDRESS, "Invalid user address")
            self._register(user, self._valid_role(role), sender, emit)

    def transfer_admin_role(self, sender: str, new_admin: str, emit: EmitFn) -> None:
        self._only_role_or_higher(sender, Role.ADMIN, emit)
        require(new_admin != ZERO_ADDRESS, "Invalid admin address")
        require(new_admin != sender, "Cannot transfer to self")
        self._register(new_admin, Role.ADMIN, sender, emit)
        emit("RoleRevoked", {"user": sender, "previousRole": int(Role.ADMIN), "revokedBy": sender})
        self.user_roles[sender] = Role.ISSUER
        emit("RoleAssigned", {"user": sender, "role": int(Role.ISSUER), "assignedBy": sender})

    def is_registered(self, user: str) -> bool:
        return self.registered.get(user, False)

    def get_user_role(self, user: str) -> Role:
        require(self.registered.get(user, False), "User not registered")
        return self.user_roles[user]

    def has_role(self, user: str, role) -> bool:
        return self.registered.get(user, False) and self.user_roles[user] == Role(int(role))

    def has_role_or_higher(self, user: str, minimum) -> bool:
        return self.registered.get(user, False) and self.user_roles[user] >= Role(int(minimum))


@dataclass
class DocumentEntry:
    document_hash: str
    ipfs_hash: str
    issuer: str
    owner: str
    timestamp: int
    is_active: bool
    document_type: str
    metadata: str
    viewers: List[str] = field(default_factory=list)


class DocumentRegistryContract:
    """Document anchors, per-document viewer lists and ownership"""

    def __init__(self, access_control: AccessControlContract):
        self.access_control = access_control
        self.documents: Dict[str, DocumentEntry] = {}
        self.user_documents: Dict[str, List[str]] = {}
        self.has_access: Dict[Tuple[str, str], bool] = {}
        self.total_documents = 0

    # ---- modifiers ----

    def _only_registered(self, sender: str) -> None:
        require(self.access_control.is_registered(sender), "User not registered")

    def _exists(self, document_hash: str) -> DocumentEntry:
        entry = self.documents.get(document_hash)
        require(entry is not None and entry.timestamp != 0, "Document does not exist")
        return entry

    def _active(self, entry: DocumentEntry) -> None:
        require(entry.is_active, "Document is not active")

    def _only_owner_issuer_or_admin(self, sender: str, entry: DocumentEntry) -> None:
        require(
            sender in (entry.owner, entry.issuer)
            or self.access_control.has_role_or_higher(sender, Role.ADMIN),
            "Not authorized for this document",
        )

    def _can_read(self, sender: str, entry: DocumentEntry) -> bool:
        return (
            self.has_access.get((entry.document_hash, sender), False)
            or self.access_control.has_role_or_higher(sender, Role.VERIFIER)
        )

    # ---- external ----

    def register_document(
        self,
        sender: str,
        document_hash: str,
        owner: str,
        ipfs_hash: str,
        document_type: str,
        metadata: str,
        emit: EmitFn,
        timestamp: int = None,
    ) -> None:
        self._only_registered(sender)
        require(self.access_control.has_role_or_higher(sender, Role.ISSUER), "Only issuer or admin allowed")
        require(document_hash != ZERO_HASH, "Invalid document hash")
        require(owner != ZERO_ADDRESS, "Invalid owner address")
        require(len(ipfs_hash) > 0, "IPFS hash required")
        require(len(document_type) > 0, "Document type required")
        existing = self.documents.get(document_hash)
        require(existing is None or existing.timestamp == 0, "Document already exists")

        self.documents[document_hash] = DocumentEntry(
            document_hash=document_hash,
            ipfs_hash=ipfs_hash,
            issuer=sender,
            owner=owner,
            timestamp=timestamp or int(time.time()),
            is_active=True,
            document_type=document_type,
            metadata=metadata,
            viewers=[owner] if owner == sender else [owner, sender],
        )
        self.user_documents.setdefault(owner, []).append(document_hash)
        self.has_access[(document_hash, owner)] = True
        self.has_access[(document_hash, sender)] = True
        self.total_documents += 1

        emit("DocumentRegistered", {
            "documentHash": document_hash,
            "issuer": sender,
            "owner": owner,
            "ipfsHash": ipfs_hash,
            "documentType": document_type,
        })

    def verify_document(self, sender: str, document_hash: str, emit: EmitFn) -> Tuple[bool, DocumentEntry]:
        self._only_registered(sender)
        entry = self.documents.get(document_hash)
        is_valid = entry is not None and entry.timestamp != 0 and entry.is_active
        emit("DocumentVerified", {"documentHash": document_hash, "verifier": sender, "isValid": is_valid})
        return is_valid, entry

    def transfer_ownership(self, sender: str, document_hash: str, new_owner: str, emit: EmitFn) -> None:
        self._only_registered(sender)
        entry = self._exists(document_hash)
        self._active(entry)
        self._only_owner_issuer_or_admin(sender, entry)
        require(new_owner != ZERO_ADDRESS, "Invalid new owner address")
        require(self.access_control.is_registered(new_owner), "New owner not registered")
        require(new_owner != entry.owner, "New owner must differ from current owner")

        previous = entry.owner
        entry.owner = new_owner
        owned = self.user_documents.get(previous, [])
        if document_hash in owned:
            owned.remove(document_hash)
        self.user_documents.setdefault(new_owner, []).append(document_hash)
        if not self.has_access.get((document_hash, new_owner)):
            self.has_access[(document_hash, new_owner)] = True
            entry.viewers.append(new_owner)

        emit("OwnershipTransferred", {
            "documentHash": document_hash,
            "previousOwner": previous,
            "newOwner": new_owner,
        })

    def grant_access(self, sender: str, document_hash: str, viewer: str, emit: EmitFn) -> None:
        self._only_registered(sender)
        entry = self._exists(document_hash)
        self._active(entry)
        self._only_owner_issuer_or_admin(sender, entry)
        require(viewer != ZERO_ADDRESS, "Invalid viewer address")
        require(not self.has_access.get((document_hash, viewer), False), "User already has access")

        self.has_access[(document_hash, viewer)] = True
        entry.viewers.append(viewer)
        emit("AccessGranted", {"documentHash": document_hash, "viewer": viewer, "grantedBy": sender})

    def revoke_access(self, sender: str, document_hash: str, viewer: str, emit: EmitFn) -> None:
        self._only_registered(sender)
        entry = self._exists(document_hash)
        self._active(entry)
        self._only_owner_issuer_or_admin(sender, entry)
        require(viewer != entry.owner, "Cannot revoke owner access")
        require(viewer != entry.issuer, "Cannot revoke issuer access")
        require(self.has_access.get((document_hash, viewer), False), "User does not have access")

        self.has_access[(document_hash, viewer)] = False
        entry.viewers.remove(viewer)
        emit("AccessRevoked", {"documentHash": document_hash, "viewer": viewer, "revokedBy": sender})

    def deactivate_document(self, sender: str, document_hash: str, reason: str, emit: EmitFn) -> None:
        self._only_registered(sender)
        entry = self._exists(document_hash)
        self._only_owner_issuer_or_admin(sender, entry)
        require(len(reason) > 0, "Reason required")
        require(entry.is_active, "Document already inactive")

        entry.is_active = False
        emit("DocumentDeactivated", {"documentHash": document_hash, "deactivatedBy": sender, "reason": reason})

    # ---- reads ----

    def get_document(self, sender: str, document_hash: str) -> DocumentEntry:
        self._only_registered(sender)
        entry = self._exists(document_hash)
        require(self._can_read(sender, entry), "No access to this document")
        return entry

    def get_user_documents(self, sender: str, user: str) -> List[str]:
        self._only_registered(sender)
        require(
            sender == user or self.access_control.has_role_or_higher(sender, Role.VERIFIER),
            "Not authorized to view user documents",
        )
        return list(self.user_documents.get(user, []))

    def get_document_viewers(self, sender: str, document_hash: str) -> List[str]:
        self._only_registered(sender)
        entry = self._exists(document_hash)
        require(self._can_read(sender, entry), "No access to this document")
        return list(entry.viewers)

    def check_access(self, document_hash: str, user: str) -> bool:
        entry = self.documents.get(document_hash)
        if entry is None or entry.timestamp == 0:
            return False
        return self._can_read(user, entry)

    def get_total_documents(self) -> int:
        return self.total_documents

    def get_user_document_count(self, user: str) -> int:
        return len(self.user_documents.get(user, []))
