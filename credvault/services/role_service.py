# =====================================================
# FILE: credvault/services/role_service.py
# Role cache, role administration and per-document access
# =====================================================
"""
The ledger's AccessControl contract is the source of truth for roles. The
RoleCache mirrors it in process from ledger events, and the `parties` table
mirrors it durably. Admission checks read the cache; every state change is
sent to the ledger first and mirrored only after the receipt arrives.
"""

import logging
import threading
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy.orm import Session

from credvault.core.exceptions import (
    Forbidden, LedgerRejected, NotFound, ValidationRejected,
)
from credvault.core.resilience import CallContext
from credvault.models.document import Document
from credvault.models.enums import Role
from credvault.models.party import Party
from credvault.services.blockchain_service import LedgerClient, LedgerEvent, ROLE_EVENTS
from credvault.services.crypto_service import ZERO_ADDRESS, normalize_address, normalize_hash
from credvault.services.document_store import DocumentRepository

logger = logging.getLogger(__name__)

Version = Tuple[int, int]
UNSEEN: Version = (-1, -1)


class CachedRole:
    __slots__ = ("role", "registered", "version")

    def __init__(self, role: Role, registered: bool, version: Version):
        self.role = role
        self.registered = registered
        self.version = version


class RoleCache:
    """
    address -> (role, registered, (block, log_index)).

    Reads are plain dict lookups. Writers take a per-address lock and only
    apply an update whose ledger position is newer than the cached one, so
    each party's entry moves forward in ledger order.
    """

    def __init__(self):
        self._entries: Dict[str, CachedRole] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self.synced_block = 0

    def _lock_for(self, address: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(address, threading.Lock())

    def get(self, address: str) -> Optional[Role]:
        entry = self._entries.get(address.lower())
        if entry is None or not entry.registered:
            return None
        return entry.role

    def known(self, address: str) -> bool:
        return address.lower() in self._entries

    def version(self, address: str) -> Version:
        entry = self._entries.get(address.lower())
        return entry.version if entry else UNSEEN

    def set(self, address: str, role: Optional[Role], version: Version) -> bool:
        address = address.lower()
        with self._lock_for(address):
            current = self._entries.get(address)
            if current is not None and version <= current.version:
                return False
            self._entries[address] = CachedRole(
                role=role if role is not None else Role.STUDENT,
                registered=role is not None,
                version=version,
            )
            return True

    def apply_event(self, event: LedgerEvent) -> bool:
        if event.name not in ROLE_EVENTS:
            return False
        user = event.args["user"].lower()
        version = (event.block_number, event.log_index)
        if event.name in ("UserRegistered", "RoleAssigned"):
            return self.set(user, Role(int(event.args["role"])), version)
        # RoleRevoked: either a standalone revocation or the first half of a reassignment
        return self.set(user, None, version)

    def count(self, role: Role) -> int:
        return sum(1 for e in self._entries.values() if e.registered and e.role == role)

    def addresses_with(self, role: Role) -> List[str]:
        return [a for a, e in self._entries.items() if e.registered and e.role == role]

    def clear(self) -> None:
        self._entries.clear()
        self.synced_block = 0


class RoleService:
    def __init__(self, db: Session, cache: RoleCache, ledger: LedgerClient, clock):
        self.db = db
        self.cache = cache
        self.ledger = ledger
        self.clock = clock

    # ---- admission ----

    def get_role(self, address: str) -> Optional[Role]:
        address = address.lower()
        if self.cache.known(address):
            return self.cache.get(address)
        party = self.db.query(Party).filter(Party.wallet_address == address).first()
        if party is None or not party.is_active:
            return None
        self.cache.set(address, Role(party.role), (party.last_event_block, -1))
        return Role(party.role)

    def has_role_or_higher(self, address: str, minimum: Role) -> bool:
        role = self.get_role(address)
        return role is not None and role >= minimum

    def require_role(self, address: str, minimum: Role) -> Role:
        role = self.get_role(address)
        if role is None or role < minimum:
            raise Forbidden(
                f"{address} has role {role.name if role is not None else 'UNREGISTERED'}, "
                f"{minimum.name} required"
            )
        return role

    # ---- mirroring ----

    def _mirror(self, events: Iterable[LedgerEvent]) -> int:
        applied = 0
        for event in events:
            if event.name not in ROLE_EVENTS:
                continue
            if self.cache.apply_event(event):
                applied += 1
            self._mirror_party(event.args["user"].lower(), event.block_number)
        self.db.commit()
        return applied

    def _mirror_party(self, address: str, block_number: int) -> None:
        now = self.clock.now()
        party = self.db.query(Party).filter(Party.wallet_address == address).first()
        if party is None:
            party = Party(wallet_address=address, created_at=now, updated_at=now, last_event_block=-1)
            self.db.add(party)
            self.db.flush()
        if block_number < (party.last_event_block or -1):
            return
        role = self.cache.get(address)
        party.role = int(role) if role is not None else int(Role.STUDENT)
        party.is_active = role is not None
        party.last_event_block = block_number
        party.updated_at = now

    async def sync_from_ledger(self) -> int:
        """Pull role events since the last synced block and apply them in ledger order"""
        from_block = self.cache.synced_block + 1 if self.cache.synced_block else 0
        events = await self.ledger.get_events(from_block, ROLE_EVENTS)
        applied = self._mirror(events)
        if events:
            self.cache.synced_block = max(e.block_number for e in events)
        if applied:
            logger.info(f"🔄 Role cache synced: {applied} update(s) up to block {self.cache.synced_block}")
        return applied

    # ---- administration ----

    def _ensure_not_last_admin(self, address: str, new_role: Optional[Role]) -> None:
        if self.cache.get(address) != Role.ADMIN:
            return
        if new_role == Role.ADMIN:
            return
        if self.cache.count(Role.ADMIN) <= 1:
            raise ValidationRejected("Cannot remove the last admin", address=address)

    async def assign_role(self, actor: str, user: str, role, ctx: CallContext) -> Role:
        self.require_role(actor, Role.ADMIN)
        user = normalize_address(user)
        try:
            role = Role.parse(role)
        except (KeyError, ValueError):
            raise ValidationRejected(f"Invalid role: {role!r}")
        self._ensure_not_last_admin(user, role)

        receipt = await self.ledger.assign_role(user, role, ctx)
        self._mirror(receipt.events)
        logger.info(f"👤 {actor} assigned {role.name} to {user} (tx {receipt.transaction_hash})")
        return role

    async def revoke_access(self, actor: str, user: str, ctx: CallContext) -> None:
        self.require_role(actor, Role.ADMIN)
        user = normalize_address(user)
        self._ensure_not_last_admin(user, None)

        receipt = await self.ledger.revoke_role(user, ctx)
        self._mirror(receipt.events)
        logger.info(f"👤 {actor} revoked access for {user} (tx {receipt.transaction_hash})")

    async def batch_assign_roles(self, actor: str, users: Sequence[str], roles: Sequence, ctx: CallContext) -> List[Role]:
        self.require_role(actor, Role.ADMIN)
        if len(users) != len(roles):
            raise ValidationRejected("Arrays length mismatch")
        if not users:
            raise ValidationRejected("Empty arrays")
        users = [normalize_address(u) for u in users]
        try:
            parsed = [Role.parse(r) for r in roles]
        except (KeyError, ValueError):
            raise ValidationRejected("Invalid role in batch")

        admins_after = set(self.cache.addresses_with(Role.ADMIN))
        for user, role in zip(users, parsed):
            if role == Role.ADMIN:
                admins_after.add(user)
            else:
                admins_after.discard(user)
        if not admins_after:
            raise ValidationRejected("Batch would remove the last admin")

        receipt = await self.ledger.batch_assign_roles(users, parsed, ctx)
        self._mirror(receipt.events)
        logger.info(f"👥 {actor} batch-assigned {len(users)} role(s) (tx {receipt.transaction_hash})")
        return parsed

    async def transfer_admin(self, actor: str, new_admin: str, ctx: CallContext) -> None:
        """Promote new_admin to ADMIN and demote actor to ISSUER in one ledger transaction"""
        self.require_role(actor, Role.ADMIN)
        new_admin = normalize_address(new_admin)
        actor = actor.lower()
        if new_admin == actor:
            raise ValidationRejected("Cannot transfer to self")

        if actor == self.ledger.signer_address:
            receipt = await self.ledger.transfer_admin_role(new_admin, ctx)
        else:
            receipt = await self.ledger.batch_assign_roles([new_admin, actor], [Role.ADMIN, Role.ISSUER], ctx)
        self._mirror(receipt.events)
        logger.info(f"👑 Admin role transferred from {actor} to {new_admin} (tx {receipt.transaction_hash})")

    def register_profile(self, address: str, display_name: str = None, email: str = None,
                         organization: str = None) -> Party:
        address = normalize_address(address)
        now = self.clock.now()
        party = self.db.query(Party).filter(Party.wallet_address == address).first()
        if party is None:
            role = self.cache.get(address)
            party = Party(
                wallet_address=address,
                role=int(role) if role is not None else int(Role.STUDENT),
                is_active=role is not None,
                created_at=now,
                updated_at=now,
            )
            self.db.add(party)
        if display_name is not None:
            party.display_name = display_name
        if email is not None:
            party.email = email
        if organization is not None:
            party.organization = organization
        party.updated_at = now
        self.db.commit()
        return party

    def get_party(self, address: str) -> Optional[Party]:
        return self.db.query(Party).filter(Party.wallet_address == address.lower()).first()


class DocumentAccessService:
    """Per-document viewer lists, ownership and deactivation"""

    def __init__(self, documents: DocumentRepository, roles: RoleService, ledger: LedgerClient):
        self.documents = documents
        self.roles = roles
        self.ledger = ledger

    def check_access(self, document: Document, address: Optional[str]) -> bool:
        if not address:
            return False
        address = address.lower()
        return document.has_access(address) or self.roles.has_role_or_higher(address, Role.VERIFIER)

    def _require_manager(self, document: Document, actor: str) -> None:
        actor = actor.lower()
        if actor in (document.owner_address, document.issuer_address, document.created_by):
            return
        if self.roles.has_role_or_higher(actor, Role.ADMIN):
            return
        raise Forbidden("Not authorized for this document")

    async def grant_viewer(self, document_hash: str, actor: str, viewer: str, ctx: CallContext) -> Document:
        document = self.documents.require(normalize_hash(document_hash))
        viewer = normalize_address(viewer)
        self._require_manager(document, actor)
        if not document.is_active:
            raise ValidationRejected("Document is not active")
        if document.has_access(viewer):
            raise ValidationRejected("User already has access")

        await self.ledger.grant_access(document.document_hash, viewer, ctx)
        self.documents.add_viewer(document, viewer, actor.lower())
        logger.info(f"🔑 {actor} granted {viewer} access to {document.document_hash[:10]}...")
        return document

    async def revoke_viewer(self, document_hash: str, actor: str, viewer: str, ctx: CallContext) -> Document:
        document = self.documents.require(normalize_hash(document_hash))
        viewer = normalize_address(viewer)
        self._require_manager(document, actor)
        if viewer == document.owner_address:
            raise ValidationRejected("Cannot revoke owner access")
        if viewer in (document.issuer_address, document.created_by):
            raise ValidationRejected("Cannot revoke issuer access")
        if viewer not in document.viewer_addresses:
            raise NotFound(f"{viewer} has no explicit access to this document")

        try:
            await self.ledger.revoke_access(document.document_hash, viewer, ctx)
        except LedgerRejected as e:
            # Viewer already gone on chain; converge the mirror
            if e.reason != "User does not have access":
                raise
        self.documents.remove_viewer(document, viewer)
        logger.info(f"🔒 {actor} revoked {viewer} from {document.document_hash[:10]}...")
        return document

    async def transfer_ownership(self, document_hash: str, actor: str, new_owner: str, ctx: CallContext) -> Document:
        document = self.documents.require(normalize_hash(document_hash))
        self._require_manager(document, actor)
        new_owner = normalize_address(new_owner)
        if new_owner == ZERO_ADDRESS:
            raise ValidationRejected("Invalid new owner address")
        if new_owner == document.owner_address:
            raise ValidationRejected("New owner must differ from current owner")
        if self.roles.get_role(new_owner) is None:
            raise ValidationRejected("New owner not registered")
        if not document.is_active:
            raise ValidationRejected("Document is not active")

        await self.ledger.transfer_ownership(document.document_hash, new_owner, ctx)
        previous = document.owner_address
        self.documents.set_owner(document, new_owner)
        logger.info(f"📄 Ownership of {document.document_hash[:10]}... moved {previous} -> {new_owner}")
        return document

    async def deactivate(self, document_hash: str, actor: str, reason: str, ctx: CallContext) -> Document:
        document = self.documents.require(normalize_hash(document_hash))
        self._require_manager(document, actor)
        if not reason or not reason.strip():
            raise ValidationRejected("Reason required")
        if not document.is_active:
            raise ValidationRejected("Document already inactive")

        await self.ledger.deactivate_document(document.document_hash, reason.strip(), ctx)
        self.documents.deactivate(document, reason.strip(), actor.lower())
        logger.info(f"📄 {document.document_hash[:10]}... deactivated by {actor}: {reason}")
        return document
