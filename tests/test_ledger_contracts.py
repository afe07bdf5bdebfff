"""
Tests for the AccessControl and DocumentRegistry contract models.
"""

import pytest

from credvault.models.enums import Role
from credvault.services.ledger_contracts import (
    ZERO_ADDRESS,
    AccessControlContract,
    ContractRevert,
    DocumentRegistryContract,
)

DEPLOYER = "0x" + "a" * 40
ISSUER = "0x" + "1" * 40
STUDENT = "0x" + "2" * 40
VERIFIER = "0x" + "3" * 40
STRANGER = "0x" + "9" * 40
CLASSMATE = "0x" + "4" * 40
DOC = "0x" + "ab" * 32
CID = "Qm" + "x" * 44


class Recorder:
    def __init__(self):
        self.events = []

    def __call__(self, name, args):
        self.events.append((name, args))

    def names(self):
        return [name for name, _ in self.events]


@pytest.fixture
def emit():
    return Recorder()


@pytest.fixture
def access_control(emit):
    ac = AccessControlContract(DEPLOYER, emit)
    ac.assign_role(DEPLOYER, ISSUER, Role.ISSUER, emit)
    ac.assign_role(DEPLOYER, STUDENT, Role.STUDENT, emit)
    ac.assign_role(DEPLOYER, VERIFIER, Role.VERIFIER, emit)
    ac.assign_role(DEPLOYER, CLASSMATE, Role.STUDENT, emit)
    return ac


@pytest.fixture
def registry(access_control, emit):
    registry = DocumentRegistryContract(access_control)
    registry.register_document(ISSUER, DOC, STUDENT, CID, "degree", "{}", emit)
    return registry


def reverts(reason, fn, *args):
    with pytest.raises(ContractRevert) as exc:
        fn(*args)
    assert exc.value.reason == reason


class TestAccessControl:
    """Role registry."""

    def test_deployer_is_admin(self, access_control):
        assert access_control.get_user_role(DEPLOYER) == Role.ADMIN

    def test_assign_emits_events(self, emit):
        ac = AccessControlContract(DEPLOYER, emit)
        emit.events.clear()
        ac.assign_role(DEPLOYER, ISSUER, Role.ISSUER, emit)
        assert emit.names() == ["AccessAttempt", "UserRegistered", "RoleAssigned"]

    def test_reassign_emits_revoke_then_assign(self, access_control, emit):
        emit.events.clear()
        access_control.assign_role(DEPLOYER, STUDENT, Role.VERIFIER, emit)
        assert emit.names() == ["AccessAttempt", "RoleRevoked", "RoleAssigned"]
        assert access_control.get_user_role(STUDENT) == Role.VERIFIER

    def test_non_admin_cannot_assign(self, access_control, emit):
        reverts("Insufficient role permissions", access_control.assign_role, ISSUER, STRANGER, Role.ISSUER, emit)

    def test_unregistered_sender(self, access_control, emit):
        reverts("User not registered", access_control.assign_role, STRANGER, STUDENT, Role.ISSUER, emit)

    def test_zero_address_and_bad_role(self, access_control, emit):
        reverts("Invalid user address", access_control.assign_role, DEPLOYER, ZERO_ADDRESS, Role.STUDENT, emit)
        reverts("Invalid role", access_control.assign_role, DEPLOYER, STRANGER, 9, emit)

    def test_cannot_revoke_owner(self, access_control, emit):
        reverts("Cannot revoke owner access", access_control.revoke_access, DEPLOYER, DEPLOYER, emit)

    def test_revoke_unregisters(self, access_control, emit):
        access_control.revoke_access(DEPLOYER, STUDENT, emit)
        assert not access_control.is_registered(STUDENT)
        reverts("User not registered", access_control.get_user_role, STUDENT)

    def test_batch_checks_lengths(self, access_control, emit):
        reverts("Arrays length mismatch", access_control.batch_assign_roles, DEPLOYER, [STRANGER], [], emit)
        reverts("Empty arrays", access_control.batch_assign_roles, DEPLOYER, [], [], emit)

    def test_transfer_admin(self, access_control, emit):
        reverts("Cannot transfer to self", access_control.transfer_admin_role, DEPLOYER, DEPLOYER, emit)
        access_control.transfer_admin_role(DEPLOYER, VERIFIER, emit)
        assert access_control.get_user_role(VERIFIER) == Role.ADMIN
        assert access_control.get_user_role(DEPLOYER) == Role.ISSUER

    def test_role_lattice(self, access_control):
        assert access_control.has_role_or_higher(DEPLOYER, Role.ISSUER)
        assert access_control.has_role_or_higher(ISSUER, Role.VERIFIER)
        assert not access_control.has_role_or_higher(STUDENT, Role.VERIFIER)
        assert not access_control.has_role_or_higher(STRANGER, Role.STUDENT)


class TestDocumentRegistry:
    """Document anchors and per-document access."""

    def test_registered_entry(self, registry):
        entry = registry.get_document(ISSUER, DOC)
        assert (entry.issuer, entry.owner, entry.ipfs_hash) == (ISSUER, STUDENT, CID)
        assert entry.is_active
        assert registry.get_total_documents() == 1
        assert registry.get_user_documents(STUDENT, STUDENT) == [DOC]

    def test_student_cannot_register(self, registry, emit):
        other = "0x" + "cd" * 32
        reverts("Only issuer or admin allowed", registry.register_document, STUDENT, other, STUDENT, CID, "degree", "{}", emit)

    def test_register_validation(self, registry, emit):
        other = "0x" + "cd" * 32
        reverts("Invalid document hash", registry.register_document, ISSUER, "0x" + "0" * 64, STUDENT, CID, "degree", "{}", emit)
        reverts("Invalid owner address", registry.register_document, ISSUER, other, ZERO_ADDRESS, CID, "degree", "{}", emit)
        reverts("IPFS hash required", registry.register_document, ISSUER, other, STUDENT, "", "degree", "{}", emit)
        reverts("Document type required", registry.register_document, ISSUER, other, STUDENT, CID, "", "{}", emit)

    def test_duplicate(self, registry, emit):
        reverts("Document already exists", registry.register_document, ISSUER, DOC, STUDENT, CID, "degree", "{}", emit)

    def test_transfer_rules(self, registry, emit):
        reverts("Invalid new owner address", registry.transfer_ownership, ISSUER, DOC, ZERO_ADDRESS, emit)
        reverts("New owner not registered", registry.transfer_ownership, ISSUER, DOC, STRANGER, emit)
        reverts("New owner must differ from current owner", registry.transfer_ownership, ISSUER, DOC, STUDENT, emit)
        reverts("Not authorized for this document", registry.transfer_ownership, VERIFIER, DOC, ISSUER, emit)

        registry.transfer_ownership(STUDENT, DOC, VERIFIER, emit)
        assert registry.get_document(ISSUER, DOC).owner == VERIFIER
        assert registry.get_user_documents(VERIFIER, VERIFIER) == [DOC]

    def test_grant_and_revoke(self, registry, emit):
        assert not registry.check_access(DOC, CLASSMATE)
        registry.grant_access(STUDENT, DOC, CLASSMATE, emit)
        reverts("User already has access", registry.grant_access, STUDENT, DOC, CLASSMATE, emit)
        assert registry.check_access(DOC, CLASSMATE)

        reverts("Cannot revoke owner access", registry.revoke_access, ISSUER, DOC, STUDENT, emit)
        reverts("Cannot revoke issuer access", registry.revoke_access, STUDENT, DOC, ISSUER, emit)
        registry.revoke_access(STUDENT, DOC, CLASSMATE, emit)
        assert not registry.check_access(DOC, CLASSMATE)
        reverts("User does not have access", registry.revoke_access, STUDENT, DOC, CLASSMATE, emit)
        # verifiers read every document without an explicit grant
        assert registry.check_access(DOC, VERIFIER)

    def test_deactivate(self, registry, emit):
        reverts("Reason required", registry.deactivate_document, ISSUER, DOC, "", emit)
        registry.deactivate_document(ISSUER, DOC, "Issued in error", emit)
        reverts("Document already inactive", registry.deactivate_document, ISSUER, DOC, "again", emit)

        is_valid, entry = registry.verify_document(VERIFIER, DOC, emit)
        assert not is_valid and entry is not None
        reverts("Document is not active", registry.grant_access, ISSUER, DOC, VERIFIER, emit)

    def test_reads_are_gated(self, registry, access_control, emit):
        outsider = "0x" + "8" * 40
        access_control.assign_role(DEPLOYER, outsider, Role.STUDENT, emit)
        reverts("No access to this document", registry.get_document, outsider, DOC)
        reverts("Not authorized to view user documents", registry.get_user_documents, outsider, STUDENT)
        assert registry.get_document(VERIFIER, DOC).document_hash == DOC
