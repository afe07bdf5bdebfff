# =====================================================
# FILE: credvault/services/ledger_abi.py
# Minimal ABIs for the deployed AccessControl and DocumentRegistry contracts
# =====================================================


def _fn(name, inputs=(), outputs=(), mutability="nonpayable"):
    return {
        "type": "function",
        "name": name,
        "stateMutability": mutability,
        "inputs": [{"name": n, "type": t} for n, t in inputs],
        "outputs": [{"name": n, "type": t} for n, t in outputs],
    }


def _event(name, inputs):
    return {
        "type": "event",
        "name": name,
        "anonymous": False,
        "inputs": [{"name": n, "type": t, "indexed": indexed} for n, t, indexed in inputs],
    }


DOCUMENT_STRUCT = {
    "name": "",
    "type": "tuple",
    "components": [
        {"name": "documentHash", "type": "bytes32"},
        {"name": "ipfsHash", "type": "string"},
        {"name": "issuer", "type": "address"},
        {"name": "owner", "type": "address"},
        {"name": "timestamp", "type": "uint256"},
        {"name": "isActive", "type": "bool"},
        {"name": "documentType", "type": "string"},
        {"name": "metadata", "type": "string"},
    ],
}


ACCESS_CONTROL_ABI = [
    _fn("assignRole", [("user", "address"), ("role", "uint8")]),
    _fn("revokeAccess", [("user", "address")]),
    _fn("batchAssignRoles", [("users", "address[]"), ("roles", "uint8[]")]),
    _fn("transferAdminRole", [("newAdmin", "address")]),
    _fn("getUserRole", [("user", "address")], [("", "uint8")], "view"),
    _fn("hasRole", [("user", "address"), ("role", "uint8")], [("", "bool")], "view"),
    _fn("hasRoleOrHigher", [("user", "address"), ("minRole", "uint8")], [("", "bool")], "view"),
    _fn("isRegistered", [("", "address")], [("", "bool")], "view"),
    _event("UserRegistered", [("user", "address", True), ("role", "uint8", False)]),
    _event("RoleAssigned", [
        ("user", "address", True), ("role", "uint8", False), ("assignedBy", "address", True),
    ]),
    _event("RoleRevoked", [
        ("user", "address", True), ("previousRole", "uint8", False), ("revokedBy", "address", True),
    ]),
]


DOCUMENT_REGISTRY_ABI = [
    _fn("registerDocument", [
        ("documentHash", "bytes32"), ("owner", "address"), ("ipfsHash", "string"),
        ("documentType", "string"), ("metadata", "string"),
    ]),
    _fn("transferOwnership", [("documentHash", "bytes32"), ("newOwner", "address")]),
    _fn("grantAccess", [("documentHash", "bytes32"), ("viewer", "address")]),
    _fn("revokeAccess", [("documentHash", "bytes32"), ("viewer", "address")]),
    _fn("deactivateDocument", [("documentHash", "bytes32"), ("reason", "string")]),
    {
        **_fn("verifyDocument", [("documentHash", "bytes32")], [("isValid", "bool")]),
        "outputs": [{"name": "isValid", "type": "bool"}, dict(DOCUMENT_STRUCT, name="document")],
    },
    {
        **_fn("getDocument", [("documentHash", "bytes32")], mutability="view"),
        "outputs": [DOCUMENT_STRUCT],
    },
    _fn("getUserDocuments", [("user", "address")], [("", "bytes32[]")], "view"),
    _fn("getDocumentViewers", [("documentHash", "bytes32")], [("", "address[]")], "view"),
    _fn("checkAccess", [("documentHash", "bytes32"), ("user", "address")], [("", "bool")], "view"),
    _fn("getTotalDocuments", outputs=[("", "uint256")], mutability="view"),
    _fn("getUserDocumentCount", [("user", "address")], [("", "uint256")], "view"),
    _event("DocumentRegistered", [
        ("documentHash", "bytes32", True), ("issuer", "address", True), ("owner", "address", True),
        ("ipfsHash", "string", False), ("documentType", "string", False),
    ]),
    _event("DocumentVerified", [
        ("documentHash", "bytes32", True), ("verifier", "address", True), ("isValid", "bool", False),
    ]),
    _event("OwnershipTransferred", [
        ("documentHash", "bytes32", True), ("previousOwner", "address", True), ("newOwner", "address", True),
    ]),
    _event("AccessGranted", [
        ("documentHash", "bytes32", True), ("viewer", "address", True), ("grantedBy", "address", True),
    ]),
    _event("AccessRevoked", [
        ("documentHash", "bytes32", True), ("viewer", "address", True), ("revokedBy", "address", True),
    ]),
    _event("DocumentDeactivated", [
        ("documentHash", "bytes32", True), ("deactivatedBy", "address", True), ("reason", "string", False),
    ]),
]
