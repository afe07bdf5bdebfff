# =====================================================
# FILE: credvault/services/blockchain_service.py
# Ledger clients: web3 (live chain) and in-memory (mock mode)
# =====================================================

import asyncio
import hashlib
import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from eth_account import Account
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3
from web3.exceptions import ContractLogicError, TimeExhausted, Web3Exception
from web3.logs import DISCARD

from credvault.core.config import Settings
from credvault.core.exceptions import (
    InternalError, LedgerRejected, LedgerTimeout, LedgerUnavailable,
)
from credvault.core.resilience import CallContext, InFlightGauge
from credvault.models.enums import Role
from credvault.services.ledger_abi import ACCESS_CONTROL_ABI, DOCUMENT_REGISTRY_ABI
from credvault.services.ledger_contracts import (
    AccessControlContract, ContractRevert, DocumentEntry, DocumentRegistryContract,
)

logger = logging.getLogger(__name__)

DOCUMENT_MISSING = "Document does not exist"
USER_NOT_REGISTERED = "User not registered"

ROLE_EVENTS = ("UserRegistered", "RoleAssigned", "RoleRevoked")
DOCUMENT_EVENTS = (
    "DocumentRegistered", "OwnershipTransferred", "AccessGranted", "AccessRevoked", "DocumentDeactivated",
)


@dataclass
class LedgerDocument:
    document_hash: str
    ipfs_hash: str
    issuer: str
    owner: str
    timestamp: int
    is_active: bool
    document_type: str
    metadata: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "documentHash": self.document_hash,
            "ipfsHash": self.ipfs_hash,
            "issuer": self.issuer,
            "owner": self.owner,
            "timestamp": self.timestamp,
            "isActive": self.is_active,
            "documentType": self.document_type,
        }


@dataclass
class LedgerEvent:
    name: str
    block_number: int
    args: Dict[str, Any]
    transaction_hash: Optional[str] = None
    log_index: int = 0


@dataclass
class TransactionReceipt:
    transaction_hash: str
    block_number: int
    gas_used: int
    gas_estimate: int
    gas_limit: int
    contract_address: str
    events: List[LedgerEvent] = field(default_factory=list)


class LedgerClient(ABC):
    """
    Capability interface over the two deployed contracts.

    Writes are signed by the configured issuer key and return a receipt once
    the transaction has the configured number of confirmations. Contract
    reverts surface as LedgerRejected(reason); missing receipts as
    LedgerTimeout; transport failures as LedgerUnavailable.
    """

    mode = "abstract"

    def __init__(self, explorer_url: str, max_in_flight: int = 8):
        self.explorer_base = explorer_url.rstrip("/")
        self.gauge = InFlightGauge("ledger", max_in_flight)

    @property
    @abstractmethod
    def signer_address(self) -> str:
        ...

    def explorer_url(self, transaction_hash: str) -> str:
        return f"{self.explorer_base}/tx/{transaction_hash}"

    # ---- DocumentRegistry writes ----

    @abstractmethod
    async def register_document(self, document_hash: str, owner: str, ipfs_cid: str,
                                document_type: str, metadata: str, ctx: CallContext) -> TransactionReceipt:
        ...

    @abstractmethod
    async def verify_document(self, document_hash: str, ctx: CallContext = None) -> Tuple[bool, Optional[LedgerDocument]]:
        ...

    @abstractmethod
    async def transfer_ownership(self, document_hash: str, new_owner: str, ctx: CallContext) -> TransactionReceipt:
        ...

    @abstractmethod
    async def grant_access(self, document_hash: str, viewer: str, ctx: CallContext) -> TransactionReceipt:
        ...

    @abstractmethod
    async def revoke_access(self, document_hash: str, viewer: str, ctx: CallContext) -> TransactionReceipt:
        ...

    @abstractmethod
    async def deactivate_document(self, document_hash: str, reason: str, ctx: CallContext) -> TransactionReceipt:
        ...

    # ---- DocumentRegistry reads ----

    @abstractmethod
    async def get_document(self, document_hash: str, ctx: CallContext = None) -> Optional[LedgerDocument]:
        """None when the hash was never anchored"""

    @abstractmethod
    async def get_user_documents(self, user: str, ctx: CallContext = None) -> List[str]:
        ...

    @abstractmethod
    async def get_document_viewers(self, document_hash: str, ctx: CallContext = None) -> List[str]:
        ...

    @abstractmethod
    async def check_access(self, document_hash: str, user: str, ctx: CallContext = None) -> bool:
        ...

    @abstractmethod
    async def get_total_documents(self, ctx: CallContext = None) -> int:
        ...

    @abstractmethod
    async def get_user_document_count(self, user: str, ctx: CallContext = None) -> int:
        ...

    # ---- AccessControl ----

    @abstractmethod
    async def assign_role(self, user: str, role: Role, ctx: CallContext) -> TransactionReceipt:
        ...

    @abstractmethod
    async def revoke_role(self, user: str, ctx: CallContext) -> TransactionReceipt:
        ...

    @abstractmethod
    async def batch_assign_roles(self, users: Sequence[str], roles: Sequence[Role], ctx: CallContext) -> TransactionReceipt:
        ...

    @abstractmethod
    async def transfer_admin_role(self, new_admin: str, ctx: CallContext) -> TransactionReceipt:
        ...

    @abstractmethod
    async def get_user_role(self, user: str, ctx: CallContext = None) -> Optional[Role]:
        """None for unregistered users"""

    async def has_role(self, user: str, role: Role, ctx: CallContext = None) -> bool:
        return await self.get_user_role(user, ctx) == role

    async def has_role_or_higher(self, user: str, minimum: Role, ctx: CallContext = None) -> bool:
        role = await self.get_user_role(user, ctx)
        return role is not None and role >= minimum

    # ---- events / status ----

    async def find_registration(self, document_hash: str) -> Optional[LedgerEvent]:
        """DocumentRegistered event for a hash, used to recover a lost receipt"""
        document_hash = document_hash.lower()
        for event in await self.get_events(0, ("DocumentRegistered",)):
            if str(event.args.get("documentHash", "")).lower() == document_hash:
                return event
        return None

    @abstractmethod
    async def get_events(self, from_block: int, names: Sequence[str] = ROLE_EVENTS + DOCUMENT_EVENTS) -> List[LedgerEvent]:
        """Events at or after from_block, in ledger order"""

    @abstractmethod
    async def network_status(self) -> Dict[str, Any]:
        ...


def _revert_reason(error: ContractLogicError) -> str:
    message = getattr(error, "message", None) or str(error)
    for prefix in ("execution reverted: ", "execution reverted:", "VM Exception while processing transaction: reverted with reason string "):
        if message.startswith(prefix):
            message = message[len(prefix):]
    return message.strip().strip("'\"") or "execution reverted"


class Web3LedgerClient(LedgerClient):
    """Live chain over JSON-RPC. One writer at a time so nonces stay ordered."""

    mode = "web3"

    def __init__(self, settings: Settings, w3: AsyncWeb3 = None):
        super().__init__(settings.BLOCKCHAIN_EXPLORER_URL, settings.LEDGER_MAX_IN_FLIGHT)
        if not settings.ISSUER_PRIVATE_KEY:
            raise ValueError("ISSUER_PRIVATE_KEY is required for LEDGER_MODE=web3")
        if not settings.CONTRACT_ADDRESS_DOCUMENT_REGISTRY or not settings.CONTRACT_ADDRESS_ACCESS_CONTROL:
            raise ValueError("Contract addresses are required for LEDGER_MODE=web3")

        self.settings = settings
        self.w3 = w3 or AsyncWeb3(AsyncHTTPProvider(settings.ETHEREUM_RPC_URL))
        self._account = Account.from_key(settings.ISSUER_PRIVATE_KEY)
        self._writer_lock = asyncio.Lock()

        self.registry = self.w3.eth.contract(
            address=Web3.to_checksum_address(settings.CONTRACT_ADDRESS_DOCUMENT_REGISTRY),
            abi=DOCUMENT_REGISTRY_ABI,
        )
        self.access_control = self.w3.eth.contract(
            address=Web3.to_checksum_address(settings.CONTRACT_ADDRESS_ACCESS_CONTROL),
            abi=ACCESS_CONTROL_ABI,
        )
        logger.info(f"🔗 Ledger client initialized (LIVE MODE, chain {settings.CHAIN_ID}, signer {self.signer_address})")

    @property
    def signer_address(self) -> str:
        return self._account.address.lower()

    @staticmethod
    def _b32(document_hash: str) -> bytes:
        return Web3.to_bytes(hexstr=document_hash)

    @staticmethod
    def _addr(address: str) -> str:
        return Web3.to_checksum_address(address)

    def _to_document(self, raw) -> LedgerDocument:
        return LedgerDocument(
            document_hash=Web3.to_hex(raw[0]).lower(),
            ipfs_hash=raw[1],
            issuer=raw[2].lower(),
            owner=raw[3].lower(),
            timestamp=int(raw[4]),
            is_active=bool(raw[5]),
            document_type=raw[6],
            metadata=raw[7],
        )

    async def _call(self, fn, ctx: Optional[CallContext]):
        ctx = ctx or CallContext(timeout=30)
        try:
            return await ctx.run(
                fn.call({"from": self._addr(self.signer_address)}),
                lambda: LedgerUnavailable("Ledger read timed out"),
            )
        except ContractLogicError as e:
            raise LedgerRejected(_revert_reason(e))
        except (Web3Exception, OSError) as e:
            raise LedgerUnavailable(f"Ledger read failed: {str(e)}")

    async def _transact(self, contract, fn, ctx: CallContext) -> TransactionReceipt:
        ctx.check("ledger submission")
        async with self.gauge.track():
            sender = self._addr(self.signer_address)
            async with self._writer_lock:
                try:
                    gas_estimate = await ctx.run(
                        fn.estimate_gas({"from": sender}),
                        lambda: LedgerTimeout("Gas estimation timed out"),
                    )
                    gas_limit = int(gas_estimate * self.settings.GAS_LIMIT_MULTIPLIER)
                    nonce = await self.w3.eth.get_transaction_count(sender, "pending")
                    tx = await fn.build_transaction({
                        "from": sender,
                        "nonce": nonce,
                        "gas": gas_limit,
                        "chainId": self.settings.CHAIN_ID,
                    })
                    signed = self._account.sign_transaction(tx)
                    tx_hash = await self.w3.eth.send_raw_transaction(signed.raw_transaction)
                except ContractLogicError as e:
                    raise LedgerRejected(_revert_reason(e))
                except (Web3Exception, OSError) as e:
                    raise LedgerUnavailable(f"Ledger submission failed: {str(e)}")

            tx_hex = Web3.to_hex(tx_hash)
            logger.info(f"🔗 Submitted {fn.fn_name} tx {tx_hex} (gas limit {gas_limit})")

            timeout = ctx.remaining()
            timeout = self.settings.LEDGER_TX_TIMEOUT if timeout is None else min(timeout, self.settings.LEDGER_TX_TIMEOUT)
            try:
                receipt = await self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout, poll_latency=1)
                await self._await_confirmations(receipt["blockNumber"], ctx)
            except TimeExhausted:
                raise LedgerTimeout(f"No receipt for {tx_hex}", transaction_hash=tx_hex)
            except (Web3Exception, OSError) as e:
                raise LedgerUnavailable(f"Receipt lookup failed for {tx_hex}: {str(e)}", transaction_hash=tx_hex)

        if receipt["status"] != 1:
            raise LedgerRejected("Transaction reverted", transaction_hash=tx_hex)

        events = []
        for event_name in ROLE_EVENTS + DOCUMENT_EVENTS:
            if not hasattr(contract.events, event_name):
                continue
            for log in getattr(contract.events, event_name)().process_receipt(receipt, errors=DISCARD):
                events.append(self._to_event(event_name, log))

        return TransactionReceipt(
            transaction_hash=tx_hex,
            block_number=receipt["blockNumber"],
            gas_used=receipt["gasUsed"],
            gas_estimate=gas_estimate,
            gas_limit=gas_limit,
            contract_address=contract.address.lower(),
            events=events,
        )

    async def _await_confirmations(self, block_number: int, ctx: CallContext) -> None:
        needed = self.settings.LEDGER_CONFIRMATIONS
        while needed > 1:
            current = await self.w3.eth.block_number
            if current - block_number + 1 >= needed:
                return
            if ctx.expired:
                raise TimeExhausted(f"Waiting for {needed} confirmations")
            await asyncio.sleep(2)

    @staticmethod
    def _to_event(name: str, log) -> LedgerEvent:
        args = {}
        for key, value in dict(log["args"]).items():
            if isinstance(value, (bytes, bytearray)):
                value = Web3.to_hex(value)
            elif isinstance(value, str) and value.startswith("0x"):
                value = value.lower()
            args[key] = value
        return LedgerEvent(
            name=name,
            block_number=log["blockNumber"],
            args=args,
            transaction_hash=Web3.to_hex(log["transactionHash"]),
            log_index=log["logIndex"],
        )

    # ---- DocumentRegistry ----

    async def register_document(self, document_hash, owner, ipfs_cid, document_type, metadata, ctx):
        fn = self.registry.functions.registerDocument(
            self._b32(document_hash), self._addr(owner), ipfs_cid, document_type, metadata
        )
        return await self._transact(self.registry, fn, ctx)

    async def verify_document(self, document_hash, ctx=None):
        fn = self.registry.functions.verifyDocument(self._b32(document_hash))
        is_valid, raw = await self._call(fn, ctx)
        document = self._to_document(raw) if int(raw[4]) != 0 else None
        return bool(is_valid), document

    async def transfer_ownership(self, document_hash, new_owner, ctx):
        fn = self.registry.functions.transferOwnership(self._b32(document_hash), self._addr(new_owner))
        return await self._transact(self.registry, fn, ctx)

    async def grant_access(self, document_hash, viewer, ctx):
        fn = self.registry.functions.grantAccess(self._b32(document_hash), self._addr(viewer))
        return await self._transact(self.registry, fn, ctx)

    async def revoke_access(self, document_hash, viewer, ctx):
        fn = self.registry.functions.revokeAccess(self._b32(document_hash), self._addr(viewer))
        return await self._transact(self.registry, fn, ctx)

    async def deactivate_document(self, document_hash, reason, ctx):
        fn = self.registry.functions.deactivateDocument(self._b32(document_hash), reason)
        return await self._transact(self.registry, fn, ctx)

    async def get_document(self, document_hash, ctx=None):
        try:
            raw = await self._call(self.registry.functions.getDocument(self._b32(document_hash)), ctx)
        except LedgerRejected as e:
            if e.reason == DOCUMENT_MISSING:
                return None
            raise
        return self._to_document(raw)

    async def get_user_documents(self, user, ctx=None):
        hashes = await self._call(self.registry.functions.getUserDocuments(self._addr(user)), ctx)
        return [Web3.to_hex(h).lower() for h in hashes]

    async def get_document_viewers(self, document_hash, ctx=None):
        viewers = await self._call(self.registry.functions.getDocumentViewers(self._b32(document_hash)), ctx)
        return [v.lower() for v in viewers]

    async def check_access(self, document_hash, user, ctx=None):
        return bool(await self._call(
            self.registry.functions.checkAccess(self._b32(document_hash), self._addr(user)), ctx
        ))

    async def get_total_documents(self, ctx=None):
        return int(await self._call(self.registry.functions.getTotalDocuments(), ctx))

    async def get_user_document_count(self, user, ctx=None):
        return int(await self._call(self.registry.functions.getUserDocumentCount(self._addr(user)), ctx))

    # ---- AccessControl ----

    async def assign_role(self, user, role, ctx):
        fn = self.access_control.functions.assignRole(self._addr(user), int(role))
        return await self._transact(self.access_control, fn, ctx)

    async def revoke_role(self, user, ctx):
        fn = self.access_control.functions.revokeAccess(self._addr(user))
        return await self._transact(self.access_control, fn, ctx)

    async def batch_assign_roles(self, users, roles, ctx):
        fn = self.access_control.functions.batchAssignRoles(
            [self._addr(u) for u in users], [int(r) for r in roles]
        )
        return await self._transact(self.access_control, fn, ctx)

    async def transfer_admin_role(self, new_admin, ctx):
        fn = self.access_control.functions.transferAdminRole(self._addr(new_admin))
        return await self._transact(self.access_control, fn, ctx)

    async def get_user_role(self, user, ctx=None):
        try:
            value = await self._call(self.access_control.functions.getUserRole(self._addr(user)), ctx)
        except LedgerRejected as e:
            if e.reason == USER_NOT_REGISTERED:
                return None
            raise
        return Role(int(value))

    async def get_events(self, from_block, names=ROLE_EVENTS + DOCUMENT_EVENTS):
        events: List[LedgerEvent] = []
        try:
            for contract in (self.access_control, self.registry):
                for name in names:
                    if not hasattr(contract.events, name):
                        continue
                    logs = await getattr(contract.events, name)().get_logs(from_block=from_block)
                    events.extend(self._to_event(name, log) for log in logs)
        except (Web3Exception, OSError) as e:
            raise LedgerUnavailable(f"Event query failed: {str(e)}")
        events.sort(key=lambda ev: (ev.block_number, ev.log_index))
        return events

    async def find_registration(self, document_hash):
        try:
            logs = await self.registry.events.DocumentRegistered().get_logs(
                argument_filters={"documentHash": self._b32(document_hash)}, from_block=0
            )
        except (Web3Exception, OSError) as e:
            raise LedgerUnavailable(f"Event query failed: {str(e)}")
        return self._to_event("DocumentRegistered", logs[0]) if logs else None

    async def network_status(self):
        try:
            connected = await self.w3.is_connected()
            block_number = await self.w3.eth.block_number if connected else None
        except (Web3Exception, OSError) as e:
            return {"mode": self.mode, "connected": False, "status": "unhealthy", "error": str(e)}
        return {
            "mode": self.mode,
            "connected": connected,
            "status": "healthy" if connected else "unhealthy",
            "chain_id": self.settings.CHAIN_ID,
            "block_number": block_number,
            "signer": self.signer_address,
            "in_flight": self.gauge.current,
        }


class _MemoryChain:
    """Shared state behind every signer view of one in-memory ledger"""

    def __init__(self, deployer: str):
        self.block_number = 0
        self.events: List[LedgerEvent] = []
        self.tx_counter = 0
        self.lock = asyncio.Lock()
        self.access_control_address = "0x" + hashlib.sha256(f"ac:{deployer}".encode()).hexdigest()[:40]
        self.registry_address = "0x" + hashlib.sha256(f"dr:{deployer}".encode()).hexdigest()[:40]

        genesis: List[Tuple[str, dict]] = []
        self.access_control = AccessControlContract(deployer, lambda n, a: genesis.append((n, a)))
        self.registry = DocumentRegistryContract(self.access_control)
        self._commit("0x" + "0" * 64, genesis)

        # Fault injection, consumed by the next write(s)
        self.faults: List[str] = []
        self.write_delay = 0.0

    def _commit(self, tx_hash: str, emitted: List[Tuple[str, dict]]) -> List[LedgerEvent]:
        self.block_number += 1
        events = [
            LedgerEvent(name=name, block_number=self.block_number, args=args, transaction_hash=tx_hash, log_index=i)
            for i, (name, args) in enumerate(emitted)
        ]
        self.events.extend(events)
        return events


class InMemoryLedgerClient(LedgerClient):
    """
    Mock-mode ledger: executes the contract models in process, one block per
    transaction. Used in development and tests; supports fault injection:

        ledger.inject_fault("timeout_after_send")   # tx lands, receipt is lost
        ledger.inject_fault("timeout_before_send")  # tx never lands
        ledger.inject_fault("unavailable")          # transport error
    """

    mode = "memory"
    mock_mode = True

    BASE_GAS = 21000
    REGISTER_GAS = 180000
    WRITE_GAS = 60000

    def __init__(self, deployer: str, explorer_url: str = "https://sepolia.etherscan.io",
                 max_in_flight: int = 8, chain: _MemoryChain = None):
        super().__init__(explorer_url, max_in_flight)
        self._signer = deployer.lower()
        self.chain = chain or _MemoryChain(self._signer)
        if chain is None:
            logger.info(f"🔗 Ledger client initialized (MOCK MODE, deployer {self._signer})")

    @property
    def signer_address(self) -> str:
        return self._signer

    def as_signer(self, address: str) -> "InMemoryLedgerClient":
        """View of the same ledger acting as another sender"""
        view = InMemoryLedgerClient(address, self.explorer_base, self.gauge.limit, chain=self.chain)
        view.gauge = self.gauge
        return view

    def inject_fault(self, kind: str, count: int = 1) -> None:
        if kind not in ("timeout_after_send", "timeout_before_send", "unavailable"):
            raise ValueError(f"Unknown fault: {kind}")
        self.chain.faults.extend([kind] * count)

    def set_write_delay(self, seconds: float) -> None:
        self.chain.write_delay = seconds

    @property
    def block_number(self) -> int:
        return self.chain.block_number

    def _estimate(self, fn_name: str, payload: str) -> int:
        base = self.REGISTER_GAS if fn_name == "registerDocument" else self.WRITE_GAS
        return self.BASE_GAS + base + 16 * len(payload.encode("utf-8"))

    async def _transact(self, fn_name: str, contract_address: str, payload: str, apply, ctx: CallContext) -> TransactionReceipt:
        ctx = ctx or CallContext.background()
        ctx.check("ledger submission")
        async with self.gauge.track():
            if self.chain.write_delay:
                await ctx.run(
                    asyncio.sleep(self.chain.write_delay),
                    lambda: LedgerTimeout(f"{fn_name} timed out before submission"),
                )

            async with self.chain.lock:
                fault = self.chain.faults.pop(0) if self.chain.faults else None
                if fault == "unavailable":
                    raise LedgerUnavailable(f"Injected transport failure during {fn_name}")
                if fault == "timeout_before_send":
                    raise LedgerTimeout(f"Injected timeout before {fn_name} was mined")

                gas_estimate = self._estimate(fn_name, payload)
                emitted: List[Tuple[str, dict]] = []
                try:
                    apply(lambda name, args: emitted.append((name, args)))
                except ContractRevert as e:
                    raise LedgerRejected(e.reason)

                self.chain.tx_counter += 1
                tx_hash = "0x" + hashlib.sha256(
                    f"{self.chain.tx_counter}:{self._signer}:{fn_name}:{payload}:{time.time_ns()}".encode()
                ).hexdigest()
                events = self.chain._commit(tx_hash, emitted)
                block_number = self.chain.block_number

            if fault == "timeout_after_send":
                raise LedgerTimeout(f"Injected timeout waiting for {tx_hash}", transaction_hash=tx_hash)

        return TransactionReceipt(
            transaction_hash=tx_hash,
            block_number=block_number,
            gas_used=int(gas_estimate * 0.92),
            gas_estimate=gas_estimate,
            gas_limit=int(gas_estimate * 1.2),
            contract_address=contract_address,
            events=events,
        )

    def _read(self, fn, *args):
        try:
            return fn(self._signer, *args)
        except ContractRevert as e:
            raise LedgerRejected(e.reason)

    @staticmethod
    def _to_document(entry: DocumentEntry) -> LedgerDocument:
        return LedgerDocument(
            document_hash=entry.document_hash,
            ipfs_hash=entry.ipfs_hash,
            issuer=entry.issuer,
            owner=entry.owner,
            timestamp=entry.timestamp,
            is_active=entry.is_active,
            document_type=entry.document_type,
            metadata=entry.metadata,
        )

    # ---- DocumentRegistry ----

    async def register_document(self, document_hash, owner, ipfs_cid, document_type, metadata, ctx):
        document_hash, owner = document_hash.lower(), owner.lower()
        return await self._transact(
            "registerDocument",
            self.chain.registry_address,
            json.dumps([document_hash, owner, ipfs_cid, document_type, metadata]),
            lambda emit: self.chain.registry.register_document(
                self._signer, document_hash, owner, ipfs_cid, document_type, metadata, emit
            ),
            ctx,
        )

    async def verify_document(self, document_hash, ctx=None):
        emitted: List[Tuple[str, dict]] = []
        is_valid, entry = self._read(
            self.chain.registry.verify_document, document_hash.lower(), lambda n, a: emitted.append((n, a))
        )
        return is_valid, self._to_document(entry) if entry else None

    async def transfer_ownership(self, document_hash, new_owner, ctx):
        document_hash, new_owner = document_hash.lower(), new_owner.lower()
        return await self._transact(
            "transferOwnership",
            self.chain.registry_address,
            f"{document_hash}:{new_owner}",
            lambda emit: self.chain.registry.transfer_ownership(self._signer, document_hash, new_owner, emit),
            ctx,
        )

    async def grant_access(self, document_hash, viewer, ctx):
        document_hash, viewer = document_hash.lower(), viewer.lower()
        return await self._transact(
            "grantAccess",
            self.chain.registry_address,
            f"{document_hash}:{viewer}",
            lambda emit: self.chain.registry.grant_access(self._signer, document_hash, viewer, emit),
            ctx,
        )

    async def revoke_access(self, document_hash, viewer, ctx):
        document_hash, viewer = document_hash.lower(), viewer.lower()
        return await self._transact(
            "revokeAccess",
            self.chain.registry_address,
            f"{document_hash}:{viewer}",
            lambda emit: self.chain.registry.revoke_access(self._signer, document_hash, viewer, emit),
            ctx,
        )

    async def deactivate_document(self, document_hash, reason, ctx):
        document_hash = document_hash.lower()
        return await self._transact(
            "deactivateDocument",
            self.chain.registry_address,
            f"{document_hash}:{reason}",
            lambda emit: self.chain.registry.deactivate_document(self._signer, document_hash, reason, emit),
            ctx,
        )

    async def get_document(self, document_hash, ctx=None):
        try:
            entry = self._read(self.chain.registry.get_document, document_hash.lower())
        except LedgerRejected as e:
            if e.reason == DOCUMENT_MISSING:
                return None
            raise
        return self._to_document(entry)

    async def get_user_documents(self, user, ctx=None):
        return self._read(self.chain.registry.get_user_documents, user.lower())

    async def get_document_viewers(self, document_hash, ctx=None):
        return self._read(self.chain.registry.get_document_viewers, document_hash.lower())

    async def check_access(self, document_hash, user, ctx=None):
        return self.chain.registry.check_access(document_hash.lower(), user.lower())

    async def get_total_documents(self, ctx=None):
        return self.chain.registry.get_total_documents()

    async def get_user_document_count(self, user, ctx=None):
        return self.chain.registry.get_user_document_count(user.lower())

    # ---- AccessControl ----

    async def assign_role(self, user, role, ctx):
        user = user.lower()
        return await self._transact(
            "assignRole",
            self.chain.access_control_address,
            f"{user}:{int(role)}",
            lambda emit: self.chain.access_control.assign_role(self._signer, user, role, emit),
            ctx,
        )

    async def revoke_role(self, user, ctx):
        user = user.lower()
        return await self._transact(
            "revokeAccess",
            self.chain.access_control_address,
            user,
            lambda emit: self.chain.access_control.revoke_access(self._signer, user, emit),
            ctx,
        )

    async def batch_assign_roles(self, users, roles, ctx):
        users = [u.lower() for u in users]
        roles = list(roles)
        return await self._transact(
            "batchAssignRoles",
            self.chain.access_control_address,
            json.dumps([users, [int(r) for r in roles]]),
            lambda emit: self.chain.access_control.batch_assign_roles(self._signer, users, roles, emit),
            ctx,
        )

    async def transfer_admin_role(self, new_admin, ctx):
        new_admin = new_admin.lower()
        return await self._transact(
            "transferAdminRole",
            self.chain.access_control_address,
            new_admin,
            lambda emit: self.chain.access_control.transfer_admin_role(self._signer, new_admin, emit),
            ctx,
        )

    async def get_user_role(self, user, ctx=None):
        access_control = self.chain.access_control
        user = user.lower()
        if not access_control.is_registered(user):
            return None
        return access_control.get_user_role(user)

    async def get_events(self, from_block, names=ROLE_EVENTS + DOCUMENT_EVENTS):
        return [ev for ev in self.chain.events if ev.block_number >= from_block and ev.name in names]

    async def network_status(self):
        return {
            "mode": self.mode,
            "connected": True,
            "status": "healthy",
            "block_number": self.chain.block_number,
            "total_documents": self.chain.registry.get_total_documents(),
            "signer": self._signer,
            "in_flight": self.gauge.current,
        }


def build_ledger_client(settings: Settings, service_address: str) -> LedgerClient:
    if settings.LEDGER_MODE == "web3":
        return Web3LedgerClient(settings)
    if settings.LEDGER_MODE != "memory":
        raise InternalError(f"Unknown LEDGER_MODE: {settings.LEDGER_MODE}")
    return InMemoryLedgerClient(
        service_address, settings.BLOCKCHAIN_EXPLORER_URL, settings.LEDGER_MAX_IN_FLIGHT
    )


def service_account_address(settings: Settings) -> str:
    """Address that signs ledger transactions (deployer in mock mode)"""
    if settings.ISSUER_PRIVATE_KEY:
        return Account.from_key(settings.ISSUER_PRIVATE_KEY).address.lower()
    return "0x" + hashlib.sha256(f"credvault-dev-signer:{settings.APP_NAME}".encode()).hexdigest()[:40]
