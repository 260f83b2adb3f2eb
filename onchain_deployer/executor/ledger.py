"""Ledger boundary for onchain-deployer.

The orchestrator only talks to a ledger through the narrow ``Ledger``
protocol. Real adapters (RPC client, signer) live outside this package and are
loaded from an import path; ``SimulatedLedger`` is an in-memory ledger for
tests and rehearsal runs.
"""

import asyncio
import hashlib
import importlib
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol, Set, Tuple

import structlog

from ..planner.models import ContractReference
from .models import LedgerError, Outcome, OutcomeStatus, TransactionHandle

logger = structlog.get_logger(__name__)


class Ledger(Protocol):
    """Operations the orchestrator needs from a ledger."""

    async def submit(
        self,
        target: ContractReference,
        operation: str,
        args: Dict[str, Any],
        nonce: Optional[int] = None,
    ) -> TransactionHandle:
        """Sign and broadcast one state-changing call."""
        ...

    async def await_confirmation(self, handle: TransactionHandle, threshold: int) -> Outcome:
        """Wait until a submission has ``threshold`` confirmations or reverts."""
        ...

    async def read(self, target: ContractReference, query: str, args: Dict[str, Any]) -> Any:
        """Perform a read-only call."""
        ...

    async def pending_nonce(self) -> int:
        """Next nonce of the signing account, including pending submissions."""
        ...


def load_ledger(factory_path: str) -> Ledger:
    """Instantiate a ledger adapter from a ``module:callable`` path.

    Raises:
        LedgerError: If the path cannot be imported or called
    """
    module_name, _, attribute = factory_path.partition(":")
    if not module_name or not attribute:
        raise LedgerError(f"Ledger factory must look like 'module:callable', got '{factory_path}'")
    try:
        factory = getattr(importlib.import_module(module_name), attribute)
    except (ImportError, AttributeError) as e:
        raise LedgerError(f"Cannot load ledger factory '{factory_path}': {e}") from e

    ledger = factory()
    logger.info("Ledger adapter loaded", factory=factory_path, adapter=type(ledger).__name__)
    return ledger


DEFAULT_ADMIN_ROLE = "DEFAULT_ADMIN_ROLE"
DEFAULT_ADMIN_ROLE_ID = "0x" + "00" * 32
DEFAULT_SENDER = "0x" + "d3" * 20


def role_key(role: str) -> str:
    """Key under which a role name or 32-byte role id is compared.

    DEFAULT_ADMIN_ROLE and its on-chain id (all zero bytes) share one key.
    Other ids compare case-insensitively; names compare as written.
    """
    text = role.strip()
    if text.lower() == DEFAULT_ADMIN_ROLE_ID:
        return DEFAULT_ADMIN_ROLE
    if text[:2].lower() == "0x":
        return text.lower()
    return text


def is_role_id(role: str) -> bool:
    return role_key(role).startswith("0x")


@dataclass
class SimulatedContract:
    """State of one contract on the simulated ledger."""

    address: str
    artifact: Optional[str] = None
    owner: Optional[str] = None
    proxy_admin: Optional[str] = None
    is_proxy: bool = False
    implementation: Optional[str] = None
    roles: Dict[str, Set[str]] = field(default_factory=dict)
    balances: Dict[str, int] = field(default_factory=dict)
    votes: Dict[str, Dict[str, int]] = field(default_factory=dict)
    values: Dict[str, Any] = field(default_factory=dict)

    def has_role(self, role: str, account: str) -> bool:
        return account.lower() in self.roles.get(role_key(role), set())


@dataclass
class _PendingTransaction:
    handle: TransactionHandle
    target: ContractReference
    operation: str
    args: Dict[str, Any]
    apply: Callable[[], Dict[str, Any]]


@dataclass
class SubmissionRecord:
    """What the simulated ledger saw submitted, in order."""

    contract: str
    operation: str
    args: Dict[str, Any]
    nonce: Optional[int]
    transaction_hash: str


def _snake_case(name: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", name).lower()


class SimulatedLedger:
    """In-memory ledger with role tables, ownership and scripted failures."""

    def __init__(
        self,
        sender: str = DEFAULT_SENDER,
        enforce_permissions: bool = True,
        confirmation_delay: float = 0.0,
        hang_seconds: float = 3600.0,
    ):
        """Initialize the simulated ledger.

        Args:
            sender: Address the simulated signer submits from
            enforce_permissions: Reject role and ownership changes by non-admins
            confirmation_delay: Seconds each confirmation takes
            hang_seconds: How long a hung confirmation blocks
        """
        self.sender = sender.lower()
        self.enforce_permissions = enforce_permissions
        self.confirmation_delay = confirmation_delay
        self.hang_seconds = hang_seconds

        self.contracts: Dict[str, SimulatedContract] = {}
        self.submissions: List[SubmissionRecord] = []
        self.block_number = 0

        self._pending: Dict[str, _PendingTransaction] = {}
        self._next_nonce = 0
        self._deploy_counter = 0
        self._reverts: Dict[Tuple[Optional[str], str], str] = {}
        self._rejections: Dict[Tuple[Optional[str], str], str] = {}
        self._hangs: Set[Tuple[Optional[str], str]] = set()
        self._required_roles: Dict[Tuple[str, str], str] = {}

        self.logger = structlog.get_logger(self.__class__.__name__)

    # Scripting helpers

    def fail_operation(self, operation: str, message: str, contract: Optional[str] = None) -> None:
        """Make matching submissions revert with ``message`` on confirmation."""
        self._reverts[(contract, operation)] = message

    def reject_submission(self, operation: str, message: str, contract: Optional[str] = None) -> None:
        """Make matching submissions raise before a handle exists."""
        self._rejections[(contract, operation)] = message

    def hang_operation(self, operation: str, contract: Optional[str] = None) -> None:
        """Make matching confirmations block (to exercise timeouts)."""
        self._hangs.add((contract, operation))

    def clear_scripts(self) -> None:
        """Drop scripted reverts, rejections and hangs; contract state is kept."""
        self._reverts.clear()
        self._rejections.clear()
        self._hangs.clear()

    def require_role(self, contract: str, operation: str, role: str) -> None:
        """Require the sender to hold ``role`` for a configure operation."""
        self._required_roles[(contract, operation)] = role_key(role)

    def register_contract(
        self,
        address: str,
        admins: Optional[List[str]] = None,
        owner: Optional[str] = None,
        is_proxy: bool = False,
        artifact: Optional[str] = None,
    ) -> SimulatedContract:
        """Add a pre-existing contract to the simulated ledger."""
        contract = SimulatedContract(
            address=address.lower(),
            artifact=artifact,
            owner=(owner or self.sender).lower(),
            proxy_admin=(owner or self.sender).lower() if is_proxy else None,
            is_proxy=is_proxy,
            implementation=self._new_address("impl") if is_proxy else None,
            roles={DEFAULT_ADMIN_ROLE: {a.lower() for a in (admins or [self.sender])}},
        )
        self.contracts[contract.address] = contract
        return contract

    def contract_at(self, address: str) -> SimulatedContract:
        address = address.lower()
        if address not in self.contracts:
            self.register_contract(address)
        return self.contracts[address]

    # Ledger protocol

    async def pending_nonce(self) -> int:
        return self._next_nonce

    async def submit(
        self,
        target: ContractReference,
        operation: str,
        args: Dict[str, Any],
        nonce: Optional[int] = None,
    ) -> TransactionHandle:
        key = self._match(self._rejections, target, operation)
        if key is not None:
            raise LedgerError(self._rejections[key], details={"operation": operation})

        if nonce is not None and nonce != self._next_nonce:
            problem = "nonce too low" if nonce < self._next_nonce else "nonce too high"
            raise LedgerError(
                f"{problem}: next nonce {self._next_nonce}, tx nonce {nonce}",
                details={"expected": self._next_nonce, "nonce": nonce},
            )

        used_nonce = self._next_nonce
        self._next_nonce += 1
        transaction_hash = "0x" + hashlib.sha256(
            f"{self.sender}:{used_nonce}:{target.logical_name}:{operation}".encode()
        ).hexdigest()
        handle = TransactionHandle(transaction_hash=transaction_hash, nonce=used_nonce)

        self._pending[transaction_hash] = _PendingTransaction(
            handle=handle,
            target=target,
            operation=operation,
            args=dict(args),
            apply=lambda: self._apply(target, operation, dict(args)),
        )
        self.submissions.append(
            SubmissionRecord(
                contract=target.logical_name,
                operation=operation,
                args=dict(args),
                nonce=used_nonce,
                transaction_hash=transaction_hash,
            )
        )
        self.logger.debug(
            "Simulated submission",
            contract=target.logical_name,
            operation=operation,
            nonce=used_nonce,
        )
        return handle

    async def await_confirmation(self, handle: TransactionHandle, threshold: int) -> Outcome:
        pending = self._pending.pop(handle.transaction_hash, None)
        if pending is None:
            raise LedgerError(f"Unknown transaction {handle.transaction_hash}")

        if self._match(self._hangs, pending.target, pending.operation) is not None:
            await asyncio.sleep(self.hang_seconds)

        if self.confirmation_delay:
            await asyncio.sleep(self.confirmation_delay)

        self.block_number += 1
        revert_key = self._match(self._reverts, pending.target, pending.operation)
        if revert_key is not None:
            return self._reverted(handle, self._reverts[revert_key])

        try:
            outputs = pending.apply()
        except _Revert as e:
            return self._reverted(handle, str(e))

        return Outcome(
            status=OutcomeStatus.CONFIRMED,
            transaction_hash=handle.transaction_hash,
            block_number=self.block_number,
            confirmations=threshold,
            outputs=outputs,
        )

    async def read(self, target: ContractReference, query: str, args: Dict[str, Any]) -> Any:
        if not target.is_resolved:
            raise LedgerError(f"Contract '{target.logical_name}' has no address")
        contract = self.contract_at(target.address)

        if query == "hasRole":
            return contract.has_role(args["role"], args["account"])
        if query == "balanceOf":
            return contract.balances.get(args["account"].lower(), 0)
        if query == "owner":
            return contract.owner
        if query == "proxyAdminOwner":
            return contract.proxy_admin
        if query == "implementation":
            if not contract.is_proxy:
                raise LedgerError(f"{contract.address} is not a proxy")
            return contract.implementation
        if query == "getVotesBreakdown":
            default = {"ve_virtual_votes": 0, "virtizen_votes": 0, "total_votes": 0}
            return dict(contract.votes.get(args["account"].lower(), default))

        for name in (query, _snake_case(query)):
            if name in contract.values:
                return contract.values[name]
        raise LedgerError(f"execution reverted: {query} is not readable on {contract.address}")

    # Internals

    def _match(self, table, target: ContractReference, operation: str):
        for key in ((target.logical_name, operation), (None, operation)):
            if key in table:
                return key
        return None

    def _reverted(self, handle: TransactionHandle, message: str) -> Outcome:
        return Outcome(
            status=OutcomeStatus.REVERTED,
            transaction_hash=handle.transaction_hash,
            block_number=self.block_number,
            error_message=message,
        )

    def _new_address(self, salt: str) -> str:
        self._deploy_counter += 1
        digest = hashlib.sha256(f"{self.sender}:{salt}:{self._deploy_counter}".encode())
        return "0x" + digest.hexdigest()[:40]

    def _apply(self, target: ContractReference, operation: str, args: Dict[str, Any]) -> Dict[str, Any]:
        if operation in ("deploy", "deployProxy"):
            return self._deploy(target, operation, args)

        if not target.is_resolved:
            raise _Revert(f"call to unresolved contract '{target.logical_name}'")
        contract = self.contract_at(target.address)

        if operation in ("grantRole", "revokeRole"):
            self._check_role(contract, DEFAULT_ADMIN_ROLE)
            members = contract.roles.setdefault(role_key(args["role"]), set())
            account = args["account"].lower()
            if operation == "grantRole":
                members.add(account)
            else:
                members.discard(account)
            return {}

        if operation == "transferOwnership":
            self._check_owner(contract)
            contract.owner = str(next(iter(args.values()))).lower()
            return {"owner": contract.owner}

        if operation == "upgradeProxy":
            if not contract.is_proxy:
                raise _Revert(
                    f"Address {contract.address} doesn't look like an ERC 1967 proxy "
                    "with a logic contract address"
                )
            if self.enforce_permissions and contract.proxy_admin != self.sender:
                raise _Revert("execution reverted: Ownable: caller is not the owner of ProxyAdmin")
            contract.implementation = self._new_address("impl")
            return {"implementation": contract.implementation}

        required = self._required_roles.get((target.logical_name, operation))
        if required:
            self._check_role(contract, required)
        contract.values[operation] = args
        return {}

    def _deploy(self, target: ContractReference, operation: str, args: Dict[str, Any]) -> Dict[str, Any]:
        address = self._new_address(target.logical_name)
        admins = {self.sender}
        if isinstance(args.get("admin"), str):
            admins.add(args["admin"].lower())

        # The proxy admin goes to the initial owner; Ownable stays with the deployer.
        is_proxy = operation == "deployProxy"
        proxy_admin = args.get("initial_owner")
        self.contracts[address] = SimulatedContract(
            address=address,
            artifact=target.artifact,
            owner=self.sender,
            proxy_admin=(proxy_admin.lower() if isinstance(proxy_admin, str) else self.sender)
            if is_proxy
            else None,
            is_proxy=is_proxy,
            implementation=self._new_address("impl") if is_proxy else None,
            roles={DEFAULT_ADMIN_ROLE: admins},
            values=dict(args),
        )
        return {"address": address}

    def _check_role(self, contract: SimulatedContract, role: str) -> None:
        if self.enforce_permissions and not contract.has_role(role, self.sender):
            raise _Revert(
                f"execution reverted: AccessControl: account {self.sender} is missing role {role}"
            )

    def _check_owner(self, contract: SimulatedContract) -> None:
        if self.enforce_permissions and contract.owner != self.sender:
            raise _Revert("execution reverted: Ownable: caller is not the owner")


class _Revert(Exception):
    """Internal signal for a simulated revert."""
