"""
Chain Gateway: the only module that talks to the ledger.

Every call goes through one long-lived AlgodClient and is bounded by
CHAIN_TIMEOUT_SECONDS. Raw algod responses are decoded into typed records
(OnChainProjectState, DeployResult, DeploymentDraft) before leaving this module, and every
client failure leaves it as ExternalDependencyError. Amounts cross the
boundary in microAlgos and are converted to Decimal ALGO here, nowhere else.
"""
import base64
import json
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Optional, Tuple

from algosdk import account, encoding, mnemonic, transaction
from algosdk.error import AlgodHTTPError
from algosdk.logic import get_application_address
from algosdk.v2client import algod
from pydantic import BaseModel

from agrifund import config
from agrifund.errors import ExternalDependencyError, ValidationError
from agrifund.pyteal_src import escrow_app

logger = logging.getLogger(__name__)

MICROALGOS_PER_ALGO = 1_000_000
NOTE_DESCRIPTION_LIMIT = 400
MIN_TXN_FEE = 1000


# ---------------------------
# Unit conversion
# ---------------------------
def to_base_units(amount) -> int:
    """ALGO (Decimal/str/int) -> microAlgos. Rejects sub-microAlgo precision."""
    try:
        scaled = Decimal(str(amount)) * MICROALGOS_PER_ALGO
    except InvalidOperation as e:
        raise ValidationError(f"Invalid amount: {amount!r}") from e
    if scaled != scaled.to_integral_value():
        raise ValidationError(f"Amount {amount} has more than 6 decimal places")
    return int(scaled)


def from_base_units(value: int) -> Decimal:
    return Decimal(int(value)) / MICROALGOS_PER_ALGO


# ---------------------------
# Typed boundary records
# ---------------------------
class DeployResult(BaseModel):
    on_chain_id: int
    tx_ref: str
    escrow_address: str


class DeploymentDraft(BaseModel):
    """A signed app-create transaction that may not have reached the ledger yet."""
    tx_ref: str
    signed_txn: str  # base64 msgpack, as encoding.msgpack_encode returns it
    owner: str
    goal_base_units: int
    deadline: int
    last_valid_round: int


class OnChainProjectState(BaseModel):
    on_chain_id: int
    owner: str
    goal: Decimal
    total_funding: Decimal
    is_active: bool
    is_completed: bool
    funds_released: bool
    deadline: int
    contributors_count: int


def _decode_global_state(entries: List[Dict[str, Any]]) -> Dict[str, Any]:
    state: Dict[str, Any] = {}
    for entry in entries:
        key = base64.b64decode(entry["key"]).decode("utf-8")
        value = entry["value"]
        if value["type"] == 1:
            state[key] = base64.b64decode(value.get("bytes", ""))
        else:
            state[key] = int(value.get("uint", 0))
    return state


def parse_project_state(on_chain_id: int, app_info: Dict[str, Any]) -> OnChainProjectState:
    state = _decode_global_state(app_info["params"].get("global-state", []))
    return OnChainProjectState(
        on_chain_id=on_chain_id,
        owner=encoding.encode_address(state[escrow_app.OWNER]),
        goal=from_base_units(state[escrow_app.GOAL]),
        total_funding=from_base_units(state[escrow_app.RAISED]),
        is_active=state[escrow_app.ACTIVE] == 1,
        is_completed=state[escrow_app.COMPLETED] == 1,
        funds_released=state[escrow_app.RELEASED] == 1,
        deadline=state[escrow_app.DEADLINE],
        contributors_count=state[escrow_app.CONTRIBUTORS],
    )


# ---------------------------
# Gateway
# ---------------------------
class ChainGateway:
    def __init__(
        self,
        client: Optional[algod.AlgodClient] = None,
        operator_mnemonic: Optional[str] = None,
        timeout: float = None,
        write_timeout: float = None,
        confirmation_rounds: int = None,
        program_source: Callable[[], Tuple[str, str]] = None,
    ):
        self._client = client
        self._operator_mnemonic = operator_mnemonic
        self.timeout = timeout if timeout is not None else config.CHAIN_TIMEOUT_SECONDS
        self.write_timeout = write_timeout if write_timeout is not None else config.CHAIN_WRITE_TIMEOUT_SECONDS
        self.confirmation_rounds = confirmation_rounds or config.CONFIRMATION_ROUNDS
        self._program_source = program_source
        self._programs: Optional[Tuple[bytes, bytes]] = None
        self._executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="chain-gateway")
        self._lock = threading.Lock()

    # -- connection lifecycle --
    @property
    def client(self) -> algod.AlgodClient:
        """
        Defaults to Algonode TestNet (no token required).
        Override via ALGOD_URL / ALGOD_TOKEN.
        """
        with self._lock:
            if self._client is None:
                self._client = algod.AlgodClient(config.ALGOD_TOKEN, config.ALGOD_URL)
            return self._client

    def close(self) -> None:
        self._executor.shutdown(wait=False)

    def network_hint(self) -> str:
        return config.NETWORK

    def _operator(self) -> Tuple[str, str]:
        m = self._operator_mnemonic or config.OPERATOR_MNEMONIC
        if not m:
            raise ExternalDependencyError(
                "chain", "no OPERATOR_MNEMONIC configured, ledger writes are disabled", retryable=False
            )
        sk = mnemonic.to_private_key(m)
        return account.address_from_private_key(sk), sk

    def _call(self, operation: str, fn: Callable, *args, timeout: float = None):
        """Run a client call with a bounded timeout. Every failure leaves as ExternalDependencyError."""
        limit = timeout or self.timeout
        future = self._executor.submit(fn, *args)
        try:
            return future.result(timeout=limit)
        except FutureTimeout as e:
            future.cancel()
            logger.warning("Chain call %s timed out after %ss", operation, limit)
            raise ExternalDependencyError(operation, f"timed out after {limit}s") from e
        except ExternalDependencyError:
            raise
        except Exception as e:
            logger.warning("Chain call %s failed: %s", operation, e)
            raise ExternalDependencyError(operation, str(e) or e.__class__.__name__) from e

    # -- programs --
    def _get_programs(self) -> Tuple[bytes, bytes]:
        """Approval/clear bytecode, compiled once by the node and reused."""
        if self._programs is None:
            if self._program_source is not None:
                approval_src, clear_src = self._program_source()
            else:
                from agrifund.pyteal_compiled import get_approval_teal, get_clear_teal
                approval_src, clear_src = get_approval_teal(), get_clear_teal()

            a = self.client.compile(approval_src)
            c = self.client.compile(clear_src)
            if "result" not in a or "result" not in c:
                raise RuntimeError("Algod compile did not return 'result' field")
            self._programs = (base64.b64decode(a["result"]), base64.b64decode(c["result"]))
        return self._programs

    def _send_and_wait(self, signed) -> Dict[str, Any]:
        txid = self.client.send_transaction(signed)
        result = transaction.wait_for_confirmation(self.client, txid, self.confirmation_rounds)
        result["txid"] = txid
        return result

    # -- writes --
    def prepare_deployment(
        self,
        owner: str,
        title: str,
        description: str,
        goal: Decimal,
        category: str,
        location: str,
        timeline_days: int,
    ) -> DeploymentDraft:
        """
        Build and sign the app-create transaction without sending it.

        The caller stores the draft (and its txid) before submit_deployment(),
        so a send whose outcome is unknown can be resolved later instead of
        being repeated.
        """
        if not encoding.is_valid_address(owner or ""):
            raise ValidationError(f"Invalid owner address: {owner!r}")
        goal_base = to_base_units(goal)
        deadline_ts = int(time.time()) + int(timeline_days) * 24 * 60 * 60
        note = json.dumps({
            "app": "agrifund",
            "title": title,
            "description": (description or "")[:NOTE_DESCRIPTION_LIMIT],
            "category": category,
            "location": location,
        }).encode()

        return self._call("prepare_deployment", self._prepare, owner, goal_base, deadline_ts, note)

    def _prepare(self, owner: str, goal_base: int, deadline_ts: int, note: bytes) -> DeploymentDraft:
        addr, sk = self._operator()
        approval_prog, clear_prog = self._get_programs()

        # --- Critical: cover program size with a flat fee ---
        sp = self.client.suggested_params()
        sp.flat_fee = True
        sp.fee = 4000

        txn_create = transaction.ApplicationCreateTxn(
            sender=addr,
            sp=sp,
            on_complete=transaction.OnComplete.NoOpOC,
            approval_program=approval_prog,
            clear_program=clear_prog,
            global_schema=transaction.StateSchema(
                num_uints=escrow_app.NUM_UINTS, num_byte_slices=escrow_app.NUM_BYTE_SLICES
            ),
            local_schema=transaction.StateSchema(num_uints=0, num_byte_slices=0),
            app_args=[
                goal_base.to_bytes(8, "big"),
                encoding.decode_address(owner),
                deadline_ts.to_bytes(8, "big"),
            ],
            note=note,
        )
        signed = txn_create.sign(sk)
        return DeploymentDraft(
            tx_ref=signed.get_txid(),
            signed_txn=encoding.msgpack_encode(signed),
            owner=owner,
            goal_base_units=goal_base,
            deadline=deadline_ts,
            last_valid_round=txn_create.last_valid_round,
        )

    def submit_deployment(self, draft: DeploymentDraft) -> DeployResult:
        """Send a prepared app-create, wait for it, then seed the escrow account."""
        return self._call("submit_deployment", self._submit, draft, timeout=self.write_timeout)

    def _submit(self, draft: DeploymentDraft) -> DeployResult:
        result = self._send_and_wait(encoding.msgpack_decode(draft.signed_txn))
        app_id = result.get("application-index")
        if not app_id:
            raise RuntimeError(f"Could not determine application id from txid {result['txid']}")
        return self._adopt(int(app_id), draft.tx_ref)

    def deploy_project(
        self,
        owner: str,
        title: str,
        description: str,
        goal: Decimal,
        category: str,
        location: str,
        timeline_days: int,
    ) -> DeployResult:
        """Create the escrow app for a verified project and seed its minimum balance."""
        draft = self.prepare_deployment(owner, title, description, goal, category, location, timeline_days)
        return self.submit_deployment(draft)

    def resolve_deployment(self, draft: DeploymentDraft) -> Optional[DeployResult]:
        """
        Find out what happened to a deployment whose send was interrupted.

        Returns the app when the create transaction is on the ledger (seeding
        it if the seed payment never landed), None when the transaction can
        no longer be confirmed, and raises while it is still in flight.
        """
        return self._call("resolve_deployment", self._resolve, draft, timeout=self.write_timeout)

    def _resolve(self, draft: DeploymentDraft) -> Optional[DeployResult]:
        info = self._pending_info(draft.tx_ref)
        if info is None and self.client.status()["last-round"] <= draft.last_valid_round:
            info = self._rebroadcast(draft)
        if info is None:
            app_id = self._find_created_app(draft)
            return self._adopt(app_id, draft.tx_ref) if app_id else None
        if info.get("pool-error"):
            logger.info("Deployment tx %s was rejected: %s", draft.tx_ref, info["pool-error"])
            return None
        if not info.get("confirmed-round"):
            raise RuntimeError(f"transaction {draft.tx_ref} is still pending")
        return self._adopt(int(info["application-index"]), draft.tx_ref)

    def _pending_info(self, txid: str) -> Optional[Dict[str, Any]]:
        try:
            return self.client.pending_transaction_info(txid)
        except AlgodHTTPError as e:
            if getattr(e, "code", None) == 404:
                return None
            raise

    def _rebroadcast(self, draft: DeploymentDraft) -> Optional[Dict[str, Any]]:
        # Same signed bytes, same txid: the ledger confirms it at most once
        try:
            return self._send_and_wait(encoding.msgpack_decode(draft.signed_txn))
        except AlgodHTTPError as e:
            if "already in ledger" not in str(e):
                raise
            return self._pending_info(draft.tx_ref)

    def _find_created_app(self, draft: DeploymentDraft) -> Optional[int]:
        """Search the operator's apps for one created from this draft's arguments."""
        addr, _ = self._operator()
        owner_bytes = encoding.decode_address(draft.owner)
        for app in self.client.account_info(addr).get("created-apps", []):
            state = _decode_global_state(app["params"].get("global-state", []))
            if (
                state.get(escrow_app.OWNER) == owner_bytes
                and state.get(escrow_app.GOAL) == draft.goal_base_units
                and state.get(escrow_app.DEADLINE) == draft.deadline
            ):
                return int(app["id"])
        return None

    def _adopt(self, app_id: int, tx_ref: str) -> DeployResult:
        app_addr = get_application_address(app_id)

        # Seed the app account so it can hold boxes; skipped when already seeded
        balance = int(self.client.account_info(app_addr)["amount"])
        if balance < config.APP_MIN_BALANCE_MICROALGOS:
            addr, sk = self._operator()
            pay = transaction.PaymentTxn(
                sender=addr, sp=self.client.suggested_params(), receiver=app_addr,
                amt=config.APP_MIN_BALANCE_MICROALGOS - balance,
            )
            self._send_and_wait(pay.sign(sk))

        logger.info("Escrow app %s created, tx %s", app_id, tx_ref)
        return DeployResult(on_chain_id=app_id, tx_ref=tx_ref, escrow_address=app_addr)

    def set_project_active(self, on_chain_id: int, active: bool) -> str:
        def _set_active():
            addr, sk = self._operator()
            atxn = transaction.ApplicationNoOpTxn(
                sender=addr,
                sp=self.client.suggested_params(),
                index=int(on_chain_id),
                app_args=[b"set_active", int(bool(active)).to_bytes(8, "big")],
            )
            return self._send_and_wait(atxn.sign(sk))["txid"]

        txid = self._call("set_project_active", _set_active, timeout=self.write_timeout)
        logger.info("Escrow app %s active=%s, tx %s", on_chain_id, active, txid)
        return txid

    # -- reads --
    def read_project_state(self, on_chain_id: int) -> OnChainProjectState:
        def _read():
            return parse_project_state(int(on_chain_id), self.client.application_info(int(on_chain_id)))

        return self._call("read_project_state", _read)

    def read_contributor_count(self, on_chain_id: int) -> int:
        return self.read_project_state(on_chain_id).contributors_count

    def read_contributor_amount(self, on_chain_id: int, contributor: str) -> Decimal:
        if not encoding.is_valid_address(contributor or ""):
            raise ValidationError(f"Invalid contributor address: {contributor!r}")

        def _read():
            try:
                box = self.client.application_box_by_name(
                    int(on_chain_id), encoding.decode_address(contributor)
                )
            except AlgodHTTPError as e:
                if getattr(e, "code", None) == 404:
                    return 0
                raise
            return int.from_bytes(base64.b64decode(box["value"]), "big")

        return from_base_units(self._call("read_contributor_amount", _read))

    def read_escrow_balance(self, on_chain_id: int) -> Decimal:
        def _read():
            return int(self.client.account_info(get_application_address(int(on_chain_id)))["amount"])

        return from_base_units(self._call("read_escrow_balance", _read))

    # -- unsigned transactions for wallets --
    def build_contribution_group(self, on_chain_id: int, from_address: str, amount) -> Dict[str, Any]:
        """Payment to escrow + app call "contribute"; the contributor's wallet signs and sends."""
        if not encoding.is_valid_address(from_address or ""):
            raise ValidationError(f"Invalid from_address: {from_address!r}")
        amt = to_base_units(amount)

        def _build():
            sp = self.client.suggested_params()
            escrow_addr = get_application_address(int(on_chain_id))
            ptxn = transaction.PaymentTxn(sender=from_address, sp=sp, receiver=escrow_addr, amt=amt)

            # The app call also pays for the payout inner transaction (fee pooling)
            call_sp = self.client.suggested_params()
            call_sp.flat_fee = True
            call_sp.fee = 2 * max(call_sp.min_fee or 0, MIN_TXN_FEE)
            atxn = transaction.ApplicationNoOpTxn(
                sender=from_address,
                sp=call_sp,
                index=int(on_chain_id),
                app_args=[b"contribute"],
                boxes=[(0, encoding.decode_address(from_address))],
            )
            gid = transaction.calculate_group_id([ptxn, atxn])
            ptxn.group = gid
            atxn.group = gid
            # msgpack_encode already returns a base64 string
            return [encoding.msgpack_encode(ptxn), encoding.msgpack_encode(atxn)]

        blobs = self._call("build_contribution_group", _build)
        return {"group": blobs, "message": "Sign and send group with your wallet."}


_gateway: Optional[ChainGateway] = None
_gateway_lock = threading.Lock()


def get_gateway() -> ChainGateway:
    """Process-wide gateway; one connection reused across requests."""
    global _gateway
    with _gateway_lock:
        if _gateway is None:
            _gateway = ChainGateway()
        return _gateway
