"""
Farmer withdrawals: the local-currency side of a released escrow.

The escrow app pays the farmer's wallet on its own once the goal is reached.
A withdrawal records cashing that payout out in local currency. The owner
requests it, which snapshots the ledger total and the conversion rate. A
reviewer then processes it exactly once, recording the transfer's payment
reference and the platform fee.
"""
import logging
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from agrifund import config, projects
from agrifund.chain_gateway import ChainGateway, to_base_units
from agrifund.contributions import convert_to_local_currency
from agrifund.errors import AuthorizationError, ConflictError, NotFoundError, PolicyError, ValidationError
from agrifund.models import PaymentMethod, Role, Withdrawal, WithdrawalStatus, utcnow
from agrifund.notifications import Notifier, notify_safely
from agrifund.schemas import Actor, WithdrawalProcess, WithdrawalRequest

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


def withdrawal_fee(amount_local: Decimal) -> Decimal:
    return (Decimal(str(amount_local)) * config.WITHDRAWAL_FEE_RATE).quantize(CENT)


def _check_recipient(payload: WithdrawalRequest) -> None:
    if payload.payment_method == PaymentMethod.MOBILE_MONEY and not (payload.recipient_phone or "").strip():
        raise ValidationError("A recipient phone number is required for mobile money withdrawals")
    if payload.payment_method == PaymentMethod.BANK_TRANSFER and not (
        (payload.recipient_bank_account or "").strip() and (payload.recipient_bank_name or "").strip()
    ):
        raise ValidationError("A bank account and bank name are required for bank transfer withdrawals")


def get_withdrawal(db: Session, withdrawal_id: str) -> Withdrawal:
    withdrawal = db.get(Withdrawal, withdrawal_id)
    if not withdrawal:
        raise NotFoundError("Withdrawal", withdrawal_id)
    return withdrawal


def request_withdrawal(
    db: Session,
    gateway: ChainGateway,
    actor: Actor,
    payload: WithdrawalRequest,
    notifier: Optional[Notifier] = None,
) -> Withdrawal:
    project = projects.get_project(db, payload.project_id)
    if project.owner_id != actor.id:
        raise AuthorizationError("Only the project owner can request a withdrawal")
    if project.blockchain_project_id is None:
        raise ValidationError(f"Project {project.id} is not deployed on chain")
    _check_recipient(payload)
    if db.query(Withdrawal.id).filter(Withdrawal.project_id == project.id).first():
        raise ConflictError(
            "Withdrawal", "project_id", project.id,
            message=f"A withdrawal has already been requested for project {project.id}",
        )

    # Money out: the ledger must say the goal was reached, a cached status is not enough
    state = gateway.read_project_state(project.blockchain_project_id)
    if not state.is_completed:
        raise PolicyError(
            "This project has not reached its goal on chain; there is nothing to withdraw",
            current_status=project.status,
        )

    local = convert_to_local_currency(state.total_funding)
    withdrawal = Withdrawal(
        project_id=project.id,
        farmer_id=actor.id,
        blockchain_project_id=project.blockchain_project_id,
        payout_address=state.owner,
        amount=state.total_funding,
        amount_base_units=to_base_units(state.total_funding),
        local_currency=local["currency"],
        local_currency_rate=local["rate"],
        amount_local=local["amount_local"],
        payment_method=payload.payment_method,
        recipient_phone=payload.recipient_phone,
        recipient_bank_account=payload.recipient_bank_account,
        recipient_bank_name=payload.recipient_bank_name,
        recipient_name=payload.recipient_name,
        notes=payload.notes or "",
        status=WithdrawalStatus.PENDING,
        requested_at=utcnow(),
    )
    try:
        db.add(withdrawal)
        db.commit()
    except IntegrityError as e:
        db.rollback()
        raise ConflictError("Withdrawal", "project_id", project.id) from e
    db.refresh(withdrawal)

    logger.info(
        "Withdrawal %s requested: %s ALGO -> %s %s (rate %s) for project %s",
        withdrawal.id, withdrawal.amount, withdrawal.amount_local, withdrawal.local_currency,
        withdrawal.local_currency_rate, project.id,
    )
    notify_safely(
        notifier, "withdrawal_requested", actor.id,
        project_id=project.id, withdrawal_id=withdrawal.id, amount_local=str(withdrawal.amount_local),
    )
    return withdrawal


def process_withdrawal(
    db: Session,
    withdrawal_id: str,
    actor: Actor,
    payload: WithdrawalProcess,
    notifier: Optional[Notifier] = None,
) -> Withdrawal:
    """pending -> completed, once. The fee is taken from the local-currency amount."""
    if actor.role not in Role.REVIEWERS:
        raise AuthorizationError("Only government reviewers can process withdrawals")
    withdrawal = get_withdrawal(db, withdrawal_id)
    reference = (payload.payment_reference or "").strip()
    if not reference:
        raise ValidationError("A payment reference is required to process a withdrawal")
    if withdrawal.status != WithdrawalStatus.PENDING:
        raise ConflictError(
            "Withdrawal", "status", withdrawal.status,
            message=f"Withdrawal {withdrawal.id} has already been processed",
        )

    fee = withdrawal_fee(withdrawal.amount_local)
    net = Decimal(str(withdrawal.amount_local)) - fee
    try:
        result = db.execute(
            update(Withdrawal)
            .where(Withdrawal.id == withdrawal.id, Withdrawal.status == WithdrawalStatus.PENDING)
            .values(
                status=WithdrawalStatus.COMPLETED,
                fee_local=fee,
                net_amount_local=net,
                payment_reference=reference,
                release_tx_ref=payload.release_tx_ref,
                processed_by=actor.id,
                processed_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            db.rollback()
            raise ConflictError(
                "Withdrawal", "status", WithdrawalStatus.COMPLETED,
                message=f"Withdrawal {withdrawal.id} has already been processed",
            )
        db.commit()
    except IntegrityError as e:
        db.rollback()
        raise ConflictError("Withdrawal", "payment_reference", reference) from e
    db.refresh(withdrawal)

    logger.info(
        "Withdrawal %s processed by %s: paid %s %s (fee %s), ref %s",
        withdrawal.id, actor.id, net, withdrawal.local_currency, fee, reference,
    )
    notify_safely(
        notifier, "withdrawal_processed", withdrawal.farmer_id,
        withdrawal_id=withdrawal.id, net_amount_local=str(net), payment_reference=reference,
    )
    return withdrawal


def list_farmer_withdrawals(db: Session, farmer_id: str) -> List[Withdrawal]:
    return (
        db.query(Withdrawal)
        .filter(Withdrawal.farmer_id == farmer_id)
        .order_by(Withdrawal.requested_at.desc())
        .all()
    )


def list_pending_withdrawals(db: Session) -> List[Withdrawal]:
    """Oldest first: the processing queue."""
    return (
        db.query(Withdrawal)
        .filter(Withdrawal.status == WithdrawalStatus.PENDING)
        .order_by(Withdrawal.requested_at.asc())
        .all()
    )
