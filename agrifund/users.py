import logging
from typing import Optional

from algosdk import encoding
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from agrifund.cache import TTLCache
from agrifund.errors import ConflictError, NotFoundError, ValidationError
from agrifund.models import User
from agrifund.schemas import UserProfile

logger = logging.getLogger(__name__)


def get_user(db: Session, user_id: str, cache: Optional[TTLCache] = None) -> UserProfile:
    """Read-through lookup; the cache holds detached UserProfile snapshots, never ORM rows."""
    if cache is not None:
        cached = cache.get(user_id)
        if cached is not None:
            return cached

    user = db.get(User, user_id)
    if not user:
        raise NotFoundError("User", user_id)

    profile = UserProfile.model_validate(user)
    if cache is not None:
        cache.set(user_id, profile)
    return profile


def update_wallet_address(
    db: Session, user_id: str, wallet_address: str, cache: Optional[TTLCache] = None
) -> UserProfile:
    address = (wallet_address or "").strip()
    if not encoding.is_valid_address(address):
        raise ValidationError(f"Invalid Algorand address: {address!r}")

    user = db.get(User, user_id)
    if not user:
        raise NotFoundError("User", user_id)

    taken = db.query(User).filter(User.wallet_address == address, User.id != user_id).first()
    if taken:
        raise ConflictError("User", "wallet_address", address)

    user.wallet_address = address
    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        raise ConflictError("User", "wallet_address", address) from e
    db.refresh(user)

    if cache is not None:
        cache.invalidate(user_id)
    logger.info("Wallet address updated for user %s", user_id)
    return UserProfile.model_validate(user)


def mark_email_verified(db: Session, user_id: str, cache: Optional[TTLCache] = None) -> UserProfile:
    user = db.get(User, user_id)
    if not user:
        raise NotFoundError("User", user_id)
    user.email_verified = True
    db.commit()
    db.refresh(user)
    if cache is not None:
        cache.invalidate(user_id)
    return UserProfile.model_validate(user)
