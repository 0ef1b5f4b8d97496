"""Customer resolution for paying workspace customers"""
import logging
import secrets
from typing import Optional, Tuple

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from lnking.models import Customer

logger = logging.getLogger(__name__)


def generate_customer_id() -> str:
    return f"cus_{secrets.token_hex(12)}"


def find_customer(db: Session, workspace_id: str, email: str) -> Optional[Customer]:
    """Find a workspace customer whose email or external id equals ``email``"""
    return db.query(Customer).filter(
        Customer.workspace_id == workspace_id,
        or_(Customer.email == email, Customer.external_id == email)
    ).first()


def resolve_customer(db: Session, workspace_id: str, email: str,
                     name: Optional[str] = None, first_invoice_id: Optional[str] = None) -> Tuple[Customer, bool]:
    """Update the matching customer or create a new one.

    The provider email doubles as the external id. ``first_invoice_id`` is
    recorded only when the customer is created. Does not commit, but must
    be the first write of the caller's transaction: a lost insert race rolls
    the transaction back.

    Returns:
        (customer, is_new)
    """
    customer = find_customer(db, workspace_id, email)
    if customer:
        customer.name = name
        customer.email = email
        customer.external_id = email
        return customer, False

    customer = Customer(
        id=generate_customer_id(),
        workspace_id=workspace_id,
        name=name,
        email=email,
        external_id=email,
        first_invoice_id=first_invoice_id
    )
    db.add(customer)
    try:
        db.flush()
    except IntegrityError:
        # Concurrent request created the same (workspace_id, external_id) first
        db.rollback()
        logger.info(f"Customer {email} was created concurrently for workspace {workspace_id}, reusing it")
        existing = find_customer(db, workspace_id, email)
        if existing is None:
            raise
        return existing, False

    logger.info(f"Created customer {customer.id} for workspace {workspace_id}")
    return customer, True
