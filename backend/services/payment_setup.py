"""Payment method checks and the out-of-band setup suspension.

An operation that needs to charge the customer calls ensure_chargeable_method():
- a default method exists            -> proceed (None)
- no default but a card is attached  -> promote it, proceed (None)
- nothing attached                   -> SetupRequired carrying a setup session

The pending intent (target plan or add-on) travels only in the setup session
metadata. resume_from_setup() validates the finished session and makes its
payment method the customer's default.
"""
import logging
from typing import Dict, Optional, Tuple

from models import SetupRequired, SetupSession
from services.errors import BillingProviderError, SubscriptionError, ValidationFailed

logger = logging.getLogger(__name__)

META_USER_ID = "user_id"
META_USERNAME = "username"
META_PENDING_UPGRADE = "pending_upgrade_to"
META_PENDING_ADDON = "pending_addon"


async def ensure_chargeable_method(
    gateway,
    customer_ref: str,
    success_url: str,
    cancel_url: str,
    metadata: Dict[str, str],
) -> Optional[SetupRequired]:
    if await gateway.has_chargeable_method(customer_ref):
        return None

    attachable = await gateway.list_attachable_methods(customer_ref)
    if attachable:
        try:
            await gateway.set_default_method(customer_ref, attachable[0])
            logger.info("PAYMENT_METHOD_PROMOTED customer=%s method=%s", customer_ref, attachable[0])
            return None
        except BillingProviderError as e:
            logger.error("Failed to promote payment method for customer=%s: %s", customer_ref, e)

    session = await gateway.create_setup_session(customer_ref, success_url, cancel_url, metadata)
    logger.info(
        "PAYMENT_SETUP_REQUIRED customer=%s setup_session=%s user_id=%s",
        customer_ref, session.id, metadata.get(META_USER_ID),
    )
    return SetupRequired(setup_url=session.url, setup_session_id=session.id)


async def resume_from_setup(
    gateway,
    setup_ref: str,
    user_id: str,
    customer_ref: Optional[str],
    pending_key: str,
) -> Tuple[SetupSession, str]:
    """Validate a completed setup session and set its method as default.

    Returns the session and the pending value stored under ``pending_key``.
    """
    session = await gateway.get_setup_session(setup_ref)
    if not session.is_complete():
        raise ValidationFailed("Payment setup has not been completed", error_code="SETUP_NOT_COMPLETE")
    if not session.payment_method_ref:
        raise ValidationFailed("Setup session carries no payment method", error_code="NO_PAYMENT_METHOD")

    owner = session.metadata.get(META_USER_ID)
    if owner and owner != user_id:
        raise SubscriptionError(
            "Setup session belongs to another user", error_code="SETUP_SESSION_MISMATCH", status_code=403
        )

    pending = session.metadata.get(pending_key)
    if not pending:
        code = "NO_PENDING_UPGRADE" if pending_key == META_PENDING_UPGRADE else "NO_PENDING_ADDON"
        raise ValidationFailed("No pending operation recorded for this setup session", error_code=code)

    await gateway.set_default_method(customer_ref or session.customer, session.payment_method_ref)
    return session, pending
