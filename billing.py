"""
Credit ledger access and the billing guard around email discovery
"""
from typing import Optional

from loguru import logger

from config import get_settings
from database import DatabaseClient, get_db_client
from models import CreditTransaction

EMAIL_DISCOVERY_REASON = "individual_email"


class InsufficientCreditsError(Exception):
    """Balance is below the minimum needed to start a search"""
    def __init__(self, user_id: int, balance: int, required: int):
        self.user_id = user_id
        self.balance = balance
        self.required = required
        super().__init__(f"Insufficient credits: balance {balance}, at least {required} required")


def charge_key(job_id: str, contact_id: int) -> str:
    """Idempotency key for an email discovery charge"""
    return f"{job_id}:contact:{contact_id}"


class CreditLedger:
    """Thin wrapper over the credit tables"""

    def __init__(self, db_client: Optional[DatabaseClient] = None):
        self.db_client = db_client

    async def _ensure_db_client(self):
        """Ensure database client is initialized"""
        if self.db_client is None:
            self.db_client = await get_db_client()

    async def get_balance(self, user_id: int) -> int:
        await self._ensure_db_client()
        return await self.db_client.fetch_credit_balance(user_id)

    async def deduct(self, user_id: int, amount: int, reason: str, idempotency_key: str) -> Optional[int]:
        """
        Deduct ``amount`` credits once per idempotency key

        The transaction row is written first; its unique key is what stops a
        second deduction. A row whose balance_after is still null belongs to
        an attempt that failed before the balance moved, so the deduction is
        applied now instead of being treated as done.

        Returns:
            New balance, or None if this key was already charged
        """
        await self._ensure_db_client()

        inserted = await self.db_client.insert_credit_transaction(CreditTransaction(
            user_id=user_id,
            amount=-amount,
            reason=reason,
            idempotency_key=idempotency_key,
        ))
        if not inserted:
            existing = await self.db_client.fetch_credit_transaction(idempotency_key)
            if existing is None or existing.balance_after is not None:
                return None
            logger.warning(f"Charge {idempotency_key} was recorded but never applied, applying it now")

        new_balance = await self.db_client.adjust_credit_balance(user_id, -amount)
        await self.db_client.mark_credit_transaction_applied(idempotency_key, new_balance)
        logger.info(f"Deducted {amount} credits from user {user_id} for {reason} ({idempotency_key}), balance {new_balance}")
        return new_balance


class BillingGuard:
    """Pre-checks balances and charges each discovered email at most once"""

    def __init__(self, ledger: Optional[CreditLedger] = None):
        self.settings = get_settings()
        self.ledger = ledger or CreditLedger()
        self.email_search_cost = self.settings.email_search_cost
        self.min_balance = self.settings.min_credit_balance

    async def ensure_can_search(self, user_id: int) -> int:
        """
        Check the balance before any provider is called. Nothing is charged here.

        Returns:
            Current balance

        Raises:
            InsufficientCreditsError: balance below the minimum
        """
        balance = await self.ledger.get_balance(user_id)
        if balance < self.min_balance:
            logger.warning(f"User {user_id} has {balance} credits, {self.min_balance} required")
            raise InsufficientCreditsError(user_id, balance, self.min_balance)
        return balance

    async def charge(self, user_id: int, key: str, email: str) -> bool:
        """Charge one email discovery under ``key``. True if credits were deducted by this call."""
        new_balance = await self.ledger.deduct(user_id, self.email_search_cost, EMAIL_DISCOVERY_REASON, key)
        if new_balance is None:
            logger.info(f"{key} already charged, not charging again for {email}")
            return False
        return True

    async def charge_discovery(self, user_id: int, job_id: str, contact_id: int, email: str) -> bool:
        """
        Charge for a newly discovered email

        Returns:
            True if credits were deducted by this call
        """
        return await self.charge(user_id, charge_key(job_id, contact_id), email)
