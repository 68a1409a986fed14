"""
Wallet ledger: the only component that changes a balance.

Every mutation is a signed $inc applied by a conditional update on the
wallet document, filtered on the `version` observed when the policy checks
ran (and, for debits, on `balance >= amount`). Two concurrent deductions for
one user therefore cannot both spend the same points: the loser re-reads and
re-evaluates against the new balance.
"""

import itertools
import uuid
from datetime import datetime
from typing import Any, Callable

from beanie import UpdateResponse
from beanie.operators import Inc, Set
from pymongo.errors import DuplicateKeyError

from creditcore.core.audit import log_event
from creditcore.core.config import Settings, get_settings
from creditcore.core.exceptions import (
    BadRequestError,
    ConflictError,
    DeductionError,
    ForbiddenError,
    InsufficientFundsError,
    NotFoundError,
)
from creditcore.core.logging import get_logger
from creditcore.db.init import storage_guard
from creditcore.models.order import Order
from creditcore.models.wallet import AccountType, PlanType, Wallet
from creditcore.models.wallet_transaction import TransactionKind, WalletTransaction
from creditcore.services.balance_feed import BalanceHandler, BalanceHub, BalanceSubscription
from creditcore.services.policy import check_usage, limits_for

log = get_logger(__name__)


def debit_key(order_id: str) -> str:
    return f"debit:{order_id}"


def refund_key(order_id: str) -> str:
    return f"refund:{order_id}"


class WalletLedger:
    def __init__(
        self,
        hub: BalanceHub | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.hub = hub or BalanceHub()
        self.settings = settings or get_settings()
        self.clock = clock

    # -- profile -----------------------------------------------------------

    @storage_guard
    async def initialize_wallet(
        self,
        user_id: str,
        email: str,
        display_name: str | None = None,
        avatar_ref: str | None = None,
    ) -> Wallet:
        """
        Create the wallet if absent. An existing wallet keeps its balance and
        account type; only login time and admin promotion are refreshed.
        """
        is_admin = email.lower() in self.settings.admin_emails
        now = self.clock()
        wallet = await Wallet.find_one(Wallet.user_id == user_id)
        if wallet is None:
            starting = self.settings.admin_welcome_bonus if is_admin else self.settings.trial_starting_balance
            wallet = Wallet(
                user_id=user_id,
                email=email,
                display_name=display_name,
                avatar_ref=avatar_ref,
                balance=starting,
                account_type=AccountType.TRIAL,
                is_admin=is_admin,
                last_login_at=now,
                created_at=now,
                updated_at=now,
            )
            try:
                await wallet.insert()
            except DuplicateKeyError:
                # Concurrent first login created it; fall through to the existing-wallet path.
                wallet = await Wallet.find_one(Wallet.user_id == user_id)
            else:
                log.info("wallet_created", user_id=user_id, balance=starting, is_admin=is_admin)
                if starting > 0:
                    await self._record(
                        wallet,
                        amount=starting,
                        balance_after=starting,
                        kind=TransactionKind.CREDIT,
                        description="Welcome Bonus (Admin)" if is_admin else "Welcome Bonus",
                        idempotency_key=f"welcome:{user_id}",
                    )
                return wallet

        fields: dict[Any, Any] = {Wallet.last_login_at: now}
        if is_admin and not wallet.is_admin:
            fields[Wallet.is_admin] = True
            log.info("wallet_promoted_admin", user_id=user_id)
        updated = await Wallet.find_one(Wallet.user_id == user_id).update(
            Set(fields), response_type=UpdateResponse.NEW_DOCUMENT
        )
        return updated or wallet

    @storage_guard
    async def get_profile(self, user_id: str) -> Wallet:
        wallet = await Wallet.find_one(Wallet.user_id == user_id)
        if wallet is None:
            raise NotFoundError("Wallet not found")
        return wallet

    async def get_balance(self, user_id: str) -> int:
        return (await self.get_profile(user_id)).balance

    @storage_guard
    async def subscribe_to_balance(self, user_id: str, on_change: BalanceHandler) -> BalanceSubscription:
        """
        Observe balance changes of user_id. The current balance is delivered
        right away when the wallet exists. Close the returned subscription to stop.
        """
        sub = self.hub.subscribe(user_id, on_change)
        try:
            wallet = await Wallet.find_one(Wallet.user_id == user_id)
        except Exception:
            sub.close()
            raise
        if wallet is not None:
            await self.hub.deliver(sub, wallet.balance)
        return sub

    # -- debits ------------------------------------------------------------

    @storage_guard
    async def deduct_points(
        self,
        user_id: str,
        amount: int,
        description: str,
        order_id: str,
        count: int = 1,
    ) -> WalletTransaction:
        """
        Debit `amount` points for `order_id`.

        Raises InsufficientFundsError, DailyLimitError or CooldownError with the
        wallet unchanged. A repeated call for an already-charged order returns
        the existing debit instead of charging twice.
        """
        if amount < 0:
            raise BadRequestError("Amount must be non-negative")
        if count < 1:
            raise BadRequestError("Count must be at least 1")

        existing = await self.get_debit_for_order(order_id)
        if existing is not None:
            log.info("deduction_already_applied", user_id=user_id, order_id=order_id)
            return existing

        before, wallet = await self._apply_debit(user_id, amount, count)
        try:
            entry = await self._record(
                wallet,
                amount=-amount,
                balance_after=wallet.balance,
                kind=TransactionKind.DEBIT,
                description=description,
                order_id=order_id,
                idempotency_key=debit_key(order_id),
            )
        except DuplicateKeyError:
            # Same order charged concurrently by another call: keep theirs, undo ours.
            await self._reverse_debit(before, wallet, amount, count)
            log.warning("deduction_duplicate_reversed", user_id=user_id, order_id=order_id)
            existing = await self.get_debit_for_order(order_id)
            if existing is None:
                raise ConflictError("Deduction for this order is in progress")
            return existing
        except Exception:
            await self._reverse_debit(before, wallet, amount, count)
            raise

        log.info(
            "points_deducted",
            user_id=user_id,
            order_id=order_id,
            amount=amount,
            balance_after=wallet.balance,
        )
        await self.hub.publish(user_id, wallet.balance)
        return entry

    async def _apply_debit(self, user_id: str, amount: int, count: int) -> tuple[Wallet, Wallet]:
        """
        Conditional debit, returning the wallet (before, after). A lost update
        means another write landed first, so re-read and re-check until the
        debit applies or a funds/policy check rejects it.
        """
        for attempt in itertools.count(1):
            wallet = await Wallet.find_one(Wallet.user_id == user_id)
            if wallet is None:
                raise NotFoundError("Wallet not found")
            if wallet.is_disabled:
                raise ForbiddenError("Account disabled")
            now = self.clock()
            try:
                if wallet.balance < amount:
                    raise InsufficientFundsError(wallet.balance, amount)
                usage = check_usage(wallet, count, now, limits_for(wallet, self.settings.usage_limits))
            except DeductionError as e:
                log.info("deduction_rejected", user_id=user_id, kind=e.kind.value, amount=amount, details=e.details)
                raise
            updated = await Wallet.find_one(
                Wallet.user_id == user_id,
                Wallet.version == wallet.version,
                Wallet.balance >= amount,
            ).update(
                Inc({Wallet.balance: -amount, Wallet.version: 1}),
                Set({
                    Wallet.daily_usage_count: usage.daily_usage_count,
                    Wallet.last_reset_date: usage.last_reset_date,
                    Wallet.last_usage_at: usage.last_usage_at,
                    Wallet.updated_at: now,
                }),
                response_type=UpdateResponse.NEW_DOCUMENT,
            )
            if updated is not None:
                return wallet, updated
            log.debug("deduction_conflict_retry", user_id=user_id, attempt=attempt)
        raise AssertionError("unreachable")

    async def _reverse_debit(self, before: Wallet, after: Wallet, amount: int, count: int) -> None:
        """
        Undo a debit whose ledger entry could not be written. If nothing else
        wrote the wallet since, the usage counters are restored exactly;
        otherwise a later write owns them and only balance and count go back.
        """
        user_id = after.user_id
        try:
            restored = await Wallet.find_one(
                Wallet.user_id == user_id,
                Wallet.version == after.version,
            ).update(
                Inc({Wallet.balance: amount, Wallet.version: 1}),
                Set({
                    Wallet.daily_usage_count: before.daily_usage_count,
                    Wallet.last_reset_date: before.last_reset_date,
                    Wallet.last_usage_at: before.last_usage_at,
                    Wallet.updated_at: self.clock(),
                }),
                response_type=UpdateResponse.NEW_DOCUMENT,
            )
            if restored is None:
                await Wallet.find_one(Wallet.user_id == user_id).update(
                    Inc({Wallet.balance: amount, Wallet.version: 1, Wallet.daily_usage_count: -count}),
                    Set({Wallet.updated_at: self.clock()}),
                )
        except Exception:
            log.exception("deduction_reversal_failed", user_id=user_id, amount=amount)
            raise

    # -- credits -----------------------------------------------------------

    @storage_guard
    async def credit_points(
        self,
        user_id: str,
        amount: int,
        description: str,
        kind: TransactionKind = TransactionKind.CREDIT,
        order_id: str | None = None,
        idempotency_key: str | None = None,
        plan_type: PlanType | None = None,
    ) -> WalletTransaction:
        """
        Add points (purchase, admin grant, refund). Idempotent per key.
        Passing `plan_type` also moves the wallet to a paid plan.
        """
        if amount <= 0:
            raise BadRequestError("Amount must be positive")
        if kind == TransactionKind.DEBIT:
            raise BadRequestError("Use deduct_points for debits")
        key = idempotency_key or f"{kind.value}:{uuid.uuid4()}"
        existing = await WalletTransaction.find_one(WalletTransaction.idempotency_key == key)
        if existing is not None:
            return existing

        fields: dict[Any, Any] = {Wallet.updated_at: self.clock()}
        if plan_type is not None:
            plan_type = PlanType(plan_type)
            fields[Wallet.account_type] = AccountType.PAID
            fields[Wallet.plan_type] = plan_type
        before = await Wallet.find_one(Wallet.user_id == user_id).update(
            Inc({Wallet.balance: amount, Wallet.version: 1}),
            Set(fields),
            response_type=UpdateResponse.OLD_DOCUMENT,
        )
        if before is None:
            raise NotFoundError("Wallet not found")
        balance_after = before.balance + amount
        try:
            entry = await self._record(
                before,
                amount=amount,
                balance_after=balance_after,
                kind=kind,
                description=description,
                order_id=order_id,
                idempotency_key=key,
            )
        except DuplicateKeyError:
            # Same key applied concurrently: undo ours, plan change included.
            undo: dict[Any, Any] = {Wallet.updated_at: self.clock()}
            if plan_type is not None:
                undo[Wallet.account_type] = before.account_type
                undo[Wallet.plan_type] = before.plan_type
            await Wallet.find_one(Wallet.user_id == user_id).update(
                Inc({Wallet.balance: -amount, Wallet.version: 1}),
                Set(undo),
            )
            log.warning("credit_duplicate_reversed", user_id=user_id, idempotency_key=key)
            return await WalletTransaction.find_one(WalletTransaction.idempotency_key == key)

        log.info("points_credited", user_id=user_id, amount=amount, kind=kind.value, balance_after=balance_after)
        await log_event(
            user_id,
            f"points_{kind.value}",
            "wallet",
            user_id,
            {"amount": amount, "order_id": order_id, "plan_type": plan_type.value if plan_type else None, "balance_after": balance_after},
        )
        await self.hub.publish(user_id, balance_after)
        return entry

    # -- admin -------------------------------------------------------------

    @storage_guard
    async def set_disabled(self, user_id: str, disabled: bool) -> Wallet:
        """Ban or unban a wallet. A disabled wallet cannot be debited."""
        wallet = await Wallet.find_one(Wallet.user_id == user_id).update(
            Set({Wallet.is_disabled: disabled, Wallet.updated_at: self.clock()}),
            response_type=UpdateResponse.NEW_DOCUMENT,
        )
        if wallet is None:
            raise NotFoundError("Wallet not found")
        log.info("wallet_status_changed", user_id=user_id, is_disabled=disabled)
        return wallet

    @storage_guard
    async def downgrade_to_trial(self, user_id: str) -> Wallet:
        """Back to the trial plan. The balance is kept."""
        wallet = await Wallet.find_one(Wallet.user_id == user_id).update(
            Set({
                Wallet.account_type: AccountType.TRIAL,
                Wallet.plan_type: None,
                Wallet.updated_at: self.clock(),
            }),
            response_type=UpdateResponse.NEW_DOCUMENT,
        )
        if wallet is None:
            raise NotFoundError("Wallet not found")
        log.info("wallet_downgraded", user_id=user_id)
        return wallet

    @storage_guard
    async def list_wallets(self, limit: int = 50, offset: int = 0) -> list[Wallet]:
        """All wallets, newest first."""
        return await Wallet.find_all().sort(-Wallet.created_at).skip(offset).limit(limit).to_list()

    async def refund_order(self, order: Order, reason: str = "") -> WalletTransaction | None:
        """Give back the cost of a charged order. No-op when nothing was charged."""
        order_id = str(order.id)
        if await self.get_debit_for_order(order_id) is None or order.cost == 0:
            return None
        return await self.credit_points(
            order.user_id,
            order.cost,
            reason or f"Refund for order {order_id}",
            kind=TransactionKind.REFUND,
            order_id=order_id,
            idempotency_key=refund_key(order_id),
        )

    # -- history -----------------------------------------------------------

    @storage_guard
    async def get_debit_for_order(self, order_id: str) -> WalletTransaction | None:
        return await WalletTransaction.find_one(WalletTransaction.idempotency_key == debit_key(order_id))

    @storage_guard
    async def get_transactions(self, user_id: str, limit: int = 50, offset: int = 0) -> list[WalletTransaction]:
        """Ledger entries of user_id, newest first."""
        return (
            await WalletTransaction.find(WalletTransaction.user_id == user_id)
            .sort(-WalletTransaction.created_at)
            .skip(offset)
            .limit(limit)
            .to_list()
        )

    async def _record(
        self,
        wallet: Wallet,
        *,
        amount: int,
        balance_after: int,
        kind: TransactionKind,
        description: str,
        idempotency_key: str,
        order_id: str | None = None,
    ) -> WalletTransaction:
        entry = WalletTransaction(
            user_id=wallet.user_id,
            amount=amount,
            balance_after=balance_after,
            kind=kind,
            description=description,
            order_id=order_id,
            idempotency_key=idempotency_key,
            created_at=self.clock(),
        )
        await entry.insert()
        return entry
