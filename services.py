from __future__ import annotations

import logging
import math
import uuid
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.orm import Session, joinedload, selectinload

from balances import apply_transaction, revert_transaction
from config import get_settings
from csv_utils import export_transactions, parse_csv
from models import (
    Account,
    AccountType,
    Budget,
    BudgetPeriod,
    Invoice,
    InvoiceItem,
    InvoiceStatus,
    PasswordResetToken,
    Role,
    Transaction,
    TransactionType,
    User,
)
from periods import Period, current_window, local_now, local_today
from schemas import (
    AccountIn,
    AlertLevel,
    BudgetIn,
    InvoiceIn,
    InvoiceItemIn,
    RegisterIn,
    TransactionIn,
)
from security import generate_access_token, hash_password, verify_password


logger = logging.getLogger(__name__)

INVOICE_PAYMENT_CATEGORY = "Invoice Payment"
WARNING_RATIO = Decimal("0.70")
DANGER_RATIO = Decimal("0.90")
CENT = Decimal("0.01")


class NotFoundError(ValueError):
    pass


class ConflictError(ValueError):
    pass


class ForbiddenError(ValueError):
    pass


class AuthError(ValueError):
    pass


class CSVImportError(ValueError):
    def __init__(self, errors: list[str]) -> None:
        super().__init__("Import completed with errors")
        self.errors = errors


def owned_by(model: type, user_id: int):
    """Ownership predicate: does a row of ``model`` belong to ``user_id``."""
    if model in (Account, Budget):
        return model.user_id == user_id
    if model in (Transaction, Invoice):
        return model.account.has(Account.user_id == user_id)
    raise TypeError(f"{model.__name__} is not owner-scoped")


def get_owned(session: Session, model: type, entity_id: int, user_id: int):
    entity = session.scalar(
        select(model).where(model.id == entity_id, owned_by(model, user_id))
    )
    if entity is None:
        raise NotFoundError(f"{model.__name__} not found")
    return entity


def require_role(user: User, *roles: Role) -> None:
    if user.role not in roles:
        raise ForbiddenError("Insufficient role for this operation")


def _page_count(total: int, size: int) -> int:
    return math.ceil(total / size) if size else 0


@dataclass
class TransactionFilters:
    account_id: Optional[int] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    category: Optional[str] = None
    type: Optional[TransactionType] = None


@dataclass
class InvoiceFilters:
    status: Optional[InvoiceStatus] = None
    client_name: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None


@dataclass(frozen=True)
class Page:
    items: list
    current_page: int
    total_items: int
    total_pages: int


class AuthService:
    def __init__(self, session: Session) -> None:
        self.session = session
        self.settings = get_settings()

    def register(self, data: RegisterIn) -> User:
        if self.session.scalar(select(User.id).where(User.username == data.username)):
            raise ConflictError("Username is already taken")
        if self.session.scalar(
            select(User.id).where(func.lower(User.email) == data.email.lower())
        ):
            raise ConflictError("Email is already in use")
        user = User(
            username=data.username,
            email=data.email,
            password_hash=hash_password(data.password),
            role=data.role,
        )
        self.session.add(user)
        self.session.commit()
        self.session.refresh(user)
        logger.info(f"user_registered: user_id={user.id} role={user.role.value}")
        return user

    def authenticate(self, username: str, password: str) -> User:
        user = self.session.scalar(select(User).where(User.username == username))
        if not user or not verify_password(password, user.password_hash):
            logger.info(f"login_failed: username={username}")
            raise AuthError("Invalid username or password")
        return user

    def login(self, username: str, password: str) -> tuple[User, str]:
        user = self.authenticate(username, password)
        return user, generate_access_token(user.id)

    def request_password_reset(self, email: str) -> Optional[PasswordResetToken]:
        user = self.session.scalar(
            select(User).where(func.lower(User.email) == email.lower())
        )
        if not user:
            return None
        existing = self.session.scalar(
            select(PasswordResetToken).where(PasswordResetToken.user_id == user.id)
        )
        if existing:
            self.session.delete(existing)
            self.session.flush()
        reset = PasswordResetToken(
            user_id=user.id,
            token=str(uuid.uuid4()),
            expires_at=local_now() + timedelta(hours=self.settings.reset_token_hours),
        )
        self.session.add(reset)
        self.session.commit()
        self.session.refresh(reset)
        logger.info(f"password_reset_requested: user_id={user.id}")
        return reset

    def reset_password(self, token: str, password: str) -> None:
        reset = self.session.scalar(
            select(PasswordResetToken)
            .options(joinedload(PasswordResetToken.user))
            .where(PasswordResetToken.token == token)
        )
        if not reset or reset.is_expired(local_now()):
            raise ValueError("Invalid or expired token")
        user_id = reset.user_id
        reset.user.password_hash = hash_password(password)
        self.session.delete(reset)
        self.session.commit()
        logger.info(f"password_reset_completed: user_id={user_id}")


class AccountService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _name_taken(self, name: str) -> bool:
        return bool(
            self.session.scalar(
                select(Account.id).where(
                    Account.user_id == self.user_id, Account.name == name
                )
            )
        )

    def create(self, data: AccountIn) -> Account:
        name = data.name.strip()
        if self._name_taken(name):
            raise ConflictError("Account with this name already exists")
        account = Account(
            user_id=self.user_id,
            name=name,
            type=data.type,
            balance=data.initial_balance,
        )
        self.session.add(account)
        self.session.commit()
        self.session.refresh(account)
        return account

    def get(self, account_id: int) -> Account:
        return get_owned(self.session, Account, account_id, self.user_id)

    def list_all(self, account_type: Optional[AccountType] = None) -> list[Account]:
        stmt = (
            select(Account)
            .where(owned_by(Account, self.user_id))
            .order_by(Account.name, Account.id)
        )
        if account_type:
            stmt = stmt.where(Account.type == account_type)
        return self.session.scalars(stmt).all()

    def rename(self, account_id: int, name: str) -> Account:
        account = self.get(account_id)
        name = name.strip()
        if account.name != name and self._name_taken(name):
            raise ConflictError("Account with this name already exists")
        account.name = name
        self.session.commit()
        self.session.refresh(account)
        return account

    def delete(self, account_id: int, actor: User) -> None:
        require_role(actor, Role.owner)
        account = self.get(account_id)
        referenced = self.session.scalar(
            select(func.count(Transaction.id)).where(
                Transaction.account_id == account.id
            )
        ) or self.session.scalar(
            select(func.count(Invoice.id)).where(Invoice.account_id == account.id)
        )
        if referenced:
            raise ConflictError("Account has transactions or invoices and cannot be deleted")
        self.session.delete(account)
        self.session.commit()
        logger.info(f"account_deleted: user_id={self.user_id} account_id={account_id}")


class TransactionService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def create(self, data: TransactionIn) -> Transaction:
        account = get_owned(self.session, Account, data.account_id, self.user_id)
        txn = Transaction(
            account_id=account.id,
            amount=data.amount,
            type=data.type,
            category=data.category,
            date=data.date,
            description=data.description,
        )
        apply_transaction(account, data.type, data.amount)
        self.session.flush()
        self.session.add(txn)
        self.session.commit()
        self.session.refresh(txn)
        return txn

    def get(self, transaction_id: int) -> Transaction:
        return get_owned(self.session, Transaction, transaction_id, self.user_id)

    def _filtered(self, filters: TransactionFilters):
        stmt = select(Transaction).where(owned_by(Transaction, self.user_id))
        if filters.account_id is not None:
            account = get_owned(
                self.session, Account, filters.account_id, self.user_id
            )
            stmt = stmt.where(Transaction.account_id == account.id)
        if filters.start_date:
            stmt = stmt.where(Transaction.date >= filters.start_date)
        if filters.end_date:
            stmt = stmt.where(Transaction.date <= filters.end_date)
        if filters.category:
            stmt = stmt.where(Transaction.category == filters.category)
        if filters.type:
            stmt = stmt.where(Transaction.type == filters.type)
        return stmt

    def list(
        self, filters: TransactionFilters, page: int = 0, size: int = 10
    ) -> Page:
        stmt = self._filtered(filters)
        total = self.session.scalar(
            select(func.count()).select_from(stmt.subquery())
        ) or 0
        items = self.session.scalars(
            stmt.order_by(Transaction.date.desc(), Transaction.id.desc())
            .offset(page * size)
            .limit(size)
        ).all()
        return Page(
            items=list(items),
            current_page=page,
            total_items=total,
            total_pages=_page_count(total, size),
        )

    def all_for_period(self, filters: TransactionFilters) -> list[Transaction]:
        stmt = (
            self._filtered(filters)
            .options(joinedload(Transaction.account))
            .order_by(Transaction.date.desc(), Transaction.id.desc())
        )
        return self.session.scalars(stmt).all()

    def update(self, transaction_id: int, data: TransactionIn) -> Transaction:
        txn = self.get(transaction_id)
        old_account = txn.account
        new_account = (
            old_account
            if data.account_id == old_account.id
            else get_owned(self.session, Account, data.account_id, self.user_id)
        )

        changed = (
            new_account.id != old_account.id
            or txn.amount != data.amount
            or txn.type != data.type
        )
        if changed:
            revert_transaction(old_account, txn.type, txn.amount)
            apply_transaction(new_account, data.type, data.amount)
            self.session.flush()

        txn.account = new_account
        txn.amount = data.amount
        txn.type = data.type
        txn.category = data.category
        txn.date = data.date
        txn.description = data.description
        self.session.commit()
        self.session.refresh(txn)
        return txn

    def delete(self, transaction_id: int) -> None:
        txn = self.get(transaction_id)
        account = txn.account
        revert_transaction(account, txn.type, txn.amount)
        self.session.flush()
        self.session.delete(txn)
        self.session.commit()


def percent_used(spent: Decimal, amount: Decimal) -> Decimal:
    """Spent/amount ratio (1 == 100%). A zero budget is fully used once anything is spent."""
    if amount == 0:
        return Decimal("1") if spent > 0 else Decimal("0")
    return spent / amount


def alert_level(ratio: Decimal) -> AlertLevel:
    if ratio >= DANGER_RATIO:
        return AlertLevel.danger
    if ratio >= WARNING_RATIO:
        return AlertLevel.warning
    return AlertLevel.ok


@dataclass(frozen=True)
class BudgetStatus:
    budget: Budget
    window: Period
    spent: Decimal
    remaining: Decimal
    ratio: Decimal

    @property
    def percent_used(self) -> float:
        return float(self.ratio * 100)

    @property
    def alert_level(self) -> AlertLevel:
        return alert_level(self.ratio)


class BudgetService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def spend(
        self,
        accounts: Sequence[Account],
        category: str,
        window: Period,
        txn_type: TransactionType = TransactionType.expense,
    ) -> Decimal:
        total = Decimal("0")
        for account in accounts:
            partial = self.session.scalar(
                select(func.coalesce(func.sum(Transaction.amount), 0)).where(
                    Transaction.account_id == account.id,
                    Transaction.type == txn_type,
                    Transaction.category == category,
                    Transaction.date.between(window.start, window.end),
                )
            )
            total += Decimal(str(partial or 0))
        return total

    def _accounts(self) -> list[Account]:
        return self.session.scalars(
            select(Account).where(owned_by(Account, self.user_id))
        ).all()

    def status(
        self,
        budget: Budget,
        *,
        now: Optional[datetime] = None,
        accounts: Optional[Sequence[Account]] = None,
    ) -> BudgetStatus:
        window = current_window(budget.period, now)
        if accounts is None:
            accounts = self._accounts()
        spent = self.spend(accounts, budget.category, window)
        return BudgetStatus(
            budget=budget,
            window=window,
            spent=spent,
            remaining=budget.amount - spent,
            ratio=percent_used(spent, budget.amount),
        )

    def create(self, data: BudgetIn) -> Budget:
        category = data.category.strip()
        existing = self.session.scalar(
            select(Budget.id).where(
                Budget.user_id == self.user_id,
                Budget.category == category,
                Budget.period == data.period,
            )
        )
        if existing:
            raise ConflictError("Budget for this category and period already exists")
        budget = Budget(
            user_id=self.user_id,
            category=category,
            amount=data.amount,
            period=data.period,
        )
        self.session.add(budget)
        self.session.commit()
        self.session.refresh(budget)
        return budget

    def get(self, budget_id: int) -> Budget:
        return get_owned(self.session, Budget, budget_id, self.user_id)

    def list_all(self, period: Optional[BudgetPeriod] = None) -> list[Budget]:
        stmt = (
            select(Budget)
            .where(owned_by(Budget, self.user_id))
            .order_by(Budget.category, Budget.id)
        )
        if period:
            stmt = stmt.where(Budget.period == period)
        return self.session.scalars(stmt).all()

    def statuses(
        self, period: Optional[BudgetPeriod] = None, *, now: Optional[datetime] = None
    ) -> list[BudgetStatus]:
        accounts = self._accounts()
        now = now or local_now()
        return [
            self.status(budget, now=now, accounts=accounts)
            for budget in self.list_all(period)
        ]

    def alerts(self, *, now: Optional[datetime] = None) -> list[BudgetStatus]:
        return [s for s in self.statuses(now=now) if s.ratio >= WARNING_RATIO]

    def update_amount(self, budget_id: int, amount: Decimal) -> Budget:
        budget = self.get(budget_id)
        budget.amount = amount
        self.session.commit()
        self.session.refresh(budget)
        return budget

    def delete(self, budget_id: int) -> None:
        budget = self.get(budget_id)
        self.session.delete(budget)
        self.session.commit()


class InvoiceService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    @staticmethod
    def _build_items(items: Sequence[InvoiceItemIn]) -> list[InvoiceItem]:
        return [
            InvoiceItem(
                position=idx,
                description=item.description,
                quantity=item.quantity,
                unit_price=item.unit_price,
            )
            for idx, item in enumerate(items)
        ]

    def create(self, data: InvoiceIn) -> Invoice:
        account = get_owned(self.session, Account, data.account_id, self.user_id)
        invoice = Invoice(
            account_id=account.id,
            client_name=data.client_name,
            client_email=data.client_email,
            due_date=data.due_date,
            status=InvoiceStatus.draft,
            items=self._build_items(data.items),
        )
        self.session.add(invoice)
        self.session.commit()
        self.session.refresh(invoice)
        return invoice

    def get(self, invoice_id: int) -> Invoice:
        return get_owned(self.session, Invoice, invoice_id, self.user_id)

    def list(self, filters: InvoiceFilters, page: int = 0, size: int = 10) -> Page:
        stmt = select(Invoice).where(owned_by(Invoice, self.user_id))
        if filters.status:
            stmt = stmt.where(Invoice.status == filters.status)
        if filters.client_name:
            like = f"%{filters.client_name.lower()}%"
            stmt = stmt.where(func.lower(Invoice.client_name).like(like))
        if filters.start_date:
            stmt = stmt.where(Invoice.due_date >= filters.start_date)
        if filters.end_date:
            stmt = stmt.where(Invoice.due_date <= filters.end_date)
        total = self.session.scalar(
            select(func.count()).select_from(stmt.subquery())
        ) or 0
        items = self.session.scalars(
            stmt.options(selectinload(Invoice.items), joinedload(Invoice.account))
            .order_by(Invoice.due_date.desc(), Invoice.id.desc())
            .offset(page * size)
            .limit(size)
        ).all()
        return Page(
            items=list(items),
            current_page=page,
            total_items=total,
            total_pages=_page_count(total, size),
        )

    def overdue(self, today: Optional[date] = None) -> list[Invoice]:
        today = today or local_today()
        stmt = (
            select(Invoice)
            .options(selectinload(Invoice.items), joinedload(Invoice.account))
            .where(
                owned_by(Invoice, self.user_id),
                Invoice.status.in_([InvoiceStatus.sent, InvoiceStatus.overdue]),
                Invoice.due_date < today,
            )
            .order_by(Invoice.due_date.asc(), Invoice.id.asc())
        )
        return self.session.scalars(stmt).all()

    def update(self, invoice_id: int, data: InvoiceIn) -> Invoice:
        invoice = self.get(invoice_id)
        if invoice.status == InvoiceStatus.paid:
            raise ConflictError("Paid invoices cannot be edited")
        if data.account_id != invoice.account_id:
            invoice.account = get_owned(
                self.session, Account, data.account_id, self.user_id
            )
        invoice.client_name = data.client_name
        invoice.client_email = data.client_email
        invoice.due_date = data.due_date
        invoice.items.clear()
        self.session.flush()
        invoice.items.extend(self._build_items(data.items))
        self.session.commit()
        self.session.refresh(invoice)
        return invoice

    def set_status(self, invoice_id: int, status: InvoiceStatus) -> Invoice:
        invoice = self.get(invoice_id)
        if status == InvoiceStatus.paid and invoice.status != InvoiceStatus.paid:
            account = invoice.account
            # line totals are exact; the posted payment is rounded once to cents
            total = invoice.total.quantize(CENT, rounding=ROUND_HALF_UP)
            payment = Transaction(
                account_id=account.id,
                amount=total,
                type=TransactionType.income,
                category=INVOICE_PAYMENT_CATEGORY,
                date=local_now(),
                description=f"Payment for invoice #{invoice.id} from {invoice.client_name}",
            )
            apply_transaction(account, TransactionType.income, total)
            self.session.flush()
            self.session.add(payment)
            logger.info(
                f"invoice_paid: invoice_id={invoice.id} account_id={account.id} "
                f"amount={total}"
            )
        invoice.status = status
        self.session.commit()
        self.session.refresh(invoice)
        return invoice

    def delete(self, invoice_id: int) -> None:
        invoice = self.get(invoice_id)
        if invoice.status != InvoiceStatus.draft:
            raise ValueError("Only draft invoices can be deleted")
        self.session.delete(invoice)
        self.session.commit()


def _group_by_category(transactions: Sequence[Transaction]) -> dict[str, Decimal]:
    totals: dict[str, Decimal] = defaultdict(lambda: Decimal("0"))
    for txn in transactions:
        totals[txn.category] += txn.amount
    return dict(sorted(totals.items()))


class ReportService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _accounts(self) -> list[Account]:
        return self.session.scalars(
            select(Account)
            .where(owned_by(Account, self.user_id))
            .order_by(Account.name, Account.id)
        ).all()

    def _transactions(self, period: Period) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(
                owned_by(Transaction, self.user_id),
                Transaction.date.between(period.start, period.end),
            )
            .order_by(Transaction.date.desc(), Transaction.id.desc())
        )
        return self.session.scalars(stmt).all()

    def balance_as_of(self, account: Account, as_of: datetime) -> Decimal:
        """Replay the ledger backwards: current balance minus everything dated after ``as_of``."""
        later = self.session.execute(
            select(Transaction.type, func.coalesce(func.sum(Transaction.amount), 0))
            .where(Transaction.account_id == account.id, Transaction.date > as_of)
            .group_by(Transaction.type)
        ).all()
        balance = account.balance
        for txn_type, amount in later:
            amount = Decimal(str(amount))
            if txn_type == TransactionType.income:
                balance -= amount
            else:
                balance += amount
        return balance

    def balance_sheet(self, as_of: Optional[datetime] = None) -> dict[str, object]:
        as_of = as_of or local_now()
        assets: list[dict[str, object]] = []
        liabilities: list[dict[str, object]] = []
        for account in self._accounts():
            row = {
                "account_id": account.id,
                "account_name": account.name,
                "balance": self.balance_as_of(account, as_of),
            }
            if account.type == AccountType.asset:
                assets.append(row)
            else:
                liabilities.append(row)
        total_assets = sum((row["balance"] for row in assets), Decimal("0"))
        total_liabilities = sum((row["balance"] for row in liabilities), Decimal("0"))
        return {
            "as_of_date": as_of,
            "assets": assets,
            "liabilities": liabilities,
            "total_assets": total_assets,
            "total_liabilities": total_liabilities,
            "equity": total_assets - total_liabilities,
        }

    def profit_and_loss(self, period: Period) -> dict[str, object]:
        transactions = self._transactions(period)
        revenue = _group_by_category(
            [t for t in transactions if t.type == TransactionType.income]
        )
        expenses = _group_by_category(
            [t for t in transactions if t.type == TransactionType.expense]
        )
        total_revenue = sum(revenue.values(), Decimal("0"))
        total_expenses = sum(expenses.values(), Decimal("0"))
        return {
            "start_date": period.start,
            "end_date": period.end,
            "revenue": [{"category": k, "amount": v} for k, v in revenue.items()],
            "expenses": [{"category": k, "amount": v} for k, v in expenses.items()],
            "total_revenue": total_revenue,
            "total_expenses": total_expenses,
            "net_profit": total_revenue - total_expenses,
        }

    def cash_flow(self, period: Period) -> dict[str, object]:
        transactions = self._transactions(period)
        inflows = _group_by_category(
            [t for t in transactions if t.type == TransactionType.income]
        )
        outflows = _group_by_category(
            [t for t in transactions if t.type == TransactionType.expense]
        )
        total_inflows = sum(inflows.values(), Decimal("0"))
        total_outflows = sum(outflows.values(), Decimal("0"))
        net_cash_flow = total_inflows - total_outflows
        # closing is today's asset total, not a replay to period.end
        closing_balance = sum(
            (a.balance for a in self._accounts() if a.type == AccountType.asset),
            Decimal("0"),
        )
        return {
            "start_date": period.start,
            "end_date": period.end,
            "inflows": [{"category": k, "amount": v} for k, v in inflows.items()],
            "outflows": [{"category": k, "amount": v} for k, v in outflows.items()],
            "total_inflows": total_inflows,
            "total_outflows": total_outflows,
            "net_cash_flow": net_cash_flow,
            "opening_balance": closing_balance - net_cash_flow,
            "closing_balance": closing_balance,
        }


class CSVService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def preview(self, content: str) -> tuple[list, list[str]]:
        return parse_csv(content, now=local_now())

    def commit(self, account_id: int, content: str) -> int:
        account = get_owned(self.session, Account, account_id, self.user_id)
        rows, errors = self.preview(content)
        if errors:
            raise CSVImportError(errors)
        for row in rows:
            self.session.add(
                Transaction(
                    account_id=account.id,
                    amount=row.amount,
                    type=row.type,
                    category=row.category,
                    date=row.date,
                    description=row.description,
                )
            )
            apply_transaction(account, row.type, row.amount)
        self.session.commit()
        logger.info(
            f"import_committed: user_id={self.user_id} account_id={account.id} "
            f"rows={len(rows)}"
        )
        return len(rows)

    def export(self, transactions: list[Transaction]) -> str:
        return export_transactions(transactions)
