"""Table lookups shared by the ledger operations and the HTTP handlers.

Functions taking ``lock=True`` issue ``SELECT ... FOR UPDATE`` and refresh any
copy of the row already held by the session, so balance and stock checks read
the committed value of a row no other transaction can change until commit.
"""

from __future__ import annotations

import datetime as dt
from decimal import Decimal
from typing import Optional

from sqlalchemy import Select, case, exists, func, or_, select
from sqlalchemy.orm import Session

from pos_ledger.models import (
    Account,
    CapitalHistory,
    Expense,
    Product,
    Purchase,
    Transaction,
)

CENT = Decimal("0.01")


def _locked(stmt: Select) -> Select:
    return stmt.with_for_update().execution_options(populate_existing=True)


def by_id_stmt(model, row_id: int, lock: bool = False) -> Select:
    stmt = select(model).where(model.id == row_id)
    return _locked(stmt) if lock else stmt


def product_stmt(product_id: int, lock: bool = False) -> Select:
    return by_id_stmt(Product, product_id, lock)


def account_stmt(account_id: int, lock: bool = False) -> Select:
    return by_id_stmt(Account, account_id, lock)


def get_product(db: Session, product_id: int, lock: bool = False) -> Optional[Product]:
    return db.scalar(product_stmt(product_id, lock))


def get_account(db: Session, account_id: int, lock: bool = False) -> Optional[Account]:
    return db.scalar(account_stmt(account_id, lock))


def get_transaction(db: Session, transaction_id: int, lock: bool = False) -> Optional[Transaction]:
    return db.scalar(by_id_stmt(Transaction, transaction_id, lock))


def get_purchase(db: Session, purchase_id: int, lock: bool = False) -> Optional[Purchase]:
    return db.scalar(by_id_stmt(Purchase, purchase_id, lock))


def get_expense(db: Session, expense_id: int, lock: bool = False) -> Optional[Expense]:
    return db.scalar(by_id_stmt(Expense, expense_id, lock))


def find_product_by_name(
    db: Session, name: str, lock: bool = False, ignore_case: bool = False
) -> Optional[Product]:
    if ignore_case:
        stmt = select(Product).where(func.lower(Product.name) == name.lower())
    else:
        stmt = select(Product).where(Product.name == name)
    if lock:
        stmt = _locked(stmt)
    return db.scalars(stmt.order_by(Product.id)).first()


def find_account_by_name(db: Session, name: str, lock: bool = False) -> Optional[Account]:
    stmt = select(Account).where(Account.name == name)
    if lock:
        stmt = _locked(stmt)
    return db.scalar(stmt)


def add_capital_entry(
    db: Session, amount: Decimal, on: dt.date, description: Optional[str] = None
) -> Optional[CapitalHistory]:
    """Append a capital movement; positive ``amount`` is an add, negative a subtract."""
    if amount == 0:
        return None
    entry = CapitalHistory(
        amount=abs(amount),
        date=on,
        type="add" if amount > 0 else "subtract",
        description=description,
    )
    db.add(entry)
    return entry


def total_capital(db: Session) -> Decimal:
    signed = case(
        (CapitalHistory.type == "add", CapitalHistory.amount),
        else_=-CapitalHistory.amount,
    )
    value = db.scalar(select(func.coalesce(func.sum(signed), 0)))
    return Decimal(str(value or 0)).quantize(CENT)


def product_is_referenced(db: Session, product_id: int) -> bool:
    in_transactions = exists().where(Transaction.product_id == product_id)
    in_purchases = exists().where(Purchase.product_id == product_id)
    return bool(db.scalar(select(or_(in_transactions, in_purchases))))


def account_is_referenced(db: Session, account_id: int) -> bool:
    in_transactions = exists().where(
        or_(Transaction.account_id == account_id, Transaction.reserve_account_id == account_id)
    )
    in_purchases = exists().where(Purchase.account_id == account_id)
    in_expenses = exists().where(Expense.account_id == account_id)
    return bool(db.scalar(select(or_(in_transactions, in_purchases, in_expenses))))


def list_transactions(
    db: Session, start: Optional[dt.date] = None, end: Optional[dt.date] = None
) -> list[Transaction]:
    stmt = select(Transaction)
    if start is not None and end is not None:
        stmt = stmt.where(Transaction.date.between(start, end))
    return list(db.scalars(stmt.order_by(Transaction.date.desc(), Transaction.id.desc())))


def list_expenses(
    db: Session, start: Optional[dt.date] = None, end: Optional[dt.date] = None
) -> list[Expense]:
    stmt = select(Expense)
    if start is not None and end is not None:
        stmt = stmt.where(Expense.date.between(start, end))
    return list(db.scalars(stmt.order_by(Expense.date.desc(), Expense.id.desc())))


def list_products(db: Session, search: Optional[str] = None) -> list[Product]:
    stmt = select(Product)
    if search:
        stmt = stmt.where(Product.name.ilike(f"%{search}%"))
    return list(db.scalars(stmt.order_by(Product.name.asc())))


def list_accounts(db: Session) -> list[Account]:
    return list(db.scalars(select(Account).order_by(Account.name.asc())))


def list_purchases(db: Session) -> list[tuple[Purchase, str]]:
    stmt = (
        select(Purchase, Product.name)
        .join(Product, Product.id == Purchase.product_id)
        .order_by(Purchase.date.desc(), Purchase.id.desc())
    )
    return [(purchase, name) for purchase, name in db.execute(stmt)]
