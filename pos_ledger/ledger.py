"""Ledger operations.

Every operation here describes its consequences as a list of effects (stock
moved on a product, money moved on an account, capital added or subtracted)
and hands them to :func:`apply_effects`. Undoing an operation is applying the
same effects inverted, so a reversal is always the exact inverse of what the
forward operation did.

None of these functions commit. Callers wrap them in
:func:`pos_ledger.db.transaction`, which rolls back on any raised error.
"""

from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Sequence, Union
from zoneinfo import ZoneInfo

from sqlalchemy.orm import Session

from pos_ledger import repositories as repo
from pos_ledger.config import settings
from pos_ledger.errors import (
    Conflict,
    InsufficientFunds,
    InsufficientStock,
    InvalidArgument,
    NotFound,
    ValidationError,
)
from pos_ledger.models import (
    Account,
    CapitalHistory,
    Expense,
    Product,
    Purchase,
    Transaction,
)

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
SALE = "sale"
WITHDRAWAL = "withdrawal"
CAPITAL_TYPES = ("add", "subtract")


def today() -> dt.date:
    return dt.datetime.now(ZoneInfo(settings.timezone)).date()


def money(value) -> Decimal:
    """Return ``value`` as a two-place Decimal; anything finer than a cent is rejected."""
    amount = Decimal(str(value))
    exact = amount.quantize(CENT)
    if exact != amount:
        raise ValidationError(f"Amount {value} has more than two decimal places.")
    return exact


@dataclass(frozen=True)
class StockDelta:
    product_id: int
    quantity: int

    def inverted(self) -> "StockDelta":
        return StockDelta(self.product_id, -self.quantity)


@dataclass(frozen=True)
class BalanceDelta:
    account_id: int
    amount: Decimal

    def inverted(self) -> "BalanceDelta":
        return BalanceDelta(self.account_id, -self.amount)


@dataclass(frozen=True)
class CapitalDelta:
    amount: Decimal
    description: Optional[str] = None

    def inverted(self) -> "CapitalDelta":
        return CapitalDelta(-self.amount, f"reversal: {self.description or ''}".strip())


Effect = Union[StockDelta, BalanceDelta, CapitalDelta]


@dataclass(frozen=True)
class SaleLine:
    product_name: str
    quantity: int
    cost_price: Optional[Decimal] = None
    selling_price: Optional[Decimal] = None


def inverted(effects: Sequence[Effect]) -> list[Effect]:
    return [effect.inverted() for effect in effects]


def apply_effects(
    db: Session, effects: Sequence[Effect], on: Optional[dt.date] = None
) -> list[CapitalHistory]:
    """Apply stock, balance and capital effects as one unit.

    Stock and balance deltas are netted per row before any check, so a
    correction expressed as ``inverted(old) + new`` is judged on its net
    change. Rows are locked products first, then accounts, each in id order.
    Capital deltas are never netted: each one appends its own history row.
    """
    on = on or today()
    # Locked reads refresh rows from the database; pending edits must be written first.
    db.flush()
    stock: dict[int, int] = {}
    balances: dict[int, Decimal] = {}
    capital: list[CapitalDelta] = []
    for effect in effects:
        if isinstance(effect, StockDelta):
            stock[effect.product_id] = stock.get(effect.product_id, 0) + effect.quantity
        elif isinstance(effect, BalanceDelta):
            balances[effect.account_id] = balances.get(effect.account_id, Decimal(0)) + effect.amount
        else:
            capital.append(effect)

    for product_id in sorted(stock):
        product = repo.get_product(db, product_id, lock=True)
        if product is None:
            raise NotFound(f"Product {product_id} not found.")
        new_stock = product.stock + stock[product_id]
        if new_stock < 0:
            logger.warning(
                "insufficient stock product=%s stock=%s delta=%s",
                product.name,
                product.stock,
                stock[product_id],
            )
            raise InsufficientStock(f"Insufficient stock for product {product.name}.")
        product.stock = new_stock

    for account_id in sorted(balances):
        account = repo.get_account(db, account_id, lock=True)
        if account is None:
            raise NotFound(f"Account {account_id} not found.")
        delta = money(balances[account_id])
        if delta < 0 and account.balance < -delta:
            logger.warning(
                "insufficient funds account=%s balance=%s delta=%s",
                account.name,
                account.balance,
                delta,
            )
            raise InsufficientFunds(f"Insufficient funds in account {account.name}.")
        account.balance = money(account.balance + delta)

    entries = []
    for effect in capital:
        entry = repo.add_capital_entry(db, money(effect.amount), on, effect.description)
        if entry is not None:
            entries.append(entry)
    db.flush()
    return entries


def _positive_amount(value, field: str) -> Decimal:
    if value is None:
        raise ValidationError(f"{field} is required.")
    amount = money(value)
    if amount <= 0:
        raise ValidationError(f"{field} must be greater than zero.")
    return amount


def _positive_quantity(value) -> int:
    if value is None or int(value) <= 0:
        raise ValidationError("quantity must be greater than zero.")
    return int(value)


def _account_by_name(db: Session, name: str) -> Account:
    account = repo.find_account_by_name(db, name)
    if account is None:
        raise NotFound(f"Account {name} not found.")
    return account


def _reserve_account(db: Session) -> Account:
    account = repo.find_account_by_name(db, settings.reserve_account_name)
    if account is None:
        raise NotFound(f"Reserve account {settings.reserve_account_name} not found.")
    return account


def _require_transaction(db: Session, transaction_id: int) -> Transaction:
    txn = repo.get_transaction(db, transaction_id, lock=True)
    if txn is None:
        raise NotFound("Transaction not found.")
    return txn


def _resolve_product_id(db: Session, txn: Transaction) -> int:
    if txn.product_id is not None:
        return txn.product_id
    product = repo.find_product_by_name(db, txn.product_name or "", ignore_case=True)
    if product is None:
        raise NotFound("Product not found.")
    txn.product_id = product.id
    return product.id


def transaction_effects(db: Session, txn: Transaction) -> list[Effect]:
    """Rebuild the effects a stored transaction had on stock, balances and capital."""
    if txn.type == WITHDRAWAL:
        effects: list[Effect] = []
        if txn.account_id is not None:
            effects.append(BalanceDelta(txn.account_id, -txn.total))
        effects.append(CapitalDelta(-txn.total, f"withdrawal {txn.account_name}"))
        return effects

    total_cost = money(txn.cost_price * txn.quantity)
    effects = [StockDelta(_resolve_product_id(db, txn), -txn.quantity)]
    if txn.account_id is not None:
        if txn.reserve_account_id is not None:
            effects.append(BalanceDelta(txn.account_id, txn.total))
            effects.append(BalanceDelta(txn.reserve_account_id, -total_cost))
        else:
            effects.append(BalanceDelta(txn.account_id, -total_cost))
    effects.append(CapitalDelta(txn.total, f"sale {txn.product_name}"))
    return effects


def _price_sale(txn: Transaction, quantity: int, cost_price: Decimal, selling_price: Decimal) -> None:
    txn.quantity = quantity
    txn.cost_price = money(cost_price)
    txn.selling_price = money(selling_price)
    txn.profit_per_unit = money(txn.selling_price - txn.cost_price)
    txn.total = money(txn.selling_price * quantity)


def record_sale(
    db: Session,
    lines: Sequence[SaleLine],
    account_name: Optional[str] = None,
    payment_method: Optional[str] = None,
    on: Optional[dt.date] = None,
) -> list[Transaction]:
    """Sell one or more products in a single atomic step.

    Cash sales debit the cost of goods from the named account (the reserve
    account when none is named). Sales paid by a transfer method credit the
    named account with the sale total and debit the cost from the reserve.
    """
    if not lines:
        raise ValidationError("At least one item is required.")
    on = on or today()
    payment_method = payment_method or settings.default_payment_method
    account = _account_by_name(db, account_name) if account_name else _reserve_account(db)
    reserve = _reserve_account(db) if payment_method in settings.transfer_payment_methods else None

    recorded = []
    effects: list[Effect] = []
    for line in lines:
        quantity = _positive_quantity(line.quantity)
        product = repo.find_product_by_name(db, line.product_name)
        if product is None:
            raise NotFound(f"Product {line.product_name} not found.")
        cost_price = product.cost_price if line.cost_price is None else line.cost_price
        selling_price = product.price if line.selling_price is None else line.selling_price
        if money(cost_price) < 0 or money(selling_price) < 0:
            raise ValidationError("Prices must not be negative.")
        txn = Transaction(
            type=SALE,
            product_id=product.id,
            product_name=product.name,
            date=on,
            account_id=account.id,
            account_name=account.name,
            reserve_account_id=reserve.id if reserve is not None else None,
            payment_method=payment_method,
        )
        _price_sale(txn, quantity, cost_price, selling_price)
        effects.extend(transaction_effects(db, txn))
        recorded.append(txn)

    apply_effects(db, effects, on)
    db.add_all(recorded)
    db.flush()
    for txn in recorded:
        logger.info(
            "sale recorded id=%s product=%s quantity=%s total=%s account=%s method=%s",
            txn.id,
            txn.product_name,
            txn.quantity,
            txn.total,
            txn.account_name,
            txn.payment_method,
        )
    return recorded


def record_withdrawal(
    db: Session,
    account_name: str,
    amount,
    description: Optional[str] = None,
    on: Optional[dt.date] = None,
) -> Transaction:
    if not account_name:
        raise ValidationError("accountName is required.")
    amount = _positive_amount(amount, "amount")
    on = on or today()
    account = _account_by_name(db, account_name)
    txn = Transaction(
        type=WITHDRAWAL,
        quantity=0,
        cost_price=Decimal(0),
        selling_price=Decimal(0),
        profit_per_unit=Decimal(0),
        total=amount,
        date=on,
        account_id=account.id,
        account_name=account.name,
        description=description,
    )
    apply_effects(db, transaction_effects(db, txn), on)
    db.add(txn)
    db.flush()
    logger.info("withdrawal recorded id=%s account=%s amount=%s", txn.id, account.name, amount)
    return txn


def update_transaction(
    db: Session,
    transaction_id: int,
    quantity: Optional[int] = None,
    cost_price=None,
    selling_price=None,
    amount=None,
    description: Optional[str] = None,
    on: Optional[dt.date] = None,
) -> Transaction:
    """Correct a transaction by reversing its old effects and applying the new ones."""
    txn = _require_transaction(db, transaction_id)
    old_effects = transaction_effects(db, txn)

    if txn.type == WITHDRAWAL:
        txn.total = _positive_amount(amount, "amount")
        if description is not None:
            txn.description = description
    else:
        quantity = _positive_quantity(quantity)
        cost_price = txn.cost_price if cost_price is None else cost_price
        selling_price = txn.selling_price if selling_price is None else selling_price
        if money(cost_price) < 0 or money(selling_price) < 0:
            raise ValidationError("Prices must not be negative.")
        _price_sale(txn, quantity, cost_price, selling_price)

    apply_effects(db, inverted(old_effects) + transaction_effects(db, txn), on)
    logger.info("transaction corrected id=%s type=%s total=%s", txn.id, txn.type, txn.total)
    return txn


def delete_transaction(db: Session, transaction_id: int, on: Optional[dt.date] = None) -> Transaction:
    txn = _require_transaction(db, transaction_id)
    apply_effects(db, inverted(transaction_effects(db, txn)), on)
    db.delete(txn)
    db.flush()
    logger.info("transaction reversed id=%s type=%s total=%s", txn.id, txn.type, txn.total)
    return txn


def _purchase_effects(purchase: Purchase) -> list[Effect]:
    return [
        StockDelta(purchase.product_id, purchase.quantity),
        BalanceDelta(purchase.account_id, -purchase.total),
    ]


def record_purchase(
    db: Session,
    product_id: int,
    account_id: int,
    quantity: int,
    purchase_price,
    on: Optional[dt.date] = None,
) -> tuple[Purchase, str]:
    """Buy stock: debit the account, add the units and take the new unit cost."""
    quantity = _positive_quantity(quantity)
    purchase_price = _positive_amount(purchase_price, "purchasePrice")
    on = on or today()
    product = repo.get_product(db, product_id)
    if product is None:
        raise NotFound("Product not found.")
    if repo.get_account(db, account_id) is None:
        raise NotFound("Account not found.")
    purchase = Purchase(
        product_id=product_id,
        account_id=account_id,
        quantity=quantity,
        purchase_price=purchase_price,
        total=money(purchase_price * quantity),
        date=on,
    )
    apply_effects(db, _purchase_effects(purchase), on)
    product.cost_price = purchase_price
    db.add(purchase)
    db.flush()
    logger.info(
        "purchase recorded id=%s product=%s quantity=%s total=%s",
        purchase.id,
        product.name,
        quantity,
        purchase.total,
    )
    return purchase, product.name


def delete_purchase(
    db: Session, purchase_id: int, on: Optional[dt.date] = None
) -> tuple[Purchase, str]:
    purchase = repo.get_purchase(db, purchase_id, lock=True)
    if purchase is None:
        raise NotFound("Purchase not found.")
    product = repo.get_product(db, purchase.product_id)
    apply_effects(db, inverted(_purchase_effects(purchase)), on)
    db.delete(purchase)
    db.flush()
    logger.info("purchase reversed id=%s total=%s", purchase.id, purchase.total)
    return purchase, product.name


def _expense_effects(expense: Expense) -> list[Effect]:
    effects: list[Effect] = [CapitalDelta(-expense.amount, f"expense {expense.description}")]
    if expense.account_id is not None:
        effects.append(BalanceDelta(expense.account_id, -expense.amount))
    return effects


def record_expense(
    db: Session,
    description: str,
    amount,
    account_name: Optional[str] = None,
    on: Optional[dt.date] = None,
) -> Expense:
    if not description:
        raise ValidationError("description is required.")
    amount = _positive_amount(amount, "amount")
    on = on or today()
    account = _account_by_name(db, account_name) if account_name else None
    expense = Expense(
        description=description,
        amount=amount,
        date=on,
        account_id=account.id if account is not None else None,
    )
    apply_effects(db, _expense_effects(expense), on)
    db.add(expense)
    db.flush()
    logger.info("expense recorded id=%s amount=%s", expense.id, amount)
    return expense


def _require_expense(db: Session, expense_id: int) -> Expense:
    expense = repo.get_expense(db, expense_id, lock=True)
    if expense is None:
        raise NotFound("Expense not found.")
    return expense


def update_expense(
    db: Session,
    expense_id: int,
    description: str,
    amount,
    account_name: Optional[str] = None,
) -> Expense:
    """Restore the original amount, then charge the new one, then rewrite the row.

    Both capital movements stay in the history; they are dated with the
    expense's own date.
    """
    expense = _require_expense(db, expense_id)
    if not description:
        raise ValidationError("description is required.")
    amount = _positive_amount(amount, "amount")
    old_effects = _expense_effects(expense)
    if account_name:
        expense.account_id = _account_by_name(db, account_name).id
    expense.description = description
    expense.amount = amount
    apply_effects(db, inverted(old_effects) + _expense_effects(expense), expense.date)
    logger.info("expense corrected id=%s amount=%s", expense.id, amount)
    return expense


def delete_expense(db: Session, expense_id: int) -> Expense:
    expense = _require_expense(db, expense_id)
    apply_effects(db, inverted(_expense_effects(expense)), expense.date)
    db.delete(expense)
    db.flush()
    logger.info("expense reversed id=%s amount=%s", expense.id, expense.amount)
    return expense


def adjust_capital(db: Session, amount, type: str, on: Optional[dt.date] = None) -> CapitalHistory:
    """Move capital into or out of the reserve account."""
    if type not in CAPITAL_TYPES:
        raise InvalidArgument("type must be 'add' or 'subtract'.")
    amount = _positive_amount(amount, "amount")
    reserve = _reserve_account(db)
    signed = amount if type == "add" else -amount
    entries = apply_effects(
        db,
        [BalanceDelta(reserve.id, signed), CapitalDelta(signed, f"capital {type}")],
        on,
    )
    logger.info("capital adjusted type=%s amount=%s", type, amount)
    return entries[0]


def total_capital(db: Session) -> Decimal:
    return repo.total_capital(db)


def create_product(db: Session, name: str, stock: int, price, cost_price) -> Product:
    if not name:
        raise ValidationError("name is required.")
    if stock is None or int(stock) < 0:
        raise ValidationError("stock must not be negative.")
    if repo.find_product_by_name(db, name) is not None:
        raise Conflict(f"Product {name} already exists.")
    product = Product(name=name, stock=int(stock), price=money(price), cost_price=money(cost_price))
    db.add(product)
    db.flush()
    return product


def update_product(db: Session, product_id: int, stock: int, price=None, cost_price=None) -> Product:
    if stock is None or int(stock) < 0:
        raise ValidationError("stock must not be negative.")
    product = repo.get_product(db, product_id, lock=True)
    if product is None:
        raise NotFound("Product not found.")
    product.stock = int(stock)
    if price is not None:
        product.price = money(price)
    if cost_price is not None:
        product.cost_price = money(cost_price)
    db.flush()
    logger.info("product stock set id=%s stock=%s", product.id, product.stock)
    return product


def delete_product(db: Session, product_id: int) -> None:
    product = repo.get_product(db, product_id, lock=True)
    if product is None:
        raise NotFound("Product not found.")
    if repo.product_is_referenced(db, product_id):
        raise Conflict("Cannot delete a product that has related transactions.")
    db.delete(product)
    db.flush()


def create_account(db: Session, name: str, balance=0, on: Optional[dt.date] = None) -> Account:
    """Open an account; a positive opening balance is recorded as added capital."""
    if not name:
        raise ValidationError("name is required.")
    opening = money(balance or 0)
    if opening < 0:
        raise ValidationError("balance must not be negative.")
    if repo.find_account_by_name(db, name) is not None:
        raise Conflict(f"Account {name} already exists.")
    account = Account(name=name, balance=Decimal(0))
    db.add(account)
    db.flush()
    if opening > 0:
        apply_effects(
            db,
            [BalanceDelta(account.id, opening), CapitalDelta(opening, f"opening balance {name}")],
            on,
        )
    return account


def update_account(
    db: Session,
    account_id: int,
    name: Optional[str] = None,
    balance=None,
    on: Optional[dt.date] = None,
) -> Account:
    account = repo.get_account(db, account_id, lock=True)
    if account is None:
        raise NotFound("Account not found.")
    if name and name != account.name:
        if account.name == settings.reserve_account_name:
            raise Conflict("The reserve account cannot be renamed.")
        if repo.find_account_by_name(db, name) is not None:
            raise Conflict(f"Account {name} already exists.")
        account.name = name
    if balance is not None:
        target = money(balance)
        if target < 0:
            raise ValidationError("balance must not be negative.")
        difference = target - account.balance
        if difference != 0:
            apply_effects(
                db,
                [
                    BalanceDelta(account.id, difference),
                    CapitalDelta(difference, f"balance correction {account.name}"),
                ],
                on,
            )
    db.flush()
    return account


def delete_account(db: Session, account_id: int) -> None:
    account = repo.get_account(db, account_id, lock=True)
    if account is None:
        raise NotFound("Account not found.")
    if account.name == settings.reserve_account_name:
        raise Conflict("The reserve account cannot be deleted.")
    if repo.account_is_referenced(db, account_id):
        raise Conflict("Cannot delete an account that has related transactions.")
    db.delete(account)
    db.flush()
