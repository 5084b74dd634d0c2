from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import date
from decimal import Decimal
from typing import Optional
from uuid import uuid4

from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from pos_ledger import auth, idempotency, ledger
from pos_ledger import repositories as repo
from pos_ledger.config import settings
from pos_ledger.db import engine, get_db, init_db, transaction
from pos_ledger.errors import InvalidArgument, LedgerError, StorageError
from pos_ledger.logging_config import configure_logging, request_id_var
from pos_ledger.models import Account, Expense, Product, Purchase, Transaction, User

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(settings)
    init_db(engine)
    logger.info("database ready, reserve account %s", settings.reserve_account_name)
    yield


app = FastAPI(title="POS Ledger", lifespan=lifespan)


def _meta(request_id: Optional[str] = None, warnings: Optional[list[str]] = None) -> dict:
    return {
        "request_id": request_id or request_id_var.get() or f"req_{uuid4().hex}",
        "warnings": warnings or [],
    }


def _money(value) -> str:
    return str(ledger.money(value or 0))


@app.middleware("http")
async def assign_request_id(request: Request, call_next):
    request_id = request.headers.get("x-request-id") or f"req_{uuid4().hex}"
    token = request_id_var.set(request_id)
    try:
        response = await call_next(request)
    finally:
        request_id_var.reset(token)
    response.headers["X-Request-ID"] = request_id
    return response


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    if errors:
        first = errors[0]
        field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"{field}: {first.get('msg')}" if field else str(first.get("msg"))
    else:
        message = "Invalid request."
    return JSONResponse(status_code=400, content={"error": message})


@app.exception_handler(IntegrityError)
async def integrity_error_handler(request: Request, exc: IntegrityError) -> JSONResponse:
    logger.warning("integrity error on %s %s: %s", request.method, request.url.path, exc.orig)
    return JSONResponse(status_code=400, content={"error": "Conflicting write rejected by the database."})


@app.exception_handler(SQLAlchemyError)
async def storage_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.error("storage failure on %s %s", request.method, request.url.path, exc_info=exc)
    return await ledger_error_handler(request, StorageError("Storage failure."))


def _transaction_data(txn: Transaction) -> dict:
    return {
        "id": txn.id,
        "type": txn.type,
        "productId": txn.product_id,
        "productName": txn.product_name,
        "quantity": txn.quantity,
        "costPrice": _money(txn.cost_price),
        "sellingPrice": _money(txn.selling_price),
        "profitPerUnit": _money(txn.profit_per_unit),
        "total": _money(txn.total),
        "date": txn.date.isoformat(),
        "accountId": txn.account_id,
        "accountName": txn.account_name,
        "paymentMethod": txn.payment_method,
        "description": txn.description,
    }


def _product_data(product: Product) -> dict:
    return {
        "id": product.id,
        "name": product.name,
        "stock": product.stock,
        "price": _money(product.price),
        "costPrice": _money(product.cost_price),
    }


def _account_data(account: Account) -> dict:
    return {"id": account.id, "name": account.name, "balance": _money(account.balance)}


def _expense_data(expense: Expense) -> dict:
    return {
        "id": expense.id,
        "description": expense.description,
        "amount": _money(expense.amount),
        "date": expense.date.isoformat(),
        "accountId": expense.account_id,
    }


def _purchase_data(purchase: Purchase, product_name: str) -> dict:
    return {
        "id": purchase.id,
        "productId": purchase.product_id,
        "productName": product_name,
        "accountId": purchase.account_id,
        "quantity": purchase.quantity,
        "purchasePrice": _money(purchase.purchase_price),
        "total": _money(purchase.total),
        "date": purchase.date.isoformat(),
    }


def _user_data(user: User) -> dict:
    return {"id": user.id, "username": user.username, "role": user.role}


@app.get("/", tags=["root"])
def read_root() -> dict:
    return {"status": "ok"}


@app.get("/health", tags=["health"])
def health_check() -> dict:
    return {"status": "healthy"}


class RegisterRequest(BaseModel):
    model_config = {"json_schema_extra": {"example": {"username": "siti", "password": "rahasia", "role": "kasir"}}}
    username: str
    password: str
    role: str = "kasir"


class LoginRequest(BaseModel):
    username: str
    password: str


@app.post("/register", status_code=201, tags=["Auth"])
def register(payload: RegisterRequest, db: Session = Depends(get_db)) -> dict:
    with transaction(db):
        user = auth.register_user(db, payload.username, payload.password, payload.role)
    return {"data": _user_data(user), "meta": _meta()}


@app.post("/login", tags=["Auth"])
def login(payload: LoginRequest, db: Session = Depends(get_db)) -> dict:
    user = auth.authenticate(db, payload.username, payload.password)
    return {
        "data": {"token": auth.issue_token(user), "tokenType": "bearer", "user": _user_data(user)},
        "meta": _meta(),
    }


class SaleItem(BaseModel):
    model_config = {"populate_by_name": True}
    product_name: str = Field(alias="productName")
    quantity: int = Field(gt=0)
    cost_price: Optional[Decimal] = Field(default=None, alias="costPrice", ge=0, decimal_places=2)
    selling_price: Optional[Decimal] = Field(default=None, alias="sellingPrice", ge=0, decimal_places=2)


class TransactionCreate(BaseModel):
    model_config = {
        "populate_by_name": True,
        "json_schema_extra": {
            "example": {
                "type": "sale",
                "productName": "Teh Botol",
                "quantity": 3,
                "costPrice": "5.00",
                "sellingPrice": "8.00",
                "accountName": "Kas",
                "paymentMethod": "Cash",
            }
        },
    }
    type: str = "sale"
    product_name: Optional[str] = Field(default=None, alias="productName")
    quantity: Optional[int] = Field(default=None, gt=0)
    cost_price: Optional[Decimal] = Field(default=None, alias="costPrice", ge=0, decimal_places=2)
    selling_price: Optional[Decimal] = Field(default=None, alias="sellingPrice", ge=0, decimal_places=2)
    items: Optional[list[SaleItem]] = None
    account_name: Optional[str] = Field(default=None, alias="accountName")
    payment_method: Optional[str] = Field(default=None, alias="paymentMethod")
    amount: Optional[Decimal] = Field(default=None, gt=0, decimal_places=2)
    description: Optional[str] = None

    def sale_lines(self) -> list[ledger.SaleLine]:
        if self.items:
            return [
                ledger.SaleLine(item.product_name, item.quantity, item.cost_price, item.selling_price)
                for item in self.items
            ]
        if not self.product_name:
            return []
        return [ledger.SaleLine(self.product_name, self.quantity, self.cost_price, self.selling_price)]


class TransactionUpdate(BaseModel):
    model_config = {"populate_by_name": True}
    quantity: Optional[int] = Field(default=None, gt=0)
    cost_price: Optional[Decimal] = Field(default=None, alias="costPrice", ge=0, decimal_places=2)
    selling_price: Optional[Decimal] = Field(default=None, alias="sellingPrice", ge=0, decimal_places=2)
    amount: Optional[Decimal] = Field(default=None, gt=0, decimal_places=2)
    description: Optional[str] = None


@app.post("/transactions", status_code=201, tags=["Transactions"])
def create_transaction(
    payload: TransactionCreate,
    idempotency_key: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
    user: User = Depends(auth.require("transactions:create")),
) -> dict:
    scope = "POST /transactions"
    with transaction(db):
        replayed = idempotency.replay(db, idempotency_key, scope)
        if replayed is not None:
            return {"data": replayed, "meta": _meta(warnings=["idempotent replay"])}
        if payload.type == ledger.WITHDRAWAL:
            recorded = [
                ledger.record_withdrawal(db, payload.account_name, payload.amount, payload.description)
            ]
        elif payload.type == ledger.SALE:
            recorded = ledger.record_sale(
                db, payload.sale_lines(), payload.account_name, payload.payment_method
            )
        else:
            raise InvalidArgument("type must be 'sale' or 'withdrawal'.")
        data = {"transactions": [_transaction_data(txn) for txn in recorded]}
        idempotency.remember(db, idempotency_key, scope, data)
    return {"data": data, "meta": _meta()}


@app.get("/transactions", tags=["Transactions"])
def list_transactions(
    start_date: Optional[date] = Query(default=None, alias="startDate"),
    end_date: Optional[date] = Query(default=None, alias="endDate"),
    db: Session = Depends(get_db),
    user: User = Depends(auth.require("transactions:list")),
) -> dict:
    transactions = repo.list_transactions(db, start_date, end_date)
    return {"data": [_transaction_data(txn) for txn in transactions], "meta": _meta()}


@app.put("/transactions/{transaction_id}", tags=["Transactions"])
def update_transaction(
    transaction_id: int,
    payload: TransactionUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(auth.require("transactions:update")),
) -> dict:
    with transaction(db):
        txn = ledger.update_transaction(
            db,
            transaction_id,
            quantity=payload.quantity,
            cost_price=payload.cost_price,
            selling_price=payload.selling_price,
            amount=payload.amount,
            description=payload.description,
        )
    return {"data": _transaction_data(txn), "meta": _meta()}


@app.delete("/transactions/{transaction_id}", tags=["Transactions"])
def delete_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(auth.require("transactions:delete")),
) -> dict:
    with transaction(db):
        txn = ledger.delete_transaction(db, transaction_id)
    return {"data": _transaction_data(txn), "meta": _meta()}


class ProductCreate(BaseModel):
    model_config = {
        "populate_by_name": True,
        "json_schema_extra": {"example": {"name": "Teh Botol", "stock": 10, "price": "8.00", "costPrice": "5.00"}},
    }
    name: str
    stock: int = Field(default=0, ge=0)
    price: Decimal = Field(ge=0, decimal_places=2)
    cost_price: Decimal = Field(alias="costPrice", ge=0, decimal_places=2)


class ProductUpdate(BaseModel):
    model_config = {"populate_by_name": True}
    stock: int = Field(ge=0)
    price: Optional[Decimal] = Field(default=None, ge=0, decimal_places=2)
    cost_price: Optional[Decimal] = Field(default=None, alias="costPrice", ge=0, decimal_places=2)


@app.post("/products", status_code=201, tags=["Products"])
def create_product(
    payload: ProductCreate,
    db: Session = Depends(get_db),
    user: User = Depends(auth.require("products:create")),
) -> dict:
    with transaction(db):
        product = ledger.create_product(db, payload.name, payload.stock, payload.price, payload.cost_price)
    return {"data": _product_data(product), "meta": _meta()}


@app.get("/products", tags=["Products"])
def list_products(
    search: Optional[str] = Query(default=None),
    db: Session = Depends(get_db),
    user: User = Depends(auth.require("products:list")),
) -> dict:
    return {"data": [_product_data(product) for product in repo.list_products(db, search)], "meta": _meta()}


@app.put("/products/{product_id}", tags=["Products"])
def update_product(
    product_id: int,
    payload: ProductUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(auth.require("products:update")),
) -> dict:
    with transaction(db):
        product = ledger.update_product(db, product_id, payload.stock, payload.price, payload.cost_price)
    return {"data": _product_data(product), "meta": _meta()}


@app.delete("/products/{product_id}", tags=["Products"])
def delete_product(
    product_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(auth.require("products:delete")),
) -> dict:
    with transaction(db):
        ledger.delete_product(db, product_id)
    return {"data": {"id": product_id, "deleted": True}, "meta": _meta()}


class ExpenseCreate(BaseModel):
    model_config = {
        "populate_by_name": True,
        "json_schema_extra": {"example": {"description": "Listrik", "amount": "50.00", "accountName": "Kas"}},
    }
    description: str
    amount: Decimal = Field(gt=0, decimal_places=2)
    account_name: Optional[str] = Field(default=None, alias="accountName")


@app.post("/expenses", status_code=201, tags=["Expenses"])
def create_expense(
    payload: ExpenseCreate,
    idempotency_key: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
    user: User = Depends(auth.require("expenses:create")),
) -> dict:
    scope = "POST /expenses"
    with transaction(db):
        replayed = idempotency.replay(db, idempotency_key, scope)
        if replayed is not None:
            return {"data": replayed, "meta": _meta(warnings=["idempotent replay"])}
        expense = ledger.record_expense(db, payload.description, payload.amount, payload.account_name)
        data = _expense_data(expense)
        idempotency.remember(db, idempotency_key, scope, data)
    return {"data": data, "meta": _meta()}


@app.get("/expenses", tags=["Expenses"])
def list_expenses(
    start_date: Optional[date] = Query(default=None, alias="startDate"),
    end_date: Optional[date] = Query(default=None, alias="endDate"),
    db: Session = Depends(get_db),
    user: User = Depends(auth.require("expenses:list")),
) -> dict:
    expenses = repo.list_expenses(db, start_date, end_date)
    return {"data": [_expense_data(expense) for expense in expenses], "meta": _meta()}


@app.put("/expenses/{expense_id}", tags=["Expenses"])
def update_expense(
    expense_id: int,
    payload: ExpenseCreate,
    db: Session = Depends(get_db),
    user: User = Depends(auth.require("expenses:update")),
) -> dict:
    with transaction(db):
        expense = ledger.update_expense(
            db, expense_id, payload.description, payload.amount, payload.account_name
        )
    return {"data": _expense_data(expense), "meta": _meta()}


@app.delete("/expenses/{expense_id}", tags=["Expenses"])
def delete_expense(
    expense_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(auth.require("expenses:delete")),
) -> dict:
    with transaction(db):
        expense = ledger.delete_expense(db, expense_id)
    return {"data": _expense_data(expense), "meta": _meta()}


class AccountCreate(BaseModel):
    model_config = {"json_schema_extra": {"example": {"name": "Kas", "balance": "500.00"}}}
    name: str
    balance: Decimal = Field(default=Decimal(0), ge=0, decimal_places=2)


class AccountUpdate(BaseModel):
    name: Optional[str] = None
    balance: Optional[Decimal] = Field(default=None, ge=0, decimal_places=2)


class AccountDeduct(BaseModel):
    model_config = {"populate_by_name": True}
    account_name: str = Field(alias="accountName")
    amount: Decimal = Field(gt=0, decimal_places=2)
    description: Optional[str] = None


@app.post("/accounts", status_code=201, tags=["Accounts"])
def create_account(
    payload: AccountCreate,
    db: Session = Depends(get_db),
    user: User = Depends(auth.require("accounts:create")),
) -> dict:
    with transaction(db):
        account = ledger.create_account(db, payload.name, payload.balance)
    return {"data": _account_data(account), "meta": _meta()}


@app.get("/accounts", tags=["Accounts"])
def list_accounts(
    db: Session = Depends(get_db),
    user: User = Depends(auth.require("accounts:list")),
) -> dict:
    return {"data": [_account_data(account) for account in repo.list_accounts(db)], "meta": _meta()}


@app.put("/accounts/deduct", tags=["Accounts"])
def deduct_account(
    payload: AccountDeduct,
    db: Session = Depends(get_db),
    user: User = Depends(auth.require("accounts:deduct")),
) -> dict:
    with transaction(db):
        txn = ledger.record_withdrawal(db, payload.account_name, payload.amount, payload.description)
    return {"data": _transaction_data(txn), "meta": _meta()}


@app.put("/accounts/{account_id}", tags=["Accounts"])
def update_account(
    account_id: int,
    payload: AccountUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(auth.require("accounts:update")),
) -> dict:
    with transaction(db):
        account = ledger.update_account(db, account_id, payload.name, payload.balance)
    return {"data": _account_data(account), "meta": _meta()}


@app.delete("/accounts/{account_id}", tags=["Accounts"])
def delete_account(
    account_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(auth.require("accounts:delete")),
) -> dict:
    with transaction(db):
        ledger.delete_account(db, account_id)
    return {"data": {"id": account_id, "deleted": True}, "meta": _meta()}


class CapitalAdjust(BaseModel):
    model_config = {"json_schema_extra": {"example": {"amount": "100.00", "type": "add"}}}
    amount: Decimal = Field(gt=0, decimal_places=2)
    type: str


@app.post("/capital", status_code=201, tags=["Capital"])
def adjust_capital(
    payload: CapitalAdjust,
    db: Session = Depends(get_db),
    user: User = Depends(auth.require("capital:adjust")),
) -> dict:
    with transaction(db):
        entry = ledger.adjust_capital(db, payload.amount, payload.type)
    return {
        "data": {
            "id": entry.id,
            "amount": _money(entry.amount),
            "type": entry.type,
            "date": entry.date.isoformat(),
        },
        "meta": _meta(),
    }


@app.get("/capital/total", tags=["Capital"])
def get_total_capital(
    db: Session = Depends(get_db),
    user: User = Depends(auth.require("capital:total")),
) -> dict:
    return {"data": {"totalCapital": _money(ledger.total_capital(db))}, "meta": _meta()}


class PurchaseCreate(BaseModel):
    model_config = {
        "populate_by_name": True,
        "json_schema_extra": {"example": {"productId": 1, "accountId": 1, "quantity": 12, "purchasePrice": "4.50"}},
    }
    product_id: int = Field(alias="productId")
    account_id: int = Field(alias="accountId")
    quantity: int = Field(gt=0)
    purchase_price: Decimal = Field(alias="purchasePrice", gt=0, decimal_places=2)


@app.post("/purchases", status_code=201, tags=["Purchases"])
def create_purchase(
    payload: PurchaseCreate,
    idempotency_key: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
    user: User = Depends(auth.require("purchases:create")),
) -> dict:
    scope = "POST /purchases"
    with transaction(db):
        replayed = idempotency.replay(db, idempotency_key, scope)
        if replayed is not None:
            return {"data": replayed, "meta": _meta(warnings=["idempotent replay"])}
        purchase, product_name = ledger.record_purchase(
            db, payload.product_id, payload.account_id, payload.quantity, payload.purchase_price
        )
        data = _purchase_data(purchase, product_name)
        idempotency.remember(db, idempotency_key, scope, data)
    return {"data": data, "meta": _meta()}


@app.get("/purchases", tags=["Purchases"])
def list_purchases(
    db: Session = Depends(get_db),
    user: User = Depends(auth.require("purchases:list")),
) -> dict:
    data = [_purchase_data(purchase, name) for purchase, name in repo.list_purchases(db)]
    return {"data": data, "meta": _meta()}


@app.delete("/purchases/{purchase_id}", tags=["Purchases"])
def delete_purchase(
    purchase_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(auth.require("purchases:delete")),
) -> dict:
    with transaction(db):
        purchase, product_name = ledger.delete_purchase(db, purchase_id)
    return {"data": _purchase_data(purchase, product_name), "meta": _meta()}
