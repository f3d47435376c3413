import logging
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Optional

from fastapi import Depends, FastAPI, File, Form, HTTPException, Query, UploadFile
from fastapi.responses import Response, StreamingResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from fastapi.templating import Jinja2Templates
from sqlalchemy.orm import Session

from config import get_settings
from database import Base, engine, session_scope
from models import (
    AccountType,
    BudgetPeriod,
    InvoiceStatus,
    Transaction,
    TransactionType,
    User,
)
from periods import Period, local_now, resolve_range, to_local_naive
from schemas import (
    AccountIn,
    AccountOut,
    AccountRenameIn,
    BalanceSheetOut,
    BudgetAmountIn,
    BudgetIn,
    BudgetOut,
    CashFlowOut,
    ExportFormat,
    ImportResultOut,
    InvoiceIn,
    InvoiceOut,
    InvoicePage,
    InvoiceStatusIn,
    LoginIn,
    MessageOut,
    PasswordResetIn,
    PasswordResetRequestIn,
    ProfitAndLossOut,
    RegisterIn,
    TokenOut,
    TransactionIn,
    TransactionOut,
    TransactionPage,
)
from security import validate_access_token
from services import (
    AccountService,
    AuthError,
    AuthService,
    BudgetService,
    BudgetStatus,
    ConflictError,
    CSVImportError,
    CSVService,
    ForbiddenError,
    InvoiceFilters,
    InvoiceService,
    NotFoundError,
    ReportService,
    TransactionFilters,
    TransactionService,
)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

BASE_DIR = Path(__file__).resolve().parent
EXPORT_DEFAULT_DAYS = 365

app = FastAPI(title="Ledger")
templates = Jinja2Templates(directory=str(BASE_DIR / "templates"))
bearer_scheme = HTTPBearer(auto_error=False)


def _load_app_version() -> str:
    try:
        import tomllib
    except ImportError:
        return "unknown"
    try:
        with open(BASE_DIR / "pyproject.toml", "rb") as f:
            data = tomllib.load(f)
        return str(data.get("project", {}).get("version", "unknown"))
    except (OSError, tomllib.TOMLDecodeError):
        return "unknown"


APP_VERSION = _load_app_version()


def format_money(value: Decimal) -> str:
    return f"{value:,.2f}"


templates.env.filters["money"] = format_money


def get_db():
    with session_scope() as db:
        yield db


def current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    db: Session = Depends(get_db),
) -> User:
    unauthorized = HTTPException(
        status_code=401,
        detail="Not authenticated",
        headers={"WWW-Authenticate": "Bearer"},
    )
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise unauthorized
    user_id = validate_access_token(credentials.credentials)
    if user_id is None:
        raise unauthorized
    user = db.get(User, user_id)
    if not user:
        raise unauthorized
    return user


def http_error(exc: ValueError) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ConflictError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, ForbiddenError):
        return HTTPException(status_code=403, detail=str(exc))
    if isinstance(exc, AuthError):
        return HTTPException(
            status_code=401, detail=str(exc), headers={"WWW-Authenticate": "Bearer"}
        )
    if isinstance(exc, CSVImportError):
        return HTTPException(
            status_code=400, detail={"message": str(exc), "errors": exc.errors}
        )
    return HTTPException(status_code=400, detail=str(exc))


def period_from_query(
    start: Optional[datetime], end: Optional[datetime], default_days: Optional[int]
) -> Period:
    try:
        return resolve_range(start, end, default_days=default_days)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def budget_out(status: BudgetStatus) -> BudgetOut:
    budget = status.budget
    return BudgetOut(
        id=budget.id,
        category=budget.category,
        amount=budget.amount,
        period=budget.period,
        spent=status.spent,
        remaining=status.remaining,
        percent_used=status.percent_used,
        alert_level=status.alert_level,
        window_start=status.window.start,
        created_at=budget.created_at,
        updated_at=budget.updated_at,
    )


@app.on_event("startup")
def startup_event():
    settings = get_settings()
    if settings.auto_create_schema:
        Base.metadata.create_all(bind=engine)
    logger.info(
        f"ledger_started: version={APP_VERSION} timezone={settings.timezone} "
        f"auto_create_schema={settings.auto_create_schema}"
    )


# ---------- Auth ----------


@app.post("/api/auth/register", response_model=MessageOut, status_code=201)
def register(data: RegisterIn, db: Session = Depends(get_db)):
    try:
        AuthService(db).register(data)
    except ValueError as exc:
        raise http_error(exc) from exc
    return MessageOut(message="User registered successfully")


@app.post("/api/auth/login", response_model=TokenOut)
def login(data: LoginIn, db: Session = Depends(get_db)):
    try:
        user, token = AuthService(db).login(data.username, data.password)
    except ValueError as exc:
        raise http_error(exc) from exc
    return TokenOut(
        access_token=token,
        user_id=user.id,
        username=user.username,
        email=user.email,
        role=user.role,
    )


@app.post("/api/auth/password/reset-request", response_model=MessageOut)
def request_password_reset(data: PasswordResetRequestIn, db: Session = Depends(get_db)):
    reset = AuthService(db).request_password_reset(data.email)
    if reset is None:
        return MessageOut(
            message="If your email is registered, you will receive a password reset link"
        )
    # no mail transport: the token is handed back directly
    return MessageOut(
        message="Password reset link has been sent to your email", token=reset.token
    )


@app.post("/api/auth/password/reset", response_model=MessageOut)
def reset_password(data: PasswordResetIn, db: Session = Depends(get_db)):
    try:
        AuthService(db).reset_password(data.token, data.password)
    except ValueError as exc:
        raise http_error(exc) from exc
    return MessageOut(message="Password has been reset successfully")


# ---------- Accounts ----------


@app.post("/api/accounts", response_model=AccountOut, status_code=201)
def create_account(
    data: AccountIn,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    try:
        return AccountService(db, user.id).create(data)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.get("/api/accounts", response_model=list[AccountOut])
def list_accounts(
    type: Optional[AccountType] = None,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    return AccountService(db, user.id).list_all(type)


@app.get("/api/accounts/{account_id}", response_model=AccountOut)
def get_account(
    account_id: int, user: User = Depends(current_user), db: Session = Depends(get_db)
):
    try:
        return AccountService(db, user.id).get(account_id)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.put("/api/accounts/{account_id}", response_model=AccountOut)
def rename_account(
    account_id: int,
    data: AccountRenameIn,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    try:
        return AccountService(db, user.id).rename(account_id, data.name)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.delete("/api/accounts/{account_id}", status_code=204)
def delete_account(
    account_id: int, user: User = Depends(current_user), db: Session = Depends(get_db)
):
    try:
        AccountService(db, user.id).delete(account_id, user)
    except ValueError as exc:
        raise http_error(exc) from exc
    return Response(status_code=204)


# ---------- Transactions ----------


@app.post("/api/transactions", response_model=TransactionOut, status_code=201)
def create_transaction(
    data: TransactionIn,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    try:
        return TransactionService(db, user.id).create(data)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.get("/api/transactions", response_model=TransactionPage)
def list_transactions(
    account_id: Optional[int] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    category: Optional[str] = None,
    type: Optional[TransactionType] = None,
    page: int = Query(0, ge=0),
    size: int = Query(10, ge=1, le=200),
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    filters = TransactionFilters(
        account_id=account_id,
        start_date=to_local_naive(start_date) if start_date else None,
        end_date=to_local_naive(end_date) if end_date else None,
        category=category,
        type=type,
    )
    try:
        result = TransactionService(db, user.id).list(filters, page=page, size=size)
    except ValueError as exc:
        raise http_error(exc) from exc
    return TransactionPage(
        transactions=[TransactionOut.model_validate(t) for t in result.items],
        current_page=result.current_page,
        total_items=result.total_items,
        total_pages=result.total_pages,
    )


@app.get("/api/transactions/{transaction_id}", response_model=TransactionOut)
def get_transaction(
    transaction_id: int,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    try:
        return TransactionService(db, user.id).get(transaction_id)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.put("/api/transactions/{transaction_id}", response_model=TransactionOut)
def update_transaction(
    transaction_id: int,
    data: TransactionIn,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    try:
        return TransactionService(db, user.id).update(transaction_id, data)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.delete("/api/transactions/{transaction_id}", status_code=204)
def delete_transaction(
    transaction_id: int,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    try:
        TransactionService(db, user.id).delete(transaction_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return Response(status_code=204)


# ---------- Budgets ----------


@app.post("/api/budgets", response_model=BudgetOut, status_code=201)
def create_budget(
    data: BudgetIn, user: User = Depends(current_user), db: Session = Depends(get_db)
):
    service = BudgetService(db, user.id)
    try:
        budget = service.create(data)
    except ValueError as exc:
        raise http_error(exc) from exc
    return budget_out(service.status(budget))


@app.get("/api/budgets", response_model=list[BudgetOut])
def list_budgets(
    period: Optional[BudgetPeriod] = None,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    return [budget_out(s) for s in BudgetService(db, user.id).statuses(period)]


@app.get("/api/budgets/alerts", response_model=list[BudgetOut])
def budget_alerts(user: User = Depends(current_user), db: Session = Depends(get_db)):
    return [budget_out(s) for s in BudgetService(db, user.id).alerts()]


@app.get("/api/budgets/{budget_id}", response_model=BudgetOut)
def get_budget(
    budget_id: int, user: User = Depends(current_user), db: Session = Depends(get_db)
):
    service = BudgetService(db, user.id)
    try:
        return budget_out(service.status(service.get(budget_id)))
    except ValueError as exc:
        raise http_error(exc) from exc


@app.put("/api/budgets/{budget_id}", response_model=BudgetOut)
def update_budget(
    budget_id: int,
    data: BudgetAmountIn,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    service = BudgetService(db, user.id)
    try:
        budget = service.update_amount(budget_id, data.amount)
    except ValueError as exc:
        raise http_error(exc) from exc
    return budget_out(service.status(budget))


@app.delete("/api/budgets/{budget_id}", status_code=204)
def delete_budget(
    budget_id: int, user: User = Depends(current_user), db: Session = Depends(get_db)
):
    try:
        BudgetService(db, user.id).delete(budget_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return Response(status_code=204)


# ---------- Invoices ----------


@app.post("/api/invoices", response_model=InvoiceOut, status_code=201)
def create_invoice(
    data: InvoiceIn, user: User = Depends(current_user), db: Session = Depends(get_db)
):
    try:
        return InvoiceService(db, user.id).create(data)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.get("/api/invoices", response_model=InvoicePage)
def list_invoices(
    status: Optional[InvoiceStatus] = None,
    client_name: Optional[str] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    page: int = Query(0, ge=0),
    size: int = Query(10, ge=1, le=200),
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    filters = InvoiceFilters(
        status=status, client_name=client_name, start_date=start_date, end_date=end_date
    )
    result = InvoiceService(db, user.id).list(filters, page=page, size=size)
    return InvoicePage(
        invoices=[InvoiceOut.model_validate(i) for i in result.items],
        current_page=result.current_page,
        total_items=result.total_items,
        total_pages=result.total_pages,
    )


@app.get("/api/invoices/overdue", response_model=list[InvoiceOut])
def overdue_invoices(user: User = Depends(current_user), db: Session = Depends(get_db)):
    return InvoiceService(db, user.id).overdue()


@app.get("/api/invoices/{invoice_id}", response_model=InvoiceOut)
def get_invoice(
    invoice_id: int, user: User = Depends(current_user), db: Session = Depends(get_db)
):
    try:
        return InvoiceService(db, user.id).get(invoice_id)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.put("/api/invoices/{invoice_id}", response_model=InvoiceOut)
def update_invoice(
    invoice_id: int,
    data: InvoiceIn,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    try:
        return InvoiceService(db, user.id).update(invoice_id, data)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.put("/api/invoices/{invoice_id}/status", response_model=InvoiceOut)
def update_invoice_status(
    invoice_id: int,
    data: InvoiceStatusIn,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    try:
        return InvoiceService(db, user.id).set_status(invoice_id, data.status)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.delete("/api/invoices/{invoice_id}", status_code=204)
def delete_invoice(
    invoice_id: int, user: User = Depends(current_user), db: Session = Depends(get_db)
):
    try:
        InvoiceService(db, user.id).delete(invoice_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return Response(status_code=204)


# ---------- Reports ----------


@app.get("/api/reports/balance-sheet", response_model=BalanceSheetOut)
def balance_sheet(
    as_of_date: Optional[datetime] = None,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    as_of = to_local_naive(as_of_date) if as_of_date else None
    return ReportService(db, user.id).balance_sheet(as_of)


@app.get("/api/reports/profit-and-loss", response_model=ProfitAndLossOut)
def profit_and_loss(
    start_date: datetime,
    end_date: datetime,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    period = period_from_query(start_date, end_date, None)
    return ReportService(db, user.id).profit_and_loss(period)


@app.get("/api/reports/cash-flow", response_model=CashFlowOut)
def cash_flow(
    start_date: datetime,
    end_date: datetime,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    period = period_from_query(start_date, end_date, None)
    return ReportService(db, user.id).cash_flow(period)


# ---------- Export / import ----------


def render_transactions_html(
    transactions: list[Transaction], period: Period
) -> str:
    total_income = sum(
        (t.amount for t in transactions if t.type == TransactionType.income),
        Decimal("0"),
    )
    total_expense = sum(
        (t.amount for t in transactions if t.type == TransactionType.expense),
        Decimal("0"),
    )
    return templates.env.get_template("transactions_report.html").render(
        transactions=transactions,
        period=period,
        total_income=total_income,
        total_expense=total_expense,
        generated_at=local_now(),
        app_version=APP_VERSION,
    )


def render_transactions_pdf(transactions: list[Transaction], period: Period) -> bytes:
    try:
        from weasyprint import CSS, HTML
    except Exception as exc:
        raise HTTPException(
            status_code=500,
            detail="PDF export requires WeasyPrint system dependencies; install them for your OS and retry.",
        ) from exc

    start_time = datetime.now()
    html = render_transactions_html(transactions, period)
    css = CSS(
        string="""
            @page {
                size: A4;
                margin: 16mm 14mm 18mm 14mm;
                @bottom-center {
                    content: "Page " counter(page) " of " counter(pages);
                    font-size: 8pt;
                    color: #666;
                }
            }
            body { font-family: sans-serif; font-size: 9pt; }
            table { width: 100%; border-collapse: collapse; }
            th, td { padding: 2mm; border-bottom: 0.2mm solid #ddd; text-align: left; }
            td.amount { text-align: right; }
        """
    )
    pdf_bytes = HTML(string=html).write_pdf(stylesheets=[css])
    duration = (datetime.now() - start_time).total_seconds()
    logger.info(
        f"pdf_generated: rows={len(transactions)} "
        f"pdf_size_bytes={len(pdf_bytes)} pdf_duration={duration:.2f}s"
    )
    return pdf_bytes


@app.get("/api/export/transactions")
def export_transactions_endpoint(
    format: ExportFormat = ExportFormat.csv,
    account_id: Optional[int] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    period = period_from_query(start_date, end_date, EXPORT_DEFAULT_DAYS)
    filters = TransactionFilters(
        account_id=account_id, start_date=period.start, end_date=period.end
    )
    try:
        transactions = TransactionService(db, user.id).all_for_period(filters)
    except ValueError as exc:
        raise http_error(exc) from exc

    if format == ExportFormat.pdf:
        try:
            pdf_bytes = render_transactions_pdf(transactions, period)
        except HTTPException:
            raise
        except Exception as exc:
            logger.exception("Error generating PDF export")
            raise HTTPException(status_code=500, detail=str(exc)) from exc
        return StreamingResponse(
            iter([pdf_bytes]),
            media_type="application/pdf",
            headers={
                "Content-Disposition": 'attachment; filename="transactions.pdf"',
                "Content-Length": str(len(pdf_bytes)),
            },
        )

    csv_text = CSVService(db, user.id).export(transactions)
    return StreamingResponse(
        iter([csv_text]),
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="transactions.csv"'},
    )


@app.post("/api/import/transactions", response_model=ImportResultOut, status_code=201)
async def import_transactions(
    account_id: int = Form(...),
    file: UploadFile = File(...),
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    filename = file.filename or ""
    is_csv = (file.content_type or "").startswith("text/csv") or filename.lower().endswith(
        ".csv"
    )
    if not is_csv:
        raise HTTPException(status_code=400, detail="Only CSV files are supported")
    raw = await file.read()
    if not raw:
        raise HTTPException(status_code=400, detail="Please upload a file")
    try:
        content = raw.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise HTTPException(status_code=400, detail="File must be UTF-8 encoded") from exc

    try:
        count = CSVService(db, user.id).commit(account_id, content)
    except ValueError as exc:
        raise http_error(exc) from exc
    return ImportResultOut(
        message=f"Successfully imported {count} transactions", imported=count
    )
