import logging
from datetime import date
from typing import Optional

from fastapi import Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import actions
import auth_actions
from config import get_settings
from database import SessionLocal
from errors import STATUS_BY_KIND, FinanceError, StoreError
from models import DebtStatus, TransactionType
from policy import current_viewer
from scheduler import SchedulerManager
from schemas import (
    ActionResult,
    CategoryIn,
    CategoryUpdate,
    DebtIn,
    MagicLinkCompleteIn,
    MagicLinkIn,
    PasswordChangeIn,
    ProfileUpdateIn,
    QuickAddIn,
    QuickAddOut,
    SignInIn,
    SignUpIn,
    StashNameIn,
    StashUpdateIn,
    ToggleIn,
    TransactionCategoryUpdate,
    TransactionFilters,
    TransactionIn,
    UserCategoryLimitIn,
    UserEditIn,
    UserUpdateIn,
)
from services import QuickAddService

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(title="Household Finance")

SESSION_COOKIE = "session"

QUICK_ADD_USAGE = {
    "status": "ok",
    "message": "Quick Add API: every member has a personal key, the server "
    "works out who you are.",
    "usage": {
        "method": "POST",
        "headers": {
            "x-api-key": "Your personal API key",
            "Content-Type": "application/json",
        },
        "body": {
            "amount": 50000,
            "type": "expense | income",
            "note": "(optional) Morning coffee",
        },
    },
    "note": "No need to specify user: the API key identifies who you are.",
}


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


@app.exception_handler(FinanceError)
async def finance_error_handler(request: Request, exc: FinanceError):
    body = ActionResult(success=False, error=str(exc), error_kind=exc.kind)
    return JSONResponse(
        status_code=STATUS_BY_KIND.get(exc.kind, 500),
        content=body.model_dump(mode="json"),
    )


def token_from_request(request: Request) -> Optional[str]:
    header = request.headers.get("authorization", "")
    scheme, _, value = header.partition(" ")
    if scheme.lower() == "bearer" and value.strip():
        return value.strip()
    return request.cookies.get(SESSION_COOKIE)


def require_session(request: Request, db: Session = Depends(get_db)) -> str:
    token = token_from_request(request)
    current_viewer(db, token)
    return token


def respond(result: ActionResult):
    if result.success:
        return result
    return JSONResponse(
        status_code=STATUS_BY_KIND.get(result.error_kind or "", 500),
        content=result.model_dump(mode="json"),
    )


def respond_with_session(result: ActionResult):
    if not result.success:
        return respond(result)
    response = JSONResponse(content=result.model_dump(mode="json"))
    response.set_cookie(
        SESSION_COOKIE,
        result.data.token,
        max_age=get_settings().session_max_age_hours * 3600,
        httponly=True,
        samesite="lax",
    )
    return response


# quick add


@app.get("/api/quick-add")
def quick_add_usage():
    return QUICK_ADD_USAGE


@app.post("/api/quick-add")
async def quick_add(
    request: Request,
    x_api_key: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
):
    try:
        payload = await request.json()
    except ValueError:
        payload = {}
    if not isinstance(payload, dict):
        payload = {}
    service = QuickAddService(db)
    try:
        user, txn = service.ingest(x_api_key, QuickAddIn.model_validate(payload))
    except FinanceError as exc:
        db.rollback()
        logger.warning(f"quick_add_failed: kind={exc.kind} error={exc}")
        return JSONResponse(
            status_code=STATUS_BY_KIND.get(exc.kind, 500),
            content={"success": False, "error": str(exc)},
        )
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception(f"quick_add_failed: kind={StoreError.kind} error={exc}")
        return JSONResponse(
            status_code=500, content={"success": False, "error": str(exc)}
        )
    return QuickAddOut(message=service.message(user, txn))


# auth


@app.get("/api/auth/settings")
def api_app_settings(db: Session = Depends(get_db)):
    return respond(auth_actions.get_app_settings(db))


@app.post("/api/auth/sign-up")
def api_sign_up(data: SignUpIn, db: Session = Depends(get_db)):
    return respond_with_session(auth_actions.sign_up(db, data))


@app.post("/api/auth/sign-in")
def api_sign_in(data: SignInIn, db: Session = Depends(get_db)):
    return respond_with_session(auth_actions.sign_in(db, data))


@app.post("/api/auth/magic-link")
def api_magic_link(data: MagicLinkIn, db: Session = Depends(get_db)):
    return respond(auth_actions.sign_in_with_magic_link(db, data))


@app.get("/auth/callback")
def auth_callback(token: str, db: Session = Depends(get_db)):
    return respond_with_session(auth_actions.complete_magic_link(db, token))


@app.post("/api/auth/callback")
def api_auth_callback(data: MagicLinkCompleteIn, db: Session = Depends(get_db)):
    return respond_with_session(auth_actions.complete_magic_link(db, data.token))


@app.post("/api/auth/sign-out")
def api_sign_out(request: Request, db: Session = Depends(get_db)):
    result = auth_actions.sign_out(db, token_from_request(request))
    if not result.success:
        return respond(result)
    response = JSONResponse(content=result.model_dump(mode="json"))
    response.delete_cookie(SESSION_COOKIE)
    return response


@app.get("/api/auth/profile")
def api_profile(request: Request, db: Session = Depends(get_db)):
    return respond(auth_actions.get_user_profile(db, token_from_request(request)))


@app.patch("/api/auth/profile")
def api_update_profile(
    data: ProfileUpdateIn, request: Request, db: Session = Depends(get_db)
):
    return respond(
        auth_actions.update_profile(db, token_from_request(request), data)
    )


@app.post("/api/auth/password")
def api_change_password(
    data: PasswordChangeIn, request: Request, db: Session = Depends(get_db)
):
    return respond_with_session(
        auth_actions.change_password(db, token_from_request(request), data)
    )


# admin


@app.post("/api/admin/registration")
def api_toggle_registration(
    data: ToggleIn, request: Request, db: Session = Depends(get_db)
):
    return respond(
        auth_actions.toggle_registration(db, token_from_request(request), data.enabled)
    )


@app.post("/api/admin/balance-edit")
def api_toggle_balance_edit(
    data: ToggleIn, request: Request, db: Session = Depends(get_db)
):
    return respond(
        auth_actions.toggle_balance_edit(db, token_from_request(request), data.enabled)
    )


@app.post("/api/admin/stash-name")
def api_stash_name(data: StashNameIn, request: Request, db: Session = Depends(get_db)):
    return respond(
        auth_actions.set_stash_name(db, token_from_request(request), data.name)
    )


@app.post("/api/admin/reconcile")
def api_reconcile(
    request: Request, fix: Optional[bool] = None, db: Session = Depends(get_db)
):
    return respond(actions.reconcile_balances(db, token_from_request(request), fix))


# users


@app.get("/api/summary")
def api_summary(db: Session = Depends(get_db), token: str = Depends(require_session)):
    return respond(actions.get_users_summary(db))


@app.get("/api/users")
def api_users(db: Session = Depends(get_db), token: str = Depends(require_session)):
    return respond(actions.get_users(db))


@app.put("/api/users/{user_id}")
def api_update_user(
    user_id: int,
    data: UserEditIn,
    db: Session = Depends(get_db),
    token: str = Depends(require_session),
):
    update = UserUpdateIn(id=user_id, **data.model_dump())
    return respond(actions.update_user(db, token, update))


@app.post("/api/stash")
def api_stash(
    data: StashUpdateIn,
    db: Session = Depends(get_db),
    token: str = Depends(require_session),
):
    return respond(actions.update_stashed_amount(db, token, data.delta))


# transactions


@app.get("/api/transactions")
def api_transactions(
    user_id: Optional[int] = None,
    type: Optional[TransactionType] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    db: Session = Depends(get_db),
    token: str = Depends(require_session),
):
    filters = TransactionFilters(
        user_id=user_id, type=type, date_from=date_from, date_to=date_to
    )
    return respond(actions.get_all_transactions(db, filters))


@app.post("/api/transactions")
def api_add_transaction(
    data: TransactionIn,
    db: Session = Depends(get_db),
    token: str = Depends(require_session),
):
    return respond(actions.add_transaction(db, data))


@app.get("/api/transactions/recent")
def api_recent_transactions(
    limit: int = 10,
    db: Session = Depends(get_db),
    token: str = Depends(require_session),
):
    return respond(actions.get_recent_transactions(db, limit))


@app.get("/api/transactions/uncategorized")
def api_uncategorized(
    db: Session = Depends(get_db), token: str = Depends(require_session)
):
    return respond(actions.get_uncategorized_transactions(db, token))


@app.patch("/api/transactions/{transaction_id}/category")
def api_transaction_category(
    transaction_id: int,
    data: TransactionCategoryUpdate,
    db: Session = Depends(get_db),
    token: str = Depends(require_session),
):
    return respond(
        actions.update_transaction_category(db, transaction_id, data.category_id)
    )


# categories and budgets


@app.get("/api/categories")
def api_categories(db: Session = Depends(get_db), token: str = Depends(require_session)):
    return respond(actions.get_categories(db))


@app.post("/api/categories")
def api_add_category(
    data: CategoryIn,
    db: Session = Depends(get_db),
    token: str = Depends(require_session),
):
    return respond(actions.add_category(db, data))


@app.patch("/api/categories/{category_id}")
def api_update_category(
    category_id: int,
    data: CategoryUpdate,
    db: Session = Depends(get_db),
    token: str = Depends(require_session),
):
    return respond(actions.update_category(db, category_id, data))


@app.delete("/api/categories/{category_id}")
def api_delete_category(
    category_id: int,
    db: Session = Depends(get_db),
    token: str = Depends(require_session),
):
    return respond(actions.delete_category(db, category_id))


@app.put("/api/categories/{category_id}/limits")
def api_category_limit(
    category_id: int,
    data: UserCategoryLimitIn,
    db: Session = Depends(get_db),
    token: str = Depends(require_session),
):
    return respond(actions.set_user_category_limit(db, category_id, data))


@app.get("/api/budgets")
def api_budgets(db: Session = Depends(get_db), token: str = Depends(require_session)):
    return respond(actions.get_budget_status(db))


# debts


@app.get("/api/debts")
def api_debts(
    status: Optional[DebtStatus] = None,
    db: Session = Depends(get_db),
    token: str = Depends(require_session),
):
    return respond(actions.get_debts(db, status))


@app.post("/api/debts")
def api_add_debt(
    data: DebtIn, db: Session = Depends(get_db), token: str = Depends(require_session)
):
    return respond(actions.add_debt(db, data))


@app.post("/api/debts/{debt_id}/resolve")
def api_resolve_debt(
    debt_id: int, db: Session = Depends(get_db), token: str = Depends(require_session)
):
    return respond(actions.resolve_debt(db, debt_id))


# stats


@app.get("/api/stats/history")
def api_history(db: Session = Depends(get_db), token: str = Depends(require_session)):
    return respond(actions.get_monthly_history(db))


@app.get("/api/stats/categories")
def api_category_stats(
    db: Session = Depends(get_db), token: str = Depends(require_session)
):
    return respond(actions.get_category_expense_stats(db))


@app.get("/api/stats/comparison")
def api_comparison(db: Session = Depends(get_db), token: str = Depends(require_session)):
    return respond(actions.get_monthly_user_comparison(db))


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
