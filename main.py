import logging
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from sqlalchemy.orm import Session

from currencies import currency_from_headers, symbol_for
from database import get_db
from fx_rates import RateResolver, RateUnavailable, build_rate_resolver
from periods import MonthPeriod
from schemas import (
    ConfirmationRequiredOut,
    CurrencyChangeIn,
    CurrencyChangeOut,
    ProviderFailureOut,
)
from services import (
    BudgetOverview,
    BudgetService,
    CategoryBudget,
    ConfirmationRequired,
    CurrencyService,
    PersistenceError,
    UserStore,
    ValidationError,
    backfill_originals,
    get_current_user_id,
)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(title="Budget Ledger")


def get_rate_resolver() -> RateResolver:
    return build_rate_resolver()


def _period_payload(period: MonthPeriod) -> dict[str, object]:
    return {"month": period.month, "year": period.year, "month_name": period.name}


def _category_payload(row: CategoryBudget) -> dict[str, object]:
    return {
        "id": row.budget_id,
        "category": {
            "id": row.category_id,
            "name": row.category_name,
            "is_default": row.category_is_default,
        },
        "budget_cents": row.budget_cents,
        "budget_original_cents": row.budget_original_cents,
        "budget_original_currency": row.budget_original_currency,
        "budget_conversion_rate": (
            float(row.budget_conversion_rate)
            if row.budget_conversion_rate is not None
            else None
        ),
        "budget_converted_at": (
            row.budget_converted_at.isoformat() if row.budget_converted_at else None
        ),
        "spent_cents": row.spent_cents,
        "remaining_cents": row.remaining_cents,
        "percentage_used": float(row.percentage_used),
        "is_over_budget": row.is_over_budget,
        "is_near_limit": row.is_near_limit,
        "expense_count": row.expense_count,
    }


def _overview_payload(overview: BudgetOverview) -> dict[str, object]:
    return {
        "total_budget_cents": overview.total_budget_cents,
        "total_spent_cents": overview.total_spent_cents,
        "total_remaining_cents": overview.total_remaining_cents,
        "budget_count": overview.budget_count,
        "over_budget_count": overview.over_budget_count,
        "currency": overview.currency,
        "currency_symbol": overview.currency_symbol,
        "categories": [_category_payload(c) for c in overview.categories],
        "period": _period_payload(overview.period),
        "summary": {
            "percentage_used": overview.percentage_used,
            "is_over_budget": overview.is_over_budget,
            "near_limit_categories": overview.near_limit_categories,
        },
    }


@app.get("/api/budgets/overview")
def api_budget_overview(
    month: Optional[int] = Query(None, ge=1, le=12),
    year: Optional[int] = Query(None, ge=2020),
    db: Session = Depends(get_db),
):
    overview = BudgetService(db).overview(month, year)
    return _overview_payload(overview)


@app.get("/api/budgets/total")
def api_budget_total(
    month: Optional[int] = Query(None, ge=1, le=12),
    year: Optional[int] = Query(None, ge=2020),
    db: Session = Depends(get_db),
):
    total = BudgetService(db).monthly_total(month, year)
    return {
        "total_budget_cents": total["total_budget_cents"],
        "category_count": total["category_count"],
        "period": _period_payload(total["period"]),
    }


@app.get("/api/budgets/alerts")
def api_budget_alerts(
    month: Optional[int] = Query(None, ge=1, le=12),
    year: Optional[int] = Query(None, ge=2020),
    db: Session = Depends(get_db),
):
    alerts = BudgetService(db).alerts(month, year)
    return {
        "over_budget": [_category_payload(c) for c in alerts.over_budget],
        "near_limit": [_category_payload(c) for c in alerts.near_limit],
        "summary": {
            "total_alerts": alerts.total_alerts,
            "over_budget_count": alerts.over_budget_count,
            "near_limit_count": alerts.near_limit_count,
            "period": _period_payload(alerts.period),
        },
    }


@app.get("/api/budgets/trends")
def api_budget_trends(
    months: int = Query(6, ge=1, le=120),
    db: Session = Depends(get_db),
):
    service = BudgetService(db)
    try:
        points = service.trends(months)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    summary = service.trends_summary(points)
    return {
        "trends": [
            {
                "month": p.month,
                "year": p.year,
                "month_name": p.month_name,
                "total_budget_cents": p.total_budget_cents,
                "total_spent_cents": p.total_spent_cents,
                "percentage_used": p.percentage_used,
                "over_budget_count": p.over_budget_count,
                "category_count": p.category_count,
            }
            for p in points
        ],
        "summary": {
            "periods_analyzed": summary.periods_analyzed,
            "average_monthly_budget_cents": summary.average_monthly_budget_cents,
            "average_spending_cents": summary.average_spending_cents,
        },
    }


@app.get("/api/users/me/currency")
def api_get_currency(request: Request, db: Session = Depends(get_db)):
    users = UserStore(db)
    user_id = get_current_user_id()
    user = users.get_or_create(
        user_id, default_currency=currency_from_headers(request.headers)
    )
    db.commit()
    last = users.last_currency_change(user_id)
    return {
        "currency": user.currency,
        "currency_symbol": symbol_for(user.currency),
        "last_currency_change": (
            {
                "from": last.from_currency,
                "to": last.to_currency,
                "rate": float(last.rate),
                "changed_at": last.changed_at.isoformat(),
                "data_converted": last.data_converted,
                "expenses_converted": last.expenses_converted,
                "budgets_converted": last.budgets_converted,
            }
            if last
            else None
        ),
    }


@app.post("/api/users/me/currency")
def api_change_currency(
    payload: CurrencyChangeIn,
    db: Session = Depends(get_db),
    resolver: RateResolver = Depends(get_rate_resolver),
):
    service = CurrencyService(db, resolver=resolver)
    try:
        result = service.change_currency(payload.currency, payload.convert_existing)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except ConfirmationRequired as exc:
        body = ConfirmationRequiredOut(
            message=str(exc),
            current_currency=exc.current_currency,
            new_currency=exc.new_currency,
            expense_count=exc.expense_count,
            budget_count=exc.budget_count,
        )
        raise HTTPException(status_code=409, detail=body.model_dump()) from exc
    except RateUnavailable as exc:
        failures = [
            ProviderFailureOut(provider=f.provider, error=f.error).model_dump()
            for f in exc.failures
        ]
        raise HTTPException(
            status_code=503,
            detail={"message": "Exchange rate unavailable", "failures": failures},
        ) from exc
    except PersistenceError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc

    return CurrencyChangeOut(
        previous_currency=result.previous_currency,
        currency=result.currency,
        currency_symbol=result.currency_symbol,
        rate=float(result.rate),
        changed=result.changed,
        data_converted=result.data_converted,
        expenses_converted=result.expenses_converted,
        budgets_converted=result.budgets_converted,
        message=result.message,
    )


@app.post("/api/admin/backfill-originals")
def api_backfill_originals(db: Session = Depends(get_db)):
    try:
        results = backfill_originals(db)
    except PersistenceError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    logger.info(f"backfill_originals_done: users={len(results)}")
    return {
        "users": [
            {
                "user_id": r.user_id,
                "expenses_modified": r.expenses_modified,
                "budgets_modified": r.budgets_modified,
            }
            for r in results
        ]
    }


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
