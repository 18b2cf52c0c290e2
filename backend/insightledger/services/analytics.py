import json
from calendar import monthrange
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

FALLBACK_SUGGESTIONS = [
    "Give me a concise summary of my finances this month.",
    "Where did I overspend this week?",
    "List the top 3 categories causing variance.",
    "Suggest a quick savings plan for the next 30 days.",
]


def _add_months(base: datetime, months: int) -> datetime:
    total_month = (base.month - 1) + months
    year = base.year + total_month // 12
    month = (total_month % 12) + 1
    return base.replace(year=year, month=month, day=min(base.day, monthrange(year, month)[1]))


def month_bounds(moment: datetime) -> tuple[datetime, datetime]:
    """First and last instant of the calendar month containing ``moment``."""
    start = datetime(moment.year, moment.month, 1)
    end = datetime(moment.year, moment.month, monthrange(moment.year, moment.month)[1]) + timedelta(days=1, microseconds=-1)
    return start, end


def previous_month_bounds(moment: datetime) -> tuple[datetime, datetime]:
    start, _ = month_bounds(moment)
    return month_bounds(start - timedelta(days=1))


def months_ago(moment: datetime, months: int) -> datetime:
    return _add_months(moment, -months)


def budget_usage(row: dict[str, Any], spent: Decimal) -> dict[str, Any]:
    amount = Decimal(row["amount"])
    return {**row, "spent": spent, "remaining": amount - spent}


def fold_monthly_trends(rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
    trends: dict[str, dict[str, Any]] = {}
    for row in rows:
        key = f"{row['year']}-{row['month']:02d}"
        item = trends.setdefault(key, {"month": key, "income": Decimal("0"), "expenses": Decimal("0")})
        if row["type"] == "income":
            item["income"] = row["total"]
        else:
            item["expenses"] = row["total"]
    return sorted(trends.values(), key=lambda item: item["month"])


def _plain(amount: Any) -> str:
    return f"{Decimal(str(amount)).normalize():f}"


def _category_name(category: dict[str, Any] | None, default: str = "Uncategorized") -> str:
    return category["name"] if category else default


def build_insights(
    current_total: Decimal,
    last_total: Decimal,
    top_categories: list[dict[str, Any]],
    budgets: list[dict[str, Any]],
) -> list[dict[str, str]]:
    """Rule-based observations about this month's spending.

    ``budgets`` are active budget rows already carrying ``spent``.
    """
    insights: list[dict[str, str]] = []

    if last_total > 0:
        percent_change = float((current_total - last_total) / last_total * 100)
        if percent_change > 20:
            insights.append(
                {
                    "type": "warning",
                    "title": "Spending Alert",
                    "message": f"Your spending is up {percent_change:.1f}% compared to last month. Consider reviewing your expenses.",
                }
            )
        elif percent_change < -10:
            insights.append(
                {
                    "type": "success",
                    "title": "Great Job!",
                    "message": f"Your spending is down {abs(percent_change):.1f}% compared to last month. Keep up the good work!",
                }
            )

    if top_categories:
        top = top_categories[0]
        insights.append(
            {
                "type": "info",
                "title": "Top Spending Category",
                "message": f"You spent ${float(top['total']):.2f} on {_category_name(top['category'])} this month.",
            }
        )

    for budget in budgets:
        percent_used = float(Decimal(budget["spent"]) / Decimal(budget["amount"]) * 100)
        name = _category_name(budget.get("category"), "Category")
        if percent_used > 90:
            insights.append(
                {"type": "warning", "title": "Budget Alert", "message": f"You've used {percent_used:.1f}% of your budget for {name}."}
            )
        elif percent_used > 75:
            insights.append(
                {"type": "info", "title": "Budget Notice", "message": f"You've used {percent_used:.1f}% of your budget for {name}."}
            )

    if not insights:
        insights.append(
            {
                "type": "success",
                "title": "Looking Good!",
                "message": "Your finances are on track. Keep monitoring your spending habits.",
            }
        )
    return insights


def build_ask_prompt(
    question: str,
    income: tuple[Decimal, int],
    expenses: tuple[Decimal, int],
    categories: list[dict[str, Any]],
    budgets: list[dict[str, Any]],
    recent: list[dict[str, Any]],
) -> str:
    total_income, income_count = income
    total_expenses, expense_count = expenses
    balance = total_income - total_expenses

    category_summary = "\n".join(
        f"- {_category_name(item['category'])}: ${float(item['total']):.2f} across {item['count']} expenses" for item in categories
    )
    budget_summary = "\n".join(
        f"- {_category_name(b['category'], 'Category')} budget ${_plain(b['amount'])} ({b['period']}) "
        f"from {b['start_date']:%Y-%m-%d} to {b['end_date']:%Y-%m-%d}"
        for b in budgets
    )
    recent_summary = "\n".join(
        f"{'Income' if t['type'] == 'income' else 'Expense'} ${_plain(t['amount'])} for {t['description']} "
        f"in {_category_name(t['category'])} on {t['date']:%Y-%m-%d}"
        for t in recent
    )

    return f"""
You are a concise personal finance assistant. Use the user's data below to answer their question clearly and helpfully.

User question: \"\"\"{question.strip()}\"\"\"

Current month summary:
- Income: ${float(total_income):.2f} (transactions: {income_count})
- Expenses: ${float(total_expenses):.2f} (transactions: {expense_count})
- Balance: ${float(balance):.2f}

Top expense categories this month:
{category_summary or '- No expenses yet.'}

Active budgets:
{budget_summary or '- No active budgets.'}

Recent transactions (newest first):
{recent_summary or 'No recent transactions.'}

Guidelines:
- Keep it short (4-6 sentences).
- If suggesting actions, make them concrete and prioritized.
- Avoid hallucinating data not present in the context.
- Answer in plain text (no markdown bullets needed by default).
"""


def build_suggestion_prompt(recent_messages: list[str], financial_data: dict[str, Any]) -> str:
    history = "\n".join(f"- {message}" for message in recent_messages[-5:]) or "- No previous messages."
    return f"""
You help a user explore their personal finances by proposing follow-up questions they could ask an assistant.

Financial snapshot (JSON):
{json.dumps(financial_data, indent=2, default=str)}

Recent conversation messages:
{history}

Return exactly 4 short, specific questions (under 12 words each) the user might ask next.
Respond with a JSON array of strings only, no commentary.
"""


def parse_suggestions(text: str) -> list[str]:
    cleaned = text.strip()
    if cleaned.startswith("```"):
        cleaned = cleaned.strip("`")
        if cleaned.lower().startswith("json"):
            cleaned = cleaned[4:]
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as exc:
        raise ValueError(f"suggestions are not valid JSON: {exc}") from exc
    if not isinstance(data, list):
        raise ValueError("suggestions must be a JSON array")
    suggestions = [str(item).strip() for item in data if str(item).strip()]
    if not suggestions:
        raise ValueError("no suggestions returned")
    return suggestions[:4]
