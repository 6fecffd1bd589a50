from datetime import datetime, timedelta, timezone

from .categorize import UNCATEGORIZED_CATEGORY, UNCATEGORIZED_GROUP


SAVINGS_GROUP = "Savings"
TRANSFER_CATEGORY = "Transfers"
TREND_MONTHS = 6

DEFAULT_EXPENSE_GROUPS = [
    ("Income", ["Salary", "Freelance", "Bonuses/Gifts", "Other Income"]),
    ("Investments", ["401k", "Roth IRA", "Index Funds", "Brokerage"]),
    (SAVINGS_GROUP, ["Emergency Fund", "Vacation", "Home Down Payment", "Car"]),
    (
        "Fixed Costs",
        ["Rent/Mortgage", "Utilities", "Internet/Phone", "Insurance", "Subscriptions", "Transportation", "Groceries"],
    ),
    ("Guilt-Free Spending", ["Dining Out", "Entertainment", "Shopping", "Hobbies", "Health & Fitness"]),
    (UNCATEGORIZED_GROUP, [UNCATEGORIZED_CATEGORY]),
]
ACCOUNT_TYPES = {"checking", "savings", "credit_card", "cash", "investment"}


def ensure_default_categories(db, user_id):
    for sort_order, (group_name, category_names) in enumerate(DEFAULT_EXPENSE_GROUPS):
        db.execute(
            """
            INSERT INTO expense_groups (user_id, name, sort_order) VALUES (?, ?, ?)
            ON CONFLICT (user_id, name) DO NOTHING
            """,
            (user_id, group_name, sort_order),
        )
        group_id = db.execute(
            "SELECT id FROM expense_groups WHERE user_id = ? AND name = ?",
            (user_id, group_name),
        ).fetchone()["id"]
        for category_name in category_names:
            db.execute(
                """
                INSERT INTO expense_categories (user_id, group_id, name) VALUES (?, ?, ?)
                ON CONFLICT (user_id, group_id, name) DO NOTHING
                """,
                (user_id, group_id, category_name),
            )
    db.commit()


def fetch_categories(db, user_id):
    rows = db.execute(
        """
        SELECT c.id, c.name, g.name AS group_name
        FROM expense_categories c
        JOIN expense_groups g ON g.id = c.group_id
        WHERE c.user_id = ?
        ORDER BY g.sort_order ASC, g.name ASC, c.name ASC
        """,
        (user_id,),
    ).fetchall()
    return [{"id": row["id"], "name": row["name"], "group": row["group_name"]} for row in rows]


def fetch_category(db, user_id, category_id):
    row = db.execute(
        """
        SELECT c.id, c.name, g.name AS group_name
        FROM expense_categories c
        JOIN expense_groups g ON g.id = c.group_id
        WHERE c.user_id = ? AND c.id = ?
        """,
        (user_id, category_id),
    ).fetchone()
    if row is None:
        return None
    return {"id": row["id"], "name": row["name"], "group": row["group_name"]}


def create_category(db, user_id, group_name, name, description=None):
    db.execute(
        """
        INSERT INTO expense_groups (user_id, name, sort_order) VALUES (?, ?, 100)
        ON CONFLICT (user_id, name) DO NOTHING
        """,
        (user_id, group_name),
    )
    group_id = db.execute(
        "SELECT id FROM expense_groups WHERE user_id = ? AND name = ?",
        (user_id, group_name),
    ).fetchone()["id"]
    db.execute(
        "INSERT INTO expense_categories (user_id, group_id, name, description) VALUES (?, ?, ?, ?)",
        (user_id, group_id, name, description),
    )
    category_id = db.execute(
        "SELECT id FROM expense_categories WHERE user_id = ? AND group_id = ? AND name = ?",
        (user_id, group_id, name),
    ).fetchone()["id"]
    db.commit()
    return fetch_category(db, user_id, category_id)


def _account_from_row(row):
    return {
        "id": row["id"],
        "name": row["name"],
        "type": row["type"],
        "institution": row["institution"],
        "balance": row["balance"],
        "currency": row["currency"],
    }


def list_accounts(db, user_id):
    rows = db.execute(
        """
        SELECT id, name, type, institution, balance, currency FROM accounts
        WHERE user_id = ? AND is_active = 1
        ORDER BY name ASC
        """,
        (user_id,),
    ).fetchall()
    return [_account_from_row(row) for row in rows]


def get_account(db, user_id, account_id):
    row = db.execute(
        "SELECT id, name, type, institution, balance, currency FROM accounts WHERE id = ? AND user_id = ? AND is_active = 1",
        (account_id, user_id),
    ).fetchone()
    return _account_from_row(row) if row is not None else None


def create_account(db, user_id, name, account_type="checking", institution=None, balance=0.0, currency="USD"):
    db.execute(
        """
        INSERT INTO accounts (user_id, name, type, institution, balance, currency)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (user_id, name, account_type, institution, balance, currency),
    )
    account_id = db.execute("SELECT last_insert_rowid() AS id").fetchone()["id"]
    db.commit()
    return get_account(db, user_id, account_id)


def _history_item_from_row(row):
    category_id = row["category_id"]
    return {
        "id": row["id"],
        "account_id": row["account_id"],
        "date": row["date"],
        "amount": row["amount"],
        "description": row["description"] or "",
        "category_id": category_id,
        "category": row["category_name"] if category_id is not None else UNCATEGORIZED_CATEGORY,
        "group": row["group_name"] if category_id is not None else UNCATEGORIZED_GROUP,
        "is_pending": bool(row["is_pending"]),
        "check_number": row["check_number"],
    }


def fetch_transaction_history(db, user_id, account_id=None):
    """Transactions for ``user_id`` newest first, with their category labels."""
    filters = ["t.user_id = ?"]
    params = [user_id]
    if account_id is not None:
        filters.append("t.account_id = ?")
        params.append(account_id)

    rows = db.execute(
        f"""
        SELECT t.id, t.account_id, t.date, t.amount, t.description, t.is_pending, t.check_number,
               t.expense_category_id AS category_id, c.name AS category_name, g.name AS group_name
        FROM transactions t
        LEFT JOIN expense_categories c ON c.id = t.expense_category_id
        LEFT JOIN expense_groups g ON g.id = c.group_id
        WHERE {' AND '.join(filters)}
        ORDER BY t.date DESC, t.id DESC
        """,
        tuple(params),
    ).fetchall()
    return [_history_item_from_row(row) for row in rows]


def insert_transactions(db, user_id, rows):
    try:
        for row in rows:
            db.execute(
                """
                INSERT INTO transactions (
                    user_id, account_id, expense_category_id, amount, description, date, is_pending, check_number
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    user_id,
                    row["account_id"],
                    row.get("category_id"),
                    row["amount"],
                    row["description"],
                    row["date"],
                    1 if row.get("is_pending") else 0,
                    row.get("check_number"),
                ),
            )
        db.commit()
    except Exception:
        db.rollback()
        raise
    return len(rows)


def cleanup_expired_import_sessions(db, max_age_hours=24):
    cutoff = (datetime.now(timezone.utc) - timedelta(hours=max_age_hours)).isoformat()
    db.execute("DELETE FROM import_sessions WHERE created_at < ?", (cutoff,))


def stage_import_session(db, import_id, user_id, file_name, file_kind, raw_text, date_format):
    db.execute(
        """
        INSERT INTO import_sessions (import_id, user_id, file_name, file_kind, raw_text, date_format, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (import_id, user_id, file_name, file_kind, raw_text, date_format, datetime.now(timezone.utc).isoformat()),
    )
    db.commit()


def get_import_session(db, import_id, user_id):
    if not import_id:
        return None
    return db.execute(
        """
        SELECT import_id, file_name, file_kind, raw_text, date_format, created_at
        FROM import_sessions
        WHERE import_id = ? AND user_id = ?
        """,
        (import_id, user_id),
    ).fetchone()


def update_import_session_date_format(db, import_id, user_id, date_format):
    db.execute(
        "UPDATE import_sessions SET date_format = ? WHERE import_id = ? AND user_id = ?",
        (date_format, import_id, user_id),
    )
    db.commit()


def delete_import_session(db, import_id, user_id):
    db.execute("DELETE FROM import_sessions WHERE import_id = ? AND user_id = ?", (import_id, user_id))
    db.commit()


def month_bounds(month):
    year, number = (int(part) for part in month.split("-"))
    next_year, next_number = (year + 1, 1) if number == 12 else (year, number + 1)
    return f"{year:04d}-{number:02d}-01", f"{next_year:04d}-{next_number:02d}-01"


def trailing_months(month, count=TREND_MONTHS):
    year, number = (int(part) for part in month.split("-"))
    keys = []
    for _ in range(count):
        keys.append(f"{year:04d}-{number:02d}")
        year, number = (year - 1, 12) if number == 1 else (year, number - 1)
    return keys[::-1]


def fetch_dashboard(db, user_id, month):
    """Income, spending and savings for ``month`` (``YYYY-MM``) plus a trailing monthly trend.

    Transfers are left out everywhere. Uncategorized rows count as Misc/Untracked.
    Savings is what went out to categories in the Savings group.
    """
    months = trailing_months(month)
    start, _ = month_bounds(months[0])
    _, end = month_bounds(month)
    rows = db.execute(
        """
        SELECT t.date, t.amount, c.name AS category_name, g.name AS group_name
        FROM transactions t
        LEFT JOIN expense_categories c ON c.id = t.expense_category_id
        LEFT JOIN expense_groups g ON g.id = c.group_id
        WHERE t.user_id = ? AND t.date >= ? AND t.date < ?
        ORDER BY t.date ASC, t.id ASC
        """,
        (user_id, start, end),
    ).fetchall()

    trend = {key: {"month": key, "income": 0.0, "expenses": 0.0} for key in months}
    income_by_category = {}
    expense_breakdown = {}
    savings = 0.0
    for row in rows:
        category = row["category_name"] or UNCATEGORIZED_CATEGORY
        group = row["group_name"] or UNCATEGORIZED_GROUP
        if category == TRANSFER_CATEGORY:
            continue

        amount = row["amount"]
        key = row["date"][:7]
        trend[key]["income" if amount > 0 else "expenses"] += abs(amount)
        if key != month:
            continue

        if amount > 0:
            income_by_category[category] = income_by_category.get(category, 0.0) + amount
        else:
            by_category = expense_breakdown.setdefault(group, {})
            by_category[category] = by_category.get(category, 0.0) - amount
            if group == SAVINGS_GROUP:
                savings -= amount

    return {
        "month": month,
        "income": round(trend[month]["income"], 2),
        "expenses": round(trend[month]["expenses"], 2),
        "savings": round(savings, 2),
        "income_by_category": {name: round(value, 2) for name, value in income_by_category.items()},
        "expenses_by_group": {
            group: round(sum(by_category.values()), 2) for group, by_category in expense_breakdown.items()
        },
        "expense_breakdown": {
            group: {name: round(value, 2) for name, value in by_category.items()}
            for group, by_category in expense_breakdown.items()
        },
        "trend": [
            {"month": item["month"], "income": round(item["income"], 2), "expenses": round(item["expenses"], 2)}
            for item in trend.values()
        ],
    }
