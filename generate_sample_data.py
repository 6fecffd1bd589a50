import random
from datetime import date, timedelta

from werkzeug.security import generate_password_hash

from budget_tracker import create_app
from budget_tracker.store import create_account, ensure_default_categories, fetch_categories, insert_transactions


SAMPLE_MERCHANTS = [
    ("WHOLE FOODS MARKET #10", "Groceries", (-140, -25)),
    ("STARBUCKS STORE 9981", "Dining Out", (-12, -4)),
    ("SHELL OIL 5741", "Transportation", (-70, -30)),
    ("NETFLIX.COM", "Subscriptions", (-16, -16)),
    ("COMCAST XFINITY", "Internet/Phone", (-90, -90)),
    ("AMAZON MKTPLACE", "Shopping", (-120, -8)),
    ("ACME PAYROLL", "Salary", (2400, 2600)),
]


def main():
    app = create_app()
    with app.app_context():
        app.init_db()
        db = app.get_db()

        db.execute(
            "INSERT INTO users (username, password_hash) VALUES (?, ?)",
            ("demo", generate_password_hash("demo123")),
        )
        db.commit()
        user_id = db.execute("SELECT id FROM users WHERE username = 'demo'").fetchone()["id"]
        ensure_default_categories(db, user_id)
        account = create_account(db, user_id, "Everyday Checking", institution="Demo Bank", balance=2500.0)

        category_ids = {category["name"]: category["id"] for category in fetch_categories(db, user_id)}
        start = date.today() - timedelta(days=90)
        rows = []
        for i in range(40):
            description, category_name, (low, high) = random.choice(SAMPLE_MERCHANTS)
            rows.append(
                {
                    "account_id": account["id"],
                    "category_id": category_ids.get(category_name),
                    "amount": round(random.uniform(low, high), 2),
                    "description": description,
                    "date": (start + timedelta(days=i * 2)).isoformat(),
                }
            )
        insert_transactions(db, user_id, rows)
    print("Sample data generated. Login with demo / demo123")


if __name__ == "__main__":
    main()
