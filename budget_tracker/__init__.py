import os
import re
import uuid
from datetime import datetime
from functools import wraps

from flask import Flask, g, jsonify, request, session
from werkzeug.security import check_password_hash, generate_password_hash

from .db import connect_db, database_errors, parse_database_config
from .db_migrations import apply_migrations, get_db_health
from .statement_import import AccountSelectionError, ImportCommitError, StatementImport, is_valid_iso_date
from .statement_parsers import (
    DATE_FORMATS,
    DEFAULT_DATE_FORMAT,
    StatementFormatError,
    StatementImportError,
    decode_statement_bytes,
    parse_amount,
)
from .store import (
    ACCOUNT_TYPES,
    cleanup_expired_import_sessions,
    create_account,
    create_category,
    delete_import_session,
    ensure_default_categories,
    fetch_categories,
    fetch_category,
    fetch_dashboard,
    fetch_transaction_history,
    get_account,
    get_import_session,
    insert_transactions,
    list_accounts,
    stage_import_session,
    update_import_session_date_format,
)


MONTH_PATTERN = re.compile(r"^\d{4}-\d{2}$")


class DatabaseInitError(RuntimeError):
    """Raised when the database cannot be opened or migrated."""


def request_values():
    payload = request.get_json(silent=True)
    if isinstance(payload, dict):
        return payload
    return request.form


def parse_id(value):
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return None


def error_response(message, status=400):
    return jsonify({"error": message}), status


def create_app(test_config=None):
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_mapping(
        SECRET_KEY="dev",
        DATABASE=os.path.join(app.instance_path, "budget_tracker.sqlite"),
        IMPORT_DEFAULT_DATE_FORMAT=DEFAULT_DATE_FORMAT,
        IMPORT_SESSION_MAX_AGE_HOURS=24,
        MAX_CONTENT_LENGTH=10 * 1024 * 1024,
    )

    if test_config is not None:
        app.config.update(test_config)

    os.makedirs(app.instance_path, exist_ok=True)
    app.config.setdefault("DB_INIT_ERROR", None)

    @app.teardown_appcontext
    def close_db(_=None):
        db = g.pop("db", None)
        if db is not None:
            db.close()

    def get_db():
        if "db" not in g:
            try:
                g.db = connect_db(parse_database_config(app.config["DATABASE"]))
            except database_errors() as exc:
                message = f"Unable to open database {app.config['DATABASE']}: {exc}"
                app.logger.error(message)
                app.config["DB_INIT_ERROR"] = message
                raise DatabaseInitError(message) from exc
        return g.db

    def init_db():
        try:
            apply_migrations(parse_database_config(app.config["DATABASE"]))
            app.config["DB_INIT_ERROR"] = None
        except (*database_errors(), OSError, RuntimeError) as exc:
            message = f"Failed to initialize database {app.config['DATABASE']}: {exc}"
            app.logger.error(message)
            app.config["DB_INIT_ERROR"] = message
            raise DatabaseInitError(message) from exc

    @app.cli.command("init-db")
    def init_db_command():
        init_db()
        print("Initialized the database.")

    @app.get("/health/db")
    def db_health():
        try:
            return jsonify(get_db_health(parse_database_config(app.config["DATABASE"])))
        except database_errors() as exc:
            return jsonify({
                "ok": False,
                "schema_version": 0,
                "missing_tables": [],
                "missing_columns": {},
                "missing_indexes": [],
                "error": str(exc),
            }), 500

    def login_required(view):
        @wraps(view)
        def wrapped_view(**kwargs):
            if g.user is None:
                return error_response("Login required.", 401)
            return view(**kwargs)

        return wrapped_view

    @app.before_request
    def load_logged_in_user():
        if app.config.get("DB_INIT_ERROR") and request.endpoint != "db_health":
            return error_response(app.config["DB_INIT_ERROR"], 500)

        user_id = session.get("user_id")
        g.user = None
        if user_id is not None:
            g.user = get_db().execute("SELECT id, username FROM users WHERE id = ?", (user_id,)).fetchone()

    @app.post("/register")
    def register():
        values = request_values()
        username = (values.get("username") or "").strip()
        password = values.get("password") or ""
        if not username:
            return error_response("Username is required.")
        if not password:
            return error_response("Password is required.")

        db = get_db()
        if db.execute("SELECT 1 FROM users WHERE username = ?", (username,)).fetchone() is not None:
            return error_response("User already exists.", 409)

        db.execute(
            "INSERT INTO users (username, password_hash) VALUES (?, ?)",
            (username, generate_password_hash(password)),
        )
        db.commit()
        user_id = db.execute("SELECT id FROM users WHERE username = ?", (username,)).fetchone()["id"]
        ensure_default_categories(db, user_id)
        app.logger.info("Registered user_id=%s", user_id)
        return jsonify({"id": user_id, "username": username}), 201

    @app.post("/login")
    def login():
        values = request_values()
        username = (values.get("username") or "").strip()
        password = values.get("password") or ""
        user = get_db().execute("SELECT * FROM users WHERE username = ?", (username,)).fetchone()
        if user is None or not check_password_hash(user["password_hash"], password):
            return error_response("Incorrect username or password.", 401)

        session.clear()
        session["user_id"] = user["id"]
        return jsonify({"id": user["id"], "username": user["username"]})

    @app.post("/logout")
    def logout():
        session.clear()
        return jsonify({"ok": True})

    @app.route("/accounts", methods=("GET", "POST"))
    @login_required
    def accounts():
        db = get_db()
        if request.method == "GET":
            return jsonify({"accounts": list_accounts(db, g.user["id"])})

        values = request_values()
        name = (values.get("name") or "").strip()
        account_type = (values.get("type") or "checking").strip()
        if not name:
            return error_response("Account name is required.")
        if account_type not in ACCOUNT_TYPES:
            return error_response(f"Account type must be one of {', '.join(sorted(ACCOUNT_TYPES))}.")
        balance = parse_amount(str(values.get("balance") or "0"))
        if balance is None:
            return error_response("Invalid balance.")

        account = create_account(
            db,
            g.user["id"],
            name,
            account_type=account_type,
            institution=(values.get("institution") or "").strip() or None,
            balance=balance,
        )
        return jsonify(account), 201

    @app.route("/categories", methods=("GET", "POST"))
    @login_required
    def categories():
        db = get_db()
        if request.method == "GET":
            return jsonify({"categories": fetch_categories(db, g.user["id"])})

        values = request_values()
        group_name = (values.get("group") or "").strip()
        name = (values.get("name") or "").strip()
        if not group_name or not name:
            return error_response("Category group and name are required.")
        existing = fetch_categories(db, g.user["id"])
        if any(item["group"] == group_name and item["name"] == name for item in existing):
            return error_response("Category already exists.", 409)

        category = create_category(db, g.user["id"], group_name, name, (values.get("description") or "").strip() or None)
        return jsonify(category), 201

    @app.route("/transactions", methods=("GET", "POST"))
    @login_required
    def transactions():
        db = get_db()
        if request.method == "GET":
            raw_account_id = (request.args.get("account_id") or "").strip()
            account_id = None
            if raw_account_id and raw_account_id != "all":
                account_id = parse_id(raw_account_id)
                if account_id is None:
                    return error_response("Invalid account.")
            return jsonify({"transactions": fetch_transaction_history(db, g.user["id"], account_id=account_id)})

        values = request_values()
        account_id = parse_id(values.get("account_id"))
        if account_id is None or get_account(db, g.user["id"], account_id) is None:
            return error_response("Select a valid account.")
        date = (values.get("date") or "").strip()
        if not is_valid_iso_date(date):
            return error_response("Date must be YYYY-MM-DD.")
        amount = parse_amount(str(values.get("amount", "")))
        if amount is None:
            return error_response("Invalid amount.")
        category_id = None
        if values.get("category_id") not in (None, ""):
            category_id = parse_id(values.get("category_id"))
            if category_id is None or fetch_category(db, g.user["id"], category_id) is None:
                return error_response("Selected category was not found.")

        row = {
            "account_id": account_id,
            "category_id": category_id,
            "amount": amount,
            "description": (values.get("description") or "").strip(),
            "date": date,
            "is_pending": str(values.get("is_pending") or "").lower() in {"1", "true", "on"},
        }
        insert_transactions(db, g.user["id"], [row])
        return jsonify(row), 201

    @app.get("/dashboard")
    @login_required
    def dashboard():
        month = (request.args.get("month") or datetime.now().strftime("%Y-%m")).strip()
        if not MONTH_PATTERN.match(month) or not 1 <= int(month[5:]) <= 12:
            return error_response("Month must be YYYY-MM.")
        return jsonify(fetch_dashboard(get_db(), g.user["id"], month))

    def preview_payload(import_id, statement_import, db):
        rows = statement_import.preview_rows(
            fetch_transaction_history(db, g.user["id"]),
            fetch_categories(db, g.user["id"]),
        )
        return {
            "import_id": import_id,
            "file_name": statement_import.filename,
            "file_kind": statement_import.file_kind,
            "date_format": statement_import.date_format,
            "date_formats": list(DATE_FORMATS),
            "total": len(rows),
            "transactions": rows,
        }

    def load_statement_import(db, import_id):
        staged = get_import_session(db, import_id, g.user["id"])
        if staged is None:
            return None
        return StatementImport.restore(staged["file_name"], staged["raw_text"], staged["date_format"])

    @app.post("/import/statement")
    @login_required
    def import_statement():
        file = request.files.get("statement_file")
        if file is None or not file.filename:
            return error_response("Please choose a .qif or .ofx file.")

        date_format = (request.form.get("date_format") or app.config["IMPORT_DEFAULT_DATE_FORMAT"]).strip()
        content = decode_statement_bytes(file.read())
        if content is None:
            return error_response("Could not read file encoding. Please re-save the statement as UTF-8.")

        db = get_db()
        try:
            statement_import = StatementImport(date_format)
            statement_import.select_file(file.filename, content)
            statement_import.parse()
        except StatementFormatError as exc:
            app.logger.info("Statement preview rejected for user_id=%s file=%s: %s", g.user["id"], file.filename, exc)
            return error_response(str(exc))

        cleanup_expired_import_sessions(db, app.config["IMPORT_SESSION_MAX_AGE_HOURS"])
        import_id = str(uuid.uuid4())
        stage_import_session(
            db,
            import_id,
            g.user["id"],
            file.filename,
            statement_import.file_kind,
            content,
            statement_import.date_format,
        )
        payload = preview_payload(import_id, statement_import, db)
        app.logger.info(
            "Statement preview import_id=%s user_id=%s kind=%s rows=%s",
            import_id,
            g.user["id"],
            statement_import.file_kind,
            payload["total"],
        )
        return jsonify(payload)

    @app.get("/import/statement/<import_id>")
    @login_required
    def import_statement_preview(import_id):
        db = get_db()
        statement_import = load_statement_import(db, import_id)
        if statement_import is None:
            return error_response("Preview expired. Please re-upload the file.", 404)
        return jsonify(preview_payload(import_id, statement_import, db))

    @app.post("/import/statement/<import_id>/date-format")
    @login_required
    def import_statement_date_format(import_id):
        date_format = (request_values().get("date_format") or "").strip()
        if date_format not in DATE_FORMATS:
            return error_response(f"Date format must be one of {', '.join(DATE_FORMATS)}.")

        db = get_db()
        statement_import = load_statement_import(db, import_id)
        if statement_import is None:
            return error_response("Preview expired. Please re-upload the file.", 404)

        statement_import.change_date_format(date_format)
        update_import_session_date_format(db, import_id, g.user["id"], date_format)
        return jsonify(preview_payload(import_id, statement_import, db))

    @app.post("/import/statement/<import_id>/confirm")
    @login_required
    def import_statement_confirm(import_id):
        db = get_db()
        statement_import = load_statement_import(db, import_id)
        if statement_import is None:
            return error_response("Preview expired. Please re-upload the file.", 404)

        raw_account_id = str(request_values().get("account_id") or "").strip()
        account_id = raw_account_id
        if raw_account_id and raw_account_id.lower() != "all":
            account_id = parse_id(raw_account_id)
            if account_id is None or get_account(db, g.user["id"], account_id) is None:
                return error_response("Selected account was not found.", 404)

        def persist(rows):
            insert_transactions(db, g.user["id"], rows)

        try:
            summary = statement_import.confirm(
                account_id,
                fetch_transaction_history(db, g.user["id"]),
                fetch_categories(db, g.user["id"]),
                persist,
            )
        except AccountSelectionError as exc:
            return error_response(str(exc))
        except ImportCommitError as exc:
            delete_import_session(db, import_id, g.user["id"])
            app.logger.warning("Statement import aborted import_id=%s user_id=%s: %s", import_id, g.user["id"], exc)
            return error_response(str(exc))
        except database_errors() as exc:
            delete_import_session(db, import_id, g.user["id"])
            app.logger.error("Statement import failed import_id=%s user_id=%s: %s", import_id, g.user["id"], exc)
            return error_response(f"Could not save imported transactions: {exc}", 500)

        delete_import_session(db, import_id, g.user["id"])
        app.logger.info(
            "Statement import import_id=%s user_id=%s imported=%s duplicates=%s skipped=%s total=%s",
            import_id,
            g.user["id"],
            summary["imported"],
            summary["duplicates"],
            summary["skipped"],
            summary["total"],
        )
        return jsonify(summary)

    @app.post("/import/statement/<import_id>/cancel")
    @login_required
    def import_statement_cancel(import_id):
        db = get_db()
        statement_import = load_statement_import(db, import_id)
        if statement_import is None:
            return error_response("Preview expired. Please re-upload the file.", 404)
        statement_import.cancel()
        delete_import_session(db, import_id, g.user["id"])
        return jsonify({"import_id": import_id, "cancelled": True})

    @app.errorhandler(StatementImportError)
    def handle_statement_import_error(exc):
        return error_response(str(exc))

    with app.app_context():
        try:
            init_db()
        except DatabaseInitError:
            pass

    app.get_db = get_db
    app.init_db = init_db
    return app
