import csv
import io
import os
import secrets
from datetime import date, datetime, timezone
from decimal import Decimal
from functools import wraps

from dotenv import load_dotenv
from flask import (
    Flask,
    Response,
    flash,
    g,
    jsonify,
    redirect,
    render_template,
    request,
    session,
    url_for,
)
from werkzeug.security import check_password_hash, generate_password_hash
from werkzeug.utils import secure_filename

from . import storage
from .cycles import build_invoice_date_map, resolve_cycle
from .db import DATABASE_ERRORS, INTEGRITY_ERRORS, connect_db, parse_database_config
from .db_migrations import apply_migrations, get_db_health
from .extraction import (
    DEFAULT_GEMINI_MODEL,
    ExtractionConfigError,
    ExtractionError,
    build_extractor,
    categorize_descriptions,
)
from .logging_setup import configure_logging, get_logger
from .models import (
    CARD_ISSUERS,
    DEFAULT_CATEGORY,
    DEFAULT_TAG,
    MANUAL_ENTRY_ID,
    Category,
    InvoiceFile,
    InvoiceStatus,
    MatchStatus,
    SystemTransaction,
    Tag,
    Transaction,
    ValidationError,
    new_id,
    parse_iso_date,
    parse_money,
    validate_entry_fields,
)
from .reconciliation import ReconciliationBatch, ReconciliationError
from .reports import ALL, ReportFilter, dashboard_summary, report_summary
from .storage import StorageError


logger = get_logger(__name__)

ROLE_ADMIN = "admin"
ROLE_USER = "user"
CATEGORY_COLORS = ["#EF4444", "#F59E0B", "#3B82F6", "#10B981", "#8B5CF6", "#EC4899", "#6366F1", "#14B8A6"]
TAG_COLORS = ["bg-blue-100 text-blue-700", "bg-purple-100 text-purple-700", "bg-green-100 text-green-700"]
SYSTEM_CSV_COLUMNS = {"date", "description", "amount", "account"}


class DatabaseInitError(RuntimeError):
    """Raised when the database cannot be opened or migrated."""


def normalize_header_name(value):
    return " ".join((value or "").strip().lower().split())


def normalize_name(value):
    return " ".join((value or "").strip().split())


def decode_csv_bytes(file_bytes):
    for encoding in ["utf-8-sig", "utf-8", "cp1252", "latin-1"]:
        try:
            return file_bytes.decode(encoding)
        except UnicodeDecodeError:
            continue
    return None


def format_brl(value):
    amount = Decimal(value or 0)
    text = f"{abs(amount):,.2f}".replace(",", "_").replace(".", ",").replace("_", ".")
    return f"-R$ {text}" if amount < 0 else f"R$ {text}"


def find_by_name(items, name):
    wanted = normalize_name(name).lower()
    for item in items:
        if item.name.lower() == wanted:
            return item
    return None


def find_by_id(items, item_id):
    for item in items:
        if item.id == item_id:
            return item
    return None


def sort_review_transactions(transactions, key, direction):
    reverse = direction != "asc"
    if key == "amount":
        return sorted(transactions, key=lambda t: t.amount, reverse=reverse)
    if key == "description":
        return sorted(transactions, key=lambda t: t.description.lower(), reverse=reverse)
    return sorted(transactions, key=lambda t: t.purchase_date or "", reverse=reverse)


def iso_form_date(value, fallback, label):
    # Stored dates are always YYYY-MM-DD, whatever format the form accepted.
    value = (value or "").strip() or (fallback or "").strip()
    if not value:
        return ""
    parsed = parse_iso_date(value)
    if parsed is None:
        raise ValidationError(f"{label} must use the YYYY-MM-DD format.")
    return parsed.isoformat()


def apply_transaction_form(transaction, form, categories):
    """Copy validated edit-form fields onto ``transaction``; raises ``ValidationError``."""
    description, amount = validate_entry_fields(
        form.get("description"), form.get("amount"), form.get("purchase_date", "")
    )
    category_name = normalize_name(form.get("category")) or DEFAULT_CATEGORY
    category = find_by_name(categories, category_name)
    subcategory = normalize_name(form.get("subcategory"))
    if category is not None and subcategory and subcategory not in category.subcategories:
        raise ValidationError(f"Subcategory '{subcategory}' does not belong to {category.name}.")
    issuer = form.get("card_issuer") or transaction.card_issuer
    if issuer and issuer not in CARD_ISSUERS:
        raise ValidationError("Unknown card issuer.")
    purchase_date = iso_form_date(form.get("purchase_date"), transaction.purchase_date, "Purchase date")
    entry_date = iso_form_date(form.get("date"), transaction.date or purchase_date, "Date")

    transaction.description = description
    transaction.amount = amount
    transaction.purchase_date = purchase_date
    transaction.date = entry_date
    transaction.category = category.name if category is not None else category_name
    transaction.subcategory = subcategory
    transaction.card_issuer = issuer or ""
    transaction.tags = form.getlist("tags")
    transaction.notes = (form.get("notes") or "").strip()
    return transaction


def parse_system_transactions_csv(text, default_account=""):
    reader = csv.DictReader(io.StringIO(text))
    headers = {normalize_header_name(name) for name in (reader.fieldnames or [])}
    missing = sorted({"date", "description", "amount"} - headers)
    if missing:
        raise ValidationError(f"CSV is missing columns: {', '.join(missing)}.")

    imported, skipped = [], 0
    for raw_row in reader:
        row = {normalize_header_name(key): (value or "").strip() for key, value in raw_row.items() if key}
        parsed_date = parse_iso_date(row.get("date"))
        amount = parse_money(row.get("amount"))
        if parsed_date is None or amount is None or not row.get("description"):
            skipped += 1
            continue
        imported.append(
            SystemTransaction(
                id=new_id("sys"),
                date=parsed_date.isoformat(),
                description=row["description"],
                amount=amount,
                account=row.get("account") or default_account,
            )
        )
    return imported, skipped


def create_app(test_config=None):
    load_dotenv()
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_mapping(
        SECRET_KEY=os.environ.get("SECRET_KEY", "dev"),
        DATABASE=os.path.join(app.instance_path, "fin_reconcile.sqlite"),
        DATABASE_URL=os.environ.get("DATABASE_URL", ""),
        GEMINI_API_KEY=os.environ.get("GEMINI_API_KEY", ""),
        GEMINI_MODEL=os.environ.get("GEMINI_MODEL", DEFAULT_GEMINI_MODEL),
        INVOICE_EXTRACTOR=None,
        CATEGORIZER=None,
        LOG_LEVEL=os.environ.get("FIN_RECONCILE_LOG_LEVEL"),
        MAX_CONTENT_LENGTH=20 * 1024 * 1024,
    )

    if test_config is not None:
        app.config.update(test_config)

    configure_logging(app.config.get("LOG_LEVEL"))
    os.makedirs(app.instance_path, exist_ok=True)
    app.config.setdefault("DB_INIT_ERROR", None)
    app.config["EXTRACTION_CONFIG_ERROR"] = None

    try:
        app.config["INVOICE_EXTRACTOR"] = build_extractor(app.config)
    except ExtractionConfigError as exc:
        logger.warning("Invoice extraction disabled: %s", exc)
        app.config["EXTRACTION_CONFIG_ERROR"] = str(exc)

    app.jinja_env.filters["brl"] = format_brl

    def database_config():
        return parse_database_config(app.config["DATABASE"], app.config.get("DATABASE_URL") or "")

    @app.teardown_appcontext
    def close_db(_=None):
        db = g.pop("db", None)
        if db is not None:
            db.close()

    def get_db():
        if "db" not in g:
            try:
                g.db = connect_db(database_config())
            except DATABASE_ERRORS as exc:
                message = f"Unable to open database {database_config()['database_name']}: {exc}"
                logger.error(message)
                app.config["DB_INIT_ERROR"] = message
                raise DatabaseInitError(message) from exc
        return g.db

    def init_db():
        try:
            apply_migrations(database_config())
            app.config["DB_INIT_ERROR"] = None
        except (*DATABASE_ERRORS, OSError, RuntimeError) as exc:
            message = f"Failed to initialize database {database_config()['database_name']}: {exc}"
            logger.error(message)
            app.config["DB_INIT_ERROR"] = message
            raise DatabaseInitError(message) from exc

    @app.cli.command("init-db")
    def init_db_command():
        init_db()
        print("Initialized the database.")

    @app.get("/health/db")
    def db_health():
        try:
            return jsonify(get_db_health(database_config()))
        except DATABASE_ERRORS as exc:
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
                return redirect(url_for("login"))
            return view(**kwargs)

        return wrapped_view

    def admin_required(view):
        @wraps(view)
        def wrapped_view(**kwargs):
            if g.user is None:
                return redirect(url_for("login"))
            if g.user["role"] != ROLE_ADMIN:
                flash("Only administrators can manage users.")
                return redirect(url_for("settings"))
            return view(**kwargs)

        return wrapped_view

    def render_db_init_error_response():
        message = app.config.get("DB_INIT_ERROR") or "Database initialization failed."
        return f"<h1>Database initialization failed</h1><p>{message}</p>", 500

    @app.before_request
    def load_logged_in_user():
        if app.config.get("DB_INIT_ERROR"):
            return render_db_init_error_response()

        user_id = session.get("user_id")
        if user_id is None:
            g.user = None
        else:
            g.user = get_db().execute("SELECT id, email, role FROM users WHERE id = ?", (user_id,)).fetchone()

    @app.context_processor
    def inject_navigation():
        return {
            "current_user": getattr(g, "user", None),
            "is_admin": bool(getattr(g, "user", None)) and g.user["role"] == ROLE_ADMIN,
        }

    def load_taxonomy():
        return storage.fetch_settings(get_db(), g.user["id"])

    def load_staged(import_id):
        staged = storage.fetch_staged_invoice(get_db(), g.user["id"], import_id)
        if staged is None:
            flash("This import has expired or was already saved. Upload the invoice again.")
        return staged

    def restage(import_id, invoice, transactions, created_system=()):
        storage.stage_invoice(get_db(), g.user["id"], import_id, invoice, transactions, created_system)

    def persist_invoice(import_id, invoice, transactions, created_system=()):
        invoice.status = InvoiceStatus.PARSED
        invoice.transaction_count = len(transactions)
        try:
            storage.save_invoice_with_transactions(
                get_db(), g.user["id"], invoice, transactions, created_system, import_id=import_id
            )
        except StorageError as exc:
            flash(f"Failed to save the invoice: {exc} Your review is kept, try again.")
            return False
        session.pop("current_import_id", None)
        flash(f"Invoice saved with {len(transactions)} transaction(s).")
        return True

    @app.route("/")
    def index():
        if g.user:
            return redirect(url_for("dashboard"))
        return redirect(url_for("login"))

    @app.route("/register", methods=("GET", "POST"))
    def register():
        if request.method == "POST":
            email = (request.form.get("email") or "").strip().lower()
            password = request.form.get("password") or ""
            error = None
            if not email or "@" not in email:
                error = "A valid email is required."
            elif not password:
                error = "Password is required."

            if error is None:
                db = get_db()
                # The first account on a fresh install administers the others.
                existing = db.execute("SELECT COUNT(*) AS c FROM users").fetchone()["c"]
                role = ROLE_ADMIN if existing == 0 else ROLE_USER
                try:
                    db.execute(
                        "INSERT INTO users (email, password_hash, role) VALUES (?, ?, ?)",
                        (email, generate_password_hash(password), role),
                    )
                    db.commit()
                    flash("Registration successful. Please login.")
                    return redirect(url_for("login"))
                except INTEGRITY_ERRORS:
                    db.rollback()
                    error = "User already exists."

            flash(error)
        return render_template("register.html")

    @app.route("/login", methods=("GET", "POST"))
    def login():
        if request.method == "POST":
            email = (request.form.get("email") or "").strip().lower()
            password = request.form.get("password") or ""
            user = get_db().execute("SELECT * FROM users WHERE email = ?", (email,)).fetchone()

            if user is None or not check_password_hash(user["password_hash"], password):
                flash("Incorrect email or password.")
            else:
                session.clear()
                session["user_id"] = user["id"]
                return redirect(url_for("dashboard"))

        return render_template("login.html")

    @app.route("/logout")
    def logout():
        session.clear()
        return redirect(url_for("login"))

    @app.route("/dashboard")
    @login_required
    def dashboard():
        db = get_db()
        transactions = storage.fetch_transactions(db, g.user["id"])
        invoices = storage.fetch_invoices(db, g.user["id"])
        summary = dashboard_summary(transactions, build_invoice_date_map(invoices))
        return render_template(
            "dashboard.html",
            summary=summary,
            invoice_count=len(invoices),
            current_import_id=session.get("current_import_id"),
        )

    @app.route("/upload", methods=("GET", "POST"))
    @login_required
    def upload():
        config_error = app.config.get("EXTRACTION_CONFIG_ERROR")
        if request.method == "GET":
            return render_template("upload.html", issuers=CARD_ISSUERS, config_error=config_error)

        if config_error:
            flash(config_error)
            return redirect(url_for("upload"))

        issuer = request.form.get("issuer") or ""
        uploaded = request.files.get("invoice")
        if issuer not in CARD_ISSUERS:
            flash("Select the card issuer of this invoice.")
            return redirect(url_for("upload"))
        if uploaded is None or not uploaded.filename:
            flash("Choose an invoice PDF to upload.")
            return redirect(url_for("upload"))

        pdf_bytes = uploaded.read()
        invoice = InvoiceFile(
            id=new_id("inv"),
            name=secure_filename(uploaded.filename) or "invoice.pdf",
            size=len(pdf_bytes),
            upload_date=datetime.now(timezone.utc),
            status=InvoiceStatus.PROCESSING,
            card_issuer=issuer,
        )
        try:
            extracted = app.config["INVOICE_EXTRACTOR"].extract(pdf_bytes, issuer)
        except ExtractionError as exc:
            invoice.status = InvoiceStatus.ERROR
            logger.warning("Extraction of %s (%s) failed: %s", invoice.name, invoice.id, exc)
            flash("Could not process the file. Check that it is a valid invoice PDF and upload it again.")
            return redirect(url_for("upload"))

        if not extracted:
            flash("No transactions were found in this invoice.")
            return redirect(url_for("upload"))

        categorizer = app.config.get("CATEGORIZER") or categorize_descriptions
        suggested = categorizer([item.description for item in extracted])
        transactions = [
            Transaction(
                id=new_id("t"),
                date=item.purchase_date,
                purchase_date=item.purchase_date,
                description=item.description,
                amount=item.amount,
                category=suggested.get(item.description) or DEFAULT_CATEGORY,
                tags=[DEFAULT_TAG],
                invoice_id=invoice.id,
                status=MatchStatus.UNMATCHED,
                card_issuer=issuer,
            )
            for item in extracted
        ]
        invoice.status = InvoiceStatus.PARSED
        invoice.transaction_count = len(transactions)

        import_id = new_id("imp")
        try:
            storage.cleanup_expired_staging(get_db())
            storage.stage_invoice(get_db(), g.user["id"], import_id, invoice, transactions)
        except StorageError as exc:
            flash(str(exc))
            return redirect(url_for("upload"))
        session["current_import_id"] = import_id
        flash(f"{len(transactions)} transaction(s) extracted from {invoice.name}.")
        return redirect(url_for("review", import_id=import_id))

    @app.route("/review/<import_id>")
    @login_required
    def review(import_id):
        staged = load_staged(import_id)
        if staged is None:
            return redirect(url_for("upload"))
        invoice, transactions, _ = staged
        sort_key = request.args.get("sort", "purchase_date")
        direction = request.args.get("direction", "desc")
        categories, tags = load_taxonomy()
        return render_template(
            "review.html",
            import_id=import_id,
            invoice=invoice,
            transactions=sort_review_transactions(transactions, sort_key, direction),
            total=sum((t.amount for t in transactions), Decimal("0.00")),
            categories=categories,
            tags=tags,
            sort_key=sort_key,
            direction=direction,
        )

    @app.route("/review/<import_id>/transactions/<transaction_id>/edit", methods=("GET", "POST"))
    @login_required
    def edit_review_transaction(import_id, transaction_id):
        staged = load_staged(import_id)
        if staged is None:
            return redirect(url_for("upload"))
        invoice, transactions, created_system = staged
        transaction = find_by_id(transactions, transaction_id)
        if transaction is None:
            flash("Transaction not found.")
            return redirect(url_for("review", import_id=import_id))
        categories, tags = load_taxonomy()

        if request.method == "POST":
            try:
                apply_transaction_form(transaction, request.form, categories)
            except ValidationError as exc:
                flash(str(exc))
                return render_template(
                    "transaction_form.html",
                    transaction=transaction,
                    form=request.form,
                    categories=categories,
                    tags=tags,
                    issuers=CARD_ISSUERS,
                    action=url_for("edit_review_transaction", import_id=import_id, transaction_id=transaction_id),
                    cancel_url=url_for("review", import_id=import_id),
                )
            try:
                restage(import_id, invoice, transactions, created_system)
            except StorageError as exc:
                flash(str(exc))
                return redirect(url_for("review", import_id=import_id))
            flash("Transaction updated.")
            return redirect(url_for("review", import_id=import_id))

        return render_template(
            "transaction_form.html",
            transaction=transaction,
            form=None,
            categories=categories,
            tags=tags,
            issuers=CARD_ISSUERS,
            action=url_for("edit_review_transaction", import_id=import_id, transaction_id=transaction_id),
            cancel_url=url_for("review", import_id=import_id),
        )

    @app.post("/review/<import_id>/transactions/<transaction_id>/delete")
    @login_required
    def delete_review_transaction(import_id, transaction_id):
        staged = load_staged(import_id)
        if staged is None:
            return redirect(url_for("upload"))
        invoice, transactions, created_system = staged
        remaining = [t for t in transactions if t.id != transaction_id]
        invoice.transaction_count = len(remaining)
        try:
            restage(import_id, invoice, remaining, created_system)
        except StorageError as exc:
            flash(str(exc))
            return redirect(url_for("review", import_id=import_id))
        flash("Transaction removed from this invoice.")
        return redirect(url_for("review", import_id=import_id))

    @app.post("/review/<import_id>/categories")
    @login_required
    def add_review_category(import_id):
        categories, tags = load_taxonomy()
        name = normalize_name(request.form.get("name"))
        parent_name = normalize_name(request.form.get("parent"))
        if not name:
            flash("Category name is required.")
        elif parent_name:
            parent = find_by_name(categories, parent_name)
            if parent is None:
                flash("Category not found.")
            elif name.lower() in (sub.lower() for sub in parent.subcategories):
                flash("This subcategory already exists.")
            else:
                parent.subcategories.append(name)
                try:
                    storage.save_settings(get_db(), g.user["id"], categories=categories)
                    flash("Subcategory added.")
                except StorageError as exc:
                    flash(str(exc))
        elif find_by_name(categories, name) is not None:
            flash("This category already exists.")
        else:
            categories.append(Category(new_id("cat"), name, [], CATEGORY_COLORS[len(categories) % len(CATEGORY_COLORS)]))
            try:
                storage.save_settings(get_db(), g.user["id"], categories=categories)
                flash("Category added.")
            except StorageError as exc:
                flash(str(exc))
        return redirect(url_for("review", import_id=import_id))

    @app.post("/review/<import_id>/confirm")
    @login_required
    def confirm_review(import_id):
        staged = load_staged(import_id)
        if staged is None:
            return redirect(url_for("upload"))
        invoice, transactions, created_system = staged
        if not transactions:
            flash("There are no transactions left to save.")
            return redirect(url_for("review", import_id=import_id))
        # Confirming straight from review accepts every line item as reconciled.
        for transaction in transactions:
            transaction.status = MatchStatus.MATCHED
        if not persist_invoice(import_id, invoice, transactions, created_system):
            return redirect(url_for("review", import_id=import_id))
        return redirect(url_for("dashboard"))

    @app.post("/review/<import_id>/discard")
    @login_required
    def discard_review(import_id):
        try:
            storage.clear_staged_invoice(get_db(), g.user["id"], import_id)
        except StorageError as exc:
            flash(str(exc))
            return redirect(url_for("review", import_id=import_id))
        session.pop("current_import_id", None)
        flash("Import discarded.")
        return redirect(url_for("upload"))

    def load_batch(import_id):
        staged = load_staged(import_id)
        if staged is None:
            return None
        invoice, transactions, created_system = staged
        system_transactions = storage.fetch_system_transactions(get_db(), g.user["id"]) + created_system
        batch = ReconciliationBatch(transactions, system_transactions)
        batch.created_system_transactions = list(created_system)
        return invoice, batch

    @app.route("/reconcile/<import_id>")
    @login_required
    def reconcile(import_id):
        loaded = load_batch(import_id)
        if loaded is None:
            return redirect(url_for("upload"))
        invoice, batch = loaded
        return render_template(
            "reconcile.html",
            import_id=import_id,
            invoice=invoice,
            suggestions=batch.suggestions(),
            progress=batch.progress,
            is_complete=batch.is_complete,
            matched=MatchStatus.MATCHED,
        )

    @app.post("/reconcile/<import_id>/match/<transaction_id>")
    @login_required
    def reconcile_match(import_id, transaction_id):
        loaded = load_batch(import_id)
        if loaded is None:
            return redirect(url_for("upload"))
        invoice, batch = loaded
        try:
            batch.confirm(transaction_id)
            restage(import_id, invoice, batch.transactions, batch.created_system_transactions)
        except (ReconciliationError, StorageError) as exc:
            flash(str(exc))
        return redirect(url_for("reconcile", import_id=import_id))

    @app.post("/reconcile/<import_id>/create/<transaction_id>")
    @login_required
    def reconcile_create(import_id, transaction_id):
        loaded = load_batch(import_id)
        if loaded is None:
            return redirect(url_for("upload"))
        invoice, batch = loaded
        try:
            batch.synthesize(transaction_id, account=request.form.get("account") or invoice.card_issuer)
            restage(import_id, invoice, batch.transactions, batch.created_system_transactions)
        except (ReconciliationError, StorageError) as exc:
            flash(str(exc))
        return redirect(url_for("reconcile", import_id=import_id))

    @app.post("/reconcile/<import_id>/finish")
    @login_required
    def reconcile_finish(import_id):
        loaded = load_batch(import_id)
        if loaded is None:
            return redirect(url_for("upload"))
        invoice, batch = loaded
        try:
            matched = batch.finalize()
        except ReconciliationError as exc:
            flash(str(exc))
            return redirect(url_for("reconcile", import_id=import_id))
        if not persist_invoice(import_id, invoice, matched, batch.created_system_transactions):
            return redirect(url_for("reconcile", import_id=import_id))
        return redirect(url_for("dashboard"))

    @app.route("/invoices")
    @login_required
    def invoices():
        return render_template("invoices.html", invoices=storage.fetch_invoices(get_db(), g.user["id"]))

    @app.post("/invoices/<invoice_id>/delete")
    @login_required
    def delete_invoice(invoice_id):
        try:
            deleted = storage.delete_invoice(get_db(), g.user["id"], invoice_id)
        except StorageError as exc:
            flash(str(exc))
            return redirect(url_for("invoices"))
        flash("Invoice deleted." if deleted else "Invoice not found.")
        return redirect(url_for("invoices"))

    @app.route("/manual", methods=("GET", "POST"))
    @login_required
    def manual_entry():
        categories, tags = load_taxonomy()
        transaction = Transaction(
            id=new_id("manual"),
            date=date.today().isoformat(),
            purchase_date=date.today().isoformat(),
            description="",
            amount=Decimal("0.00"),
            category=DEFAULT_CATEGORY,
            tags=[DEFAULT_TAG],
            invoice_id=MANUAL_ENTRY_ID,
            card_issuer=CARD_ISSUERS[0],
        )

        def render_form(form=None):
            return render_template(
                "transaction_form.html",
                transaction=transaction,
                form=form,
                categories=categories,
                tags=tags,
                issuers=CARD_ISSUERS,
                action=url_for("manual_entry"),
                cancel_url=url_for("dashboard"),
                manual=True,
            )

        if request.method == "POST":
            try:
                apply_transaction_form(transaction, request.form, categories)
            except ValidationError as exc:
                flash(str(exc))
                return render_form(request.form)
            transaction.date = date.today().isoformat()
            try:
                storage.save_transactions(get_db(), g.user["id"], [transaction])
            except StorageError as exc:
                flash(f"{exc} Nothing was lost, try saving again.")
                return render_form(request.form)
            flash("Transaction added.")
            return redirect(url_for("dashboard"))

        return render_form()

    @app.post("/transactions/<transaction_id>/delete")
    @login_required
    def delete_transaction(transaction_id):
        try:
            deleted = storage.delete_transaction(get_db(), g.user["id"], transaction_id)
        except StorageError as exc:
            flash(str(exc))
            return redirect(url_for("reports"))
        flash("Transaction deleted." if deleted else "Transaction not found.")
        next_url = request.form.get("next") or ""
        if not next_url.startswith("/") or next_url.startswith("//"):
            next_url = url_for("reports")
        return redirect(next_url)

    def current_report_filter(args):
        return ReportFilter(
            cycle=(args.get("cycle") or ALL).strip(),
            tag=(args.get("tag") or ALL).strip(),
            search=(args.get("q") or "").strip(),
        )

    @app.route("/reports")
    @login_required
    def reports():
        db = get_db()
        transactions = storage.fetch_transactions(db, g.user["id"])
        invoice_dates = build_invoice_date_map(storage.fetch_invoices(db, g.user["id"]))
        report_filter = current_report_filter(request.args)
        _, tags = load_taxonomy()
        summary = report_summary(transactions, invoice_dates, report_filter)
        return render_template(
            "reports.html",
            summary=summary,
            report_filter=report_filter,
            tags=tags,
            cycle_of=lambda t: resolve_cycle(t, invoice_dates).label,
        )

    @app.route("/reports/export.csv")
    @login_required
    def export_report_csv():
        db = get_db()
        transactions = storage.fetch_transactions(db, g.user["id"])
        invoice_dates = build_invoice_date_map(storage.fetch_invoices(db, g.user["id"]))
        report_filter = current_report_filter(request.args)
        summary = report_summary(transactions, invoice_dates, report_filter)

        output = io.StringIO()
        writer = csv.writer(output)
        writer.writerow(["cycle", "purchase_date", "description", "amount", "category", "subcategory", "tags", "card_issuer"])
        for t in summary["filtered"]:
            writer.writerow([
                resolve_cycle(t, invoice_dates).label,
                t.purchase_date,
                t.description,
                str(t.amount),
                t.category,
                t.subcategory,
                ";".join(t.tags),
                t.card_issuer,
            ])

        suffix = report_filter.cycle.replace("/", "-") if report_filter.cycle != ALL else "all"
        return Response(
            output.getvalue(),
            mimetype="text/csv",
            headers={"Content-Disposition": f"attachment; filename=transactions-{suffix}.csv"},
        )

    @app.route("/settings")
    @login_required
    def settings():
        categories, tags = load_taxonomy()
        users = []
        if g.user["role"] == ROLE_ADMIN:
            users = get_db().execute("SELECT id, email, role, created_at FROM users ORDER BY id ASC").fetchall()
        return render_template(
            "settings.html",
            categories=categories,
            tags=tags,
            users=users,
            tab=request.args.get("tab", "categories"),
        )

    def save_categories(categories, message):
        try:
            storage.save_settings(get_db(), g.user["id"], categories=categories)
            flash(message)
        except StorageError as exc:
            flash(str(exc))
        return redirect(url_for("settings", tab="categories"))

    @app.post("/settings/categories")
    @login_required
    def add_category():
        categories, _ = load_taxonomy()
        name = normalize_name(request.form.get("name"))
        if not name:
            flash("Category name is required.")
            return redirect(url_for("settings", tab="categories"))
        if find_by_name(categories, name) is not None:
            flash("This category already exists.")
            return redirect(url_for("settings", tab="categories"))
        color = request.form.get("color") or CATEGORY_COLORS[len(categories) % len(CATEGORY_COLORS)]
        categories.append(Category(new_id("cat"), name, [], color))
        return save_categories(categories, "Category added.")

    @app.post("/settings/categories/<category_id>/rename")
    @login_required
    def rename_category(category_id):
        categories, _ = load_taxonomy()
        category = find_by_id(categories, category_id)
        name = normalize_name(request.form.get("name"))
        if category is None:
            flash("Category not found.")
            return redirect(url_for("settings", tab="categories"))
        if not name:
            flash("Category name is required.")
            return redirect(url_for("settings", tab="categories"))
        clash = find_by_name(categories, name)
        if clash is not None and clash.id != category.id:
            flash("This category already exists.")
            return redirect(url_for("settings", tab="categories"))
        # Transactions keep the old name; only the taxonomy entry changes.
        category.name = name
        return save_categories(categories, "Category renamed.")

    @app.post("/settings/categories/<category_id>/delete")
    @login_required
    def delete_category(category_id):
        categories, _ = load_taxonomy()
        remaining = [c for c in categories if c.id != category_id]
        if len(remaining) == len(categories):
            flash("Category not found.")
            return redirect(url_for("settings", tab="categories"))
        return save_categories(remaining, "Category deleted.")

    @app.post("/settings/categories/<category_id>/subcategories")
    @login_required
    def add_subcategory(category_id):
        categories, _ = load_taxonomy()
        category = find_by_id(categories, category_id)
        name = normalize_name(request.form.get("name"))
        if category is None:
            flash("Category not found.")
            return redirect(url_for("settings", tab="categories"))
        if not name:
            flash("Subcategory name is required.")
            return redirect(url_for("settings", tab="categories"))
        if name.lower() in (sub.lower() for sub in category.subcategories):
            flash("This subcategory already exists.")
            return redirect(url_for("settings", tab="categories"))
        category.subcategories.append(name)
        return save_categories(categories, "Subcategory added.")

    @app.post("/settings/categories/<category_id>/subcategories/delete")
    @login_required
    def delete_subcategory(category_id):
        categories, _ = load_taxonomy()
        category = find_by_id(categories, category_id)
        name = request.form.get("name") or ""
        if category is None or name not in category.subcategories:
            flash("Subcategory not found.")
            return redirect(url_for("settings", tab="categories"))
        category.subcategories.remove(name)
        return save_categories(categories, "Subcategory deleted.")

    def save_tags(tags, message):
        try:
            storage.save_settings(get_db(), g.user["id"], tags=tags)
            flash(message)
        except StorageError as exc:
            flash(str(exc))
        return redirect(url_for("settings", tab="tags"))

    @app.post("/settings/tags")
    @login_required
    def add_tag():
        _, tags = load_taxonomy()
        name = normalize_name(request.form.get("name"))
        if not name:
            flash("Tag name is required.")
            return redirect(url_for("settings", tab="tags"))
        if find_by_name(tags, name) is not None:
            flash("This tag already exists.")
            return redirect(url_for("settings", tab="tags"))
        tags.append(Tag(new_id("tag"), name, TAG_COLORS[len(tags) % len(TAG_COLORS)]))
        return save_tags(tags, "Tag added.")

    @app.post("/settings/tags/<tag_id>/delete")
    @login_required
    def delete_tag(tag_id):
        _, tags = load_taxonomy()
        remaining = [t for t in tags if t.id != tag_id]
        if len(remaining) == len(tags):
            flash("Tag not found.")
            return redirect(url_for("settings", tab="tags"))
        return save_tags(remaining, "Tag deleted.")

    @app.post("/settings/users")
    @admin_required
    def add_user():
        email = (request.form.get("email") or "").strip().lower()
        if not email or "@" not in email:
            flash("A valid email is required.")
            return redirect(url_for("settings", tab="users"))
        temporary_password = secrets.token_urlsafe(9)
        db = get_db()
        try:
            db.execute(
                "INSERT INTO users (email, password_hash, role) VALUES (?, ?, ?)",
                (email, generate_password_hash(temporary_password), ROLE_USER),
            )
            db.commit()
        except INTEGRITY_ERRORS:
            db.rollback()
            flash("User already exists.")
            return redirect(url_for("settings", tab="users"))
        logger.info("User %s created by %s", email, g.user["email"])
        flash(f"User {email} created. Temporary password: {temporary_password}")
        return redirect(url_for("settings", tab="users"))

    @app.post("/settings/users/<int:user_id>/delete")
    @admin_required
    def delete_user(user_id):
        db = get_db()
        target = db.execute("SELECT id, email, role FROM users WHERE id = ?", (user_id,)).fetchone()
        if target is None:
            flash("User not found.")
            return redirect(url_for("settings", tab="users"))
        if target["role"] == ROLE_ADMIN:
            flash("Administrators cannot be removed.")
            return redirect(url_for("settings", tab="users"))
        try:
            with db.atomic():
                for table in ["transactions", "invoices", "system_transactions", "user_settings", "invoice_staging"]:
                    db.execute(f"DELETE FROM {table} WHERE user_id = ?", (user_id,))
                db.execute("DELETE FROM users WHERE id = ?", (user_id,))
        except DATABASE_ERRORS as exc:
            logger.error("Deleting user %s failed: %s", user_id, exc)
            flash("Could not remove the user.")
            return redirect(url_for("settings", tab="users"))
        flash(f"User {target['email']} removed.")
        return redirect(url_for("settings", tab="users"))

    @app.route("/system-transactions", methods=("GET", "POST"))
    @login_required
    def system_transactions():
        db = get_db()
        if request.method == "POST":
            try:
                description, amount = validate_entry_fields(request.form.get("description"), request.form.get("amount"))
                parsed_date = parse_iso_date(request.form.get("date"))
                if parsed_date is None:
                    raise ValidationError("Date is required (YYYY-MM-DD).")
            except ValidationError as exc:
                flash(str(exc))
                return redirect(url_for("system_transactions"))
            record = SystemTransaction(
                id=new_id("sys"),
                date=parsed_date.isoformat(),
                description=description,
                amount=amount,
                account=(request.form.get("account") or "").strip(),
            )
            try:
                storage.save_system_transactions(db, g.user["id"], [record])
                flash("System transaction added.")
            except StorageError as exc:
                flash(str(exc))
            return redirect(url_for("system_transactions"))

        return render_template(
            "system_transactions.html",
            system_transactions=storage.fetch_system_transactions(db, g.user["id"]),
        )

    @app.post("/system-transactions/import")
    @login_required
    def import_system_transactions():
        uploaded = request.files.get("file")
        if uploaded is None or not uploaded.filename:
            flash("Choose a CSV file to import.")
            return redirect(url_for("system_transactions"))
        text = decode_csv_bytes(uploaded.read())
        if text is None:
            flash("Could not read the CSV file encoding.")
            return redirect(url_for("system_transactions"))
        try:
            records, skipped = parse_system_transactions_csv(text, request.form.get("account") or "")
        except ValidationError as exc:
            flash(str(exc))
            return redirect(url_for("system_transactions"))
        try:
            storage.save_system_transactions(get_db(), g.user["id"], records)
        except StorageError as exc:
            flash(str(exc))
            return redirect(url_for("system_transactions"))
        flash(f"Imported {len(records)} system transaction(s); skipped {skipped}.")
        return redirect(url_for("system_transactions"))

    @app.route("/dev/reset-db")
    def dev_reset_db():
        dev_enabled = app.debug or os.environ.get("ENABLE_DEV_DB_RESET") == "1"
        if not dev_enabled or database_config()["backend"] != "sqlite":
            return "DEV ONLY: database reset is disabled.", 404

        db = g.pop("db", None)
        if db is not None:
            db.close()

        db_path = app.config["DATABASE"]
        if os.path.exists(db_path):
            os.remove(db_path)

        init_db()
        session.clear()
        flash("DEV ONLY: database reset complete.")
        return redirect(url_for("register"))

    with app.app_context():
        try:
            init_db()
        except DatabaseInitError:
            pass

    app.get_db = get_db
    app.init_db = init_db
    return app
