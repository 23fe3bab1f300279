import random
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

from werkzeug.security import generate_password_hash

from fin_reconcile import create_app, storage
from fin_reconcile.models import (
    CARD_ISSUERS,
    DEFAULT_CATEGORIES,
    DEFAULT_TAG,
    InvoiceFile,
    InvoiceStatus,
    MatchStatus,
    SystemTransaction,
    Transaction,
    new_id,
)


def main():
    app = create_app()
    with app.app_context():
        app.init_db()
        db = app.get_db()

        db.execute(
            "INSERT INTO users (email, password_hash, role) VALUES (?, ?, ?)",
            ("demo@example.com", generate_password_hash("demo123"), "admin"),
        )
        db.commit()
        user_id = db.execute("SELECT id FROM users WHERE email = 'demo@example.com'").fetchone()["id"]

        today = date.today()
        for months_back in range(6):
            uploaded = datetime.now(timezone.utc) - timedelta(days=30 * months_back)
            issuer = random.choice(CARD_ISSUERS[:-1])
            invoice = InvoiceFile(
                id=new_id("inv"),
                name=f"fatura-{issuer.lower().replace(' ', '-')}-{uploaded:%Y-%m}.pdf",
                size=random.randint(40_000, 300_000),
                upload_date=uploaded,
                status=InvoiceStatus.PARSED,
                card_issuer=issuer,
            )
            transactions = []
            for i in range(random.randint(8, 15)):
                category = random.choice(DEFAULT_CATEGORIES)
                purchase = (uploaded.date() - timedelta(days=random.randint(1, 30))).isoformat()
                transactions.append(
                    Transaction(
                        id=new_id("t"),
                        date=purchase,
                        purchase_date=purchase,
                        description=f"Compra {i + 1} {category.name}",
                        amount=Decimal(str(round(random.uniform(5, 400), 2))),
                        category=category.name,
                        subcategory=random.choice(category.subcategories) if category.subcategories else "",
                        tags=[DEFAULT_TAG],
                        invoice_id=invoice.id,
                        status=MatchStatus.MATCHED,
                        card_issuer=issuer,
                    )
                )
            invoice.transaction_count = len(transactions)
            storage.save_invoice_with_transactions(db, user_id, invoice, transactions)

        storage.save_system_transactions(
            db,
            user_id,
            [
                SystemTransaction(new_id("sys"), (today - timedelta(days=i * 3)).isoformat(), f"Débito {i + 1}", Decimal("49.90"), "Conta corrente")
                for i in range(10)
            ],
        )
    print("Sample data generated. Login with demo@example.com / demo123")


if __name__ == "__main__":
    main()
