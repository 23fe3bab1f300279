import io
from decimal import Decimal
from pathlib import Path

import pytest

from fin_reconcile import create_app
from fin_reconcile.extraction import ExtractedTransaction, ExtractionError


class FakeExtractor:
    def __init__(self, items=None, error=None):
        self.items = items if items is not None else [
            ExtractedTransaction("2024-05-03", "PADARIA CENTRAL", Decimal("25.40")),
            ExtractedTransaction("2024-05-10", "POSTO SHELL", Decimal("150.00")),
        ]
        self.error = error
        self.calls = []

    def extract(self, pdf_bytes, issuer):
        self.calls.append((pdf_bytes, issuer))
        if self.error is not None:
            raise ExtractionError(self.error)
        return list(self.items)


@pytest.fixture()
def extractor():
    return FakeExtractor()


@pytest.fixture()
def app(tmp_path: Path, extractor):
    db_path = tmp_path / "test.sqlite"
    app = create_app(
        {
            "TESTING": True,
            "SECRET_KEY": "test",
            "DATABASE": str(db_path),
            "DATABASE_URL": "",
            "INVOICE_EXTRACTOR": extractor,
        }
    )

    with app.app_context():
        app.init_db()

    yield app


@pytest.fixture()
def client(app):
    return app.test_client()


def register(client, email="ana@example.com", password="password"):
    return client.post("/register", data={"email": email, "password": password}, follow_redirects=True)


def login(client, email="ana@example.com", password="password"):
    return client.post("/login", data={"email": email, "password": password}, follow_redirects=True)


def upload_invoice(client, issuer="Inter", content=b"%PDF-1.4 fake invoice", filename="fatura.pdf"):
    return client.post(
        "/upload",
        data={"issuer": issuer, "invoice": (io.BytesIO(content), filename)},
        content_type="multipart/form-data",
    )


def staged_import_id(response):
    location = response.headers["Location"]
    assert "/review/" in location
    return location.rsplit("/", 1)[-1]
