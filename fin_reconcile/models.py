"""Domain records shared by the views, the storage layer and the reporting code."""

import re
import uuid
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum


MANUAL_ENTRY_ID = "manual-entry"
DEFAULT_CATEGORY = "Outros"
DEFAULT_TAG = "Despesas Pessoais"
NO_SUBCATEGORY = "Sem Subcategoria"
CARD_ISSUERS = ["Inter", "Santander", "Bradesco", "BRB", "Porto Bank", "Itaú", "Outros"]
CENTS = Decimal("0.01")


class ValidationError(ValueError):
    """Raised when user supplied transaction fields are missing or malformed."""


class MatchStatus(str, Enum):
    UNMATCHED = "UNMATCHED"
    # SUGGESTED and IGNORED are not produced by any flow yet but stay valid stored values.
    SUGGESTED = "SUGGESTED"
    MATCHED = "MATCHED"
    IGNORED = "IGNORED"


class InvoiceStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    PARSED = "parsed"
    ERROR = "error"


def new_id(prefix):
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


def quantize_money(value):
    return Decimal(value).quantize(CENTS, rounding=ROUND_HALF_UP)


def to_decimal(value):
    if value is None or value == "":
        return Decimal("0.00")
    if isinstance(value, Decimal):
        return quantize_money(value)
    # floats go through str() so 150.1 stays 150.10 instead of its binary expansion
    return quantize_money(str(value))


def parse_money(value):
    text = (str(value) if value is not None else "").strip()
    if not text:
        return None
    cleaned = re.sub(r"(?i)r\$|\$|\s", "", text)
    negative = cleaned.startswith("(") and cleaned.endswith(")")
    if negative:
        cleaned = cleaned[1:-1]
    if "," in cleaned and "." in cleaned:
        # whichever separator comes last is the decimal one
        if cleaned.rfind(",") > cleaned.rfind("."):
            cleaned = cleaned.replace(".", "").replace(",", ".")
        else:
            cleaned = cleaned.replace(",", "")
    elif "," in cleaned:
        cleaned = cleaned.replace(",", ".")
    try:
        amount = quantize_money(cleaned)
    except InvalidOperation:
        return None
    if not amount.is_finite():
        return None
    return -amount if negative else amount


def parse_iso_date(value):
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    cleaned = (value or "").strip()
    if not cleaned:
        return None
    for fmt in ["%Y-%m-%d", "%d/%m/%Y", "%d/%m/%y"]:
        try:
            return datetime.strptime(cleaned[:10] if fmt == "%Y-%m-%d" else cleaned, fmt).date()
        except ValueError:
            continue
    return None


def parse_upload_date(value):
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    text = (value or "").strip()
    if not text:
        return None
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def normalize_tags(tags):
    seen = []
    for tag in tags or []:
        cleaned = (tag or "").strip()
        if cleaned and cleaned not in seen:
            seen.append(cleaned)
    return seen


@dataclass
class Transaction:
    id: str
    date: str
    purchase_date: str
    description: str
    amount: Decimal
    category: str = DEFAULT_CATEGORY
    subcategory: str = ""
    tags: list = field(default_factory=list)
    invoice_id: str = MANUAL_ENTRY_ID
    status: MatchStatus = MatchStatus.UNMATCHED
    card_issuer: str = ""
    notes: str = ""
    matched_system_id: str = ""

    def __post_init__(self):
        self.amount = to_decimal(self.amount)
        self.status = MatchStatus(self.status)
        self.tags = normalize_tags(self.tags)

    @property
    def is_manual(self):
        return not self.invoice_id or self.invoice_id == MANUAL_ENTRY_ID

    def to_dict(self):
        payload = asdict(self)
        payload["amount"] = str(self.amount)
        payload["status"] = self.status.value
        return payload

    @classmethod
    def from_dict(cls, payload):
        return cls(
            id=payload["id"],
            date=payload.get("date") or "",
            purchase_date=payload.get("purchase_date") or "",
            description=payload.get("description") or "",
            amount=payload.get("amount"),
            category=payload.get("category") or DEFAULT_CATEGORY,
            subcategory=payload.get("subcategory") or "",
            tags=payload.get("tags") or [],
            invoice_id=payload.get("invoice_id") or MANUAL_ENTRY_ID,
            status=payload.get("status") or MatchStatus.UNMATCHED,
            card_issuer=payload.get("card_issuer") or "",
            notes=payload.get("notes") or "",
            matched_system_id=payload.get("matched_system_id") or "",
        )


@dataclass
class InvoiceFile:
    id: str
    name: str
    size: int
    upload_date: datetime
    status: InvoiceStatus = InvoiceStatus.PENDING
    transaction_count: int = None
    card_issuer: str = ""

    def __post_init__(self):
        self.status = InvoiceStatus(self.status)
        self.upload_date = parse_upload_date(self.upload_date)

    @property
    def import_date(self):
        """Calendar date of the upload in UTC, as ``YYYY-MM-DD``."""
        if self.upload_date is None:
            return ""
        return self.upload_date.astimezone(timezone.utc).date().isoformat()

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "size": self.size,
            "upload_date": self.upload_date.isoformat() if self.upload_date else "",
            "status": self.status.value,
            "transaction_count": self.transaction_count,
            "card_issuer": self.card_issuer,
        }

    @classmethod
    def from_dict(cls, payload):
        return cls(
            id=payload["id"],
            name=payload.get("name") or "",
            size=int(payload.get("size") or 0),
            upload_date=payload.get("upload_date"),
            status=payload.get("status") or InvoiceStatus.PENDING,
            transaction_count=payload.get("transaction_count"),
            card_issuer=payload.get("card_issuer") or "",
        )


@dataclass
class SystemTransaction:
    id: str
    date: str
    description: str
    amount: Decimal
    account: str = ""

    def __post_init__(self):
        self.amount = to_decimal(self.amount)


@dataclass
class Category:
    id: str
    name: str
    subcategories: list = field(default_factory=list)
    color: str = "#9CA3AF"

    def to_dict(self):
        return asdict(self)

    @classmethod
    def from_dict(cls, payload):
        return cls(
            id=str(payload.get("id") or new_id("cat")),
            name=payload.get("name") or "",
            subcategories=list(payload.get("subcategories") or []),
            color=payload.get("color") or "#9CA3AF",
        )


@dataclass
class Tag:
    id: str
    name: str
    color: str = "bg-blue-100 text-blue-700"

    def to_dict(self):
        return asdict(self)

    @classmethod
    def from_dict(cls, payload):
        return cls(
            id=str(payload.get("id") or new_id("tag")),
            name=payload.get("name") or "",
            color=payload.get("color") or "bg-blue-100 text-blue-700",
        )


DEFAULT_CATEGORIES = [
    Category("c1", "Alimentação", ["Restaurante", "Mercado"], "#EF4444"),
    Category("c2", "Transporte", ["Uber/99", "Combustível"], "#F59E0B"),
    Category("c3", "Compras", ["Roupas", "Eletrônicos"], "#3B82F6"),
    Category("c4", "Saúde", ["Médico", "Farmácia"], "#10B981"),
    Category("c5", "Educação", ["Cursos", "Livros"], "#8B5CF6"),
    Category("c6", "Viagem", ["Hospedagem", "Passagem"], "#EC4899"),
    Category("c7", "Serviços", ["Assinaturas", "Manutenção"], "#6366F1"),
    Category("c8", DEFAULT_CATEGORY, [], "#9CA3AF"),
]

DEFAULT_TAGS = [
    Tag("tag-pessoal", DEFAULT_TAG, "bg-blue-100 text-blue-700"),
    Tag("tag-empresa", "Empresa", "bg-purple-100 text-purple-700"),
]


def validate_entry_fields(description, amount_text, purchase_date=""):
    """Check a manual or edited entry before anything is written.

    Returns ``(description, amount)`` cleaned up, or raises ``ValidationError``.
    """
    description = (description or "").strip()
    if not description:
        raise ValidationError("Description is required.")
    if not (amount_text or "").strip():
        raise ValidationError("Amount is required.")
    amount = parse_money(amount_text)
    if amount is None:
        raise ValidationError("Amount must be a valid number.")
    if purchase_date and parse_iso_date(purchase_date) is None:
        raise ValidationError("Purchase date must use the YYYY-MM-DD format.")
    return description, amount
