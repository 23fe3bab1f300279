"""Invoice PDF extraction through Gemini and the description categorizer."""

import json
from collections import namedtuple

import httpx
from google import genai
from google.genai import errors as genai_errors
from google.genai import types as genai_types

from .logging_setup import get_logger
from .models import DEFAULT_CATEGORY, parse_iso_date, parse_money


DEFAULT_GEMINI_MODEL = "gemini-2.5-flash"
PDF_MIME_TYPE = "application/pdf"

logger = get_logger(__name__)

ExtractedTransaction = namedtuple("ExtractedTransaction", ["purchase_date", "description", "amount"])


class ExtractionError(RuntimeError):
    """Raised when an invoice cannot be turned into line items."""


class ExtractionConfigError(ExtractionError):
    """Raised when the extraction service has no credentials configured."""


INVOICE_SCHEMA = genai_types.Schema(
    type=genai_types.Type.OBJECT,
    required=["transactions"],
    properties={
        "transactions": genai_types.Schema(
            type=genai_types.Type.ARRAY,
            items=genai_types.Schema(
                type=genai_types.Type.OBJECT,
                required=["purchaseDate", "description", "amount"],
                properties={
                    "purchaseDate": genai_types.Schema(type=genai_types.Type.STRING),
                    "description": genai_types.Schema(type=genai_types.Type.STRING),
                    "amount": genai_types.Schema(type=genai_types.Type.NUMBER),
                },
            ),
        ),
    },
)


def build_prompt(issuer):
    return (
        f"Extract every purchase from this {issuer} credit card invoice. "
        "Return JSON with purchaseDate (YYYY-MM-DD), description and amount for each item."
    )


def parse_extraction_payload(text):
    # Only an explicit empty "transactions" list means the invoice has no items.
    if text is None or not text.strip():
        raise ExtractionError("The extraction service returned an empty response.")
    try:
        payload = json.loads(text)
    except ValueError as exc:
        raise ExtractionError("The extraction service returned content that is not JSON.") from exc
    if not isinstance(payload, dict) or not isinstance(payload.get("transactions"), list):
        raise ExtractionError("The extraction service returned an unexpected structure.")

    items = []
    for index, raw in enumerate(payload["transactions"]):
        if not isinstance(raw, dict):
            raise ExtractionError(f"Line item {index} is not an object.")
        amount = parse_money(raw.get("amount"))
        purchase_date = parse_iso_date(str(raw.get("purchaseDate") or ""))
        description = str(raw.get("description") or "").strip()
        if amount is None or purchase_date is None or not description:
            raise ExtractionError(f"Line item {index} is missing a date, description or amount.")
        items.append(ExtractedTransaction(purchase_date.isoformat(), description, amount))
    return items


class GeminiInvoiceExtractor:
    def __init__(self, api_key, model=DEFAULT_GEMINI_MODEL, client=None):
        if not api_key and client is None:
            raise ExtractionConfigError("GEMINI_API_KEY is not configured; invoice upload is unavailable.")
        self.model = model
        self.client = client or genai.Client(api_key=api_key)

    def extract(self, pdf_bytes, issuer):
        if not pdf_bytes or not pdf_bytes.lstrip().startswith(b"%PDF"):
            raise ExtractionError("The uploaded file is not a PDF.")

        try:
            response = self.client.models.generate_content(
                model=self.model,
                contents=[
                    genai_types.Part.from_bytes(data=pdf_bytes, mime_type=PDF_MIME_TYPE),
                    build_prompt(issuer),
                ],
                config=genai_types.GenerateContentConfig(
                    response_mime_type="application/json",
                    response_schema=INVOICE_SCHEMA,
                ),
            )
        except (genai_errors.APIError, httpx.HTTPError) as exc:
            logger.warning("Gemini extraction failed for issuer %s: %s", issuer, exc)
            raise ExtractionError(f"The extraction service failed: {exc}") from exc

        items = parse_extraction_payload(response.text)
        logger.info("Extracted %d line items for issuer %s", len(items), issuer)
        return items


def build_extractor(config):
    extractor = config.get("INVOICE_EXTRACTOR")
    if extractor is not None:
        return extractor
    return GeminiInvoiceExtractor(config.get("GEMINI_API_KEY"), config.get("GEMINI_MODEL") or DEFAULT_GEMINI_MODEL)


def categorize_descriptions(descriptions, default=DEFAULT_CATEGORY):
    # Placeholder classifier: callers only rely on the description -> category mapping.
    return {description: default for description in descriptions}
