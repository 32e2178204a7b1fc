"""Receipt OCR through the vision-capable ``receipt-ocr`` route."""

from __future__ import annotations

import logging

from pydantic import ValidationError

from ..common.gateway import InferenceGateway
from ..common.json_tools import extract_json
from ..common.router import TASK_RECEIPT_OCR
from .contracts import ReceiptExtraction

logger = logging.getLogger(__name__)

RECEIPT_PROMPT = (
    "Extract the receipt data and return ONLY valid JSON:\n"
    '{"merchant": "store name", "total": number, '
    '"items": [{"name": "item", "price": number}], '
    '"category": "food|transport|entertainment|shopping|bills|healthcare|utilities|education|other", '
    '"date": "YYYY-MM-DD", "confidence": "high|medium|low"}'
)


class ReceiptExtractionError(Exception):
    """The model's reply could not be read as a receipt."""


def _image_url(image_base64: str) -> str:
    data = image_base64.strip()
    if data.startswith("data:"):
        return data
    return f"data:image/jpeg;base64,{data}"


def build_receipt_messages(image_base64: str) -> list[dict]:
    return [
        {
            "role": "user",
            "content": [
                {"type": "text", "text": RECEIPT_PROMPT},
                {"type": "image_url", "image_url": {"url": _image_url(image_base64)}},
            ],
        }
    ]


async def extract_receipt(image_base64: str, gateway: InferenceGateway) -> ReceiptExtraction:
    result = await gateway.call(TASK_RECEIPT_OCR, build_receipt_messages(image_base64))

    parsed = extract_json(result.raw_text)
    if not isinstance(parsed, dict):
        raise ReceiptExtractionError("no receipt data found in the image")
    try:
        receipt = ReceiptExtraction.model_validate(parsed)
    except ValidationError as exc:
        logger.warning("Receipt reply from %s failed validation: %s", result.provider, exc)
        raise ReceiptExtractionError("could not read a total amount from the receipt") from exc

    logger.info("Receipt read: merchant=%s total=%s confidence=%s", receipt.merchant, receipt.total, receipt.confidence)
    return receipt
