"""Receipt scope contracts: what the OCR model must return."""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.services.categorization import normalize_category

from ..intent.contracts import coerce_amount

CONFIDENCE_SCORES = {"high": 0.9, "medium": 0.6, "low": 0.3}


class ReceiptItem(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str = ""
    price: Optional[Decimal] = None

    @field_validator("price", mode="before")
    @classmethod
    def _price(cls, v: Any) -> Optional[Decimal]:
        return coerce_amount(v)


class ReceiptExtraction(BaseModel):
    model_config = ConfigDict(extra="ignore")

    merchant: str = "Unknown"
    total: Decimal = Field(..., gt=0)
    items: list[ReceiptItem] = Field(default_factory=list)
    category: Optional[str] = None
    date: Optional[str] = None
    confidence: Literal["high", "medium", "low"] = "medium"

    @field_validator("total", mode="before")
    @classmethod
    def _total(cls, v: Any) -> Optional[Decimal]:
        return coerce_amount(v)

    @field_validator("merchant", mode="before")
    @classmethod
    def _merchant(cls, v: Any) -> str:
        text = str(v or "").strip()
        return text or "Unknown"

    @field_validator("category", mode="before")
    @classmethod
    def _category(cls, v: Any) -> Optional[str]:
        return normalize_category(str(v) if v else None)

    @field_validator("confidence", mode="before")
    @classmethod
    def _confidence(cls, v: Any) -> str:
        text = str(v or "").strip().lower()
        return text if text in CONFIDENCE_SCORES else "low"

    @property
    def confidence_score(self) -> float:
        return CONFIDENCE_SCORES[self.confidence]

    @property
    def entry_name(self) -> str:
        first = next((item.name for item in self.items if item.name), "Purchase")
        return f"{self.merchant} - {first}"

    @property
    def entry_description(self) -> str:
        names = ", ".join(item.name for item in self.items if item.name)
        return f"Receipt scan: {names}" if names else "Receipt scan"
