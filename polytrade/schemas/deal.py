"""
Deal request and domain schemas.

Field names are snake_case in Python and camelCase on the wire.
"""
import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from polytrade.models.deal import Deal, DeliveryTerms, MaterialSource


class DealCreateRequest(BaseModel):
    """Request model for registering a deal."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    deal_date: Optional[datetime.date] = Field(default=None, alias="date")
    sale_party: Optional[str] = None
    quantity_sold: Optional[float] = None
    sale_rate: Optional[float] = None
    delivery_terms: Optional[DeliveryTerms] = None
    sale_comments: Optional[str] = None

    product_code: Optional[str] = None
    product: Optional[str] = None
    grade: Optional[str] = None
    company: Optional[str] = None
    specific_grade: Optional[str] = None

    material_source: Optional[MaterialSource] = None
    purchase_party: Optional[str] = None
    quantity_purchased: Optional[float] = None
    purchase_rate: Optional[float] = None
    warehouse_location: Optional[str] = None

    purchase_comments: Optional[str] = None
    final_comments: Optional[str] = None


class DealData(DealCreateRequest):
    """A deal as rendered into notifications. Immutable once built."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: Optional[str] = None

    @classmethod
    def from_model(cls, deal: Deal) -> "DealData":
        """Build from a persisted Deal row."""
        return cls(
            id=deal.id,
            deal_date=deal.deal_date,
            sale_party=deal.sale_party,
            quantity_sold=deal.quantity_sold,
            sale_rate=deal.sale_rate,
            delivery_terms=deal.delivery_terms,
            sale_comments=deal.sale_comments,
            product_code=deal.product_code,
            product=deal.product,
            grade=deal.grade,
            company=deal.company,
            specific_grade=deal.specific_grade,
            material_source=deal.material_source,
            purchase_party=deal.purchase_party,
            quantity_purchased=deal.quantity_purchased,
            purchase_rate=deal.purchase_rate,
            warehouse_location=deal.warehouse_location,
            purchase_comments=deal.purchase_comments,
            final_comments=deal.final_comments,
        )


class DealValidationError(ValueError):
    """A deal is missing required fields. Carries one entry per problem."""

    def __init__(self, problems: list[tuple[str, str]]):
        self.problems = problems
        super().__init__("Deal validation failed: " + ", ".join(self.errors))

    @property
    def fields(self) -> list[str]:
        return [field for field, _ in self.problems]

    @property
    def errors(self) -> list[str]:
        return [f"{field}: {message}" for field, message in self.problems]
