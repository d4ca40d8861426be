"""
Deal model.

A registered polymer trade. Rows are written once at registration and are
not modified after notifications go out.
"""
import enum
from datetime import date
from sqlalchemy import String, Text, Float, Date, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column
from polytrade.models.base import Base, TimestampMixin


class DeliveryTerms(str, enum.Enum):
    """Delivery terms enum."""
    DELIVERED = "delivered"
    EX_WAREHOUSE = "ex-warehouse"


class MaterialSource(str, enum.Enum):
    """Where the sold material comes from."""
    NEW_MATERIAL = "new-material"
    FROM_INVENTORY = "from-inventory"


class Deal(Base, TimestampMixin):
    """
    Deal model.

    Purchase columns are only populated for new-material deals.
    """
    __tablename__ = "deals"

    id: Mapped[str] = mapped_column(String(40), primary_key=True)
    deal_date: Mapped[date] = mapped_column(Date, nullable=False)

    # Sale side
    sale_party: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    quantity_sold: Mapped[float] = mapped_column(Float, nullable=False)
    sale_rate: Mapped[float] = mapped_column(Float, nullable=False)
    delivery_terms: Mapped[DeliveryTerms] = mapped_column(
        SQLEnum(DeliveryTerms, native_enum=False, values_callable=lambda e: [m.value for m in e]),
        nullable=False
    )
    sale_comments: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Product
    product_code: Mapped[str] = mapped_column(String(100), nullable=False)
    product: Mapped[str | None] = mapped_column(String(255), nullable=True)
    grade: Mapped[str | None] = mapped_column(String(255), nullable=True)
    company: Mapped[str | None] = mapped_column(String(255), nullable=True)
    specific_grade: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Material source and purchase side
    material_source: Mapped[MaterialSource] = mapped_column(
        SQLEnum(MaterialSource, native_enum=False, values_callable=lambda e: [m.value for m in e]),
        nullable=False
    )
    purchase_party: Mapped[str | None] = mapped_column(String(255), nullable=True)
    quantity_purchased: Mapped[float | None] = mapped_column(Float, nullable=True)
    purchase_rate: Mapped[float | None] = mapped_column(Float, nullable=True)
    warehouse_location: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Comments
    purchase_comments: Mapped[str | None] = mapped_column(Text, nullable=True)
    final_comments: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self):
        return f"<Deal(id={self.id}, customer={self.sale_party}, source={self.material_source})>"
