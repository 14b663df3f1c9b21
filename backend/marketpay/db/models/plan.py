"""Plan model: merchant plan definitions."""

from sqlalchemy import Boolean, Column, Integer, String

from marketpay.db.base import Base


class Plan(Base):
    __tablename__ = "plans"

    id = Column(String(50), primary_key=True)  # slug, e.g. "day_pass"
    name = Column(String(100), nullable=False)

    # Pricing (minor units)
    price_amount = Column(Integer, nullable=False, default=0)
    price_currency = Column(String(3), nullable=False, default="usd")

    billing_interval = Column(String(20), nullable=False, default="one_time")  # one_time | month | year
    is_active = Column(Boolean, nullable=False, default=True)
