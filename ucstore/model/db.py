from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    Column,
    Integer,
    String,
    Float,
    Text,
)

from .domain import STATUS_AWAITING_PAYMENT, INQUIRY_PENDING, ROLE_USER


Base = declarative_base()


# ----------------------------
# ORM models
# ----------------------------
class Order(Base):
    __tablename__ = "orders"
    id = Column(Integer, primary_key=True, autoincrement=True)
    customer_name = Column(String, nullable=False)
    player_id = Column(String, nullable=False)
    contact_email = Column(String, nullable=False)

    # UC | Bundle
    kind = Column(String, nullable=False)
    uc_amount = Column(Integer, nullable=True)
    bundle_name = Column(String, nullable=True)
    # only set when orders reference the catalog; kept as plain text so a
    # later product deletion never rewrites history
    product_id = Column(String, nullable=True)

    # client supplied, never checked against the catalog price
    total_amount = Column(String, nullable=False)
    transaction_id = Column(String, nullable=False)
    attachment = Column(String, nullable=True)

    status = Column(String, nullable=False, default=STATUS_AWAITING_PAYMENT)
    owner_id = Column(String, nullable=True, index=True)
    created_at = Column(Float, nullable=False, index=True)


class Product(Base):
    __tablename__ = "products"
    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)
    # uc | bundle
    category = Column(String, nullable=False)
    amount = Column(Integer, nullable=True)  # uc only
    price = Column(Float, nullable=False)
    image_url = Column(String, nullable=True)
    created_at = Column(Float, nullable=False)


class Inquiry(Base):
    __tablename__ = "inquiries"
    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=True)
    email = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    status = Column(String, nullable=False, default=INQUIRY_PENDING)
    reply = Column(Text, nullable=True)
    created_at = Column(Float, nullable=False, index=True)


class Suggestion(Base):
    __tablename__ = "suggestions"
    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)
    contact = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    created_at = Column(Float, nullable=False, index=True)


class User(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True, autoincrement=True)
    username = Column(String, nullable=False, unique=True)
    password_hash = Column(String, nullable=False)
    # user | admin
    role = Column(String, nullable=False, default=ROLE_USER)
    created_at = Column(Float, nullable=False)


def as_dict(obj) -> dict:
    """ORM instance -> plain record, the shape every store returns."""
    return {c.name: getattr(obj, c.name) for c in obj.__table__.columns}
