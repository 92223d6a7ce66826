from datetime import datetime

from sqlalchemy import (Column, String, Integer, Boolean, DateTime, ForeignKey,
                        Index, UniqueConstraint)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()

# — catalog tables —

class Product(Base):
    __tablename__ = "products"
    id         = Column(Integer, primary_key=True)
    sku        = Column(String(64), unique=True, nullable=False)
    type_id    = Column(String(32), nullable=True)                 # NULL for rows created by id allocation
    has_options = Column(Boolean, nullable=True)
    url_path   = Column(String(255), nullable=True)                # formatted from id during import
    created_at = Column(DateTime, default=datetime.utcnow)
    values     = relationship("ProductValue", back_populates="product")
    options    = relationship("ProductOption", back_populates="product")

class ProductValue(Base):
    __tablename__ = "product_values"
    value_id   = Column(Integer, primary_key=True)
    product_id = Column(Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=False)
    attribute  = Column(String(64), nullable=False)
    store_id   = Column(Integer, nullable=False, default=0)
    value      = Column(String, nullable=True)
    product    = relationship("Product", back_populates="values")
    __table_args__ = (
        UniqueConstraint("product_id", "attribute", "store_id", name="product_value_scope"),
    )

class ProductOption(Base):
    __tablename__ = "product_options"
    option_id  = Column(Integer, primary_key=True)
    product_id = Column(Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=False)
    title      = Column(String(255), nullable=False)
    sort_order = Column(Integer, nullable=True)
    product    = relationship("Product", back_populates="options")
    __table_args__ = (
        Index("idx_product_options_product_title", "product_id", "title"),
    )

def init_db(engine: Engine):
    Base.metadata.create_all(engine)
