from sqlalchemy import JSON, Column, Date, DateTime, Float, Integer, String
from shared.config.database import Base, ORDER_SCHEMA

class Order(Base):
    __tablename__ = "orders"
    # We use a separate schema to simulate microservice isolation
    __table_args__ = {"schema": ORDER_SCHEMA}

    id = Column(String(36), primary_key=True, index=True)
    order_number = Column(String(80), unique=True, nullable=False, index=True)
    owner_id = Column(String(64), nullable=False, index=True)
    stage = Column(String(32), nullable=False, default="Draft", index=True)
    items = Column(JSON, nullable=False, default=list)
    date_required = Column(Date, nullable=True)
    price = Column(Float, nullable=True)
    fulfillment = Column(JSON, nullable=True) # only while stage == Completed
    approved_by = Column(String(64), nullable=True)
    approved_at = Column(DateTime(timezone=True), nullable=True)
    update_request = Column(JSON, nullable=True)
    stage_history = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)
    version = Column(Integer, nullable=False, default=1) # optimistic concurrency token
