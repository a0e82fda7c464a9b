"""Sample warehouse models used by the test suite."""

from sqlalchemy import Column, DateTime, Float, ForeignKey, Integer, String
from sqlalchemy.orm import declarative_base, relationship

WarehouseBase = declarative_base()


class Customer(WarehouseBase):
    __tablename__ = "customers"

    id = Column(Integer, primary_key=True)
    name = Column(String(120), nullable=False)
    email = Column(String(200), unique=True)

    orders = relationship("Order", back_populates="customer")


class Vendor(WarehouseBase):
    __tablename__ = "vendors"

    id = Column(Integer, primary_key=True)
    name = Column(String(120), nullable=False)


class Order(WarehouseBase):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True)
    customerId = Column("customer_id", Integer, ForeignKey("customers.id"), nullable=False)
    vendorId = Column("vendor_id", Integer, ForeignKey("vendors.id"), nullable=True)
    total = Column(Float, nullable=False)
    discount = Column(Float, nullable=True)
    status = Column(String(20))
    createdAt = Column("created_at", DateTime, nullable=False)

    customer = relationship("Customer", back_populates="orders")
    vendor = relationship("Vendor")
