# models.py
from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class PromoCode(Base):
    __tablename__ = "promo_codes"
    # never hand out a deleted id again
    __table_args__ = {"sqlite_autoincrement": True}

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    code = Column(String(64), unique=True, index=True, nullable=False)
    description = Column(String(255), nullable=False)


class Token(Base):
    __tablename__ = "tokens"
    __table_args__ = {"sqlite_autoincrement": True}

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    token = Column(String(64), unique=True, index=True, nullable=False)

    # No FK constraint: tokens outlive a deleted code for audit.
    promo_code_id = Column(Integer, nullable=False, index=True)

    used = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False)
    used_at = Column(DateTime(timezone=True), nullable=True)

    # JSON-encoded payload supplied by the redeeming caller
    result = Column(Text, nullable=True)
