from sqlalchemy import JSON, Column, DateTime, Integer, String

from tamilsubs.core.database import Base


class AccountRecord(Base):
    __tablename__ = "accounts"

    account_id = Column(String, primary_key=True, index=True)
    display_name = Column(String, nullable=True)
    email = Column(String, index=True, nullable=True)
    avatar_url = Column(String, nullable=True)
    wallet_balance = Column(Integer, nullable=False, default=0)
    trial = Column(JSON, nullable=True)
    active_plan = Column(JSON, nullable=True)
    payment_history = Column(JSON, nullable=False, default=list)
    processed_payment_ids = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)
