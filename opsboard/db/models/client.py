"""
Client Model
"""
from sqlalchemy import Column, String, DateTime

from opsboard.db.database import Base, generate_uuid, utcnow


class Client(Base):
    __tablename__ = "clients"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    full_name = Column(String(200), nullable=False)
    email = Column(String(255), nullable=True)
    phone_number = Column(String(30), nullable=True)
    discord_nickname = Column(String(100), nullable=True)

    created_at = Column(DateTime, default=utcnow)
