from sqlalchemy import Column, String, Text
from models.base import Base, TimestampMixin

class StateEntry(Base, TimestampMixin):
    __tablename__ = "state_entries"

    key = Column(String(255), primary_key=True)
    # Serialized JSON document, written whole so readers never see half an update
    value = Column(Text, nullable=False)
