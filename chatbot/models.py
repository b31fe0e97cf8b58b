"""
SQLAlchemy ORM models for database tables.

PhoneNumber and Message live in the history database, WordBlock in the
word blocks database. For Pydantic request/response schemas, see schemas.py.
"""

from sqlalchemy import Boolean, CheckConstraint, Column, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from chatbot.storage import BlocksBase, HistoryBase


class PhoneNumber(HistoryBase):
    """
    A WhatsApp contact, stored without the 'whatsapp:' prefix.

    Table: phone_number
    """
    __tablename__ = "phone_number"

    id = Column(Integer, primary_key=True, autoincrement=True)
    phone_number = Column(String, unique=True, nullable=False, index=True)
    created_at = Column(String, nullable=False)  # Server time ISO-8601

    messages = relationship("Message", back_populates="phone_number")


class Message(HistoryBase):
    """
    One entry of a conversation, either from the user or from the chatbot.

    Table: message
    """
    __tablename__ = "message"
    __table_args__ = (
        CheckConstraint("sender_type IN ('user', 'chatbot')", name="ck_message_sender_type"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    phone_number_id = Column(Integer, ForeignKey("phone_number.id"), nullable=False, index=True)
    sender_type = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    message_date = Column(String, nullable=False)  # YYYY-MM-DD, UTC
    message_time = Column(String, nullable=False)  # HH:MM:SS, UTC
    created_at = Column(String, nullable=False, index=True)

    phone_number = relationship("PhoneNumber", back_populates="messages")


class WordBlock(BlocksBase):
    """
    A prompt template fragment.

    Table: word_blocks
    Primary Key: id (chosen by the admin UI)
    """
    __tablename__ = "word_blocks"

    id = Column(String, primary_key=True)
    text = Column(Text, nullable=False)
    is_active = Column(Boolean, nullable=False, default=False)
    is_default = Column(Boolean, nullable=False, default=False)
    arrangement = Column(Integer, nullable=True)  # only meaningful while active
    created_at = Column(String, nullable=False)
    updated_at = Column(String, nullable=False)
