"""Chat history message model."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, JSON, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class ChatMessage(Base):
    """A single message in a user's persistent chat session."""

    __tablename__ = "chat_messages"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    session_id = Column(String, nullable=False, index=True)
    message_type = Column(String, nullable=False)  # user, assistant, system, error
    content = Column(Text, nullable=True)
    prompt = Column(Text, nullable=True)
    image_url = Column(Text, nullable=True)
    input_images = Column(JSON, nullable=True)
    generation_type = Column(String, nullable=True)
    generation_id = Column(String, ForeignKey("image_generations.id", ondelete="SET NULL"), nullable=True)
    credits_used = Column(Integer, nullable=True)
    error_message = Column(Text, nullable=True)
    metadata_json = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    user = relationship("User", back_populates="chat_messages")
