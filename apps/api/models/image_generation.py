"""Image generation history model."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, JSON, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


GENERATION_TYPES = ("text-to-image", "image-to-image")


class ImageGeneration(Base):
    __tablename__ = "image_generations"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    prompt = Column(Text, nullable=False)
    generation_type = Column(String, nullable=False)
    input_images = Column(JSON, nullable=True)
    output_image_url = Column(Text, nullable=True)
    status = Column(String, nullable=False, default="completed", index=True)
    credits_used = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)
    language = Column(String, nullable=False, default="en")
    metadata_json = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    user = relationship("User", back_populates="generations")
