import uuid

from sqlalchemy import Column, String, Boolean, DateTime, JSON
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from app.database import Base


def new_id() -> str:
    return str(uuid.uuid4())


class User(Base):
    """Identity record behind a principal (email, verification, custom metadata)."""

    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=new_id)
    email = Column(String(255), unique=True, index=True, nullable=True)
    email_verified = Column(Boolean, default=False, nullable=False)
    name = Column(String(255))

    # Free-form attributes pushed by the customer (e.g. {"plan": "enterprise"}).
    # "metadata" is reserved on declarative classes, hence the attribute name.
    metadata_json = Column("metadata", JSON)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    principals = relationship("Principal", back_populates="user")

    def __repr__(self):
        return f"<User {self.email}>"
