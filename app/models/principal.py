from sqlalchemy import Column, String, DateTime, ForeignKey
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from app.database import Base
from app.models.user import new_id

# Portal end-users; team members carry "admin" or "member"
END_USER_ROLE = "user"


class Principal(Base):
    """
    An actor in the portal.

    Segmentation only ever targets principals with role "user" that are
    linked to a User record.
    """

    __tablename__ = "principal"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=True, index=True)
    role = Column(String(20), nullable=False, default=END_USER_ROLE, index=True)
    display_name = Column(String(255))

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    user = relationship("User", back_populates="principals")

    def __repr__(self):
        return f"<Principal id={self.id} role={self.role}>"
