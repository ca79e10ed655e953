import enum

from sqlalchemy import Column, Integer, String

from ..database import Base


class Role(str, enum.Enum):
    """Closed set of roles a user can hold."""

    USER = "USER"
    ADMIN = "ADMIN"


class User(Base):
    """SQLAlchemy model for application users."""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String(100), unique=True, index=True, nullable=False)
    password_hash = Column(String, nullable=False)
    role = Column(String(20), default=Role.USER.value, nullable=False)

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN.value
