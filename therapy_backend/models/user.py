"""User model definitions."""

from sqlalchemy import Column, DateTime, Enum, Integer, Numeric, String, func

from therapy_backend.database import Base
from therapy_backend.models.enums import UserRole, UserStatus, enum_values


class User(Base):
    """Represents an application user; therapists are users with the therapist role."""
    __tablename__ = 'users'

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True, nullable=False)
    name = Column(String, nullable=False)
    hashed_password = Column(String, nullable=False, default='')
    role = Column(
        Enum(UserRole, native_enum=False, values_callable=enum_values, length=20),
        nullable=False,
        default=UserRole.CUSTOMER,
    )
    status = Column(
        Enum(UserStatus, native_enum=False, values_callable=enum_values, length=20),
        nullable=False,
        default=UserStatus.PENDING,
    )
    session_fee = Column(Numeric(10, 2), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    @property
    def is_therapist(self) -> bool:
        return self.role == UserRole.THERAPIST

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN
