"""
User model: identity, role and cached trust score.
"""
from sqlalchemy import Column, String, Boolean, Integer, Enum as SQLEnum
from sqlalchemy.orm import relationship
from app.db.base import BaseModel
from app.core.config import settings
import enum


class UserRole(str, enum.Enum):
    """User role enumeration."""
    USER = "user"
    ADMIN = "admin"
    SUPER_ADMIN = "super_admin"


class KYCStatus(str, enum.Enum):
    """Identity verification state of a user."""
    NOT_SUBMITTED = "not_submitted"
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class User(BaseModel):
    """User model. Accounts are provisioned by the identity service."""
    __tablename__ = "users"

    username = Column(String(50), unique=True, nullable=False, index=True)
    email = Column(String(100), unique=True, nullable=False, index=True)
    role = Column(SQLEnum(UserRole), default=UserRole.USER, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    kyc_status = Column(SQLEnum(KYCStatus), default=KYCStatus.NOT_SUBMITTED, nullable=False)

    # Cached value of the latest TrustScoreUpdate.new_score
    trust_score = Column(Integer, default=settings.TRUST_INITIAL_SCORE, nullable=False)
    version_id = Column(Integer, nullable=False)

    # Relationships
    trust_updates = relationship(
        "TrustScoreUpdate", foreign_keys="TrustScoreUpdate.user_id",
        back_populates="user", order_by="TrustScoreUpdate.id"
    )
    kyc_submissions = relationship("KYCSubmission", foreign_keys="KYCSubmission.user_id", back_populates="user")

    __mapper_args__ = {"version_id_col": version_id}

    @property
    def is_admin(self) -> bool:
        return self.role in (UserRole.ADMIN, UserRole.SUPER_ADMIN)
