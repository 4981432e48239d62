from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey
from medtrack.database import Base
from medtrack.timeutils import utcnow


class UserSession(Base):
    __tablename__ = "user_sessions"

    id         = Column(Integer, primary_key=True, index=True)
    jti        = Column(String(64), unique=True, nullable=False, index=True)
    user_id    = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    issued_at  = Column(DateTime, default=utcnow, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    is_active  = Column(Boolean, default=True, nullable=False)
    user_agent = Column(String(300))
    ip_address = Column(String(64))
