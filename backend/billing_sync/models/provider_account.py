"""
Payment provider account link.

WHY: Publishers connect their own MercadoPago account through OAuth so the
marketplace can collect payments on their behalf. Tokens are opaque: their
validity must be probed or refreshed, never assumed from expires_at.

SECURITY:
- access and refresh tokens are Fernet-encrypted at rest
- at most one active link per user; linking again deactivates older ones
"""

from sqlalchemy import Column, Integer, String, Text, Boolean, DateTime, ForeignKey, JSON

from billing_sync.models.base import Base, TimestampMixin, PrimaryKeyMixin, utcnow


class ProviderAccount(Base, PrimaryKeyMixin, TimestampMixin):
    """A user's connected payment provider account."""

    __tablename__ = "provider_accounts"

    user_id = Column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    provider_user_id = Column(String(255), nullable=False, index=True)

    access_token_encrypted = Column(Text, nullable=False)
    refresh_token_encrypted = Column(Text, nullable=True)
    expires_at = Column(DateTime, nullable=True)

    is_active = Column(Boolean, nullable=False, default=True, index=True)
    scope = Column(String(500), nullable=True)
    profile_snapshot = Column(JSON, nullable=False, default=dict)
    last_validated_at = Column(DateTime, nullable=True)

    def __repr__(self) -> str:
        return (
            f"<ProviderAccount(id={self.id}, user_id={self.user_id}, "
            f"provider_user_id={self.provider_user_id}, active={self.is_active})>"
        )

    @property
    def has_refresh_token(self) -> bool:
        return bool(self.refresh_token_encrypted)

    @property
    def is_token_expired(self) -> bool:
        """
        Check if the stored expiry has passed.

        WHY: Only a hint. The provider can revoke a token early, so account
        status always probes the token instead of trusting this.
        """
        if self.expires_at is None:
            return False
        return utcnow() >= self.expires_at
