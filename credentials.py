from dataclasses import dataclass, replace
from typing import Optional

from sqlalchemy import select

from db import SessionLocal
from models import Credential

WHOOP = "whoop"

# Tokens expiring within this many seconds are treated as already expired.
EXPIRY_MARGIN_SECONDS = 60


@dataclass(frozen=True)
class CredentialRecord:
    user_id: str
    provider: str
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[int] = None  # epoch seconds, None = never expires
    token_type: Optional[str] = "bearer"
    scope: Optional[str] = None

    def is_fresh(self, now: float, margin: int = EXPIRY_MARGIN_SECONDS) -> bool:
        if self.expires_at is None:
            return True
        return self.expires_at > now + margin

    def rotated(self, access_token: str, refresh_token: Optional[str], expires_at: int,
                token_type: Optional[str] = None, scope: Optional[str] = None) -> "CredentialRecord":
        # Some providers omit refresh_token on refresh; keep the old one then.
        return replace(
            self,
            access_token=access_token,
            refresh_token=refresh_token or self.refresh_token,
            expires_at=expires_at,
            token_type=token_type or self.token_type,
            scope=scope or self.scope,
        )

    def __repr__(self):
        return (f"CredentialRecord(user_id={self.user_id!r}, provider={self.provider!r}, "
                f"expires_at={self.expires_at!r}, scope={self.scope!r})")


def _to_record(row: Credential) -> CredentialRecord:
    return CredentialRecord(
        user_id=row.user_id,
        provider=row.provider,
        access_token=row.access_token,
        refresh_token=row.refresh_token,
        expires_at=row.expires_at,
        token_type=row.token_type,
        scope=row.scope,
    )


class CredentialStore:
    """One credential row per (user, provider). Every call is its own transaction."""

    def __init__(self, session_factory=SessionLocal):
        self.session_factory = session_factory

    def get(self, user_id: str, provider: str = WHOOP) -> Optional[CredentialRecord]:
        with self.session_factory() as db:
            row = db.execute(
                select(Credential).filter_by(user_id=user_id, provider=provider)
            ).scalar_one_or_none()
            return _to_record(row) if row else None

    def upsert(self, record: CredentialRecord) -> CredentialRecord:
        with self.session_factory() as db:
            row = db.execute(
                select(Credential).filter_by(user_id=record.user_id, provider=record.provider)
            ).scalar_one_or_none()
            if not row:
                row = Credential(user_id=record.user_id, provider=record.provider)
            row.access_token = record.access_token
            row.refresh_token = record.refresh_token
            row.expires_at = record.expires_at
            row.token_type = record.token_type
            row.scope = record.scope
            db.add(row)
            db.commit()
        return record

    def update_tokens(self, record: CredentialRecord) -> CredentialRecord:
        """Write rotated tokens onto an existing row. Raises LookupError if it vanished."""
        with self.session_factory() as db:
            row = db.execute(
                select(Credential).filter_by(user_id=record.user_id, provider=record.provider)
            ).scalar_one_or_none()
            if not row:
                raise LookupError(f"credential for {record.user_id}/{record.provider} was removed")
            row.access_token = record.access_token
            row.refresh_token = record.refresh_token
            row.expires_at = record.expires_at
            row.token_type = record.token_type
            row.scope = record.scope
            db.commit()
        return record
